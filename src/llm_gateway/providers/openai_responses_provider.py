from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from loguru import logger

from llm_gateway.errors import UpstreamProviderError
from llm_gateway.models import (
    ChatOptions,
    ImagePart,
    Message,
    ModelConfig,
    TextPart,
    ToolDefinition,
)
from llm_gateway.providers.base import (
    Citation,
    FinishFragment,
    Fragment,
    GroundingFragment,
    NormalizedResponse,
    ProviderAdapter,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    UsageFragment,
    WireRequest,
)
from llm_gateway.providers.common import accepts_temperature, sanitize_schema, strict_schema

_WEB_SEARCH_TOOL_IDS = ("webSearch", "web_search")


def _to_responses_input(messages: Sequence[Message]) -> list[dict]:
    items: list[dict] = []
    for msg in messages:
        if msg.role == "tool":
            for result in msg.tool_results:
                items.append({"type": "function_call_output", "call_id": result.tool_call_id, "output": result.content})
        elif msg.role == "assistant":
            if msg.text:
                items.append({"role": "assistant", "content": msg.text})
            for call in msg.tool_calls:
                items.append(
                    {
                        "type": "function_call",
                        "call_id": call.id,
                        "name": call.name,
                        "arguments": json.dumps(call.arguments),
                    }
                )
        else:
            content: list[dict] = []
            for part in msg.content:
                if isinstance(part, TextPart):
                    content.append({"type": "input_text", "text": part.text})
                elif isinstance(part, ImagePart):
                    content.append({"type": "input_image", "image_url": f"data:{part.mime_type};base64,{part.data}"})
            items.append({"role": "user", "content": content})
    return items


def _to_responses_tools(tools: Sequence[ToolDefinition]) -> list[dict]:
    """Internally-tagged function descriptors: name sits beside ``type``."""
    out: list[dict] = []
    for t in tools:
        if t.builtin:
            if t.id in _WEB_SEARCH_TOOL_IDS:
                out.append({"type": "web_search"})
            continue
        out.append(
            {
                "type": "function",
                "name": t.function_name,
                "description": t.description,
                "parameters": sanitize_schema(t.parameters, "openai"),
            }
        )
    return out


def _citation(annotation: dict[str, Any]) -> Citation | None:
    if annotation.get("type") != "url_citation" or not annotation.get("url"):
        return None
    return Citation(
        source=annotation["url"],
        title=annotation.get("title"),
        start=annotation.get("start_index"),
        end=annotation.get("end_index"),
    )


def _finish_reason(response: dict[str, Any]) -> str:
    if any(item.get("type") == "function_call" for item in response.get("output") or []):
        return "tool_calls"
    if response.get("status") == "incomplete":
        return "length"
    return "stop"


class OpenAIResponsesAdapter(ProviderAdapter):
    provider = "openai-responses"
    default_base_url = "https://api.openai.com/v1"

    def create_request(
        self,
        model: ModelConfig,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        options: ChatOptions,
        *,
        system_prompt: str = "",
        stream: bool = True,
    ) -> WireRequest:
        body: dict[str, Any] = {
            "model": model.vendor_model,
            "input": _to_responses_input(messages),
            "stream": stream,
            "store": False,
        }
        if system_prompt:
            body["instructions"] = system_prompt
        max_tokens = options.max_tokens or model.max_output_tokens
        if max_tokens and max_tokens > 0:
            body["max_output_tokens"] = max_tokens
        if options.temperature is not None and accepts_temperature(model):
            body["temperature"] = options.temperature
        if model.thinking_enabled:
            body["reasoning"] = {"effort": _reasoning_effort(model.thinking_budget), "summary": "auto"}

        response_tools = _to_responses_tools(tools) if model.supports_tools else []
        if response_tools:
            body["tools"] = response_tools
            if options.tool_choice:
                body["tool_choice"] = options.tool_choice

        if options.response_schema:
            body["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": "response",
                    "strict": True,
                    "schema": strict_schema(options.response_schema),
                }
            }
        elif options.response_format == "json":
            body["text"] = {"format": {"type": "json_object"}}

        logger.debug(
            f"openai-responses request: model={model.vendor_model}, items={len(body['input'])}, "
            f"tools={len(response_tools)}, stream={stream}"
        )
        return WireRequest(
            provider=self.provider,
            operation="responses",
            url=f"{self.base_url(model)}/responses",
            body=body,
            stream=stream,
        )

    def parse_stream_chunk(self, raw: str | dict[str, Any]) -> list[Fragment]:
        data = self.load_chunk(raw)
        if data is None:
            return []
        if not isinstance(data, dict):
            return [data]

        event_type = data.get("type", "")
        if event_type == "response.output_text.delta":
            return [TextDelta(data["delta"])] if data.get("delta") else []
        if event_type == "response.reasoning_summary_text.delta":
            return [ThinkingDelta(data["delta"])] if data.get("delta") else []
        if event_type == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                return [
                    ToolCallDelta(
                        index=data.get("output_index", 0),
                        id=item.get("call_id"),
                        name=item.get("name"),
                        arguments=item.get("arguments") or "",
                    )
                ]
            return []
        if event_type == "response.function_call_arguments.delta":
            return [ToolCallDelta(index=data.get("output_index", 0), arguments=data.get("delta", ""))]
        if event_type == "response.output_text.annotation.added":
            citation = _citation(data.get("annotation") or {})
            return [GroundingFragment((citation,))] if citation else []
        if event_type in ("response.completed", "response.incomplete"):
            response = data.get("response") or {}
            fragments: list[Fragment] = []
            usage = response.get("usage")
            if usage:
                fragments.append(UsageFragment(usage.get("input_tokens"), usage.get("output_tokens")))
            fragments.append(FinishFragment(_finish_reason(response)))
            return fragments
        if event_type in ("response.failed", "error"):
            error = (data.get("response") or {}).get("error") or data.get("error") or data
            raise UpstreamProviderError(self.provider, error.get("message", "response failed"), details=error)
        return []

    def parse_response(self, raw: dict[str, Any]) -> NormalizedResponse:
        if raw.get("error"):
            raise UpstreamProviderError(self.provider, raw["error"].get("message", "error"), details=raw["error"])
        fragments: list[Fragment] = []
        calls = 0
        for item in raw.get("output") or []:
            item_type = item.get("type")
            if item_type == "message":
                for content in item.get("content") or []:
                    if content.get("type") == "output_text":
                        fragments.append(TextDelta(content.get("text", "")))
                        citations = [c for c in map(_citation, content.get("annotations") or []) if c]
                        if citations:
                            fragments.append(GroundingFragment(tuple(citations)))
            elif item_type == "reasoning":
                for summary in item.get("summary") or []:
                    if summary.get("text"):
                        fragments.append(ThinkingDelta(summary["text"]))
            elif item_type == "function_call":
                fragments.append(
                    ToolCallDelta(calls, item.get("call_id"), item.get("name"), item.get("arguments") or "", complete=True)
                )
                calls += 1
        usage = raw.get("usage")
        if usage:
            fragments.append(UsageFragment(usage.get("input_tokens"), usage.get("output_tokens")))
        fragments.append(FinishFragment(_finish_reason(raw)))
        return NormalizedResponse.collect(fragments)


def _reasoning_effort(budget: int) -> str:
    if budget <= 0:
        return "medium"
    if budget <= 100:
        return "low"
    if budget <= 500:
        return "medium"
    return "high"
