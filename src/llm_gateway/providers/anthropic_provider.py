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
    ThinkingPart,
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
)
from llm_gateway.providers.base import (
    STRUCTURED_OUTPUT_TOOL,
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
from llm_gateway.providers.common import accepts_temperature, normalize_finish_reason, sanitize_schema

_DEFAULT_MAX_TOKENS = 8192
_WEB_SEARCH_TOOL_IDS = ("webSearch", "web_search")
_RETRYABLE_ERROR_TYPES = ("overloaded_error", "rate_limit_error", "api_error")


def _to_anthropic_content(msg: Message) -> list[dict]:
    blocks: list[dict] = []
    for part in msg.content:
        if isinstance(part, TextPart):
            if part.text:
                blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, ThinkingPart):
            if part.redacted_data:
                blocks.append({"type": "redacted_thinking", "data": part.redacted_data})
            elif part.signature:
                blocks.append({"type": "thinking", "thinking": part.text, "signature": part.signature})
        elif isinstance(part, ImagePart):
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": part.mime_type, "data": part.data},
                }
            )
        elif isinstance(part, ToolCallPart):
            blocks.append({"type": "tool_use", "id": part.id, "name": part.name, "input": part.arguments})
        elif isinstance(part, ToolResultPart):
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": part.tool_call_id,
                "content": part.content,
            }
            if part.is_error:
                block["is_error"] = True
            blocks.append(block)
    return blocks


def _to_anthropic_messages(messages: Sequence[Message]) -> list[dict]:
    """Tool results travel as user content; adjacent same-role turns are merged."""
    out: list[dict] = []
    for msg in messages:
        role = "assistant" if msg.role == "assistant" else "user"
        content = _to_anthropic_content(msg)
        if not content:
            continue
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(content)
        else:
            out.append({"role": role, "content": content})
    return out


def _to_anthropic_tools(tools: Sequence[ToolDefinition]) -> list[dict]:
    out: list[dict] = []
    for t in tools:
        if t.builtin:
            if t.id in _WEB_SEARCH_TOOL_IDS:
                out.append({"type": "web_search_20250305", "name": "web_search"})
            else:
                logger.warning(f"Anthropic has no built-in tool {t.id!r}; skipping")
            continue
        out.append(
            {
                "name": t.function_name,
                "description": t.description,
                "input_schema": sanitize_schema(t.parameters, "anthropic"),
            }
        )
    return out


def _citation(raw: dict[str, Any]) -> Citation | None:
    url = raw.get("url") or raw.get("document_title")
    if not url:
        return None
    return Citation(source=url, title=raw.get("title"), text=raw.get("cited_text"))


class AnthropicAdapter(ProviderAdapter):
    provider = "anthropic"
    default_base_url = "https://api.anthropic.com/v1"

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
            "max_tokens": options.max_tokens or model.max_output_tokens or _DEFAULT_MAX_TOKENS,
            "messages": _to_anthropic_messages(messages),
            "stream": stream,
        }
        system = system_prompt
        if options.response_format == "json" and not options.response_schema:
            system = f"{system}\n\nRespond with a single JSON object only.".strip()
        if system:
            body["system"] = system

        if model.thinking_enabled:
            body["thinking"] = {"type": "enabled", "budget_tokens": max(1024, model.thinking_budget or 1024)}
        elif options.temperature is not None and accepts_temperature(model):
            body["temperature"] = options.temperature

        anthropic_tools = _to_anthropic_tools(tools) if model.supports_tools else []
        if options.response_schema:
            anthropic_tools.append(
                {
                    "name": STRUCTURED_OUTPUT_TOOL,
                    "description": "Return the final answer as structured data.",
                    "input_schema": sanitize_schema(options.response_schema, "anthropic"),
                }
            )
            body["tool_choice"] = {"type": "tool", "name": STRUCTURED_OUTPUT_TOOL}
        elif anthropic_tools and options.tool_choice:
            body["tool_choice"] = {"type": {"required": "any"}.get(options.tool_choice, options.tool_choice)}
        if anthropic_tools:
            body["tools"] = anthropic_tools

        logger.debug(
            f"anthropic request: model={model.vendor_model}, messages={len(body['messages'])}, "
            f"tools={len(anthropic_tools)}, stream={stream}"
        )
        return WireRequest(
            provider=self.provider,
            operation="messages",
            url=f"{self.base_url(model)}/messages",
            body=body,
            stream=stream,
        )

    def parse_stream_chunk(self, raw: str | dict[str, Any]) -> list[Fragment]:
        data = self.load_chunk(raw)
        if data is None:
            return []
        if not isinstance(data, dict):
            return [data]

        event_type = data.get("type")
        if event_type == "error":
            self._raise_error(data.get("error") or {})

        if event_type == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            return [UsageFragment(input_tokens=usage.get("input_tokens"))] if usage else []

        index = data.get("index", 0)
        if event_type == "content_block_start":
            block = data.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "tool_use":
                return [ToolCallDelta(index=index, id=block.get("id"), name=block.get("name"))]
            if block_type == "text" and block.get("text"):
                return [TextDelta(block["text"])]
            if block_type == "thinking" and (block.get("thinking") or block.get("signature")):
                return [ThinkingDelta(block.get("thinking", ""), index, block.get("signature"))]
            if block_type == "redacted_thinking":
                return [ThinkingDelta("", index, redacted_data=block.get("data"))]
            if block_type == "web_search_tool_result":
                citations = [c for c in map(_citation, block.get("content") or []) if c]
                return [GroundingFragment(tuple(citations))] if citations else []
            return []

        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [TextDelta(delta.get("text", ""))] if delta.get("text") else []
            if delta_type == "input_json_delta":
                return [ToolCallDelta(index=index, arguments=delta.get("partial_json", ""))]
            if delta_type == "thinking_delta":
                return [ThinkingDelta(delta["thinking"], index)] if delta.get("thinking") else []
            if delta_type == "signature_delta":
                return [ThinkingDelta("", index, delta.get("signature"))]
            if delta_type == "citations_delta":
                citation = _citation(delta.get("citation") or {})
                return [GroundingFragment((citation,))] if citation else []
            return []

        if event_type == "message_delta":
            fragments: list[Fragment] = []
            reason = normalize_finish_reason((data.get("delta") or {}).get("stop_reason"))
            usage = data.get("usage") or {}
            if usage.get("output_tokens") is not None:
                fragments.append(UsageFragment(output_tokens=usage["output_tokens"]))
            if reason:
                fragments.append(FinishFragment(reason))
            return fragments

        # ping, content_block_stop, message_stop
        return []

    def parse_response(self, raw: dict[str, Any]) -> NormalizedResponse:
        if raw.get("type") == "error":
            self._raise_error(raw.get("error") or {})
        fragments: list[Fragment] = []
        calls = 0
        for position, block in enumerate(raw.get("content") or []):
            block_type = block.get("type")
            if block_type == "text":
                fragments.append(TextDelta(block.get("text", "")))
                citations = [c for c in map(_citation, block.get("citations") or []) if c]
                if citations:
                    fragments.append(GroundingFragment(tuple(citations)))
            elif block_type == "thinking":
                fragments.append(ThinkingDelta(block.get("thinking", ""), position, block.get("signature")))
            elif block_type == "redacted_thinking":
                fragments.append(ThinkingDelta("", position, redacted_data=block.get("data")))
            elif block_type == "tool_use":
                fragments.append(
                    ToolCallDelta(
                        index=calls,
                        id=block.get("id"),
                        name=block.get("name"),
                        arguments=json.dumps(block.get("input") or {}),
                        complete=True,
                    )
                )
                calls += 1
        usage = raw.get("usage") or {}
        if usage:
            fragments.append(UsageFragment(usage.get("input_tokens"), usage.get("output_tokens")))
        reason = normalize_finish_reason(raw.get("stop_reason"))
        if reason:
            fragments.append(FinishFragment(reason))
        return NormalizedResponse.collect(fragments)

    def _raise_error(self, error: dict[str, Any]) -> None:
        error_type = error.get("type", "error")
        raise UpstreamProviderError(
            self.provider,
            error.get("message") or error_type,
            retryable=error_type in _RETRYABLE_ERROR_TYPES,
            code="RATE_LIMIT_EXCEEDED" if error_type == "rate_limit_error" else None,
            details=error,
        )
