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
    Fragment,
    FinishFragment,
    GroundingFragment,
    NormalizedResponse,
    ProviderAdapter,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    UsageFragment,
    WireRequest,
)
from llm_gateway.providers.common import accepts_temperature, normalize_finish_reason, sanitize_schema, strict_schema

_WEB_SEARCH_TOOL_IDS = ("webSearch", "web_search")


def _image_url(part: ImagePart) -> str:
    return f"data:{part.mime_type};base64,{part.data}"


def _to_openai_messages(system_prompt: str, messages: Sequence[Message]) -> list[dict]:
    """Convert normalized messages to chat-completions format."""
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if msg.role == "assistant":
            oai_msg: dict = {"role": "assistant", "content": msg.text or None}
            tool_calls = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in msg.tool_calls
            ]
            if tool_calls:
                oai_msg["tool_calls"] = tool_calls
            out.append(oai_msg)

        elif msg.role == "tool":
            for result in msg.tool_results:
                out.append({"role": "tool", "tool_call_id": result.tool_call_id, "content": result.content})

        else:
            if not msg.images:
                out.append({"role": "user", "content": msg.text})
                continue
            blocks: list[dict] = []
            for part in msg.content:
                if isinstance(part, TextPart):
                    blocks.append({"type": "text", "text": part.text})
                elif isinstance(part, ImagePart):
                    blocks.append({"type": "image_url", "image_url": {"url": _image_url(part)}})
            out.append({"role": "user", "content": blocks})

    return out


def _to_openai_tools(tools: Sequence[ToolDefinition]) -> list[dict]:
    """Externally-tagged function descriptors."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.function_name,
                "description": t.description,
                "parameters": sanitize_schema(t.parameters, "openai"),
            },
        }
        for t in tools
        if not t.builtin
    ]


def _annotation_citations(annotations: list[dict] | None) -> list[Citation]:
    citations: list[Citation] = []
    for annotation in annotations or []:
        if annotation.get("type") != "url_citation":
            continue
        detail = annotation.get("url_citation") or annotation
        if not detail.get("url"):
            continue
        citations.append(
            Citation(
                source=detail["url"],
                title=detail.get("title"),
                start=detail.get("start_index"),
                end=detail.get("end_index"),
            )
        )
    return citations


class OpenAIChatAdapter(ProviderAdapter):
    provider = "openai"
    default_base_url = "https://api.openai.com/v1"
    max_tokens_param = "max_tokens"
    reasoning_max_tokens_param = "max_completion_tokens"
    required_tool_choice = "required"

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
            "messages": self._convert_messages(system_prompt, messages),
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}

        max_tokens = options.max_tokens or model.max_output_tokens
        if max_tokens and max_tokens > 0:
            body[self._max_tokens_param(model)] = max_tokens

        if options.temperature is not None and accepts_temperature(model):
            body["temperature"] = options.temperature

        self._apply_tools(body, model, tools, options)
        self._apply_response_format(body, options)

        logger.debug(
            f"{self.provider} request: model={model.vendor_model}, messages={len(body['messages'])}, "
            f"tools={len(body.get('tools', []))}, stream={stream}"
        )
        return WireRequest(
            provider=self.provider,
            operation="chat.completions",
            url=f"{self.base_url(model)}/chat/completions",
            body=body,
            stream=stream,
        )

    def _convert_messages(self, system_prompt: str, messages: Sequence[Message]) -> list[dict]:
        return _to_openai_messages(system_prompt, messages)

    def _max_tokens_param(self, model: ModelConfig) -> str:
        return self.max_tokens_param if accepts_temperature(model) else self.reasoning_max_tokens_param

    def _apply_tools(
        self,
        body: dict[str, Any],
        model: ModelConfig,
        tools: Sequence[ToolDefinition],
        options: ChatOptions,
    ) -> None:
        if not model.supports_tools:
            return
        web_search = [t for t in tools if t.builtin and t.id in _WEB_SEARCH_TOOL_IDS]
        function_tools = _to_openai_tools(tools)
        if web_search:
            body["web_search_options"] = {}
            if function_tools:
                logger.warning(
                    f"Web search cannot be combined with function tools; skipping "
                    f"{len(function_tools)} function tool(s)"
                )
            return
        if not function_tools:
            return
        body["tools"] = function_tools
        if options.tool_choice == "required":
            body["tool_choice"] = self.required_tool_choice
        elif options.tool_choice:
            body["tool_choice"] = options.tool_choice

    def _apply_response_format(self, body: dict[str, Any], options: ChatOptions) -> None:
        if options.response_schema:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": strict_schema(options.response_schema), "strict": True},
            }
        elif options.response_format == "json":
            body["response_format"] = {"type": "json_object"}

    def parse_stream_chunk(self, raw: str | dict[str, Any]) -> list[Fragment]:
        data = self.load_chunk(raw)
        if data is None:
            return []
        if not isinstance(data, dict):
            return [data]
        self._raise_for_error(data)

        fragments: list[Fragment] = []
        usage = data.get("usage")
        choices = data.get("choices") or []
        choice = choices[0] if choices else None
        if choice is not None:
            delta = choice.get("delta") or {}
            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if isinstance(reasoning, str) and reasoning:
                fragments.append(ThinkingDelta(reasoning))
            fragments.extend(self._content_fragments(delta.get("content")))
            for tc in delta.get("tool_calls") or []:
                function = tc.get("function") or {}
                arguments = function.get("arguments") or ""
                if not isinstance(arguments, str):
                    arguments = json.dumps(arguments)
                fragments.append(
                    ToolCallDelta(
                        index=tc.get("index", 0),
                        id=tc.get("id") or None,
                        name=function.get("name") or None,
                        arguments=arguments,
                        complete=self._complete_tool_calls(),
                    )
                )
            citations = _annotation_citations(delta.get("annotations"))
            if citations:
                fragments.append(GroundingFragment(tuple(citations)))
            reason = normalize_finish_reason(choice.get("finish_reason"))
            if reason:
                fragments.append(FinishFragment(reason))
        if usage:
            fragments.append(UsageFragment(usage.get("prompt_tokens"), usage.get("completion_tokens")))
        return fragments

    def parse_response(self, raw: dict[str, Any]) -> NormalizedResponse:
        self._raise_for_error(raw)
        fragments: list[Fragment] = []
        choices = raw.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            reasoning = message.get("reasoning_content") or message.get("reasoning")
            if isinstance(reasoning, str) and reasoning:
                fragments.append(ThinkingDelta(reasoning))
            fragments.extend(self._content_fragments(message.get("content")))
            for index, tc in enumerate(message.get("tool_calls") or []):
                function = tc.get("function") or {}
                arguments = function.get("arguments") or ""
                if not isinstance(arguments, str):
                    arguments = json.dumps(arguments)
                fragments.append(ToolCallDelta(index, tc.get("id"), function.get("name"), arguments, complete=True))
            citations = _annotation_citations(message.get("annotations"))
            if citations:
                fragments.append(GroundingFragment(tuple(citations)))
            reason = normalize_finish_reason(choices[0].get("finish_reason"))
            if reason:
                fragments.append(FinishFragment(reason))
        usage = raw.get("usage")
        if usage:
            fragments.append(UsageFragment(usage.get("prompt_tokens"), usage.get("completion_tokens")))
        return NormalizedResponse.collect(fragments)

    def _content_fragments(self, content: Any) -> list[Fragment]:
        if isinstance(content, str) and content:
            return [TextDelta(content)]
        return []

    def _complete_tool_calls(self) -> bool:
        return False

    def _raise_for_error(self, data: dict[str, Any]) -> None:
        error = data.get("error")
        if not error:
            return
        if isinstance(error, dict):
            message = error.get("message") or json.dumps(error)
            code = error.get("code")
        else:
            message, code = str(error), None
        retryable = code in ("rate_limit_exceeded", "server_error")
        raise UpstreamProviderError(self.provider, message, retryable=retryable, details=error)

