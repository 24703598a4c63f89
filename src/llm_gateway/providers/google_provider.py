from __future__ import annotations

import hashlib
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
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
)
from llm_gateway.providers.base import (
    Citation,
    FinishFragment,
    Fragment,
    GroundingFragment,
    ImageFragment,
    NormalizedResponse,
    ProviderAdapter,
    SafetyFragment,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    UsageFragment,
    WireRequest,
)
from llm_gateway.providers.common import (
    accepts_temperature,
    normalize_finish_reason,
    parse_tool_result_content,
    sanitize_schema,
)

_GROUNDING_TOOL_IDS = ("googleSearch", "google_search")
_FLAGGED_PROBABILITIES = ("HIGH",)


def _to_google_parts(msg: Message) -> list[dict]:
    parts: list[dict] = []
    for part in msg.content:
        if isinstance(part, TextPart):
            if part.text:
                parts.append({"text": part.text})
        elif isinstance(part, ImagePart):
            parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data}})
        elif isinstance(part, ToolCallPart):
            call: dict[str, Any] = {"functionCall": {"name": part.name, "args": part.arguments}}
            if part.signature:
                call["thoughtSignature"] = part.signature
            parts.append(call)
        elif isinstance(part, ToolResultPart):
            parts.append(
                {
                    "functionResponse": {
                        "name": part.name,
                        "response": parse_tool_result_content(part.content),
                    }
                }
            )
    return parts


def _to_google_contents(messages: Sequence[Message]) -> list[dict]:
    out: list[dict] = []
    for msg in messages:
        role = "model" if msg.role == "assistant" else "user"
        parts = _to_google_parts(msg)
        if not parts:
            continue
        if out and out[-1]["role"] == role:
            out[-1]["parts"].extend(parts)
        else:
            out.append({"role": role, "parts": parts})
    return out


def _to_google_tools(tools: Sequence[ToolDefinition]) -> list[dict]:
    """Google cannot combine search grounding with function declarations; grounding wins."""
    grounding = [t for t in tools if t.builtin and t.id in _GROUNDING_TOOL_IDS]
    functions = [t for t in tools if not t.builtin]
    if grounding:
        if functions:
            logger.warning(
                "Google API limitation: cannot combine google_search with function calling. "
                f"Skipping {len(functions)} function tool(s): {', '.join(t.function_name for t in functions)}"
            )
        return [{"google_search": {}}]
    if not functions:
        return []
    return [
        {
            "functionDeclarations": [
                {
                    "name": t.function_name,
                    "description": t.description,
                    "parameters": sanitize_schema(t.parameters, "google"),
                }
                for t in functions
            ]
        }
    ]


def _call_id(name: str, arguments: str) -> str:
    # Gemini sends no call ids; identical calls get the same one.
    digest = hashlib.sha1(f"{name}:{arguments}".encode()).hexdigest()
    return f"call_{digest[:12]}"


def _grounding_citations(metadata: dict[str, Any]) -> list[Citation]:
    chunks = metadata.get("groundingChunks") or []
    sources: list[tuple[str, str | None]] = []
    for chunk in chunks:
        web = chunk.get("web") or chunk.get("retrievedContext") or {}
        sources.append((web.get("uri", ""), web.get("title")))

    citations: list[Citation] = []
    for support in metadata.get("groundingSupports") or []:
        segment = support.get("segment") or {}
        for idx in support.get("groundingChunkIndices") or []:
            if 0 <= idx < len(sources) and sources[idx][0]:
                uri, title = sources[idx]
                citations.append(
                    Citation(
                        source=uri,
                        title=title,
                        text=segment.get("text"),
                        start=segment.get("startIndex"),
                        end=segment.get("endIndex"),
                    )
                )
    if not citations:
        citations = [Citation(source=uri, title=title) for uri, title in sources if uri]
    return citations


class GoogleAdapter(ProviderAdapter):
    provider = "google"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

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
        body: dict[str, Any] = {"contents": _to_google_contents(messages)}
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        generation: dict[str, Any] = {}
        max_tokens = options.max_tokens or model.max_output_tokens
        if max_tokens and max_tokens > 0:
            generation["maxOutputTokens"] = max_tokens
        if options.temperature is not None and accepts_temperature(model):
            generation["temperature"] = options.temperature
        if options.response_schema:
            generation["responseMimeType"] = "application/json"
            generation["responseSchema"] = sanitize_schema(options.response_schema, "google")
        elif options.response_format == "json":
            generation["responseMimeType"] = "application/json"
        if model.thinking_enabled:
            generation["thinkingConfig"] = {
                "thinkingBudget": model.thinking_budget if model.thinking_budget else -1,
                "includeThoughts": True,
            }
        if generation:
            body["generationConfig"] = generation

        google_tools = _to_google_tools(tools) if model.supports_tools else []
        if google_tools:
            body["tools"] = google_tools
            has_functions = any("functionDeclarations" in t for t in google_tools)
            if has_functions and options.tool_choice in ("required", "none"):
                mode = "ANY" if options.tool_choice == "required" else "NONE"
                body["toolConfig"] = {"functionCallingConfig": {"mode": mode}}

        method = "streamGenerateContent?alt=sse" if stream else "generateContent"
        logger.debug(
            f"google request: model={model.vendor_model}, contents={len(body['contents'])}, "
            f"tools={len(google_tools)}, stream={stream}"
        )
        return WireRequest(
            provider=self.provider,
            operation="generateContent",
            url=f"{self.base_url(model)}/models/{model.vendor_model}:{method}",
            body=body,
            stream=stream,
        )

    def parse_stream_chunk(self, raw: str | dict[str, Any]) -> list[Fragment]:
        data = self.load_chunk(raw)
        if data is None:
            return []
        if not isinstance(data, dict):
            return [data]
        return self._fragments(data)

    def parse_response(self, raw: dict[str, Any]) -> NormalizedResponse:
        return NormalizedResponse.collect(self._fragments(raw))

    def _fragments(self, data: dict[str, Any]) -> list[Fragment]:
        error = data.get("error")
        if error:
            raise UpstreamProviderError(
                self.provider,
                error.get("message", "error") if isinstance(error, dict) else str(error),
                status_code=error.get("code") if isinstance(error, dict) else None,
                details=error,
            )

        fragments: list[Fragment] = []
        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            fragments.append(SafetyFragment("prompt", f"Prompt blocked: {feedback['blockReason']}"))

        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        calls = 0
        for part in (candidate.get("content") or {}).get("parts") or []:
            thought = part.get("thought") is True
            if part.get("text"):
                fragments.append(ThinkingDelta(part["text"]) if thought else TextDelta(part["text"]))
            inline = part.get("inlineData")
            if inline and str(inline.get("mimeType", "")).startswith("image/") and not thought:
                fragments.append(ImageFragment(inline["mimeType"], inline.get("data", "")))
            function_call = part.get("functionCall")
            if function_call:
                if not function_call.get("name"):
                    logger.debug(f"Google stream: ignoring partial function call {function_call}")
                    continue
                arguments = json.dumps(function_call.get("args") or {}, sort_keys=True)
                fragments.append(
                    ToolCallDelta(
                        index=calls,
                        id=_call_id(function_call["name"], arguments),
                        name=function_call["name"],
                        arguments=arguments,
                        complete=True,
                        signature=part.get("thoughtSignature"),
                    )
                )
                calls += 1

        metadata = candidate.get("groundingMetadata") or data.get("groundingMetadata")
        if metadata:
            citations = _grounding_citations(metadata)
            if citations:
                fragments.append(GroundingFragment(tuple(citations)))

        for rating in candidate.get("safetyRatings") or []:
            if rating.get("blocked") or rating.get("probability") in _FLAGGED_PROBABILITIES:
                category = rating.get("category", "UNKNOWN")
                fragments.append(SafetyFragment(category, f"probability={rating.get('probability', 'UNKNOWN')}"))

        usage = data.get("usageMetadata")
        if usage:
            fragments.append(UsageFragment(usage.get("promptTokenCount"), usage.get("candidatesTokenCount")))

        reason = candidate.get("finishReason")
        if reason:
            # Gemini reports STOP even when the response carries function calls.
            fragments.append(FinishFragment("tool_calls" if calls else normalize_finish_reason(reason) or "stop"))
        return fragments
