from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from llm_gateway.models import Message, ModelConfig
from llm_gateway.providers.base import Fragment, TextDelta, ThinkingDelta
from llm_gateway.providers.openai_provider import OpenAIChatAdapter, _to_openai_messages


def _to_mistral_messages(system_prompt: str, messages: Sequence[Message]) -> list[dict]:
    out = _to_openai_messages(system_prompt, messages)
    # Mistral takes the data URL directly rather than an {"url": ...} object.
    for msg in out:
        content = msg.get("content")
        if isinstance(content, list):
            for block in content:
                if block.get("type") == "image_url" and isinstance(block.get("image_url"), dict):
                    block["image_url"] = block["image_url"]["url"]
    return out


class MistralAdapter(OpenAIChatAdapter):
    """Chat completions dialect used by Mistral.

    Differences from OpenAI: ``max_tokens`` for every model, ``any`` to force a
    tool, whole tool calls per chunk, and content that may be a list of typed
    chunks (``text`` / ``thinking``) for reasoning models.
    """

    provider = "mistral"
    default_base_url = "https://api.mistral.ai/v1"
    required_tool_choice = "any"

    def _convert_messages(self, system_prompt: str, messages: Sequence[Message]) -> list[dict]:
        return _to_mistral_messages(system_prompt, messages)

    def _max_tokens_param(self, model: ModelConfig) -> str:
        return "max_tokens"

    def _complete_tool_calls(self) -> bool:
        return True

    def _content_fragments(self, content: Any) -> list[Fragment]:
        if isinstance(content, str):
            return [TextDelta(content)] if content else []
        fragments: list[Fragment] = []
        for chunk in content or []:
            if not isinstance(chunk, dict):
                continue
            if chunk.get("type") == "text" and chunk.get("text"):
                fragments.append(TextDelta(chunk["text"]))
            elif chunk.get("type") == "thinking":
                for sub in chunk.get("thinking") or []:
                    if isinstance(sub, dict) and sub.get("text"):
                        fragments.append(ThinkingDelta(sub["text"]))
        return fragments

