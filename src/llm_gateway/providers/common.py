from __future__ import annotations

import copy
import json
from typing import Any

from loguru import logger
from tenacity import retry_if_exception, stop_after_attempt, wait_exponential

from llm_gateway.errors import UpstreamProviderError
from llm_gateway.models import ModelConfig

_FINISH_REASON_MAP = {
    "stop": "stop",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "finish_reason_unspecified": "stop",
    "completed": "stop",
    "length": "length",
    "max_tokens": "length",
    "model_length": "length",
    "incomplete": "length",
    "tool_calls": "tool_calls",
    "tool_use": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
    "safety": "content_filter",
    "recitation": "content_filter",
    "blocklist": "content_filter",
    "prohibited_content": "content_filter",
    "refusal": "content_filter",
}

# Google rejects these keywords in function declarations.
_GOOGLE_UNSUPPORTED_SCHEMA_KEYS = (
    "exclusiveMaximum",
    "exclusiveMinimum",
    "title",
    "format",
    "minLength",
    "maxLength",
    "additionalProperties",
    "$schema",
)

# Families that reject a sampling temperature (fixed at 1.0 upstream).
_NO_TEMPERATURE_PREFIXES = ("o1", "o3", "o4", "gpt-5")


def normalize_finish_reason(reason: str | None) -> str | None:
    if not reason:
        return None
    return _FINISH_REASON_MAP.get(reason.lower(), reason.lower())


def accepts_temperature(model: ModelConfig) -> bool:
    if model.supports_temperature is not None:
        return model.supports_temperature
    name = model.vendor_model.lower()
    return not name.startswith(_NO_TEMPERATURE_PREFIXES)


def sanitize_schema(schema: dict[str, Any] | None, provider: str) -> dict[str, Any]:
    if not isinstance(schema, dict) or not schema:
        return {"type": "object", "properties": {}}
    cleaned = copy.deepcopy(schema)
    if provider != "google":
        return cleaned

    def clean(node: Any) -> Any:
        if isinstance(node, list):
            return [clean(item) for item in node]
        if not isinstance(node, dict):
            return node
        for key in _GOOGLE_UNSUPPORTED_SCHEMA_KEYS:
            node.pop(key, None)
        for key, value in list(node.items()):
            if key == "properties" and isinstance(value, dict):
                node[key] = {name: clean(sub) for name, sub in value.items()}
            else:
                node[key] = clean(value)
        return node

    return clean(cleaned)


def strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Deep copy with ``additionalProperties: false`` on every object node."""
    cloned = copy.deepcopy(schema)

    def enforce(node: Any) -> None:
        if not isinstance(node, dict):
            return
        if node.get("type") == "object":
            node["additionalProperties"] = False
        for sub in (node.get("properties") or {}).values():
            enforce(sub)
        items = node.get("items")
        for item in items if isinstance(items, list) else [items]:
            enforce(item)

    enforce(cloned)
    return cloned


def parse_tool_result_content(content: str) -> dict[str, Any]:
    """Google wants an object as a function response."""
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return {"result": content}
    return parsed if isinstance(parsed, dict) else {"result": parsed}


def _is_retryable(ex: BaseException) -> bool:
    return isinstance(ex, UpstreamProviderError) and ex.retryable


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = getattr(exc, "code", None) or (type(exc).__name__ if exc else "Unknown")
    logger.warning(f"{reason}. Retrying in {wait:.1f}s (attempt {attempt})...")


def default_retry_kwargs(attempts: int = 3, min_wait: float = 1.0, max_wait: float = 20.0) -> dict:
    return {
        "retry": retry_if_exception(_is_retryable),
        "wait": wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        "stop": stop_after_attempt(max(1, attempts)),
        "before_sleep": _on_retry,
        "reraise": True,
    }
