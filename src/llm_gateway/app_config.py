from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from llm_gateway.errors import ModelNotAvailableError
from llm_gateway.models import ModelConfig, ToolDefinition
from llm_gateway.throttle import ThrottleConfig

DEFAULT_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "openai-responses": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
}


@dataclass(frozen=True)
class StreamLimits:
    max_text_chars: int = 1_000_000
    max_tool_calls: int = 32
    max_tool_argument_chars: int = 200_000


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    min_wait_seconds: float = 1.0
    max_wait_seconds: float = 20.0


@dataclass(frozen=True)
class GatewaySettings:
    """Per-turn knobs. A turn works from one snapshot for its whole lifetime."""

    max_tool_iterations: int = 10
    tool_timeout_seconds: float = 60.0
    turn_timeout_seconds: float | None = None
    throttle_acquire_timeout_seconds: float | None = 30.0
    max_tool_result_chars: int = 40_000
    stream_limits: StreamLimits = field(default_factory=StreamLimits)
    default_temperature: float | None = None
    default_max_tokens: int | None = None


@dataclass(frozen=True)
class GatewayConfig:
    default_model: str | None
    models: tuple[ModelConfig, ...]
    tools: tuple[ToolDefinition, ...]
    throttle: ThrottleConfig
    settings: GatewaySettings
    retry: RetryPolicy
    http_timeout_seconds: float
    system_prompt: str
    log_level: str
    log_consumers: list | None

    def model(self, model_id: str | None = None) -> ModelConfig:
        wanted = model_id or self.default_model
        for model in self.models:
            if wanted is None or model.id == wanted:
                return model
        raise ModelNotAvailableError(wanted)

    def tool(self, tool_id: str) -> ToolDefinition | None:
        return next((t for t in self.tools if t.id == tool_id), None)


@dataclass(frozen=True)
class RuntimeEnv:
    api_keys: Mapping[str, str]

    def api_key(self, env_var: str) -> str | None:
        return self.api_keys.get(env_var) or None


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_int(value: object) -> int | None:
    return None if value is None or value == "" else int(value)


def _optional_float(value: object) -> float | None:
    return None if value is None or value == "" else float(value)


def parse_model(entry: dict[str, Any]) -> ModelConfig:
    supports_temperature = entry.get("SupportsTemperature")
    return ModelConfig(
        id=str(entry["Id"]),
        provider=str(entry.get("Provider", "openai")).strip().lower(),
        model_id=str(entry.get("ModelId", "")),
        url=entry.get("Url") or None,
        api_key_env=entry.get("ApiKeyEnv") or None,
        max_output_tokens=_optional_int(entry.get("MaxOutputTokens")),
        supports_temperature=None if supports_temperature is None else _to_bool(supports_temperature),
        supports_tools=_to_bool(entry.get("SupportsTools", True), default=True),
        thinking_enabled=_to_bool(entry.get("ThinkingEnabled", False)),
        thinking_budget=int(entry.get("ThinkingBudget", 0)),
        concurrency=_optional_int(entry.get("Concurrency")),
    )


def parse_tool(entry: dict[str, Any]) -> ToolDefinition:
    return ToolDefinition(
        id=str(entry["Id"]),
        name=str(entry.get("Name", "")),
        description=str(entry.get("Description", "")),
        parameters=entry.get("Parameters") or {"type": "object", "properties": {}},
        timeout_seconds=_optional_float(entry.get("TimeoutSeconds")),
        concurrency=_optional_int(entry.get("Concurrency")),
        builtin=_to_bool(entry.get("Builtin", False)),
        endpoint=entry.get("Endpoint") or None,
        passthrough=_to_bool(entry.get("Passthrough", False)),
    )


def parse_throttle(config: dict, models: tuple[ModelConfig, ...], tools: tuple[ToolDefinition, ...]) -> ThrottleConfig:
    section = config.get("Throttle", {})
    model_limits = {m.id: m.concurrency for m in models if m.concurrency is not None}
    model_limits.update({str(k): int(v) for k, v in section.get("Models", {}).items()})
    tool_limits = {t.id: t.concurrency for t in tools if t.concurrency is not None}
    tool_limits.update({str(k): int(v) for k, v in section.get("Tools", {}).items()})
    return ThrottleConfig(
        default_concurrency=int(section.get("DefaultConcurrency", 0) or 0),
        models=model_limits,
        tools=tool_limits,
    )


def parse_settings(config: dict) -> GatewaySettings:
    limits = config.get("StreamLimits", {})
    return GatewaySettings(
        max_tool_iterations=int(config.get("MaxToolIterations", 10)),
        tool_timeout_seconds=float(config.get("ToolTimeoutSeconds", 60)),
        turn_timeout_seconds=_optional_float(config.get("TurnTimeoutSeconds")),
        throttle_acquire_timeout_seconds=_optional_float(config.get("Throttle", {}).get("AcquireTimeoutSeconds", 30)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        stream_limits=StreamLimits(
            max_text_chars=int(limits.get("MaxTextChars", 1_000_000)),
            max_tool_calls=int(limits.get("MaxToolCalls", 32)),
            max_tool_argument_chars=int(limits.get("MaxToolArgumentChars", 200_000)),
        ),
        default_temperature=_optional_float(config.get("DefaultTemperature")),
        default_max_tokens=_optional_int(config.get("DefaultMaxTokens")),
    )


def parse_gateway_config(config: dict) -> GatewayConfig:
    models = tuple(parse_model(m) for m in config.get("Models", []))
    tools = tuple(parse_tool(t) for t in config.get("Tools", []))
    retry = config.get("Retry", {})
    return GatewayConfig(
        default_model=config.get("DefaultModel") or (models[0].id if models else None),
        models=models,
        tools=tools,
        throttle=parse_throttle(config, models, tools),
        settings=parse_settings(config),
        retry=RetryPolicy(
            attempts=int(retry.get("Attempts", 3)),
            min_wait_seconds=float(retry.get("MinWaitSeconds", 1.0)),
            max_wait_seconds=float(retry.get("MaxWaitSeconds", 20.0)),
        ),
        http_timeout_seconds=float(config.get("HttpTimeoutSeconds", 120)),
        system_prompt=str(config.get("SystemPrompt", "")),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(config: GatewayConfig) -> RuntimeEnv:
    names = set(DEFAULT_API_KEY_ENV.values())
    names.update(m.api_key_env for m in config.models if m.api_key_env)
    return RuntimeEnv(api_keys={name: os.environ[name] for name in names if os.environ.get(name)})
