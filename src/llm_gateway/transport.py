"""Outbound wire transports.

Adapters describe *what* to send as a ``WireRequest``; a transport owns the
authenticated client and knows *how* to send it. Transient failures are
retried with tenacity while the request is being opened. Once the first
byte of a stream has been handed to the caller nothing is retried.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol, runtime_checkable

import anthropic
import httpx
import openai
from loguru import logger
from tenacity import AsyncRetrying

from llm_gateway.app_config import DEFAULT_API_KEY_ENV, RetryPolicy, RuntimeEnv
from llm_gateway.errors import ApiKeyMissingError, UnsupportedProviderError, UpstreamProviderError
from llm_gateway.models import ModelConfig
from llm_gateway.provider import canonical_provider
from llm_gateway.providers.base import WireRequest
from llm_gateway.providers.common import default_retry_kwargs


@runtime_checkable
class ProviderTransport(Protocol):
    def stream(self, request: WireRequest) -> AsyncIterator[str | dict[str, Any]]: ...

    async def send(self, request: WireRequest) -> dict[str, Any]: ...

    async def aclose(self) -> None: ...


def _retrying(policy: RetryPolicy) -> AsyncRetrying:
    return AsyncRetrying(
        **default_retry_kwargs(policy.attempts, policy.min_wait_seconds, policy.max_wait_seconds)
    )


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each server-sent event."""
    data: list[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield "\n".join(data)


def _sdk_error(provider: str, ex: Exception) -> UpstreamProviderError:
    if isinstance(ex, (openai.APIStatusError, anthropic.APIStatusError)):
        body = ex.body if isinstance(ex.body, str) else str(ex.body or ex.message)
        return UpstreamProviderError.from_status(provider, ex.status_code, body)
    if isinstance(ex, (openai.APITimeoutError, anthropic.APITimeoutError)):
        return UpstreamProviderError(provider, "request timed out", retryable=True, code="SERVICE_ERROR")
    return UpstreamProviderError(provider, f"connection failed: {ex}", retryable=True, code="SERVICE_ERROR")


_SDK_ERRORS = (openai.APIError, anthropic.APIError)


class OpenAITransport:
    """Chat completions and Responses API calls through the openai SDK."""

    def __init__(self, client: openai.AsyncOpenAI, *, retry: RetryPolicy | None = None) -> None:
        self._client = client
        self._retry = retry or RetryPolicy()

    async def _create(self, request: WireRequest) -> Any:
        endpoint = self._client.responses if request.operation == "responses" else self._client.chat.completions
        async for attempt in _retrying(self._retry):
            with attempt:
                try:
                    return await endpoint.create(**request.body)
                except _SDK_ERRORS as ex:
                    raise _sdk_error(request.provider, ex) from ex

    async def stream(self, request: WireRequest) -> AsyncIterator[dict[str, Any]]:
        stream = await self._create(request)
        try:
            async for event in stream:
                yield event.model_dump(exclude_none=True)
        except _SDK_ERRORS as ex:
            raise _sdk_error(request.provider, ex) from ex
        finally:
            await stream.close()

    async def send(self, request: WireRequest) -> dict[str, Any]:
        response = await self._create(request)
        return response.model_dump(exclude_none=True)

    async def aclose(self) -> None:
        await self._client.close()


class AnthropicTransport:
    def __init__(self, client: anthropic.AsyncAnthropic, *, retry: RetryPolicy | None = None) -> None:
        self._client = client
        self._retry = retry or RetryPolicy()

    async def _create(self, request: WireRequest) -> Any:
        async for attempt in _retrying(self._retry):
            with attempt:
                try:
                    return await self._client.messages.create(**request.body)
                except _SDK_ERRORS as ex:
                    raise _sdk_error(request.provider, ex) from ex

    async def stream(self, request: WireRequest) -> AsyncIterator[dict[str, Any]]:
        stream = await self._create(request)
        try:
            async for event in stream:
                yield event.model_dump(exclude_none=True)
        except _SDK_ERRORS as ex:
            raise _sdk_error(request.provider, ex) from ex
        finally:
            await stream.close()

    async def send(self, request: WireRequest) -> dict[str, Any]:
        message = await self._create(request)
        return message.model_dump(exclude_none=True)

    async def aclose(self) -> None:
        await self._client.close()


class HttpTransport:
    """Plain JSON-over-HTTP with SSE streaming, for vendors called without an SDK."""

    def __init__(
        self,
        provider: str,
        auth_headers: Mapping[str, str],
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._provider = provider
        self._auth_headers = dict(auth_headers)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._retry = retry or RetryPolicy()

    async def _open(self, request: WireRequest, *, stream: bool) -> httpx.Response:
        async for attempt in _retrying(self._retry):
            with attempt:
                return await self._send_once(request, stream=stream)

    async def _send_once(self, request: WireRequest, *, stream: bool) -> httpx.Response:
        headers = {"Content-Type": "application/json", **self._auth_headers, **request.headers}
        if stream:
            headers["Accept"] = "text/event-stream"
        http_request = self._client.build_request("POST", request.url, headers=headers, json=request.body)
        try:
            response = await self._client.send(http_request, stream=stream)
        except httpx.TimeoutException as ex:
            raise UpstreamProviderError(self._provider, "request timed out", retryable=True, code="SERVICE_ERROR") from ex
        except httpx.HTTPError as ex:
            raise UpstreamProviderError(
                self._provider, f"connection failed: {ex}", retryable=True, code="SERVICE_ERROR"
            ) from ex

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.warning(f"{self._provider}: HTTP {response.status_code} from {request.url}")
            raise UpstreamProviderError.from_status(self._provider, response.status_code, body)
        return response

    async def stream(self, request: WireRequest) -> AsyncIterator[str]:
        response = await self._open(request, stream=True)
        try:
            async for data in iter_sse_data(response.aiter_lines()):
                yield data
        except httpx.HTTPError as ex:
            raise UpstreamProviderError(self._provider, f"stream interrupted: {ex}") from ex
        finally:
            await response.aclose()

    async def send(self, request: WireRequest) -> dict[str, Any]:
        response = await self._open(request, stream=False)
        try:
            return response.json()
        except ValueError as ex:
            raise UpstreamProviderError(
                self._provider, "response is not valid JSON", status_code=response.status_code
            ) from ex

    async def aclose(self) -> None:
        await self._client.aclose()


class TransportPool:
    """Lazily built transports, one per (provider, base URL, key variable)."""

    def __init__(self, env: RuntimeEnv, *, retry: RetryPolicy | None = None, timeout: float = 120.0) -> None:
        self._env = env
        self._retry = retry or RetryPolicy()
        self._timeout = timeout
        self._transports: dict[tuple[str, str | None, str], ProviderTransport] = {}

    def for_model(self, model: ModelConfig) -> ProviderTransport:
        provider = canonical_provider(model.provider)
        env_var = model.api_key_env or DEFAULT_API_KEY_ENV.get(provider)
        if env_var is None:
            raise UnsupportedProviderError(model.provider)
        cache_key = (provider, model.url, env_var)
        transport = self._transports.get(cache_key)
        if transport is None:
            api_key = self._env.api_key(env_var)
            if not api_key:
                raise ApiKeyMissingError(provider, env_var)
            transport = self._create(provider, model.url, api_key)
            self._transports[cache_key] = transport
            logger.debug(f"Created {type(transport).__name__} for {provider} ({model.url or 'default url'})")
        return transport

    def _create(self, provider: str, url: str | None, api_key: str) -> ProviderTransport:
        if provider in ("openai", "openai-responses"):
            client = openai.AsyncOpenAI(api_key=api_key, base_url=url, max_retries=0, timeout=self._timeout)
            return OpenAITransport(client, retry=self._retry)
        if provider == "anthropic":
            client = anthropic.AsyncAnthropic(api_key=api_key, base_url=url, max_retries=0, timeout=self._timeout)
            return AnthropicTransport(client, retry=self._retry)
        if provider == "google":
            return HttpTransport(provider, {"x-goog-api-key": api_key}, timeout=self._timeout, retry=self._retry)
        if provider == "mistral":
            return HttpTransport(
                provider, {"Authorization": f"Bearer {api_key}"}, timeout=self._timeout, retry=self._retry
            )
        raise UnsupportedProviderError(provider)

    async def aclose(self) -> None:
        transports = list(self._transports.values())
        self._transports.clear()
        for transport in transports:
            await transport.aclose()
