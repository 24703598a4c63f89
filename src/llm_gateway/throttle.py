"""Bounded, FIFO-fair concurrency gate keyed by upstream resource.

Every outbound call (provider request or tool execution) holds a permit for
its key while it runs. Models and tools live in separate key spaces so a
slow tool never consumes a model's budget.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from loguru import logger

from llm_gateway.errors import ThrottleTimeoutError


def model_key(model_id: str) -> str:
    return f"model:{model_id}"


def tool_key(tool_id: str) -> str:
    return f"tool:{tool_id}"


@dataclass(frozen=True)
class ThrottleConfig:
    default_concurrency: int = 0
    models: dict[str, int] = field(default_factory=dict)
    tools: dict[str, int] = field(default_factory=dict)

    def limit_for(self, key: str) -> int:
        kind, _, ident = key.partition(":")
        overrides = self.models if kind == "model" else self.tools if kind == "tool" else {}
        limit = overrides.get(ident)
        if limit is None:
            limit = self.default_concurrency
        return limit if limit and limit > 0 else 0


@dataclass
class ThrottleSlot:
    limit: int = 0
    in_flight: int = 0
    waiters: deque[asyncio.Future[None]] = field(default_factory=deque)

    @property
    def unbounded(self) -> bool:
        return self.limit <= 0

    def has_capacity(self) -> bool:
        return self.unbounded or self.in_flight < self.limit


class Permit:
    def __init__(self, throttler: RequestThrottler, key: str) -> None:
        self._throttler = throttler
        self.key = key
        self.released = False

    def release(self) -> None:
        self._throttler.release(self)

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"<Permit {self.key} {state}>"


class RequestThrottler:
    """Per-key semaphore with FIFO hand-off and acquisition timeouts.

    All state changes happen synchronously between awaits, so the event
    loop serializes concurrent acquire/release calls from different turns.
    """

    def __init__(self, config: ThrottleConfig | None = None) -> None:
        self._config = config or ThrottleConfig()
        self._slots: dict[str, ThrottleSlot] = {}

    @property
    def config(self) -> ThrottleConfig:
        return self._config

    def reconfigure(self, config: ThrottleConfig) -> None:
        self._config = config
        for key, slot in self._slots.items():
            slot.limit = config.limit_for(key)
            self._drain(slot)

    def in_flight(self, key: str) -> int:
        slot = self._slots.get(key)
        return slot.in_flight if slot else 0

    def waiting(self, key: str) -> int:
        slot = self._slots.get(key)
        return sum(1 for w in slot.waiters if not w.done()) if slot else 0

    async def acquire(self, key: str, timeout: float | None = None) -> Permit:
        slot = self._slots.setdefault(key, ThrottleSlot())
        slot.limit = self._config.limit_for(key)

        if slot.has_capacity() and not slot.waiters:
            slot.in_flight += 1
            return Permit(self, key)

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        slot.waiters.append(waiter)
        logger.debug(f"Throttle {key}: queued (in_flight={slot.in_flight}, limit={slot.limit})")
        try:
            if timeout is None:
                await waiter
            else:
                await asyncio.wait_for(waiter, timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as ex:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over as we gave up: pass it on.
                slot.in_flight -= 1
                self._drain(slot)
            else:
                try:
                    slot.waiters.remove(waiter)
                except ValueError:
                    pass
            if isinstance(ex, asyncio.TimeoutError):
                logger.warning(f"Throttle {key}: no slot within {timeout:g}s")
                raise ThrottleTimeoutError(key, timeout or 0) from None
            raise
        return Permit(self, key)

    def release(self, permit: Permit) -> None:
        if permit.released:
            logger.debug(f"Throttle {permit.key}: ignoring double release")
            return
        permit.released = True
        slot = self._slots.get(permit.key)
        if slot is None:
            return
        slot.in_flight = max(0, slot.in_flight - 1)
        self._drain(slot)

    @asynccontextmanager
    async def permit(self, key: str, timeout: float | None = None) -> AsyncIterator[Permit]:
        held = await self.acquire(key, timeout)
        try:
            yield held
        finally:
            held.release()

    def _drain(self, slot: ThrottleSlot) -> None:
        while slot.waiters and slot.has_capacity():
            waiter = slot.waiters.popleft()
            if waiter.done():
                continue
            slot.in_flight += 1
            waiter.set_result(None)
