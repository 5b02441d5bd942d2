"""Bounded pool in front of the completion client."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from ai_translate.config import PoolConfig
from ai_translate.errors import PoolExhaustedError
from ai_translate.translator.llm import LLMClient

logger = structlog.get_logger()

T = TypeVar("T")


class ClientPool:
    """Run client calls with at most ``max_connections`` in flight.

    Callers waiting for a slot count as pending. A submission made while
    ``max_pending_acquires`` callers are already pending fails immediately
    with PoolExhaustedError, and a pending caller gives up after
    ``acquire_timeout_seconds``.
    """

    def __init__(self, client: LLMClient, config: Optional[PoolConfig] = None):
        self.client = client
        self.config = config or PoolConfig()
        self._slots = asyncio.Semaphore(self.config.max_connections)
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    async def submit(self, call: Callable[[LLMClient], Awaitable[T]]) -> T:
        if self._pending >= self.config.max_pending_acquires:
            raise PoolExhaustedError(
                f"Too many pending acquires: {self._pending} "
                f"(max: {self.config.max_pending_acquires})"
            )

        self._pending += 1
        try:
            await asyncio.wait_for(
                self._slots.acquire(), timeout=self.config.acquire_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise PoolExhaustedError(
                f"Timed out after {self.config.acquire_timeout_seconds}s acquiring a connection"
            ) from e
        finally:
            self._pending -= 1

        try:
            return await call(self.client)
        finally:
            self._slots.release()
