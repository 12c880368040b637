from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from app.core.config import Settings
from app.services.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class StoreCallPolicy:
    """Bounded timeout plus exactly one retry for transient store failures."""

    timeout_seconds: float = 5.0
    backoff_seconds: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> StoreCallPolicy:
        return cls(
            timeout_seconds=settings.store_timeout_seconds,
            backoff_seconds=settings.store_retry_backoff_seconds,
        )

    async def __call__(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        name = getattr(operation, "__name__", "store call")
        for attempt in (1, 2):
            try:
                return await asyncio.wait_for(operation(*args, **kwargs), timeout=self.timeout_seconds)
            except (StoreUnavailableError, asyncio.TimeoutError) as exc:
                if attempt == 2:
                    raise StoreUnavailableError(f"{name} failed after retry: {exc or 'timeout'}") from exc
                sleep_for = self.backoff_seconds * (1.0 + random.uniform(0.0, 0.5))
                logger.warning("store call %s failed: %s; retry in %.2fs", name, exc or "timeout", sleep_for)
                await asyncio.sleep(sleep_for)
        raise AssertionError("unreachable")
