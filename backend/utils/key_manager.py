"""
Credential pool executor.

Runs `operation(key)` against an ordered key pool (primary first), rotating on
failure:
  429 / RESOURCE_EXHAUSTED → short pause, then the next key (quota will not
                             recover on the same key within a round)
  503 / 5xx / overloaded   → same key again with exponential backoff + jitter,
                             up to `max_attempts`, then the next key
  401 / 403 / invalid key  → next key immediately (the failure is key-specific)
  anything else            → raised to the caller unchanged
At most len(pool) × max_attempts calls are made per operation.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

from config import settings
from utils.errors import (
    KeyPoolExhaustedError,
    is_auth_error,
    is_rate_limit_error,
    is_transient_error,
    mask_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyManager:
    def __init__(
        self,
        primary_key: Optional[str],
        other_keys: Iterable[str] = (),
        max_attempts: Optional[int] = None,
        rate_limit_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        keys: List[str] = []
        for key in [primary_key or "", *other_keys]:
            key = key.strip()
            if key and key not in keys:
                keys.append(key)
        self.keys = keys
        self.max_attempts = max_attempts or settings.key_retry_attempts
        self.rate_limit_delay = (
            settings.rate_limit_delay if rate_limit_delay is None else rate_limit_delay
        )
        self._sleep = sleep

    @classmethod
    def from_pool(cls, keys: List[str], **kwargs) -> "KeyManager":
        """Build from an ordered pool where keys[0] is the primary."""
        if not keys:
            return cls(None, (), **kwargs)
        return cls(keys[0], keys[1:], **kwargs)

    def __len__(self) -> int:
        return len(self.keys)

    async def execute_with_retry(self, operation: Callable[[str], Awaitable[T]]) -> T:
        if not self.keys:
            raise KeyPoolExhaustedError("No API keys available.")

        last_error: Optional[BaseException] = None
        for index, key in enumerate(self.keys):
            has_next = index < len(self.keys) - 1
            for attempt in range(1, self.max_attempts + 1):
                try:
                    return await operation(key)
                except Exception as exc:
                    last_error = exc
                    if is_auth_error(exc):
                        logger.warning("[KeyManager] Key %s rejected (%s). Trying next key.", mask_key(key), exc)
                        break
                    if not is_transient_error(exc):
                        raise
                    if is_rate_limit_error(exc):
                        logger.warning("[KeyManager] Key %s rate limited. Switching key.", mask_key(key))
                        if has_next:
                            await self._sleep(self.rate_limit_delay)
                        break
                    if attempt < self.max_attempts:
                        delay = 2 ** attempt + random.uniform(0, 1)
                        logger.warning(
                            "[KeyManager] Key %s transient failure (%s), attempt %d/%d. Retrying in %.1fs",
                            mask_key(key), exc, attempt, self.max_attempts, delay,
                        )
                        await self._sleep(delay)
            if has_next:
                logger.warning("[KeyManager] Key %s exhausted. %d keys remaining.", mask_key(key), len(self.keys) - index - 1)

        raise KeyPoolExhaustedError(
            "All API keys (primary + pool) exhausted or failed.", last_error
        ) from last_error
