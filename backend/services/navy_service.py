"""
api.navy usage lookup and usage-aware key allocation for the media pool.

Strategy per task:
  VOICE  — highest remaining quota first; a quota failure on the best key
           aborts the whole task (smaller keys cannot afford it either)
  IMAGE  — lowest sufficient quota first (saves big keys for voice); a quota
           failure moves on to the next, larger key
5xx and other errors always move on to the next candidate.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
from pydantic import ValidationError

from config import settings
from models.game import NavyUsage
from utils.errors import (
    InsufficientQuotaError,
    NoValidKeysError,
    QuotaPolicyAbortError,
    error_status,
    is_quota_error,
    is_server_error,
    mask_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskType(str, Enum):
    VOICE = "VOICE"
    IMAGE = "IMAGE"


class NavyService:
    def __init__(
        self,
        usage_url: Optional[str] = None,
        timeout: Optional[float] = None,
        voice_cost: Optional[int] = None,
        image_cost: Optional[int] = None,
    ):
        self.usage_url = usage_url or settings.navy_usage_url
        self.timeout = timeout or settings.navy_usage_timeout
        self.voice_cost = voice_cost or settings.navy_voice_cost
        self.image_cost = image_cost or settings.navy_image_cost

    async def get_usage(self, api_key: str) -> Optional[NavyUsage]:
        """Fetch current usage for one key. Returns None on any failure."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(
                    self.usage_url,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                )
            if resp.status_code >= 400:
                logger.warning(
                    "[NavyService] Usage fetch for key %s failed: %d", mask_key(api_key), resp.status_code
                )
                return None
            return NavyUsage.model_validate(resp.json())
        except httpx.TimeoutException:
            logger.error("[NavyService] Usage fetch timed out for key %s", mask_key(api_key))
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            logger.error("[NavyService] Usage fetch error for key %s: %s", mask_key(api_key), exc)
        return None

    async def remaining_tokens(self, api_keys: List[str]) -> Dict[str, int]:
        """Query every key in parallel; keys whose query fails are left out."""
        unique = list(dict.fromkeys(k for k in api_keys if k))
        results = await asyncio.gather(*(self.get_usage(k) for k in unique))
        remaining: Dict[str, int] = {}
        for key, usage in zip(unique, results):
            if usage is None:
                logger.warning("[NavyService] Excluding key %s due to usage check failure.", mask_key(key))
                continue
            remaining[key] = usage.usage.tokens_remaining_today
        return remaining

    def rank_keys(self, remaining: Dict[str, int], task_type: TaskType) -> List[str]:
        """Order candidate keys for a task. Raises InsufficientQuotaError if none qualify."""
        cost = self.voice_cost if task_type == TaskType.VOICE else self.image_cost
        sufficient = [k for k, tokens in remaining.items() if tokens >= cost]
        if not sufficient:
            raise InsufficientQuotaError(
                f"No Navy keys have enough tokens for {task_type.value.lower()} generation (need {cost})."
            )
        # sorted() is stable, so equal balances keep pool order
        return sorted(
            sufficient,
            key=lambda k: remaining[k],
            reverse=task_type == TaskType.VOICE,
        )

    async def execute_with_smart_allocation(
        self,
        api_keys: List[str],
        task_type: TaskType,
        operation: Callable[[str], Awaitable[T]],
    ) -> T:
        if not api_keys:
            raise NoValidKeysError("No Navy API keys provided.")

        remaining = await self.remaining_tokens(api_keys)
        if not remaining:
            raise NoValidKeysError("Failed to validate any Navy API keys.")

        candidates = self.rank_keys(remaining, task_type)

        last_error: Optional[BaseException] = None
        for key in candidates:
            tokens = remaining[key]
            logger.info(
                "[NavyService] Attempting %s with key %s (%d tokens)", task_type.value, mask_key(key), tokens
            )
            try:
                return await operation(key)
            except Exception as exc:
                last_error = exc
                if is_quota_error(exc):
                    logger.warning("[NavyService] Key %s failed with quota/rate limit.", mask_key(key))
                    if task_type == TaskType.VOICE:
                        raise QuotaPolicyAbortError(
                            f"Navy voice generation failed: best key exhausted quota ({tokens} tokens). "
                            "Aborting per policy."
                        ) from exc
                elif is_server_error(exc):
                    logger.warning("[NavyService] Key %s failed with server error. Trying next...", mask_key(key))
                else:
                    status, _ = error_status(exc)
                    logger.warning(
                        "[NavyService] Key %s failed with error (%s): %s", mask_key(key), status, exc
                    )

        raise last_error
