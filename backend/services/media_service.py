"""
Image and voice generation via api.navy (OpenAI-compatible).

Both calls are routed through NavyService.execute_with_smart_allocation, so
key choice depends on live remaining quota. Results are written to the
generated-media directory and returned as public URLs. Failures return None:
media never blocks the round.
"""
import base64
import logging
from typing import Any, Callable, List, Optional

import httpx

from agents import prompts
from config import settings
from services.navy_service import NavyService, TaskType
from utils.file_storage import save_audio, save_image

logger = logging.getLogger(__name__)

MAX_VOICE_CHARS = 2500


def _default_client(api_key: str):
    from openai import AsyncOpenAI
    return AsyncOpenAI(api_key=api_key, base_url=settings.navy_base_url)


async def _download(url: str) -> bytes:
    async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


class MediaService:
    def __init__(
        self,
        navy: Optional[NavyService] = None,
        client_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.navy = navy or NavyService()
        self._client_factory = client_factory or _default_client

    async def _image_bytes(self, api_key: str, prompt: str) -> bytes:
        client = self._client_factory(api_key)
        response = await client.images.generate(
            model=settings.navy_image_model,
            prompt=prompt,
            n=1,
            size="16:9",
        )
        item = response.data[0] if response.data else None
        if item is None:
            raise ValueError("No image returned from api.navy")
        if getattr(item, "b64_json", None):
            return base64.b64decode(item.b64_json)
        if getattr(item, "url", None):
            return await _download(item.url)
        raise ValueError("No image URL returned from api.navy")

    async def _voice_bytes(self, api_key: str, text: str) -> bytes:
        client = self._client_factory(api_key)
        response = await client.audio.speech.create(
            model=settings.navy_voice_model,
            voice=settings.navy_voice_id,
            input=text[:MAX_VOICE_CHARS],
        )
        return response.content

    async def generate_image(self, keys: List[str], description: str) -> Optional[str]:
        if not keys:
            logger.warning("Image generation skipped: no media keys collected")
            return None
        prompt = f"{description}\n\nStyle: {prompts.IMAGE_STYLE}"
        try:
            raw = await self.navy.execute_with_smart_allocation(
                keys, TaskType.IMAGE, lambda k: self._image_bytes(k, prompt)
            )
            url = await save_image(raw)
            logger.info("Image generated: %s", url)
            return url
        except Exception as exc:
            logger.error("Image generation failed: %s", exc)
            return None

    async def generate_voice(self, keys: List[str], text: str) -> Optional[str]:
        if not keys:
            logger.warning("Voice generation skipped: no media keys collected")
            return None
        try:
            raw = await self.navy.execute_with_smart_allocation(
                keys, TaskType.VOICE, lambda k: self._voice_bytes(k, text)
            )
            url = await save_audio(raw)
            logger.info("Voice generated: %s", url)
            return url
        except Exception as exc:
            logger.error("Voice generation failed: %s", exc)
            return None
