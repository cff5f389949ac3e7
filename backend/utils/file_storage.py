import asyncio
import base64
import logging
import os
import secrets
import time
from typing import Optional, Tuple, Union

from config import settings

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/generated"

_MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/png": "png",
}


def _run(fn):
    """Run blocking file IO in the default thread pool."""
    loop = asyncio.get_running_loop()
    return loop.run_in_executor(None, fn)


def _new_filename(extension: str) -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(8)}.{extension}"


def _write(directory: str, filename: str, payload: bytes) -> None:
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, filename), "wb") as fh:
        fh.write(payload)


def decode_image(data: Union[bytes, str]) -> Tuple[bytes, str]:
    """Accept raw bytes, raw base64 or a data URI; return (bytes, extension)."""
    if isinstance(data, bytes):
        return data, "png"
    extension = "png"
    payload = data
    if ";base64," in data:
        header, payload = data.split(";base64,", 1)
        for mime, ext in _MIME_EXTENSIONS.items():
            if mime in header:
                extension = ext
                break
    if not payload:
        raise ValueError("Invalid base64 data")
    return base64.b64decode(payload), extension


async def save_image(data: Union[bytes, str], directory: Optional[str] = None) -> str:
    """Persist an image and return its public URL."""
    directory = directory or settings.generated_dir
    raw, extension = decode_image(data)
    filename = _new_filename(extension)
    await _run(lambda: _write(directory, filename, raw))
    return f"{PUBLIC_PREFIX}/{filename}"


async def save_audio(data: bytes, directory: Optional[str] = None) -> str:
    """Persist mp3 bytes and return their public URL."""
    directory = directory or settings.generated_dir
    filename = _new_filename("mp3")
    await _run(lambda: _write(directory, filename, data))
    return f"{PUBLIC_PREFIX}/{filename}"


def _cleanup(directory: str, max_age: float) -> int:
    try:
        names = os.listdir(directory)
    except FileNotFoundError:
        return 0
    now = time.time()
    deleted = 0
    for name in names:
        path = os.path.join(directory, name)
        try:
            if now - os.stat(path).st_mtime > max_age:
                os.unlink(path)
                deleted += 1
        except OSError as exc:
            logger.warning("Failed to process file %s for cleanup: %s", name, exc)
    return deleted


async def cleanup_old_files(directory: Optional[str] = None, max_age: Optional[float] = None) -> int:
    """Delete generated files older than `max_age` seconds. Returns the count removed."""
    directory = directory or settings.generated_dir
    max_age = settings.generated_max_age_seconds if max_age is None else max_age
    deleted = await _run(lambda: _cleanup(directory, max_age))
    if deleted:
        logger.info("[FileCleanup] Removed %d old files.", deleted)
    return deleted
