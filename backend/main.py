import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from config import settings
from utils.file_storage import cleanup_old_files

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def _cleanup_loop() -> None:
    """Reap generated media older than generated_max_age_seconds, forever."""
    while True:
        try:
            await cleanup_old_files()
        except Exception:
            logger.exception("[FileCleanup] Cleanup pass failed")
        await asyncio.sleep(settings.generated_cleanup_interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Survival party backend starting up (env=%s)...", settings.env)
    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN is not set; auth is bypassed outside production")
    cleanup_task = asyncio.create_task(_cleanup_loop(), name="generated-cleanup")
    yield
    cleanup_task.cancel()
    from routers.ws_router import game_master
    await game_master.shutdown()
    logger.info("Backend shutting down.")


app = FastAPI(
    title="AI Survival Party",
    version="0.1.0",
    description="Real-time multiplayer AI survival party game: scenarios and verdicts by Gemini",
    lifespan=lifespan,
)

_origins = list(settings.allowed_origins)
if settings.extra_origin:
    _origins.append(settings.extra_origin)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "survival-party", "version": "0.1.0"}


from routers.game_router import router as game_router
from routers.ws_router import router as ws_router

app.include_router(game_router, prefix="/api")
app.include_router(ws_router)


# Generated scenario/result media
os.makedirs(settings.generated_dir, exist_ok=True)
app.mount("/generated", StaticFiles(directory=settings.generated_dir), name="generated")

# Serve compiled frontend in production
_frontend_dist = os.path.abspath(
    os.path.join(os.path.dirname(__file__), "..", "frontend", "dist")
)
if os.path.isdir(_frontend_dist):
    app.mount("/", StaticFiles(directory=_frontend_dist, html=True), name="static")
    logger.info(f"Serving frontend from {_frontend_dist}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
