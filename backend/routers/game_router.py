"""
Lobby HTTP endpoints (read-only).

Routes:
  GET /api/lobbies/{code}        — Redacted lobby state (no keys, no GM notes, no secrets)
  GET /api/settings/defaults     — Default lobby settings and their limits
"""
import logging

from fastapi import APIRouter, HTTPException

from models.game import MAX_CHARS, MAX_TIME, MIN_CHARS, MIN_TIME, LobbySettings
from routers.ws_router import lobby_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["lobbies"])


@router.get("/lobbies/{code}")
async def get_lobby(code: str):
    """Public lobby state, identical to the game_state broadcast payload."""
    lobby = lobby_service.get_lobby(code.strip().upper())
    if not lobby:
        raise HTTPException(status_code=404, detail="Lobby not found")
    return lobby.to_public()


@router.get("/settings/defaults")
async def settings_defaults():
    return {
        "settings": LobbySettings().to_public(),
        "limits": {
            "timeLimitSeconds": {"min": MIN_TIME, "max": MAX_TIME},
            "charLimit": {"min": MIN_CHARS, "max": MAX_CHARS},
        },
    }
