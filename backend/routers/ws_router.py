"""
WebSocket Hub — real-time multiplayer connection management.

URL: /ws?initData=<signed Telegram init data>

Connection flow:
  1. Authenticate initData → stable player id (close 4401 on failure)
  2. Accept and register a session with its own outbound queue
  3. Message loop (handle_message dispatcher)
  4. On disconnect: drop the session, mark the player offline if it was
     their last session

Frames are JSON: {"type": ..., "data": {...}, "requestId": ...}.

Client → server message types handled here:
  ping                      — keep-alive heartbeat → "pong"
  create_lobby              — {player, settings} → ack {code} | {error}
  join_lobby                — {code, player} → ack {success} | {error}
  update_settings           — {code, settings} (captain only)
  start_game                — {code} (captain only, runs in background)
  submit_action             — {code, action}
  reset_game                — {code} (captain only)
  reveal_results            — {code} (captain only)
  provide_keys              — {code, keys: {primary?, secondary?}}
  get_aggregate_navy_usage  — {code} (captain only, runs in background)
  validate_api_key          — {key} → ack {isValid} (runs in background)
  validate_navy_key         — {key, code?} → ack {usage} (runs in background)

start_game and get_aggregate_navy_usage wait on a key collection window,
and the key validators may sit in provider backoff for several seconds.
None of them may block this socket's read loop: the captain answers
request_keys on the same connection.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, Optional, Set

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from agents.game_master import GameMaster
from models.game import LobbySettings, PlayerProfile, ProvidedKeys, WSMessage
from services.lobby_service import LobbyService
from utils.errors import AuthError, mask_key
from utils.telegram_auth import authenticate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks active WebSocket sessions.

    Each session gets one FIFO queue drained by one writer task, so `send`
    never awaits and per-session delivery order equals the order in which
    state was mutated. Safe for the single-threaded event loop without locks.
    """

    def __init__(self, on_drop: Optional[Callable[[str], Any]] = None):
        self._sockets: Dict[str, WebSocket] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._writers: Dict[str, asyncio.Task] = {}
        self.on_drop = on_drop

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, ws: WebSocket) -> str:
        await ws.accept()
        session_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue()
        self._sockets[session_id] = ws
        self._queues[session_id] = queue
        self._writers[session_id] = asyncio.create_task(
            self._writer(session_id, ws, queue), name=f"ws-writer-{session_id}"
        )
        logger.debug("Session %s connected (%d total)", session_id, self.count())
        return session_id

    def disconnect(self, session_id: str) -> None:
        self._sockets.pop(session_id, None)
        self._queues.pop(session_id, None)
        writer = self._writers.pop(session_id, None)
        if writer and not writer.done() and writer is not asyncio.current_task():
            writer.cancel()

    def count(self) -> int:
        return len(self._sockets)

    # ── Sending ────────────────────────────────────────────────────────────────

    def send(self, session_id: str, message: Dict[str, Any]) -> None:
        """Enqueue a message for one session. Never blocks."""
        queue = self._queues.get(session_id)
        if queue is not None:
            queue.put_nowait(message)

    async def _writer(self, session_id: str, ws: WebSocket, queue: asyncio.Queue) -> None:
        while True:
            message = await queue.get()
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning("send to session %s failed: %s", session_id, exc)
                self.disconnect(session_id)
                if self.on_drop:
                    self.on_drop(session_id)
                return


# Module-level singletons, wired once per process
manager = ConnectionManager()
lobby_service = LobbyService(transport=manager)
manager.on_drop = lobby_service.disconnect
game_master = GameMaster(lobby_service)

_background_tasks: Set[asyncio.Task] = set()


def _run_in_background(coro, name: str) -> None:
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_done)


def _background_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled() and task.exception():
        logger.error("Background task %s failed", task.get_name(), exc_info=task.exception())


def _error(session_id: str, message: str, code: str) -> None:
    manager.send(session_id, {"type": "error", "data": {"message": message, "errorCode": code}})


def _ack(session_id: str, request_id: Optional[str], payload: Dict[str, Any]) -> None:
    manager.send(session_id, {"type": "ack", "requestId": request_id, "data": payload})


def _lobby_code(data: Dict) -> str:
    return str(data.get("code", "")).strip().upper()


def _require_captain(session_id: str, code: str, player_id: str) -> bool:
    if code not in lobby_service:
        _error(session_id, f"Lobby '{code}' not found", "NOT_FOUND")
        return False
    if not lobby_service.is_captain(code, player_id):
        _error(session_id, "Only the captain can do that", "FORBIDDEN")
        return False
    return True


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(
    ws: WebSocket,
    initData: Optional[str] = Query(None, description="Signed Telegram Mini App init data"),
):
    try:
        user = authenticate(initData)
    except AuthError as exc:
        logger.error("Auth failed: %s", exc)
        await ws.close(code=4401, reason="Authentication failed")
        return

    player_id = str(user.id)
    session_id = await manager.connect(ws)

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = WSMessage.model_validate(json.loads(raw))
            except (json.JSONDecodeError, ValidationError):
                _error(session_id, "Invalid JSON", "PARSE_ERROR")
                continue
            await _handle_message(session_id, player_id, msg)

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(session_id)
        lobby_service.disconnect(session_id)


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(session_id: str, player_id: str, msg: WSMessage) -> None:
    try:
        await _dispatch_message(session_id, player_id, msg)
    except WebSocketDisconnect:
        raise
    except Exception:
        logger.exception("Unhandled error in _handle_message (type=%s)", msg.type)
        _error(session_id, "Internal server error", "SERVER_ERROR")


async def _dispatch_message(session_id: str, player_id: str, msg: WSMessage) -> None:
    data = msg.data
    if msg.type == "ping":
        manager.send(session_id, {"type": "pong"})

    elif msg.type == "create_lobby":
        _on_create_lobby(session_id, player_id, data, msg.request_id)

    elif msg.type == "join_lobby":
        _on_join_lobby(session_id, player_id, data, msg.request_id)

    elif msg.type == "update_settings":
        _on_update_settings(session_id, player_id, data)

    elif msg.type == "start_game":
        code = _lobby_code(data)
        if _require_captain(session_id, code, player_id):
            _run_in_background(game_master.start_game(code, player_id), name=f"start-{code}")

    elif msg.type == "submit_action":
        game_master.submit_action(_lobby_code(data), player_id, str(data.get("action", "")))

    elif msg.type == "reset_game":
        code = _lobby_code(data)
        if _require_captain(session_id, code, player_id):
            game_master.reset_game(code, player_id)

    elif msg.type == "reveal_results":
        code = _lobby_code(data)
        if _require_captain(session_id, code, player_id):
            game_master.reveal_results(code, player_id)

    elif msg.type == "provide_keys":
        _on_provide_keys(session_id, player_id, data)

    elif msg.type == "get_aggregate_navy_usage":
        code = _lobby_code(data)
        if _require_captain(session_id, code, player_id):
            _run_in_background(game_master.aggregate_navy_usage(code, player_id), name=f"usage-{code}")

    elif msg.type == "validate_api_key":
        _run_in_background(
            _on_validate_api_key(session_id, data, msg.request_id), name=f"validate-key-{session_id}"
        )

    elif msg.type == "validate_navy_key":
        _run_in_background(
            _on_validate_navy_key(session_id, player_id, data, msg.request_id),
            name=f"validate-navy-{session_id}",
        )

    else:
        _error(session_id, f"Unknown message type: '{msg.type}'", "UNKNOWN_TYPE")


# ── Handlers ──────────────────────────────────────────────────────────────────

def _on_create_lobby(session_id: str, player_id: str, data: Dict, request_id: Optional[str]) -> None:
    try:
        profile = PlayerProfile.model_validate(data.get("player") or {})
    except ValidationError:
        _ack(session_id, request_id, {"error": "Invalid player"})
        return
    # The embedded player must be the authenticated user
    if profile.id != player_id:
        _ack(session_id, request_id, {"error": "Identity mismatch"})
        return
    try:
        lobby_settings = LobbySettings.model_validate(data.get("settings") or {})
    except ValidationError:
        _ack(session_id, request_id, {"error": "Invalid settings"})
        return

    lobby = lobby_service.create_lobby(profile, lobby_settings, session_id=session_id)
    _ack(session_id, request_id, {"code": lobby.code})


def _on_join_lobby(session_id: str, player_id: str, data: Dict, request_id: Optional[str]) -> None:
    try:
        profile = PlayerProfile.model_validate(data.get("player") or {})
    except ValidationError:
        _ack(session_id, request_id, {"error": "Invalid player"})
        return
    if profile.id != player_id:
        _ack(session_id, request_id, {"error": "Identity mismatch"})
        return

    if lobby_service.join_lobby(_lobby_code(data), profile, session_id=session_id):
        _ack(session_id, request_id, {"success": True})
    else:
        _ack(session_id, request_id, {"error": "Lobby not found or locked"})


def _on_update_settings(session_id: str, player_id: str, data: Dict) -> None:
    code = _lobby_code(data)
    if not _require_captain(session_id, code, player_id):
        return
    update = data.get("settings")
    if not isinstance(update, dict):
        _error(session_id, "Settings must be an object", "INVALID_SETTINGS")
        return
    try:
        lobby_service.update_settings(code, player_id, update)
    except ValidationError as exc:
        fields = ", ".join(str(e["loc"][0]) for e in exc.errors() if e.get("loc"))
        _error(session_id, f"Invalid settings: {fields}", "INVALID_SETTINGS")


def _on_provide_keys(session_id: str, player_id: str, data: Dict) -> None:
    try:
        keys = ProvidedKeys.model_validate(data.get("keys") or {})
    except ValidationError:
        _error(session_id, "Invalid keys payload", "PARSE_ERROR")
        return
    code = _lobby_code(data)
    if not lobby_service.submit_keys(code, player_id, keys):
        logger.debug("[%s] provide_keys from %s with no open window, dropped", code, player_id)


async def _on_validate_api_key(session_id: str, data: Dict, request_id: Optional[str]) -> None:
    key = str(data.get("key") or data.get("apiKey") or "")
    is_valid = await game_master.ai.validate_key(key)
    _ack(session_id, request_id, {"isValid": is_valid})


async def _on_validate_navy_key(
    session_id: str, player_id: str, data: Dict, request_id: Optional[str]
) -> None:
    key = str(data.get("key") or "").strip()
    if not key:
        _ack(session_id, request_id, {"usage": None})
        return
    usage = await game_master.media.navy.get_usage(key)
    logger.info(
        "[%s] Navy key %s checked by %s: %s",
        _lobby_code(data) or "-", mask_key(key), player_id, "ok" if usage else "invalid",
    )
    _ack(session_id, request_id, {"usage": usage.model_dump() if usage else None})
