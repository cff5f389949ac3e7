"""
Lobby registry & session tracker: the single owner of in-memory lobby state.

Holds:
  code → Lobby
  code → {session_id}            (broadcast room)
  session_id → player_id
  code → KeyCollectionWindow     (at most one open window per lobby)

Outbound messages go through `transport.send(session_id, message)`, which
must enqueue synchronously so per-session order equals mutation order.
All access happens on the event loop; there is no locking. Callers that
change phase must check-and-set synchronously before their first await.
"""
import asyncio
import logging
import random
import string
from typing import Any, Dict, List, Optional, Set, Tuple

from models.game import (
    Lobby,
    LobbyPhase,
    LobbySettings,
    Player,
    PlayerProfile,
    PlayerRank,
    ProvidedKeys,
    RoundStatus,
)

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits


class CollectionBusyError(Exception):
    """A key collection window is already open for this lobby."""


class KeyCollectionWindow:
    """Collects provide_keys answers until `expected` arrive or the wait times out."""

    def __init__(self, expected: int):
        self.expected = expected
        self.entries: Dict[str, ProvidedKeys] = {}
        self._complete = asyncio.Event()
        if expected <= 0:
            self._complete.set()

    def submit(self, player_id: str, keys: ProvidedKeys) -> None:
        self.entries[player_id] = keys
        if len(self.entries) >= self.expected:
            self._complete.set()

    def close(self) -> None:
        self._complete.set()

    async def wait(self, timeout: float) -> bool:
        """True if the quorum arrived, False on timeout."""
        try:
            await asyncio.wait_for(self._complete.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False


class LobbyService:
    def __init__(self, transport: Any = None, rng: Optional[random.Random] = None):
        self.transport = transport
        self._rng = rng or random.SystemRandom()
        self._lobbies: Dict[str, Lobby] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._session_players: Dict[str, str] = {}
        self._windows: Dict[str, KeyCollectionWindow] = {}

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_lobby(self, code: str) -> Optional[Lobby]:
        return self._lobbies.get(code)

    def __contains__(self, code: str) -> bool:
        return code in self._lobbies

    def is_member(self, code: str, player_id: str) -> bool:
        lobby = self._lobbies.get(code)
        return bool(lobby and lobby.get_player(player_id))

    def is_captain(self, code: str, player_id: str) -> bool:
        lobby = self._lobbies.get(code)
        if not lobby:
            return False
        player = lobby.get_player(player_id)
        return bool(player and player.is_captain)

    def sessions_for(self, code: str, player_id: str) -> Set[str]:
        return {
            sid for sid in self._rooms.get(code, set())
            if self._session_players.get(sid) == player_id
        }

    def collection_open(self, code: str) -> bool:
        return code in self._windows

    # ── Lobby lifecycle ───────────────────────────────────────────────────────

    def generate_code(self) -> str:
        while True:
            code = "".join(self._rng.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            if code not in self._lobbies:
                return code

    def create_lobby(
        self,
        host: PlayerProfile,
        lobby_settings: Optional[LobbySettings] = None,
        session_id: Optional[str] = None,
    ) -> Lobby:
        code = self.generate_code()
        captain = Player(
            id=host.id,
            name=host.name,
            avatar_url=host.avatar_url,
            key_count=host.key_count,
            rank=PlayerRank.CAPTAIN,
            round_status=RoundStatus.WAITING,
        )
        lobby = Lobby(code=code, players=[captain], settings=lobby_settings or LobbySettings())
        self._lobbies[code] = lobby
        logger.info("[%s] Lobby created by %s (%s)", code, host.id, host.name)
        if session_id:
            self.attach_session(code, session_id, host.id)
        return lobby

    def join_lobby(self, code: str, profile: PlayerProfile, session_id: Optional[str] = None) -> bool:
        """Add a player, or refresh an existing one (reconnect) in any phase."""
        lobby = self._lobbies.get(code)
        if not lobby:
            return False

        existing = lobby.get_player(profile.id)
        if existing:
            existing.name = profile.name
            existing.avatar_url = profile.avatar_url
            existing.key_count = profile.key_count
            logger.info("[%s] %s rejoined (%s)", code, profile.id, lobby.phase.value)
        else:
            if lobby.phase != LobbyPhase.WAITING_ROOM:
                logger.info("[%s] Join by %s rejected: game in progress", code, profile.id)
                return False
            lobby.players.append(
                Player(
                    id=profile.id,
                    name=profile.name,
                    avatar_url=profile.avatar_url,
                    key_count=profile.key_count,
                )
            )
            logger.info("[%s] %s (%s) joined", code, profile.id, profile.name)

        if session_id:
            self.attach_session(code, session_id, profile.id)
        else:
            self.emit_update(code)
        if existing and session_id:
            self.emit_secret(code, profile.id)
        return True

    def update_settings(self, code: str, player_id: str, update: Dict[str, Any]) -> bool:
        """Captain-only checked merge. Raises pydantic.ValidationError on bad input."""
        if not self.is_captain(code, player_id):
            return False
        lobby = self._lobbies[code]
        lobby.settings = lobby.settings.merged(update)
        self.emit_update(code)
        return True

    # ── Sessions ──────────────────────────────────────────────────────────────

    def attach_session(self, code: str, session_id: str, player_id: str) -> None:
        self._session_players[session_id] = player_id
        self._rooms.setdefault(code, set()).add(session_id)
        lobby = self._lobbies.get(code)
        player = lobby.get_player(player_id) if lobby else None
        if player:
            player.online = True
        self.emit_update(code)

    def disconnect(self, session_id: str) -> List[str]:
        """Drop a session everywhere. Players with no sessions left go offline."""
        player_id = self._session_players.pop(session_id, None)
        affected: List[str] = []
        for code, room in list(self._rooms.items()):
            if session_id not in room:
                continue
            room.discard(session_id)
            if not room:
                self._rooms.pop(code, None)
            affected.append(code)
            lobby = self._lobbies.get(code)
            player = lobby.get_player(player_id) if lobby and player_id else None
            if player and not self.sessions_for(code, player.id):
                player.online = False
                logger.info("[%s] %s went offline", code, player.id)
                self.emit_update(code)
        return affected

    # ── Emission ──────────────────────────────────────────────────────────────

    def _send(self, session_id: str, message: Dict[str, Any]) -> None:
        if self.transport is not None:
            self.transport.send(session_id, message)

    def broadcast(self, code: str, message: Dict[str, Any]) -> None:
        for sid in sorted(self._rooms.get(code, set())):
            self._send(sid, message)

    def send_to_player(self, code: str, player_id: str, message: Dict[str, Any]) -> None:
        for sid in sorted(self.sessions_for(code, player_id)):
            self._send(sid, message)

    def emit_update(self, code: str) -> None:
        lobby = self._lobbies.get(code)
        if lobby:
            self.broadcast(code, {"type": "game_state", "data": lobby.to_public()})

    def emit_error(self, code: str, message: str, error_code: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"message": message}
        if error_code:
            payload["errorCode"] = error_code
        self.broadcast(code, {"type": "error", "data": payload})

    def emit_secret(self, code: str, player_id: str) -> None:
        """Unicast a player's private secret to that player's own sessions only."""
        lobby = self._lobbies.get(code)
        if not lobby or not lobby.player_secrets:
            return
        secret = lobby.player_secrets.get(player_id)
        if secret:
            self.send_to_player(code, player_id, {"type": "secret_data", "data": {"secret": secret}})

    # ── Key collection ────────────────────────────────────────────────────────

    def submit_keys(self, code: str, player_id: str, keys: ProvidedKeys) -> bool:
        """Record a provide_keys answer. Dropped if no window is open."""
        window = self._windows.get(code)
        if window is None or not self.is_member(code, player_id):
            return False
        window.submit(player_id, keys.cleaned())
        return True

    async def collect_keys(self, code: str, timeout: float) -> Tuple[List[str], List[str]]:
        """
        Open a window, ask the room for keys, wait for every online player or
        the timeout, then return (primary, secondary) pools ordered captain
        first, then join order. Raises CollectionBusyError if a window is open.
        """
        lobby = self._lobbies.get(code)
        if lobby is None:
            return [], []
        if code in self._windows:
            raise CollectionBusyError(code)

        expected = sum(1 for p in lobby.players if p.online)
        window = KeyCollectionWindow(expected)
        self._windows[code] = window
        self.broadcast(code, {"type": "request_keys", "data": {}})
        try:
            complete = await window.wait(timeout)
        finally:
            if self._windows.get(code) is window:
                del self._windows[code]

        logger.info(
            "[%s] Key collection closed: %d/%d answers%s",
            code, len(window.entries), expected, "" if complete else " (timeout)",
        )
        return self._partition(lobby, window.entries)

    def close_collection(self, code: str) -> None:
        """Close an open window early; its waiter returns whatever arrived so far."""
        window = self._windows.pop(code, None)
        if window is not None:
            window.close()
            logger.info("[%s] Key collection closed early", code)

    @staticmethod
    def _partition(lobby: Lobby, entries: Dict[str, ProvidedKeys]) -> Tuple[List[str], List[str]]:
        primary: List[str] = []
        secondary: List[str] = []
        for player in lobby.players_in_priority_order():
            keys = entries.get(player.id)
            if not keys:
                continue
            if keys.primary and keys.primary not in primary:
                primary.append(keys.primary)
            if keys.secondary and keys.secondary not in secondary:
                secondary.append(keys.secondary)
        return primary, secondary
