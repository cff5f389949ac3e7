"""Shared fakes and fixtures. No test touches the network."""
import asyncio
from typing import Any, Dict, List, Optional

import pytest

from agents.game_master import GameMaster
from models.game import (
    CheatCheck,
    PlayerProfile,
    ProvidedKeys,
    RoundResult,
    Scenario,
)
from services.lobby_service import LobbyService


class FakeTransport:
    """Records every (session_id, message) in send order."""

    def __init__(self):
        self.sent: List[tuple] = []

    def send(self, session_id: str, message: Dict[str, Any]) -> None:
        self.sent.append((session_id, message))

    def messages(self, session_id: Optional[str] = None, type_: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            m for sid, m in self.sent
            if (session_id is None or sid == session_id) and (type_ is None or m["type"] == type_)
        ]

    def states(self, session_id: str) -> List[Dict[str, Any]]:
        return [m["data"] for m in self.messages(session_id, "game_state")]

    def last_state(self, session_id: str) -> Dict[str, Any]:
        return self.states(session_id)[-1]

    def clear(self) -> None:
        self.sent.clear()


class FakeAI:
    """Stands in for GeminiService; gates let tests hold a call mid-flight."""

    def __init__(self):
        self.scenario = Scenario(text="The reactor is melting down.", gm_notes="Only the vent shaft is safe.")
        self.scenario_error: Optional[BaseException] = None
        self.scenario_gate: Optional[asyncio.Event] = None
        self.judge_result: Optional[RoundResult] = None
        self.judge_error: Optional[BaseException] = None
        self.judge_gate: Optional[asyncio.Event] = None
        self.twist = None
        self.secrets: Dict[str, str] = {}
        self.secret_error: Optional[BaseException] = None
        self.calls: List[tuple] = []

    async def generate_scenario(self, keys, lobby_settings, players):
        self.calls.append(("scenario", list(keys)))
        if self.scenario_gate:
            await self.scenario_gate.wait()
        if self.scenario_error:
            raise self.scenario_error
        return self.scenario

    async def judge_round(self, keys, scenario, players, lobby_settings, twist=None):
        self.calls.append(("judge", list(keys), [p.model_copy() for p in players]))
        if self.judge_gate:
            await self.judge_gate.wait()
        if self.judge_error:
            raise self.judge_error
        if self.judge_result:
            return self.judge_result.model_copy(deep=True)
        return RoundResult(story="Everyone made it out.", survivors=[p.id for p in players])

    async def generate_secrets(self, keys, scenario, players, twist, language):
        self.calls.append(("secrets", list(keys)))
        if self.secret_error:
            raise self.secret_error
        return dict(self.secrets)

    def roll_twist(self, players):
        return self.twist

    async def check_injection(self, keys, action_text):
        return CheatCheck()

    async def validate_key(self, api_key):
        return api_key == "valid-gemini-key"


class FakeNavy:
    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self.balances = balances or {}

    async def remaining_tokens(self, keys):
        return {k: self.balances[k] for k in keys if k in self.balances}


class FakeMedia:
    def __init__(self):
        self.navy = FakeNavy()
        self.images: List[tuple] = []
        self.voices: List[tuple] = []

    async def generate_image(self, keys, description):
        self.images.append((list(keys), description))
        return f"/generated/image_{len(self.images)}.png"

    async def generate_voice(self, keys, text):
        self.voices.append((list(keys), text))
        return f"/generated/voice_{len(self.voices)}.mp3"


class ManualTimer:
    """Injectable sleep: timers only elapse when the test calls fire()."""

    def __init__(self):
        self.pending: List[tuple] = []

    async def sleep(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        self.pending.append((seconds, fut))
        await fut

    def fire(self) -> None:
        pending, self.pending = self.pending, []
        for _, fut in pending:
            if not fut.done():
                fut.set_result(None)


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def until(predicate, rounds: int = 200) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def profile(player_id: str, name: Optional[str] = None) -> PlayerProfile:
    return PlayerProfile(id=player_id, name=name or f"Player {player_id}")


def keys(primary: Optional[str] = None, secondary: Optional[str] = None) -> ProvidedKeys:
    return ProvidedKeys(primary=primary, secondary=secondary)


class Table:
    """A registry + state machine wired to fakes, with one session per player."""

    def __init__(self, key_timeout: float = 0.05, usage_timeout: float = 0.05):
        self.transport = FakeTransport()
        self.lobbies = LobbyService(transport=self.transport)
        self.ai = FakeAI()
        self.media = FakeMedia()
        self.timer = ManualTimer()
        self.gm = GameMaster(
            self.lobbies,
            ai=self.ai,
            media=self.media,
            sleep=self.timer.sleep,
            key_timeout=key_timeout,
            usage_timeout=usage_timeout,
        )
        self.code: Optional[str] = None

    def open(self, captain: str = "cap", others=("p2",), **settings_update) -> str:
        from models.game import LobbySettings

        lobby_settings = LobbySettings.model_validate(settings_update) if settings_update else None
        lobby = self.lobbies.create_lobby(profile(captain), lobby_settings, session_id=f"s-{captain}")
        self.code = lobby.code
        for pid in others:
            assert self.lobbies.join_lobby(self.code, profile(pid), session_id=f"s-{pid}")
        return self.code

    @property
    def lobby(self):
        return self.lobbies.get_lobby(self.code)

    async def start(self, provided: Dict[str, ProvidedKeys], captain: str = "cap") -> bool:
        task = asyncio.create_task(self.gm.start_game(self.code, captain))
        await until(lambda: self.lobbies.collection_open(self.code) or task.done())
        for pid, k in provided.items():
            self.lobbies.submit_keys(self.code, pid, k)
        return await task

    async def start_default(self) -> bool:
        provided = {p.id: keys(primary=f"gem-{p.id}", secondary=f"navy-{p.id}") for p in self.lobby.players}
        return await self.start(provided)

    def errors(self, session_id: str) -> List[Dict[str, Any]]:
        return [m["data"] for m in self.transport.messages(session_id, "error")]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def lobbies(transport):
    return LobbyService(transport=transport)
