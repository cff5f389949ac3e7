from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, Set
from enum import Enum
from datetime import datetime, timezone

from utils.errors import PhaseTransitionError


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class LobbyPhase(str, Enum):
    WAITING_ROOM = "LOBBY_WAITING"
    STARTING = "STARTING"
    SCENARIO_GENERATION = "SCENARIO_GENERATION"
    PLAYER_INPUT = "PLAYER_INPUT"
    JUDGING = "JUDGING"
    RESULTS = "RESULTS"


class PlayerRank(str, Enum):
    CAPTAIN = "captain"
    REGULAR = "regular"


class RoundStatus(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    ALIVE = "alive"
    DEAD = "dead"


class GameMode(str, Enum):
    COOP = "coop"
    PVP = "pvp"
    BATTLE_ROYALE = "battle_royale"


class ScenarioType(str, Enum):
    ANY = "any"
    SCI_FI = "sci_fi"
    SUPERNATURAL = "supernatural"
    APOCALYPSE = "apocalypse"
    FANTASY = "fantasy"
    CYBERPUNK = "cyberpunk"


class Language(str, Enum):
    EN = "en"
    RU = "ru"


class AIModelLevel(str, Enum):
    ECONOMY = "economy"
    BALANCED = "balanced"
    PREMIUM = "premium"


class ImageGenerationMode(str, Enum):
    NONE = "none"
    SCENARIO = "scenario"  # scenario image only, recycled on the results screen
    FULL = "full"          # scenario image + a fresh results image


# Legal phase moves. Reset may return to the waiting room from anywhere.
PHASE_TRANSITIONS: Dict[LobbyPhase, Set[LobbyPhase]] = {
    LobbyPhase.WAITING_ROOM: {LobbyPhase.STARTING},
    LobbyPhase.STARTING: {LobbyPhase.WAITING_ROOM, LobbyPhase.SCENARIO_GENERATION},
    LobbyPhase.SCENARIO_GENERATION: {LobbyPhase.WAITING_ROOM, LobbyPhase.PLAYER_INPUT},
    LobbyPhase.PLAYER_INPUT: {LobbyPhase.WAITING_ROOM, LobbyPhase.JUDGING},
    LobbyPhase.JUDGING: {LobbyPhase.WAITING_ROOM, LobbyPhase.PLAYER_INPUT, LobbyPhase.RESULTS},
    LobbyPhase.RESULTS: {LobbyPhase.WAITING_ROOM},
}

MIN_TIME = 30
MAX_TIME = 600
MIN_CHARS = 100
MAX_CHARS = 3000

TIMEOUT_ACTIONS: Dict[str, str] = {
    "en": "Frozen in fear, doing nothing.",
    "ru": "Оцепенел от страха и ничего не сделал.",
}


class LobbySettings(BaseModel):
    """Captain-editable lobby configuration. Unknown or out-of-range fields are rejected."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        use_enum_values=False,
    )

    time_limit_seconds: int = Field(default=120, ge=MIN_TIME, le=MAX_TIME)
    char_limit: int = Field(default=500, ge=MIN_CHARS, le=MAX_CHARS)
    mode: GameMode = GameMode.COOP
    scenario_type: ScenarioType = ScenarioType.ANY
    story_language: Language = Language.EN
    ai_model_level: AIModelLevel = AIModelLevel.BALANCED
    image_generation_mode: ImageGenerationMode = ImageGenerationMode.NONE
    voiceover_scenario: bool = False
    voiceover_results: bool = False

    def merged(self, update: Dict[str, Any]) -> "LobbySettings":
        """Return a new validated settings object with `update` applied.
        Raises pydantic.ValidationError on unknown keys or bad values."""
        data = self.model_dump(by_alias=True)
        data.update(update)
        return LobbySettings.model_validate(data)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class PlayerProfile(BaseModel):
    """Player payload sent by the client on create/join."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str = Field(min_length=1, max_length=64)
    avatar_url: Optional[str] = None
    key_count: int = Field(default=0, ge=0, le=2)


class Player(BaseModel):
    id: str
    name: str
    avatar_url: Optional[str] = None
    rank: PlayerRank = PlayerRank.REGULAR
    round_status: RoundStatus = RoundStatus.WAITING
    action_text: Optional[str] = None
    online: bool = False
    key_count: int = 0
    joined_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_captain(self) -> bool:
        return self.rank == PlayerRank.CAPTAIN

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "avatarUrl": self.avatar_url,
            "isCaptain": self.is_captain,
            "status": self.round_status.value,
            "actionText": self.action_text,
            "isOnline": self.online,
            "keyCount": self.key_count,
        }


class Scenario(BaseModel):
    text: str
    gm_notes: str = ""  # Game-master reasoning; never leaves the server


class Death(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    player_id: str = Field(alias="playerId")
    reason: str = ""


class RoundResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    story: str
    survivors: List[str] = []
    deaths: List[Death] = []
    image: Optional[str] = None
    audio: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "story": self.story,
            "survivors": list(self.survivors),
            "deaths": [{"playerId": d.player_id, "reason": d.reason} for d in self.deaths],
            "image": self.image,
            "audio": self.audio,
        }


class CheatCheck(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_cheat: bool = Field(default=False, alias="isCheat")
    reason: Optional[str] = None


class Twist(BaseModel):
    player_id: str
    archetype: str


class ProvidedKeys(BaseModel):
    """A player's answer to a request_keys window."""

    primary: Optional[str] = None
    secondary: Optional[str] = None

    def cleaned(self) -> "ProvidedKeys":
        return ProvidedKeys(
            primary=(self.primary or "").strip() or None,
            secondary=(self.secondary or "").strip() or None,
        )


class Lobby(BaseModel):
    code: str
    players: List[Player] = []
    phase: LobbyPhase = LobbyPhase.WAITING_ROOM
    settings: LobbySettings = Field(default_factory=LobbySettings)
    scenario: Optional[Scenario] = None
    scenario_image: Optional[str] = None
    scenario_audio: Optional[str] = None
    round_result: Optional[RoundResult] = None
    primary_credentials: List[str] = []
    secondary_credentials: List[str] = []
    results_revealed: bool = False
    player_secrets: Optional[Dict[str, str]] = None
    # Stale-result guards: epoch bumps on start/reset, round bumps per round
    epoch: int = 0
    round: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    def get_player(self, player_id: str) -> Optional[Player]:
        for p in self.players:
            if p.id == player_id:
                return p
        return None

    @property
    def captain(self) -> Optional[Player]:
        for p in self.players:
            if p.is_captain:
                return p
        return None

    def can_transition(self, target: LobbyPhase) -> bool:
        return target in PHASE_TRANSITIONS.get(self.phase, set())

    def transition(self, target: LobbyPhase) -> None:
        if not self.can_transition(target):
            raise PhaseTransitionError(self.phase.value, target.value)
        self.phase = target

    def players_in_priority_order(self) -> List[Player]:
        """Captain first, then everyone else in join order."""
        return sorted(self.players, key=lambda p: 0 if p.is_captain else 1)

    def to_public(self) -> Dict[str, Any]:
        """Client-safe projection. Credentials, secrets and GM notes are omitted."""
        return {
            "lobbyCode": self.code,
            "status": self.phase.value,
            "round": self.round,
            "players": [p.to_public() for p in self.players],
            "settings": self.settings.to_public(),
            "scenario": self.scenario.text if self.scenario else None,
            "scenarioImage": self.scenario_image,
            "scenarioAudio": self.scenario_audio,
            "roundResult": self.round_result.to_public() if self.round_result else None,
            "resultsRevealed": self.results_revealed,
        }


# ── api.navy usage payload ────────────────────────────────────────────────────

class NavyUsageCounters(BaseModel):
    tokens_used_today: int = 0
    tokens_remaining_today: int
    percent_used: float = 0.0
    resets_at_utc: Optional[str] = None
    resets_in_ms: Optional[int] = None


class NavyUsage(BaseModel):
    plan: str = ""
    limits: Dict[str, Any] = {}
    usage: NavyUsageCounters
    rate_limits: Dict[str, Any] = {}
    server_time_utc: Optional[str] = None


# ── WebSocket message shapes ──────────────────────────────────────────────────

class WSMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    data: Dict[str, Any] = {}
    request_id: Optional[str] = Field(default=None, alias="requestId")
