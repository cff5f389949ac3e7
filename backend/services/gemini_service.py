"""
Gemini text tasks: key validation, scenario, secrets, cheat check, judgment.

Every remote call goes through KeyManager so rotation/backoff is uniform.
Structured replies are requested as JSON and validated with pydantic:
  scenario: malformed JSON degrades to the raw text as the scenario
  judgment: never raises; falls back to an "everyone evacuated" result
  secrets: raises; callers treat it as non-critical
"""
import asyncio
import json
import logging
import random
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agents import prompts
from config import settings
from models.game import (
    CheatCheck,
    Death,
    LobbySettings,
    Player,
    RoundResult,
    Scenario,
    ScenarioType,
    Twist,
)
from utils.key_manager import KeyManager

logger = logging.getLogger(__name__)

JUDGE_PARSE_ATTEMPTS = 2
MIN_KEY_LENGTH = 10

_SCENARIO_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "scenario": {"type": "STRING"},
        "gmNotes": {"type": "STRING"},
    },
    "required": ["scenario"],
}

_JUDGE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "story": {"type": "STRING"},
        "survivors": {"type": "ARRAY", "items": {"type": "STRING"}},
        "deaths": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "playerId": {"type": "STRING"},
                    "reason": {"type": "STRING"},
                },
            },
        },
    },
    "required": ["story", "survivors", "deaths"],
}

_CHEAT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "isCheat": {"type": "BOOLEAN"},
        "reason": {"type": "STRING", "nullable": True},
    },
    "required": ["isCheat"],
}

_SECRETS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "secrets": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "playerId": {"type": "STRING"},
                    "secret": {"type": "STRING"},
                },
            },
        },
    },
    "required": ["secrets"],
}


class _ScenarioReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scenario: str = Field(min_length=1)
    gm_notes: str = Field(default="", alias="gmNotes")


class _SecretItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    player_id: str = Field(alias="playerId")
    secret: str


class _SecretsReply(BaseModel):
    secrets: List[_SecretItem] = []


def _default_client(api_key: str):
    from google import genai
    return genai.Client(api_key=api_key.strip())


def strip_fences(text: str) -> str:
    """Remove optional ```json fences around a model reply."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\n?", "", text)
        text = re.sub(r"\n?```$", "", text.strip())
    return text


def _action_lines(players: List[Player]) -> str:
    return json.dumps(
        [
            {"id": p.id, "name": p.name, "action": p.action_text or "No action taken."}
            for p in players
        ],
        ensure_ascii=False,
        indent=2,
    )


def fallback_result(players: List[Player], language: str) -> RoundResult:
    return RoundResult(
        story=prompts.JUDGE_FALLBACK_STORY.get(language, prompts.JUDGE_FALLBACK_STORY["en"]),
        survivors=[p.id for p in players],
        deaths=[],
    )


class GeminiService:
    def __init__(
        self,
        client_factory: Optional[Callable[[str], Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._client_factory = client_factory or _default_client
        self._sleep = sleep
        self._rng = rng or random.Random()

    # ── Transport ─────────────────────────────────────────────────────────────

    async def _generate(
        self,
        keys: List[str],
        model: str,
        contents: str,
        system_instruction: Optional[str] = None,
        schema: Optional[Dict[str, Any]] = None,
        max_output_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        from google.genai import types

        config_kwargs: Dict[str, Any] = {}
        if system_instruction:
            config_kwargs["system_instruction"] = system_instruction
        if schema is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = schema
        if max_output_tokens is not None:
            config_kwargs["max_output_tokens"] = max_output_tokens
        if temperature is not None:
            config_kwargs["temperature"] = temperature
        config = types.GenerateContentConfig(**config_kwargs)

        async def _call(api_key: str) -> str:
            client = self._client_factory(api_key)
            response = await client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
            return response.text or ""

        manager = KeyManager.from_pool(keys, sleep=self._sleep)
        return await manager.execute_with_retry(_call)

    # ── Operations ────────────────────────────────────────────────────────────

    async def validate_key(self, api_key: str) -> bool:
        """Cheap 1-token call; any failure means the key is unusable."""
        if not api_key or len(api_key.strip()) < MIN_KEY_LENGTH:
            return False
        try:
            await self._generate(
                [api_key],
                settings.gemini_fast_model,
                "Ping",
                max_output_tokens=1,
            )
            return True
        except Exception as exc:
            logger.warning("API key validation failed: %s", exc)
            return False

    def _theme(self, scenario_type: ScenarioType) -> str:
        if scenario_type == ScenarioType.ANY:
            return self._rng.choice(list(prompts.SCENARIO_TYPES.values()))
        return prompts.SCENARIO_TYPES[scenario_type.value]

    async def generate_scenario(
        self, keys: List[str], lobby_settings: LobbySettings, players: List[Player]
    ) -> Scenario:
        language = lobby_settings.story_language.value
        roster = ", ".join(p.name for p in players) or "unknown survivors"
        prompt = (
            f"SETTINGS:\n"
            f"Game Mode: {prompts.GAME_MODES[lobby_settings.mode.value]}\n"
            f"Theme: {self._theme(lobby_settings.scenario_type)}\n"
            f"Players ({len(players)}): {roster}\n\n"
            f"{prompts.LANGUAGE_INSTRUCTIONS[language]}"
        )
        raw = await self._generate(
            keys,
            settings.model_for_level(lobby_settings.ai_model_level.value),
            prompt,
            system_instruction=prompts.SCENARIO_GENERATOR,
            schema=_SCENARIO_SCHEMA,
            temperature=1.0,
        )
        text = strip_fences(raw)
        if not text:
            raise ValueError("Empty scenario response from AI")
        try:
            reply = _ScenarioReply.model_validate(json.loads(text))
            return Scenario(text=reply.scenario.strip(), gm_notes=reply.gm_notes.strip())
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.warning("Scenario reply was not valid JSON (%s), using raw text", exc)
            return Scenario(text=text)

    async def check_injection(self, keys: List[str], action_text: str) -> CheatCheck:
        if not settings.cheat_detection_enabled or not action_text:
            return CheatCheck()
        try:
            raw = await self._generate(
                keys,
                settings.gemini_fast_model,
                f'Player Action: "{action_text}"',
                system_instruction=prompts.CHEAT_DETECTOR,
                schema=_CHEAT_SCHEMA,
            )
            return CheatCheck.model_validate(json.loads(strip_fences(raw)))
        except Exception as exc:
            logger.error("Injection check failed: %s", exc)
            return CheatCheck()

    def roll_twist(self, players: List[Player]) -> Optional[Twist]:
        """With probability `twist_probability`, pick one player and one archetype."""
        if not players or self._rng.random() >= settings.twist_probability:
            return None
        return Twist(
            player_id=self._rng.choice(players).id,
            archetype=self._rng.choice(list(prompts.TWIST_ARCHETYPES)),
        )

    async def generate_secrets(
        self,
        keys: List[str],
        scenario: Scenario,
        players: List[Player],
        twist: Twist,
        language: str,
    ) -> Dict[str, str]:
        target = next((p for p in players if p.id == twist.player_id), None)
        target_line = (
            f"Twist target: {target.name} (id {target.id}) {prompts.TWIST_ARCHETYPES[twist.archetype]}."
            if target else "No twist target."
        )
        prompt = (
            f"Scenario: {scenario.text}\n"
            f"GM notes: {scenario.gm_notes or '-'}\n"
            f"{target_line}\n"
            f"Players: {json.dumps([{'id': p.id, 'name': p.name} for p in players], ensure_ascii=False)}\n\n"
            f"{prompts.LANGUAGE_INSTRUCTIONS.get(language, prompts.LANGUAGE_INSTRUCTIONS['en'])}"
        )
        raw = await self._generate(
            keys,
            settings.gemini_fast_model,
            prompt,
            system_instruction=prompts.SECRET_GENERATOR,
            schema=_SECRETS_SCHEMA,
        )
        reply = _SecretsReply.model_validate(json.loads(strip_fences(raw)))
        known = {p.id for p in players}
        return {s.player_id: s.secret.strip() for s in reply.secrets if s.player_id in known and s.secret.strip()}

    async def judge_round(
        self,
        keys: List[str],
        scenario: Scenario,
        players: List[Player],
        lobby_settings: LobbySettings,
        twist: Optional[Twist] = None,
    ) -> RoundResult:
        language = lobby_settings.story_language.value
        twist_line = ""
        if twist:
            target = next((p for p in players if p.id == twist.player_id), None)
            if target:
                twist_line = (
                    f"\nHIDDEN TWIST (GM only): {target.name} "
                    f"{prompts.TWIST_ARCHETYPES[twist.archetype]}. Weave it into the story.\n"
                )
        prompt = (
            f"CONTEXT:\n"
            f"{prompts.LANGUAGE_INSTRUCTIONS[language]}\n"
            f"Scenario: {scenario.text}\n"
            f"GM notes: {scenario.gm_notes or '-'}\n"
            f"Game Mode: {prompts.GAME_MODES[lobby_settings.mode.value]}\n"
            f"{twist_line}\n"
            f"PLAYER ACTIONS:\n{_action_lines(players)}"
        )
        model = settings.model_for_level(lobby_settings.ai_model_level.value)

        for attempt in range(1, JUDGE_PARSE_ATTEMPTS + 1):
            try:
                raw = await self._generate(
                    keys,
                    model,
                    prompt,
                    system_instruction=prompts.JUDGE_BASE,
                    schema=_JUDGE_SCHEMA,
                )
                result = RoundResult.model_validate(json.loads(strip_fences(raw)))
                return self._normalise(result, players)
            except (json.JSONDecodeError, ValidationError, TypeError) as exc:
                logger.warning("Judge reply malformed (attempt %d/%d): %s", attempt, JUDGE_PARSE_ATTEMPTS, exc)
            except Exception as exc:
                logger.error("Gemini judge error: %s", exc)
                break
        return fallback_result(players, language)

    @staticmethod
    def _normalise(result: RoundResult, players: List[Player]) -> RoundResult:
        """Drop ids the model invented; a player listed as dead is never a survivor."""
        known = {p.id for p in players}
        deaths = [d for d in result.deaths if d.player_id in known]
        dead_ids = {d.player_id for d in deaths}
        survivors = [pid for pid in dict.fromkeys(result.survivors) if pid in known and pid not in dead_ids]
        return RoundResult(story=result.story, survivors=survivors, deaths=[Death(player_id=d.player_id, reason=d.reason) for d in deaths])
