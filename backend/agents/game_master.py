"""
Game Master: the per-lobby round state machine.

Phase flow:
  WAITING_ROOM → STARTING → SCENARIO_GENERATION → PLAYER_INPUT → JUDGING → RESULTS
  reset returns to WAITING_ROOM from anywhere.

Concurrency rules (single event loop, commands interleave at awaits):
- Every phase-changing entry point checks and sets the phase synchronously
  before its first await. A second start_game therefore sees STARTING and
  is ignored.
- Long-running work captures (epoch, round) and re-validates after every
  await; results for a lobby that was reset or moved on are discarded.
- Failures revert to the last stable phase (WAITING_ROOM for start,
  PLAYER_INPUT for judging) and broadcast an error to the room.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from config import settings
from models.game import (
    TIMEOUT_ACTIONS,
    ImageGenerationMode,
    Lobby,
    LobbyPhase,
    Player,
    RoundResult,
    RoundStatus,
    Twist,
)
from services.gemini_service import GeminiService
from services.lobby_service import CollectionBusyError, LobbyService
from services.media_service import MediaService

logger = logging.getLogger(__name__)

ERR_MISSING_API_KEY = "ERR_MISSING_API_KEY"
ERR_KEY_COLLECTION_BUSY = "ERR_KEY_COLLECTION_BUSY"
ERR_SCENARIO_FAILED = "ERR_SCENARIO_FAILED"
ERR_JUDGING_FAILED = "ERR_JUDGING_FAILED"


class GameMaster:
    def __init__(
        self,
        lobbies: LobbyService,
        ai: Optional[GeminiService] = None,
        media: Optional[MediaService] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        key_timeout: Optional[float] = None,
        usage_timeout: Optional[float] = None,
    ):
        self.lobbies = lobbies
        self.ai = ai or GeminiService()
        self.media = media or MediaService()
        self._sleep = sleep
        self.key_timeout = settings.key_collection_timeout if key_timeout is None else key_timeout
        self.usage_timeout = settings.usage_collection_timeout if usage_timeout is None else usage_timeout
        self._timers: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _spawn(self, coro, name: str) -> asyncio.Task:
        """Fire-and-forget with a retained reference; failures are logged."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception():
            logger.error("Background task %s failed", task.get_name(), exc_info=task.exception())

    def _is_current(self, lobby: Lobby, epoch: int, phase: LobbyPhase, round_no: Optional[int] = None) -> bool:
        if self.lobbies.get_lobby(lobby.code) is not lobby:
            return False
        if lobby.epoch != epoch or lobby.phase != phase:
            return False
        return round_no is None or lobby.round == round_no

    def has_pending_timer(self, code: str) -> bool:
        task = self._timers.get(code)
        return bool(task and not task.done())

    def _cancel_timer(self, code: str) -> None:
        task = self._timers.pop(code, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait_idle(self) -> None:
        """Wait for all background work spawned so far (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for code in list(self._timers):
            self._cancel_timer(code)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Start ─────────────────────────────────────────────────────────────────

    async def start_game(self, code: str, player_id: str) -> bool:
        if not self.lobbies.is_captain(code, player_id):
            logger.warning("[%s] start_game by non-captain %s ignored", code, player_id)
            return False
        lobby = self.lobbies.get_lobby(code)
        if lobby.phase != LobbyPhase.WAITING_ROOM:
            logger.info("[%s] start_game ignored in phase %s", code, lobby.phase.value)
            return False

        # Synchronous check-and-set: nothing above this line awaits.
        lobby.transition(LobbyPhase.STARTING)
        lobby.epoch += 1
        epoch = lobby.epoch
        self.lobbies.emit_update(code)

        try:
            try:
                primary, secondary = await self.lobbies.collect_keys(code, self.key_timeout)
            except CollectionBusyError:
                if self._is_current(lobby, epoch, LobbyPhase.STARTING):
                    self._revert_to_waiting(lobby)
                    self.lobbies.emit_error(code, "Key collection already in progress.", ERR_KEY_COLLECTION_BUSY)
                    self.lobbies.emit_update(code)
                return False

            if not self._is_current(lobby, epoch, LobbyPhase.STARTING):
                logger.info("[%s] Lobby changed during key collection, start abandoned", code)
                return False

            lobby.primary_credentials = primary
            lobby.secondary_credentials = secondary
            if not primary:
                self._revert_to_waiting(lobby)
                self.lobbies.emit_error(code, "No Gemini API key was provided.", ERR_MISSING_API_KEY)
                self.lobbies.emit_update(code)
                return False

            lobby.transition(LobbyPhase.SCENARIO_GENERATION)
            self.lobbies.emit_update(code)

            scenario = await self.ai.generate_scenario(primary, lobby.settings, list(lobby.players))
            if not self._is_current(lobby, epoch, LobbyPhase.SCENARIO_GENERATION):
                logger.info("[%s] Scenario arrived after reset, discarded", code)
                return False

            lobby.scenario = scenario
            logger.info("[%s] Scenario ready (%d chars)", code, len(scenario.text))
            self._schedule_scenario_media(lobby)
            self.start_round(code)
            return True

        except Exception:
            logger.exception("[%s] Start error", code)
            if lobby.epoch == epoch and lobby.phase in (LobbyPhase.STARTING, LobbyPhase.SCENARIO_GENERATION):
                self._revert_to_waiting(lobby)
                self.lobbies.emit_error(code, "Failed to generate scenario. Check API Key.", ERR_SCENARIO_FAILED)
                self.lobbies.emit_update(code)
            return False

    def _revert_to_waiting(self, lobby: Lobby) -> None:
        lobby.transition(LobbyPhase.WAITING_ROOM)
        lobby.scenario = None
        lobby.scenario_image = None
        lobby.scenario_audio = None

    def _schedule_scenario_media(self, lobby: Lobby) -> None:
        want_image = lobby.settings.image_generation_mode != ImageGenerationMode.NONE
        want_voice = lobby.settings.voiceover_scenario
        if not (want_image or want_voice):
            return
        if not lobby.secondary_credentials:
            logger.warning("[%s] Scenario media requested but no media keys collected, skipping", lobby.code)
            return
        self._spawn(
            self._scenario_media(lobby, lobby.epoch, want_image, want_voice),
            name=f"scenario-media-{lobby.code}",
        )

    async def _scenario_media(self, lobby: Lobby, epoch: int, want_image: bool, want_voice: bool) -> None:
        keys = list(lobby.secondary_credentials)
        text = lobby.scenario.text
        image, audio = await asyncio.gather(
            self.media.generate_image(keys, text) if want_image else _none(),
            self.media.generate_voice(keys, text) if want_voice else _none(),
        )
        if self.lobbies.get_lobby(lobby.code) is not lobby or lobby.epoch != epoch:
            logger.info("[%s] Scenario media arrived after reset, discarded", lobby.code)
            return
        if image:
            lobby.scenario_image = image
        if audio:
            lobby.scenario_audio = audio
        if image or audio:
            self.lobbies.emit_update(lobby.code)

    # ── Round ─────────────────────────────────────────────────────────────────

    def start_round(self, code: str) -> None:
        lobby = self.lobbies.get_lobby(code)
        if lobby is None:
            return
        lobby.transition(LobbyPhase.PLAYER_INPUT)
        lobby.round += 1
        for p in lobby.players:
            p.round_status = RoundStatus.WAITING
            p.action_text = None
        lobby.results_revealed = False
        lobby.round_result = None
        self.lobbies.emit_update(code)

        self._cancel_timer(code)
        seconds = lobby.settings.time_limit_seconds
        self._timers[code] = asyncio.create_task(
            self._round_timer(code, lobby.epoch, lobby.round, seconds),
            name=f"round-timer-{code}",
        )
        logger.info("[%s] Round %d started (%ds)", code, lobby.round, seconds)

    async def _round_timer(self, code: str, epoch: int, round_no: int, seconds: float) -> None:
        await self._sleep(seconds)
        if self._timers.get(code) is asyncio.current_task():
            self._timers.pop(code, None)
        self.handle_timeout(code, epoch, round_no)

    def handle_timeout(self, code: str, epoch: int, round_no: int) -> Optional[asyncio.Task]:
        lobby = self.lobbies.get_lobby(code)
        if lobby is None or not self._is_current(lobby, epoch, LobbyPhase.PLAYER_INPUT, round_no):
            return None
        default_action = TIMEOUT_ACTIONS.get(lobby.settings.story_language.value, TIMEOUT_ACTIONS["en"])
        for p in lobby.players:
            if p.round_status == RoundStatus.WAITING:
                p.action_text = p.action_text or default_action
                p.round_status = RoundStatus.READY
        logger.info("[%s] Round %d timed out", code, round_no)
        return self._begin_resolution(lobby)

    def submit_action(self, code: str, player_id: str, action: str) -> bool:
        lobby = self.lobbies.get_lobby(code)
        if lobby is None or lobby.phase != LobbyPhase.PLAYER_INPUT:
            return False
        player = lobby.get_player(player_id)
        if player is None:
            return False
        text = (action or "").strip()[: lobby.settings.char_limit]
        if not text:
            return False

        player.action_text = text
        player.round_status = RoundStatus.READY
        self.lobbies.emit_update(code)

        if not any(p.round_status == RoundStatus.WAITING for p in lobby.players):
            self._begin_resolution(lobby)
        return True

    def _begin_resolution(self, lobby: Lobby) -> Optional[asyncio.Task]:
        """Synchronous half of resolve: guard, cancel timer, enter JUDGING, then spawn."""
        if lobby.phase != LobbyPhase.PLAYER_INPUT:
            return None
        self._cancel_timer(lobby.code)
        lobby.transition(LobbyPhase.JUDGING)
        self.lobbies.emit_update(lobby.code)
        return self._spawn(
            self._resolve_round(lobby, lobby.epoch, lobby.round),
            name=f"resolve-{lobby.code}-{lobby.round}",
        )

    async def _resolve_round(self, lobby: Lobby, epoch: int, round_no: int) -> None:
        code = lobby.code
        if not self._is_current(lobby, epoch, LobbyPhase.JUDGING, round_no):
            logger.info("[%s] Round %d was reset before judging began", code, round_no)
            return

        try:
            if not lobby.primary_credentials:
                lobby.transition(LobbyPhase.PLAYER_INPUT)
                self.lobbies.emit_error(code, "No Gemini API key available for judging.", ERR_MISSING_API_KEY)
                self.lobbies.emit_update(code)
                return

            keys = list(lobby.primary_credentials)
            players = [p.model_copy() for p in lobby.players]
            await self._annotate_cheats(keys, players)
            twist = self.ai.roll_twist(players)

            result, _ = await asyncio.gather(
                self.ai.judge_round(keys, lobby.scenario, players, lobby.settings, twist),
                self._deliver_secrets(lobby, epoch, round_no, keys, players, twist),
            )
            if not self._is_current(lobby, epoch, LobbyPhase.JUDGING, round_no):
                logger.info("[%s] Judgment for round %d arrived after reset, discarded", code, round_no)
                return

            await self._attach_result_media(lobby, result)
            if not self._is_current(lobby, epoch, LobbyPhase.JUDGING, round_no):
                logger.info("[%s] Result media arrived after reset, discarded", code)
                return

            survivors = set(result.survivors)
            for p in lobby.players:
                p.round_status = RoundStatus.ALIVE if p.id in survivors else RoundStatus.DEAD
            lobby.round_result = result
            lobby.transition(LobbyPhase.RESULTS)
            lobby.results_revealed = False
            self.lobbies.emit_update(code)
            logger.info("[%s] Round %d judged: %d survivors", code, round_no, len(survivors))

        except Exception:
            logger.exception("[%s] Judge error", code)
            if self._is_current(lobby, epoch, LobbyPhase.JUDGING, round_no):
                lobby.transition(LobbyPhase.PLAYER_INPUT)
                self.lobbies.emit_error(code, "Judging failed.", ERR_JUDGING_FAILED)
                self.lobbies.emit_update(code)

    async def _annotate_cheats(self, keys: List[str], players: List[Player]) -> None:
        checks = await asyncio.gather(*(self.ai.check_injection(keys, p.action_text or "") for p in players))
        for p, check in zip(players, checks):
            if check.is_cheat:
                p.action_text = f"[ATTEMPTED CHEAT: {check.reason or 'meta-gaming'}] {p.action_text}"

    async def _deliver_secrets(
        self,
        lobby: Lobby,
        epoch: int,
        round_no: int,
        keys: List[str],
        players: List[Player],
        twist: Optional[Twist],
    ) -> None:
        if twist is None:
            return
        try:
            secrets = await self.ai.generate_secrets(
                keys, lobby.scenario, players, twist, lobby.settings.story_language.value
            )
        except Exception as exc:
            logger.warning("[%s] Secret generation failed (round continues): %s", lobby.code, exc)
            return
        if not secrets or not self._is_current(lobby, epoch, LobbyPhase.JUDGING, round_no):
            return
        lobby.player_secrets = secrets
        for player_id in secrets:
            self.lobbies.emit_secret(lobby.code, player_id)
        logger.info("[%s] Twist '%s' delivered to %d players", lobby.code, twist.archetype, len(secrets))

    async def _attach_result_media(self, lobby: Lobby, result: RoundResult) -> None:
        mode = lobby.settings.image_generation_mode
        want_voice = lobby.settings.voiceover_results
        if mode == ImageGenerationMode.SCENARIO:
            result.image = lobby.scenario_image
        keys = list(lobby.secondary_credentials)
        want_image = mode == ImageGenerationMode.FULL
        if not (want_image or want_voice):
            return
        if not keys:
            logger.warning("[%s] Result media requested but no media keys collected, skipping", lobby.code)
            return
        image, audio = await asyncio.gather(
            self.media.generate_image(keys, result.story) if want_image else _none(),
            self.media.generate_voice(keys, result.story) if want_voice else _none(),
        )
        if want_image:
            result.image = image
        result.audio = audio

    # ── Captain controls ──────────────────────────────────────────────────────

    def reveal_results(self, code: str, player_id: str) -> bool:
        if not self.lobbies.is_captain(code, player_id):
            return False
        lobby = self.lobbies.get_lobby(code)
        if lobby.phase != LobbyPhase.RESULTS or lobby.results_revealed:
            return False
        lobby.results_revealed = True
        self.lobbies.emit_update(code)
        return True

    def reset_game(self, code: str, player_id: str) -> bool:
        if not self.lobbies.is_captain(code, player_id):
            return False
        lobby = self.lobbies.get_lobby(code)
        self._cancel_timer(code)
        self.lobbies.close_collection(code)
        if lobby.phase != LobbyPhase.WAITING_ROOM:
            lobby.transition(LobbyPhase.WAITING_ROOM)
        lobby.epoch += 1
        lobby.round = 0
        lobby.scenario = None
        lobby.scenario_image = None
        lobby.scenario_audio = None
        lobby.round_result = None
        lobby.primary_credentials = []
        lobby.secondary_credentials = []
        lobby.player_secrets = None
        lobby.results_revealed = False
        for p in lobby.players:
            p.round_status = RoundStatus.WAITING
            p.action_text = None
        self.lobbies.emit_update(code)
        logger.info("[%s] Game reset by captain", code)
        return True

    # ── Aggregate media usage ─────────────────────────────────────────────────

    async def aggregate_navy_usage(self, code: str, player_id: str) -> Optional[Dict[str, int]]:
        """Captain-only: total remaining media quota across everyone's keys."""
        if not self.lobbies.is_captain(code, player_id):
            return None
        if self.lobbies.collection_open(code):
            self.lobbies.send_to_player(code, player_id, {
                "type": "error",
                "data": {"message": "Key collection already in progress.", "errorCode": ERR_KEY_COLLECTION_BUSY},
            })
            return None
        try:
            _, secondary = await self.lobbies.collect_keys(code, self.usage_timeout)
        except CollectionBusyError:
            return None
        remaining = await self.media.navy.remaining_tokens(secondary)
        stats = {"totalTokens": sum(remaining.values()), "contributors": len(remaining)}
        self.lobbies.send_to_player(code, player_id, {"type": "navy_aggregate_stats", "data": stats})
        return stats


async def _none() -> None:
    return None
