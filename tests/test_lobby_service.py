"""Tests for the lobby registry and session tracker."""
import asyncio

import pytest
from pydantic import ValidationError

from models.game import LobbyPhase, LobbySettings, PlayerRank, RoundStatus
from services.lobby_service import CODE_ALPHABET, CODE_LENGTH, CollectionBusyError, LobbyService
from conftest import FakeTransport, keys, profile, until


class ScriptedRandom:
    """rng stand-in whose choice() walks through a fixed string."""

    def __init__(self, script: str):
        self._chars = iter(script)

    def choice(self, seq):
        return next(self._chars)


class TestLobbyLifecycle:
    """Tests for create/join/update."""

    def test_codes_use_fixed_alphabet_and_length(self, lobbies):
        """Test that generated codes are 6 characters from A-Z0-9."""
        for _ in range(50):
            code = lobbies.generate_code()
            assert len(code) == CODE_LENGTH
            assert set(code) <= set(CODE_ALPHABET)

    def test_code_never_collides_with_open_lobby(self, transport):
        """Test that a colliding draw is rejected and redrawn."""
        service = LobbyService(transport=transport, rng=ScriptedRandom("AAAAAA" "AAAAAA" "BBBBBB"))
        first = service.create_lobby(profile("cap"))
        second = service.create_lobby(profile("cap2"))
        assert first.code == "AAAAAA"
        assert second.code == "BBBBBB"

    def test_create_makes_single_captain_in_waiting_room(self, lobbies):
        """Test that the creator is the only player and the captain."""
        lobby = lobbies.create_lobby(profile("cap"), session_id="s1")
        assert [p.id for p in lobby.players] == ["cap"]
        assert lobby.players[0].rank == PlayerRank.CAPTAIN
        assert lobby.players[0].online is True
        assert lobby.phase == LobbyPhase.WAITING_ROOM

    def test_create_broadcasts_state_to_creator(self, lobbies, transport):
        """Test that the creator's session receives the new lobby state."""
        lobby = lobbies.create_lobby(profile("cap"), session_id="s1")
        assert transport.last_state("s1")["lobbyCode"] == lobby.code

    def test_join_unknown_lobby_fails(self, lobbies):
        """Test that joining a missing code returns False."""
        assert lobbies.join_lobby("NOPE00", profile("p2")) is False

    def test_join_rejected_after_start(self, lobbies):
        """Test that new players cannot join a game in progress."""
        lobby = lobbies.create_lobby(profile("cap"))
        lobby.phase = LobbyPhase.PLAYER_INPUT
        assert lobbies.join_lobby(lobby.code, profile("late")) is False
        assert lobby.get_player("late") is None

    def test_rejoin_allowed_in_any_phase_without_duplicate(self, lobbies):
        """Test that a known player can reconnect mid-game and is refreshed."""
        lobby = lobbies.create_lobby(profile("cap"))
        lobbies.join_lobby(lobby.code, profile("p2", "Old Name"), session_id="s2")
        lobby.phase = LobbyPhase.JUDGING
        lobby.get_player("p2").round_status = RoundStatus.READY

        assert lobbies.join_lobby(lobby.code, profile("p2", "New Name"), session_id="s3") is True
        assert [p.id for p in lobby.players] == ["cap", "p2"]
        player = lobby.get_player("p2")
        assert player.name == "New Name"
        assert player.round_status == RoundStatus.READY

    def test_rejoin_resends_own_secret(self, lobbies, transport):
        """Test that a reconnecting player gets their secret back, privately."""
        lobby = lobbies.create_lobby(profile("cap"), session_id="s1")
        lobbies.join_lobby(lobby.code, profile("p2"), session_id="s2")
        lobby.player_secrets = {"p2": "You hear the walls breathing."}
        lobbies.join_lobby(lobby.code, profile("p2"), session_id="s3")
        assert transport.messages("s3", "secret_data")[0]["data"]["secret"] == "You hear the walls breathing."
        assert transport.messages("s1", "secret_data") == []

    def test_update_settings_captain_only(self, lobbies):
        """Test that regular players cannot change settings."""
        lobby = lobbies.create_lobby(profile("cap"))
        lobbies.join_lobby(lobby.code, profile("p2"))
        assert lobbies.update_settings(lobby.code, "p2", {"timeLimitSeconds": 60}) is False
        assert lobby.settings.time_limit_seconds == 120
        assert lobbies.update_settings(lobby.code, "cap", {"timeLimitSeconds": 60}) is True
        assert lobby.settings.time_limit_seconds == 60

    def test_update_settings_invalid_leaves_lobby_unchanged(self, lobbies):
        """Test that out-of-range or unknown settings raise and change nothing."""
        lobby = lobbies.create_lobby(profile("cap"))
        with pytest.raises(ValidationError):
            lobbies.update_settings(lobby.code, "cap", {"timeLimitSeconds": 5})
        with pytest.raises(ValidationError):
            lobbies.update_settings(lobby.code, "cap", {"geminiKeys": ["x"]})
        assert lobby.settings == LobbySettings()


class TestSessions:
    """Tests for session attach/disconnect and presence."""

    def test_last_session_disconnect_marks_offline(self, lobbies, transport):
        """Test that a player goes offline only when their last session drops."""
        lobby = lobbies.create_lobby(profile("cap"), session_id="s1")
        lobbies.join_lobby(lobby.code, profile("p2"), session_id="s2")
        lobbies.join_lobby(lobby.code, profile("p2"), session_id="s3")

        lobbies.disconnect("s2")
        assert lobby.get_player("p2").online is True
        lobbies.disconnect("s3")
        assert lobby.get_player("p2").online is False
        assert transport.last_state("s1")["players"][1]["isOnline"] is False

    def test_disconnect_keeps_player_and_status(self, lobbies):
        """Test that disconnect never removes a player or changes their round status."""
        lobby = lobbies.create_lobby(profile("cap"), session_id="s1")
        lobbies.join_lobby(lobby.code, profile("p2"), session_id="s2")
        lobby.get_player("p2").round_status = RoundStatus.READY
        lobbies.disconnect("s2")
        assert lobby.get_player("p2").round_status == RoundStatus.READY
        assert len(lobby.players) == 2

    def test_disconnect_unknown_session_is_harmless(self, lobbies):
        """Test that dropping an unknown session touches nothing."""
        assert lobbies.disconnect("ghost") == []

    def test_broadcast_reaches_only_room_members(self, transport):
        """Test that lobbies do not hear each other."""
        service = LobbyService(transport=transport)
        a = service.create_lobby(profile("a"), session_id="sa")
        service.create_lobby(profile("b"), session_id="sb")
        transport.clear()
        service.emit_update(a.code)
        assert transport.messages("sb") == []
        assert len(transport.messages("sa", "game_state")) == 1

    def test_emit_error_shape(self, lobbies, transport):
        """Test that room errors carry a message and optional code."""
        lobby = lobbies.create_lobby(profile("cap"), session_id="s1")
        lobbies.emit_error(lobby.code, "Boom", "ERR_X")
        lobbies.emit_error(lobby.code, "Plain")
        errors = [m["data"] for m in transport.messages("s1", "error")]
        assert errors == [{"message": "Boom", "errorCode": "ERR_X"}, {"message": "Plain"}]


class TestKeyCollection:
    """Tests for the key collection window."""

    def test_quorum_closes_window_early(self, transport):
        """Test that the window resolves as soon as every online player answered."""
        async def scenario():
            service = LobbyService(transport=transport)
            lobby = service.create_lobby(profile("cap"), session_id="s1")
            service.join_lobby(lobby.code, profile("p2"), session_id="s2")
            task = asyncio.create_task(service.collect_keys(lobby.code, timeout=30))
            await until(lambda: service.collection_open(lobby.code))
            service.submit_keys(lobby.code, "p2", keys(primary="k2"))
            service.submit_keys(lobby.code, "cap", keys(primary="k1", secondary="n1"))
            result = await asyncio.wait_for(task, 1)
            return service, lobby, result

        service, lobby, result = asyncio.run(scenario())
        assert result == (["k1", "k2"], ["n1"])
        assert not service.collection_open(lobby.code)

    def test_offline_players_are_not_waited_for(self, transport):
        """Test that expected answers count only online players."""
        async def scenario():
            service = LobbyService(transport=transport)
            lobby = service.create_lobby(profile("cap"), session_id="s1")
            service.join_lobby(lobby.code, profile("p2"), session_id="s2")
            service.disconnect("s2")
            task = asyncio.create_task(service.collect_keys(lobby.code, timeout=30))
            await until(lambda: service.collection_open(lobby.code))
            service.submit_keys(lobby.code, "cap", keys(primary="k1"))
            return await asyncio.wait_for(task, 1)

        assert asyncio.run(scenario()) == (["k1"], [])

    def test_late_submissions_dropped(self, lobbies):
        """Test that keys sent with no open window are ignored."""
        lobby = lobbies.create_lobby(profile("cap"))
        assert lobbies.submit_keys(lobby.code, "cap", keys(primary="k1")) is False

    def test_non_member_submissions_dropped(self, transport):
        """Test that outsiders cannot inject keys into a window."""
        async def scenario():
            service = LobbyService(transport=transport)
            lobby = service.create_lobby(profile("cap"), session_id="s1")
            task = asyncio.create_task(service.collect_keys(lobby.code, timeout=0.02))
            await until(lambda: service.collection_open(lobby.code))
            accepted = service.submit_keys(lobby.code, "intruder", keys(primary="evil"))
            return accepted, await task

        accepted, result = asyncio.run(scenario())
        assert accepted is False
        assert result == ([], [])

    def test_second_window_raises_busy(self, transport):
        """Test that only one window may be open per lobby."""
        async def scenario():
            service = LobbyService(transport=transport)
            lobby = service.create_lobby(profile("cap"), session_id="s1")
            task = asyncio.create_task(service.collect_keys(lobby.code, timeout=0.02))
            await until(lambda: service.collection_open(lobby.code))
            with pytest.raises(CollectionBusyError):
                await service.collect_keys(lobby.code, timeout=0.02)
            await task

        asyncio.run(scenario())

    def test_duplicate_keys_collapse(self, transport):
        """Test that the same key from two players appears once, at its first position."""
        async def scenario():
            service = LobbyService(transport=transport)
            lobby = service.create_lobby(profile("cap"), session_id="s1")
            service.join_lobby(lobby.code, profile("p2"), session_id="s2")
            task = asyncio.create_task(service.collect_keys(lobby.code, timeout=1))
            await until(lambda: service.collection_open(lobby.code))
            service.submit_keys(lobby.code, "cap", keys(primary=" shared "))
            service.submit_keys(lobby.code, "p2", keys(primary="shared"))
            return await task

        assert asyncio.run(scenario()) == (["shared"], [])

    def test_close_collection_releases_waiter_and_lobby(self, transport):
        """Test that closing a window returns partial answers and frees the lobby for a new window."""
        async def scenario():
            service = LobbyService(transport=transport)
            lobby = service.create_lobby(profile("cap"), session_id="s1")
            service.join_lobby(lobby.code, profile("p2"), session_id="s2")
            first = asyncio.create_task(service.collect_keys(lobby.code, timeout=30))
            await until(lambda: service.collection_open(lobby.code))
            service.submit_keys(lobby.code, "cap", keys(primary="k1"))
            service.close_collection(lobby.code)
            assert not service.collection_open(lobby.code)

            second = asyncio.create_task(service.collect_keys(lobby.code, timeout=30))
            await until(lambda: service.collection_open(lobby.code))
            early = await asyncio.wait_for(first, 1)
            # The finished first waiter must not tear down the second window
            still_open = service.collection_open(lobby.code)
            service.submit_keys(lobby.code, "cap", keys(primary="k2"))
            service.submit_keys(lobby.code, "p2", keys(primary="k3"))
            return early, still_open, await asyncio.wait_for(second, 1)

        early, still_open, late = asyncio.run(scenario())
        assert early == (["k1"], [])
        assert still_open is True
        assert late == (["k2", "k3"], [])

    def test_close_collection_without_window_is_harmless(self, lobbies):
        lobby = lobbies.create_lobby(profile("cap"))
        lobbies.close_collection(lobby.code)
        assert not lobbies.collection_open(lobby.code)
