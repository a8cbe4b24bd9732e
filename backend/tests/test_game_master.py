import random
import re
from datetime import timedelta

import pytest

from models.game import PHASE_ORDER, GameRuleError, Phase, Room, _utcnow, phase_index
from models.scenario import INVESTIGATION1_FLAG, INVESTIGATION2_FLAG
from agents.game_master import (
    HandoutStage, can_advance, handout_transition, next_phase, remaining_seconds, room_view, route_for,
)
from services.session import SessionContext


# ── Pure helpers ──────────────────────────────────────────────────────────────

def test_next_phase_follows_fixed_order():
    assert next_phase(Phase.WAITING) == Phase.DISCUSSION1
    assert next_phase(Phase.DISCUSSION2) == Phase.ADDITIONAL_HANDOUT
    assert next_phase(Phase.VOTING) == Phase.RESULT
    assert next_phase(Phase.RESULT) is None


@pytest.mark.parametrize("phase,route", [
    (Phase.WAITING, "lobby"),
    (Phase.DISCUSSION1, "game"),
    (Phase.INVESTIGATION1, "investigation"),
    (Phase.ADDITIONAL_HANDOUT, "game"),
    (Phase.INVESTIGATION2, "investigation"),
    (Phase.VOTING, "vote"),
    (Phase.RESULT, "result"),
])
def test_route_for(phase, route):
    assert route_for(phase) == route


def test_remaining_seconds():
    t0 = _utcnow()
    room = Room(id="AB12CD", host_id="h", phase=Phase.DISCUSSION1, timer_start=t0)

    assert remaining_seconds(room, t0) == 600
    assert remaining_seconds(room, t0 + timedelta(seconds=30.7)) == 570
    assert remaining_seconds(room, t0 + timedelta(hours=1)) == 0


def test_remaining_seconds_without_countdown():
    t0 = _utcnow()
    assert remaining_seconds(Room(id="AB12CD", host_id="h", phase=Phase.INVESTIGATION1, timer_start=t0), t0) is None
    assert remaining_seconds(Room(id="AB12CD", host_id="h", phase=Phase.DISCUSSION1), t0) is None


@pytest.mark.parametrize("elapsed,stage", [
    (0, HandoutStage.ERODING),
    (2.49, HandoutStage.ERODING),
    (2.5, HandoutStage.REVEALED),
    (4.99, HandoutStage.REVEALED),
    (5.0, HandoutStage.DONE),
    (60, HandoutStage.DONE),
])
def test_handout_transition(elapsed, stage):
    assert handout_transition(elapsed) == stage


def test_advance_privileges():
    host_only = Room(id="AB12CD", host_id="h", phase=Phase.DISCUSSION1)
    shared = Room(id="AB12CD", host_id="h", phase=Phase.DISCUSSION2)
    finished = Room(id="AB12CD", host_id="h", phase=Phase.RESULT)

    assert can_advance(host_only, "h")
    assert not can_advance(host_only, "guest")
    assert can_advance(shared, "guest")
    assert not can_advance(finished, "h")


def test_dark_theme_from_additional_handout():
    before = room_view(Room(id="AB12CD", host_id="h", phase=Phase.DISCUSSION2), [], "h")
    after = room_view(Room(id="AB12CD", host_id="h", phase=Phase.DISCUSSION3), [], "h")
    assert before["dark_theme"] is False
    assert after["dark_theme"] is True
    assert after["bonus_handouts"] is True


# ── Lobby ─────────────────────────────────────────────────────────────────────

async def test_create_room_joins_host(gm, store, host):
    room, player = await gm.create_room(host, "  Host  ", 1)

    assert re.fullmatch(r"[0-9A-Z]{6}", room.id)
    assert room.phase == Phase.WAITING
    assert room.host_id == host.player_id
    assert player.name == "Host"
    assert [p.id for p in await store.get_players(room.id)] == [host.player_id]


async def test_join_is_case_insensitive(gm, store, host):
    room, _ = await gm.create_room(host, "Host", 1)
    guest = SessionContext.for_player("guest")

    player = await gm.join_room(guest, room.id.lower(), "Pat", 3)

    assert player.room_id == room.id
    assert player.character_id == 3
    assert player.items == []


async def test_join_unknown_room(gm):
    with pytest.raises(GameRuleError) as exc:
        await gm.join_room(SessionContext.for_player("guest"), "ZZZZZZ", "Pat", 2)
    assert exc.value.code == "ROOM_NOT_FOUND"


async def test_join_requires_name(gm, host):
    room, _ = await gm.create_room(host, "Host", 1)
    with pytest.raises(GameRuleError) as exc:
        await gm.join_room(SessionContext.for_player("guest"), room.id, "   ", 2)
    assert exc.value.code == "NAME_REQUIRED"


async def test_character_taken(gm, host):
    room, _ = await gm.create_room(host, "Host", 1)
    with pytest.raises(GameRuleError) as exc:
        await gm.join_room(SessionContext.for_player("guest"), room.id, "Pat", 1)
    assert exc.value.code == "CHARACTER_TAKEN"


async def test_room_full(gm, store, make_room):
    room_id, _ = await make_room(players=4)
    with pytest.raises(GameRuleError) as exc:
        await gm.join_room(SessionContext.for_player("late"), room_id, "Late", None)
    assert exc.value.code == "ROOM_FULL"
    assert len(await store.get_players(room_id)) == 4


async def test_rejoin_keeps_existing_record(gm, store, make_room):
    room_id, sessions = await make_room(players=2)
    guest = sessions[1]
    await store.update_player(guest.player_id, {"items": [1]})

    player = await gm.join_room(guest, room_id, "Renamed", 2)

    assert player.items == [1]
    assert len(await store.get_players(room_id)) == 2


async def test_available_characters(gm, make_room):
    room_id, _ = await make_room(players=2)
    assert await gm.available_characters(room_id) == [3, 4]


# ── Phase transitions ─────────────────────────────────────────────────────────

async def test_only_host_starts(gm, store, make_room):
    room_id, (host, guest) = await make_room(players=2)

    with pytest.raises(GameRuleError) as exc:
        await gm.start_game(guest, room_id)
    assert exc.value.code == "NOT_HOST"

    assert await gm.start_game(host, room_id) is True
    room = await store.get_room(room_id)
    assert room.phase == Phase.DISCUSSION1
    assert room.timer_start is not None

    with pytest.raises(GameRuleError) as exc:
        await gm.start_game(host, room_id)
    assert exc.value.code == "WRONG_PHASE"


async def test_guest_cannot_advance_host_phase(gm, make_room):
    room_id, (_, guest) = await make_room(players=2, phase=Phase.DISCUSSION1)
    with pytest.raises(GameRuleError) as exc:
        await gm.advance_phase(guest, room_id)
    assert exc.value.code == "NOT_HOST"


async def test_anyone_advances_shared_phase(gm, store, make_room):
    room_id, (_, guest) = await make_room(players=2, phase=Phase.DISCUSSION2)
    assert await gm.advance_phase(guest, room_id) == Phase.ADDITIONAL_HANDOUT


async def test_stale_advance_is_a_no_op(gm, store, make_room):
    room_id, (host, guest) = await make_room(players=2, phase=Phase.DISCUSSION2)

    assert await gm.advance_phase(host, room_id, expected_phase=Phase.DISCUSSION2) == Phase.ADDITIONAL_HANDOUT
    # Second click from a client that still showed discussion2
    assert await gm.advance_phase(guest, room_id, expected_phase=Phase.DISCUSSION2) == Phase.ADDITIONAL_HANDOUT
    assert (await store.get_room(room_id)).phase == Phase.ADDITIONAL_HANDOUT


async def test_advance_stamps_new_timer(gm, store, make_room):
    room_id, (host, _) = await make_room(players=2, phase=Phase.DISCUSSION3)
    before = (await store.get_room(room_id)).timer_start

    await gm.advance_phase(host, room_id)
    room = await store.get_room(room_id)
    assert room.phase == Phase.INVESTIGATION2
    assert room.timer_start >= before


async def test_investigation_barrier(gm, store, make_room):
    room_id, (host, guest) = await make_room(players=2, phase=Phase.INVESTIGATION1)
    await store.update_player(host.player_id, {"items": [1, 2, INVESTIGATION1_FLAG]})

    with pytest.raises(GameRuleError) as exc:
        await gm.advance_phase(host, room_id)
    assert exc.value.code == "INVESTIGATION_INCOMPLETE"

    await store.update_player(guest.player_id, {"items": [4, 5, INVESTIGATION1_FLAG]})
    assert await gm.advance_phase(host, room_id) == Phase.DISCUSSION2


async def test_no_transition_out_of_result(gm, make_room):
    room_id, (host, _) = await make_room(players=2, phase=Phase.RESULT)
    with pytest.raises(GameRuleError) as exc:
        await gm.advance_phase(host, room_id)
    assert exc.value.code == "WRONG_PHASE"


async def test_phase_never_moves_backwards(gm, store, make_room):
    """Random advance attempts from every player only ever move the room forward."""
    room_id, sessions = await make_room(players=3)
    host = sessions[0]
    await gm.start_game(host, room_id)
    for s in sessions:
        await store.update_player(s.player_id, {"items": [INVESTIGATION1_FLAG, INVESTIGATION2_FLAG]})

    rng = random.Random(7)
    seen = [phase_index(Phase.DISCUSSION1)]
    for _ in range(2000):
        actor = rng.choice(sessions)
        expected = rng.choice([None] + PHASE_ORDER)
        try:
            await gm.advance_phase(actor, room_id, expected_phase=expected)
        except GameRuleError:
            pass
        seen.append(phase_index((await store.get_room(room_id)).phase))

    assert seen == sorted(seen)
    assert seen[-1] == phase_index(Phase.RESULT)


async def test_view_for_player(gm, make_room):
    room_id, (host, guest) = await make_room(players=2, phase=Phase.DISCUSSION1)

    view = await gm.view(guest, room_id)
    assert view["phase"] == "discussion1"
    assert view["is_host"] is False
    assert view["can_advance"] is False
    assert view["character"]["id"] == 2
    assert 0 < view["remaining_seconds"] <= 600
    assert len(view["players"]) == 2

    assert await gm.view(host, "ZZZZZZ") is None


def test_handout_stage_in_view():
    t0 = _utcnow()
    room = Room(id="AB12CD", host_id="h", phase=Phase.ADDITIONAL_HANDOUT, timer_start=t0)

    early = room_view(room, [], "h", t0 + timedelta(seconds=1))
    assert early["handout_stage"] == "eroding"
    assert early["dark_theme"] is False

    revealed = room_view(room, [], "h", t0 + timedelta(seconds=3))
    assert revealed["handout_stage"] == "revealed"
    assert revealed["dark_theme"] is True

    later = room_view(room.model_copy(update={"phase": Phase.DISCUSSION3}), [], "h", t0)
    assert later["handout_stage"] is None
