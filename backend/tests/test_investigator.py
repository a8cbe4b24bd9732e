import pytest

from models.game import GameRuleError, Phase
from models.scenario import INVESTIGATION1_FLAG, INVESTIGATION2_FLAG, LOCATIONS, Item, Location
from services.session import SessionContext
from agents.investigator import (
    InvestigationResolver, found_item_ids, get_investigation_config, pick_item, stage_item_ids,
)


@pytest.fixture
def location_x():
    return Location(
        id=10, name="Location X", description="Test location",
        items=[
            Item(id=103, name="c", description="", stage=1),
            Item(id=101, name="a", description="", stage=1),
            Item(id=102, name="b", description="", stage=1),
            Item(id=201, name="late", description="", stage=2),
        ],
    )


async def test_sequential_searches_take_lowest_id_then_exhaust(store, make_room, location_x):
    room_id, (host, _) = await make_room(players=2, phase=Phase.INVESTIGATION1)
    resolver = InvestigationResolver(store, locations=[location_x])

    first = await resolver.search(host, room_id, 10)
    second = await resolver.search(host, room_id, 10)
    assert (first.item.id, second.item.id) == (101, 102)

    with pytest.raises(GameRuleError) as exc:
        await resolver.search(host, room_id, 10)
    assert exc.value.code == "LOCATION_EXHAUSTED"


async def test_empty_location_yields_nothing(store, make_room):
    single = Location(id=11, name="Closet", description="", items=[Item(id=150, name="only", description="", stage=1)])
    room_id, (host, guest) = await make_room(players=2, phase=Phase.INVESTIGATION1)
    resolver = InvestigationResolver(store, locations=[single])

    await resolver.search(host, room_id, 11)
    result = await resolver.search(guest, room_id, 11)

    assert result.committed is True
    assert result.item is None
    assert (await store.get_player(guest.player_id)).items == []


async def test_flag_awarded_with_quota(store, resolver, make_room):
    room_id, (host, _) = await make_room(players=2, phase=Phase.INVESTIGATION1)

    first = await resolver.search(host, room_id, 1)
    assert first.item.id == 1
    assert first.finished is False
    assert INVESTIGATION1_FLAG not in (await store.get_player(host.player_id)).items

    second = await resolver.search(host, room_id, 2)
    assert second.item.id == 4
    assert second.finished is True
    assert (await store.get_player(host.player_id)).items == [1, 4, INVESTIGATION1_FLAG]

    with pytest.raises(GameRuleError) as exc:
        await resolver.search(host, room_id, 3)
    assert exc.value.code == "ALREADY_FINISHED"


async def test_second_investigation_quota_is_one(store, resolver, make_room):
    room_id, (host, guest) = await make_room(players=2, phase=Phase.INVESTIGATION2)

    result = await resolver.search(host, room_id, 2)
    assert result.item.id == 11
    assert result.finished is True
    assert INVESTIGATION2_FLAG in (await store.get_player(host.player_id)).items

    with pytest.raises(GameRuleError) as exc:
        await resolver.search(guest, room_id, 2)
    assert exc.value.code == "LOCATION_EXHAUSTED"


async def test_full_room_never_shares_items(store, resolver, make_room):
    room_id, sessions = await make_room(players=4, phase=Phase.INVESTIGATION1)
    searchable = [loc.id for loc in resolver.searchable_locations()]

    # Round-robin until everybody holds the flag
    for _ in range(10):
        for s in sessions:
            me = await store.get_player(s.player_id)
            if INVESTIGATION1_FLAG in me.items:
                continue
            players = await store.get_players(room_id)
            found = found_item_ids(players)
            config = get_investigation_config(Phase.INVESTIGATION1)
            loc_id = next(
                loc.id for loc in resolver.searchable_locations()
                if pick_item(loc, config, found) is not None
            )
            assert loc_id in searchable
            await resolver.search(s, room_id, loc_id)

    players = await store.get_players(room_id)
    stage_one = stage_item_ids(LOCATIONS, 1)
    held = [i for p in players for i in p.items if i in stage_one]
    assert len(held) == len(set(held)) == 8
    for p in players:
        stage_count = sum(1 for i in p.items if i in stage_one)
        assert (INVESTIGATION1_FLAG in p.items) == (stage_count >= 2)


async def test_rejected_searches(store, resolver, make_room):
    room_id, (host, _) = await make_room(players=2, phase=Phase.DISCUSSION1)
    with pytest.raises(GameRuleError) as exc:
        await resolver.search(host, room_id, 1)
    assert exc.value.code == "WRONG_PHASE"

    await store.update_room(room_id, {"phase": Phase.INVESTIGATION1})
    for location_id in (5, 6, 42):
        with pytest.raises(GameRuleError) as exc:
            await resolver.search(host, room_id, location_id)
        assert exc.value.code == "UNKNOWN_LOCATION"

    with pytest.raises(GameRuleError) as exc:
        await resolver.search(SessionContext.for_player("stranger"), room_id, 1)
    assert exc.value.code == "NOT_JOINED"


async def test_barrier_view(store, resolver, make_room):
    room_id, sessions = await make_room(players=3, phase=Phase.INVESTIGATION1)
    host, guest = sessions[0], sessions[1]
    for s in sessions:
        await store.update_player(s.player_id, {"items": [INVESTIGATION1_FLAG]})
    room = await store.get_room(room_id)
    players = await store.get_players(room_id)

    host_view = resolver.status(room, players, host.player_id)
    guest_view = resolver.status(room, players, guest.player_id)

    assert host_view["all_players_finished"] is True
    assert guest_view["all_players_finished"] is True
    assert host_view["can_return"] is True
    assert host_view["waiting_message"] is None
    assert guest_view["can_return"] is False
    assert guest_view["waiting_message"] == "Waiting for the host to continue..."


async def test_partial_progress_view(store, resolver, make_room):
    room_id, (host, guest) = await make_room(players=2, phase=Phase.INVESTIGATION1)
    await resolver.search(host, room_id, 1)
    await resolver.search(host, room_id, 1)

    room = await store.get_room(room_id)
    view = resolver.status(room, await store.get_players(room_id), host.player_id)

    cockpit = next(loc for loc in view["locations"] if loc["id"] == 1)
    assert (cockpit["found"], cockpit["cap"], cockpit["exhausted"]) == (2, 2, True)
    assert view["my_items"] == [1, 2]
    assert view["finished"] is True
    assert view["all_players_finished"] is False
    assert view["waiting_message"] == "Waiting for the other players to finish investigating..."
    assert [p["finished"] for p in view["progress"]] == [True, False]


async def test_stale_snapshots_can_double_assign(store, make_room, location_x):
    """
    Two searches computed from the same snapshot pick the same item, and
    both writes land: the read-modify-write is not atomic.
    """
    room_id, (host, guest) = await make_room(players=2, phase=Phase.INVESTIGATION1)
    config = get_investigation_config(Phase.INVESTIGATION1)

    snapshot = await store.get_players(room_id)
    host_pick = pick_item(location_x, config, found_item_ids(snapshot))
    guest_pick = pick_item(location_x, config, found_item_ids(snapshot))

    await store.update_player(host.player_id, {"items": [host_pick.id]})
    await store.update_player(guest.player_id, {"items": [guest_pick.id]})

    players = await store.get_players(room_id)
    assert [p.items for p in players] == [[101], [101]]
