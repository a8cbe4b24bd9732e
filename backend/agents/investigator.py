"""
Investigation resolver: phase-scoped searches over a shared, depleting item pool.

Policy: one location per search action. Each action assigns at most one
item; the acting player's completion flag is added by the same write that
fills their personal quota.

The pool is the union of every player's items, re-read immediately before
each write. The read-modify-write is not atomic: two players searching the
same location on the same snapshot can both be handed the same item.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel

from models.game import GameRuleError, Phase, Player, Room
from models.scenario import (
    INVESTIGATION1_FLAG, INVESTIGATION2_FLAG, LOCATIONS, Item, Location,
)
from services.session import SessionContext
from services.store import StoreAdapter

logger = logging.getLogger(__name__)


class InvestigationConfig(BaseModel):
    phase: Phase
    target_stage: int
    max_searches_per_location: int  # items one location can yield to the whole room
    max_selectable: int             # personal quota per player
    flag_id: int


INVESTIGATION_CONFIGS: Dict[Phase, InvestigationConfig] = {
    Phase.INVESTIGATION1: InvestigationConfig(
        phase=Phase.INVESTIGATION1,
        target_stage=1,
        max_searches_per_location=2,
        max_selectable=2,
        flag_id=INVESTIGATION1_FLAG,
    ),
    Phase.INVESTIGATION2: InvestigationConfig(
        phase=Phase.INVESTIGATION2,
        target_stage=2,
        max_searches_per_location=1,
        max_selectable=1,
        flag_id=INVESTIGATION2_FLAG,
    ),
}


class SearchResult(BaseModel):
    committed: bool           # False only when the store rejected the write
    item: Optional[Item] = None
    finished: bool = False    # the acting player now holds the phase flag


def get_investigation_config(phase: Phase) -> Optional[InvestigationConfig]:
    return INVESTIGATION_CONFIGS.get(Phase(phase))


# ── Pure derivations (identical on every client) ──────────────────────────────

def found_item_ids(players: Iterable[Player]) -> Set[int]:
    found: Set[int] = set()
    for p in players:
        found.update(p.items or [])
    return found


def stage_items(location: Location, stage: int) -> List[Item]:
    return sorted((i for i in location.items if i.stage == stage), key=lambda i: i.id)


def location_found_count(location: Location, config: InvestigationConfig, found: Set[int]) -> int:
    return sum(1 for i in stage_items(location, config.target_stage) if i.id in found)


def is_location_exhausted(location: Location, config: InvestigationConfig, found: Set[int]) -> bool:
    return location_found_count(location, config, found) >= config.max_searches_per_location


def pick_item(location: Location, config: InvestigationConfig, found: Set[int]) -> Optional[Item]:
    """Lowest-id unclaimed item of the active stage at this location."""
    return next((i for i in stage_items(location, config.target_stage) if i.id not in found), None)


def stage_item_ids(locations: List[Location], stage: int) -> Set[int]:
    return {i.id for loc in locations for i in loc.items if i.stage == stage}


def player_stage_count(items: Iterable[int], config: InvestigationConfig, locations: List[Location]) -> int:
    stage_ids = stage_item_ids(locations, config.target_stage)
    return sum(1 for item_id in set(items) if item_id in stage_ids)


def has_finished(player: Player, phase: Phase) -> bool:
    config = get_investigation_config(phase)
    return config is not None and player.has_item(config.flag_id)


def all_players_finished(players: List[Player], phase: Phase) -> bool:
    """Synchronisation barrier: every player in the room holds this phase's flag."""
    return bool(players) and all(has_finished(p, phase) for p in players)


# ── Resolver ──────────────────────────────────────────────────────────────────

class InvestigationResolver:
    def __init__(self, store: StoreAdapter, locations: Optional[List[Location]] = None):
        self.store = store
        self.locations = locations if locations is not None else LOCATIONS
        self._by_id = {loc.id: loc for loc in self.locations}

    def searchable_locations(self) -> List[Location]:
        return [loc for loc in self.locations if loc.searchable]

    async def search(self, session: SessionContext, room_id: str, location_id: int) -> SearchResult:
        """
        Search one location for the acting player.

        Raises GameRuleError when the search is not allowed (wrong phase,
        unknown or exhausted location, quota already filled). A location
        that still has capacity but no unclaimed items yields nothing.
        """
        room = await self.store.get_room(room_id)
        if room is None:
            raise GameRuleError("ROOM_NOT_FOUND", f"Room {room_id} not found")
        config = get_investigation_config(room.phase)
        if config is None:
            raise GameRuleError("WRONG_PHASE", "Searching is only possible during an investigation")
        location = self._by_id.get(location_id)
        if location is None or not location.searchable:
            raise GameRuleError("UNKNOWN_LOCATION", f"Location {location_id} cannot be searched")

        # Fresh read right before the write
        players = await self.store.get_players(room_id)
        me = next((p for p in players if p.id == session.player_id), None)
        if me is None:
            raise GameRuleError("NOT_JOINED", "You are not a player in this room")
        found = found_item_ids(players)
        if is_location_exhausted(location, config, found):
            raise GameRuleError("LOCATION_EXHAUSTED", f"{location.name} has been searched out")
        if me.has_item(config.flag_id):
            raise GameRuleError("ALREADY_FINISHED", "You have finished this investigation")

        item = pick_item(location, config, found)
        if item is None:
            logger.info(f"[{room_id}] {me.id} searched {location.name}: nothing left")
            return SearchResult(committed=True)

        new_items = list(me.items) + [item.id]
        finished = player_stage_count(new_items, config, self.locations) >= config.max_selectable
        if finished and config.flag_id not in new_items:
            new_items.append(config.flag_id)

        if not await self.store.update_player(me.id, {"items": new_items}):
            return SearchResult(committed=False)

        logger.info(f"[{room_id}] {me.id} found item {item.id} ({item.name}) in {location.name}")
        if finished:
            logger.info(f"[{room_id}] {me.id} finished {room.phase.value} (flag {config.flag_id})")
        return SearchResult(committed=True, item=item, finished=finished)

    def status(self, room: Room, players: List[Player], player_id: Optional[str]) -> Dict[str, Any]:
        """Investigation screen state: location meters, per-player progress, barrier."""
        config = get_investigation_config(room.phase)
        if config is None:
            return {"phase": room.phase.value, "active": False}

        found = found_item_ids(players)
        stage_ids = stage_item_ids(self.locations, config.target_stage)
        me = next((p for p in players if p.id == player_id), None)
        finished = bool(me and me.has_item(config.flag_id))
        everyone = all_players_finished(players, room.phase)
        is_host = room.is_host(player_id)

        if not finished:
            waiting = None
        elif not everyone:
            waiting = "Waiting for the other players to finish investigating..."
        elif not is_host:
            waiting = "Waiting for the host to continue..."
        else:
            waiting = None

        return {
            "phase": room.phase.value,
            "active": True,
            "target_stage": config.target_stage,
            "max_selectable": config.max_selectable,
            "locations": [
                {
                    "id": loc.id,
                    "name": loc.name,
                    "description": loc.description,
                    "found": location_found_count(loc, config, found),
                    "cap": config.max_searches_per_location,
                    "exhausted": is_location_exhausted(loc, config, found),
                }
                for loc in self.searchable_locations()
            ],
            "progress": [
                {"player_id": p.id, "name": p.name, "finished": p.has_item(config.flag_id)}
                for p in players
            ],
            "my_items": [i for i in (me.items if me else []) if i in stage_ids],
            "finished": finished,
            "all_players_finished": everyone,
            "can_return": everyone and is_host,
            "waiting_message": waiting,
        }
