"""
Game Master: room lifecycle and phase state machine. Pure deterministic Python.

Responsibilities:
- Room creation and joining (capacity, unique characters)
- Game start and phase advancement along the fixed phase order
- Advancement privileges (host only, except the shared tone-shift phase)
- Investigation barrier before leaving an investigation phase
- Countdown arithmetic (display only, never forces a transition)
- Phase routing and the client-local additional-handout transition

Every client runs this same logic against the replicated room record; the
store is the only shared state.
"""
import logging
import math
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from models.game import (
    MAX_PLAYERS, PHASE_ORDER, GameRuleError, Phase, Player, Room, _utcnow, phase_index,
)
from models.scenario import CHARACTERS, PHASE_LABELS, PHASE_TIMER, get_character
from agents.investigator import all_players_finished, get_investigation_config
from services.session import SessionContext
from services.store import StoreAdapter, normalize_room_id

logger = logging.getLogger(__name__)

# The phase right before the tone shift. Its timer is a near-zero animation
# trigger, so any player may advance it.
SHARED_PHASE = Phase.DISCUSSION2

# From this phase on the game renders dark and bonus handouts are visible.
TONE_SHIFT_PHASE = Phase.ADDITIONAL_HANDOUT

PHASE_ROUTES: Dict[Phase, str] = {
    Phase.WAITING: "lobby",
    Phase.INVESTIGATION1: "investigation",
    Phase.INVESTIGATION2: "investigation",
    Phase.VOTING: "vote",
    Phase.RESULT: "result",
}

# Additional-handout transition timing (seconds since entering the phase)
HANDOUT_REVEAL_AT = 2.5
HANDOUT_DONE_AT = 5.0


class HandoutStage(str, Enum):
    ERODING = "eroding"    # screen fading to black
    REVEALED = "revealed"  # dark theme on, bonus handout modal shown
    DONE = "done"          # overlay removed


# ── Pure phase helpers ────────────────────────────────────────────────────────

def next_phase(phase: Phase) -> Optional[Phase]:
    idx = phase_index(phase)
    if idx + 1 < len(PHASE_ORDER):
        return PHASE_ORDER[idx + 1]
    return None


def route_for(phase: Phase) -> str:
    return PHASE_ROUTES.get(Phase(phase), "game")


def after_tone_shift(phase: Phase) -> bool:
    return phase_index(phase) >= phase_index(TONE_SHIFT_PHASE)


def remaining_seconds(room: Room, now: Optional[datetime] = None) -> Optional[int]:
    """duration − elapsed, floored at zero. None when the phase has no countdown."""
    duration = PHASE_TIMER.get(room.phase)
    if not duration or room.timer_start is None:
        return None
    now = now or _utcnow()
    elapsed = math.floor((now - room.timer_start).total_seconds())
    return max(0, duration - elapsed)


def handout_transition(elapsed: float) -> HandoutStage:
    if elapsed < HANDOUT_REVEAL_AT:
        return HandoutStage.ERODING
    if elapsed < HANDOUT_DONE_AT:
        return HandoutStage.REVEALED
    return HandoutStage.DONE


def free_characters(players: List[Player]) -> List[int]:
    taken = {p.character_id for p in players}
    return [c.id for c in CHARACTERS if c.id not in taken]


def handout_stage(room: Room, now: Optional[datetime] = None) -> Optional[HandoutStage]:
    """Where the client-local handout animation is, or None outside that phase."""
    if room.phase != TONE_SHIFT_PHASE or room.timer_start is None:
        return None
    return handout_transition(((now or _utcnow()) - room.timer_start).total_seconds())


def can_advance(room: Room, player_id: Optional[str]) -> bool:
    """Whether this player may request the transition out of the current phase."""
    if room.phase in (Phase.WAITING, Phase.RESULT):
        return False
    return room.is_host(player_id) or room.phase == SHARED_PHASE


def room_view(
    room: Room, players: List[Player], player_id: Optional[str], now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Everything the game screen derives from the replicated room + players."""
    me = next((p for p in players if p.id == player_id), None)
    character = get_character(me.character_id) if me else None
    stage = handout_stage(room, now)
    return {
        "room_id": room.id,
        "phase": room.phase.value,
        "phase_label": PHASE_LABELS.get(room.phase, room.phase.value),
        "host_id": room.host_id,
        "is_host": room.is_host(player_id),
        "remaining_seconds": remaining_seconds(room, now),
        "can_advance": can_advance(room, player_id),
        "route": route_for(room.phase),
        "dark_theme": after_tone_shift(room.phase) and stage != HandoutStage.ERODING,
        "bonus_handouts": after_tone_shift(room.phase),
        "handout_stage": stage.value if stage else None,
        "available_characters": free_characters(players),
        "character": character.model_dump() if character else None,
        "players": [p.to_public() for p in players],
    }


# ── Game master ───────────────────────────────────────────────────────────────

class GameMaster:
    """
    Room and phase operations for one client.
    Validation failures raise GameRuleError before anything is written;
    store write failures come back as None/False.
    """

    def __init__(self, store: StoreAdapter, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock

    async def _require_room(self, room_id: str) -> Room:
        room = await self.store.get_room(room_id)
        if room is None:
            raise GameRuleError("ROOM_NOT_FOUND", f"Room {room_id} not found")
        return room

    @staticmethod
    def _validate_name(name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise GameRuleError("NAME_REQUIRED", "Please enter a name")
        return name

    @staticmethod
    def _validate_character(character_id: Optional[int]) -> None:
        if character_id is not None and get_character(character_id) is None:
            raise GameRuleError("INVALID_CHOICE", f"Unknown character {character_id}")

    # ── Lobby ─────────────────────────────────────────────────────────────────

    async def create_room(
        self, session: SessionContext, name: str, character_id: Optional[int] = None
    ) -> Optional[Tuple[Room, Player]]:
        """Create a room hosted by this player and join it as the first player."""
        name = self._validate_name(name)
        self._validate_character(character_id)

        room = await self.store.create_room(session.player_id)
        if room is None:
            return None
        player = await self.store.join_room(room.id, session.player_id, name, character_id)
        if player is None:
            return None
        logger.info(f"[{room.id}] Room created by host {session.player_id} ({name})")
        return room, player

    async def join_room(
        self, session: SessionContext, room_id: str, name: str, character_id: Optional[int] = None
    ) -> Optional[Player]:
        name = self._validate_name(name)
        self._validate_character(character_id)
        room_id = normalize_room_id(room_id)
        room = await self._require_room(room_id)

        existing = await self.store.get_players(room.id)
        mine = next((p for p in existing if p.id == session.player_id), None)
        if mine is not None:
            # Reload on the same device: keep the record (and its items)
            return mine
        if len(existing) >= MAX_PLAYERS:
            logger.warning(f"[{room.id}] Join rejected for {session.player_id}: room full")
            raise GameRuleError("ROOM_FULL", "This room is full")
        if character_id is not None and any(p.character_id == character_id for p in existing):
            logger.warning(f"[{room.id}] Join rejected for {session.player_id}: character {character_id} taken")
            raise GameRuleError("CHARACTER_TAKEN", "That character has already been chosen")

        player = await self.store.join_room(room.id, session.player_id, name, character_id)
        if player is not None:
            logger.info(f"[{room.id}] Player {session.player_id} ({name}) joined as character {character_id}")
        return player

    async def available_characters(self, room_id: str) -> List[int]:
        return free_characters(await self.store.get_players(room_id))

    # ── Phase transitions ─────────────────────────────────────────────────────

    async def start_game(self, session: SessionContext, room_id: str) -> bool:
        """Host starts the game: waiting → discussion1, countdown stamped."""
        room = await self._require_room(room_id)
        if not room.is_host(session.player_id):
            raise GameRuleError("NOT_HOST", "Only the host can start the game")
        if room.phase != Phase.WAITING:
            raise GameRuleError("WRONG_PHASE", "The game has already started")
        players = await self.store.get_players(room_id)
        if not players:
            raise GameRuleError("NO_PLAYERS", "At least one player is required")

        ok = await self.store.update_room(room_id, {
            "phase": Phase.DISCUSSION1,
            "timer_start": self.clock(),
        })
        if ok:
            logger.info(f"[{room_id}] Game started with {len(players)} players")
        return ok

    async def advance_phase(
        self, session: SessionContext, room_id: str, expected_phase: Optional[Phase] = None
    ) -> Optional[Phase]:
        """
        Move the room to the next phase and stamp a new timer_start.

        `expected_phase` is the phase the caller saw. If the room has already
        moved on (another client advanced first) this is a no-op returning the
        current phase, so double clicks never skip a phase.
        Returns the room's phase afterwards, or None if the write failed.
        """
        room = await self._require_room(room_id)
        if expected_phase is not None and room.phase != Phase(expected_phase):
            logger.info(f"[{room_id}] Advance from {Phase(expected_phase).value} ignored, room already at {room.phase.value}")
            return room.phase

        if room.phase == Phase.WAITING:
            raise GameRuleError("WRONG_PHASE", "Use start to leave the lobby")
        target = next_phase(room.phase)
        if target is None:
            raise GameRuleError("WRONG_PHASE", "The game is already over")
        if not can_advance(room, session.player_id):
            raise GameRuleError("NOT_HOST", "Only the host can move to the next phase")

        if get_investigation_config(room.phase) is not None:
            players = await self.store.get_players(room_id)
            if not all_players_finished(players, room.phase):
                raise GameRuleError("INVESTIGATION_INCOMPLETE", "Some players are still investigating")

        ok = await self.store.update_room(room_id, {
            "phase": target,
            "timer_start": self.clock(),
        })
        if not ok:
            return None
        logger.info(f"[{room_id}] Phase: {room.phase.value} → {target.value} (by {session.player_id})")
        return target

    async def view(self, session: SessionContext, room_id: str) -> Optional[Dict[str, Any]]:
        room = await self.store.get_room(room_id)
        if room is None:
            return None
        players = await self.store.get_players(room_id)
        return room_view(room, players, session.player_id, self.clock())
