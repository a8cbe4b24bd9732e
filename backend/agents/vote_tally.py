"""
Voting consensus: collection, completion detection, deterministic tally.

Every client computes the consensus independently from the replicated vote
set, so the tally must not depend on vote order and ties must be broken the
same way everywhere: by a rolling hash of the room code plus a fixed
per-dimension salt.
"""
import logging
from collections import Counter
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from models.game import Consensus, GameRuleError, Phase, Player, Vote, VoteChoice
from models.scenario import CORRECT_ANSWER, VOTE_OPTIONS
from agents.game_master import GameMaster
from services.session import SessionContext
from services.store import StoreAdapter

logger = logging.getLogger(__name__)

# (vote dimension, Vote attribute, tie-break salt)
DIMENSIONS: Tuple[Tuple[str, str, str], ...] = (
    ("who", "who", "who"),
    ("where", "where_location", "where"),
    ("what", "what_item", "what"),
    ("to_whom", "to_whom", "toWhom"),
)


class Ending(str, Enum):
    TRUE = "true"
    BAD = "bad"
    PENDING = "pending"  # fewer votes than players


def rolling_hash(seed: str) -> int:
    """
    h = h*31 + code for every UTF-16 code unit, wrapped to a signed 32-bit
    integer after each step; the result is its absolute value.
    """
    data = seed.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        code = data[i] | (data[i + 1] << 8)
        h = (h * 31 + code) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def count_votes(values: Iterable[int]) -> Dict[int, int]:
    return dict(Counter(values))


def resolve_tie(counts: Dict[int, int], seed: str, salt: str) -> int:
    """Most-voted value; ties go to candidates[hash(seed+salt) % n] over ascending ids."""
    max_count = max(counts.values())
    candidates = sorted(value for value, count in counts.items() if count == max_count)
    if len(candidates) == 1:
        return candidates[0]
    return candidates[rolling_hash(seed + salt) % len(candidates)]


def get_consensus(votes: List[Vote], room_id: str) -> Optional[Consensus]:
    if not votes:
        return None
    picked = {}
    for name, attr, salt in DIMENSIONS:
        counts = count_votes(getattr(v, attr) for v in votes)
        picked[name] = resolve_tie(counts, room_id, salt)
    return Consensus(**picked)


def is_correct(consensus: Optional[Consensus], answer: Tuple[int, int, int, int] = CORRECT_ANSWER) -> bool:
    return consensus is not None and consensus.as_tuple() == tuple(answer)


def voting_complete(votes: List[Vote], players: List[Player]) -> bool:
    return bool(players) and len(votes) >= len(players)


def evaluate(votes: List[Vote], players: List[Player], room_id: str) -> Ending:
    if not voting_complete(votes, players):
        return Ending.PENDING
    return Ending.TRUE if is_correct(get_consensus(votes, room_id)) else Ending.BAD


def validate_choice(choice: VoteChoice) -> None:
    missing = choice.missing()
    if missing:
        raise GameRuleError("VOTE_INCOMPLETE", f"Please choose: {', '.join(missing)}")
    for name, options in VOTE_OPTIONS.items():
        if getattr(choice, name) not in options:
            raise GameRuleError("INVALID_CHOICE", f"{getattr(choice, name)} is not a valid '{name}' answer")


class VotingEngine:
    def __init__(self, store: StoreAdapter, game_master: Optional[GameMaster] = None):
        self.store = store
        self.game_master = game_master or GameMaster(store)

    async def submit_vote(self, session: SessionContext, room_id: str, choice: VoteChoice) -> bool:
        """
        Record this player's vote. Allowed while voting and, for the retry
        path, after the result has been shown.
        """
        validate_choice(choice)
        room = await self.store.get_room(room_id)
        if room is None:
            raise GameRuleError("ROOM_NOT_FOUND", f"Room {room_id} not found")
        if room.phase not in (Phase.VOTING, Phase.RESULT):
            raise GameRuleError("WRONG_PHASE", "Voting has not started")
        player = await self.store.get_player(session.player_id)
        if player is None or player.room_id != room_id:
            raise GameRuleError("NOT_JOINED", "You are not a player in this room")
        votes = await self.store.get_votes(room_id)
        if any(v.player_id == session.player_id for v in votes):
            raise GameRuleError("ALREADY_VOTED", "You have already voted")

        ok = await self.store.submit_vote(room_id, session.player_id, choice)
        if not ok:
            return False
        logger.info(f"[{room_id}] Vote from {session.player_id} ({len(votes) + 1} total)")
        await self.check_completion(session, room_id)
        return True

    async def check_completion(self, session: SessionContext, room_id: str) -> bool:
        """
        Host-side completion detection: once votes ≥ players during voting,
        move the room to result. Returns True if this call advanced the room.
        """
        room = await self.store.get_room(room_id)
        if room is None or room.phase != Phase.VOTING or not room.is_host(session.player_id):
            return False
        votes, players = await self.store.get_votes(room_id), await self.store.get_players(room_id)
        if not voting_complete(votes, players):
            return False
        logger.info(f"[{room_id}] All {len(players)} players voted, revealing result")
        new_phase = await self.game_master.advance_phase(session, room_id, expected_phase=Phase.VOTING)
        return new_phase == Phase.RESULT

    async def retry_vote(self, session: SessionContext, room_id: str) -> bool:
        """
        Delete this player's own vote so they can vote again. Only offered on
        the result screen, and never once the group has reached the true ending.
        """
        room = await self.store.get_room(room_id)
        if room is None:
            raise GameRuleError("ROOM_NOT_FOUND", f"Room {room_id} not found")
        if room.phase != Phase.RESULT:
            raise GameRuleError("WRONG_PHASE", "Votes can only be retried after the result")
        votes, players = await self.store.get_votes(room_id), await self.store.get_players(room_id)
        if evaluate(votes, players, room_id) == Ending.TRUE:
            raise GameRuleError("WRONG_PHASE", "The case is already solved")
        ok = await self.store.delete_vote(room_id, session.player_id)
        if ok:
            logger.info(f"[{room_id}] {session.player_id} withdrew their vote to retry")
        return ok

    async def result(self, room_id: str) -> Dict[str, Any]:
        votes = await self.store.get_votes(room_id)
        players = await self.store.get_players(room_id)
        consensus = get_consensus(votes, room_id)
        ending = evaluate(votes, players, room_id)
        if consensus is not None:
            logger.info(f"[{room_id}] Consensus {consensus.as_tuple()} → {ending.value} ending")
        return {
            "room_id": room_id,
            "votes_cast": len(votes),
            "player_count": len(players),
            "tally": {
                name: count_votes(getattr(v, attr) for v in votes)
                for name, attr, _ in DIMENSIONS
            },
            "consensus": consensus.model_dump() if consensus else None,
            "ending": ending.value,
        }
