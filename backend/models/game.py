from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import uuid


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    WAITING = "waiting"
    DISCUSSION1 = "discussion1"
    INVESTIGATION1 = "investigation1"
    DISCUSSION2 = "discussion2"
    ADDITIONAL_HANDOUT = "additional_handout"
    DISCUSSION3 = "discussion3"
    INVESTIGATION2 = "investigation2"
    DISCUSSION4 = "discussion4"
    VOTING = "voting"
    RESULT = "result"


# Fixed total order of persisted phases. Transitions only ever move right.
PHASE_ORDER: List[Phase] = list(Phase)

# Maximum players per room (one per playable character).
MAX_PLAYERS = 4


def phase_index(phase: Phase) -> int:
    return PHASE_ORDER.index(Phase(phase))


class GameRuleError(ValueError):
    """
    A capacity or validation failure detected before any write.
    `code` is stable and machine-readable; the message is for display.
    """

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


# ── Persisted records ─────────────────────────────────────────────────────────

class Room(BaseModel):
    id: str
    phase: Phase = Phase.WAITING
    timer_start: Optional[datetime] = None
    host_id: str
    created_at: datetime = Field(default_factory=_utcnow)

    def is_host(self, player_id: Optional[str]) -> bool:
        return bool(player_id) and self.host_id == player_id


class Player(BaseModel):
    id: str
    room_id: str
    name: str
    character_id: Optional[int] = None
    items: List[int] = []  # append-only within a room
    created_at: datetime = Field(default_factory=_utcnow)

    def has_item(self, item_id: int) -> bool:
        return item_id in self.items

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "character_id": self.character_id,
            "items": list(self.items),
        }


class VoteChoice(BaseModel):
    """The four dimensions a player picks on the vote screen. None = unset."""
    who: Optional[int] = None
    where: Optional[int] = None
    what: Optional[int] = None
    to_whom: Optional[int] = None

    def missing(self) -> List[str]:
        return [name for name in ("who", "where", "what", "to_whom") if getattr(self, name) is None]


class Vote(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    room_id: str
    player_id: str
    who: int
    where_location: int
    what_item: int
    to_whom: int
    created_at: datetime = Field(default_factory=_utcnow)


class Consensus(BaseModel):
    who: int
    where: int
    what: int
    to_whom: int

    def as_tuple(self):
        return (self.who, self.where, self.what, self.to_whom)


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateRoomRequest(BaseModel):
    player_id: Optional[str] = None  # reuse an existing identity if the client has one
    player_name: str
    character_id: Optional[int] = None


class CreateRoomResponse(BaseModel):
    room_id: str
    host_id: str
    player_id: str


class JoinRoomRequest(BaseModel):
    player_id: Optional[str] = None
    player_name: str
    character_id: Optional[int] = None


class JoinRoomResponse(BaseModel):
    room_id: str
    player_id: str


class SearchRequest(BaseModel):
    location_id: int


class VoteRequest(BaseModel):
    who: Optional[int] = None
    where: Optional[int] = None
    what: Optional[int] = None
    to_whom: Optional[int] = None

    def to_choice(self) -> VoteChoice:
        return VoteChoice(**self.model_dump())
