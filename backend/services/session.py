"""
Per-device identity and session pointer.

A SessionContext is a plain value passed into every game operation. It is
never the source of truth for game state; it only says who this client is
and which room it is looking at. SessionStorage persists it between reloads
under two keys: "player_info" and "room_id".
"""
import logging
import random
import string
from abc import ABC, abstractmethod
from typing import Dict, Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

PLAYER_INFO_KEY = "player_info"
ROOM_ID_KEY = "room_id"

PLAYER_ID_ALPHABET = string.digits + string.ascii_lowercase
PLAYER_ID_LENGTH = 10


def generate_player_id() -> str:
    """Opaque random id. Collisions are acceptable at this game's scale."""
    return "".join(random.choices(PLAYER_ID_ALPHABET, k=PLAYER_ID_LENGTH))


class PlayerIdentity(BaseModel):
    id: str
    name: str = ""
    character_id: Optional[int] = None


class SessionContext(BaseModel):
    identity: PlayerIdentity
    room_id: Optional[str] = None

    @property
    def player_id(self) -> str:
        return self.identity.id

    @classmethod
    def new(cls, name: str = "", character_id: Optional[int] = None) -> "SessionContext":
        return cls(identity=PlayerIdentity(id=generate_player_id(), name=name, character_id=character_id))

    @classmethod
    def for_player(cls, player_id: str, room_id: Optional[str] = None) -> "SessionContext":
        return cls(identity=PlayerIdentity(id=player_id), room_id=room_id)

    def in_room(self, room_id: str) -> "SessionContext":
        return self.model_copy(update={"room_id": room_id})


class SessionStorage(ABC):
    """Key/value string storage scoped to one client session."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    # ── Session helpers ───────────────────────────────────────────────────────

    def load(self) -> Optional[SessionContext]:
        """Restore the saved session, or None on first visit / corrupt data."""
        raw = self.get(PLAYER_INFO_KEY)
        if not raw:
            return None
        try:
            identity = PlayerIdentity.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable player_info in session storage")
            return None
        return SessionContext(identity=identity, room_id=self.get(ROOM_ID_KEY))

    def load_or_create(self, name: str = "", character_id: Optional[int] = None) -> SessionContext:
        session = self.load()
        if session is None:
            session = SessionContext.new(name=name, character_id=character_id)
            self.save(session)
        return session

    def save(self, session: SessionContext) -> None:
        self.set(PLAYER_INFO_KEY, session.identity.model_dump_json())
        if session.room_id:
            self.set(ROOM_ID_KEY, session.room_id)
        else:
            self.delete(ROOM_ID_KEY)

    def leave(self) -> None:
        """Drop the room pointer, keep the identity."""
        self.delete(ROOM_ID_KEY)

    def restart(self) -> None:
        """Forget everything this device knew."""
        self.delete(PLAYER_INFO_KEY)
        self.delete(ROOM_ID_KEY)


class MemorySessionStorage(SessionStorage):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
