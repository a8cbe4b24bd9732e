"""
Store Adapter: one persistence/notification contract, two backends.

  FirestoreStore  (services/firestore_service.py)
      Durable, shared between devices. Subscriptions are push-based:
      the callback fires on every committed write matching the room.
  LocalStore      (this module)
      In-process demo store used when Firestore is not configured.
      Subscriptions poll the current snapshot every `poll_interval` seconds.

Both honour the same rules:
  - reads of missing records return None / []
  - writes return True on commit, False otherwise (never a partial update)
  - updates are per-key last-write-wins, no merge
  - every subscribe_* returns a Subscription whose unsubscribe() stops all
    further callbacks and releases its timer/listener

The backend is chosen once, by get_store(), from settings.store_configured.
"""
import asyncio
import inspect
import logging
import random
import string
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from config import settings
from models.game import Phase, Player, Room, Vote, VoteChoice

logger = logging.getLogger(__name__)

# Callbacks may be plain functions or coroutine functions.
Callback = Callable[[Any], Any]

ROOM_CODE_ALPHABET = string.digits + string.ascii_uppercase
ROOM_CODE_LENGTH = 6


def generate_room_id() -> str:
    """Short upper-case alphanumeric room code, e.g. 'K3Z9QA'."""
    return "".join(random.choices(ROOM_CODE_ALPHABET, k=ROOM_CODE_LENGTH))


def normalize_room_id(room_id: str) -> str:
    """Room codes are case-insensitive on input; stored upper-case."""
    return (room_id or "").strip().upper()


async def invoke_callback(callback: Callback, payload: Any) -> None:
    result = callback(payload)
    if inspect.isawaitable(result):
        await result


# ── Subscriptions ─────────────────────────────────────────────────────────────

class Subscription(ABC):
    @abstractmethod
    def unsubscribe(self) -> None:
        ...

    @property
    @abstractmethod
    def active(self) -> bool:
        ...


class PollingSubscription(Subscription):
    """
    Cancellable scheduled task that re-reads a snapshot and hands it to the
    callback on every tick.

    start() schedules the periodic loop on the running event loop; tick()
    performs exactly one fetch+callback so tests can drive it without
    waiting on the wall clock.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[], Awaitable[Any]],
        callback: Callback,
        interval: float,
        skip_none: bool = False,
    ):
        self.name = name
        self.interval = interval
        self._fetch = fetch
        self._callback = callback
        self._skip_none = skip_none
        self._task: Optional[asyncio.Task] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> "PollingSubscription":
        if self._active and self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=f"poll:{self.name}")
        return self

    async def tick(self) -> None:
        if not self._active:
            return
        snapshot = await self._fetch()
        # unsubscribe() may have happened while the fetch was in flight
        if not self._active:
            return
        if snapshot is None and self._skip_none:
            return
        await invoke_callback(self._callback, snapshot)

    async def _run(self) -> None:
        while self._active:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("[%s] Polling tick failed; will retry", self.name, exc_info=True)

    def unsubscribe(self) -> None:
        self._active = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


# ── Contract ──────────────────────────────────────────────────────────────────

class StoreAdapter(ABC):
    """Backend-agnostic persistence contract used by every game component."""

    mode: str = "abstract"

    def __init__(self):
        self._subscriptions: Set[Subscription] = set()

    # Rooms
    @abstractmethod
    async def create_room(self, host_id: str) -> Optional[Room]: ...

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[Room]: ...

    @abstractmethod
    async def update_room(self, room_id: str, fields: Dict[str, Any]) -> bool: ...

    # Players
    @abstractmethod
    async def join_room(
        self, room_id: str, player_id: str, name: str, character_id: Optional[int]
    ) -> Optional[Player]: ...

    @abstractmethod
    async def get_players(self, room_id: str) -> List[Player]:
        """All players in the room, ordered by join time."""

    @abstractmethod
    async def get_player(self, player_id: str) -> Optional[Player]: ...

    @abstractmethod
    async def update_player(self, player_id: str, fields: Dict[str, Any]) -> bool: ...

    # Votes
    @abstractmethod
    async def submit_vote(self, room_id: str, player_id: str, vote: VoteChoice) -> bool:
        """Create the (room, player) vote. False if one already exists."""

    @abstractmethod
    async def delete_vote(self, room_id: str, player_id: str) -> bool: ...

    @abstractmethod
    async def get_votes(self, room_id: str) -> List[Vote]: ...

    # Subscriptions
    @abstractmethod
    def subscribe_to_room(self, room_id: str, callback: Callback) -> Subscription: ...

    @abstractmethod
    def subscribe_to_players(self, room_id: str, callback: Callback) -> Subscription: ...

    @abstractmethod
    def subscribe_to_votes(self, room_id: str, callback: Callback) -> Subscription: ...

    def _track(self, sub: Subscription) -> Subscription:
        self._subscriptions = {s for s in self._subscriptions if s.active}
        self._subscriptions.add(sub)
        return sub

    def close(self) -> None:
        """Unsubscribe everything still open (process shutdown)."""
        for sub in list(self._subscriptions):
            sub.unsubscribe()
        self._subscriptions.clear()


# ── Local (demo) backend ──────────────────────────────────────────────────────

class LocalStore(StoreAdapter):
    """
    In-memory demo store. Records are copied on the way in and out so
    callers never share mutable state with the store, mirroring a remote
    backend's serialisation boundary.
    """

    mode = "demo"

    def __init__(self, poll_interval: Optional[float] = None):
        super().__init__()
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_seconds
        self._rooms: Dict[str, Room] = {}
        self._players: Dict[str, Player] = {}
        self._votes: Dict[tuple, Vote] = {}

    # ── Rooms ─────────────────────────────────────────────────────────────────

    async def create_room(self, host_id: str) -> Optional[Room]:
        for _ in range(settings.room_code_attempts):
            room_id = generate_room_id()
            if room_id not in self._rooms:
                room = Room(id=room_id, phase=Phase.WAITING, host_id=host_id)
                self._rooms[room_id] = room
                return room.model_copy(deep=True)
        logger.warning("Could not allocate a free room code after %d attempts", settings.room_code_attempts)
        return None

    async def get_room(self, room_id: str) -> Optional[Room]:
        room = self._rooms.get(room_id)
        return room.model_copy(deep=True) if room else None

    async def update_room(self, room_id: str, fields: Dict[str, Any]) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            logger.warning(f"[{room_id}] update_room: room not found")
            return False
        try:
            self._rooms[room_id] = Room(**{**room.model_dump(), **fields})
        except ValidationError as exc:
            logger.warning(f"[{room_id}] update_room rejected: {exc}")
            return False
        return True

    # ── Players ───────────────────────────────────────────────────────────────

    async def join_room(
        self, room_id: str, player_id: str, name: str, character_id: Optional[int]
    ) -> Optional[Player]:
        if room_id not in self._rooms:
            return None
        # Upsert on player id: rejoining resets the record
        player = Player(id=player_id, room_id=room_id, name=name, character_id=character_id, items=[])
        self._players.pop(player_id, None)
        self._players[player_id] = player
        return player.model_copy(deep=True)

    async def get_players(self, room_id: str) -> List[Player]:
        players = [p for p in self._players.values() if p.room_id == room_id]
        players.sort(key=lambda p: p.created_at)
        return [p.model_copy(deep=True) for p in players]

    async def get_player(self, player_id: str) -> Optional[Player]:
        player = self._players.get(player_id)
        return player.model_copy(deep=True) if player else None

    async def update_player(self, player_id: str, fields: Dict[str, Any]) -> bool:
        player = self._players.get(player_id)
        if player is None:
            logger.warning(f"update_player: player {player_id} not found")
            return False
        try:
            self._players[player_id] = Player(**{**player.model_dump(), **fields})
        except ValidationError as exc:
            logger.warning(f"[{player.room_id}] update_player {player_id} rejected: {exc}")
            return False
        return True

    # ── Votes ─────────────────────────────────────────────────────────────────

    async def submit_vote(self, room_id: str, player_id: str, vote: VoteChoice) -> bool:
        key = (room_id, player_id)
        if key in self._votes:
            logger.warning(f"[{room_id}] submit_vote: {player_id} has already voted")
            return False
        try:
            self._votes[key] = Vote(
                room_id=room_id,
                player_id=player_id,
                who=vote.who,
                where_location=vote.where,
                what_item=vote.what,
                to_whom=vote.to_whom,
            )
        except ValidationError as exc:
            logger.warning(f"[{room_id}] submit_vote rejected: {exc}")
            return False
        return True

    async def delete_vote(self, room_id: str, player_id: str) -> bool:
        self._votes.pop((room_id, player_id), None)
        return True

    async def get_votes(self, room_id: str) -> List[Vote]:
        votes = [v for (rid, _), v in self._votes.items() if rid == room_id]
        votes.sort(key=lambda v: v.created_at)
        return [v.model_copy(deep=True) for v in votes]

    # ── Subscriptions (polling) ───────────────────────────────────────────────

    def _poll(self, name: str, fetch, callback: Callback, skip_none: bool = False) -> Subscription:
        sub = PollingSubscription(name, fetch, callback, self.poll_interval, skip_none=skip_none)
        try:
            sub.start()
        except RuntimeError:
            # No running loop: caller drives tick() by hand
            logger.debug("[%s] No running event loop; polling not scheduled", name)
        return self._track(sub)

    def subscribe_to_room(self, room_id: str, callback: Callback) -> Subscription:
        return self._poll(f"room:{room_id}", lambda: self.get_room(room_id), callback, skip_none=True)

    def subscribe_to_players(self, room_id: str, callback: Callback) -> Subscription:
        return self._poll(f"players:{room_id}", lambda: self.get_players(room_id), callback)

    def subscribe_to_votes(self, room_id: str, callback: Callback) -> Subscription:
        return self._poll(f"votes:{room_id}", lambda: self.get_votes(room_id), callback)


# ── Backend selection ─────────────────────────────────────────────────────────

_store: Optional[StoreAdapter] = None


def get_store() -> StoreAdapter:
    """Lazy singleton; the backend is picked once, on first call.
    Unconfigured or unreachable Firestore falls back to the demo store.
    Use as a FastAPI dependency: Depends(get_store)
    """
    global _store
    if _store is None:
        if settings.store_configured:
            try:
                from services.firestore_service import FirestoreStore
                _store = FirestoreStore()
            except Exception:
                logger.warning("Firestore unavailable, falling back to demo mode", exc_info=True)
                _store = LocalStore()
        else:
            _store = LocalStore()
        logger.info("Store backend: %s", _store.mode)
    return _store
