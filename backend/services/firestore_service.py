import asyncio
import logging
import os
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from google.api_core import exceptions as gcp_exceptions

from config import settings
from models.game import Phase, Player, Room, Vote, VoteChoice
from services.store import Callback, StoreAdapter, Subscription, invoke_callback, generate_room_id

logger = logging.getLogger(__name__)


def _encode(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Firestore-safe copy of a partial update (enums → values, datetimes → ISO)."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


class FirestoreSubscription(Subscription):
    """
    Push subscription backed by a Firestore snapshot listener.
    Listener callbacks arrive on a gRPC thread; delivery is marshalled back
    onto the event loop that created the subscription.
    """

    def __init__(self, name: str, loop: asyncio.AbstractEventLoop):
        self.name = name
        self._loop = loop
        self._watch = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def attach(self, watch) -> None:
        self._watch = watch
        if not self._active:
            watch.unsubscribe()

    def emit(self, fetch: Callable[[], Awaitable[Any]], callback: Callback, skip_none: bool = False) -> None:
        if not self._active or self._loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self._deliver(fetch, callback, skip_none), self._loop)

    async def _deliver(self, fetch, callback: Callback, skip_none: bool) -> None:
        if not self._active:
            return
        try:
            snapshot = await fetch()
            if not self._active or (snapshot is None and skip_none):
                return
            await invoke_callback(callback, snapshot)
        except Exception:
            logger.warning("[%s] Snapshot delivery failed", self.name, exc_info=True)

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._watch is not None:
            self._watch.unsubscribe()
            self._watch = None


class FirestoreStore(StoreAdapter):
    """
    Async-friendly Firestore wrapper using run_in_executor to avoid
    blocking the event loop.

    Layout:
      rooms/{room_id}
      players/{player_id}             (room_id field)
      votes/{room_id}_{player_id}     (one vote per player per room)
    """

    mode = "firestore"

    def __init__(self):
        super().__init__()
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the module can be imported before GCP creds exist
        from google.cloud import firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    # ── Collection helpers ────────────────────────────────────────────────────

    def _room_ref(self, room_id: str):
        return self.db.collection("rooms").document(room_id)

    def _player_ref(self, player_id: str):
        return self.db.collection("players").document(player_id)

    def _players_query(self, room_id: str):
        return self.db.collection("players").where("room_id", "==", room_id)

    def _vote_ref(self, room_id: str, player_id: str):
        return self.db.collection("votes").document(f"{room_id}_{player_id}")

    def _votes_query(self, room_id: str):
        return self.db.collection("votes").where("room_id", "==", room_id)

    # ── Rooms ─────────────────────────────────────────────────────────────────

    async def create_room(self, host_id: str) -> Optional[Room]:
        for _ in range(settings.room_code_attempts):
            room = Room(id=generate_room_id(), phase=Phase.WAITING, host_id=host_id)
            data = room.model_dump(mode="json")
            try:
                await self._run(lambda: self._room_ref(room.id).create(data))
                return room
            except gcp_exceptions.AlreadyExists:
                logger.info(f"Room code {room.id} already taken, regenerating")
            except gcp_exceptions.GoogleAPICallError as exc:
                logger.warning(f"Error creating room: {exc}")
                return None
        logger.warning("Could not allocate a free room code after %d attempts", settings.room_code_attempts)
        return None

    async def get_room(self, room_id: str) -> Optional[Room]:
        try:
            doc = await self._run(lambda: self._room_ref(room_id).get())
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"[{room_id}] Error getting room: {exc}")
            return None
        if doc.exists:
            return Room(**doc.to_dict())
        return None

    async def update_room(self, room_id: str, fields: Dict[str, Any]) -> bool:
        try:
            await self._run(lambda: self._room_ref(room_id).update(_encode(fields)))
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"[{room_id}] Error updating room: {exc}")
            return False
        return True

    # ── Players ───────────────────────────────────────────────────────────────

    async def join_room(
        self, room_id: str, player_id: str, name: str, character_id: Optional[int]
    ) -> Optional[Player]:
        player = Player(id=player_id, room_id=room_id, name=name, character_id=character_id, items=[])
        data = player.model_dump(mode="json")
        try:
            await self._run(lambda: self._player_ref(player_id).set(data))
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"[{room_id}] Error joining room: {exc}")
            return None
        return player

    async def get_players(self, room_id: str) -> List[Player]:
        try:
            docs = await self._run(lambda: list(self._players_query(room_id).stream()))
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"[{room_id}] Error getting players: {exc}")
            return []
        players = [Player(**d.to_dict()) for d in docs]
        # Sorted client-side to avoid needing a composite index
        players.sort(key=lambda p: p.created_at)
        return players

    async def get_player(self, player_id: str) -> Optional[Player]:
        try:
            doc = await self._run(lambda: self._player_ref(player_id).get())
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"Error getting player {player_id}: {exc}")
            return None
        if doc.exists:
            return Player(**doc.to_dict())
        return None

    async def update_player(self, player_id: str, fields: Dict[str, Any]) -> bool:
        try:
            await self._run(lambda: self._player_ref(player_id).update(_encode(fields)))
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"Error updating player {player_id}: {exc}")
            return False
        return True

    # ── Votes ─────────────────────────────────────────────────────────────────

    async def submit_vote(self, room_id: str, player_id: str, vote: VoteChoice) -> bool:
        record = Vote(
            room_id=room_id,
            player_id=player_id,
            who=vote.who,
            where_location=vote.where,
            what_item=vote.what,
            to_whom=vote.to_whom,
        )
        data = record.model_dump(mode="json")
        try:
            # create() fails if the player already has a vote in this room
            await self._run(lambda: self._vote_ref(room_id, player_id).create(data))
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"[{room_id}] Error submitting vote for {player_id}: {exc}")
            return False
        return True

    async def delete_vote(self, room_id: str, player_id: str) -> bool:
        try:
            await self._run(lambda: self._vote_ref(room_id, player_id).delete())
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"[{room_id}] Error deleting vote for {player_id}: {exc}")
            return False
        return True

    async def get_votes(self, room_id: str) -> List[Vote]:
        try:
            docs = await self._run(lambda: list(self._votes_query(room_id).stream()))
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.warning(f"[{room_id}] Error getting votes: {exc}")
            return []
        votes = [Vote(**d.to_dict()) for d in docs]
        votes.sort(key=lambda v: v.created_at)
        return votes

    # ── Subscriptions (push) ──────────────────────────────────────────────────

    def _listen(self, name: str, ref, fetch, callback: Callback, skip_none: bool = False) -> Subscription:
        sub = FirestoreSubscription(name, asyncio.get_running_loop())

        def on_snapshot(_docs, _changes, _read_time):
            # Re-read the full current state rather than trusting the delta
            sub.emit(fetch, callback, skip_none=skip_none)

        sub.attach(ref.on_snapshot(on_snapshot))
        return self._track(sub)

    def subscribe_to_room(self, room_id: str, callback: Callback) -> Subscription:
        return self._listen(
            f"room:{room_id}", self._room_ref(room_id),
            lambda: self.get_room(room_id), callback, skip_none=True,
        )

    def subscribe_to_players(self, room_id: str, callback: Callback) -> Subscription:
        return self._listen(
            f"players:{room_id}", self._players_query(room_id),
            lambda: self.get_players(room_id), callback,
        )

    def subscribe_to_votes(self, room_id: str, callback: Callback) -> Subscription:
        return self._listen(
            f"votes:{room_id}", self._votes_query(room_id),
            lambda: self.get_votes(room_id), callback,
        )
