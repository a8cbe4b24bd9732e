"""
WebSocket Hub: real-time view of one room for one client.

URL: /ws/{room_id}?playerId={player_id}

Connection flow:
  1. Accept connection → validate room + player exist
  2. Send private "connected" message with the current room view
  3. Subscribe through the store adapter to room, players and votes; each
     notification is forwarded as room_update / players_update / votes_update
  4. Message loop (_dispatch_message)
  5. On disconnect: unsubscribe all three feeds, drop the connection

The hub never decides outcomes on its own. Completion detection for votes
runs only on the host's connection, exactly as the host's client would.

Client → server message types:
  ping        — keep-alive heartbeat → responds with "pong"
  advance     — next phase (host, or anyone during discussion2)
  search      — investigate one location  {locationId}
  vote        — submit the four-part vote  {who, where, what, toWhom}
  retry_vote  — withdraw own vote after the result
"""
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query

from models.game import GameRuleError, Phase, Player, Room, Vote, VoteChoice
from agents.game_master import GameMaster, room_view
from agents.investigator import InvestigationResolver
from agents.vote_tally import VotingEngine, evaluate, voting_complete
from services.session import SessionContext
from services.store import StoreAdapter, Subscription, get_store, normalize_room_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks active WebSocket connections per room.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {room_id: {player_id: WebSocket}}
        self._rooms: Dict[str, Dict[str, WebSocket]] = {}

    async def connect(self, room_id: str, player_id: str, ws: WebSocket) -> None:
        await ws.accept()
        self._rooms.setdefault(room_id, {})[player_id] = ws
        logger.debug(f"[{room_id}] {player_id} connected ({self.count(room_id)} total)")

    def disconnect(self, room_id: str, player_id: str, ws: WebSocket) -> None:
        """Drop `ws` unless a newer connection for the same player replaced it."""
        room_conns = self._rooms.get(room_id, {})
        if room_conns.get(player_id) is ws:
            del room_conns[player_id]
        if not room_conns:
            self._rooms.pop(room_id, None)

    def count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    async def send_to(self, room_id: str, player_id: str, message: Dict) -> None:
        """Send a private message to a single player."""
        ws = self._rooms.get(room_id, {}).get(player_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{room_id}] send_to {player_id} failed: {exc}")
                self.disconnect(room_id, player_id, ws)


# Module-level singleton
manager = ConnectionManager()


def _error(message: str, code: str) -> Dict[str, Any]:
    return {"type": "error", "message": message, "code": code}


# ── Per-connection feed ────────────────────────────────────────────────────────

class RoomFeed:
    """
    The three store subscriptions backing one client connection.
    close() must run on disconnect so no poll task or listener outlives it.
    """

    def __init__(
        self, store: StoreAdapter, session: SessionContext,
        room: Optional[Room] = None, players: Optional[List[Player]] = None,
    ):
        self.store = store
        self.session = session
        self.room_id = session.room_id
        self.voting = VotingEngine(store)
        self.resolver = InvestigationResolver(store)
        self._room = room
        self._players: List[Player] = players or []
        self._subs: List[Subscription] = []

    def open(self) -> "RoomFeed":
        self._subs = [
            self.store.subscribe_to_room(self.room_id, self.on_room),
            self.store.subscribe_to_players(self.room_id, self.on_players),
            self.store.subscribe_to_votes(self.room_id, self.on_votes),
        ]
        return self

    def close(self) -> None:
        for sub in self._subs:
            sub.unsubscribe()
        self._subs = []

    async def _send(self, message: Dict[str, Any]) -> None:
        await manager.send_to(self.room_id, self.session.player_id, message)

    async def on_room(self, room: Room) -> None:
        self._room = room
        await self._send({
            "type": "room_update",
            "view": room_view(room, self._players, self.session.player_id),
        })

    async def on_players(self, players: List[Player]) -> None:
        self._players = players
        message: Dict[str, Any] = {
            "type": "players_update",
            "players": [p.to_public() for p in players],
        }
        if self._room is not None:
            message["investigation"] = self.resolver.status(self._room, players, self.session.player_id)
        await self._send(message)

    async def on_votes(self, votes: List[Vote]) -> None:
        await self._send({
            "type": "votes_update",
            "count": len(votes),
            "complete": voting_complete(votes, self._players),
            "ending": evaluate(votes, self._players, self.room_id).value,
        })
        if self._room is not None and self._room.phase == Phase.VOTING and self._room.is_host(self.session.player_id):
            try:
                await self.voting.check_completion(self.session, self.room_id)
            except GameRuleError as exc:
                logger.warning(f"[{self.room_id}] Completion check rejected: {exc.message}")


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws/{room_id}")
async def websocket_endpoint(
    ws: WebSocket,
    room_id: str,
    playerId: str = Query(..., description="Player id from create/join response"),
    store: StoreAdapter = Depends(get_store),
):
    room_id = normalize_room_id(room_id)

    # ── Validate room and player ───────────────────────────────────────────────
    room = await store.get_room(room_id)
    if not room:
        await ws.close(code=4404, reason="Room not found")
        return
    player = await store.get_player(playerId)
    if not player or player.room_id != room_id:
        await ws.close(code=4403, reason="Player not found in this room")
        return

    session = SessionContext.for_player(playerId, room_id=room_id)
    await manager.connect(room_id, playerId, ws)

    players = await store.get_players(room_id)
    await manager.send_to(room_id, playerId, {
        "type": "connected",
        "playerId": playerId,
        "view": room_view(room, players, playerId),
        "investigation": InvestigationResolver(store).status(room, players, playerId),
    })

    feed = RoomFeed(store, session, room, players).open()

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(room_id, playerId, _error("Invalid JSON", "PARSE_ERROR"))
                continue

            if not isinstance(data, dict):
                await manager.send_to(room_id, playerId, _error("Expected a JSON object", "PARSE_ERROR"))
                continue

            msg_type = data.get("type", "")
            # Frontend sends { type, data: { ... } }; unwrap inner payload for handlers
            inner_data = data.get("data") if isinstance(data.get("data"), dict) else {}
            await _handle_message(session, msg_type, inner_data, store)

    except WebSocketDisconnect:
        pass
    finally:
        feed.close()
        manager.disconnect(room_id, playerId, ws)


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(session: SessionContext, msg_type: str, data: Dict, store: StoreAdapter) -> None:
    room_id, player_id = session.room_id, session.player_id
    try:
        await _dispatch_message(session, msg_type, data, store)
    except WebSocketDisconnect:
        raise
    except GameRuleError as exc:
        await manager.send_to(room_id, player_id, _error(exc.message, exc.code))
    except Exception:
        logger.exception("[%s] Unhandled error in _handle_message (type=%s)", room_id, msg_type)
        await manager.send_to(room_id, player_id, _error("Internal server error", "SERVER_ERROR"))


async def _dispatch_message(session: SessionContext, msg_type: str, data: Dict, store: StoreAdapter) -> None:
    room_id, player_id = session.room_id, session.player_id

    if msg_type == "ping":
        await manager.send_to(room_id, player_id, {"type": "pong"})

    elif msg_type == "advance":
        expected = data.get("expectedPhase")
        if expected and expected not in {p.value for p in Phase}:
            raise GameRuleError("INVALID_CHOICE", f"Unknown phase '{expected}'")
        phase = await GameMaster(store).advance_phase(
            session, room_id, expected_phase=Phase(expected) if expected else None,
        )
        if phase is None:
            await manager.send_to(room_id, player_id, _error("Could not advance the phase", "WRITE_FAILED"))
        else:
            await manager.send_to(room_id, player_id, {"type": "advanced", "phase": phase.value})

    elif msg_type == "search":
        try:
            location_id = int(data.get("locationId"))
        except (TypeError, ValueError):
            await manager.send_to(room_id, player_id, _error("locationId is required", "INVALID_CHOICE"))
            return
        result = await InvestigationResolver(store).search(session, room_id, location_id)
        if not result.committed:
            await manager.send_to(room_id, player_id, _error("Could not record what you found", "WRITE_FAILED"))
        else:
            await manager.send_to(room_id, player_id, {"type": "search_result", **result.model_dump()})

    elif msg_type == "vote":
        choice = VoteChoice(
            who=data.get("who"),
            where=data.get("where"),
            what=data.get("what"),
            to_whom=data.get("toWhom"),
        )
        if await VotingEngine(store).submit_vote(session, room_id, choice):
            await manager.send_to(room_id, player_id, {"type": "vote_submitted"})
        else:
            await manager.send_to(room_id, player_id, _error("Could not submit your vote", "WRITE_FAILED"))

    elif msg_type == "retry_vote":
        if await VotingEngine(store).retry_vote(session, room_id):
            await manager.send_to(room_id, player_id, {"type": "vote_withdrawn"})
        else:
            await manager.send_to(room_id, player_id, _error("Could not withdraw your vote", "WRITE_FAILED"))

    else:
        await manager.send_to(room_id, player_id, _error(f"Unknown message type: '{msg_type}'", "UNKNOWN_TYPE"))
