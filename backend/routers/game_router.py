"""
Room HTTP endpoints (thin shell over the game engines).

Routes:
  GET    /api/catalog                                — Characters, searchable locations, vote options
  POST   /api/rooms                                  — Create room + join creator as host
  POST   /api/rooms/{room_id}/join                   — Join with a name and a free character
  GET    /api/rooms/{room_id}?player_id=             — Game view (phase, timer, can_advance, route)
  POST   /api/rooms/{room_id}/start?player_id=       — Host: waiting → discussion1
  POST   /api/rooms/{room_id}/advance?player_id=     — Next phase (host, or anyone in discussion2)
  GET    /api/rooms/{room_id}/investigation          — Location meters + sync barrier
  POST   /api/rooms/{room_id}/investigation/search   — Search one location
  POST   /api/rooms/{room_id}/investigation/return   — Host: leave investigation once all finished
  POST   /api/rooms/{room_id}/votes                  — Submit the four-part vote
  DELETE /api/rooms/{room_id}/votes                  — Withdraw own vote (retry)
  GET    /api/rooms/{room_id}/result                 — Consensus + ending

Player identity is the `player_id` query parameter (the client keeps it in
session storage). Rule violations map to 4xx, failed store writes to 503.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from models.game import (
    CreateRoomRequest, CreateRoomResponse, GameRuleError,
    JoinRoomRequest, JoinRoomResponse, Phase, SearchRequest, VoteRequest,
)
from models.scenario import CHARACTERS, VOTE_OPTIONS
from agents.game_master import GameMaster
from agents.investigator import InvestigationResolver, get_investigation_config
from agents.vote_tally import VotingEngine
from services.session import SessionContext, generate_player_id
from services.store import StoreAdapter, get_store, normalize_room_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rooms"])

_STATUS_BY_CODE = {
    "ROOM_NOT_FOUND": 404,
    "NOT_HOST": 403,
    "NOT_JOINED": 403,
    "ROOM_FULL": 409,
    "CHARACTER_TAKEN": 409,
    "WRONG_PHASE": 409,
    "ALREADY_VOTED": 409,
    "ALREADY_FINISHED": 409,
    "LOCATION_EXHAUSTED": 409,
    "INVESTIGATION_INCOMPLETE": 409,
}


def _http_error(exc: GameRuleError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(exc.code, 400),
        detail={"code": exc.code, "message": exc.message},
    )


def _write_failed(what: str) -> HTTPException:
    logger.warning(f"Store write failed: could not {what}")
    return HTTPException(
        status_code=503,
        detail={"code": "WRITE_FAILED", "message": f"Could not {what}. Please try again."},
    )


def get_game_master(store: StoreAdapter = Depends(get_store)) -> GameMaster:
    return GameMaster(store)


def get_resolver(store: StoreAdapter = Depends(get_store)) -> InvestigationResolver:
    return InvestigationResolver(store)


def get_voting(store: StoreAdapter = Depends(get_store)) -> VotingEngine:
    return VotingEngine(store)


def get_room_code(room_id: str) -> str:
    return normalize_room_id(room_id)


def get_session(
    room_id: str = Depends(get_room_code),
    player_id: str = Query(..., description="Player id from create/join"),
) -> SessionContext:
    return SessionContext.for_player(player_id, room_id=room_id)


@router.get("/catalog")
async def get_catalog(resolver: InvestigationResolver = Depends(get_resolver)):
    return {
        "characters": [c.model_dump() for c in CHARACTERS],
        "locations": [
            {"id": loc.id, "name": loc.name, "description": loc.description}
            for loc in resolver.searchable_locations()
        ],
        "vote_options": VOTE_OPTIONS,
    }


@router.post("/rooms", response_model=CreateRoomResponse, status_code=201)
async def create_room(body: CreateRoomRequest, gm: GameMaster = Depends(get_game_master)):
    """Create a room and register the creator as host and first player."""
    session = SessionContext.for_player(body.player_id or generate_player_id())
    try:
        created = await gm.create_room(session, body.player_name, body.character_id)
    except GameRuleError as exc:
        raise _http_error(exc)
    if created is None:
        raise _write_failed("create the room")
    room, player = created
    return CreateRoomResponse(room_id=room.id, host_id=room.host_id, player_id=player.id)


@router.post("/rooms/{room_id}/join", response_model=JoinRoomResponse)
async def join_room(
    body: JoinRoomRequest,
    room_id: str = Depends(get_room_code),
    gm: GameMaster = Depends(get_game_master),
):
    session = SessionContext.for_player(body.player_id or generate_player_id())
    try:
        player = await gm.join_room(session, room_id, body.player_name, body.character_id)
    except GameRuleError as exc:
        raise _http_error(exc)
    if player is None:
        raise _write_failed("join the room")
    return JoinRoomResponse(room_id=player.room_id, player_id=player.id)


@router.get("/rooms/{room_id}")
async def get_room_view(
    session: SessionContext = Depends(get_session),
    gm: GameMaster = Depends(get_game_master),
    voting: VotingEngine = Depends(get_voting),
):
    """
    Game view for one player. A polling host also performs vote completion
    detection here, the same check its WebSocket feed runs.
    """
    try:
        await voting.check_completion(session, session.room_id)
    except GameRuleError as exc:
        raise _http_error(exc)
    view = await gm.view(session, session.room_id)
    if view is None:
        raise HTTPException(status_code=404, detail={"code": "ROOM_NOT_FOUND", "message": "Room not found"})
    return view


@router.post("/rooms/{room_id}/start")
async def start_game(
    session: SessionContext = Depends(get_session),
    gm: GameMaster = Depends(get_game_master),
):
    try:
        ok = await gm.start_game(session, session.room_id)
    except GameRuleError as exc:
        raise _http_error(exc)
    if not ok:
        raise _write_failed("start the game")
    return {"status": "started", "phase": Phase.DISCUSSION1.value}


@router.post("/rooms/{room_id}/advance")
async def advance_phase(
    session: SessionContext = Depends(get_session),
    expected_phase: Optional[Phase] = Query(None, description="Phase the client is currently showing"),
    gm: GameMaster = Depends(get_game_master),
):
    try:
        phase = await gm.advance_phase(session, session.room_id, expected_phase=expected_phase)
    except GameRuleError as exc:
        raise _http_error(exc)
    if phase is None:
        raise _write_failed("advance the phase")
    return {"phase": phase.value}


@router.get("/rooms/{room_id}/investigation")
async def get_investigation(
    session: SessionContext = Depends(get_session),
    store: StoreAdapter = Depends(get_store),
    resolver: InvestigationResolver = Depends(get_resolver),
):
    room = await store.get_room(session.room_id)
    if room is None:
        raise HTTPException(status_code=404, detail={"code": "ROOM_NOT_FOUND", "message": "Room not found"})
    players = await store.get_players(room.id)
    return resolver.status(room, players, session.player_id)


@router.post("/rooms/{room_id}/investigation/search")
async def search_location(
    body: SearchRequest,
    session: SessionContext = Depends(get_session),
    resolver: InvestigationResolver = Depends(get_resolver),
):
    try:
        result = await resolver.search(session, session.room_id, body.location_id)
    except GameRuleError as exc:
        raise _http_error(exc)
    if not result.committed:
        raise _write_failed("record what you found")
    return result.model_dump()


@router.post("/rooms/{room_id}/investigation/return")
async def return_to_discussion(
    session: SessionContext = Depends(get_session),
    store: StoreAdapter = Depends(get_store),
    gm: GameMaster = Depends(get_game_master),
):
    """Host leaves the investigation once every player holds the completion flag."""
    room = await store.get_room(session.room_id)
    if room is None:
        raise HTTPException(status_code=404, detail={"code": "ROOM_NOT_FOUND", "message": "Room not found"})
    if get_investigation_config(room.phase) is None:
        # Someone already returned; just send the client back to the game screen
        return {"phase": room.phase.value}
    try:
        phase = await gm.advance_phase(session, room.id, expected_phase=room.phase)
    except GameRuleError as exc:
        raise _http_error(exc)
    if phase is None:
        raise _write_failed("return to the discussion")
    return {"phase": phase.value}


@router.post("/rooms/{room_id}/votes", status_code=201)
async def submit_vote(
    body: VoteRequest,
    session: SessionContext = Depends(get_session),
    voting: VotingEngine = Depends(get_voting),
):
    try:
        ok = await voting.submit_vote(session, session.room_id, body.to_choice())
    except GameRuleError as exc:
        raise _http_error(exc)
    if not ok:
        raise _write_failed("submit your vote")
    return {"status": "submitted"}


@router.delete("/rooms/{room_id}/votes")
async def retry_vote(
    session: SessionContext = Depends(get_session),
    voting: VotingEngine = Depends(get_voting),
):
    try:
        ok = await voting.retry_vote(session, session.room_id)
    except GameRuleError as exc:
        raise _http_error(exc)
    if not ok:
        raise _write_failed("withdraw your vote")
    return {"status": "withdrawn"}


@router.get("/rooms/{room_id}/result")
async def get_result(
    room_id: str = Depends(get_room_code),
    store: StoreAdapter = Depends(get_store),
    voting: VotingEngine = Depends(get_voting),
):
    room = await store.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail={"code": "ROOM_NOT_FOUND", "message": "Room not found"})
    return await voting.result(room_id)
