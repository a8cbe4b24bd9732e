import pytest
from fastapi.testclient import TestClient

from models.game import Phase, _utcnow
from agents.game_master import GameMaster
from agents.investigator import InvestigationResolver
from agents.vote_tally import VotingEngine
from services.session import SessionContext
from services.store import LocalStore, get_store

HOST_ID = "host000001"


@pytest.fixture
def store():
    """Demo store whose poll loop never fires on its own; tests call tick()."""
    s = LocalStore(poll_interval=3600)
    yield s
    s.close()


@pytest.fixture
def gm(store):
    return GameMaster(store)


@pytest.fixture
def resolver(store):
    return InvestigationResolver(store)


@pytest.fixture
def voting(store, gm):
    return VotingEngine(store, gm)


@pytest.fixture
def host():
    return SessionContext.for_player(HOST_ID)


@pytest.fixture
def make_room(store, gm, host):
    """
    Factory: room hosted by `host` (character 1) plus guests with
    characters 2..n. Optionally forces the room into `phase`.
    Returns (room_id, [host_session, guest_sessions...]).
    """
    async def _make(players: int = 3, phase: Phase = None):
        room, _ = await gm.create_room(host, "Host", 1)
        sessions = [host.in_room(room.id)]
        for n in range(2, players + 1):
            guest = SessionContext.for_player(f"guest0000{n}", room_id=room.id)
            await gm.join_room(guest, room.id, f"Guest {n}", n)
            sessions.append(guest)
        if phase is not None:
            await store.update_room(room.id, {"phase": phase, "timer_start": _utcnow()})
        return room.id, sessions

    return _make


@pytest.fixture
def client(store):
    from main import app

    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
