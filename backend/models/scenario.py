"""
Static scenario data for "Stella Mystery": a death aboard the survey ship Stella.

Read-only. Nothing here is persisted; rooms and players only ever store ids
that point into these tables.
"""
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from models.game import Phase


class Character(BaseModel):
    id: int
    name: str
    title: str
    color: str


class Item(BaseModel):
    id: int
    name: str
    description: str
    stage: int  # 0 = starting evidence, 1/2 = found in investigation 1/2


class Location(BaseModel):
    id: int
    name: str
    description: str
    searchable: bool = True
    items: List[Item] = []


# ── Reserved ids ──────────────────────────────────────────────────────────────

# Per-player completion flags. Never part of any location's item list.
INVESTIGATION1_FLAG = 901
INVESTIGATION2_FLAG = 902

# "Other" answer on every vote dimension.
OTHER = 99


# ── Characters ────────────────────────────────────────────────────────────────

CHARACTERS: List[Character] = [
    Character(id=1, name="Mira Voss", title="Captain", color="#e11d48"),
    Character(id=2, name="Daniel Okoro", title="Chief Engineer", color="#2563eb"),
    Character(id=3, name="Lena Hart", title="Ship's Doctor", color="#16a34a"),
    Character(id=4, name="Kai Sato", title="Navigator", color="#ca8a04"),
]


# ── Locations & items ─────────────────────────────────────────────────────────

LOCATIONS: List[Location] = [
    Location(
        id=1, name="Cockpit", description="Flight controls and the captain's chair.",
        items=[
            Item(id=1, name="Flight log", description="Someone paused the log for twelve minutes.", stage=1),
            Item(id=2, name="Torn ID badge", description="Half a crew badge, the name ripped away.", stage=1),
            Item(id=10, name="Autopilot override record", description="Manual override entered at 02:14.", stage=2),
        ],
    ),
    Location(
        id=2, name="Medical bay", description="Two beds and a locked drug cabinet.",
        items=[
            Item(id=4, name="Empty sedative vial", description="The cabinet count is one vial short.", stage=1),
            Item(id=5, name="Patient chart", description="A sleep-cycle chart with an unfamiliar signature.", stage=1),
            Item(id=11, name="Tranquilizer gun", description="Recently fired. One dart missing.", stage=2),
        ],
    ),
    Location(
        id=3, name="Cargo hold", description="Crates strapped to the deck, lights flickering.",
        items=[
            Item(id=3, name="Stun gun", description="Fully charged. Standard security issue.", stage=1),
            Item(id=6, name="Crate manifest", description="One crate was logged out but never opened.", stage=1),
            Item(id=12, name="Scorched glove", description="Burn marks matching the airlock panel.", stage=2),
        ],
    ),
    Location(
        id=4, name="Airlock", description="The outer door cycles with a hiss.",
        items=[
            Item(id=7, name="Waste canister", description="Sealed, heavier than it should be.", stage=1),
            Item(id=8, name="Pressure log", description="The airlock cycled once during the night shift.", stage=1),
            Item(id=13, name="Fingerprint on console", description="A clear print on the cycle button.", stage=2),
        ],
    ),
    Location(
        id=5, name="Lavatory", description="Cramped and humming.", searchable=False,
        items=[
            Item(id=9, name="Chocolate stick snack", description="A half-eaten snack from the galley.", stage=0),
        ],
    ),
    Location(
        id=6, name="Crew quarters", description="Four bunks and personal lockers.", searchable=False,
        items=[
            Item(id=14, name="Personal diary", description="The last entry is about debts back home.", stage=0),
        ],
    ),
]


# ── Vote dimensions (closed id-spaces) ────────────────────────────────────────

VOTE_OPTIONS: Dict[str, List[int]] = {
    "who": [c.id for c in CHARACTERS] + [OTHER],
    "where": [1, 3, 4, 5, 6, OTHER],
    "what": [3, 11, 7, 9, OTHER],
    "to_whom": [c.id for c in CHARACTERS] + [OTHER],
}

# Canonical solution: the engineer sedated the stowaway with the tranquilizer
# gun and cycled the airlock.
CORRECT_ANSWER: Tuple[int, int, int, int] = (2, 4, 11, OTHER)


# ── Phase presentation data ───────────────────────────────────────────────────

# Countdown durations in seconds. discussion2 is a near-zero trigger for the
# tone-shift animation rather than a real discussion.
PHASE_TIMER: Dict[Phase, int] = {
    Phase.DISCUSSION1: 10 * 60,
    Phase.DISCUSSION2: 1,
    Phase.DISCUSSION3: 10 * 60,
    Phase.DISCUSSION4: 5 * 60,
}

PHASE_LABELS: Dict[Phase, str] = {
    Phase.WAITING: "Waiting for crew",
    Phase.DISCUSSION1: "Discussion 1",
    Phase.INVESTIGATION1: "Investigation 1",
    Phase.DISCUSSION2: "Discussion 2",
    Phase.ADDITIONAL_HANDOUT: "Additional handout",
    Phase.DISCUSSION3: "Discussion 3",
    Phase.INVESTIGATION2: "Investigation 2",
    Phase.DISCUSSION4: "Discussion 4",
    Phase.VOTING: "Vote",
    Phase.RESULT: "Result",
}


def get_character(character_id: Optional[int]) -> Optional[Character]:
    return next((c for c in CHARACTERS if c.id == character_id), None)

