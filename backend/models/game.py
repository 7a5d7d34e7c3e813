from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from enum import Enum


class Phase(str, Enum):
    JOINING = "joining"    # local only: waiting for the table to become ready
    START = "start"        # local only: lobby / card selection
    PICKING = "picking"
    VOTING = "voting"
    MISSION = "mission"
    GAMEOVER = "gameover"


# Phases the server can report in general.state
SERVER_PHASES = (Phase.PICKING, Phase.VOTING, Phase.MISSION, Phase.GAMEOVER)


class CommandKind(str, Enum):
    JOIN = "join"
    START = "start"
    PROPOSE = "propose"
    VOTE = "vote"
    MISSION = "mission"    # act on mission
    REVEAL = "reveal"
    FETCH_STATE = "fetch_state"
    SETUP = "setup"


COMMAND_PATHS: Dict[CommandKind, str] = {
    CommandKind.JOIN: "game/join",
    CommandKind.START: "game/start",
    CommandKind.PROPOSE: "game/propose",
    CommandKind.VOTE: "game/vote",
    CommandKind.MISSION: "game/mission",
    CommandKind.REVEAL: "game/reveal",
    CommandKind.FETCH_STATE: "game/state",
    CommandKind.SETUP: "game/setup",
}

# A new request in these slots cancels the unresolved one instead of being refused.
SUPERSEDING_COMMANDS = frozenset({CommandKind.FETCH_STATE, CommandKind.SETUP})

VOTE_CHOICES = ("approve", "reject")
MISSION_ACTIONS = ("success", "fail")

GENERIC_GOOD_CARD = "Good"
GENERIC_EVIL_CARD = "Evil"


class WireModel(BaseModel):
    """Server payloads: accept wire aliases or field names, ignore unknown keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


# ── Game setup ────────────────────────────────────────────────────────────────

class MissionSetup(WireModel):
    size: int
    fails_allowed: int = 0


class GameSetup(WireModel):
    missions: List[MissionSetup] = []
    cards: List[str] = []
    spies: int = 0


# ── Snapshot ──────────────────────────────────────────────────────────────────

class MissionResult(WireModel):
    mission: int                      # 0-based mission index
    proposal: int = 0
    leader_position: int = Field(0, alias="leader")
    participants_involved: List[int] = Field(default_factory=list, alias="players")
    failure_count: int = Field(0, alias="fails")
    failures_allowed: int = Field(0, alias="fails_allowed")

    @property
    def mission_number(self) -> int:
        return self.mission + 1

    @property
    def failed(self) -> bool:
        return self.failure_count > self.failures_allowed


class VoteRecord(WireModel):
    vote_index: Optional[int] = None
    mission: int = 0
    proposal: int = 0
    leader_position: int = Field(0, alias="leader")
    participants_involved: List[int] = Field(default_factory=list, alias="players")
    approvals: List[bool] = Field(default_factory=list, alias="votes")


class GameSnapshot(WireModel):
    """The `general` object of every state response. Replaced wholesale, never mutated."""

    game_id: str = Field(alias="gameid")
    phase: Phase = Field(alias="state")
    players: List[str] = []
    leader_position: int = Field(0, alias="leader")
    current_mission_index: int = Field(0, alias="this_mission")
    current_proposal_index: int = Field(0, alias="this_proposal")
    mission_results: List[MissionResult] = []
    vote_history: List[VoteRecord] = Field(default_factory=list, alias="votes")
    setup: Optional[GameSetup] = None

    @field_validator("game_id", mode="before")
    @classmethod
    def _coerce_game_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("phase")
    @classmethod
    def _server_phase(cls, value: Phase) -> Phase:
        if value not in SERVER_PHASES:
            raise ValueError(f"server cannot report local phase {value.value!r}")
        return value

    @field_validator("players", mode="before")
    @classmethod
    def _coerce_players(cls, value: Any) -> List[str]:
        return [str(p) for p in (value or [])]

    @property
    def last_vote_record(self) -> Optional[VoteRecord]:
        return self.vote_history[-1] if self.vote_history else None

    @property
    def round_key(self) -> tuple:
        return (self.current_mission_index, self.current_proposal_index)

    def position_of(self, participant_id: Optional[str]) -> Optional[int]:
        if participant_id is None:
            return None
        try:
            return self.players.index(participant_id)
        except ValueError:
            return None


class AllowedActions(WireModel):
    success: bool = Field(False, alias="Success")
    failure: bool = Field(False, alias="Failure")


class StateResponse(WireModel):
    """Response of fetch-state and of every state-mutating command."""

    general: GameSnapshot
    # picking
    mission_size: Optional[int] = None
    # voting / mission
    voted_players: List[bool] = []
    mission_players: List[int] = []
    acted_players: List[bool] = []
    allow_actions: AllowedActions = Field(default_factory=AllowedActions)
    # gameover
    result: str = ""
    comment: str = ""
    cards: List[str] = []


class RevealGroup(WireModel):
    label: str
    players: List[int] = []


class SetupResponse(WireModel):
    setup: GameSetup
    good_cards: List[str] = []
    evil_cards: List[str] = []


# ── Roster ────────────────────────────────────────────────────────────────────

class Participant(BaseModel):
    id: str
    display_name: str
    person_id: Optional[str] = None  # stable account id sent with game/start


# ── HTTP request models (local control surface) ──────────────────────────────

class RosterUpdateRequest(BaseModel):
    local_id: Optional[str] = None
    participants: List[Participant] = []


class ProposeRequest(BaseModel):
    players: List[int] = []


class VoteRequest(BaseModel):
    vote: Optional[str] = None


class MissionActionRequest(BaseModel):
    action: Optional[str] = None
