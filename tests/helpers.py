"""Builders for server payloads and a scriptable stand-in for CommandChannel."""
import asyncio
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from models.game import CommandKind, Participant, RevealGroup, SetupResponse, StateResponse
from services.roster import InMemoryRoster

PLAYERS = ["p0", "p1", "p2", "p3", "p4"]

MISSIONS_5 = [
    {"size": 2, "fails_allowed": 0},
    {"size": 3, "fails_allowed": 0},
    {"size": 2, "fails_allowed": 0},
    {"size": 3, "fails_allowed": 1},
    {"size": 3, "fails_allowed": 0},
]

SETUP_5 = {
    "missions": MISSIONS_5,
    "cards": ["Merlin", "Good", "Good", "Assassin", "Evil"],
    "spies": 2,
}


def make_state(
    game_id: Any = "1",
    phase: str = "picking",
    players: Optional[List[str]] = None,
    leader: int = 0,
    this_mission: int = 1,
    this_proposal: int = 1,
    mission_results: Optional[List[Dict[str, Any]]] = None,
    votes: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> StateResponse:
    """Build a StateResponse from wire-shaped fields."""
    general = {
        "gameid": game_id,
        "state": phase,
        "players": list(players if players is not None else PLAYERS),
        "leader": leader,
        "this_mission": this_mission,
        "this_proposal": this_proposal,
        "mission_results": mission_results or [],
        "votes": votes or [],
        "setup": SETUP_5,
    }
    if phase == "picking":
        extra.setdefault("mission_size", 2)
    return StateResponse.model_validate({"general": general, **extra})


def mission_result(mission: int, fails: int = 0, players=(0, 1), leader: int = 0, fails_allowed: int = 0) -> Dict[str, Any]:
    return {
        "mission": mission,
        "proposal": 1,
        "leader": leader,
        "players": list(players),
        "fails": fails,
        "fails_allowed": fails_allowed,
    }


def vote_record(approvals: List[bool], players=(0, 1), leader: int = 0, mission: int = 1, proposal: int = 1) -> Dict[str, Any]:
    return {
        "vote_index": 0,
        "mission": mission,
        "proposal": proposal,
        "leader": leader,
        "players": list(players),
        "votes": approvals,
    }


def make_setup_response() -> SetupResponse:
    return SetupResponse.model_validate({
        "setup": SETUP_5,
        "good_cards": ["Good", "Merlin", "Percival"],
        "evil_cards": ["Evil", "Assassin", "Morgana", "Mordred"],
    })


def make_roster(local_id: str = "p0", ids: Optional[List[str]] = None) -> InMemoryRoster:
    return InMemoryRoster(local_id, [
        Participant(id=pid, display_name=f"Player {pid}", person_id=f"person-{pid}")
        for pid in (ids if ids is not None else PLAYERS)
    ])


class FakeChannel:
    """
    Stand-in for CommandChannel. Each command pops the next scripted reply for its
    kind; a reply may be a value, an exception to raise, or a future to await first.
    With nothing scripted, state commands answer with `server_state`.
    """

    def __init__(self, server_state: Optional[StateResponse] = None):
        self.server_state = server_state or make_state()
        self.reveal_groups: List[RevealGroup] = []
        self.setup_response = make_setup_response()
        self.queued: Dict[CommandKind, Deque[Any]] = defaultdict(deque)
        self.calls: List[tuple] = []
        self.closed = False

    def queue(self, kind: CommandKind, *replies: Any) -> None:
        self.queued[kind].extend(replies)

    def count(self, kind: CommandKind) -> int:
        return sum(1 for call in self.calls if call[0] == kind)

    def last_call(self, kind: CommandKind) -> tuple:
        return [call for call in self.calls if call[0] == kind][-1]

    async def _reply(self, kind: CommandKind, default: Any) -> Any:
        reply = self.queued[kind].popleft() if self.queued[kind] else default
        if isinstance(reply, asyncio.Future):
            reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def fetch_state(self) -> StateResponse:
        self.calls.append((CommandKind.FETCH_STATE,))
        return await self._reply(CommandKind.FETCH_STATE, self.server_state)

    async def join(self) -> StateResponse:
        self.calls.append((CommandKind.JOIN,))
        return await self._reply(CommandKind.JOIN, self.server_state)

    async def start(self, players, cards=None) -> StateResponse:
        self.calls.append((CommandKind.START, players, cards))
        return await self._reply(CommandKind.START, self.server_state)

    async def propose(self, mission, proposal, players) -> StateResponse:
        self.calls.append((CommandKind.PROPOSE, mission, proposal, players))
        return await self._reply(CommandKind.PROPOSE, self.server_state)

    async def vote(self, mission, proposal, choice) -> StateResponse:
        self.calls.append((CommandKind.VOTE, mission, proposal, choice))
        return await self._reply(CommandKind.VOTE, self.server_state)

    async def act_on_mission(self, mission, action) -> StateResponse:
        self.calls.append((CommandKind.MISSION, mission, action))
        return await self._reply(CommandKind.MISSION, self.server_state)

    async def reveal(self) -> List[RevealGroup]:
        self.calls.append((CommandKind.REVEAL,))
        return await self._reply(CommandKind.REVEAL, self.reveal_groups)

    async def setup(self, players: int) -> SetupResponse:
        self.calls.append((CommandKind.SETUP, players))
        return await self._reply(CommandKind.SETUP, self.setup_response)

    async def close(self) -> None:
        self.closed = True
