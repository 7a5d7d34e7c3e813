"""
Roster provider + PlayerNameCache.

The roster (who is sitting at the table right now, with display names) comes
from the hosting environment, not from the game server. The game server only
knows participant ids by position, so every name shown on screen goes through
PlayerNameCache.
"""
import logging
import re
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from models.game import Participant

logger = logging.getLogger(__name__)

AI_PLAYER_RE = re.compile(r"^ai_(\d+)$")
ABSENT_PLAYER_NAME = "<absent player>"

RosterCallback = Callable[[], None]


class RosterProvider(ABC):
    """Participants currently at the table, plus membership-changed notifications."""

    @property
    @abstractmethod
    def local_participant_id(self) -> Optional[str]:
        ...

    @abstractmethod
    def participants(self) -> List[Participant]:
        ...

    @abstractmethod
    def get_participant(self, participant_id: str) -> Optional[Participant]:
        ...

    @abstractmethod
    def subscribe(self, callback: RosterCallback) -> Callable[[], None]:
        """Register a membership-changed callback; returns an unsubscribe callable."""


class InMemoryRoster(RosterProvider):
    """Roster fed by the front end via PUT /api/roster (or directly by tests)."""

    def __init__(self, local_id: Optional[str] = None, participants: Optional[List[Participant]] = None):
        self._local_id = local_id
        self._participants: List[Participant] = list(participants or [])
        self._callbacks: List[RosterCallback] = []

    @property
    def local_participant_id(self) -> Optional[str]:
        return self._local_id

    def participants(self) -> List[Participant]:
        return list(self._participants)

    def get_participant(self, participant_id: str) -> Optional[Participant]:
        for p in self._participants:
            if p.id == participant_id:
                return p
        return None

    def subscribe(self, callback: RosterCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def replace(self, participants: List[Participant], local_id: Optional[str] = None) -> None:
        """Swap in a new participant list and notify subscribers."""
        self._participants = list(participants)
        if local_id is not None:
            self._local_id = local_id
        logger.info("Roster updated: %d participants", len(self._participants))
        for callback in list(self._callbacks):
            callback()


class PlayerNameCache:
    """
    Memoizing participant id → display name lookup.
    Entries are never evicted: a player who leaves mid-game keeps the name we saw,
    and only a participant never observed at all comes back as "<absent player>".
    """

    def __init__(self, roster: RosterProvider):
        self._roster = roster
        self._names: Dict[str, str] = {}

    def name_for(self, participant_id: str) -> str:
        if participant_id not in self._names:
            self._names[participant_id] = self._lookup(participant_id)
        return self._names[participant_id]

    def _lookup(self, participant_id: str) -> str:
        match = AI_PLAYER_RE.match(participant_id)
        if match:
            return f"<AI {match.group(1)}>"
        participant = self._roster.get_participant(participant_id)
        if participant is None:
            return ABSENT_PLAYER_NAME
        return participant.display_name

    def __len__(self) -> int:
        return len(self._names)
