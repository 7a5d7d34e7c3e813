from pydantic import BaseModel
from typing import Optional, Dict

from models.game import Phase, CommandKind


class LocalSessionState(BaseModel):
    """
    Per-tab session bookkeeping, owned exclusively by the ReconciliationEngine.
    The authoritative game data lives in the GameSnapshot; this only tracks what
    the client has already acted on or rendered.
    """

    my_id: Optional[str] = None
    my_position: Optional[int] = None
    mode: Phase = Phase.JOINING
    game_id: Optional[str] = None

    # Last values seen from the server; None after a game reset
    leader_position: Optional[int] = None
    this_mission: Optional[int] = None
    this_proposal: Optional[int] = None
    mission_size: Optional[int] = None

    pending_command: Optional[CommandKind] = None
    fetch_generation: int = 0        # tag of the newest snapshot-yielding request
    applied_generation: int = 0      # tag of the newest snapshot actually applied
    refresh_in_progress: bool = False
    rendered_mission_count: int = 0  # mission history watermark

    # Roster as sent with game/start: participant id → person id.
    # None until the local participant has been seen in the roster.
    participant_ids: Optional[Dict[str, Optional[str]]] = None
    participant_count: int = 0

    # Card setup (start mode)
    setup_players: int = 0
    setup_good_count: int = 0
    setup_evil_count: int = 0

    def reset_round_tracking(self) -> None:
        self.leader_position = None
        self.this_mission = None
        self.this_proposal = None
