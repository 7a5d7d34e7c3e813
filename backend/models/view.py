"""
View model — what the table screen shows, as plain data.

The ReconciliationEngine and the mode objects mutate this in place; the browser
front end (outside this project) reads it through GET /api/view and draws it.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Iterable

from models.game import Phase


class Control(BaseModel):
    enabled: bool = True
    checked: bool = False
    visible: bool = True


def disable_controls(controls: Iterable[Control]) -> List[Control]:
    """Disable every enabled control and return exactly the ones that were flipped."""
    flipped = [c for c in controls if c.enabled]
    for control in flipped:
        control.enabled = False
    return flipped


def restore_controls(controls: Iterable[Control]) -> None:
    for control in controls:
        control.enabled = True


def _hidden() -> Control:
    return Control(visible=False)


class PlayerEntry(BaseModel):
    position: int
    name: str
    note: str = ""                 # e.g. "approve" / card label
    icon: Optional[str] = None     # "leader" | "ready" | "waiting"
    is_me: bool = False


class MissionBox(BaseModel):
    index: int
    size: int
    fails_allowed: int = 0
    label: str
    hint: str
    status: Optional[str] = None   # "success" | "failed"
    detail: str = ""
    current: bool = False


class MissionRecord(BaseModel):
    """One completed mission, appended once and never rewritten."""

    number: int
    status: str
    failures: int = 0
    detail: str = ""


class CardChoice(BaseModel):
    label: str
    side: str                      # "good" | "evil"
    selected: bool = False


class ProposalOption(BaseModel):
    position: int
    name: str
    control: Control = Field(default_factory=Control)


class StartPanel(BaseModel):
    visible: bool = False
    players: List[str] = []
    card_choice_visible: bool = False
    good_cards: List[CardChoice] = []
    evil_cards: List[CardChoice] = []
    generic_good: str = ""
    generic_evil: str = ""


class PickingPanel(BaseModel):
    visible: bool = False
    mission_size: Optional[int] = None
    proposal_form: Control = Field(default_factory=_hidden)
    options: List[ProposalOption] = []
    commit: Control = Field(default_factory=Control)


class VotingPanel(BaseModel):
    visible: bool = False
    mission_players: List[PlayerEntry] = []
    approve: Control = Field(default_factory=Control)
    reject: Control = Field(default_factory=Control)
    commit: Control = Field(default_factory=Control)


class MissionPanel(BaseModel):
    visible: bool = False
    mission_players: List[PlayerEntry] = []
    action_form: Control = Field(default_factory=_hidden)
    success: Control = Field(default_factory=Control)
    failure: Control = Field(default_factory=Control)
    commit: Control = Field(default_factory=Control)


class GameoverPanel(BaseModel):
    visible: bool = False
    result: str = ""
    comment: str = ""
    player_cards: List[PlayerEntry] = []
    players: List[str] = []


class RevealGroupView(BaseModel):
    label: str
    players: List[PlayerEntry] = []


class RevealDialog(BaseModel):
    open: bool = False
    title: str = "You can see..."
    cards: List[str] = []
    groups: List[RevealGroupView] = []


class GameView(BaseModel):
    loading: bool = True
    info_visible: bool = False
    start_button: Control = Field(default_factory=lambda: Control(enabled=False))

    start: StartPanel = Field(default_factory=StartPanel)
    picking: PickingPanel = Field(default_factory=PickingPanel)
    voting: VotingPanel = Field(default_factory=VotingPanel)
    mission: MissionPanel = Field(default_factory=MissionPanel)
    gameover: GameoverPanel = Field(default_factory=GameoverPanel)

    # Shared status area
    table_players: List[PlayerEntry] = []
    last_proposal_visible: bool = False
    last_proposal: List[PlayerEntry] = []
    leader: str = ""
    this_mission: str = ""
    this_proposal: str = ""
    missions: List[MissionBox] = []
    mission_history: List[MissionRecord] = []

    reveal: RevealDialog = Field(default_factory=RevealDialog)
    last_error: Optional[str] = None

    def panel(self, phase: Phase) -> Optional[BaseModel]:
        return {
            Phase.START: self.start,
            Phase.PICKING: self.picking,
            Phase.VOTING: self.voting,
            Phase.MISSION: self.mission,
            Phase.GAMEOVER: self.gameover,
        }.get(phase)

    def hide_panels(self) -> None:
        self.loading = False
        for panel in (self.start, self.picking, self.voting, self.mission, self.gameover):
            panel.visible = False
