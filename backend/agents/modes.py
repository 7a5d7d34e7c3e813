"""
ModeController — the table screen's UI mode state machine.

One mode object per Phase. Each implements:
  enter()   bind its panel, reset it, show it
  reset()   clear transient selections and re-enable controls, staying in the mode
            (used when a whole round went by between two polls)
  update()  render the phase-specific part of a StateResponse; returns the
            per-position ready icons for the table roster

A transition always hides every panel, drops every mode's panel handle and then
enters the target. joining is the initial mode; there is no terminal mode.
After gameover a new game comes back as picking, not start: the server never
reports the lobby, which only exists on this client.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from models.game import (
    Phase, CommandKind, StateResponse, SetupResponse,
    GENERIC_GOOD_CARD, GENERIC_EVIL_CARD,
)
from models.session import LocalSessionState
from models.view import (
    GameView, PlayerEntry, ProposalOption, CardChoice,
    StartPanel, PickingPanel, VotingPanel, MissionPanel, GameoverPanel,
)

logger = logging.getLogger(__name__)

ICON_LEADER = "leader"
ICON_READY = "ready"
ICON_WAITING = "waiting"


class TableContext:
    """What the mode objects may touch: the view, the session state and player names."""

    def __init__(self, view: GameView, state: LocalSessionState, player_name: Callable[[int], str]):
        self.view = view
        self.state = state
        self.player_name = player_name

    def render_players(
        self,
        positions: Iterable[int],
        notes: Optional[Dict[int, str]] = None,
        icons: Optional[Dict[int, str]] = None,
    ) -> Tuple[List[PlayerEntry], bool]:
        """Build roster lines for the given positions; also report whether the local player is among them.
        Notes are keyed by index in `positions`, icons by position."""
        notes = notes or {}
        icons = icons or {}
        entries: List[PlayerEntry] = []
        includes_me = False
        for i, position in enumerate(positions):
            is_me = position == self.state.my_position
            includes_me = includes_me or is_me
            entries.append(PlayerEntry(
                position=position,
                name=self.player_name(position),
                note=notes.get(i, ""),
                icon=icons.get(position),
                is_me=is_me,
            ))
        return entries, includes_me


class Mode:
    phase: Phase

    def __init__(self, ctx: TableContext):
        self.ctx = ctx
        self.panel = None

    def enter(self) -> None:
        self.panel = self.ctx.view.panel(self.phase)
        self.reset()
        if self.panel is not None:
            self.panel.visible = True

    def reset(self) -> None:
        pass

    def release(self) -> None:
        self.panel = None

    def update(self, response: StateResponse) -> Dict[int, str]:
        return {}


class JoiningMode(Mode):
    phase = Phase.JOINING

    def enter(self) -> None:
        self.ctx.view.loading = True


# ── Start (lobby + card selection) ────────────────────────────────────────────

class StartMode(Mode):
    phase = Phase.START
    panel: Optional[StartPanel]

    def enter(self) -> None:
        super().enter()
        self.ctx.view.start_button.enabled = False

    def reset(self) -> None:
        if self.panel is None:
            return
        self.panel.card_choice_visible = False
        self.panel.good_cards = []
        self.panel.evil_cards = []
        self.panel.generic_good = ""
        self.panel.generic_evil = ""

    def apply_setup(self, setup: SetupResponse) -> None:
        """Show the special cards on offer for this player count (generic cards are implied)."""
        if self.panel is None:
            return
        state = self.ctx.state
        state.setup_evil_count = setup.setup.spies
        state.setup_good_count = state.setup_players - state.setup_evil_count

        good = sorted(c for c in setup.good_cards if c != GENERIC_GOOD_CARD)
        evil = sorted(c for c in setup.evil_cards if c != GENERIC_EVIL_CARD)
        self.panel.good_cards = [CardChoice(label=c, side="good") for c in good]
        self.panel.evil_cards = [CardChoice(label=c, side="evil") for c in evil]
        self.update_accounting()
        self.panel.card_choice_visible = True

    def toggle_card(self, label: str) -> bool:
        if self.panel is None:
            return False
        for card in self.panel.good_cards + self.panel.evil_cards:
            if card.label == label:
                card.selected = not card.selected
                self.update_accounting()
                return True
        return False

    def update_accounting(self) -> None:
        """Fill the remaining slots with generic cards; too many specials on one side blocks Start."""
        if self.panel is None:
            return
        generic_good, generic_evil = self.generic_counts()
        self.panel.generic_good = _generic_text(generic_good, GENERIC_GOOD_CARD)
        self.panel.generic_evil = _generic_text(generic_evil, GENERIC_EVIL_CARD)
        self.ctx.view.start_button.enabled = generic_good >= 0 and generic_evil >= 0

    def generic_counts(self) -> Tuple[int, int]:
        """Generic Good / Evil cards still needed; negative when a side has too many specials."""
        if self.panel is None:
            return 0, 0
        state = self.ctx.state
        good = state.setup_good_count - sum(1 for c in self.panel.good_cards if c.selected)
        evil = state.setup_evil_count - sum(1 for c in self.panel.evil_cards if c.selected)
        return good, evil

    def chosen_cards(self) -> List[str]:
        if self.panel is None:
            return []
        state = self.ctx.state
        good = [c.label for c in self.panel.good_cards if c.selected]
        evil = [c.label for c in self.panel.evil_cards if c.selected]
        good += [GENERIC_GOOD_CARD] * max(0, state.setup_good_count - len(good))
        evil += [GENERIC_EVIL_CARD] * max(0, state.setup_evil_count - len(evil))
        return good + evil


def _generic_text(count: int, side: str) -> str:
    if count < 0:
        return "Too many!"
    if count == 0:
        return ""
    return f"...plus {count} {side} card{'' if count == 1 else 's'}"


# ── Picking (leader builds a proposal) ────────────────────────────────────────

class PickingMode(Mode):
    phase = Phase.PICKING
    panel: Optional[PickingPanel]

    def enter(self) -> None:
        panel = self.ctx.view.picking
        panel.options = []
        panel.proposal_form.visible = False
        super().enter()

    def reset(self) -> None:
        if self.panel is None:
            return
        self.panel.commit.enabled = True
        for option in self.panel.options:
            option.control.checked = False
            option.control.enabled = True

    def update(self, response: StateResponse) -> Dict[int, str]:
        state = self.ctx.state
        snapshot = response.general
        leader = snapshot.leader_position

        # Selection is built once per leadership acquisition, not on every poll
        if leader != state.leader_position:
            if leader == state.my_position:
                self.become_leader(len(snapshot.players))
            elif state.leader_position is not None and state.leader_position == state.my_position:
                self.relinquish_leadership()
        state.leader_position = leader

        state.mission_size = response.mission_size
        if self.panel is not None:
            self.panel.mission_size = response.mission_size
        return {leader: ICON_WAITING}

    def become_leader(self, player_count: int) -> None:
        if self.panel is None:
            return
        logger.info("Local player is the leader; building proposal selection")
        self.panel.options = [
            ProposalOption(position=i, name=self.ctx.player_name(i)) for i in range(player_count)
        ]
        self.panel.proposal_form.visible = True

    def relinquish_leadership(self) -> None:
        if self.panel is None:
            return
        self.panel.options = []
        self.panel.proposal_form.visible = False

    def controls(self):
        if self.panel is None:
            return []
        return [self.panel.commit] + [o.control for o in self.panel.options]


# ── Voting ────────────────────────────────────────────────────────────────────

class VotingMode(Mode):
    phase = Phase.VOTING
    panel: Optional[VotingPanel]

    def reset(self) -> None:
        if self.panel is None:
            return
        self.panel.mission_players = []
        for control in (self.panel.commit, self.panel.approve, self.panel.reject):
            control.enabled = True
            control.checked = False

    def update(self, response: StateResponse) -> Dict[int, str]:
        icons = {i: ICON_READY if voted else ICON_WAITING for i, voted in enumerate(response.voted_players)}
        if self.panel is not None:
            self.panel.mission_players, _ = self.ctx.render_players(
                response.mission_players, icons={response.general.leader_position: ICON_LEADER}
            )
        return icons

    def controls(self):
        if self.panel is None:
            return []
        return [self.panel.commit, self.panel.approve, self.panel.reject]


# ── Mission ───────────────────────────────────────────────────────────────────

class MissionMode(Mode):
    phase = Phase.MISSION
    panel: Optional[MissionPanel]

    def reset(self) -> None:
        if self.panel is None:
            return
        self.panel.mission_players = []
        self.panel.action_form.visible = False
        for control in (self.panel.commit, self.panel.success, self.panel.failure):
            control.enabled = True
            control.checked = False

    def update(self, response: StateResponse) -> Dict[int, str]:
        state = self.ctx.state
        icons: Dict[int, str] = {}
        for i, position in enumerate(response.mission_players):
            acted = i < len(response.acted_players) and response.acted_players[i]
            icons[position] = ICON_READY if acted else ICON_WAITING

        if self.panel is None:
            return icons
        self.panel.mission_players, on_mission = self.ctx.render_players(
            response.mission_players, icons={response.general.leader_position: ICON_LEADER}
        )
        if on_mission:
            index = response.mission_players.index(state.my_position)
            acted = index < len(response.acted_players) and response.acted_players[index]
            locked = acted or state.pending_command == CommandKind.MISSION
            allowed = response.allow_actions
            self.panel.success.enabled = allowed.success and not locked
            self.panel.failure.enabled = allowed.failure and not locked
            self.panel.commit.enabled = not locked
            self.panel.action_form.visible = True
        return icons

    def controls(self):
        if self.panel is None:
            return []
        return [self.panel.commit, self.panel.success, self.panel.failure]


# ── Game over ─────────────────────────────────────────────────────────────────

class GameoverMode(Mode):
    phase = Phase.GAMEOVER
    panel: Optional[GameoverPanel]

    def reset(self) -> None:
        if self.panel is None:
            return
        self.panel.result = ""
        self.panel.comment = ""
        self.panel.player_cards = []
        self.ctx.view.start_button.enabled = True

    def update(self, response: StateResponse) -> Dict[int, str]:
        if self.panel is not None:
            self.panel.result = response.result
            self.panel.comment = response.comment
            cards = {i: label for i, label in enumerate(response.cards)}
            self.panel.player_cards, _ = self.ctx.render_players(
                range(len(response.general.players)), notes=cards, icons={}
            )
        return {}


MODE_CLASSES = (JoiningMode, StartMode, PickingMode, VotingMode, MissionMode, GameoverMode)


class ModeController:

    def __init__(self, ctx: TableContext):
        self.ctx = ctx
        self.modes: Dict[Phase, Mode] = {cls.phase: cls(ctx) for cls in MODE_CLASSES}
        self.current: Mode = self.modes[Phase.JOINING]
        self.transitions = 0

    @property
    def phase(self) -> Phase:
        return self.current.phase

    def transition(self, phase: Phase) -> Mode:
        logger.info("Set UI mode: %s → %s", self.current.phase.value, phase.value)
        self.ctx.view.hide_panels()
        for mode in self.modes.values():
            mode.release()
        self.ctx.state.mode = phase
        self.current = self.modes[phase]
        self.current.enter()
        self.transitions += 1
        return self.current

    def reset(self) -> None:
        logger.info("Round cycled within %s; resetting mode", self.current.phase.value)
        self.current.reset()

    def update(self, response: StateResponse) -> Dict[int, str]:
        return self.current.update(response)

    @property
    def start(self) -> StartMode:
        return self.modes[Phase.START]  # type: ignore[return-value]

    @property
    def picking(self) -> PickingMode:
        return self.modes[Phase.PICKING]  # type: ignore[return-value]

    @property
    def voting(self) -> VotingMode:
        return self.modes[Phase.VOTING]  # type: ignore[return-value]

    @property
    def mission(self) -> MissionMode:
        return self.modes[Phase.MISSION]  # type: ignore[return-value]
