"""
ReconciliationEngine — keeps one participant's table view in step with the server.

Triggers:
  - PollLoop tick                  → refresh()
  - shared-state mirror change     → on_shared_state_changed() → refresh() / join
  - roster change                  → on_roster_changed()
  - player actions                 → start_game / commit_proposal / commit_vote / commit_mission

refresh() flow:
  1. Compare local game id / mode with the mirror; a different game id there
     means someone started a new game → join it first.
  2. Fetch the authoritative state (superseding any fetch still in flight).
  3. handle_game_state(): game reset, mode transition or same-phase round reset,
     then render.

Every snapshot-yielding request takes a generation tag; a response is applied only
if its tag is newer than the last applied one, so a late answer to an older
request can never overwrite newer state. refresh() is debounced by a scoped
reentrancy guard shared by the poll loop and the mirror notifications.
"""
import logging
from collections import Counter
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from errors import (
    CommandBusyError, InvalidSelectionError, RosterMismatchError,
    StaleResponseError, TableClientError, TransientFetchError,
)
from models.game import (
    Phase, CommandKind, GameSnapshot, StateResponse,
    VOTE_CHOICES, MISSION_ACTIONS,
)
from models.session import LocalSessionState
from models.view import (
    GameView, Control, MissionBox, MissionRecord, RevealGroupView,
    disable_controls, restore_controls,
)
from services.command_channel import CommandChannel
from services.roster import ABSENT_PLAYER_NAME, PlayerNameCache, RosterProvider
from services.shared_state import MirrorState, SharedStateMirror
from agents.modes import ICON_LEADER, ModeController, TableContext
from agents.poll_loop import DEFAULT_POLL_INTERVAL, PollLoop
from utils.guards import BackgroundTasks, ReentrancyGuard

logger = logging.getLogger(__name__)

DEFAULT_MIN_SETUP_PLAYERS = 5


class ReconciliationEngine:
    """One participant's session. Transport, roster and mirror are injected."""

    def __init__(
        self,
        channel: CommandChannel,
        mirror: SharedStateMirror,
        roster: RosterProvider,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        min_setup_players: int = DEFAULT_MIN_SETUP_PLAYERS,
    ):
        self.channel = channel
        self.mirror = mirror
        self.roster = roster
        self.min_setup_players = min_setup_players

        self.state = LocalSessionState(my_id=roster.local_participant_id)
        self.view = GameView()
        self.snapshot: Optional[GameSnapshot] = None
        self.last_response: Optional[StateResponse] = None
        self.applied_updates = 0
        # Failure of the most recent player command; None if it succeeded or was never sent
        self.command_error: Optional[TableClientError] = None

        self.names = PlayerNameCache(roster)
        self.modes = ModeController(TableContext(self.view, self.state, self.player_name))
        self.poll_loop = PollLoop(self.refresh, poll_interval)

        self._refresh_guard = ReentrancyGuard("refresh")
        self._background = BackgroundTasks("reconciler")
        self._unsubscribe: List[Callable[[], None]] = []

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def attach(self) -> None:
        """Subscribe to mirror and roster notifications."""
        if self._unsubscribe:
            return
        self._unsubscribe.append(self.mirror.subscribe(self._on_mirror_notification))
        self._unsubscribe.append(self.roster.subscribe(self.on_roster_changed))

    async def begin(self) -> None:
        """The table is ready (authentication done): show the lobby and load the card setup."""
        self.state.my_id = self.roster.local_participant_id
        self.view.start_button.enabled = False
        # Local-only mode: not published to the mirror, other clients may be mid-game
        self.modes.transition(Phase.START)
        self.show_game_players()
        await self.load_setup()
        # A game may already be running at this table
        await self.on_shared_state_changed()

    async def close(self) -> None:
        self.poll_loop.stop()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        self._background.cancel_all()
        await self._background.drain()

    async def drain(self) -> None:
        """Wait for fire-and-forget work (reveal, mirror-triggered refreshes, setup loads)."""
        await self._background.drain()

    def start_polling(self) -> None:
        self.poll_loop.start()

    def stop_polling(self) -> None:
        self.poll_loop.stop()

    # ── Names ─────────────────────────────────────────────────────────────────

    def player_name(self, position: int) -> str:
        if self.snapshot is None or not 0 <= position < len(self.snapshot.players):
            return ABSENT_PLAYER_NAME
        return self.names.name_for(self.snapshot.players[position])

    # ── Refresh ───────────────────────────────────────────────────────────────

    async def refresh(self) -> None:
        """Debounced: a no-op with no game yet or while another refresh is running."""
        if self.state.game_id is None:
            return
        with self._refresh_guard.attempt() as acquired:
            if not acquired:
                logger.debug("Refresh already in progress; dropping trigger")
                return
            self.state.refresh_in_progress = True
            try:
                await self._check_shared_state()
                await self.fetch_game_state()
            finally:
                self.state.refresh_in_progress = False

    async def _check_shared_state(self) -> None:
        mirror = self.mirror.read()
        if mirror.game_id is not None and mirror.game_id != self.state.game_id:
            logger.info(f"[{self.state.game_id}] Shared state names game {mirror.game_id}; joining")
            await self._join()
        elif mirror.phase is not None and mirror.phase != self.state.mode.value:
            logger.debug(f"[{self.state.game_id}] Shared state phase {mirror.phase} != local {self.state.mode.value}")

    async def _join(self) -> None:
        try:
            await self._issue(CommandKind.JOIN, self.channel.join)
        except CommandBusyError:
            logger.debug("Join already outstanding")
        except TransientFetchError as exc:
            self._surface_error(exc)

    async def fetch_game_state(self) -> Optional[StateResponse]:
        """Fetch and apply the authoritative state. Never raises for transport problems."""
        try:
            return await self._issue(CommandKind.FETCH_STATE, self.channel.fetch_state)
        except StaleResponseError as exc:
            logger.debug("Discarding superseded fetch: %s", exc)
        except TransientFetchError as exc:
            self._surface_error(exc)
        return None

    async def _issue(
        self, kind: CommandKind, call: Callable[[], Awaitable[StateResponse]]
    ) -> Optional[StateResponse]:
        """Run a snapshot-yielding request under a fresh generation tag and apply its result if still newest."""
        self.state.fetch_generation += 1
        generation = self.state.fetch_generation
        response = await call()
        if generation <= self.state.applied_generation:
            logger.debug(
                "Discarding stale %s response (generation %d, applied %d)",
                kind.value, generation, self.state.applied_generation,
            )
            return None
        self.state.applied_generation = generation
        self.handle_game_state(response)
        return response

    # ── Apply ─────────────────────────────────────────────────────────────────

    def handle_game_state(self, response: StateResponse) -> None:
        snapshot = response.general
        previous = self.snapshot
        self.snapshot = snapshot
        self.last_response = response
        self.state.my_position = snapshot.position_of(self.state.my_id)
        self.view.last_error = None

        # A new game always resets first; any phase change below runs against the reset state
        if snapshot.game_id != self.state.game_id:
            logger.info(f"[{snapshot.game_id}] Server reports a new game (was {self.state.game_id})")
            self._game_start(snapshot.game_id)
        elif previous is not None and len(snapshot.mission_results) < len(previous.mission_results):
            logger.warning(
                f"[{snapshot.game_id}] Mission history shrank from "
                f"{len(previous.mission_results)} to {len(snapshot.mission_results)}"
            )

        if self.state.mode != snapshot.phase:
            self._change_mode(snapshot.phase)
        elif snapshot.round_key != (self.state.this_mission, self.state.this_proposal):
            # A whole round went by between two polls and we landed in the same phase
            self.modes.reset()
        self.state.this_mission, self.state.this_proposal = snapshot.round_key

        self._render(response)
        self.applied_updates += 1

    def _game_start(self, game_id: str) -> None:
        self.state.reset_round_tracking()
        self.state.game_id = game_id
        self.state.rendered_mission_count = 0
        self.view.missions = []
        self.view.mission_history = []
        self.view.info_visible = True
        self._background.spawn(self.reveal_roles())
        self.poll_loop.start()
        self.mirror.publish(game_id=game_id)

    def _change_mode(self, phase: Phase) -> None:
        # Entering a mode rebuilds its panel, so leadership must be re-acquired
        self.state.leader_position = None
        self.modes.transition(phase)
        self.mirror.publish(phase=phase)
        if phase == Phase.GAMEOVER:
            self.show_game_players()

    # ── Render ────────────────────────────────────────────────────────────────

    def _render(self, response: StateResponse) -> None:
        snapshot = response.general
        view = self.view
        ctx = self.modes.ctx

        last_vote: Dict[int, str] = {}
        record = snapshot.last_vote_record
        if record is not None:
            last_vote = {i: "approve" if ok else "reject" for i, ok in enumerate(record.approvals)}
        if record is not None and snapshot.phase != Phase.MISSION:
            view.last_proposal, _ = ctx.render_players(
                record.participants_involved, icons={record.leader_position: ICON_LEADER}
            )
            view.last_proposal_visible = True
        else:
            view.last_proposal_visible = False

        view.leader = self.player_name(snapshot.leader_position)
        view.this_mission = str(snapshot.current_mission_index)
        view.this_proposal = str(snapshot.current_proposal_index)

        self._render_missions(snapshot)

        ready_icons = self.modes.update(response)
        view.table_players, _ = ctx.render_players(range(len(snapshot.players)), last_vote, ready_icons)

        if snapshot.phase == Phase.GAMEOVER:
            self.poll_loop.stop()

    def _render_missions(self, snapshot: GameSnapshot) -> None:
        """Append only the mission results beyond the watermark; rendered entries are never touched again."""
        view = self.view
        if not view.missions and snapshot.setup is not None:
            view.missions = [_mission_box(i, m.size, m.fails_allowed) for i, m in enumerate(snapshot.setup.missions)]

        results = snapshot.mission_results
        watermark = self.state.rendered_mission_count
        for result in results[watermark:]:
            names = ", ".join(self.player_name(p) for p in result.participants_involved)
            detail = f"{names}, Leader: {self.player_name(result.leader_position)}"
            if result.failure_count > 0:
                detail += f" ({result.failure_count} fails)"
            status = "failed" if result.failed else "success"

            view.mission_history.append(MissionRecord(
                number=result.mission_number,
                status=status,
                failures=result.failure_count,
                detail=detail,
            ))
            if 0 <= result.mission < len(view.missions):
                view.missions[result.mission].status = status
                view.missions[result.mission].detail = detail
        self.state.rendered_mission_count = max(watermark, len(results))

        for box in view.missions:
            box.current = box.index == snapshot.current_mission_index - 1

    def show_game_players(self) -> None:
        """List the roster in the lobby / game-over panel and remember it for game/start."""
        mode = self.state.mode
        if mode not in (Phase.START, Phase.GAMEOVER):
            return
        self.state.my_id = self.roster.local_participant_id

        lines: List[str] = []
        participant_ids: Dict[str, Optional[str]] = {}
        found_me = False
        for participant in self.roster.participants():
            is_me = participant.id == self.state.my_id
            lines.append(participant.display_name + (" (me)" if is_me else ""))
            participant_ids[participant.id] = participant.person_id
            found_me = found_me or is_me

        panel = self.view.start if mode == Phase.START else self.view.gameover
        panel.players = lines

        if found_me:
            self.state.participant_ids = participant_ids
            self.state.participant_count = len(participant_ids)
        else:
            exc = RosterMismatchError(f"local participant {self.state.my_id!r} not in roster")
            logger.warning("Ignoring roster update: %s", exc)

    # ── Start mode: card setup ────────────────────────────────────────────────

    def on_roster_changed(self) -> None:
        self.show_game_players()
        if self.state.mode == Phase.START:
            self._background.spawn(self.load_setup())

    async def load_setup(self) -> None:
        if self.state.participant_ids is None or self.state.mode != Phase.START:
            return
        self.state.setup_players = max(self.state.participant_count, self.min_setup_players)
        try:
            setup = await self.channel.setup(self.state.setup_players)
        except StaleResponseError:
            return
        except TransientFetchError as exc:
            self._surface_error(exc)
            return
        if self.state.mode != Phase.START:
            return
        self.modes.start.apply_setup(setup)

    def toggle_card(self, label: str) -> bool:
        if self.state.mode != Phase.START:
            return False
        return self.modes.start.toggle_card(label)

    # ── Commands ──────────────────────────────────────────────────────────────

    async def _submit(
        self,
        kind: CommandKind,
        controls: Sequence[Control],
        call: Callable[[], Awaitable[StateResponse]],
    ) -> bool:
        """disable → submit → (apply | re-enable exactly what we disabled)."""
        disabled = disable_controls(controls)
        self.state.pending_command = kind
        try:
            await self._issue(kind, call)
        except (TransientFetchError, CommandBusyError) as exc:
            restore_controls(disabled)
            self.command_error = exc
            self._surface_error(exc)
            return False
        finally:
            self.state.pending_command = None
        return True

    async def start_game(self) -> bool:
        self.command_error = None
        if self.state.participant_ids is None:
            return False
        if self.state.mode not in (Phase.START, Phase.GAMEOVER):
            return False
        if self.state.mode == Phase.START:
            generic_good, generic_evil = self.modes.start.generic_counts()
            if generic_good < 0 or generic_evil < 0:
                raise InvalidSelectionError("too many special cards for this table size")
        if not self.view.start_button.enabled:
            raise InvalidSelectionError("Start is not available right now")
        cards = self.modes.start.chosen_cards() if self.state.mode == Phase.START else None
        logger.info("Starting game with %d players", len(self.state.participant_ids))
        return await self._submit(
            CommandKind.START,
            [self.view.start_button],
            partial(self.channel.start, dict(self.state.participant_ids), cards),
        )

    async def commit_proposal(self, positions: Sequence[int]) -> bool:
        state = self.state
        self.command_error = None
        if state.mode != Phase.PICKING or state.my_position is None or state.leader_position != state.my_position:
            return False
        if not self.view.picking.commit.enabled:
            raise InvalidSelectionError("a proposal has already been submitted")
        selected = list(positions)
        player_count = len(self.snapshot.players) if self.snapshot else 0
        if len(selected) != state.mission_size:
            raise InvalidSelectionError(f"proposal needs {state.mission_size} players, got {len(selected)}")
        if len(set(selected)) != len(selected) or any(not 0 <= p < player_count for p in selected):
            raise InvalidSelectionError(f"invalid proposal positions: {selected}")

        for option in self.view.picking.options:
            option.control.checked = option.position in selected
        return await self._submit(
            CommandKind.PROPOSE,
            self.modes.picking.controls(),
            partial(self.channel.propose, state.this_mission, state.this_proposal, selected),
        )

    async def commit_vote(self, choice: Optional[str]) -> bool:
        self.command_error = None
        if self.state.mode != Phase.VOTING:
            return False
        if choice not in VOTE_CHOICES:
            raise InvalidSelectionError(f"vote must be one of {VOTE_CHOICES}, got {choice!r}")

        panel = self.view.voting
        if not panel.commit.enabled:
            raise InvalidSelectionError("a vote has already been submitted")
        panel.approve.checked = choice == "approve"
        panel.reject.checked = choice == "reject"
        return await self._submit(
            CommandKind.VOTE,
            self.modes.voting.controls(),
            partial(self.channel.vote, self.state.this_mission, self.state.this_proposal, choice),
        )

    async def commit_mission(self, action: Optional[str]) -> bool:
        self.command_error = None
        if self.state.mode != Phase.MISSION:
            return False
        if action not in MISSION_ACTIONS:
            raise InvalidSelectionError(f"action must be one of {MISSION_ACTIONS}, got {action!r}")

        panel = self.view.mission
        chosen = panel.success if action == "success" else panel.failure
        if not panel.action_form.visible or not chosen.enabled:
            raise InvalidSelectionError(f"{action} is not available right now")
        panel.success.checked = action == "success"
        panel.failure.checked = action == "fail"
        return await self._submit(
            CommandKind.MISSION,
            self.modes.mission.controls(),
            partial(self.channel.act_on_mission, self.state.this_mission, action),
        )

    async def reveal_roles(self) -> None:
        try:
            groups = await self.channel.reveal()
        except (TransientFetchError, CommandBusyError) as exc:
            self._surface_error(exc)
            return

        cards: List[str] = []
        if self.snapshot is not None and self.snapshot.setup is not None:
            counts = Counter(self.snapshot.setup.cards)
            cards = sorted(label if n == 1 else f"{label} x{n}" for label, n in counts.items())

        dialog = self.view.reveal
        dialog.cards = cards
        dialog.groups = [
            RevealGroupView(label=g.label, players=self.modes.ctx.render_players(g.players)[0])
            for g in groups
        ]
        dialog.open = True
        logger.info(f"[{self.state.game_id}] Roles revealed ({len(groups)} groups)")

    # ── Mirror ────────────────────────────────────────────────────────────────

    def _on_mirror_notification(self, state: MirrorState) -> None:
        self._background.spawn(self.on_shared_state_changed())

    async def on_shared_state_changed(self) -> None:
        """Another client changed the shared map: join a new game or re-sync on a phase we have not seen."""
        if self.state.mode == Phase.JOINING:
            return
        mirror = self.mirror.read()
        game_differs = mirror.game_id is not None and mirror.game_id != self.state.game_id
        phase_differs = mirror.phase is not None and mirror.phase != self.state.mode.value
        if not (game_differs or phase_differs):
            return

        if self.state.game_id is None:
            # refresh() needs a game; joining is how a fresh client learns of one
            with self._refresh_guard.attempt() as acquired:
                if acquired:
                    await self._join()
            return
        await self.refresh()

    # ── Errors ────────────────────────────────────────────────────────────────

    def _surface_error(self, exc: TableClientError) -> None:
        logger.warning(f"[{self.state.game_id}] {type(exc).__name__}: {exc}")
        self.view.last_error = str(exc)


def _mission_box(index: int, size: int, fails_allowed: int) -> MissionBox:
    label = str(size)
    hint = f"Mission {index + 1} will have {size} players"
    if fails_allowed > 0:
        label += "*"
        hint += f", and will only fail if {fails_allowed} fail cards are present"
    return MissionBox(index=index, size=size, fails_allowed=fails_allowed, label=label, hint=hint)
