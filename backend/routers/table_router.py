"""
Local control surface for the table front end.

Routes (all under /api):
  GET  /view                      — current view model (what the screen should show)
  GET  /session                   — session bookkeeping + last applied snapshot
  POST /ready                     — authentication finished: enter the lobby
  PUT  /roster                    — replace the participant list
  POST /cards/{label}/toggle      — select / deselect a special card in the lobby
  POST /start                     — start a game with the chosen cards
  POST /propose                   — leader submits a proposal
  POST /vote                      — approve / reject the current proposal
  POST /mission                   — success / fail on the current mission
  POST /debug/poll/start|stop     — debug panel: control the poll loop
  POST /debug/refresh             — debug panel: fetch state now

Status codes for commands:
  400 — invalid selection, nothing was sent
  409 — the command does not apply in the current mode
  502 — the game server rejected the command or could not be reached
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from agents.reconciler import ReconciliationEngine
from errors import InvalidSelectionError
from models.game import (
    MissionActionRequest, ProposeRequest, RosterUpdateRequest, VoteRequest,
)
from services.roster import InMemoryRoster

logger = logging.getLogger(__name__)

router = APIRouter(tags=["table"])


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def _command_result(engine: ReconciliationEngine, accepted: bool) -> Dict[str, Any]:
    if not accepted:
        if engine.command_error is not None:
            raise HTTPException(status_code=502, detail=str(engine.command_error))
        raise HTTPException(
            status_code=409,
            detail=f"Command not available in mode {engine.state.mode.value}",
        )
    return {"accepted": True, "mode": engine.state.mode.value}


@router.get("/view")
async def get_view(engine: ReconciliationEngine = Depends(get_engine)):
    return engine.view.model_dump(mode="json")


@router.get("/session")
async def get_session(engine: ReconciliationEngine = Depends(get_engine)):
    snapshot = engine.snapshot
    return {
        "state": engine.state.model_dump(mode="json"),
        "snapshot": snapshot.model_dump(mode="json", by_alias=True) if snapshot else None,
        "polling": engine.poll_loop.running,
    }


@router.post("/ready")
async def table_ready(engine: ReconciliationEngine = Depends(get_engine)):
    await engine.begin()
    return {"mode": engine.state.mode.value}


@router.put("/roster")
async def update_roster(body: RosterUpdateRequest, engine: ReconciliationEngine = Depends(get_engine)):
    roster = engine.roster
    if not isinstance(roster, InMemoryRoster):
        raise HTTPException(status_code=409, detail="Roster is provided by the host environment")
    roster.replace(body.participants, local_id=body.local_id)
    return {"participants": len(body.participants)}


@router.post("/cards/{label}/toggle")
async def toggle_card(label: str, engine: ReconciliationEngine = Depends(get_engine)):
    if not engine.toggle_card(label):
        raise HTTPException(status_code=404, detail=f"No selectable card {label!r}")
    return engine.view.start.model_dump(mode="json")


@router.post("/start")
async def start_game(engine: ReconciliationEngine = Depends(get_engine)):
    try:
        accepted = await engine.start_game()
    except InvalidSelectionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _command_result(engine, accepted)


@router.post("/propose")
async def propose(body: ProposeRequest, engine: ReconciliationEngine = Depends(get_engine)):
    try:
        accepted = await engine.commit_proposal(body.players)
    except InvalidSelectionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _command_result(engine, accepted)


@router.post("/vote")
async def vote(body: VoteRequest, engine: ReconciliationEngine = Depends(get_engine)):
    try:
        accepted = await engine.commit_vote(body.vote)
    except InvalidSelectionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _command_result(engine, accepted)


@router.post("/mission")
async def mission_action(body: MissionActionRequest, engine: ReconciliationEngine = Depends(get_engine)):
    try:
        accepted = await engine.commit_mission(body.action)
    except InvalidSelectionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _command_result(engine, accepted)


# ── Debug panel ───────────────────────────────────────────────────────────────

@router.post("/debug/poll/start")
async def debug_poll_start(engine: ReconciliationEngine = Depends(get_engine)):
    engine.start_polling()
    return {"polling": engine.poll_loop.running}


@router.post("/debug/poll/stop")
async def debug_poll_stop(engine: ReconciliationEngine = Depends(get_engine)):
    engine.stop_polling()
    return {"polling": engine.poll_loop.running}


@router.post("/debug/refresh")
async def debug_refresh(engine: ReconciliationEngine = Depends(get_engine)):
    response = await engine.fetch_game_state()
    return {"applied": response is not None, "error": engine.view.last_error}
