"""
CommandChannel — the only path to the authoritative game server.

Every call is a JSON POST to {server_path}{command path} carrying the session
cookie and the x-csrf-token header. The server answers every state-mutating
command with the full updated game state, so join/start/propose/vote/mission
all return a StateResponse just like fetch-state does.

Slots:
  fetch_state, setup   — superseding: a new request cancels the unresolved one;
                         the superseded caller gets StaleResponseError
  everything else      — one outstanding request at a time; a second one while
                         the first is unresolved raises CommandBusyError

No retries happen here. A failure raises TransientFetchError and the caller
re-enables its controls so the player can try again.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from config import settings
from errors import CommandBusyError, StaleResponseError, TransientFetchError
from models.game import (
    COMMAND_PATHS, SUPERSEDING_COMMANDS,
    CommandKind, RevealGroup, SetupResponse, StateResponse,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class _InFlight:
    ticket: int
    task: "asyncio.Task[Any]"


class CommandChannel:

    def __init__(
        self,
        base_url: Optional[str] = None,
        csrf_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cookies = {"sessionName": settings.session_cookie} if settings.session_cookie else None
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.server_path,
            headers={"x-csrf-token": csrf_token if csrf_token is not None else settings.csrf_token},
            cookies=cookies,
            # 5s is httpx's own default
            timeout=settings.request_timeout if settings.request_timeout is not None else 5.0,
            transport=transport,
        )
        self._inflight: Dict[CommandKind, _InFlight] = {}
        self._tickets = itertools.count(1)

    async def close(self) -> None:
        for entry in self._inflight.values():
            entry.task.cancel()
        self._inflight.clear()
        await self._client.aclose()

    def outstanding(self, kind: CommandKind) -> bool:
        entry = self._inflight.get(kind)
        return entry is not None and not entry.task.done()

    # ── Transport ─────────────────────────────────────────────────────────────

    async def _post(self, kind: CommandKind, payload: Dict[str, Any]) -> Any:
        path = COMMAND_PATHS[kind]
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text.strip() or exc.response.reason_phrase
            raise TransientFetchError(kind.value, detail, exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(kind.value, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise TransientFetchError(kind.value, f"invalid JSON body: {exc}") from exc

    async def request(self, kind: CommandKind, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Issue one command in its slot and return the decoded JSON body."""
        previous = self._inflight.get(kind)
        if previous is not None and not previous.task.done():
            if kind not in SUPERSEDING_COMMANDS:
                raise CommandBusyError(f"{kind.value} already has a request outstanding")
            logger.debug("Superseding outstanding %s request #%d", kind.value, previous.ticket)
            previous.task.cancel()

        entry = _InFlight(ticket=next(self._tickets), task=asyncio.ensure_future(self._post(kind, payload or {})))
        self._inflight[kind] = entry
        try:
            try:
                body = await entry.task
            except asyncio.CancelledError:
                # Our task was cancelled by a newer request in the same slot, not by our caller
                if entry.task.cancelled() and self._inflight.get(kind) is not entry:
                    raise StaleResponseError(f"{kind.value} request #{entry.ticket} superseded") from None
                raise
            if self._inflight.get(kind) is not entry:
                raise StaleResponseError(f"{kind.value} request #{entry.ticket} superseded")
            return body
        finally:
            if self._inflight.get(kind) is entry:
                del self._inflight[kind]

    @staticmethod
    def _parse(kind: CommandKind, model: Type[ModelT], body: Any) -> ModelT:
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise TransientFetchError(kind.value, f"unexpected response shape: {exc.error_count()} errors") from exc

    async def _state_command(self, kind: CommandKind, payload: Optional[Dict[str, Any]] = None) -> StateResponse:
        body = await self.request(kind, payload)
        return self._parse(kind, StateResponse, body)

    # ── Commands ──────────────────────────────────────────────────────────────

    async def fetch_state(self) -> StateResponse:
        return await self._state_command(CommandKind.FETCH_STATE)

    async def join(self) -> StateResponse:
        return await self._state_command(CommandKind.JOIN)

    async def start(self, players: Dict[str, Optional[str]], cards: Optional[List[str]] = None) -> StateResponse:
        payload: Dict[str, Any] = {"players": players}
        if cards is not None:
            payload["cards"] = cards
        return await self._state_command(CommandKind.START, payload)

    async def propose(self, mission: int, proposal: int, players: List[int]) -> StateResponse:
        return await self._state_command(
            CommandKind.PROPOSE, {"mission": mission, "proposal": proposal, "players": players}
        )

    async def vote(self, mission: int, proposal: int, choice: str) -> StateResponse:
        return await self._state_command(
            CommandKind.VOTE, {"mission": mission, "proposal": proposal, "vote": choice}
        )

    async def act_on_mission(self, mission: int, action: str) -> StateResponse:
        return await self._state_command(CommandKind.MISSION, {"mission": mission, "action": action})

    async def reveal(self) -> List[RevealGroup]:
        body = await self.request(CommandKind.REVEAL)
        try:
            return [RevealGroup.model_validate(item) for item in (body or [])]
        except (ValidationError, TypeError) as exc:
            raise TransientFetchError(CommandKind.REVEAL.value, f"unexpected response shape: {exc}") from exc

    async def setup(self, players: int) -> SetupResponse:
        body = await self.request(CommandKind.SETUP, {"players": players})
        return self._parse(CommandKind.SETUP, SetupResponse, body)


_command_channel: Optional[CommandChannel] = None


def get_command_channel() -> CommandChannel:
    """Lazy singleton — the httpx client is created on first use, not at import time."""
    global _command_channel
    if _command_channel is None:
        _command_channel = CommandChannel()
    return _command_channel
