"""Tests for CommandChannel against an in-process httpx transport."""
import asyncio
import json

import httpx
import pytest

from errors import CommandBusyError, StaleResponseError, TransientFetchError
from models.game import CommandKind
from services.command_channel import CommandChannel

STATE_BODY = {
    "general": {
        "gameid": 12,
        "state": "picking",
        "players": ["p0", "p1", "p2", "p3", "p4"],
        "leader": 1,
        "this_mission": 1,
        "this_proposal": 1,
        "mission_results": [],
        "votes": [],
    },
    "mission_size": 2,
}


class Server:
    """Records requests; handlers per path may block on an event before answering."""

    def __init__(self):
        self.requests = []
        self.gates = {}
        self.responses = {}

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        gate = self.gates.get(path)
        if gate is not None:
            await gate.wait()
        response = self.responses.get(path)
        if callable(response):
            return response(request)
        if response is not None:
            return response
        return httpx.Response(200, json=STATE_BODY)


@pytest.fixture
async def server_and_channel():
    server = Server()
    channel = CommandChannel(
        base_url="http://avalon.test/",
        csrf_token="token-123",
        transport=httpx.MockTransport(server),
    )
    yield server, channel
    await channel.close()


class TestTransport:

    @pytest.mark.asyncio
    async def test_vote_posts_json_with_csrf_header(self, server_and_channel):
        """Test commands are JSON POSTs to the game path carrying the csrf token"""
        server, channel = server_and_channel

        response = await channel.vote(1, 2, "approve")

        request = server.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/game/vote"
        assert request.headers["x-csrf-token"] == "token-123"
        assert json.loads(request.content) == {"mission": 1, "proposal": 2, "vote": "approve"}
        assert response.general.game_id == "12"
        assert response.general.leader_position == 1

    @pytest.mark.asyncio
    async def test_start_payload(self, server_and_channel):
        server, channel = server_and_channel

        await channel.start({"a": "person-a"}, ["Merlin", "Good"])
        await channel.start({"a": "person-a"})

        assert json.loads(server.requests[0].content) == {"players": {"a": "person-a"}, "cards": ["Merlin", "Good"]}
        assert json.loads(server.requests[1].content) == {"players": {"a": "person-a"}}

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, server_and_channel):
        """Test a non-2xx answer becomes TransientFetchError with the status code"""
        server, channel = server_and_channel
        server.responses["/game/state"] = httpx.Response(500, text="boom")

        with pytest.raises(TransientFetchError) as exc_info:
            await channel.fetch_state()

        assert exc_info.value.status_code == 500
        assert exc_info.value.command == "fetch_state"
        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, server_and_channel):
        server, channel = server_and_channel

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        server.responses["/game/join"] = refuse

        with pytest.raises(TransientFetchError):
            await channel.join()

    @pytest.mark.asyncio
    async def test_unexpected_shape_is_transient(self, server_and_channel):
        server, channel = server_and_channel
        server.responses["/game/state"] = httpx.Response(200, json={"general": {"players": []}})

        with pytest.raises(TransientFetchError):
            await channel.fetch_state()

    @pytest.mark.asyncio
    async def test_local_phase_from_server_is_rejected(self, server_and_channel):
        server, channel = server_and_channel
        body = {**STATE_BODY, "general": {**STATE_BODY["general"], "state": "start"}}
        server.responses["/game/state"] = httpx.Response(200, json=body)

        with pytest.raises(TransientFetchError):
            await channel.fetch_state()

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self, server_and_channel):
        server, channel = server_and_channel
        server.responses["/game/state"] = httpx.Response(200, text="<html>login</html>")

        with pytest.raises(TransientFetchError):
            await channel.fetch_state()

    @pytest.mark.asyncio
    async def test_reveal_and_setup(self, server_and_channel):
        server, channel = server_and_channel
        server.responses["/game/reveal"] = httpx.Response(200, json=[{"label": "Evil", "players": [1, 3]}])
        server.responses["/game/setup"] = httpx.Response(200, json={
            "setup": {"missions": [{"size": 2, "fails_allowed": 0}], "cards": ["Good"], "spies": 2},
            "good_cards": ["Good", "Merlin"],
            "evil_cards": ["Evil"],
        })

        groups = await channel.reveal()
        setup = await channel.setup(5)

        assert groups[0].label == "Evil"
        assert groups[0].players == [1, 3]
        assert setup.setup.spies == 2
        assert json.loads(server.requests[1].content) == {"players": 5}


class TestSlots:

    @pytest.mark.asyncio
    async def test_newer_fetch_supersedes_older(self, server_and_channel):
        """Test a second fetch cancels the first, whose caller gets StaleResponseError"""
        server, channel = server_and_channel
        gate = asyncio.Event()
        server.gates["/game/state"] = gate

        older = asyncio.create_task(channel.fetch_state())
        await asyncio.sleep(0)
        assert channel.outstanding(CommandKind.FETCH_STATE)

        gate.set()
        newer = await channel.fetch_state()

        assert newer.general.game_id == "12"
        with pytest.raises(StaleResponseError):
            await older
        assert not channel.outstanding(CommandKind.FETCH_STATE)

    @pytest.mark.asyncio
    async def test_second_command_in_slot_is_busy(self, server_and_channel):
        """Test a non-superseding slot refuses a second request while one is outstanding"""
        server, channel = server_and_channel
        gate = asyncio.Event()
        server.gates["/game/vote"] = gate

        first = asyncio.create_task(channel.vote(1, 1, "approve"))
        await asyncio.sleep(0)

        with pytest.raises(CommandBusyError):
            await channel.vote(1, 1, "reject")

        gate.set()
        await first
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_slots_are_independent(self, server_and_channel):
        """Test an outstanding vote does not block a fetch"""
        server, channel = server_and_channel
        gate = asyncio.Event()
        server.gates["/game/vote"] = gate

        vote = asyncio.create_task(channel.vote(1, 1, "approve"))
        await asyncio.sleep(0)
        state = await channel.fetch_state()

        assert state.general.phase.value == "picking"
        gate.set()
        await vote
