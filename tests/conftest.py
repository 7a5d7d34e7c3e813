import pytest

from agents.reconciler import ReconciliationEngine
from services.shared_state import InMemoryMirror

from helpers import FakeChannel, make_roster


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def mirror():
    return InMemoryMirror()


@pytest.fixture
def roster():
    return make_roster()


@pytest.fixture
async def engine(channel, mirror, roster):
    # Long interval: tests drive refreshes by hand
    eng = ReconciliationEngine(channel, mirror, roster, poll_interval=3600)
    eng.attach()
    yield eng
    await eng.close()
