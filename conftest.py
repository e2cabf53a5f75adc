import itertools
import json
import random

import pytest

from tokenrelay.core.relay import Relay
from tokenrelay.core.settings import RelaySettings


class FakeLink:
    """Collects frames instead of writing them to a socket."""

    def __init__(self):
        self.frames = []
        self.open = True
        self.closed_with = None

    @property
    def is_open(self):
        return self.open

    def deliver(self, frame):
        if not self.open:
            return False
        self.frames.append(frame)
        return True

    def close(self, code=1000, reason=""):
        self.open = False
        self.closed_with = (code, reason)

    def of_type(self, type_):
        return [f for f in self.frames if f["type"] == type_]

    def last(self):
        return self.frames[-1]

    def clear(self):
        self.frames.clear()


class ManualClock:
    """Millisecond clock that only moves when a test says so."""

    def __init__(self, start=1_700_000_000_000):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, *, ms=0, seconds=0, minutes=0):
        self.value += ms + seconds * 1000 + minutes * 60_000


class FixedChoice:
    """rng stand-in that always draws the same symbol, to force collisions."""

    def __init__(self, symbol="A"):
        self.symbol = symbol

    def choice(self, seq):
        return self.symbol


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def make_link():
    return FakeLink


@pytest.fixture
def fixed_choice():
    return FixedChoice


@pytest.fixture
def relay(clock):
    return Relay(RelaySettings(), now=clock, rng=random.Random(1234))


@pytest.fixture
def connect(relay):
    """connect(address=None, token=None) -> (session, link); fresh address per call by default."""
    counter = itertools.count(1)

    def _connect(address=None, token=None):
        link = FakeLink()
        session = relay.connect(link, address or f"10.0.0.{next(counter)}", token)
        return session, link

    return _connect


@pytest.fixture
def send(relay):
    def _send(session, frame):
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        relay.handle_frame(session, raw)

    return _send
