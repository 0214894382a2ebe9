"""
Pytest fixtures for Granite Bank tests.

Provides an in-memory store, a controllable clock, a seeded RNG and
helpers to populate a session and walk it through phases.
"""

import random
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from granite_sim.config import SimulationConfig
from granite_sim.engine import GameEngine
from granite_sim.state import MemoryStateStore, Phase


DEPOSITOR_ANSWERS: dict = {}
WHOLESALE_ANSWERS = {"q1": "a", "q2": "b", "q3": "b"}

PHASE_SEQUENCE = ["phase1", "phase2", "phase3", "phase4", "end"]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 12, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def memory_store():
    """In-memory state store for testing."""
    return MemoryStateStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return SimulationConfig()


@pytest.fixture
def engine(memory_store, config, clock):
    """Engine with in-memory store, seeded RNG and a frozen clock."""
    return GameEngine(store=memory_store, config=config, rng=random.Random(1234), clock=clock)


def join_depositor(engine: GameEngine, name: str = "Ada Lovelace"):
    """Join a participant who scores 0 on the quiz (depositor while quotas allow)."""
    joined = engine.join(name, engine.state.session.join.token, quiz_answers=DEPOSITOR_ANSWERS)
    return engine.state.participants[joined["id"]]


def join_wholesale(engine: GameEngine, name: str = "Grace Hopper"):
    """Join a participant who aces the quiz (wholesale while quotas allow)."""
    joined = engine.join(name, engine.state.session.join.token, quiz_answers=WHOLESALE_ANSWERS)
    return engine.state.participants[joined["id"]]


def advance_to(engine: GameEngine, target: str) -> None:
    """Step the session phase by phase until it reaches target."""
    while engine.state.session.phase != Phase(target):
        current = engine.state.session.phase.value
        following = PHASE_SEQUENCE[PHASE_SEQUENCE.index(current) + 1] if current != "lobby" else "phase1"
        engine.set_phase(following)


@pytest.fixture
def depositor(engine):
    return join_depositor(engine)


@pytest.fixture
def lender(engine):
    return join_wholesale(engine)
