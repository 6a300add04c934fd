"""Pytest fixtures for noteledger tests."""

from datetime import datetime, timedelta, timezone

import pytest

from noteledger.collaborators import UnlimitedCostGovernor
from noteledger.config import NoteLedgerConfig
from noteledger.engine import NoteEngine
from noteledger.ledger import LedgerStore
from noteledger.models.evidence import ContextWindow, SynthesisResult
from noteledger.models.note import NoteCategory
from noteledger.synthesis import FakeSynthesizer, Synthesizer


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedSynthesizer(Synthesizer):
    """Returns queued results in order, then falls back to the fake heuristics.

    A float in the script is shorthand for a result with the fixed text and
    that confidence; an exception instance is raised.
    """

    def __init__(self, script=(), text: str = "Turn left here"):
        self.script = list(script)
        self.text = text
        self.calls: list[ContextWindow] = []
        self._fallback = FakeSynthesizer()

    @property
    def engine_name(self) -> str:
        return "scripted"

    def synthesize(self, context: ContextWindow) -> SynthesisResult:
        self.calls.append(context)
        if not self.script:
            return self._fallback.synthesize(context)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, SynthesisResult):
            return item
        return SynthesisResult(text=self.text, category=NoteCategory.VISUAL, confidence=float(item))


@pytest.fixture
def clock():
    """Clock frozen at 2026-01-05 09:00 UTC until advanced."""
    return FakeClock(datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(tmp_path, clock):
    """Ledger store in a temporary sqlite file."""
    return LedgerStore(tmp_path / "ledger.sqlite", clock=clock, page_size=4)


@pytest.fixture
def scripted():
    """Factory for ScriptedSynthesizer instances."""

    def make(*script, text: str = "Turn left here") -> ScriptedSynthesizer:
        return ScriptedSynthesizer(script, text=text)

    return make


@pytest.fixture
def config(tmp_path):
    """Default configuration rooted in a temporary data directory."""
    return NoteLedgerConfig(data_dir=tmp_path / "data")


@pytest.fixture
def make_engine(ledger, config):
    """Factory for engines sharing the temporary ledger."""
    engines = []

    def make(synthesizer=None, **kwargs) -> NoteEngine:
        kwargs.setdefault("cost_governor", UnlimitedCostGovernor())
        kwargs.setdefault("auto_diffuse", False)
        engine = NoteEngine(ledger, synthesizer or FakeSynthesizer(), config, **kwargs)
        engines.append(engine)
        return engine

    yield make

    for engine in engines:
        engine.close()
