"""Synthesis collaborators for noteledger."""

from .client import (
    FakeSynthesizer,
    OpenAISynthesizer,
    Synthesizer,
    get_synthesizer,
    synthesize_with_timeout,
)

__all__ = [
    "Synthesizer",
    "FakeSynthesizer",
    "OpenAISynthesizer",
    "get_synthesizer",
    "synthesize_with_timeout",
]
