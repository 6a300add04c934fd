"""Synthesis collaborators: turn a context window into note text.

Provides a deterministic fake for tests and offline use, and an
OpenAI-backed implementation of the structuring prompt.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any

import requests

from ..errors import SynthesisFailure
from ..models.evidence import ContextWindow, FrameAvailability, SynthesisResult
from ..models.note import NoteCategory

logger = logging.getLogger(__name__)


class Synthesizer(ABC):
    """Abstract interface for synthesis collaborators.

    Implementations must be pure with respect to the context window they
    receive: the reconciler and diffusion supervisor rely on the window
    being the only input.
    """

    @abstractmethod
    def synthesize(self, context: ContextWindow) -> SynthesisResult:
        """Synthesize a note from the evidence in a context window.

        Args:
            context: Evidence around the note anchor, read at a fixed cursor

        Returns:
            SynthesisResult with text, category and confidence

        Raises:
            SynthesisFailure: If the collaborator cannot produce a result
        """
        pass

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Return engine identifier (e.g., 'fake', 'openai')."""
        pass


# Keyword heuristics, checked in order; first match wins.
CATEGORY_KEYWORDS: list[tuple[NoteCategory, tuple[str, ...]]] = [
    (NoteCategory.PACING, ("pacing", "too slow", "too fast", "speed up", "slow down", "drag")),
    (NoteCategory.AUDIO, ("audio", "volume", "quiet", "loud", "music", "sound", "mix")),
    (NoteCategory.COLOR, ("color", "colour", "grade", "saturat", "exposure", "white balance")),
    (NoteCategory.GRAPHICS, ("title", "logo", "graphic", "lower third", "caption", "font")),
    (NoteCategory.EDITING, ("cut", "trim", "transition", "edit", "jump")),
    (NoteCategory.VISUAL, ("frame", "shot", "blurry", "focus", "zoom", "crop", "angle", "left", "right")),
    (NoteCategory.CONTENT, ("script", "message", "story", "explain", "mention")),
]


class FakeSynthesizer(Synthesizer):
    """Deterministic synthesizer for testing and offline runs.

    Same window always produces the same result.
    """

    FRAME_BONUS = 0.05
    MAX_FRAME_BONUS_FRAMES = 2

    @property
    def engine_name(self) -> str:
        return "fake"

    def synthesize(self, context: ContextWindow) -> SynthesisResult:
        raw = context.raw_transcript
        text = self._compose_text(raw) if raw else (context.current_text or "")

        available = [f for f in context.frames if f.availability == FrameAvailability.AVAILABLE]
        gaps = sorted({f.timestamp_seconds for f in context.frames if f.availability != FrameAvailability.AVAILABLE})

        if context.transcripts:
            confidence = sum(t.confidence for t in context.transcripts) / len(context.transcripts)
        else:
            confidence = 0.3 if available else 0.0
        confidence += self.FRAME_BONUS * min(len(available), self.MAX_FRAME_BONUS_FRAMES)

        return SynthesisResult(
            text=text,
            category=self._categorize(raw or text),
            confidence=round(min(confidence, 1.0), 4),
            evidence_gaps=gaps,
        )

    @staticmethod
    def _compose_text(raw: str) -> str:
        text = re.sub(r"\s+", " ", raw).strip()
        if not text:
            return text
        return text[0].upper() + text[1:]

    @staticmethod
    def _categorize(text: str) -> NoteCategory:
        lowered = text.lower()
        for category, keywords in CATEGORY_KEYWORDS:
            if any(k in lowered for k in keywords):
                return category
        return NoteCategory.GENERAL


class OpenAISynthesizer(Synthesizer):
    """Synthesizer backed by the OpenAI chat completions API.

    Requires OPENAI_API_KEY environment variable.
    """

    API_URL = "https://api.openai.com/v1/chat/completions"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float = 0.3,
        timeout_seconds: float = 15.0,
    ):
        """Initialize OpenAI synthesizer.

        Args:
            api_key: API key; if None, reads OPENAI_API_KEY
            model: Model name (default gpt-4o-mini)
            temperature: Sampling temperature
            timeout_seconds: HTTP timeout for one request

        Raises:
            ValueError: If no API key is provided or found in environment
        """
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("Missing API key: set OPENAI_API_KEY environment variable")
        self.model = model or "gpt-4o-mini"
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds

    @property
    def engine_name(self) -> str:
        return "openai"

    @property
    def provider_model(self) -> str:
        return f"openai/{self.model}"

    def synthesize(self, context: ContextWindow) -> SynthesisResult:
        prompt = self._build_prompt(context)
        content = self._call_api(prompt)
        return self._parse_response(content, context)

    def _build_prompt(self, context: ContextWindow) -> str:
        """Build the structuring prompt."""
        fragments = "\n".join(
            f"- [{t.timestamp_seconds:.1f}s] {t.text} (asr confidence {t.confidence:.2f})"
            for t in context.transcripts
        ) or "- (no speech in this window)"
        frames = ", ".join(
            f"{f.timestamp_seconds:.1f}s ({f.availability.value})" for f in context.frames
        ) or "none"
        current = context.current_text or "(none)"
        return f"""You are a video feedback assistant. Convert these raw voice transcript fragments,
spoken while watching a video around {context.anchor_seconds:.1f}s, into one clear, actionable note.

Transcript fragments ({context.start_seconds:.1f}s to {context.end_seconds:.1f}s):
{fragments}

Frame captures: {frames}
Current note text: {current}

Extract:
1. **category** (one of: pacing, audio, visual, editing, general, color, graphics, content, other)
2. **text** (clear, imperative feedback - rewrite for clarity if needed)
3. **confidence** (0.0-1.0, how clear/actionable is this feedback?)
4. **evidence_gaps** (timestamps in seconds where missing evidence would change the note; may be empty)

Respond ONLY with JSON:
{{"category": "...", "text": "...", "confidence": 0.0, "evidence_gaps": []}}"""

    def _call_api(self, prompt: str) -> str:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        data = {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": "You structure voice transcripts into actionable video feedback. "
                    "Always respond with valid JSON.",
                },
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": 200,
        }
        try:
            response = requests.post(self.API_URL, headers=headers, json=data, timeout=self.timeout_seconds)
            response.raise_for_status()
            body: dict[str, Any] = response.json()
            return str(body["choices"][0]["message"]["content"])
        except requests.RequestException as e:
            raise SynthesisFailure(f"OpenAI request failed: {e}") from e
        except (KeyError, IndexError, ValueError) as e:
            raise SynthesisFailure(f"Unexpected OpenAI response shape: {e}") from e

    def _parse_response(self, content: str, context: ContextWindow) -> SynthesisResult:
        # Models sometimes wrap JSON in markdown code fences
        cleaned = re.sub(r"```(?:json)?\n?", "", content).strip()
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            logger.warning("Could not parse synthesis response as JSON: %s", content[:200])
            return SynthesisResult(
                text=context.raw_transcript or (context.current_text or ""),
                category=NoteCategory.GENERAL,
                confidence=0.5,
            )

        try:
            confidence = min(max(float(data.get("confidence", 0.5)), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.5
        gaps = []
        for g in data.get("evidence_gaps") or []:
            try:
                gaps.append(float(g))
            except (TypeError, ValueError):
                continue
        return SynthesisResult(
            text=str(data.get("text") or context.raw_transcript)[:500],
            category=NoteCategory.coerce(data.get("category", "general")),
            confidence=confidence,
            evidence_gaps=sorted(gaps),
        )


def synthesize_with_timeout(
    synthesizer: Synthesizer,
    context: ContextWindow,
    timeout_seconds: float,
) -> SynthesisResult:
    """Run one synthesis call bounded by a timeout.

    Any collaborator error or timeout surfaces as SynthesisFailure; a timed
    out call's result is discarded.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="synthesis")
    future = executor.submit(synthesizer.synthesize, context)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeout as e:
        future.cancel()
        raise SynthesisFailure(
            f"{synthesizer.engine_name} synthesis timed out after {timeout_seconds:.1f}s"
        ) from e
    except SynthesisFailure:
        raise
    except Exception as e:
        raise SynthesisFailure(f"{synthesizer.engine_name} synthesis failed: {e}") from e
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def get_synthesizer(
    engine: str = "auto",
    model: str | None = None,
    temperature: float = 0.3,
    timeout_seconds: float = 15.0,
) -> Synthesizer:
    """Get a synthesizer based on engine setting and available API keys.

    Args:
        engine: 'fake', 'openai', or 'auto'
                'auto' uses OpenAI if OPENAI_API_KEY is set, else fake

    Returns:
        Synthesizer implementation
    """
    if engine == "fake":
        return FakeSynthesizer()

    if engine == "openai":
        if not os.environ.get("OPENAI_API_KEY"):
            raise ValueError("OPENAI_API_KEY not set")
        return OpenAISynthesizer(model=model, temperature=temperature, timeout_seconds=timeout_seconds)

    if engine == "auto" and os.environ.get("OPENAI_API_KEY"):
        return OpenAISynthesizer(model=model, temperature=temperature, timeout_seconds=timeout_seconds)

    return FakeSynthesizer()
