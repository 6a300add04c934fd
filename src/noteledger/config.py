"""Configuration management for noteledger."""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

REPO_CONFIG_RELPATH = Path(".noteledger") / "config.toml"


def _find_repo_root(start_dir: Path) -> Path:
    """Find repository root by walking upward looking for .git or pyproject.toml."""
    current_dir = start_dir

    while True:
        if (current_dir / ".git").exists() or (current_dir / "pyproject.toml").exists():
            return current_dir

        parent_dir = current_dir.parent

        # Stop at filesystem root
        if parent_dir == current_dir:
            return start_dir

        current_dir = parent_dir


def _load_repo_config_data(repo_root: Path) -> Optional[dict]:
    """Load repo config data from .noteledger/config.toml if it exists."""
    config_file = repo_root / REPO_CONFIG_RELPATH

    if not config_file.exists():
        return None

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as e:
        logger.warning("Ignoring malformed repo config %s: %s", config_file, e)
        return None


def _section(data: Optional[dict], key: str) -> dict:
    if not data or not isinstance(data.get(key), dict):
        return {}
    return data[key]


def _pick(env_name: str, section: dict, key: str, default: Any, cast: type) -> Any:
    """Environment variable, then repo config value, then default."""
    raw = os.environ.get(env_name)
    if raw is not None and raw.strip() != "":
        return cast(raw)
    if key in section:
        return cast(section[key])
    return default


class LedgerSettings(BaseModel):
    """Ledger store behaviour."""

    max_append_attempts: int = Field(default=5, ge=1)
    read_page_size: int = Field(default=256, ge=1)


class ReconcileConfig(BaseModel):
    """Backfill reconciler policies."""

    window_seconds: float = Field(default=30.0, gt=0)
    gap_tolerance_seconds: float = Field(default=2.0, ge=0)
    similarity_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    confidence_delta: float = Field(default=0.05, ge=0.0)
    revision_cap: int = Field(default=3, ge=1)
    rate_window_seconds: float = Field(default=3600.0, gt=0)


class EscalationConfig(BaseModel):
    """Escalation ladder settings."""

    window_increment_seconds: float = Field(default=30.0, gt=0)
    capture_retries: int = Field(default=1, ge=0)
    capture_cost: float = Field(default=1.0, ge=0)
    capture_timeout_seconds: float = Field(default=30.0, gt=0)


class DiffusionConfig(BaseModel):
    """Diffusion task supervisor limits."""

    max_active_per_session: int = Field(default=1, ge=1)
    task_timeout_seconds: float = Field(default=60.0, gt=0)
    schedule_cost: float = Field(default=0.5, ge=0)
    cost_per_call: float = Field(default=0.25, ge=0)
    merge_similarity: float = Field(default=0.8, ge=0.0, le=1.0)
    merge_window_seconds: float = Field(default=10.0, ge=0)
    max_workers: int = Field(default=2, ge=1)


class SynthesisConfig(BaseModel):
    """Synthesis collaborator selection."""

    engine: Literal["auto", "fake", "openai"] = Field(default="auto")
    model: Optional[str] = Field(default=None)
    temperature: float = Field(default=0.3)
    timeout_seconds: float = Field(default=15.0, gt=0)


class NoteLedgerConfig(BaseModel):
    """Configuration for the ledger, reconciler, escalation and diffusion layers."""

    data_dir: Path = Field(
        default_factory=lambda: Path(os.environ.get("NOTELEDGER_DATA_DIR", "./noteledger_data"))
    )
    session_budget: float = Field(default=10.0, ge=0)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    diffusion: DiffusionConfig = Field(default_factory=DiffusionConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)

    model_config = {"frozen": False}

    @classmethod
    def from_env(cls, cli_data_dir: Optional[str] = None) -> "NoteLedgerConfig":
        """Load configuration with the following precedence:

        1. CLI --data-dir option (data directory only)
        2. NOTELEDGER_* environment variables
        3. repo-local .noteledger/config.toml (walk upward from CWD)
        4. Defaults

        Args:
            cli_data_dir: Data directory from the CLI (highest precedence)
        """
        repo_config = _load_repo_config_data(_find_repo_root(Path.cwd())) or {}
        rec = _section(repo_config, "reconcile")
        esc = _section(repo_config, "escalation")
        dif = _section(repo_config, "diffusion")
        syn = _section(repo_config, "synthesis")
        led = _section(repo_config, "ledger")

        if cli_data_dir:
            data_dir = Path(cli_data_dir)
        else:
            data_dir = Path(_pick("NOTELEDGER_DATA_DIR", repo_config, "data_dir", "./noteledger_data", str))

        return cls(
            data_dir=data_dir.expanduser(),
            session_budget=_pick("NOTELEDGER_SESSION_BUDGET", repo_config, "session_budget", 10.0, float),
            ledger=LedgerSettings(
                max_append_attempts=_pick("NOTELEDGER_MAX_APPEND_ATTEMPTS", led, "max_append_attempts", 5, int),
                read_page_size=_pick("NOTELEDGER_READ_PAGE_SIZE", led, "read_page_size", 256, int),
            ),
            reconcile=ReconcileConfig(
                window_seconds=_pick("NOTELEDGER_RECONCILE_WINDOW_SECONDS", rec, "window_seconds", 30.0, float),
                gap_tolerance_seconds=_pick(
                    "NOTELEDGER_RECONCILE_GAP_TOLERANCE_SECONDS", rec, "gap_tolerance_seconds", 2.0, float
                ),
                similarity_threshold=_pick(
                    "NOTELEDGER_RECONCILE_SIMILARITY_THRESHOLD", rec, "similarity_threshold", 0.95, float
                ),
                confidence_delta=_pick("NOTELEDGER_RECONCILE_CONFIDENCE_DELTA", rec, "confidence_delta", 0.05, float),
                revision_cap=_pick("NOTELEDGER_RECONCILE_REVISION_CAP", rec, "revision_cap", 3, int),
                rate_window_seconds=_pick(
                    "NOTELEDGER_RECONCILE_RATE_WINDOW_SECONDS", rec, "rate_window_seconds", 3600.0, float
                ),
            ),
            escalation=EscalationConfig(
                window_increment_seconds=_pick(
                    "NOTELEDGER_ESCALATION_WINDOW_INCREMENT_SECONDS", esc, "window_increment_seconds", 30.0, float
                ),
                capture_retries=_pick("NOTELEDGER_ESCALATION_CAPTURE_RETRIES", esc, "capture_retries", 1, int),
                capture_cost=_pick("NOTELEDGER_ESCALATION_CAPTURE_COST", esc, "capture_cost", 1.0, float),
                capture_timeout_seconds=_pick(
                    "NOTELEDGER_ESCALATION_CAPTURE_TIMEOUT_SECONDS", esc, "capture_timeout_seconds", 30.0, float
                ),
            ),
            diffusion=DiffusionConfig(
                max_active_per_session=_pick(
                    "NOTELEDGER_DIFFUSION_MAX_ACTIVE", dif, "max_active_per_session", 1, int
                ),
                task_timeout_seconds=_pick(
                    "NOTELEDGER_DIFFUSION_TASK_TIMEOUT_SECONDS", dif, "task_timeout_seconds", 60.0, float
                ),
                schedule_cost=_pick("NOTELEDGER_DIFFUSION_SCHEDULE_COST", dif, "schedule_cost", 0.5, float),
                cost_per_call=_pick("NOTELEDGER_DIFFUSION_COST_PER_CALL", dif, "cost_per_call", 0.25, float),
                merge_similarity=_pick("NOTELEDGER_DIFFUSION_MERGE_SIMILARITY", dif, "merge_similarity", 0.8, float),
                merge_window_seconds=_pick(
                    "NOTELEDGER_DIFFUSION_MERGE_WINDOW_SECONDS", dif, "merge_window_seconds", 10.0, float
                ),
                max_workers=_pick("NOTELEDGER_DIFFUSION_MAX_WORKERS", dif, "max_workers", 2, int),
            ),
            synthesis=SynthesisConfig(
                engine=_pick("NOTELEDGER_SYNTHESIS_ENGINE", syn, "engine", "auto", str),
                model=_pick("NOTELEDGER_SYNTHESIS_MODEL", syn, "model", None, str),
                temperature=_pick("NOTELEDGER_SYNTHESIS_TEMPERATURE", syn, "temperature", 0.3, float),
                timeout_seconds=_pick("NOTELEDGER_SYNTHESIS_TIMEOUT_SECONDS", syn, "timeout_seconds", 15.0, float),
            ),
        )

    def to_toml_str(self) -> str:
        """Render the effective configuration as .noteledger/config.toml content."""
        return f"""# noteledger configuration

data_dir = "{self.data_dir}"
session_budget = {self.session_budget}

[ledger]
max_append_attempts = {self.ledger.max_append_attempts}
read_page_size = {self.ledger.read_page_size}

# Backfill reconciliation policies
[reconcile]
window_seconds = {self.reconcile.window_seconds}
gap_tolerance_seconds = {self.reconcile.gap_tolerance_seconds}
similarity_threshold = {self.reconcile.similarity_threshold}
confidence_delta = {self.reconcile.confidence_delta}
revision_cap = {self.reconcile.revision_cap}
rate_window_seconds = {self.reconcile.rate_window_seconds}

[escalation]
window_increment_seconds = {self.escalation.window_increment_seconds}
capture_retries = {self.escalation.capture_retries}
capture_cost = {self.escalation.capture_cost}
capture_timeout_seconds = {self.escalation.capture_timeout_seconds}

[diffusion]
max_active_per_session = {self.diffusion.max_active_per_session}
task_timeout_seconds = {self.diffusion.task_timeout_seconds}
schedule_cost = {self.diffusion.schedule_cost}
cost_per_call = {self.diffusion.cost_per_call}
merge_similarity = {self.diffusion.merge_similarity}
merge_window_seconds = {self.diffusion.merge_window_seconds}
max_workers = {self.diffusion.max_workers}

[synthesis]
engine = "{self.synthesis.engine}"
model = "{self.synthesis.model or ""}"
temperature = {self.synthesis.temperature}
timeout_seconds = {self.synthesis.timeout_seconds}
"""
