"""
Runtime settings for the decision process engine.

Values come from the environment (prefix ``DECISIONFLOW_``) or a local ``.env``
file. Pure functions accept an explicit ``settings=`` argument so callers and
tests never depend on process-wide state.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from process_engine._compat import StrEnum


class VariablePrecedence(StrEnum):
    """Which source wins when phase settings and instance field values share a name."""

    INSTANCE_FIRST = "instance_first"
    SETTINGS_FIRST = "settings_first"


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DECISIONFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    variable_precedence: VariablePrecedence = Field(
        default=VariablePrecedence.INSTANCE_FIRST,
        description="Precedence used by the lifecycle when building pipeline variables",
    )
    time_equals_tolerance_ms: int = Field(default=60_000, ge=0)
    approval_rate_equals_tolerance: float = Field(default=0.01, ge=0)
    min_score_points: int = Field(default=2, ge=1)
    max_score_points: int = Field(default=10, ge=1)
    history_log_path: Path = Field(default=Path("artifacts/transition_history.jsonl"))
    log_level: str = Field(default="INFO")


@lru_cache
def get_settings() -> EngineSettings:
    return EngineSettings()


def configure_logging(settings: EngineSettings | None = None) -> None:
    """Apply the configured level to the engine logger (CLI entry points only)."""
    cfg = settings or get_settings()
    level = logging.getLevelName(cfg.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("process_engine").setLevel(level)
