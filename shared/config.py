"""Coordinator configuration.

Defaults mirror the limits the coordinator has always shipped with; every
value can be overridden from the environment (or a ``.env`` file).
"""

from __future__ import annotations

import os

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator

from shared.workflow_contracts import LOG_LEVELS


_TRUE_VALUES = {"1", "true", "yes", "on"}


def normalize_log_level(value: str) -> str:
    """Lower-case a level name and map the stdlib spelling ``warning`` to ``warn``."""
    level = str(value or "").strip().lower()
    return "warn" if level == "warning" else level


class CoordinatorSettings(BaseModel):
    """Execution limits and collaborator options for one coordinator."""

    model_config = {"frozen": True}

    max_steps: int = Field(default=50, ge=1)
    max_parallel_branches: int = Field(default=10, ge=1)
    resume_token_ttl_seconds: float = Field(default=24 * 60 * 60, gt=0.0)
    log_level: str = Field(default="info")
    allow_condition_expressions: bool = Field(default=False)
    single_use_resume_tokens: bool = Field(default=True)
    token_db_path: str | None = Field(default=None, description="SQLite path; in-memory store when unset")

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        level = normalize_log_level(value)
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "CoordinatorSettings":
        """Build settings from WORKFLOW_* environment variables."""
        if load_env_file:
            load_dotenv(find_dotenv(usecwd=True), override=False)

        overrides: dict[str, object] = {}
        mapping = {
            "WORKFLOW_MAX_STEPS": "max_steps",
            "WORKFLOW_MAX_PARALLEL_BRANCHES": "max_parallel_branches",
            "WORKFLOW_RESUME_TOKEN_TTL_SECONDS": "resume_token_ttl_seconds",
            "WORKFLOW_LOG_LEVEL": "log_level",
            "WORKFLOW_TOKEN_DB_PATH": "token_db_path",
        }
        for env_name, field_name in mapping.items():
            raw = os.getenv(env_name, "").strip()
            if raw:
                overrides[field_name] = raw

        for env_name, field_name in (
            ("WORKFLOW_ALLOW_CONDITION_EXPRESSIONS", "allow_condition_expressions"),
            ("WORKFLOW_SINGLE_USE_RESUME_TOKENS", "single_use_resume_tokens"),
        ):
            raw = os.getenv(env_name, "").strip().lower()
            if raw:
                overrides[field_name] = raw in _TRUE_VALUES

        return cls(**overrides)
