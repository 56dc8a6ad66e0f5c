"""
Auto Mode Configuration
=======================

Environment variable configuration for the orchestration engine.

Values are read from the process environment (and a .env file, if present)
once per Settings.from_env() call. Unparseable values are logged and fall back
to their defaults rather than failing startup.

Usage:
    from autoforge.config import Settings

    settings = Settings.from_env()
    print(settings.model, settings.max_resume_retries)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

_logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ENV_PREFIX = "AUTOFORGE_"

DEFAULT_MODEL = "claude-opus-4-5-20251101"
DEFAULT_ANALYSIS_MODEL = "claude-sonnet-4-20250514"

# Turn budget for feature work; the delegate's own bound on run length
DEFAULT_MAX_TURNS = 1000
DEFAULT_ANALYSIS_MAX_TURNS = 50

# Additional resume attempts after the first pass
DEFAULT_MAX_RESUME_RETRIES = 3

# Auto loop back-pressure
DEFAULT_LOOP_DELAY_SECONDS = 3.0
DEFAULT_ERROR_DELAY_SECONDS = 5.0

# Pause between the planning signal and the action phase
DEFAULT_PLANNING_DELAY_SECONDS = 0.5

TRUTHY_VALUES = ("1", "true", "yes", "on")


# =============================================================================
# Environment Variable Reading
# =============================================================================

def _env_str(name: str, default: str) -> str:
    value = os.getenv(ENV_PREFIX + name, "").strip()
    return value or default


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(ENV_PREFIX + name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        _logger.warning(
            "Invalid integer for %s%s: '%s'. Defaulting to %d",
            ENV_PREFIX, name, raw, default,
        )
        return default
    if value < minimum:
        _logger.warning(
            "%s%s must be >= %d, got %d. Defaulting to %d",
            ENV_PREFIX, name, minimum, value, default,
        )
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(ENV_PREFIX + name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        _logger.warning(
            "Invalid number for %s%s: '%s'. Defaulting to %s",
            ENV_PREFIX, name, raw, default,
        )
        return default
    if value < 0:
        _logger.warning(
            "%s%s must not be negative, got %s. Defaulting to %s",
            ENV_PREFIX, name, value, default,
        )
        return default
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in TRUTHY_VALUES


# =============================================================================
# Settings
# =============================================================================

@dataclass
class Settings:
    """
    Runtime settings for an AutoModeService instance.

    Attributes:
        model: Model used for implementation, verification and resume passes
        analysis_model: Model used for project analysis
        max_turns: Delegate turn budget for feature passes
        analysis_max_turns: Delegate turn budget for project analysis
        max_resume_retries: Extra resume attempts after the first pass
        loop_delay_seconds: Sleep between loop iterations
        error_delay_seconds: Sleep after a failed loop iteration
        planning_delay_seconds: Pause after the planning signal
        allow_remote: Whether the HTTP server accepts non-localhost clients
    """

    model: str = DEFAULT_MODEL
    analysis_model: str = DEFAULT_ANALYSIS_MODEL
    max_turns: int = DEFAULT_MAX_TURNS
    analysis_max_turns: int = DEFAULT_ANALYSIS_MAX_TURNS
    max_resume_retries: int = DEFAULT_MAX_RESUME_RETRIES
    loop_delay_seconds: float = DEFAULT_LOOP_DELAY_SECONDS
    error_delay_seconds: float = DEFAULT_ERROR_DELAY_SECONDS
    planning_delay_seconds: float = DEFAULT_PLANNING_DELAY_SECONDS
    allow_remote: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from AUTOFORGE_* environment variables."""
        return cls(
            model=_env_str("MODEL", DEFAULT_MODEL),
            analysis_model=_env_str("ANALYSIS_MODEL", DEFAULT_ANALYSIS_MODEL),
            max_turns=_env_int("MAX_TURNS", DEFAULT_MAX_TURNS, minimum=1),
            analysis_max_turns=_env_int(
                "ANALYSIS_MAX_TURNS", DEFAULT_ANALYSIS_MAX_TURNS, minimum=1
            ),
            max_resume_retries=_env_int(
                "MAX_RESUME_RETRIES", DEFAULT_MAX_RESUME_RETRIES
            ),
            loop_delay_seconds=_env_float(
                "LOOP_DELAY_SECONDS", DEFAULT_LOOP_DELAY_SECONDS
            ),
            error_delay_seconds=_env_float(
                "ERROR_DELAY_SECONDS", DEFAULT_ERROR_DELAY_SECONDS
            ),
            planning_delay_seconds=_env_float(
                "PLANNING_DELAY_SECONDS", DEFAULT_PLANNING_DELAY_SECONDS
            ),
            allow_remote=_env_bool("ALLOW_REMOTE"),
        )
