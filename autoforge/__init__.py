"""
AutoForge
=========

Feature orchestration engine: picks features from a persisted backlog and
drives each through implement / verify / mark-done with a delegate agent.

The orchestration entry points live in autoforge.service:

    from autoforge.service import AutoModeService
"""

from autoforge.config import Settings
from autoforge.errors import (
    AbortError,
    AlreadyRunningError,
    AutoModeError,
    ExecutionNotRegisteredError,
    FeatureNotFoundError,
    InvalidStatusError,
)
from autoforge.feature_store import FEATURE_STATUSES, Feature
from autoforge.registry import Execution, ExecutionRegistry

__version__ = "0.1.0"

__all__ = [
    "AbortError",
    "AlreadyRunningError",
    "AutoModeError",
    "Execution",
    "ExecutionNotRegisteredError",
    "ExecutionRegistry",
    "FEATURE_STATUSES",
    "Feature",
    "FeatureNotFoundError",
    "InvalidStatusError",
    "Settings",
]
