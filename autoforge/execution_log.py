"""
Execution Log
=============

Append-only per-feature transcript stored at
<project>/.autoforge/agents-context/<feature_id>.md.

The log is the only mechanism for carrying context into a resumed run. It
grows while the feature is unverified and is deleted when the feature reaches
"verified".

Appends are read-concatenate-write rather than a true append; writers for a
given feature id are serialized by the execution registry. All I/O errors are
logged and never raised to the feature execution logic.
"""

from __future__ import annotations

import logging
from pathlib import Path

_logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".autoforge"
LOG_DIR_NAME = "agents-context"
LOG_SUFFIX = ".md"


def get_log_dir(project_path: str | Path) -> Path:
    """Directory holding every feature's execution log."""
    return Path(project_path) / STATE_DIR_NAME / LOG_DIR_NAME


def log_path(project_path: str | Path, feature_id: str) -> Path:
    """Path of the execution log for `feature_id`."""
    return get_log_dir(project_path) / f"{feature_id}{LOG_SUFFIX}"


def append(project_path: str | Path | None, feature_id: str, text: str) -> None:
    """
    Append `text` to the feature's log, creating the directory if needed.

    A missing project path makes this a no-op.
    """
    if not project_path:
        return

    path = log_path(project_path, feature_id)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            existing = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            existing = ""
        path.write_text(existing + text, encoding="utf-8")
    except OSError as e:
        _logger.error("Failed to write execution log for %s: %s", feature_id, e)


def read(project_path: str | Path | None, feature_id: str) -> str | None:
    """
    Read the feature's log.

    Returns:
        The log text, or None when there is no log (a fresh start)
    """
    if not project_path:
        return None

    path = log_path(project_path, feature_id)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        _logger.debug("No execution log found for %s", feature_id)
        return None
    except OSError as e:
        _logger.warning("Failed to read execution log for %s: %s", feature_id, e)
        return None


def delete(project_path: str | Path | None, feature_id: str) -> bool:
    """
    Delete the feature's log. Best effort.

    Returns:
        True if a log file was removed
    """
    if not project_path:
        return False

    path = log_path(project_path, feature_id)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        _logger.error("Failed to delete execution log for %s: %s", feature_id, e)
        return False

    _logger.info("Deleted execution log for feature %s", feature_id)
    return True
