"""
Feature Store
=============

Durable load/update of <project>/.autoforge/feature_list.json.

The store is a JSON array of feature records. Loading never raises: a
missing or malformed file yields an empty list, which callers treat as
"no work". Updates are load → mutate status → full rewrite with only the
stable fields, dropping anything a delegate agent may have attached.

Updates are not transactional against concurrent writers. Only one
orchestration path may update a given feature id at a time (enforced by the
execution registry), and delegate status changes go through the
UpdateFeatureStatus tool rather than direct file edits.

Usage:
    from autoforge.feature_store import load_features, update_feature_status

    features = load_features(project_dir)
    update_feature_status(features[0].id, "in_progress", project_dir)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from autoforge import execution_log
from autoforge.errors import FeatureNotFoundError, InvalidStatusError

_logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

FEATURE_LIST_FILENAME = "feature_list.json"

STATUS_BACKLOG = "backlog"
STATUS_IN_PROGRESS = "in_progress"
STATUS_VERIFIED = "verified"

FEATURE_STATUSES = (STATUS_BACKLOG, STATUS_IN_PROGRESS, STATUS_VERIFIED)


# =============================================================================
# Feature
# =============================================================================

@dataclass
class Feature:
    """
    A unit of work in the backlog.

    category, description and steps are the immutable work specification;
    status is the only field the engine mutates.
    """

    id: str
    category: str = ""
    description: str = ""
    steps: list[str] = field(default_factory=list)
    status: str = STATUS_BACKLOG

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int = 0, stamp: int = 0) -> "Feature":
        """Build a Feature from a raw record, generating an id if missing."""
        feature_id = data.get("id") or generate_feature_id(index, stamp)
        steps = data.get("steps") or []
        if not isinstance(steps, list):
            steps = [str(steps)]
        status = data.get("status") or STATUS_BACKLOG
        if status not in FEATURE_STATUSES:
            _logger.warning(
                "Feature %s has unknown status %r, treating it as %s",
                feature_id, status, STATUS_BACKLOG,
            )
            status = STATUS_BACKLOG
        return cls(
            id=str(feature_id),
            category=data.get("category") or "",
            description=data.get("description") or "",
            steps=[str(step) for step in steps],
            status=status,
        )

    def to_dict(self) -> dict[str, Any]:
        """Stable fields only, in the on-disk order."""
        return {
            "id": self.id,
            "category": self.category,
            "description": self.description,
            "steps": list(self.steps),
            "status": self.status,
        }

    @property
    def is_verified(self) -> bool:
        return self.status == STATUS_VERIFIED


def generate_feature_id(index: int, stamp: int) -> str:
    """
    Id for a record that has none: feature-<index>-<stamp>.

    stamp is the feature list's modification time in epoch ms, so repeated
    loads of an unchanged file agree on the id without writing it back.
    The first status update persists it.
    """
    return f"feature-{index}-{stamp}"


def validate_status(status: str) -> str:
    if status not in FEATURE_STATUSES:
        raise InvalidStatusError(status, FEATURE_STATUSES)
    return status


# =============================================================================
# Paths
# =============================================================================

def get_feature_list_path(project_path: str | Path) -> Path:
    return Path(project_path) / execution_log.STATE_DIR_NAME / FEATURE_LIST_FILENAME


# =============================================================================
# Load / Save
# =============================================================================

def load_features(project_path: str | Path) -> list[Feature]:
    """
    Load the feature list.

    Returns:
        The features in file order, or [] when the file is missing, unreadable,
        or not a JSON array
    """
    path = get_feature_list_path(project_path)
    try:
        content = path.read_text(encoding="utf-8")
        stamp = path.stat().st_mtime_ns // 1_000_000
    except FileNotFoundError:
        _logger.debug("No feature list at %s", path)
        return []
    except OSError as e:
        _logger.warning("Failed to read feature list %s: %s", path, e)
        return []

    try:
        raw = json.loads(content)
    except json.JSONDecodeError as e:
        _logger.warning("Failed to parse feature list %s: %s", path, e)
        return []

    if not isinstance(raw, list):
        _logger.warning(
            "Feature list %s is not a JSON array (got %s)", path, type(raw).__name__
        )
        return []

    features = []
    for index, record in enumerate(raw):
        if not isinstance(record, dict):
            _logger.warning("Skipping non-object feature record at index %d", index)
            continue
        features.append(Feature.from_dict(record, index, stamp))
    return features


def save_features(project_path: str | Path, features: list[Feature]) -> None:
    """Rewrite the whole feature list with stable fields only."""
    path = get_feature_list_path(project_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = [feature.to_dict() for feature in features]
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def get_feature(project_path: str | Path, feature_id: str) -> Feature | None:
    for feature in load_features(project_path):
        if feature.id == feature_id:
            return feature
    return None


def update_feature_status(
    feature_id: str,
    status: str,
    project_path: str | Path,
) -> bool:
    """
    Persist a new status for one feature.

    Transitioning to "verified" also deletes the feature's execution log.

    Returns:
        True if the feature was found and written, False if it does not exist

    Raises:
        InvalidStatusError: if `status` is not a valid feature status
    """
    validate_status(status)

    features = load_features(project_path)
    target = next((f for f in features if f.id == feature_id), None)
    if target is None:
        _logger.error("Feature %s not found, status not updated", feature_id)
        return False

    target.status = status
    save_features(project_path, features)
    _logger.info("Updated feature %s: status=%s", feature_id, status)

    if status == STATUS_VERIFIED:
        execution_log.delete(project_path, feature_id)

    return True


def select_next_feature(features: list[Feature]) -> Feature | None:
    """First feature in file order that is not verified."""
    return next((f for f in features if f.status != STATUS_VERIFIED), None)


def make_status_updater(project_path: str | Path) -> Callable[[str, str], Awaitable[str]]:
    """
    Build the status-update side channel for one project.

    The returned coroutine function is what the delegate reaches through the
    UpdateFeatureStatus tool.

    Raises (from the updater):
        InvalidStatusError: unknown status
        FeatureNotFoundError: no feature with that id
    """

    async def update_status(feature_id: str, status: str) -> str:
        validate_status(status)
        if not update_feature_status(feature_id, status, project_path):
            raise FeatureNotFoundError(feature_id)
        return f'Successfully updated feature {feature_id} to status "{status}"'

    return update_status
