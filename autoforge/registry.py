"""
Execution Registry
==================

Tracks in-flight executions and enforces at most one execution per feature id.

The registry is the single point of truth preventing duplicate concurrent
work on a feature: the autonomous loop and every direct run/verify/resume/
analyze request claim the feature id here before touching the feature list or
the execution log. All access happens on one asyncio event loop, so the
exclusive-registration check is the only synchronization needed.

Usage:
    registry = ExecutionRegistry()

    async with registry.claim(feature_id, project_path, sink, kind="run") as execution:
        result = await state_machine.implement_feature(feature, project_path, sink)
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from autoforge.cancellation import CancellationToken
from autoforge.errors import AlreadyRunningError
from autoforge.events import EventSink

_logger = logging.getLogger(__name__)

EXECUTION_KINDS = ("run", "verify", "resume", "loop", "analysis")


@dataclass
class Execution:
    """
    One live run of the state machine against a feature id.

    cancellation_token and active_stream are only populated while a delegate
    call is in flight.
    """

    feature_id: str
    project_path: str
    event_sink: EventSink | None = None
    kind: str = "run"
    cancellation_token: CancellationToken | None = None
    active_stream: Any = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.kind not in EXECUTION_KINDS:
            raise ValueError(
                f"Unknown execution kind '{self.kind}'. Valid kinds: {', '.join(EXECUTION_KINDS)}"
            )

    def clear_stream(self) -> None:
        self.cancellation_token = None
        self.active_stream = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "project_path": self.project_path,
            "kind": self.kind,
            "streaming": self.active_stream is not None,
            "started_at": self.started_at.isoformat(),
        }


class ExecutionRegistry:
    """Map of feature id to its live Execution."""

    def __init__(self) -> None:
        self._executions: dict[str, Execution] = {}

    def register(self, feature_id: str, execution: Execution) -> Execution:
        """
        Claim `feature_id`.

        Raises:
            AlreadyRunningError: if the id already has a registered execution
        """
        if feature_id in self._executions:
            raise AlreadyRunningError(feature_id)
        self._executions[feature_id] = execution
        _logger.debug("Registered %s execution for %s", execution.kind, feature_id)
        return execution

    def get(self, feature_id: str) -> Execution | None:
        return self._executions.get(feature_id)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._executions

    def __len__(self) -> int:
        return len(self._executions)

    def feature_ids(self) -> list[str]:
        return list(self._executions)

    def cancel(self, feature_id: str) -> bool:
        """
        Trigger the cancellation token of a registered execution.

        Returns:
            True if a token was triggered; False if the id is not registered
            or its delegate call has not started yet
        """
        execution = self._executions.get(feature_id)
        if execution is None or execution.cancellation_token is None:
            return False
        _logger.info("Cancelling execution for %s", feature_id)
        execution.cancellation_token.cancel(f"Feature {feature_id} cancelled")
        return True

    def unregister(self, feature_id: str) -> None:
        """Remove the entry for `feature_id`. Safe to call repeatedly."""
        if self._executions.pop(feature_id, None) is not None:
            _logger.debug("Unregistered execution for %s", feature_id)

    def stop_all(self) -> list[str]:
        """
        Cancel every registered execution and clear the registry.

        Returns:
            The feature ids that were registered
        """
        stopped = list(self._executions)
        for feature_id, execution in self._executions.items():
            _logger.info("Aborting feature: %s", feature_id)
            if execution.cancellation_token is not None:
                execution.cancellation_token.cancel("Auto mode stopped")
        self._executions.clear()
        return stopped

    @contextlib.asynccontextmanager
    async def claim(
        self,
        feature_id: str,
        project_path: str,
        event_sink: EventSink | None = None,
        kind: str = "run",
    ) -> AsyncIterator[Execution]:
        """Register a new execution for the duration of the block."""
        execution = self.register(
            feature_id,
            Execution(
                feature_id=feature_id,
                project_path=str(project_path),
                event_sink=event_sink,
                kind=kind,
            ),
        )
        try:
            yield execution
        finally:
            # Only drop our own entry; stop_all may have cleared it and a
            # new execution may since have claimed the id
            if self._executions.get(feature_id) is execution:
                self.unregister(feature_id)
