"""
Resume Supervisor
=================

Bounded re-invocation of a resumed feature.

A delegate can legitimately end its turn mid-task without failing. After a
non-passing resume pass the supervisor reloads the feature; while it is still
"in_progress" it appends a retry marker to the execution log and resumes
again with the grown log as context, up to `max_retries` extra passes.

Retrying stops early when:
- the feature left "in_progress" (the delegate set it back to backlog, or it
  disappeared from the feature list)
- the pass was aborted through its cancellation token
- the execution is no longer registered (auto mode was stopped)
"""

from __future__ import annotations

import logging

from autoforge import events, execution_log
from autoforge.config import DEFAULT_MAX_RESUME_RETRIES
from autoforge.events import EventSink
from autoforge.feature_store import STATUS_IN_PROGRESS, Feature, get_feature
from autoforge.state_machine import FeatureStateMachine, PhaseResult

_logger = logging.getLogger(__name__)


def retry_log_marker(attempt: int) -> str:
    return f"\n\n🔄 Auto-retry #{attempt} - Continuing implementation...\n\n"


def retry_progress_message(attempt: int) -> str:
    return f"\n🔄 Auto-retry #{attempt} - Agent ended early, continuing...\n"


class ResumeSupervisor:
    """Runs resume passes until the feature passes or the retry bound is hit."""

    def __init__(
        self,
        state_machine: FeatureStateMachine,
        max_retries: int = DEFAULT_MAX_RESUME_RETRIES,
    ):
        self.state_machine = state_machine
        self.max_retries = max_retries

    async def run(
        self,
        feature: Feature,
        project_path: str,
        sink: EventSink | None = None,
    ) -> PhaseResult:
        """
        Resume `feature` with its execution log, retrying while it stays
        in progress.

        Returns:
            The result of the last pass
        """
        context = execution_log.read(project_path, feature.id)
        result = await self.state_machine.resume_with_context(
            feature, project_path, sink, context
        )

        attempts = 0
        while not result.passes and attempts < self.max_retries:
            if result.aborted or feature.id not in self.state_machine.registry:
                break

            current = get_feature(project_path, feature.id)
            if current is None or current.status != STATUS_IN_PROGRESS:
                break

            attempts += 1
            _logger.info(
                "Feature %s ended early, auto-retrying (attempt %d/%d)",
                feature.id, attempts, self.max_retries,
            )
            execution_log.append(project_path, feature.id, retry_log_marker(attempts))
            await events.emit(
                sink, events.progress(feature.id, retry_progress_message(attempts), status_line=True)
            )

            context = execution_log.read(project_path, feature.id)
            result = await self.state_machine.resume_with_context(
                feature, project_path, sink, context
            )

        return result
