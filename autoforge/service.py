"""
Auto Mode Service
=================

Orchestration context exposing the public entry points:

- run_feature: implement one feature (in_progress -> verified | backlog)
- verify_feature: verification pass (-> verified | stays in_progress)
- resume_feature: resume with the execution log, bounded auto-retry
  (-> verified | in_progress)
- analyze_project: read-only analysis under a synthetic id
- start / stop / get_status: the autonomous loop
- cancel_feature: trigger one execution's cancellation token

Each service instance owns its own ExecutionRegistry, so independent
instances (one per project, one per test) never share state. Every entry point
claims the feature id before touching the feature list, emits an
auto_mode_error event on failure and re-raises to the caller.

Usage:
    service = AutoModeService(provider=ClaudeProvider())
    result = await service.run_feature(project_dir, "feature-1", sink=print)
    print(result.passes)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from autoforge import events
from autoforge.config import Settings
from autoforge.errors import AlreadyRunningError, FeatureNotFoundError
from autoforge.events import EventSink
from autoforge.feature_store import (
    STATUS_BACKLOG,
    STATUS_IN_PROGRESS,
    STATUS_VERIFIED,
    Feature,
    get_feature,
    update_feature_status,
)
from autoforge.loop import AutoLoopDriver
from autoforge.providers.base import BaseProvider
from autoforge.registry import ExecutionRegistry
from autoforge.state_machine import FeatureStateMachine, PhaseResult
from autoforge.supervisor import ResumeSupervisor

_logger = logging.getLogger(__name__)

ANALYSIS_ID_PREFIX = "project-analysis-"
ANALYSIS_CATEGORY = "Project Analysis"
ANALYSIS_DESCRIPTION = "Analyzing project structure and tech stack"


# =============================================================================
# Result Objects
# =============================================================================

@dataclass
class RunResult:
    """Result of a run/verify/resume/analyze request."""

    success: bool
    passes: bool
    feature_id: str
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "passes": self.passes,
            "feature_id": self.feature_id,
            "message": self.message,
        }


@dataclass
class AutoModeStatus:
    auto_loop_running: bool
    running_features: list[str] = field(default_factory=list)
    running_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_loop_running": self.auto_loop_running,
            "running_features": list(self.running_features),
            "running_count": self.running_count,
        }


def generate_analysis_id() -> str:
    return f"{ANALYSIS_ID_PREFIX}{int(time.time() * 1000)}"


# =============================================================================
# Service
# =============================================================================

class AutoModeService:
    """
    Feature orchestration engine for one process.

    Args:
        provider: Delegate executor; defaults to ClaudeProvider
        settings: Runtime settings; defaults to Settings.from_env()
        registry: Execution registry; a fresh one per service by default
    """

    def __init__(
        self,
        provider: BaseProvider | None = None,
        settings: Settings | None = None,
        registry: ExecutionRegistry | None = None,
    ):
        if provider is None:
            from autoforge.providers.claude_provider import ClaudeProvider

            provider = ClaudeProvider()

        self.settings = settings or Settings.from_env()
        self.registry = registry if registry is not None else ExecutionRegistry()
        self.provider = provider
        self.state_machine = FeatureStateMachine(self.registry, provider, self.settings)
        self.supervisor = ResumeSupervisor(
            self.state_machine, max_retries=self.settings.max_resume_retries
        )
        self.loop = AutoLoopDriver(self.registry, self.state_machine, self.settings)

    # =========================================================================
    # Auto Loop
    # =========================================================================

    async def start(self, project_path: str, sink: EventSink | None = None) -> dict[str, Any]:
        """
        Start the autonomous loop without waiting for it.

        Raises:
            AlreadyRunningError: if the loop is already running
        """
        self.loop.start(str(project_path), sink)
        return {"success": True}

    async def stop(self) -> dict[str, Any]:
        """Hard stop: abort the loop and every registered execution."""
        stopped = self.loop.stop()
        return {"success": True, "stopped_features": stopped}

    def get_status(self) -> AutoModeStatus:
        return AutoModeStatus(
            auto_loop_running=self.loop.running,
            running_features=self.registry.feature_ids(),
            running_count=len(self.registry),
        )

    def cancel_feature(self, feature_id: str) -> bool:
        """
        Trigger the cancellation token of one running feature.

        Raises:
            FeatureNotFoundError: if no execution is registered for the id
        """
        if feature_id not in self.registry:
            raise FeatureNotFoundError(feature_id)
        return self.registry.cancel(feature_id)

    async def shutdown(self, timeout: float | None = 10.0) -> None:
        """Stop everything and wait for the loop task to wind down."""
        if self.loop.running or len(self.registry):
            self.loop.stop()
        if not await self.loop.join(timeout=timeout):
            _logger.warning("Auto mode loop did not stop within %ss, cancelling", timeout)
            task = self.loop.task
            if task is not None:
                task.cancel()
                await self.loop.join()

    # =========================================================================
    # Feature Entry Points
    # =========================================================================

    async def run_feature(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None = None,
    ) -> RunResult:
        """Implement one feature: in_progress, then verified or backlog."""
        _logger.info("Running specific feature: %s", feature_id)

        async def body(feature: Feature) -> PhaseResult:
            update_feature_status(feature.id, STATUS_IN_PROGRESS, project_path)
            return await self.state_machine.implement_feature(feature, project_path, sink)

        return await self._run_entry(
            "run", str(project_path), feature_id, sink, body,
            passed_status=STATUS_VERIFIED, failed_status=STATUS_BACKLOG,
        )

    async def verify_feature(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None = None,
    ) -> RunResult:
        """Verify one feature: verified, or stays in_progress."""
        _logger.info("Verifying feature: %s", feature_id)

        async def body(feature: Feature) -> PhaseResult:
            return await self.state_machine.verify_feature_tests(feature, project_path, sink)

        return await self._run_entry(
            "verify", str(project_path), feature_id, sink, body,
            passed_status=STATUS_VERIFIED, failed_status=STATUS_IN_PROGRESS,
        )

    async def resume_feature(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None = None,
    ) -> RunResult:
        """Resume one feature from its execution log with bounded auto-retry."""
        _logger.info("Resuming feature: %s", feature_id)

        async def body(feature: Feature) -> PhaseResult:
            return await self.supervisor.run(feature, project_path, sink)

        return await self._run_entry(
            "resume", str(project_path), feature_id, sink, body,
            passed_status=STATUS_VERIFIED, failed_status=STATUS_IN_PROGRESS,
        )

    async def analyze_project(
        self,
        project_path: str,
        sink: EventSink | None = None,
    ) -> RunResult:
        """Run a read-only project analysis under a synthetic id."""
        project_path = str(project_path)
        analysis_id = generate_analysis_id()
        _logger.info("Analyzing project at: %s", project_path)

        if analysis_id in self.registry:
            raise AlreadyRunningError(analysis_id, "Project analysis is already running")

        try:
            async with self.registry.claim(analysis_id, project_path, sink, kind="analysis"):
                await events.emit(sink, events.feature_start(analysis_id, {
                    "id": analysis_id,
                    "category": ANALYSIS_CATEGORY,
                    "description": ANALYSIS_DESCRIPTION,
                }))
                result = await self.state_machine.run_project_analysis(
                    analysis_id, project_path, sink
                )
                await events.emit(
                    sink, events.feature_complete(analysis_id, result.passes, result.message)
                )
                return RunResult(
                    success=True,
                    passes=result.passes,
                    feature_id=analysis_id,
                    message=result.message,
                )
        except Exception as e:
            _logger.error("Error analyzing project %s: %s", project_path, e)
            await events.emit(sink, events.error(str(e), analysis_id))
            raise

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _run_entry(
        self,
        kind: str,
        project_path: str,
        feature_id: str,
        sink: EventSink | None,
        body: Callable[[Feature], Awaitable[PhaseResult]],
        *,
        passed_status: str,
        failed_status: str,
    ) -> RunResult:
        """
        Claim `feature_id`, run `body` and persist the resulting status.

        The registry entry is released on every path; failures are reported
        to the sink and re-raised.
        """
        try:
            async with self.registry.claim(feature_id, project_path, sink, kind=kind):
                feature = get_feature(project_path, feature_id)
                if feature is None:
                    raise FeatureNotFoundError(feature_id)

                await events.emit(sink, events.feature_start(feature.id, feature.to_dict()))
                result = await body(feature)

                new_status = passed_status if result.passes else failed_status
                update_feature_status(feature.id, new_status, project_path)

                await events.emit(
                    sink, events.feature_complete(feature.id, result.passes, result.message)
                )
                return RunResult(
                    success=True,
                    passes=result.passes,
                    feature_id=feature.id,
                    message=result.message,
                )
        except Exception as e:
            _logger.error("Error during %s of feature %s: %s", kind, feature_id, e)
            await events.emit(sink, events.error(str(e), feature_id))
            raise
