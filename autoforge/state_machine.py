"""
Feature State Machine
=====================

Drives one feature through the Planning / Action / Verification protocol.

- Planning: log line, phase event and a short pause. No delegate call.
- Action: a fresh CancellationToken is stored on the Execution and one
  streaming delegate call runs with a role-specific system prompt, the task
  prompt and the UpdateFeatureStatus tool.
- Verification: the feature list is reloaded and the pass succeeds only if
  the feature's status is now "verified". Delegate text is never inspected.

Every pass returns a PhaseResult. A cancelled stream yields a non-passing
result ("Auto mode aborted", "Verification aborted", ...); any other error is
logged and re-raised to the entry point, which owns registry cleanup.

Persisting the final status is the caller's job; see AutoModeService and
AutoLoopDriver.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from autoforge import events, execution_log
from autoforge.cancellation import CancellationToken
from autoforge.config import Settings
from autoforge.errors import AbortError, ExecutionNotRegisteredError
from autoforge.events import EventSink
from autoforge.feature_store import Feature, get_feature, make_status_updater
from autoforge.providers.base import (
    BaseProvider,
    ExecuteOptions,
    StatusUpdater,
    TextMessage,
    ToolUseMessage,
)
from autoforge.registry import Execution, ExecutionRegistry
from client import ANALYSIS_TOOLS, CODING_TOOLS, VERIFICATION_TOOLS
from prompts import (
    build_feature_prompt,
    build_project_analysis_prompt,
    build_resume_prompt,
    build_verification_prompt,
    get_analysis_system_prompt,
    get_coding_prompt,
    get_verification_prompt,
)

_logger = logging.getLogger(__name__)

# Length of delegate text kept in PhaseResult.message
MESSAGE_PREVIEW_CHARS = 500

PLANNING_PROGRESS = "Analyzing codebase structure and creating implementation plan..."
IMPLEMENTATION_STARTED = "Starting code implementation...\n"
VERIFICATION_CHECKING = "Verifying implementation and checking test results...\n"
VERIFICATION_RUNNING_TESTS = "Running tests to verify feature implementation...\n"
ANALYSIS_STARTED = "Starting project analysis...\n"

IMPLEMENT_PASSED = "✓ Verification successful: All tests passed\n"
IMPLEMENT_FAILED = "✗ Verification: Tests need attention\n"
VERIFY_PASSED = "✓ Verification successful: All tests passed\n"
VERIFY_FAILED = "✗ Tests failed or not all passing - feature remains in progress\n"
RESUME_PASSED = "✓ Feature successfully verified and completed\n"
RESUME_FAILED = "⚠ Feature still in progress - may need additional work\n"

ABORTED_IMPLEMENT = "Auto mode aborted"
ABORTED_VERIFY = "Verification aborted"
ABORTED_RESUME = "Resume aborted"
ABORTED_ANALYSIS = "Analysis aborted"

ANALYSIS_SUCCESS = "Project analyzed successfully"


@dataclass
class PhaseResult:
    """Outcome of one state machine pass."""

    passes: bool
    message: str
    aborted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"passes": self.passes, "message": self.message, "aborted": self.aborted}


class FeatureStateMachine:
    """
    Runs state machine passes for features registered in `registry`.

    Args:
        registry: Registry holding the Execution for every pass
        provider: Delegate executor
        settings: Models, turn budgets and delays
        status_updater_factory: Builds the UpdateFeatureStatus side channel
            for a project path
    """

    def __init__(
        self,
        registry: ExecutionRegistry,
        provider: BaseProvider,
        settings: Settings | None = None,
        status_updater_factory: Callable[[str], StatusUpdater] = make_status_updater,
    ):
        self.registry = registry
        self.provider = provider
        self.settings = settings or Settings()
        self._status_updater_factory = status_updater_factory

    # =========================================================================
    # Passes
    # =========================================================================

    async def implement_feature(
        self,
        feature: Feature,
        project_path: str,
        sink: EventSink | None = None,
    ) -> PhaseResult:
        """Full Planning / Action / Verification pass for a feature."""
        execution = self._require_execution(feature.id)
        _logger.info("Implementing: %s", feature.description)

        try:
            # Planning
            execution_log.append(
                project_path, feature.id,
                f"📋 Planning implementation for: {feature.description}\n",
            )
            await events.emit(sink, events.phase(
                feature.id, events.PHASE_PLANNING,
                f"Planning implementation for: {feature.description}",
            ))
            _logger.debug("Phase: PLANNING for %s", feature.id)
            await events.emit(sink, events.progress(feature.id, PLANNING_PROGRESS, status_line=True))
            await asyncio.sleep(self.settings.planning_delay_seconds)

            # Action
            execution_log.append(
                project_path, feature.id,
                f"⚡ Executing implementation for: {feature.description}\n",
            )
            await events.emit(sink, events.phase(
                feature.id, events.PHASE_ACTION,
                f"Executing implementation for: {feature.description}",
            ))
            _logger.debug("Phase: ACTION for %s", feature.id)
            options = self._feature_options(
                project_path, get_coding_prompt(Path(project_path)), CODING_TOOLS
            )
            response_text = await self._stream_delegate(
                execution, build_feature_prompt(feature), options, sink,
                announce_first_tool=True,
            )

            # Verification
            execution_log.append(
                project_path, feature.id,
                f"✅ Verifying implementation for: {feature.description}\n",
            )
            await events.emit(sink, events.phase(
                feature.id, events.PHASE_VERIFICATION,
                f"Verifying implementation for: {feature.description}",
            ))
            _logger.debug("Phase: VERIFICATION for %s", feature.id)
            await self._report(project_path, feature.id, sink, VERIFICATION_CHECKING)

            passes = self._is_verified(project_path, feature.id)
            await self._report(
                project_path, feature.id, sink,
                IMPLEMENT_PASSED if passes else IMPLEMENT_FAILED,
            )
            return PhaseResult(passes=passes, message=response_text[:MESSAGE_PREVIEW_CHARS])
        except AbortError:
            _logger.info("Feature run aborted: %s", feature.id)
            return PhaseResult(passes=False, message=ABORTED_IMPLEMENT, aborted=True)
        except Exception:
            _logger.exception("Error implementing feature %s", feature.id)
            raise

    async def verify_feature_tests(
        self,
        feature: Feature,
        project_path: str,
        sink: EventSink | None = None,
    ) -> PhaseResult:
        """Verification-only pass with the reduced tool list."""
        execution = self._require_execution(feature.id)
        _logger.info("Verifying tests for: %s", feature.description)

        try:
            execution_log.append(
                project_path, feature.id,
                f"\n✅ Verifying tests for: {feature.description}\n",
            )
            await events.emit(sink, events.phase(
                feature.id, events.PHASE_VERIFICATION,
                f"Verifying tests for: {feature.description}",
            ))

            options = self._feature_options(
                project_path, get_verification_prompt(Path(project_path)), VERIFICATION_TOOLS
            )
            await self._report(project_path, feature.id, sink, VERIFICATION_RUNNING_TESTS)
            response_text = await self._stream_delegate(
                execution, build_verification_prompt(feature), options, sink
            )

            passes = self._is_verified(project_path, feature.id)
            await self._report(
                project_path, feature.id, sink,
                VERIFY_PASSED if passes else VERIFY_FAILED,
            )
            return PhaseResult(passes=passes, message=response_text[:MESSAGE_PREVIEW_CHARS])
        except AbortError:
            _logger.info("Verification aborted: %s", feature.id)
            return PhaseResult(passes=False, message=ABORTED_VERIFY, aborted=True)
        except Exception:
            _logger.exception("Error verifying feature %s", feature.id)
            raise

    async def resume_with_context(
        self,
        feature: Feature,
        project_path: str,
        sink: EventSink | None = None,
        previous_context: str | None = None,
    ) -> PhaseResult:
        """Continue a feature with its execution log as context."""
        execution = self._require_execution(feature.id)
        _logger.info("Resuming with context for: %s", feature.description)

        try:
            execution_log.append(
                project_path, feature.id,
                f"\n🔄 Resuming implementation for: {feature.description}\n",
            )
            await events.emit(sink, events.phase(
                feature.id, events.PHASE_ACTION,
                f"Resuming implementation for: {feature.description}",
            ))

            options = self._feature_options(
                project_path, get_verification_prompt(Path(project_path)), CODING_TOOLS
            )
            response_text = await self._stream_delegate(
                execution, build_resume_prompt(feature, previous_context), options, sink
            )

            passes = self._is_verified(project_path, feature.id)
            await self._report(
                project_path, feature.id, sink,
                RESUME_PASSED if passes else RESUME_FAILED,
            )
            return PhaseResult(passes=passes, message=response_text[:MESSAGE_PREVIEW_CHARS])
        except AbortError:
            _logger.info("Resume aborted: %s", feature.id)
            return PhaseResult(passes=False, message=ABORTED_RESUME, aborted=True)
        except Exception:
            _logger.exception("Error resuming feature %s", feature.id)
            raise

    async def run_project_analysis(
        self,
        analysis_id: str,
        project_path: str,
        sink: EventSink | None = None,
    ) -> PhaseResult:
        """
        Read-only analysis pass under a synthetic id.

        Nothing is written to the execution log and no status tool is exposed.
        """
        execution = self._require_execution(analysis_id)
        _logger.info("Running project analysis for: %s", project_path)

        try:
            await events.emit(sink, events.phase(
                analysis_id, events.PHASE_PLANNING, "Scanning project structure..."
            ))

            options = ExecuteOptions(
                model=self.settings.analysis_model,
                cwd=str(project_path),
                system_prompt=get_analysis_system_prompt(Path(project_path)),
                max_turns=self.settings.analysis_max_turns,
                allowed_tools=list(ANALYSIS_TOOLS),
            )
            await events.emit(sink, events.progress(analysis_id, ANALYSIS_STARTED, status_line=True))
            await self._stream_delegate(
                execution, build_project_analysis_prompt(project_path), options, sink,
                write_log=False,
            )

            await events.emit(sink, events.phase(
                analysis_id, events.PHASE_VERIFICATION, "Project analysis complete"
            ))
            return PhaseResult(passes=True, message=ANALYSIS_SUCCESS)
        except AbortError:
            _logger.info("Project analysis aborted: %s", analysis_id)
            return PhaseResult(passes=False, message=ABORTED_ANALYSIS, aborted=True)
        except Exception:
            _logger.exception("Error in project analysis %s", analysis_id)
            raise

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_execution(self, feature_id: str) -> Execution:
        execution = self.registry.get(feature_id)
        if execution is None:
            raise ExecutionNotRegisteredError(feature_id)
        return execution

    def _feature_options(
        self,
        project_path: str,
        system_prompt: str,
        tools: list[str],
    ) -> ExecuteOptions:
        return ExecuteOptions(
            model=self.settings.model,
            cwd=str(project_path),
            system_prompt=system_prompt,
            max_turns=self.settings.max_turns,
            allowed_tools=list(tools),
            status_updater=self._status_updater_factory(str(project_path)),
        )

    async def _report(
        self,
        project_path: str,
        feature_id: str,
        sink: EventSink | None,
        text: str,
    ) -> None:
        """Append `text` to the log and forward it as progress."""
        execution_log.append(project_path, feature_id, text)
        await events.emit(sink, events.progress(feature_id, text, status_line=True))

    @staticmethod
    def _is_verified(project_path: str, feature_id: str) -> bool:
        feature = get_feature(project_path, feature_id)
        return feature is not None and feature.is_verified

    async def _stream_delegate(
        self,
        execution: Execution,
        prompt: str,
        options: ExecuteOptions,
        sink: EventSink | None,
        *,
        write_log: bool = True,
        announce_first_tool: bool = False,
    ) -> str:
        """
        Run one delegate call and consume its stream.

        Returns:
            The accumulated delegate text

        Raises:
            AbortError: when the execution's token fires mid-stream
        """
        feature_id = execution.feature_id
        project_path = execution.project_path

        token = CancellationToken()
        options.cancellation_token = token
        execution.cancellation_token = token

        response_parts: list[str] = []
        tool_use_started = False
        if self.registry.get(feature_id) is not execution:
            _logger.info("Execution for %s was unregistered, not starting delegate", feature_id)
            raise AbortError(f"Execution for {feature_id} was stopped before the delegate started")
        stream = self.provider.execute_query(prompt, options)
        execution.active_stream = stream
        try:
            async with contextlib.aclosing(stream):
                async for message in stream:
                    if self.registry.get(feature_id) is not execution:
                        _logger.info("Execution for %s was unregistered, stopping stream", feature_id)
                        break

                    if isinstance(message, TextMessage):
                        response_parts.append(message.text)
                        if write_log:
                            execution_log.append(project_path, feature_id, message.text)
                        await events.emit(sink, events.progress(feature_id, message.text))

                    elif isinstance(message, ToolUseMessage):
                        if write_log:
                            if announce_first_tool and not tool_use_started:
                                tool_use_started = True
                                await self._report(
                                    project_path, feature_id, sink, IMPLEMENTATION_STARTED
                                )
                            execution_log.append(
                                project_path, feature_id, f"\n🔧 Tool: {message.name}\n"
                            )
                        await events.emit(
                            sink, events.tool_use(feature_id, message.name, message.input)
                        )
        finally:
            execution.clear_stream()

        return "".join(response_parts)
