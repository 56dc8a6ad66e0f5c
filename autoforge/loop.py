"""
Autonomous Loop Driver
======================

Repeatedly selects and implements the next eligible feature.

Selection policy: the first feature in file order whose status is not
"verified". Each iteration claims the feature in the registry, runs one
implementation pass and persists "verified" or "backlog". A feature already
claimed by a direct request is skipped for one delay period.

The loop body runs as a supervised asyncio.Task owned by the driver:
- start() rejects a second loop with AlreadyRunningError
- stop() is a hard stop: it cancels the loop token and every registered
  execution, then returns without waiting
- join() awaits the task, e.g. during server shutdown

Failures inside an iteration are reported and followed by a longer delay;
only an error escaping the loop body itself stops auto mode.

Usage:
    driver = AutoLoopDriver(registry, state_machine, settings)
    driver.start(project_path, sink)
    ...
    driver.stop()
    await driver.join()
"""

from __future__ import annotations

import asyncio
import logging

from autoforge import events
from autoforge.cancellation import CancellationToken
from autoforge.config import Settings
from autoforge.errors import AlreadyRunningError
from autoforge.events import EventSink
from autoforge.feature_store import (
    STATUS_BACKLOG,
    STATUS_VERIFIED,
    load_features,
    select_next_feature,
    update_feature_status,
)
from autoforge.registry import ExecutionRegistry
from autoforge.state_machine import FeatureStateMachine

_logger = logging.getLogger(__name__)

LOOP_TASK_NAME = "autoforge-auto-loop"


class AutoLoopDriver:
    """Owns the loop-running flag, the loop token and the loop task."""

    def __init__(
        self,
        registry: ExecutionRegistry,
        state_machine: FeatureStateMachine,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.state_machine = state_machine
        self.settings = settings or Settings()
        self._running = False
        self._token: CancellationToken | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self, project_path: str, sink: EventSink | None = None) -> asyncio.Task:
        """
        Launch the loop on the running event loop.

        Raises:
            AlreadyRunningError: if the loop is already running
        """
        if self._running:
            raise AlreadyRunningError()

        _logger.info("Starting auto mode for project: %s", project_path)
        self._running = True
        token = CancellationToken()
        self._token = token
        self._task = asyncio.create_task(
            self._run(str(project_path), sink, token), name=LOOP_TASK_NAME
        )
        return self._task

    def stop(self) -> list[str]:
        """
        Stop the loop and abort every registered execution.

        Returns:
            The feature ids that were aborted
        """
        _logger.info("Stopping auto mode")
        self._running = False
        if self._token is not None:
            self._token.cancel("Auto mode stopped")
        return self.registry.stop_all()

    async def join(self, timeout: float | None = None) -> bool:
        """
        Wait for the loop task to finish.

        Returns:
            True if the task has finished (or never started)
        """
        if self._task is None:
            return True
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        return bool(done)

    # =========================================================================
    # Loop Body
    # =========================================================================

    def _is_active(self, token: CancellationToken) -> bool:
        return self._running and self._token is token and not token.cancelled

    async def _run(self, project_path: str, sink: EventSink | None, token: CancellationToken) -> None:
        try:
            await self._loop(project_path, sink, token)
        except Exception:
            _logger.exception("Auto mode loop error")
            if self._token is token:
                self.stop()
        finally:
            _logger.info("Auto mode loop ended")
            if self._token is token:
                self._running = False

    async def _loop(self, project_path: str, sink: EventSink | None, token: CancellationToken) -> None:
        while self._is_active(token):
            current_id: str | None = None
            try:
                features = load_features(project_path)
                next_feature = select_next_feature(features)

                if next_feature is None:
                    _logger.info("No more features to implement")
                    await events.emit(sink, events.loop_complete())
                    break

                if next_feature.id in self.registry:
                    _logger.info("Skipping %s - already running", next_feature.id)
                    await token.sleep(self.settings.loop_delay_seconds)
                    continue

                current_id = next_feature.id
                _logger.info("Selected feature: %s", next_feature.description)

                async with self.registry.claim(current_id, project_path, sink, kind="loop"):
                    await events.emit(
                        sink, events.feature_start(current_id, next_feature.to_dict())
                    )
                    result = await self.state_machine.implement_feature(
                        next_feature, project_path, sink
                    )
                    new_status = STATUS_VERIFIED if result.passes else STATUS_BACKLOG
                    update_feature_status(current_id, new_status, project_path)
                    await events.emit(
                        sink, events.feature_complete(current_id, result.passes, result.message)
                    )

                if self._is_active(token):
                    await token.sleep(self.settings.loop_delay_seconds)
            except Exception as e:
                _logger.exception("Error in loop iteration")
                await events.emit(sink, events.error(str(e), current_id))
                await token.sleep(self.settings.error_delay_seconds)
