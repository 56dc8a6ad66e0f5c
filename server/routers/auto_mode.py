"""
Auto Mode Router
================

API endpoints for the autonomous loop and single-feature executions.

Long-running requests (run, verify, resume, analyze) are validated up front
(unknown feature -> 404, already running -> 409) and then queued as
background tasks; the endpoint returns 202 Accepted immediately and progress
is streamed over the /ws/auto-mode WebSocket.

The AutoModeService and the event broadcaster live in app.state, one per
server process.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable

from fastapi import APIRouter, Depends, Query, Request, status

from autoforge.errors import AlreadyRunningError, FeatureNotFoundError
from autoforge.feature_store import FEATURE_STATUSES, get_feature, load_features
from autoforge.service import AutoModeService, RunResult

from ..event_broadcaster import AutoModeEventBroadcaster
from ..exceptions import BadRequestError, ErrorResponse
from ..schemas import (
    ActionResponse,
    AutoModeStatusResponse,
    FeatureListResponse,
    FeatureResponse,
    ProjectRequest,
    RunAcceptedResponse,
    StopResponse,
)

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auto-mode", tags=["auto-mode"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid project directory"},
    404: {"model": ErrorResponse, "description": "Feature not found"},
    409: {"model": ErrorResponse, "description": "Already running"},
}


# ============================================================================
# Dependencies / Helpers
# ============================================================================


def get_service(request: Request) -> AutoModeService:
    return request.app.state.auto_mode_service


def get_broadcaster(request: Request) -> AutoModeEventBroadcaster:
    return request.app.state.event_broadcaster


def resolve_project_dir(project_path: str) -> str:
    """
    Validate that `project_path` is an existing directory.

    Raises:
        BadRequestError: If the directory does not exist
    """
    project_dir = Path(project_path).expanduser().resolve()
    if not project_dir.is_dir():
        raise BadRequestError(
            f"Project directory not found: {project_dir}",
            details={"project_path": project_path},
        )
    return str(project_dir)


def _launch(request: Request, name: str, coro: Awaitable[RunResult]) -> asyncio.Task:
    """Run `coro` in the background, keeping a reference until it finishes."""
    tasks: set[asyncio.Task] = request.app.state.auto_mode_tasks

    async def runner() -> RunResult | None:
        try:
            return await coro
        except Exception as e:
            # Already reported to the event sink by the service
            _logger.warning("Background %s failed: %s", name, e)
            return None

    task = asyncio.create_task(runner(), name=name)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


def _queue_feature(
    request: Request,
    service: AutoModeService,
    broadcaster: AutoModeEventBroadcaster,
    kind: str,
    feature_id: str,
    body: ProjectRequest,
    entry: Callable[..., Awaitable[RunResult]],
) -> RunAcceptedResponse:
    project_dir = resolve_project_dir(body.project_path)

    if feature_id in service.registry:
        raise AlreadyRunningError(feature_id)
    if get_feature(project_dir, feature_id) is None:
        raise FeatureNotFoundError(feature_id)

    _launch(
        request,
        f"auto-mode-{kind}-{feature_id}",
        entry(project_dir, feature_id, sink=broadcaster.publish),
    )
    _logger.info("Queued %s for feature %s", kind, feature_id)
    return RunAcceptedResponse(
        kind=kind,
        feature_id=feature_id,
        message=f"Feature {feature_id} {kind} started",
    )


# ============================================================================
# Auto Loop Endpoints
# ============================================================================


@router.post("/start", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def start_auto_mode(
    body: ProjectRequest,
    service: AutoModeService = Depends(get_service),
    broadcaster: AutoModeEventBroadcaster = Depends(get_broadcaster),
) -> ActionResponse:
    """Start the autonomous loop for a project. 409 if already running."""
    project_dir = resolve_project_dir(body.project_path)
    await service.start(project_dir, sink=broadcaster.publish)
    return ActionResponse(success=True, message="Auto mode started")


@router.post("/stop", response_model=StopResponse)
async def stop_auto_mode(service: AutoModeService = Depends(get_service)) -> StopResponse:
    """Stop the loop and abort every running feature."""
    result = await service.stop()
    return StopResponse(success=True, stopped_features=result["stopped_features"])


@router.get("/status", response_model=AutoModeStatusResponse)
async def get_auto_mode_status(
    service: AutoModeService = Depends(get_service),
) -> AutoModeStatusResponse:
    return AutoModeStatusResponse(**service.get_status().to_dict())


# ============================================================================
# Feature Endpoints
# ============================================================================


@router.get("/features", response_model=FeatureListResponse, responses=ERROR_RESPONSES)
async def list_features(
    project_path: str = Query(..., min_length=1),
    service: AutoModeService = Depends(get_service),
) -> FeatureListResponse:
    """List the project's features with per-status counts."""
    project_dir = resolve_project_dir(project_path)
    features = load_features(project_dir)

    counts = {s: 0 for s in FEATURE_STATUSES}
    for feature in features:
        if feature.status in counts:
            counts[feature.status] += 1

    return FeatureListResponse(
        features=[
            FeatureResponse.from_feature(f, running=f.id in service.registry)
            for f in features
        ],
        total=len(features),
        **counts,
    )


@router.post(
    "/features/{feature_id}/run",
    response_model=RunAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=ERROR_RESPONSES,
)
async def run_feature(
    feature_id: str,
    body: ProjectRequest,
    request: Request,
    service: AutoModeService = Depends(get_service),
    broadcaster: AutoModeEventBroadcaster = Depends(get_broadcaster),
) -> RunAcceptedResponse:
    """Implement one feature in the background."""
    return _queue_feature(
        request, service, broadcaster, "run", feature_id, body, service.run_feature
    )


@router.post(
    "/features/{feature_id}/verify",
    response_model=RunAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=ERROR_RESPONSES,
)
async def verify_feature(
    feature_id: str,
    body: ProjectRequest,
    request: Request,
    service: AutoModeService = Depends(get_service),
    broadcaster: AutoModeEventBroadcaster = Depends(get_broadcaster),
) -> RunAcceptedResponse:
    """Verify one feature in the background."""
    return _queue_feature(
        request, service, broadcaster, "verify", feature_id, body, service.verify_feature
    )


@router.post(
    "/features/{feature_id}/resume",
    response_model=RunAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=ERROR_RESPONSES,
)
async def resume_feature(
    feature_id: str,
    body: ProjectRequest,
    request: Request,
    service: AutoModeService = Depends(get_service),
    broadcaster: AutoModeEventBroadcaster = Depends(get_broadcaster),
) -> RunAcceptedResponse:
    """Resume one feature from its execution log in the background."""
    return _queue_feature(
        request, service, broadcaster, "resume", feature_id, body, service.resume_feature
    )


@router.post(
    "/features/{feature_id}/cancel",
    response_model=ActionResponse,
    responses={404: ERROR_RESPONSES[404]},
)
async def cancel_feature(
    feature_id: str,
    service: AutoModeService = Depends(get_service),
) -> ActionResponse:
    """
    Cancel a running feature.

    The delegate stream is interrupted at its next suspension point. A
    feature that has not reached its delegate call yet cannot be cancelled.
    """
    cancelled = service.cancel_feature(feature_id)
    message = (
        f"Cancellation requested for feature {feature_id}"
        if cancelled
        else f"Feature {feature_id} has no active delegate call yet"
    )
    return ActionResponse(success=cancelled, message=message)


@router.post(
    "/analyze",
    response_model=RunAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={400: ERROR_RESPONSES[400]},
)
async def analyze_project(
    body: ProjectRequest,
    request: Request,
    service: AutoModeService = Depends(get_service),
    broadcaster: AutoModeEventBroadcaster = Depends(get_broadcaster),
) -> RunAcceptedResponse:
    """Analyze the project structure in the background."""
    project_dir = resolve_project_dir(body.project_path)
    _launch(
        request,
        "auto-mode-analysis",
        service.analyze_project(project_dir, sink=broadcaster.publish),
    )
    return RunAcceptedResponse(
        kind="analysis",
        feature_id="project-analysis",
        message="Project analysis started",
    )
