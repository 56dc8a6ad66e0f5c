"""
Lifecycle Events
================

Event messages emitted to the observer (UI, WebSocket broadcaster, CLI
printer) while features execute.

Every message is a plain dict with a "type" key:
- auto_mode_feature_start:    featureId, feature
- auto_mode_phase:            featureId, phase (planning|action|verification), message
- auto_mode_progress:         featureId, content, statusLine (engine outcome/notice lines only)
- auto_mode_tool:             featureId, tool, input
- auto_mode_feature_complete: featureId, passes, message
- auto_mode_complete:         message
- auto_mode_error:            error, featureId (optional)

The sink may be sync or async. A failing sink is logged and never allowed to
break a feature execution.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Union

_logger = logging.getLogger(__name__)

EVENT_FEATURE_START = "auto_mode_feature_start"
EVENT_PHASE = "auto_mode_phase"
EVENT_PROGRESS = "auto_mode_progress"
EVENT_TOOL = "auto_mode_tool"
EVENT_FEATURE_COMPLETE = "auto_mode_feature_complete"
EVENT_COMPLETE = "auto_mode_complete"
EVENT_ERROR = "auto_mode_error"

EVENT_TYPES = frozenset({
    EVENT_FEATURE_START,
    EVENT_PHASE,
    EVENT_PROGRESS,
    EVENT_TOOL,
    EVENT_FEATURE_COMPLETE,
    EVENT_COMPLETE,
    EVENT_ERROR,
})

PHASE_PLANNING = "planning"
PHASE_ACTION = "action"
PHASE_VERIFICATION = "verification"

PHASES = (PHASE_PLANNING, PHASE_ACTION, PHASE_VERIFICATION)

EventSink = Callable[[dict[str, Any]], Union[None, Awaitable[None]]]


# =============================================================================
# Message Builders
# =============================================================================

def feature_start(feature_id: str, feature: dict[str, Any]) -> dict[str, Any]:
    return {"type": EVENT_FEATURE_START, "featureId": feature_id, "feature": feature}


def phase(feature_id: str, phase_name: str, message: str) -> dict[str, Any]:
    if phase_name not in PHASES:
        raise ValueError(f"Unknown phase '{phase_name}'. Valid phases: {', '.join(PHASES)}")
    return {
        "type": EVENT_PHASE,
        "featureId": feature_id,
        "phase": phase_name,
        "message": message,
    }


def progress(feature_id: str, content: str, status_line: bool = False) -> dict[str, Any]:
    """
    Progress text for a feature.

    status_line marks text written by the engine itself (phase outcomes,
    retry notices) as opposed to streamed delegate output.
    """
    event: dict[str, Any] = {"type": EVENT_PROGRESS, "featureId": feature_id, "content": content}
    if status_line:
        event["statusLine"] = True
    return event


def tool_use(feature_id: str, tool: str, tool_input: Any) -> dict[str, Any]:
    return {"type": EVENT_TOOL, "featureId": feature_id, "tool": tool, "input": tool_input}


def feature_complete(feature_id: str, passes: bool, message: str) -> dict[str, Any]:
    return {
        "type": EVENT_FEATURE_COMPLETE,
        "featureId": feature_id,
        "passes": passes,
        "message": message,
    }


def loop_complete(message: str = "All features completed!") -> dict[str, Any]:
    return {"type": EVENT_COMPLETE, "message": message}


def error(message: str, feature_id: str | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {"type": EVENT_ERROR, "error": message}
    if feature_id is not None:
        event["featureId"] = feature_id
    return event


# =============================================================================
# Emission
# =============================================================================

async def emit(sink: EventSink | None, event: dict[str, Any]) -> None:
    """Deliver one event to the sink, awaiting it if it is async."""
    if sink is None:
        return
    try:
        result = sink(event)
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            await result
    except Exception as e:
        _logger.warning("Event sink failed for %s: %s", event.get("type"), e)
