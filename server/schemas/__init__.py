"""
Pydantic Schemas Package
========================

Request/Response schemas for the auto mode API.
"""

from server.schemas.auto_mode import (
    ActionResponse,
    AutoModeStatusResponse,
    FeatureListResponse,
    FeatureResponse,
    ProjectRequest,
    RunAcceptedResponse,
    StopResponse,
)

__all__ = [
    "ActionResponse",
    "AutoModeStatusResponse",
    "FeatureListResponse",
    "FeatureResponse",
    "ProjectRequest",
    "RunAcceptedResponse",
    "StopResponse",
]
