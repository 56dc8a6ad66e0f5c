"""
Auto Mode Pydantic Schemas
==========================

Request/Response schemas for the auto mode endpoints.

These schemas provide:
- Input validation for API requests
- Response serialization
- OpenAPI documentation

Mirrors the dataclasses in autoforge.feature_store and autoforge.service.
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from autoforge.feature_store import Feature

RUN_KINDS = Literal["run", "verify", "resume", "analysis"]


# =============================================================================
# Requests
# =============================================================================

class ProjectRequest(BaseModel):
    """Request body naming the project directory to operate on."""

    project_path: str = Field(
        ...,
        min_length=1,
        description="Absolute path of the project directory",
    )

    @field_validator("project_path")
    @classmethod
    def strip_path(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("project_path must not be blank")
        return v


# =============================================================================
# Responses
# =============================================================================

class ActionResponse(BaseModel):
    success: bool
    message: str = ""


class StopResponse(BaseModel):
    success: bool
    stopped_features: list[str] = Field(
        default_factory=list,
        description="Feature ids whose executions were aborted",
    )


class RunAcceptedResponse(BaseModel):
    """Returned with 202 when a run/verify/resume/analysis is queued."""

    success: bool = True
    kind: RUN_KINDS
    feature_id: str
    message: str


class AutoModeStatusResponse(BaseModel):
    auto_loop_running: bool
    running_features: list[str]
    running_count: int


class FeatureResponse(BaseModel):
    id: str
    category: str = ""
    description: str = ""
    steps: list[str] = Field(default_factory=list)
    status: str = "backlog"
    running: bool = Field(default=False, description="Whether an execution is registered")

    @classmethod
    def from_feature(cls, feature: Feature, running: bool = False) -> "FeatureResponse":
        return cls(**feature.to_dict(), running=running)


class FeatureListResponse(BaseModel):
    features: list[FeatureResponse]
    total: int
    backlog: int = 0
    in_progress: int = 0
    verified: int = 0
