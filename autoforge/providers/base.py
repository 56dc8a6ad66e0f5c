"""
Agent Provider Interface
========================

Abstract boundary between the orchestration engine and the delegate agent.

A provider accepts a prompt plus ExecuteOptions and returns a lazy async
sequence of ProviderMessage values. The stream runs until the delegate stops
(or exhausts its turn budget) and is cancellable through the options'
cancellation token, in which case it raises AbortError.

ProviderMessage is a closed variant:
- TextMessage: a text fragment from the delegate
- ToolUseMessage: the delegate invoked a tool
- OtherMessage: any provider-specific envelope; consumers ignore it
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Union

from autoforge.cancellation import CancellationToken

# Status-update side channel: (feature_id, status) -> confirmation text
StatusUpdater = Callable[[str, str], Awaitable[str]]


# =============================================================================
# Provider Messages
# =============================================================================

@dataclass(frozen=True)
class TextMessage:
    text: str
    kind: str = field(default="text", init=False)


@dataclass(frozen=True)
class ToolUseMessage:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None
    kind: str = field(default="tool_use", init=False)


@dataclass(frozen=True)
class OtherMessage:
    """Envelope the engine does not interpret (results, system notices, ...)."""

    type_name: str
    payload: Any = None
    kind: str = field(default="other", init=False)


ProviderMessage = Union[TextMessage, ToolUseMessage, OtherMessage]


# =============================================================================
# Options / Metadata
# =============================================================================

@dataclass
class ExecuteOptions:
    """
    Options for one delegate call.

    Attributes:
        model: Model identifier
        cwd: Working directory for the delegate (the project path)
        system_prompt: Role-specific system prompt
        max_turns: Delegate turn budget
        allowed_tools: Tool allowlist, including the status tool if exposed
        cancellation_token: Token that interrupts the stream
        status_updater: Status-update side channel exposed as a tool
    """

    model: str
    cwd: str
    system_prompt: str | None = None
    max_turns: int = 20
    allowed_tools: list[str] | None = None
    cancellation_token: CancellationToken | None = None
    status_updater: StatusUpdater | None = None


@dataclass
class InstallationStatus:
    installed: bool
    method: str
    has_api_key: bool = False
    authenticated: bool = False
    auth_method: str = "none"
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "installed": self.installed,
            "method": self.method,
            "has_api_key": self.has_api_key,
            "authenticated": self.authenticated,
            "auth_method": self.auth_method,
            "error": self.error,
        }


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    name: str
    model_string: str
    provider: str
    description: str
    context_window: int
    max_output_tokens: int
    supports_vision: bool = True
    supports_tools: bool = True
    tier: str = "standard"
    default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "model_string": self.model_string,
            "provider": self.provider,
            "description": self.description,
            "context_window": self.context_window,
            "max_output_tokens": self.max_output_tokens,
            "supports_vision": self.supports_vision,
            "supports_tools": self.supports_tools,
            "tier": self.tier,
            "default": self.default,
        }


# =============================================================================
# Base Provider
# =============================================================================

class BaseProvider(ABC):
    """Abstract delegate executor."""

    @abstractmethod
    def get_name(self) -> str:
        """Short provider name, e.g. "claude"."""

    @abstractmethod
    def execute_query(
        self,
        prompt: str,
        options: ExecuteOptions,
    ) -> AsyncIterator[ProviderMessage]:
        """
        Start a delegate call and stream its messages.

        Raises:
            AbortError: when options.cancellation_token fires mid-stream
        """

    async def detect_installation(self) -> InstallationStatus:
        return InstallationStatus(installed=True, method="unknown")

    def get_available_models(self) -> list[ModelDefinition]:
        return []

    def supports_feature(self, feature: str) -> bool:
        return False
