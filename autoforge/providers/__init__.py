"""
Delegate agent providers.
"""

from autoforge.providers.base import (
    BaseProvider,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    OtherMessage,
    ProviderMessage,
    StatusUpdater,
    TextMessage,
    ToolUseMessage,
)
from autoforge.providers.claude_provider import ClaudeProvider

__all__ = [
    "BaseProvider",
    "ClaudeProvider",
    "ExecuteOptions",
    "InstallationStatus",
    "ModelDefinition",
    "OtherMessage",
    "ProviderMessage",
    "StatusUpdater",
    "TextMessage",
    "ToolUseMessage",
]
