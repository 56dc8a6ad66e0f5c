"""
Claude Provider
===============

Delegate executor backed by the Claude Agent SDK.

Streams a query() call and converts SDK messages into the engine's closed
ProviderMessage variant:
- AssistantMessage TextBlock    -> TextMessage
- AssistantMessage ToolUseBlock -> ToolUseMessage
- anything else                 -> OtherMessage

The stream is raced against the cancellation token from ExecuteOptions; when
the token fires the SDK stream is closed and AbortError is raised.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, AsyncIterator

from autoforge.cancellation import iterate_until_cancelled
from autoforge.errors import AbortError
from autoforge.providers.base import (
    BaseProvider,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    OtherMessage,
    ProviderMessage,
    TextMessage,
    ToolUseMessage,
)

_logger = logging.getLogger(__name__)

SUPPORTED_FEATURES = frozenset({"tools", "text", "vision", "thinking"})

CLAUDE_MODELS = [
    ModelDefinition(
        id="claude-opus-4-5-20251101",
        name="Claude Opus 4.5",
        model_string="claude-opus-4-5-20251101",
        provider="anthropic",
        description="Most capable Claude model",
        context_window=200000,
        max_output_tokens=16000,
        tier="premium",
        default=True,
    ),
    ModelDefinition(
        id="claude-sonnet-4-20250514",
        name="Claude Sonnet 4",
        model_string="claude-sonnet-4-20250514",
        provider="anthropic",
        description="Balanced performance and cost",
        context_window=200000,
        max_output_tokens=16000,
    ),
    ModelDefinition(
        id="claude-3-5-sonnet-20241022",
        name="Claude 3.5 Sonnet",
        model_string="claude-3-5-sonnet-20241022",
        provider="anthropic",
        description="Fast and capable",
        context_window=200000,
        max_output_tokens=8000,
    ),
    ModelDefinition(
        id="claude-haiku-4-5-20251001",
        name="Claude Haiku 4.5",
        model_string="claude-haiku-4-5-20251001",
        provider="anthropic",
        description="Fastest Claude model",
        context_window=200000,
        max_output_tokens=8000,
        tier="basic",
    ),
]


def convert_sdk_message(msg: Any) -> list[ProviderMessage]:
    """
    Convert one SDK message into zero or more ProviderMessages.

    Unknown shapes become a single OtherMessage so nothing is rejected.
    """
    msg_type = type(msg).__name__

    if msg_type == "AssistantMessage" and hasattr(msg, "content"):
        converted: list[ProviderMessage] = []
        for block in msg.content:
            block_type = type(block).__name__
            if block_type == "TextBlock" and hasattr(block, "text"):
                converted.append(TextMessage(text=block.text))
            elif block_type == "ToolUseBlock" and hasattr(block, "name"):
                converted.append(ToolUseMessage(
                    name=block.name,
                    input=dict(getattr(block, "input", None) or {}),
                    tool_use_id=getattr(block, "id", None),
                ))
            else:
                converted.append(OtherMessage(type_name=block_type, payload=block))
        return converted

    return [OtherMessage(type_name=msg_type, payload=msg)]


class ClaudeProvider(BaseProvider):
    """Executes delegate calls through claude_agent_sdk.query()."""

    def get_name(self) -> str:
        return "claude"

    async def execute_query(
        self,
        prompt: str,
        options: ExecuteOptions,
    ) -> AsyncIterator[ProviderMessage]:
        from claude_agent_sdk import query

        from client import build_agent_options

        sdk_options = build_agent_options(options)
        stream = query(prompt=prompt, options=sdk_options)

        try:
            async for msg in iterate_until_cancelled(stream, options.cancellation_token):
                for converted in convert_sdk_message(msg):
                    yield converted
        except AbortError:
            _logger.info("Claude query aborted")
            raise
        except Exception as e:
            _logger.error("Claude provider error during execution: %s", e)
            raise

    async def detect_installation(self) -> InstallationStatus:
        """
        Report whether the SDK is importable and which credentials exist.

        Credentials are looked up in the environment (API key or auth token)
        and in the Claude CLI configuration directory.
        """
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError as e:
            return InstallationStatus(installed=False, method="sdk", error=str(e))

        has_api_key = bool(os.getenv("ANTHROPIC_API_KEY") or os.getenv("ANTHROPIC_AUTH_TOKEN"))
        claude_dir = Path.home() / ".claude"
        has_cli_config = claude_dir.is_dir()
        has_cli = shutil.which("claude") is not None

        if has_cli_config:
            auth_method = "cli"
        elif has_api_key:
            auth_method = "api_key"
        else:
            auth_method = "none"

        return InstallationStatus(
            installed=True,
            method="cli" if has_cli else "sdk",
            has_api_key=has_api_key,
            authenticated=has_api_key or has_cli_config,
            auth_method=auth_method,
        )

    def get_available_models(self) -> list[ModelDefinition]:
        return list(CLAUDE_MODELS)

    def supports_feature(self, feature: str) -> bool:
        return feature in SUPPORTED_FEATURES
