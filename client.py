"""
Claude SDK Client Configuration
===============================

Functions for building Claude Agent SDK options for auto mode delegate calls.

Every feature pass gets:
- A role-specific tool allowlist (coding, verification or analysis)
- The UpdateFeatureStatus tool, served in-process by the "autoforge-tools"
  MCP server, so the delegate never edits feature_list.json directly
- Sandboxed bash and project-scoped file permissions via a settings file
- API endpoint overrides passed through from the environment
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

from claude_agent_sdk import ClaudeAgentOptions, create_sdk_mcp_server, tool
from claude_agent_sdk.types import HookContext, HookInput, HookMatcher, SyncHookJSONOutput
from dotenv import load_dotenv

from autoforge.errors import AutoModeError
from autoforge.feature_store import FEATURE_STATUSES

if TYPE_CHECKING:
    from autoforge.providers.base import ExecuteOptions, StatusUpdater

# Load environment variables from .env file if present
load_dotenv()

_logger = logging.getLogger(__name__)

# Environment variables to pass through to Claude CLI for API configuration
# These allow using alternative API endpoints without affecting the user's
# global Claude Code settings
API_ENV_VARS = [
    "ANTHROPIC_BASE_URL",              # Custom API endpoint
    "ANTHROPIC_AUTH_TOKEN",            # API authentication token
    "ANTHROPIC_API_KEY",
    "API_TIMEOUT_MS",                  # Request timeout in milliseconds
    "ANTHROPIC_DEFAULT_SONNET_MODEL",  # Model override for Sonnet
    "ANTHROPIC_DEFAULT_OPUS_MODEL",    # Model override for Opus
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",   # Model override for Haiku
]

# In-process MCP server exposing the status-update side channel
FEATURE_TOOLS_SERVER_NAME = "autoforge-tools"
STATUS_TOOL_NAME = "UpdateFeatureStatus"
STATUS_TOOL_FQN = f"mcp__{FEATURE_TOOLS_SERVER_NAME}__{STATUS_TOOL_NAME}"

# Built-in tools
BUILTIN_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "Bash",
    "WebSearch",
    "WebFetch",
]

# Implementation and resume passes
CODING_TOOLS = [*BUILTIN_TOOLS, STATUS_TOOL_FQN]

# Verification passes run tests and fix code but do not browse the web
VERIFICATION_TOOLS = ["Read", "Write", "Edit", "Glob", "Grep", "Bash", STATUS_TOOL_FQN]

# Project analysis is read-only apart from bash exploration
ANALYSIS_TOOLS = ["Read", "Glob", "Grep", "Bash"]

SETTINGS_FILENAME = ".claude_settings.json"


# =============================================================================
# Status Tool
# =============================================================================

STATUS_TOOL_DESCRIPTION = (
    "Update the status of a feature in the feature list. Use this tool instead "
    "of directly modifying feature_list.json to safely update feature status."
)

STATUS_TOOL_SCHEMA = {
    "type": "object",
    "properties": {
        "featureId": {
            "type": "string",
            "description": "The ID of the feature to update",
        },
        "status": {
            "type": "string",
            "enum": list(FEATURE_STATUSES),
            "description": "The new status for the feature",
        },
    },
    "required": ["featureId", "status"],
}


def _text_result(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


async def handle_status_update(
    status_updater: "StatusUpdater",
    args: dict[str, Any],
) -> dict[str, Any]:
    """
    Run one UpdateFeatureStatus call from the delegate.

    Failures are reported back to the delegate as tool output; they never
    raise into the SDK.
    """
    feature_id = str(args.get("featureId", ""))
    status = str(args.get("status", ""))
    _logger.info(
        "UpdateFeatureStatus tool called: featureId=%s, status=%s", feature_id, status
    )
    try:
        message = await status_updater(feature_id, status)
    except (AutoModeError, OSError) as e:
        _logger.error("UpdateFeatureStatus tool error: %s", e)
        return _text_result(f"Failed to update feature status: {e}")
    return _text_result(message)


def create_feature_tools_server(status_updater: "StatusUpdater"):
    """Build the in-process MCP server carrying the UpdateFeatureStatus tool."""

    @tool(STATUS_TOOL_NAME, STATUS_TOOL_DESCRIPTION, STATUS_TOOL_SCHEMA)
    async def update_feature_status(args: dict[str, Any]) -> dict[str, Any]:
        return await handle_status_update(status_updater, args)

    return create_sdk_mcp_server(
        name=FEATURE_TOOLS_SERVER_NAME,
        version="1.0.0",
        tools=[update_feature_status],
    )


# =============================================================================
# Settings / Environment
# =============================================================================

def get_sdk_env() -> dict[str, str]:
    """API configuration overrides for the Claude CLI subprocess."""
    sdk_env = {}
    for var in API_ENV_VARS:
        value = os.getenv(var)
        if value:
            sdk_env[var] = value
    return sdk_env


def write_security_settings(project_dir: Path, allowed_tools: list[str]) -> Path:
    """
    Write the sandbox/permission settings file for the project.

    Using relative paths ("./**") restricts file access to the project
    directory since cwd is set to project_dir.
    """
    permissions_list = [
        "Read(./**)",
        "Write(./**)",
        "Edit(./**)",
        "Glob(./**)",
        "Grep(./**)",
        "Bash(*)",
    ]
    permissions_list.extend(
        t for t in allowed_tools if t in ("WebFetch", "WebSearch") or t.startswith("mcp__")
    )

    security_settings = {
        "sandbox": {"enabled": True, "autoAllowBashIfSandboxed": True},
        "permissions": {
            "defaultMode": "acceptEdits",
            "allow": permissions_list,
        },
    }

    project_dir.mkdir(parents=True, exist_ok=True)
    settings_file = project_dir / SETTINGS_FILENAME
    settings_file.write_text(json.dumps(security_settings, indent=2), encoding="utf-8")
    return settings_file


async def pre_compact_hook(
    input_data: HookInput,
    tool_use_id: str | None,
    context: HookContext,
) -> SyncHookJSONOutput:
    """Log context compaction during long feature sessions."""
    trigger = input_data.get("trigger", "auto")
    if trigger == "auto":
        _logger.info("Context auto-compaction triggered (context approaching limit)")
    else:
        _logger.info("Context compaction requested manually")
    return SyncHookJSONOutput()


# =============================================================================
# Options
# =============================================================================

def build_agent_options(options: "ExecuteOptions") -> ClaudeAgentOptions:
    """
    Translate provider ExecuteOptions into ClaudeAgentOptions.

    The status tool server is mounted only when a status updater is given.
    """
    project_dir = Path(options.cwd).resolve()
    allowed_tools = list(options.allowed_tools or BUILTIN_TOOLS)

    mcp_servers: dict[str, Any] = {}
    if options.status_updater is not None:
        mcp_servers[FEATURE_TOOLS_SERVER_NAME] = create_feature_tools_server(
            options.status_updater
        )
    else:
        allowed_tools = [t for t in allowed_tools if t != STATUS_TOOL_FQN]

    settings_file = write_security_settings(project_dir, allowed_tools)

    sdk_env = get_sdk_env()
    is_alternative_api = bool(sdk_env.get("ANTHROPIC_BASE_URL"))

    # Prefer the system CLI over the bundled one when available
    system_cli = shutil.which("claude")

    return ClaudeAgentOptions(
        model=options.model,
        cli_path=system_cli,
        system_prompt=options.system_prompt,
        allowed_tools=allowed_tools,
        mcp_servers=mcp_servers,
        hooks={
            "PreCompact": [
                HookMatcher(hooks=[pre_compact_hook]),
            ],
        },
        max_turns=options.max_turns,
        cwd=str(project_dir),
        settings=str(settings_file.resolve()),
        env=sdk_env,
        permission_mode="acceptEdits",
        betas=[] if is_alternative_api else ["context-1m-2025-08-07"],
    )
