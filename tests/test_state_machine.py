"""
Feature State Machine Tests
===========================

Tests cover:
1. Planning / Action / Verification ordering and log lines
2. Success is decided by the persisted status, never by delegate text
3. Per-pass tool lists and system prompts
4. Cancellation and error propagation
5. Stream consumption stops once the execution is unregistered
"""

import asyncio

import pytest

from autoforge import execution_log
from autoforge.errors import ExecutionNotRegisteredError
from autoforge.feature_store import get_feature
from autoforge.providers.base import OtherMessage, TextMessage, ToolUseMessage
from autoforge.registry import ExecutionRegistry
from autoforge.state_machine import (
    ABORTED_IMPLEMENT,
    ABORTED_VERIFY,
    IMPLEMENTATION_STARTED,
    IMPLEMENT_FAILED,
    IMPLEMENT_PASSED,
    PLANNING_PROGRESS,
    VERIFY_FAILED,
    FeatureStateMachine,
)
from client import ANALYSIS_TOOLS, CODING_TOOLS, VERIFICATION_TOOLS
from prompts import CODING_PROMPT, VERIFICATION_PROMPT

from conftest import BLOCK, SetStatus, wait_until


@pytest.fixture
def registry():
    return ExecutionRegistry()


@pytest.fixture
def machine(registry, provider, settings):
    return FeatureStateMachine(registry, provider, settings)


def load(project_dir, feature_id="f1"):
    return get_feature(project_dir, feature_id)


# =============================================================================
# implement_feature
# =============================================================================

class TestImplementFeature:
    @pytest.mark.asyncio
    async def test_requires_registration(self, machine, project_dir):
        with pytest.raises(ExecutionNotRegisteredError):
            await machine.implement_feature(load(project_dir), str(project_dir))

    @pytest.mark.asyncio
    async def test_passes_when_delegate_sets_verified(
        self, machine, registry, provider, project_dir, recorder
    ):
        provider.add_script(
            TextMessage("Implementing now"),
            ToolUseMessage("Write", {"file_path": "app.py"}),
            SetStatus("f1", "verified"),
        )

        async with registry.claim("f1", str(project_dir)):
            result = await machine.implement_feature(load(project_dir), str(project_dir), recorder)

        assert result.passes is True
        assert result.aborted is False
        assert result.message == "Implementing now"
        assert load(project_dir).is_verified

    @pytest.mark.asyncio
    async def test_phase_order_and_log(self, machine, registry, provider, project_dir, recorder):
        provider.add_script(
            TextMessage("Looking around\n"),
            ToolUseMessage("Read", {"file_path": "a.py"}),
            ToolUseMessage("Edit", {"file_path": "a.py"}),
        )

        async with registry.claim("f1", str(project_dir)):
            result = await machine.implement_feature(load(project_dir), str(project_dir), recorder)

        phases = [e["phase"] for e in recorder.of_type("auto_mode_phase")]
        assert phases == ["planning", "action", "verification"]
        assert recorder.of_type("auto_mode_progress")[0]["content"] == PLANNING_PROGRESS
        assert [e["tool"] for e in recorder.of_type("auto_mode_tool")] == ["Read", "Edit"]

        log = execution_log.read(project_dir, "f1")
        assert log.index("📋 Planning implementation for: Implement f1") < log.index(
            "⚡ Executing implementation for: Implement f1"
        )
        assert log.count(IMPLEMENTATION_STARTED) == 1
        assert "🔧 Tool: Read" in log
        assert "🔧 Tool: Edit" in log
        assert log.endswith(IMPLEMENT_FAILED)
        assert result.passes is False

    @pytest.mark.asyncio
    async def test_delegate_text_is_not_trusted(self, machine, registry, provider, project_dir):
        provider.add_script(TextMessage("All tests pass. Feature verified!"))

        async with registry.claim("f1", str(project_dir)):
            result = await machine.implement_feature(load(project_dir), str(project_dir))

        assert result.passes is False
        assert load(project_dir).status == "backlog"

    @pytest.mark.asyncio
    async def test_other_messages_ignored(self, machine, registry, provider, project_dir, recorder):
        provider.add_script(OtherMessage("ResultMessage"), SetStatus("f1", "verified"))

        async with registry.claim("f1", str(project_dir)):
            result = await machine.implement_feature(load(project_dir), str(project_dir), recorder)

        assert result.passes is True
        assert result.message == ""

    @pytest.mark.asyncio
    async def test_status_tool_discards_earlier_log(
        self, machine, registry, provider, project_dir
    ):
        provider.add_script(TextMessage("early work\n"), SetStatus("f1", "verified"))

        async with registry.claim("f1", str(project_dir)):
            result = await machine.implement_feature(load(project_dir), str(project_dir))

        # Marking verified deletes the log; only the verification lines follow
        log = execution_log.read(project_dir, "f1")
        assert result.passes is True
        assert "early work" not in log
        assert log.endswith(IMPLEMENT_PASSED)

    @pytest.mark.asyncio
    async def test_coding_options(self, machine, registry, provider, project_dir, settings):
        async with registry.claim("f1", str(project_dir)):
            await machine.implement_feature(load(project_dir), str(project_dir))

        prompt, options = provider.calls[0]
        assert "ID: f1" in prompt
        assert options.system_prompt == CODING_PROMPT
        assert options.allowed_tools == CODING_TOOLS
        assert options.model == settings.model
        assert options.max_turns == settings.max_turns
        assert options.cwd == str(project_dir)
        assert options.status_updater is not None
        assert options.cancellation_token is not None

    @pytest.mark.asyncio
    async def test_stream_cleared_after_pass(self, machine, registry, project_dir):
        async with registry.claim("f1", str(project_dir)) as execution:
            await machine.implement_feature(load(project_dir), str(project_dir))
            assert execution.cancellation_token is None
            assert execution.active_stream is None

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, machine, registry, provider, project_dir, recorder):
        provider.add_script(TextMessage("partial work"), BLOCK)

        async with registry.claim("f1", str(project_dir)) as execution:
            task = asyncio.create_task(
                machine.implement_feature(load(project_dir), str(project_dir), recorder)
            )
            await wait_until(
                lambda: "partial work" in (execution_log.read(project_dir, "f1") or "")
            )
            assert registry.cancel("f1") is True
            result = await task

        assert result.passes is False
        assert result.aborted is True
        assert result.message == ABORTED_IMPLEMENT
        assert "partial work" in execution_log.read(project_dir, "f1")

    @pytest.mark.asyncio
    async def test_delegate_error_propagates(self, machine, registry, provider, project_dir):
        provider.add_script(TextMessage("starting"), RuntimeError("CLI exited"))

        async with registry.claim("f1", str(project_dir)) as execution:
            with pytest.raises(RuntimeError, match="CLI exited"):
                await machine.implement_feature(load(project_dir), str(project_dir))
            assert execution.cancellation_token is None

    @pytest.mark.asyncio
    async def test_stops_consuming_when_unregistered(
        self, machine, registry, provider, project_dir
    ):
        provider.add_script(
            TextMessage("before stop\n"),
            lambda: registry.unregister("f1"),
            TextMessage("after stop\n"),
        )

        async with registry.claim("f1", str(project_dir)):
            result = await machine.implement_feature(load(project_dir), str(project_dir))

        log = execution_log.read(project_dir, "f1")
        assert "before stop" in log
        assert "after stop" not in log
        assert result.passes is False

    @pytest.mark.asyncio
    async def test_delegate_not_started_after_stop_during_planning(
        self, machine, registry, provider, project_dir
    ):
        def stop_on_action(event):
            if event.get("phase") == "action":
                registry.unregister("f1")

        async with registry.claim("f1", str(project_dir)):
            result = await machine.implement_feature(
                load(project_dir), str(project_dir), stop_on_action
            )

        assert provider.calls == []
        assert result.passes is False
        assert result.aborted is True
        assert result.message == ABORTED_IMPLEMENT

    @pytest.mark.asyncio
    async def test_engine_lines_flagged_as_status(
        self, machine, registry, provider, project_dir, recorder
    ):
        provider.add_script(TextMessage("delegate chatter"), SetStatus("f1", "verified"))

        async with registry.claim("f1", str(project_dir)):
            await machine.implement_feature(load(project_dir), str(project_dir), recorder)

        progress = recorder.of_type("auto_mode_progress")
        delegate = [e for e in progress if e["content"] == "delegate chatter"]
        assert delegate and "statusLine" not in delegate[0]
        outcome = progress[-1]
        assert outcome["content"] == IMPLEMENT_PASSED
        assert outcome["statusLine"] is True


# =============================================================================
# verify_feature_tests / resume_with_context
# =============================================================================

class TestVerifyAndResume:
    @pytest.mark.asyncio
    async def test_verification_options(self, machine, registry, provider, project_dir, recorder):
        async with registry.claim("f1", str(project_dir)):
            result = await machine.verify_feature_tests(
                load(project_dir), str(project_dir), recorder
            )

        _, options = provider.calls[0]
        assert options.system_prompt == VERIFICATION_PROMPT
        assert options.allowed_tools == VERIFICATION_TOOLS
        assert "WebSearch" not in options.allowed_tools
        assert result.passes is False
        assert execution_log.read(project_dir, "f1").endswith(VERIFY_FAILED)
        assert [e["phase"] for e in recorder.of_type("auto_mode_phase")] == ["verification"]

    @pytest.mark.asyncio
    async def test_verification_cancel(self, machine, registry, provider, project_dir):
        provider.add_script(BLOCK)

        async with registry.claim("f1", str(project_dir)) as execution:
            task = asyncio.create_task(
                machine.verify_feature_tests(load(project_dir), str(project_dir))
            )
            await wait_until(lambda: execution.cancellation_token is not None)
            registry.cancel("f1")
            result = await task

        assert result.message == ABORTED_VERIFY
        assert result.aborted is True

    @pytest.mark.asyncio
    async def test_resume_carries_context(self, machine, registry, provider, project_dir):
        provider.add_script(SetStatus("f1", "verified"))

        async with registry.claim("f1", str(project_dir)):
            result = await machine.resume_with_context(
                load(project_dir), str(project_dir), previous_context="Wrote app.py"
            )

        prompt, options = provider.calls[0]
        assert "Wrote app.py" in prompt
        assert options.system_prompt == VERIFICATION_PROMPT
        assert options.allowed_tools == CODING_TOOLS
        assert result.passes is True

    @pytest.mark.asyncio
    async def test_resume_without_context(self, machine, registry, provider, project_dir):
        async with registry.claim("f1", str(project_dir)):
            await machine.resume_with_context(load(project_dir), str(project_dir))

        prompt, _ = provider.calls[0]
        assert "No previous context available - this is a fresh start." in prompt


# =============================================================================
# run_project_analysis
# =============================================================================

class TestProjectAnalysis:
    @pytest.mark.asyncio
    async def test_read_only_analysis(self, machine, registry, provider, project_dir, settings, recorder):
        provider.add_script(TextMessage("Python project"), ToolUseMessage("Glob", {"pattern": "*"}))

        async with registry.claim("project-analysis-1", str(project_dir), kind="analysis"):
            result = await machine.run_project_analysis(
                "project-analysis-1", str(project_dir), recorder
            )

        _, options = provider.calls[0]
        assert options.allowed_tools == ANALYSIS_TOOLS
        assert options.status_updater is None
        assert options.model == settings.analysis_model
        assert options.max_turns == settings.analysis_max_turns
        assert result.passes is True
        assert execution_log.read(project_dir, "project-analysis-1") is None
        phases = [e["phase"] for e in recorder.of_type("auto_mode_phase")]
        assert phases == ["planning", "verification"]
