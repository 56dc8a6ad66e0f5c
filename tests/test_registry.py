"""
Execution Registry Tests
========================

At most one execution per feature id; cancellation and hard stop.
"""

import pytest

from autoforge.cancellation import CancellationToken
from autoforge.errors import AlreadyRunningError
from autoforge.registry import Execution, ExecutionRegistry


def make_execution(feature_id="f1", kind="run"):
    return Execution(feature_id=feature_id, project_path="/tmp/project", kind=kind)


class TestRegister:
    def test_register_and_get(self):
        registry = ExecutionRegistry()
        execution = registry.register("f1", make_execution())

        assert registry.get("f1") is execution
        assert "f1" in registry
        assert len(registry) == 1
        assert registry.feature_ids() == ["f1"]

    def test_duplicate_register_raises(self):
        registry = ExecutionRegistry()
        first = registry.register("f1", make_execution())

        with pytest.raises(AlreadyRunningError) as exc_info:
            registry.register("f1", make_execution())

        assert exc_info.value.feature_id == "f1"
        assert registry.get("f1") is first

    def test_unregister_is_idempotent(self):
        registry = ExecutionRegistry()
        registry.register("f1", make_execution())

        registry.unregister("f1")
        registry.unregister("f1")

        assert "f1" not in registry

    def test_to_dict(self):
        data = make_execution(kind="verify").to_dict()

        assert data["feature_id"] == "f1"
        assert data["kind"] == "verify"
        assert data["streaming"] is False
        assert "started_at" in data

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError, match="Unknown execution kind"):
            make_execution(kind="deploy")


class TestCancel:
    def test_cancel_unknown_returns_false(self):
        assert ExecutionRegistry().cancel("f1") is False

    def test_cancel_without_stream_returns_false(self):
        registry = ExecutionRegistry()
        registry.register("f1", make_execution())

        assert registry.cancel("f1") is False

    def test_cancel_triggers_token(self):
        registry = ExecutionRegistry()
        execution = registry.register("f1", make_execution())
        token = CancellationToken()
        execution.cancellation_token = token

        assert registry.cancel("f1") is True
        assert token.cancelled
        # Cancel does not unregister
        assert "f1" in registry

    def test_stop_all_cancels_and_clears(self):
        registry = ExecutionRegistry()
        streaming = registry.register("f1", make_execution("f1"))
        streaming.cancellation_token = CancellationToken()
        registry.register("f2", make_execution("f2"))

        stopped = registry.stop_all()

        assert sorted(stopped) == ["f1", "f2"]
        assert len(registry) == 0
        assert streaming.cancellation_token.cancelled
        assert streaming.cancellation_token.reason == "Auto mode stopped"


# =============================================================================
# claim()
# =============================================================================

class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_releases_on_exit(self):
        registry = ExecutionRegistry()

        async with registry.claim("f1", "/tmp/project", kind="resume") as execution:
            assert registry.get("f1") is execution
            assert execution.kind == "resume"

        assert "f1" not in registry

    @pytest.mark.asyncio
    async def test_claim_releases_on_error(self):
        registry = ExecutionRegistry()

        with pytest.raises(RuntimeError):
            async with registry.claim("f1", "/tmp/project"):
                raise RuntimeError("boom")

        assert "f1" not in registry

    @pytest.mark.asyncio
    async def test_claim_conflict(self):
        registry = ExecutionRegistry()

        async with registry.claim("f1", "/tmp/project"):
            with pytest.raises(AlreadyRunningError):
                async with registry.claim("f1", "/tmp/project"):
                    pass
            assert "f1" in registry

    @pytest.mark.asyncio
    async def test_claim_keeps_newer_entry(self):
        registry = ExecutionRegistry()

        async with registry.claim("f1", "/tmp/project"):
            registry.stop_all()
            newer = registry.register("f1", make_execution())

        assert registry.get("f1") is newer
