"""
Autonomous Loop Tests
=====================

Tests cover:
1. Completion when nothing is eligible (including a missing feature list)
2. Features implemented in file order, verified or returned to backlog
3. Hard stop: loop token and every execution cancelled, registry emptied
4. Iteration errors reported and retried
5. A second start rejected while the loop runs
"""

import asyncio

import pytest

from autoforge.errors import AlreadyRunningError
from autoforge.feature_store import load_features
from autoforge.registry import Execution
from autoforge.service import AutoModeService

from conftest import BLOCK, SetStatus, feature_record, wait_until, write_features


@pytest.fixture
def service(provider, settings):
    return AutoModeService(provider=provider, settings=settings)


class TestLoopCompletion:
    @pytest.mark.asyncio
    async def test_missing_feature_list_completes(self, service, tmp_path, recorder):
        await service.start(str(tmp_path), recorder)
        assert await service.loop.join(timeout=2)

        assert recorder.types() == ["auto_mode_complete"]
        assert recorder.events[0]["message"] == "All features completed!"
        assert service.loop.running is False

    @pytest.mark.asyncio
    async def test_all_verified_completes(self, service, provider, tmp_path, recorder):
        write_features(tmp_path, [feature_record("f1", status="verified")])

        await service.start(str(tmp_path), recorder)
        await service.loop.join(timeout=2)

        assert recorder.types() == ["auto_mode_complete"]
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_implements_in_file_order(self, service, provider, project_dir, recorder):
        provider.add_script(SetStatus("f1", "verified"))
        provider.add_script(SetStatus("f2", "verified"))

        await service.start(str(project_dir), recorder)
        assert await service.loop.join(timeout=2)

        assert [f.status for f in load_features(project_dir)] == ["verified", "verified"]
        starts = [e["featureId"] for e in recorder.of_type("auto_mode_feature_start")]
        assert starts == ["f1", "f2"]
        completes = recorder.of_type("auto_mode_feature_complete")
        assert [e["passes"] for e in completes] == [True, True]
        assert recorder.types()[-1] == "auto_mode_complete"
        assert len(service.registry) == 0

    @pytest.mark.asyncio
    async def test_failed_feature_returns_to_backlog(self, service, provider, project_dir, recorder):
        # f1 fails once, then both pass on the next iterations
        provider.add_script()
        provider.add_script(SetStatus("f1", "verified"))
        provider.add_script(SetStatus("f2", "verified"))

        await service.start(str(project_dir), recorder)
        assert await service.loop.join(timeout=2)

        starts = [e["featureId"] for e in recorder.of_type("auto_mode_feature_start")]
        assert starts == ["f1", "f1", "f2"]
        assert recorder.of_type("auto_mode_feature_complete")[0]["passes"] is False


class TestLoopControl:
    @pytest.mark.asyncio
    async def test_second_start_rejected(self, service, provider, project_dir):
        provider.add_script(BLOCK)
        await service.start(str(project_dir))

        with pytest.raises(AlreadyRunningError):
            await service.start(str(project_dir))

        await service.shutdown(timeout=2)

    @pytest.mark.asyncio
    async def test_stop_aborts_and_empties_registry(self, service, provider, project_dir, recorder):
        provider.add_script(BLOCK)
        await service.start(str(project_dir), recorder)
        await wait_until(lambda: service.registry.get("f1") is not None
                         and service.registry.get("f1").cancellation_token is not None)

        result = await service.stop()

        assert result == {"success": True, "stopped_features": ["f1"]}
        assert len(service.registry) == 0
        assert service.loop.running is False
        assert await service.loop.join(timeout=2)

        complete = recorder.of_type("auto_mode_feature_complete")
        assert complete == [{
            "type": "auto_mode_feature_complete",
            "featureId": "f1",
            "passes": False,
            "message": "Auto mode aborted",
        }]
        assert [f.status for f in load_features(project_dir)] == ["backlog", "backlog"]
        assert len(provider.calls) == 1
        assert "auto_mode_complete" not in recorder.types()

    @pytest.mark.asyncio
    async def test_status_reflects_loop(self, service, provider, project_dir):
        provider.add_script(BLOCK)
        await service.start(str(project_dir))
        await wait_until(lambda: "f1" in service.registry)

        status = service.get_status()
        assert status.auto_loop_running is True
        assert status.running_features == ["f1"]
        assert status.running_count == 1

        await service.shutdown(timeout=2)
        assert service.get_status().to_dict() == {
            "auto_loop_running": False,
            "running_features": [],
            "running_count": 0,
        }

    @pytest.mark.asyncio
    async def test_restart_after_completion(self, service, tmp_path, recorder):
        await service.start(str(tmp_path), recorder)
        await service.loop.join(timeout=2)

        await service.start(str(tmp_path), recorder)
        await service.loop.join(timeout=2)

        assert recorder.types() == ["auto_mode_complete", "auto_mode_complete"]


class TestLoopErrors:
    @pytest.mark.asyncio
    async def test_iteration_error_reported_and_retried(
        self, service, provider, tmp_path, recorder
    ):
        write_features(tmp_path, [feature_record("f1")])
        provider.add_script(RuntimeError("delegate crashed"))
        provider.add_script(SetStatus("f1", "verified"))

        await service.start(str(tmp_path), recorder)
        assert await service.loop.join(timeout=2)

        errors = recorder.of_type("auto_mode_error")
        assert errors == [{"type": "auto_mode_error", "error": "delegate crashed", "featureId": "f1"}]
        assert load_features(tmp_path)[0].status == "verified"
        assert recorder.types()[-1] == "auto_mode_complete"
        assert len(service.registry) == 0

    @pytest.mark.asyncio
    async def test_skips_feature_claimed_elsewhere(self, service, provider, project_dir, recorder):
        # A direct run holds f1; the loop waits instead of starting a duplicate
        provider.add_script(BLOCK)
        service.registry.register(
            "f1", Execution(feature_id="f1", project_path=str(project_dir), kind="run")
        )

        await service.start(str(project_dir), recorder)
        await asyncio.sleep(0.05)
        assert service.loop.running is True
        await service.shutdown(timeout=2)

        assert provider.calls == []
        assert recorder.of_type("auto_mode_feature_start") == []
