"""
Shared fixtures for the auto mode test suite.

ScriptedProvider stands in for the Claude delegate. Each delegate call plays
the next script from its queue; a script is a list of steps:

- TextMessage / ToolUseMessage / OtherMessage: yielded to the state machine
- SetStatus(feature_id, status): calls the UpdateFeatureStatus side channel,
  like the delegate invoking the tool
- BLOCK: suspends until the call's cancellation token fires
- an Exception instance: raised from the stream
- a plain callable: invoked, for side effects between messages
"""

import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

# Add project root to path
ROOT_DIR = Path(__file__).parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from autoforge.cancellation import iterate_until_cancelled
from autoforge.config import Settings
from autoforge.feature_store import get_feature_list_path
from autoforge.providers.base import BaseProvider, ExecuteOptions


# =============================================================================
# Scripted Provider
# =============================================================================

BLOCK = object()


@dataclass(frozen=True)
class SetStatus:
    feature_id: str
    status: str


class ScriptedProvider(BaseProvider):
    """Provider that replays canned delegate behaviour."""

    def __init__(self, scripts=None):
        self.scripts = list(scripts or [])
        self.calls: list[tuple[str, ExecuteOptions]] = []
        self.tool_results: list[str] = []

    def get_name(self) -> str:
        return "scripted"

    def add_script(self, *steps) -> None:
        self.scripts.append(list(steps))

    async def execute_query(self, prompt, options):
        self.calls.append((prompt, options))
        script = self.scripts.pop(0) if self.scripts else []
        async for message in iterate_until_cancelled(
            self._play(script, options), options.cancellation_token
        ):
            yield message

    async def _play(self, script, options):
        for step in script:
            if step is BLOCK:
                await asyncio.Event().wait()
            elif isinstance(step, SetStatus):
                result = await options.status_updater(step.feature_id, step.status)
                self.tool_results.append(result)
            elif isinstance(step, BaseException):
                raise step
            elif callable(step):
                step()
            else:
                yield step


# =============================================================================
# Event Recording
# =============================================================================

class EventRecorder:
    """Sync event sink that keeps every event in order."""

    def __init__(self):
        self.events: list[dict] = []

    def __call__(self, event: dict) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


def write_features(project_dir: Path, records) -> Path:
    path = get_feature_list_path(project_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(records, indent=2), encoding="utf-8")
    return path


def read_features(project_dir: Path) -> list[dict]:
    return json.loads(get_feature_list_path(project_dir).read_text(encoding="utf-8"))


def feature_record(feature_id: str, status: str = "backlog", **extra) -> dict:
    record = {
        "id": feature_id,
        "category": "core",
        "description": f"Implement {feature_id}",
        "steps": ["Write the code", "Run the tests"],
        "status": status,
    }
    record.update(extra)
    return record


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings():
    """Settings with every delay disabled."""
    return Settings(
        planning_delay_seconds=0,
        loop_delay_seconds=0,
        error_delay_seconds=0,
        max_resume_retries=3,
    )


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def project_dir(tmp_path):
    """Project with two backlog features, f1 and f2."""
    write_features(tmp_path, [feature_record("f1"), feature_record("f2")])
    return tmp_path
