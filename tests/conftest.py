"""
Pytest configuration and fixtures for Agent Conductor tests.
"""

import asyncio
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from agent_conductor.models.core import CapabilityProfile, LaunchResult, TextFragment, ToolStart
from agent_conductor.orchestration.registry import ProfileRegistry
from agent_conductor.runtime.launcher import DispatchHandle, LaunchOptions, Launcher
from agent_conductor.utils.config import LauncherConfig
from agent_conductor.utils.error_handler import error_handler
from agent_conductor.utils.logging import configure_logging


# A stand-in child agent. It follows the invocation contract (task is the
# last argument) and reacts to keywords in the task text.
FAKE_AGENT_SCRIPT = r'''
import json
import os
import subprocess
import sys
import time

args = sys.argv[1:]
task = args[-1] if args else ""


def emit(record):
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def text(delta):
    emit({"type": "message_update",
          "assistantMessageEvent": {"type": "text_delta", "delta": delta}})


if "--session" in args:
    with open(args[args.index("--session") + 1], "a", encoding="utf-8") as fh:
        fh.write(json.dumps({"task": task}) + "\n")

if "noise" in task:
    print("booting agent...", flush=True)

if "background" in task:
    # inherits stdout and stderr, like a server started from a bash tool
    subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])

emit({"type": "tool_execution_start", "toolName": "read"})

if "argv" in task:
    text(json.dumps(args))
elif "fail" in task:
    text("partial work")
    sys.stderr.write("boom: something broke\n")
    sys.stderr.flush()
    sys.exit(3)
elif "hang up" in task:
    os.close(1)
    time.sleep(30)
elif "slow" in task:
    text("working")
    time.sleep(30)
else:
    record = json.dumps({"type": "text", "delta": "done: " + task}) + "\n"
    half = len(record) // 2
    sys.stdout.write(record[:half])
    sys.stdout.flush()
    time.sleep(0.05)
    sys.stdout.write(record[half:])
    sys.stdout.flush()

if "status" in task:
    emit({"type": "agent_end", "exitStatus": 2})
else:
    emit({"type": "agent_end"})
'''


@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    """Route structured logs through stdlib logging so stdout stays clean."""
    configure_logging(level="WARNING")


@pytest.fixture(autouse=True)
def reset_error_stats():
    """Keep the global error handler's statistics per-test."""
    error_handler.reset_error_stats()
    yield
    error_handler.reset_error_stats()


@pytest.fixture
def scout_profile() -> CapabilityProfile:
    """Read-only reconnaissance role."""
    return CapabilityProfile(
        name="scout",
        description="Read-only codebase reconnaissance",
        capability_set=["read", "grep", "find", "ls"],
        instruction_text="You are a scout. Investigate and report, never modify files."
    )


@pytest.fixture
def builder_profile() -> CapabilityProfile:
    """Read-write implementation role that replaces the child's identity."""
    return CapabilityProfile(
        name="builder",
        description="Implements changes",
        capability_set=["read", "edit", "write", "bash"],
        instruction_text="You are a builder. Make the requested change and summarize it.",
        full_identity_replace=True
    )


@pytest.fixture
def registry(scout_profile, builder_profile) -> ProfileRegistry:
    return ProfileRegistry([scout_profile, builder_profile])


@pytest.fixture
def fake_agent(tmp_path) -> Path:
    """Write the fake child agent script and return its path."""
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT_SCRIPT, encoding="utf-8")
    return script


@pytest.fixture
def launcher_config(tmp_path, fake_agent) -> LauncherConfig:
    """Launcher settings that run the fake agent with the current interpreter."""
    return LauncherConfig(
        executable=[sys.executable, str(fake_agent)],
        fallback_model="test-model",
        session_dir=tmp_path / "sessions",
        kill_grace_seconds=1.0,
        pipe_drain_seconds=0.5,
        read_chunk_bytes=64
    )


class ScriptedHandle(DispatchHandle):
    """Dispatch handle completed by the test instead of a process."""

    def __init__(self, role_name: str):
        super().__init__(role_name)
        self.killed = False

    def kill(self) -> bool:
        if self.done:
            return False
        self.killed = True
        self._resolve(LaunchResult(
            succeeded=False,
            cancelled=True,
            elapsed_ms=self.elapsed_ms(),
            diagnostic="Agent was cancelled by the operator"
        ))
        return True

    def emit(self, event):
        self._emit(event)

    def finish(self, output: str = "", succeeded: bool = True, exit_code: Optional[int] = 0,
               diagnostic: Optional[str] = None):
        if output:
            self.emit(TextFragment(text=output))
        self._resolve(LaunchResult(
            output_text=output,
            succeeded=succeeded,
            exit_code=exit_code,
            elapsed_ms=self.elapsed_ms(),
            diagnostic=diagnostic
        ))


Output = Union[str, Callable[[str], str]]


class FakeLauncher(Launcher):
    """
    Launcher that records launches and completes them on the next loop turn.

    Roles listed in ``hold`` stay running until the test finishes or kills
    their handle.
    """

    def __init__(self, outputs: Optional[Dict[str, Output]] = None,
                 failures: Optional[Dict[str, str]] = None, hold=()):
        self.outputs = outputs or {}
        self.failures = failures or {}
        self.hold = set(hold)
        self.launches: List[Tuple[str, str, LaunchOptions]] = []
        self.handles: List[ScriptedHandle] = []

    def launch(self, profile, task, options=None):
        options = options or LaunchOptions()
        handle = ScriptedHandle(profile.name)
        self.launches.append((profile.name, task, options))
        self.handles.append(handle)
        if profile.name not in self.hold:
            asyncio.get_running_loop().call_soon(self._complete, handle, profile.name, task)
        return handle

    def handle_for(self, role_name: str) -> ScriptedHandle:
        return [handle for handle in self.handles if handle.role_name == role_name][-1]

    def _complete(self, handle: ScriptedHandle, role_name: str, task: str):
        handle.emit(ToolStart(name="read"))
        if role_name in self.failures:
            handle.finish(succeeded=False, exit_code=1, diagnostic=self.failures[role_name])
            return
        output = self.outputs.get(role_name, f"{role_name} handled: {task}")
        if callable(output):
            output = output(task)
        handle.finish(output)


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def launcher_factory():
    """Build FakeLaunchers with custom outputs, failures or held roles."""
    return FakeLauncher
