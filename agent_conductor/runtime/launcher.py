"""
Process launcher for child agents.

Each dispatch runs as its own OS process. The launcher builds the child's
command line from a capability profile, starts it on the running event loop,
feeds its stdout through an EventStreamDecoder and resolves the handle's
completion slot exactly once with a LaunchResult.
"""

import asyncio
import os
import re
import signal
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..models.core import (
    CapabilityProfile, Completed, LaunchResult, ProgressEvent, TextFragment
)
from ..utils.config import LauncherConfig
from ..utils.logging import LoggerMixin, bind_dispatch, get_logger
from .decoder import EventStreamDecoder

logger = get_logger(__name__)

EventCallback = Callable[[ProgressEvent], None]

_EXIT_POLL_SECONDS = 0.05


class LaunchOptions(BaseModel):
    """Per-dispatch launch options."""
    continuation_channel: Optional[str] = None
    model: Optional[str] = None
    cwd: Optional[Path] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    correlation_id: Optional[str] = None


class ContinuationStore:
    """Maps continuation channels to persisted conversation record files."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, channel: str) -> Path:
        sanitized = re.sub(r"[^A-Za-z0-9_.-]+", "_", channel.strip()).strip("_") or "default"
        return self.root / f"{sanitized}.jsonl"

    def has_record(self, channel: str) -> bool:
        path = self.path_for(channel)
        return path.is_file() and path.stat().st_size > 0

    def prepare(self, channel: str) -> Tuple[Path, bool]:
        """Ensure the store exists; return the record path and whether a prior record exists."""
        self.root.mkdir(parents=True, exist_ok=True)
        return self.path_for(channel), self.has_record(channel)

    def clear(self, channel: str) -> bool:
        path = self.path_for(channel)
        if path.exists():
            path.unlink()
            return True
        return False


class DispatchHandle(ABC):
    """
    Handle to one in-flight dispatch.

    Exposes a completion slot (resolved exactly once), a progress event
    subscription and kill. Concrete subclasses decide how the work runs.
    """

    def __init__(self, role_name: str, correlation_id: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.role_name = role_name
        self.correlation_id = correlation_id or uuid.uuid4().hex[:12]
        self._clock = clock
        self.started_at = clock()
        self._subscribers: List[EventCallback] = []
        self._completion: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._completion.done()

    def elapsed_ms(self) -> int:
        return max(0, int((self._clock() - self.started_at) * 1000))

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a progress event callback; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def add_done_callback(self, callback: Callable[["DispatchHandle"], None]):
        self._completion.add_done_callback(lambda _future: callback(self))

    async def wait(self) -> LaunchResult:
        """Await the completion slot. Cancelling the waiter does not cancel the dispatch."""
        return await asyncio.shield(self._completion)

    def result(self) -> Optional[LaunchResult]:
        """The resolved result, or None while still running."""
        if not self._completion.done():
            return None
        return self._completion.result()

    def _emit(self, event: ProgressEvent):
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error("Progress subscriber failed", role=self.role_name, error=str(e))

    def _resolve(self, result: LaunchResult) -> bool:
        """Resolve the completion slot; later calls are ignored."""
        if self._completion.done():
            return False
        self._completion.set_result(result)
        return True

    @abstractmethod
    def kill(self) -> bool:
        """Request termination. Returns False when the dispatch already finished."""


class ProcessHandle(DispatchHandle):
    """
    Dispatch handle backed by an asyncio subprocess.

    The child leads its own process group, so termination signals reach any
    background processes it started. The handle resolves once the child
    itself has exited; descendants that keep its output pipes open are
    stopped after a short drain period.
    """

    def __init__(self, role_name: str, command: List[str], config: LauncherConfig,
                 options: LaunchOptions):
        super().__init__(role_name, options.correlation_id)
        self.command = command
        self.config = config
        self.options = options
        self.timeout_seconds = options.timeout_seconds or config.dispatch_timeout_seconds
        self.process: Optional[asyncio.subprocess.Process] = None
        self.logger = bind_dispatch(get_logger(__name__), role_name, self.correlation_id)
        self.decoder = EventStreamDecoder(on_event=self._on_decoded, stream_name=f"{role_name}:stdout")
        self._text_parts: List[str] = []
        self._stderr_tail = ""
        self._completed_status: Optional[int] = None
        self._kill_requested = False
        self._timed_out = False
        self._task: Optional[asyncio.Task] = None
        self._kill_task: Optional[asyncio.Task] = None

    def start(self):
        self._task = asyncio.get_running_loop().create_task(self._run())

    @property
    def output_text(self) -> str:
        return "".join(self._text_parts)

    def kill(self) -> bool:
        if self.done:
            return False
        self._kill_requested = True
        if self.process is not None and self._kill_task is None:
            self._kill_task = asyncio.get_running_loop().create_task(self._terminate())
        self.logger.info("Kill requested")
        return True

    def _on_decoded(self, event: ProgressEvent):
        if isinstance(event, TextFragment):
            self._text_parts.append(event.text)
        elif isinstance(event, Completed):
            self._completed_status = event.exit_status
        self._emit(event)

    async def _run(self):
        readers: List[asyncio.Task] = []
        try:
            try:
                self.process = await asyncio.create_subprocess_exec(
                    *self.command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(self.options.cwd) if self.options.cwd else None,
                    start_new_session=True,
                )
            except (OSError, ValueError) as e:
                self.decoder.finish()
                self.logger.error("Failed to start agent process", executable=self.command[0],
                                  error=str(e))
                self._resolve(LaunchResult(
                    succeeded=False,
                    elapsed_ms=self.elapsed_ms(),
                    diagnostic=f"Failed to start agent process '{self.command[0]}': {e}"
                ))
                return

            self.logger.info("Agent process started", pid=self.process.pid)

            if self._kill_requested and self._kill_task is None:
                self._kill_task = asyncio.get_running_loop().create_task(self._terminate())

            loop = asyncio.get_running_loop()
            readers = [loop.create_task(self._pump_stdout()), loop.create_task(self._collect_stderr())]

            # the deadline covers the whole run, not just stdout
            try:
                if self.timeout_seconds:
                    await asyncio.wait_for(self._wait_exit(), timeout=self.timeout_seconds)
                else:
                    await self._wait_exit()
            except asyncio.TimeoutError:
                self._timed_out = True
                self.logger.warning("Agent process timed out", timeout_seconds=self.timeout_seconds)
                await self._terminate()

            await self._drain(readers)
            for reader in readers:
                if not reader.cancelled() and reader.exception() is not None:
                    raise reader.exception()

            self.decoder.finish()
            self._resolve(self._build_result(self.process.returncode, self._stderr_tail))

        except asyncio.CancelledError:
            await self._force_stop(readers)
            self._resolve(LaunchResult(
                output_text=self.output_text,
                succeeded=False,
                elapsed_ms=self.elapsed_ms(),
                cancelled=True,
                diagnostic="Dispatch cancelled"
            ))
            raise
        except Exception as e:
            self.logger.error("Agent stream failed", error=str(e))
            await self._force_stop(readers)
            self._resolve(LaunchResult(
                output_text=self.output_text,
                succeeded=False,
                elapsed_ms=self.elapsed_ms(),
                exit_code=self.process.returncode if self.process else None,
                diagnostic=f"Agent output stream failed: {e}"
            ))

    async def _wait_exit(self) -> int:
        """Return once the child itself has exited, even if descendants still hold its pipes."""
        assert self.process is not None
        while self.process.returncode is None:
            await asyncio.sleep(_EXIT_POLL_SECONDS)
        return self.process.returncode

    async def _pump_stdout(self):
        assert self.process is not None and self.process.stdout is not None
        while True:
            chunk = await self.process.stdout.read(self.config.read_chunk_bytes)
            if not chunk:
                break
            self.decoder.feed(chunk)

    async def _collect_stderr(self):
        if self.process is None or self.process.stderr is None:
            return
        limit = self.config.stderr_tail_chars
        while True:
            chunk = await self.process.stderr.read(self.config.read_chunk_bytes)
            if not chunk:
                break
            self._stderr_tail = (self._stderr_tail + chunk.decode(errors="replace"))[-limit:] if limit else ""

    async def _drain(self, readers: List[asyncio.Task]):
        """Let the readers reach EOF after the child exits, then stop whatever still holds the pipes."""
        _done, pending = await asyncio.wait(readers, timeout=self.config.pipe_drain_seconds)
        if not pending:
            return
        self.logger.warning("Agent left processes holding its output pipes", pid=self.process.pid)
        self._signal_group(signal.SIGKILL)
        _done, pending = await asyncio.wait(pending, timeout=self.config.pipe_drain_seconds)
        for reader in pending:
            reader.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def _signal_group(self, sig: signal.Signals) -> bool:
        """Signal the child's process group. The group outlives the child while descendants remain."""
        if self.process is None:
            return False
        try:
            os.killpg(self.process.pid, sig)
            return True
        except (ProcessLookupError, PermissionError):
            return False

    async def _terminate(self):
        """SIGTERM to the process group, then SIGKILL once the grace period expires."""
        proc = self.process
        if proc is None or proc.returncode is not None:
            return
        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._wait_exit(), timeout=self.config.kill_grace_seconds)
        except asyncio.TimeoutError:
            self._signal_group(signal.SIGKILL)
            await self._wait_exit()

    async def _force_stop(self, readers: List[asyncio.Task]):
        self._signal_group(signal.SIGKILL)
        for reader in readers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
        self.decoder.finish()

    def _build_result(self, returncode: int, stderr_text: str) -> LaunchResult:
        elapsed = self.elapsed_ms()
        output = self.output_text
        stderr_tail = stderr_text.strip()

        if self._timed_out:
            return LaunchResult(
                output_text=output,
                succeeded=False,
                elapsed_ms=elapsed,
                exit_code=returncode,
                timed_out=True,
                diagnostic=f"Agent timed out after {self.timeout_seconds:g}s"
            )

        if self._kill_requested:
            return LaunchResult(
                output_text=output,
                succeeded=False,
                elapsed_ms=elapsed,
                exit_code=returncode,
                cancelled=True,
                diagnostic="Agent was cancelled by the operator"
            )

        reported_ok = self._completed_status in (None, 0)
        if returncode == 0 and reported_ok:
            return LaunchResult(output_text=output, succeeded=True, elapsed_ms=elapsed, exit_code=0)

        if returncode != 0:
            diagnostic = f"Agent process exited with code {returncode}"
        else:
            diagnostic = f"Agent reported exit status {self._completed_status}"
        if stderr_tail:
            diagnostic += f"\n{stderr_tail}"

        return LaunchResult(
            output_text=output,
            succeeded=False,
            elapsed_ms=elapsed,
            exit_code=returncode,
            diagnostic=diagnostic
        )


class Launcher(ABC):
    """Anything that can start a dispatch for a profile and hand back a handle."""

    @abstractmethod
    def launch(self, profile: CapabilityProfile, task: str,
               options: Optional[LaunchOptions] = None) -> DispatchHandle:
        """Start a dispatch. Must not raise; failures resolve the handle."""


class ProcessLauncher(Launcher, LoggerMixin):
    """Starts one child agent process per dispatch."""

    def __init__(self, config: Optional[LauncherConfig] = None,
                 continuation_store: Optional[ContinuationStore] = None):
        self.config = config or LauncherConfig()
        self.continuation_store = continuation_store or ContinuationStore(self.config.session_dir)
        self._active: Dict[str, DispatchHandle] = {}

    def resolve_model(self, profile: CapabilityProfile, options: LaunchOptions) -> str:
        """Launch option, then profile, then the parent's session model, then the fallback."""
        return options.model or profile.model or self.config.model or self.config.fallback_model

    def build_command(self, profile: CapabilityProfile, task: str,
                      options: Optional[LaunchOptions] = None) -> List[str]:
        """
        Build the child's argument vector.

        Args:
            profile: Role being launched
            task: Task text, passed as the final positional argument
            options: Launch options (continuation channel, model override)

        Returns:
            List[str]: Command and arguments
        """
        options = options or LaunchOptions()
        command = list(self.config.executable)
        command += ["--mode", "json", "-p"]
        if self.config.suppress_extensions:
            command.append("--no-extensions")
        command += ["--model", self.resolve_model(profile, options)]

        if profile.capability_set:
            command += ["--tools", ",".join(profile.capability_set)]
        else:
            command.append("--no-tools")

        if profile.instruction_text:
            flag = "--system-prompt" if profile.full_identity_replace else "--append-system-prompt"
            command += [flag, profile.instruction_text]

        if options.continuation_channel:
            record_path, has_record = self.continuation_store.prepare(options.continuation_channel)
            command += ["--session", str(record_path)]
            if has_record:
                command.append("--continue")
        else:
            command.append("--no-session")

        command.append(task)
        return command

    def launch(self, profile: CapabilityProfile, task: str,
               options: Optional[LaunchOptions] = None) -> DispatchHandle:
        """
        Start a child agent for a profile.

        Must be called from a coroutine on the running event loop. Never
        raises: if the process cannot be built or started, the returned
        handle resolves with succeeded=False and a diagnostic.
        """
        options = options or LaunchOptions()
        build_error: Optional[OSError] = None
        try:
            command = self.build_command(profile, task, options)
        except OSError as e:
            command = list(self.config.executable)
            build_error = e

        handle = ProcessHandle(profile.name, command, self.config, options)
        self._active[handle.correlation_id] = handle
        handle.add_done_callback(lambda h: self._active.pop(h.correlation_id, None))

        if build_error is not None:
            self.log_operation_error("launch", build_error, role=profile.name)
            handle._resolve(LaunchResult(
                succeeded=False,
                diagnostic=f"Could not prepare continuation record: {build_error}"
            ))
            return handle

        self.log_operation_start("launch", role=profile.name, correlation_id=handle.correlation_id,
                                 tools=profile.capability_set,
                                 continuation=options.continuation_channel)
        handle.start()
        return handle

    def active_handles(self) -> List[DispatchHandle]:
        return list(self._active.values())

    async def kill_all(self) -> int:
        """Kill every in-flight dispatch and wait for their results."""
        handles = self.active_handles()
        for handle in handles:
            handle.kill()
        if handles:
            await asyncio.gather(*(handle.wait() for handle in handles))
        return len(handles)
