"""
Dispatcher strategy.

The host agent is reduced to a single capability, ``delegate``, and forwards
every piece of work to a named role. Each role runs at most one child at a
time; a second request for a busy role is refused, never queued.
"""

import asyncio
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..models.core import CapabilityResult, DispatchOutcome, DispatchRequest
from ..models.errors import LaunchFailure, RoleBusyError, RoleNotFoundError
from ..runtime.launcher import DispatchHandle, LaunchOptions, Launcher
from ..utils.config import DispatcherConfig
from ..utils.error_handler import error_for_result, error_handler, with_error_handling
from ..utils.logging import LoggerMixin, dispatch_context
from .host import AgentHost, Capability, OrchestrationStrategy
from .registry import ProfileRegistry
from .tracker import UnitOfWorkTracker


DELEGATE_CAPABILITY = "delegate"

DISPATCHER_PREAMBLE = (
    "You are a dispatcher. You cannot read, edit or run anything yourself. "
    "Your only tool is `delegate(role, task)`, which hands a task to a "
    "specialist role and returns that role's final answer."
)

DISPATCHER_RULES = [
    "Pick the role whose tools and description fit the task.",
    "Roles do not see this conversation: give each task complete context.",
    "A role works on one task at a time. If a role is busy, wait for it or pick another role.",
    "Report the roles' results back to the user; do not invent results.",
]


class DispatcherStrategy(OrchestrationStrategy, LoggerMixin):
    """Routes host requests to roles from the profile registry."""

    def __init__(
        self,
        registry: ProfileRegistry,
        launcher: Launcher,
        tracker: Optional[UnitOfWorkTracker] = None,
        config: Optional[DispatcherConfig] = None
    ):
        self.registry = registry
        self.launcher = launcher
        self.tracker = tracker or UnitOfWorkTracker()
        self.config = config or DispatcherConfig()
        self._handles: Dict[str, DispatchHandle] = {}
        self._capability = Capability(
            name=DELEGATE_CAPABILITY,
            description="Delegate a task to a specialist role and return its final output.",
            parameters={
                "type": "object",
                "properties": {
                    "role": {"type": "string", "description": "Name of the role to run"},
                    "task": {"type": "string", "description": "Complete, self-contained task description"},
                },
                "required": ["role", "task"],
            },
            handler=self._handle_delegate
        )

    def capability(self) -> Capability:
        return self._capability

    def unit_ids(self) -> List[str]:
        return self.registry.names()

    def on_session_start(self, host: AgentHost) -> None:
        """Reset every role to Idle and restrict the host to ``delegate``."""
        for profile in self.registry.list():
            if not self.tracker.is_running(profile.name):
                self.tracker.register(profile.name)

        host.register_capability(self._capability)
        host.set_active_tools([DELEGATE_CAPABILITY])
        self.logger.info("Dispatcher attached", roles=self.registry.names())

    def build_instructions(self, default_instructions: str) -> str:
        """
        Dispatcher instructions for the next turn.

        The host's default instructions are discarded. The role catalog is
        read from the registry on every call, and roles registered since the
        last turn get a tracked unit.
        """
        for profile in self.registry.list():
            self.tracker.ensure(profile.name)

        lines = [DISPATCHER_PREAMBLE, "", "Available roles:"]
        profiles = self.registry.list()
        if not profiles:
            lines.append("- (none registered)")
        for profile in profiles:
            tools = ", ".join(profile.capability_set) if profile.capability_set else "no tools"
            entry = f"- {profile.name}"
            if profile.description:
                entry += f": {profile.description}"
            lines.append(f"{entry} (tools: {tools})")

        lines += ["", "Rules:"]
        lines += [f"- {rule}" for rule in DISPATCHER_RULES]
        return "\n".join(lines)

    async def delegate(self, role: str, task: str,
                       timeout_seconds: Optional[float] = None) -> DispatchOutcome:
        """
        Run one task on one role and wait for it.

        Never raises for role lookup, busy roles or child failures; each is
        returned as a tagged outcome.
        """
        try:
            request = DispatchRequest(role_name=role, task_text=task)
            profile = self.registry.lookup(request.role_name)
            self.tracker.begin(profile.name)
        except (RoleNotFoundError, RoleBusyError, ValidationError) as e:
            return error_handler.to_outcome(e, role_name=role)

        options = LaunchOptions(
            continuation_channel=f"role-{profile.name}" if self.config.persist_role_sessions else None,
            timeout_seconds=timeout_seconds,
            correlation_id=request.correlation_id
        )
        try:
            with dispatch_context(profile.name, request.correlation_id):
                handle = self.launcher.launch(profile, request.task_text, options)
        except Exception as e:
            # releases the role if the launcher raises
            error = LaunchFailure(f"Launcher failed for role '{profile.name}': {e}", role_name=profile.name)
            self.tracker.fail(profile.name, error.message)
            return error_handler.to_outcome(error, role_name=profile.name)
        self._handles[profile.name] = handle
        unsubscribe = handle.subscribe(lambda event: self.tracker.apply_event(profile.name, event))
        # completes the unit even if the awaiting coroutine goes away
        handle.add_done_callback(lambda h: self.tracker.complete(profile.name, h.result()))

        try:
            result = await handle.wait()
        finally:
            unsubscribe()
            if self._handles.get(profile.name) is handle:
                del self._handles[profile.name]

        self.tracker.complete(profile.name, result)

        if result.succeeded:
            self.logger.info("Delegation finished", role=profile.name, elapsed_ms=result.elapsed_ms)
            return DispatchOutcome.succeeded(
                result.output_text.strip(),
                role_name=profile.name,
                elapsed_ms=result.elapsed_ms
            )

        return error_handler.to_outcome(
            error_for_result(result, profile.name),
            role_name=profile.name,
            elapsed_ms=result.elapsed_ms,
            output_text=result.output_text
        )

    @with_error_handling(DELEGATE_CAPABILITY)
    async def _handle_delegate(self, role: str, task: str) -> CapabilityResult:
        outcome = await self.delegate(role, task)
        return outcome.to_capability_result()

    def cancel(self, role: str) -> bool:
        """Kill the role's running child. Returns False when nothing was running."""
        handle = self._handles.get(role)
        if handle is None:
            return False
        return handle.kill()

    async def shutdown(self) -> None:
        handles = list(self._handles.values())
        for handle in handles:
            handle.kill()
        if handles:
            await asyncio.gather(*(handle.wait() for handle in handles))
        self.logger.info("Dispatcher shut down", killed=len(handles))
