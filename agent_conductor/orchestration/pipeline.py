"""
Pipeline strategy.

Runs a fixed, declared sequence of roles. Each step's instruction is built
from a template in which ``{previous}`` is the prior step's output (the
original task for the first step) and ``{task}`` is always the original
task. The first failing step halts the run.
"""

import re
from typing import List, Optional, Sequence, Union

from ..models.core import (
    CapabilityResult, DispatchOutcome, OutcomeKind, PipelineRun, PipelineStep
)
from ..models.errors import DispatchCancelled, LaunchFailure, RoleNotFoundError, StepFailure
from ..runtime.launcher import DispatchHandle, LaunchOptions, Launcher
from ..utils.error_handler import error_for_result, error_handler, outcome_kind_for, with_error_handling
from ..utils.logging import LoggerMixin, dispatch_context
from .host import AgentHost, Capability, OrchestrationStrategy
from .registry import ProfileRegistry
from .tracker import UnitOfWorkTracker


PIPELINE_CAPABILITY = "run_pipeline"

_PLACEHOLDER = re.compile(r"\{(previous|task)\}")


def render_step_instruction(template: str, previous: str, task: str) -> str:
    """Substitute ``{previous}`` and ``{task}`` in one pass.

    Substituted text is never rescanned, so an output that happens to contain
    a placeholder is passed through literally.
    """
    values = {"previous": previous, "task": task}
    return _PLACEHOLDER.sub(lambda match: values[match.group(1)], template)


class PipelineStrategy(OrchestrationStrategy, LoggerMixin):
    """Runs the declared steps in order, fail-fast."""

    def __init__(
        self,
        registry: ProfileRegistry,
        launcher: Launcher,
        steps: Sequence[Union[PipelineStep, str]],
        tracker: Optional[UnitOfWorkTracker] = None,
        timeout_seconds: Optional[float] = None
    ):
        if not steps:
            raise ValueError("A pipeline needs at least one step")
        self.registry = registry
        self.launcher = launcher
        self.steps: List[PipelineStep] = [
            step if isinstance(step, PipelineStep) else PipelineStep(role_name=step)
            for step in steps
        ]
        self.tracker = tracker or UnitOfWorkTracker()
        self.timeout_seconds = timeout_seconds
        self.last_run: Optional[PipelineRun] = None
        self._running = False
        self._cancel_requested = False
        self._current: Optional[DispatchHandle] = None
        self._capability = Capability(
            name=PIPELINE_CAPABILITY,
            description="Run the fixed multi-agent pipeline on a task and return the final step's output.",
            parameters={
                "type": "object",
                "properties": {
                    "task": {"type": "string", "description": "The task the pipeline should accomplish"},
                },
                "required": ["task"],
            },
            handler=self._handle_run_pipeline
        )
        for index in range(len(self.steps)):
            self.tracker.ensure(self._unit_id(index), self._step_label(index))

    @property
    def running(self) -> bool:
        return self._running

    def capability(self) -> Capability:
        return self._capability

    def unit_ids(self) -> List[str]:
        return [self._unit_id(index) for index in range(len(self.steps))]

    def on_session_start(self, host: AgentHost) -> None:
        """Reset every step to Idle and add ``run_pipeline`` to the host's tools."""
        for index in range(len(self.steps)):
            if not self.tracker.is_running(self._unit_id(index)):
                self.tracker.register(self._unit_id(index), self._step_label(index))
        host.register_capability(self._capability)
        self.logger.info("Pipeline attached", steps=[step.role_name for step in self.steps])

    def build_instructions(self, default_instructions: str) -> str:
        """Host's default instructions followed by pipeline guidance."""
        lines = [
            "You can also call `run_pipeline(task)`, which runs this fixed sequence of "
            "agents, each receiving the previous one's output:"
        ]
        for index, step in enumerate(self.steps):
            lines.append(f"{index + 1}. {step.label or step.role_name}")
        lines.append(
            "Prefer the pipeline for substantial work that benefits from every stage. "
            "Handle quick questions and small edits directly with your own tools."
        )
        guidance = "\n".join(lines)
        if not default_instructions.strip():
            return guidance
        return f"{default_instructions.rstrip()}\n\n{guidance}"

    async def run(self, task: str) -> DispatchOutcome:
        """Run every step on ``task``; returns the last step's output or the first failure."""
        if self._running:
            self.logger.warning("Pipeline busy, refusing new run")
            return DispatchOutcome(
                kind=OutcomeKind.BUSY,
                text="The pipeline is already running; wait for the current run to finish"
            )

        self._running = True
        self._cancel_requested = False
        try:
            return await self._run_steps(task)
        finally:
            self._running = False
            self._current = None

    async def _run_steps(self, task: str) -> DispatchOutcome:
        unit_ids = self.unit_ids()
        self.tracker.reset(unit_ids)
        run = PipelineRun(steps=self.tracker.units(unit_ids), original_task=task)
        self.last_run = run
        total_elapsed = 0

        self.log_operation_start("pipeline", steps=len(self.steps))

        for index, step in enumerate(self.steps):
            unit_id = unit_ids[index]

            if self._cancel_requested:
                return self._step_failed(index, step, DispatchCancelled(role_name=step.role_name),
                                         total_elapsed)

            profile = self.registry.get(step.role_name)
            if profile is None:
                error = RoleNotFoundError(step.role_name, self.registry.names())
                self.tracker.fail(unit_id, error.message, self._step_label(index))
                return self._step_failed(index, step, error, total_elapsed, kind=OutcomeKind.FAILURE)

            instruction = render_step_instruction(step.template, run.previous_output(), task)
            self.tracker.begin(unit_id, self._step_label(index))
            try:
                with dispatch_context(step.role_name, step=index + 1):
                    handle = self.launcher.launch(
                        profile, instruction, LaunchOptions(timeout_seconds=self.timeout_seconds)
                    )
            except Exception as e:
                error = LaunchFailure(f"Launcher failed for role '{step.role_name}': {e}",
                                      role_name=step.role_name)
                self.tracker.fail(unit_id, error.message, self._step_label(index))
                return self._step_failed(index, step, error, total_elapsed)
            self._current = handle
            unsubscribe = handle.subscribe(
                lambda event, uid=unit_id: self.tracker.apply_event(uid, event)
            )
            handle.add_done_callback(lambda h, uid=unit_id: self.tracker.complete(uid, h.result()))

            try:
                result = await handle.wait()
            finally:
                unsubscribe()
                self._current = None

            self.tracker.complete(unit_id, result)
            total_elapsed += result.elapsed_ms

            if not result.succeeded:
                return self._step_failed(index, step, error_for_result(result, step.role_name),
                                         total_elapsed, output_text=result.output_text)

            run.record_output(result.output_text.strip())
            self.logger.info("Pipeline step finished", step=index + 1, role=step.role_name,
                             elapsed_ms=result.elapsed_ms)

        self.log_operation_success("pipeline", duration_ms=total_elapsed, steps=len(self.steps))
        last = len(self.steps) - 1
        return DispatchOutcome.succeeded(
            run.outputs[-1],
            role_name=self.steps[last].role_name,
            step_index=last,
            elapsed_ms=total_elapsed
        )

    def _step_failed(self, index: int, step: PipelineStep, error: Exception, elapsed_ms: int,
                     output_text: str = "", kind: Optional[OutcomeKind] = None) -> DispatchOutcome:
        diagnostic = getattr(error, "message", str(error))
        return error_handler.to_outcome(
            StepFailure(index, step.role_name, diagnostic),
            role_name=step.role_name,
            step_index=index,
            elapsed_ms=elapsed_ms,
            output_text=output_text,
            kind=kind or outcome_kind_for(error)
        )

    @with_error_handling(PIPELINE_CAPABILITY)
    async def _handle_run_pipeline(self, task: str) -> CapabilityResult:
        outcome = await self.run(task)
        return outcome.to_capability_result()

    def cancel(self) -> bool:
        """Stop the current run; the running step ends cancelled and later steps stay Idle."""
        if not self._running:
            return False
        self._cancel_requested = True
        if self._current is not None:
            self._current.kill()
        return True

    async def shutdown(self) -> None:
        current = self._current
        if self.cancel() and current is not None:
            await current.wait()

    def _unit_id(self, index: int) -> str:
        return f"step-{index}"

    def _step_label(self, index: int) -> str:
        step = self.steps[index]
        return f"{index + 1}. {step.label or step.role_name}"
