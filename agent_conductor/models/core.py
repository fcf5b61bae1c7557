"""
Core Pydantic data models for Agent Conductor.
"""

import uuid
from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import List, Optional, Dict, Any, Union, Literal, Annotated
from enum import Enum


class CapabilityProfile(BaseModel):
    """Named role definition: tool set plus instruction text."""
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    capability_set: List[str] = Field(default_factory=list)
    instruction_text: str = ""
    full_identity_replace: bool = False
    model: Optional[str] = None

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "name": "scout",
                "description": "Read-only codebase reconnaissance",
                "capability_set": ["read", "grep", "find", "ls"],
                "instruction_text": "You are a scout. Investigate and report, never modify files.",
                "full_identity_replace": False
            }
        }
    )

    @field_validator('name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Profile name must not be blank")
        return v

    @field_validator('capability_set')
    @classmethod
    def dedupe_capabilities(cls, v: List[str]) -> List[str]:
        seen = set()
        ordered = []
        for tool_id in v:
            tool_id = tool_id.strip()
            if tool_id and tool_id not in seen:
                seen.add(tool_id)
                ordered.append(tool_id)
        return ordered


class DispatchRequest(BaseModel):
    """A single request to run one role on one task."""
    role_name: str = Field(..., min_length=1)
    task_text: str = Field(..., min_length=1)
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])


# Progress events decoded from a child's output stream

class TextFragment(BaseModel):
    """Incremental assistant text."""
    kind: Literal["text"] = "text"
    text: str

    model_config = ConfigDict(frozen=True)


class ToolStart(BaseModel):
    """The child started invoking a tool."""
    kind: Literal["tool_start"] = "tool_start"
    name: str

    model_config = ConfigDict(frozen=True)


class Completed(BaseModel):
    """End-of-run marker."""
    kind: Literal["completed"] = "completed"
    exit_status: int = 0

    model_config = ConfigDict(frozen=True)


ProgressEvent = Annotated[Union[TextFragment, ToolStart, Completed], Field(discriminator="kind")]


class LaunchResult(BaseModel):
    """Uniform completion value of a dispatch, whether or not the child ran."""
    output_text: str = ""
    succeeded: bool
    elapsed_ms: int = Field(default=0, ge=0)
    exit_code: Optional[int] = None
    cancelled: bool = False
    timed_out: bool = False
    diagnostic: Optional[str] = None

    def failure_text(self) -> str:
        """Best available explanation of an unsuccessful run."""
        if self.diagnostic:
            return self.diagnostic
        if self.output_text.strip():
            return self.output_text.strip()
        if self.exit_code is not None:
            return f"Process exited with code {self.exit_code}"
        return "Process failed without output"


class UnitStatus(str, Enum):
    """Lifecycle status of a tracked unit of work."""
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class UnitOfWork(BaseModel):
    """Live status record for one role or one pipeline step."""
    id: str = Field(..., min_length=1)
    label: str = ""
    status: UnitStatus = UnitStatus.IDLE
    started_at: Optional[float] = None
    elapsed_ms: int = Field(default=0, ge=0)
    last_activity_line: str = ""
    accumulated_text: str = ""
    tool_count: int = Field(default=0, ge=0)
    exit_code: Optional[int] = None

    def model_post_init(self, __context):
        """Default the display label to the unit id."""
        if not self.label:
            self.label = self.id

    @property
    def is_running(self) -> bool:
        return self.status == UnitStatus.RUNNING

    def mark_running(self, now: float):
        """Idle/Done/Error -> Running, clearing the previous run's output."""
        self.status = UnitStatus.RUNNING
        self.started_at = now
        self.elapsed_ms = 0
        self.last_activity_line = ""
        self.accumulated_text = ""
        self.tool_count = 0
        self.exit_code = None

    def update_elapsed(self, now: float):
        """Recompute elapsed time from the stored start; never decreases."""
        if self.status != UnitStatus.RUNNING or self.started_at is None:
            return
        elapsed = int((now - self.started_at) * 1000)
        if elapsed > self.elapsed_ms:
            self.elapsed_ms = elapsed

    def append_text(self, text: str):
        self.accumulated_text += text
        # only the tail can hold the newest line
        tail_lines = [line.strip() for line in self.accumulated_text[-512:].splitlines()]
        tail_lines = [line for line in tail_lines if line]
        if tail_lines:
            self.last_activity_line = tail_lines[-1]

    def record_tool(self, name: str):
        self.tool_count += 1
        self.last_activity_line = f"-> {name}"

    def mark_finished(self, succeeded: bool, now: float, exit_code: Optional[int] = None,
                      diagnostic: Optional[str] = None):
        """Running -> Done or Error."""
        self.update_elapsed(now)
        self.status = UnitStatus.DONE if succeeded else UnitStatus.ERROR
        if exit_code is not None:
            self.exit_code = exit_code
        if not succeeded and diagnostic:
            first_line = next((line.strip() for line in diagnostic.splitlines() if line.strip()), "")
            if first_line:
                self.last_activity_line = first_line

    def reset(self):
        """Back to Idle with no output."""
        self.status = UnitStatus.IDLE
        self.started_at = None
        self.elapsed_ms = 0
        self.last_activity_line = ""
        self.accumulated_text = ""
        self.tool_count = 0
        self.exit_code = None


class PipelineStep(BaseModel):
    """One declared step of the fixed pipeline."""
    role_name: str = Field(..., min_length=1)
    template: str = "{previous}"
    label: Optional[str] = None


class PipelineRun(BaseModel):
    """State of one pipeline invocation."""
    steps: List[UnitOfWork]
    original_task: str
    current_index: int = Field(default=0, ge=0)
    outputs: List[str] = Field(default_factory=list)

    def previous_output(self) -> str:
        """Output of the step before the current one, or the original task for the first step."""
        if self.current_index == 0 or not self.outputs:
            return self.original_task
        return self.outputs[self.current_index - 1]

    def record_output(self, text: str):
        self.outputs.append(text)
        self.current_index += 1


class OutcomeKind(str, Enum):
    """Tagged result variant of a capability invocation."""
    SUCCESS = "success"
    BUSY = "busy"
    NOT_FOUND = "not_found"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class CapabilityResult(BaseModel):
    """What the host agent receives from a capability call."""
    text: str
    success: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class DispatchOutcome(BaseModel):
    """Result of a delegate or pipeline call."""
    kind: OutcomeKind
    text: str = ""
    role_name: Optional[str] = None
    step_index: Optional[int] = None
    elapsed_ms: int = Field(default=0, ge=0)

    @property
    def success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @classmethod
    def succeeded(cls, text: str, role_name: Optional[str] = None,
                  elapsed_ms: int = 0, step_index: Optional[int] = None) -> "DispatchOutcome":
        return cls(
            kind=OutcomeKind.SUCCESS,
            text=text,
            role_name=role_name,
            elapsed_ms=elapsed_ms,
            step_index=step_index
        )

    def to_capability_result(self) -> CapabilityResult:
        details: Dict[str, Any] = {"outcome": self.kind.value, "elapsed_ms": self.elapsed_ms}
        if self.role_name is not None:
            details["role"] = self.role_name
        if self.step_index is not None:
            details["step"] = self.step_index + 1
        return CapabilityResult(
            text=self.text or "(no output)",
            success=self.success,
            details=details
        )
