"""
Unit tests for Agent Conductor data models.
"""

import pytest
from pydantic import TypeAdapter, ValidationError

from agent_conductor.models.core import (
    CapabilityProfile, Completed, DispatchOutcome, LaunchResult, OutcomeKind,
    PipelineRun, ProgressEvent, TextFragment, ToolStart, UnitOfWork, UnitStatus
)


class TestCapabilityProfile:
    """Test CapabilityProfile model."""

    def test_valid_profile(self):
        profile = CapabilityProfile(
            name="  scout ",
            capability_set=["read", "grep", "read", " ", "ls"]
        )

        assert profile.name == "scout"
        assert profile.capability_set == ["read", "grep", "ls"]
        assert profile.full_identity_replace is False

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            CapabilityProfile(name="   ")

    def test_profile_is_immutable(self):
        profile = CapabilityProfile(name="scout")
        with pytest.raises(ValidationError):
            profile.name = "other"


class TestProgressEvent:
    """Test the discriminated progress event union."""

    def test_validates_by_kind(self):
        adapter = TypeAdapter(ProgressEvent)

        assert adapter.validate_python({"kind": "text", "text": "hi"}) == TextFragment(text="hi")
        assert isinstance(adapter.validate_python({"kind": "tool_start", "name": "read"}), ToolStart)
        assert adapter.validate_python({"kind": "completed"}).exit_status == 0

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            TypeAdapter(ProgressEvent).validate_python({"kind": "other"})


class TestLaunchResult:
    """Test LaunchResult failure explanations."""

    def test_diagnostic_preferred(self):
        result = LaunchResult(succeeded=False, output_text="partial", diagnostic="boom")
        assert result.failure_text() == "boom"

    def test_falls_back_to_output_then_exit_code(self):
        assert LaunchResult(succeeded=False, output_text=" partial \n").failure_text() == "partial"
        assert LaunchResult(succeeded=False, exit_code=4).failure_text() == "Process exited with code 4"
        assert LaunchResult(succeeded=False).failure_text() == "Process failed without output"


class TestUnitOfWork:
    """Test the unit status state machine."""

    def test_label_defaults_to_id(self):
        assert UnitOfWork(id="scout").label == "scout"

    def test_running_clears_previous_output(self):
        unit = UnitOfWork(id="scout")
        unit.mark_running(10.0)
        unit.append_text("first run")
        unit.mark_finished(True, 11.0, exit_code=0)

        unit.mark_running(20.0)

        assert unit.status == UnitStatus.RUNNING
        assert unit.accumulated_text == ""
        assert unit.last_activity_line == ""
        assert unit.exit_code is None

    def test_activity_line_is_last_non_empty_line(self):
        unit = UnitOfWork(id="scout")
        unit.mark_running(0.0)
        unit.append_text("reading files\nfound the ")
        unit.append_text("config\n\n")

        assert unit.last_activity_line == "found the config"

        unit.record_tool("grep")
        assert unit.last_activity_line == "-> grep"
        assert unit.tool_count == 1

    def test_elapsed_never_decreases(self):
        unit = UnitOfWork(id="scout")
        unit.mark_running(100.0)
        unit.update_elapsed(102.5)
        unit.update_elapsed(101.0)

        assert unit.elapsed_ms == 2500

    def test_elapsed_frozen_when_not_running(self):
        unit = UnitOfWork(id="scout")
        unit.mark_running(0.0)
        unit.mark_finished(True, 1.0)
        unit.update_elapsed(50.0)

        assert unit.elapsed_ms == 1000

    def test_failure_shows_first_diagnostic_line(self):
        unit = UnitOfWork(id="builder")
        unit.mark_running(0.0)
        unit.mark_finished(False, 1.0, exit_code=3, diagnostic="\nexit code 3\nstderr tail")

        assert unit.status == UnitStatus.ERROR
        assert unit.exit_code == 3
        assert unit.last_activity_line == "exit code 3"

    def test_reset(self):
        unit = UnitOfWork(id="scout")
        unit.mark_running(0.0)
        unit.append_text("text")
        unit.reset()

        assert unit.status == UnitStatus.IDLE
        assert unit.accumulated_text == ""
        assert unit.started_at is None


class TestPipelineRun:
    """Test PipelineRun output threading."""

    def test_previous_output(self):
        run = PipelineRun(steps=[UnitOfWork(id="step-0"), UnitOfWork(id="step-1")], original_task="T")

        assert run.previous_output() == "T"
        run.record_output("first")
        assert run.current_index == 1
        assert run.previous_output() == "first"


class TestDispatchOutcome:
    """Test the outcome to capability result conversion."""

    def test_success(self):
        outcome = DispatchOutcome.succeeded("answer", role_name="scout", elapsed_ms=12)
        result = outcome.to_capability_result()

        assert outcome.success
        assert result.success
        assert result.text == "answer"
        assert result.details == {"outcome": "success", "elapsed_ms": 12, "role": "scout"}

    def test_failure_reports_one_based_step(self):
        outcome = DispatchOutcome(kind=OutcomeKind.FAILURE, text="", step_index=1)
        result = outcome.to_capability_result()

        assert not result.success
        assert result.text == "(no output)"
        assert result.details["step"] == 2
        assert result.details["outcome"] == "failure"
