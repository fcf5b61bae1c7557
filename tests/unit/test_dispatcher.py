"""
Unit tests for the dispatcher strategy.
"""

import asyncio

import pytest

from agent_conductor.models.core import CapabilityProfile, OutcomeKind, TextFragment, UnitStatus
from agent_conductor.orchestration.dispatcher import DELEGATE_CAPABILITY, DispatcherStrategy
from agent_conductor.orchestration.host import SimpleHost
from agent_conductor.orchestration.registry import ProfileRegistry
from agent_conductor.orchestration.tracker import UnitOfWorkTracker
from agent_conductor.utils.config import DispatcherConfig
from agent_conductor.utils.error_handler import error_handler


@pytest.fixture
def tracker():
    return UnitOfWorkTracker()


@pytest.fixture
def host():
    return SimpleHost(instructions="You are a careful engineer.")


def make_dispatcher(registry, launcher, tracker, persist=True):
    return DispatcherStrategy(
        registry, launcher, tracker=tracker,
        config=DispatcherConfig(persist_role_sessions=persist)
    )


class TestSessionStart:
    """Test how the dispatcher attaches to the host."""

    def test_host_keeps_only_delegate(self, registry, fake_launcher, tracker, host):
        dispatcher = make_dispatcher(registry, fake_launcher, tracker)

        dispatcher.on_session_start(host)

        assert host.active_tool_names() == [DELEGATE_CAPABILITY]
        assert "read" in host.all_tool_names()

    def test_units_registered_idle(self, registry, fake_launcher, tracker, host):
        dispatcher = make_dispatcher(registry, fake_launcher, tracker)

        dispatcher.on_session_start(host)

        assert dispatcher.unit_ids() == ["scout", "builder"]
        assert [unit.status for unit in tracker.units(dispatcher.unit_ids())] == [UnitStatus.IDLE] * 2

    def test_capability_schema(self, registry, fake_launcher, tracker):
        schema = make_dispatcher(registry, fake_launcher, tracker).capability().schema()

        assert schema["function"]["name"] == "delegate"
        assert schema["function"]["parameters"]["required"] == ["role", "task"]


class TestInstructions:
    """Test per-turn instruction replacement."""

    def test_default_instructions_are_replaced(self, registry, fake_launcher, tracker, host):
        dispatcher = make_dispatcher(registry, fake_launcher, tracker)

        text = dispatcher.build_instructions(host.default_instructions)

        assert "You are a careful engineer." not in text
        assert "dispatcher" in text
        assert "- scout: Read-only codebase reconnaissance (tools: read, grep, find, ls)" in text
        assert "- builder: Implements changes (tools: read, edit, write, bash)" in text

    def test_catalog_is_rebuilt_each_turn(self, registry, fake_launcher, tracker, host):
        dispatcher = make_dispatcher(registry, fake_launcher, tracker)
        dispatcher.on_session_start(host)

        registry.register(CapabilityProfile(name="reviewer", description="Reviews diffs"))
        text = dispatcher.build_instructions(host.default_instructions)

        assert "- reviewer: Reviews diffs (tools: no tools)" in text
        assert tracker.get("reviewer").status == UnitStatus.IDLE

    def test_empty_registry(self, fake_launcher, tracker):
        text = DispatcherStrategy(ProfileRegistry(), fake_launcher, tracker).build_instructions("")
        assert "(none registered)" in text


class TestDelegate:
    """Test delegation outcomes."""

    @pytest.mark.asyncio
    async def test_success_returns_output(self, registry, fake_launcher, tracker):
        dispatcher = make_dispatcher(registry, fake_launcher, tracker)

        outcome = await dispatcher.delegate("scout", "Where is retry logic?")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.text == "scout handled: Where is retry logic?"
        assert outcome.role_name == "scout"
        assert tracker.get("scout").status == UnitStatus.DONE
        assert tracker.get("scout").tool_count == 1

    @pytest.mark.asyncio
    async def test_per_role_continuation_channel(self, registry, fake_launcher, tracker):
        await make_dispatcher(registry, fake_launcher, tracker).delegate("scout", "task")

        _role, _task, options = fake_launcher.launches[0]
        assert options.continuation_channel == "role-scout"

    @pytest.mark.asyncio
    async def test_continuation_can_be_disabled(self, registry, fake_launcher, tracker):
        await make_dispatcher(registry, fake_launcher, tracker, persist=False).delegate("scout", "task")

        _role, _task, options = fake_launcher.launches[0]
        assert options.continuation_channel is None

    @pytest.mark.asyncio
    async def test_unknown_role_is_not_found(self, registry, fake_launcher, tracker):
        dispatcher = make_dispatcher(registry, fake_launcher, tracker)

        outcome = await dispatcher.delegate("reviewer", "look")

        assert outcome.kind == OutcomeKind.NOT_FOUND
        assert "scout" in outcome.text and "builder" in outcome.text
        assert fake_launcher.launches == []

    @pytest.mark.asyncio
    async def test_busy_role_is_refused(self, registry, tracker, launcher_factory):
        launcher = launcher_factory(hold={"scout"})
        dispatcher = make_dispatcher(registry, launcher, tracker)

        first = asyncio.ensure_future(dispatcher.delegate("scout", "explore A"))
        await asyncio.sleep(0)
        assert tracker.is_running("scout")

        second = await dispatcher.delegate("scout", "explore B")
        assert second.kind == OutcomeKind.BUSY
        assert len(launcher.launches) == 1

        launcher.handle_for("scout").finish("A explored")
        outcome = await first
        assert outcome.success
        assert outcome.text == "A explored"

    @pytest.mark.asyncio
    async def test_scout_and_builder_run_concurrently(self, registry, tracker, host, launcher_factory):
        """Scenario: two roles at once, a repeat request to the busy one is refused."""
        launcher = launcher_factory(hold={"scout", "builder"})
        dispatcher = make_dispatcher(registry, launcher, tracker)
        dispatcher.on_session_start(host)

        scout_call = asyncio.ensure_future(host.call("delegate", role="scout", task="survey"))
        builder_call = asyncio.ensure_future(host.call("delegate", role="builder", task="implement"))
        await asyncio.sleep(0)

        assert tracker.is_running("scout") and tracker.is_running("builder")

        busy = await host.call("delegate", role="scout", task="survey again")
        assert busy.success is False
        assert busy.details["outcome"] == "busy"

        launcher.handle_for("builder").finish("built")
        launcher.handle_for("scout").finish("surveyed")
        results = await asyncio.gather(scout_call, builder_call)

        assert [result.text for result in results] == ["surveyed", "built"]
        assert all(result.success for result in results)
        assert tracker.get("scout").status == UnitStatus.DONE
        assert tracker.get("builder").status == UnitStatus.DONE

    @pytest.mark.asyncio
    async def test_child_failure(self, registry, tracker, launcher_factory):
        launcher = launcher_factory(failures={"builder": "Agent process exited with code 1\ncompile error"})
        dispatcher = make_dispatcher(registry, launcher, tracker)

        outcome = await dispatcher.delegate("builder", "change it")

        assert outcome.kind == OutcomeKind.FAILURE
        assert "compile error" in outcome.text
        assert tracker.get("builder").status == UnitStatus.ERROR
        assert error_handler.get_error_stats()["builder"] == {"child_process": 1}

    @pytest.mark.asyncio
    async def test_progress_events_reach_tracker(self, registry, tracker, launcher_factory):
        launcher = launcher_factory(hold={"scout"})
        dispatcher = make_dispatcher(registry, launcher, tracker)

        call = asyncio.ensure_future(dispatcher.delegate("scout", "survey"))
        await asyncio.sleep(0)
        launcher.handle_for("scout").emit(TextFragment(text="reading setup.py"))

        assert tracker.get("scout").last_activity_line == "reading setup.py"

        launcher.handle_for("scout").finish("ok")
        await call

    @pytest.mark.asyncio
    async def test_cancel_running_role(self, registry, tracker, launcher_factory):
        launcher = launcher_factory(hold={"scout"})
        dispatcher = make_dispatcher(registry, launcher, tracker)

        call = asyncio.ensure_future(dispatcher.delegate("scout", "survey"))
        await asyncio.sleep(0)

        assert dispatcher.cancel("scout") is True
        outcome = await call

        assert outcome.kind == OutcomeKind.CANCELLED
        assert tracker.get("scout").status == UnitStatus.ERROR
        assert dispatcher.cancel("scout") is False

    @pytest.mark.asyncio
    async def test_blank_task_is_a_failure_result(self, registry, fake_launcher, tracker):
        outcome = await make_dispatcher(registry, fake_launcher, tracker).delegate("scout", "")

        assert outcome.kind == OutcomeKind.FAILURE
        assert fake_launcher.launches == []

    @pytest.mark.asyncio
    async def test_capability_missing_argument(self, registry, fake_launcher, tracker):
        dispatcher = make_dispatcher(registry, fake_launcher, tracker)

        result = await dispatcher.capability().invoke(role="scout")

        assert result.success is False
        assert result.text.startswith("delegate failed:")

    @pytest.mark.asyncio
    async def test_shutdown_kills_in_flight(self, registry, tracker, launcher_factory):
        launcher = launcher_factory(hold={"scout", "builder"})
        dispatcher = make_dispatcher(registry, launcher, tracker)

        calls = [
            asyncio.ensure_future(dispatcher.delegate("scout", "a")),
            asyncio.ensure_future(dispatcher.delegate("builder", "b")),
        ]
        await asyncio.sleep(0)
        await dispatcher.shutdown()
        outcomes = await asyncio.gather(*calls)

        assert [outcome.kind for outcome in outcomes] == [OutcomeKind.CANCELLED] * 2
        assert all(handle.killed for handle in launcher.handles)

    @pytest.mark.asyncio
    async def test_raising_launcher_releases_role(self, registry, tracker, fake_launcher, mocker):
        dispatcher = make_dispatcher(registry, fake_launcher, tracker)
        mocker.patch.object(fake_launcher, "launch", side_effect=RuntimeError("no event loop policy"))

        outcome = await dispatcher.delegate("scout", "survey")

        assert outcome.kind == OutcomeKind.FAILURE
        assert "no event loop policy" in outcome.text
        assert tracker.get("scout").status == UnitStatus.ERROR
        assert error_handler.get_error_stats()["scout"] == {"launch": 1}

        mocker.stopall()
        retry = await dispatcher.delegate("scout", "survey again")

        assert retry.kind == OutcomeKind.SUCCESS
        assert retry.text == "scout handled: survey again"
