"""
Orchestration session: one strategy attached to one host.

Wires the registry, launcher, tracker, elapsed ticker and status projector
together and drives the strategy's lifecycle hooks.
"""

from typing import Callable, Iterable, List, Optional, Sequence, Union

from ..models.core import CapabilityProfile, CapabilityResult, PipelineStep
from ..runtime.launcher import Launcher, ProcessLauncher
from ..utils.config import ConductorConfig, TrackingConfig, get_config
from ..utils.logging import LoggerMixin
from .dispatcher import DispatcherStrategy
from .host import AgentHost, OrchestrationStrategy, SimpleHost
from .pipeline import PipelineStrategy
from .projector import StatusProjector, StatusRow
from .registry import ProfileRegistry
from .tracker import ElapsedTicker, UnitOfWorkTracker

StatusCallback = Callable[[List[StatusRow]], None]


class OrchestrationSession(LoggerMixin):
    """Lifecycle of one strategy on one host."""

    def __init__(
        self,
        strategy: OrchestrationStrategy,
        host: AgentHost,
        tracker: UnitOfWorkTracker,
        tracking: Optional[TrackingConfig] = None,
        on_status: Optional[StatusCallback] = None
    ):
        tracking = tracking or TrackingConfig()
        self.strategy = strategy
        self.host = host
        self.tracker = tracker
        self.projector = StatusProjector(tracker, tracking.preview_chars)
        self.ticker = ElapsedTicker(tracker, tracking.tick_interval_seconds, on_tick=self._notify)
        self.on_status = on_status
        self._remove_listener: Optional[Callable[[], None]] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def pipeline_layout(self) -> bool:
        return isinstance(self.strategy, PipelineStrategy)

    async def start(self):
        """Reset units, attach the strategy to the host and start the ticker."""
        if self._started:
            return
        self.strategy.on_session_start(self.host)
        if self.on_status is not None:
            self._remove_listener = self.tracker.add_listener(lambda _unit: self._notify())
        self.ticker.start()
        self._started = True
        self.log_operation_start("session", strategy=type(self.strategy).__name__,
                                 active_tools=self.host.active_tool_names())

    def before_turn(self) -> str:
        """Instructions the host should use for its next turn."""
        return self.strategy.build_instructions(self.host.default_instructions)

    async def invoke(self, **kwargs) -> CapabilityResult:
        """Call the strategy's capability as the host's tool loop would."""
        return await self.strategy.capability().invoke(**kwargs)

    def status(self) -> List[StatusRow]:
        return self.projector.rows(self.strategy.unit_ids(), pipeline=self.pipeline_layout)

    def render_status(self) -> str:
        return self.projector.render(self.strategy.unit_ids(), pipeline=self.pipeline_layout)

    async def shutdown(self):
        """Stop the ticker and terminate in-flight children."""
        await self.ticker.stop()
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        await self.strategy.shutdown()
        self._started = False
        self.logger.info("Session shut down")

    async def __aenter__(self) -> "OrchestrationSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    def _notify(self):
        if self.on_status is not None:
            self.on_status(self.status())


def _as_registry(profiles: Union[ProfileRegistry, Iterable[CapabilityProfile]]) -> ProfileRegistry:
    if isinstance(profiles, ProfileRegistry):
        return profiles
    return ProfileRegistry(profiles)


def create_dispatcher_session(
    profiles: Union[ProfileRegistry, Iterable[CapabilityProfile]],
    host: Optional[AgentHost] = None,
    config: Optional[ConductorConfig] = None,
    launcher: Optional[Launcher] = None,
    on_status: Optional[StatusCallback] = None
) -> OrchestrationSession:
    """Build a session whose host may only delegate."""
    config = config or get_config()
    tracker = UnitOfWorkTracker()
    strategy = DispatcherStrategy(
        _as_registry(profiles),
        launcher or ProcessLauncher(config.launcher),
        tracker=tracker,
        config=config.dispatcher
    )
    return OrchestrationSession(strategy, host or SimpleHost(), tracker, config.tracking, on_status)


def create_pipeline_session(
    profiles: Union[ProfileRegistry, Iterable[CapabilityProfile]],
    steps: Sequence[Union[PipelineStep, str]],
    host: Optional[AgentHost] = None,
    config: Optional[ConductorConfig] = None,
    launcher: Optional[Launcher] = None,
    on_status: Optional[StatusCallback] = None
) -> OrchestrationSession:
    """Build a session whose host keeps its tools and gains ``run_pipeline``."""
    config = config or get_config()
    tracker = UnitOfWorkTracker()
    strategy = PipelineStrategy(
        _as_registry(profiles),
        launcher or ProcessLauncher(config.launcher),
        steps,
        tracker=tracker
    )
    return OrchestrationSession(strategy, host or SimpleHost(), tracker, config.tracking, on_status)
