"""
Unit-of-work tracking for roles and pipeline steps.

Decoder callbacks mutate the tracker and the status projector reads it. Both
run on the same event loop, so updates never interleave with reads.
"""

import asyncio
import time
from typing import Callable, Dict, Iterable, List, Optional

from ..models.core import (
    Completed, LaunchResult, ProgressEvent, TextFragment, ToolStart, UnitOfWork, UnitStatus
)
from ..models.errors import RoleBusyError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class UnitOfWorkTracker:
    """Owns one UnitOfWork per tracked role or pipeline step."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.logger = get_logger(f"{__name__}.UnitOfWorkTracker")
        self._clock = clock
        self._units: Dict[str, UnitOfWork] = {}
        self._listeners: List[Callable[[UnitOfWork], None]] = []
        self.version = 0

    def register(self, unit_id: str, label: Optional[str] = None) -> UnitOfWork:
        """Create an Idle unit, replacing any existing one with the same id."""
        unit = UnitOfWork(id=unit_id, label=label or unit_id)
        self._units[unit_id] = unit
        self._changed(unit)
        return unit

    def ensure(self, unit_id: str, label: Optional[str] = None) -> UnitOfWork:
        """Return the unit, registering it Idle if it is not tracked yet."""
        unit = self._units.get(unit_id)
        if unit is None:
            unit = self.register(unit_id, label)
        return unit

    def unregister(self, unit_id: str) -> bool:
        unit = self._units.get(unit_id)
        if unit is None or unit.is_running:
            return False
        del self._units[unit_id]
        self.version += 1
        return True

    def get(self, unit_id: str) -> Optional[UnitOfWork]:
        return self._units.get(unit_id)

    def units(self, unit_ids: Optional[Iterable[str]] = None) -> List[UnitOfWork]:
        """Tracked units in registration order, or in the given id order."""
        if unit_ids is None:
            return list(self._units.values())
        return [self._units[unit_id] for unit_id in unit_ids if unit_id in self._units]

    def is_running(self, unit_id: str) -> bool:
        unit = self._units.get(unit_id)
        return unit is not None and unit.is_running

    def running_units(self) -> List[UnitOfWork]:
        return [unit for unit in self._units.values() if unit.is_running]

    def begin(self, unit_id: str, label: Optional[str] = None) -> UnitOfWork:
        """
        Move a unit to Running.

        Raises:
            RoleBusyError: The unit is already Running. Requests are never queued.
        """
        unit = self.ensure(unit_id, label)
        if unit.is_running:
            raise RoleBusyError(unit_id)
        unit.mark_running(self._clock())
        self._changed(unit)
        return unit

    def apply_event(self, unit_id: str, event: ProgressEvent):
        """Fold one decoded progress event into the unit's live state."""
        unit = self._units.get(unit_id)
        if unit is None or not unit.is_running:
            return

        if isinstance(event, TextFragment):
            unit.append_text(event.text)
        elif isinstance(event, ToolStart):
            unit.record_tool(event.name)
        elif isinstance(event, Completed):
            unit.exit_code = event.exit_status
        unit.update_elapsed(self._clock())
        self._changed(unit)

    def complete(self, unit_id: str, result: LaunchResult) -> Optional[UnitOfWork]:
        """Running -> Done or Error from a launch result."""
        unit = self._units.get(unit_id)
        if unit is None:
            return None
        if unit.is_running:
            if not unit.accumulated_text and result.output_text:
                unit.append_text(result.output_text)
            unit.mark_finished(
                result.succeeded,
                self._clock(),
                exit_code=result.exit_code,
                diagnostic=None if result.succeeded else result.failure_text()
            )
            if result.elapsed_ms > unit.elapsed_ms:
                unit.elapsed_ms = result.elapsed_ms
            self._changed(unit)
        return unit

    def fail(self, unit_id: str, diagnostic: str, label: Optional[str] = None) -> UnitOfWork:
        """Mark a unit Error without a process having run (e.g. unknown role in a pipeline)."""
        unit = self.ensure(unit_id, label)
        if not unit.is_running:
            unit.mark_running(self._clock())
        unit.mark_finished(False, self._clock(), diagnostic=diagnostic)
        self._changed(unit)
        return unit

    def tick(self) -> int:
        """Recompute elapsed time of every Running unit. Returns how many were updated."""
        now = self._clock()
        running = self.running_units()
        for unit in running:
            unit.update_elapsed(now)
        if running:
            self.version += 1
        return len(running)

    def reset(self, unit_ids: Optional[Iterable[str]] = None):
        """Return units to Idle (session start or pipeline re-run)."""
        for unit in self.units(unit_ids):
            unit.reset()
            self._changed(unit)

    def add_listener(self, callback: Callable[[UnitOfWork], None]) -> Callable[[], None]:
        """Be notified after every unit mutation; returns a remove function."""
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _changed(self, unit: UnitOfWork):
        self.version += 1
        for callback in list(self._listeners):
            try:
                callback(unit)
            except Exception as e:
                self.logger.error("Tracker listener failed", unit=unit.id, error=str(e))


class ElapsedTicker:
    """Periodically refreshes elapsed times while units are Running."""

    def __init__(self, tracker: UnitOfWorkTracker, interval_seconds: float = 1.0,
                 on_tick: Optional[Callable[[], None]] = None):
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self.on_tick = on_tick
        self.logger = get_logger(f"{__name__}.ElapsedTicker")
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the background tick loop on the running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._tick_loop())
        self.logger.debug("Elapsed ticker started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop the background tick loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _tick_loop(self):
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            if self.tracker.tick() and self.on_tick is not None:
                try:
                    self.on_tick()
                except Exception as e:
                    self.logger.error("Tick callback failed", error=str(e))
