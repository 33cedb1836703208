import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Set
import structlog

from .alert_engine import AlertEngine
from .models import utcnow

logger = structlog.get_logger()


class MonitoringTaskManager:
    """Runs one periodic monitoring task per owner.

    The per-owner lock only guards swapping the task and its stop event;
    an old loop's in-flight cycle always finishes outside it.
    """

    def __init__(self, engine: AlertEngine, interval: float = 300):
        self.engine = engine
        self.interval = interval
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_events: Dict[str, asyncio.Event] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._retiring: Set[asyncio.Task] = set()
        self.last_cycle: Dict[str, datetime] = {}

    def _lock(self, owner: str) -> asyncio.Lock:
        lock = self._locks.get(owner)
        if lock is None:
            lock = self._locks[owner] = asyncio.Lock()
        return lock

    async def start_monitoring(self, owner: str):
        """Start monitoring ``owner``, replacing any loop already running"""
        async with self._lock(owner):
            old_task = self._signal_stop(owner)

            stop_event = asyncio.Event()
            self._stop_events[owner] = stop_event
            self._tasks[owner] = asyncio.create_task(
                self._monitoring_loop(owner, stop_event),
                name=f"monitoring:{owner}"
            )

        if old_task is not None and not old_task.done():
            # Signalled loops never tick again; keep a reference until they exit
            self._retiring.add(old_task)
            old_task.add_done_callback(self._retiring.discard)

        logger.info("Monitoring started", owner=owner, replaced=old_task is not None,
                    interval_seconds=self.interval)

    async def stop_monitoring(self, owner: str) -> bool:
        """Stop monitoring ``owner``; returns False when nothing was running"""
        async with self._lock(owner):
            task = self._signal_stop(owner)
        if task is None:
            return False

        # The loop exits after any in-flight cycle; the next tick never starts
        await asyncio.gather(task, return_exceptions=True)

        if owner not in self._tasks:
            lock = self._locks.get(owner)
            if lock is not None and not lock.locked():
                del self._locks[owner]
            self.last_cycle.pop(owner, None)

        logger.info("Monitoring stopped", owner=owner)
        return True

    def _signal_stop(self, owner: str) -> Optional[asyncio.Task]:
        task = self._tasks.pop(owner, None)
        stop_event = self._stop_events.pop(owner, None)
        if stop_event is not None:
            stop_event.set()
        return task

    async def stop_all(self):
        for owner in list(self._tasks):
            await self.stop_monitoring(owner)
        if self._retiring:
            await asyncio.gather(*list(self._retiring), return_exceptions=True)

    def is_monitoring(self, owner: str) -> bool:
        task = self._tasks.get(owner)
        return task is not None and not task.done()

    def monitored_owners(self) -> List[str]:
        return [owner for owner in self._tasks if self.is_monitoring(owner)]

    def last_cycle_at(self, owner: str) -> Optional[datetime]:
        return self.last_cycle.get(owner)

    async def _monitoring_loop(self, owner: str, stop_event: asyncio.Event):
        while not stop_event.is_set():
            try:
                alerts = await self.engine.run_cycle(owner)
                self.last_cycle[owner] = utcnow()
                if alerts:
                    logger.info("Monitoring cycle raised alerts", owner=owner, alerts=len(alerts))
            except Exception as e:
                logger.error("Error in monitoring cycle", owner=owner, error=str(e))

            # Wait for next cycle
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
