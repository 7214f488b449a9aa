"""
Operator Controller - Work queue and dispatch for the reconciler.

Similar to Kubernetes controllers: record identities are queued on change
events, on a periodic resync, and after the delay a reconcile asked for.
At most one reconcile runs per identity at a time; different identities are
reconciled concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from backoff import Backoff
from events import EventBus, ResourceEvent
from models import KIND, NamespacedName
from reconciler import Reconciler, ReconcileResult
from store import ResourceStore

logger = logging.getLogger(__name__)

WATCHED_KINDS = (KIND, "Pod")


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    resync_interval: int = 300
    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration for failed reconciles
    backoff_base_delay: float = 2  # base delay in seconds
    backoff_max_delay: float = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter


class Controller:
    """
    Dispatches reconcile calls for Postgresql records.

    The queue deduplicates identities. An identity added while it is being
    processed is marked dirty and queued again once the running reconcile
    finishes, which serializes work per identity.
    """

    def __init__(
        self,
        store: ResourceStore,
        reconciler: Optional[Reconciler] = None,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.reconciler = reconciler or Reconciler(store)
        self.config = config or ControllerConfig()
        self.resync_interval = self.config.resync_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.running = False
        self._event_bus = event_bus
        self._backoff = Backoff(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[NamespacedName] = set()
        self._processing: Set[NamespacedName] = set()
        self._dirty: Set[NamespacedName] = set()
        # Pending delayed adds: identity -> (due time, timer handle)
        self._timers: Dict[NamespacedName, Tuple[float, asyncio.TimerHandle]] = {}

        self._tasks: List[asyncio.Task] = []
        self._subscriber_id: Optional[str] = None

    async def start(self):
        """Start the workers, the resync loop and the event watch."""
        logger.info("Starting Operator Controller")
        self.running = True

        self._tasks = [asyncio.create_task(self._resync_loop())]
        for _ in range(self.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker()))
        if self._event_bus:
            self._tasks.append(asyncio.create_task(self._watch_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller; in-flight reconciles are abandoned."""
        logger.info("Stopping Operator Controller")
        self.running = False

        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._event_bus and self._subscriber_id:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()

    # ==================== Queue ====================

    def enqueue(self, key: NamespacedName, delay: float = 0) -> None:
        """
        Queue an identity for reconciliation.

        Args:
            key: The record identity.
            delay: Seconds to wait before queueing. When a delayed add is
                already pending, the earlier of the two wins.
        """
        if delay <= 0:
            self._add(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        pending = self._timers.get(key)
        if pending is not None:
            if pending[0] <= due:
                return
            pending[1].cancel()
        handle = loop.call_later(delay, self._fire_timer, key)
        self._timers[key] = (due, handle)

    def _fire_timer(self, key: NamespacedName) -> None:
        self._timers.pop(key, None)
        self._add(key)

    def _add(self, key: NamespacedName) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def queue_length(self) -> int:
        """Number of identities waiting to be processed."""
        return self._queue.qsize()

    def trigger_reconciliation(self, key: NamespacedName) -> None:
        """Manually trigger reconciliation for a specific record."""
        logger.info(f"Manually triggering reconciliation for {key}")
        self.enqueue(key)

    # ==================== Loops ====================

    async def _worker(self):
        """Take identities off the queue and reconcile them one at a time."""
        while self.running:
            key = await self._queue.get()
            self._queued.discard(key)
            self._processing.add(key)
            try:
                await self._process(key)
            finally:
                self._processing.discard(key)
                if key in self._dirty:
                    self._dirty.discard(key)
                    self._add(key)

    async def _process(self, key: NamespacedName) -> None:
        """Reconcile one identity and schedule its next run."""
        try:
            result = await self.reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            result = ReconcileResult(message=str(e), error=e)

        if result.error is not None:
            delay = self._backoff.failure(key)
            logger.warning(
                f"Reconcile of {key} failed ({result.message}), "
                f"retrying in {delay:.1f}s"
            )
            self.enqueue(key, delay)
            return

        self._backoff.reset(key)
        if result.requeue_after is not None:
            self.enqueue(key, result.requeue_after)

    async def _resync_loop(self):
        """Periodically queue every record, catching anything events missed."""
        while self.running:
            try:
                records = await self.store.list_postgresqls()
                for pg in records:
                    self.enqueue(pg.identity)
                if records:
                    logger.debug(f"Resync queued {len(records)} records")
                await asyncio.sleep(self.resync_interval)
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)
                await asyncio.sleep(10)  # Brief pause on error

    async def _watch_loop(self):
        """Queue the owning record whenever a record or its Pod changes."""

        def filter_fn(event: ResourceEvent) -> bool:
            return event.kind in WATCHED_KINDS

        subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)
        self._subscriber_id = subscriber_id
        async for event in subscription:
            logger.debug(
                f"{event.event_type.value} {event.kind} {event.identity}, queueing"
            )
            self.enqueue(event.identity)
