"""Event & Log Emitter.

Every node/execution transition and every log line becomes an
``ExecutionEvent`` with a per-execution sequence number. Publishing is
synchronous and never waits on a subscriber: events are offered to bounded
per-subscriber queues, and a subscriber that falls behind loses its live
feed (its iterator ends with ``dropped=True``) instead of stalling the
scheduler. A bounded history per execution lets a client reconnect with
``since_sequence`` and fill the gap.

Log entries are also queued for a background writer that persists them in
batches, so persistence latency never reaches the scheduler either.
"""

import asyncio
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Set

from core.database import Database
from core.logging import get_logger
from services.execution.exceptions import InvalidTransitionError
from services.execution.models import (
    EventType, Execution, ExecutionEvent, ExecutionLogEntry, LogLevel, LogSource, NodeState,
)
from services.execution.store import ExecutionStateStore, make_log_entry

logger = get_logger(__name__)

MAX_TRACKED_EXECUTIONS = 1000
LOG_BATCH_SIZE = 100


class Subscription:
    """Async iterator over one execution's events."""

    def __init__(self, bus: "ExecutionEventBus", execution_id: str, maxsize: int):
        self.bus = bus
        self.execution_id = execution_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = False
        self.closed = False
        self._finished = False

    def offer(self, event: ExecutionEvent) -> bool:
        """Non-blocking delivery. Returns False if the subscriber was dropped."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped = True
            self._close_with_sentinel()
            logger.warning("Dropping slow event subscriber", execution_id=self.execution_id,
                           last_sequence=event.sequence)
            return False

    def _close_with_sentinel(self) -> None:
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    def close(self) -> None:
        if not self.closed:
            self._close_with_sentinel()
        self.bus.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ExecutionEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            self._finished = True
            self.bus.unsubscribe(self)
            raise StopAsyncIteration
        if event.type == EventType.EXECUTION_COMPLETED:
            self._finished = True
            self.bus.unsubscribe(self)
        return event


class ExecutionEventBus:
    """Per-execution ordered event fan-out with log persistence."""

    def __init__(self, store: ExecutionStateStore, database: Optional[Database] = None,
                 queue_size: int = 1000, history_size: int = 1000):
        self.store = store
        self.database = database
        self.queue_size = queue_size
        self.history_size = history_size
        self._sequences: Dict[str, int] = {}
        self._history: "OrderedDict[str, Deque[ExecutionEvent]]" = OrderedDict()
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._completed: Set[str] = set()
        # Last sequence of executions whose history was evicted
        self._evicted: "OrderedDict[str, int]" = OrderedDict()
        self._log_queue: Optional[asyncio.Queue] = None
        self._writer_task: Optional[asyncio.Task] = None

    # ============================================================================
    # Lifecycle
    # ============================================================================

    async def start(self) -> None:
        if self.database and self._writer_task is None:
            self._writer_task = asyncio.create_task(self._log_writer(), name="execution-log-writer")
            logger.info("Execution log writer started")

    async def stop(self) -> None:
        await self.flush()
        if self._writer_task:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                subscription.close()

    async def flush(self) -> None:
        """Wait until every queued log entry has been persisted."""
        if self._log_queue is None:
            return
        if self._writer_task and not self._writer_task.done():
            await self._log_queue.join()
            return
        batch = []
        while not self._log_queue.empty():
            batch.append(self._log_queue.get_nowait())
            self._log_queue.task_done()
        if batch:
            await self.database.add_execution_logs(batch)

    async def _log_writer(self) -> None:
        queue = self._pending_logs()
        while True:
            batch = [await queue.get()]
            while len(batch) < LOG_BATCH_SIZE and not queue.empty():
                batch.append(queue.get_nowait())
            try:
                await self.database.add_execution_logs(batch)
            except Exception as e:
                logger.error("Execution log batch lost", count=len(batch), error=str(e))
            finally:
                for _ in batch:
                    queue.task_done()

    def _pending_logs(self) -> asyncio.Queue:
        if self._log_queue is None:
            self._log_queue = asyncio.Queue()
        return self._log_queue

    # ============================================================================
    # Publishing
    # ============================================================================

    def publish(self, event_type: EventType, execution_id: str, node_id: Optional[str] = None,
                status: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> ExecutionEvent:
        """Build, record and fan out one event. Never blocks."""
        if execution_id in self._evicted:
            return self._late_event(event_type, execution_id, node_id, status, payload)
        sequence = self._sequences.get(execution_id, 0) + 1
        self._sequences[execution_id] = sequence
        event = ExecutionEvent(
            type=event_type,
            execution_id=execution_id,
            sequence=sequence,
            node_id=node_id,
            status=status,
            payload=payload or {},
        )

        history = self._history.get(execution_id)
        if history is None:
            history = self._history[execution_id] = deque(maxlen=self.history_size)
            self._evict_history()
        history.append(event)

        for subscription in list(self._subscribers.get(execution_id, ())):
            subscription.offer(event)
        return event

    def _late_event(self, event_type: EventType, execution_id: str, node_id: Optional[str],
                    status: Optional[str], payload: Optional[Dict[str, Any]]) -> ExecutionEvent:
        """An event for an evicted execution keeps counting but is neither recorded nor delivered."""
        sequence = self._evicted[execution_id] + 1
        self._evicted[execution_id] = sequence
        logger.debug("Dropping event for evicted execution", execution_id=execution_id,
                     event_type=event_type.value, sequence=sequence)
        return ExecutionEvent(
            type=event_type,
            execution_id=execution_id,
            sequence=sequence,
            node_id=node_id,
            status=status,
            payload=payload or {},
        )

    def node_updated(self, execution_id: str, state: NodeState) -> ExecutionEvent:
        return self.publish(EventType.NODE_UPDATED, execution_id, node_id=state.node_id,
                            status=state.status.value, payload=state.to_dict())

    def execution_updated(self, execution: Execution) -> ExecutionEvent:
        return self.publish(EventType.EXECUTION_UPDATED, execution.id,
                            status=execution.status.value,
                            payload=execution.to_dict(include_nodes=False))

    def execution_completed(self, execution: Execution) -> ExecutionEvent:
        self._completed.add(execution.id)
        event = self.publish(EventType.EXECUTION_COMPLETED, execution.id,
                             status=execution.status.value,
                             payload=execution.to_dict(include_nodes=False))
        self._history.move_to_end(execution.id)
        return event

    def log(self, execution_id: str, message: str, level: LogLevel = LogLevel.INFO,
            node_id: Optional[str] = None, source: LogSource = LogSource.SYSTEM,
            category: Optional[str] = None, **details) -> ExecutionLogEntry:
        """Append an execution log line, queue it for persistence and publish LOG_NEW."""
        entry = make_log_entry(
            execution_id, message, level=level, node_id=node_id,
            source=source, category=category, **details
        )
        if execution_id in self._evicted:
            self.publish(EventType.LOG_NEW, execution_id, node_id=node_id, payload=entry.to_dict())
            return entry
        self.store.append_log(entry)
        if self.database:
            self._pending_logs().put_nowait(entry.to_dict())
        self.publish(EventType.LOG_NEW, execution_id, node_id=node_id, payload=entry.to_dict())
        return entry

    def node_log(self, execution_id: str, node_id: str, level: LogLevel,
                 message: str, details: Dict[str, Any]) -> None:
        """Log callback handed to node contexts."""
        self.log(execution_id, message, level=level, node_id=node_id,
                 source=LogSource.NODE, **details)

    # ============================================================================
    # Subscribing
    # ============================================================================

    def subscribe(self, execution_id: str, since_sequence: Optional[int] = None) -> Subscription:
        """Subscribe to live events, optionally replaying history after ``since_sequence``.

        A subscription to an already completed execution replays from
        ``since_sequence`` (or just the completion event) and then ends.
        """
        subscription = Subscription(self, execution_id, self.queue_size)
        history = list(self._history.get(execution_id, ()))

        if since_sequence is not None:
            replay = [event for event in history if event.sequence > since_sequence]
        elif execution_id in self._completed and history:
            replay = [history[-1]]
        else:
            replay = []

        for event in replay:
            if not subscription.offer(event):
                return subscription
            if event.type == EventType.EXECUTION_COMPLETED:
                return subscription

        self._subscribers.setdefault(execution_id, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.execution_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.execution_id]

    def subscriber_count(self, execution_id: str) -> int:
        return len(self._subscribers.get(execution_id, ()))

    def history(self, execution_id: str, since_sequence: int = 0) -> List[ExecutionEvent]:
        return [event for event in self._history.get(execution_id, ()) if event.sequence > since_sequence]

    def last_sequence(self, execution_id: str) -> int:
        if execution_id in self._evicted:
            return self._evicted[execution_id]
        return self._sequences.get(execution_id, 0)

    def _evict_history(self) -> None:
        """Forget the oldest completed executions once too many are tracked."""
        while len(self._history) > MAX_TRACKED_EXECUTIONS:
            victim = next((eid for eid in self._history if eid in self._completed), None)
            if victim is None:
                return
            del self._history[victim]
            self._completed.discard(victim)
            self._evicted[victim] = self._sequences.pop(victim, 0)
            while len(self._evicted) > MAX_TRACKED_EXECUTIONS:
                self._evicted.popitem(last=False)
            try:
                self.store.evict(victim)
            except InvalidTransitionError as e:
                logger.warning("Execution kept in memory", execution_id=victim, error=str(e))
