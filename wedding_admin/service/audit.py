from __future__ import annotations

import asyncio
import threading
from collections import deque
from typing import Any, Deque, List, Optional, Protocol

from wedding_admin.logging import get_logger
from wedding_admin.storage.models import AuditEvent, ClientContext, Clock, utcnow

logger = get_logger(__name__)

OUTCOMES = frozenset({"success", "failure", "denied"})


class AuditSink(Protocol):
    async def write(self, event: AuditEvent) -> None: ...


class StructlogAuditSink:
    """Writes audit events into the structured log stream."""

    def __init__(self, log: Any = None) -> None:
        self.logger = log or get_logger("wedding_admin.audit")

    async def write(self, event: AuditEvent) -> None:
        self.logger.info("audit_event", **event.to_dict())


class AuditLogger:
    """Append-only security event log with a bounded in-memory buffer.

    ``record`` never blocks on the sink: events go into a recency ring used
    for queries and a pending queue drained by a background task. When the
    pending queue is full the oldest undelivered event is dropped and
    counted in ``dropped``.
    """

    def __init__(
        self,
        *,
        buffer_size: int = 1000,
        sink: AuditSink | None = None,
        clock: Clock = utcnow,
        flush_interval: float = 1.0,
    ) -> None:
        self.sink: AuditSink = sink or StructlogAuditSink()
        self._clock = clock
        self._recent: Deque[AuditEvent] = deque(maxlen=buffer_size)
        self._pending: Deque[AuditEvent] = deque(maxlen=buffer_size)
        self._lock = threading.Lock()
        self._flush_interval = flush_interval
        self._wakeup: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self.dropped = 0

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self._recent.append(event)
            if len(self._pending) == self._pending.maxlen:
                self.dropped += 1
            self._pending.append(event)
        self._notify()

    def emit(
        self,
        action: str,
        outcome: str,
        *,
        actor: Optional[str] = None,
        client: ClientContext | None = None,
        **detail: Any,
    ) -> AuditEvent:
        if outcome not in OUTCOMES:
            raise ValueError(f"unknown audit outcome: {outcome}")
        event = AuditEvent(
            timestamp=self._clock(),
            action=action,
            outcome=outcome,
            actor=actor or "anonymous",
            ip=client.ip if client else None,
            user_agent=client.user_agent if client else None,
            detail={k: v for k, v in detail.items() if v is not None},
        )
        self.record(event)
        return event

    def recent(
        self,
        limit: int = 50,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> List[AuditEvent]:
        """Newest-first view of buffered events, optionally filtered."""
        with self._lock:
            snapshot = list(self._recent)
        results: List[AuditEvent] = []
        for event in reversed(snapshot):
            if actor is not None and event.actor != actor:
                continue
            if action is not None and event.action != action:
                continue
            if outcome is not None and event.outcome != outcome:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    async def flush(self) -> int:
        """Deliver every pending event to the sink; returns how many were attempted."""
        delivered = 0
        while True:
            with self._lock:
                if not self._pending:
                    return delivered
                event = self._pending.popleft()
            try:
                await self.sink.write(event)
            except Exception as exc:
                logger.error(
                    "audit_sink_failed",
                    action=event.action,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            delivered += 1

    def _notify(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            # Loop already closed; the next flush() picks the event up
            pass

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        try:
            while True:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self._flush_interval)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()
                await self.flush()
        finally:
            self._loop = None
            self._wakeup = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush()
