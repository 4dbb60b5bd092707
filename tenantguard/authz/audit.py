"""
Access Audit Log.

Decisions are queued by the engine and written to a sink by a background
task. The queue is bounded; when it is full the configured overflow
policy either drops the oldest entry or waits a short, bounded time and
then drops the new one. Nothing here ever raises into a check.
"""

import asyncio
from typing import Optional

import structlog

from tenantguard.authz.domain import AccessLogEntry
from tenantguard.authz.ports import AuditSink

logger = structlog.get_logger(__name__)

DROP_OLDEST = "drop_oldest"
BLOCK = "block"
OVERFLOW_POLICIES = (DROP_OLDEST, BLOCK)


# ============================================================================
# Sinks
# ============================================================================


class LogAuditSink:
    """Writes each decision as a structlog event."""

    def __init__(self, event: str = "access_decision"):
        self.event = event

    async def append(self, entry: AccessLogEntry) -> None:
        logger.info(self.event, **entry.to_dict())


class MemoryAuditSink:
    def __init__(self) -> None:
        self.entries: list[AccessLogEntry] = []

    async def append(self, entry: AccessLogEntry) -> None:
        self.entries.append(entry)


# ============================================================================
# Queue
# ============================================================================


class AuditLogger:
    """
    Fire-and-forget audit queue.

    Usage:
        audit = AuditLogger(sink, queue_size=10000)
        await audit.start()
        await audit.submit(entry)
        ...
        await audit.stop()
    """

    def __init__(
        self,
        sink: AuditSink,
        queue_size: int = 10000,
        overflow_policy: str = DROP_OLDEST,
        block_timeout: float = 0.05,
    ):
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"Unknown audit overflow policy: {overflow_policy}")
        self.sink = sink
        self.overflow_policy = overflow_policy
        self.block_timeout = block_timeout
        self.dropped = 0
        self.failed = 0
        self._queue: asyncio.Queue[AccessLogEntry] = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._drain())
        logger.info("audit_logger_started", policy=self.overflow_policy, queue_size=self._queue.maxsize)

    async def stop(self) -> None:
        """Stop the writer after flushing what is already queued."""
        if self._task is None:
            return
        await self.flush()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("audit_logger_stopped", dropped=self.dropped, failed=self.failed)

    async def flush(self) -> None:
        """Wait until every queued entry has been handed to the sink."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            entry = self._queue.get_nowait()
            await self._write(entry)
            self._queue.task_done()

    def record(self, entry: AccessLogEntry) -> None:
        """Enqueue without waiting, evicting the oldest entry when full."""
        try:
            self._queue.put_nowait(entry)
            return
        except asyncio.QueueFull:
            pass

        try:
            oldest = self._queue.get_nowait()
            self._queue.task_done()
        except asyncio.QueueEmpty:
            oldest = entry
        self._drop(oldest)
        self._queue.put_nowait(entry)

    async def submit(self, entry: AccessLogEntry) -> None:
        """Enqueue according to the overflow policy."""
        if self.overflow_policy == DROP_OLDEST:
            self.record(entry)
            return

        try:
            await asyncio.wait_for(self._queue.put(entry), timeout=self.block_timeout)
        except asyncio.TimeoutError:
            self._drop(entry)

    def _drop(self, entry: AccessLogEntry) -> None:
        self.dropped += 1
        logger.warning(
            "audit_entry_dropped",
            policy=self.overflow_policy,
            queue_size=self._queue.maxsize,
            dropped=self.dropped,
            resource_code=entry.resource_code,
        )

    async def _drain(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._write(entry)
            finally:
                self._queue.task_done()

    async def _write(self, entry: AccessLogEntry) -> None:
        try:
            await self.sink.append(entry)
        except Exception:
            # Fallback channel: the entry goes to the application log instead
            self.failed += 1
            logger.warning("audit_write_failed", exc_info=True, entry=entry.to_dict())
