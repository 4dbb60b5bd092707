"""Tests for the audit queue."""

import asyncio
import uuid

import pytest

from tenantguard.authz.audit import BLOCK, DROP_OLDEST, AuditLogger, MemoryAuditSink
from tenantguard.authz.domain import AccessLogEntry
from tenantguard.authz.vocabulary import Outcome, ReasonCode

WORKSPACE = uuid.uuid4()


def entry(code: str = "hr.employees") -> AccessLogEntry:
    return AccessLogEntry(
        principal_id=uuid.uuid4(),
        workspace_id=WORKSPACE,
        resource_code=code,
        action="view",
        outcome=Outcome.ALLOW,
        reason=ReasonCode.EXPLICIT_GRANT,
    )


class BrokenSink:
    def __init__(self) -> None:
        self.calls = 0

    async def append(self, entry):
        self.calls += 1
        raise ConnectionError("audit table unavailable")


class TestOverflow:
    """Bounded queue behaviour."""

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            AuditLogger(MemoryAuditSink(), overflow_policy="discard_everything")

    @pytest.mark.asyncio
    async def test_drop_oldest(self):
        """The newest entries survive a full queue."""
        sink = MemoryAuditSink()
        audit = AuditLogger(sink, queue_size=2, overflow_policy=DROP_OLDEST)
        for code in ("hr.a", "hr.b", "hr.c"):
            await audit.submit(entry(code))
        assert audit.dropped == 1
        await audit.flush()
        assert [e.resource_code for e in sink.entries] == ["hr.b", "hr.c"]

    @pytest.mark.asyncio
    async def test_block_times_out_and_drops_new(self):
        """Without a writer, a full blocking queue drops the new entry."""
        sink = MemoryAuditSink()
        audit = AuditLogger(sink, queue_size=1, overflow_policy=BLOCK, block_timeout=0.01)
        await audit.submit(entry("hr.a"))
        await audit.submit(entry("hr.b"))
        assert audit.dropped == 1
        await audit.flush()
        assert [e.resource_code for e in sink.entries] == ["hr.a"]

    @pytest.mark.asyncio
    async def test_block_waits_for_writer(self):
        sink = MemoryAuditSink()
        audit = AuditLogger(sink, queue_size=1, overflow_policy=BLOCK, block_timeout=1.0)
        await audit.start()
        for code in ("hr.a", "hr.b", "hr.c"):
            await audit.submit(entry(code))
        await audit.stop()
        assert audit.dropped == 0
        assert len(sink.entries) == 3


class TestWriter:
    """Background writer lifecycle and failures."""

    @pytest.mark.asyncio
    async def test_stop_flushes_pending(self):
        sink = MemoryAuditSink()
        audit = AuditLogger(sink)
        await audit.start()
        assert audit.running
        for _ in range(5):
            await audit.submit(entry())
        await audit.stop()
        assert not audit.running
        assert len(sink.entries) == 5
        assert audit.pending == 0

    @pytest.mark.asyncio
    async def test_sink_failure_is_contained(self):
        """A failing sink counts failures and keeps draining."""
        sink = BrokenSink()
        audit = AuditLogger(sink)
        await audit.start()
        await audit.submit(entry())
        await audit.submit(entry())
        await audit.flush()
        assert audit.failed == 2
        assert audit.running
        await audit.stop()
        assert sink.calls == 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        audit = AuditLogger(MemoryAuditSink())
        await audit.start()
        task = audit._task
        await audit.start()
        assert audit._task is task
        await audit.stop()
        await audit.stop()

    @pytest.mark.asyncio
    async def test_entry_order_preserved(self):
        sink = MemoryAuditSink()
        audit = AuditLogger(sink)
        await audit.start()
        codes = [f"hr.r{i}" for i in range(10)]
        for code in codes:
            await audit.submit(entry(code))
        await asyncio.sleep(0)
        await audit.stop()
        assert [e.resource_code for e in sink.entries] == codes
