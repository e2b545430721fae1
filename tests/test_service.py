import asyncio
import threading

import pytest

from doc_scheduler.scheduling.adapters import InMemoryObjectStore
from doc_scheduler.scheduling.config import MB, SchedulerConfig
from doc_scheduler.scheduling.errors import OperationNotFoundError, ResultNotReadyError, TransientIOError
from doc_scheduler.scheduling.service import ConversionService

from conftest import FakeProcessor, FlakyStore, ScriptedGauge, drive


@pytest.mark.asyncio
async def test_cancelling_queued_chunks_never_invokes_processor(make_service):
    processor = FakeProcessor(page_count=5, size_bytes=10 * MB)
    service = make_service(processor)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")
    assert service.queue.queued_for(op_id) == 5

    assert service.cancel_operation(op_id) is True

    assert service.queue.queued_for(op_id) == 0
    assert service.get_status(op_id)["status"] == "cancelled"
    service.queue.tick()
    await service.queue.join_active()
    assert processor.calls == []


@pytest.mark.asyncio
async def test_always_transient_job_fails_after_max_attempts(make_service, clock):
    processor = FakeProcessor(fail_when=lambda pr: TransientIOError("connection reset"))
    service = make_service(processor)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "failed"
    status = service.get_status(op_id)
    assert status["error_kind"] == "TransientIOError"
    assert len(processor.calls) == 3


@pytest.mark.asyncio
async def test_cancel_during_processing_finishes_after_active_job(make_service):
    gate = threading.Event()
    processor = FakeProcessor(gate=gate)
    service = make_service(processor)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    service.queue.tick()
    while processor.active == 0:
        await asyncio.sleep(0.005)
    assert service.cancel_operation(op_id) is True
    assert service.get_status(op_id)["status"] == "cancelling"
    assert service.cancel_operation(op_id) is True

    gate.set()
    await service.queue.join_active()
    status = service.get_status(op_id)
    assert status["status"] == "cancelled"
    assert status["result_ref"] is None
    assert processor.discarded


@pytest.mark.asyncio
async def test_cancel_of_finished_operation_is_refused(make_service, clock):
    service = make_service(FakeProcessor())
    op_id = await service.create_operation("doc.pdf", "pdf", "md")
    await drive(service, clock, op_id)

    assert service.cancel_operation(op_id) is False
    assert service.get_status(op_id)["status"] == "completed"


@pytest.mark.asyncio
async def test_status_shape(make_service, clock):
    service = make_service(FakeProcessor(page_count=4, size_bytes=10 * MB))
    op_id = await service.create_operation("doc.pdf", ".PDF", "MD", priority=50)
    status = service.get_status(op_id)

    assert status["status"] == "queued"
    assert status["progress_percent"] == 10
    assert status["chunks"] == {"total": 4, "completed": 0, "failed": 0}
    assert status["estimated_time_remaining_ms"] is None
    assert service.context.registry.get(op_id).priority == 10
    assert service.context.registry.get(op_id).source_format == "pdf"

    await drive(service, clock, op_id)
    status = service.get_status(op_id)
    assert status["status"] == "completed"
    assert status["estimated_time_remaining_ms"] == 0
    assert status["chunks"] == {"total": 4, "completed": 4, "failed": 0}
    assert status["completed_at"] is not None


@pytest.mark.asyncio
async def test_result_is_unavailable_until_completed(make_service, clock):
    service = make_service(FakeProcessor())
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    with pytest.raises(ResultNotReadyError):
        await service.get_result(op_id)
    await drive(service, clock, op_id)
    assert await service.get_result(op_id) == b"pages 1-1"


def test_unknown_operation(make_service):
    service = make_service(FakeProcessor())
    with pytest.raises(OperationNotFoundError):
        service.get_status("nope")
    with pytest.raises(OperationNotFoundError):
        service.cancel_operation("nope")


@pytest.mark.asyncio
async def test_queue_stats(make_service):
    service = make_service(FakeProcessor(page_count=3, size_bytes=10 * MB))
    await service.create_operation("doc.pdf", "pdf", "md")
    stats = service.get_queue_stats()

    assert stats["queued_jobs"] == 3
    assert stats["active_jobs"] == 0
    assert stats["max_concurrency"] == 2
    assert stats["memory_band"] == "normal"
    assert stats["pending_uploads"] == 0


@pytest.mark.asyncio
async def test_background_loops_drive_operations_to_completion():
    cfg = SchedulerConfig(
        tick_interval=0.01,
        sample_interval=0.01,
        chunk_memory_ceiling_bytes=1 * MB,
        upload_base_delay=0.0,
        upload_max_delay=0.0,
    )
    processor = FakeProcessor(page_count=6, size_bytes=10 * MB, delay=0.01)
    service = ConversionService(
        processor, FlakyStore(), InMemoryObjectStore(), config=cfg, memory_gauge=ScriptedGauge(0.2)
    )
    await service.start()
    try:
        assert service.running
        ops = [await service.create_operation(f"doc-{i}.pdf", "pdf", "md", priority=i + 1) for i in range(3)]
        statuses = await asyncio.gather(*(service.wait_until_settled(op, poll=0.01, timeout=10) for op in ops))
    finally:
        await service.stop()

    assert statuses == ["completed"] * 3
    assert not service.running
    assert processor.peak <= cfg.max_concurrency


@pytest.mark.asyncio
async def test_job_failing_after_cancel_is_not_retried(make_service):
    gate = threading.Event()
    processor = FakeProcessor(gate=gate, fail_when=lambda pr: TransientIOError("connection reset"))
    service = make_service(processor)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    service.queue.tick()
    while processor.active == 0:
        await asyncio.sleep(0.005)
    assert service.cancel_operation(op_id) is True

    gate.set()
    await service.queue.join_active()
    assert service.queue.queued_for(op_id) == 0
    assert service.get_status(op_id)["status"] == "cancelled"
    assert len(processor.calls) == 1


@pytest.mark.asyncio
async def test_status_reports_queue_position_and_wait(make_service, clock):
    # each conversion takes two seconds of scheduler time
    service = make_service(FakeProcessor(delay=lambda pr: clock.advance(2) or 0))
    first = await service.create_operation("doc.pdf", "pdf", "md")
    assert await drive(service, clock, first) == "completed"
    assert service.queue.stats().average_job_ms == 2000

    ops = {p: await service.create_operation(f"doc-{p}.pdf", "pdf", "md", priority=p) for p in (5, 9, 1)}
    concurrency = service.queue.max_concurrency

    positions = {p: service.get_status(op)["queue_position"] for p, op in ops.items()}
    assert positions == {9: 1, 5: 2, 1: 3}
    for p, op in ops.items():
        expected = int((positions[p] - 1) * 2000 / concurrency)
        assert service.get_status(op)["queue_wait_ms"] == expected
    assert service.get_status(first)["queue_position"] is None
    assert service.get_status(first)["queue_wait_ms"] is None


@pytest.mark.asyncio
async def test_settled_chunked_operation_keeps_only_its_result(make_service, clock, primary_store):
    removed = []
    service = make_service(FakeProcessor(page_count=4, size_bytes=10 * MB), source_cleanup=removed.append)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "completed"
    assert len(primary_store) == 1
    assert await service.get_result(op_id) == b"pages 1-1\n\npages 2-2\n\npages 3-3\n\npages 4-4\n"
    assert removed == ["doc.pdf"]


@pytest.mark.asyncio
async def test_cancelled_operation_removes_its_source(make_service):
    removed = []
    service = make_service(FakeProcessor(page_count=3, size_bytes=10 * MB), source_cleanup=removed.append)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    service.cancel_operation(op_id)
    assert removed == ["doc.pdf"]
