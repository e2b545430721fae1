import pytest

from doc_scheduler.scheduling.config import MB
from doc_scheduler.scheduling.errors import TransientIOError, UnrecoverableInputError
from doc_scheduler.scheduling.interfaces import SourceInfo
from doc_scheduler.scheduling.models import Band, ChunkStatus
from doc_scheduler.scheduling.chunking import concatenate_parts, split_pages

from conftest import FakeProcessor, drive


def _expected(pages):
    return b"\n\n".join(f"pages {p}-{p}".encode() for p in pages) + b"\n"


@pytest.mark.parametrize(
    "page_count, per_chunk, expected",
    [
        (12, 1, [(i, i) for i in range(1, 13)]),
        (10, 4, [(1, 4), (5, 8), (9, 10)]),
        (10, 100, [(1, 5), (6, 10)]),
        (3, 100, [(1, 2), (3, 3)]),
    ],
)
def test_split_pages(page_count, per_chunk, expected):
    assert split_pages(page_count, per_chunk) == expected


def test_split_pages_covers_every_page_once():
    ranges = split_pages(97, 7)
    pages = [p for first, last in ranges for p in range(first, last + 1)]
    assert pages == list(range(1, 98))


def test_single_page_source_cannot_be_split():
    with pytest.raises(ValueError):
        split_pages(1, 1)


def test_concatenate_text_and_binary():
    assert concatenate_parts([b"a\n", b"b"], "md") == b"a\n\nb\n"
    assert concatenate_parts([b"\x00\x01", b"\x02"], "pdf") == b"\x00\x01\x02"


def test_should_chunk_factors(make_service, gauge):
    service = make_service(FakeProcessor())
    coordinator = service.coordinator
    small = SourceInfo(size_bytes=1024, page_count=4)

    assert not coordinator.should_chunk(small, "md")
    assert coordinator.should_chunk(SourceInfo(size_bytes=10 * MB, page_count=4), "md")
    assert coordinator.should_chunk(small, "xlsx")

    gauge.value = 0.7
    service.context.monitor.sample()
    assert service.context.monitor.band is Band.WARNING
    assert coordinator.should_chunk(small, "md")


@pytest.mark.asyncio
async def test_two_of_twelve_failed_chunks_yield_degraded_result_in_order(make_service, clock):
    processor = FakeProcessor(
        page_count=12,
        size_bytes=10 * MB,
        fail_when=lambda pr: UnrecoverableInputError("corrupt page") if pr in ((4, 4), (8, 8)) else None,
    )
    service = make_service(processor)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "degraded"

    op = service.context.registry.get(op_id)
    assert len(op.chunks) == 12
    assert op.completed_chunks == 10
    assert op.failed_chunks == 2
    assert [c.index for c in op.chunks if c.status is ChunkStatus.FAILED] == [3, 7]
    assert "Missing chunk indices: 3, 7" in op.error_message
    assert op.progress_percent == 100
    result = await service.get_result(op_id)
    assert result == _expected([p for p in range(1, 13) if p not in (4, 8)])


@pytest.mark.asyncio
async def test_combine_order_is_independent_of_completion_order(make_service, clock):
    # later pages finish first
    processor = FakeProcessor(page_count=4, size_bytes=10 * MB, delay=lambda pr: (5 - pr[0]) * 0.02 if pr else 0)
    service = make_service(processor)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "completed"
    assert await service.get_result(op_id) == _expected([1, 2, 3, 4])
    assert service.get_status(op_id)["error_message"] is None


@pytest.mark.asyncio
async def test_too_many_failed_chunks_fall_back_to_whole_document(make_service, clock):
    processor = FakeProcessor(
        page_count=4,
        size_bytes=10 * MB,
        fail_when=lambda pr: UnrecoverableInputError("bad segment") if pr is not None else None,
    )
    service = make_service(processor)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "completed"
    op = service.context.registry.get(op_id)
    assert op.fallback_attempted
    assert processor.calls[-1] is None
    assert await service.get_result(op_id) == b"pages 1-4"


@pytest.mark.asyncio
async def test_failed_fallback_reports_partial_chunk_failure(make_service, clock):
    processor = FakeProcessor(
        page_count=4,
        size_bytes=10 * MB,
        fail_when=lambda pr: UnrecoverableInputError("unreadable"),
    )
    service = make_service(processor)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "failed"
    status = service.get_status(op_id)
    assert status["error_kind"] == "PartialChunkFailure"
    assert "0, 1, 2, 3" in status["error_message"]
    # four chunk jobs plus exactly one fallback
    assert len(processor.calls) == 5


@pytest.mark.asyncio
async def test_chunk_retries_recover_transient_errors(make_service, clock):
    seen = set()

    def flaky(pr):
        if pr == (2, 2) and pr not in seen:
            seen.add(pr)
            return TransientIOError("blip")
        return None

    service = make_service(FakeProcessor(page_count=3, size_bytes=10 * MB, fail_when=flaky))
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "completed"
    op = service.context.registry.get(op_id)
    assert op.chunk(1).attempts == 2
    assert await service.get_result(op_id) == _expected([1, 2, 3])


@pytest.mark.asyncio
async def test_split_failure_converts_whole_document(make_service, clock, monkeypatch):
    processor = FakeProcessor(page_count=6, size_bytes=10 * MB)
    service = make_service(processor)

    def broken_plan(info, target_format):
        raise RuntimeError("page tree unreadable")

    monkeypatch.setattr(service.coordinator, "plan_chunks", broken_plan)
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "completed"
    assert not service.context.registry.get(op_id).is_chunked
    assert processor.calls == [None]


@pytest.mark.asyncio
async def test_unreadable_source_fails_operation(make_service):
    processor = FakeProcessor()

    def broken_describe(input_ref, source_format):
        raise FileNotFoundError(input_ref)

    processor.describe = broken_describe
    service = make_service(processor)
    op_id = await service.create_operation("missing.pdf", "pdf", "md")

    status = service.get_status(op_id)
    assert status["status"] == "failed"
    assert status["error_kind"] == "UnrecoverableInputError"


@pytest.mark.asyncio
async def test_degraded_storage_marks_operation_degraded(make_service, clock, primary_store):
    primary_store.failures = 10_000
    service = make_service(FakeProcessor())
    op_id = await service.create_operation("doc.pdf", "pdf", "md")

    assert await drive(service, clock, op_id) == "degraded"
    assert "fallback" in service.get_status(op_id)["error_message"]
    assert await service.get_result(op_id) == b"pages 1-1"
