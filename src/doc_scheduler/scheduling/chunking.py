import asyncio
import logging
import math
from typing import Callable

from .context import SchedulerContext
from .errors import ConversionError, PartialChunkFailure, classify_error
from .interfaces import JobProcessor, SourceInfo
from .models import Band, Chunk, ChunkStatus, Job, Operation, OperationStatus
from .queue import ProcessingQueue
from .uploads import UploadResult, content_key

logger = logging.getLogger(__name__)

TEXT_FORMATS = frozenset({"md", "markdown", "txt", "html", "csv", "json"})

Combiner = Callable[[list[bytes], str], bytes]


def concatenate_parts(parts: list[bytes], target_format: str) -> bytes:
    """Join chunk outputs in the order given. Text formats get a blank line between parts."""
    if target_format.lower() in TEXT_FORMATS:
        return b"\n\n".join(p.rstrip(b"\n") for p in parts) + b"\n"
    return b"".join(parts)


def split_pages(page_count: int, pages_per_chunk: int) -> list[tuple[int, int]]:
    """Partition pages 1..page_count into contiguous, evenly sized ranges.

    Always yields at least two ranges; a source with fewer than two pages
    cannot be split.
    """
    if page_count < 2:
        raise ValueError(f"cannot split a source with {page_count} page(s)")
    if pages_per_chunk < 1:
        raise ValueError("pages_per_chunk must be positive")
    chunk_count = max(2, math.ceil(page_count / pages_per_chunk))
    size = math.ceil(page_count / chunk_count)
    return [(start, min(start + size - 1, page_count)) for start in range(1, page_count + 1, size)]


class ChunkCoordinator:
    """Decides how an operation runs, submits its jobs and finalizes it.

    Only this class moves an operation into a terminal status (the queue
    records chunk outcomes and progress). Chunk failures never fail the
    operation directly: once every chunk is terminal, the failure ratio
    decides between a full combine, a degraded combine and a single
    whole-document fallback job.
    """

    def __init__(
        self,
        context: SchedulerContext,
        queue: ProcessingQueue,
        processor: JobProcessor,
        *,
        combiner: Combiner = concatenate_parts,
        source_cleanup: Callable[[str], None] | None = None,
    ) -> None:
        self._ctx = context
        self._config = context.config
        self._registry = context.registry
        self._queue = queue
        self._processor = processor
        self._combine = combiner
        self._source_cleanup = source_cleanup
        queue.set_listener(self)

    # Planning

    def page_estimate(self, target_format: str) -> int:
        return int(self._config.page_memory_bytes(target_format) * self._config.complexity(target_format))

    def should_chunk(self, info: SourceInfo, target_format: str) -> bool:
        cfg = self._config
        factors = {
            "size_exceeds_threshold": info.size_bytes > cfg.chunk_size_threshold_bytes,
            "memory_pressure": self._ctx.monitor.band >= Band.WARNING,
            "complex_target": cfg.complexity(target_format) > cfg.complexity_limit,
        }
        decision = any(factors.values())
        logger.info(
            "Chunking decision for %s (%d pages, %.2fMB): %s %s",
            target_format,
            info.page_count,
            info.size_bytes / (1024 * 1024),
            "USE" if decision else "SKIP",
            factors,
        )
        return decision

    def plan_chunks(self, info: SourceInfo, target_format: str) -> list[tuple[int, int]]:
        """Page ranges whose estimate stays under the chunk ceiling even at Warning."""
        worst_case_page = self.page_estimate(target_format) * self._config.warning_safety_factor
        pages_per_chunk = max(1, int(self._config.chunk_memory_ceiling_bytes // max(worst_case_page, 1)))
        return split_pages(info.page_count, pages_per_chunk)

    async def start_operation(self, op_id: str) -> None:
        op = self._registry.get(op_id)
        try:
            info = await asyncio.to_thread(self._processor.describe, op.source_ref, op.source_format)
        except Exception as exc:
            error = classify_error(exc)
            logger.error("Could not inspect source of operation %s: %s", op_id, error)
            self._finalize(op_id, OperationStatus.FAILED, error_kind=error.kind, error_message=error.message)
            return

        ranges: list[tuple[int, int]] | None = None
        if info.page_count >= 2 and self.should_chunk(info, op.target_format):
            try:
                ranges = self.plan_chunks(info, op.target_format)
            except Exception:
                logger.exception("Splitting operation %s failed; converting the whole document", op_id)

        if self._registry.get(op_id).status is OperationStatus.CANCELLING:
            self.finish_cancel(op_id)
            return

        if not ranges:
            self._queue.enqueue(self._whole_document_job(op, info.page_count))
            return

        for index, page_range in enumerate(ranges):
            self._registry.append_chunk(op_id, Chunk(index=index, operation_id=op_id, page_range=page_range))
        self._registry.advance_progress(op_id, 10)
        logger.info("Operation %s split into %d chunks", op_id, len(ranges))
        for index, (first, last) in enumerate(ranges):
            self._queue.enqueue(
                Job(
                    operation_id=op_id,
                    chunk_index=index,
                    page_range=(first, last),
                    resource_estimate=(last - first + 1) * self.page_estimate(op.target_format),
                    priority=op.priority,
                    max_attempts=self._config.max_attempts,
                    correlation_id=op.correlation_id,
                )
            )

    def _whole_document_job(self, op: Operation, page_count: int, *, fallback: bool = False) -> Job:
        return Job(
            operation_id=op.id,
            resource_estimate=max(page_count, 1) * self.page_estimate(op.target_format),
            priority=op.priority,
            max_attempts=self._config.max_attempts,
            is_fallback=fallback,
            correlation_id=op.correlation_id,
        )

    # Queue callbacks

    async def job_succeeded(self, job: Job, result: UploadResult) -> None:
        if job.chunk_index is not None:
            await self._maybe_combine(job.operation_id)
            return
        changes: dict[str, object] = {"result_ref": result.ref}
        if result.degraded:
            changes.update(
                storage_degraded=True,
                error_message="Result stored in fallback storage; durable upload failed",
            )
        status = OperationStatus.DEGRADED if result.degraded else OperationStatus.COMPLETED
        self._finalize(job.operation_id, status, **changes)

    async def job_failed(self, job: Job, error: ConversionError) -> None:
        if job.chunk_index is not None:
            await self._maybe_combine(job.operation_id)
            return
        if job.is_fallback:
            op = self._registry.get(job.operation_id)
            failed = [c.index for c in op.chunks if c.status is ChunkStatus.FAILED]
            aggregate = PartialChunkFailure(
                f"{len(failed)} of {len(op.chunks)} chunks failed (indices {_format_indices(failed)}) "
                f"and the whole-document fallback failed: {error.kind}: {error.message}",
                failed_indices=failed,
            )
            self._finalize(
                job.operation_id,
                OperationStatus.FAILED,
                error_kind=aggregate.kind,
                error_message=aggregate.message,
            )
            return
        self._finalize(job.operation_id, OperationStatus.FAILED, error_kind=error.kind, error_message=error.message)

    async def job_cancelled(self, job: Job) -> None:
        self.finish_cancel(job.operation_id)

    # Combine

    async def _maybe_combine(self, op_id: str) -> None:
        op = self._registry.get(op_id)
        if op.status is OperationStatus.CANCELLING:
            self.finish_cancel(op_id)
            return
        if op.status.is_terminal or not all(c.status.is_terminal for c in op.chunks):
            return
        if not self._registry.update_field(op_id, "combine_claimed", False, True):
            return

        total = len(op.chunks)
        failed = [c.index for c in op.chunks if c.status is ChunkStatus.FAILED]
        succeeded = [c for c in op.chunks if c.status is ChunkStatus.COMPLETED]
        ratio = len(failed) / total
        if failed and (ratio > self._config.chunk_failure_tolerance or not succeeded):
            logger.warning(
                "Operation %s: %d/%d chunks failed (%.1f%% > %.1f%% tolerance); trying whole-document fallback",
                op_id,
                len(failed),
                total,
                ratio * 100,
                self._config.chunk_failure_tolerance * 100,
            )
            self._registry.update_field(op_id, "fallback_attempted", False, True)
            page_count = op.chunks[-1].page_range[1]
            self._queue.enqueue(self._whole_document_job(op, page_count, fallback=True))
            return

        try:
            parts = [await self._ctx.uploads.fetch(c.result_ref or "") for c in succeeded]
            combined = self._combine(parts, op.target_format)
            self._registry.advance_progress(op_id, 90)
            result = await self._ctx.uploads.upload(combined, content_key(combined, op_id))
        except Exception as exc:
            error = classify_error(exc)
            logger.error("Combining operation %s failed: %s", op_id, error)
            self._finalize(op_id, OperationStatus.FAILED, error_kind=error.kind, error_message=error.message)
            return

        warnings = []
        if failed:
            warnings.append(
                f"Missing chunk indices: {_format_indices(failed)} ({len(failed)} of {total} chunks failed)"
            )
        storage_degraded = result.degraded or any(c.storage_degraded for c in succeeded)
        if storage_degraded:
            warnings.append("Some artifacts are held in fallback storage")
        status = OperationStatus.DEGRADED if warnings else OperationStatus.COMPLETED
        changes: dict[str, object] = {"result_ref": result.ref, "storage_degraded": storage_degraded}
        if warnings:
            changes["error_message"] = "; ".join(warnings)
        logger.info("Operation %s combined %d/%d chunks", op_id, len(succeeded), total)
        self._finalize(op_id, status, **changes)

    # Finalization

    def _finalize(self, op_id: str, target: OperationStatus, **changes: object) -> None:
        while True:
            op = self._registry.get(op_id)
            if op.status is OperationStatus.CANCELLING:
                self.finish_cancel(op_id)
                return
            if op.status.is_terminal:
                logger.info("Operation %s already %s; dropping %s", op_id, op.status.value, target.value)
                return
            if self._registry.transition(op_id, op.status, target, **changes):
                self._cleanup(op_id)
                return

    def finish_cancel(self, op_id: str) -> None:
        if self._queue.active_for(op_id) or self._queue.queued_for(op_id):
            return
        if self._registry.transition(op_id, OperationStatus.CANCELLING, OperationStatus.CANCELLED):
            self._cleanup(op_id)

    def _cleanup(self, op_id: str) -> None:
        """Drop intermediate artifacts and the uploaded source of a settled operation."""
        op = self._registry.get(op_id)
        keep = frozenset({op.result_ref}) if op.result_ref else frozenset()
        try:
            self._ctx.uploads.release(op_id, keep)
        except Exception:
            logger.warning("Could not release artifacts of operation %s", op_id, exc_info=True)
        if self._source_cleanup is None:
            return
        try:
            self._source_cleanup(op.source_ref)
        except Exception:
            logger.warning("Could not remove source %s of operation %s", op.source_ref, op_id, exc_info=True)


def _format_indices(indices: list[int]) -> str:
    return ", ".join(str(i) for i in indices)
