import asyncio
import logging
import math
import time
import uuid
from dataclasses import asdict
from typing import Any, Awaitable, Callable

from .chunking import ChunkCoordinator
from .config import SchedulerConfig
from .context import SchedulerContext, build_context
from .errors import ResultNotReadyError
from .interfaces import JobProcessor, ObjectStore
from .models import Operation, OperationStatus
from .queue import ProcessingQueue

logger = logging.getLogger(__name__)


class ConversionService:
    """Core service orchestrating resource-aware conversion operations.

    This service is framework-agnostic. It builds the scheduling context once,
    owns the periodic memory-sampling and queue-tick tasks, and exposes the
    operations used by front-ends (HTTP or others): create, status, cancel,
    queue statistics and result retrieval.
    """

    def __init__(
        self,
        processor: JobProcessor,
        durable_store: ObjectStore,
        fallback_store: ObjectStore,
        *,
        config: SchedulerConfig | None = None,
        memory_gauge: Callable[[], float] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        source_cleanup: Callable[[str], None] | None = None,
    ) -> None:
        self._config = config or SchedulerConfig()
        self._ctx = build_context(
            self._config,
            durable_store,
            fallback_store,
            memory_gauge=memory_gauge,
            clock=clock,
            sleep=sleep,
        )
        self._queue = ProcessingQueue(self._ctx, processor)
        self._coordinator = ChunkCoordinator(self._ctx, self._queue, processor, source_cleanup=source_cleanup)
        self._tasks: list[asyncio.Task] = []

    @property
    def context(self) -> SchedulerContext:
        return self._ctx

    @property
    def queue(self) -> ProcessingQueue:
        return self._queue

    @property
    def coordinator(self) -> ChunkCoordinator:
        return self._coordinator

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._ctx.monitor.sample()
        self._tasks = [
            asyncio.create_task(self._every(self._config.sample_interval, self._ctx.monitor.sample), name="memory-sampler"),
            asyncio.create_task(self._every(self._config.tick_interval, self._queue.tick), name="queue-ticker"),
        ]
        logger.info(
            "Conversion service started (concurrency %d..%d, memory budget %dMB)",
            self._config.base_concurrency,
            self._config.max_concurrency,
            self._config.memory_budget_bytes // (1024 * 1024),
        )

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._queue.shutdown()
        logger.info("Conversion service stopped")

    async def create_operation(
        self,
        source_ref: str,
        source_format: str,
        target_format: str,
        options: dict[str, Any] | None = None,
        priority: int = 5,
        *,
        correlation_id: str | None = None,
    ) -> str:
        """Register a new operation, plan it and submit its jobs. Returns the operation id."""
        op = Operation(
            id=str(uuid.uuid4()),
            source_ref=source_ref,
            source_format=source_format.lower().lstrip("."),
            target_format=target_format.lower().lstrip("."),
            priority=max(1, min(10, priority)),
            options=dict(options or {}),
            correlation_id=correlation_id or str(uuid.uuid4()),
        )
        self._ctx.registry.create(op)
        logger.info(
            "Operation %s created: %s -> %s (priority %d)", op.id, op.source_format, op.target_format, op.priority
        )
        await self._coordinator.start_operation(op.id)
        return op.id

    def get_status(self, operation_id: str) -> dict[str, object]:
        op = self._ctx.registry.get(operation_id)
        position = self._queue.position_of(op.id)
        return {
            "id": op.id,
            "status": op.status.value,
            "progress_percent": op.progress_percent,
            "chunks": {
                "total": len(op.chunks),
                "completed": op.completed_chunks,
                "failed": op.failed_chunks,
            },
            "estimated_time_remaining_ms": self._estimate_remaining_ms(op),
            "queue_position": position,
            "queue_wait_ms": self._queue.wait_at_position(position) if position else None,
            "error_kind": op.error_kind,
            "error_message": op.error_message,
            "result_ref": op.result_ref,
            "correlation_id": op.correlation_id,
            "created_at": op.created_at,
            "completed_at": op.completed_at,
        }

    def cancel_operation(self, operation_id: str) -> bool:
        """Request cancellation. Returns False if the operation already finished."""
        registry = self._ctx.registry
        while True:
            op = registry.get(operation_id)
            if op.status.is_terminal:
                return False
            if op.status is OperationStatus.CANCELLING:
                return True
            if registry.transition(operation_id, op.status, OperationStatus.CANCELLING):
                break
        self._queue.remove_operation(operation_id)
        self._coordinator.finish_cancel(operation_id)
        return True

    def get_queue_stats(self) -> dict[str, object]:
        stats = asdict(self._queue.stats())
        stats["memory_utilization"] = round(self._ctx.monitor.last_ratio, 3)
        stats["pending_uploads"] = self._ctx.uploads.pending
        return stats

    async def get_result(self, operation_id: str) -> bytes:
        op = self._ctx.registry.get(operation_id)
        if op.status not in (OperationStatus.COMPLETED, OperationStatus.DEGRADED) or not op.result_ref:
            raise ResultNotReadyError(operation_id, op.status.value)
        return await self._ctx.uploads.fetch(op.result_ref)

    async def wait_until_settled(self, operation_id: str, *, poll: float = 0.05, timeout: float | None = None) -> str:
        """Poll until the operation reaches a terminal status and return it."""

        async def _poll() -> str:
            while True:
                status = self._ctx.registry.get(operation_id).status
                if status.is_terminal:
                    return status.value
                await asyncio.sleep(poll)

        return await asyncio.wait_for(_poll(), timeout)

    def _estimate_remaining_ms(self, op: Operation) -> int | None:
        if op.status.is_terminal:
            return 0
        stats = self._queue.stats()
        if not stats.average_job_ms:
            return None
        remaining = self._queue.queued_for(op.id) + self._queue.active_for(op.id)
        rounds = math.ceil(remaining / max(1, stats.max_concurrency))
        return int(stats.estimated_wait_ms + rounds * stats.average_job_ms)

    @staticmethod
    async def _every(interval: float, fn: Callable[[], object]) -> None:
        while True:
            try:
                fn()
            except Exception:
                logger.exception("Periodic task %s failed", getattr(fn, "__qualname__", fn))
            await asyncio.sleep(interval)
