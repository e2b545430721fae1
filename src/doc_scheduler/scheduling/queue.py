import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Protocol

from ..logging_config import set_correlation_id
from .context import SchedulerContext
from .errors import ConversionError, ResourceExhaustedError, classify_error
from .interfaces import JobProcessor
from .models import Band, ChunkStatus, Job, JobEvent, OperationStatus
from .uploads import UploadResult, content_key

logger = logging.getLogger(__name__)


class JobListener(Protocol):
    async def job_succeeded(self, job: Job, result: UploadResult) -> None:
        ...

    async def job_failed(self, job: Job, error: ConversionError) -> None:
        ...

    async def job_cancelled(self, job: Job) -> None:
        ...


class _OperationCancelled(Exception):
    pass


@dataclass(frozen=True)
class QueueStats:
    queued_jobs: int
    active_jobs: int
    max_concurrency: int
    memory_band: str
    paused: bool
    completed_jobs: int
    failed_jobs: int
    average_job_ms: float
    estimated_wait_ms: int


class ProcessingQueue:
    """Admission-controlled, priority-ordered job scheduler.

    ``tick()`` is the only place jobs are admitted. Each admitted job runs as
    its own asyncio task; the number of running tasks never exceeds
    ``max_concurrency`` at admission time. The backlog is owned by the event
    loop thread and only touched by ``enqueue``, ``tick``, ``remove_operation``
    and the retry path.
    """

    def __init__(self, context: SchedulerContext, processor: JobProcessor) -> None:
        self._ctx = context
        self._config = context.config
        self._processor = processor
        self._listener: JobListener | None = None
        self._backlog: list[Job] = []
        self._active: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._active_estimate = 0
        self._sequence = itertools.count()
        self._paused = False
        self._hold_until: float | None = None
        self.max_concurrency = self._config.base_concurrency
        self.peak_active = 0
        self.completed_jobs = 0
        self.failed_jobs = 0
        self._total_job_seconds = 0.0
        context.monitor.subscribe(self._on_band_change)

    def set_listener(self, listener: JobListener) -> None:
        self._listener = listener

    @property
    def queued_count(self) -> int:
        return len(self._backlog)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def backlog(self) -> list[Job]:
        return sorted(self._backlog, key=lambda j: j.sort_key)

    def active_for(self, operation_id: str) -> int:
        return sum(1 for j in self._active.values() if j.operation_id == operation_id)

    def queued_for(self, operation_id: str) -> int:
        return sum(1 for j in self._backlog if j.operation_id == operation_id)

    def enqueue(self, job: Job) -> str:
        job.enqueued_at = self._ctx.clock()
        job.sequence = next(self._sequence)
        self._backlog.append(job)
        logger.info(
            "Job %s queued for operation %s (chunk=%s, priority=%d, estimate=%.1fMB, queue size=%d)",
            job.job_id,
            job.operation_id,
            job.chunk_index,
            job.priority,
            job.resource_estimate / (1024 * 1024),
            len(self._backlog),
        )
        return job.job_id

    def remove_operation(self, operation_id: str) -> list[Job]:
        """Drop every queued, not yet started job of an operation."""
        removed = [j for j in self._backlog if j.operation_id == operation_id]
        if removed:
            self._backlog = [j for j in self._backlog if j.operation_id != operation_id]
            for job in removed:
                job.apply(JobEvent.CANCEL)
            logger.info("Removed %d queued jobs of operation %s", len(removed), operation_id)
        return removed

    def pause(self) -> None:
        """Operator pause; holds admission until :meth:`resume`. Active jobs finish."""
        logger.info("Pausing admission (active jobs will finish)")
        self._paused = True

    def resume(self) -> None:
        logger.info("Resuming admission")
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused or self._pressure_hold_active(self._ctx.clock())

    def position_of(self, operation_id: str) -> int | None:
        """1-based backlog position of the operation's best-placed queued job."""
        for position, job in enumerate(self.backlog(), start=1):
            if job.operation_id == operation_id:
                return position
        return None

    def wait_at_position(self, position: int) -> int:
        """Estimated milliseconds before the job at ``position`` is admitted."""
        return int((position - 1) * self._average_job_ms() / self.max_concurrency)

    def tick(self) -> list[Job]:
        """Adjust concurrency to the current memory band and admit what fits."""
        self._adjust_concurrency()
        now = self._ctx.clock()
        if self._paused or self._pressure_hold_active(now) or not self._backlog:
            return []

        budget_left = self._config.memory_budget_bytes - self._active_estimate
        admitted: list[Job] = []
        for job in self.backlog():
            if len(self._active) >= self.max_concurrency:
                break
            if job.not_before > now:
                continue
            # An unfit job is skipped, not waited on, so smaller jobs behind it
            # still run. A job larger than the whole budget runs alone.
            if job.resource_estimate > budget_left and self._active:
                logger.debug("Skipping job %s: estimate exceeds remaining memory budget", job.job_id)
                continue
            self._admit(job)
            budget_left -= job.resource_estimate
            admitted.append(job)
        return admitted

    async def join_active(self) -> None:
        """Wait until no job is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def stats(self) -> QueueStats:
        average = self._average_job_ms()
        return QueueStats(
            queued_jobs=len(self._backlog),
            active_jobs=len(self._active),
            max_concurrency=self.max_concurrency,
            memory_band=self._ctx.monitor.band.label,
            paused=self.paused,
            completed_jobs=self.completed_jobs,
            failed_jobs=self.failed_jobs,
            average_job_ms=round(average, 1),
            estimated_wait_ms=int(len(self._backlog) / self.max_concurrency * average),
        )

    def _adjust_concurrency(self) -> None:
        band = self._ctx.monitor.band
        current = self.max_concurrency
        if band is Band.EMERGENCY:
            target = 1
        elif band >= Band.WARNING:
            target = max(1, current - 1)
        elif len(self._backlog) > len(self._active):
            target = min(self._config.max_concurrency, current + 1)
        else:
            target = current
        if target != current:
            logger.info(
                "Adjusting concurrency %d -> %d (band=%s, queued=%d, active=%d)",
                current,
                target,
                band.label,
                len(self._backlog),
                len(self._active),
            )
            self.max_concurrency = target

    def _average_job_ms(self) -> float:
        finished = self.completed_jobs + self.failed_jobs
        return (self._total_job_seconds / finished * 1000) if finished else 0.0

    def _pressure_hold_active(self, now: float) -> bool:
        if self._hold_until is None:
            return False
        if now < self._hold_until:
            return True
        self._hold_until = None
        logger.info("Memory pressure hold expired; admission resumes")
        return False

    def _on_band_change(self, old: Band, new: Band, ratio: float) -> None:
        if new is Band.EMERGENCY and self.max_concurrency > 1:
            logger.warning("Memory emergency: concurrency %d -> 1", self.max_concurrency)
            self.max_concurrency = 1
        hold = self._config.critical_pause_seconds
        if new >= Band.CRITICAL and new > old and hold > 0:
            self._hold_until = self._ctx.clock() + hold
            logger.warning("Memory %s: holding admission for %.0fs", new.label, hold)
        elif new < Band.CRITICAL and self._hold_until is not None:
            self._hold_until = None
            logger.info("Memory back to %s; admission resumes", new.label)

    def _admit(self, job: Job) -> None:
        self._backlog.remove(job)
        job.apply(JobEvent.ADMIT)
        job.started_at = self._ctx.clock()
        self._active[job.job_id] = job
        self._active_estimate += job.resource_estimate
        self.peak_active = max(self.peak_active, len(self._active))
        logger.info(
            "Processing job %s (attempt %d/%d, active=%d/%d)",
            job.job_id,
            job.attempts + 1,
            job.max_attempts,
            len(self._active),
            self.max_concurrency,
        )
        self._tasks[job.job_id] = asyncio.create_task(self._run(job), name=f"job-{job.job_id}")

    def _release(self, job: Job) -> None:
        self._active.pop(job.job_id, None)
        self._tasks.pop(job.job_id, None)
        self._active_estimate -= job.resource_estimate
        if job.started_at is not None:
            self._total_job_seconds += self._ctx.clock() - job.started_at

    async def _run(self, job: Job) -> None:
        set_correlation_id(job.correlation_id)
        try:
            result = await self._execute(job)
        except asyncio.CancelledError:
            self._release(job)
            raise
        except _OperationCancelled:
            self._release(job)
            job.apply(JobEvent.CANCEL)
            logger.info("Job %s aborted: operation %s is cancelling", job.job_id, job.operation_id)
            await self._notify("job_cancelled", job)
        except Exception as exc:
            self._release(job)
            await self._handle_failure(job, classify_error(exc))
        else:
            self._release(job)
            job.apply(JobEvent.SUCCEED)
            self.completed_jobs += 1
            self._record_chunk(job, ChunkStatus.COMPLETED, result_ref=result.ref, storage_degraded=result.degraded)
            logger.info("Job %s completed", job.job_id)
            await self._notify("job_succeeded", job, result)

    async def _execute(self, job: Job) -> UploadResult:
        registry = self._ctx.registry
        op = registry.get(job.operation_id)
        if self._is_cancelling(job.operation_id):
            raise _OperationCancelled()
        if op.status is OperationStatus.QUEUED:
            registry.transition(op.id, OperationStatus.QUEUED, OperationStatus.PROCESSING)
        if job.chunk_index is not None:
            registry.update_chunk(op.id, job.chunk_index, {}, {"status": ChunkStatus.ACTIVE})
        else:
            registry.advance_progress(op.id, 10)

        options = dict(op.options)
        if job.page_range is not None:
            options["page_range"] = job.page_range
        output_ref = await asyncio.to_thread(
            self._processor.convert, op.source_ref, op.source_format, op.target_format, options
        )
        try:
            if self._is_cancelling(job.operation_id):
                raise _OperationCancelled()
            data = await asyncio.to_thread(self._processor.read_output, output_ref)
            result = await self._ctx.uploads.upload(data, content_key(data, op.id, job.chunk_index))
        finally:
            await asyncio.to_thread(self._processor.discard_output, output_ref)
        if self._is_cancelling(job.operation_id):
            raise _OperationCancelled()
        return result

    async def _handle_failure(self, job: Job, error: ConversionError) -> None:
        cfg = self._config
        if self._is_cancelling(job.operation_id):
            job.apply(JobEvent.CANCEL)
            logger.info(
                "Job %s failed while operation %s is cancelling; not retried: %s", job.job_id, job.operation_id, error
            )
            await self._notify("job_cancelled", job)
            return
        if isinstance(error, ResourceExhaustedError) and job.resource_requeues < cfg.max_resource_requeues:
            self.max_concurrency = max(1, self.max_concurrency - 1)
            job.resource_requeues += 1
            job.apply(JobEvent.REQUEUE)
            job.not_before = self._ctx.clock()
            self._backlog.append(job)
            logger.warning(
                "Job %s hit memory pressure; concurrency now %d, requeued (%d/%d)",
                job.job_id,
                self.max_concurrency,
                job.resource_requeues,
                cfg.max_resource_requeues,
            )
            return

        job.attempts += 1
        if error.retryable and job.attempts < job.max_attempts:
            delay = min(cfg.retry_base_delay * (2**job.attempts), cfg.retry_max_delay)
            job.apply(JobEvent.RETRY)
            job.not_before = self._ctx.clock() + delay
            self._backlog.append(job)
            logger.warning(
                "Job %s failed, retrying in %.2fs (attempt %d/%d): %s",
                job.job_id,
                delay,
                job.attempts,
                job.max_attempts,
                error,
            )
            return

        job.apply(JobEvent.FAIL)
        self.failed_jobs += 1
        logger.error("Job %s failed permanently after %d attempts: %s", job.job_id, job.attempts, error)
        self._record_chunk(job, ChunkStatus.FAILED, last_error=f"{error.kind}: {error.message}")
        await self._notify("job_failed", job, error)

    def _record_chunk(self, job: Job, status: ChunkStatus, **changes: object) -> None:
        if job.chunk_index is None:
            return
        registry = self._ctx.registry
        op_id = job.operation_id
        changes["attempts"] = job.attempts if status is ChunkStatus.FAILED else job.attempts + 1
        if not registry.update_chunk(op_id, job.chunk_index, {}, {"status": status, **changes}):
            return
        counter = "completed_chunks" if status is ChunkStatus.COMPLETED else "failed_chunks"
        registry.increment(op_id, counter)
        op = registry.get(op_id)
        settled = op.completed_chunks + op.failed_chunks
        registry.advance_progress(op_id, 10 + (80 * settled) // len(op.chunks))

    def _is_cancelling(self, operation_id: str) -> bool:
        return self._ctx.registry.get(operation_id).status is OperationStatus.CANCELLING

    async def _notify(self, method: str, *args: object) -> None:
        if self._listener is None:
            return
        try:
            await getattr(self._listener, method)(*args)
        except Exception:
            logger.exception("Job listener %s failed for job %s", method, getattr(args[0], "job_id", "?"))
