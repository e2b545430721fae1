import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

from .errors import InvalidTransitionError


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Band(IntEnum):
    """Memory utilization bands, ordered by increasing pressure."""

    NORMAL = 0
    WARNING = 1
    CRITICAL = 2
    EMERGENCY = 3

    @property
    def label(self) -> str:
        return self.name.lower()


class OperationStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.DEGRADED, OperationStatus.FAILED, OperationStatus.CANCELLED}
)

OPERATION_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.QUEUED: frozenset(
        {OperationStatus.PROCESSING, OperationStatus.CANCELLING, OperationStatus.FAILED}
    ),
    OperationStatus.PROCESSING: frozenset(
        {
            OperationStatus.COMPLETED,
            OperationStatus.DEGRADED,
            OperationStatus.FAILED,
            OperationStatus.CANCELLING,
        }
    ),
    OperationStatus.CANCELLING: frozenset({OperationStatus.CANCELLED}),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.DEGRADED: frozenset(),
    OperationStatus.FAILED: frozenset(),
    OperationStatus.CANCELLED: frozenset(),
}


class ChunkStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ChunkStatus.COMPLETED, ChunkStatus.FAILED)


@dataclass(frozen=True)
class Chunk:
    index: int
    operation_id: str
    page_range: tuple[int, int]
    status: ChunkStatus = ChunkStatus.QUEUED
    result_ref: str | None = None
    attempts: int = 0
    last_error: str | None = None
    storage_degraded: bool = False


@dataclass(frozen=True)
class Operation:
    """Immutable snapshot of a conversion request.

    The registry swaps whole snapshots on every write, so a reader holding one
    always sees a consistent view.
    """

    id: str
    source_ref: str
    source_format: str
    target_format: str
    priority: int = 5
    options: dict[str, Any] = field(default_factory=dict)
    status: OperationStatus = OperationStatus.QUEUED
    progress_percent: int = 0
    result_ref: str | None = None
    chunks: tuple[Chunk, ...] = ()
    completed_chunks: int = 0
    failed_chunks: int = 0
    combine_claimed: bool = False
    fallback_attempted: bool = False
    storage_degraded: bool = False
    error_kind: str | None = None
    error_message: str | None = None
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utcnow)
    completed_at: str | None = None

    @property
    def is_chunked(self) -> bool:
        return bool(self.chunks)

    def chunk(self, index: int) -> Chunk:
        return self.chunks[index]


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobEvent(str, Enum):
    ADMIT = "admit"
    SUCCEED = "succeed"
    RETRY = "retry"
    REQUEUE = "requeue"
    FAIL = "fail"
    CANCEL = "cancel"


JOB_TRANSITIONS: dict[tuple[JobState, JobEvent], JobState] = {
    (JobState.QUEUED, JobEvent.ADMIT): JobState.ACTIVE,
    (JobState.QUEUED, JobEvent.CANCEL): JobState.CANCELLED,
    (JobState.ACTIVE, JobEvent.SUCCEED): JobState.COMPLETED,
    (JobState.ACTIVE, JobEvent.RETRY): JobState.QUEUED,
    (JobState.ACTIVE, JobEvent.REQUEUE): JobState.QUEUED,
    (JobState.ACTIVE, JobEvent.FAIL): JobState.FAILED,
    (JobState.ACTIVE, JobEvent.CANCEL): JobState.CANCELLED,
}


@dataclass
class Job:
    """Transient queue entry for a whole-document or single-chunk conversion."""

    operation_id: str
    resource_estimate: int
    priority: int = 5
    chunk_index: int | None = None
    page_range: tuple[int, int] | None = None
    max_attempts: int = 3
    is_fallback: bool = False
    correlation_id: str = ""
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: float = 0.0
    sequence: int = 0
    attempts: int = 0
    resource_requeues: int = 0
    not_before: float = 0.0
    state: JobState = JobState.QUEUED
    started_at: float | None = None

    def __post_init__(self) -> None:
        self.priority = max(1, min(10, self.priority))

    @property
    def sort_key(self) -> tuple[int, float, int]:
        return (-self.priority, self.enqueued_at, self.sequence)

    def apply(self, event: JobEvent) -> JobState:
        try:
            self.state = JOB_TRANSITIONS[(self.state, event)]
        except KeyError:
            raise InvalidTransitionError(self.state.value, event.value, {"job_id": self.job_id}) from None
        return self.state
