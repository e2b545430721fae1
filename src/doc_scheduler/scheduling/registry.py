import dataclasses
import logging
import threading
from typing import Any

from .errors import InvalidTransitionError, OperationNotFoundError
from .models import OPERATION_TRANSITIONS, Chunk, Operation, OperationStatus, utcnow

logger = logging.getLogger(__name__)

_MISSING = object()


class OperationRegistry:
    """Authoritative in-memory store of operation and chunk state.

    Writers go through compare-and-set methods serialized by a lock. Every
    write replaces the stored snapshot with a new immutable ``Operation``, so
    ``get`` can read without locking and never observes a half-applied write.
    """

    def __init__(self) -> None:
        self._ops: dict[str, Operation] = {}
        self._lock = threading.Lock()

    def create(self, op: Operation) -> Operation:
        with self._lock:
            if op.id in self._ops:
                raise ValueError(f"operation {op.id} already exists")
            self._ops[op.id] = op
        return op

    def get(self, op_id: str) -> Operation:
        op = self._ops.get(op_id)
        if op is None:
            raise OperationNotFoundError(op_id)
        return op

    def update_field(self, op_id: str, field: str, expected: Any, new: Any) -> bool:
        """Set ``field`` to ``new`` only if it currently equals ``expected``."""
        with self._lock:
            op = self._require(op_id)
            if getattr(op, field, _MISSING) != expected:
                return False
            self._ops[op_id] = dataclasses.replace(op, **{field: new})
            return True

    def update_fields(self, op_id: str, expected: dict[str, Any], changes: dict[str, Any]) -> bool:
        """Multi-field variant of :meth:`update_field`, applied atomically."""
        with self._lock:
            op = self._require(op_id)
            for name, value in expected.items():
                if getattr(op, name, _MISSING) != value:
                    return False
            self._ops[op_id] = dataclasses.replace(op, **changes)
            return True

    def increment(self, op_id: str, field: str, delta: int = 1) -> int:
        while True:
            current = getattr(self.get(op_id), field)
            if self.update_field(op_id, field, current, current + delta):
                return current + delta

    def advance_progress(self, op_id: str, percent: int) -> int:
        """Raise progress to ``percent``; never moves it backwards."""
        percent = max(0, min(100, int(percent)))
        while True:
            current = self.get(op_id).progress_percent
            if percent <= current:
                return current
            if self.update_field(op_id, "progress_percent", current, percent):
                return percent

    def transition(
        self,
        op_id: str,
        expected: OperationStatus,
        target: OperationStatus,
        **changes: Any,
    ) -> bool:
        """Move an operation from ``expected`` to ``target`` status.

        Returns False when the current status is no longer ``expected``; raises
        ``InvalidTransitionError`` when the state machine forbids the move.
        """
        if target not in OPERATION_TRANSITIONS[expected]:
            raise InvalidTransitionError(expected.value, target.value, {"operation_id": op_id})
        if target.is_terminal:
            changes.setdefault("completed_at", utcnow())
            if target in (OperationStatus.COMPLETED, OperationStatus.DEGRADED):
                changes.setdefault("progress_percent", 100)
        ok = self.update_fields(op_id, {"status": expected}, {"status": target, **changes})
        if ok:
            logger.info("Operation %s: %s -> %s", op_id, expected.value, target.value)
        return ok

    def append_chunk(self, op_id: str, chunk: Chunk) -> None:
        with self._lock:
            op = self._require(op_id)
            if chunk.operation_id != op_id:
                raise ValueError("chunk belongs to a different operation")
            if chunk.index != len(op.chunks):
                raise ValueError(f"chunk index {chunk.index} is not contiguous (expected {len(op.chunks)})")
            self._ops[op_id] = dataclasses.replace(op, chunks=op.chunks + (chunk,))

    def update_chunk(
        self,
        op_id: str,
        index: int,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        """CAS on a single chunk. Terminal chunks are never modified."""
        with self._lock:
            op = self._require(op_id)
            chunk = op.chunks[index]
            if chunk.status.is_terminal:
                return False
            for name, value in expected.items():
                if getattr(chunk, name) != value:
                    return False
            chunks = list(op.chunks)
            chunks[index] = dataclasses.replace(chunk, **changes)
            self._ops[op_id] = dataclasses.replace(op, chunks=tuple(chunks))
            return True

    def _require(self, op_id: str) -> Operation:
        op = self._ops.get(op_id)
        if op is None:
            raise OperationNotFoundError(op_id)
        return op
