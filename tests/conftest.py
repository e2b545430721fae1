import asyncio
import threading
import time
import uuid
from typing import Callable

import pytest

from doc_scheduler.scheduling.adapters import InMemoryObjectStore
from doc_scheduler.scheduling.config import MB, SchedulerConfig
from doc_scheduler.scheduling.interfaces import SourceInfo
from doc_scheduler.scheduling.service import ConversionService


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedGauge:
    """Memory gauge whose reading is set by the test."""

    def __init__(self, value: float = 0.1) -> None:
        self.value = value
        self.calls = 0

    def __call__(self) -> float:
        self.calls += 1
        return self.value


class FakeProcessor:
    """Deterministic stand-in for the document converter.

    Each conversion produces ``b"pages a-b"`` for the requested page range.
    ``fail_when`` may return an exception to raise for a given page range
    (``None`` for a whole-document job).
    """

    def __init__(
        self,
        page_count: int = 1,
        size_bytes: int = 1024,
        *,
        fail_when: Callable[[tuple[int, int] | None], BaseException | None] | None = None,
        delay: Callable[[tuple[int, int] | None], float] | float = 0.0,
        gate: threading.Event | None = None,
    ) -> None:
        self.page_count = page_count
        self.size_bytes = size_bytes
        self.fail_when = fail_when
        self.delay = delay
        self.gate = gate
        self.calls: list[tuple[int, int] | None] = []
        self.outputs: dict[str, bytes] = {}
        self.discarded: list[str] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def describe(self, input_ref: str, source_format: str) -> SourceInfo:
        return SourceInfo(size_bytes=self.size_bytes, page_count=self.page_count)

    def convert(self, input_ref, source_format, target_format, options):
        page_range = options.get("page_range")
        with self._lock:
            self.calls.append(page_range)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            wait = self.delay(page_range) if callable(self.delay) else self.delay
            if wait:
                time.sleep(wait)
            if self.fail_when is not None:
                exc = self.fail_when(page_range)
                if exc is not None:
                    raise exc
            first, last = page_range or (1, self.page_count)
            ref = uuid.uuid4().hex
            self.outputs[ref] = f"pages {first}-{last}".encode()
            return ref
        finally:
            with self._lock:
                self.active -= 1

    def read_output(self, output_ref: str) -> bytes:
        return self.outputs[output_ref]

    def discard_output(self, output_ref: str) -> None:
        self.discarded.append(output_ref)
        self.outputs.pop(output_ref, None)


class FlakyStore(InMemoryObjectStore):
    """In-memory store whose first ``failures`` puts raise ``OSError``."""

    def __init__(self, failures: int = 0, put_delay: float = 0.0) -> None:
        super().__init__()
        self.failures = failures
        self.put_delay = put_delay
        self.put_calls = 0

    def put(self, data: bytes) -> str:
        self.put_calls += 1
        if self.put_delay:
            time.sleep(self.put_delay)
        if self.put_calls <= self.failures:
            raise OSError("storage unavailable")
        return super().put(data)


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


async def drive(service: ConversionService, clock: ManualClock, op_id: str, max_ticks: int = 200) -> str:
    """Tick the queue by hand until the operation is terminal, skipping retry delays."""
    registry = service.context.registry
    for _ in range(max_ticks):
        status = registry.get(op_id).status
        if status.is_terminal:
            return status.value
        service.queue.tick()
        await service.queue.join_active()
        await asyncio.sleep(0)
        clock.advance(60)
    raise AssertionError(f"operation {op_id} did not settle: {registry.get(op_id)}")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def gauge():
    return ScriptedGauge()


@pytest.fixture
def config():
    return SchedulerConfig(
        base_concurrency=2,
        max_concurrency=4,
        cooldown_seconds=30.0,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        chunk_size_threshold_bytes=5 * MB,
        chunk_memory_ceiling_bytes=1 * MB,
        upload_max_attempts=3,
        upload_base_delay=0.0,
        upload_max_delay=0.0,
        upload_timeout=5.0,
        upload_max_timeout=5.0,
    )


@pytest.fixture
def primary_store():
    return FlakyStore()


@pytest.fixture
def fallback_store():
    return InMemoryObjectStore()


@pytest.fixture
def make_service(config, clock, gauge, primary_store, fallback_store):
    def _make(processor: FakeProcessor, **overrides) -> ConversionService:
        return ConversionService(
            processor,
            overrides.pop("durable_store", primary_store),
            overrides.pop("fallback_store", fallback_store),
            config=overrides.pop("config", config),
            memory_gauge=gauge,
            clock=clock,
            sleep=no_sleep,
            source_cleanup=overrides.pop("source_cleanup", None),
        )

    return _make
