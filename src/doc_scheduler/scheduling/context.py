import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .config import SchedulerConfig
from .interfaces import ObjectStore
from .memory import MemoryMonitor
from .registry import OperationRegistry
from .uploads import DurableUploadManager


@dataclass
class SchedulerContext:
    """Shared state of one scheduling domain.

    Built once when the service starts and handed by reference to the queue,
    the coordinator and the service itself.
    """

    config: SchedulerConfig
    registry: OperationRegistry
    monitor: MemoryMonitor
    uploads: DurableUploadManager
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


def build_context(
    config: SchedulerConfig,
    durable_store: ObjectStore,
    fallback_store: ObjectStore,
    *,
    memory_gauge: Callable[[], float] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SchedulerContext:
    return SchedulerContext(
        config=config,
        registry=OperationRegistry(),
        monitor=MemoryMonitor(config, memory_gauge, clock=clock),
        uploads=DurableUploadManager(config, durable_store, fallback_store, sleep=sleep),
        clock=clock,
        sleep=sleep,
    )
