"""
Domain layer for resource-aware document conversion.
Provides interfaces (gateways), the scheduling components and a service that
orchestrates conversion operations, abstracting storage and docling so
front-ends (HTTP or others) can use the same core logic.
"""

from .config import SchedulerConfig
from .errors import (
    ConversionError,
    OperationNotFoundError,
    PartialChunkFailure,
    ResourceExhaustedError,
    ResultNotReadyError,
    TransientIOError,
    UnrecoverableInputError,
)
from .interfaces import JobProcessor, ObjectStore, SourceInfo
from .models import Band, OperationStatus
from .service import ConversionService
