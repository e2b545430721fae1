import os
from dataclasses import dataclass, field

MB = 1024 * 1024

# Estimated peak memory per source page, by target format.
DEFAULT_PAGE_MEMORY_MB: dict[str, float] = {
    "docx": 5.0,
    "xlsx": 7.0,
    "pptx": 4.0,
    "jpg": 2.0,
    "png": 3.0,
    "html": 1.0,
    "md": 0.5,
    "txt": 0.5,
}

# Relative cost of producing each target format.
DEFAULT_FORMAT_COMPLEXITY: dict[str, float] = {
    "md": 1.0,
    "txt": 1.0,
    "html": 1.2,
    "jpg": 1.5,
    "pptx": 1.6,
    "png": 2.0,
    "docx": 2.0,
    "xlsx": 2.5,
}


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class SchedulerConfig:
    # Admission control
    base_concurrency: int = 2
    max_concurrency: int = 4
    memory_budget_bytes: int = 1536 * MB
    tick_interval: float = 0.5

    # Memory monitor
    memory_limit_bytes: int = 0  # 0: use system memory utilization
    warning_threshold: float = 0.60
    critical_threshold: float = 0.75
    emergency_threshold: float = 0.85
    cooldown_seconds: float = 30.0
    sample_interval: float = 5.0
    reclaim_interval: float = 60.0
    critical_pause_seconds: float = 30.0  # admission hold on entering Critical; 0 disables

    # Job retry
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_resource_requeues: int = 10

    # Chunking
    chunk_size_threshold_bytes: int = 5 * MB
    chunk_memory_ceiling_bytes: int = 256 * MB
    complexity_limit: float = 2.0
    warning_safety_factor: float = 1.5
    chunk_failure_tolerance: float = 0.5
    page_memory_mb: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_PAGE_MEMORY_MB))
    format_complexity: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_FORMAT_COMPLEXITY))
    default_page_memory_mb: float = 3.0

    # Durable uploads
    upload_concurrency: int = 2
    upload_max_attempts: int = 4
    upload_base_delay: float = 0.5
    upload_max_delay: float = 8.0
    upload_timeout: float = 30.0
    upload_max_timeout: float = 120.0

    def __post_init__(self) -> None:
        if not (0 < self.warning_threshold < self.critical_threshold < self.emergency_threshold <= 1):
            raise ValueError("memory thresholds must satisfy 0 < warning < critical < emergency <= 1")
        if self.base_concurrency < 1 or self.max_concurrency < self.base_concurrency:
            raise ValueError("concurrency must satisfy 1 <= base_concurrency <= max_concurrency")
        if not (0 <= self.chunk_failure_tolerance <= 1):
            raise ValueError("chunk_failure_tolerance must be within [0, 1]")
        if self.max_attempts < 1 or self.upload_max_attempts < 1:
            raise ValueError("attempt limits must be at least 1")

    def page_memory_bytes(self, target_format: str) -> int:
        mb = self.page_memory_mb.get(target_format.lower(), self.default_page_memory_mb)
        return int(mb * MB)

    def complexity(self, target_format: str) -> float:
        return self.format_complexity.get(target_format.lower(), 1.0)

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        """Build a configuration from environment variables, falling back to defaults."""
        d = cls()
        return cls(
            base_concurrency=_env_int("BASE_CONCURRENCY", d.base_concurrency),
            max_concurrency=_env_int("MAX_CONCURRENCY", d.max_concurrency),
            memory_budget_bytes=_env_int("MEMORY_BUDGET_MB", d.memory_budget_bytes // MB) * MB,
            tick_interval=_env_float("TICK_INTERVAL_SEC", d.tick_interval),
            memory_limit_bytes=_env_int("MEMORY_LIMIT_MB", 0) * MB,
            warning_threshold=_env_float("MEMORY_WARNING", d.warning_threshold),
            critical_threshold=_env_float("MEMORY_CRITICAL", d.critical_threshold),
            emergency_threshold=_env_float("MEMORY_EMERGENCY", d.emergency_threshold),
            cooldown_seconds=_env_float("MEMORY_COOLDOWN_SEC", d.cooldown_seconds),
            sample_interval=_env_float("SAMPLE_INTERVAL_SEC", d.sample_interval),
            critical_pause_seconds=_env_float("CRITICAL_PAUSE_SEC", d.critical_pause_seconds),
            max_attempts=_env_int("MAX_ATTEMPTS", d.max_attempts),
            retry_base_delay=_env_float("RETRY_BASE_DELAY_SEC", d.retry_base_delay),
            retry_max_delay=_env_float("RETRY_MAX_DELAY_SEC", d.retry_max_delay),
            max_resource_requeues=_env_int("MAX_RESOURCE_REQUEUES", d.max_resource_requeues),
            chunk_size_threshold_bytes=_env_int("CHUNK_SIZE_THRESHOLD_MB", d.chunk_size_threshold_bytes // MB) * MB,
            chunk_memory_ceiling_bytes=_env_int("CHUNK_MEMORY_CEILING_MB", d.chunk_memory_ceiling_bytes // MB) * MB,
            complexity_limit=_env_float("COMPLEXITY_LIMIT", d.complexity_limit),
            chunk_failure_tolerance=_env_float("CHUNK_FAILURE_TOLERANCE", d.chunk_failure_tolerance),
            upload_concurrency=_env_int("UPLOAD_CONCURRENCY", d.upload_concurrency),
            upload_max_attempts=_env_int("UPLOAD_MAX_ATTEMPTS", d.upload_max_attempts),
            upload_base_delay=_env_float("UPLOAD_BASE_DELAY_SEC", d.upload_base_delay),
            upload_max_delay=_env_float("UPLOAD_MAX_DELAY_SEC", d.upload_max_delay),
            upload_timeout=_env_float("UPLOAD_TIMEOUT_SEC", d.upload_timeout),
            upload_max_timeout=_env_float("UPLOAD_MAX_TIMEOUT_SEC", d.upload_max_timeout),
        )
