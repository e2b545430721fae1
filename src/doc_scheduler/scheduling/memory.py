import gc
import logging
import time
from typing import Callable

import psutil

from .config import SchedulerConfig
from .models import Band

logger = logging.getLogger(__name__)

TransitionHandler = Callable[[Band, Band, float], None]


def memory_ratio_gauge(limit_bytes: int = 0) -> Callable[[], float]:
    """Return a gauge reporting memory utilization as a ratio in [0, 1+].

    With a limit, the ratio is this process's RSS against it (container memory
    caps are usually tighter than host memory); without one, system-wide usage.
    """
    if limit_bytes > 0:
        proc = psutil.Process()

        def _rss_ratio() -> float:
            return proc.memory_info().rss / limit_bytes

        return _rss_ratio

    def _system_ratio() -> float:
        return psutil.virtual_memory().percent / 100.0

    return _system_ratio


class MemoryMonitor:
    """Classifies memory utilization into bands with downward hysteresis.

    Moving to a higher band happens on the first sample above its threshold.
    Moving down requires the ratio to stay below the current band's threshold
    for ``cooldown_seconds``, and then lands on the highest band observed during
    that window. Subscribers only hear about confirmed transitions.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        gauge: Callable[[], float] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        reclaim: Callable[[], object] | None = gc.collect,
    ) -> None:
        self._config = config
        self._gauge = gauge or memory_ratio_gauge(config.memory_limit_bytes)
        self._clock = clock
        self._reclaim = reclaim
        self._thresholds = (
            (Band.EMERGENCY, config.emergency_threshold),
            (Band.CRITICAL, config.critical_threshold),
            (Band.WARNING, config.warning_threshold),
        )
        self._band = Band.NORMAL
        self._below_since: float | None = None
        self._pending_band = Band.NORMAL
        self._last_reclaim: float | None = None
        self._subscribers: list[TransitionHandler] = []
        self.last_ratio = 0.0

    @property
    def band(self) -> Band:
        return self._band

    def subscribe(self, handler: TransitionHandler) -> None:
        self._subscribers.append(handler)

    def classify(self, ratio: float) -> Band:
        for band, threshold in self._thresholds:
            if ratio >= threshold:
                return band
        return Band.NORMAL

    def sample(self) -> Band:
        if self._band >= Band.CRITICAL:
            self._maybe_reclaim()
        ratio = float(self._gauge())
        self.last_ratio = ratio
        observed = self.classify(ratio)
        now = self._clock()

        if observed > self._band:
            self._below_since = None
            self._transition(observed, ratio)
        elif observed < self._band:
            if self._below_since is None:
                self._below_since = now
                self._pending_band = observed
            else:
                self._pending_band = max(self._pending_band, observed)
            if now - self._below_since >= self._config.cooldown_seconds:
                self._below_since = None
                self._transition(self._pending_band, ratio)
        else:
            self._below_since = None
        return self._band

    def _maybe_reclaim(self) -> None:
        if self._reclaim is None:
            return
        now = self._clock()
        min_gap = self._config.reclaim_interval
        if self._band is Band.EMERGENCY:
            min_gap = min_gap / 12
        if self._last_reclaim is not None and now - self._last_reclaim < min_gap:
            return
        self._last_reclaim = now
        logger.info("Memory %s: running reclamation pass", self._band.label)
        self._reclaim()

    def _transition(self, new: Band, ratio: float) -> None:
        old, self._band = self._band, new
        log = logger.warning if new > old else logger.info
        log("Memory band %s -> %s (utilization %.0f%%)", old.label, new.label, ratio * 100)
        for handler in list(self._subscribers):
            try:
                handler(old, new, ratio)
            except Exception:
                logger.exception("Memory band subscriber %r failed", handler)
