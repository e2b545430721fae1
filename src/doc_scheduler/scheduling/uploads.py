import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .config import SchedulerConfig
from .errors import TransientIOError, classify_error
from .interfaces import ObjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadResult:
    ref: str
    degraded: bool = False


def content_key(data: bytes, operation_id: str, chunk_index: int | None = None) -> str:
    """Content-addressed key: operation/chunk identity plus the SHA-256 of the bytes."""
    part = "result" if chunk_index is None else f"chunk-{chunk_index}"
    return f"{operation_id}/{part}/{hashlib.sha256(data).hexdigest()}"


class DurableUploadManager:
    """Persists artifacts to durable storage with bounded concurrency and retries.

    Uploads run under their own semaphore, separate from conversion admission.
    A key that was already uploaded, or is being uploaded right now, is never
    transferred a second time. When every attempt against the primary store
    fails, the bytes go to the fallback store and the result is flagged
    ``degraded`` instead of raising.

    Once an operation settles, :meth:`release` drops its intermediate
    artifacts from whichever store holds them.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        primary: ObjectStore,
        fallback: ObjectStore,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._primary = primary
        self._fallback = fallback
        self._sleep = sleep
        self._slots = asyncio.Semaphore(config.upload_concurrency)
        self._index: dict[str, UploadResult] = {}
        self._inflight: dict[str, asyncio.Future[UploadResult]] = {}
        self._fallback_refs: set[str] = set()
        self.transfers = 0
        self.degraded_uploads = 0

    @property
    def pending(self) -> int:
        return len(self._inflight)

    def lookup(self, key: str) -> UploadResult | None:
        return self._index.get(key)

    async def upload(self, data: bytes, key: str) -> UploadResult:
        existing = self._index.get(key)
        if existing is not None:
            logger.debug("Upload %s already stored at %s", key, existing.ref)
            return existing
        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[UploadResult] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await self._transfer(data, key)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()  # retrieved here so a waiter-less failure is not reported as unhandled
            raise
        else:
            self._index[key] = result
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)

    async def fetch(self, ref: str) -> bytes:
        store = self._fallback if ref in self._fallback_refs else self._primary
        return await asyncio.to_thread(store.get, ref)

    def release(self, operation_id: str, keep: frozenset[str] = frozenset()) -> int:
        """Forget an operation's artifacts and delete objects nothing else references.

        Refs listed in ``keep`` stay. Returns the number of objects deleted.
        """
        prefix = f"{operation_id}/"
        keys = [k for k, r in self._index.items() if k.startswith(prefix) and r.ref not in keep]
        dropped = {self._index.pop(k).ref for k in keys}
        still_used = {r.ref for r in self._index.values()}
        deleted = 0
        for ref in dropped - still_used - keep:
            if ref in self._fallback_refs:
                self._fallback.delete(ref)
                self._fallback_refs.discard(ref)
            else:
                self._primary.delete(ref)
            deleted += 1
        if deleted:
            logger.debug("Released %d artifacts of operation %s", deleted, operation_id)
        return deleted

    async def _transfer(self, data: bytes, key: str) -> UploadResult:
        """Upload under one slot of the upload semaphore.

        A timed-out ``put`` cannot be interrupted, so the next attempt keeps
        waiting on the same thread and the slot is only returned once that
        thread has finished.
        """
        cfg = self._config
        await self._slots.acquire()
        put: asyncio.Future[str] | None = None
        try:
            for attempt in range(cfg.upload_max_attempts):
                timeout = min(cfg.upload_timeout * (2**attempt), cfg.upload_max_timeout)
                if put is None:
                    put = asyncio.ensure_future(asyncio.to_thread(self._primary.put, data))
                try:
                    ref = await asyncio.wait_for(asyncio.shield(put), timeout)
                except asyncio.TimeoutError:
                    err: Exception = TransientIOError(f"upload attempt timed out after {timeout:.1f}s")
                except Exception as exc:
                    put = None
                    err = classify_error(exc)
                else:
                    put = None
                    self.transfers += 1
                    logger.debug("Uploaded %s -> %s (%d bytes)", key, ref, len(data))
                    return UploadResult(ref)
                logger.warning("Upload %s attempt %d/%d failed: %s", key, attempt + 1, cfg.upload_max_attempts, err)
                if attempt + 1 < cfg.upload_max_attempts:
                    await self._sleep(min(cfg.upload_base_delay * (2**attempt), cfg.upload_max_delay))

            try:
                ref = await asyncio.to_thread(self._fallback.put, data)
            except Exception as exc:
                raise TransientIOError(
                    "durable and fallback uploads both failed", {"content_key": key}
                ) from exc
            self._fallback_refs.add(ref)
            self.degraded_uploads += 1
            logger.warning("Upload %s exhausted retries; stored in fallback store as %s", key, ref)
            return UploadResult(ref, degraded=True)
        finally:
            if put is not None:
                put.add_done_callback(self._release_slot)
            else:
                self._slots.release()

    def _release_slot(self, put: asyncio.Future) -> None:
        if not put.cancelled():
            put.exception()
        self._slots.release()
