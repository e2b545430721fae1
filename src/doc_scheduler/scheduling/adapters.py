import hashlib
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any

from .errors import UnrecoverableInputError
from .interfaces import JobProcessor, ObjectStore, SourceInfo

logger = logging.getLogger(__name__)

PAGED_FORMATS = frozenset({"pdf"})


class LocalObjectStore(ObjectStore):
    """Content-addressed files under ``<data_dir>/objects``.

    The ref is the SHA-256 of the bytes, so storing the same artifact twice
    lands on the same file.
    """

    def __init__(self, data_dir: str) -> None:
        self._base = (Path(data_dir) / "objects").resolve()

    def _path(self, ref: str) -> Path:
        if len(ref) != 64 or any(c not in "0123456789abcdef" for c in ref):
            raise FileNotFoundError(f"invalid object ref: {ref}")
        return self._base / ref[:2] / ref

    def put(self, data: bytes) -> str:
        ref = hashlib.sha256(data).hexdigest()
        p = self._path(ref)
        if p.exists():
            return ref
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(f".{uuid.uuid4().hex}.part")
        with tmp.open("wb") as f:
            f.write(data)
        os.replace(tmp, p)
        return ref

    def get(self, ref: str) -> bytes:
        p = self._path(ref)
        if not p.exists():
            raise FileNotFoundError(f"object not found: {ref}")
        return p.read_bytes()

    def delete(self, ref: str) -> None:
        self._path(ref).unlink(missing_ok=True)


class InMemoryObjectStore(ObjectStore):
    """Process-local store used as the fallback when durable uploads fail."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._objects)

    def put(self, data: bytes) -> str:
        ref = hashlib.sha256(data).hexdigest()
        with self._lock:
            self._objects[ref] = bytes(data)
        return ref

    def get(self, ref: str) -> bytes:
        with self._lock:
            if ref not in self._objects:
                raise FileNotFoundError(f"object not found: {ref}")
            return self._objects[ref]

    def delete(self, ref: str) -> None:
        with self._lock:
            self._objects.pop(ref, None)


class DoclingProcessor(JobProcessor):
    """Converts documents to Markdown with Docling, writing results to a scratch directory."""

    def __init__(self, scratch_dir: str) -> None:
        self._scratch = Path(scratch_dir).resolve()

    def describe(self, input_ref: str, source_format: str) -> SourceInfo:
        size = os.path.getsize(input_ref)
        pages = 1
        if source_format.lower() in PAGED_FORMATS:
            import pypdfium2 as pdfium  # type: ignore

            try:
                pdf = pdfium.PdfDocument(input_ref)
            except pdfium.PdfiumError as e:
                raise UnrecoverableInputError(f"Unreadable PDF: {e}", {"input_ref": input_ref}) from e
            try:
                pages = len(pdf)
            finally:
                pdf.close()
        return SourceInfo(size_bytes=size, page_count=max(pages, 1))

    def convert(
        self,
        input_ref: str,
        source_format: str,
        target_format: str,
        options: dict[str, Any],
    ) -> str:
        if target_format.lower() not in ("md", "markdown"):
            raise UnrecoverableInputError(
                f"Unsupported target format: {target_format}", {"supported": ["md"]}
            )
        from docling.document_converter import DocumentConverter  # type: ignore

        kwargs: dict[str, Any] = {}
        page_range = options.get("page_range")
        if page_range:
            kwargs["page_range"] = (int(page_range[0]), int(page_range[1]))
        result = DocumentConverter().convert(input_ref, **kwargs)
        markdown = result.document.export_to_markdown()

        self._scratch.mkdir(parents=True, exist_ok=True)
        out = self._scratch / f"{uuid.uuid4().hex}.md"
        out.write_text(markdown, encoding="utf-8")
        logger.debug("Converted %s pages=%s -> %s", input_ref, page_range or "all", out)
        return str(out)

    def read_output(self, output_ref: str) -> bytes:
        return Path(output_ref).read_bytes()

    def discard_output(self, output_ref: str) -> None:
        p = Path(output_ref)
        if p.parent == self._scratch:
            p.unlink(missing_ok=True)
