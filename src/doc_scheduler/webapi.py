import hashlib
import logging
import os
import uuid
from pathlib import Path

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

from doc_scheduler import __version__
from doc_scheduler.logging_config import configure_logging, set_correlation_id
from doc_scheduler.scheduling import ConversionService, SchedulerConfig
from doc_scheduler.scheduling.adapters import DoclingProcessor, InMemoryObjectStore, LocalObjectStore
from doc_scheduler.scheduling.errors import OperationNotFoundError, ResultNotReadyError

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Document Conversion Scheduler",
    version=os.getenv("DOC_SERVICE_VERSION", __version__),
    description=(
        "Resource-aware document conversion: memory-banded admission, priority "
        "queueing, chunked processing and durable result storage."
    ),
)

# Global configuration defaults
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "300"))
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()
UPLOAD_CHUNK = 1024 * 1024

MEDIA_TYPES = {
    "md": "text/markdown",
    "markdown": "text/markdown",
    "txt": "text/plain",
    "html": "text/html",
    "json": "application/json",
}

SERVICE: ConversionService | None = None


def _service() -> ConversionService:
    if SERVICE is None:
        raise HTTPException(status_code=503, detail={"code": "unavailable", "message": "service not started"})
    return SERVICE


def _not_found(operation_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"operation {operation_id} not found"})


@app.on_event("startup")
async def _startup() -> None:
    configure_logging()
    (DATA_DIR / "uploads").mkdir(parents=True, exist_ok=True)
    global SERVICE
    SERVICE = ConversionService(
        processor=DoclingProcessor(str(DATA_DIR / "scratch")),
        durable_store=LocalObjectStore(str(DATA_DIR)),
        fallback_store=InMemoryObjectStore(),
        config=SchedulerConfig.from_env(),
        source_cleanup=_remove_upload,
    )
    await SERVICE.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global SERVICE
    if SERVICE is not None:
        await SERVICE.stop()
        SERVICE = None


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


async def _save_upload(file: UploadFile) -> tuple[Path, int, str]:
    """Stream the upload to DATA_DIR/uploads, enforcing MAX_UPLOAD_MB. Returns path, size and checksum."""
    original_name = file.filename or "upload"
    ext = ""
    if "." in original_name:
        ext = "." + original_name.rsplit(".", 1)[-1].lower()
    path = DATA_DIR / "uploads" / f"{uuid.uuid4()}{ext}"
    path.parent.mkdir(parents=True, exist_ok=True)

    sha256 = hashlib.sha256()
    size_bytes = 0
    max_bytes = MAX_UPLOAD_MB * 1024 * 1024
    with path.open("wb") as f_out:
        while True:
            chunk = await file.read(UPLOAD_CHUNK)
            if not chunk:
                break
            size_bytes += len(chunk)
            if size_bytes > max_bytes:
                break
            f_out.write(chunk)
            sha256.update(chunk)
    if size_bytes > max_bytes:
        path.unlink(missing_ok=True)
        raise HTTPException(
            status_code=413,
            detail={"code": "payload_too_large", "message": f"upload exceeds {MAX_UPLOAD_MB} MB"},
        )
    return path, size_bytes, sha256.hexdigest()


def _remove_upload(source_ref: str) -> None:
    """Delete a settled operation's source, but only files this API saved."""
    path = Path(source_ref)
    if path.parent == DATA_DIR / "uploads":
        path.unlink(missing_ok=True)


@app.post("/operations", status_code=status.HTTP_202_ACCEPTED)
async def create_operation(
    request: Request,
    file: UploadFile = File(...),
    target_format: str = Form("md"),
    priority: int = Form(5),
) -> JSONResponse:
    """Create a conversion operation from an uploaded document.

    Accepts multipart/form-data with a required part named "file" plus
    optional "target_format" and "priority" fields. Returns 202 Accepted with
    the new operation id; progress is tracked through GET /operations/{id}.
    """
    service = _service()
    filename = file.filename or "upload"
    source_format = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    path, size_bytes, checksum = await _save_upload(file)

    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    set_correlation_id(correlation_id)
    logger.info("Received %s (%d bytes, sha256=%s)", filename, size_bytes, checksum[:12])
    op_id = await service.create_operation(
        str(path),
        source_format,
        target_format,
        options={"filename": filename, "checksum_sha256": checksum},
        priority=priority,
        correlation_id=correlation_id,
    )
    body = {
        "id": op_id,
        "status": service.get_status(op_id)["status"],
        "links": {
            "self": f"/operations/{op_id}",
            "result": f"/operations/{op_id}/result",
        },
    }
    headers = {"Location": f"/operations/{op_id}", "X-Correlation-ID": correlation_id}
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body, headers=headers)


@app.get("/operations/{operation_id}")
def get_operation(operation_id: str) -> dict[str, object]:
    try:
        return _service().get_status(operation_id)
    except OperationNotFoundError:
        raise _not_found(operation_id)


@app.delete("/operations/{operation_id}")
def cancel_operation(operation_id: str) -> dict[str, object]:
    service = _service()
    try:
        accepted = service.cancel_operation(operation_id)
        current = service.get_status(operation_id)["status"]
    except OperationNotFoundError:
        raise _not_found(operation_id)
    return {"id": operation_id, "cancelled": accepted, "status": current}


@app.get("/operations/{operation_id}/result")
async def get_result(operation_id: str) -> Response:
    service = _service()
    try:
        data = await service.get_result(operation_id)
        info = service.get_status(operation_id)
        target = service.context.registry.get(operation_id).target_format
    except OperationNotFoundError:
        raise _not_found(operation_id)
    except ResultNotReadyError as e:
        raise HTTPException(status_code=409, detail={"code": "not_ready", "message": e.message})
    headers = {"X-Operation-Status": str(info["status"])}
    if info.get("error_message"):
        headers["X-Operation-Warning"] = str(info["error_message"])
    return Response(content=data, media_type=MEDIA_TYPES.get(target, "application/octet-stream"), headers=headers)


@app.get("/queue/stats")
def queue_stats() -> dict[str, object]:
    return _service().get_queue_stats()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    configure_logging()
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("doc_scheduler.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
