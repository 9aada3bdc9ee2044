# main.py
import os
import json
import asyncio
import logging # Import logging
from contextlib import suppress
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import (
    FastAPI,
    File,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from starlette import status

from draft_images import (
    DEFAULT_MAX_UPLOAD_BYTES,
    DraftImageService,
    InvalidImage,
    UploadError,
    allowed_image,
    remove_file,
    sanitize_filename,
    staged_for_batch,
)
from draft_locks import (
    DEFAULT_LOCK_DURATION_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    LockAcquisitionTimeout,
    LockContention,
    LockManager,
)
from draft_store import (
    DraftStore,
    ImageNotFound,
    InvalidItemId,
    ItemGone,
    ItemNotFound,
    atomic_write_json,
    validate_item_id,
)

# Optional: used to run startup maintenance in a single gunicorn worker
try:  # pragma: no cover - platform dependent
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - e.g., Windows
    fcntl = None  # type: ignore

# --- Configuration ---
# Get the directory where this script is located
BASE_DIR = Path(__file__).resolve().parent
DEFAULT_UPLOADS_DIR = BASE_DIR / "uploads"
DEFAULT_DATA_DIR = BASE_DIR / "data"
DEFAULT_CONFIG_PATH = BASE_DIR / "drafts_config.json"


def _configure_logging() -> logging.Logger:
    """Configure console + rotating file logging with env-driven levels.

    Env vars:
    - APP_LOG_LEVEL: console log level (default INFO)
    - APP_FILE_LOG: enable file logging to logs/app.log (default 1/true)
    - APP_FILE_LOG_LEVEL: file log level (default INFO)
    """
    logger = logging.getLogger()
    if getattr(logger, "_app_logging_configured", False):
        return logging.getLogger(__name__)

    level_name = os.getenv("APP_LOG_LEVEL", "INFO").upper()
    file_level_name = os.getenv("APP_FILE_LOG_LEVEL", level_name).upper()
    level = getattr(logging, level_name, logging.INFO)
    file_level = getattr(logging, file_level_name, level)

    logger.setLevel(min(level, file_level))

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler (always on)
    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(fmt)
    logger.addHandler(sh)

    # Optional rotating file handler
    file_log_enabled = os.getenv("APP_FILE_LOG", "1").lower() in {"1", "true", "yes"}
    if file_log_enabled:
        logs_dir = Path(os.getenv("APP_LOG_DIR", str(BASE_DIR / "logs")))
        logs_dir.mkdir(parents=True, exist_ok=True)
        from logging.handlers import RotatingFileHandler

        fh = RotatingFileHandler(str(logs_dir / "app.log"), maxBytes=5 * 1024 * 1024, backupCount=3)
        fh.setLevel(file_level)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    setattr(logger, "_app_logging_configured", True)
    return logging.getLogger(__name__)


logger = _configure_logging()

# --- FastAPI App Setup ---
app = FastAPI(title="Draft Item Images")


def _parse_bool_env(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in {"1", "true", "yes", "y", "on"}:
        return True
    if candidate in {"0", "false", "no", "n", "off"}:
        return False
    try:
        return bool(int(candidate))
    except ValueError:
        return default


def _parse_float_env(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_int_env(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _config_path() -> Path:
    return Path(os.getenv("DRAFTS_CONFIG_PATH", str(DEFAULT_CONFIG_PATH)))


def _default_config_from_env() -> Dict[str, Any]:
    return {
        "uploads_dir": os.getenv("DRAFTS_UPLOADS_DIR", str(DEFAULT_UPLOADS_DIR)),
        "data_dir": os.getenv("DRAFTS_DATA_DIR", str(DEFAULT_DATA_DIR)),
        "lock_duration_seconds": _parse_float_env(os.getenv("DRAFTS_LOCK_DURATION"), DEFAULT_LOCK_DURATION_SECONDS),
        "lock_retry_delay_seconds": _parse_float_env(os.getenv("DRAFTS_LOCK_RETRY_DELAY"), DEFAULT_RETRY_DELAY_SECONDS),
        "lock_max_retries": _parse_int_env(os.getenv("DRAFTS_LOCK_MAX_RETRIES"), DEFAULT_MAX_RETRIES),
        "lock_retry_jitter_seconds": _parse_float_env(os.getenv("DRAFTS_LOCK_RETRY_JITTER"), 0.0),
        "lock_retry_backoff": _parse_float_env(os.getenv("DRAFTS_LOCK_RETRY_BACKOFF"), 1.0),
        "max_upload_bytes": _parse_int_env(os.getenv("DRAFTS_MAX_UPLOAD_BYTES"), DEFAULT_MAX_UPLOAD_BYTES),
        "startup_maintenance_enabled": _parse_bool_env(os.getenv("DRAFTS_STARTUP_MAINTENANCE"), True),
    }


def _sanitize_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(_default_config_from_env())
    if not isinstance(cfg, dict):
        return out
    for key in ("uploads_dir", "data_dir"):
        if isinstance(cfg.get(key), str) and cfg[key].strip():
            out[key] = cfg[key].strip()
    try:
        out["lock_duration_seconds"] = max(1.0, min(600.0, float(cfg.get("lock_duration_seconds", out["lock_duration_seconds"]))))
    except (TypeError, ValueError):
        pass
    try:
        out["lock_retry_delay_seconds"] = max(0.0, min(30.0, float(cfg.get("lock_retry_delay_seconds", out["lock_retry_delay_seconds"]))))
    except (TypeError, ValueError):
        pass
    try:
        out["lock_max_retries"] = max(1, min(100, int(cfg.get("lock_max_retries", out["lock_max_retries"]))))
    except (TypeError, ValueError):
        pass
    try:
        out["lock_retry_jitter_seconds"] = max(0.0, min(10.0, float(cfg.get("lock_retry_jitter_seconds", out["lock_retry_jitter_seconds"]))))
    except (TypeError, ValueError):
        pass
    try:
        out["lock_retry_backoff"] = max(1.0, min(4.0, float(cfg.get("lock_retry_backoff", out["lock_retry_backoff"]))))
    except (TypeError, ValueError):
        pass
    try:
        out["max_upload_bytes"] = max(1024, int(cfg.get("max_upload_bytes", out["max_upload_bytes"])))
    except (TypeError, ValueError):
        pass
    if "startup_maintenance_enabled" in cfg:
        out["startup_maintenance_enabled"] = bool(cfg.get("startup_maintenance_enabled"))
    return out


def _load_config() -> Dict[str, Any]:
    base = _default_config_from_env()
    path = _config_path()
    if path.exists():
        with suppress(json.JSONDecodeError, OSError):
            persisted = json.loads(path.read_text(encoding="utf-8"))
            return _sanitize_config({**base, **(persisted or {})})
    return base


def _save_config(cfg: Dict[str, Any]) -> None:
    atomic_write_json(_config_path(), _sanitize_config(cfg))


def _build_services(cfg: Dict[str, Any]) -> DraftImageService:
    store = DraftStore(Path(cfg["data_dir"]))
    locks = LockManager(
        store,
        duration=cfg["lock_duration_seconds"],
        retry_delay=cfg["lock_retry_delay_seconds"],
        max_retries=cfg["lock_max_retries"],
        retry_jitter=cfg["lock_retry_jitter_seconds"],
        retry_backoff=cfg["lock_retry_backoff"],
    )
    return DraftImageService(store, locks, Path(cfg["uploads_dir"]), max_upload_bytes=cfg["max_upload_bytes"])


def _install_config(target: FastAPI, cfg: Dict[str, Any]) -> None:
    target.state.config = cfg
    target.state.images = _build_services(cfg)


def _acquire_process_lock(path: Path) -> Optional[int]:
    """Attempt to acquire a cross-process exclusive lock. Returns fd if held."""
    if fcntl is None:  # pragma: no cover - platform dependent
        logger.warning("fcntl not available; startup maintenance may run in every worker")
        return None
    fd: Optional[int] = None
    try:
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        return fd
    except BlockingIOError:  # lock held by another process
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
        return None
    except OSError as exc:
        logger.warning("Failed to acquire process lock %s: %s", path, exc)
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
        return None


def _release_process_lock(fd: Optional[int]) -> None:
    if fd is None:
        return
    try:
        if fcntl is not None:  # pragma: no cover - platform dependent
            with suppress(OSError):
                fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        with suppress(OSError):
            os.close(fd)


def _run_startup_maintenance(images: DraftImageService) -> None:
    """Migrate stored drafts and drop expired lock rows left by crashed workers."""
    total, changed = images.store.migrate_drafts()
    purged = images.store.purge_expired_locks()
    logger.info("Validated %d drafts (%d migrated); purged %d expired locks", total, changed, purged)


@app.on_event("startup")
async def startup_event() -> None:
    cfg = _load_config()
    _install_config(app, cfg)
    images: DraftImageService = app.state.images
    logger.info("Draft uploads in %s, data in %s", images.uploads_dir, images.store.root)
    if not cfg.get("startup_maintenance_enabled", True):
        logger.info("Startup maintenance disabled by config")
        return
    # Only the process holding the lock performs startup maintenance
    fd = _acquire_process_lock(images.store.root / ".startup.lock")
    if fd is None and fcntl is not None:
        logger.info("Another process holds the startup lock; skipping maintenance here")
        return
    try:
        await asyncio.to_thread(_run_startup_maintenance, images)
    finally:
        _release_process_lock(fd)


def _images(request: Request) -> DraftImageService:
    return request.app.state.images


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:  # JSONDecodeError and UnicodeDecodeError
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expected a JSON object")
    return body


# --- Error handling ---

ERROR_STATUS = {
    InvalidItemId: status.HTTP_400_BAD_REQUEST,
    InvalidImage: status.HTTP_400_BAD_REQUEST,
    ItemNotFound: status.HTTP_404_NOT_FOUND,
    ImageNotFound: status.HTTP_404_NOT_FOUND,
    ItemGone: status.HTTP_409_CONFLICT,
    LockContention: status.HTTP_503_SERVICE_UNAVAILABLE,
    LockAcquisitionTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
    UploadError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def _domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    details = {
        key: getattr(exc, key)
        for key in ("item_id", "filename", "stage", "key", "attempts", "reason")
        if getattr(exc, key, None) is not None
    }
    if code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc, details)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": str(exc), "details": details}, status_code=code)


async def _storage_error_handler(request: Request, exc: OSError) -> JSONResponse:
    logger.error("%s %s storage error: %s", request.method, request.url.path, exc)
    return JSONResponse(
        {"error": "Storage operation failed", "details": {"reason": str(exc)}},
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


for _exc_class in ERROR_STATUS:
    app.add_exception_handler(_exc_class, _domain_error_handler)
app.add_exception_handler(OSError, _storage_error_handler)


# --- Routes ---

@app.get("/", response_class=PlainTextResponse)
async def read_root() -> str:
    return "Backend server is running!"


@app.post("/api/temp-images/upload", response_class=JSONResponse)
async def upload_temp_image(request: Request, image: UploadFile = File(...)) -> JSONResponse:
    """Stage one image before its draft filename is known."""
    images = _images(request)
    original = sanitize_filename(image.filename or "")
    try:
        staged = await asyncio.to_thread(images.stage_stream, image.file, original)
    finally:
        image.file.close()
    return JSONResponse({"tempPath": str(staged), "filename": staged.name})


@app.post("/api/draft-images/save", response_class=JSONResponse)
async def save_draft_image(request: Request) -> JSONResponse:
    """Give a previously staged image its canonical name on a draft."""
    body = await _json_body(request)
    item_id = body.get("itemId")
    temp_path = body.get("tempPath")
    original = body.get("originalFilename")
    if not item_id or not temp_path or not original:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required information")
    validate_item_id(item_id)
    images = _images(request)
    try:
        staged = images.resolve_staged(str(temp_path))
    except FileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Staged file not found")
    record = await images.upload_image(item_id, staged, sanitize_filename(str(original)))
    return JSONResponse(
        {"draftPath": record["url"], "filename": record["filename"], "image": record},
        status_code=status.HTTP_201_CREATED,
    )


@app.post("/api/purchase-images/save", response_class=JSONResponse)
async def save_purchased_image(request: Request) -> JSONResponse:
    """Move a staged image, or one of a draft's images, into the purchased folder."""
    body = await _json_body(request)
    item_id = body.get("itemId")
    image_path = body.get("imagePath")
    original = body.get("originalFilename")
    if not item_id or not image_path or not original:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required information")
    validate_item_id(item_id)
    is_temp = bool(body.get("isTemp", True))
    try:
        saved = await _images(request).save_purchased_image(item_id, str(image_path), str(original), is_temp)
    except FileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return JSONResponse(saved, status_code=status.HTTP_201_CREATED)


@app.post("/api/drafts/{item_id}/images", response_class=JSONResponse)
async def upload_draft_images(
    request: Request,
    item_id: str,
    files: List[UploadFile] = File(...),
) -> JSONResponse:
    validate_item_id(item_id)
    if not files:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No files uploaded")
    images = _images(request)
    uploads = [(upload.file, sanitize_filename(upload.filename or "")) for upload in files]
    try:
        staged = await asyncio.to_thread(staged_for_batch, images, uploads)
    finally:
        for upload in files:
            upload.file.close()
    try:
        saved = await images.upload_batch(item_id, staged)
    finally:
        # Files that never reached their canonical name
        for path, _ in staged:
            with suppress(OSError):
                remove_file(path)
    draft = await asyncio.to_thread(images.store.get_draft, item_id)
    return JSONResponse(
        {
            "saved": saved,
            "images": draft["images"] if draft else saved,
            "message": f"Uploaded {len(saved)} image(s)",
        },
        status_code=status.HTTP_201_CREATED,
    )


@app.delete("/api/drafts/{item_id}/images/{filename}", response_class=JSONResponse)
async def delete_draft_image(request: Request, item_id: str, filename: str) -> JSONResponse:
    remaining = await _images(request).delete_image(item_id, filename)
    return JSONResponse({"message": f"Removed {sanitize_filename(filename)}", "images": remaining})


@app.get("/api/drafts/{item_id}/next-sequence", response_class=JSONResponse)
async def peek_next_sequence(request: Request, item_id: str) -> JSONResponse:
    number = await _images(request).peek_next_sequence_number(item_id)
    return JSONResponse({"itemId": item_id, "nextSequenceNumber": number})


@app.get("/api/drafts", response_class=JSONResponse)
async def list_drafts(request: Request) -> JSONResponse:
    drafts = await asyncio.to_thread(_images(request).store.list_drafts, True)
    return JSONResponse(drafts)


@app.get("/api/items", response_class=JSONResponse)
async def list_items(request: Request) -> JSONResponse:
    items = await asyncio.to_thread(_images(request).store.list_drafts, False)
    return JSONResponse(items)


@app.get("/api/drafts/{item_id}", response_class=JSONResponse)
async def get_draft(request: Request, item_id: str) -> JSONResponse:
    validate_item_id(item_id)
    draft = await asyncio.to_thread(_images(request).store.require_draft, item_id)
    return JSONResponse(draft)


@app.put("/api/drafts/{item_id}", response_class=JSONResponse)
async def save_draft(request: Request, item_id: str) -> JSONResponse:
    body = await _json_body(request)
    draft = await _images(request).save_draft(item_id, body)
    return JSONResponse({"message": "Draft saved successfully", "item": draft})


@app.delete("/api/drafts/{item_id}", response_class=JSONResponse)
async def delete_draft(request: Request, item_id: str) -> JSONResponse:
    await _images(request).delete_draft(item_id)
    return JSONResponse({"message": "Draft deleted successfully"})


@app.get("/uploads/drafts/{item_id}/{filename}")
async def serve_draft_image(request: Request, item_id: str, filename: str) -> FileResponse:
    name = sanitize_filename(filename)
    if not name or not allowed_image(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    path = _images(request).item_dir(item_id) / name
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return FileResponse(path)


@app.get("/uploads/purchased/{item_id}/{filename}")
async def serve_purchased_image(request: Request, item_id: str, filename: str) -> FileResponse:
    path = _images(request).purchased_dir(item_id) / sanitize_filename(filename)
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return FileResponse(path)


@app.get("/api/locks", response_class=JSONResponse)
async def list_locks(request: Request) -> JSONResponse:
    rows = await asyncio.to_thread(_images(request).store.list_locks)
    return JSONResponse({"locks": rows})


@app.get("/admin/config", response_class=JSONResponse)
async def get_admin_config(request: Request) -> JSONResponse:
    return JSONResponse({"config": request.app.state.config})


@app.post("/admin/config", response_class=JSONResponse)
async def update_admin_config(request: Request) -> JSONResponse:
    body = await _json_body(request)
    cfg = _sanitize_config({**request.app.state.config, **body})
    _install_config(request.app, cfg)
    _save_config(cfg)
    return JSONResponse({"config": cfg, "message": "Configuration updated and saved"})


@app.post("/admin/config/reset", response_class=JSONResponse)
async def reset_admin_config(request: Request) -> JSONResponse:
    cfg = _default_config_from_env()
    _install_config(request.app, cfg)
    _save_config(cfg)
    return JSONResponse({"config": cfg, "message": "Configuration reset to defaults"})

# --- Running the App ---
# Development:
#     uvicorn main:app --reload
# Production (several workers sharing the same uploads/ and data/ directories):
#     gunicorn main:app --config gunicorn.conf.py
