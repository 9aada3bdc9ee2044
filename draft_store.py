"""Persistent JSON document store for draft items and lock rows.

Every draft is one JSON document under ``<root>/drafts/<itemId>.json``; lock
rows live next to them under ``<root>/locks``. All read-modify-write cycles run
under an in-process lock plus an exclusive ``flock`` on ``<root>/.store.lock``
so conditional updates stay correct when several gunicorn workers share the
same data directory.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
import time
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from jsonschema import validate as js_validate, ValidationError

try:  # pragma: no cover - platform dependent
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - e.g., Windows
    fcntl = None  # type: ignore

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
SCHEMA_PATH = BASE_DIR / "DraftItem.schema.json"

ITEM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{6,128}$")
LOCK_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,160}$")

# Keys the client may not overwrite through a draft save.
PROTECTED_FIELDS = {"itemId", "images", "createdAt", "updatedAt", "_id"}


class DraftStoreError(Exception):
    """Base class for store level failures."""


class InvalidItemId(ValueError):
    def __init__(self, item_id: Any) -> None:
        super().__init__(f"Invalid item id: {item_id!r}")
        self.item_id = item_id


class ItemNotFound(DraftStoreError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Draft item not found: {item_id}")
        self.item_id = item_id


class ItemGone(DraftStoreError):
    """The draft existed when the operation started but was deleted since."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Draft item was deleted during the operation: {item_id}")
        self.item_id = item_id


class ImageNotFound(DraftStoreError):
    def __init__(self, item_id: str, filename: str) -> None:
        super().__init__(f"Image {filename} not found on draft {item_id}")
        self.item_id = item_id
        self.filename = filename


def validate_item_id(item_id: Any) -> str:
    """Return ``item_id`` if it is usable as a key and a path component."""
    if not isinstance(item_id, str) or not ITEM_ID_PATTERN.match(item_id):
        raise InvalidItemId(item_id)
    return item_id


def load_schema(path: Path = SCHEMA_PATH) -> Dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        logger.warning("Unable to load schema at %s: %s", path, exc)
        # Minimal fallback
        return {
            "type": "object",
            "properties": {
                "itemId": {"type": "string"},
                "isDraft": {"type": "boolean", "default": True},
                "createdAt": {"type": "number", "default": 0},
                "updatedAt": {"type": "number", "default": 0},
                "images": {"type": "array", "default": []},
            },
            "required": ["itemId", "isDraft", "createdAt", "updatedAt", "images"],
        }


def apply_schema_defaults(data: Dict[str, Any], schema: Dict[str, Any]) -> Dict[str, Any]:
    props = schema.get("properties", {})
    for key, spec in props.items():
        if key not in data and "default" in spec:
            data[key] = spec["default"]

    # Simple coercions
    if isinstance(data.get("isDraft"), str):
        lowered = data["isDraft"].strip().lower()
        if lowered in {"true", "1", "yes", "y"}:
            data["isDraft"] = True
        elif lowered in {"false", "0", "no", "n"}:
            data["isDraft"] = False
    for key in ("createdAt", "updatedAt"):
        if isinstance(data.get(key), str):
            try:
                data[key] = float(data[key])
            except ValueError:
                data[key] = time.time()
    images = data.get("images")
    if not isinstance(images, list):
        images = []
    cleaned: List[Dict[str, Any]] = []
    for image in images:
        if not isinstance(image, dict) or not image.get("filename"):
            continue
        image.setdefault("id", "")
        image.setdefault("url", "")
        image["isNew"] = bool(image.get("isNew", False))
        cleaned.append(image)
    data["images"] = cleaned
    return data


def atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON atomically with a unique temp file to avoid cross-process races."""
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(data, indent=2, ensure_ascii=False)
    fd = None
    tmp_name = None
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=path.name + ".", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = None
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
        if tmp_name and os.path.exists(tmp_name):
            with suppress(OSError):
                os.remove(tmp_name)


def _acquire_file_lock(path: Path) -> Optional[int]:
    """Block until an exclusive cross-process lock on ``path`` is held."""
    if fcntl is None:  # pragma: no cover - platform dependent
        return None
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
    except OSError:
        os.close(fd)
        raise
    return fd


def _release_file_lock(fd: Optional[int]) -> None:
    if fd is None:
        return
    try:
        if fcntl is not None:  # pragma: no cover - platform dependent
            with suppress(OSError):
                fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        with suppress(OSError):
            os.close(fd)


class DraftStore:
    """Draft documents and lock rows backed by JSON files.

    Methods are synchronous and short; async callers run them through
    ``asyncio.to_thread`` so each call is a suspension point.
    """

    def __init__(self, root: Path, schema_path: Path = SCHEMA_PATH) -> None:
        self.root = Path(root)
        self.drafts_dir = self.root / "drafts"
        self.locks_dir = self.root / "locks"
        self.drafts_dir.mkdir(parents=True, exist_ok=True)
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        self._guard_path = self.root / ".store.lock"
        self._thread_lock = threading.Lock()
        self.schema = load_schema(schema_path)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._thread_lock:
            fd = _acquire_file_lock(self._guard_path)
            try:
                yield
            finally:
                _release_file_lock(fd)

    # --- paths / raw io ---

    def _draft_path(self, item_id: str) -> Path:
        return self.drafts_dir / f"{validate_item_id(item_id)}.json"

    def _lock_path(self, key: str) -> Path:
        if LOCK_KEY_PATTERN.match(key) and not key.startswith("."):
            name = key
        else:
            name = "h-" + hashlib.sha1(key.encode("utf-8")).hexdigest()
        return self.locks_dir / f"{name}.json"

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Invalid JSON in %s: %s", path, exc)
            return None
        except FileNotFoundError:
            return None
        return loaded if isinstance(loaded, dict) else None

    def _load_draft(self, item_id: str) -> Optional[Dict[str, Any]]:
        data = self._read(self._draft_path(item_id))
        if data is None:
            return None
        data.setdefault("itemId", item_id)
        data = apply_schema_defaults(data, self.schema)
        try:
            js_validate(instance=data, schema=self.schema)
        except ValidationError as exc:
            logger.warning("Draft %s failed schema validation: %s", item_id, exc.message)
        return data

    def _write_draft(self, data: Dict[str, Any], touch: bool = True) -> Dict[str, Any]:
        if touch:
            data["updatedAt"] = time.time()
        atomic_write_json(self._draft_path(data["itemId"]), data)
        return data

    def _new_draft(self, item_id: str) -> Dict[str, Any]:
        now = time.time()
        return {"itemId": item_id, "isDraft": True, "createdAt": now, "updatedAt": now, "images": []}

    # --- drafts ---

    def get_draft(self, item_id: str) -> Optional[Dict[str, Any]]:
        with self._exclusive():
            return self._load_draft(item_id)

    def require_draft(self, item_id: str) -> Dict[str, Any]:
        draft = self.get_draft(item_id)
        if draft is None:
            raise ItemNotFound(item_id)
        return draft

    def list_drafts(self, is_draft: Optional[bool] = True) -> List[Dict[str, Any]]:
        """Return stored drafts, newest first, optionally filtered on ``isDraft``."""
        drafts: List[Dict[str, Any]] = []
        with self._exclusive():
            try:
                names = sorted(os.listdir(self.drafts_dir))
            except OSError as exc:
                logger.error("Unable to list drafts in %s: %s", self.drafts_dir, exc)
                return []
            for name in names:
                if not name.endswith(".json"):
                    continue
                item_id = name[: -len(".json")]
                if not ITEM_ID_PATTERN.match(item_id):
                    continue
                draft = self._load_draft(item_id)
                if draft is None:
                    continue
                if is_draft is not None and bool(draft.get("isDraft")) != is_draft:
                    continue
                drafts.append(draft)
        drafts.sort(key=lambda d: d.get("updatedAt") or 0, reverse=True)
        return drafts

    def ensure_draft(self, item_id: str) -> Tuple[Dict[str, Any], bool]:
        """Upsert an empty draft; returns ``(draft, created)``."""
        with self._exclusive():
            draft = self._load_draft(item_id)
            if draft is not None:
                return draft, False
            draft = self._write_draft(self._new_draft(item_id), touch=False)
            logger.info("Created draft %s", item_id)
            return draft, True

    def save_draft(self, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert the business payload of a draft.

        The image list is owned by the upload and delete paths. A save only
        acknowledges images the client sent back, clearing their ``isNew`` flag.
        """
        acknowledged = set()
        for image in payload.get("images") or []:
            if isinstance(image, dict):
                acknowledged.update(str(image[k]) for k in ("id", "filename") if image.get(k))
        with self._exclusive():
            draft = self._load_draft(item_id) or self._new_draft(item_id)
            for key, value in payload.items():
                if key not in PROTECTED_FIELDS:
                    draft[key] = value
            for image in draft["images"]:
                if image.get("id") in acknowledged or image.get("filename") in acknowledged:
                    image["isNew"] = False
            return self._write_draft(draft)

    def delete_draft(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Remove a draft document and return what it held, or ``None``."""
        with self._exclusive():
            draft = self._load_draft(item_id)
            if draft is None:
                return None
            with suppress(FileNotFoundError):
                self._draft_path(item_id).unlink()
            return draft

    # --- image records ---

    def find_images(self, item_id: str) -> List[Dict[str, Any]]:
        return list(self.require_draft(item_id)["images"])

    def append_image(self, item_id: str, record: Dict[str, Any], upsert: bool = False) -> Dict[str, Any]:
        """Append ``record`` to the draft's images.

        With ``upsert`` a missing draft is created; without it a missing draft
        raises ``ItemGone``.
        """
        with self._exclusive():
            draft = self._load_draft(item_id)
            if draft is None:
                if not upsert:
                    raise ItemGone(item_id)
                draft = self._new_draft(item_id)
            draft["images"].append(dict(record))
            return self._write_draft(draft)

    def remove_image(self, item_id: str, filename: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Drop the record named ``filename``; returns ``(draft, removed_record)``."""
        with self._exclusive():
            draft = self._load_draft(item_id)
            if draft is None:
                raise ItemNotFound(item_id)
            removed = None
            kept: List[Dict[str, Any]] = []
            for image in draft["images"]:
                if removed is None and image.get("filename") == filename:
                    removed = image
                else:
                    kept.append(image)
            if removed is None:
                raise ImageNotFound(item_id, filename)
            draft["images"] = kept
            return self._write_draft(draft), removed

    def migrate_drafts(self) -> Tuple[int, int]:
        """Rewrite every draft with schema defaults applied; returns ``(total, changed)``."""
        total = 0
        changed = 0
        with self._exclusive():
            for name in sorted(os.listdir(self.drafts_dir)):
                item_id = name[: -len(".json")] if name.endswith(".json") else ""
                if not ITEM_ID_PATTERN.match(item_id):
                    continue
                total += 1
                raw = self._read(self.drafts_dir / name) or {}
                before = json.dumps(raw, sort_keys=True)
                data = self._load_draft(item_id) or self._new_draft(item_id)
                if json.dumps(data, sort_keys=True) != before:
                    self._write_draft(data, touch=False)
                    changed += 1
        return total, changed

    # --- lock rows ---

    def try_lock(self, key: str, owner: str, now: float, duration: float) -> bool:
        """Conditional upsert of a lock row.

        Succeeds when no row exists for ``key`` or the existing row expired.
        """
        path = self._lock_path(key)
        with self._exclusive():
            row = self._read(path)
            if row is not None and float(row.get("expiresAt") or 0) > now:
                return False
            atomic_write_json(
                path,
                {"key": key, "owner": owner, "lockedAt": now, "expiresAt": now + duration},
            )
            return True

    def unlock(self, key: str, owner: Optional[str] = None) -> bool:
        """Clear the lock row for ``key``; a no-op when nothing is held.

        With ``owner`` the row is only cleared if that owner still holds it.
        """
        path = self._lock_path(key)
        with self._exclusive():
            row = self._read(path)
            if row is None:
                return False
            if owner is not None and row.get("owner") != owner:
                return False
            with suppress(FileNotFoundError):
                path.unlink()
            return True

    def get_lock(self, key: str) -> Optional[Dict[str, Any]]:
        with self._exclusive():
            return self._read(self._lock_path(key))

    def list_locks(self) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        with self._exclusive():
            for name in sorted(os.listdir(self.locks_dir)):
                if name.endswith(".json"):
                    row = self._read(self.locks_dir / name)
                    if row is not None:
                        rows.append(row)
        return rows

    def purge_expired_locks(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        purged = 0
        with self._exclusive():
            for name in sorted(os.listdir(self.locks_dir)):
                if not name.endswith(".json"):
                    continue
                path = self.locks_dir / name
                row = self._read(path)
                if row is None or float(row.get("expiresAt") or 0) <= now:
                    with suppress(FileNotFoundError):
                        path.unlink()
                    purged += 1
        return purged
