"""Draft image storage: canonical filenames, sequence numbers, uploads, deletes.

Images for a draft live in ``<uploads>/drafts/<itemId>/`` and are named
``Draft-<shortId>-<NN>.<ext>``. The number is the lowest one not used by the
draft's current image records, chosen and written while the item lock is held
so concurrent uploads for the same item can never pick the same name.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import re
import shutil
import time
import uuid
from contextlib import suppress
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from draft_locks import LockContention, LockError, LockManager, sequence_lock_key
from draft_store import (
    ITEM_ID_PATTERN,
    DraftStore,
    DraftStoreError,
    ImageNotFound,
    ItemNotFound,
    validate_item_id,
)

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".webp",
    ".bmp",
    ".tiff",
}
# Pillow format names accepted for stored images
SUPPORTED_FORMATS = {"JPEG", "MPO", "PNG", "GIF", "WEBP", "BMP", "TIFF"}
# Largest (width, height) kept per format; bigger images are shrunk at staging
MAX_IMAGE_SIZES = {
    "JPEG": (2000, 2000),
    "MPO": (2000, 2000),
    "PNG": (1000, 1000),
    "GIF": (1300, 1300),
    "WEBP": (2400, 2400),
    "BMP": (500, 500),
    "TIFF": (850, 850),
}

DEFAULT_EXTENSION = "jpg"
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024
DRAFT_FILENAME_PATTERN = re.compile(r"^Draft-(?P<short_id>.{6})-(?P<number>\d{2,})\.(?P<ext>[^.]+)$")
EXTENSION_PATTERN = re.compile(r"^[a-z0-9]+$")

STAGE_STAGED = "staged"
STAGE_LOCKED = "locked"
STAGE_NUMBERED = "numbered"
STAGE_MOVED = "moved"
STAGE_RECORDED = "recorded"
STAGE_UNLOCKED = "unlocked"


class InvalidImage(ValueError):
    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(f"{filename}: {reason}")
        self.filename = filename
        self.reason = reason


class UploadError(Exception):
    """Storage failure during an upload, with enough context for cleanup."""

    def __init__(self, item_id: str, filename: str, stage: str, cause: BaseException) -> None:
        super().__init__(f"Upload of {filename} for {item_id} failed at stage '{stage}': {cause}")
        self.item_id = item_id
        self.filename = filename
        self.stage = stage
        self.cause = cause


# --- filenames ---

def short_id(item_id: str) -> str:
    return item_id[-6:]


def generate_filename(item_id: str, sequence_number: int, original_filename: str = "image") -> str:
    """Return ``Draft-<last 6 of item_id>-<NN>.<ext>``.

    The extension is taken from ``original_filename`` and lower-cased, falling
    back to ``jpg``. Numbers past 99 widen the field instead of truncating.
    """
    return f"Draft-{short_id(item_id)}-{sequence_number:02d}.{file_extension(original_filename)}"


def file_extension(original_filename: str) -> str:
    """Lower-cased extension of the base name; ``jpg`` when missing or not alphanumeric."""
    name = sanitize_filename(original_filename)
    extension = name.rsplit(".", 1)[1].lower() if "." in name else ""
    return extension if EXTENSION_PATTERN.match(extension) else DEFAULT_EXTENSION


def parse_sequence_number(filename: str) -> Optional[int]:
    """Sequence number embedded in a canonical filename, or ``None`` for anything else."""
    match = DRAFT_FILENAME_PATTERN.match(filename or "")
    if not match:
        return None
    return int(match.group("number"))


def first_free_sequence(filenames: Iterable[str]) -> int:
    """Lowest number >= 1 not claimed by any of ``filenames``."""
    used = {n for n in (parse_sequence_number(f) for f in filenames) if n is not None}
    number = 1
    while number in used:
        number += 1
    return number


def sanitize_filename(filename: str) -> str:
    """Return a safe filename without directory traversal."""
    return Path(filename or "").name


def allowed_image(filename: str) -> bool:
    suffix = Path(filename).suffix.lower()
    return not suffix or suffix in ALLOWED_IMAGE_EXTENSIONS


def remove_file(path: Path) -> bool:
    """Unlink ``path``; a missing file is not an error."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def prune_empty_dir(path: Path) -> bool:
    """Remove ``path`` if it is an empty directory.

    "Not empty" and "already gone" are expected outcomes and return False.
    """
    try:
        path.rmdir()
        logger.debug("Removed empty directory %s", path)
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        if exc.errno in (errno.ENOTEMPTY, errno.EEXIST):
            return False
        raise


class DraftImageService:
    """Coordinates staging, numbering, storage and records for draft images."""

    def __init__(
        self,
        store: DraftStore,
        locks: LockManager,
        uploads_dir: Path,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        url_prefix: str = "/uploads",
    ) -> None:
        self.store = store
        self.locks = locks
        self.uploads_dir = Path(uploads_dir)
        self.drafts_root = self.uploads_dir / "drafts"
        self.staging_dir = self.uploads_dir / "temp"
        self.purchased_root = self.uploads_dir / "purchased"
        self.max_upload_bytes = int(max_upload_bytes)
        self.url_prefix = url_prefix.rstrip("/")
        self.drafts_root.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def item_dir(self, item_id: str) -> Path:
        return self.drafts_root / validate_item_id(item_id)

    def image_url(self, item_id: str, filename: str) -> str:
        return f"{self.url_prefix}/drafts/{item_id}/{filename}"

    # --- sequence numbers ---

    async def next_sequence_number(self, item_id: str, require_item: bool = True) -> int:
        """Lowest free sequence number for ``item_id``, read under the allocator lock.

        ``require_item`` decides what a missing draft means: ``ItemNotFound``
        when the caller expects it to exist, otherwise simply "no images yet".
        """
        async with self.locks.locked(sequence_lock_key(item_id)):
            draft = await asyncio.to_thread(self.store.get_draft, item_id)
            if draft is None:
                if require_item:
                    raise ItemNotFound(item_id)
                return 1
            return first_free_sequence(image.get("filename", "") for image in draft["images"])

    async def peek_next_sequence_number(self, item_id: str) -> int:
        validate_item_id(item_id)
        return await self.next_sequence_number(item_id, require_item=False)

    # --- staging ---

    def _staging_path(self, original_filename: str) -> Path:
        suffix = Path(sanitize_filename(original_filename)).suffix.lower()
        if suffix not in ALLOWED_IMAGE_EXTENSIONS:
            suffix = ""
        name = f"temp-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{suffix}"
        return self.staging_dir / name

    def stage_stream(self, fileobj: BinaryIO, original_filename: str, validate: bool = True) -> Path:
        """Copy an upload stream into the staging directory and return its path."""
        destination = self._staging_path(original_filename)
        with destination.open("wb") as buffer:
            shutil.copyfileobj(fileobj, buffer)
        return self._checked(destination, original_filename, validate)

    def stage_bytes(self, data: bytes, original_filename: str, validate: bool = True) -> Path:
        destination = self._staging_path(original_filename)
        destination.write_bytes(data)
        return self._checked(destination, original_filename, validate)

    def _checked(self, staged: Path, original_filename: str, validate: bool) -> Path:
        if validate:
            try:
                image_format = self.validate_image(staged, original_filename)
                self.fit_image(staged, image_format)
            except (InvalidImage, OSError):
                with suppress(OSError):
                    remove_file(staged)
                raise
        return staged

    def fit_image(self, path: Path, image_format: str) -> bool:
        """Shrink ``path`` in place to its format's maximum size; True if it was resized."""
        limit = MAX_IMAGE_SIZES.get(image_format)
        if limit is None:
            return False
        resized = path.with_name(path.name + ".resized")
        with Image.open(path) as img:
            original_size = img.size
            if img.width <= limit[0] and img.height <= limit[1]:
                return False
            img.thumbnail(limit)
            img.save(resized, format="JPEG" if image_format == "MPO" else image_format)
        resized.replace(path)
        logger.info(
            "Resized %s from %dx%d to fit within %dx%d",
            path.name, original_size[0], original_size[1], limit[0], limit[1],
        )
        return True

    def validate_image(self, path: Path, original_filename: str) -> str:
        """Check extension, size and decodability; returns the Pillow format name."""
        if not allowed_image(original_filename):
            raise InvalidImage(original_filename, "unsupported file extension")
        size = path.stat().st_size
        if size == 0:
            raise InvalidImage(original_filename, "file is empty")
        if size > self.max_upload_bytes:
            raise InvalidImage(
                original_filename,
                f"image size {size} exceeds maximum allowed {self.max_upload_bytes} bytes",
            )
        try:
            with Image.open(path) as img:
                image_format = img.format or ""
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as exc:
            raise InvalidImage(original_filename, f"not a readable image ({exc})") from exc
        if image_format not in SUPPORTED_FORMATS:
            raise InvalidImage(original_filename, f"unsupported image format {image_format}")
        return image_format

    def resolve_staged(self, temp_path: str) -> Path:
        """Map a client supplied staging path back to a file inside the staging dir."""
        candidate = Path(temp_path)
        if not candidate.is_absolute():
            candidate = self.staging_dir / candidate.name
        candidate = candidate.resolve()
        if candidate.parent != self.staging_dir.resolve() or not candidate.is_file():
            raise FileNotFoundError(errno.ENOENT, "Staged file not found", temp_path)
        return candidate

    # --- uploads ---

    async def upload_image(
        self,
        item_id: str,
        staged_path: Path,
        original_filename: str,
        create_missing: bool = True,
    ) -> Dict[str, Any]:
        """Move one staged file to its canonical name and record it on the draft.

        Runs entirely under the item lock. ``create_missing`` upserts the draft
        for a first upload; without it a missing draft raises ``ItemNotFound``.
        If the record cannot be written after the move, the moved file is
        deleted again so no untracked file is left behind.
        """
        validate_item_id(item_id)
        staged_path = Path(staged_path)
        stage = STAGE_STAGED
        original_filename = sanitize_filename(original_filename)
        filename = original_filename
        record: Dict[str, Any] = {}
        try:
            async with self.locks.locked(item_id):
                stage = STAGE_LOCKED
                if create_missing:
                    await asyncio.to_thread(self.store.ensure_draft, item_id)
                number = await self.next_sequence_number(item_id, require_item=True)
                stage = STAGE_NUMBERED
                filename = generate_filename(item_id, number, original_filename)
                destination = self.item_dir(item_id) / filename
                await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
                await asyncio.to_thread(shutil.move, str(staged_path), str(destination))
                stage = STAGE_MOVED
                record = {
                    "id": uuid.uuid4().hex,
                    "filename": filename,
                    "url": self.image_url(item_id, filename),
                    "isNew": True,
                }
                try:
                    await asyncio.to_thread(self.store.append_image, item_id, record, False)
                except Exception:
                    await self._compensate(item_id, filename, destination)
                    raise
                stage = STAGE_RECORDED
            stage = STAGE_UNLOCKED
        except (LockError, DraftStoreError) as exc:
            logger.error(
                "Upload failed for item=%s file=%s stage=%s: %s",
                item_id, filename, stage, exc,
            )
            # Callers see the upload context on the original exception
            exc.item_id = item_id
            exc.filename = filename
            exc.stage = stage
            raise
        except OSError as exc:
            logger.error(
                "Upload failed for item=%s file=%s stage=%s: %s",
                item_id, filename, stage, exc,
            )
            raise UploadError(item_id, filename, stage, exc) from exc
        logger.info("Stored %s for draft %s", filename, item_id)
        return record

    async def _compensate(self, item_id: str, filename: str, destination: Path) -> None:
        try:
            await asyncio.to_thread(remove_file, destination)
            logger.warning("Removed %s for draft %s after its record could not be written", filename, item_id)
        except OSError as exc:
            logger.critical(
                "Orphaned file left on disk: item=%s file=%s path=%s (cleanup failed: %s)",
                item_id, filename, destination, exc,
            )

    async def upload_bytes(
        self,
        item_id: str,
        data: bytes,
        original_filename: str,
        create_missing: bool = True,
    ) -> Dict[str, Any]:
        validate_item_id(item_id)
        original_filename = sanitize_filename(original_filename)
        staged = await asyncio.to_thread(self.stage_bytes, data, original_filename)
        try:
            return await self.upload_image(item_id, staged, original_filename, create_missing)
        finally:
            with suppress(OSError):
                remove_file(staged)

    async def upload_batch(
        self,
        item_id: str,
        files: Sequence[Tuple[Path, str]],
        create_missing: bool = True,
    ) -> List[Dict[str, Any]]:
        """Upload ``(staged_path, original_filename)`` pairs one at a time.

        Each file's locked section, record write included, finishes before the
        next file starts, so a batch never collides with itself.
        """
        records: List[Dict[str, Any]] = []
        for staged_path, original_filename in files:
            records.append(await self.upload_image(item_id, staged_path, original_filename, create_missing))
        return records

    # --- deletes ---

    async def delete_image(self, item_id: str, filename: str) -> List[Dict[str, Any]]:
        """Remove an image record and its file; returns the remaining images."""
        validate_item_id(item_id)
        filename = sanitize_filename(filename)
        async with self.locks.locked(item_id):
            draft, removed = await asyncio.to_thread(self.store.remove_image, item_id, filename)
            directory = self.item_dir(item_id)
            if not await asyncio.to_thread(remove_file, directory / sanitize_filename(removed["filename"])):
                logger.warning("Image file %s for draft %s was already missing", filename, item_id)
            await asyncio.to_thread(prune_empty_dir, directory)
        logger.info("Deleted %s from draft %s", filename, item_id)
        return draft["images"]

    async def delete_draft(self, item_id: str) -> Dict[str, Any]:
        validate_item_id(item_id)
        async with self.locks.locked(item_id):
            draft = await asyncio.to_thread(self.store.delete_draft, item_id)
            if draft is None:
                raise ItemNotFound(item_id)
            directory = self.item_dir(item_id)
            for image in draft["images"]:
                path = directory / sanitize_filename(image.get("filename", ""))
                try:
                    await asyncio.to_thread(remove_file, path)
                except OSError as exc:
                    logger.error("Error deleting image %s of draft %s: %s", path, item_id, exc)
            await asyncio.to_thread(prune_empty_dir, directory)
        logger.info("Deleted draft %s (%d images)", item_id, len(draft["images"]))
        return draft

    async def save_draft(self, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        validate_item_id(item_id)
        async with self.locks.locked(item_id):
            return await asyncio.to_thread(self.store.save_draft, item_id, payload)

    # --- purchased images ---

    def purchased_dir(self, item_id: str) -> Path:
        return self.purchased_root / validate_item_id(item_id)

    def purchased_url(self, item_id: str, filename: str) -> str:
        return f"{self.url_prefix}/purchased/{item_id}/{filename}"

    async def save_purchased_image(
        self,
        item_id: str,
        source: str,
        original_filename: str,
        is_temp: bool = True,
    ) -> Dict[str, str]:
        """Move an image into ``<uploads>/purchased/<itemId>/``.

        ``source`` is a staging path when ``is_temp`` is set, otherwise the
        filename of one of the draft's images. A draft image loses its record
        in the same locked section that moves its file.
        """
        validate_item_id(item_id)
        stamp = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
        filename = f"purchased-{stamp}.{file_extension(original_filename)}"
        destination = self.purchased_dir(item_id) / filename
        if is_temp:
            staged = await asyncio.to_thread(self.resolve_staged, source)
            await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.move, str(staged), str(destination))
        else:
            name = sanitize_filename(source)
            async with self.locks.locked(item_id):
                images = await asyncio.to_thread(self.store.find_images, item_id)
                if not any(image.get("filename") == name for image in images):
                    raise ImageNotFound(item_id, name)
                directory = self.item_dir(item_id)
                await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
                await asyncio.to_thread(shutil.move, str(directory / name), str(destination))
                try:
                    await asyncio.to_thread(self.store.remove_image, item_id, name)
                except Exception:
                    await asyncio.to_thread(shutil.move, str(destination), str(directory / name))
                    raise
                await asyncio.to_thread(prune_empty_dir, directory)
        logger.info("Saved purchased image %s for item %s", filename, item_id)
        return {
            "purchasedPath": self.purchased_url(item_id, filename),
            "filename": filename,
        }

    # --- maintenance ---

    def _scan_item(
        self, item_id: str, draft: Optional[Dict[str, Any]]
    ) -> Tuple[List[Dict[str, str]], List[Dict[str, str]]]:
        directory = self.drafts_root / item_id
        known = set()
        missing: List[Dict[str, str]] = []
        for image in draft["images"] if draft else []:
            name = sanitize_filename(image.get("filename", ""))
            known.add(name)
            if not (directory / name).is_file():
                missing.append({"itemId": item_id, "filename": name})
        untracked: List[Dict[str, str]] = []
        if directory.is_dir():
            for path in sorted(directory.iterdir()):
                if path.is_file() and path.name not in known:
                    untracked.append({"itemId": item_id, "filename": path.name, "path": str(path)})
        return untracked, missing

    def _stored_item_ids(self) -> List[str]:
        item_ids = {d["itemId"] for d in self.store.list_drafts(is_draft=None)}
        if self.drafts_root.exists():
            item_ids.update(p.name for p in self.drafts_root.iterdir() if p.is_dir())
        return sorted(item_ids)

    def _load_for_scan(self, item_id: str) -> Optional[Dict[str, Any]]:
        # Directories that are not valid item ids cannot have a draft
        if not ITEM_ID_PATTERN.match(item_id):
            return None
        return self.store.get_draft(item_id)

    def find_orphans(self) -> Dict[str, List[Dict[str, str]]]:
        """Files on disk without a record, and records whose file is missing.

        A read-only report; it does not take item locks, so an upload in
        flight can show up as an untracked file.
        """
        untracked: List[Dict[str, str]] = []
        missing: List[Dict[str, str]] = []
        for item_id in self._stored_item_ids():
            files, records = self._scan_item(item_id, self._load_for_scan(item_id))
            untracked.extend(files)
            missing.extend(records)
        return {"untracked_files": untracked, "missing_files": missing}

    def _fix_item(self, item_id: str) -> Tuple[int, int]:
        untracked, missing = self._scan_item(item_id, self._load_for_scan(item_id))
        removed_files = 0
        dropped_records = 0
        for entry in untracked:
            if remove_file(Path(entry["path"])):
                removed_files += 1
        for entry in missing:
            with suppress(DraftStoreError):
                self.store.remove_image(item_id, entry["filename"])
                dropped_records += 1
        prune_empty_dir(self.drafts_root / item_id)
        return removed_files, dropped_records

    async def fix_orphans(self) -> Dict[str, Any]:
        """Delete untracked files, drop dangling records and prune empty directories.

        Each item is repaired while holding its item lock. Items whose lock is
        held (an upload or delete in progress) are skipped and listed.
        """
        removed_files = 0
        dropped_records = 0
        skipped: List[str] = []
        for item_id in await asyncio.to_thread(self._stored_item_ids):
            try:
                async with self.locks.locked(item_id, wait=False):
                    removed, dropped = await asyncio.to_thread(self._fix_item, item_id)
            except LockContention:
                logger.warning("Skipping orphan repair for %s: item is locked", item_id)
                skipped.append(item_id)
                continue
            removed_files += removed
            dropped_records += dropped
        return {"removed_files": removed_files, "dropped_records": dropped_records, "skipped_items": skipped}

    def stale_staged_files(self, max_age_seconds: float) -> List[Path]:
        cutoff = time.time() - max_age_seconds
        stale: List[Path] = []
        for path in sorted(self.staging_dir.iterdir()):
            with suppress(FileNotFoundError):
                if path.is_file() and path.stat().st_mtime < cutoff:
                    stale.append(path)
        return stale


def staged_for_batch(service: DraftImageService, uploads: Iterable[Tuple[BinaryIO, str]]) -> List[Tuple[Path, str]]:
    """Stage several upload streams; removes what was staged if one is rejected."""
    staged: List[Tuple[Path, str]] = []
    try:
        for fileobj, original_filename in uploads:
            staged.append((service.stage_stream(fileobj, original_filename), original_filename))
    except (InvalidImage, OSError):
        for path, _ in staged:
            with suppress(OSError):
                remove_file(path)
        raise
    return staged
