import json
import logging
import os
import re
import tempfile
import threading
import time
import uuid
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Dict, Iterable, Optional, Tuple


BASE_DIR = Path.cwd()

INDEX_FILENAME = ".media-index.json"
DEFAULT_CATEGORY = "uncategorized"
FALLBACK_SEGMENT = "file"

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
TEMP_SUFFIX = ".tmp"
# NAME_MAX on ext4 and most POSIX filesystems, counted in bytes.
MAX_SEGMENT_BYTES = 255
MEDIA_ID_LENGTH = 32

ALLOWED_EXTENSIONS = {".mp3", ".wav", ".ogg", ".aac", ".m4a", ".flac"}

MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".aac": "audio/aac",
    ".m4a": "audio/mp4",
    ".flac": "audio/flac",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

MEDIA_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
# Union of POSIX and Windows illegal filename characters.
_ILLEGAL_SEGMENT_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"/\\|?*]')
_DOTS_OR_BLANK = re.compile(r"[\s.]*")

logger = logging.getLogger("soundboard.storage")


class MediaStorageNotConfiguredError(RuntimeError):
    """Raised when no media root has been configured."""


class UploadTooLargeError(ValueError):
    """Raised when a streamed upload exceeds the configured limit."""

    def __init__(self, limit_bytes: int) -> None:
        super().__init__("Upload exceeds the configured size limit")
        self.limit_bytes = limit_bytes


def _env_flag(key: str) -> bool:
    return os.environ.get(key, "").strip().lower() in {"1", "true", "yes", "on"}


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("soundboard.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _resolve_media_root() -> Optional[Path]:
    """Resolve the managed media root from the environment.

    ``MEDIA_ROOT`` is the only source. When it is unset the service refuses
    uploads and media requests, unless ``SOUNDBOARD_ALLOW_DEFAULT_MEDIA_ROOT``
    opts into a ``./media`` directory for local experiments.
    """

    config_logger = logging.getLogger("soundboard.config")
    value = (os.environ.get("MEDIA_ROOT") or "").strip()
    if value:
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = BASE_DIR / candidate
        return candidate.resolve()

    if _env_flag("SOUNDBOARD_ALLOW_DEFAULT_MEDIA_ROOT"):
        fallback = (BASE_DIR / "media").resolve()
        config_logger.warning(
            "MEDIA_ROOT is not configured; using default media root %s. "
            "Uploads may not persist across restarts.",
            fallback,
        )
        return fallback

    config_logger.warning(
        "MEDIA_ROOT is not configured. Set MEDIA_ROOT to a writable directory; "
        "uploads and media serving are disabled."
    )
    return None


MEDIA_ROOT = _resolve_media_root()
LOGS_DIR = Path(os.environ.get("SOUNDBOARD_LOGS_DIR") or BASE_DIR / "logs").expanduser().resolve()

DEFAULT_MAX_UPLOAD_MB = _safe_int_env("SOUNDBOARD_MAX_UPLOAD_SIZE_MB", 100)
DEFAULT_MAX_CONCURRENT_UPLOADS = _safe_int_env("SOUNDBOARD_MAX_CONCURRENT_UPLOADS", 10)
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("SOUNDBOARD_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("SOUNDBOARD_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 600)
DEFAULT_TEMP_CLEANUP_MINUTES = _safe_int_env("SOUNDBOARD_TEMP_CLEANUP_MINUTES", 60)


def require_media_root() -> Path:
    """Return the configured media root, creating it when needed."""

    if MEDIA_ROOT is None:
        raise MediaStorageNotConfiguredError("MEDIA_ROOT not configured")
    MEDIA_ROOT.mkdir(parents=True, exist_ok=True)
    return MEDIA_ROOT


def generate_media_id() -> str:
    return uuid.uuid4().hex


def is_valid_media_id(media_id: str) -> bool:
    return bool(media_id) and MEDIA_ID_PATTERN.match(media_id) is not None


def sanitize_path_segment(value: Optional[str], max_bytes: int = MAX_SEGMENT_BYTES) -> str:
    """Turn *value* into a single filesystem-safe path segment.

    Illegal filename characters and both path separators are dropped and the
    result is cut to at most *max_bytes* of UTF-8 on a character boundary.
    Results that would be empty, whitespace-only, or a pure dot sequence such
    as ``..`` collapse to ``"file"`` so a caller can always join the segment.
    """

    cleaned = _ILLEGAL_SEGMENT_CHARS.sub("", value or "")
    encoded = cleaned.encode("utf-8")
    if len(encoded) > max_bytes:
        cleaned = encoded[:max_bytes].decode("utf-8", errors="ignore")
    if _DOTS_OR_BLANK.fullmatch(cleaned):
        return FALLBACK_SEGMENT
    return cleaned


def max_stem_bytes(ext: str) -> int:
    """Byte budget left for the name in ``name-<id><ext>.tmp``."""

    reserved = 1 + MEDIA_ID_LENGTH + len(ext.encode("utf-8")) + len(TEMP_SUFFIX)
    return max(MAX_SEGMENT_BYTES - reserved, len(FALLBACK_SEGMENT))


def split_upload_filename(filename: str) -> Tuple[str, str]:
    """Return ``(stem, extension)`` with the extension lower-cased.

    A name made only of an extension, such as ``.mp3``, has an empty stem.
    """

    base = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    stem, ext = os.path.splitext(base)
    if not ext and stem.startswith(".") and not stem.endswith("."):
        dot = stem.rindex(".")
        stem, ext = stem[:dot], stem[dot:]
    return stem, ext.lower()


def is_allowed_extension(ext: str) -> bool:
    return (ext or "").lower() in ALLOWED_EXTENSIONS


def mime_type_for(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), DEFAULT_MIME_TYPE)


def is_safe_relative_path(relative_path: str) -> bool:
    """Check that *relative_path* stays beneath the media root."""

    if not isinstance(relative_path, str) or not relative_path:
        return False
    if "\\" in relative_path or "\x00" in relative_path:
        return False
    windows_candidate = PureWindowsPath(relative_path)
    if windows_candidate.drive or windows_candidate.root:
        return False
    candidate = PurePosixPath(relative_path)
    if candidate.is_absolute():
        return False
    return all(part not in {"", ".", ".."} for part in relative_path.split("/"))


def compose_relative_path(category: str, name: str, media_id: str, ext: str) -> str:
    """Build ``category/name-id.ext`` from already sanitized segments."""

    return PurePosixPath(category, f"{name}-{media_id}{ext}").as_posix()


def resolve_media_path(root: Path, relative_path: str) -> Path:
    """Join *relative_path* onto *root*, refusing anything that escapes it."""

    if not is_safe_relative_path(relative_path):
        raise ValueError("Unsafe media path")
    candidate = (root / relative_path).resolve()
    root_resolved = root.resolve()
    if root_resolved not in candidate.parents:
        raise ValueError("Media path escapes the media root")
    return candidate


class MediaIndexStore:
    """JSON-backed id to relative-path index stored inside the media root.

    Every write is a locked read-modify-write of the whole mapping followed
    by an atomic replace, so concurrent readers only ever see complete files.
    The parsed mapping is cached against the file's mtime and size.
    """

    def __init__(self, media_root: Path) -> None:
        self.media_root = Path(media_root)
        self.index_path = self.media_root / INDEX_FILENAME
        self._write_lock = threading.Lock()
        self._cache_lock = threading.Lock()
        self._cache: Optional[Dict[str, str]] = None
        self._cache_stamp: Optional[Tuple[int, int]] = None
        self.media_root.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            with self._write_lock:
                if not self.index_path.exists():
                    self._write_mapping({})

    def _stamp(self) -> Optional[Tuple[int, int]]:
        try:
            stat = self.index_path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def _read_mapping(self) -> Dict[str, str]:
        try:
            with self.index_path.open("r", encoding="utf-8") as index_file:
                raw = json.load(index_file)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as error:
            logger.warning(
                "media_index_unreadable path=%s error=%s", self.index_path, error
            )
            return {}

        if not isinstance(raw, dict):
            logger.warning(
                "media_index_invalid path=%s type=%s",
                self.index_path,
                type(raw).__name__,
            )
            return {}

        return {
            key: value
            for key, value in raw.items()
            if isinstance(key, str) and isinstance(value, str)
        }

    def _write_mapping(self, mapping: Dict[str, str]) -> None:
        fd, temp_name = tempfile.mkstemp(
            prefix=f"{INDEX_FILENAME}.", suffix=TEMP_SUFFIX, dir=str(self.media_root)
        )
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as index_file:
                json.dump(mapping, index_file, indent=2, sort_keys=True)
                index_file.flush()
                os.fsync(index_file.fileno())
            temp_path.replace(self.index_path)
        except Exception:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            raise

    def load(self) -> Dict[str, str]:
        """Return a copy of the current mapping, reloading if the file changed."""

        with self._cache_lock:
            stamp = self._stamp()
            if self._cache is None or stamp is None or stamp != self._cache_stamp:
                self._cache = self._read_mapping()
                self._cache_stamp = stamp
            return dict(self._cache)

    def resolve(self, media_id: str) -> Optional[str]:
        relative_path = self.load().get(media_id)
        if relative_path is None:
            return None
        if not is_safe_relative_path(relative_path):
            logger.warning(
                "media_index_unsafe_entry media_id=%s relative_path=%r",
                media_id,
                relative_path,
            )
            return None
        return relative_path

    def insert(self, media_id: str, relative_path: str) -> None:
        if not is_valid_media_id(media_id):
            raise ValueError("Invalid media id")
        if not is_safe_relative_path(relative_path):
            raise ValueError("Unsafe media path")

        with self._write_lock:
            mapping = self._read_mapping()
            mapping[media_id] = relative_path
            self._write_mapping(mapping)
            with self._cache_lock:
                self._cache = mapping
                self._cache_stamp = self._stamp()

    def remove(self, media_id: str) -> bool:
        with self._write_lock:
            mapping = self._read_mapping()
            if media_id not in mapping:
                return False
            del mapping[media_id]
            self._write_mapping(mapping)
            with self._cache_lock:
                self._cache = mapping
                self._cache_stamp = self._stamp()
        return True

    def __len__(self) -> int:
        return len(self.load())


_index_store: Optional[MediaIndexStore] = None
_index_store_lock = threading.Lock()


def get_index_store() -> MediaIndexStore:
    """Return the process-wide index store for the configured media root."""

    global _index_store
    root = require_media_root()
    with _index_store_lock:
        if _index_store is None or _index_store.media_root != root:
            _index_store = MediaIndexStore(root)
        return _index_store


def write_upload_chunks(
    destination: Path, chunks: Iterable[bytes], max_bytes: Optional[int] = None
) -> int:
    """Stream *chunks* into *destination* through a sibling temp file.

    The temp file is renamed into place only after every chunk was written;
    on any failure it is removed and nothing appears at *destination*.
    """

    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_name(f"{destination.name}{TEMP_SUFFIX}")
    written = 0
    try:
        with temp_path.open("wb") as handle:
            for chunk in chunks:
                if not chunk:
                    continue
                if max_bytes and written + len(chunk) > max_bytes:
                    raise UploadTooLargeError(max_bytes)
                handle.write(chunk)
                written += len(chunk)
        temp_path.replace(destination)
    except Exception:
        temp_path.unlink(missing_ok=True)
        prune_empty_media_dirs(destination.parent)
        raise
    return written


def prune_empty_media_dirs(path: Path) -> None:
    """Remove empty category directories up to (not including) the root."""

    if MEDIA_ROOT is None:
        return
    try:
        current = path.resolve()
    except OSError:
        return

    root = MEDIA_ROOT.resolve()
    while current != root and root in current.parents:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


def delete_media(media_id: str) -> bool:
    """Delete the file behind *media_id*, then drop its index mapping.

    A file that cannot be removed is logged and left behind; the mapping is
    still removed so the id can never resolve again.
    """

    store = get_index_store()
    relative_path = store.resolve(media_id)
    if relative_path is not None:
        try:
            file_path = resolve_media_path(store.media_root, relative_path)
        except ValueError:
            file_path = None
        if file_path is not None:
            try:
                file_path.unlink(missing_ok=True)
                prune_empty_media_dirs(file_path.parent)
            except OSError as error:
                logger.warning(
                    "media_delete_disk_failed media_id=%s path=%s error=%s",
                    media_id,
                    file_path,
                    error,
                )

    removed = store.remove(media_id)
    if removed:
        logger.info(
            "media_deleted media_id=%s relative_path=%s", media_id, relative_path
        )
    return removed


def cleanup_temp_files(max_age_seconds: Optional[float] = None) -> int:
    """Remove lingering temporary upload and index files."""

    if MEDIA_ROOT is None or not MEDIA_ROOT.exists():
        return 0

    if max_age_seconds is None:
        max_age_seconds = DEFAULT_TEMP_CLEANUP_MINUTES * 60
    cutoff = time.time() - max_age_seconds
    removed = 0

    for temp_file in MEDIA_ROOT.rglob(f"*{TEMP_SUFFIX}"):
        if not temp_file.is_file():
            continue
        try:
            if temp_file.stat().st_mtime < cutoff:
                temp_file.unlink()
                removed += 1
                logger.info("temp_file_removed path=%s", temp_file)
        except OSError as error:
            logger.warning(
                "temp_cleanup_failed path=%s error=%s",
                temp_file,
                error,
            )

    return removed
