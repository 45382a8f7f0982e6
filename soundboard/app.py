import atexit
import itertools
import logging
import os
import re
import shutil
import stat as stat_module
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, abort, g, has_request_context, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import RequestedRangeNotSatisfiable
from werkzeug.http import parse_range_header

from .media_urls import media_url
from .storage import (
    BYTES_PER_MB,
    CHUNK_SIZE_BYTES,
    DEFAULT_CATEGORY,
    DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
    DEFAULT_MAX_CONCURRENT_UPLOADS,
    DEFAULT_MAX_UPLOAD_MB,
    DEFAULT_TEMP_CLEANUP_MINUTES,
    DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR,
    LOGS_DIR,
    MEDIA_ROOT,
    MediaStorageNotConfiguredError,
    UploadTooLargeError,
    cleanup_temp_files,
    compose_relative_path,
    delete_media,
    generate_media_id,
    get_index_store,
    is_allowed_extension,
    is_valid_media_id,
    max_stem_bytes,
    mime_type_for,
    prune_empty_media_dirs,
    resolve_media_path,
    sanitize_path_segment,
    split_upload_filename,
    write_upload_chunks,
)

# Constants for logging and caching
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
MEDIA_CACHE_MAX_AGE = 31536000  # one year, media ids never change content

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Optional[Path]:
    """Attach a rotating file handler for application and lifecycle logs."""

    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    try:
        LOGS_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as error:
        logging.getLogger("soundboard.config").warning(
            "File logging disabled: cannot open %s (%s)", log_path, error
        )
        return None
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


class UploadConcurrencyLimiter:
    """Track active uploads and enforce a configurable concurrency cap."""

    def __init__(self, limit: int) -> None:
        self._limit = max(1, int(limit))
        self._active = 0
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        with self._lock:
            if self._active >= self._limit:
                return False
            self._active += 1
            return True

    def release(self, acquired: bool) -> None:
        if not acquired:
            return
        with self._lock:
            if self._active > 0:
                self._active -= 1

    def available_slots(self) -> int:
        with self._lock:
            return max(self._limit - self._active, 0)

    @property
    def current_limit(self) -> int:
        with self._lock:
            return self._limit


upload_limiter = UploadConcurrencyLimiter(DEFAULT_MAX_CONCURRENT_UPLOADS)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = DEFAULT_MAX_UPLOAD_MB * BYTES_PER_MB
app.logger.setLevel(numeric_level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("SOUNDBOARD_RATE_LIMIT_STORAGE", "memory://"),
)


def upload_rate_limit_string() -> str:
    return f"{DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR} per hour"


def download_rate_limit_string() -> str:
    return f"{DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE} per minute"


_base_lifecycle_logger = logging.getLogger("soundboard.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)

scheduler: Optional[BackgroundScheduler] = None
if not _get_optional_bool_env("SOUNDBOARD_DISABLE_SCHEDULER"):
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=cleanup_temp_files,
        trigger="interval",
        minutes=DEFAULT_TEMP_CLEANUP_MINUTES,
        id="cleanup_temp_files",
        name="Clean up temporary upload files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(getattr(file_storage, 'filename', 'unknown'))}",
        )


@contextmanager
def upload_slot() -> Iterator[bool]:
    acquired = upload_limiter.acquire()
    try:
        yield acquired
    finally:
        upload_limiter.release(acquired)


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def media_etag(file_stat: os.stat_result) -> str:
    """Validator that changes whenever the file's size or mtime changes."""

    return f"{file_stat.st_size}-{file_stat.st_mtime_ns}"


def _storage_unavailable():
    return jsonify({"error": "Media storage is not configured"}), 503


class NotModifiedResponse(Response):
    """Bodiless 304 that keeps ``Last-Modified`` for revalidating clients.

    Werkzeug strips every entity header from a 304 while building the WSGI
    headers, ``Last-Modified`` included.
    """

    default_mimetype = None

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(status=304, **kwargs)

    def get_wsgi_headers(self, environ):
        headers = super().get_wsgi_headers(environ)
        last_modified = self.headers.get("Last-Modified")
        if last_modified is not None and "Last-Modified" not in headers:
            headers["Last-Modified"] = last_modified
        return headers


def _apply_media_headers(response: Response, etag: str, file_stat: os.stat_result) -> Response:
    response.set_etag(etag)
    response.last_modified = file_stat.st_mtime
    response.accept_ranges = "bytes"
    response.cache_control.no_cache = None
    response.cache_control.public = True
    response.cache_control.max_age = MEDIA_CACHE_MAX_AGE
    response.cache_control.immutable = True
    return response


def build_sound_metadata(
    media_id: str,
    name: str,
    category_id: str,
    file_name: str,
    file_size: int,
    extension: str,
    created_at: float,
) -> Dict[str, Any]:
    return {
        "id": media_id,
        "name": name,
        "description": "",
        "categoryId": category_id,
        "fileName": file_name,
        "filePath": media_url(media_id),
        "fileSize": file_size,
        "duration": 0,
        "format": extension.lstrip("."),
        "createdAt": isoformat_utc(created_at),
    }


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    response = jsonify({"error": "Method not allowed"})
    response.status_code = 405
    allowed = getattr(error, "valid_methods", None)
    if allowed:
        response.headers["Allow"] = ", ".join(sorted(allowed))
    return response


@app.errorhandler(413)
def handle_file_too_large(error):
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(RequestedRangeNotSatisfiable)
def handle_range_not_satisfiable(error):
    response = jsonify({"error": "Requested range not satisfiable"})
    response.status_code = 416
    length = getattr(error, "length", None)
    if length is not None:
        response.headers["Content-Range"] = f"bytes */{length}"
    return response


@app.errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.errorhandler(500)
def handle_internal_error(error):
    return jsonify({"error": "Internal server error"}), 500


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    if MEDIA_ROOT is None:
        checks["media_root"] = "not_configured"
        healthy = False
    else:
        checks["media_root"] = "configured"
        try:
            store = get_index_store()
            checks["index_entries"] = len(store)
        except Exception as error:
            checks["index_entries"] = f"error: {str(error)[:100]}"
            healthy = False

        try:
            probe_file = MEDIA_ROOT / f".health_check_{uuid.uuid4().hex}"
            probe_file.write_text("health_check", encoding="utf-8")
            probe_file.unlink(missing_ok=True)
            checks["media_root_writable"] = "ok"
        except OSError as error:
            checks["media_root_writable"] = f"error: {error.__class__.__name__}"
            healthy = False

        try:
            usage = shutil.disk_usage(MEDIA_ROOT)
            disk_free_gb = usage.free / (1024 ** 3)
            checks["disk_space_gb"] = round(disk_free_gb, 2)
            if disk_free_gb < 1:
                checks["disk_space_status"] = "critical"
                healthy = False
            elif disk_free_gb < 5:
                checks["disk_space_status"] = "warning"
            else:
                checks["disk_space_status"] = "ok"
        except OSError as error:
            checks["disk_space_gb"] = 0
            checks["disk_space_status"] = f"error: {error.__class__.__name__}"
            healthy = False

    if scheduler is not None:
        job = scheduler.get_job("cleanup_temp_files")
        checks["cleanup"] = "scheduled" if job and job.next_run_time else "not_scheduled"
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["cleanup"] = "disabled"
        checks["scheduler_running"] = False

    checks["upload_limit"] = upload_limiter.current_limit
    checks["upload_slots_available"] = upload_limiter.available_slots()

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), 200 if healthy else 503


@app.route("/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload_media():
    with upload_slot() as acquired:
        if not acquired:
            lifecycle_logger.warning("upload_failed reason=too_many_concurrent_uploads")
            return jsonify({"error": "Too many concurrent uploads"}), 503

        if MEDIA_ROOT is None:
            lifecycle_logger.error("upload_failed reason=media_root_not_configured")
            return _storage_unavailable()

        if "file" not in request.files:
            lifecycle_logger.warning("upload_failed reason=no_file_part")
            return jsonify({"error": "No file part"}), 400

        upload = request.files["file"]
        if not isinstance(upload, FileStorage) or not upload.filename:
            lifecycle_logger.warning("upload_failed reason=no_file_selected")
            return jsonify({"error": "No file selected"}), 400

        stem, extension = split_upload_filename(upload.filename)
        if not is_allowed_extension(extension):
            lifecycle_logger.warning(
                "upload_rejected reason=unsupported_type filename=%s extension=%s",
                sanitize_log_value(upload.filename),
                sanitize_log_value(extension),
            )
            return jsonify({"error": f"Unsupported file type: {extension or '(none)'}"}), 400

        raw_category = request.form.get("categoryId")
        if raw_category and raw_category.strip():
            category = sanitize_path_segment(raw_category)
        else:
            category = DEFAULT_CATEGORY
        name = sanitize_path_segment(stem, max_bytes=max_stem_bytes(extension))

        with upload_stream_handler(upload):
            first_chunk = upload.stream.read(CHUNK_SIZE_BYTES)
            if not first_chunk:
                lifecycle_logger.warning(
                    "upload_failed reason=empty_file filename=%s",
                    sanitize_log_value(upload.filename),
                )
                return jsonify({"error": "Empty file"}), 400

            try:
                store = get_index_store()
            except MediaStorageNotConfiguredError:
                lifecycle_logger.error("upload_failed reason=media_root_not_configured")
                return _storage_unavailable()

            media_id = generate_media_id()
            relative_path = compose_relative_path(category, name, media_id, extension)
            destination = None
            try:
                destination = resolve_media_path(store.media_root, relative_path)
                chunks = itertools.chain(
                    [first_chunk],
                    iter(lambda: upload.stream.read(CHUNK_SIZE_BYTES), b""),
                )
                write_upload_chunks(
                    destination, chunks, max_bytes=app.config.get("MAX_CONTENT_LENGTH")
                )
                size = destination.stat().st_size
            except UploadTooLargeError:
                lifecycle_logger.warning(
                    "upload_failed reason=too_large media_id=%s", media_id
                )
                return jsonify({"error": "File too large"}), 413
            except (OSError, ValueError):
                lifecycle_logger.exception(
                    "upload_write_failed media_id=%s path=%s",
                    media_id,
                    destination or sanitize_log_value(relative_path),
                )
                return jsonify({"error": "Failed to store upload"}), 500

        try:
            store.insert(media_id, relative_path)
        except (OSError, ValueError):
            lifecycle_logger.exception(
                "upload_index_failed media_id=%s path=%s", media_id, destination
            )
            destination.unlink(missing_ok=True)
            prune_empty_media_dirs(destination.parent)
            return jsonify({"error": "Failed to register upload"}), 500

        lifecycle_logger.info(
            "media_uploaded media_id=%s relative_path=%s size=%d",
            media_id,
            sanitize_log_value(relative_path),
            size,
        )
        return jsonify(
            build_sound_metadata(
                media_id,
                name=name,
                category_id=category,
                file_name=destination.name,
                file_size=size,
                extension=extension,
                created_at=time.time(),
            )
        ), 200


@app.route("/media/<media_id>", methods=["GET", "HEAD"])
@limiter.limit(lambda: download_rate_limit_string())
def serve_media(media_id: str):
    try:
        store = get_index_store()
    except MediaStorageNotConfiguredError:
        lifecycle_logger.error(
            "media_unavailable reason=media_root_not_configured media_id=%s",
            sanitize_log_value(media_id),
        )
        return _storage_unavailable()

    if not is_valid_media_id(media_id):
        lifecycle_logger.warning(
            "media_missing reason=invalid_id media_id=%s", sanitize_log_value(media_id)
        )
        abort(404)

    relative_path = store.resolve(media_id)
    if relative_path is None:
        lifecycle_logger.warning("media_missing reason=unknown_id media_id=%s", media_id)
        abort(404)

    try:
        file_path = resolve_media_path(store.media_root, relative_path)
    except ValueError:
        lifecycle_logger.error(
            "path_traversal_detected media_id=%s relative_path=%s",
            media_id,
            sanitize_log_value(relative_path),
        )
        abort(404)

    try:
        file_stat = file_path.stat()
    except OSError:
        file_stat = None
    if file_stat is None or not stat_module.S_ISREG(file_stat.st_mode):
        lifecycle_logger.warning(
            "media_missing reason=stale_mapping media_id=%s path=%s",
            media_id,
            file_path,
        )
        abort(404)

    etag = media_etag(file_stat)
    if request.if_none_match.contains_weak(etag):
        lifecycle_logger.info("media_not_modified media_id=%s", media_id)
        return _apply_media_headers(NotModifiedResponse(), etag, file_stat)

    conditional = True
    range_header = request.headers.get("Range")
    if range_header and parse_range_header(range_header) is None:
        lifecycle_logger.info(
            "media_range_ignored media_id=%s range=%s",
            media_id,
            sanitize_log_value(range_header),
        )
        conditional = False

    try:
        response = send_file(
            file_path,
            mimetype=mime_type_for(file_path),
            conditional=conditional,
            etag=etag,
            last_modified=file_stat.st_mtime,
            max_age=MEDIA_CACHE_MAX_AGE,
        )
    except FileNotFoundError:
        lifecycle_logger.warning(
            "media_missing reason=removed_during_request media_id=%s path=%s",
            media_id,
            file_path,
        )
        abort(404)

    lifecycle_logger.info(
        "media_served media_id=%s status=%d", media_id, response.status_code
    )
    return _apply_media_headers(response, etag, file_stat)


@app.route("/media/<media_id>", methods=["DELETE"])
def delete_media_route(media_id: str):
    if not is_valid_media_id(media_id):
        abort(404)
    try:
        removed = delete_media(media_id)
    except MediaStorageNotConfiguredError:
        return _storage_unavailable()
    except OSError:
        lifecycle_logger.exception("media_delete_failed media_id=%s", media_id)
        return jsonify({"error": "Failed to delete media"}), 500
    if not removed:
        lifecycle_logger.warning("media_delete_missing media_id=%s", media_id)
        abort(404)
    lifecycle_logger.info("media_delete_completed media_id=%s", media_id)
    return "", 204


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), threaded=True)
