import atexit
import io
import logging
import math
import os
import re
import secrets
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from itsdangerous import BadSignature, URLSafeSerializer

from flask import (
    Flask,
    Response,
    g,
    has_request_context,
    jsonify,
    request,
    send_file,
    url_for,
)
from flask_limiter import Limiter
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .lifecycle import (
    SORT_KEYS,
    CleanupScheduler,
    FileDropError,
    FileNotFound,
    LifecycleManager,
)
from .storage import (
    DATA_DIR,
    LOGS_DIR,
    TRUSTED_PROXY_HOPS,
    UPLOADS_DIR,
    BlobStore,
    FileRecord,
    MetadataRegistry,
    ensure_directories,
    format_file_size,
    get_config_mtime,
    load_config,
)

_CONFIG_CACHE: Dict[str, Any] = load_config()
_CONFIG_CACHE_MTIME: float = get_config_mtime()
_config_lock = threading.RLock()

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
MULTIPART_OVERHEAD_BYTES = 1024 * 1024
MAX_PAGE_LIMIT = 100
DEFAULT_PAGE_LIMIT = 10
DOWNLOAD_SIGNATURE_SALT = "filedrop-download"
# Clients with neither a peer address nor a forwarding header share this bucket.
# Behind a reverse proxy remote_addr is the proxy itself, so every client lands
# in one bucket unless FILEDROP_TRUSTED_PROXY_HOPS is set and ProxyFix rewrites
# remote_addr from X-Forwarded-For.
RATE_LIMIT_FALLBACK_KEY = "anonymous"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()
        try:
            # Exclusive creation so concurrent workers agree on one key.
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            logging.getLogger("filedrop.config").warning(
                "Secret key file exists but is empty, regenerating"
            )
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)
        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as secret_file:
            secret_file.write(generated)
            secret_file.flush()
            os.fsync(secret_file.fileno())
        logging.getLogger("filedrop.config").warning(
            "Generated new secret key - stored in %s", secret_path
        )
        return generated
    except OSError as error:
        logging.getLogger("filedrop.config").critical(
            "SECURITY WARNING: Using in-memory secret key. Download links will not "
            "survive restarts. Set SECRET_KEY for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


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

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

_base_http_logger = logging.getLogger("filedrop.http")
_base_http_logger.setLevel(numeric_level)
http_logger = RequestAwareLogger(_base_http_logger)


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return max(1, fallback)
    return max(1, parsed)


registry = MetadataRegistry()
blob_store = BlobStore(UPLOADS_DIR)
lifecycle_manager = LifecycleManager(
    registry,
    blob_store,
    max_file_size=_coerce_positive_int(_CONFIG_CACHE.get("max_file_size_bytes"), 1),
    allowed_extensions=_CONFIG_CACHE.get("allowed_extensions"),
    default_duration=str(_CONFIG_CACHE.get("default_duration")),
)
cleanup_scheduler = CleanupScheduler(
    lifecycle_manager,
    interval_minutes=_coerce_positive_int(_CONFIG_CACHE.get("cleanup_interval_minutes"), 60),
    orphan_grace_seconds=float(_CONFIG_CACHE.get("orphan_grace_minutes", 10.0)) * 60,
)


def rate_limit_key() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    client = request.remote_addr or forwarded.split(",")[0].strip()
    return client or RATE_LIMIT_FALLBACK_KEY


app = Flask(__name__)
if TRUSTED_PROXY_HOPS:
    app.wsgi_app = ProxyFix(
        app.wsgi_app,
        x_for=TRUSTED_PROXY_HOPS,
        x_proto=TRUSTED_PROXY_HOPS,
        x_host=TRUSTED_PROXY_HOPS,
    )

limiter = Limiter(
    key_func=rate_limit_key,
    app=app,
    default_limits=[],
    strategy="fixed-window",
    headers_enabled=True,
    storage_uri=os.environ.get("FILEDROP_RATE_LIMIT_STORAGE", "memory://"),
)


def _apply_runtime_settings(config: Dict[str, Any]) -> None:
    max_size = _coerce_positive_int(config.get("max_file_size_bytes"), lifecycle_manager.max_file_size)
    lifecycle_manager.max_file_size = max_size
    lifecycle_manager.allowed_extensions = list(config.get("allowed_extensions") or [])
    lifecycle_manager.default_duration = str(config.get("default_duration"))
    app.config["MAX_CONTENT_LENGTH"] = max_size + MULTIPART_OVERHEAD_BYTES
    cleanup_scheduler.orphan_grace_seconds = float(config.get("orphan_grace_minutes", 10.0)) * 60
    cleanup_scheduler.update_interval(
        _coerce_positive_int(config.get("cleanup_interval_minutes"), cleanup_scheduler.interval_minutes)
    )


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE, _CONFIG_CACHE_MTIME
    with _config_lock:
        current_mtime = get_config_mtime()
        if not refresh and current_mtime > _CONFIG_CACHE_MTIME:
            refresh = True

        if refresh:
            _CONFIG_CACHE = load_config()
            _CONFIG_CACHE_MTIME = get_config_mtime()
            _apply_runtime_settings(_CONFIG_CACHE)
        return _CONFIG_CACHE


def upload_rate_limit_string() -> str:
    config = get_config()
    requests_allowed = _coerce_positive_int(config.get("upload_rate_limit_requests"), 10)
    window = _coerce_positive_int(config.get("upload_rate_limit_window_minutes"), 15)
    return f"{requests_allowed} per {window} minutes"


app.config["SECRET_KEY"] = _load_secret_key()
app.logger.setLevel(numeric_level)
_apply_runtime_settings(_CONFIG_CACHE)


def _download_serializer() -> URLSafeSerializer:
    return URLSafeSerializer(app.config["SECRET_KEY"], salt=DOWNLOAD_SIGNATURE_SALT)


def sign_file_id(file_id: str) -> str:
    return _download_serializer().dumps(file_id)


def verify_download_signature(file_id: str, token: str) -> bool:
    try:
        return _download_serializer().loads(token) == file_id
    except BadSignature:
        return False


def isoformat_utc(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def current_base_url() -> str:
    return str(get_config().get("base_url") or "")


def build_download_url(file_id: str, base_url: str = "") -> str:
    signature = sign_file_id(file_id)
    if base_url:
        return base_url + url_for("download_file", file_id=file_id, sig=signature)
    return url_for("download_file", file_id=file_id, sig=signature, _external=True)


def serialize_record(
    record: FileRecord, *, base_url: str = "", detailed: bool = False
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": record.id,
        "originalName": record.original_name,
        "size": record.size,
        "sizeFormatted": format_file_size(record.size),
        "mimeType": record.mime_type,
        "extension": record.extension,
        "uploadedAt": isoformat_utc(record.created_at),
        "expiresAt": isoformat_utc(record.expires_at),
        "downloadUrl": build_download_url(record.id, base_url),
    }
    if detailed:
        payload["fileName"] = record.storage_name
        payload["hash"] = record.sha256
    return payload


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        http_logger.warning(
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
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or '')}",
        )


def _error_response(message: str, code: str, status: int, **extra: Any) -> Response:
    payload: Dict[str, Any] = {"success": False, "error": message, "code": code}
    payload.update(extra)
    response = jsonify(payload)
    response.status_code = status
    return response


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    http_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(FileDropError)
def handle_filedrop_error(error: FileDropError):
    if error.status >= 500:
        http_logger.error(
            "request_failed code=%s path=%s",
            error.code,
            sanitize_log_value(request.path),
            exc_info=error,
        )
    else:
        http_logger.info(
            "request_rejected code=%s path=%s detail=%s",
            error.code,
            sanitize_log_value(request.path),
            sanitize_log_value(str(error)),
        )
    return jsonify(error.to_payload()), error.status


@app.errorhandler(413)
def handle_file_too_large(error):
    return _error_response(
        f"File size exceeds maximum limit of {format_file_size(lifecycle_manager.max_file_size)}",
        "FILE_TOO_LARGE",
        413,
        maxSize=lifecycle_manager.max_file_size,
    )


@app.errorhandler(429)
def handle_rate_limit(error):
    retry_after = None
    current = getattr(limiter, "current_limit", None)
    reset_at = getattr(current, "reset_at", None)
    if reset_at is not None:
        retry_after = max(0, int(math.ceil(reset_at - time.time())))
    http_logger.warning(
        "rate_limit_exceeded key=%s path=%s",
        sanitize_log_value(rate_limit_key()),
        sanitize_log_value(request.path),
    )
    return _error_response("Too many requests", "RATE_LIMIT_EXCEEDED", 429, retryAfter=retry_after)


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    code = (error.name or "error").upper().replace(" ", "_")
    return _error_response(error.description or error.name, code, error.code or 500)


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    http_logger.error(
        "request_failed_unexpected path=%s error=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
        exc_info=error,
    )
    return _error_response("Internal server error", "INTERNAL_ERROR", 500)


@app.route("/api/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload_file():
    if "file" not in request.files:
        http_logger.warning("upload_failed reason=no_file_part")
        return _error_response("No file provided", "NO_FILE", 400)

    duration = (request.form.get("duration") or "").strip() or None
    upload = request.files["file"]
    with upload_stream_handler(upload):
        # One byte past the limit is enough to reject oversized uploads.
        data = upload.stream.read(lifecycle_manager.max_file_size + 1)
        record = lifecycle_manager.ingest(
            data,
            upload.filename or "",
            upload.mimetype or None,
            duration,
        )

    http_logger.info(
        "file_uploaded file_id=%s filename=%s size=%d",
        record.id,
        sanitize_log_value(record.original_name),
        record.size,
    )
    payload = serialize_record(record, base_url=current_base_url())
    payload["duration"] = duration or lifecycle_manager.default_duration
    return jsonify({"success": True, "data": payload, "message": "File uploaded successfully"}), 201


@app.route("/api/list")
def list_uploaded_files():
    page = max(request.args.get("page", 1, type=int), 1)
    limit = min(max(request.args.get("limit", DEFAULT_PAGE_LIMIT, type=int), 1), MAX_PAGE_LIMIT)
    sort_by = request.args.get("sortBy", "uploadedAt")
    if sort_by not in SORT_KEYS:
        sort_by = "uploadedAt"
    sort_order = "asc" if request.args.get("sortOrder", "desc").lower() == "asc" else "desc"

    records, pagination = lifecycle_manager.list_files(
        page,
        limit,
        search=request.args.get("search") or None,
        extension=request.args.get("extension") or None,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    base_url = current_base_url()
    return jsonify(
        {
            "success": True,
            "data": [serialize_record(record, base_url=base_url) for record in records],
            "pagination": {
                "page": pagination.page,
                "limit": pagination.limit,
                "total": pagination.total,
                "totalPages": pagination.total_pages,
            },
        }
    )


@app.route("/api/files/<file_id>")
def describe_file(file_id: str):
    record = lifecycle_manager.describe(file_id)
    payload = serialize_record(record, base_url=current_base_url(), detailed=True)
    return jsonify({"success": True, "data": payload})


@app.route("/api/download/<file_id>")
def download_file(file_id: str):
    token = request.args.get("sig")
    if token is not None and not verify_download_signature(file_id, token):
        http_logger.warning("file_download_bad_signature file_id=%s", sanitize_log_value(file_id))
        raise FileNotFound("File not found")

    data, record = lifecycle_manager.retrieve(file_id)
    http_logger.info("file_downloaded file_id=%s", file_id)
    response = send_file(
        io.BytesIO(data),
        mimetype=record.mime_type,
        as_attachment=True,
        download_name=record.original_name,
        etag=record.sha256 or False,
        max_age=0,
    )
    return response


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        ensure_directories()
        probe_file = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}.tmp"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    next_run = cleanup_scheduler.next_run_time()
    checks["scheduler_running"] = cleanup_scheduler.running
    checks["cleanup"] = "scheduled" if next_run else "not_scheduled"
    if next_run:
        checks["cleanup_next_run"] = next_run.isoformat()
    checks["storage"] = lifecycle_manager.statistics()

    status = "healthy" if healthy else "unhealthy"
    return jsonify(
        {
            "status": status,
            "timestamp": time.time(),
            "checks": checks,
        }
    ), 200 if healthy else 503


cleanup_scheduler.start()
atexit.register(lambda: cleanup_scheduler.shutdown(wait=False))

# Metadata does not survive restarts, so files left by a previous process are
# unreachable; reclaim them before serving traffic.
cleanup_scheduler.sweep_temp_files()
cleanup_scheduler.sweep_orphans()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
