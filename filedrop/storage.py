import json
import logging
import math
import os
import re
import secrets
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional


BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("FILEDROP_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("FILEDROP_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("FILEDROP_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("FILEDROP_LOGS_DIR", STORAGE_ROOT / "logs")
CONFIG_PATH = DATA_DIR / "config.json"

DEFAULT_MIME_TYPE = "application/octet-stream"
MAX_STORAGE_NAME_LENGTH = 100
FALLBACK_FILENAME = "file"
TEMP_SUFFIX = ".tmp"
BLOB_FILE_MODE = 0o600

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_REPEATED_PLACEHOLDER = re.compile(r"_+")
_HAS_ALNUM = re.compile(r"[a-zA-Z0-9]")

HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS

# Duration keys accepted at upload time. ``None`` means the file never expires.
DURATION_OPTIONS: Dict[str, Optional[int]] = {
    "1hour": HOUR_SECONDS,
    "6hours": 6 * HOUR_SECONDS,
    "12hours": 12 * HOUR_SECONDS,
    "1day": DAY_SECONDS,
    "7days": 7 * DAY_SECONDS,
    "14days": 14 * DAY_SECONDS,
    "30days": 30 * DAY_SECONDS,
    "unlimited": None,
}
DEFAULT_DURATION = "7days"

DEFAULT_ALLOWED_EXTENSIONS = [
    # Images
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp",
    # Documents
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".odt", ".ods", ".odp",
    # Text
    ".txt", ".csv", ".json", ".xml", ".md",
    # Archives
    ".zip", ".rar", ".7z", ".tar", ".gz",
    # Media
    ".mp3", ".mp4", ".avi", ".mov", ".wav", ".flv", ".wmv", ".mkv",
    # Code
    ".js", ".ts", ".html", ".css", ".php", ".py", ".java", ".cpp",
]


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("filedrop.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_MAX_FILE_SIZE_BYTES = _safe_int_env("UPLOAD_MAX_FILE_SIZE", 10 * 1024 * 1024)
DEFAULT_CLEANUP_INTERVAL_MINUTES = _safe_int_env("FILEDROP_CLEANUP_INTERVAL_MINUTES", 60)
DEFAULT_UPLOAD_RATE_LIMIT_REQUESTS = _safe_int_env("FILEDROP_RATE_LIMIT_UPLOADS", 10)
DEFAULT_UPLOAD_RATE_LIMIT_WINDOW_MINUTES = _safe_int_env("FILEDROP_RATE_LIMIT_WINDOW_MINUTES", 15)
# Number of reverse proxies in front of the app whose X-Forwarded-* headers are trusted.
TRUSTED_PROXY_HOPS = _safe_int_env("FILEDROP_TRUSTED_PROXY_HOPS", 0, min_value=0)


DEFAULT_CONFIG = {
    "max_file_size_bytes": float(DEFAULT_MAX_FILE_SIZE_BYTES),
    "cleanup_interval_minutes": float(DEFAULT_CLEANUP_INTERVAL_MINUTES),
    "orphan_grace_minutes": 10.0,
    "upload_rate_limit_requests": float(DEFAULT_UPLOAD_RATE_LIMIT_REQUESTS),
    "upload_rate_limit_window_minutes": float(DEFAULT_UPLOAD_RATE_LIMIT_WINDOW_MINUTES),
    "default_duration": DEFAULT_DURATION,
    "base_url": os.environ.get("FILEDROP_BASE_URL", ""),
    "allowed_extensions": list(DEFAULT_ALLOWED_EXTENSIONS),
}

CONFIG_NUMERIC_KEYS = {
    "max_file_size_bytes",
    "cleanup_interval_minutes",
    "orphan_grace_minutes",
    "upload_rate_limit_requests",
    "upload_rate_limit_window_minutes",
}

CONFIG_STRING_KEYS = {"default_duration", "base_url"}

CONFIG_LIST_KEYS = {"allowed_extensions"}


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def get_config_mtime() -> float:
    """Return the last modified timestamp for the persisted config file."""

    try:
        return CONFIG_PATH.stat().st_mtime
    except OSError:
        return 0.0


def _coerce_numeric(value, default) -> float:
    try:
        coerced = float(value)
    except (TypeError, ValueError):
        return float(default)
    return coerced if math.isfinite(coerced) else float(default)


def _normalize_extension(value: str) -> str:
    cleaned = value.strip().lower()
    if cleaned and not cleaned.startswith("."):
        cleaned = "." + cleaned
    return cleaned


def _normalize_config(raw_config: Dict[str, object]) -> Dict[str, object]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    config["allowed_extensions"] = list(DEFAULT_ALLOWED_EXTENSIONS)
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    if config["max_file_size_bytes"] < 1:
        config["max_file_size_bytes"] = float(DEFAULT_MAX_FILE_SIZE_BYTES)

    if config["cleanup_interval_minutes"] < 1:
        config["cleanup_interval_minutes"] = float(DEFAULT_CLEANUP_INTERVAL_MINUTES)

    if config["orphan_grace_minutes"] < 0:
        config["orphan_grace_minutes"] = DEFAULT_CONFIG["orphan_grace_minutes"]

    if config["upload_rate_limit_requests"] < 1:
        config["upload_rate_limit_requests"] = float(DEFAULT_UPLOAD_RATE_LIMIT_REQUESTS)

    if config["upload_rate_limit_window_minutes"] < 1:
        config["upload_rate_limit_window_minutes"] = float(
            DEFAULT_UPLOAD_RATE_LIMIT_WINDOW_MINUTES
        )

    for key in CONFIG_STRING_KEYS:
        if key in raw_config and isinstance(raw_config.get(key), str):
            config[key] = raw_config.get(key).strip()

    if config["default_duration"] not in DURATION_OPTIONS:
        config["default_duration"] = DEFAULT_DURATION

    config["base_url"] = str(config["base_url"]).rstrip("/")

    for key in CONFIG_LIST_KEYS:
        if key in raw_config and isinstance(raw_config.get(key), list):
            cleaned_items: List[str] = []
            for entry in raw_config.get(key):
                if not isinstance(entry, str):
                    continue
                normalized = _normalize_extension(entry)
                if normalized and normalized not in cleaned_items:
                    cleaned_items.append(normalized)
            config[key] = cleaned_items

    return config


def load_config() -> Dict[str, object]:
    ensure_directories()
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(raw)

    data = _normalize_config(raw)
    if raw != data:
        save_config(data)
    return data


def save_config(config: Dict[str, object]) -> None:
    ensure_directories()
    normalized = _normalize_config(config)

    # Write to a temporary file first so readers never see a partial config.
    temp_path = CONFIG_PATH.with_suffix(TEMP_SUFFIX)
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())
        temp_path.replace(CONFIG_PATH)
    except OSError:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def generate_file_id() -> str:
    """Return a 32 character hex identifier drawn from the OS CSPRNG."""

    return secrets.token_hex(16)


def sanitize_filename(name: Optional[str]) -> str:
    """Map an arbitrary client filename to a conservative on-disk name.

    Characters outside ``[A-Za-z0-9.-]`` become ``_``, runs of ``_`` collapse
    to one and the result is capped at 100 characters. Names that carry no
    letter or digit after sanitizing (``""``, ``"***"``, ``".."``) fall back
    to ``"file"`` so a storage name is never empty or a bare dot path.
    """

    sanitized = _UNSAFE_NAME_CHARS.sub("_", name or "")
    sanitized = _REPEATED_PLACEHOLDER.sub("_", sanitized)
    sanitized = sanitized[:MAX_STORAGE_NAME_LENGTH]
    if not _HAS_ALNUM.search(sanitized):
        return FALLBACK_FILENAME
    return sanitized


def build_storage_name(file_id: str, original_name: Optional[str]) -> str:
    return f"{file_id}_{sanitize_filename(original_name)}"


def file_extension(name: Optional[str]) -> str:
    return os.path.splitext(name or "")[1].lower()


def is_valid_duration(duration_key: Optional[str]) -> bool:
    return not duration_key or duration_key in DURATION_OPTIONS


def resolve_expiration(
    duration_key: Optional[str], now: Optional[float] = None
) -> Optional[float]:
    """Return the absolute expiry for *duration_key*, or ``None`` for never.

    Unknown keys are a configuration error here; request handlers validate
    with :func:`is_valid_duration` first.
    """

    key = duration_key or DEFAULT_DURATION
    if key not in DURATION_OPTIONS:
        raise ValueError(f"Unknown duration key: {key!r}")
    offset = DURATION_OPTIONS[key]
    if offset is None:
        return None
    current = time.time() if now is None else now
    return current + offset


def format_file_size(num: int) -> str:
    if num <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    index = 0
    while index < len(units) - 1 and num >= 1024 ** (index + 1):
        index += 1
    value = round(num / (1024 ** index), 2)
    if value == int(value):
        value = int(value)
    return f"{value} {units[index]}"


class StorageError(Exception):
    """Base class for storage layer failures."""


class BlobNotFoundError(StorageError):
    """Raised when stored bytes are missing from disk."""


class BlobWriteError(StorageError):
    """Raised when bytes cannot be written or read."""


class DuplicateRecordError(RuntimeError):
    """Raised when a record id is inserted twice; identifiers never collide."""


@dataclass(frozen=True)
class FileRecord:
    id: str
    original_name: str
    storage_name: str
    size: int
    mime_type: str
    extension: str
    created_at: float
    expires_at: Optional[float]
    storage_path: Path
    sha256: str = ""

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current >= self.expires_at


class BlobStore:
    """Flat on-disk directory holding one file per record."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._logger = logging.getLogger("filedrop.storage")

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, storage_name: str) -> Path:
        return self.root / storage_name

    def put(self, data: bytes, storage_name: str) -> Path:
        """Write *data* under *storage_name* and return the final path.

        Bytes land in a ``.tmp`` sibling first and are renamed into place, so
        the final path never holds a partial file.
        """

        target = self.path_for(storage_name)
        temp_path = target.with_name(f"{target.name}{TEMP_SUFFIX}")
        try:
            self.ensure_root()
            # Owner-only mode on creation; the process umask is left untouched.
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, BLOB_FILE_MODE)
            with os.fdopen(fd, "wb") as destination:
                destination.write(data)
                destination.flush()
                os.fsync(destination.fileno())
            temp_path.replace(target)
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            self._logger.error(
                "blob_write_failed storage_name=%s error=%s", storage_name, error
            )
            raise BlobWriteError(str(error)) from error
        return target

    def get(self, storage_path: Path) -> bytes:
        try:
            return Path(storage_path).read_bytes()
        except FileNotFoundError as error:
            raise BlobNotFoundError(str(storage_path)) from error
        except OSError as error:
            self._logger.error(
                "blob_read_failed path=%s error=%s", storage_path, error
            )
            raise BlobWriteError(str(error)) from error

    def delete(self, storage_path: Path) -> bool:
        """Remove the bytes at *storage_path*; failures are logged, not raised."""

        try:
            Path(storage_path).unlink(missing_ok=True)
        except OSError as error:
            self._logger.warning(
                "blob_delete_failed path=%s error=%s", storage_path, error
            )
            return False
        return True

    def exists(self, storage_path: Path) -> bool:
        return Path(storage_path).is_file()

    def iter_blobs(self) -> Iterator[Path]:
        if not self.root.exists():
            return
        for entry in self.root.iterdir():
            if entry.name.endswith(TEMP_SUFFIX):
                continue
            if entry.is_file():
                yield entry

    def cleanup_temp_files(self, max_age_seconds: float = HOUR_SECONDS) -> int:
        """Remove lingering temporary upload files."""

        if not self.root.exists():
            return 0
        removed = 0
        cutoff = time.time() - max_age_seconds
        for temp_file in self.root.glob(f"*{TEMP_SUFFIX}"):
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    self._logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                self._logger.warning(
                    "temp_cleanup_failed path=%s error=%s", temp_file, error
                )
        return removed


class MetadataRegistry:
    """In-memory table of file records keyed by id.

    Every read and mutation holds one lock. ``list_all`` returns a snapshot
    in insertion order.
    """

    def __init__(self) -> None:
        self._records: Dict[str, FileRecord] = {}
        self._lock = threading.RLock()

    def insert(self, record: FileRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise DuplicateRecordError(f"Duplicate file id {record.id}")
            self._records[record.id] = record

    def get(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            return self._records.get(file_id)

    def pop(self, file_id: str) -> Optional[FileRecord]:
        """Remove and return the record; only one concurrent caller wins."""

        with self._lock:
            return self._records.pop(file_id, None)

    def delete(self, file_id: str) -> bool:
        return self.pop(file_id) is not None

    def list_all(self) -> List[FileRecord]:
        with self._lock:
            return list(self._records.values())

    def storage_names(self) -> set:
        with self._lock:
            return {record.storage_name for record in self._records.values()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, file_id: object) -> bool:
        with self._lock:
            return file_id in self._records
