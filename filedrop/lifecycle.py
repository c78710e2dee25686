import enum
import hashlib
import logging
import math
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from .storage import (
    DEFAULT_ALLOWED_EXTENSIONS,
    DEFAULT_DURATION,
    DEFAULT_MAX_FILE_SIZE_BYTES,
    DEFAULT_MIME_TYPE,
    DURATION_OPTIONS,
    HOUR_SECONDS,
    BlobNotFoundError,
    BlobStore,
    BlobWriteError,
    DuplicateRecordError,
    FileRecord,
    MetadataRegistry,
    build_storage_name,
    file_extension,
    format_file_size,
    generate_file_id,
    is_valid_duration,
    resolve_expiration,
)

logger = logging.getLogger("filedrop.lifecycle")


class FileDropError(Exception):
    """Base class for errors surfaced to the HTTP layer."""

    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = details

    def to_payload(self) -> dict:
        payload: Dict[str, Any] = {
            "success": False,
            "error": str(self),
            "code": self.code,
        }
        payload.update(self.details)
        return payload


class ValidationError(FileDropError):
    code = "VALIDATION_ERROR"
    status = 400


class InvalidFilename(ValidationError):
    code = "INVALID_FILENAME"


class EmptyFile(ValidationError):
    code = "EMPTY_FILE"


class FileTooLarge(ValidationError):
    code = "FILE_TOO_LARGE"
    status = 413


class UnsupportedType(ValidationError):
    code = "INVALID_FILE_TYPE"


class InvalidDuration(ValidationError):
    code = "INVALID_DURATION"


class FileNotFound(FileDropError):
    code = "FILE_NOT_FOUND"
    status = 404


class FileExpired(FileDropError):
    code = "FILE_EXPIRED"
    status = 410


class StorageFailure(FileDropError):
    code = "STORAGE_FAILURE"
    status = 500


class PurgeOutcome(enum.Enum):
    PURGED = "purged"
    BYTES_LEAKED = "bytes_leaked"
    ALREADY_GONE = "already_gone"


class Pagination(NamedTuple):
    page: int
    limit: int
    total: int
    total_pages: int


SORT_KEYS: Dict[str, Callable[[FileRecord], Any]] = {
    "uploadedAt": lambda record: record.created_at,
    "size": lambda record: record.size,
    "name": lambda record: record.original_name.lower(),
}


class LifecycleManager:
    """Owns ingest, retrieval, listing and expiry of stored files.

    Records and bytes are purged together through :meth:`purge`, which relies
    on :meth:`MetadataRegistry.pop` so that only one caller ever deletes a
    given file from disk.
    """

    def __init__(
        self,
        registry: MetadataRegistry,
        blob_store: BlobStore,
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE_BYTES,
        allowed_extensions: Optional[Iterable[str]] = None,
        default_duration: str = DEFAULT_DURATION,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.blob_store = blob_store
        self.max_file_size = int(max_file_size)
        self.allowed_extensions = list(
            DEFAULT_ALLOWED_EXTENSIONS if allowed_extensions is None else allowed_extensions
        )
        self.default_duration = default_duration
        self.clock = clock
        self._leaked_purges = 0
        self._counter_lock = threading.Lock()

    @property
    def leaked_purges(self) -> int:
        with self._counter_lock:
            return self._leaked_purges

    def validate_upload(
        self, original_name: Optional[str], size: int, duration_key: Optional[str]
    ) -> str:
        if not original_name or not original_name.strip():
            raise InvalidFilename("Invalid file name")
        if size <= 0:
            raise EmptyFile("File is empty")
        if size > self.max_file_size:
            raise FileTooLarge(
                f"File size exceeds maximum limit of {format_file_size(self.max_file_size)}",
                maxSize=self.max_file_size,
            )
        extension = file_extension(original_name)
        if extension not in self.allowed_extensions:
            raise UnsupportedType(
                f"File type {extension or '(none)'} is not allowed",
                allowedTypes=list(self.allowed_extensions),
            )
        if not is_valid_duration(duration_key):
            raise InvalidDuration(
                "Invalid duration parameter",
                allowedDurations=list(DURATION_OPTIONS),
            )
        return extension

    def ingest(
        self,
        data: bytes,
        original_name: str,
        mime_type: Optional[str] = None,
        duration_key: Optional[str] = None,
    ) -> FileRecord:
        extension = self.validate_upload(original_name, len(data), duration_key)

        now = self.clock()
        file_id = generate_file_id()
        storage_name = build_storage_name(file_id, original_name)
        expires_at = resolve_expiration(duration_key or self.default_duration, now)

        try:
            storage_path = self.blob_store.put(data, storage_name)
        except BlobWriteError as error:
            raise StorageFailure("Failed to store file") from error

        record = FileRecord(
            id=file_id,
            original_name=original_name,
            storage_name=storage_name,
            size=len(data),
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            extension=extension,
            created_at=now,
            expires_at=expires_at,
            storage_path=storage_path,
            sha256=hashlib.sha256(data).hexdigest(),
        )
        try:
            self.registry.insert(record)
        except DuplicateRecordError:
            self.blob_store.delete(storage_path)
            raise

        logger.info(
            "file_ingested file_id=%s storage_name=%s size=%d duration=%s expires_at=%s",
            file_id,
            storage_name,
            record.size,
            duration_key or self.default_duration,
            "never" if expires_at is None else f"{expires_at:.0f}",
        )
        return record

    def _checked_record(self, file_id: str) -> FileRecord:
        record = self.registry.get(file_id)
        if record is None:
            raise FileNotFound("File not found")
        if record.is_expired(self.clock()):
            self.purge(file_id, reason="expired_on_access")
            raise FileExpired("File expired")
        if not self.blob_store.exists(record.storage_path):
            logger.warning(
                "file_bytes_missing file_id=%s path=%s",
                file_id,
                record.storage_path,
            )
            self.purge(file_id, reason="bytes_missing")
            raise FileNotFound("File not found")
        return record

    def describe(self, file_id: str) -> FileRecord:
        return self._checked_record(file_id)

    def retrieve(self, file_id: str) -> Tuple[bytes, FileRecord]:
        record = self._checked_record(file_id)
        try:
            data = self.blob_store.get(record.storage_path)
        except BlobNotFoundError:
            # Removed between the existence check and the read.
            self.purge(file_id, reason="bytes_missing")
            raise FileNotFound("File not found")
        except BlobWriteError as error:
            raise StorageFailure("Failed to read file") from error
        return data, record

    def list_files(
        self,
        page: int = 1,
        limit: int = 10,
        include_expired: bool = False,
        *,
        search: Optional[str] = None,
        extension: Optional[str] = None,
        sort_by: str = "uploadedAt",
        sort_order: str = "desc",
    ) -> Tuple[List[FileRecord], Pagination]:
        now = self.clock()
        records = self.registry.list_all()
        if not include_expired:
            records = [record for record in records if not record.is_expired(now)]
        if search:
            needle = search.lower()
            records = [r for r in records if needle in r.original_name.lower()]
        if extension:
            wanted = extension.lower()
            if not wanted.startswith("."):
                wanted = "." + wanted
            records = [r for r in records if r.extension == wanted]

        key = SORT_KEYS.get(sort_by, SORT_KEYS["uploadedAt"])
        records = sorted(records, key=key, reverse=sort_order.lower() != "asc")

        total = len(records)
        if limit < 1:
            return [], Pagination(page, limit, total, 0)
        total_pages = math.ceil(total / limit)
        if page < 1:
            return [], Pagination(page, limit, total, total_pages)
        start = (page - 1) * limit
        return records[start:start + limit], Pagination(page, limit, total, total_pages)

    def purge(self, file_id: str, reason: str = "expired") -> PurgeOutcome:
        record = self.registry.pop(file_id)
        if record is None:
            return PurgeOutcome.ALREADY_GONE

        if not self.blob_store.delete(record.storage_path):
            with self._counter_lock:
                self._leaked_purges += 1
            logger.warning(
                "file_purged_bytes_leaked file_id=%s path=%s reason=%s",
                file_id,
                record.storage_path,
                reason,
            )
            return PurgeOutcome.BYTES_LEAKED

        logger.info(
            "file_purged file_id=%s storage_name=%s reason=%s",
            file_id,
            record.storage_name,
            reason,
        )
        return PurgeOutcome.PURGED

    def reconcile(self) -> int:
        now = self.clock()
        removed = 0
        leaked = 0
        for record in self.registry.list_all():
            if not record.is_expired(now):
                continue
            outcome = self.purge(record.id, reason="expired")
            if outcome is PurgeOutcome.ALREADY_GONE:
                continue
            removed += 1
            if outcome is PurgeOutcome.BYTES_LEAKED:
                leaked += 1
        if removed:
            logger.info("cleanup_completed removed=%d leaked=%d", removed, leaked)
        return removed

    def remove_orphans(self, min_age_seconds: float = 600.0) -> int:
        """Delete stored files that no live record references.

        Files younger than *min_age_seconds* are left alone, since an ingest
        writes bytes before it registers the record.
        """

        referenced = self.registry.storage_names()
        cutoff = time.time() - min_age_seconds
        removed = 0
        for path in self.blob_store.iter_blobs():
            if path.name in referenced:
                continue
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
            except OSError:
                continue
            if self.blob_store.delete(path):
                removed += 1
                logger.info("orphan_file_removed path=%s", path)
        if removed:
            logger.info("orphan_cleanup_completed removed=%d", removed)
        return removed

    def statistics(self) -> Dict[str, int]:
        now = self.clock()
        records = self.registry.list_all()
        active = [record for record in records if not record.is_expired(now)]
        return {
            "records": len(records),
            "active_files": len(active),
            "expired_pending": len(records) - len(active),
            "active_bytes": sum(record.size for record in active),
            "leaked_purges": self.leaked_purges,
        }


class CleanupScheduler:
    """Runs the reconciliation sweep on a fixed interval.

    Sweeps never overlap: a run triggered while another is active is skipped.
    A failing sweep is logged and the schedule carries on.
    """

    RECONCILE_JOB_ID = "reconcile_expired_files"
    ORPHAN_JOB_ID = "cleanup_orphaned_files"
    TEMP_JOB_ID = "cleanup_temp_files"

    def __init__(
        self,
        manager: LifecycleManager,
        *,
        interval_minutes: int = 60,
        orphan_grace_seconds: float = 600.0,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.manager = manager
        self.interval_minutes = max(1, int(interval_minutes))
        self.orphan_grace_seconds = orphan_grace_seconds
        self._scheduler = scheduler or BackgroundScheduler(daemon=True)
        self._run_lock = threading.Lock()
        self._logger = logging.getLogger("filedrop.scheduler")

    def start(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.add_job(
            func=self.run_now,
            trigger="interval",
            minutes=self.interval_minutes,
            id=self.RECONCILE_JOB_ID,
            name="Purge expired files",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            func=self.sweep_orphans,
            trigger="interval",
            hours=1,
            id=self.ORPHAN_JOB_ID,
            name="Clean up orphaned files",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            func=self.sweep_temp_files,
            trigger="interval",
            hours=1,
            id=self.TEMP_JOB_ID,
            name="Clean up temporary files",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._logger.info(
            "cleanup_scheduler_started interval_minutes=%d", self.interval_minutes
        )

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            self._logger.info("cleanup_scheduler_stopped")

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def next_run_time(self):
        job = self._scheduler.get_job(self.RECONCILE_JOB_ID)
        if job is None:
            return None
        return job.next_run_time

    def update_interval(self, minutes: int) -> None:
        new_interval = max(1, int(minutes))
        if new_interval == self.interval_minutes:
            return
        self.interval_minutes = new_interval
        if not self._scheduler.running:
            return
        try:
            self._scheduler.reschedule_job(
                self.RECONCILE_JOB_ID, trigger="interval", minutes=new_interval
            )
        except JobLookupError:
            self._scheduler.add_job(
                func=self.run_now,
                trigger="interval",
                minutes=new_interval,
                id=self.RECONCILE_JOB_ID,
                name="Purge expired files",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

    def _guarded(self, job_name: str, func: Callable[[], int]) -> Optional[int]:
        if not self._run_lock.acquire(blocking=False):
            self._logger.info("cleanup_skipped job=%s reason=already_running", job_name)
            return None
        try:
            return func()
        except Exception:
            self._logger.exception("Cleanup job failed job=%s", job_name)
            return None
        finally:
            self._run_lock.release()

    def run_now(self) -> Optional[int]:
        """Run one reconciliation sweep; ``None`` when skipped or failed."""

        return self._guarded(self.RECONCILE_JOB_ID, self.manager.reconcile)

    def sweep_orphans(self) -> Optional[int]:
        return self._guarded(
            self.ORPHAN_JOB_ID,
            lambda: self.manager.remove_orphans(self.orphan_grace_seconds),
        )

    def sweep_temp_files(self) -> Optional[int]:
        return self._guarded(
            self.TEMP_JOB_ID,
            lambda: self.manager.blob_store.cleanup_temp_files(HOUR_SECONDS),
        )
