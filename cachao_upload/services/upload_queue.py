"""Upload queue for turning a file selection into tracked, retryable upload jobs."""

import logging
import shutil
import threading
import uuid
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from cachao_upload.config import Settings, get_settings
from cachao_upload.services.api_client import CachaoApiClient
from cachao_upload.services.errors import (
    ApiError,
    MissingTargetError,
    RegistrationError,
    TransferError,
    UploadCancelledError,
)
from cachao_upload.services.log_service import get_log_service
from cachao_upload.services.s3_service import S3Planner
from cachao_upload.services.transfer import (
    MULTIPART_THRESHOLD,
    CancelToken,
    HttpTransport,
    Transport,
    UploadFile,
    UploadPlanner,
    execute_upload,
)
from cachao_upload.services.utils import format_file_size, title_from_filename

logger = logging.getLogger(__name__)

MAX_CONCURRENT = 3
CANCELLED_MESSAGE = "cancelled"


class UploadStatus(Enum):
    """Status of a single upload job."""

    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class UploadResult:
    """Backend record created for an uploaded object."""

    object_id: str
    storage_key: str


@dataclass
class UploadJob:
    """One file's unit of work, tracked through its own state machine."""

    file: UploadFile
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: UploadStatus = UploadStatus.PENDING
    progress: float = 0.0
    error: str | None = None
    result: UploadResult | None = None
    cancel_token: CancelToken | None = field(default=None, repr=False)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "filename": self.file.name,
            "file_size": self.file.size,
            "file_size_formatted": format_file_size(self.file.size),
            "mime_type": self.file.mime_type,
            "status": self.status.value,
            "progress": round(self.progress, 1),
            "error": self.error,
            "result": (
                {"object_id": self.result.object_id, "storage_key": self.result.storage_key}
                if self.result
                else None
            ),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class TargetContext:
    """Event and album that the uploads of one dispatch are filed under."""

    event_id: str
    album_id: str | None = None
    album_name: str | None = None
    album_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "album_id": self.album_id,
            "album_name": self.album_name,
            "album_date": self.album_date,
        }


class RecordBackend(Protocol):
    """Backend calls the queue makes around a transfer."""

    def register_upload(
        self,
        event_id: str,
        album_id: str | None,
        object_key: str,
        size: int,
        title: str | None = None,
        record_id: str | None = None,
    ) -> dict[str, Any]: ...

    def create_album(
        self, event_id: str, name: str, album_date: str | None = None
    ) -> dict[str, Any]: ...


QueueListener = Callable[[dict[str, Any]], None]


class UploadQueue:
    """Owns a list of upload jobs and drains them in bounded batches.

    Jobs move pending -> uploading -> success | error. Only a dispatch or an
    explicit retry starts a transfer; nothing is retried automatically. All job
    mutations happen under one lock, and listeners are notified outside of it.
    """

    def __init__(
        self,
        api: RecordBackend,
        planner: UploadPlanner | None = None,
        transport: Transport | None = None,
        max_concurrent: int = MAX_CONCURRENT,
        multipart_threshold: int = MULTIPART_THRESHOLD,
        queue_id: str | None = None,
    ) -> None:
        self.queue_id = queue_id or str(uuid.uuid4())
        self.api = api
        self.planner: UploadPlanner = planner if planner is not None else api  # type: ignore[assignment]
        self.transport: Transport = transport or HttpTransport()
        self.max_concurrent = max(1, max_concurrent)
        self.multipart_threshold = multipart_threshold
        self.jobs: list[UploadJob] = []
        self.target: TargetContext | None = None
        self.temp_dirs: list[str] = []
        self.created_at = datetime.now(UTC)
        self._lock = threading.Lock()
        self._listeners: list[QueueListener] = []
        self._runs = 0
        # Held for a whole dispatch so overlapping dispatches cannot exceed max_concurrent
        self._dispatch_lock = threading.Lock()

    # Observation

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        """Register a listener for queue events; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event_type: str, job: UploadJob | None = None) -> None:
        event: dict[str, Any] = {"type": event_type, "queue_id": self.queue_id}
        if job is not None:
            event["job"] = job.to_dict()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning("Queue listener failed on %s", event_type, exc_info=True)

    def get_job(self, job_id: str) -> UploadJob | None:
        with self._lock:
            return self._find(job_id)

    def _find(self, job_id: str) -> UploadJob | None:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    @property
    def is_busy(self) -> bool:
        """True while a dispatch, retry or single upload is running."""
        with self._lock:
            return self._runs > 0

    @contextmanager
    def _running(self) -> Iterator[None]:
        with self._lock:
            self._runs += 1
        try:
            yield
        finally:
            with self._lock:
                self._runs -= 1

    def try_reserve(self) -> bool:
        """Mark the queue busy for a run that is about to start, unless it already is.

        A successful reservation must be paired with release().
        """
        with self._lock:
            if self._runs > 0:
                return False
            self._runs += 1
            return True

    def release(self) -> None:
        with self._lock:
            self._runs -= 1

    def snapshot(self) -> dict[str, Any]:
        """Whole-queue state for JSON serialization."""
        with self._lock:
            jobs = [j.to_dict() for j in self.jobs]
            counts = {status.value: 0 for status in UploadStatus}
            for j in self.jobs:
                counts[j.status.value] += 1
            total_bytes = sum(j.file.size for j in self.jobs)
        return {
            "queue_id": self.queue_id,
            "target": self.target.to_dict() if self.target else None,
            "total_jobs": len(jobs),
            "total_bytes": total_bytes,
            "total_bytes_formatted": format_file_size(total_bytes),
            "counts": counts,
            "busy": self.is_busy,
            "jobs": jobs,
        }

    # Queue contents

    def enqueue(self, files: list[UploadFile]) -> list[UploadJob]:
        """Append one pending job per file, in input order."""
        new_jobs = [UploadJob(file=f) for f in files]
        with self._lock:
            self.jobs.extend(new_jobs)

        log = get_log_service()
        log.info(
            "upload",
            "files_enqueued",
            f"Queued {len(new_jobs)} files",
            {
                "queue_id": self.queue_id,
                "total_files": len(new_jobs),
                "total_bytes": sum(f.size for f in files),
            },
        )
        for job in new_jobs:
            self._notify("job_added", job)
        return new_jobs

    def remove(self, job_id: str) -> bool:
        """Remove a job, cancelling its transfer first if it is uploading."""
        with self._lock:
            job = self._find(job_id)
            if job is None:
                return False
            self._cancel_locked(job)
            self.jobs.remove(job)
        self._notify("job_removed", job)
        return True

    def clear_completed(self) -> int:
        """Remove every job that reached success or error."""
        with self._lock:
            finished = [
                j for j in self.jobs if j.status in (UploadStatus.SUCCESS, UploadStatus.ERROR)
            ]
            self.jobs = [j for j in self.jobs if j not in finished]
        for job in finished:
            self._notify("job_removed", job)
        return len(finished)

    def clear_all(self) -> int:
        """Cancel every uploading job, then empty the queue."""
        with self._lock:
            removed = list(self.jobs)
            for job in removed:
                self._cancel_locked(job)
            self.jobs = []
        self._notify("queue_cleared")
        return len(removed)

    def cleanup_temp_dirs(self) -> None:
        """Delete directories that hold files saved for this queue."""
        for temp_dir in self.temp_dirs:
            shutil.rmtree(temp_dir, ignore_errors=True)
            logger.debug("Removed temp dir %s", temp_dir)
        self.temp_dirs = []

    # Target

    def resolve_target(self, target: TargetContext | None) -> TargetContext:
        """Make sure the target names an album, creating it from a name if needed.

        Raises:
            MissingTargetError: No event, no album id and no usable album name,
                or the album could not be created
        """
        if target is None or not target.event_id:
            raise MissingTargetError("No event selected for upload")

        if target.album_id:
            resolved = target
        elif target.album_name and target.album_name.strip():
            name = target.album_name.strip()
            try:
                album = self.api.create_album(target.event_id, name, target.album_date)
            except ApiError as e:
                raise MissingTargetError(f"Failed to create album '{name}': {e}") from e
            resolved = TargetContext(
                event_id=target.event_id,
                album_id=str(album["id"]),
                album_name=album.get("name", name),
                album_date=album.get("album_date", target.album_date),
            )
            get_log_service().info(
                "album",
                "album_created",
                f"Created album '{name}'",
                {"event_id": target.event_id, "album_id": resolved.album_id},
            )
        else:
            raise MissingTargetError("Select an album or enter a name for a new one")

        self.target = resolved
        return resolved

    # Transfers

    def dispatch_all(self, target: TargetContext | None = None) -> list[UploadJob]:
        """Upload every pending job in sequential batches of max_concurrent.

        Jobs within a batch run concurrently; the next batch starts only once every
        job of the current one is terminal. A dispatch that overlaps a running one
        waits for it to finish and then picks up whatever is still pending.

        Args:
            target: Where to file the uploads; defaults to the last resolved target

        Returns:
            The jobs that were dispatched

        Raises:
            MissingTargetError: Before any job is touched, if no album resolves
        """
        resolved = self.resolve_target(target if target is not None else self.target)

        with self._dispatch_lock, self._running():
            with self._lock:
                pending = [j for j in self.jobs if j.status is UploadStatus.PENDING]
            if not pending:
                self._notify("dispatch_completed")
                return []
            batches = [
                pending[i : i + self.max_concurrent]
                for i in range(0, len(pending), self.max_concurrent)
            ]

            log = get_log_service()
            log.info(
                "upload",
                "dispatch_started",
                f"Uploading {len(pending)} files in {len(batches)} batches",
                {
                    "queue_id": self.queue_id,
                    "event_id": resolved.event_id,
                    "album_id": resolved.album_id,
                    "total_files": len(pending),
                    "batches": len(batches),
                },
            )
            started_at = datetime.now(UTC)

            with ThreadPoolExecutor(max_workers=self.max_concurrent) as executor:
                for batch in batches:
                    futures = [executor.submit(self._upload_job, job, resolved) for job in batch]
                    wait(futures)
                    for future in futures:
                        future.result()

            self._record_dispatch(pending, started_at)
            self._notify("dispatch_completed")
        return pending

    def upload_one(self, job_id: str) -> UploadJob | None:
        """Run one pending job against the resolved target.

        Raises:
            MissingTargetError: No target has been resolved yet
        """
        if self.target is None:
            raise MissingTargetError("No album resolved for upload")
        job = self.get_job(job_id)
        if job is None:
            return None
        with self._running():
            self._upload_job(job, self.target)
        return job

    def retry(self, job_id: str) -> UploadJob | None:
        """Reset a failed job to pending and upload it again right away.

        Returns:
            The job, or None if it does not exist or is not in error
        """
        if self.target is None:
            raise MissingTargetError("No album resolved for upload")
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status is not UploadStatus.ERROR:
                return None
            job.status = UploadStatus.PENDING
            job.progress = 0.0
            job.error = None
            job.result = None
            job.completed_at = None
        self._notify("job_updated", job)
        get_log_service().info(
            "upload",
            "file_upload_retried",
            f"Retrying {job.file.name}",
            {"queue_id": self.queue_id, "job_id": job.id, "filename": job.file.name},
        )
        with self._running():
            self._upload_job(job, self.target)
        return job

    def cancel(self, job_id: str) -> bool:
        """Abort an uploading job's transfer.

        Returns:
            True if a cancel handle was triggered, False otherwise (not uploading,
            already cancelled, or the transfer already reported completion)
        """
        with self._lock:
            job = self._find(job_id)
            if job is None or not self._cancel_locked(job):
                return False
        get_log_service().info(
            "upload",
            "file_upload_cancel_requested",
            f"Cancel requested for {job.file.name}",
            {"queue_id": self.queue_id, "job_id": job.id},
        )
        return True

    def _cancel_locked(self, job: UploadJob) -> bool:
        # The handle is one-shot: it is released as it fires
        if job.status is not UploadStatus.UPLOADING or job.cancel_token is None:
            return False
        token = job.cancel_token
        job.cancel_token = None
        token.cancel()
        return True

    def _set_progress(self, job: UploadJob, percent: float) -> None:
        with self._lock:
            if job.status is not UploadStatus.UPLOADING:
                return
            value = min(100.0, max(job.progress, percent))
            changed_whole_percent = int(value) != int(job.progress)
            job.progress = value
        if changed_whole_percent:
            self._notify("job_progress", job)

    def _upload_job(self, job: UploadJob, target: TargetContext) -> None:
        """Transfer and register one job; every failure ends as job state."""
        if target.album_id is None:
            raise MissingTargetError("No album resolved for upload")
        log = get_log_service()
        token = CancelToken()

        with self._lock:
            if job not in self.jobs or job.status is not UploadStatus.PENDING:
                return
            job.status = UploadStatus.UPLOADING
            job.progress = 0.0
            job.error = None
            job.result = None
            job.cancel_token = token
            job.started_at = datetime.now(UTC)
            job.completed_at = None
        self._notify("job_updated", job)
        log.info(
            "upload",
            "file_upload_started",
            f"Uploading {job.file.name}",
            {
                "queue_id": self.queue_id,
                "job_id": job.id,
                "filename": job.file.name,
                "file_size": job.file.size,
            },
        )

        try:
            outcome = execute_upload(
                job.file,
                target.event_id,
                target.album_id,
                self.planner,
                self.transport,
                token,
                lambda percent: self._set_progress(job, percent),
                self.multipart_threshold,
            )
        except UploadCancelledError:
            self._finish_error(job, CANCELLED_MESSAGE)
            return
        except TransferError as e:
            self._finish_error(job, CANCELLED_MESSAGE if token.cancelled else str(e))
            return
        except Exception as e:
            logger.exception("Unexpected transfer failure for %s", job.file.name)
            self._finish_error(job, CANCELLED_MESSAGE if token.cancelled else f"Upload failed: {e}")
            return

        with self._lock:
            observed_cancel = token.cancelled
            # Transfer reported completion: cancel is a no-op from here on
            job.cancel_token = None
        if observed_cancel:
            self._finish_error(job, CANCELLED_MESSAGE)
            return

        try:
            record = self.api.register_upload(
                target.event_id,
                target.album_id,
                outcome.object_key,
                job.file.size,
                title=title_from_filename(job.file.name),
                record_id=outcome.record_id,
            )
        except Exception as e:
            if not isinstance(e, RegistrationError):
                logger.exception("Unexpected registration failure for %s", job.file.name)
            log.warning(
                "upload",
                "orphaned_object",
                f"Stored {outcome.object_key} without a record",
                {"queue_id": self.queue_id, "job_id": job.id, "object_key": outcome.object_key},
            )
            self._finish_error(job, f"Upload succeeded but registration failed: {e}")
            return

        self._finish_success(
            job, UploadResult(object_id=str(record["id"]), storage_key=outcome.object_key)
        )

    def _finish_success(self, job: UploadJob, result: UploadResult) -> None:
        with self._lock:
            job.status = UploadStatus.SUCCESS
            job.progress = 100.0
            job.result = result
            job.error = None
            job.cancel_token = None
            job.completed_at = datetime.now(UTC)
        self._notify("job_updated", job)
        get_log_service().info(
            "upload",
            "file_upload_completed",
            f"Uploaded {job.file.name}",
            {
                "queue_id": self.queue_id,
                "job_id": job.id,
                "filename": job.file.name,
                "file_size": job.file.size,
                "object_key": result.storage_key,
                "object_id": result.object_id,
                "duration_seconds": job.duration_seconds,
            },
        )

    def _finish_error(self, job: UploadJob, message: str) -> None:
        with self._lock:
            job.status = UploadStatus.ERROR
            job.error = message
            job.result = None
            job.cancel_token = None
            job.completed_at = datetime.now(UTC)
        self._notify("job_updated", job)

        log = get_log_service()
        metadata = {
            "queue_id": self.queue_id,
            "job_id": job.id,
            "filename": job.file.name,
            "error": message,
        }
        if message == CANCELLED_MESSAGE:
            log.info("upload", "file_upload_cancelled", f"Cancelled {job.file.name}", metadata)
        else:
            log.error(
                "upload",
                "file_upload_failed",
                f"Failed to upload {job.file.name}: {message}",
                metadata,
            )

    def _record_dispatch(self, jobs: list[UploadJob], started_at: datetime) -> None:
        completed_at = datetime.now(UTC)
        succeeded = sum(1 for j in jobs if j.status is UploadStatus.SUCCESS)
        failed = sum(1 for j in jobs if j.status is UploadStatus.ERROR)
        summary = {
            "timestamp": completed_at.isoformat(),
            "event": "dispatch_completed",
            "queue_id": self.queue_id,
            "target": self.target.to_dict() if self.target else None,
            "succeeded": succeeded,
            "failed": failed,
            "duration_seconds": (completed_at - started_at).total_seconds(),
            "files": [
                {
                    "filename": j.file.name,
                    "status": j.status.value,
                    "file_size": j.file.size,
                    "object_key": j.result.storage_key if j.result else None,
                    "error": j.error,
                }
                for j in jobs
            ],
        }

        log = get_log_service()
        log.info(
            "upload",
            "dispatch_completed",
            f"Dispatch completed: {succeeded} uploaded, {failed} failed",
            {k: v for k, v in summary.items() if k not in ("timestamp", "event")},
        )
        try:
            log.save_dispatch_summary(self.queue_id, summary, completed_at)
        except Exception:
            logger.warning("Failed to save dispatch summary", exc_info=True)


def build_upload_queue(settings: Settings | None = None) -> UploadQueue:
    """Create a queue wired to the backend (and S3, when configured) from settings."""
    settings = settings or get_settings()
    api = CachaoApiClient.from_settings(settings)
    planner: UploadPlanner
    if settings.upload_planner == "s3":
        planner = S3Planner.from_settings(settings)
    else:
        planner = api
    return UploadQueue(
        api,
        planner=planner,
        max_concurrent=settings.max_concurrent,
        multipart_threshold=settings.multipart_threshold,
    )


class QueueRegistry:
    """Upload queues by id, one per client widget."""

    def __init__(self, factory: Callable[[], UploadQueue] | None = None) -> None:
        self.factory = factory or build_upload_queue
        self.queues: dict[str, UploadQueue] = {}
        self._lock = threading.Lock()

    def create(self) -> UploadQueue:
        queue = self.factory()
        with self._lock:
            self.queues[queue.queue_id] = queue
        get_log_service().info(
            "upload", "queue_created", "Created upload queue", {"queue_id": queue.queue_id}
        )
        return queue

    def get(self, queue_id: str) -> UploadQueue | None:
        with self._lock:
            return self.queues.get(queue_id)

    def discard(self, queue_id: str) -> bool:
        """Clear a queue, delete its saved files and forget it."""
        with self._lock:
            queue = self.queues.pop(queue_id, None)
        if queue is None:
            return False
        queue.clear_all()
        queue.cleanup_temp_dirs()
        return True


# Global queue registry instance
_queue_registry: QueueRegistry | None = None


def get_queue_registry() -> QueueRegistry:
    """Get the global queue registry."""
    global _queue_registry
    if _queue_registry is None:
        _queue_registry = QueueRegistry()
    return _queue_registry
