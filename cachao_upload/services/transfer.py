"""Byte transfer to object storage through presigned URLs.

Two strategies share one contract: a file goes in together with a cancel token and a
progress callback, and the stored object key comes out.

- Direct: one presigned PUT for the whole payload, used below MULTIPART_THRESHOLD.
- Multipart: one presigned PUT per part, then a completion call with the part ETags.
"""

import logging
import math
import mimetypes
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Protocol

import requests

from cachao_upload.services.errors import ApiError, TransferError, UploadCancelledError

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 500 * 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024

ProgressCallback = Callable[[float], None]


class UploadStrategy(Enum):
    """How a file's bytes reach object storage."""

    DIRECT = "direct"
    MULTIPART = "multipart"


@dataclass(frozen=True)
class UploadFile:
    """A local file selected for upload."""

    path: str
    name: str
    size: int
    mime_type: str

    @classmethod
    def from_path(
        cls, path: str | Path, name: str | None = None, mime_type: str | None = None
    ) -> "UploadFile":
        """Capture name, size and MIME type of a file on disk."""
        file_path = Path(path)
        file_name = name or file_path.name
        guessed = mimetypes.guess_type(file_name)[0]
        return cls(
            path=str(file_path.absolute()),
            name=file_name,
            size=file_path.stat().st_size,
            mime_type=mime_type or guessed or "application/octet-stream",
        )


@dataclass
class DirectPlan:
    """A single presigned PUT URL for the whole object."""

    put_url: str
    object_key: str
    record_id: str | None = None

    strategy = UploadStrategy.DIRECT


@dataclass
class MultipartPlan:
    """A multipart upload session with one presigned URL per part, in part order."""

    upload_id: str
    object_key: str
    part_size: int
    part_urls: list[str] = field(default_factory=list)
    record_id: str | None = None

    strategy = UploadStrategy.MULTIPART


@dataclass(frozen=True)
class CompletedPart:
    part_number: int
    etag: str


@dataclass(frozen=True)
class TransferOutcome:
    """What a finished transfer hands over for registration."""

    object_key: str
    record_id: str | None = None


class UploadPlanner(Protocol):
    """Issues upload plans and closes multipart sessions."""

    def plan_direct(self, file: UploadFile, event_id: str, album_id: str) -> DirectPlan: ...

    def plan_multipart(
        self, file: UploadFile, event_id: str, album_id: str
    ) -> MultipartPlan: ...

    def complete_multipart(self, plan: MultipartPlan, parts: list[CompletedPart]) -> str: ...


class CancelToken:
    """One-shot cancellation flag shared between a job and its transfer."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UploadCancelledError()


class ProgressReader:
    """Read-only file view over a byte range.

    Every read checks the cancel token first, so an HTTP client streaming this body
    aborts the request as soon as the token fires. The callback receives the running
    count of bytes handed out.
    """

    def __init__(
        self,
        path: str,
        offset: int,
        length: int,
        cancel_token: CancelToken,
        callback: Callable[[int], None] | None = None,
    ) -> None:
        self._path = path
        self._offset = offset
        self._length = length
        self._token = cancel_token
        self._callback = callback
        self._bytes_read = 0
        self._fh = open(path, "rb")
        self._fh.seek(offset)

    def __len__(self) -> int:
        return self._length

    @property
    def bytes_read(self) -> int:
        return self._bytes_read

    def read(self, size: int | None = -1) -> bytes:
        self._token.raise_if_cancelled()
        remaining = self._length - self._bytes_read
        if remaining <= 0:
            return b""
        if size is None or size < 0 or size > remaining:
            size = remaining
        chunk = self._fh.read(size)
        self._bytes_read += len(chunk)
        if self._callback and chunk:
            self._callback(self._bytes_read)
        return chunk

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "ProgressReader":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class HttpTransport:
    """PUTs request bodies to presigned URLs over a requests session."""

    def __init__(
        self, session: requests.Session | None = None, connect_timeout: float = 10.0
    ) -> None:
        self.session = session or requests.Session()
        self.connect_timeout = connect_timeout

    def put(self, url: str, body: ProgressReader, content_type: str) -> str:
        """Upload a body and return the ETag reported by storage.

        Raises:
            TransferError: On network failure or a non-2xx response
        """
        try:
            response = self.session.put(
                url,
                data=body,
                headers={"Content-Type": content_type},
                # No read timeout: large bodies may take arbitrarily long
                timeout=(self.connect_timeout, None),
            )
        except requests.RequestException as e:
            raise TransferError(f"Network error during upload: {e}") from e

        if not response.ok:
            raise TransferError(f"Upload failed with status {response.status_code}")
        return str(response.headers.get("ETag", ""))


class Transport(Protocol):
    def put(self, url: str, body: ProgressReader, content_type: str) -> str: ...


def select_strategy(file_size: int, threshold: int = MULTIPART_THRESHOLD) -> UploadStrategy:
    """Direct below the threshold, multipart at or above it."""
    if file_size >= threshold:
        return UploadStrategy.MULTIPART
    return UploadStrategy.DIRECT


def _percent(done: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return min(100.0, done * 100 / total)


class DirectUpload:
    """Single presigned PUT with continuous progress."""

    def __init__(self, planner: UploadPlanner, transport: Transport) -> None:
        self.planner = planner
        self.transport = transport

    def run(
        self,
        file: UploadFile,
        event_id: str,
        album_id: str,
        cancel_token: CancelToken,
        on_progress: ProgressCallback,
    ) -> TransferOutcome:
        cancel_token.raise_if_cancelled()
        try:
            plan = self.planner.plan_direct(file, event_id, album_id)
        except ApiError as e:
            raise TransferError(f"Failed to get upload URL: {e}") from e

        def report(sent: int) -> None:
            on_progress(_percent(sent, file.size))

        with ProgressReader(file.path, 0, file.size, cancel_token, report) as body:
            try:
                self.transport.put(plan.put_url, body, file.mime_type)
            except TransferError:
                # A transport may surface an abort as a network error
                cancel_token.raise_if_cancelled()
                raise

        on_progress(100.0)
        return TransferOutcome(object_key=plan.object_key, record_id=plan.record_id)


class MultipartUpload:
    """Sequential part uploads with part-granular progress."""

    def __init__(self, planner: UploadPlanner, transport: Transport) -> None:
        self.planner = planner
        self.transport = transport

    def run(
        self,
        file: UploadFile,
        event_id: str,
        album_id: str,
        cancel_token: CancelToken,
        on_progress: ProgressCallback,
    ) -> TransferOutcome:
        cancel_token.raise_if_cancelled()
        try:
            plan = self.planner.plan_multipart(file, event_id, album_id)
        except ApiError as e:
            raise TransferError(f"Failed to start multipart upload: {e}") from e

        if plan.part_size <= 0:
            raise TransferError(f"Invalid part size {plan.part_size}")
        expected_parts = max(1, math.ceil(file.size / plan.part_size))
        if len(plan.part_urls) != expected_parts:
            raise TransferError(
                f"Expected {expected_parts} part URLs, backend issued {len(plan.part_urls)}"
            )

        completed: list[CompletedPart] = []
        bytes_done = 0
        for index, url in enumerate(plan.part_urls):
            cancel_token.raise_if_cancelled()
            part_number = index + 1
            offset = index * plan.part_size
            length = min(plan.part_size, file.size - offset)

            with ProgressReader(file.path, offset, length, cancel_token) as body:
                try:
                    etag = self.transport.put(url, body, file.mime_type)
                except TransferError as e:
                    cancel_token.raise_if_cancelled()
                    raise TransferError(f"Part {part_number} failed: {e}") from e

            if not etag:
                raise TransferError(f"Part {part_number} returned no ETag")
            completed.append(CompletedPart(part_number=part_number, etag=etag))
            bytes_done += length
            on_progress(_percent(bytes_done, file.size))
            logger.debug(
                "Uploaded part %d/%d of %s", part_number, expected_parts, plan.object_key
            )

        cancel_token.raise_if_cancelled()
        try:
            object_key = self.planner.complete_multipart(plan, completed)
        except ApiError as e:
            raise TransferError(f"Failed to complete multipart upload: {e}") from e

        return TransferOutcome(object_key=object_key or plan.object_key, record_id=plan.record_id)


def execute_upload(
    file: UploadFile,
    event_id: str,
    album_id: str,
    planner: UploadPlanner,
    transport: Transport,
    cancel_token: CancelToken,
    on_progress: ProgressCallback,
    threshold: int = MULTIPART_THRESHOLD,
) -> TransferOutcome:
    """Pick a strategy by file size and run it.

    Raises:
        UploadCancelledError: The cancel token fired before the transfer finished
        TransferError: Planning, transfer or completion failed
    """
    strategy = select_strategy(file.size, threshold)
    runner: DirectUpload | MultipartUpload
    if strategy is UploadStrategy.MULTIPART:
        runner = MultipartUpload(planner, transport)
    else:
        runner = DirectUpload(planner, transport)
    return runner.run(file, event_id, album_id, cancel_token, on_progress)
