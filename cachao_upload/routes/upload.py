"""Upload queue API routes for cachao_upload"""

import json
import tempfile
import threading
import time
from collections import deque
from collections.abc import Generator
from pathlib import Path
from typing import Any

from flask import Blueprint, Response, jsonify, request

from cachao_upload.services.errors import MissingTargetError
from cachao_upload.services.transfer import UploadFile
from cachao_upload.services.upload_queue import (
    TargetContext,
    UploadQueue,
    UploadStatus,
    get_queue_registry,
)

upload_bp = Blueprint("upload", __name__)

# Store for SSE clients per queue
SSE_CLIENT_BUFFER = 1000
_sse_queues: dict[str, list[deque[dict[str, Any]]]] = {}
_sse_lock = threading.Lock()
_sse_subscriptions: dict[str, Any] = {}


def send_sse_event(queue_id: str, data: dict[str, Any]) -> None:
    """Send an SSE event to all clients listening on a queue."""
    with _sse_lock:
        queues = _sse_queues.get(queue_id, [])
        for q in queues:
            if len(q) == q.maxlen:
                # Client fell behind: drop its backlog and have it resend the snapshot
                q.clear()
                q.append({"type": "resync"})
            q.append(data)


def _add_sse_client(queue_id: str) -> deque[dict[str, Any]]:
    client: deque[dict[str, Any]] = deque(maxlen=SSE_CLIENT_BUFFER)
    with _sse_lock:
        _sse_queues.setdefault(queue_id, []).append(client)
    return client


def _remove_sse_client(queue_id: str, client: deque[dict[str, Any]]) -> None:
    with _sse_lock:
        if queue_id in _sse_queues and client in _sse_queues[queue_id]:
            _sse_queues[queue_id].remove(client)
            if not _sse_queues[queue_id]:
                del _sse_queues[queue_id]


def _watch_queue(queue: UploadQueue) -> None:
    """Forward queue events to SSE clients, once per queue."""
    with _sse_lock:
        if queue.queue_id in _sse_subscriptions:
            return
        _sse_subscriptions[queue.queue_id] = queue.subscribe(
            lambda event: send_sse_event(queue.queue_id, event)
        )


def _unwatch_queue(queue_id: str) -> None:
    with _sse_lock:
        unsubscribe = _sse_subscriptions.pop(queue_id, None)
    if unsubscribe:
        unsubscribe()


def _find_queue(queue_id: str) -> UploadQueue | None:
    return get_queue_registry().get(queue_id)


@upload_bp.route("", methods=["POST"])
def create_queue() -> tuple[Response, int]:
    """Create an empty upload queue.

    Returns:
        JSON response with the queue snapshot (201 Created)
    """
    queue = get_queue_registry().create()
    _watch_queue(queue)
    return jsonify(queue.snapshot()), 201


@upload_bp.route("/<queue_id>", methods=["GET"])
def get_queue(queue_id: str) -> tuple[Response, int]:
    queue = _find_queue(queue_id)
    if not queue:
        return jsonify({"error": "Queue not found"}), 404
    return jsonify(queue.snapshot()), 200


@upload_bp.route("/<queue_id>/files", methods=["POST"])
def add_files(queue_id: str) -> tuple[Response, int]:
    """Add files to a queue as pending jobs.

    Accepts multipart/form-data with files or JSON with file paths.

    Returns:
        JSON response with the new jobs (201 Created)
    """
    queue = _find_queue(queue_id)
    if not queue:
        return jsonify({"error": "Queue not found"}), 404

    files: list[UploadFile] = []

    # Handle file uploads (multipart/form-data)
    if request.files:
        uploaded_files = request.files.getlist("files")
        # Files stay on disk until the queue is discarded so failed jobs can be retried
        temp_dir = tempfile.mkdtemp(prefix="cachao_upload_")
        queue.temp_dirs.append(temp_dir)
        for uploaded_file in uploaded_files:
            if uploaded_file.filename:
                temp_path = Path(temp_dir) / Path(uploaded_file.filename).name
                uploaded_file.save(temp_path)
                files.append(
                    UploadFile.from_path(
                        temp_path,
                        name=Path(uploaded_file.filename).name,
                        mime_type=uploaded_file.mimetype or None,
                    )
                )

    # Handle JSON with file paths, read directly from source
    elif request.is_json:
        data = request.get_json()
        if data and "file_paths" in data:
            for file_path in data["file_paths"]:
                path = Path(file_path)
                if not path.is_file():
                    return jsonify({"error": f"File not found: {file_path}"}), 400
                files.append(UploadFile.from_path(path))

    if not files:
        return jsonify({"error": "No files provided"}), 400

    jobs = queue.enqueue(files)
    return jsonify(
        {
            "queue_id": queue_id,
            "total_files": len(jobs),
            "jobs": [j.to_dict() for j in jobs],
        }
    ), 201


@upload_bp.route("/<queue_id>/dispatch", methods=["POST"])
def dispatch(queue_id: str) -> tuple[Response, int]:
    """Upload every pending job of a queue.

    Request body:
        event_id: Event the uploads belong to
        album_id: Existing album, or
        album_name / album_date: Album to create before uploading

    The album is resolved before responding; the uploads run in a background
    thread and report through /api/queues/<queue_id>/progress.

    Returns:
        JSON response with the resolved target (202 Accepted), or 409 while the
        queue is already uploading
    """
    queue = _find_queue(queue_id)
    if not queue:
        return jsonify({"error": "Queue not found"}), 404

    if not queue.try_reserve():
        return jsonify({"error": "Queue is already uploading"}), 409

    data = request.get_json(silent=True) or {}
    target: TargetContext | None = queue.target
    if data.get("event_id"):
        target = TargetContext(
            event_id=str(data["event_id"]),
            album_id=str(data["album_id"]) if data.get("album_id") else None,
            album_name=data.get("album_name"),
            album_date=data.get("album_date"),
        )

    try:
        resolved = queue.resolve_target(target)
    except MissingTargetError as e:
        queue.release()
        return jsonify({"error": str(e)}), 400

    pending = queue.snapshot()["counts"][UploadStatus.PENDING.value]

    def run_dispatch() -> None:
        try:
            queue.dispatch_all(resolved)
        finally:
            queue.release()

    thread = threading.Thread(target=run_dispatch, daemon=True)
    thread.start()

    return jsonify(
        {
            "queue_id": queue_id,
            "status": "started",
            "target": resolved.to_dict(),
            "pending": pending,
        }
    ), 202


@upload_bp.route("/<queue_id>/jobs/<job_id>/cancel", methods=["POST"])
def cancel_job(queue_id: str, job_id: str) -> tuple[Response, int]:
    queue = _find_queue(queue_id)
    if not queue:
        return jsonify({"error": "Queue not found"}), 404

    job = queue.get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404

    cancelled = queue.cancel(job_id)
    return jsonify({"success": cancelled, "job": job.to_dict()}), 200


@upload_bp.route("/<queue_id>/jobs/<job_id>/retry", methods=["POST"])
def retry_job(queue_id: str, job_id: str) -> tuple[Response, int]:
    """Retry a failed job in a background thread.

    Returns:
        202 when the retry started, 409 if the job is not in error
    """
    queue = _find_queue(queue_id)
    if not queue:
        return jsonify({"error": "Queue not found"}), 404

    job = queue.get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    if job.status is not UploadStatus.ERROR:
        return jsonify({"error": "Only failed jobs can be retried"}), 409
    if queue.target is None:
        return jsonify({"error": "No album resolved for upload"}), 400

    thread = threading.Thread(target=queue.retry, args=(job_id,), daemon=True)
    thread.start()

    return jsonify({"queue_id": queue_id, "job_id": job_id, "status": "retrying"}), 202


@upload_bp.route("/<queue_id>/jobs/<job_id>", methods=["DELETE"])
def remove_job(queue_id: str, job_id: str) -> tuple[Response, int]:
    queue = _find_queue(queue_id)
    if not queue:
        return jsonify({"error": "Queue not found"}), 404

    if not queue.remove(job_id):
        return jsonify({"error": "Job not found"}), 404
    return jsonify({"success": True, "job_id": job_id}), 200


@upload_bp.route("/<queue_id>/clear-completed", methods=["POST"])
def clear_completed(queue_id: str) -> tuple[Response, int]:
    queue = _find_queue(queue_id)
    if not queue:
        return jsonify({"error": "Queue not found"}), 404

    removed = queue.clear_completed()
    return jsonify({"success": True, "removed": removed}), 200


@upload_bp.route("/<queue_id>", methods=["DELETE"])
def discard_queue(queue_id: str) -> tuple[Response, int]:
    """Cancel everything in flight, delete saved files and forget the queue."""
    _unwatch_queue(queue_id)
    if not get_queue_registry().discard(queue_id):
        return jsonify({"error": "Queue not found"}), 404
    send_sse_event(queue_id, {"type": "queue_discarded", "queue_id": queue_id})
    return jsonify({"success": True, "queue_id": queue_id}), 200


@upload_bp.route("/<queue_id>/progress", methods=["GET"])
def get_progress(queue_id: str) -> Response | tuple[Response, int]:
    """Stream queue events via Server-Sent Events.

    The first event is the full queue snapshot; job events follow as they happen.
    The stream ends when the queue is discarded.
    """
    queue = _find_queue(queue_id)
    if not queue:
        return jsonify({"error": "Queue not found"}), 404
    _watch_queue(queue)

    def generate() -> Generator[str, None, None]:
        client = _add_sse_client(queue_id)

        try:
            yield f"data: {json.dumps({'type': 'snapshot', **queue.snapshot()})}\n\n"

            while True:
                while client:
                    data = client.popleft()
                    if data.get("type") == "resync":
                        data = {"type": "snapshot", **queue.snapshot()}
                    yield f"data: {json.dumps(data)}\n\n"
                    if data.get("type") == "queue_discarded":
                        return

                # Small delay to prevent busy waiting
                time.sleep(0.1)

                if get_queue_registry().get(queue_id) is None:
                    yield 'data: {"type": "queue_discarded"}\n\n'
                    return

        finally:
            _remove_sse_client(queue_id, client)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
