"""Event, album and video API routes proxied to the Cachao backend."""

from flask import Blueprint, Response, jsonify, request

from cachao_upload.config import get_settings
from cachao_upload.services.api_client import VIDEO_CATEGORIES, CachaoApiClient
from cachao_upload.services.errors import ApiError
from cachao_upload.services.log_service import get_log_service

events_bp = Blueprint("events", __name__)


def _client() -> CachaoApiClient:
    return CachaoApiClient.from_settings(get_settings())


def _error_response(e: ApiError) -> tuple[Response, int]:
    status = e.status_code if e.status_code and e.status_code >= 400 else 502
    return jsonify({"success": False, "error": str(e)}), status


@events_bp.route("/events/<event_id>/albums", methods=["GET"])
def list_albums(event_id: str) -> tuple[Response, int]:
    try:
        albums = _client().list_albums(event_id)
    except ApiError as e:
        return _error_response(e)
    return jsonify({"success": True, "albums": albums}), 200


@events_bp.route("/events/<event_id>/albums", methods=["POST"])
def create_album(event_id: str) -> tuple[Response, int]:
    """Create an album in an event.

    Request body:
        name: Album name
        album_date: Optional date (YYYY-MM-DD)

    Returns:
        JSON response with the album (201 Created)
    """
    data = request.get_json(silent=True) or {}
    name = str(data.get("name", "")).strip()
    if not name:
        return jsonify({"error": "name is required"}), 400

    try:
        album = _client().create_album(event_id, name, data.get("album_date"))
    except ApiError as e:
        return _error_response(e)

    log = get_log_service()
    log.info(
        "album",
        "album_created",
        f"Created album '{name}'",
        {"event_id": event_id, "album_id": album.get("id")},
    )
    return jsonify({"success": True, "album": album}), 201


@events_bp.route("/events/<event_id>/videos", methods=["GET"])
def list_videos(event_id: str) -> tuple[Response, int]:
    try:
        videos = _client().list_videos(event_id)
    except ApiError as e:
        return _error_response(e)
    return jsonify({"success": True, "videos": videos}), 200


@events_bp.route("/videos", methods=["DELETE"])
def delete_videos() -> tuple[Response, int]:
    """Delete video records (and their stored objects) by id.

    Request body:
        video_ids: List of video ids
    """
    data = request.get_json(silent=True) or {}
    video_ids = data.get("video_ids")
    if not isinstance(video_ids, list) or not video_ids:
        return jsonify({"error": "video_ids is required"}), 400

    try:
        result = _client().delete_videos([str(v) for v in video_ids])
    except ApiError as e:
        return _error_response(e)

    get_log_service().info(
        "upload",
        "videos_deleted",
        f"Deleted {result['deleted_count']} videos",
        {"video_ids": result["deleted_ids"]},
    )
    return jsonify({"success": True, **result}), 200


@events_bp.route("/videos/<video_id>", methods=["PATCH"])
def update_video(video_id: str) -> tuple[Response, int]:
    """Move a video to an album and/or set its category.

    Request body:
        album_id: Album to move the video to, or null to detach it
        category: One of shows, social, workshops, demos, or null
    """
    data = request.get_json(silent=True) or {}
    changes = {key: data[key] for key in ("album_id", "category") if key in data}
    if not changes:
        return jsonify({"error": "album_id or category is required"}), 400

    category = changes.get("category")
    if category is not None and category not in VIDEO_CATEGORIES:
        return jsonify({"error": f"category must be one of {', '.join(VIDEO_CATEGORIES)}"}), 400
    if changes.get("album_id") is not None:
        changes["album_id"] = str(changes["album_id"])

    try:
        video = _client().update_video(video_id, **changes)
    except ApiError as e:
        return _error_response(e)

    get_log_service().info(
        "upload",
        "video_updated",
        f"Updated video {video_id}",
        {"video_id": video_id, **changes},
    )
    return jsonify({"success": True, "video": video}), 200
