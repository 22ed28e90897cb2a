"""Logs API routes for cachao_upload"""

from flask import Blueprint, Response, jsonify, request

from cachao_upload.services.log_service import get_log_service

logs_bp = Blueprint("logs", __name__)


@logs_bp.route("/entries", methods=["GET"])
def get_log_entries() -> tuple[Response, int]:
    """Query log entries with filtering and pagination.

    Query params:
        date: Filter by date (YYYY-MM-DD)
        level: Filter by level (INFO/WARNING/ERROR)
        category: Filter by category (upload/album/settings/app)
        search: Full-text search in message and event
        queue_id: Only entries for one upload queue
        job_id: Only entries for one upload job
        offset: Pagination offset (default 0)
        limit: Pagination limit (default 100)

    Returns:
        JSON with entries, total, offset, limit
    """
    log = get_log_service()

    offset = request.args.get("offset", "0")
    limit = request.args.get("limit", "100")
    try:
        offset_int = max(0, int(offset))
        limit_int = max(1, min(1000, int(limit)))
    except ValueError:
        offset_int = 0
        limit_int = 100

    result = log.read_log_entries(
        date=request.args.get("date"),
        level=request.args.get("level"),
        category=request.args.get("category"),
        search=request.args.get("search"),
        queue_id=request.args.get("queue_id"),
        job_id=request.args.get("job_id"),
        offset=offset_int,
        limit=limit_int,
    )

    return jsonify(result), 200
