"""Settings API routes for cachao_upload"""

from flask import Blueprint, Response, jsonify, request

from cachao_upload.config import get_package_version, get_settings
from cachao_upload.services.log_service import get_log_service

settings_bp = Blueprint("settings", __name__)

ALLOWED_KEYS = {
    "api_url",
    "api_base_path",
    "auth_token",
    "upload_planner",
    "aws_profile",
    "aws_region",
    "s3_bucket",
    "max_concurrent",
    "multipart_threshold_mb",
    "part_size_mb",
    "log_directory",
}
POSITIVE_INT_KEYS = {"max_concurrent", "multipart_threshold_mb", "part_size_mb"}
PLANNERS = {"backend", "s3"}


@settings_bp.route("", methods=["GET"])
def get_all_settings() -> tuple[Response, int]:
    """Get all current settings, with the auth token masked.

    Returns:
        JSON response with all settings
    """
    settings = get_settings()
    return jsonify(settings.all()), 200


@settings_bp.route("", methods=["PUT"])
def update_settings() -> tuple[Response, int]:
    """Update settings.

    Request body:
        JSON object with settings to update

    Returns:
        JSON response with updated settings
    """
    if not request.is_json:
        return jsonify({"error": "JSON body required"}), 400

    data = request.get_json()
    if not data:
        return jsonify({"error": "Empty body"}), 400

    filtered_data = {k: v for k, v in data.items() if k in ALLOWED_KEYS}
    if not filtered_data:
        return jsonify({"error": "No valid settings provided"}), 400

    for key in POSITIVE_INT_KEYS & filtered_data.keys():
        value = filtered_data[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            return jsonify({"error": f"{key} must be a positive integer"}), 400
    if "upload_planner" in filtered_data and filtered_data["upload_planner"] not in PLANNERS:
        return jsonify({"error": "upload_planner must be 'backend' or 's3'"}), 400

    settings = get_settings()
    settings.update(filtered_data)

    log = get_log_service()
    log.info(
        "settings",
        "settings_updated",
        f"Updated settings: {', '.join(filtered_data.keys())}",
        {"changed_keys": list(filtered_data.keys())},
    )

    return jsonify(settings.all()), 200


@settings_bp.route("/version", methods=["GET"])
def get_version() -> tuple[Response, int]:
    return jsonify({"version": get_package_version()}), 200
