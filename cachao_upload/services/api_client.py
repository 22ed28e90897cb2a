"""Client for the Cachao REST backend (videos, albums, upload plans)."""

import logging
from typing import Any

import requests

from cachao_upload.config import Settings
from cachao_upload.services.errors import ApiError, RegistrationError
from cachao_upload.services.transfer import (
    CompletedPart,
    DirectPlan,
    MultipartPlan,
    UploadFile,
)

logger = logging.getLogger(__name__)

VIDEO_CATEGORIES = ("shows", "social", "workshops", "demos")

# Marks an update_video field that should not be sent
_UNCHANGED: Any = object()


class CachaoApiClient:
    """Thin JSON client over the backend endpoints used by the upload queue.

    Every backend response carries a ``success`` flag; anything else than
    ``success: true`` with a 2xx status raises ApiError with the server's message.
    """

    def __init__(
        self,
        base_url: str,
        base_path: str = "",
        auth_token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.base_path = base_path
        self.auth_token = auth_token
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "CachaoApiClient":
        return cls(
            settings.api_url,
            settings.api_base_path,
            auth_token=settings.auth_token or None,
        )

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}{self.base_path}{endpoint}"

    def _request(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        url = self._url(endpoint)
        try:
            response = self.session.request(
                method, url, json=payload, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ApiError(f"Request to {endpoint} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.ok or not data.get("success"):
            message = data.get("error") or data.get("message")
            logger.debug("%s %s -> %s: %s", method, url, response.status_code, message)
            raise ApiError(
                message or f"Request to {endpoint} failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return data

    # Upload plans

    def plan_direct(self, file: UploadFile, event_id: str, album_id: str) -> DirectPlan:
        """Request a presigned PUT URL for a whole file."""
        data = self._request(
            "POST",
            "/videos/upload-url",
            {
                "filename": file.name,
                "file_size": file.size,
                "mime_type": file.mime_type,
                "event_id": event_id,
                "album_id": album_id,
            },
        )
        if not data.get("upload_url") or not data.get("s3_key"):
            raise ApiError("Failed to get upload URL")
        record_id = data.get("video_id")
        return DirectPlan(
            put_url=data["upload_url"],
            object_key=data["s3_key"],
            record_id=str(record_id) if record_id is not None else None,
        )

    def plan_multipart(self, file: UploadFile, event_id: str, album_id: str) -> MultipartPlan:
        """Open a multipart session; part URLs come back sorted by part number."""
        data = self._request(
            "POST",
            "/videos/multipart/init",
            {
                "filename": file.name,
                "file_size": file.size,
                "mime_type": file.mime_type,
                "event_id": event_id,
                "album_id": album_id,
            },
        )
        if not data.get("upload_id") or not data.get("s3_key"):
            raise ApiError("Failed to start multipart upload")
        parts = sorted(data.get("parts", []), key=lambda p: int(p["partNumber"]))
        record_id = data.get("video_id")
        return MultipartPlan(
            upload_id=data["upload_id"],
            object_key=data["s3_key"],
            part_size=int(data["part_size"]),
            part_urls=[p["upload_url"] for p in parts],
            record_id=str(record_id) if record_id is not None else None,
        )

    def complete_multipart(self, plan: MultipartPlan, parts: list[CompletedPart]) -> str:
        """Close a multipart session and return the final object key."""
        ordered = sorted(parts, key=lambda p: p.part_number)
        data = self._request(
            "POST",
            "/videos/multipart/complete",
            {
                "upload_id": plan.upload_id,
                "s3_key": plan.object_key,
                "parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in ordered],
            },
        )
        return str(data.get("s3_key") or plan.object_key)

    # Records

    def register_upload(
        self,
        event_id: str,
        album_id: str | None,
        object_key: str,
        size: int,
        title: str | None = None,
        record_id: str | None = None,
    ) -> dict[str, Any]:
        """Persist the video record for an uploaded object.

        Returns:
            The created (or already existing) video record, including its ``id``

        Raises:
            RegistrationError: The backend refused or could not be reached
        """
        try:
            data = self._request(
                "POST",
                "/videos/confirm",
                {
                    "video_id": record_id,
                    "s3_key": object_key,
                    "event_id": event_id,
                    "album_id": album_id,
                    "title": title,
                    "file_size": size,
                },
            )
        except ApiError as e:
            raise RegistrationError(str(e)) from e
        video = data.get("video") or {}
        if video.get("id") is None and data.get("video_id") is not None:
            video = {**video, "id": data["video_id"]}
        if video.get("id") is None:
            raise RegistrationError("Backend did not return a video id")
        return dict(video)

    def list_videos(self, event_id: str) -> list[dict[str, Any]]:
        data = self._request("GET", f"/events/{event_id}/videos")
        return list(data.get("videos", []))

    def delete_videos(self, video_ids: list[str]) -> dict[str, Any]:
        """Delete videos by id; returns ``deleted_count`` and ``deleted_ids``."""
        data = self._request("DELETE", "/videos", {"video_ids": video_ids})
        return {
            "deleted_count": data.get("deleted_count", 0),
            "deleted_ids": data.get("deleted_ids", []),
        }

    def update_video(
        self,
        video_id: str,
        album_id: str | None = _UNCHANGED,
        category: str | None = _UNCHANGED,
    ) -> dict[str, Any]:
        """Move a video to another album and/or change its category.

        Only the fields passed are sent; passing None clears them (a None album
        detaches the video from its album).
        """
        payload: dict[str, Any] = {}
        if album_id is not _UNCHANGED:
            payload["album_id"] = album_id
        if category is not _UNCHANGED:
            payload["category"] = category
        if not payload:
            raise ValueError("update_video needs album_id or category")

        data = self._request("PATCH", f"/videos/{video_id}", payload)
        return dict(data.get("video") or {})

    # Albums

    def list_albums(self, event_id: str) -> list[dict[str, Any]]:
        data = self._request("GET", f"/events/{event_id}/albums")
        return list(data.get("albums", []))

    def create_album(
        self, event_id: str, name: str, album_date: str | None = None
    ) -> dict[str, Any]:
        """Create an album; the backend returns the existing one for a repeated name and date."""
        data = self._request(
            "POST",
            f"/events/{event_id}/albums",
            {"name": name, "album_date": album_date or None},
        )
        album = data.get("album") or {}
        if album.get("id") is None:
            raise ApiError("Backend did not return an album id")
        return dict(album)
