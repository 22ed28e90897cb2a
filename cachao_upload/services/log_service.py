"""JSONL logging service for upload events.

Writes one JSON object per line to hive-partitioned daily .jsonl files:
logs/json/year=YYYY/month=MM/day=DD/events.jsonl
"""

import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cachao_upload.config import get_settings


class LogService:
    """JSONL log service with thread-safe file writes."""

    def __init__(self) -> None:
        self._write_lock = threading.Lock()

    def _get_log_dir(self) -> Path:
        """Get the configured log directory, creating it if needed."""
        settings = get_settings()
        log_dir = settings.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    def _get_hive_dir(self, dt: datetime) -> Path:
        """Build and create a path like logs/json/year=2026/month=02/day=08/."""
        hive_dir = (
            self._get_log_dir()
            / "json"
            / f"year={dt.year:04d}"
            / f"month={dt.month:02d}"
            / f"day={dt.day:02d}"
        )
        hive_dir.mkdir(parents=True, exist_ok=True)
        return hive_dir

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append a log entry to the current day's JSONL file.

        Args:
            level: Log level (INFO, WARNING, ERROR)
            category: Event category (upload, album, settings, app)
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Optional additional data
        """
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata

        line = json.dumps(entry, default=str)

        with self._write_lock:
            log_file = self._get_hive_dir(now) / "events.jsonl"
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def info(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log an INFO-level event."""
        self.log("INFO", category, event, message, metadata)

    def warning(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log a WARNING-level event."""
        self.log("WARNING", category, event, message, metadata)

    def error(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log an ERROR-level event."""
        self.log("ERROR", category, event, message, metadata)

    def save_dispatch_summary(
        self,
        queue_id: str,
        summary: dict[str, Any],
        completed_at: datetime,
    ) -> Path:
        """Write a per-dispatch JSONL summary next to the day's events file.

        Args:
            queue_id: The upload queue ID
            summary: Dispatch summary dict (counts and per-job outcome)
            completed_at: When the dispatch finished

        Returns:
            Path to the written file
        """
        hive_dir = self._get_hive_dir(completed_at)
        out_path = hive_dir / f"{queue_id}-{completed_at.strftime('%H%M%S')}.jsonl"
        line = json.dumps(summary, default=str)
        with self._write_lock:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(line + "\n")
        return out_path

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        search: str | None = None,
        queue_id: str | None = None,
        job_id: str | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Read and filter log entries with pagination, newest first.

        Args:
            date: Filter by date (YYYY-MM-DD). None = all dates.
            level: Filter by level (INFO/WARNING/ERROR)
            category: Filter by category
            search: Case-insensitive search in message and event fields
            queue_id: Only entries logged for this upload queue
            job_id: Only entries logged for this upload job
            offset: Number of entries to skip
            limit: Maximum entries to return

        Returns:
            Dict with entries, total count, offset, limit
        """
        json_dir = self._get_log_dir() / "json"

        if date:
            try:
                dt = datetime.strptime(date, "%Y-%m-%d")
            except ValueError:
                return {"entries": [], "total": 0, "offset": offset, "limit": limit}
            day_file = (
                json_dir
                / f"year={dt.year:04d}"
                / f"month={dt.month:02d}"
                / f"day={dt.day:02d}"
                / "events.jsonl"
            )
            files = [day_file] if day_file.exists() else []
        elif json_dir.exists():
            files = sorted(json_dir.rglob("events.jsonl"), reverse=True)
        else:
            files = []

        matched: list[dict[str, Any]] = []
        search_lower = search.lower() if search else None
        for log_file in files:
            try:
                with open(log_file, encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            entry = json.loads(line)
                        except json.JSONDecodeError:
                            continue

                        if level and entry.get("level", "").upper() != level.upper():
                            continue
                        if category and entry.get("category") != category:
                            continue
                        metadata = entry.get("metadata") or {}
                        if queue_id and metadata.get("queue_id") != queue_id:
                            continue
                        if job_id and metadata.get("job_id") != job_id:
                            continue
                        if search_lower:
                            msg = entry.get("message", "").lower()
                            evt = entry.get("event", "").lower()
                            if search_lower not in msg and search_lower not in evt:
                                continue

                        matched.append(entry)
            except OSError:
                continue

        matched.sort(key=lambda e: e.get("timestamp", ""), reverse=True)

        return {
            "entries": matched[offset : offset + limit],
            "total": len(matched),
            "offset": offset,
            "limit": limit,
        }


# Module-level singleton accessor
_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the singleton LogService instance."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
