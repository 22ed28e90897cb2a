"""Pytest configuration and fixtures for the cachao_upload tests."""

import json
import threading
import time
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from flask import Flask
from flask.testing import FlaskClient

from cachao_upload import config, create_app
from cachao_upload.config import Settings, get_settings
from cachao_upload.services import upload_queue
from cachao_upload.services.errors import ApiError, RegistrationError, TransferError
from cachao_upload.services.transfer import (
    READ_CHUNK_SIZE,
    CompletedPart,
    DirectPlan,
    MultipartPlan,
    ProgressReader,
    UploadFile,
)
from cachao_upload.services.upload_queue import QueueRegistry, UploadQueue


class FakeApi:
    """In-memory backend: plans uploads, registers records and creates albums."""

    def __init__(self, part_size: int = 400) -> None:
        self.part_size = part_size
        self.calls: list[tuple[str, Any]] = []
        self.registered: list[dict[str, Any]] = []
        self.completed: list[list[CompletedPart]] = []
        self.fail_register = False
        self.fail_plan = False
        self.fail_album = False
        self.register_gate: threading.Event | None = None
        self.register_entered = threading.Event()
        self._lock = threading.Lock()

    def _record(self, name: str, value: Any) -> None:
        with self._lock:
            self.calls.append((name, value))

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def plan_direct(self, file: UploadFile, event_id: str, album_id: str) -> DirectPlan:
        self._record("plan_direct", file.name)
        if self.fail_plan:
            raise ApiError("planning unavailable", status_code=503)
        return DirectPlan(
            put_url=f"https://storage.test/{file.name}",
            object_key=f"videos/{file.name}",
            record_id=f"rec-{file.name}",
        )

    def plan_multipart(self, file: UploadFile, event_id: str, album_id: str) -> MultipartPlan:
        self._record("plan_multipart", file.name)
        total_parts = max(1, -(-file.size // self.part_size))
        return MultipartPlan(
            upload_id=f"mpu-{file.name}",
            object_key=f"videos/{file.name}",
            part_size=self.part_size,
            part_urls=[
                f"https://storage.test/{file.name}?partNumber={n}"
                for n in range(1, total_parts + 1)
            ],
        )

    def complete_multipart(self, plan: MultipartPlan, parts: list[CompletedPart]) -> str:
        self._record("complete_multipart", plan.upload_id)
        self.completed.append(list(parts))
        return plan.object_key

    def register_upload(
        self,
        event_id: str,
        album_id: str | None,
        object_key: str,
        size: int,
        title: str | None = None,
        record_id: str | None = None,
    ) -> dict[str, Any]:
        self._record("register_upload", object_key)
        self.register_entered.set()
        if self.register_gate is not None:
            self.register_gate.wait(5)
        if self.fail_register:
            raise RegistrationError("video record rejected")
        record = {
            "id": f"vid-{object_key.rsplit('/', 1)[-1]}",
            "event_id": event_id,
            "album_id": album_id,
            "s3_key": object_key,
            "title": title,
            "file_size": size,
        }
        with self._lock:
            self.registered.append(record)
        return record

    def create_album(
        self, event_id: str, name: str, album_date: str | None = None
    ) -> dict[str, Any]:
        self._record("create_album", name)
        if self.fail_album:
            raise ApiError("album name already taken", status_code=409)
        return {"id": "album-new", "name": name, "album_date": album_date}


class FakeTransport:
    """Drains request bodies like an HTTP client would.

    ``fail_names`` makes uploads of matching files fail; ``gate`` pauses every
    transfer after its first chunk until the event is set.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.urls: list[str] = []
        self.fail_names: set[str] = set()
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def put(self, url: str, body: ProgressReader, content_type: str) -> str:
        with self._lock:
            self.urls.append(url)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            body.read(READ_CHUNK_SIZE)
            self.started.set()
            if self.gate is not None:
                self.gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            while body.read(READ_CHUNK_SIZE):
                pass
            if any(name in url for name in self.fail_names):
                raise TransferError("Upload failed with status 500")
            return f'"etag-{len(self.urls)}"'
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Settings, None, None]:
    """Point settings and logs at a temporary directory for every test."""
    settings_file = tmp_path / "settings.json"
    settings_file.write_text(
        json.dumps(
            {
                "api_url": "https://api.cachao.test",
                "api_base_path": "/api",
                "log_directory": str(tmp_path / "logs"),
            }
        )
    )
    monkeypatch.setattr(config, "SETTINGS_FILE", settings_file)
    monkeypatch.setattr(config, "SETTINGS_DEFAULT_FILE", tmp_path / "settings.default.json")
    for env_var in (
        config.ENV_API_URL,
        config.ENV_API_BASE_PATH,
        config.ENV_AUTH_TOKEN,
        config.ENV_UPLOAD_PLANNER,
        config.ENV_AWS_PROFILE,
        config.ENV_AWS_REGION,
        config.ENV_S3_BUCKET,
        config.ENV_LOG_DIRECTORY,
    ):
        monkeypatch.delenv(env_var, raising=False)

    Settings._instance = None
    yield get_settings()
    Settings._instance = None


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fake AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_queue(
    fake_api: FakeApi, fake_transport: FakeTransport
) -> Callable[..., UploadQueue]:
    """Build queues wired to the fake backend and transport."""

    def factory(**kwargs: Any) -> UploadQueue:
        return UploadQueue(fake_api, transport=fake_transport, **kwargs)

    return factory


@pytest.fixture
def registry(
    make_queue: Callable[..., UploadQueue], monkeypatch: pytest.MonkeyPatch
) -> QueueRegistry:
    """Replace the global queue registry with one that builds fake-wired queues."""
    reg = QueueRegistry(factory=make_queue)
    monkeypatch.setattr(upload_queue, "_queue_registry", reg)
    return reg


@pytest.fixture
def app(registry: QueueRegistry) -> Flask:
    """Create application for testing."""
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def make_file(tmp_path: Path) -> Callable[..., UploadFile]:
    """Write a file of the given size and describe it as an UploadFile."""

    def factory(name: str, size: int = 1024) -> UploadFile:
        path = tmp_path / "media" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return UploadFile.from_path(path)

    return factory


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until predicate() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
