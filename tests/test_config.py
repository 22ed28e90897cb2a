"""Tests for settings loading and persistence."""

import json
from pathlib import Path

import pytest

from cachao_upload import config
from cachao_upload.config import Settings, get_package_version, get_settings


def _reload() -> Settings:
    Settings._instance = None
    return get_settings()


class TestSettings:
    """Tests for the Settings singleton."""

    def test_singleton(self) -> None:
        assert get_settings() is get_settings()

    def test_defaults(self, isolated_settings: Settings) -> None:
        assert isolated_settings.upload_planner == "backend"
        assert isolated_settings.max_concurrent == 3
        assert isolated_settings.multipart_threshold == 500 * 1024 * 1024
        assert isolated_settings.part_size == 100 * 1024 * 1024
        assert isolated_settings.aws_region == "eu-west-1"

    def test_settings_file_values(self, isolated_settings: Settings) -> None:
        assert isolated_settings.api_url == "https://api.cachao.test"
        assert isolated_settings.api_base_path == "/api"

    def test_default_file_is_lowest_priority(self, tmp_path: Path) -> None:
        (tmp_path / "settings.default.json").write_text(
            json.dumps({"aws_region": "us-east-2", "api_url": "https://ignored.test"})
        )

        settings = _reload()

        assert settings.aws_region == "us-east-2"
        assert settings.api_url == "https://api.cachao.test"

    def test_environment_overrides_file(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(config.ENV_API_URL, "https://env.cachao.test/")
        monkeypatch.setenv(config.ENV_UPLOAD_PLANNER, "s3")

        settings = _reload()

        assert settings.api_url == "https://env.cachao.test"
        assert settings.upload_planner == "s3"

    def test_update_persists_without_auth_token(self, isolated_settings: Settings) -> None:
        isolated_settings.update({"s3_bucket": "new-bucket", "auth_token": "secret"})

        saved = json.loads(config.SETTINGS_FILE.read_text())
        assert saved["s3_bucket"] == "new-bucket"
        assert "auth_token" not in saved
        assert isolated_settings.auth_token == "secret"

    def test_all_masks_auth_token(self, isolated_settings: Settings) -> None:
        isolated_settings.set("auth_token", "secret")

        assert isolated_settings.all()["auth_token"] == "***"

    def test_relative_log_directory_resolves_against_base_dir(
        self, isolated_settings: Settings
    ) -> None:
        isolated_settings.set("log_directory", "logs")

        assert isolated_settings.log_directory == config.BASE_DIR / "logs"

    def test_creates_settings_file_when_missing(self, tmp_path: Path) -> None:
        config.SETTINGS_FILE.unlink()

        _reload()

        assert config.SETTINGS_FILE.exists()


class TestPackageVersion:
    def test_reads_pyproject(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        pyproject = tmp_path / "pyproject.toml"
        pyproject.write_text('[project]\nname = "cachao-upload"\nversion = "1.2.3"\n')
        monkeypatch.setattr(config, "PYPROJECT_FILE", pyproject)

        assert get_package_version() == "1.2.3"

    def test_missing_pyproject(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setattr(config, "PYPROJECT_FILE", tmp_path / "missing.toml")
        assert get_package_version() == "0.0.0"
