"""Configuration management for cachao_upload"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = BASE_DIR / "settings.json"
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variable names for configuration
ENV_API_URL = "CACHAO_API_URL"
ENV_API_BASE_PATH = "CACHAO_API_BASE_PATH"
ENV_AUTH_TOKEN = "CACHAO_AUTH_TOKEN"
ENV_UPLOAD_PLANNER = "CACHAO_UPLOAD_PLANNER"
ENV_AWS_PROFILE = "CACHAO_AWS_PROFILE"
ENV_AWS_REGION = "CACHAO_AWS_REGION"
ENV_S3_BUCKET = "CACHAO_S3_BUCKET"
ENV_LOG_DIRECTORY = "CACHAO_LOG_DIRECTORY"

DEFAULT_SETTINGS: dict[str, Any] = {
    "api_url": "",
    "api_base_path": "",
    "auth_token": "",
    "upload_planner": "backend",
    "aws_profile": "default",
    "aws_region": "eu-west-1",
    "s3_bucket": "",
    "max_concurrent": 3,
    "multipart_threshold_mb": 500,
    "part_size_mb": 100,
    "log_directory": "logs",
}


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


class Settings:
    """Manages application settings stored in JSON format."""

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        """Singleton pattern to ensure only one settings instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. settings.json (user-saved settings)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        values = dict(DEFAULT_SETTINGS)

        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                values.update(json.load(f))

        if SETTINGS_FILE.exists():
            with open(SETTINGS_FILE, encoding="utf-8") as f:
                values.update(json.load(f))

        env_overrides = {
            "api_url": os.environ.get(ENV_API_URL),
            "api_base_path": os.environ.get(ENV_API_BASE_PATH),
            "auth_token": os.environ.get(ENV_AUTH_TOKEN),
            "upload_planner": os.environ.get(ENV_UPLOAD_PLANNER),
            "aws_profile": os.environ.get(ENV_AWS_PROFILE),
            "aws_region": os.environ.get(ENV_AWS_REGION),
            "s3_bucket": os.environ.get(ENV_S3_BUCKET),
            "log_directory": os.environ.get(ENV_LOG_DIRECTORY),
        }

        # Only apply non-None environment values
        for key, value in env_overrides.items():
            if value is not None:
                values[key] = value

        self._settings = values

        if not SETTINGS_FILE.exists():
            self._save_settings()

    def _save_settings(self) -> None:
        """Save current settings to file, never persisting the auth token."""
        persisted = {k: v for k, v in self._settings.items() if k != "auth_token"}
        with open(SETTINGS_FILE, "w", encoding="utf-8") as f:
            json.dump(persisted, f, indent=4)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key."""
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a setting value and save to file."""
        self._settings[key] = value
        self._save_settings()

    def update(self, data: dict[str, Any]) -> None:
        """Update multiple settings at once."""
        self._settings.update(data)
        self._save_settings()

    def all(self) -> dict[str, Any]:
        """Get all settings as a dictionary, with the auth token masked."""
        values = self._settings.copy()
        if values.get("auth_token"):
            values["auth_token"] = "***"
        return values

    def reload(self) -> None:
        """Reload settings from file."""
        self._load_settings()

    @property
    def api_url(self) -> str:
        return str(self._settings.get("api_url", "")).rstrip("/")

    @property
    def api_base_path(self) -> str:
        return str(self._settings.get("api_base_path", ""))

    @property
    def auth_token(self) -> str:
        return str(self._settings.get("auth_token", ""))

    @property
    def upload_planner(self) -> str:
        """Which service issues upload plans: 'backend' or 's3'."""
        return str(self._settings.get("upload_planner", "backend"))

    @property
    def aws_profile(self) -> str:
        return str(self._settings.get("aws_profile", "default"))

    @property
    def aws_region(self) -> str:
        return str(self._settings.get("aws_region", "eu-west-1"))

    @property
    def s3_bucket(self) -> str:
        return str(self._settings.get("s3_bucket", ""))

    @property
    def max_concurrent(self) -> int:
        return int(self._settings.get("max_concurrent", 3))

    @property
    def multipart_threshold(self) -> int:
        """Size in bytes at which uploads switch to multipart."""
        return int(self._settings.get("multipart_threshold_mb", 500)) * 1024 * 1024

    @property
    def part_size(self) -> int:
        """Multipart part size in bytes."""
        return int(self._settings.get("part_size_mb", 100)) * 1024 * 1024

    @property
    def log_directory(self) -> Path:
        """Directory for JSONL event logs; relative paths resolve against BASE_DIR."""
        log_dir = Path(str(self._settings.get("log_directory", "logs")))
        if not log_dir.is_absolute():
            log_dir = BASE_DIR / log_dir
        return log_dir


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
