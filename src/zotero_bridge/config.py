"""
Configuration management for Zotero Bridge.

Loads settings from environment variables and .env files.
Priority: Environment vars > .env file > defaults
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import platform
from typing import Optional

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from zotero_bridge.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.zotero.org"
SQLITE_FILENAME = "zotero.sqlite"
MODES = ("web", "local")

# Global settings singleton
_settings: Optional[ZoteroSettings] = None


def _profile_data_dirs(profiles_root: Path) -> list[Path]:
    """Candidate data dirs inside a Firefox-style Profiles directory."""
    if not profiles_root.is_dir():
        return []
    try:
        return sorted(p / "zotero" for p in profiles_root.iterdir() if p.is_dir())
    except OSError:
        return []


def candidate_data_dirs() -> list[Path]:
    """
    Locations where Zotero keeps its data directory on this OS.

    Returns:
        Candidate directories in order of preference
    """
    system = platform.system()
    home = Path.home()
    candidates: list[Path] = [home / "Zotero"]

    if system == "Windows":
        app_data = os.getenv("APPDATA", "")
        if app_data:
            candidates.extend(
                _profile_data_dirs(Path(app_data) / "Zotero" / "Zotero" / "Profiles")
            )
    elif system == "Darwin":  # macOS
        candidates.extend(
            _profile_data_dirs(
                home / "Library" / "Application Support" / "Zotero" / "Profiles"
            )
        )
    else:  # Linux
        candidates.extend(_profile_data_dirs(home / ".zotero" / "zotero"))

    return candidates


def detect_zotero_data_dir() -> Path | None:
    """
    Auto-detect the Zotero data directory.

    Returns:
        First candidate that contains zotero.sqlite, or None
    """
    for path in candidate_data_dirs():
        if (path / SQLITE_FILENAME).is_file():
            logger.debug(f"Detected Zotero data directory: {path}")
            return path
    return None


class ZoteroSettings(BaseSettings):
    """Zotero Bridge settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ZOTERO_",
        extra="ignore",
    )

    mode: str = Field(default="web", description="web or local")

    # Web API
    api_key: str | None = Field(default=None)
    user_id: str | None = Field(default=None)
    group_id: str | None = Field(default=None)
    api_base_url: str = Field(default=DEFAULT_API_BASE_URL)

    # Local database
    data_dir: Path | None = Field(default=None)

    # Result sizes
    default_limit: int = Field(default=25)
    max_limit: int = Field(default=100)

    # Caching
    cache_enabled: bool = Field(default=True)
    cache_ttl: int = Field(default=300, description="Seconds")

    # Full text
    extract_pdf: bool = Field(default=True)
    pdf_max_pages: int | None = Field(default=None)
    max_fulltext_length: int = Field(default=100_000)

    @model_validator(mode="before")
    @classmethod
    def _normalize_mode(cls, values: dict) -> dict:
        if isinstance(values, dict) and isinstance(values.get("mode"), str):
            values["mode"] = values["mode"].strip().lower()
        return values

    @model_validator(mode="after")
    def _fill_data_dir(self) -> ZoteroSettings:
        if self.mode == "local" and self.data_dir is None:
            self.data_dir = detect_zotero_data_dir()
        return self

    # -------------------- Derived values --------------------

    @property
    def is_local(self) -> bool:
        return self.mode == "local"

    @property
    def library_prefix(self) -> str:
        """API path prefix of the library (users/<id> or groups/<id>)."""
        if self.group_id:
            return f"groups/{self.group_id}"
        return f"users/{self.user_id}"

    @property
    def sqlite_path(self) -> Path | None:
        return self.data_dir / SQLITE_FILENAME if self.data_dir else None

    @property
    def storage_path(self) -> Path | None:
        return self.data_dir / "storage" if self.data_dir else None

    # -------------------- Validation --------------------

    def validate_settings(self) -> list[str]:
        """
        Check the settings needed by the selected mode.

        Returns:
            Every problem found, empty when the settings are usable
        """
        problems: list[str] = []

        if self.mode not in MODES:
            problems.append(f"ZOTERO_MODE must be one of {', '.join(MODES)}, got: {self.mode}")
        elif self.mode == "web":
            if not self.api_key:
                problems.append("ZOTERO_API_KEY is required for web mode")
            if not self.user_id and not self.group_id:
                problems.append("ZOTERO_USER_ID or ZOTERO_GROUP_ID is required for web mode")
            if not self.api_base_url.startswith(("http://", "https://")):
                problems.append(f"ZOTERO_API_BASE_URL is not an http(s) URL: {self.api_base_url}")
        else:
            if self.data_dir is None:
                problems.append("Could not detect the Zotero data directory. Set ZOTERO_DATA_DIR")
            elif not self.data_dir.is_dir():
                problems.append(f"Zotero data directory does not exist: {self.data_dir}")
            elif not (self.data_dir / SQLITE_FILENAME).is_file():
                problems.append(f"{SQLITE_FILENAME} not found in: {self.data_dir}")

        if self.default_limit < 1:
            problems.append("ZOTERO_DEFAULT_LIMIT must be at least 1")
        if self.max_limit < 1:
            problems.append("ZOTERO_MAX_LIMIT must be at least 1")
        elif self.default_limit > self.max_limit:
            problems.append("ZOTERO_DEFAULT_LIMIT must not exceed ZOTERO_MAX_LIMIT")
        if self.cache_enabled and self.cache_ttl < 1:
            problems.append("ZOTERO_CACHE_TTL must be at least 1 second when caching is enabled")
        if self.max_fulltext_length < 1:
            problems.append("ZOTERO_MAX_FULLTEXT_LENGTH must be at least 1")
        if self.pdf_max_pages is not None and self.pdf_max_pages < 1:
            problems.append("ZOTERO_PDF_MAX_PAGES must be at least 1")

        return problems

    def require_valid(self) -> ZoteroSettings:
        """
        Raise ConfigurationError listing every problem, or return self.
        """
        problems = self.validate_settings()
        if problems:
            raise ConfigurationError(
                problems,
                suggestion="Set the listed ZOTERO_* environment variables or add them to .env",
            )
        return self


def load_settings(**overrides) -> ZoteroSettings:
    """
    Build settings from the environment, reporting malformed values together.

    Raises:
        ConfigurationError: If a value cannot be parsed (e.g. a non-numeric limit)
    """
    try:
        return ZoteroSettings(**overrides)
    except ValidationError as e:
        problems = [
            f"ZOTERO_{'_'.join(str(part) for part in err['loc']).upper()}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigurationError(problems) from e


def get_settings() -> ZoteroSettings:
    """Get or create the global settings singleton."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the global settings (for testing)."""
    global _settings
    _settings = None
