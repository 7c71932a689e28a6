"""
Settings, logging setup and the local window-geometry cache.

Everything lives under the data directory (``~/.sticky_notes_qt`` unless
STICKY_NOTES_HOME says otherwise):

    settings.json    user settings, see Settings
    notes.json       records of the local backend
    positions.json   last geometry of each note window
    logs/            rotating log files

Environment variables override settings.json:
    STICKY_NOTES_BACKEND, STICKY_NOTES_CK_CONTAINER, STICKY_NOTES_CK_ENVIRONMENT,
    STICKY_NOTES_CK_API_TOKEN, STICKY_NOTES_CK_WEB_AUTH_TOKEN, STICKY_NOTES_LOG_LEVEL
"""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "STICKY_NOTES_"
_ENV_FIELDS = {
    "BACKEND": "backend",
    "CK_CONTAINER": "container",
    "CK_ENVIRONMENT": "environment",
    "CK_API_TOKEN": "api_token",
    "CK_WEB_AUTH_TOKEN": "web_auth_token",
    "LOG_LEVEL": "log_level",
}


def default_data_dir() -> Path:
    override = os.getenv(ENV_PREFIX + "HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".sticky_notes_qt"


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    backend: Literal["cloudkit", "local"] = "cloudkit"

    # CloudKit Web Services
    container: str = "iCloud.com.example.stickies"
    environment: Literal["development", "production"] = "development"
    api_token: Optional[str] = None
    web_auth_token: Optional[str] = None
    zone_name: str = "_defaultZone"
    base_url: str = "https://api.apple-cloudkit.com"
    request_timeout: float = Field(default=30.0, gt=0)

    # Behaviour
    debounce_interval: float = Field(default=0.5, gt=0)
    quit_timeout: float = Field(default=5.0, ge=0)
    log_level: str = "INFO"

    @property
    def effective_backend(self) -> str:
        if self.backend == "cloudkit" and not self.api_token:
            return "local"
        return self.backend


def load_settings(
    data_dir: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    data_dir = data_dir or default_data_dir()
    environ = os.environ if environ is None else environ
    settings_file = data_dir / "settings.json"

    values: Dict[str, object] = {}
    if settings_file.exists():
        try:
            with open(settings_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                values.update(loaded)
            else:
                LOGGER.warning("%s is not a JSON object; using defaults", settings_file)
        except (OSError, json.JSONDecodeError) as e:
            LOGGER.warning("Could not read %s (%s); using defaults", settings_file, e)

    for env_name, field in _ENV_FIELDS.items():
        value = environ.get(ENV_PREFIX + env_name)
        if value:
            values[field] = value

    try:
        settings = Settings.model_validate(values)
    except ValidationError as e:
        LOGGER.warning("Invalid settings (%d errors); using defaults", e.error_count())
        settings = Settings()

    if settings.backend == "cloudkit" and not settings.api_token:
        LOGGER.warning("No CloudKit API token configured; notes are stored locally")
    return settings


def setup_logging(settings: Settings, data_dir: Path) -> logging.Logger:
    log_dir = data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    if any(getattr(h, "_sticky_notes", False) for h in root.handlers):
        return root

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", "%Y-%m-%d %H:%M:%S")
    file_handler = RotatingFileHandler(
        log_dir / "sticky_notes.log", maxBytes=1024 * 1024, backupCount=5, encoding="utf-8"
    )
    stream_handler = logging.StreamHandler()
    for handler in (file_handler, stream_handler):
        handler.setFormatter(fmt)
        handler._sticky_notes = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root


class WindowPositions:
    """Last on-screen geometry per note id, kept on this machine only."""

    def __init__(self, positions_file: Path):
        self.positions_file = positions_file

    def load(self) -> Dict[str, Dict[str, int]]:
        if self.positions_file.exists():
            try:
                with open(self.positions_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                return data if isinstance(data, dict) else {}
            except (OSError, json.JSONDecodeError):
                LOGGER.warning("Failed to load window positions from %s", self.positions_file)
                return {}
        return {}

    def get(self, note_id: str) -> Optional[Dict[str, int]]:
        return self.load().get(note_id)

    def _write(self, positions: Dict[str, Dict[str, int]]) -> None:
        try:
            with open(self.positions_file, "w", encoding="utf-8") as f:
                json.dump(positions, f, indent=2)
        except OSError as e:
            LOGGER.warning("Failed to save window positions: %s", e)

    def save(self, geometries: Mapping[str, Dict[str, int]]) -> None:
        positions = self.load()
        positions.update(geometries)
        self._write(positions)

    def forget(self, note_id: str) -> None:
        positions = self.load()
        if positions.pop(note_id, None) is not None:
            self._write(positions)
