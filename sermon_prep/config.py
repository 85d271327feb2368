"""Configuration loading utilities for the sermon preparation service."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


LOGGER = logging.getLogger(__name__)


DEFAULT_BATCH_LIMIT = 500
DEFAULT_WRITE_ATTEMPTS = 3
DEFAULT_SYNC_WORKERS = 8

CONFIG_ENV_VAR = "SERMON_PREP_CONFIG"
HOME_STORAGE_DIRNAME = ".sermon_prep"


def _can_write_to(directory: Path) -> bool:
    """Create *directory* if needed and report whether files can be written there."""

    probe = directory / ".sermon_prep_write_check"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe.write_text("ok", encoding="utf-8")
        probe.unlink()
    except OSError:
        return False
    return True


def _home_storage_root() -> Path:
    return (Path.home() / HOME_STORAGE_DIRNAME / "storage").resolve()


def _resolve_storage(preferred_root: Path, database_file: Path) -> tuple[Path, Path]:
    """Return the storage root and database file to use.

    The document database normally lives under the storage root. When the
    configured root cannot be written, both move under the user's home
    directory; a database configured outside the root stays where it is.
    Bootstrap reports the failure if nothing is writable.
    """

    if _can_write_to(preferred_root):
        return preferred_root, database_file

    fallback_root = _home_storage_root()
    if fallback_root == preferred_root or not _can_write_to(fallback_root):
        LOGGER.warning("Storage directory '%s' is not writable and no fallback is available.", preferred_root)
        return preferred_root, database_file

    LOGGER.warning("Storage directory '%s' is not writable; using '%s'.", preferred_root, fallback_root)
    relative: Optional[Path]
    try:
        relative = database_file.relative_to(preferred_root)
    except ValueError:
        relative = None
    if relative is not None:
        database_file = (fallback_root / relative).resolve()
        LOGGER.warning("Sermon database moved to '%s'.", database_file)
    return fallback_root, database_file


def _positive_int(mapping: Dict[str, Any], key: str, default: int) -> int:
    raw = mapping.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as error:
        raise ValueError(f"Configuration value '{key}' must be an integer (got {raw!r})") from error
    if value < 1:
        raise ValueError(f"Configuration value '{key}' must be at least 1 (got {value})")
    return value


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and limits for the application."""

    storage_root: Path
    database_file: Path
    batch_limit: int = DEFAULT_BATCH_LIMIT
    write_attempts: int = DEFAULT_WRITE_ATTEMPTS
    sync_workers: int = DEFAULT_SYNC_WORKERS

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        storage_root, database_file = _resolve_storage(
            (base_path / mapping["storage_root"]).resolve(),
            (base_path / mapping["database_file"]).resolve(),
        )
        return cls(
            storage_root=storage_root,
            database_file=database_file,
            batch_limit=_positive_int(mapping, "batch_limit", DEFAULT_BATCH_LIMIT),
            write_attempts=_positive_int(mapping, "write_attempts", DEFAULT_WRITE_ATTEMPTS),
            sync_workers=_positive_int(mapping, "sync_workers", DEFAULT_SYNC_WORKERS),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the configuration from ``config/default.json`` by default.

    ``SERMON_PREP_CONFIG`` overrides the default location.
    """

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        override = (os.environ.get(CONFIG_ENV_VAR) or "").strip()
        config_path = Path(override) if override else base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "CONFIG_ENV_VAR", "load_config"]
