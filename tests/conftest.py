from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sermon_prep.bootstrap import Bootstrapper
from sermon_prep.config import AppConfig
from sermon_prep.services.container import SeriesServices, build_services
from sermon_prep.services.documents import DocumentStore


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",\n
            \"database_file\": \"storage/sermon_prep.db\",\n
            \"batch_limit\": 500\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/sermon_prep.db",
            "batch_limit": 500,
            "write_attempts": 3,
            "sync_workers": 4,
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def store(temp_config: AppConfig) -> DocumentStore:
    return DocumentStore(temp_config)


@pytest.fixture()
def services(temp_config: AppConfig) -> Iterator[SeriesServices]:
    built = build_services(temp_config)
    try:
        yield built
    finally:
        built.close()
