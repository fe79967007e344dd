from __future__ import annotations

import pytest

from seoflow.storage import init_db


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.delenv("SF_DB_URL", raising=False)
    monkeypatch.delenv("SF_ADMIN_TOKEN", raising=False)
    monkeypatch.setenv("SF_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SF_CONFIG_PATH", str(tmp_path / "missing-config.yml"))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()
