"""Shared fixtures: a connected AccessStore on a temp DuckDB file."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from streamgate.storage import AccessStore


@pytest.fixture()
def tmp_db_path(tmp_path: Path) -> Path:
    """Provide a temporary DuckDB path."""
    return tmp_path / "test_access.db"


@pytest.fixture()
def store(tmp_db_path: Path) -> Iterator[AccessStore]:
    """Provide a connected AccessStore on a temp DB."""
    access_store = AccessStore(tmp_db_path)
    access_store.connect()
    yield access_store
    access_store.close()
