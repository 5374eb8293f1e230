"""Pytest configuration for test isolation.

Every test that touches the database gets its own file-backed SQLite DB
(``db_url``). The engine in ``db.client`` is process-wide, so it is reset
before and after each such test. ``FS_*`` and ``DATABASE_URL`` variables from
the developer's shell are cleared so ``SyncSettings.from_env`` sees defaults.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Make the workspace packages importable without an editable install.
_ROOT = Path(__file__).resolve().parents[1]
for _p in (_ROOT / "libs" / "db" / "src", _ROOT / "packages", _ROOT):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

from db.client import reset_engine  # noqa: E402

from tests.helpers.db import bootstrap_sqlite_db  # noqa: E402

_ENV_VARS = (
    "DATABASE_URL",
    "FS_MAX_RETRIES",
    "FS_RETRY_BASE_DELAY",
    "FS_UPDATE_CATEGORY_ON_RESCRAPE",
    "FS_RECURRING_EXCLUDED_CATEGORIES",
    "FS_REPLAY_DIR",
    "FS_DEFAULT_SYNC_DAYS",
    "FINANCE_SYNC_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    reset_engine()
    url = bootstrap_sqlite_db(tmp_path / "finance_sync.sqlite3")
    monkeypatch.setenv("DATABASE_URL", url)
    yield url
    reset_engine()
