from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.curator.dependencies import reset_cached_dependencies
from backend.curator.main import create_app
from backend.curator.repositories.caller_key_repository import CallerKeyRepository
from backend.curator.repositories.database import Database
from backend.curator.repositories.secret_cipher import SecretCipher
from backend.curator.services.key_pool import PROVIDER_ENV_NAMES

PRIVILEGED_CALLER = "owner"
ENCRYPTION_SECRET = "test-encryption-secret"


@pytest.fixture(autouse=True)
def _isolated_pool_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    for env_names in PROVIDER_ENV_NAMES.values():
        for env_name in env_names:
            monkeypatch.delenv(env_name, raising=False)
            for index in range(1, 6):
                monkeypatch.delenv(f"{env_name}_{index}", raising=False)
    monkeypatch.delenv("CURATOR_PRIVILEGED_CALLERS", raising=False)
    monkeypatch.delenv("CURATOR_ENCRYPTION_SECRET", raising=False)


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def caller_keys(database: Database) -> CallerKeyRepository:
    return CallerKeyRepository(database, cipher=SecretCipher(ENCRYPTION_SECRET, iterations=1_000))


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("CURATOR_DATA_DIR", str(data_dir))
    monkeypatch.setenv("CURATOR_PRIVILEGED_CALLERS", PRIVILEGED_CALLER)
    monkeypatch.setenv("CURATOR_ENCRYPTION_SECRET", ENCRYPTION_SECRET)
    monkeypatch.setenv("CURATOR_DETAIL_BATCH_DELAY_SECONDS", "0")
    monkeypatch.setenv("YOUTUBE_API_KEY", "pool-youtube-key")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "pool-claude-key")
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    reset_cached_dependencies()
