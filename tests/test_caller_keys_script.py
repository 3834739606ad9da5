from __future__ import annotations

import sys
from pathlib import Path

import pytest

from backend.curator.config import load_settings
from backend.curator.repositories.database import Database
from backend.curator.repositories.quality_score_repository import QualityScoreRepository
from backend.curator.scripts import caller_keys


def _run(monkeypatch: pytest.MonkeyPatch, *args: str) -> None:
    monkeypatch.setattr(sys, "argv", ["caller_keys", *args])
    caller_keys.main()


def test_add_list_invalidate_and_delete(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CURATOR_DATA_DIR", str(tmp_path / "runtime"))
    monkeypatch.setenv("CURATOR_ENCRYPTION_SECRET", "script-secret")

    _run(monkeypatch, "list")
    assert "No caller API keys found." in capsys.readouterr().out

    _run(monkeypatch, "add", "--caller-id", "alice", "--provider", "youtube", "--api-key", "yt")
    added = capsys.readouterr().out
    assert "Stored youtube key" in added
    key_id = added.split()[3]

    _run(monkeypatch, "invalidate", "--key-id", key_id, "--status", "quota_exceeded")
    assert f"Marked caller key {key_id} as quota_exceeded" in capsys.readouterr().out

    _run(monkeypatch, "list", "--caller-id", "alice")
    listed = capsys.readouterr().out
    assert f"{key_id}\talice\tyoutube\tno\tquota_exceeded" in listed
    assert "\tyt\t" not in listed

    _run(monkeypatch, "delete", "--caller-id", "bob", "--key-id", key_id)
    assert "No caller key" in capsys.readouterr().out
    _run(monkeypatch, "delete", "--caller-id", "alice", "--key-id", key_id)
    assert f"Deleted caller key: {key_id}" in capsys.readouterr().out


def test_pool_lists_credential_ids_without_secrets(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("YOUTUBE_API_KEY", "secret-one")
    monkeypatch.setenv("YOUTUBE_API_KEY_1", "secret-two")

    _run(monkeypatch, "pool", "--provider", "youtube")

    output = capsys.readouterr().out
    assert output.startswith("youtube: 2 key(s)")
    assert "youtube_default" in output
    assert "secret" not in output


def test_score_stores_transcript_quality(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CURATOR_DATA_DIR", str(tmp_path / "runtime"))

    _run(monkeypatch, "score", "--video-id", "vid-1", "--tqs", "72.5")
    _run(monkeypatch, "score", "--video-id", "vid-1", "--tqs", "80")

    output = capsys.readouterr().out
    assert "Stored quality score 72.5 for video vid-1" in output
    assert "Stored quality score 80 for video vid-1" in output
    database = Database(load_settings().db_path)
    assert QualityScoreRepository(database).get_quality_score("vid-1") == 80.0


def test_score_rejects_out_of_range_values(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CURATOR_DATA_DIR", str(tmp_path / "runtime"))

    with pytest.raises(ValueError):
        _run(monkeypatch, "score", "--video-id", "vid-1", "--tqs", "101")
