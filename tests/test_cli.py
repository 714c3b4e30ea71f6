from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest
from typer.testing import CliRunner

from allad.cli import app
from allad.db import CredentialDB
from allad.models import Credential
from allad.repo import Repo
from allad.util import now_utc, to_utc_iso

runner = CliRunner()


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "allad.sqlite3"
    monkeypatch.setenv("ALLAD_DB_PATH", str(path))
    monkeypatch.setenv("ALLAD_LOG_LEVEL", "WARNING")
    return path


def test_db_init(db_path: Path) -> None:
    res = runner.invoke(app, ["db", "init"])
    assert res.exit_code == 0
    assert "OK db init" in res.output
    assert db_path.exists()


def test_refresh_rejects_unknown_platform(db_path: Path) -> None:
    res = runner.invoke(app, ["refresh", "--platform", "myspace"])
    assert res.exit_code == 2


def test_refresh_with_nothing_due(db_path: Path) -> None:
    res = runner.invoke(app, ["refresh"])
    assert res.exit_code == 0
    body = json.loads(res.output)
    assert body["attempted"] == 0
    assert body["message"] == "Refreshed 0 of 0 credentials (0 failed)"


def test_credentials_lists_team_status(db_path: Path) -> None:
    CredentialDB(db_path).init()
    Repo(db_path).upsert_credential(
        Credential(
            team_id="team_1",
            platform="kakao",
            account_id="k1",
            access_token="secret_at",
            refresh_token="rt",
            expires_at=to_utc_iso(now_utc() + timedelta(minutes=5)),
        )
    )

    res = runner.invoke(app, ["credentials", "--team-id", "team_1"])

    assert res.exit_code == 0
    rows = json.loads(res.output)
    assert [r["account_id"] for r in rows] == ["k1"]
    assert rows[0]["needs_refresh"] is True
    assert "secret_at" not in res.output


def test_sweep_states(db_path: Path) -> None:
    res = runner.invoke(app, ["sweep-states"])
    assert res.exit_code == 0
    assert "swept 0" in res.output
