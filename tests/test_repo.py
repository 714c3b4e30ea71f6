from __future__ import annotations

import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest

from allad.db import SCHEMA_VERSION, CredentialDB
from allad.models import Credential, NaverData
from allad.platforms import REFRESHABLE_PLATFORMS
from allad.repo import Repo, StoreError
from allad.util import now_utc, to_utc_iso


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "allad.sqlite3"
    CredentialDB(db_path).init()
    return Repo(db_path)


def _cred(**kw) -> Credential:
    base = dict(
        team_id="team_1",
        user_id="user_1",
        platform="google",
        account_id="123",
        account_name="Acme",
        access_token="at_1",
        refresh_token="rt_1",
        expires_at=to_utc_iso(now_utc() + timedelta(hours=1)),
    )
    base.update(kw)
    return Credential(**base)


# ------------------------------------------------------------------ #
# Schema                                                               #
# ------------------------------------------------------------------ #


def test_init_is_idempotent_and_versioned(tmp_path: Path) -> None:
    db_path = tmp_path / "allad.sqlite3"
    CredentialDB(db_path).init()
    CredentialDB(db_path).init()
    conn = sqlite3.connect(db_path)
    try:
        (version,) = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
    finally:
        conn.close()
    assert int(version) == SCHEMA_VERSION


# ------------------------------------------------------------------ #
# Credentials                                                          #
# ------------------------------------------------------------------ #


def test_upsert_is_keyed_on_team_platform_account(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    first = repo.upsert_credential(_cred())
    second = repo.upsert_credential(_cred(access_token="at_2", account_name="Acme 2"))

    rows = repo.get_credentials("team_1", include_inactive=True)
    assert len(rows) == 1
    assert first.id == second.id
    assert second.access_token == "at_2"
    assert second.account_name == "Acme 2"


def test_upsert_without_refresh_token_keeps_stored_one(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.upsert_credential(_cred(refresh_token="rt_keep"))
    saved = repo.upsert_credential(_cred(access_token="at_new", refresh_token=None))
    assert saved.refresh_token == "rt_keep"
    assert saved.access_token == "at_new"


def test_upsert_reactivates_and_clears_error(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    saved = repo.upsert_credential(_cred())
    repo.deactivate_credential(str(saved.id), "revoked")

    inactive = repo.get_credential_by_id(str(saved.id))
    assert inactive is not None
    assert inactive.is_active is False
    assert inactive.error_message and inactive.error_message.endswith("revoked")
    assert repo.get_credential("team_1", "google") is None

    again = repo.upsert_credential(_cred(access_token="at_2"))
    assert again.is_active is True
    assert again.error_message is None


def test_same_account_in_two_teams_are_separate(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.upsert_credential(_cred(team_id="team_1"))
    repo.upsert_credential(_cred(team_id="team_2"))
    assert len(repo.get_credentials("team_1")) == 1
    assert len(repo.get_credentials("team_2")) == 1


def test_typed_extras_and_secret_free_public_view(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    saved = repo.upsert_credential(
        _cred(platform="naver", account_id="n1", data={"customer_id": "999", "api_key": "k", "secret_key": "s"})
    )
    assert saved.extras == NaverData(customer_id="999", api_key="k", secret_key="s")

    public = saved.public_dict()
    assert "access_token" not in public
    assert "refresh_token" not in public
    assert public["settings"] == {"customer_id": "999"}

    merged = repo.update_credential_data(str(saved.id), {"customer_id": "1000", "api_key": None})
    assert merged is not None
    assert merged.data == {"customer_id": "1000", "secret_key": "s"}


def test_patch_identity_conflict_is_duplicate_entry(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.upsert_credential(_cred(account_id="cust_1"))
    other = repo.upsert_credential(_cred(account_id="user_xyz"))
    with pytest.raises(StoreError) as ei:
        repo.patch_credential_identity(str(other.id), account_id="cust_1", account_name=None, data={})
    assert ei.value.code == "DUPLICATE_ENTRY"
    assert ei.value.status_code == 409


def test_due_filter(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    now = now_utc()
    soon = repo.upsert_credential(_cred(account_id="soon", expires_at=to_utc_iso(now + timedelta(minutes=10))))
    repo.upsert_credential(_cred(account_id="later", expires_at=to_utc_iso(now + timedelta(hours=2))))
    repo.upsert_credential(
        _cred(account_id="no_rt", refresh_token=None, expires_at=to_utc_iso(now + timedelta(minutes=5)))
    )
    repo.upsert_credential(_cred(account_id="no_exp", expires_at=None))
    gone = repo.upsert_credential(_cred(account_id="gone", expires_at=to_utc_iso(now - timedelta(minutes=1))))
    repo.deactivate_credential(str(gone.id), "revoked")
    repo.upsert_credential(
        _cred(platform="naver", account_id="nv", expires_at=to_utc_iso(now + timedelta(minutes=1)))
    )

    due = repo.list_credentials_due_for_refresh(window_minutes=30, platforms=REFRESHABLE_PLATFORMS, now=now)
    assert [c.id for c in due] == [soon.id]


def test_conditional_token_update_loses_race(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    saved = repo.upsert_credential(_cred())

    won = repo.update_credential_tokens(
        str(saved.id),
        expected_access_token="at_1",
        expected_expires_at=saved.expires_at,
        access_token="at_2",
        expires_at=to_utc_iso(now_utc() + timedelta(hours=1)),
    )
    lost = repo.update_credential_tokens(
        str(saved.id),
        expected_access_token="at_1",
        expected_expires_at=saved.expires_at,
        access_token="at_3",
        expires_at=to_utc_iso(now_utc() + timedelta(hours=1)),
    )
    assert won is True
    assert lost is False
    cur = repo.get_credential_by_id(str(saved.id))
    assert cur is not None
    assert cur.access_token == "at_2"
    assert cur.refresh_token == "rt_1"


# ------------------------------------------------------------------ #
# OAuth states                                                         #
# ------------------------------------------------------------------ #


def test_state_is_single_use(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.create_oauth_state(state="s1", platform="google", user_id="u", team_id="t", ttl_minutes=10)

    row = repo.consume_oauth_state("s1", "google")
    assert row is not None
    assert row.team_id == "t"
    assert repo.consume_oauth_state("s1", "google") is None


def test_state_is_bound_to_platform(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.create_oauth_state(state="s1", platform="google", user_id="u", team_id="t", ttl_minutes=10)
    assert repo.consume_oauth_state("s1", "kakao") is None
    assert repo.consume_oauth_state("s1", "google") is not None


def test_expired_state_fails_closed_and_is_swept(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    past = now_utc() - timedelta(minutes=30)
    repo.create_oauth_state(state="old", platform="google", user_id="u", team_id="t", ttl_minutes=10, now=past)
    repo.create_oauth_state(state="old2", platform="kakao", user_id="u", team_id="t", ttl_minutes=10, now=past)
    repo.create_oauth_state(state="fresh", platform="google", user_id="u", team_id="t", ttl_minutes=10)

    assert repo.consume_oauth_state("old", "google") is None
    assert repo.delete_expired_oauth_states() == 1
    assert repo.consume_oauth_state("fresh", "google") is not None


# ------------------------------------------------------------------ #
# Campaign mirror                                                      #
# ------------------------------------------------------------------ #


def test_campaign_budget_and_status(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    repo.upsert_campaign(
        team_id="team_1",
        platform="google",
        platform_campaign_id="c1",
        credential_id=None,
        account_id="123",
        name="Brand",
        status="ACTIVE",
        is_active=True,
        budget=10.0,
    )
    assert repo.update_campaign_budget("team_1", "google", "c1", 25.5) is True
    assert repo.update_campaign_status("team_1", "google", "c1", False) is True
    assert repo.update_campaign_budget("team_1", "google", "missing", 1.0) is False

    row = repo.get_campaign("team_1", "google", "c1")
    assert row is not None
    assert row["budget"] == 25.5
    assert row["status"] == "PAUSED"
    assert not row["is_active"]
