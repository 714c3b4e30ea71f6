from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator

from allad.models import Credential, OAuthState
from allad.util import new_id, now_utc, now_utc_iso, parse_utc_iso, to_utc_iso


logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    STATUS = {
        "DUPLICATE_ENTRY": 409,
        "INVALID_REFERENCE": 400,
        "DATABASE_SCHEMA_ERROR": 500,
        "DATABASE_ERROR": 500,
    }

    def __init__(self, code: str, message: str):
        self.code = code
        self.status_code = self.STATUS.get(code, 500)
        super().__init__(message)


def _classify_sqlite(e: sqlite3.Error) -> StoreError:
    text = str(e)
    if isinstance(e, sqlite3.IntegrityError):
        if "UNIQUE" in text or "PRIMARY KEY" in text:
            return StoreError("DUPLICATE_ENTRY", "A record with this key already exists.")
        return StoreError("INVALID_REFERENCE", "The record references data that does not exist.")
    if isinstance(e, sqlite3.OperationalError) and ("no such column" in text or "no such table" in text):
        return StoreError("DATABASE_SCHEMA_ERROR", "Database schema is out of date. Run `allad db init`.")
    return StoreError("DATABASE_ERROR", "Database operation failed.")


def _iso(raw: str | None) -> str | None:
    dt = parse_utc_iso(raw)
    return to_utc_iso(dt) if dt else None


class Repo:
    """
    Data access for credentials, OAuth states and the local campaign mirror.
    One short-lived sqlite connection per call; sqlite errors leave as StoreError.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        try:
            with self.connect() as conn:
                yield conn
        except sqlite3.Error as e:
            logger.warning("store error: %s", e)
            raise _classify_sqlite(e) from e

    # ------------------------------------------------------------------ #
    # Credentials                                                          #
    # ------------------------------------------------------------------ #

    def get_credentials(
        self,
        team_id: str,
        platform: str | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[Credential]:
        sql = "SELECT * FROM platform_credentials WHERE team_id=?"
        params: list[Any] = [team_id]
        if platform:
            sql += " AND platform=?"
            params.append(platform)
        if not include_inactive:
            sql += " AND is_active=1"
        sql += " ORDER BY platform, account_id"
        with self._tx() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [Credential.from_row(r) for r in rows]

    def get_credential(
        self,
        team_id: str,
        platform: str,
        account_id: str | None = None,
    ) -> Credential | None:
        sql = "SELECT * FROM platform_credentials WHERE team_id=? AND platform=? AND is_active=1"
        params: list[Any] = [team_id, platform]
        if account_id:
            sql += " AND account_id=?"
            params.append(account_id)
        sql += " ORDER BY updated_at DESC LIMIT 1"
        with self._tx() as conn:
            row = conn.execute(sql, params).fetchone()
            return Credential.from_row(row) if row else None

    def get_credential_by_id(self, credential_id: str) -> Credential | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM platform_credentials WHERE id=?",
                (credential_id,),
            ).fetchone()
            return Credential.from_row(row) if row else None

    def upsert_credential(self, credential: Credential) -> Credential:
        """
        Insert or update by (team_id, platform, account_id).
        Re-activates the row and clears its error. A NULL refresh token keeps the stored one.
        """
        now = now_utc_iso()
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO platform_credentials(
                  id, team_id, user_id, platform, account_id, account_name,
                  access_token, refresh_token, scope, expires_at,
                  is_active, error_message, data_json, created_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, NULL, ?, ?, ?)
                ON CONFLICT(team_id, platform, account_id) DO UPDATE SET
                  user_id=COALESCE(excluded.user_id, platform_credentials.user_id),
                  account_name=COALESCE(excluded.account_name, platform_credentials.account_name),
                  access_token=excluded.access_token,
                  refresh_token=COALESCE(excluded.refresh_token, platform_credentials.refresh_token),
                  scope=COALESCE(excluded.scope, platform_credentials.scope),
                  expires_at=excluded.expires_at,
                  is_active=1,
                  error_message=NULL,
                  data_json=excluded.data_json,
                  updated_at=excluded.updated_at
                """,
                (
                    credential.id or new_id("cred"),
                    credential.team_id,
                    credential.user_id,
                    credential.platform,
                    credential.account_id,
                    credential.account_name,
                    credential.access_token,
                    credential.refresh_token,
                    credential.scope,
                    _iso(credential.expires_at),
                    json.dumps(credential.data or {}, ensure_ascii=True),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM platform_credentials WHERE team_id=? AND platform=? AND account_id=?",
                (credential.team_id, credential.platform, credential.account_id),
            ).fetchone()
            return Credential.from_row(row)

    def deactivate_credential(self, credential_id: str, reason: str) -> None:
        now = now_utc_iso()
        with self._tx() as conn:
            conn.execute(
                "UPDATE platform_credentials SET is_active=0, error_message=?, updated_at=? WHERE id=?",
                (f"[{now}] {reason}", now, credential_id),
            )

    def record_credential_error(self, credential_id: str, message: str) -> None:
        now = now_utc_iso()
        with self._tx() as conn:
            conn.execute(
                "UPDATE platform_credentials SET error_message=?, updated_at=? WHERE id=?",
                (f"[{now}] {message}", now, credential_id),
            )

    def set_credential_active(self, credential_id: str, active: bool) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                """
                UPDATE platform_credentials
                SET is_active=?, error_message=CASE WHEN ? THEN NULL ELSE error_message END, updated_at=?
                WHERE id=?
                """,
                (1 if active else 0, 1 if active else 0, now_utc_iso(), credential_id),
            )
            return cur.rowcount > 0

    def delete_credential(self, credential_id: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM platform_credentials WHERE id=?", (credential_id,))
            return cur.rowcount > 0

    def touch_credential_synced(self, credential_id: str) -> None:
        now = now_utc_iso()
        with self._tx() as conn:
            conn.execute(
                "UPDATE platform_credentials SET last_synced_at=?, updated_at=? WHERE id=?",
                (now, now, credential_id),
            )

    def list_credentials_due_for_refresh(
        self,
        *,
        window_minutes: int,
        platforms: Iterable[str],
        team_id: str | None = None,
        platform: str | None = None,
        account_id: str | None = None,
        now: datetime | None = None,
    ) -> list[Credential]:
        allowed = [p for p in platforms if not platform or p == platform]
        if not allowed:
            return []
        threshold = to_utc_iso((now or now_utc()) + timedelta(minutes=window_minutes))
        where = [
            "is_active=1",
            "refresh_token IS NOT NULL",
            "refresh_token != ''",
            "expires_at IS NOT NULL",
            "expires_at < ?",
            f"platform IN ({','.join('?' for _ in allowed)})",
        ]
        params: list[Any] = [threshold, *allowed]
        if team_id:
            where.append("team_id=?")
            params.append(team_id)
        if account_id:
            where.append("account_id=?")
            params.append(account_id)
        sql = f"SELECT * FROM platform_credentials WHERE {' AND '.join(where)} ORDER BY expires_at, id"
        with self._tx() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [Credential.from_row(r) for r in rows]

    def update_credential_tokens(
        self,
        credential_id: str,
        *,
        expected_access_token: str,
        expected_expires_at: str | None,
        access_token: str,
        expires_at: str | None,
        scope: str | None = None,
        refresh_token: str | None = None,
    ) -> bool:
        """
        Swap tokens only if the row still holds the tokens we read.
        Returns False when another writer rotated them first.
        """
        now = now_utc_iso()
        with self._tx() as conn:
            cur = conn.execute(
                """
                UPDATE platform_credentials SET
                  access_token=?,
                  refresh_token=COALESCE(?, refresh_token),
                  expires_at=?,
                  scope=COALESCE(?, scope),
                  error_message=NULL,
                  updated_at=?
                WHERE id=? AND access_token=? AND expires_at IS ?
                """,
                (
                    access_token,
                    refresh_token,
                    _iso(expires_at),
                    scope,
                    now,
                    credential_id,
                    expected_access_token,
                    _iso(expected_expires_at),
                ),
            )
            return cur.rowcount > 0

    def patch_credential_identity(
        self,
        credential_id: str,
        *,
        account_id: str,
        account_name: str | None,
        data: dict[str, Any],
    ) -> Credential | None:
        with self._tx() as conn:
            conn.execute(
                """
                UPDATE platform_credentials
                SET account_id=?, account_name=?, data_json=?, updated_at=?
                WHERE id=?
                """,
                (account_id, account_name, json.dumps(data, ensure_ascii=True), now_utc_iso(), credential_id),
            )
            row = conn.execute("SELECT * FROM platform_credentials WHERE id=?", (credential_id,)).fetchone()
            return Credential.from_row(row) if row else None

    def update_credential_data(self, credential_id: str, data: dict[str, Any]) -> Credential | None:
        """Merge `data` into the stored extras. A None value removes the key."""
        with self._tx() as conn:
            row = conn.execute("SELECT data_json FROM platform_credentials WHERE id=?", (credential_id,)).fetchone()
            if row is None:
                return None
            try:
                current = json.loads(row["data_json"] or "{}")
            except json.JSONDecodeError:
                current = {}
            if not isinstance(current, dict):
                current = {}
            for k, v in data.items():
                if v is None:
                    current.pop(k, None)
                else:
                    current[k] = v
            conn.execute(
                "UPDATE platform_credentials SET data_json=?, updated_at=? WHERE id=?",
                (json.dumps(current, ensure_ascii=True), now_utc_iso(), credential_id),
            )
            row = conn.execute("SELECT * FROM platform_credentials WHERE id=?", (credential_id,)).fetchone()
            return Credential.from_row(row)

    # ------------------------------------------------------------------ #
    # OAuth states                                                         #
    # ------------------------------------------------------------------ #

    def create_oauth_state(
        self,
        *,
        state: str,
        platform: str,
        user_id: str,
        team_id: str,
        ttl_minutes: int,
        now: datetime | None = None,
    ) -> OAuthState:
        created = now or now_utc()
        row = OAuthState(
            state=state,
            platform=platform,
            user_id=user_id,
            team_id=team_id,
            created_at=to_utc_iso(created),
            expires_at=to_utc_iso(created + timedelta(minutes=ttl_minutes)),
        )
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO oauth_states(state, platform, user_id, team_id, created_at, expires_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (row.state, row.platform, row.user_id, row.team_id, row.created_at, row.expires_at),
            )
        return row

    def consume_oauth_state(
        self,
        state: str,
        platform: str,
        *,
        now: datetime | None = None,
    ) -> OAuthState | None:
        """
        Atomically read and delete the (state, platform) row.
        A second call, or a call after expiry, returns None.
        """
        cutoff = to_utc_iso(now or now_utc())
        conn = self.connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM oauth_states WHERE state=? AND platform=?",
                (state, platform),
            ).fetchone()
            if row is not None:
                conn.execute(
                    "DELETE FROM oauth_states WHERE state=? AND platform=?",
                    (state, platform),
                )
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise _classify_sqlite(e) from e
        finally:
            conn.close()

        if row is None:
            return None
        if str(row["expires_at"]) <= cutoff:
            logger.info("expired oauth state for %s discarded", platform)
            return None
        return OAuthState(
            state=row["state"],
            platform=row["platform"],
            user_id=row["user_id"],
            team_id=row["team_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def delete_expired_oauth_states(self, now: datetime | None = None) -> int:
        cutoff = to_utc_iso(now or now_utc())
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM oauth_states WHERE expires_at <= ?", (cutoff,))
            return cur.rowcount

    # ------------------------------------------------------------------ #
    # Campaign mirror                                                      #
    # ------------------------------------------------------------------ #

    def upsert_campaign(
        self,
        *,
        team_id: str,
        platform: str,
        platform_campaign_id: str,
        credential_id: str | None,
        account_id: str | None,
        name: str | None,
        status: str | None,
        is_active: bool,
        budget: float | None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO campaigns(
                  team_id, platform, platform_campaign_id, credential_id, account_id,
                  name, status, is_active, budget, meta_json, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(team_id, platform, platform_campaign_id) DO UPDATE SET
                  credential_id=excluded.credential_id,
                  account_id=excluded.account_id,
                  name=excluded.name,
                  status=excluded.status,
                  is_active=excluded.is_active,
                  budget=COALESCE(excluded.budget, campaigns.budget),
                  meta_json=excluded.meta_json,
                  updated_at=excluded.updated_at
                """,
                (
                    team_id,
                    platform,
                    platform_campaign_id,
                    credential_id,
                    account_id,
                    name,
                    status,
                    1 if is_active else 0,
                    budget,
                    json.dumps(meta or {}, ensure_ascii=True),
                    now_utc_iso(),
                ),
            )

    def get_campaign(self, team_id: str, platform: str, campaign_id: str) -> dict[str, Any] | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM campaigns WHERE team_id=? AND platform=? AND platform_campaign_id=?",
                (team_id, platform, campaign_id),
            ).fetchone()
            return dict(row) if row else None

    def list_campaigns(self, team_id: str, platform: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM campaigns WHERE team_id=?"
        params: list[Any] = [team_id]
        if platform:
            sql += " AND platform=?"
            params.append(platform)
        sql += " ORDER BY platform, name, platform_campaign_id"
        with self._tx() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [dict(r) for r in rows]

    def update_campaign_budget(self, team_id: str, platform: str, campaign_id: str, budget: float) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                """
                UPDATE campaigns SET budget=?, updated_at=?
                WHERE team_id=? AND platform=? AND platform_campaign_id=?
                """,
                (float(budget), now_utc_iso(), team_id, platform, campaign_id),
            )
            return cur.rowcount > 0

    def update_campaign_status(self, team_id: str, platform: str, campaign_id: str, active: bool) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                """
                UPDATE campaigns SET is_active=?, status=?, updated_at=?
                WHERE team_id=? AND platform=? AND platform_campaign_id=?
                """,
                (
                    1 if active else 0,
                    "ACTIVE" if active else "PAUSED",
                    now_utc_iso(),
                    team_id,
                    platform,
                    campaign_id,
                ),
            )
            return cur.rowcount > 0

    def upsert_campaign_metric(
        self,
        *,
        team_id: str,
        platform: str,
        platform_campaign_id: str,
        day: str,
        impressions: int | None,
        clicks: int | None,
        spend: float | None,
        conversions: float | None,
        revenue: float | None,
    ) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO campaign_metrics(
                  team_id, platform, platform_campaign_id, date,
                  impressions, clicks, spend, conversions, revenue, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(team_id, platform, platform_campaign_id, date) DO UPDATE SET
                  impressions=excluded.impressions,
                  clicks=excluded.clicks,
                  spend=excluded.spend,
                  conversions=excluded.conversions,
                  revenue=excluded.revenue,
                  updated_at=excluded.updated_at
                """,
                (
                    team_id,
                    platform,
                    platform_campaign_id,
                    day,
                    impressions,
                    clicks,
                    spend,
                    conversions,
                    revenue,
                    now_utc_iso(),
                ),
            )

    def list_campaign_metrics(
        self,
        team_id: str,
        platform: str,
        campaign_id: str,
        *,
        start: str,
        end: str,
    ) -> list[dict[str, Any]]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT * FROM campaign_metrics
                WHERE team_id=? AND platform=? AND platform_campaign_id=? AND date BETWEEN ? AND ?
                ORDER BY date
                """,
                (team_id, platform, campaign_id, start, end),
            ).fetchall()
            return [dict(r) for r in rows]
