from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 1


class CredentialDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS platform_credentials (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL,
                  user_id TEXT,
                  platform TEXT NOT NULL,
                  account_id TEXT NOT NULL,
                  account_name TEXT,
                  access_token TEXT NOT NULL,
                  refresh_token TEXT,
                  scope TEXT,
                  expires_at TEXT,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  error_message TEXT,
                  last_synced_at TEXT,
                  data_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(team_id, platform, account_id)
                );

                CREATE TABLE IF NOT EXISTS oauth_states (
                  state TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  user_id TEXT NOT NULL,
                  team_id TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  expires_at TEXT NOT NULL,
                  PRIMARY KEY (state, platform)
                );

                CREATE TABLE IF NOT EXISTS campaigns (
                  team_id TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  platform_campaign_id TEXT NOT NULL,
                  credential_id TEXT,
                  account_id TEXT,
                  name TEXT,
                  status TEXT,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  budget REAL,
                  meta_json TEXT NOT NULL DEFAULT '{}',
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (team_id, platform, platform_campaign_id),
                  FOREIGN KEY (credential_id) REFERENCES platform_credentials(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS campaign_metrics (
                  team_id TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  platform_campaign_id TEXT NOT NULL,
                  date TEXT NOT NULL,
                  impressions INTEGER,
                  clicks INTEGER,
                  spend REAL,
                  conversions REAL,
                  revenue REAL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (team_id, platform, platform_campaign_id, date)
                );
                """
            )
            self._ensure_indexes(conn)
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def _ensure_indexes(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE INDEX IF NOT EXISTS idx_platform_credentials_due
            ON platform_credentials(is_active, platform, expires_at);

            CREATE INDEX IF NOT EXISTS idx_oauth_states_expires
            ON oauth_states(expires_at);
            """
        )
