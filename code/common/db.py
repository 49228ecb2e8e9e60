# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import sqlite3, threading
from datetime import datetime, timezone
from typing import List, Optional


class DBManager:
    def __init__(self, db_path: str):
        self.path = db_path
        if db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(parent, exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode = DELETE;")
        self.conn.execute("PRAGMA synchronous = FULL;")
        self.conn.execute("PRAGMA busy_timeout = 5000;")
        self.lock = threading.RLock()
        self._init_schema()

    def _init_schema(self):
        """
        Creates the settings, blacklist and attack log tables and migrates
        attack logs written before fights were tagged with their kind.
        """
        c = self.conn.cursor()

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS app_config(
        key           TEXT PRIMARY KEY,
        value         TEXT NOT NULL DEFAULT '',
        last_updated  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS scrapbook_settings (
        server_id       TEXT    NOT NULL,
        character_name  TEXT    NOT NULL,
        max_level       INTEGER NOT NULL DEFAULT 9999,
        max_attributes  INTEGER NOT NULL DEFAULT 0,
        underworld_max_level INTEGER NOT NULL DEFAULT 9999,
        last_updated    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY(server_id, character_name)
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS blacklist (
        server_id       TEXT    NOT NULL,
        character_name  TEXT    NOT NULL,
        target_id       INTEGER NOT NULL,
        target_name     TEXT    NOT NULL,
        losses          INTEGER NOT NULL DEFAULT 0,
        last_updated    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY(server_id, character_name, target_id)
        );
        """
        )

        self._ensure_table(
            name="attack_log",
            create_sql_template="""
                CREATE TABLE {table} (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                server_id       TEXT    NOT NULL,
                character_name  TEXT    NOT NULL,
                kind            TEXT    NOT NULL DEFAULT 'arena'
                                CHECK(kind IN ('arena','underworld')),
                target_name     TEXT    NOT NULL,
                won             INTEGER NOT NULL,
                fought_at       TIMESTAMP NOT NULL
                );
            """,
            required_columns={
                "id",
                "server_id",
                "character_name",
                "kind",
                "target_name",
                "won",
                "fought_at",
            },
            # Logs from before underworld support were all arena fights
            copy_map={
                "id": "id",
                "server_id": "server_id",
                "character_name": "character_name",
                "kind": "'arena'",
                "target_name": "target_name",
                "won": "won",
                "fought_at": "fought_at",
            },
            post_sql=[
                "CREATE INDEX IF NOT EXISTS idx_attack_log_char ON attack_log(server_id, character_name, kind);",
            ],
        )

        self.conn.commit()

    def _table_exists(self, name: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
            (name,),
        ).fetchone()
        return row is not None

    def _table_columns(self, name: str) -> set[str]:
        return {
            r[1] for r in self.conn.execute(f"PRAGMA table_info({name})").fetchall()
        }

    def _ensure_table(
        self,
        *,
        name: str,
        create_sql_template: str,
        required_columns: set[str],
        copy_map: dict[str, str],
        post_sql: list[str] | None = None,
    ):
        """
        Create or rebuild table `name` to match the target schema.

        - If table missing -> CREATE and run post_sql.
        - If table exists and has all required columns -> run post_sql and return.
        - Else rebuild inside a transaction, copying rows through `copy_map`.
        """
        post_sql = post_sql or []

        if not self._table_exists(name):
            self.conn.execute(create_sql_template.format(table=name))
            for stmt in post_sql:
                self.conn.execute(stmt)
            return

        existing_cols = self._table_columns(name)
        if required_columns.issubset(existing_cols):
            for stmt in post_sql:
                self.conn.execute(stmt)
            return

        temp = f"_{name}_new"
        self.conn.commit()
        try:
            self.conn.execute("BEGIN;")
            self.conn.execute(create_sql_template.format(table=temp))

            new_cols = list(copy_map.keys())
            select_exprs = []
            for new_col in new_cols:
                expr = copy_map[new_col].strip()
                # Bare identifiers missing from the legacy table become NULL
                if expr.isidentifier() and expr not in existing_cols:
                    expr = "NULL"
                select_exprs.append(expr)

            self.conn.execute(
                f"INSERT OR IGNORE INTO {temp} ({', '.join(new_cols)}) "
                f"SELECT {', '.join(select_exprs)} FROM {name}"
            )
            self.conn.execute(f"DROP TABLE {name};")
            self.conn.execute(f"ALTER TABLE {temp} RENAME TO {name};")
            for stmt in post_sql:
                self.conn.execute(stmt)
            self.conn.execute("COMMIT;")
        except Exception:
            self.conn.execute("ROLLBACK;")
            raise

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def set_config(self, key: str, value: str) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT INTO app_config(key,value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )

    def get_config(self, key: str, default: str = "") -> str:
        row = self.conn.execute(
            "SELECT value FROM app_config WHERE key=?", (key,)
        ).fetchone()
        return row["value"] if row else default

    def get_scrapbook_settings(
        self, server_id: str, character_name: str
    ) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM scrapbook_settings WHERE server_id=? AND character_name=?",
            (server_id, character_name),
        ).fetchone()

    def upsert_scrapbook_settings(
        self,
        server_id: str,
        character_name: str,
        *,
        max_level: int,
        max_attributes: int,
        underworld_max_level: int,
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO scrapbook_settings
                    (server_id, character_name, max_level, max_attributes, underworld_max_level)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(server_id, character_name) DO UPDATE SET
                    max_level = excluded.max_level,
                    max_attributes = excluded.max_attributes,
                    underworld_max_level = excluded.underworld_max_level,
                    last_updated = CURRENT_TIMESTAMP
                """,
                (server_id, character_name, max_level, max_attributes, underworld_max_level),
            )

    def get_blacklist(
        self, server_id: str, character_name: str
    ) -> dict[int, tuple[str, int]]:
        rows = self.conn.execute(
            "SELECT target_id, target_name, losses FROM blacklist "
            "WHERE server_id=? AND character_name=?",
            (server_id, character_name),
        ).fetchall()
        return {int(r["target_id"]): (r["target_name"], int(r["losses"])) for r in rows}

    def add_loss(
        self, server_id: str, character_name: str, target_id: int, target_name: str
    ) -> int:
        """
        Increments the loss counter for a target and returns the new count.
        """
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO blacklist (server_id, character_name, target_id, target_name, losses)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(server_id, character_name, target_id) DO UPDATE SET
                    losses = losses + 1,
                    target_name = excluded.target_name,
                    last_updated = CURRENT_TIMESTAMP
                """,
                (server_id, character_name, target_id, target_name),
            )
            row = self.conn.execute(
                "SELECT losses FROM blacklist WHERE server_id=? AND character_name=? AND target_id=?",
                (server_id, character_name, target_id),
            ).fetchone()
        return int(row["losses"]) if row else 0

    def clear_blacklist(self, server_id: str, character_name: str) -> int:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "DELETE FROM blacklist WHERE server_id=? AND character_name=?",
                (server_id, character_name),
            )
        return cur.rowcount

    def add_attack_log(
        self,
        server_id: str,
        character_name: str,
        *,
        kind: str,
        target_name: str,
        won: bool,
        fought_at: Optional[datetime] = None,
    ) -> None:
        when = fought_at or datetime.now(timezone.utc)
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO attack_log (server_id, character_name, kind, target_name, won, fought_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (server_id, character_name, kind, target_name, int(bool(won)), when.isoformat()),
            )

    def get_attack_log(
        self, server_id: str, character_name: str, kind: str, limit: int = 200
    ) -> List[sqlite3.Row]:
        """
        Returns the newest `limit` fights, oldest first.
        """
        rows = self.conn.execute(
            """
            SELECT target_name, won, fought_at FROM attack_log
            WHERE server_id=? AND character_name=? AND kind=?
            ORDER BY id DESC LIMIT ?
            """,
            (server_id, character_name, kind, limit),
        ).fetchall()
        return list(reversed(rows))
