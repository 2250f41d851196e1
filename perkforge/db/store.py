from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from perkforge.db.schema import init_db

log = logging.getLogger(__name__)


class Store:
    def __init__(self, db_path: str) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.lock = threading.RLock()
        self.conn.row_factory = sqlite3.Row
        init_db(self.conn)

    @contextmanager
    def tx(self) -> Iterator[sqlite3.Connection]:
        with self.lock:
            log.debug("transaction_start")
            try:
                yield self.conn
                self.conn.commit()
                log.debug("transaction_commit")
            except Exception:
                self.conn.rollback()
                log.exception("transaction_rollback")
                raise

    def _rows(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(sql, params).fetchall()

    def _row(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        rows = self._rows(sql, params)
        return rows[0] if rows else None

    def write_event(self, actor_id: str, event_type: str, payload: dict[str, Any]) -> None:
        log.info("event_write actor=%s type=%s", actor_id, event_type)
        with self.tx() as conn:
            conn.execute(
                "INSERT INTO events(actor_id, event_type, payload_json) VALUES (?, ?, ?)",
                (actor_id, event_type, json.dumps(payload, sort_keys=True)),
            )

    def get_recent_events(self, actor_id: str, limit: int = 6) -> list[dict[str, Any]]:
        rows = self._rows(
            """
            SELECT event_type, payload_json, ts
            FROM events
            WHERE actor_id = ?
            ORDER BY event_id DESC
            LIMIT ?
            """,
            (actor_id, limit),
        )
        items: list[dict[str, Any]] = []
        for row in reversed(rows):
            try:
                payload = json.loads(row["payload_json"])
            except json.JSONDecodeError:
                payload = {}
            items.append(
                {
                    "event_type": row["event_type"],
                    "payload": payload,
                    "ts": row["ts"],
                }
            )
        return items

    def get_document(self, state_key: str) -> dict[str, Any] | None:
        row = self._row("SELECT document_json FROM state_documents WHERE state_key = ?", (state_key,))
        if row is None:
            return None
        try:
            data = json.loads(row["document_json"])
        except json.JSONDecodeError:
            log.warning("state_document_corrupt key=%s", state_key)
            return None
        return data if isinstance(data, dict) else None

    def put_document(self, state_key: str, document: dict[str, Any]) -> None:
        with self.tx() as conn:
            conn.execute(
                """
                INSERT INTO state_documents(state_key, document_json, updated_ts)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(state_key) DO UPDATE SET
                    document_json = excluded.document_json,
                    updated_ts = CURRENT_TIMESTAMP
                """,
                (state_key, json.dumps(document, sort_keys=True)),
            )

    def has_document(self, state_key: str) -> bool:
        row = self._row("SELECT 1 FROM state_documents WHERE state_key = ?", (state_key,))
        return row is not None

    def list_document_keys(self, prefix: str) -> list[str]:
        rows = self._rows(
            "SELECT state_key FROM state_documents WHERE state_key LIKE ? ORDER BY state_key",
            (f"{prefix}%",),
        )
        return [row["state_key"] for row in rows]

    def get_session_value(self, scope: str, key: str) -> Any:
        row = self._row("SELECT value_json FROM session_values WHERE scope = ? AND key = ?", (scope, key))
        if row is None:
            return None
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError:
            return None

    def set_session_value(self, scope: str, key: str, value: Any) -> None:
        with self.tx() as conn:
            conn.execute(
                """
                INSERT INTO session_values(scope, key, value_json, updated_ts)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(scope, key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_ts = CURRENT_TIMESTAMP
                """,
                (scope, key, json.dumps(value, sort_keys=True)),
            )

    def delete_session_value(self, scope: str, key: str) -> None:
        with self.tx() as conn:
            conn.execute("DELETE FROM session_values WHERE scope = ? AND key = ?", (scope, key))

    def get_meta(self, key: str) -> Any:
        row = self._row("SELECT value_json FROM meta WHERE key = ?", (key,))
        if row is None:
            return None
        return json.loads(row["value_json"])

    def set_meta(self, key: str, value: Any) -> None:
        with self.tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value_json) VALUES (?, ?)",
                (key, json.dumps(value, sort_keys=True)),
            )

    def try_consume_llm_call(
        self,
        day: str,
        user_id: str,
        max_calls_per_day: int,
        max_calls_per_user_per_day: int,
    ) -> tuple[bool, str | None]:
        with self.tx() as conn:
            global_calls = conn.execute(
                "SELECT COALESCE(SUM(calls), 0) AS total FROM llm_usage WHERE day = ?",
                (day,),
            ).fetchone()["total"]
            if global_calls >= max_calls_per_day:
                return False, "global_limit"

            row = conn.execute(
                "SELECT calls FROM llm_usage WHERE day = ? AND user_id = ?",
                (day, user_id),
            ).fetchone()
            user_calls = row["calls"] if row else 0
            if user_calls >= max_calls_per_user_per_day:
                return False, "user_limit"

            conn.execute(
                """
                INSERT INTO llm_usage(day, user_id, calls)
                VALUES (?, ?, 1)
                ON CONFLICT(day, user_id) DO UPDATE SET calls = calls + 1
                """,
                (day, user_id),
            )
            return True, None
