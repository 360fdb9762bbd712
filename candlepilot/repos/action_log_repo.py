"""Action log repository — SQLite record of every emitted action and its delivery status."""

import json
from datetime import datetime, timezone
from typing import Optional

from candlepilot.repos.db import get_connection
from candlepilot.strategy.models import EmittedAction

_MAX_ROWS = 500


class ActionLogRepo:
    """Data access layer for the action log.

    Only the newest ``max_rows`` entries are kept.

    Args:
        db_path: Path to the SQLite database file.
        max_rows: Retention cap.
    """

    def __init__(self, db_path: str, max_rows: int = _MAX_ROWS) -> None:
        self._db_path = db_path
        self._max_rows = max_rows

    # ── Write ────────────────────────────────────────────────────────────

    def insert_action(
        self,
        strategy_id: str,
        action: EmittedAction,
        status: str,
        error: Optional[str] = None,
    ) -> int:
        """Record *action* with its delivery *status* and return the row id."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO actions
                    (strategy_id, strategy_name, kind, status,
                     payload_json, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    strategy_id,
                    action.strategy_name,
                    "Manual" if action.is_manual else "Strategy",
                    status,
                    json.dumps(action.to_payload()),
                    error,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.execute(
                """
                DELETE FROM actions WHERE id NOT IN
                    (SELECT id FROM actions ORDER BY id DESC LIMIT ?)
                """,
                (self._max_rows,),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_actions(
        self,
        limit: int = 50,
        strategy_id: Optional[str] = None,
    ) -> dict:
        """Return recent actions, newest first.

        Returns:
            ``{"actions": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            where_clause = ""
            params: list = []
            if strategy_id:
                where_clause = "WHERE strategy_id = ?"
                params.append(strategy_id)

            rows = conn.execute(
                f"SELECT * FROM actions {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM actions {where_clause}",
                params,
            ).fetchone()[0]

            actions = []
            for row in rows:
                entry = dict(row)
                entry["payload"] = json.loads(entry.pop("payload_json"))
                actions.append(entry)
            return {"actions": actions, "total": total}
        finally:
            conn.close()
