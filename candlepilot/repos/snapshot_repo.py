"""Snapshot repository — SQLite persistence of {config, position, stats} per strategy."""

import json
from datetime import datetime, timezone
from typing import Optional

from candlepilot.repos.db import get_connection


class SnapshotRepo:
    """Data access layer for strategy snapshots.

    A snapshot is the JSON-compatible dict produced by
    ``StrategyEngine.snapshot()``::

        {"config": {...}, "position": {...}, "stats": {...}}

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def save(self, strategy_id: str, snapshot: dict) -> None:
        """Insert or replace the snapshot of *strategy_id*."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO strategy_snapshots
                    (strategy_id, config_json, position_json, stats_json, saved_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(strategy_id) DO UPDATE SET
                    config_json = excluded.config_json,
                    position_json = excluded.position_json,
                    stats_json = excluded.stats_json,
                    saved_at = excluded.saved_at
                """,
                (
                    strategy_id,
                    json.dumps(snapshot["config"]),
                    json.dumps(snapshot["position"]),
                    json.dumps(snapshot["stats"]),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, strategy_id: str) -> None:
        """Remove the snapshot of *strategy_id* (no-op if absent)."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                "DELETE FROM strategy_snapshots WHERE strategy_id = ?",
                (strategy_id,),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def load(self, strategy_id: str) -> Optional[dict]:
        """Return the snapshot of *strategy_id*, or ``None`` when absent."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM strategy_snapshots WHERE strategy_id = ?",
                (strategy_id,),
            ).fetchone()
            return _row_to_snapshot(row) if row else None
        finally:
            conn.close()

    def load_all(self) -> list[dict]:
        """Return every stored snapshot, oldest save first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM strategy_snapshots ORDER BY saved_at"
            ).fetchall()
            return [_row_to_snapshot(row) for row in rows]
        finally:
            conn.close()


def _row_to_snapshot(row) -> dict:
    return {
        "config": json.loads(row["config_json"]),
        "position": json.loads(row["position_json"]),
        "stats": json.loads(row["stats_json"]),
    }
