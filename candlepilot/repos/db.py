"""Database initialization and connection management.

Applies the numbered SQL scripts in ``db/migrations`` on boot and provides
the connection factory used by the repositories.
"""

import pathlib
import sqlite3


_MIGRATION_DIR = pathlib.Path(__file__).resolve().parent.parent.parent / "db" / "migrations"


def _migrations() -> list[tuple[int, pathlib.Path]]:
    """Return ``(version, path)`` for every ``NNN_name.sql`` script, in order."""
    scripts = []
    for path in _MIGRATION_DIR.glob("*.sql"):
        prefix = path.name.split("_", 1)[0]
        if prefix.isdigit():
            scripts.append((int(prefix), path))
    return sorted(scripts)


def init_db(db_path: str) -> None:
    """Bring the database schema up to date.

    Each migration whose number is above the database's ``user_version``
    is executed once, then ``user_version`` is bumped to it.  The parent
    directory of *db_path* is created when needed.

    Args:
        db_path: Path to the SQLite database file (or ``":memory:"``).
    """
    if db_path != ":memory:":
        pathlib.Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        applied = conn.execute("PRAGMA user_version").fetchone()[0]
        for version, migration_file in _migrations():
            if version <= applied:
                continue
            conn.executescript(migration_file.read_text(encoding="utf-8"))
            conn.execute(f"PRAGMA user_version = {version:d}")
            conn.commit()
    finally:
        conn.close()


def get_connection(db_path: str) -> sqlite3.Connection:
    """Return a new SQLite connection with row-factory enabled.

    Callers are responsible for closing the connection.
    """
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn
