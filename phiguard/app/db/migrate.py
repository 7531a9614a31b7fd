"""
Database migration utilities.

Alembic is the authoritative schema manager. Runtime code talks to SQLite
through plain sqlite3 connections (one per operation); Alembic owns the DDL,
including the append-only triggers on audit_logs.

DB path resolution:
  1. explicit ``db_path`` / ``database_url`` arguments (tests, app factory)
  2. PHIGUARD_DB_PATH env var (SQLite file path)
  3. Default: /tmp/phiguard.db
"""

import logging
import os
import sqlite3
import stat
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def get_db_path() -> Path:
    """
    Get the path to the SQLite database file.

    Returns the path from PHIGUARD_DB_PATH env var, or /tmp/phiguard.db by default.
    """
    db_path_env = os.getenv("PHIGUARD_DB_PATH")
    if db_path_env:
        return Path(db_path_env)

    # Default to /tmp so the DB is never written inside the source tree.
    return Path("/tmp/phiguard.db")


def get_database_url(db_path: Optional[Path] = None) -> str:
    """
    Return the SQLAlchemy database URL for Alembic.

    Priority:
    1. DATABASE_URL environment variable (only when no explicit path is given)
    2. sqlite URL for ``db_path`` or get_db_path()
    """
    if db_path is None:
        database_url = os.getenv("DATABASE_URL")
        if database_url:
            return database_url
        db_path = get_db_path()

    return f"sqlite:///{db_path}"


def ensure_db_permissions_secure(db_path: Path):
    """
    Ensure database file has secure permissions (0600, owner read/write only).

    Raises:
        PermissionError: If unable to set secure permissions
    """
    if not db_path.exists():
        return

    try:
        os.chmod(db_path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError as e:
        raise PermissionError(f"Failed to set secure permissions on database: {e}")


def enable_wal_mode(conn: sqlite3.Connection):
    """Enable Write-Ahead Logging so audit appends do not block readers."""
    conn.execute("PRAGMA journal_mode=WAL")
    conn.commit()


def ensure_schema(db_path: Optional[Path] = None, database_url: Optional[str] = None):
    """
    Bring the database to the latest Alembic revision.

    For SQLite, WAL mode and secure file permissions are applied after
    migrations run.

    Idempotent - safe to call multiple times.
    """
    if database_url is None:
        database_url = get_database_url(db_path)
    if db_path is None and database_url.startswith("sqlite:///"):
        db_path = Path(database_url[len("sqlite:///"):])

    # alembic.ini lives at the repo root: phiguard/app/db/migrate.py -> 3 levels up
    repo_root = Path(__file__).parent.parent.parent.parent
    alembic_ini = repo_root / "alembic.ini"

    from alembic import command as alembic_command
    from alembic.config import Config

    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(repo_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    alembic_cfg.attributes["configure_logger"] = False

    alembic_command.upgrade(alembic_cfg, "head")

    if database_url.startswith("sqlite") and db_path is not None:
        conn = sqlite3.connect(db_path)
        try:
            enable_wal_mode(conn)
        finally:
            conn.close()
        ensure_db_permissions_secure(db_path)

    logger.info("Database schema is at head")


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """
    Get a SQLite database connection with Row factory enabled.

    ``isolation_level=None`` puts the connection in autocommit mode; callers
    that need a transaction open one explicitly (BEGIN IMMEDIATE).
    """
    conn = sqlite3.connect(db_path or get_db_path(), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def check_db_security(db_path: Optional[Path] = None) -> dict:
    """
    Check database security configuration.

    Returns:
        Dictionary with security check results
    """
    db_path = db_path or get_db_path()

    results = {
        "db_exists": db_path.exists(),
        "permissions_secure": False,
        "wal_enabled": False,
    }

    if not db_path.exists():
        return results

    file_stat = os.stat(db_path)
    mode = stat.S_IMODE(file_stat.st_mode)
    results["permissions_secure"] = (mode & (stat.S_IRGRP | stat.S_IROTH)) == 0

    conn = get_connection(db_path)
    try:
        row = conn.execute("PRAGMA journal_mode").fetchone()
        results["wal_enabled"] = row[0].upper() == "WAL"
    finally:
        conn.close()

    return results
