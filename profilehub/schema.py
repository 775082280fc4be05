"""
Centralized SQLite Schema Initialization.

Defines the canonical schema for the ProfileHub local database and the
single entry-point, :func:`initialize_schema`, that creates or upgrades it
idempotently.  A ``schema_version`` table tracks applied migrations.

Versions
~~~~~~~~
1. Legacy layout: accounts with profiles embedded in ``preferences`` and
   scoped resources referencing the account through ``user_id`` only.
2. Normalized profiles: ``student_profiles`` table, the
   ``profile_storage_version`` marker on accounts, a nullable
   ``student_profile_id`` on every scoped resource table and the
   ``profile_ref_constraints`` ledger.
3. Lookup indexes, including the partial unique index on active
   profile names.

Fresh databases are created directly at :data:`CURRENT_SCHEMA_VERSION`.
Existing databases run the registered migrations for the versions they
are missing.  The whole upgrade is one transaction.

The NOT NULL / FOREIGN KEY tightening of ``student_profile_id`` depends on
the data and is therefore not a schema migration: ``ProfileMigrationService``
performs it through :func:`rebuild_resource_table` once the backfill is
complete.

Usage::

    from profilehub.schema import initialize_schema

    initialize_schema(db.sqlite, StructuredLogger(name="profilehub.schema"))
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from profilehub.logger import StructuredLogger

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "RESOURCE_TABLES",
    "column_is_not_null",
    "initialize_schema",
    "rebuild_resource_table",
    "resource_table_ddl",
]

# ---------------------------------------------------------------------------
# Schema version -- bump this whenever a migration is added.
# ---------------------------------------------------------------------------
CURRENT_SCHEMA_VERSION: int = 3

RESOURCE_TABLES: tuple[str, ...] = (
    "documents",
    "document_regions",
    "document_texts",
    "text_assignments",
    "tts_requests",
    "notifications",
    "folders",
)

_RESOURCE_COLUMNS: str = "id, user_id, student_profile_id, payload, created_at, updated_at"

_ALLOWED_TABLES: frozenset[str] = frozenset({
    "schema_version",
    "sync_queue",
    "audit_log",
    "app_settings",
    "accounts",
    "student_profiles",
    "profile_ref_constraints",
    *RESOURCE_TABLES,
})
"""Tables that may appear in dynamically built SQL (PRAGMA, rebuilds)."""


def _check_table(table: str) -> None:
    if table not in _ALLOWED_TABLES:
        raise ValueError(
            f"Invalid table name: {table!r}. "
            f"Allowed tables: {sorted(_ALLOWED_TABLES)}"
        )


def resource_table_ddl(table: str, *, suffix: str = "", tightened: bool = False) -> str:
    """Return the ``CREATE TABLE`` statement for a scoped resource table.

    With ``tightened=True`` the profile reference is ``NOT NULL`` with a
    cascading foreign key to ``student_profiles``.
    """
    if table not in RESOURCE_TABLES:
        raise ValueError(f"Not a scoped resource table: {table!r}")
    if tightened:
        profile_ref = (
            "student_profile_id TEXT NOT NULL "
            "REFERENCES student_profiles(id) ON DELETE CASCADE"
        )
    else:
        profile_ref = "student_profile_id TEXT"
    return f"""
    CREATE TABLE IF NOT EXISTS {table}{suffix} (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        {profile_ref},
        payload TEXT NOT NULL DEFAULT '{{}}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """


# ---------------------------------------------------------------------------
# DDL statements for every table in the local database.
# ---------------------------------------------------------------------------
_STUDENT_PROFILES_DDL: str = """
    CREATE TABLE IF NOT EXISTS student_profiles (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        profile_name TEXT NOT NULL CHECK (length(trim(profile_name)) > 0),
        profile_color TEXT NOT NULL DEFAULT '#3b82f6',
        preferences TEXT NOT NULL DEFAULT '{}',
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        last_accessed_at TIMESTAMP,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """

_PROFILE_REF_CONSTRAINTS_DDL: str = """
    CREATE TABLE IF NOT EXISTS profile_ref_constraints (
        table_name TEXT PRIMARY KEY,
        tightened_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """

_TABLE_DEFINITIONS: list[str] = [
    # -- single-row version tracker -------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- outbound sync buffer --------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS sync_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name TEXT NOT NULL,
        operation TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        attempted_at TIMESTAMP,
        error_message TEXT
    )
    """,
    # -- persistent structured audit trail ------------------------------------
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        details TEXT DEFAULT '{}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- per-installation key-value settings ----------------------------------
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- accounts (mirrors Supabase accounts table) ---------------------------
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL DEFAULT '',
        full_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user'
             CHECK (role IN ('user', 'admin', 'student')),
        credits_remaining INTEGER NOT NULL DEFAULT 0,
        onboarding_completed INTEGER NOT NULL DEFAULT 0,
        preferences TEXT NOT NULL DEFAULT '{}',
        profile_storage_version INTEGER NOT NULL DEFAULT 2,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    _STUDENT_PROFILES_DDL,
    _PROFILE_REF_CONSTRAINTS_DDL,
    *(resource_table_ddl(table) for table in RESOURCE_TABLES),
]

_INDEX_STATEMENTS: list[str] = [
    "CREATE INDEX IF NOT EXISTS idx_student_profiles_account ON student_profiles(account_id, is_active)",
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_student_profiles_active_name "
        "ON student_profiles(account_id, lower(profile_name)) WHERE is_active = 1"
    ),
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status)",
    *(
        f"CREATE INDEX IF NOT EXISTS idx_{table}_profile ON {table}(student_profile_id)"
        for table in RESOURCE_TABLES
    ),
    *(
        f"CREATE INDEX IF NOT EXISTS idx_{table}_user ON {table}(user_id)"
        for table in RESOURCE_TABLES
    ),
]


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_version`` table if it does not yet exist."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            version INTEGER NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.commit()


def _get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the stored schema version, or ``0`` for a fresh database."""
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return row[0] if row is not None else 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Upsert the version tracker.  Does not commit."""
    conn.execute(
        """
        INSERT INTO schema_version (id, version) VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET version = excluded.version,
                                      applied_at = CURRENT_TIMESTAMP
        """,
        (version,),
    )


def _create_all_tables(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create every table and index for a fresh database.  Does not commit."""
    for ddl in _TABLE_DEFINITIONS:
        conn.execute(ddl)
    for stmt in _INDEX_STATEMENTS:
        conn.execute(stmt)
    logger.info("All %d tables created or verified.", len(_TABLE_DEFINITIONS))


def _table_info(conn: sqlite3.Connection, table: str) -> list[sqlite3.Row]:
    _check_table(table)
    return list(conn.execute(f"PRAGMA table_info({table})").fetchall())


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """Check whether *column* exists in *table*.

    Raises:
        ValueError: If *table* is not in the allowlist.
    """
    return any(row[1] == column for row in _table_info(conn, table))


def column_is_not_null(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """``True`` when *column* of *table* carries a ``NOT NULL`` constraint."""
    return any(row[1] == column and bool(row[3]) for row in _table_info(conn, table))


def _migrate_v1_to_v2(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Introduce normalized profiles next to the embedded representation.

    Existing accounts are marked ``profile_storage_version = 1`` so their
    profiles keep being read from the ``preferences`` blob until the data
    migration promotes them.  Profile references on resource tables are
    added as nullable columns.
    """
    if not _column_exists(conn, "accounts", "profile_storage_version"):
        conn.execute(
            "ALTER TABLE accounts ADD COLUMN "
            "profile_storage_version INTEGER NOT NULL DEFAULT 1"
        )
    conn.execute(_STUDENT_PROFILES_DDL)
    conn.execute(_PROFILE_REF_CONSTRAINTS_DDL)

    for table in RESOURCE_TABLES:
        conn.execute(resource_table_ddl(table))
        if not _column_exists(conn, table, "student_profile_id"):
            conn.execute(f"ALTER TABLE {table} ADD COLUMN student_profile_id TEXT")

    logger.info("Migration v1->v2: added student_profiles and profile reference columns.")


def _migrate_v2_to_v3(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create the lookup indexes and the active-name uniqueness index."""
    for stmt in _INDEX_STATEMENTS:
        conn.execute(stmt)
    logger.info("Migration v2->v3: created %d indexes.", len(_INDEX_STATEMENTS))


# ---------------------------------------------------------------------------
# Migration registry -- maps *target* version to its migration function.
# ---------------------------------------------------------------------------

MigrationFunc = Callable[[sqlite3.Connection, StructuredLogger], None]

_MIGRATIONS: dict[int, MigrationFunc] = {
    2: _migrate_v1_to_v2,
    3: _migrate_v2_to_v3,
}


def _run_incremental_migrations(
    conn: sqlite3.Connection,
    logger: StructuredLogger,
    from_version: int,
    to_version: int,
) -> None:
    """Run registered migrations in ``(from_version, to_version]`` ascending."""
    versions_to_apply: list[int] = sorted(
        v for v in _MIGRATIONS if from_version < v <= to_version
    )
    if not versions_to_apply:
        logger.info("No incremental migrations to apply.")
        return

    for version in versions_to_apply:
        logger.info("Running schema migration to version %d", version)
        _MIGRATIONS[version](conn, logger)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def rebuild_resource_table(conn: sqlite3.Connection, table: str) -> None:
    """Recreate *table* with a NOT NULL, cascading ``student_profile_id``.

    SQLite cannot add a constraint to an existing column, so the table
    goes through create-new / copy / drop / rename.  Indexes are recreated
    afterwards.  Does not commit; any row violating the new constraints
    makes the copy fail and the caller rolls back.
    """
    conn.execute(resource_table_ddl(table, suffix="_new", tightened=True))
    conn.execute(
        f"INSERT INTO {table}_new ({_RESOURCE_COLUMNS}) "
        f"SELECT {_RESOURCE_COLUMNS} FROM {table}"
    )
    conn.execute(f"DROP TABLE {table}")
    conn.execute(f"ALTER TABLE {table}_new RENAME TO {table}")
    conn.execute(
        f"CREATE INDEX IF NOT EXISTS idx_{table}_profile ON {table}(student_profile_id)"
    )
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_user ON {table}(user_id)")


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Ensure the local SQLite database matches :data:`CURRENT_SCHEMA_VERSION`.

    Workflow:
        1. Guarantee the ``schema_version`` table exists.
        2. Read the stored version (``0`` for a fresh database).
        3. Return if it is current.
        4. Otherwise, within one transaction, create everything (fresh
           database) or run the missing migrations, bump the version and
           commit.  On failure the upgrade is rolled back and the next
           start retries.

    Safe to call on every start.
    """
    _ensure_version_table(conn)
    current: int = _get_schema_version(conn)

    if current >= CURRENT_SCHEMA_VERSION:
        logger.info("Schema is up to date (version %d).", current)
        return

    logger.info("Upgrading schema from version %d to %d", current, CURRENT_SCHEMA_VERSION)

    try:
        conn.execute("BEGIN")
        if current == 0:
            _create_all_tables(conn, logger)
        else:
            _run_incremental_migrations(conn, logger, current, CURRENT_SCHEMA_VERSION)

        _set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error("Schema migration failed, rolled back to version %d.", current)
        raise

    logger.info("Schema initialised at version %d.", CURRENT_SCHEMA_VERSION)
