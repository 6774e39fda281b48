"""Ottie database layer: schema, migrations, preview records and stats.

Single source of truth for the preview record schema. Every column written by
any pipeline stage is created up front, so the manual re-run operations can
resume any stage without migration ordering issues. The scrape queue lives in
the same database (see ottie.queue) so submission, status polling and the
worker may run in separate processes.
"""

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from ottie import config

# Thread-local connection storage: each thread gets its own connection
# (required for SQLite thread safety with the worker thread and the server)
_local = threading.local()


def utcnow() -> str:
    """ISO-8601 UTC timestamp used for every persisted time value."""
    return datetime.now(timezone.utc).isoformat()


def get_connection(db_path: Path | str | None = None) -> sqlite3.Connection:
    """Get a thread-local cached SQLite connection with WAL mode enabled.

    Args:
        db_path: Override the default DB_PATH. Useful for testing.

    Returns:
        sqlite3.Connection configured with WAL mode and row factory.
    """
    path = str(db_path or config.DB_PATH)

    if not hasattr(_local, "connections"):
        _local.connections = {}

    conn = _local.connections.get(path)
    if conn is not None:
        try:
            conn.execute("SELECT 1")
            return conn
        except sqlite3.ProgrammingError:
            pass

    conn = sqlite3.connect(path, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.row_factory = sqlite3.Row
    _local.connections[path] = conn
    return conn


def close_connection(db_path: Path | str | None = None) -> None:
    """Close the cached connection for the current thread."""
    path = str(db_path or config.DB_PATH)
    if hasattr(_local, "connections"):
        conn = _local.connections.pop(path, None)
        if conn is not None:
            conn.close()


def init_db(db_path: Path | str | None = None) -> sqlite3.Connection:
    """Create every table the pipeline uses.

    Idempotent: safe to call on every startup. Uses CREATE TABLE IF NOT EXISTS
    so it never destroys existing data.

    Preview columns by stage:
      - Submission: id, external_url, status, created_at, updated_at
      - Scrape:     source_domain, raw_html, markdown, gallery_raw_html,
                    gallery_markdown, scraped_data
      - Extraction: structured_data, readability, gallery_image_urls
      - Generation: generated_config (Call 1), unified_json (Call 2)
      - Outcome:    error_message, claimed_site_id

    Args:
        db_path: Override the default DB_PATH.

    Returns:
        sqlite3.Connection with the schema initialized.
    """
    path = db_path or config.DB_PATH

    Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = get_connection(path)
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS previews (
            id                  TEXT PRIMARY KEY,
            external_url        TEXT NOT NULL,
            status              TEXT NOT NULL DEFAULT 'queued',
            created_at          TEXT,
            updated_at          TEXT
        );

        CREATE TABLE IF NOT EXISTS sites (
            id                  TEXT PRIMARY KEY,
            workspace_id        TEXT NOT NULL,
            creator_id          TEXT,
            title               TEXT,
            slug                TEXT NOT NULL,
            status              TEXT DEFAULT 'draft',
            config              TEXT,
            metadata            TEXT,
            created_at          TEXT,
            UNIQUE (workspace_id, slug)
        );

        -- FIFO: seq orders the jobs, the row is deleted when the worker claims it
        CREATE TABLE IF NOT EXISTS scrape_queue (
            seq                 INTEGER PRIMARY KEY AUTOINCREMENT,
            id                  TEXT NOT NULL UNIQUE,
            url                 TEXT NOT NULL,
            created_at          TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS queue_processing (
            id                  TEXT PRIMARY KEY,
            url                 TEXT,
            claimed_at          TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS queue_stats (
            day                 TEXT PRIMARY KEY,
            completed           INTEGER DEFAULT 0,
            failed              INTEGER DEFAULT 0
        );
    """)
    conn.commit()

    ensure_columns(conn)

    return conn


# Column registry for previews: column_name -> SQL type.
# Adding a column here is all that's needed for it to appear in both new
# databases and migrated ones.
_ALL_COLUMNS: dict[str, str] = {
    # Submission
    "id": "TEXT PRIMARY KEY",
    "external_url": "TEXT",
    "status": "TEXT",
    "created_at": "TEXT",
    "updated_at": "TEXT",
    # Scrape
    "source_domain": "TEXT",
    "raw_html": "TEXT",
    "markdown": "TEXT",
    "gallery_raw_html": "TEXT",
    "gallery_markdown": "TEXT",
    "scraped_data": "TEXT",
    # Extraction
    "structured_data": "TEXT",
    "readability": "TEXT",
    "gallery_image_urls": "TEXT",
    # Generation
    "generated_config": "TEXT",
    "unified_json": "TEXT",
    # Outcome
    "error_message": "TEXT",
    "claimed_site_id": "TEXT",
}

# Columns holding JSON text; encoded on write, decoded on read
JSON_COLUMNS = frozenset({
    "scraped_data", "structured_data", "readability", "gallery_image_urls",
    "generated_config", "unified_json",
})


def ensure_columns(conn: sqlite3.Connection | None = None) -> list[str]:
    """Add any missing columns to the previews table (forward migration).

    Returns:
        List of column names that were added (empty if schema was already current).
    """
    if conn is None:
        conn = get_connection()

    existing = {row[1] for row in conn.execute("PRAGMA table_info(previews)").fetchall()}
    added = []

    for col, dtype in _ALL_COLUMNS.items():
        if col not in existing:
            if "PRIMARY KEY" in dtype:
                continue
            conn.execute(f"ALTER TABLE previews ADD COLUMN {col} {dtype}")
            added.append(col)

    if added:
        conn.commit()

    return added


# ---------------------------------------------------------------------------
# Preview records
# ---------------------------------------------------------------------------

# Coarse lifecycle order; error is reachable from anywhere
STATUSES = ("queued", "scraping", "pending", "completed", "error")
_STATUS_RANK = {"queued": 0, "scraping": 1, "pending": 2, "completed": 3}
# Manual re-runs resume a failed record from generation onwards, never from a scrape
_RESUMABLE_FROM_ERROR = ("pending", "completed")


class InvalidTransition(ValueError):
    """A status update that would move a record backwards."""


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    record = dict(row)
    for col in JSON_COLUMNS:
        value = record.get(col)
        if isinstance(value, str):
            try:
                record[col] = json.loads(value)
            except json.JSONDecodeError:
                pass
    return record


def _encode(col: str, value):
    if col in JSON_COLUMNS and value is not None:
        return json.dumps(value, ensure_ascii=False)
    return value


def create_preview(url: str, db_path: Path | str | None = None) -> dict:
    """Insert a new preview record in the queued state and return it."""
    conn = get_connection(db_path)
    now = utcnow()
    preview_id = uuid.uuid4().hex
    conn.execute(
        "INSERT INTO previews (id, external_url, status, created_at, updated_at) "
        "VALUES (?, ?, 'queued', ?, ?)",
        (preview_id, url, now, now),
    )
    conn.commit()
    return get_preview(preview_id, db_path)


def get_preview(preview_id: str, db_path: Path | str | None = None) -> dict | None:
    """Fetch one preview record with JSON columns decoded, or None."""
    conn = get_connection(db_path)
    row = conn.execute("SELECT * FROM previews WHERE id = ?", (preview_id,)).fetchone()
    return _row_to_dict(row)


def update_preview(preview_id: str, db_path: Path | str | None = None, **fields) -> None:
    """Write several fields of a preview record in a single transaction.

    A status change is checked against the lifecycle order: records only move
    forward, except that any record may move to ``error``. A record in
    ``error`` may only be resumed to ``pending`` or ``completed`` by the
    manual re-run operations.

    Raises:
        KeyError: If the record does not exist.
        InvalidTransition: If the status would move backwards.
    """
    unknown = set(fields) - set(_ALL_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown preview columns: {sorted(unknown)}")

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT status FROM previews WHERE id = ?", (preview_id,)).fetchone()
        if row is None:
            raise KeyError(preview_id)

        new_status = fields.get("status")
        if new_status is not None:
            if new_status not in STATUSES:
                raise ValueError(f"Unknown status: {new_status}")
            current = row["status"]
            if current == "error":
                if new_status not in _RESUMABLE_FROM_ERROR + ("error",):
                    raise InvalidTransition(f"{current} -> {new_status}")
            elif new_status != "error" and _STATUS_RANK[new_status] < _STATUS_RANK[current]:
                raise InvalidTransition(f"{current} -> {new_status}")
            if new_status != "error":
                fields.setdefault("error_message", None)

        fields["updated_at"] = utcnow()
        cols = list(fields)
        assignments = ", ".join(f"{c} = ?" for c in cols)
        conn.execute(
            f"UPDATE previews SET {assignments} WHERE id = ?",
            [_encode(c, fields[c]) for c in cols] + [preview_id],
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def mark_error(preview_id: str, message: str, db_path: Path | str | None = None) -> None:
    """Move a record to the terminal error state with a user-facing message."""
    update_preview(preview_id, db_path, status="error", error_message=message)


def list_previews(status: str | None = None, limit: int = 50,
                  db_path: Path | str | None = None) -> list[dict]:
    """Recent preview records (newest first), without the large capture columns."""
    conn = get_connection(db_path)
    query = ("SELECT id, external_url, status, source_domain, error_message, "
             "created_at, updated_at FROM previews")
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)
    return [dict(r) for r in conn.execute(query, params).fetchall()]


# ---------------------------------------------------------------------------
# Claimed sites
# ---------------------------------------------------------------------------

def slug_exists(workspace_id: str, slug: str, db_path: Path | str | None = None) -> bool:
    conn = get_connection(db_path)
    row = conn.execute(
        "SELECT 1 FROM sites WHERE workspace_id = ? AND slug = ?", (workspace_id, slug)
    ).fetchone()
    return row is not None


def create_site(preview_id: str, workspace_id: str, user_id: str, title: str,
                slug: str, site_config: dict, metadata: dict,
                db_path: Path | str | None = None) -> str:
    """Insert a site built from a preview and link the preview to it.

    Both writes happen in one transaction.

    Returns:
        The new site id.
    """
    conn = get_connection(db_path)
    site_id = uuid.uuid4().hex
    now = utcnow()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            "INSERT INTO sites (id, workspace_id, creator_id, title, slug, status, "
            "config, metadata, created_at) VALUES (?, ?, ?, ?, ?, 'draft', ?, ?, ?)",
            (site_id, workspace_id, user_id, title, slug,
             json.dumps(site_config, ensure_ascii=False),
             json.dumps(metadata, ensure_ascii=False), now),
        )
        conn.execute(
            "UPDATE previews SET claimed_site_id = ?, updated_at = ? WHERE id = ?",
            (site_id, now, preview_id),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return site_id


def get_site(site_id: str, db_path: Path | str | None = None) -> dict | None:
    conn = get_connection(db_path)
    row = conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
    if row is None:
        return None
    site = dict(row)
    for col in ("config", "metadata"):
        if site.get(col):
            site[col] = json.loads(site[col])
    return site


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

def get_stats(db_path: Path | str | None = None) -> dict:
    """Return preview counts by status and by provider.

    Returns:
        Dictionary with keys: total, by_status, by_source, claimed.
    """
    conn = get_connection(db_path)

    stats: dict = {}
    stats["total"] = conn.execute("SELECT COUNT(*) FROM previews").fetchone()[0]

    rows = conn.execute(
        "SELECT status, COUNT(*) AS cnt FROM previews GROUP BY status"
    ).fetchall()
    stats["by_status"] = {status: 0 for status in STATUSES}
    for row in rows:
        stats["by_status"][row[0]] = row[1]

    rows = conn.execute(
        "SELECT source_domain, COUNT(*) AS cnt FROM previews "
        "WHERE source_domain IS NOT NULL GROUP BY source_domain ORDER BY cnt DESC"
    ).fetchall()
    stats["by_source"] = [(row[0], row[1]) for row in rows]

    stats["claimed"] = conn.execute(
        "SELECT COUNT(*) FROM previews WHERE claimed_site_id IS NOT NULL"
    ).fetchone()[0]

    return stats
