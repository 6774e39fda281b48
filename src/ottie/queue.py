"""FIFO scrape queue backed by the Ottie database.

Jobs live in ``scrape_queue`` until the worker claims one; a claim moves the
job into ``queue_processing`` with a claim timestamp in the same transaction.
Position is the job's 1-based rank among jobs still waiting, so it drops by
one each time a job ahead of it is claimed and becomes None once the job
itself is claimed.

Because the store is SQLite, submission, status polling and the worker may
run in different processes. Within one process, push() also wakes a worker
blocked in wait_pop().
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from ottie import database
from ottie.database import get_connection, utcnow

log = logging.getLogger(__name__)


@dataclass
class ScrapeJob:
    """One queued scrape; id is the preview record id."""
    id: str
    url: str
    created_at: str = field(default_factory=utcnow)


class QueueClosed(RuntimeError):
    """Operation on a queue that was never initialised or already shut down."""


class ScrapeQueue:
    """Explicitly constructed queue service shared by submission and the worker."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = db_path
        self._cond = threading.Condition()
        self._open = False

    # -- lifecycle ----------------------------------------------------------

    def init(self) -> "ScrapeQueue":
        database.init_db(self.db_path)
        self._open = True
        log.debug("Scrape queue ready (%s)", self.db_path or "default db")
        return self

    def shutdown(self) -> None:
        """Stop accepting work and release any thread blocked in wait_pop()."""
        with self._cond:
            self._open = False
            self._cond.notify_all()

    @property
    def is_open(self) -> bool:
        return self._open

    def _conn(self):
        if not self._open:
            raise QueueClosed("Scrape queue is not initialised")
        return get_connection(self.db_path)

    # -- producer -----------------------------------------------------------

    def push(self, job: ScrapeJob) -> int:
        """Append a job and return its 1-based position."""
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.execute(
                "INSERT INTO scrape_queue (id, url, created_at) VALUES (?, ?, ?)",
                (job.id, job.url, job.created_at),
            )
            position = conn.execute(
                "SELECT COUNT(*) FROM scrape_queue WHERE seq <= ?", (cur.lastrowid,)
            ).fetchone()[0]
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        log.info("Queued %s at position %d: %s", job.id[:8], position, job.url)
        self.notify()
        return position

    def notify(self) -> None:
        """Wake a worker waiting in this process."""
        with self._cond:
            self._cond.notify_all()

    # -- consumer -----------------------------------------------------------

    def peek(self) -> ScrapeJob | None:
        row = self._conn().execute(
            "SELECT id, url, created_at FROM scrape_queue ORDER BY seq LIMIT 1"
        ).fetchone()
        return ScrapeJob(row["id"], row["url"], row["created_at"]) if row else None

    def pop(self) -> ScrapeJob | None:
        """Atomically claim the oldest job, or return None when the queue is empty."""
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT seq, id, url, created_at FROM scrape_queue ORDER BY seq LIMIT 1"
            ).fetchone()
            if row is None:
                conn.rollback()
                return None
            conn.execute("DELETE FROM scrape_queue WHERE seq = ?", (row["seq"],))
            conn.execute(
                "INSERT OR REPLACE INTO queue_processing (id, url, claimed_at) VALUES (?, ?, ?)",
                (row["id"], row["url"], utcnow()),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return ScrapeJob(row["id"], row["url"], row["created_at"])

    def wait_pop(self, timeout: float) -> ScrapeJob | None:
        """pop(), blocking up to ``timeout`` seconds for a push if the queue is empty.

        Returns None on timeout or once the queue has been shut down.
        """
        try:
            job = self.pop()
            if job is None:
                with self._cond:
                    if self._open:
                        self._cond.wait(timeout)
                job = self.pop()
        except QueueClosed:
            return None
        return job

    def mark_completed(self, job_id: str, success: bool = True) -> None:
        """Drop the processing marker and count the outcome in today's stats."""
        conn = self._conn()
        day = datetime.now(timezone.utc).date().isoformat()
        column = "completed" if success else "failed"
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM queue_processing WHERE id = ?", (job_id,))
            conn.execute(
                f"INSERT INTO queue_stats (day, {column}) VALUES (?, 1) "
                f"ON CONFLICT(day) DO UPDATE SET {column} = {column} + 1",
                (day,),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # -- readers ------------------------------------------------------------

    def position(self, job_id: str) -> int | None:
        conn = self._conn()
        row = conn.execute("SELECT seq FROM scrape_queue WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return conn.execute(
            "SELECT COUNT(*) FROM scrape_queue WHERE seq <= ?", (row["seq"],)
        ).fetchone()[0]

    def is_processing(self, job_id: str) -> bool:
        row = self._conn().execute(
            "SELECT 1 FROM queue_processing WHERE id = ?", (job_id,)
        ).fetchone()
        return row is not None

    def length(self) -> int:
        return self._conn().execute("SELECT COUNT(*) FROM scrape_queue").fetchone()[0]

    def stuck(self, older_than: float) -> list[dict]:
        """Claims older than ``older_than`` seconds: [{id, url, claimed_at}]."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than)).isoformat()
        rows = self._conn().execute(
            "SELECT id, url, claimed_at FROM queue_processing WHERE claimed_at < ? "
            "ORDER BY claimed_at", (cutoff,)
        ).fetchall()
        return [dict(r) for r in rows]

    def stats(self) -> dict:
        """Queue depth, active claims and today's completed/failed counters."""
        conn = self._conn()
        day = datetime.now(timezone.utc).date().isoformat()
        row = conn.execute(
            "SELECT completed, failed FROM queue_stats WHERE day = ?", (day,)
        ).fetchone()
        return {
            "queued": self.length(),
            "processing": conn.execute("SELECT COUNT(*) FROM queue_processing").fetchone()[0],
            "completed_today": row["completed"] if row else 0,
            "failed_today": row["failed"] if row else 0,
        }
