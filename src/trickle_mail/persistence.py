"""SQLite-backed persistence layer for the trickle mail service.

This module provides the Persistence class that handles all database
operations, including:

- Job records with atomic ``sent``/``failed`` counters
- Scheduled delivery triggers with leasing for the dispatch loop
- Trigger claim records that absorb duplicate firings
- The append-only delivery event log
- Per-user sending configuration
- Dead letters recorded by the hosting runtime

The persistence layer uses aiosqlite for async SQLite operations. Each
operation opens and closes its own connection, making it safe for
concurrent use from many delivery tasks. Counter updates are single
``UPDATE ... RETURNING`` statements so concurrent workers never lose an
increment.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/trickle.db")
        await persistence.init_db()

        await persistence.insert_job({...})
        counters = await persistence.increment_sent(job_id)
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

JOB_COLUMNS = (
    "job_id",
    "user_id",
    "sender",
    "subject",
    "content",
    "attachment_refs",
    "total_recipients",
    "sent",
    "failed",
    "status",
    "created_at",
    "completed_at",
    "expires_at",
    "last_error",
    "last_error_at",
)


class Persistence:
    """Async SQLite persistence layer for jobs, triggers and events.

    Attributes:
        db_path: Path to the SQLite database file. Every operation opens a
            new connection, so an in-memory database does not persist
            between calls; use a file (``tmp_path`` in tests).
        busy_timeout: Seconds a writer waits for a concurrent writer to
            release the database lock.
    """

    def __init__(self, db_path: str = "/data/trickle.db", busy_timeout: float = 30.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout)

    async def init_db(self) -> None:
        """Create the database schema. Idempotent."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    sender TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    content TEXT NOT NULL,
                    attachment_refs TEXT NOT NULL DEFAULT '[]',
                    total_recipients INTEGER NOT NULL,
                    sent INTEGER NOT NULL DEFAULT 0,
                    failed INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    expires_at INTEGER NOT NULL,
                    last_error TEXT,
                    last_error_at TEXT,
                    CHECK (sent >= 0 AND failed >= 0 AND sent + failed <= total_recipients)
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user ON jobs(user_id, created_at)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS triggers (
                    trigger_id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    fire_at INTEGER NOT NULL,
                    leased_until INTEGER
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_triggers_fire_at ON triggers(fire_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_triggers_job ON triggers(job_id)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS trigger_claims (
                    trigger_id TEXT PRIMARY KEY,
                    claimed_at INTEGER NOT NULL,
                    done INTEGER NOT NULL DEFAULT 0,
                    completed_at INTEGER
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    recipient TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    message_id TEXT,
                    source TEXT,
                    details TEXT NOT NULL DEFAULT '{}',
                    ttl INTEGER
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_job_ts ON events(job_id, timestamp, seq)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS user_config (
                    user_id TEXT PRIMARY KEY,
                    rate_limit INTEGER NOT NULL,
                    max_attachment_size INTEGER NOT NULL,
                    headers TEXT NOT NULL DEFAULT '{}',
                    updated_at TEXT
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    trigger_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    error TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            await db.commit()

    # Jobs ---------------------------------------------------------------------
    @staticmethod
    def _decode_job(row: Dict[str, Any]) -> Dict[str, Any]:
        job = dict(row)
        job["attachment_refs"] = json.loads(job.get("attachment_refs") or "[]")
        if job.get("last_error"):
            job["last_error"] = json.loads(job["last_error"])
        return job

    async def insert_job(self, job: Dict[str, Any]) -> None:
        """Insert a new job record.

        Args:
            job: Dict with the keys of ``JOB_COLUMNS``; counters default to 0
                and status to ``pending``.
        """
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO jobs
                (job_id, user_id, sender, subject, content, attachment_refs,
                 total_recipients, sent, failed, status, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job["job_id"],
                    job["user_id"],
                    job["sender"],
                    job["subject"],
                    job["content"],
                    json.dumps(list(job.get("attachment_refs") or [])),
                    int(job["total_recipients"]),
                    int(job.get("sent", 0)),
                    int(job.get("failed", 0)),
                    job.get("status", "pending"),
                    job["created_at"],
                    int(job["expires_at"]),
                ),
            )
            await db.commit()

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a job by id, or None if it does not exist."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        return self._decode_job(dict(row))

    async def list_jobs(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Return a user's jobs, most recent first."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM jobs WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, int(limit)),
            ) as cur:
                rows = await cur.fetchall()
        return [self._decode_job(dict(row)) for row in rows]

    async def set_job_attachments(self, job_id: str, keys: Iterable[str]) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE jobs SET attachment_refs = ? WHERE job_id = ?",
                (json.dumps(list(keys)), job_id),
            )
            await db.commit()

    async def _increment(
        self, job_id: str, trigger_id: Optional[str], assignments: str, params: Tuple[Any, ...]
    ) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            if trigger_id is not None:
                cur = await db.execute(
                    """
                    UPDATE trigger_claims
                    SET done = 1, completed_at = CAST(strftime('%s', 'now') AS INTEGER)
                    WHERE trigger_id = ? AND done = 0
                    """,
                    (trigger_id,),
                )
                if cur.rowcount != 1:
                    await db.rollback()
                    return None
            async with db.execute(
                f"""
                UPDATE jobs SET {assignments}
                WHERE job_id = ? AND sent + failed < total_recipients
                RETURNING sent, failed, total_recipients, status
                """,
                (*params, job_id),
            ) as cur:
                row = await cur.fetchone()
            await db.commit()
        if row is None:
            return None
        return {"sent": row[0], "failed": row[1], "total_recipients": row[2], "status": row[3]}

    async def increment_sent(self, job_id: str, trigger_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Atomically add one to ``sent`` and return the updated counters.

        The increment is refused (None returned) when the job is missing or
        its counters already add up to ``total_recipients``.

        When ``trigger_id`` is given, its claim is marked done in the same
        transaction. A claim that is missing or already done refuses the
        increment, so one trigger is never counted twice.

        Returns:
            Dict with ``sent``, ``failed``, ``total_recipients`` and
            ``status`` after the increment, or None.
        """
        return await self._increment(job_id, trigger_id, "sent = sent + 1", ())

    async def increment_failed(
        self,
        job_id: str,
        last_error: Dict[str, Any],
        last_error_at: str,
        trigger_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Atomically add one to ``failed`` and record the failure.

        ``last_error`` and ``last_error_at`` are written in the same
        statement as the increment. ``trigger_id`` behaves as in
        ``increment_sent``.
        """
        return await self._increment(
            job_id,
            trigger_id,
            "failed = failed + 1, last_error = ?, last_error_at = ?",
            (json.dumps(last_error), last_error_at),
        )

    async def finalize_job(self, job_id: str, status: str, completed_at: str) -> bool:
        """Move a pending job whose counters are complete to a terminal status.

        Returns:
            True if this call performed the transition; False if the job was
            already terminal (a concurrent finisher won) or is not complete.
        """
        async with self._connect() as db:
            cur = await db.execute(
                """
                UPDATE jobs SET status = ?, completed_at = ?
                WHERE job_id = ? AND status = 'pending'
                  AND sent + failed = total_recipients
                """,
                (status, completed_at, job_id),
            )
            await db.commit()
            return cur.rowcount == 1

    async def mark_job_failed(self, job_id: str, completed_at: str) -> bool:
        """Mark a pending job as ``failed`` after a fan-out error."""
        async with self._connect() as db:
            cur = await db.execute(
                "UPDATE jobs SET status = 'failed', completed_at = ? WHERE job_id = ? AND status = 'pending'",
                (completed_at, job_id),
            )
            await db.commit()
            return cur.rowcount == 1

    async def remove_expired_jobs(self, now_ts: int) -> int:
        """Delete jobs past their retention horizon together with their triggers."""
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM triggers WHERE job_id IN (SELECT job_id FROM jobs WHERE expires_at <= ?)",
                (now_ts,),
            )
            cur = await db.execute("DELETE FROM jobs WHERE expires_at <= ?", (now_ts,))
            await db.commit()
            return cur.rowcount

    # Triggers -----------------------------------------------------------------
    async def insert_trigger(self, trigger: Dict[str, Any]) -> None:
        """Persist a delivery trigger. Fails if the trigger id already exists."""
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO triggers (trigger_id, job_id, payload, fire_at) VALUES (?, ?, ?, ?)",
                (trigger["trigger_id"], trigger["job_id"], json.dumps(trigger), int(trigger["fire_at"])),
            )
            await db.commit()

    async def delete_trigger(self, trigger_id: str) -> bool:
        async with self._connect() as db:
            cur = await db.execute("DELETE FROM triggers WHERE trigger_id = ?", (trigger_id,))
            await db.commit()
            return cur.rowcount > 0

    async def get_trigger(self, trigger_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT payload FROM triggers WHERE trigger_id = ?", (trigger_id,)) as cur:
                row = await cur.fetchone()
        return json.loads(row[0]) if row else None

    async def list_triggers(self, job_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT payload FROM triggers WHERE job_id = ? ORDER BY fire_at, trigger_id", (job_id,)
            ) as cur:
                rows = await cur.fetchall()
        return [json.loads(row[0]) for row in rows]

    async def lease_due_triggers(self, now_ts: int, limit: int, lease_seconds: int) -> List[Dict[str, Any]]:
        """Fetch triggers whose fire time has come and lease them.

        A leased trigger is not returned again until ``now + lease_seconds``;
        if the worker never deletes it, it fires again after the lease ends.

        Args:
            now_ts: Current epoch seconds.
            limit: Maximum number of triggers to lease.
            lease_seconds: Lease duration in seconds.

        Returns:
            Trigger payload dicts ordered by fire time.
        """
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute(
                """
                SELECT trigger_id, payload FROM triggers
                WHERE fire_at <= ? AND (leased_until IS NULL OR leased_until <= ?)
                ORDER BY fire_at, trigger_id
                LIMIT ?
                """,
                (now_ts, now_ts, int(limit)),
            ) as cur:
                rows = await cur.fetchall()
            if rows:
                await db.executemany(
                    "UPDATE triggers SET leased_until = ? WHERE trigger_id = ?",
                    [(now_ts + lease_seconds, row[0]) for row in rows],
                )
            await db.commit()
        return [json.loads(row[1]) for row in rows]

    async def count_pending_triggers(self) -> int:
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM triggers") as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def claim_trigger(self, trigger_id: str, now_ts: int, stale_before: Optional[int] = None) -> bool:
        """Record that a trigger is being processed.

        An unfinished claim taken at or before ``stale_before`` is assumed
        abandoned by a crashed worker and is taken over.

        Returns:
            True when this caller owns the claim, False if the trigger is
            already done or another worker holds a fresh claim on it.
        """
        async with self._connect() as db:
            cur = await db.execute(
                """
                INSERT INTO trigger_claims (trigger_id, claimed_at, done) VALUES (?, ?, 0)
                ON CONFLICT(trigger_id) DO UPDATE SET claimed_at = excluded.claimed_at
                WHERE trigger_claims.done = 0 AND trigger_claims.claimed_at <= ?
                """,
                (trigger_id, now_ts, -1 if stale_before is None else stale_before),
            )
            await db.commit()
            return cur.rowcount == 1

    async def get_claim(self, trigger_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM trigger_claims WHERE trigger_id = ?", (trigger_id,)) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        claim = dict(row)
        claim["done"] = bool(claim["done"])
        return claim

    async def release_claim(self, trigger_id: str) -> bool:
        """Drop an unfinished claim so the next firing processes the trigger again."""
        async with self._connect() as db:
            cur = await db.execute(
                "DELETE FROM trigger_claims WHERE trigger_id = ? AND done = 0", (trigger_id,)
            )
            await db.commit()
            return cur.rowcount == 1

    async def count_completed_claims_since(self, since_ts: int) -> int:
        """Count triggers whose outcome was recorded at or after ``since_ts``."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM trigger_claims WHERE done = 1 AND completed_at >= ?", (since_ts,)
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def remove_claims_before(self, threshold_ts: int) -> int:
        async with self._connect() as db:
            cur = await db.execute("DELETE FROM trigger_claims WHERE claimed_at < ?", (threshold_ts,))
            await db.commit()
            return cur.rowcount

    # Events -------------------------------------------------------------------
    @staticmethod
    def _decode_event(row: Dict[str, Any]) -> Dict[str, Any]:
        event = dict(row)
        event["details"] = json.loads(event.get("details") or "{}")
        return event

    async def insert_event(self, event: Dict[str, Any]) -> int:
        """Append a delivery event. Returns its sequence number."""
        async with self._connect() as db:
            cur = await db.execute(
                """
                INSERT INTO events (job_id, timestamp, recipient, event_type, message_id, source, details, ttl)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event["job_id"],
                    int(event["timestamp"]),
                    event["recipient"],
                    event["event_type"],
                    event.get("message_id"),
                    event.get("source"),
                    json.dumps(event.get("details") or {}, default=str),
                    event.get("ttl"),
                ),
            )
            await db.commit()
            return int(cur.lastrowid)

    async def list_events(self, job_id: str) -> List[Dict[str, Any]]:
        """Return every event of a job, oldest first."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM events WHERE job_id = ? ORDER BY timestamp, seq", (job_id,)
            ) as cur:
                rows = await cur.fetchall()
        return [self._decode_event(dict(row)) for row in rows]

    async def query_events(
        self,
        job_id: str,
        limit: int,
        before: Optional[Tuple[int, int]] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[Tuple[int, int]]]:
        """Return one page of a job's events, newest first.

        Args:
            job_id: Job whose events are read.
            limit: Page size.
            before: Exclusive ``(timestamp, seq)`` start key from a previous
                page, or None for the first page.

        Returns:
            Tuple of (events, last_key). ``last_key`` is the key of the last
            returned event when more events exist, else None.
        """
        sql = "SELECT * FROM events WHERE job_id = ?"
        params: list[Any] = [job_id]
        if before is not None:
            sql += " AND (timestamp < ? OR (timestamp = ? AND seq < ?))"
            params.extend([before[0], before[0], before[1]])
        sql += " ORDER BY timestamp DESC, seq DESC LIMIT ?"
        params.append(int(limit) + 1)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
        events = [self._decode_event(dict(row)) for row in rows[:limit]]
        last_key = None
        if len(rows) > limit and events:
            last_key = (events[-1]["timestamp"], events[-1]["seq"])
        return events, last_key

    async def count_events_by_type(self, job_id: str) -> Dict[str, int]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT event_type, COUNT(*) FROM events WHERE job_id = ? GROUP BY event_type", (job_id,)
            ) as cur:
                rows = await cur.fetchall()
        return {row[0]: int(row[1]) for row in rows}

    async def remove_expired_events(self, now_ts: int) -> int:
        async with self._connect() as db:
            cur = await db.execute("DELETE FROM events WHERE ttl IS NOT NULL AND ttl <= ?", (now_ts,))
            await db.commit()
            return cur.rowcount

    # User config --------------------------------------------------------------
    async def get_user_config(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM user_config WHERE user_id = ?", (user_id,)) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        config = dict(row)
        config["headers"] = json.loads(config.get("headers") or "{}")
        return config

    async def upsert_user_config(self, config: Dict[str, Any]) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO user_config (user_id, rate_limit, max_attachment_size, headers, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    config["user_id"],
                    int(config["rate_limit"]),
                    int(config["max_attachment_size"]),
                    json.dumps(config.get("headers") or {}),
                    config.get("updated_at"),
                ),
            )
            await db.commit()

    # Dead letters -------------------------------------------------------------
    async def add_dead_letter(self, trigger_id: str, job_id: str, recipient: str, error: str, now_ts: int) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO dead_letters (trigger_id, job_id, recipient, error, created_at) VALUES (?, ?, ?, ?, ?)",
                (trigger_id, job_id, recipient, error, now_ts),
            )
            await db.commit()

    async def list_dead_letters(self, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM dead_letters"
        params: tuple[Any, ...] = ()
        if job_id:
            sql += " WHERE job_id = ?"
            params = (job_id,)
        sql += " ORDER BY id"
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
        return [dict(row) for row in rows]
