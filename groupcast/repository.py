import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .config import validate_config_value
from .models import (
    ALL_STATES, CANCELLED, DRAFT, FAILED, PENDING, PROCESSING, RECURRENCE_RULES,
    TERMINAL_STATES, Job, MessageSpec, TargetingRule, TextMessage,
)
from .utils import next_occurrence, now_iso, to_iso, utcnow

LOGGER = logging.getLogger(__name__)


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    validate_config_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Jobs: enqueue ----------
def enqueue_job(
    conn,
    *,
    instance: str,
    message: MessageSpec,
    targeting: TargetingRule,
    due_at: Optional[datetime] = None,
    mention_everyone: bool = False,
    recurrence: Optional[str] = None,
    draft: bool = False,
    batch_id: Optional[str] = None,
    chunk_index: Optional[int] = None,
    total_chunks: Optional[int] = None,
    parent_id: Optional[int] = None,
) -> int:
    if not instance or not instance.strip():
        raise ValueError("Instance cannot be empty.")
    if recurrence is not None and recurrence not in RECURRENCE_RULES:
        raise ValueError(f"recurrence must be one of {', '.join(RECURRENCE_RULES)}")
    message.validate()

    ts = now_iso()
    try:
        with conn:
            cur = conn.execute(
                """INSERT INTO jobs
                   (instance, message, targeting, due_at, status, mention_everyone,
                    batch_id, chunk_index, total_chunks, recurrence, parent_id,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    instance.strip(),
                    json.dumps(message.to_dict()),
                    json.dumps(targeting.to_dict()),
                    to_iso(due_at) if due_at else ts,
                    DRAFT if draft else PENDING,
                    int(bool(mention_everyone)),
                    batch_id, chunk_index, total_chunks,
                    recurrence, parent_id,
                    ts, ts,
                ),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting job: {e}")
    return cur.lastrowid


def enqueue_batch(
    conn,
    *,
    instance: str,
    message: TextMessage,
    targeting: TargetingRule,
    due_at: Optional[datetime] = None,
    mention_everyone: bool = False,
    draft: bool = False,
) -> List[int]:
    """Store a split-by-lines text as one job per line sharing a batch id."""
    message.validate()
    chunks = message.chunks()
    if len(chunks) == 1:
        return [enqueue_job(
            conn, instance=instance, message=chunks[0], targeting=targeting,
            due_at=due_at, mention_everyone=mention_everyone, draft=draft,
        )]

    batch_id = uuid.uuid4().hex
    due_at = due_at or utcnow()
    return [
        enqueue_job(
            conn,
            instance=instance,
            message=chunk,
            targeting=targeting,
            due_at=due_at,
            mention_everyone=mention_everyone,
            draft=draft,
            batch_id=batch_id,
            chunk_index=i,
            total_chunks=len(chunks),
        )
        for i, chunk in enumerate(chunks)
    ]


# ---------- Jobs: claim / outcome ----------
def fetch_due_jobs(conn, now: datetime) -> List[Job]:
    rows = conn.execute(
        "SELECT * FROM jobs WHERE status=? AND due_at <= ? ORDER BY id ASC",
        (PENDING, to_iso(now)),
    ).fetchall()
    jobs = []
    for r in rows:
        try:
            jobs.append(Job.from_row(r))
        except (ValueError, TypeError) as e:
            # Undecodable rows would otherwise come back on every poll.
            LOGGER.error("Job #%s cannot be decoded, marking failed: %s", r["id"], e)
            with conn:
                conn.execute(
                    "UPDATE jobs SET status=?, result_summary=?, updated_at=? WHERE id=? AND status=?",
                    (FAILED, f"invalid message: {e}"[:500], now_iso(), r["id"], PENDING),
                )
    return jobs


def try_claim(conn, job_id: int, now: Optional[datetime] = None) -> bool:
    ts = to_iso(now or utcnow())
    with conn:
        # Take the write lock up front so racing workers queue on the busy timeout.
        conn.execute("BEGIN IMMEDIATE")
        updated = conn.execute(
            "UPDATE jobs SET status=?, claimed_at=?, updated_at=? WHERE id=? AND status=?",
            (PROCESSING, ts, ts, job_id, PENDING),
        )
    return updated.rowcount == 1


def record_outcome(conn, job_id: int, status: str, summary: str, sent_at: datetime) -> bool:
    """Terminal write. Repeating it with the same status is a no-op in effect."""
    if status not in TERMINAL_STATES:
        raise ValueError(f"{status!r} is not a terminal status")
    with conn:
        updated = conn.execute(
            """UPDATE jobs
               SET status=?, result_summary=?, sent_at=?, updated_at=?
               WHERE id=? AND status IN (?, ?)""",
            (status, summary, to_iso(sent_at), now_iso(), job_id, PROCESSING, status),
        )
    if updated.rowcount != 1:
        LOGGER.warning("Outcome %s for job #%s not recorded (job missing or in another state)", status, job_id)
        return False
    return True


def record_failure(conn, job_id: int, recipient_id: str, error: str):
    try:
        with conn:
            conn.execute(
                "INSERT INTO job_failures(job_id, recipient_id, error, created_at) VALUES (?,?,?,?)",
                (job_id, recipient_id, (error or "")[:500], now_iso()),
            )
    except sqlite3.Error as e:
        LOGGER.error("Could not record failure of %s for job #%s: %s", recipient_id, job_id, e)


def touch_claim(conn, job_id: int, now: datetime):
    """Refresh `claimed_at` of a running job so sweeps can tell it is alive."""
    try:
        with conn:
            conn.execute(
                "UPDATE jobs SET claimed_at=? WHERE id=? AND status=?",
                (to_iso(now), job_id, PROCESSING),
            )
    except sqlite3.Error as e:
        LOGGER.error("Could not refresh claim of job #%s: %s", job_id, e)


def requeue_stuck(conn, older_than: datetime, exclude: Iterable[int] = ()) -> int:
    """Put `processing` jobs claimed before `older_than` back to `pending`, except `exclude`."""
    exclude = list(exclude)
    sql = """UPDATE jobs SET status=?, claimed_at=NULL, updated_at=?
             WHERE status=? AND claimed_at < ?"""
    if exclude:
        sql += f" AND id NOT IN ({','.join('?' * len(exclude))})"
    with conn:
        res = conn.execute(sql, (PENDING, now_iso(), PROCESSING, to_iso(older_than), *exclude))
    return res.rowcount


def cancel_job(conn, job_id: int) -> bool:
    # Raw row: a job whose message no longer decodes can still be cancelled.
    row = conn.execute("SELECT id, batch_id FROM jobs WHERE id=?", (job_id,)).fetchone()
    if row is None:
        return False
    with conn:
        if row["batch_id"]:
            res = conn.execute(
                "UPDATE jobs SET status=?, updated_at=? WHERE batch_id=? AND status IN (?, ?)",
                (CANCELLED, now_iso(), row["batch_id"], PENDING, DRAFT),
            )
        else:
            res = conn.execute(
                "UPDATE jobs SET status=?, updated_at=? WHERE id=? AND status IN (?, ?)",
                (CANCELLED, now_iso(), job_id, PENDING, DRAFT),
            )
    return res.rowcount > 0


# ---------- Follow-up jobs ----------
def build_retry_job(conn, job_id: int, due_at: Optional[datetime] = None) -> Job:
    """New pending job aimed only at the recipients that failed in `job_id`."""
    job = get_job(conn, job_id)
    if job is None:
        raise ValueError(f"Job #{job_id} not found or cannot be decoded.")
    if job.status not in TERMINAL_STATES:
        raise ValueError(f"Job #{job_id} is {job.status}; only finished jobs can be retried.")

    failed_ids = []
    for f in list_failures(conn, job_id):
        if f["recipient_id"] not in failed_ids:
            failed_ids.append(f["recipient_id"])
    if not failed_ids:
        raise ValueError(f"Job #{job_id} has no failed recipients.")

    new_id = enqueue_job(
        conn,
        instance=job.instance,
        message=job.message,
        targeting=TargetingRule.explicit(failed_ids),
        due_at=due_at,
        mention_everyone=job.mention_everyone,
        parent_id=job.id,
    )
    return get_job(conn, new_id)


def schedule_next_occurrence(conn, job: Job) -> Optional[int]:
    if not job.recurrence:
        return None
    return enqueue_job(
        conn,
        instance=job.instance,
        message=job.message,
        targeting=job.targeting,
        due_at=next_occurrence(job.due_at, job.recurrence),
        mention_everyone=job.mention_everyone,
        recurrence=job.recurrence,
        parent_id=job.id,
    )


# ---------- Queries ----------
def _decode(row) -> Optional[Job]:
    try:
        return Job.from_row(row)
    except (ValueError, TypeError) as e:
        LOGGER.error("Job #%s cannot be decoded: %s", row["id"], e)
        return None


def get_job(conn, job_id: int) -> Optional[Job]:
    """The job, or None when it is missing or its stored row cannot be decoded."""
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return _decode(row) if row else None


def list_jobs(conn, status: Optional[str] = None) -> List[Job]:
    if status:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE status=? ORDER BY due_at ASC, id ASC",
            (status,),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM jobs ORDER BY id ASC").fetchall()
    # Undecodable rows are logged and left out.
    return [job for job in map(_decode, rows) if job is not None]


def list_failures(conn, job_id: int) -> Iterable[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM job_failures WHERE job_id=? ORDER BY id ASC",
        (job_id,),
    ).fetchall()


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in ALL_STATES}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status"):
        out[r["status"]] = r["c"]
    return out
