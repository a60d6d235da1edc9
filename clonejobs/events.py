from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Tuple

import orjson
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .hashing import chain_next
from .schemas import LogEntry
from .settings import settings
from .storage import JobLogRow, SessionLocal, dumps_json, loads_json, retrying, utc_now_iso


LOG_LEVELS = ("info", "warning", "error", "success")


class JobEventLog:
    """Append-only, hash-chained log of a job's lifecycle.

    Each entry lands in the job_log table and, when enabled, in
    <artifacts>/<job_id>/events.jsonl. Appends for one job are serialized so
    sequence numbers and the hash chain stay gap-free; entries are never
    updated once written.
    """

    def __init__(self, lock_stripes: int = 64) -> None:
        self._last_by_job: Dict[str, Tuple[int, str]] = {}
        # Striped by job id hash
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(max(1, lock_stripes))]

    def _lock_for(self, job_id: str) -> threading.Lock:
        return self._locks[hash(job_id) % len(self._locks)]

    def forget(self, job_id: str) -> None:
        """Drop the cached chain tail of a finished job; the next append re-reads it from the DB."""
        with self._lock_for(job_id):
            self._last_by_job.pop(job_id, None)

    def _resolve_prev(self, job_id: str) -> Tuple[int, str]:
        if job_id in self._last_by_job:
            return self._last_by_job[job_id]
        # Recover from DB (another process may have written entries)
        with SessionLocal() as session:
            stmt = select(JobLogRow).where(JobLogRow.job_id == job_id).order_by(JobLogRow.seq.desc()).limit(1)
            row = session.execute(stmt).scalars().first()
            return (row.seq, row.entry_hash) if row else (0, "")

    def log_event(
        self,
        job_id: str,
        level: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level: {level}")
        with self._lock_for(job_id):
            return self._append(job_id, level, message, details)

    @retrying(IntegrityError)
    def _append(self, job_id: str, level: str, message: str, details: Optional[Dict[str, Any]]) -> LogEntry:
        last_seq, prev_hash = self._resolve_prev(job_id)
        payload = {
            "job_id": job_id,
            "seq": last_seq + 1,
            "timestamp": utc_now_iso(),
            "level": level,
            "message": message,
            "details": details,
            "prev_hash": prev_hash,
        }
        entry = LogEntry(**{**payload, "entry_hash": chain_next(prev_hash, payload)})

        try:
            with SessionLocal() as session:
                session.add(
                    JobLogRow(
                        job_id=job_id,
                        seq=entry.seq,
                        ts_iso=entry.timestamp,
                        level=entry.level,
                        message=entry.message,
                        details_json=dumps_json(details) if details is not None else None,
                        prev_hash=entry.prev_hash,
                        entry_hash=entry.entry_hash,
                    )
                )
                session.commit()
        except IntegrityError:
            # Lost a race with another writer for this seq; re-read the tail
            self._last_by_job.pop(job_id, None)
            raise

        if settings.artifacts.get("keep_event_files", True):
            events_path = settings.artifacts_dir_for(job_id) / "events.jsonl"
            line = orjson.dumps(entry.model_dump(), option=orjson.OPT_SORT_KEYS)
            with open(events_path, "ab") as f:
                f.write(line + b"\n")

        self._last_by_job[job_id] = (entry.seq, entry.entry_hash)
        return entry

    def entries(self, job_id: str) -> List[LogEntry]:
        with SessionLocal() as session:
            stmt = select(JobLogRow).where(JobLogRow.job_id == job_id).order_by(JobLogRow.seq.asc())
            rows = session.execute(stmt).scalars().all()
            return [
                LogEntry(
                    job_id=r.job_id,
                    seq=r.seq,
                    timestamp=r.ts_iso,
                    level=r.level,
                    message=r.message,
                    details=loads_json(r.details_json),
                    prev_hash=r.prev_hash,
                    entry_hash=r.entry_hash,
                )
                for r in rows
            ]


# Shared by every component that is not handed its own log
event_log = JobEventLog()
