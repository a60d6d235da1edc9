from __future__ import annotations

import datetime as _dt
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select, update

from .errors import InvalidTransition, JobNotFound, ReservationError, StaleWrite
from .events import JobEventLog, event_log
from .ledger import CreditLedger
from .schemas import CloneJob, CloneOptions, Directive, VerificationReport
from .settings import settings
from .storage import JobRow, SessionLocal, dumps_json, loads_json, parse_iso, retrying, utc_now_iso


logger = logging.getLogger(__name__)

# Allowed source states per operation
_CLAIM = ("pending",)
_RECLAIM = ("processing", "paused")
_PAUSE = ("processing",)
_RESUME = ("paused",)
_STOP = ("pending", "processing", "paused")
_FAIL = ("pending", "processing", "paused")
_COMPLETE = ("processing",)
_PROGRESS = ("processing",)

MAX_RUNNING_PROGRESS = 99


def _to_job(row: JobRow, log_entries: Optional[list] = None) -> CloneJob:
    verification = loads_json(row.verification_json)
    return CloneJob(
        id=row.id,
        owner_id=row.owner_id,
        target_url=row.target_url,
        status=row.status,
        progress_percent=row.progress_percent or 0,
        pages_cloned=row.pages_cloned or 0,
        assets_captured=row.assets_captured or 0,
        bytes_captured=row.bytes_captured or 0,
        current_url=row.current_url,
        message=row.message,
        log_entries=log_entries or [],
        errors=loads_json(row.errors_json, []),
        verification=VerificationReport.model_validate(verification) if verification else None,
        verification_skipped=bool(row.verification_skipped),
        output_location=row.output_location,
        export_location=row.export_location,
        # Options were validated at submit; later config changes must not hide old jobs
        options=CloneOptions.model_construct(**loads_json(row.options_json, {})),
        seed_job_id=row.seed_job_id,
        seed_location=row.seed_location,
        reservation_id=row.reservation_id,
        worker_id=row.worker_id,
        cursor=row.cursor or 0,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        paused_at=row.paused_at,
        heartbeat_at=row.heartbeat_at,
        deleted_at=row.deleted_at,
    )


class JobStateMachine:
    """Owns every clone job's lifecycle.

    pending -> processing (claim) -> completed | failed, with
    processing <-> paused. Each change is a compare-and-set on the job's
    version, so a transition either applies to the state it was validated
    against or is retried against the fresh row. Every transition appends a
    log entry; failing a job releases its credit hold and completing it
    commits the hold at the cost of the pages actually cloned.
    """

    def __init__(self, ledger: Optional[CreditLedger] = None, events: Optional[JobEventLog] = None) -> None:
        self.ledger = ledger or CreditLedger()
        self.events = events or event_log

    # Creation and reads

    def create(
        self,
        owner_id: str,
        target_url: str,
        options: CloneOptions,
        reservation_id: Optional[str] = None,
        job_id: Optional[str] = None,
        seed_job_id: Optional[str] = None,
        seed_location: Optional[str] = None,
    ) -> CloneJob:
        job_id = job_id or str(uuid.uuid4())
        row = JobRow(
            id=job_id,
            owner_id=owner_id,
            target_url=target_url,
            status="pending",
            progress_percent=0,
            pages_cloned=0,
            assets_captured=0,
            bytes_captured=0,
            message="Queued",
            errors_json="[]",
            verification_skipped=False,
            options_json=dumps_json(options.model_dump()),
            seed_job_id=seed_job_id,
            seed_location=seed_location,
            reservation_id=reservation_id,
            cursor=0,
            created_at=utc_now_iso(),
            version=0,
        )
        with SessionLocal() as session:
            session.add(row)
            session.commit()
        details: Dict[str, Any] = {
            "url": target_url,
            "max_pages": options.max_pages,
            "max_depth": options.max_depth,
            "export_format": options.export_format,
            "cfg_hash": settings.cfg_hash,
        }
        if seed_job_id:
            details["seed_job_id"] = seed_job_id
        self.events.log_event(job_id, "info", "Incremental clone queued" if seed_job_id else "Clone queued", details=details)
        return self.get(job_id)

    def get(self, job_id: str, include_deleted: bool = False) -> CloneJob:
        with SessionLocal() as session:
            row = session.get(JobRow, job_id)
        if row is None or (row.deleted_at is not None and not include_deleted):
            raise JobNotFound(job_id)
        return _to_job(row, self.events.entries(job_id))

    def list_for_owner(self, owner_id: str, include_logs: bool = False) -> List[CloneJob]:
        with SessionLocal() as session:
            rows = session.execute(
                select(JobRow)
                .where(JobRow.owner_id == owner_id, JobRow.deleted_at.is_(None))
                .order_by(JobRow.created_at.desc())
            ).scalars().all()
        return [_to_job(r, self.events.entries(r.id) if include_logs else None) for r in rows]

    # Core compare-and-set

    @retrying(StaleWrite)
    def _apply(
        self,
        job_id: str,
        requested: str,
        allowed: Sequence[str],
        changes: Callable[[JobRow], Dict[str, Any]],
        worker_id: Optional[str] = None,
    ) -> JobRow:
        with SessionLocal() as session:
            row = session.get(JobRow, job_id)
            if row is None or row.deleted_at is not None:
                raise JobNotFound(job_id)
            if row.status not in allowed:
                raise InvalidTransition(job_id, row.status, requested)
            if worker_id is not None and row.worker_id != worker_id:
                raise InvalidTransition(job_id, f"{row.status} under worker {row.worker_id}", requested)
            values = changes(row)
            seen = row.version
            result = session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.version == seen, JobRow.status == row.status)
                .values(version=seen + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise StaleWrite(f"job {job_id} changed concurrently")
            session.commit()
        for key, value in values.items():
            setattr(row, key, value)
        row.version = seen + 1
        return row

    # Worker-side transitions

    def claim(self, job_id: str, worker_id: str) -> CloneJob:
        """Atomically move a pending job to processing under `worker_id`."""
        now = utc_now_iso()
        row = self._apply(
            job_id,
            "claim",
            _CLAIM,
            lambda r: {
                "status": "processing",
                "worker_id": worker_id,
                "started_at": r.started_at or now,
                "heartbeat_at": now,
                "message": "Cloning started",
            },
        )
        self.events.log_event(job_id, "info", "Clone started", details={"worker_id": worker_id, "url": row.target_url})
        logger.info("job %s claimed by %s", job_id, worker_id)
        return _to_job(row)

    def reclaim(self, job_id: str, worker_id: str, now: Optional[_dt.datetime] = None) -> CloneJob:
        """Hand a processing or paused job to `worker_id` once its worker has gone quiet.

        A worker is considered gone when the job's heartbeat is older than
        jobs.stale_worker_s. The new worker resumes from the job's cursor.
        """
        now = now or _dt.datetime.now(tz=_dt.timezone.utc)
        cutoff = now - _dt.timedelta(seconds=int(settings.jobs.get("stale_worker_s", 120)))
        previous: Dict[str, Optional[str]] = {}

        def changes(row: JobRow) -> Dict[str, Any]:
            seen = parse_iso(row.heartbeat_at) or parse_iso(row.started_at)
            if row.worker_id != worker_id and seen is not None and seen > cutoff:
                raise InvalidTransition(job_id, f"{row.status} under live worker {row.worker_id}", "reclaim")
            previous["worker_id"] = row.worker_id
            return {"worker_id": worker_id, "heartbeat_at": now.isoformat()}

        row = self._apply(job_id, "reclaim", _RECLAIM, changes)
        self.events.log_event(
            job_id,
            "info",
            "Clone taken over",
            details={"worker_id": worker_id, "previous_worker_id": previous.get("worker_id"), "resume_from": row.cursor},
        )
        logger.info("job %s taken over by %s from %s at page %s", job_id, worker_id, previous.get("worker_id"), row.cursor)
        return _to_job(row)

    def recoverable(self, owner_id: Optional[str] = None, now: Optional[_dt.datetime] = None) -> List[str]:
        """Jobs without a live worker: pending ones and processing ones with a stale heartbeat."""
        now = now or _dt.datetime.now(tz=_dt.timezone.utc)
        cutoff = now - _dt.timedelta(seconds=int(settings.jobs.get("stale_worker_s", 120)))
        stmt = (
            select(JobRow.id, JobRow.status, JobRow.heartbeat_at, JobRow.started_at)
            .where(JobRow.status.in_(("pending", "processing")), JobRow.deleted_at.is_(None))
            .order_by(JobRow.created_at.asc())
        )
        if owner_id is not None:
            stmt = stmt.where(JobRow.owner_id == owner_id)
        with SessionLocal() as session:
            rows = session.execute(stmt).all()
        found: List[str] = []
        for job_id, status, heartbeat_at, started_at in rows:
            seen = parse_iso(heartbeat_at) or parse_iso(started_at)
            if status == "pending" or seen is None or seen <= cutoff:
                found.append(job_id)
        return found

    def report_progress(
        self,
        job_id: str,
        worker_id: str,
        pages_cloned: Optional[int] = None,
        assets_captured: Optional[int] = None,
        bytes_captured: Optional[int] = None,
        cursor: Optional[int] = None,
        current_url: Optional[str] = None,
        message: Optional[str] = None,
        progress_percent: Optional[int] = None,
    ) -> CloneJob:
        """Merge a progress report. Counters and progress never move backwards."""

        def changes(row: JobRow) -> Dict[str, Any]:
            values: Dict[str, Any] = {"heartbeat_at": utc_now_iso()}
            pages = max(row.pages_cloned or 0, pages_cloned or 0)
            values["pages_cloned"] = pages
            values["assets_captured"] = max(row.assets_captured or 0, assets_captured or 0)
            values["bytes_captured"] = max(row.bytes_captured or 0, bytes_captured or 0)
            values["cursor"] = max(row.cursor or 0, cursor or 0)
            if progress_percent is None:
                max_pages = int(loads_json(row.options_json, {}).get("max_pages") or 1)
                proposed = int(pages * 100 / max_pages)
            else:
                proposed = int(progress_percent)
            values["progress_percent"] = max(row.progress_percent or 0, min(proposed, MAX_RUNNING_PROGRESS))
            if current_url is not None:
                values["current_url"] = current_url
            if message is not None:
                values["message"] = message
            return values

        row = self._apply(job_id, "report progress", _PROGRESS, changes, worker_id=worker_id)
        return _to_job(row)

    def record_transient_error(self, job_id: str, worker_id: str, url: Optional[str], error: str) -> int:
        """Record a single-page failure; returns how many errors the job has accumulated."""
        text = f"{url}: {error}" if url else error
        row = self._apply(
            job_id,
            "record error",
            _PROGRESS,
            lambda r: {"errors_json": dumps_json(loads_json(r.errors_json, []) + [text]), "heartbeat_at": utc_now_iso()},
            worker_id=worker_id,
        )
        self.events.log_event(job_id, "warning", f"Failed to capture {url or 'page'}", details={"error": error})
        return len(loads_json(row.errors_json, []))

    def log(self, job_id: str, level: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.events.log_event(job_id, level, message, details=details)

    def checkpoint(self, job_id: str, worker_id: str) -> Directive:
        """Directive for a worker between pages; also refreshes its heartbeat."""
        with SessionLocal() as session:
            row = session.get(JobRow, job_id)
            if row is None or row.deleted_at is not None or row.worker_id != worker_id:
                return "stop"
            if row.status not in ("processing", "paused"):
                return "stop"
            session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.worker_id == worker_id)
                .values(heartbeat_at=utc_now_iso())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return "continue" if row.status == "processing" else "pause"

    def complete(
        self,
        job_id: str,
        worker_id: str,
        output_location: str,
        export_location: Optional[str] = None,
        verification: Optional[VerificationReport] = None,
        verification_skipped: bool = False,
    ) -> CloneJob:
        """Finish a crawl. Verification, when requested, must be supplied or explicitly skipped."""
        now = utc_now_iso()

        def changes(row: JobRow) -> Dict[str, Any]:
            wants_verify = bool(loads_json(row.options_json, {}).get("verify", True))
            skipped = verification_skipped or not wants_verify
            if verification is None and not skipped:
                raise InvalidTransition(job_id, row.status, "complete without a verification report")
            values: Dict[str, Any] = {
                "status": "completed",
                "progress_percent": 100,
                "output_location": output_location,
                "export_location": export_location,
                "completed_at": now,
                "heartbeat_at": now,
                "current_url": None,
                "message": f"Clone completed: {row.pages_cloned or 0} pages, {row.assets_captured or 0} assets",
                "verification_skipped": verification is None,
            }
            if verification is not None:
                report = verification if verification.timestamp else verification.model_copy(update={"timestamp": now})
                values["verification_json"] = dumps_json(report.model_dump())
            return values

        row = self._apply(job_id, "complete", _COMPLETE, changes, worker_id=worker_id)
        self._settle_reservation(row, commit=True)
        self.events.log_event(
            job_id,
            "success",
            row.message,
            details={
                "pages_cloned": row.pages_cloned,
                "assets_captured": row.assets_captured,
                "output_location": output_location,
                "export_location": export_location,
            },
        )
        if verification is not None:
            self.events.log_event(
                job_id,
                "success" if verification.passed else "warning",
                f"Verification recorded: {verification.summary or ('passed' if verification.passed else 'failed')}",
                details={"passed": verification.passed, "score": verification.score, "checks": len(verification.checks)},
            )
        elif row.verification_skipped:
            self.events.log_event(job_id, "info", "Verification skipped")
        logger.info("job %s completed (%s pages)", job_id, row.pages_cloned)
        self.events.forget(job_id)
        return _to_job(row)

    # Control transitions

    def pause(self, job_id: str) -> CloneJob:
        now = utc_now_iso()
        row = self._apply(job_id, "pause", _PAUSE, lambda r: {"status": "paused", "paused_at": now, "message": "Paused"})
        self.events.log_event(job_id, "info", "Job paused", details={"pages_cloned": row.pages_cloned, "cursor": row.cursor})
        return _to_job(row)

    def resume(self, job_id: str) -> CloneJob:
        now = utc_now_iso()
        row = self._apply(
            job_id,
            "resume",
            _RESUME,
            lambda r: {"status": "processing", "paused_at": None, "heartbeat_at": now, "message": "Resumed"},
        )
        self.events.log_event(job_id, "info", "Job resumed", details={"resume_from": row.cursor})
        return _to_job(row)

    def stop(self, job_id: str, reason: str = "Stopped by user") -> CloneJob:
        return self._fail(job_id, "stop", _STOP, reason, f"Job stopped: {reason}")

    def fail(self, job_id: str, reason: str, worker_id: Optional[str] = None) -> CloneJob:
        """Fail a job on an unrecoverable error; partial counters are kept."""
        return self._fail(job_id, "fail", _FAIL, reason, f"Clone failed: {reason}", worker_id=worker_id)

    def _fail(
        self,
        job_id: str,
        requested: str,
        allowed: Sequence[str],
        reason: str,
        log_message: str,
        worker_id: Optional[str] = None,
    ) -> CloneJob:
        now = utc_now_iso()
        row = self._apply(
            job_id,
            requested,
            allowed,
            lambda r: {
                "status": "failed",
                "completed_at": now,
                "paused_at": None,
                "current_url": None,
                "message": reason,
                "errors_json": dumps_json(loads_json(r.errors_json, []) + [reason]),
            },
            worker_id=worker_id,
        )
        self._settle_reservation(row, commit=False)
        self.events.log_event(
            job_id,
            "error",
            log_message,
            details={"reason": reason, "pages_cloned": row.pages_cloned, "assets_captured": row.assets_captured},
        )
        logger.info("job %s failed: %s", job_id, reason)
        self.events.forget(job_id)
        return _to_job(row)

    def _settle_reservation(self, row: JobRow, commit: bool) -> None:
        if not row.reservation_id:
            return
        if commit:
            cost = self.ledger.cost_for_pages(row.pages_cloned or 0)
            try:
                self.ledger.commit(row.reservation_id, cost)
            except ReservationError as e:
                logger.warning("job %s: %s", row.id, e)
                return
            self.events.log_event(row.id, "info", f"Charged {cost} credits", details={"reservation_id": row.reservation_id})
        elif self.ledger.release(row.reservation_id):
            self.events.log_event(row.id, "info", "Credit hold released", details={"reservation_id": row.reservation_id})

    # Housekeeping

    def reap_hung(self, older_than_s: int, now: Optional[_dt.datetime] = None) -> List[str]:
        """Force-fail processing jobs whose worker stopped checking in."""
        now = now or _dt.datetime.now(tz=_dt.timezone.utc)
        cutoff = now - _dt.timedelta(seconds=older_than_s)
        with SessionLocal() as session:
            rows = session.execute(
                select(JobRow.id, JobRow.heartbeat_at, JobRow.started_at).where(
                    JobRow.status == "processing", JobRow.deleted_at.is_(None)
                )
            ).all()
        reaped: List[str] = []
        for job_id, heartbeat_at, started_at in rows:
            seen = parse_iso(heartbeat_at) or parse_iso(started_at)
            if seen is None or seen >= cutoff:
                continue
            try:
                self.fail(job_id, f"Worker unresponsive for more than {older_than_s}s")
            except InvalidTransition:
                # Finished or paused since the scan
                continue
            reaped.append(job_id)
        if reaped:
            logger.warning("reaped %d hung jobs", len(reaped))
        return reaped

    def soft_delete(self, job_id: str) -> CloneJob:
        now = utc_now_iso()
        row = self._apply(
            job_id,
            "delete",
            ("pending", "processing", "paused", "completed", "failed"),
            lambda r: {"deleted_at": now},
        )
        self.events.log_event(job_id, "info", "Job deleted")
        self.events.forget(job_id)
        return _to_job(row)
