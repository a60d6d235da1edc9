from __future__ import annotations

import datetime as _dt
import logging
import uuid
from typing import List, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from .errors import CloneEngineError, JobNotFound, JobValidationError, SiteNotFound
from .orchestrator import JobOrchestrator
from .schemas import BackupVersion, CloneJob, FailoverEvent, MonitoredSite
from .settings import settings
from .storage import (
    BackupRunRow,
    BackupVersionRow,
    FailoverEventRow,
    MonitoredSiteRow,
    SessionLocal,
    parse_iso,
)
from .urltools import validate_target_url


logger = logging.getLogger(__name__)

HEALTH_STATUSES = ("online", "degraded", "offline")


def _utc(now: Optional[_dt.datetime]) -> _dt.datetime:
    return now or _dt.datetime.now(tz=_dt.timezone.utc)


def _to_site(row: MonitoredSiteRow) -> MonitoredSite:
    return MonitoredSite(
        id=row.id,
        owner_id=row.owner_id,
        url=row.url,
        sync_enabled=row.sync_enabled,
        sync_interval_minutes=row.sync_interval_minutes,
        failover_enabled=row.failover_enabled,
        status=row.status,
        response_time_ms=row.response_time_ms,
        last_check_at=row.last_check_at,
        offline_since=row.offline_since,
        failover_active=row.failover_active,
        last_backup_at=row.last_backup_at,
        backup_count=row.backup_count or 0,
        created_at=row.created_at,
    )


def _to_version(row: BackupVersionRow) -> BackupVersion:
    return BackupVersion(
        id=row.id,
        site_id=row.site_id,
        job_id=row.job_id,
        timestamp=row.timestamp,
        size_bytes=row.size_bytes or 0,
        page_count=row.page_count or 0,
        asset_count=row.asset_count or 0,
        type=row.type,
        status=row.status,
    )


def _to_event(row: FailoverEventRow) -> FailoverEvent:
    return FailoverEvent(
        id=row.id,
        site_id=row.site_id,
        timestamp=row.timestamp,
        type=row.type,
        reason=row.reason,
        duration_seconds=row.duration_seconds,
    )


def backup_status(job: CloneJob) -> str:
    if job.status == "completed":
        if job.verification is not None and not job.verification.passed:
            return "partial"
        return "complete"
    return "partial" if job.pages_cloned > 0 else "failed"


class DisasterRecoveryScheduler:
    """Periodic backups and failover tracking for monitored sites.

    Two recurring activities run on independent APScheduler interval jobs:
    tick_backups (collect finished backup jobs, then launch the due ones)
    and evaluate_failover. Both can also be driven directly with an explicit
    `now`.
    """

    def __init__(self, orchestrator: JobOrchestrator, scheduler: Optional[BackgroundScheduler] = None) -> None:
        self.orchestrator = orchestrator
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    # Sites

    def register_site(
        self,
        owner_id: str,
        url: str,
        sync_interval_minutes: int = 60,
        sync_enabled: bool = True,
        failover_enabled: bool = False,
    ) -> MonitoredSite:
        target = validate_target_url(url)
        if int(sync_interval_minutes) < 1:
            raise JobValidationError("sync_interval_minutes must be at least 1")
        row = MonitoredSiteRow(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            url=target,
            sync_enabled=bool(sync_enabled),
            sync_interval_minutes=int(sync_interval_minutes),
            failover_enabled=bool(failover_enabled),
            status="unknown",
            failover_active=False,
            backup_count=0,
            created_at=_utc(None).isoformat(),
        )
        with SessionLocal() as session:
            session.add(row)
            session.commit()
        logger.info("monitoring %s for %s every %d min", target, owner_id, row.sync_interval_minutes)
        return _to_site(row)

    def update_site(
        self,
        site_id: str,
        sync_interval_minutes: Optional[int] = None,
        sync_enabled: Optional[bool] = None,
        failover_enabled: Optional[bool] = None,
    ) -> MonitoredSite:
        with SessionLocal() as session:
            row = self._load(session, site_id)
            if sync_interval_minutes is not None:
                if int(sync_interval_minutes) < 1:
                    raise JobValidationError("sync_interval_minutes must be at least 1")
                row.sync_interval_minutes = int(sync_interval_minutes)
            if sync_enabled is not None:
                row.sync_enabled = bool(sync_enabled)
            if failover_enabled is not None:
                row.failover_enabled = bool(failover_enabled)
            session.commit()
            return _to_site(row)

    def unregister_site(self, site_id: str) -> None:
        with SessionLocal() as session:
            row = self._load(session, site_id)
            session.delete(row)
            session.commit()
        logger.info("stopped monitoring site %s", site_id)

    def get_site(self, site_id: str) -> MonitoredSite:
        with SessionLocal() as session:
            return _to_site(self._load(session, site_id))

    def list_sites(self, owner_id: str) -> List[MonitoredSite]:
        with SessionLocal() as session:
            rows = session.execute(
                select(MonitoredSiteRow).where(MonitoredSiteRow.owner_id == owner_id).order_by(MonitoredSiteRow.created_at)
            ).scalars().all()
            return [_to_site(r) for r in rows]

    def versions(self, site_id: str) -> List[BackupVersion]:
        with SessionLocal() as session:
            rows = session.execute(
                select(BackupVersionRow).where(BackupVersionRow.site_id == site_id).order_by(BackupVersionRow.id.desc())
            ).scalars().all()
            return [_to_version(r) for r in rows]

    def failover_events(self, site_id: str) -> List[FailoverEvent]:
        with SessionLocal() as session:
            rows = session.execute(
                select(FailoverEventRow).where(FailoverEventRow.site_id == site_id).order_by(FailoverEventRow.id.asc())
            ).scalars().all()
            return [_to_event(r) for r in rows]

    def _load(self, session, site_id: str) -> MonitoredSiteRow:
        row = session.get(MonitoredSiteRow, site_id)
        if row is None:
            raise SiteNotFound(site_id)
        return row

    # Backups

    def tick_backups(self, now: Optional[_dt.datetime] = None) -> List[str]:
        self.collect_backups()
        return self.run_due_backups(now)

    def run_due_backups(self, now: Optional[_dt.datetime] = None) -> List[str]:
        """Launch a backup job for every site whose sync interval has elapsed."""
        now = _utc(now)
        launched: List[str] = []
        with SessionLocal() as session:
            sites = session.execute(select(MonitoredSiteRow).where(MonitoredSiteRow.sync_enabled.is_(True))).scalars().all()
        for site in sites:
            if not self._is_due(site, now):
                continue
            job_id = self._launch_backup(site, now)
            if job_id:
                launched.append(job_id)
        return launched

    def _is_due(self, site: MonitoredSiteRow, now: _dt.datetime) -> bool:
        with SessionLocal() as session:
            in_flight = session.execute(
                select(BackupRunRow.id).where(BackupRunRow.site_id == site.id, BackupRunRow.collected.is_(False))
            ).first()
            if in_flight is not None:
                return False
            last_run = session.execute(
                select(BackupRunRow.launched_at).where(BackupRunRow.site_id == site.id).order_by(BackupRunRow.id.desc()).limit(1)
            ).scalar()
            last_version = session.execute(
                select(BackupVersionRow.timestamp)
                .where(BackupVersionRow.site_id == site.id)
                .order_by(BackupVersionRow.id.desc())
                .limit(1)
            ).scalar()
        attempts = [t for t in (parse_iso(last_run), parse_iso(last_version)) if t is not None]
        if not attempts:
            return True
        return now - max(attempts) >= _dt.timedelta(minutes=site.sync_interval_minutes)

    def _latest_completed_job(self, site_id: str) -> Optional[CloneJob]:
        with SessionLocal() as session:
            job_ids = session.execute(
                select(BackupVersionRow.job_id)
                .where(BackupVersionRow.site_id == site_id, BackupVersionRow.job_id.is_not(None))
                .order_by(BackupVersionRow.id.desc())
            ).scalars().all()
        for job_id in job_ids:
            try:
                job = self.orchestrator.machine.get(job_id)
            except JobNotFound:
                continue
            if job.status == "completed":
                return job
        return None

    def _launch_backup(self, site: MonitoredSiteRow, now: _dt.datetime) -> Optional[str]:
        seed = self._latest_completed_job(site.id)
        backup_type = "incremental" if seed is not None else "full"
        try:
            if seed is not None:
                job = self.orchestrator.rerun_incremental(seed.id, site.owner_id)
            else:
                job = self.orchestrator.submit(site.owner_id, site.url)
        except CloneEngineError as e:
            logger.warning("backup of site %s not started: %s", site.id, e)
            with SessionLocal() as session:
                session.add(
                    BackupVersionRow(
                        site_id=site.id,
                        job_id=None,
                        timestamp=now.isoformat(),
                        size_bytes=0,
                        page_count=0,
                        asset_count=0,
                        type=backup_type,
                        status="failed",
                    )
                )
                session.commit()
            return None
        with SessionLocal() as session:
            session.add(BackupRunRow(site_id=site.id, job_id=job.id, type=backup_type, launched_at=now.isoformat(), collected=False))
            session.commit()
        logger.info("started %s backup of site %s as job %s", backup_type, site.id, job.id)
        return job.id

    def collect_backups(self) -> List[BackupVersion]:
        """Record a BackupVersion for every backup job that has reached a terminal state."""
        collected: List[BackupVersion] = []
        with SessionLocal() as session:
            runs = session.execute(select(BackupRunRow).where(BackupRunRow.collected.is_(False))).scalars().all()
        for run in runs:
            try:
                job = self.orchestrator.machine.get(run.job_id, include_deleted=True)
            except JobNotFound:
                job = None
            if job is not None and not job.is_terminal:
                continue
            with SessionLocal() as session:
                status = backup_status(job) if job is not None else "failed"
                version = BackupVersionRow(
                    site_id=run.site_id,
                    job_id=run.job_id,
                    timestamp=(job.completed_at if job is not None and job.completed_at else run.launched_at),
                    size_bytes=job.bytes_captured if job is not None else 0,
                    page_count=job.pages_cloned if job is not None else 0,
                    asset_count=job.assets_captured if job is not None else 0,
                    type=run.type,
                    status=status,
                )
                session.add(version)
                stored_run = session.get(BackupRunRow, run.id)
                stored_run.collected = True
                site = session.get(MonitoredSiteRow, run.site_id)
                if site is not None and status != "failed":
                    site.backup_count = (site.backup_count or 0) + 1
                    site.last_backup_at = version.timestamp
                session.commit()
                collected.append(_to_version(version))
        return collected

    # Failover

    def record_health(
        self,
        site_id: str,
        status: str,
        response_time_ms: int = 0,
        at: Optional[_dt.datetime] = None,
    ) -> MonitoredSite:
        if status not in HEALTH_STATUSES:
            raise JobValidationError(f"health status must be one of {HEALTH_STATUSES}")
        ts = _utc(at).isoformat()
        with SessionLocal() as session:
            row = self._load(session, site_id)
            if row.status != status:
                logger.info("site %s is now %s", site_id, status)
            row.status = status
            row.response_time_ms = int(response_time_ms)
            row.last_check_at = ts
            if status == "offline":
                row.offline_since = row.offline_since or ts
            else:
                row.offline_since = None
            session.commit()
            return _to_site(row)

    def evaluate_failover(self, now: Optional[_dt.datetime] = None) -> List[FailoverEvent]:
        now = _utc(now)
        grace = _dt.timedelta(seconds=int(settings.dr.get("grace_period_s", 300)))
        events: List[FailoverEvent] = []
        with SessionLocal() as session:
            sites = session.execute(select(MonitoredSiteRow)).scalars().all()
            for site in sites:
                offline_since = parse_iso(site.offline_since)
                if (
                    site.failover_enabled
                    and not site.failover_active
                    and site.status == "offline"
                    and offline_since is not None
                    and now - offline_since >= grace
                ):
                    down_for = int((now - offline_since).total_seconds())
                    event = FailoverEventRow(
                        site_id=site.id,
                        timestamp=now.isoformat(),
                        type="triggered",
                        reason=f"Site offline for {down_for}s",
                    )
                    site.failover_active = True
                    site.failover_started_at = now.isoformat()
                    session.add(event)
                    session.flush()
                    events.append(_to_event(event))
                    logger.warning("failover triggered for site %s (%s)", site.id, site.url)
                elif site.failover_active and site.status == "online":
                    started = parse_iso(site.failover_started_at) or now
                    event = FailoverEventRow(
                        site_id=site.id,
                        timestamp=now.isoformat(),
                        type="resolved",
                        reason="Site back online",
                        duration_seconds=max(0, int((now - started).total_seconds())),
                    )
                    site.failover_active = False
                    site.failover_started_at = None
                    session.add(event)
                    session.flush()
                    events.append(_to_event(event))
                    logger.info("failover resolved for site %s after %ss", site.id, event.duration_seconds)
            session.commit()
        return events

    def trigger_manual_failover(self, site_id: str, reason: str = "Manual failover", now: Optional[_dt.datetime] = None) -> FailoverEvent:
        now = _utc(now)
        with SessionLocal() as session:
            site = self._load(session, site_id)
            event = FailoverEventRow(site_id=site_id, timestamp=now.isoformat(), type="manual", reason=reason)
            site.failover_active = True
            site.failover_started_at = site.failover_started_at or now.isoformat()
            session.add(event)
            session.commit()
            return _to_event(event)

    # Scheduling

    def start(self) -> None:
        logger.info("Starting disaster-recovery scheduler...")
        self.scheduler.add_job(
            self.tick_backups,
            trigger=IntervalTrigger(seconds=int(settings.dr.get("backup_tick_s", 60))),
            id="dr_backups",
            name="DR backups",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.evaluate_failover,
            trigger=IntervalTrigger(seconds=int(settings.dr.get("failover_tick_s", 15))),
            id="dr_failover",
            name="DR failover evaluation",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Scheduler started with %d jobs", len(self.scheduler.get_jobs()))

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def _on_job_executed(self, event) -> None:
        if event.exception:
            logger.error("DR job %s failed: %s", event.job_id, event.exception)
        else:
            logger.debug("DR job %s executed", event.job_id)
