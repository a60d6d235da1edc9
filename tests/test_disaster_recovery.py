from __future__ import annotations

import datetime as dt

import pytest

from clonejobs.disaster_recovery import DisasterRecoveryScheduler
from clonejobs.errors import JobValidationError, SiteNotFound
from clonejobs.orchestrator import JobOrchestrator
from clonejobs.schemas import VerificationReport


def _dr(ledger) -> DisasterRecoveryScheduler:
    return DisasterRecoveryScheduler(JobOrchestrator(ledger=ledger))


def _run(dr: DisasterRecoveryScheduler, owner: str, now=None) -> list:
    """Launch due backups, keeping only jobs started for `owner`'s sites."""
    launched = dr.run_due_backups(now=now)
    return [j for j in launched if dr.orchestrator.machine.get(j).owner_id == owner]


def _finish(dr: DisasterRecoveryScheduler, job_id: str, pages: int, verification=None) -> None:
    machine = dr.orchestrator.machine
    machine.claim(job_id, "w1")
    machine.report_progress(job_id, "w1", pages_cloned=pages, assets_captured=pages * 2, bytes_captured=pages * 1000)
    machine.complete(job_id, "w1", output_location=f"/backups/{job_id}", verification=verification, verification_skipped=verification is None)


def test_register_site_validates(ledger, owner):
    dr = _dr(ledger)
    with pytest.raises(JobValidationError):
        dr.register_site(owner, "not-a-url")
    with pytest.raises(JobValidationError):
        dr.register_site(owner, "https://example.com", sync_interval_minutes=0)
    with pytest.raises(SiteNotFound):
        dr.get_site("missing")


def test_first_backup_full_then_incremental(ledger, funded, owner):
    funded(owner, 1000)
    dr = _dr(ledger)
    site = dr.register_site(owner, "https://shop.example.com", sync_interval_minutes=60)
    t0 = dt.datetime.now(tz=dt.timezone.utc)

    [first_id] = _run(dr, owner, now=t0)
    first = dr.orchestrator.machine.get(first_id)
    assert first.seed_job_id is None

    # Still running: nothing new is launched and nothing is collected
    assert _run(dr, owner, now=t0 + dt.timedelta(minutes=90)) == []
    dr.collect_backups()
    assert dr.versions(site.id) == []

    _finish(dr, first_id, pages=4)
    versions = [v for v in dr.collect_backups() if v.site_id == site.id]
    assert len(versions) == 1
    assert versions[0].type == "full"
    assert versions[0].status == "complete"
    assert versions[0].page_count == 4
    assert versions[0].size_bytes == 4000

    stored = dr.get_site(site.id)
    assert stored.backup_count == 1
    assert stored.last_backup_at is not None

    assert _run(dr, owner, now=t0 + dt.timedelta(minutes=30)) == []
    [second_id] = _run(dr, owner, now=t0 + dt.timedelta(minutes=61))
    second = dr.orchestrator.machine.get(second_id)
    assert second.seed_job_id == first_id
    assert second.seed_location == f"/backups/{first_id}"

    _finish(dr, second_id, pages=1, verification=VerificationReport(passed=False, score=50))
    dr.collect_backups()
    latest = dr.versions(site.id)[0]
    assert latest.type == "incremental"
    assert latest.status == "partial"
    assert dr.get_site(site.id).backup_count == 2


def test_rejected_launch_records_failed_version(ledger, funded, owner):
    funded(owner, 0)
    dr = _dr(ledger)
    site = dr.register_site(owner, "https://broke.example.com", sync_interval_minutes=10)
    t0 = dt.datetime.now(tz=dt.timezone.utc)

    assert _run(dr, owner, now=t0) == []
    versions = dr.versions(site.id)
    assert [(v.type, v.status, v.job_id) for v in versions] == [("full", "failed", None)]
    assert dr.get_site(site.id).backup_count == 0

    # Not retried until the interval has passed again
    assert _run(dr, owner, now=t0 + dt.timedelta(minutes=5)) == []
    assert len(dr.versions(site.id)) == 1


def test_failed_backup_with_pages_is_partial(ledger, funded, owner):
    funded(owner, 1000)
    dr = _dr(ledger)
    site = dr.register_site(owner, "https://flaky.example.com")
    [job_id] = _run(dr, owner)

    machine = dr.orchestrator.machine
    machine.claim(job_id, "w1")
    machine.report_progress(job_id, "w1", pages_cloned=2)
    machine.fail(job_id, "target unreachable", worker_id="w1")

    dr.collect_backups()
    [version] = dr.versions(site.id)
    assert version.status == "partial"
    assert version.page_count == 2


def test_disabled_sync_is_skipped(ledger, funded, owner):
    funded(owner, 1000)
    dr = _dr(ledger)
    site = dr.register_site(owner, "https://paused.example.com", sync_enabled=False)
    assert _run(dr, owner) == []
    dr.update_site(site.id, sync_enabled=True, sync_interval_minutes=15)
    assert len(_run(dr, owner)) == 1
    assert dr.get_site(site.id).sync_interval_minutes == 15


def test_failover_triggers_after_grace_and_resolves(ledger, owner):
    dr = _dr(ledger)
    site = dr.register_site(owner, "https://prod.example.com", failover_enabled=True)
    t0 = dt.datetime.now(tz=dt.timezone.utc)

    def mine(events):
        return [e for e in events if e.site_id == site.id]

    dr.record_health(site.id, "offline", 0, at=t0)
    assert mine(dr.evaluate_failover(now=t0 + dt.timedelta(seconds=100))) == []

    [triggered] = mine(dr.evaluate_failover(now=t0 + dt.timedelta(seconds=301)))
    assert triggered.type == "triggered"
    assert dr.get_site(site.id).failover_active is True
    assert mine(dr.evaluate_failover(now=t0 + dt.timedelta(seconds=400))) == []

    dr.record_health(site.id, "degraded", 900, at=t0 + dt.timedelta(seconds=450))
    assert mine(dr.evaluate_failover(now=t0 + dt.timedelta(seconds=450))) == []

    dr.record_health(site.id, "online", 120, at=t0 + dt.timedelta(seconds=500))
    [resolved] = mine(dr.evaluate_failover(now=t0 + dt.timedelta(seconds=500)))
    assert resolved.type == "resolved"
    assert resolved.duration_seconds == 199
    assert dr.get_site(site.id).failover_active is False
    assert [e.type for e in dr.failover_events(site.id)] == ["triggered", "resolved"]


def test_flapping_site_does_not_trigger(ledger, owner):
    dr = _dr(ledger)
    site = dr.register_site(owner, "https://flap.example.com", failover_enabled=True)
    t0 = dt.datetime.now(tz=dt.timezone.utc)
    dr.record_health(site.id, "offline", at=t0)
    dr.record_health(site.id, "online", 80, at=t0 + dt.timedelta(seconds=200))
    dr.record_health(site.id, "offline", at=t0 + dt.timedelta(seconds=250))
    events = dr.evaluate_failover(now=t0 + dt.timedelta(seconds=400))
    assert [e for e in events if e.site_id == site.id] == []


def test_manual_failover_and_unregister(ledger, owner):
    dr = _dr(ledger)
    site = dr.register_site(owner, "https://manual.example.com")
    event = dr.trigger_manual_failover(site.id, "maintenance window")
    assert event.type == "manual"
    assert event.reason == "maintenance window"
    assert dr.get_site(site.id).failover_active is True

    dr.unregister_site(site.id)
    with pytest.raises(SiteNotFound):
        dr.get_site(site.id)
    assert all(s.id != site.id for s in dr.list_sites(owner))


def test_scheduler_registers_independent_jobs(ledger):
    dr = _dr(ledger)
    dr.start()
    try:
        jobs = {job.id: job for job in dr.scheduler.get_jobs()}
        assert set(jobs) == {"dr_backups", "dr_failover"}
        assert all(job.max_instances == 1 for job in jobs.values())
    finally:
        dr.shutdown()
    assert not dr.scheduler.running
