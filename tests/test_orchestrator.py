from __future__ import annotations

from pathlib import Path

import pytest

from clonejobs.errors import InsufficientCredit, InvalidTransition, JobNotFound, JobValidationError, NotJobOwner
from clonejobs.orchestrator import JobOrchestrator
from clonejobs.outputs import LocalOutputStore
from clonejobs.settings import settings
from clonejobs.worker import CrawlFinished, PageCaptured, WorkerPool


def _finish(orch: JobOrchestrator, job_id: str, pages: int, output_location: str = "/tmp/out") -> None:
    machine = orch.machine
    machine.claim(job_id, "w1")
    machine.report_progress(job_id, "w1", pages_cloned=pages)
    machine.complete(job_id, "w1", output_location=output_location, verification_skipped=True)


@pytest.mark.parametrize("url", ["not-a-url", "", "   ", "ftp://example.com/", "https://", "http://exa mple.com", "https://localhost:99999/"])
def test_invalid_url_rejected_before_any_state(ledger, funded, owner, url):
    funded(owner, 10)
    orch = JobOrchestrator(ledger=ledger)
    before = ledger.history(owner)

    with pytest.raises(JobValidationError):
        orch.submit(owner, url)

    assert orch.list_jobs(owner) == []
    assert ledger.get_account(owner).reserved == 0
    assert len(ledger.history(owner)) == len(before)


def test_invalid_options_rejected(ledger, funded, owner):
    funded(owner, 10)
    orch = JobOrchestrator(ledger=ledger)
    with pytest.raises(JobValidationError):
        orch.submit(owner, "https://example.com", {"max_pages": 0})
    with pytest.raises(JobValidationError):
        orch.submit(owner, "https://example.com", {"export_format": "pdf"})
    assert orch.list_jobs(owner) == []


def test_submit_reserves_worst_case_and_queues_job(ledger, funded, owner):
    funded(owner, 10)
    orch = JobOrchestrator(ledger=ledger)
    job = orch.submit(owner, "HTTPS://Example.com#top", {"max_pages": 5, "export_format": "WARC"})

    assert job.status == "pending"
    assert job.target_url == "https://example.com/"
    assert job.options.export_format == "warc"
    assert ledger.get_reservation(job.reservation_id).amount == 5
    assert ledger.get_account(owner).available == 5
    assert [j.id for j in orch.list_jobs(owner)] == [job.id]


def test_insufficient_credit_creates_nothing_and_retry_is_clean(ledger, funded, owner):
    funded(owner, 3)
    orch = JobOrchestrator(ledger=ledger)
    for _ in range(2):
        with pytest.raises(InsufficientCredit):
            orch.submit(owner, "https://example.com", {"max_pages": 5})
    assert orch.list_jobs(owner) == []
    acct = ledger.get_account(owner)
    assert acct.balance == 3
    assert acct.reserved == 0


def test_scenario_reserve_five_complete_three(ledger, funded, owner):
    funded(owner, 10)
    orch = JobOrchestrator(ledger=ledger)
    job = orch.submit(owner, "https://example.com", {"max_pages": 5, "verify": False})
    _finish(orch, job.id, pages=3)

    assert orch.get(job.id, owner).progress_percent == 100
    assert ledger.get_account(owner).balance == 7


def test_control_requires_ownership(ledger, funded, owner):
    funded(owner, 10)
    orch = JobOrchestrator(ledger=ledger)
    job = orch.submit(owner, "https://example.com", {"max_pages": 5})

    for op in (orch.get, orch.pause, orch.resume, orch.stop, orch.rerun_incremental, orch.delete):
        with pytest.raises(NotJobOwner):
            op(job.id, "someone-else")
    assert orch.get(job.id, owner).status == "pending"


def test_pause_resume_stop_via_orchestrator(ledger, funded, owner):
    funded(owner, 10)
    orch = JobOrchestrator(ledger=ledger)
    job = orch.submit(owner, "https://example.com", {"max_pages": 5})

    with pytest.raises(InvalidTransition):
        orch.pause(job.id, owner)
    orch.machine.claim(job.id, "w1")
    assert orch.pause(job.id, owner).status == "paused"
    assert orch.resume(job.id, owner).status == "processing"
    stopped = orch.stop(job.id, owner)
    assert stopped.status == "failed"
    assert ledger.get_account(owner).available == 10


def test_rerun_only_from_completed_and_seeds_new_job(ledger, funded, owner):
    funded(owner, 20)
    orch = JobOrchestrator(ledger=ledger)
    source = orch.submit(owner, "https://example.com/docs", {"max_pages": 5, "verify": False})

    with pytest.raises(InvalidTransition):
        orch.rerun_incremental(source.id, owner)

    _finish(orch, source.id, pages=4, output_location="/data/clones/source")
    rerun = orch.rerun_incremental(source.id, owner)

    assert rerun.id != source.id
    assert rerun.status == "pending"
    assert rerun.is_incremental
    assert rerun.seed_job_id == source.id
    assert rerun.seed_location == "/data/clones/source"
    assert rerun.target_url == source.target_url
    assert rerun.options == orch.get(source.id, owner).options
    # The source job is untouched
    assert orch.get(source.id, owner).status == "completed"
    assert ledger.get_account(owner).balance == 16
    assert ledger.get_account(owner).reserved == 5


def test_delete_running_job_stops_releases_and_removes_output(ledger, funded, owner, tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "artifacts_base_dir", str(tmp_path))
    funded(owner, 10)
    orch = JobOrchestrator(ledger=ledger)
    job = orch.submit(owner, "https://example.com", {"max_pages": 5})
    orch.machine.claim(job.id, "w1")

    deleted = orch.delete(job.id, owner)
    assert deleted.status == "failed"
    assert deleted.deleted_at is not None
    assert ledger.get_account(owner).available == 10
    assert orch.list_jobs(owner) == []
    with pytest.raises(JobNotFound):
        orch.get(job.id, owner)

    done = orch.submit(owner, "https://example.com", {"max_pages": 5, "verify": False})
    out_dir = LocalOutputStore().output_dir_for(done.id)
    (out_dir / "index.html").write_text("<html></html>", encoding="utf-8")
    _finish(orch, done.id, pages=2, output_location=str(out_dir))

    orch.delete(done.id, owner)
    assert not out_dir.exists()
    assert ledger.get_account(owner).balance == 8


def test_local_output_store_refuses_paths_outside_artifacts(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "artifacts_base_dir", str(tmp_path / "artifacts"))
    outside = tmp_path / "precious.txt"
    outside.write_text("keep", encoding="utf-8")
    assert LocalOutputStore().remove(str(outside)) is False
    assert outside.exists()
    assert LocalOutputStore().remove(None) is False


class _TwoPageCrawler:
    def crawl(self, job, output_dir: Path, resume_from: int):
        for i in range(resume_from, 2):
            yield PageCaptured(f"{job.target_url}{i}", assets=1, bytes=10)
        yield CrawlFinished(str(output_dir))


def test_submit_dispatches_to_worker_pool(ledger, funded, owner):
    funded(owner, 10)
    orch = JobOrchestrator(ledger=ledger)
    pool = WorkerPool(orch.machine, _TwoPageCrawler(), max_workers=2)
    orch.pool = pool
    try:
        jobs = [orch.submit(owner, "https://example.com", {"max_pages": 3, "verify": False}) for _ in range(3)]
        assert pool.wait(timeout=30)
    finally:
        pool.shutdown()

    finished = [orch.get(j.id, owner) for j in jobs]
    assert all(j.status == "completed" for j in finished)
    assert all(j.pages_cloned == 2 for j in finished)
    assert ledger.get_account(owner).balance == 4
