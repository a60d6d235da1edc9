from __future__ import annotations

import threading
from pathlib import Path

import pytest

from clonejobs.errors import InvalidTransition
from clonejobs.schemas import CloneOptions, VerificationCheck
from clonejobs.settings import settings
from clonejobs.state_machine import JobStateMachine
from clonejobs.verification import summarize_checks
from clonejobs.worker import CloneWorker, CrawlFinished, CrawlLog, PageCaptured, PageFailed, WorkerPool


class ScriptedCrawler:
    """Yields `pages` pages, calling `hooks[i]` right before page i is yielded."""

    def __init__(self, pages=3, assets_per_page=2, failures=(), hooks=None, crash_at=None):
        self.pages = pages
        self.assets_per_page = assets_per_page
        self.failures = set(failures)
        self.hooks = hooks or {}
        self.crash_at = crash_at
        self.resume_from = None

    def crawl(self, job, output_dir: Path, resume_from: int):
        self.resume_from = resume_from
        yield CrawlLog("info", f"Crawling {job.target_url}")
        for i in range(resume_from, self.pages):
            if i in self.hooks:
                self.hooks[i](job)
            if i == self.crash_at:
                raise RuntimeError("renderer crashed")
            if i in self.failures:
                yield PageFailed(f"{job.target_url}p{i}", "timeout")
                continue
            (output_dir / f"page{i}.html").write_text("<html></html>", encoding="utf-8")
            yield PageCaptured(f"{job.target_url}p{i}", assets=self.assets_per_page, bytes=1000)
        yield CrawlFinished(str(output_dir), export_location=str(output_dir) + ".zip")


class PassingVerifier:
    def verify(self, job, output_location):
        return summarize_checks([VerificationCheck(name="doctype", category="html", passed=True)])


def _submit(machine, ledger, owner, max_pages=5, verify=True):
    rid = ledger.reserve(owner, max_pages)
    return machine.create(owner, "https://example.com/", CloneOptions(max_pages=max_pages, verify=verify), reservation_id=rid)


def test_worker_runs_job_to_completion(ledger, funded, owner, tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "artifacts_base_dir", str(tmp_path))
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner)

    done = CloneWorker(machine, ScriptedCrawler(pages=3), PassingVerifier()).run(job.id)

    assert done.status == "completed"
    assert done.progress_percent == 100
    assert done.pages_cloned == 3
    assert done.assets_captured == 6
    assert done.bytes_captured == 3000
    assert done.verification.passed is True
    assert Path(done.output_location).is_dir()
    assert ledger.get_account(owner).balance == 7

    messages = [e.message for e in machine.get(job.id).log_entries]
    assert "Crawling https://example.com/" in messages
    assert "Clone completed: 3 pages, 6 assets" in messages


def test_missing_verifier_marks_verification_skipped(ledger, funded, owner):
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner)
    done = CloneWorker(machine, ScriptedCrawler(pages=2)).run(job.id)
    assert done.status == "completed"
    assert done.verification is None
    assert done.verification_skipped is True


def test_transient_failures_below_limit_do_not_fail_job(ledger, funded, owner):
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner, verify=False)
    done = CloneWorker(machine, ScriptedCrawler(pages=4, failures={1})).run(job.id)
    assert done.status == "completed"
    assert done.pages_cloned == 3
    assert len(done.errors) == 1


def test_too_many_transient_failures_fail_job(ledger, funded, owner, monkeypatch):
    monkeypatch.setitem(settings.jobs, "max_transient_errors", 2)
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner)

    done = CloneWorker(machine, ScriptedCrawler(pages=5, failures={0, 1, 2, 3})).run(job.id)
    assert done.status == "failed"
    assert done.message == "Too many page failures (3)"
    assert ledger.get_account(owner).available == 10


def test_crawler_crash_fails_job_and_reraises(ledger, funded, owner):
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner)

    with pytest.raises(RuntimeError):
        CloneWorker(machine, ScriptedCrawler(pages=5, crash_at=2)).run(job.id)

    failed = machine.get(job.id)
    assert failed.status == "failed"
    assert failed.pages_cloned == 2
    assert failed.message == "RuntimeError: renderer crashed"
    assert ledger.get_account(owner).reserved == 0


def test_pause_and_resume_mid_crawl_keeps_counts(ledger, funded, owner, fast_polling):
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner, verify=False)
    seen_while_paused = {}

    def resume_later(j):
        seen_while_paused["pages"] = machine.get(j.id).pages_cloned
        seen_while_paused["status"] = machine.get(j.id).status
        machine.resume(j.id)

    def pause_now(j):
        machine.pause(j.id)
        threading.Timer(0.2, resume_later, args=(j,)).start()

    done = CloneWorker(machine, ScriptedCrawler(pages=5, hooks={3: pause_now})).run(job.id)

    assert seen_while_paused == {"pages": 3, "status": "paused"}
    assert done.status == "completed"
    assert done.pages_cloned == 5
    assert done.cursor == 5


def test_stop_mid_crawl_is_honoured_at_checkpoint(ledger, funded, owner):
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner)

    done = CloneWorker(machine, ScriptedCrawler(pages=5, hooks={2: lambda j: machine.stop(j.id)})).run(job.id)

    assert done.status == "failed"
    assert done.pages_cloned == 2
    assert done.message == "Stopped by user"
    assert ledger.get_account(owner).available == 10


def test_fresh_worker_takes_over_abandoned_job_from_its_cursor(ledger, funded, owner, monkeypatch):
    monkeypatch.setitem(settings.jobs, "stale_worker_s", 0)
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner, verify=False)
    machine.claim(job.id, "gone")
    machine.report_progress(job.id, "gone", pages_cloned=3, assets_captured=6, bytes_captured=3000, cursor=3)
    machine.pause(job.id)
    machine.resume(job.id)
    before = machine.get(job.id)

    crawler = ScriptedCrawler(pages=5)
    done = CloneWorker(machine, crawler, worker_id="fresh").run(job.id)

    assert crawler.resume_from == before.pages_cloned == 3
    assert done.status == "completed"
    assert done.worker_id == "fresh"
    assert done.pages_cloned == 5
    assert done.assets_captured == 10
    messages = [e.message for e in machine.get(job.id).log_entries]
    assert "Clone taken over" in messages


def test_live_worker_keeps_its_job(ledger, funded, owner):
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = _submit(machine, ledger, owner, verify=False)
    machine.claim(job.id, "alive")

    crawler = ScriptedCrawler(pages=5)
    with pytest.raises(InvalidTransition):
        CloneWorker(machine, crawler, worker_id="fresh").run(job.id)

    assert crawler.resume_from is None
    current = machine.get(job.id)
    assert current.status == "processing"
    assert current.worker_id == "alive"


def test_pool_recovers_undispatched_and_abandoned_jobs(ledger, funded, owner, monkeypatch):
    monkeypatch.setitem(settings.jobs, "stale_worker_s", 0)
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    waiting = _submit(machine, ledger, owner, max_pages=4, verify=False)
    abandoned = _submit(machine, ledger, owner, max_pages=4, verify=False)
    machine.claim(abandoned.id, "gone")
    machine.report_progress(abandoned.id, "gone", pages_cloned=2, assets_captured=4, bytes_captured=2000, cursor=2)

    pool = WorkerPool(machine, ScriptedCrawler(pages=4), max_workers=2)
    try:
        assert sorted(pool.recover(owner_id=owner)) == sorted([waiting.id, abandoned.id])
        assert pool.wait(timeout=30)
    finally:
        pool.shutdown()

    for job_id in (waiting.id, abandoned.id):
        finished = machine.get(job_id)
        assert finished.status == "completed"
        assert finished.pages_cloned == 4
    assert machine.recoverable(owner_id=owner) == []
