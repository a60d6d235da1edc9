from __future__ import annotations

import pytest

from clonejobs.errors import JobNotFound, VerificationRejected
from clonejobs.schemas import CloneOptions, VerificationCheck, VerificationReport
from clonejobs.state_machine import JobStateMachine
from clonejobs.verification import VerificationRecorder, summarize_checks


def _check(name, category, passed):
    return VerificationCheck(name=name, category=category, passed=passed, message="")


def test_summarize_checks_scores_and_critical_categories():
    report = summarize_checks(
        [
            _check("doctype", "html", True),
            _check("stylesheets", "css", True),
            _check("scripts", "js", True),
            _check("images", "images", False),
        ]
    )
    assert report.score == 75
    assert report.passed is True
    assert "1 minor issues" in report.summary

    broken_css = summarize_checks([_check("doctype", "html", True), _check("stylesheets", "css", False), _check("fonts", "fonts", True), _check("links", "links", True)])
    assert broken_css.score == 75
    assert broken_css.passed is False

    strict = summarize_checks([_check("doctype", "html", True), _check("images", "images", False)], strict=True)
    assert strict.passed is False
    assert summarize_checks([]).score == 0


def test_record_attaches_report_to_failed_job_once(ledger, funded, owner):
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    recorder = VerificationRecorder(machine.events)
    job = machine.create(owner, "https://example.com/", CloneOptions(max_pages=3))

    report = VerificationReport(passed=False, score=40, summary="partial clone")
    with pytest.raises(VerificationRejected):
        recorder.record(job.id, report)

    machine.claim(job.id, "w1")
    with pytest.raises(VerificationRejected):
        recorder.record(job.id, report)

    machine.report_progress(job.id, "w1", pages_cloned=1)
    machine.fail(job.id, "target unreachable", worker_id="w1")

    stored = recorder.record(job.id, report)
    assert stored.timestamp is not None
    assert machine.get(job.id).verification.score == 40

    with pytest.raises(VerificationRejected):
        recorder.record(job.id, VerificationReport(passed=True, score=100))
    assert machine.get(job.id).verification.score == 40


def test_record_rejected_when_completion_skipped_verification(ledger, funded, owner):
    funded(owner, 10)
    machine = JobStateMachine(ledger)
    job = machine.create(owner, "https://example.com/", CloneOptions(max_pages=3, verify=False))
    machine.claim(job.id, "w1")
    machine.complete(job.id, "w1", output_location="/tmp/out")

    with pytest.raises(VerificationRejected):
        VerificationRecorder().record(job.id, VerificationReport(passed=True, score=99))


def test_record_unknown_job():
    with pytest.raises(JobNotFound):
        VerificationRecorder().record("missing-job", VerificationReport(passed=True, score=1))


def test_report_score_bounds():
    with pytest.raises(ValueError):
        VerificationReport(passed=True, score=101)
