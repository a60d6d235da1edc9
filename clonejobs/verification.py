from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import update

from .errors import JobNotFound, VerificationRejected
from .events import JobEventLog, event_log
from .schemas import TERMINAL_STATUSES, VerificationCheck, VerificationReport
from .storage import JobRow, SessionLocal, dumps_json, utc_now_iso


CRITICAL_CATEGORIES = ("html", "css", "js")
PASS_SCORE = 70


def summarize_checks(checks: Iterable[VerificationCheck], strict: bool = False) -> VerificationReport:
    """Build a report from individual checks.

    score is the rounded percentage of passed checks. A report passes at
    score >= 70 with every html/css/js check passing, or only at 100 when
    strict.
    """
    checks = list(checks)
    passed_count = sum(1 for c in checks if c.passed)
    score = round(passed_count / len(checks) * 100) if checks else 0
    critical_ok = all(c.passed for c in checks if c.category in CRITICAL_CATEGORIES)
    passed = score == 100 if strict else (score >= PASS_SCORE and critical_ok)
    failed = len(checks) - passed_count
    if passed:
        summary = f"Clone verified. Score: {score}%"
        if failed:
            summary += f" ({failed} minor issues)"
    else:
        summary = f"Clone has issues. Score: {score}%"
        if failed:
            summary += f" - {failed} failed checks"
    return VerificationReport(passed=passed, score=score, summary=summary, checks=checks, timestamp=utc_now_iso())


class VerificationRecorder:
    """Attaches a verification report to a finished job, once."""

    def __init__(self, events: Optional[JobEventLog] = None) -> None:
        self.events = events or event_log

    def record(self, job_id: str, report: VerificationReport) -> VerificationReport:
        if report.timestamp is None:
            report = report.model_copy(update={"timestamp": utc_now_iso()})
        with SessionLocal() as session:
            result = session.execute(
                update(JobRow)
                .where(
                    JobRow.id == job_id,
                    JobRow.status.in_(TERMINAL_STATUSES),
                    JobRow.verification_json.is_(None),
                    JobRow.verification_skipped.is_(False),
                )
                .values(verification_json=dumps_json(report.model_dump()), version=JobRow.version + 1)
            )
            if result.rowcount != 1:
                session.rollback()
                row = session.get(JobRow, job_id)
                raise self._rejection(job_id, row)
            session.commit()
        self.events.log_event(
            job_id,
            "success" if report.passed else "warning",
            f"Verification recorded: {report.summary or ('passed' if report.passed else 'failed')}",
            details={"passed": report.passed, "score": report.score, "checks": len(report.checks)},
        )
        self.events.forget(job_id)
        return report

    def _rejection(self, job_id: str, row: Optional[JobRow]) -> Exception:
        if row is None:
            return JobNotFound(job_id)
        if row.status not in TERMINAL_STATUSES:
            return VerificationRejected(f"job {job_id} is {row.status}; verification is recorded after the crawl ends")
        if row.verification_skipped:
            return VerificationRejected(f"job {job_id} was completed with verification skipped")
        return VerificationRejected(f"job {job_id} already has a verification report")
