from __future__ import annotations

import concurrent.futures
import logging
import threading
import traceback
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from .errors import InvalidTransition, JobNotFound
from .hashing import sha256_text
from .outputs import LocalOutputStore, OutputStore
from .schemas import CloneJob, VerificationReport
from .settings import settings
from .state_machine import JobStateMachine


logger = logging.getLogger(__name__)


@dataclass
class PageCaptured:
    url: str
    assets: int = 0
    bytes: int = 0


@dataclass
class PageFailed:
    url: str
    error: str


@dataclass
class CrawlLog:
    level: str
    message: str
    details: Optional[Dict[str, Any]] = None


@dataclass
class CrawlFinished:
    output_location: str
    export_location: Optional[str] = None


CrawlEvent = Union[PageCaptured, PageFailed, CrawlLog, CrawlFinished]


class Crawler(Protocol):
    """Page fetching and archiving, supplied by the caller.

    crawl yields one event per page and ends with CrawlFinished. resume_from
    is the number of pages already captured for this job; a resumed crawl
    must not fetch them again. job.seed_location is set for incremental runs.
    """

    def crawl(self, job: CloneJob, output_dir: Path, resume_from: int) -> Iterable[CrawlEvent]: ...


class Verifier(Protocol):
    def verify(self, job: CloneJob, output_location: str) -> VerificationReport: ...


class CloneWorker:
    def __init__(
        self,
        machine: JobStateMachine,
        crawler: Crawler,
        verifier: Optional[Verifier] = None,
        outputs: Optional[OutputStore] = None,
        worker_id: Optional[str] = None,
        shutdown: Optional[threading.Event] = None,
    ) -> None:
        self.machine = machine
        self.crawler = crawler
        self.verifier = verifier
        self.outputs = outputs or LocalOutputStore()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._shutdown = shutdown or threading.Event()

    def run(self, job_id: str) -> CloneJob:
        job = self._acquire(job_id)
        try:
            return self._drive(job)
        except Exception as exc:
            tb_digest = sha256_text(traceback.format_exc())
            reason = f"{type(exc).__name__}: {exc}"
            self.machine.log(job_id, "error", "Crawler crashed", details={"error_type": type(exc).__name__, "traceback_digest": tb_digest})
            try:
                self.machine.fail(job_id, reason, worker_id=self.worker_id)
            except (InvalidTransition, JobNotFound):
                logger.warning("job %s ended before crash could be recorded: %s", job_id, reason)
            raise

    def _acquire(self, job_id: str) -> CloneJob:
        """Claim a pending job, or take over one whose previous worker went quiet."""
        try:
            return self.machine.claim(job_id, self.worker_id)
        except InvalidTransition as e:
            if e.current not in ("processing", "paused"):
                raise
        return self.machine.reclaim(job_id, self.worker_id)

    def _drive(self, job: CloneJob) -> CloneJob:
        job_id = job.id
        if job.status == "paused" and not self._wait_for_continue(job_id):
            return self.machine.get(job_id, include_deleted=True)
        pages, assets, nbytes, cursor = job.pages_cloned, job.assets_captured, job.bytes_captured, job.cursor
        max_errors = int(settings.jobs.get("max_transient_errors", 25))
        deferred: Optional[Dict[str, Any]] = None
        finished: Optional[CrawlFinished] = None

        output_dir = self.outputs.output_dir_for(job_id)
        for event in self.crawler.crawl(job, output_dir, resume_from=cursor):
            if isinstance(event, PageCaptured):
                pages += 1
                assets += event.assets
                nbytes += event.bytes
                cursor += 1
                deferred = {
                    "pages_cloned": pages,
                    "assets_captured": assets,
                    "bytes_captured": nbytes,
                    "cursor": cursor,
                    "current_url": event.url,
                    "message": f"Cloned {pages} of up to {job.options.max_pages} pages",
                }
                deferred = self._try_report(job_id, deferred)
            elif isinstance(event, PageFailed):
                try:
                    count = self.machine.record_transient_error(job_id, self.worker_id, event.url, event.error)
                except InvalidTransition:
                    self.machine.log(job_id, "warning", f"Failed to capture {event.url}", details={"error": event.error})
                    count = 0
                if count > max_errors:
                    return self.machine.fail(job_id, f"Too many page failures ({count})", worker_id=self.worker_id)
            elif isinstance(event, CrawlLog):
                self.machine.log(job_id, event.level, event.message, details=event.details)
            elif isinstance(event, CrawlFinished):
                finished = event
                break

            if not self._wait_for_continue(job_id):
                return self.machine.get(job_id, include_deleted=True)
            if deferred is not None:
                deferred = self._try_report(job_id, deferred)

        if finished is None:
            return self.machine.fail(job_id, "Crawler ended without producing output", worker_id=self.worker_id)
        if deferred is not None:
            self._try_report(job_id, deferred)

        report = None
        skipped = False
        if job.options.verify and self.verifier is not None:
            current = self.machine.get(job_id)
            try:
                report = self.verifier.verify(current, finished.output_location)
            except Exception as e:
                logger.warning("verification of job %s failed: %s", job_id, e)
                self.machine.log(job_id, "warning", "Verification could not run", details={"error": str(e)})
                skipped = True
        elif job.options.verify:
            skipped = True

        return self.machine.complete(
            job_id,
            self.worker_id,
            output_location=finished.output_location,
            export_location=finished.export_location,
            verification=report,
            verification_skipped=skipped,
        )

    def _try_report(self, job_id: str, progress: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Persist progress; keep it for after resume if the job is paused right now."""
        try:
            self.machine.report_progress(job_id, self.worker_id, **progress)
        except InvalidTransition as e:
            if e.current == "paused":
                return progress
            # Stopped or reaped; the checkpoint will report it
            return None
        return None

    def _wait_for_continue(self, job_id: str) -> bool:
        poll_s = int(settings.jobs.get("pause_poll_ms", 250)) / 1000
        announced = False
        while True:
            directive = self.machine.checkpoint(job_id, self.worker_id)
            if directive == "continue":
                return True
            if directive == "stop":
                logger.info("job %s: stop honoured by %s", job_id, self.worker_id)
                return False
            if not announced:
                logger.info("job %s: paused, %s waiting", job_id, self.worker_id)
                announced = True
            if self._shutdown.wait(poll_s):
                # Pool shutting down; the job stays paused
                return False


class WorkerPool:
    """Runs clone workers on a thread pool; one worker per job."""

    def __init__(
        self,
        machine: JobStateMachine,
        crawler: Crawler,
        verifier: Optional[Verifier] = None,
        outputs: Optional[OutputStore] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.machine = machine
        self.crawler = crawler
        self.verifier = verifier
        self.outputs = outputs or LocalOutputStore()
        self._shutdown = threading.Event()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers or int(settings.jobs.get("workers", 4)),
            thread_name_prefix="clone-worker",
        )
        self._futures: Dict[str, concurrent.futures.Future] = {}
        self._lock = threading.Lock()

    def submit(self, job_id: str) -> concurrent.futures.Future:
        future = self._executor.submit(self._run, job_id)
        with self._lock:
            self._futures[job_id] = future
        return future

    def _run(self, job_id: str) -> Optional[CloneJob]:
        worker = CloneWorker(self.machine, self.crawler, self.verifier, self.outputs, shutdown=self._shutdown)
        try:
            return worker.run(job_id)
        except InvalidTransition as e:
            # Stopped or deleted before a worker got to it
            logger.info("job %s not claimed: %s", job_id, e)
            return None
        except Exception:
            logger.exception("worker %s crashed on job %s", worker.worker_id, job_id)
            return None
        finally:
            with self._lock:
                self._futures.pop(job_id, None)

    def recover(self, owner_id: Optional[str] = None) -> List[str]:
        """Dispatch jobs nobody is working on.

        Covers pending jobs that were never dispatched and processing jobs whose
        worker stopped checking in; paused jobs wait until they are resumed.
        """
        with self._lock:
            busy = set(self._futures)
        dispatched = [job_id for job_id in self.machine.recoverable(owner_id) if job_id not in busy]
        for job_id in dispatched:
            self.submit(job_id)
        if dispatched:
            logger.info("recovered %d jobs", len(dispatched))
        return dispatched

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every dispatched job has finished; False on timeout."""
        with self._lock:
            pending = list(self._futures.values())
        done, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._shutdown.set()
        self._executor.shutdown(wait=wait)
