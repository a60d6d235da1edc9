from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .errors import InvalidTransition, JobValidationError, NotJobOwner
from .ledger import CreditLedger
from .outputs import LocalOutputStore, OutputStore
from .schemas import CloneJob, CloneOptions
from .state_machine import JobStateMachine
from .urltools import validate_target_url
from .worker import WorkerPool


logger = logging.getLogger(__name__)

OptionsInput = Union[CloneOptions, Dict[str, Any], None]


def build_options(options: OptionsInput) -> CloneOptions:
    if isinstance(options, CloneOptions):
        return options
    try:
        return CloneOptions.model_validate(options or {})
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise JobValidationError(f"invalid clone options: {problems}") from e


class JobOrchestrator:
    """Service-facing API for clone jobs.

    submit validates, reserves credit for the worst case and only then creates
    the job; nothing is created when either step fails. Control operations
    check that the caller owns the job before delegating to the state
    machine.
    """

    def __init__(
        self,
        machine: Optional[JobStateMachine] = None,
        ledger: Optional[CreditLedger] = None,
        pool: Optional[WorkerPool] = None,
        outputs: Optional[OutputStore] = None,
    ) -> None:
        self.ledger = ledger or (machine.ledger if machine is not None else CreditLedger())
        self.machine = machine or JobStateMachine(ledger=self.ledger)
        self.pool = pool
        self.outputs = outputs or LocalOutputStore()

    def submit(self, owner_id: str, url: str, options: OptionsInput = None) -> CloneJob:
        if not owner_id:
            raise JobValidationError("owner_id is required")
        target = validate_target_url(url)
        opts = build_options(options)
        return self._launch(owner_id, target, opts)

    def _launch(
        self,
        owner_id: str,
        target: str,
        opts: CloneOptions,
        seed_job_id: Optional[str] = None,
        seed_location: Optional[str] = None,
    ) -> CloneJob:
        job_id = str(uuid.uuid4())
        cost = self.ledger.estimate_cost(opts.max_pages)
        reservation_id = self.ledger.reserve(owner_id, cost, job_id=job_id)
        try:
            job = self.machine.create(
                owner_id,
                target,
                opts,
                reservation_id=reservation_id,
                job_id=job_id,
                seed_job_id=seed_job_id,
                seed_location=seed_location,
            )
        except Exception:
            self.ledger.release(reservation_id)
            raise
        self.machine.log(job_id, "info", f"Reserved {cost} credits", details={"reservation_id": reservation_id})
        logger.info("job %s submitted by %s for %s (hold %s)", job_id, owner_id, target, cost)
        if self.pool is not None:
            self.pool.submit(job_id)
        return job

    def get(self, job_id: str, caller_id: str) -> CloneJob:
        return self._owned(job_id, caller_id)

    def list_jobs(self, owner_id: str) -> List[CloneJob]:
        return self.machine.list_for_owner(owner_id)

    def pause(self, job_id: str, caller_id: str) -> CloneJob:
        self._owned(job_id, caller_id)
        return self.machine.pause(job_id)

    def resume(self, job_id: str, caller_id: str) -> CloneJob:
        self._owned(job_id, caller_id)
        return self.machine.resume(job_id)

    def stop(self, job_id: str, caller_id: str, reason: str = "Stopped by user") -> CloneJob:
        self._owned(job_id, caller_id)
        return self.machine.stop(job_id, reason)

    def rerun_incremental(self, job_id: str, caller_id: str) -> CloneJob:
        """Start a new job seeded with a completed job's output."""
        source = self._owned(job_id, caller_id)
        if source.status != "completed":
            raise InvalidTransition(job_id, source.status, "rerun incrementally")
        job = self._launch(
            source.owner_id,
            source.target_url,
            source.options,
            seed_job_id=source.id,
            seed_location=source.output_location,
        )
        self.machine.log(source.id, "info", "Incremental re-run started", details={"new_job_id": job.id})
        return job

    def delete(self, job_id: str, caller_id: str) -> CloneJob:
        """Delete in any state: stop if still running, drop the hold, remove output."""
        job = self._owned(job_id, caller_id)
        if not job.is_terminal:
            try:
                job = self.machine.stop(job_id, "Deleted by user")
            except InvalidTransition:
                # Reached a terminal state concurrently
                pass
        if job.reservation_id:
            self.ledger.release(job.reservation_id)
        deleted = self.machine.soft_delete(job_id)
        for location in (deleted.output_location, deleted.export_location):
            self.outputs.remove(location)
        logger.info("job %s deleted by %s", job_id, caller_id)
        return deleted

    def _owned(self, job_id: str, caller_id: str) -> CloneJob:
        job = self.machine.get(job_id)
        if job.owner_id != caller_id:
            raise NotJobOwner(job_id, caller_id)
        return job
