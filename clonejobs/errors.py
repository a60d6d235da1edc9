from __future__ import annotations

from decimal import Decimal
from typing import Optional


class CloneEngineError(Exception):
    """Base class for every error raised by the clone job engine."""


class JobValidationError(CloneEngineError, ValueError):
    """Rejected request: bad URL, missing field or out-of-range option."""


class AccountNotFound(CloneEngineError, LookupError):
    def __init__(self, owner_id: str) -> None:
        super().__init__(f"no credit account for owner {owner_id}")
        self.owner_id = owner_id


class InsufficientCredit(CloneEngineError):
    def __init__(self, owner_id: str, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"insufficient credit for owner {owner_id}: requested {requested}, available {available}"
        )
        self.owner_id = owner_id
        self.requested = requested
        self.available = available


class ReservationError(CloneEngineError):
    pass


class InvalidTransition(CloneEngineError):
    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"job {job_id}: cannot {requested} while {current}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobNotFound(CloneEngineError, LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class NotJobOwner(CloneEngineError, PermissionError):
    def __init__(self, job_id: str, caller_id: Optional[str]) -> None:
        super().__init__(f"caller {caller_id} does not own job {job_id}")
        self.job_id = job_id
        self.caller_id = caller_id


class VerificationRejected(CloneEngineError):
    pass


class NodeNotFound(CloneEngineError, LookupError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"proxy node not found: {node_id}")
        self.node_id = node_id


class SiteNotFound(CloneEngineError, LookupError):
    def __init__(self, site_id: str) -> None:
        super().__init__(f"monitored site not found: {site_id}")
        self.site_id = site_id


class StaleWrite(CloneEngineError):
    """A versioned row changed between read and write; the caller retries."""
