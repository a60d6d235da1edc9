from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from .settings import settings


JobStatus = Literal["pending", "processing", "paused", "completed", "failed"]
LogLevel = Literal["info", "warning", "error", "success"]
Directive = Literal["continue", "pause", "stop"]

TERMINAL_STATUSES = ("completed", "failed")


class CloneOptions(BaseModel):
    max_pages: int = Field(default_factory=lambda: int(settings.jobs.get("default_max_pages", 100)))
    max_depth: int = Field(default_factory=lambda: int(settings.jobs.get("default_max_depth", 3)))
    export_format: str = "zip"
    verify: bool = True

    @field_validator("max_pages")
    @classmethod
    def _pages_in_range(cls, v: int) -> int:
        limit = int(settings.jobs.get("max_pages_limit", 20000))
        if v < 1 or v > limit:
            raise ValueError(f"max_pages must be between 1 and {limit}")
        return v

    @field_validator("max_depth")
    @classmethod
    def _depth_in_range(cls, v: int) -> int:
        limit = int(settings.jobs.get("max_depth_limit", 25))
        if v < 0 or v > limit:
            raise ValueError(f"max_depth must be between 0 and {limit}")
        return v

    @field_validator("export_format")
    @classmethod
    def _known_format(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in settings.export_formats:
            raise ValueError(f"export_format must be one of {settings.export_formats}")
        return v


class LogEntry(BaseModel):
    job_id: str
    seq: int
    timestamp: str  # UTC ISO 8601
    level: LogLevel
    message: str
    details: Optional[Dict[str, Any]] = None
    prev_hash: str
    entry_hash: str


class VerificationCheck(BaseModel):
    name: str
    category: str = "general"
    passed: bool
    message: str = ""


class VerificationReport(BaseModel):
    passed: bool
    score: float = Field(..., ge=0, le=100)
    summary: str = ""
    checks: List[VerificationCheck] = Field(default_factory=list)
    timestamp: Optional[str] = None


class CloneJob(BaseModel):
    id: str
    owner_id: str
    target_url: str
    status: JobStatus
    progress_percent: int = 0
    pages_cloned: int = 0
    assets_captured: int = 0
    bytes_captured: int = 0
    current_url: Optional[str] = None
    message: Optional[str] = None
    log_entries: List[LogEntry] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    verification: Optional[VerificationReport] = None
    verification_skipped: bool = False
    output_location: Optional[str] = None
    export_location: Optional[str] = None
    options: CloneOptions
    seed_job_id: Optional[str] = None
    seed_location: Optional[str] = None
    reservation_id: Optional[str] = None
    worker_id: Optional[str] = None
    cursor: int = 0
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    paused_at: Optional[str] = None
    heartbeat_at: Optional[str] = None
    deleted_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_incremental(self) -> bool:
        return self.seed_job_id is not None


class CreditAccount(BaseModel):
    owner_id: str
    plan_tier: str
    included_monthly: Decimal
    used_this_month: Decimal
    purchased: Decimal
    proxy_credits: Decimal
    reserved: Decimal
    last_reset: str

    @computed_field  # type: ignore[misc]
    @property
    def balance(self) -> Decimal:
        return self.included_monthly - self.used_this_month + self.purchased + self.proxy_credits

    @computed_field  # type: ignore[misc]
    @property
    def available(self) -> Decimal:
        return self.balance - self.reserved


CreditTxType = Literal[
    "subscription_grant",
    "purchase",
    "usage",
    "proxy_earned",
    "bonus",
    "refund",
    "reversal",
    "reserve",
    "release",
]


class CreditTransaction(BaseModel):
    id: int
    owner_id: str
    type: CreditTxType
    amount: Decimal  # positive = added, negative = used or held
    balance_after: Decimal
    description: str
    job_id: Optional[str] = None
    reference: Optional[str] = None
    created_at: str


class Reservation(BaseModel):
    id: str
    owner_id: str
    amount: Decimal
    status: Literal["held", "committed", "released"]
    committed_amount: Optional[Decimal] = None
    job_id: Optional[str] = None
    created_at: str
    closed_at: Optional[str] = None


class ProxyNode(BaseModel):
    id: str
    owner_id: str
    host: str
    port: int
    country: str
    is_online: bool
    success_rate: float
    total_requests: int
    successful_requests: int
    bytes_served: int
    credits_earned: Decimal
    registered_at: str
    last_seen: Optional[str] = None


class NetworkStats(BaseModel):
    total_nodes: int
    online_nodes: int
    total_requests_served: int
    bytes_transferred_total: int
    average_success_rate: float
    country_coverage: List[str] = Field(default_factory=list)


SiteStatus = Literal["online", "degraded", "offline", "unknown"]


class HealthSample(BaseModel):
    status: Literal["online", "degraded", "offline"]
    response_time_ms: int = 0
    at: Optional[str] = None


class MonitoredSite(BaseModel):
    id: str
    owner_id: str
    url: str
    sync_enabled: bool
    sync_interval_minutes: int
    failover_enabled: bool
    status: SiteStatus = "unknown"
    response_time_ms: Optional[int] = None
    last_check_at: Optional[str] = None
    offline_since: Optional[str] = None
    failover_active: bool = False
    last_backup_at: Optional[str] = None
    backup_count: int = 0
    created_at: str


class BackupVersion(BaseModel):
    id: int
    site_id: str
    job_id: Optional[str] = None
    timestamp: str
    size_bytes: int = 0
    page_count: int = 0
    asset_count: int = 0
    type: Literal["full", "incremental"]
    status: Literal["complete", "partial", "failed"]


class FailoverEvent(BaseModel):
    id: int
    site_id: str
    timestamp: str
    type: Literal["triggered", "resolved", "manual"]
    reason: str
    duration_seconds: Optional[int] = None
