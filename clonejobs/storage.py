from __future__ import annotations

import datetime as _dt
from typing import Any, Optional

import orjson
from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .settings import settings


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"echo": bool(settings.database.get("echo", False)), "future": True}
    if url.startswith("sqlite"):
        # Workers and schedulers share the engine across threads
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return kwargs


_DB_URL = settings.database["url"]
engine = create_engine(_DB_URL, **_engine_kwargs(_DB_URL))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False)
Base = declarative_base()

# Credits are kept to six decimal places (0.001 credits per proxied request)
Credits = Numeric(20, 6)


def utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[_dt.datetime]:
    if not value:
        return None
    parsed = _dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed


def dumps_json(obj: Any) -> str:
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS).decode()


def loads_json(text: Optional[str], default: Any = None) -> Any:
    if not text:
        return default
    return orjson.loads(text)


def retrying(*exc_types: type):
    """Tenacity policy for optimistic-concurrency loops, bounded by config retries."""
    initial_s = int(settings.retries.get("backoff_initial_ms", 5)) / 1000
    max_s = int(settings.retries.get("backoff_max_ms", 250)) / 1000
    return retry(
        reraise=True,
        stop=stop_after_attempt(int(settings.retries.get("max_attempts", 8))),
        wait=wait_exponential(multiplier=initial_s, min=initial_s, max=max_s),
        retry=retry_if_exception_type(exc_types),
    )


class JobRow(Base):
    __tablename__ = "jobs"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    target_url = Column(Text, nullable=False)
    status = Column(String, nullable=False, index=True)
    progress_percent = Column(Integer, nullable=False, default=0)
    pages_cloned = Column(Integer, nullable=False, default=0)
    assets_captured = Column(Integer, nullable=False, default=0)
    bytes_captured = Column(Integer, nullable=False, default=0)
    current_url = Column(Text, nullable=True)
    message = Column(Text, nullable=True)
    errors_json = Column(Text, nullable=False, default="[]")
    verification_json = Column(Text, nullable=True)
    verification_skipped = Column(Boolean, nullable=False, default=False)
    output_location = Column(Text, nullable=True)
    export_location = Column(Text, nullable=True)
    options_json = Column(Text, nullable=False)
    seed_job_id = Column(String, nullable=True)
    seed_location = Column(Text, nullable=True)
    reservation_id = Column(String, nullable=True)
    worker_id = Column(String, nullable=True)
    cursor = Column(Integer, nullable=False, default=0)
    created_at = Column(String, nullable=False)
    started_at = Column(String, nullable=True)
    completed_at = Column(String, nullable=True)
    paused_at = Column(String, nullable=True)
    heartbeat_at = Column(String, nullable=True)
    deleted_at = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=0)


class JobLogRow(Base):
    __tablename__ = "job_log"
    __table_args__ = (UniqueConstraint("job_id", "seq", name="uq_job_log_seq"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    ts_iso = Column(String, nullable=False)
    level = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    details_json = Column(Text, nullable=True)
    prev_hash = Column(String, nullable=False)
    entry_hash = Column(String, nullable=False)


class CreditAccountRow(Base):
    __tablename__ = "credit_accounts"
    owner_id = Column(String, primary_key=True)
    plan_tier = Column(String, nullable=False)
    included_monthly = Column(Credits, nullable=False, default=0)
    used_this_month = Column(Credits, nullable=False, default=0)
    purchased = Column(Credits, nullable=False, default=0)
    proxy_credits = Column(Credits, nullable=False, default=0)
    reserved = Column(Credits, nullable=False, default=0)
    last_reset = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=0)


class ReservationRow(Base):
    __tablename__ = "credit_reservations"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    amount = Column(Credits, nullable=False)
    status = Column(String, nullable=False)
    committed_amount = Column(Credits, nullable=True)
    job_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    closed_at = Column(String, nullable=True)


class CreditTransactionRow(Base):
    __tablename__ = "credit_transactions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Credits, nullable=False)
    balance_after = Column(Credits, nullable=False)
    description = Column(Text, nullable=False)
    job_id = Column(String, nullable=True)
    reference = Column(String, nullable=True, unique=True)
    created_at = Column(String, nullable=False)


class ProxyNodeRow(Base):
    __tablename__ = "proxy_nodes"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    host = Column(String, nullable=False)
    port = Column(Integer, nullable=False)
    country = Column(String, nullable=False)
    is_online = Column(Boolean, nullable=False, default=True)
    total_requests = Column(Integer, nullable=False, default=0)
    successful_requests = Column(Integer, nullable=False, default=0)
    bytes_served = Column(Integer, nullable=False, default=0)
    credits_earned = Column(Credits, nullable=False, default=0)
    bonus_paid = Column(Boolean, nullable=False, default=False)
    registered_at = Column(String, nullable=False)
    last_seen = Column(String, nullable=True)


class ProxyUsageWindowRow(Base):
    __tablename__ = "proxy_usage_windows"
    id = Column(Integer, primary_key=True, autoincrement=True)
    node_id = Column(String, nullable=False, index=True)
    opened_at = Column(String, nullable=False)
    requests = Column(Integer, nullable=False, default=0)
    successes = Column(Integer, nullable=False, default=0)
    bytes = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="open")
    credits = Column(Credits, nullable=True)
    settled_at = Column(String, nullable=True)
    credited = Column(Boolean, nullable=False, default=False)


class MonitoredSiteRow(Base):
    __tablename__ = "monitored_sites"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    url = Column(Text, nullable=False)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_interval_minutes = Column(Integer, nullable=False)
    failover_enabled = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default="unknown")
    response_time_ms = Column(Integer, nullable=True)
    last_check_at = Column(String, nullable=True)
    offline_since = Column(String, nullable=True)
    failover_active = Column(Boolean, nullable=False, default=False)
    failover_started_at = Column(String, nullable=True)
    last_backup_at = Column(String, nullable=True)
    backup_count = Column(Integer, nullable=False, default=0)
    created_at = Column(String, nullable=False)


class BackupRunRow(Base):
    __tablename__ = "backup_runs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String, nullable=False, index=True)
    job_id = Column(String, nullable=False)
    type = Column(String, nullable=False)
    launched_at = Column(String, nullable=False)
    collected = Column(Boolean, nullable=False, default=False)


class BackupVersionRow(Base):
    __tablename__ = "backup_versions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String, nullable=False, index=True)
    job_id = Column(String, nullable=True)
    timestamp = Column(String, nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    page_count = Column(Integer, nullable=False, default=0)
    asset_count = Column(Integer, nullable=False, default=0)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False)


class FailoverEventRow(Base):
    __tablename__ = "failover_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String, nullable=False, index=True)
    timestamp = Column(String, nullable=False)
    type = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    duration_seconds = Column(Integer, nullable=True)


# Create tables if they do not exist
Base.metadata.create_all(engine)
