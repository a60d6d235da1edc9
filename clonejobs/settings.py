from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator


_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_CONFIG_PATH = _PROJECT_ROOT / "config" / "config.json"


class _ArtifactsCfg(BaseModel):
    base_dir: str
    keep_event_files: bool = True


class _RetriesCfg(BaseModel):
    max_attempts: int
    backoff_initial_ms: int
    backoff_max_ms: int

    @field_validator("max_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v


class _RawConfig(BaseModel):
    artifacts: _ArtifactsCfg
    retries: _RetriesCfg
    database: Optional[Dict[str, Any]] = None
    ledger: Optional[Dict[str, Any]] = None
    proxy: Optional[Dict[str, Any]] = None
    jobs: Optional[Dict[str, Any]] = None
    dr: Optional[Dict[str, Any]] = None
    logging: Optional[Dict[str, Any]] = None


class Settings(BaseModel):
    artifacts_base_dir: str = Field(..., description="Base directory for job event files and outputs")
    artifacts: Dict[str, Any]
    retries: Dict[str, Any]
    database: Dict[str, Any]
    ledger: Dict[str, Any]
    proxy: Dict[str, Any]
    jobs: Dict[str, Any]
    dr: Dict[str, Any]
    logging: Dict[str, Any]

    @classmethod
    def load(cls) -> "Settings":
        # Load environment variables
        load_dotenv(dotenv_path=_PROJECT_ROOT / ".env", override=False)

        # Load and validate config
        try:
            raw_bytes = _CONFIG_PATH.read_bytes()
        except FileNotFoundError as e:
            raise FileNotFoundError(f"Missing config file at {_CONFIG_PATH}") from e
        try:
            raw_obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file: {_CONFIG_PATH}") from e
        try:
            validated = _RawConfig.model_validate(raw_obj)
        except ValidationError as e:
            raise ValueError(f"Invalid config structure: {e}") from e

        database_cfg = {
            "url": f"sqlite:///{_PROJECT_ROOT / 'clonejobs.db'}",
            "echo": False,
        }
        if validated.database:
            database_cfg.update(validated.database)
        env_url = os.getenv("CLONEJOBS_DATABASE_URL")
        if env_url:
            database_cfg["url"] = env_url

        # Credit accounting defaults; rates are product decisions, not constants
        ledger_cfg = {
            "credits_per_page": 1,
            "default_plan": "free",
            "plans": {"free": 0},
            "packs": {},
        }
        if validated.ledger:
            ledger_cfg.update(validated.ledger)

        proxy_cfg = {
            "credits_per_request": 0.001,
            "credits_per_mb": 0.01,
            "success_bonus_multiplier": 1.5,
            "success_bonus_threshold": 0.95,
            "registration_bonus": 10,
            "offline_after_s": 60,
        }
        if validated.proxy:
            proxy_cfg.update(validated.proxy)

        jobs_cfg = {
            "default_max_pages": 100,
            "max_pages_limit": 20000,
            "default_max_depth": 3,
            "max_depth_limit": 25,
            "export_formats": ["zip", "warc", "wacz", "folder"],
            "max_transient_errors": 25,
            "pause_poll_ms": 250,
            "workers": 4,
            "stale_worker_s": 120,
        }
        if validated.jobs:
            jobs_cfg.update(validated.jobs)

        dr_cfg = {
            "grace_period_s": 300,
            "backup_tick_s": 60,
            "failover_tick_s": 15,
        }
        if validated.dr:
            dr_cfg.update(validated.dr)

        logging_cfg = {"level": "INFO"}
        if validated.logging:
            logging_cfg.update(validated.logging)
        env_level = os.getenv("CLONEJOBS_LOG_LEVEL")
        if env_level:
            logging_cfg["level"] = env_level.upper()

        settings = cls(
            artifacts_base_dir=os.getenv("CLONEJOBS_ARTIFACTS_DIR") or validated.artifacts.base_dir,
            artifacts=validated.artifacts.model_dump(),
            retries=validated.retries.model_dump(),
            database=database_cfg,
            ledger=ledger_cfg,
            proxy=proxy_cfg,
            jobs=jobs_cfg,
            dr=dr_cfg,
            logging=logging_cfg,
        )
        return settings

    @property
    def cfg_hash(self) -> str:
        from hashlib import sha256

        # Canonicalize raw config JSON (not the flattened Settings)
        try:
            raw_bytes = _CONFIG_PATH.read_bytes()
        except FileNotFoundError:
            raw_bytes = b"{}"
        try:
            obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError:
            obj = {}
        canonical = orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)
        return sha256(canonical).hexdigest()

    @property
    def export_formats(self) -> List[str]:
        return list(self.jobs.get("export_formats", []))

    def artifacts_dir_for(self, job_id: str) -> Path:
        base = self.artifacts_root()
        job_dir = base / job_id
        job_dir.mkdir(parents=True, exist_ok=True)
        return job_dir

    def artifacts_root(self) -> Path:
        base = Path(self.artifacts_base_dir)
        # Resolve relative to project root if relative path provided
        if not base.is_absolute():
            base = _PROJECT_ROOT / base
        base.mkdir(parents=True, exist_ok=True)
        return base


# Singleton settings instance for convenience
settings = Settings.load()
