from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import orjson

from .events import JobEventLog
from .hashing import chain_next
from .settings import settings


def _walk(entries: Iterable[Dict[str, Any]]) -> dict:
    """Follow prev_hash links and recompute each entry hash; stop at the first bad link."""
    count = 0
    job_id: Optional[str] = None
    prev = ""
    for idx, entry in enumerate(entries):
        payload = {k: v for k, v in entry.items() if k != "entry_hash"}
        if entry.get("prev_hash", "") != prev or entry.get("seq") != idx + 1:
            return {"job_id": job_id, "entries": count, "valid": False, "break_index": idx}
        if chain_next(prev, payload) != entry.get("entry_hash"):
            return {"job_id": job_id, "entries": count, "valid": False, "break_index": idx}
        job_id = job_id or entry.get("job_id")
        prev = entry["entry_hash"]
        count += 1
    return {"job_id": job_id, "entries": count, "valid": True, "break_index": None}


def verify_chain(events_path: Path) -> dict:
    """Check the events.jsonl mirror of a job's log."""
    lines = events_path.read_text(encoding="utf-8").splitlines()
    return _walk(orjson.loads(line) for line in lines if line.strip())


def verify_job(job_id: str, events: Optional[JobEventLog] = None) -> dict:
    """Check a job's log as stored in the database and, when present, its events.jsonl mirror."""
    log = events or JobEventLog()
    stored = log.entries(job_id)
    result: Dict[str, Any] = {"job_id": job_id, "db": _walk(e.model_dump() for e in stored)}
    mirror = settings.artifacts_root() / job_id / "events.jsonl"
    if mirror.exists():
        result["file"] = verify_chain(mirror)
    result["found"] = bool(stored) or "file" in result
    result["valid"] = result["found"] and all(part["valid"] for key, part in result.items() if key in ("db", "file"))
    return result


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify a job's event log hash chain")
    parser.add_argument("--job", required=True, help="Job id, or a directory holding events.jsonl")
    args = parser.parse_args(argv)

    target = Path(args.job)
    if target.is_dir():
        events_path = target / "events.jsonl"
        if not events_path.exists():
            print(orjson.dumps({"valid": False, "error": "events.jsonl not found", "path": str(events_path)}).decode())
            return 2
        result = verify_chain(events_path)
    else:
        result = verify_job(args.job)
        if not result["found"]:
            print(orjson.dumps({"valid": False, "error": "no log entries for job", "job_id": args.job}).decode())
            return 2
    print(orjson.dumps(result, option=orjson.OPT_SORT_KEYS).decode())
    return 0 if result.get("valid") else 1


if __name__ == "__main__":
    raise SystemExit(main())
