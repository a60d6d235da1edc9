from __future__ import annotations

import argparse
import logging

import orjson

from .errors import CloneEngineError
from .orchestrator import JobOrchestrator
from .settings import settings


def _print(obj) -> None:
    print(orjson.dumps(obj, option=orjson.OPT_SORT_KEYS).decode())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Clone job control")
    sub = parser.add_subparsers(dest="command", required=True)

    p_submit = sub.add_parser("submit", help="Queue a new clone job")
    p_submit.add_argument("--owner", required=True)
    p_submit.add_argument("--url", required=True)
    p_submit.add_argument("--max-pages", type=int)
    p_submit.add_argument("--max-depth", type=int)
    p_submit.add_argument("--format", dest="export_format")
    p_submit.add_argument("--no-verify", action="store_true", help="Skip verification of the clone")

    p_list = sub.add_parser("list", help="List an owner's jobs")
    p_list.add_argument("--owner", required=True)

    for name in ("status", "pause", "resume", "stop", "rerun", "delete"):
        p = sub.add_parser(name)
        p.add_argument("--owner", required=True)
        p.add_argument("--job", required=True)
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.logging.get("level", "INFO"))
    orch = JobOrchestrator()
    try:
        if args.command == "submit":
            options = {"verify": not args.no_verify}
            if args.max_pages is not None:
                options["max_pages"] = args.max_pages
            if args.max_depth is not None:
                options["max_depth"] = args.max_depth
            if args.export_format:
                options["export_format"] = args.export_format
            job = orch.submit(args.owner, args.url, options)
        elif args.command == "list":
            jobs = orch.list_jobs(args.owner)
            _print([j.model_dump(mode="json", exclude={"log_entries"}) for j in jobs])
            return 0
        elif args.command == "status":
            job = orch.get(args.job, args.owner)
        elif args.command == "pause":
            job = orch.pause(args.job, args.owner)
        elif args.command == "resume":
            job = orch.resume(args.job, args.owner)
        elif args.command == "stop":
            job = orch.stop(args.job, args.owner)
        elif args.command == "rerun":
            job = orch.rerun_incremental(args.job, args.owner)
        else:
            job = orch.delete(args.job, args.owner)
        _print(job.model_dump(mode="json"))
        return 0
    except CloneEngineError as e:
        _print({"error": type(e).__name__, "message": str(e)})
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
