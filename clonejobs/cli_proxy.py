from __future__ import annotations

import argparse
import logging

import orjson

from .errors import CloneEngineError
from .proxy_accounting import ProxyAccountant
from .settings import settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Proxy contribution accounting")
    sub = parser.add_subparsers(dest="command", required=True)

    p_reg = sub.add_parser("register", help="Register a bandwidth-sharing node")
    p_reg.add_argument("--owner", required=True)
    p_reg.add_argument("--host", required=True)
    p_reg.add_argument("--port", type=int, required=True)
    p_reg.add_argument("--country", required=True)

    p_settle = sub.add_parser("settle", help="Settle usage windows into credits")
    target = p_settle.add_mutually_exclusive_group(required=True)
    target.add_argument("--node")
    target.add_argument("--all", action="store_true")

    sub.add_parser("stats", help="Network-wide statistics")
    p_lb = sub.add_parser("leaderboard")
    p_lb.add_argument("--limit", type=int, default=10)
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.logging.get("level", "INFO"))
    accountant = ProxyAccountant()
    try:
        if args.command == "register":
            out = accountant.register_node(args.owner, args.host, args.port, args.country).model_dump(mode="json")
        elif args.command == "settle":
            settled = accountant.settle_all() if args.all else {args.node: accountant.settle(args.node)}
            out = {node_id: str(credits) for node_id, credits in settled.items()}
        elif args.command == "stats":
            out = accountant.network_stats().model_dump(mode="json")
        else:
            out = [{**row, "credits_earned": str(row["credits_earned"])} for row in accountant.leaderboard(args.limit)]
    except CloneEngineError as e:
        print(orjson.dumps({"error": type(e).__name__, "message": str(e)}).decode())
        return 1
    print(orjson.dumps(out, option=orjson.OPT_SORT_KEYS).decode())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
