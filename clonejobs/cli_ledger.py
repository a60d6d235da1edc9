from __future__ import annotations

import argparse
import logging

import orjson

from .errors import CloneEngineError
from .ledger import CreditLedger
from .settings import settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Credit ledger")
    sub = parser.add_subparsers(dest="command", required=True)

    p_open = sub.add_parser("open", help="Open a credit account")
    p_open.add_argument("--owner", required=True)
    p_open.add_argument("--plan", help="Plan tier (defaults to ledger.default_plan)")

    p_balance = sub.add_parser("balance")
    p_balance.add_argument("--owner", required=True)

    p_buy = sub.add_parser("buy", help="Purchase a credit pack")
    p_buy.add_argument("--owner", required=True)
    p_buy.add_argument("--pack", required=True, choices=sorted(settings.ledger.get("packs", {})))
    p_buy.add_argument("--reference", help="Payment reference; repeats are ignored")

    p_credit = sub.add_parser("credit", help="Add credit from a source")
    p_credit.add_argument("--owner", required=True)
    p_credit.add_argument("--amount", required=True)
    p_credit.add_argument("--source", required=True, choices=["purchase", "bonus", "proxy", "refund"])
    p_credit.add_argument("--reference")

    p_history = sub.add_parser("history")
    p_history.add_argument("--owner", required=True)
    p_history.add_argument("--limit", type=int, default=50)
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.logging.get("level", "INFO"))
    ledger = CreditLedger()
    try:
        if args.command == "open":
            out = ledger.open_account(args.owner, args.plan).model_dump(mode="json")
        elif args.command == "balance":
            out = ledger.get_account(args.owner).model_dump(mode="json")
        elif args.command == "buy":
            tx = ledger.purchase_pack(args.owner, args.pack, reference=args.reference)
            out = {"applied": tx is not None, "account": ledger.get_account(args.owner).model_dump(mode="json")}
        elif args.command == "credit":
            tx = ledger.credit(args.owner, args.amount, args.source, reference=args.reference)
            out = {"applied": tx is not None, "account": ledger.get_account(args.owner).model_dump(mode="json")}
        else:
            out = [tx.model_dump(mode="json") for tx in ledger.history(args.owner, args.limit)]
    except (CloneEngineError, ValueError) as e:
        print(orjson.dumps({"error": type(e).__name__, "message": str(e)}).decode())
        return 1
    print(orjson.dumps(out, option=orjson.OPT_SORT_KEYS).decode())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
