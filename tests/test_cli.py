from __future__ import annotations

from decimal import Decimal

import orjson

from clonejobs.cli_jobs import main as jobs_main
from clonejobs.cli_ledger import main as ledger_main


def _last_json(capsys):
    out = capsys.readouterr().out.strip().splitlines()
    return orjson.loads(out[-1])


def test_ledger_cli_open_buy_and_history(owner, capsys):
    assert ledger_main(["open", "--owner", owner, "--plan", "starter"]) == 0
    opened = _last_json(capsys)
    assert Decimal(opened["balance"]) == 500

    assert ledger_main(["buy", "--owner", owner, "--pack", "small", "--reference", f"pay-{owner}"]) == 0
    assert _last_json(capsys)["applied"] is True
    assert ledger_main(["buy", "--owner", owner, "--pack", "small", "--reference", f"pay-{owner}"]) == 0
    repeated = _last_json(capsys)
    assert repeated["applied"] is False
    assert Decimal(repeated["account"]["balance"]) == 600

    assert ledger_main(["history", "--owner", owner, "--limit", "1"]) == 0
    [latest] = _last_json(capsys)
    assert latest["type"] == "purchase"


def test_ledger_cli_reports_errors(capsys):
    assert ledger_main(["balance", "--owner", "nobody-here"]) == 1
    assert _last_json(capsys)["error"] == "AccountNotFound"


def test_jobs_cli_submit_status_stop(funded, owner, capsys):
    funded(owner, 10)
    assert jobs_main(["submit", "--owner", owner, "--url", "https://example.com", "--max-pages", "4", "--no-verify"]) == 0
    job = _last_json(capsys)
    assert job["status"] == "pending"
    assert job["options"]["max_pages"] == 4

    assert jobs_main(["status", "--owner", owner, "--job", job["id"]]) == 0
    assert _last_json(capsys)["id"] == job["id"]

    assert jobs_main(["stop", "--owner", owner, "--job", job["id"]]) == 0
    assert _last_json(capsys)["status"] == "failed"

    assert jobs_main(["pause", "--owner", "intruder", "--job", job["id"]]) == 1
    assert _last_json(capsys)["error"] == "NotJobOwner"


def test_jobs_cli_rejects_bad_url(funded, owner, capsys):
    funded(owner, 10)
    assert jobs_main(["submit", "--owner", owner, "--url", "nope"]) == 1
    assert _last_json(capsys)["error"] == "JobValidationError"
