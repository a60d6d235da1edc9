from __future__ import annotations

import os
import tempfile
import uuid

import pytest

# Point the engine at a throwaway database before clonejobs.settings is imported
_TMP = tempfile.mkdtemp(prefix="clonejobs-tests-")
os.environ["CLONEJOBS_DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'clonejobs.db')}"
os.environ["CLONEJOBS_ARTIFACTS_DIR"] = os.path.join(_TMP, "artifacts")

from clonejobs.ledger import CreditLedger  # noqa: E402
from clonejobs.settings import settings  # noqa: E402


@pytest.fixture
def owner() -> str:
    return f"user-{uuid.uuid4().hex[:12]}"


@pytest.fixture
def ledger() -> CreditLedger:
    return CreditLedger()


@pytest.fixture
def funded(ledger: CreditLedger):
    """Open a free-plan account holding `credits` purchased credits."""

    def _fund(owner_id: str, credits: int = 10) -> str:
        ledger.open_account(owner_id, "free")
        if credits:
            ledger.credit(owner_id, credits, "purchase")
        return owner_id

    return _fund


@pytest.fixture
def fast_polling(monkeypatch):
    monkeypatch.setitem(settings.jobs, "pause_poll_ms", 10)
