from __future__ import annotations

import datetime as _dt
import logging
import math
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .errors import AccountNotFound, InsufficientCredit, ReservationError, StaleWrite
from .schemas import CreditAccount, CreditTransaction, Reservation
from .settings import settings
from .storage import (
    CreditAccountRow,
    CreditTransactionRow,
    ReservationRow,
    SessionLocal,
    parse_iso,
    retrying,
    utc_now_iso,
)


logger = logging.getLogger(__name__)

Number = Union[int, float, str, Decimal]

_QUANTUM = Decimal("0.000001")
ZERO = Decimal("0")

# credit(source=...) -> (transaction type, account bucket)
_SOURCES = {
    "purchase": ("purchase", "purchased"),
    "bonus": ("bonus", "purchased"),
    "proxy": ("proxy_earned", "proxy_credits"),
    "refund": ("refund", "used_this_month"),
}


def as_credits(value: Number) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(_QUANTUM)


def _balance(row: CreditAccountRow) -> Decimal:
    return as_credits(row.included_monthly) - as_credits(row.used_this_month) + as_credits(row.purchased) + as_credits(row.proxy_credits)


def _available(row: CreditAccountRow) -> Decimal:
    return _balance(row) - as_credits(row.reserved)


def _to_account(row: CreditAccountRow) -> CreditAccount:
    return CreditAccount(
        owner_id=row.owner_id,
        plan_tier=row.plan_tier,
        included_monthly=as_credits(row.included_monthly),
        used_this_month=as_credits(row.used_this_month),
        purchased=as_credits(row.purchased),
        proxy_credits=as_credits(row.proxy_credits),
        reserved=as_credits(row.reserved),
        last_reset=row.last_reset,
    )


def _to_reservation(row: ReservationRow) -> Reservation:
    return Reservation(
        id=row.id,
        owner_id=row.owner_id,
        amount=as_credits(row.amount),
        status=row.status,
        committed_amount=as_credits(row.committed_amount) if row.committed_amount is not None else None,
        job_id=row.job_id,
        created_at=row.created_at,
        closed_at=row.closed_at,
    )


def _to_transaction(row: CreditTransactionRow) -> CreditTransaction:
    return CreditTransaction(
        id=row.id,
        owner_id=row.owner_id,
        type=row.type,
        amount=as_credits(row.amount),
        balance_after=as_credits(row.balance_after),
        description=row.description,
        job_id=row.job_id,
        reference=row.reference,
        created_at=row.created_at,
    )


def _now(now: Optional[_dt.datetime]) -> _dt.datetime:
    return now or _dt.datetime.now(tz=_dt.timezone.utc)


class CreditLedger:
    """Per-owner credit accounts with reservation-based spending.

    balance = included_monthly - used_this_month + purchased + proxy_credits.
    A reservation holds credit against `available` (balance - reserved) until
    it is committed at actual cost or released. Every account mutation is a
    compare-and-set on the row version, retried on conflict, so concurrent
    jobs of one owner never overspend.
    """

    def plan_allotment(self, plan_tier: str) -> Decimal:
        plans: Dict[str, Any] = settings.ledger.get("plans", {})
        if plan_tier not in plans:
            raise ValueError(f"unknown plan tier: {plan_tier}")
        return as_credits(plans[plan_tier])

    def estimate_cost(self, max_pages: int) -> Decimal:
        per_page = Decimal(str(settings.ledger.get("credits_per_page", 1)))
        return as_credits(math.ceil(per_page * max_pages))

    def cost_for_pages(self, pages: int) -> Decimal:
        per_page = Decimal(str(settings.ledger.get("credits_per_page", 1)))
        return as_credits(per_page * pages)

    # Accounts

    def open_account(self, owner_id: str, plan_tier: Optional[str] = None, now: Optional[_dt.datetime] = None) -> CreditAccount:
        tier = plan_tier or settings.ledger.get("default_plan", "free")
        included = self.plan_allotment(tier)
        ts = _now(now).isoformat()
        with SessionLocal() as session:
            existing = session.get(CreditAccountRow, owner_id)
            if existing is not None:
                return _to_account(existing)
            row = CreditAccountRow(
                owner_id=owner_id,
                plan_tier=tier,
                included_monthly=included,
                used_this_month=ZERO,
                purchased=ZERO,
                proxy_credits=ZERO,
                reserved=ZERO,
                last_reset=ts,
                version=0,
            )
            session.add(row)
            if included > ZERO:
                self._record(session, owner_id, "subscription_grant", included, included, f"{tier} plan: {included} credits included monthly")
            try:
                session.commit()
            except IntegrityError:
                # Opened concurrently by another caller
                session.rollback()
                return self.get_account(owner_id)
            logger.info("opened credit account owner=%s plan=%s", owner_id, tier)
            return _to_account(row)

    def get_account(self, owner_id: str) -> CreditAccount:
        with SessionLocal() as session:
            row = session.get(CreditAccountRow, owner_id)
            if row is None:
                raise AccountNotFound(owner_id)
            return _to_account(row)

    @retrying(StaleWrite)
    def change_plan(self, owner_id: str, plan_tier: str) -> CreditAccount:
        """Switch plans. Upgrades apply immediately, downgrades at the next monthly reset."""
        new_included = self.plan_allotment(plan_tier)
        with SessionLocal() as session:
            row = self._load(session, owner_id)
            values: Dict[str, Any] = {"plan_tier": plan_tier}
            delta = new_included - as_credits(row.included_monthly)
            if delta > ZERO:
                values["included_monthly"] = new_included
            self._cas(session, row, **values)
            if delta > ZERO:
                self._record(session, owner_id, "subscription_grant", delta, _balance(row) + delta, f"upgrade to {plan_tier}")
            session.commit()
        return self.get_account(owner_id)

    @retrying(StaleWrite)
    def reset_month(self, owner_id: str, now: Optional[_dt.datetime] = None) -> bool:
        """Start a new billing month if `now` lies past the last reset's month."""
        with SessionLocal() as session:
            row = self._load(session, owner_id)
            if not self._reset_values(session, row, _now(now)):
                return False
            session.commit()
            return True

    def _reset_values(self, session, row: CreditAccountRow, now: _dt.datetime) -> bool:
        last = parse_iso(row.last_reset)
        if last is not None and (now.year, now.month) <= (last.year, last.month):
            return False
        included = as_credits(row.included_monthly)
        used = as_credits(row.used_this_month)
        purchased = as_credits(row.purchased)
        proxy = as_credits(row.proxy_credits)
        # Usage beyond the monthly allotment was paid from purchased, then proxy credit
        overflow = max(ZERO, used - included)
        from_purchased = min(overflow, purchased)
        from_proxy = min(overflow - from_purchased, proxy)
        new_included = self.plan_allotment(row.plan_tier)
        self._cas(
            session,
            row,
            included_monthly=new_included,
            used_this_month=ZERO,
            purchased=purchased - from_purchased,
            proxy_credits=proxy - from_proxy,
            last_reset=now.isoformat(),
        )
        new_balance = new_included + (purchased - from_purchased) + (proxy - from_proxy)
        expired = max(ZERO, included - used)
        self._record(
            session,
            row.owner_id,
            "subscription_grant",
            new_included,
            new_balance,
            f"monthly {row.plan_tier} allotment ({expired} unused credits expired)",
        )
        return True

    # Reservations

    def reserve(self, owner_id: str, amount: Number, job_id: Optional[str] = None, now: Optional[_dt.datetime] = None) -> str:
        """Hold `amount` credits for a job; returns the reservation id or raises InsufficientCredit."""
        amount = as_credits(amount)
        if amount <= ZERO:
            raise ValueError("reservation amount must be positive")
        return self._reserve(owner_id, amount, job_id, _now(now))

    @retrying(StaleWrite)
    def _reserve(self, owner_id: str, amount: Decimal, job_id: Optional[str], now: _dt.datetime) -> str:
        with SessionLocal() as session:
            row = self._load(session, owner_id)
            if self._reset_values(session, row, now):
                # Reset bumped the version; re-read so the hold is computed on fresh values
                session.flush()
                session.refresh(row)
            available = _available(row)
            if amount > available:
                session.rollback()
                raise InsufficientCredit(owner_id, amount, available)
            reservation_id = str(uuid.uuid4())
            self._cas(session, row, reserved=as_credits(row.reserved) + amount)
            session.add(
                ReservationRow(
                    id=reservation_id,
                    owner_id=owner_id,
                    amount=amount,
                    status="held",
                    job_id=job_id,
                    created_at=utc_now_iso(),
                )
            )
            self._record(session, owner_id, "reserve", -amount, _balance(row), f"hold {amount} credits", job_id=job_id)
            session.commit()
            return reservation_id

    def get_reservation(self, reservation_id: str) -> Reservation:
        with SessionLocal() as session:
            res = session.get(ReservationRow, reservation_id)
            if res is None:
                raise ReservationError(f"unknown reservation: {reservation_id}")
            return _to_reservation(res)

    @retrying(StaleWrite)
    def commit(self, reservation_id: str, actual_amount: Number) -> Reservation:
        """Settle a held reservation at actual cost; the unused part returns to available credit."""
        actual = as_credits(actual_amount)
        if actual < ZERO:
            raise ValueError("actual amount must not be negative")
        with SessionLocal() as session:
            res = session.get(ReservationRow, reservation_id)
            if res is None:
                raise ReservationError(f"unknown reservation: {reservation_id}")
            if res.status != "held":
                raise ReservationError(f"reservation {reservation_id} is already {res.status}")
            held = as_credits(res.amount)
            if actual > held:
                logger.warning("commit of %s exceeds hold %s on %s; capped", actual, held, reservation_id)
                actual = held
            row = self._load(session, res.owner_id)
            self._cas(
                session,
                row,
                reserved=as_credits(row.reserved) - held,
                used_this_month=as_credits(row.used_this_month) + actual,
            )
            self._close(session, res, "committed", committed_amount=actual)
            new_balance = _balance(row) - actual
            if actual > ZERO:
                self._record(session, res.owner_id, "usage", -actual, new_balance, f"clone usage ({actual} credits)", job_id=res.job_id)
            if held - actual > ZERO:
                self._record(session, res.owner_id, "release", held - actual, new_balance, "unused hold returned", job_id=res.job_id)
            session.commit()
            return _to_reservation(res)

    @retrying(StaleWrite)
    def release(self, reservation_id: str) -> bool:
        """Drop a held reservation. Returns False when it was already closed."""
        with SessionLocal() as session:
            res = session.get(ReservationRow, reservation_id)
            if res is None:
                raise ReservationError(f"unknown reservation: {reservation_id}")
            if res.status != "held":
                return False
            held = as_credits(res.amount)
            row = self._load(session, res.owner_id)
            self._cas(session, row, reserved=as_credits(row.reserved) - held)
            self._close(session, res, "released")
            self._record(session, res.owner_id, "release", held, _balance(row), "hold released", job_id=res.job_id)
            session.commit()
            return True

    # Credits

    def credit(
        self,
        owner_id: str,
        amount: Number,
        source: str,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Optional[CreditTransaction]:
        """Add credit from `source`; a repeated `reference` is a no-op and returns None."""
        if source not in _SOURCES:
            raise ValueError(f"unknown credit source: {source}")
        amount = as_credits(amount)
        if amount <= ZERO:
            raise ValueError("credit amount must be positive")
        try:
            return self._credit(owner_id, amount, source, description, reference, job_id)
        except IntegrityError:
            # Same reference committed concurrently
            return None

    @retrying(StaleWrite)
    def _credit(self, owner_id, amount, source, description, reference, job_id) -> Optional[CreditTransaction]:
        tx_type, bucket = _SOURCES[source]
        with SessionLocal() as session:
            if reference is not None:
                seen = session.execute(
                    select(CreditTransactionRow.id).where(CreditTransactionRow.reference == reference)
                ).first()
                if seen is not None:
                    return None
            row = self._load(session, owner_id)
            if bucket == "used_this_month":
                used = as_credits(row.used_this_month)
                back = min(amount, used)
                self._cas(
                    session,
                    row,
                    used_this_month=used - back,
                    purchased=as_credits(row.purchased) + (amount - back),
                )
            else:
                self._cas(session, row, **{bucket: as_credits(getattr(row, bucket)) + amount})
            tx = self._record(
                session,
                owner_id,
                tx_type,
                amount,
                _balance(row) + amount,
                description or f"{source} credit",
                job_id=job_id,
                reference=reference,
            )
            session.commit()
            return _to_transaction(tx)

    def purchase_pack(self, owner_id: str, pack_id: str, reference: Optional[str] = None) -> Optional[CreditTransaction]:
        packs: Dict[str, Any] = settings.ledger.get("packs", {})
        if pack_id not in packs:
            raise ValueError(f"unknown credit pack: {pack_id}")
        credits = as_credits(packs[pack_id])
        return self.credit(owner_id, credits, "purchase", description=f"purchased {pack_id} pack ({credits} credits)", reference=reference)

    @retrying(StaleWrite)
    def reverse_proxy(self, owner_id: str, amount: Number, reason: str, reference: Optional[str] = None) -> CreditTransaction:
        """Take back earned proxy credit (fraud or abuse). Never touches held credit."""
        amount = as_credits(amount)
        if amount <= ZERO:
            raise ValueError("reversal amount must be positive")
        with SessionLocal() as session:
            row = self._load(session, owner_id)
            proxy = as_credits(row.proxy_credits)
            limit = min(proxy, _available(row))
            if amount > limit:
                raise InsufficientCredit(owner_id, amount, limit)
            self._cas(session, row, proxy_credits=proxy - amount)
            tx = self._record(session, owner_id, "reversal", -amount, _balance(row) - amount, f"proxy credit reversed: {reason}", reference=reference)
            session.commit()
            return _to_transaction(tx)

    def history(self, owner_id: str, limit: int = 50) -> List[CreditTransaction]:
        with SessionLocal() as session:
            stmt = (
                select(CreditTransactionRow)
                .where(CreditTransactionRow.owner_id == owner_id)
                .order_by(CreditTransactionRow.id.desc())
                .limit(limit)
            )
            return [_to_transaction(r) for r in session.execute(stmt).scalars().all()]

    # Internals

    def _load(self, session, owner_id: str) -> CreditAccountRow:
        row = session.get(CreditAccountRow, owner_id)
        if row is None:
            raise AccountNotFound(owner_id)
        return row

    def _cas(self, session, row: CreditAccountRow, **values: Any) -> None:
        seen = row.version
        result = session.execute(
            update(CreditAccountRow)
            .where(CreditAccountRow.owner_id == row.owner_id, CreditAccountRow.version == seen)
            .values(version=seen + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise StaleWrite(f"credit account {row.owner_id} changed concurrently")

    def _close(self, session, res: ReservationRow, status: str, committed_amount: Optional[Decimal] = None) -> None:
        result = session.execute(
            update(ReservationRow)
            .where(ReservationRow.id == res.id, ReservationRow.status == "held")
            .values(status=status, committed_amount=committed_amount, closed_at=utc_now_iso())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise StaleWrite(f"reservation {res.id} closed concurrently")
        res.status = status
        res.committed_amount = committed_amount

    def _record(
        self,
        session,
        owner_id: str,
        tx_type: str,
        amount: Decimal,
        balance_after: Decimal,
        description: str,
        job_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> CreditTransactionRow:
        tx = CreditTransactionRow(
            owner_id=owner_id,
            type=tx_type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            job_id=job_id,
            reference=reference,
            created_at=utc_now_iso(),
        )
        session.add(tx)
        return tx
