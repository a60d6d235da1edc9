from __future__ import annotations

import collections
import datetime as _dt
import logging
import threading
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Tuple

from sqlalchemy import select, update

from .errors import NodeNotFound
from .hashing import short_id
from .ledger import ZERO, CreditLedger, as_credits
from .schemas import NetworkStats, ProxyNode
from .settings import settings
from .storage import ProxyNodeRow, ProxyUsageWindowRow, SessionLocal, parse_iso, utc_now_iso


logger = logging.getLogger(__name__)

_BYTES_PER_MB = Decimal(1_000_000)

# (node_id, requests, successes, bytes)
Usage = Tuple[str, int, int, int]


def window_credits(requests: int, successes: int, bytes_transferred: int) -> Decimal:
    """Credits earned by one settlement window.

    requests * credits_per_request + MB * credits_per_mb, times the success
    bonus multiplier when successes / requests reaches the bonus threshold.
    """
    cfg = settings.proxy
    base = Decimal(requests) * Decimal(str(cfg["credits_per_request"])) + (
        Decimal(bytes_transferred) / _BYTES_PER_MB
    ) * Decimal(str(cfg["credits_per_mb"]))
    if requests > 0 and Decimal(successes) / Decimal(requests) >= Decimal(str(cfg["success_bonus_threshold"])):
        base = base * Decimal(str(cfg["success_bonus_multiplier"]))
    return as_credits(base)


def _to_node(row: ProxyNodeRow) -> ProxyNode:
    total = row.total_requests or 0
    return ProxyNode(
        id=row.id,
        owner_id=row.owner_id,
        host=row.host,
        port=row.port,
        country=row.country,
        is_online=row.is_online,
        success_rate=(row.successful_requests / total) if total else 0.0,
        total_requests=total,
        successful_requests=row.successful_requests or 0,
        bytes_served=row.bytes_served or 0,
        credits_earned=as_credits(row.credits_earned),
        registered_at=row.registered_at,
        last_seen=row.last_seen,
    )


class ProxyAccountant:
    """Turns bandwidth-node usage into earned credits.

    record_usage only appends to an in-memory buffer; flush folds the buffer
    into each node's open usage window, and settle closes a window, credits
    the owner through the ledger and opens the next one.
    """

    def __init__(self, ledger: Optional[CreditLedger] = None) -> None:
        self.ledger = ledger or CreditLedger()
        self._buffer: Deque[Usage] = collections.deque()
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, node_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(node_id)
            if lock is None:
                lock = self._locks[node_id] = threading.RLock()
            return lock

    # Nodes

    def register_node(self, owner_id: str, host: str, port: int, country: str) -> ProxyNode:
        node_id = short_id(owner_id, host.lower(), int(port))
        now = utc_now_iso()
        with SessionLocal() as session:
            row = session.get(ProxyNodeRow, node_id)
            if row is None:
                row = ProxyNodeRow(
                    id=node_id,
                    owner_id=owner_id,
                    host=host.lower(),
                    port=int(port),
                    country=country.upper(),
                    is_online=True,
                    total_requests=0,
                    successful_requests=0,
                    bytes_served=0,
                    credits_earned=ZERO,
                    bonus_paid=False,
                    registered_at=now,
                    last_seen=now,
                )
                session.add(row)
                session.add(ProxyUsageWindowRow(node_id=node_id, opened_at=now, status="open"))
                session.commit()
                logger.info("registered proxy node %s for owner %s (%s:%s)", node_id, owner_id, host, port)
        self._pay_registration_bonus(node_id, owner_id)
        return self.get_node(node_id)

    def _pay_registration_bonus(self, node_id: str, owner_id: str) -> None:
        bonus = as_credits(settings.proxy.get("registration_bonus", 0))
        if bonus > ZERO:
            self.ledger.credit(
                owner_id,
                bonus,
                "bonus",
                description=f"proxy node {node_id} registration bonus",
                reference=f"proxy-bonus:{node_id}",
            )
        with SessionLocal() as session:
            session.execute(
                update(ProxyNodeRow)
                .where(ProxyNodeRow.id == node_id, ProxyNodeRow.bonus_paid.is_(False))
                .values(bonus_paid=True)
            )
            session.commit()

    def get_node(self, node_id: str) -> ProxyNode:
        with SessionLocal() as session:
            row = session.get(ProxyNodeRow, node_id)
            if row is None:
                raise NodeNotFound(node_id)
            return _to_node(row)

    def list_nodes(self, owner_id: str) -> List[ProxyNode]:
        with SessionLocal() as session:
            rows = session.execute(
                select(ProxyNodeRow).where(ProxyNodeRow.owner_id == owner_id).order_by(ProxyNodeRow.registered_at)
            ).scalars().all()
            return [_to_node(r) for r in rows]

    def heartbeat(self, node_id: str, is_online: bool = True, now: Optional[_dt.datetime] = None) -> ProxyNode:
        ts = (now or _dt.datetime.now(tz=_dt.timezone.utc)).isoformat()
        with SessionLocal() as session:
            result = session.execute(
                update(ProxyNodeRow).where(ProxyNodeRow.id == node_id).values(is_online=is_online, last_seen=ts)
            )
            if result.rowcount == 0:
                raise NodeNotFound(node_id)
            session.commit()
        return self.get_node(node_id)

    def mark_stale_offline(self, now: Optional[_dt.datetime] = None) -> List[str]:
        now = now or _dt.datetime.now(tz=_dt.timezone.utc)
        limit = _dt.timedelta(seconds=int(settings.proxy.get("offline_after_s", 60)))
        stale: List[str] = []
        with SessionLocal() as session:
            rows = session.execute(select(ProxyNodeRow).where(ProxyNodeRow.is_online.is_(True))).scalars().all()
            for row in rows:
                seen = parse_iso(row.last_seen) or parse_iso(row.registered_at)
                if seen is not None and now - seen > limit:
                    row.is_online = False
                    stale.append(row.id)
            session.commit()
        if stale:
            logger.info("marked %d proxy nodes offline", len(stale))
        return stale

    # Usage

    def record_usage(self, node_id: str, requests_served: int, bytes_transferred: int, success: bool) -> None:
        """Hot path for the proxy transport: a single deque append, no I/O."""
        self._buffer.append((node_id, int(requests_served), int(requests_served) if success else 0, int(bytes_transferred)))

    def _drain(self) -> Dict[str, List[int]]:
        totals: Dict[str, List[int]] = {}
        while True:
            try:
                node_id, requests, successes, nbytes = self._buffer.popleft()
            except IndexError:
                break
            agg = totals.setdefault(node_id, [0, 0, 0])
            agg[0] += requests
            agg[1] += successes
            agg[2] += nbytes
        return totals

    def flush(self) -> int:
        """Fold buffered usage into the open windows. Returns the number of nodes updated."""
        folded = 0
        for node_id, (requests, successes, nbytes) in self._drain().items():
            with self._lock_for(node_id):
                if self._fold(node_id, requests, successes, nbytes):
                    folded += 1
        return folded

    def _fold(self, node_id: str, requests: int, successes: int, nbytes: int) -> bool:
        with SessionLocal() as session:
            node = session.get(ProxyNodeRow, node_id)
            if node is None:
                logger.warning("dropping usage for unknown proxy node %s (%d requests)", node_id, requests)
                return False
            window = self._open_window(session, node_id)
            window.requests = (window.requests or 0) + requests
            window.successes = (window.successes or 0) + successes
            window.bytes = (window.bytes or 0) + nbytes
            node.total_requests = (node.total_requests or 0) + requests
            node.successful_requests = (node.successful_requests or 0) + successes
            node.bytes_served = (node.bytes_served or 0) + nbytes
            node.last_seen = utc_now_iso()
            session.commit()
            return True

    def _open_window(self, session, node_id: str) -> ProxyUsageWindowRow:
        window = session.execute(
            select(ProxyUsageWindowRow)
            .where(ProxyUsageWindowRow.node_id == node_id, ProxyUsageWindowRow.status == "open")
            .order_by(ProxyUsageWindowRow.id.desc())
            .limit(1)
        ).scalars().first()
        if window is None:
            window = ProxyUsageWindowRow(node_id=node_id, opened_at=utc_now_iso(), status="open", requests=0, successes=0, bytes=0)
            session.add(window)
            session.flush()
        return window

    # Settlement

    def settle(self, node_id: str) -> Decimal:
        """Close the node's current window and credit its earnings.

        Returns the credits earned by the window closed in this call; a call
        with no new usage returns zero. Safe to retry after a crash: a window
        is credited under the reference proxy-window:<id>, and windows stamped
        settled but not yet credited are re-driven first.
        """
        # Folding takes other nodes' locks, so it must happen before ours is held
        self.flush()
        with self._lock_for(node_id):
            with SessionLocal() as session:
                node = session.get(ProxyNodeRow, node_id)
                if node is None:
                    raise NodeNotFound(node_id)
                owner_id = node.owner_id

            self._redrive_uncredited(node_id, owner_id)

            with SessionLocal() as session:
                node = session.get(ProxyNodeRow, node_id)
                window = self._open_window(session, node_id)
                if not window.requests and not window.bytes:
                    session.commit()
                    return ZERO
                credits = window_credits(window.requests, window.successes, window.bytes)
                now = utc_now_iso()
                window.status = "settled"
                window.credits = credits
                window.settled_at = now
                window.credited = credits == ZERO
                node.credits_earned = as_credits(node.credits_earned) + credits
                session.add(ProxyUsageWindowRow(node_id=node_id, opened_at=now, status="open", requests=0, successes=0, bytes=0))
                session.commit()
                window_id = window.id
                stats = (window.requests, window.successes, window.bytes)

            if credits > ZERO:
                self._credit_window(window_id, owner_id, credits)
            logger.info(
                "settled proxy window %s for node %s: requests=%d successes=%d bytes=%d credits=%s",
                window_id,
                node_id,
                stats[0],
                stats[1],
                stats[2],
                credits,
            )
            return credits

    def _redrive_uncredited(self, node_id: str, owner_id: str) -> None:
        with SessionLocal() as session:
            pending = session.execute(
                select(ProxyUsageWindowRow.id, ProxyUsageWindowRow.credits).where(
                    ProxyUsageWindowRow.node_id == node_id,
                    ProxyUsageWindowRow.status == "settled",
                    ProxyUsageWindowRow.credited.is_(False),
                )
            ).all()
        for window_id, credits in pending:
            logger.warning("re-driving uncredited proxy window %s for node %s", window_id, node_id)
            self._credit_window(window_id, owner_id, as_credits(credits))

    def _credit_window(self, window_id: int, owner_id: str, credits: Decimal) -> None:
        self.ledger.credit(
            owner_id,
            credits,
            "proxy",
            description=f"proxy bandwidth window {window_id}",
            reference=f"proxy-window:{window_id}",
        )
        with SessionLocal() as session:
            session.execute(update(ProxyUsageWindowRow).where(ProxyUsageWindowRow.id == window_id).values(credited=True))
            session.commit()

    def settle_all(self) -> Dict[str, Decimal]:
        with SessionLocal() as session:
            node_ids = session.execute(select(ProxyNodeRow.id)).scalars().all()
        return {node_id: self.settle(node_id) for node_id in node_ids}

    def reverse(self, node_id: str, amount: Any, reason: str) -> Decimal:
        """Claw back earned credit from a node's owner for fraud or abuse."""
        amount = as_credits(amount)
        with self._lock_for(node_id):
            with SessionLocal() as session:
                node = session.get(ProxyNodeRow, node_id)
                if node is None:
                    raise NodeNotFound(node_id)
                owner_id = node.owner_id
                earned = as_credits(node.credits_earned)
            amount = min(amount, earned)
            if amount <= ZERO:
                return ZERO
            self.ledger.reverse_proxy(owner_id, amount, f"node {node_id}: {reason}")
            with SessionLocal() as session:
                node = session.get(ProxyNodeRow, node_id)
                node.credits_earned = as_credits(node.credits_earned) - amount
                session.commit()
        logger.warning("reversed %s proxy credits on node %s: %s", amount, node_id, reason)
        return amount

    # Read models

    def network_stats(self) -> NetworkStats:
        with SessionLocal() as session:
            rows = session.execute(select(ProxyNodeRow)).scalars().all()
            nodes = [_to_node(r) for r in rows]
        active = [n for n in nodes if n.total_requests]
        return NetworkStats(
            total_nodes=len(nodes),
            online_nodes=sum(1 for n in nodes if n.is_online),
            total_requests_served=sum(n.total_requests for n in nodes),
            bytes_transferred_total=sum(n.bytes_served for n in nodes),
            average_success_rate=(sum(n.success_rate for n in active) / len(active)) if active else 0.0,
            country_coverage=sorted({n.country for n in nodes}),
        )

    def leaderboard(self, limit: int = 10) -> List[Dict[str, Any]]:
        by_owner: Dict[str, Dict[str, Any]] = {}
        with SessionLocal() as session:
            for row in session.execute(select(ProxyNodeRow)).scalars().all():
                entry = by_owner.setdefault(
                    row.owner_id,
                    {"owner_id": row.owner_id, "nodes": 0, "requests": 0, "bytes": 0, "credits_earned": ZERO},
                )
                entry["nodes"] += 1
                entry["requests"] += row.total_requests or 0
                entry["bytes"] += row.bytes_served or 0
                entry["credits_earned"] += as_credits(row.credits_earned)
        ranked = sorted(by_owner.values(), key=lambda e: (-e["credits_earned"], e["owner_id"]))
        return ranked[:limit]
