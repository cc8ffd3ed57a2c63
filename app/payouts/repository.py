# app/payouts/repository.py
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, ContextManager, Iterator, Optional, Protocol
from uuid import UUID

from psycopg2.extras import RealDictCursor

from app.payouts.model import (
    AttemptPlan,
    Business,
    Order,
    Payment,
    Payout,
    SellerUser,
    TransferContext,
)
from app.payouts.state_machine import MAX_ATTEMPTS, RETRYABLE_STATUSES
from db import get_conn, get_session_conn

# Arbitrary but fixed key for pg_try_advisory_lock; one sweep per database.
SWEEP_LOCK_KEY = 7_340_021

PAYOUT_COLUMNS = """
  p.id,
  p.order_id,
  p.seller_id,
  p.payment_id,
  p.amount_gross,
  p.platform_fee_seller,
  p.processor_fee_allocated,
  p.amount_net,
  p.currency,
  p.status,
  p.reference,
  p.chapa_reference,
  p.bank_reference,
  p.attempts,
  p.last_error,
  p.created_at,
  p.updated_at
"""


class PayoutStore(Protocol):
    def load_context(self, order_id: str) -> Optional[TransferContext]: ...

    def get_order(self, order_id: str) -> Optional[Order]: ...

    def get_user_by_external_id(self, external_id: str) -> Optional[SellerUser]: ...

    def get_payout(self, payout_id: UUID) -> Optional[Payout]: ...

    def get_payout_by_order(self, order_id: str) -> Optional[Payout]: ...

    def get_payout_by_reference(self, reference: str) -> Optional[Payout]: ...

    def list_for_seller(self, seller_id: str, *, limit: int = 100) -> list[Payout]: ...

    def list_retryable(self, *, now: datetime, limit: int) -> list[Payout]: ...

    def insert_attempt(self, plan: AttemptPlan) -> Optional[Payout]: ...

    def update_attempt(self, current: Payout, plan: AttemptPlan) -> Optional[Payout]: ...

    def update_status(
        self,
        payout_id: UUID,
        *,
        status: str,
        chapa_reference: Optional[str] = None,
        bank_reference: Optional[str] = None,
        last_error: Optional[str] = None,
        expected_reference: Optional[str] = None,
    ) -> tuple[Optional[Payout], bool]: ...

    def sweep_lock(self) -> ContextManager[bool]: ...


def _row_to_payout(row: Optional[dict[str, Any]]) -> Optional[Payout]:
    if not row:
        return None
    return Payout(
        id=row["id"],
        order_id=str(row["order_id"]),
        seller_id=str(row["seller_id"]),
        payment_id=str(row["payment_id"]) if row.get("payment_id") is not None else None,
        amount_gross=row["amount_gross"],
        platform_fee_seller=row["platform_fee_seller"],
        processor_fee_allocated=row["processor_fee_allocated"],
        amount_net=row["amount_net"],
        currency=row["currency"],
        status=row["status"],
        reference=row["reference"],
        chapa_reference=row.get("chapa_reference"),
        bank_reference=row.get("bank_reference"),
        attempts=int(row["attempts"]),
        last_error=row.get("last_error"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ==========================================================
# Collaborator reads (orders, payments, users, businesses)
# ==========================================================

def fetch_order(conn, order_id: str) -> Optional[Order]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT id, amount, status, seller_id, payment_id, buyer_id
            FROM app.orders
            WHERE id = %s
            """,
            (order_id,),
        )
        row = cur.fetchone()
    if not row:
        return None
    return Order(
        id=str(row["id"]),
        amount=row["amount"],
        status=row["status"],
        seller_id=row["seller_id"],
        payment_id=str(row["payment_id"]) if row["payment_id"] is not None else None,
        buyer_id=row["buyer_id"],
    )


def fetch_payment(conn, payment_id: str) -> Optional[Payment]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT id, amount, currency, status, processor_fee_total
            FROM app.payments
            WHERE id = %s
            """,
            (payment_id,),
        )
        row = cur.fetchone()
    if not row:
        return None
    return Payment(
        id=str(row["id"]),
        amount=row["amount"],
        currency=row["currency"],
        status=row["status"],
        processor_fee_total=row["processor_fee_total"],
    )


def fetch_user_by_external_id(conn, external_id: str) -> Optional[SellerUser]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT id, external_id FROM app.users WHERE external_id = %s",
            (external_id,),
        )
        row = cur.fetchone()
    if not row:
        return None
    return SellerUser(id=str(row["id"]), external_id=row["external_id"])


def fetch_business_by_owner(conn, owner_id: str) -> Optional[Business]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT id, owner_id, payout_bank_code, payout_account_number,
                   payout_account_name, payout_updated_at
            FROM app.businesses
            WHERE owner_id = %s
            ORDER BY created_at
            LIMIT 1
            """,
            (owner_id,),
        )
        row = cur.fetchone()
    if not row:
        return None
    return Business(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        payout_bank_code=row["payout_bank_code"],
        payout_account_number=row["payout_account_number"],
        payout_account_name=row["payout_account_name"],
        payout_updated_at=row["payout_updated_at"],
    )


# ==========================================================
# Payout reads
# ==========================================================

def fetch_payout(conn, payout_id: UUID) -> Optional[Payout]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(f"SELECT {PAYOUT_COLUMNS} FROM app.payouts p WHERE p.id = %s", (payout_id,))
        return _row_to_payout(cur.fetchone())


def fetch_payout_by_order(conn, order_id: str) -> Optional[Payout]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(f"SELECT {PAYOUT_COLUMNS} FROM app.payouts p WHERE p.order_id = %s", (order_id,))
        return _row_to_payout(cur.fetchone())


def fetch_payout_by_reference(conn, reference: str) -> Optional[Payout]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(f"SELECT {PAYOUT_COLUMNS} FROM app.payouts p WHERE p.reference = %s", (reference,))
        return _row_to_payout(cur.fetchone())


def fetch_payouts_for_seller(conn, seller_id: str, *, limit: int) -> list[Payout]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {PAYOUT_COLUMNS}
            FROM app.payouts p
            WHERE p.seller_id = %s
            ORDER BY p.created_at DESC
            LIMIT %s
            """,
            (seller_id, limit),
        )
        return [_row_to_payout(r) for r in cur.fetchall()]


def fetch_retryable_payouts(conn, *, now: datetime, limit: int) -> list[Payout]:
    """
    Payouts whose backoff window (indexed by attempts) has elapsed.
    The CASE mirrors state_machine.RETRY_BACKOFFS.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {PAYOUT_COLUMNS}
            FROM app.payouts p
            WHERE p.status = ANY(%s)
              AND p.attempts < %s
              AND p.updated_at <= %s - CASE
                    WHEN p.attempts <= 1 THEN interval '5 minutes'
                    WHEN p.attempts = 2 THEN interval '15 minutes'
                    WHEN p.attempts = 3 THEN interval '1 hour'
                    WHEN p.attempts = 4 THEN interval '6 hours'
                    ELSE interval '24 hours'
                  END
            ORDER BY p.updated_at
            LIMIT %s
            """,
            (list(RETRYABLE_STATUSES), MAX_ATTEMPTS, now, limit),
        )
        return [_row_to_payout(r) for r in cur.fetchall()]


# ==========================================================
# Writes
# ==========================================================

def insert_attempt(conn, plan: AttemptPlan) -> Optional[Payout]:
    """
    Create the payout for an order with attempts=1.
    Returns None when another caller created it first (unique order_id).
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            INSERT INTO app.payouts AS p (
              order_id, seller_id, payment_id,
              amount_gross, platform_fee_seller, processor_fee_allocated, amount_net,
              currency, status, reference, attempts, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'pending', %s, 1, clock_timestamp(), clock_timestamp())
            ON CONFLICT (order_id) DO NOTHING
            RETURNING {PAYOUT_COLUMNS}
            """,
            (
                plan.order_id,
                plan.seller_id,
                plan.payment_id,
                plan.amounts.amount_gross,
                plan.amounts.platform_fee_seller,
                plan.amounts.processor_fee_allocated,
                plan.amounts.amount_net,
                plan.currency,
                plan.reference,
            ),
        )
        return _row_to_payout(cur.fetchone())


def update_attempt(conn, current: Payout, plan: AttemptPlan) -> Optional[Payout]:
    """
    Compare-and-swap a new attempt onto an existing payout.
    Returns None when the row moved since `current` was read.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            UPDATE app.payouts AS p
            SET
              attempts = p.attempts + 1,
              amount_gross = %s,
              platform_fee_seller = %s,
              processor_fee_allocated = %s,
              amount_net = %s,
              currency = %s,
              payment_id = %s,
              status = 'pending',
              reference = %s,
              last_error = NULL,
              updated_at = clock_timestamp()
            WHERE p.id = %s
              AND p.status = %s
              AND p.attempts = %s
              AND p.updated_at = %s
            RETURNING {PAYOUT_COLUMNS}
            """,
            (
                plan.amounts.amount_gross,
                plan.amounts.platform_fee_seller,
                plan.amounts.processor_fee_allocated,
                plan.amounts.amount_net,
                plan.currency,
                plan.payment_id,
                plan.reference,
                current.id,
                current.status,
                current.attempts,
                current.updated_at,
            ),
        )
        return _row_to_payout(cur.fetchone())


def update_status(
    conn,
    *,
    payout_id: UUID,
    status: str,
    chapa_reference: Optional[str] = None,
    bank_reference: Optional[str] = None,
    last_error: Optional[str] = None,
    expected_reference: Optional[str] = None,
) -> Optional[Payout]:
    """
    Single guarded UPDATE: terminal rows only accept their own status.
    Returns the updated payout, or None when the guard rejected the write.
    """
    reference_guard_sql = ""
    params: list[Any] = [status, chapa_reference, bank_reference, last_error, payout_id, status]
    if expected_reference is not None:
        reference_guard_sql = "AND p.reference = %s"
        params.append(expected_reference)

    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            UPDATE app.payouts AS p
            SET
              status = %s,
              chapa_reference = COALESCE(%s, p.chapa_reference),
              bank_reference = COALESCE(%s, p.bank_reference),
              last_error = COALESCE(%s, p.last_error),
              updated_at = clock_timestamp()
            WHERE p.id = %s
              AND (p.status NOT IN ('success', 'reverted') OR p.status = %s)
              {reference_guard_sql}
            RETURNING {PAYOUT_COLUMNS}
            """,
            tuple(params),
        )
        return _row_to_payout(cur.fetchone())


# ==========================================================
# Sweep single-flight
# ==========================================================

def try_advisory_lock(conn) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT pg_try_advisory_lock(%s)", (SWEEP_LOCK_KEY,))
        return bool(cur.fetchone()[0])


def advisory_unlock(conn) -> None:
    with conn.cursor() as cur:
        cur.execute("SELECT pg_advisory_unlock(%s)", (SWEEP_LOCK_KEY,))


# ==========================================================
# Store
# ==========================================================

class PostgresPayoutStore:
    """
    PayoutStore backed by app.payouts. Each call runs in its own transaction.
    """

    def load_context(self, order_id: str) -> Optional[TransferContext]:
        with get_conn() as conn:
            order = fetch_order(conn, order_id)
            if order is None:
                return None

            payment = fetch_payment(conn, order.payment_id) if order.payment_id else None
            existing = fetch_payout_by_order(conn, order_id)

            seller_user = None
            business = None
            if order.seller_id:
                seller_user = fetch_user_by_external_id(conn, order.seller_id)
                if seller_user is not None:
                    business = fetch_business_by_owner(conn, seller_user.id)

            return TransferContext(
                order=order,
                payment=payment,
                existing_payout=existing,
                seller_user=seller_user,
                business=business,
            )

    def get_order(self, order_id: str) -> Optional[Order]:
        with get_conn() as conn:
            return fetch_order(conn, order_id)

    def get_user_by_external_id(self, external_id: str) -> Optional[SellerUser]:
        with get_conn() as conn:
            return fetch_user_by_external_id(conn, external_id)

    def get_payout(self, payout_id: UUID) -> Optional[Payout]:
        with get_conn() as conn:
            return fetch_payout(conn, payout_id)

    def get_payout_by_order(self, order_id: str) -> Optional[Payout]:
        with get_conn() as conn:
            return fetch_payout_by_order(conn, order_id)

    def get_payout_by_reference(self, reference: str) -> Optional[Payout]:
        with get_conn() as conn:
            return fetch_payout_by_reference(conn, reference)

    def list_for_seller(self, seller_id: str, *, limit: int = 100) -> list[Payout]:
        with get_conn() as conn:
            return fetch_payouts_for_seller(conn, seller_id, limit=limit)

    def list_retryable(self, *, now: datetime, limit: int) -> list[Payout]:
        with get_conn() as conn:
            return fetch_retryable_payouts(conn, now=now, limit=limit)

    def insert_attempt(self, plan: AttemptPlan) -> Optional[Payout]:
        with get_conn() as conn:
            return insert_attempt(conn, plan)

    def update_attempt(self, current: Payout, plan: AttemptPlan) -> Optional[Payout]:
        with get_conn() as conn:
            return update_attempt(conn, current, plan)

    def update_status(
        self,
        payout_id: UUID,
        *,
        status: str,
        chapa_reference: Optional[str] = None,
        bank_reference: Optional[str] = None,
        last_error: Optional[str] = None,
        expected_reference: Optional[str] = None,
    ) -> tuple[Optional[Payout], bool]:
        with get_conn() as conn:
            updated = update_status(
                conn,
                payout_id=payout_id,
                status=status,
                chapa_reference=chapa_reference,
                bank_reference=bank_reference,
                last_error=last_error,
                expected_reference=expected_reference,
            )
            if updated is not None:
                return updated, True
            return fetch_payout(conn, payout_id), False

    @contextmanager
    def sweep_lock(self) -> Iterator[bool]:
        """
        Session-level advisory lock held for the duration of one sweep pass.
        Yields False when another process holds it.
        """
        with get_session_conn() as conn:
            locked = try_advisory_lock(conn)
            try:
                yield locked
            finally:
                if locked:
                    advisory_unlock(conn)
