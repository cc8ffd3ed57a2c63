# tests/conftest.py

import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from app.payouts.model import (
    AttemptPlan,
    Business,
    Order,
    Payment,
    Payout,
    SellerUser,
    TransferContext,
)
from app.payouts.service import PayoutService
from app.payouts.state_machine import TERMINAL_STATUSES, is_retry_due
from app.providers.base import TransferRequest, TransferResult, TransferVerification
from deps.payouts import get_payout_service, get_transfer_client
from main import create_app
from security import create_access_token
from services.metrics import reset_metrics


SELLER_ID = "user_seller_1"
BUYER_ID = "user_buyer_1"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------
# In-memory PayoutStore
# ---------------------------

class InMemoryPayoutStore:
    """
    PayoutStore with the same guarantees as the Postgres one: unique order_id,
    compare-and-swap on (id, status, attempts, updated_at), terminal guard.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._lock = threading.Lock()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.orders: Dict[str, Order] = {}
        self.payments: Dict[str, Payment] = {}
        self.users: Dict[str, SellerUser] = {}
        self.businesses: Dict[str, Business] = {}
        self.payouts: Dict[uuid.UUID, Payout] = {}
        self.sweep_lock_held = False
        self._last_stamp: Optional[datetime] = None

    def _stamp(self) -> datetime:
        now = self.clock()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    # --- collaborators ---

    def load_context(self, order_id: str) -> Optional[TransferContext]:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None:
                return None
            payment = self.payments.get(order.payment_id) if order.payment_id else None
            seller_user = self.users.get(order.seller_id) if order.seller_id else None
            business = self.businesses.get(seller_user.id) if seller_user else None
            return TransferContext(
                order=order,
                payment=payment,
                existing_payout=self._by_order(order_id),
                seller_user=seller_user,
                business=business,
            )

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)

    def get_user_by_external_id(self, external_id: str) -> Optional[SellerUser]:
        return self.users.get(external_id)

    # --- payouts ---

    def _by_order(self, order_id: str) -> Optional[Payout]:
        for p in self.payouts.values():
            if p.order_id == order_id:
                return p
        return None

    def get_payout(self, payout_id):
        return self.payouts.get(payout_id)

    def get_payout_by_order(self, order_id: str) -> Optional[Payout]:
        with self._lock:
            return self._by_order(order_id)

    def get_payout_by_reference(self, reference: str) -> Optional[Payout]:
        for p in self.payouts.values():
            if p.reference == reference:
                return p
        return None

    def list_for_seller(self, seller_id: str, *, limit: int = 100) -> List[Payout]:
        rows = [p for p in self.payouts.values() if p.seller_id == seller_id]
        return sorted(rows, key=lambda p: p.created_at, reverse=True)[:limit]

    def list_retryable(self, *, now: datetime, limit: int) -> List[Payout]:
        rows = [p for p in self.payouts.values() if is_retry_due(p, now)]
        return sorted(rows, key=lambda p: p.updated_at)[:limit]

    def insert_attempt(self, plan: AttemptPlan) -> Optional[Payout]:
        with self._lock:
            if self._by_order(plan.order_id) is not None:
                return None
            now = self._stamp()
            payout = Payout(
                id=uuid.uuid4(),
                order_id=plan.order_id,
                seller_id=plan.seller_id,
                payment_id=plan.payment_id,
                amount_gross=plan.amounts.amount_gross,
                platform_fee_seller=plan.amounts.platform_fee_seller,
                processor_fee_allocated=plan.amounts.processor_fee_allocated,
                amount_net=plan.amounts.amount_net,
                currency=plan.currency,
                status="pending",
                reference=plan.reference,
                chapa_reference=None,
                bank_reference=None,
                attempts=1,
                last_error=None,
                created_at=now,
                updated_at=now,
            )
            self.payouts[payout.id] = payout
            return payout

    def update_attempt(self, current: Payout, plan: AttemptPlan) -> Optional[Payout]:
        with self._lock:
            row = self.payouts.get(current.id)
            if (
                row is None
                or row.status != current.status
                or row.attempts != current.attempts
                or row.updated_at != current.updated_at
            ):
                return None
            updated = replace(
                row,
                attempts=row.attempts + 1,
                amount_gross=plan.amounts.amount_gross,
                platform_fee_seller=plan.amounts.platform_fee_seller,
                processor_fee_allocated=plan.amounts.processor_fee_allocated,
                amount_net=plan.amounts.amount_net,
                currency=plan.currency,
                payment_id=plan.payment_id,
                status="pending",
                reference=plan.reference,
                last_error=None,
                updated_at=self._stamp(),
            )
            self.payouts[row.id] = updated
            return updated

    def update_status(
        self,
        payout_id,
        *,
        status: str,
        chapa_reference: Optional[str] = None,
        bank_reference: Optional[str] = None,
        last_error: Optional[str] = None,
        expected_reference: Optional[str] = None,
    ):
        with self._lock:
            row = self.payouts.get(payout_id)
            if row is None:
                return None, False
            if row.status in TERMINAL_STATUSES and row.status != status:
                return row, False
            if expected_reference is not None and row.reference != expected_reference:
                return row, False
            updated = replace(
                row,
                status=status,
                chapa_reference=chapa_reference if chapa_reference is not None else row.chapa_reference,
                bank_reference=bank_reference if bank_reference is not None else row.bank_reference,
                last_error=last_error if last_error is not None else row.last_error,
                updated_at=self._stamp(),
            )
            self.payouts[row.id] = updated
            return updated, True

    @contextmanager
    def sweep_lock(self):
        if self.sweep_lock_held:
            yield False
            return
        self.sweep_lock_held = True
        try:
            yield True
        finally:
            self.sweep_lock_held = False

    # --- seeding helpers ---

    def seed_order(
        self,
        order_id: str = "order_1",
        *,
        seller_id: Optional[str] = SELLER_ID,
        buyer_id: Optional[str] = BUYER_ID,
        amount: str = "1000",
        order_status: str = "completed",
        payment_total: Optional[str] = "1000",
        processor_fee_total: Optional[str] = "20",
        payment_status: str = "success",
        currency: Optional[str] = "ETB",
        with_payment: bool = True,
        with_business: bool = True,
        bank_code: Optional[str] = "044",
        account_number: Optional[str] = "1000123456789",
        account_name: Optional[str] = "Abebe Kebede",
        payout_updated_at: Optional[datetime] = None,
    ) -> Order:
        payment_id = None
        if with_payment:
            payment_id = f"pay_{order_id}"
            self.payments[payment_id] = Payment(
                id=payment_id,
                amount=Decimal(payment_total) if payment_total is not None else None,
                currency=currency,
                status=payment_status,
                processor_fee_total=Decimal(processor_fee_total) if processor_fee_total is not None else None,
            )
        if seller_id and seller_id not in self.users:
            self.users[seller_id] = SellerUser(id=f"internal_{seller_id}", external_id=seller_id)
        if buyer_id and buyer_id not in self.users:
            self.users[buyer_id] = SellerUser(id=f"internal_{buyer_id}", external_id=buyer_id)
        if seller_id and with_business:
            owner = self.users[seller_id].id
            self.businesses[owner] = Business(
                id=f"biz_{seller_id}",
                owner_id=owner,
                payout_bank_code=bank_code,
                payout_account_number=account_number,
                payout_account_name=account_name,
                payout_updated_at=payout_updated_at,
            )
        order = Order(
            id=order_id,
            amount=Decimal(amount),
            status=order_status,
            seller_id=seller_id,
            payment_id=payment_id,
            buyer_id=buyer_id,
        )
        self.orders[order_id] = order
        return order

    def seed_payout(
        self,
        order_id: str = "order_1",
        *,
        status: str = "failed",
        attempts: int = 1,
        updated_at: datetime = T0,
        created_at: Optional[datetime] = None,
        amount_net: str = "970.00",
        reference: Optional[str] = None,
        seller_id: str = SELLER_ID,
    ) -> Payout:
        payout = Payout(
            id=uuid.uuid4(),
            order_id=order_id,
            seller_id=seller_id,
            payment_id=f"pay_{order_id}",
            amount_gross=Decimal("1000.00"),
            platform_fee_seller=Decimal("10.00"),
            processor_fee_allocated=Decimal("20.00"),
            amount_net=Decimal(amount_net),
            currency="ETB",
            status=status,
            reference=reference or f"PO-{order_id}-{attempts}-SEEDED",
            chapa_reference=None,
            bank_reference=None,
            attempts=attempts,
            last_error=None,
            created_at=created_at or updated_at,
            updated_at=updated_at,
        )
        self.payouts[payout.id] = payout
        return payout


# ---------------------------
# Scripted transfer client
# ---------------------------

class FakeTransferClient:
    def __init__(self):
        self.calls: List[TransferRequest] = []
        self.failures: List[Exception] = []
        self.verified: List[str] = []
        self.verify_status: Optional[str] = "success"
        self.verify_error: Optional[Exception] = None
        self.banks = {"message": "Banks retrieved", "data": [{"id": "044", "name": "Commercial Bank of Ethiopia"}]}
        self.banks_error: Optional[Exception] = None

    def fail_next(self, exc: Exception) -> None:
        self.failures.append(exc)

    def create_transfer(self, request: TransferRequest) -> TransferResult:
        self.calls.append(request)
        if self.failures:
            raise self.failures.pop(0)
        return TransferResult(
            reference=request.reference,
            chapa_reference=f"CHX-{len(self.calls)}",
            bank_reference=f"BNK-{len(self.calls)}",
        )

    def verify_transfer(self, reference: str) -> TransferVerification:
        self.verified.append(reference)
        if self.verify_error is not None:
            raise self.verify_error
        return TransferVerification(
            reference=reference,
            status=self.verify_status,
            chapa_reference="CHX-VERIFIED",
            bank_reference="BNK-VERIFIED",
        )

    def get_banks(self):
        if self.banks_error is not None:
            raise self.banks_error
        return self.banks


# ---------------------------
# Fixtures
# ---------------------------

@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def store() -> InMemoryPayoutStore:
    return InMemoryPayoutStore()


@pytest.fixture()
def transfer_client() -> FakeTransferClient:
    return FakeTransferClient()


@pytest.fixture()
def service(store, transfer_client) -> PayoutService:
    return PayoutService(store, transfer_client)


@pytest.fixture()
def app(service, transfer_client):
    app = create_app()
    app.dependency_overrides[get_payout_service] = lambda: service
    app.dependency_overrides[get_transfer_client] = lambda: transfer_client
    yield app
    app.dependency_overrides.clear()


@pytest.fixture()
def client(app) -> TestClient:
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(app, raise_server_exceptions=False)


def auth_headers(sub: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(sub)}"}


@pytest.fixture()
def seller_headers() -> Dict[str, str]:
    return auth_headers(SELLER_ID)


@pytest.fixture()
def buyer_headers() -> Dict[str, str]:
    return auth_headers(BUYER_ID)


@pytest.fixture()
def headers_for():
    return auth_headers
