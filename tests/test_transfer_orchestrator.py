from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.payouts.errors import (
    MaxAttemptsExceeded,
    OrderNotFound,
    PayoutValidationError,
    PermanentTransferError,
    StateConflictError,
    TransientTransferError,
    UnauthorizedCaller,
)
from app.workers import payout_worker
from services.metrics import counter_value

SELLER = "user_seller_1"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_first_transfer_creates_queued_payout(store, service, transfer_client):
    store.seed_order()

    outcome = service.attempt_transfer("order_1", SELLER)

    payout = outcome.payout
    assert outcome.action == "create"
    assert outcome.transferred
    assert payout.status == "queued"
    assert payout.attempts == 1
    assert payout.amount_gross == Decimal("1000.00")
    assert payout.amount_net == Decimal("970.00")
    assert payout.currency == "ETB"
    assert payout.chapa_reference == "CHX-1"
    assert payout.reference.startswith("PO-order_1-1-")

    assert len(transfer_client.calls) == 1
    sent = transfer_client.calls[0]
    assert sent.amount == Decimal("970.00")
    assert sent.reference == payout.reference
    assert sent.account_number == "1000123456789"
    assert sent.bank_code == "044"
    assert counter_value("payout_attempts_total", {"result": "queued"}) == 1


def test_repeat_request_reuses_accepted_payout(store, service, transfer_client):
    store.seed_order()

    first = service.attempt_transfer("order_1", SELLER)
    second = service.attempt_transfer("order_1", SELLER)

    assert second.action == "reuse"
    assert second.reason == "ALREADY_QUEUED"
    assert second.payout.id == first.payout.id
    assert len(store.payouts) == 1
    assert len(transfer_client.calls) == 1


def test_concurrent_requests_send_one_transfer(store, service, transfer_client):
    store.seed_order()
    errors = []
    barrier = threading.Barrier(5)

    def worker():
        barrier.wait()
        try:
            service.attempt_transfer("order_1", SELLER)
        except Exception as e:  # collected for the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(store.payouts) == 1
    assert len(transfer_client.calls) == 1


def test_share_of_multi_order_payment(store, service, transfer_client):
    store.seed_order(amount="500", payment_total="1000", processor_fee_total="20")

    payout = service.attempt_transfer("order_1", SELLER).payout
    assert payout.platform_fee_seller == Decimal("5.00")
    assert payout.processor_fee_allocated == Decimal("10.00")
    assert payout.amount_net == Decimal("485.00")


def test_payment_currency_falls_back_to_default(store, service):
    store.seed_order(currency=None)
    assert service.attempt_transfer("order_1", SELLER).payout.currency == "ETB"


def test_zero_net_is_never_persisted_or_sent(store, service, transfer_client):
    store.seed_order(amount="10", payment_total="10", processor_fee_total="50")

    with pytest.raises(PayoutValidationError):
        service.attempt_transfer("order_1", SELLER)

    assert store.payouts == {}
    assert transfer_client.calls == []


def test_unknown_order(service):
    with pytest.raises(OrderNotFound):
        service.attempt_transfer("missing", SELLER)


def test_caller_must_be_seller(store, service, transfer_client):
    store.seed_order()
    with pytest.raises(UnauthorizedCaller):
        service.attempt_transfer("order_1", "user_buyer_1")
    assert transfer_client.calls == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"order_status": "paid"},
        {"payment_status": "pending"},
        {"with_payment": False},
        {"with_business": False},
        {"account_number": None},
        {"bank_code": ""},
    ],
)
def test_preconditions(store, service, transfer_client, overrides):
    store.seed_order(**overrides)

    with pytest.raises(PayoutValidationError):
        service.attempt_transfer("order_1", SELLER)

    assert store.payouts == {}
    assert transfer_client.calls == []


def test_order_without_seller_rejected_on_sweep(store, service):
    store.seed_order(seller_id=None)
    with pytest.raises(PayoutValidationError):
        service.attempt_transfer("order_1", None)


def test_transfer_failure_recorded_and_raised(store, service, transfer_client):
    store.seed_order()
    transfer_client.fail_next(
        TransientTransferError(
            "Transfer request timed out after 15000ms. Reference: PO-x. Attempts: 3.",
            reference="PO-x",
            attempts=3,
        )
    )

    with pytest.raises(TransientTransferError):
        service.attempt_transfer("order_1", SELLER)

    payout = store.get_payout_by_order("order_1")
    assert payout.status == "failed"
    assert payout.attempts == 1
    assert "timed out after 15000ms" in payout.last_error
    assert counter_value("payout_attempts_total", {"result": "failed"}) == 1


def test_failed_payout_retried_with_new_reference(store, service, transfer_client):
    store.seed_order()
    transfer_client.fail_next(PermanentTransferError("Insufficient balance"))
    with pytest.raises(PermanentTransferError):
        service.attempt_transfer("order_1", SELLER)
    first = store.get_payout_by_order("order_1")

    outcome = service.attempt_transfer("order_1", SELLER)

    assert outcome.action == "retry"
    assert outcome.payout.id == first.id
    assert outcome.payout.attempts == 2
    assert outcome.payout.status == "queued"
    assert outcome.payout.last_error is None
    assert outcome.payout.reference.startswith("PO-order_1-2-")
    assert outcome.payout.reference != first.reference
    assert [c.reference for c in transfer_client.calls] == [first.reference, outcome.payout.reference]


def test_pending_payout_with_changed_amounts_conflicts(store, service, transfer_client):
    store.seed_order()
    store.seed_payout(status="pending", amount_net="900.00")

    with pytest.raises(StateConflictError):
        service.attempt_transfer("order_1", SELLER)
    assert transfer_client.calls == []


def test_pending_payout_with_changed_bank_details_conflicts(store, service, transfer_client):
    store.seed_order(payout_updated_at=T0 + timedelta(hours=1))
    store.seed_payout(status="pending", updated_at=T0)

    with pytest.raises(StateConflictError):
        service.attempt_transfer("order_1", SELLER)
    assert transfer_client.calls == []


def test_pending_unchanged_payout_is_returned(store, service, transfer_client):
    store.seed_order()
    existing = store.seed_payout(status="pending")

    outcome = service.attempt_transfer("order_1", SELLER)
    assert outcome.action == "reuse"
    assert outcome.payout.id == existing.id
    assert transfer_client.calls == []


def test_max_attempts(store, service, transfer_client):
    store.seed_order()
    store.seed_payout(status="failed", attempts=5)

    with pytest.raises(MaxAttemptsExceeded):
        service.attempt_transfer("order_1", SELLER)
    assert transfer_client.calls == []


def test_reverted_payout_conflicts(store, service):
    store.seed_order()
    store.seed_payout(status="reverted")

    with pytest.raises(StateConflictError):
        service.attempt_transfer("order_1", SELLER)


def test_sweep_path_respects_backoff(store, service, transfer_client):
    store.seed_order()
    store.seed_payout(status="failed", attempts=1, updated_at=T0)

    outcome = service.attempt_transfer("order_1", None, now=T0 + timedelta(minutes=2))
    assert outcome.action == "skip"
    assert transfer_client.calls == []

    outcome = service.attempt_transfer("order_1", None, now=T0 + timedelta(minutes=6))
    assert outcome.action == "retry"
    assert len(transfer_client.calls) == 1


def test_account_number_masked_in_logs(store, service, caplog):
    store.seed_order()
    caplog.set_level("INFO", logger="payouts.service")

    service.attempt_transfer("order_1", SELLER)

    assert "1000123456789" not in caplog.text
    assert "****6789" in caplog.text


def test_rejected_attempt_is_logged(store, service, caplog):
    store.seed_order(order_status="shipped")
    caplog.set_level("WARNING", logger="payouts.service")

    with pytest.raises(PayoutValidationError):
        service.attempt_transfer("order_1", SELLER)

    records = [r for r in caplog.records if r.getMessage().startswith("payout_attempt_rejected")]
    assert len(records) == 1
    assert "order_id=order_1" in records[0].getMessage()
    assert "code=PAYOUT_VALIDATION_FAILED" in records[0].getMessage()
    assert counter_value("payout_attempts_total", {"result": "rejected"}) == 1


def test_max_attempts_rejection_names_payout(store, service, caplog):
    store.seed_order()
    payout = store.seed_payout(status="failed", attempts=5)
    caplog.set_level("WARNING", logger="payouts.service")

    with pytest.raises(MaxAttemptsExceeded):
        service.attempt_transfer("order_1", SELLER)

    assert f"payout_id={payout.id} attempt=5 code=PAYOUT_MAX_ATTEMPTS" in caplog.text


def test_transfer_error_survives_failed_status_write(store, service, transfer_client, monkeypatch, caplog):
    store.seed_order()
    transfer_client.fail_next(TransientTransferError("Transfer request failed: ConnectionError"))

    def db_down(*args, **kwargs):
        raise RuntimeError("connection refused")

    monkeypatch.setattr(store, "update_status", db_down)
    caplog.set_level("ERROR", logger="payouts.service")

    with pytest.raises(TransientTransferError):
        service.attempt_transfer("order_1", SELLER)

    assert "payout_failure_not_recorded" in caplog.text


def test_interactive_and_sweep_race_sends_one_transfer(store, service, transfer_client):
    store.seed_order()
    store.seed_payout(status="failed", attempts=1, updated_at=T0)
    now = T0 + timedelta(hours=1)
    barrier = threading.Barrier(2)
    errors = []
    summaries = []

    def interactive():
        barrier.wait()
        try:
            service.attempt_transfer("order_1", SELLER, now=now)
        except Exception as e:  # collected for the assertion below
            errors.append(e)

    def sweep():
        barrier.wait()
        summaries.append(payout_worker.process_once(service=service, now=now))

    threads = [threading.Thread(target=interactive), threading.Thread(target=sweep)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert summaries[0]["ran"] is True
    assert len(transfer_client.calls) == 1
    payout = store.get_payout_by_order("order_1")
    assert payout.status == "queued"
    assert payout.attempts == 2
