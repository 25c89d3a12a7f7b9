from datetime import timedelta
from decimal import Decimal

from cryptopay.db.models import CryptoAuditLog
from cryptopay.services.settlement import settle_expired

from conftest import NOW, add_order

IN_TOP_UP = NOW + timedelta(minutes=20)
PAST_ALL = NOW + timedelta(minutes=50)


def event_types(db, order):
    return [e.event_type for e in db.query(CryptoAuditLog).filter_by(order_id=order.id).order_by(CryptoAuditLog.id)]


def test_unpaid_order_is_expired_and_cancelled(db):
    order = add_order(db)

    assert settle_expired(db, now=PAST_ALL) == 1
    assert order.crypto_payment_status == "expired"
    assert order.status == "cancelled"
    assert order.refund_status is None
    assert event_types(db, order) == ["payment_expired"]


def test_partially_paid_order_needs_operator(db):
    order = add_order(db, transactions=[("tx1", "0.0004", 3)])

    assert settle_expired(db, now=PAST_ALL) == 1
    assert order.crypto_payment_status == "expired"
    assert order.status == "pending"
    assert order.refund_status == "requires_action"
    assert order.crypto_total_received == Decimal("0.0004")
    assert order.crypto_underpaid_amount == Decimal("0.0006")
    assert event_types(db, order) == ["payment_expired", "underpayment_flagged"]


def test_unconfirmed_short_payment_still_expires(db):
    order = add_order(db, transactions=[("tx1", "0.0004", 0)])

    settle_expired(db, now=PAST_ALL)
    assert order.crypto_payment_status == "expired"
    assert order.refund_status == "requires_action"


def test_top_up_window_keeps_order_open(db):
    order = add_order(db, transactions=[("tx1", "0.0004", 3)], payment_status="partial")

    assert settle_expired(db, now=IN_TOP_UP) == 0
    assert order.crypto_payment_status == "partial"
    assert event_types(db, order) == []


def test_expiry_is_terminal_and_runs_once(db):
    order = add_order(db)

    assert settle_expired(db, now=PAST_ALL) == 1
    assert settle_expired(db, now=PAST_ALL + timedelta(hours=1)) == 0
    assert event_types(db, order) == ["payment_expired"]


def test_overpaid_order_flagged_once(db):
    order = add_order(db, payment_status="overpaid", status="processing",
                      transactions=[("tx1", "0.0015", 3)])

    assert settle_expired(db, now=PAST_ALL) == 0
    settle_expired(db, now=PAST_ALL)

    assert order.crypto_payment_status == "overpaid"
    assert order.refund_status == "requires_action"
    assert order.crypto_overpaid_amount == Decimal("0.0005")
    assert event_types(db, order) == ["overpayment_flagged"]


def test_paid_and_non_crypto_orders_untouched(db):
    paid = add_order(db, payment_status="paid", status="processing",
                     transactions=[("tx1", "0.001", 3)], index=0)
    card = add_order(db, index=1)
    card.payment_method = "card"
    db.commit()

    assert settle_expired(db, now=PAST_ALL) == 0
    assert paid.crypto_payment_status == "paid"
    assert card.crypto_payment_status == "pending"
