import logging
from datetime import datetime

from sqlalchemy.orm import Session

from ..db.models import Order, utcnow
from . import audit
from .status import EXPIRED, OPEN_STATUSES, OVERPAID, summarize_payment

logger = logging.getLogger("settlement")

REQUIRES_ACTION = "requires_action"


def settle_expired(db: Session, now: datetime = None) -> int:
    """
    Finalize open crypto orders whose payment and top-up windows have both
    elapsed without enough confirmed funds, and flag over/underpayments for
    an operator. Expired is terminal for the address; nothing here resurrects
    an order. Returns the number of orders newly expired.
    """
    now = now or utcnow()
    candidates = (
        db.query(Order)
        .filter(Order.payment_method == "crypto")
        .filter(Order.crypto_payment_status.in_(OPEN_STATUSES + (OVERPAID,)))
        .filter(Order.status.notin_(("completed", "cancelled")))
        .all()
    )

    expired = 0
    for order in candidates:
        if not order.crypto_addresses:
            continue
        snapshot = summarize_payment(order, now)
        order.crypto_total_received = snapshot.total_received
        order.crypto_underpaid_amount = snapshot.underpaid
        order.crypto_overpaid_amount = snapshot.overpaid

        if snapshot.status == OVERPAID and order.refund_status != REQUIRES_ACTION:
            order.refund_status = REQUIRES_ACTION
            audit.log_event(db, audit.OVERPAYMENT_FLAGGED, order_id=order.id, ts=now, payload={
                "overpaid_amount": str(snapshot.overpaid),
                "expected_amount": str(snapshot.expected),
            })
            logger.warning(f"[Settlement] order {order.id} overpaid by {snapshot.overpaid}")
            continue

        if snapshot.status != EXPIRED:
            continue

        order.crypto_payment_status = EXPIRED
        expired += 1
        audit.log_event(db, audit.PAYMENT_EXPIRED, order_id=order.id, ts=now, payload={
            "total_received": str(snapshot.total_received),
            "total_confirmed_received": str(snapshot.total_confirmed),
            "expected_amount": str(snapshot.expected),
        })

        if snapshot.total_received == 0:
            order.status = "cancelled"
            logger.info(f"[Settlement] order {order.id} expired unpaid, cancelled")
        else:
            order.refund_status = REQUIRES_ACTION
            audit.log_event(db, audit.UNDERPAYMENT_FLAGGED, order_id=order.id, ts=now, payload={
                "underpaid_amount": str(snapshot.underpaid),
                "total_received": str(snapshot.total_received),
            })
            logger.warning(
                f"[Settlement] order {order.id} expired with {snapshot.total_received} of "
                f"{snapshot.expected} received, needs operator action"
            )

    db.commit()
    if expired:
        logger.info(f"[Settlement] {expired} orders expired")
    return expired
