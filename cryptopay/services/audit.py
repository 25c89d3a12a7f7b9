from ..db.models import CryptoAuditLog, utcnow

ADDRESS_GENERATED = "address_generated"
PAYMENT_DETECTED = "payment_detected"
CONFIRMATIONS_UPDATED = "confirmations_updated"
PAYMENT_CONFIRMED = "payment_confirmed"
PAYMENT_EXPIRED = "payment_expired"
UNDERPAYMENT_FLAGGED = "underpayment_flagged"
OVERPAYMENT_FLAGGED = "overpayment_flagged"


def log_event(db, event_type: str, order_id: str = None, crypto_address_id: str = None,
              payload: dict = None, raw_payload: dict = None, created_by: str = None, ts=None) -> CryptoAuditLog:
    """Append an audit row to the caller's session; committing is the caller's job."""
    entry = CryptoAuditLog(
        event_type=event_type,
        order_id=order_id,
        crypto_address_id=crypto_address_id,
        event_data=payload or {},
        raw_payload=raw_payload,
        created_by=created_by,
        created_at=ts or utcnow(),
    )
    db.add(entry)
    return entry
