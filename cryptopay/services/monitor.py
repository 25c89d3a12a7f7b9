import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..chain.registry import ChainRegistry
from ..config import CryptoSettings
from ..db.models import CryptoAddress, CryptoTransaction, Order, new_id, utcnow
from ..db.session import UPSERT_INSERTS
from ..errors import ProviderError
from ..types.payment_types import DetectionResult, DetectionSummary, NormalizedTransaction
from . import audit
from .settlement import settle_expired
from .status import OPEN_STATUSES, OVERPAID, PAID, summarize_payment

logger = logging.getLogger("monitor")

NEWLY_DETECTED = "newly_detected"
CONFIRMATIONS_UPDATED = "confirmations_updated"


def pending_addresses(db: Session, now: datetime) -> List[CryptoAddress]:
    return (
        db.query(CryptoAddress)
        .join(Order, CryptoAddress.order_id == Order.id)
        .options(joinedload(CryptoAddress.order))
        .filter(Order.crypto_payment_status.in_(OPEN_STATUSES))
        .filter(or_(CryptoAddress.expires_at > now, CryptoAddress.top_up_window_expires_at > now))
        .order_by(CryptoAddress.created_at)
        .all()
    )


def upsert_transaction(db: Session, address: CryptoAddress, tx: NormalizedTransaction,
                       required: int, now: datetime) -> Optional[str]:
    """
    Insert the payment keyed by (address, tx hash), or raise the stored
    confirmation count when the chain reports more. Returns NEWLY_DETECTED,
    CONFIRMATIONS_UPDATED, or None when nothing changed.
    """
    dialect = db.get_bind().dialect.name
    insert = UPSERT_INSERTS.get(dialect)
    if insert is None:
        raise ValueError(f"Transaction upserts not supported on {dialect}")

    table = CryptoTransaction.__table__
    row_id = new_id()
    stmt = insert(table).values(
        id=row_id,
        crypto_address_id=address.id,
        tx_hash=tx.tx_hash,
        amount=tx.amount,
        confirmations=tx.confirmations,
        block_height=tx.block_height,
        detected_at=now,
        confirmed_at=now if tx.confirmations >= required else None,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.crypto_address_id, table.c.tx_hash],
        set_={
            "confirmations": stmt.excluded.confirmations,
            "block_height": func.coalesce(table.c.block_height, stmt.excluded.block_height),
            "confirmed_at": func.coalesce(table.c.confirmed_at, stmt.excluded.confirmed_at),
        },
        # confirmations only ever go up; the amount is never rewritten
        where=table.c.confirmations < stmt.excluded.confirmations,
    ).returning(table.c.id)

    touched = db.execute(stmt).scalar_one_or_none()
    if touched is None:
        return None
    return NEWLY_DETECTED if touched == row_id else CONFIRMATIONS_UPDATED


def record_transactions(db: Session, address: CryptoAddress, transactions: List[NormalizedTransaction],
                        required: int, now: datetime = None) -> List[DetectionResult]:
    """
    Upsert detected payments for one address. A known transaction only ever has
    its confirmations raised; its amount is never counted twice.
    """
    now = now or utcnow()
    stale = list(address.transactions)
    results = []
    for tx in transactions:
        if tx.amount <= 0:
            continue

        status = upsert_transaction(db, address, tx, required, now)
        if status == NEWLY_DETECTED:
            audit.log_event(db, audit.PAYMENT_DETECTED, order_id=address.order_id,
                            crypto_address_id=address.id, ts=now, payload={
                                "tx_hash": tx.tx_hash,
                                "amount": str(tx.amount),
                                "confirmations": tx.confirmations,
                                "block_height": tx.block_height,
                                "coin_symbol": address.coin_symbol,
                            }, raw_payload=tx.raw or None)
            logger.info(f"[Monitor] new transaction {tx.tx_hash}: {tx.amount} {address.coin_symbol}")
        elif status == CONFIRMATIONS_UPDATED:
            audit.log_event(db, audit.CONFIRMATIONS_UPDATED, order_id=address.order_id,
                            crypto_address_id=address.id, ts=now, payload={
                                "tx_hash": tx.tx_hash,
                                "confirmations": tx.confirmations,
                                "required": required,
                            })
            logger.info(f"[Monitor] confirmations for {tx.tx_hash}: {tx.confirmations}/{required}")
        else:
            continue

        results.append(DetectionResult(
            address=address.address,
            coin=address.coin_symbol,
            order_id=address.order_id,
            transaction=tx.tx_hash,
            amount=tx.amount,
            confirmations=tx.confirmations,
            status=status,
            block_height=tx.block_height,
        ))

    # rows changed underneath the ORM; reload them before the order is summarized
    for row in stale:
        db.expire(row)
    db.expire(address, ["transactions"])
    return results


def refresh_order(db: Session, order: Order, now: datetime = None) -> str:
    """Copy the derived payment state onto the order's informational columns."""
    snapshot = summarize_payment(order, now)
    order.crypto_total_received = snapshot.total_received
    order.crypto_underpaid_amount = snapshot.underpaid
    order.crypto_overpaid_amount = snapshot.overpaid

    previous = order.crypto_payment_status
    if snapshot.status in OPEN_STATUSES or snapshot.status in (PAID, OVERPAID):
        order.crypto_payment_status = snapshot.status
    if snapshot.status in (PAID, OVERPAID) and previous not in (PAID, OVERPAID):
        order.status = "processing"
        audit.log_event(db, audit.PAYMENT_CONFIRMED, order_id=order.id, ts=now, payload={
            "total_confirmed_received": str(snapshot.total_confirmed),
            "expected_amount": str(snapshot.expected),
            "payment_status": snapshot.status,
        })
        logger.info(f"[Monitor] order {order.id} {snapshot.status}: {snapshot.total_confirmed}/{snapshot.expected}")
    return snapshot.status


async def monitor_sweep(db: Session, settings: CryptoSettings, registry: ChainRegistry,
                        now: datetime = None, delay: Optional[float] = None) -> DetectionSummary:
    """Poll every open address once, record what the chain shows, then settle expiries."""
    now = now or utcnow()
    delay = settings.monitor_address_delay_seconds if delay is None else delay
    addresses = pending_addresses(db, now)
    summary = DetectionSummary(addresses_monitored=len(addresses))
    logger.info(f"[Monitor] sweep started: {len(addresses)} addresses")

    for i, address in enumerate(addresses, start=1):
        coin = settings.coin(address.coin_symbol)
        if coin is None:
            logger.warning(f"[Monitor] unsupported coin {address.coin_symbol} on address {address.id}")
            continue

        logger.info(f"[Monitor] {i}/{len(addresses)}: {coin.symbol} {address.address}")
        try:
            lookup = await registry.lookup(coin, address.address)
        except ProviderError as e:
            summary.addresses_failed += 1
            logger.error(f"[Monitor] skipping {address.address}: {e}")
            continue

        required = address.order.crypto_confirmations_required or coin.confirmations
        try:
            results = record_transactions(db, address, lookup.transactions, required, now)
            refresh_order(db, address.order, now)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            summary.addresses_failed += 1
            logger.error(f"[Monitor] failed to record transactions for {address.address}: {e}")
            continue

        summary.addresses_processed += 1
        summary.new_transactions_detected += sum(1 for r in results if r.status == NEWLY_DETECTED)
        summary.results.extend(results)

        if delay:
            await asyncio.sleep(delay)

    summary.orders_expired = settle_expired(db, now)
    logger.info(
        f"[Monitor] sweep complete: {summary.addresses_processed}/{summary.addresses_monitored} processed, "
        f"{summary.new_transactions_detected} new, {summary.orders_expired} expired"
    )
    return summary
