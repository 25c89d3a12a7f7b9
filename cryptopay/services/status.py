import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from ..db.models import CryptoAddress, Order, utcnow
from ..errors import NotFoundOrForbidden
from ..types.payment_types import AvailableActions, PaymentStatus, TimeRemaining

logger = logging.getLogger("status")

PENDING = "pending"
PARTIAL = "partial"
PENDING_CONFIRMATIONS = "pending_confirmations"
PAID = "paid"
OVERPAID = "overpaid"
EXPIRED = "expired"

PAYMENT_STATUSES = (EXPIRED, OVERPAID, PAID, PENDING_CONFIRMATIONS, PARTIAL, PENDING)
# statuses the monitor keeps polling
OPEN_STATUSES = (PENDING, PARTIAL, PENDING_CONFIRMATIONS)

EXPLORERS = {
    "BTC": "https://blockstream.info/tx/{}",
    "LTC": "https://live.blockcypher.com/ltc/tx/{}",
    "ETH": "https://etherscan.io/tx/{}",
    "USDT": "https://etherscan.io/tx/{}",
    "USDC": "https://etherscan.io/tx/{}",
    "SOL": "https://solscan.io/tx/{}",
}

ZERO = Decimal(0)


def explorer_url(tx_hash: str, coin: str) -> str:
    template = EXPLORERS.get(coin)
    return template.format(tx_hash) if template else "#"


def qr_data(coin: str, address: str, amount) -> str:
    return f"{coin.lower()}:{address}?amount={amount}"


def derive_payment_status(expired: bool, in_top_up_window: bool, confirmed: Decimal,
                          received: Decimal, expected: Decimal) -> str:
    """Exactly one status for any combination of inputs, by fixed precedence."""
    if expired and not in_top_up_window and confirmed < expected:
        return EXPIRED
    if confirmed > expected:
        return OVERPAID
    if confirmed >= expected:
        return PAID
    if received >= expected:
        return PENDING_CONFIRMATIONS
    if received > 0:
        return PARTIAL
    return PENDING


@dataclass
class PaymentSnapshot:
    status: str
    expected: Decimal
    total_received: Decimal
    total_confirmed: Decimal
    underpaid: Decimal
    overpaid: Decimal
    is_expired: bool
    is_in_top_up_window: bool
    relevant_expiry: Optional[datetime]
    confirmations_required: int

    @property
    def past_all_windows(self) -> bool:
        return self.is_expired and not self.is_in_top_up_window


def summarize_payment(order: Order, now: datetime = None) -> PaymentSnapshot:
    now = now or utcnow()
    addresses: List[CryptoAddress] = list(order.crypto_addresses)
    required = order.crypto_confirmations_required or 1

    total_received = ZERO
    total_confirmed = ZERO
    is_expired = False
    is_in_top_up_window = False
    for address in addresses:
        top_up_expires_at = address.top_up_window_expires_at or address.expires_at
        if address.expires_at < now:
            is_expired = True
            if top_up_expires_at > now:
                is_in_top_up_window = True
        for tx in address.transactions:
            total_received += Decimal(tx.amount)
            if tx.confirmations >= required:
                total_confirmed += Decimal(tx.amount)

    primary = addresses[0] if addresses else None
    expected = Decimal(primary.expected_amount) if primary else ZERO
    if primary is None:
        relevant_expiry = None
    elif is_in_top_up_window:
        relevant_expiry = primary.top_up_window_expires_at or primary.expires_at
    else:
        relevant_expiry = primary.expires_at

    return PaymentSnapshot(
        status=derive_payment_status(is_expired, is_in_top_up_window, total_confirmed, total_received, expected),
        expected=expected,
        total_received=total_received,
        total_confirmed=total_confirmed,
        underpaid=max(ZERO, expected - total_confirmed),
        overpaid=max(ZERO, total_confirmed - expected),
        is_expired=is_expired,
        is_in_top_up_window=is_in_top_up_window,
        relevant_expiry=relevant_expiry,
        confirmations_required=required,
    )


def status_message(snapshot: PaymentSnapshot) -> str:
    if snapshot.status == EXPIRED:
        return "Payment window expired"
    if snapshot.status == OVERPAID:
        return f"Payment confirmed (overpaid by {snapshot.overpaid:.8f})"
    if snapshot.status == PAID:
        return "Payment confirmed"
    if snapshot.status == PENDING_CONFIRMATIONS:
        return f"Payment detected, awaiting {snapshot.confirmations_required} confirmations"
    if snapshot.status == PARTIAL:
        message = f"Partial payment received ({snapshot.underpaid:.8f} remaining)"
        if snapshot.is_in_top_up_window:
            message += " - Top-up window active"
        return message
    return "Awaiting payment"


def time_remaining(snapshot: PaymentSnapshot, now: datetime) -> TimeRemaining:
    remaining = 0
    if snapshot.relevant_expiry is not None:
        remaining = max(0, int((snapshot.relevant_expiry - now).total_seconds()))
    return TimeRemaining(
        hours=remaining // 3600,
        minutes=(remaining % 3600) // 60,
        expired=remaining == 0,
        is_top_up_window=snapshot.is_in_top_up_window,
    )


def available_actions(snapshot: PaymentSnapshot) -> AvailableActions:
    return AvailableActions(
        can_top_up=snapshot.is_in_top_up_window and snapshot.underpaid > 0,
        can_request_refund=snapshot.overpaid > 0,
        needs_user_action=snapshot.status in (PARTIAL, OVERPAID),
    )


def get_status(db: Session, order_id: str, user_id: str, now: datetime = None) -> PaymentStatus:
    """
    Fresh read of an order's crypto payment state. The order's own
    crypto_* columns are never trusted here.
    """
    now = now or utcnow()
    order = (
        db.query(Order)
        .filter(Order.id == order_id, Order.user_id == user_id)
        .one_or_none()
    )
    if order is None or not order.crypto_addresses:
        logger.info(f"[Status] no crypto order {order_id} for user {user_id}")
        raise NotFoundOrForbidden()

    snapshot = summarize_payment(order, now)
    required = snapshot.confirmations_required

    addresses = []
    transactions = []
    for address in order.crypto_addresses:
        addresses.append({
            "id": address.id,
            "coin": address.coin_symbol,
            "network": address.network,
            "address": address.address,
            "derivationPath": address.derivation_path,
            "derivationIndex": address.derivation_index,
            "addressType": address.address_type,
            "expectedAmount": address.expected_amount,
            "estimatedNetworkFee": address.estimated_network_fee,
            "recommendedTotal": address.recommended_total,
            "qrData": qr_data(address.coin_symbol, address.address, address.recommended_total),
            "expiresAt": address.expires_at,
            "topUpWindowExpiresAt": address.top_up_window_expires_at,
        })
        for tx in address.transactions:
            transactions.append({
                "id": tx.id,
                "txHash": tx.tx_hash,
                "amount": tx.amount,
                "confirmations": tx.confirmations,
                "blockHeight": tx.block_height,
                "detectedAt": tx.detected_at,
                "confirmedAt": tx.confirmed_at,
                "coin": address.coin_symbol,
                "address": address.address,
                "status": "confirmed" if tx.confirmations >= required else "pending",
                "confirmationProgress": f"{tx.confirmations}/{required}",
                "explorerUrl": explorer_url(tx.tx_hash, address.coin_symbol),
            })
    transactions.sort(key=lambda t: t["detectedAt"] or datetime.min, reverse=True)

    price_info = None
    if order.price_snapshots:
        price = order.price_snapshots[0]
        price_info = {
            "coinSymbol": price.coin_symbol,
            "usdPrice": price.usd_price,
            "priceSource": price.price_source,
            "snapshotTime": price.created_at,
        }

    return PaymentStatus(
        order_id=order.id,
        payment_status=snapshot.status,
        status_message=status_message(snapshot),
        is_in_top_up_window=snapshot.is_in_top_up_window,
        total_amount_usd=order.total_amount,
        total_received=snapshot.total_received,
        total_confirmed_received=snapshot.total_confirmed,
        expected_amount=snapshot.expected,
        underpaid_amount=snapshot.underpaid,
        overpaid_amount=snapshot.overpaid,
        confirmations_required=required,
        time_remaining=time_remaining(snapshot, now),
        available_actions=available_actions(snapshot),
        order_status=order.status,
        minecraft_username=order.minecraft_username,
        addresses=addresses,
        transactions=transactions,
        price_info=price_info,
        last_checked=now,
    )
