import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_UP
from typing import Iterable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import CryptoSettings
from ..db.models import CryptoAddress, CryptoPriceSnapshot, Order, OrderItem, utcnow
from ..errors import (
    AddressAllocationFailed, CheckoutFailed, DerivationError, InvalidRequest,
    PriceUnavailable, UnsupportedCoin,
)
from ..pricing.oracle import PriceOracle
from ..types.payment_types import CartItem, PaymentInstructions
from ..wallet.derivation import derive
from . import audit
from .allocator import next_index
from .status import PENDING, qr_data

logger = logging.getLogger("checkout")

ADDRESS_TYPE = "receive"


def parse_cart(raw_items: Iterable) -> List[CartItem]:
    items = []
    for raw in raw_items or []:
        if isinstance(raw, CartItem):
            items.append(raw)
            continue
        try:
            price = Decimal(str(raw.get("price")))
            quantity = Decimal(str(raw.get("quantity")))
        except (InvalidOperation, TypeError, ValueError, AttributeError):
            raise InvalidRequest("Invalid item data - missing or invalid price/quantity")
        # 1.5 items is a malformed cart, not one item
        if not quantity.is_finite() or quantity != quantity.to_integral_value():
            raise InvalidRequest("Invalid item data - missing or invalid price/quantity")
        items.append(CartItem(
            product_id=raw.get("id") or raw.get("product_id"),
            price=price,
            quantity=int(quantity),
            name=raw.get("name"),
        ))
    return items


def validate_checkout(settings: CryptoSettings, items: List[CartItem], minecraft_username: str, coin: str):
    if not items:
        raise InvalidRequest("No items provided")
    for item in items:
        if not item.price.is_finite() or item.price <= 0 or item.quantity <= 0:
            raise InvalidRequest("Invalid item data - missing or invalid price/quantity")
    if not minecraft_username or not minecraft_username.strip():
        raise InvalidRequest("Minecraft username is required")

    config = settings.coin(coin)
    if config is None:
        raise UnsupportedCoin(f"Unsupported cryptocurrency: {coin}")
    if not config.extended_key:
        raise UnsupportedCoin(f"Missing public key for {config.symbol}. Please configure secrets.")
    return config


async def create_crypto_order(db: Session, settings: CryptoSettings, oracle: PriceOracle, user_id: str,
                              cart_items, minecraft_username: str, coin: str = "BTC",
                              now: datetime = None) -> PaymentInstructions:
    """
    Price the cart in the chosen coin, reserve a fresh receive address and
    persist order, items, address, price snapshot and audit event in one
    transaction.
    """
    items = parse_cart(cart_items)
    config = validate_checkout(settings, items, minecraft_username, coin)
    symbol = config.symbol

    total_usd = sum((item.price * item.quantity for item in items), Decimal(0))
    if total_usd <= 0:
        raise InvalidRequest("Invalid order total")
    logger.info(f"[Checkout] user {user_id} {len(items)} items, ${total_usd:.2f} in {symbol}")

    quote = await oracle.get_quote([symbol])
    coin_price = quote.prices.get(symbol)
    if not coin_price or coin_price <= 0:
        raise PriceUnavailable(f"Price not available for {symbol}")

    step = Decimal(10) ** -config.decimals
    crypto_amount = (total_usd / coin_price).quantize(step, rounding=ROUND_UP)
    estimated_fee = config.estimated_fee
    recommended_total = crypto_amount + estimated_fee
    logger.info(
        f"[Checkout] ${total_usd} / ${coin_price} ({quote.source}) = {crypto_amount} {symbol}, "
        f"recommended {recommended_total}"
    )

    now = now or utcnow()
    expires_at = now + settings.payment_window
    top_up_expires_at = now + settings.top_up_window

    try:
        index = next_index(db, config.derivation_counter, ADDRESS_TYPE)
        derived = derive(symbol, config.extended_key, index, ADDRESS_TYPE)
        logger.info(f"[Checkout] address {derived.address} at {derived.derivation_path} (index {index})")

        order = Order(
            user_id=user_id,
            total_amount=total_usd,
            status="pending",
            payment_method="crypto",
            minecraft_username=minecraft_username.strip(),
            crypto_payment_status=PENDING,
            crypto_confirmations_required=config.confirmations,
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        db.flush()

        for item in items:
            db.add(OrderItem(order_id=order.id, product_id=item.product_id,
                             quantity=item.quantity, price=item.price))

        address = CryptoAddress(
            order_id=order.id,
            coin_symbol=symbol,
            network=config.network,
            address=derived.address,
            derivation_path=derived.derivation_path,
            derivation_index=index,
            address_type=ADDRESS_TYPE,
            expected_amount=crypto_amount,
            estimated_network_fee=estimated_fee,
            recommended_total=recommended_total,
            expires_at=expires_at,
            top_up_window_expires_at=top_up_expires_at,
            created_at=now,
        )
        db.add(address)
        db.add(CryptoPriceSnapshot(coin_symbol=symbol, usd_price=coin_price,
                                   price_source=quote.source, order_id=order.id, created_at=now))
        db.flush()

        audit.log_event(db, audit.ADDRESS_GENERATED, order_id=order.id, crypto_address_id=address.id,
                        created_by=user_id, ts=now, payload={
                            "coin_symbol": symbol,
                            "derivation_index": index,
                            "derivation_path": derived.derivation_path,
                            "address_type": ADDRESS_TYPE,
                            "expected_amount": str(crypto_amount),
                            "estimated_network_fee": str(estimated_fee),
                            "recommended_total": str(recommended_total),
                            "price_usd": str(coin_price),
                            "price_source": quote.source,
                        })
        db.commit()
    except (AddressAllocationFailed, DerivationError):
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[Checkout] persistence failed for user {user_id} ({symbol}): {e}")
        raise CheckoutFailed()

    logger.info(f"[Checkout] order {order.id} awaiting {crypto_amount} {symbol} at {derived.address}")
    return PaymentInstructions(
        order_id=order.id,
        coin=symbol,
        network=config.network,
        address=derived.address,
        derivation_path=derived.derivation_path,
        derivation_index=index,
        amount=crypto_amount,
        estimated_network_fee=estimated_fee,
        recommended_total=recommended_total,
        usd_amount=total_usd,
        coin_price_usd=coin_price,
        expires_at=expires_at,
        top_up_window_expires_at=top_up_expires_at,
        confirmations_required=config.confirmations,
        qr_data=qr_data(symbol, derived.address, recommended_total),
        supported_coins=settings.supported_coins,
    )
