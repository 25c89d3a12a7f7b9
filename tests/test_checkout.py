from datetime import timedelta
from decimal import Decimal
from unittest import mock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from cryptopay.db.models import (
    CryptoAddress, CryptoAuditLog, CryptoDerivationCounter, CryptoPriceSnapshot, Order, OrderItem,
)
from cryptopay.errors import (
    AddressAllocationFailed, CheckoutFailed, InvalidRequest, PriceUnavailable, UnsupportedCoin,
)
from cryptopay.pricing.oracle import PriceQuote
from cryptopay.services.checkout import create_crypto_order, parse_cart

from conftest import NOW

CART = [{"id": "sword", "name": "Diamond Sword", "price": "21.50", "quantity": 2}]


class StubOracle:
    def __init__(self, prices=None, source="coingecko"):
        self.prices = prices if prices is not None else {
            "BTC": Decimal("43000"), "ETH": Decimal("2500"), "USDT": Decimal("1"), "SOL": Decimal("90"),
        }
        self.source = source
        self.calls = []

    async def get_quote(self, coins):
        self.calls.append(list(coins))
        return PriceQuote({c: self.prices[c] for c in coins if c in self.prices}, self.source)


@pytest.mark.asyncio
async def test_btc_checkout_persists_everything(db, settings):
    pi = await create_crypto_order(db, settings, StubOracle(), "user-1", CART, "Steve", "BTC", now=NOW)

    assert pi.coin == "BTC"
    assert pi.address == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
    assert pi.derivation_path == "m/84'/0'/0'/0/0"
    assert pi.derivation_index == 0
    assert pi.usd_amount == Decimal("43.00")
    assert pi.amount == Decimal("0.001")
    assert pi.estimated_network_fee == Decimal("0.0001")
    assert pi.recommended_total == Decimal("0.0011")
    assert pi.expires_at == NOW + timedelta(minutes=15)
    assert pi.top_up_window_expires_at == NOW + timedelta(minutes=45)
    assert pi.confirmations_required == 2
    assert pi.qr_data == f"btc:{pi.address}?amount=0.00110000"
    assert "SOL" in pi.supported_coins

    order = db.query(Order).one()
    assert order.id == pi.order_id
    assert order.user_id == "user-1"
    assert order.status == "pending"
    assert order.payment_method == "crypto"
    assert order.crypto_payment_status == "pending"
    assert order.minecraft_username == "Steve"
    assert db.query(OrderItem).count() == 1

    address = db.query(CryptoAddress).one()
    assert address.order_id == order.id
    assert address.derivation_index == 0
    assert address.expected_amount == Decimal("0.001")

    snapshot = db.query(CryptoPriceSnapshot).one()
    assert snapshot.usd_price == Decimal("43000")
    assert snapshot.price_source == "coingecko"

    event = db.query(CryptoAuditLog).one()
    assert event.event_type == "address_generated"
    assert event.created_by == "user-1"
    assert event.event_data["derivation_index"] == 0


@pytest.mark.asyncio
async def test_consecutive_checkouts_get_fresh_addresses(db, settings):
    first = await create_crypto_order(db, settings, StubOracle(), "user-1", CART, "Steve", "BTC", now=NOW)
    second = await create_crypto_order(db, settings, StubOracle(), "user-2", CART, "Alex", "btc", now=NOW)

    assert (first.derivation_index, second.derivation_index) == (0, 1)
    assert second.address == "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"


@pytest.mark.asyncio
async def test_tokens_share_the_ethereum_counter(db, settings):
    eth = await create_crypto_order(db, settings, StubOracle(), "user-1", CART, "Steve", "ETH", now=NOW)
    usdt = await create_crypto_order(db, settings, StubOracle(), "user-1", CART, "Steve", "USDT", now=NOW)

    assert (eth.derivation_index, usdt.derivation_index) == (0, 1)
    assert eth.address != usdt.address
    assert usdt.amount == Decimal("43")
    assert db.query(CryptoDerivationCounter).filter_by(coin_symbol="ETH").one().next_index == 2
    assert db.query(CryptoDerivationCounter).filter_by(coin_symbol="USDT").count() == 0


@pytest.mark.asyncio
async def test_amount_rounds_up_to_coin_precision(db, settings):
    cart = [{"id": "key", "price": "10", "quantity": 1}]
    pi = await create_crypto_order(db, settings, StubOracle(), "user-1", cart, "Steve", "BTC", now=NOW)

    assert pi.amount == Decimal("0.00023256")
    assert pi.amount * Decimal("43000") >= Decimal("10")


@pytest.mark.asyncio
async def test_fallback_source_recorded(db, settings):
    await create_crypto_order(db, settings, StubOracle(source="fallback"), "user-1", CART, "Steve", "SOL", now=NOW)
    assert db.query(CryptoPriceSnapshot).one().price_source == "fallback"


@pytest.mark.asyncio
@pytest.mark.parametrize("items, username, coin, error", [
    ([], "Steve", "BTC", InvalidRequest),
    ([{"id": "x", "price": "abc", "quantity": 1}], "Steve", "BTC", InvalidRequest),
    ([{"id": "x", "price": "5", "quantity": 0}], "Steve", "BTC", InvalidRequest),
    ([{"id": "x", "price": "5", "quantity": 1.5}], "Steve", "BTC", InvalidRequest),
    ([{"id": "x", "price": "5", "quantity": "2.5"}], "Steve", "BTC", InvalidRequest),
    ([{"id": "x", "price": "-5", "quantity": 1}], "Steve", "BTC", InvalidRequest),
    (CART, "  ", "BTC", InvalidRequest),
    (CART, "Steve", "DOGE", UnsupportedCoin),
])
async def test_validation_rejects_before_any_write(db, settings, items, username, coin, error):
    oracle = StubOracle()
    with pytest.raises(error):
        await create_crypto_order(db, settings, oracle, "user-1", items, username, coin, now=NOW)

    assert oracle.calls == []
    assert db.query(Order).count() == 0
    assert db.query(CryptoDerivationCounter).count() == 0


@pytest.mark.asyncio
async def test_unconfigured_coin_is_unsupported(db, settings):
    settings.coins["LTC"].extended_key = None
    with pytest.raises(UnsupportedCoin):
        await create_crypto_order(db, settings, StubOracle(), "user-1", CART, "Steve", "LTC", now=NOW)


@pytest.mark.asyncio
async def test_missing_price_is_unavailable(db, settings):
    with pytest.raises(PriceUnavailable):
        await create_crypto_order(db, settings, StubOracle(prices={}), "user-1", CART, "Steve", "BTC", now=NOW)
    assert db.query(Order).count() == 0


@pytest.mark.asyncio
async def test_allocation_failure_leaves_nothing_behind(db, settings):
    with mock.patch("cryptopay.services.checkout.next_index", side_effect=AddressAllocationFailed()):
        with pytest.raises(AddressAllocationFailed):
            await create_crypto_order(db, settings, StubOracle(), "user-1", CART, "Steve", "BTC", now=NOW)
    assert db.query(Order).count() == 0


@pytest.mark.asyncio
async def test_persistence_failure_rolls_back_order_and_index(db, settings):
    with mock.patch("cryptopay.services.checkout.audit.log_event", side_effect=SQLAlchemyError("disk full")):
        with pytest.raises(CheckoutFailed):
            await create_crypto_order(db, settings, StubOracle(), "user-1", CART, "Steve", "BTC", now=NOW)

    assert db.query(Order).count() == 0
    assert db.query(CryptoAddress).count() == 0
    assert db.query(CryptoDerivationCounter).count() == 0

    retry = await create_crypto_order(db, settings, StubOracle(), "user-1", CART, "Steve", "BTC", now=NOW)
    assert retry.derivation_index == 0


def test_parse_cart_accepts_product_id_alias():
    items = parse_cart([{"product_id": "p1", "price": 2.5, "quantity": "3"}])
    assert items[0].product_id == "p1"
    assert items[0].price == Decimal("2.5")
    assert items[0].quantity == 3


def test_parse_cart_accepts_whole_float_quantity():
    assert parse_cart([{"id": "p1", "price": 2.5, "quantity": 2.0}])[0].quantity == 2


@pytest.mark.parametrize("quantity", [1.5, "0.5", "Infinity", None, True])
def test_parse_cart_rejects_fractional_or_missing_quantity(quantity):
    with pytest.raises(InvalidRequest):
        parse_cart([{"id": "p1", "price": 2.5, "quantity": quantity}])
