from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from cryptopay.config import CryptoSettings, default_coins
from cryptopay.db.models import CryptoAddress, CryptoTransaction, Order
from cryptopay.db.session import init_db, make_engine, make_session_factory

# BIP84 test vector account key (m/84'/0'/0')
BTC_ZPUB = (
    "zpub6rFR7y4Q2AijBEqTUquhVz398htDFrtymD9xYYfG1m4wAcvPhXNfE3EfH1r1ADqtfSdVCToUG868RvUUkgDKf31mGDtKsAYz2oz2AGutZYs"
)
# BIP32 test vector 1 master public key
XPUB = (
    "xpub661MyMwAqRbcFtXgS5sYJABqqG9YLmC4Q1Rdap9gSE8NqtwybGhePY2gZ29ESFjqJoCu1Rupje8YtGqsefD265TMg7usUDFdp6W1EGMcet8"
)
SOL_PUBLIC_KEY = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"

NOW = datetime(2025, 6, 1, 12, 0, 0)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    coins = default_coins()
    coins["BTC"].extended_key = BTC_ZPUB
    coins["LTC"].extended_key = XPUB
    for symbol in ("ETH", "USDT", "USDC"):
        coins[symbol].extended_key = XPUB
    coins["SOL"].extended_key = SOL_PUBLIC_KEY
    return CryptoSettings(coins=coins, monitor_address_delay_seconds=0)


def add_order(db, user_id="user-1", coin="BTC", expected="0.001", confirmations_required=2,
              created=NOW, transactions=(), status="pending", payment_status="pending",
              index=0, address="bc1qtestaddress"):
    """Persist an order with one receive address and the given (hash, amount, confirmations) txs."""
    order = Order(
        user_id=user_id,
        total_amount=Decimal("43.00"),
        status=status,
        payment_method="crypto",
        minecraft_username="Steve",
        crypto_payment_status=payment_status,
        crypto_confirmations_required=confirmations_required,
        created_at=created,
        updated_at=created,
    )
    db.add(order)
    db.flush()
    crypto_address = CryptoAddress(
        order_id=order.id,
        coin_symbol=coin,
        network="mainnet",
        address=address,
        derivation_path=f"m/84'/0'/0'/0/{index}",
        derivation_index=index,
        address_type="receive",
        expected_amount=Decimal(expected),
        estimated_network_fee=Decimal("0.0001"),
        recommended_total=Decimal(expected) + Decimal("0.0001"),
        expires_at=created + timedelta(minutes=15),
        top_up_window_expires_at=created + timedelta(minutes=45),
        created_at=created,
    )
    db.add(crypto_address)
    db.flush()
    for i, (tx_hash, amount, confs) in enumerate(transactions):
        crypto_address.transactions.append(CryptoTransaction(
            crypto_address_id=crypto_address.id,
            tx_hash=tx_hash,
            amount=Decimal(amount),
            confirmations=confs,
            detected_at=created + timedelta(minutes=1 + i),
        ))
    db.commit()
    return order
