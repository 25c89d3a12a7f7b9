import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, ForeignKey, JSON, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class ExactDecimal(TypeDecorator):
    """
    NUMERIC that round-trips Decimal exactly. SQLite has no decimal storage and
    would go through float, so there the value is kept as its decimal string.
    """

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String())
        return super().load_dialect_impl(dialect)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        return str(value) if dialect.name == "sqlite" else value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, Decimal):
            return value
        return Decimal(str(value))


CRYPTO_AMOUNT = ExactDecimal(36, 18)
FIAT_AMOUNT = ExactDecimal(18, 2)


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    total_amount = Column(FIAT_AMOUNT, nullable=False)
    status = Column(String, nullable=False, default="pending")
    payment_method = Column(String)
    minecraft_username = Column(String, nullable=False)
    crypto_payment_status = Column(String, index=True)
    crypto_confirmations_required = Column(Integer)
    crypto_total_received = Column(CRYPTO_AMOUNT, default=0)
    crypto_underpaid_amount = Column(CRYPTO_AMOUNT, default=0)
    crypto_overpaid_amount = Column(CRYPTO_AMOUNT, default=0)
    refund_status = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order")
    crypto_addresses = relationship(
        "CryptoAddress", back_populates="order", order_by="CryptoAddress.created_at"
    )
    price_snapshots = relationship("CryptoPriceSnapshot", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    product_id = Column(String)
    quantity = Column(Integer, nullable=False)
    price = Column(FIAT_AMOUNT, nullable=False)

    order = relationship("Order", back_populates="items")


class CryptoAddress(Base):
    __tablename__ = "crypto_addresses"
    __table_args__ = (
        UniqueConstraint("coin_symbol", "address_type", "derivation_index",
                         name="uq_crypto_addresses_derivation"),
    )

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    coin_symbol = Column(String, nullable=False)
    network = Column(String, nullable=False)
    address = Column(String, nullable=False)
    derivation_path = Column(String)
    derivation_index = Column(Integer, nullable=False)
    address_type = Column(String, default="receive")
    expected_amount = Column(CRYPTO_AMOUNT, nullable=False)
    estimated_network_fee = Column(CRYPTO_AMOUNT)
    recommended_total = Column(CRYPTO_AMOUNT)
    expires_at = Column(DateTime, nullable=False)
    top_up_window_expires_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="crypto_addresses")
    transactions = relationship(
        "CryptoTransaction", back_populates="crypto_address",
        order_by="CryptoTransaction.detected_at",
    )


class CryptoTransaction(Base):
    __tablename__ = "crypto_transactions"
    __table_args__ = (
        UniqueConstraint("crypto_address_id", "tx_hash", name="uq_crypto_transactions_address_tx"),
    )

    id = Column(String, primary_key=True, default=new_id)
    crypto_address_id = Column(String, ForeignKey("crypto_addresses.id"), nullable=False)
    tx_hash = Column(String, nullable=False)
    amount = Column(CRYPTO_AMOUNT, nullable=False)
    confirmations = Column(Integer, nullable=False, default=0)
    block_height = Column(Integer)
    detected_at = Column(DateTime, default=utcnow)
    confirmed_at = Column(DateTime)

    crypto_address = relationship("CryptoAddress", back_populates="transactions")


class CryptoDerivationCounter(Base):
    __tablename__ = "crypto_derivation_counters"
    __table_args__ = (
        UniqueConstraint("coin_symbol", "address_type", name="uq_derivation_counter"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    coin_symbol = Column(String, nullable=False)
    address_type = Column(String, nullable=False, default="receive")
    next_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class CryptoPriceSnapshot(Base):
    __tablename__ = "crypto_price_snapshots"

    id = Column(String, primary_key=True, default=new_id)
    coin_symbol = Column(String, nullable=False)
    usd_price = Column(ExactDecimal(24, 8), nullable=False)
    price_source = Column(String, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"))
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="price_snapshots")


class CryptoAuditLog(Base):
    __tablename__ = "crypto_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"))
    crypto_address_id = Column(String, ForeignKey("crypto_addresses.id"))
    event_data = Column(JSON, default=dict)
    raw_payload = Column(JSON)
    created_by = Column(String)
    created_at = Column(DateTime, default=utcnow)
