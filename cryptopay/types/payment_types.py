from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


@dataclass
class CartItem:
    product_id: str
    price: Decimal
    quantity: int
    name: Optional[str] = None


@dataclass
class DerivedAddress:
    address: str
    derivation_path: str


@dataclass
class PaymentInstructions:
    order_id: str
    coin: str
    network: str
    address: str
    derivation_path: str
    derivation_index: int
    amount: Decimal
    estimated_network_fee: Decimal
    recommended_total: Decimal
    usd_amount: Decimal
    coin_price_usd: Decimal
    expires_at: datetime
    top_up_window_expires_at: datetime
    confirmations_required: int
    qr_data: str
    supported_coins: List[str] = field(default_factory=list)


@dataclass
class NormalizedTransaction:
    tx_hash: str
    confirmations: int
    block_height: Optional[int]
    amount: Decimal
    timestamp: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AddressLookup:
    provider: str
    balance: Decimal
    transactions: List[NormalizedTransaction]


@dataclass
class DetectionResult:
    address: str
    coin: str
    order_id: str
    transaction: str
    amount: Decimal
    confirmations: int
    status: str
    block_height: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "coin": self.coin,
            "orderId": self.order_id,
            "transaction": self.transaction,
            "amount": str(self.amount),
            "confirmations": self.confirmations,
            "status": self.status,
            "blockHeight": self.block_height,
        }


@dataclass
class DetectionSummary:
    addresses_monitored: int = 0
    addresses_processed: int = 0
    addresses_failed: int = 0
    new_transactions_detected: int = 0
    results: List[DetectionResult] = field(default_factory=list)
    orders_expired: int = 0

    def to_dict(self) -> dict:
        return {
            "addressesMonitored": self.addresses_monitored,
            "addressesProcessed": self.addresses_processed,
            "addressesFailed": self.addresses_failed,
            "newTransactionsDetected": self.new_transactions_detected,
            "ordersExpired": self.orders_expired,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class TimeRemaining:
    hours: int
    minutes: int
    expired: bool
    is_top_up_window: bool


@dataclass
class AvailableActions:
    can_top_up: bool
    can_request_refund: bool
    needs_user_action: bool


@dataclass
class PaymentStatus:
    order_id: str
    payment_status: str
    status_message: str
    is_in_top_up_window: bool
    total_amount_usd: Decimal
    total_received: Decimal
    total_confirmed_received: Decimal
    expected_amount: Decimal
    underpaid_amount: Decimal
    overpaid_amount: Decimal
    confirmations_required: int
    time_remaining: TimeRemaining
    available_actions: AvailableActions
    order_status: str
    minecraft_username: str
    addresses: List[Dict[str, Any]] = field(default_factory=list)
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    price_info: Optional[Dict[str, Any]] = None
    last_checked: Optional[datetime] = None
