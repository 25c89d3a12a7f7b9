from dataclasses import asdict
from typing import Dict, List

from pydantic import BaseModel, Field

from ..types.payment_types import PaymentInstructions, PaymentStatus


class CryptoCheckoutRequest(BaseModel):
    items: List[Dict] = []
    minecraft_username: str = ""
    selected_coin: str = "BTC"


class CryptoStatusRequest(BaseModel):
    order_id: str = Field(alias="orderId")


class StartMonitorRequest(BaseModel):
    interval_seconds: int = 30
    settlement_interval_seconds: int = 300


def checkout_response(pi: PaymentInstructions) -> dict:
    return {
        "orderId": pi.order_id,
        "coin": pi.coin,
        "network": pi.network,
        "address": pi.address,
        "derivationPath": pi.derivation_path,
        "derivationIndex": pi.derivation_index,
        "amount": pi.amount,
        "amountFormatted": f"{pi.amount:f} {pi.coin}",
        "estimatedNetworkFee": pi.estimated_network_fee,
        "recommendedTotal": pi.recommended_total,
        "recommendedTotalFormatted": f"{pi.recommended_total:f} {pi.coin}",
        "usdAmount": pi.usd_amount,
        "coinPriceUSD": pi.coin_price_usd,
        "expiresAt": pi.expires_at,
        "topUpWindowExpiresAt": pi.top_up_window_expires_at,
        "confirmationsRequired": pi.confirmations_required,
        "qrData": pi.qr_data,
        "warningMessage": (
            f"Network fees are buyer's responsibility. Send at least {pi.amount:f} {pi.coin}. "
            f"Recommended amount with fees: {pi.recommended_total:f} {pi.coin}"
        ),
        "supportedCoins": pi.supported_coins,
    }


def status_response(ps: PaymentStatus) -> dict:
    remaining = asdict(ps.time_remaining)
    actions = ps.available_actions
    return {
        "orderId": ps.order_id,
        "paymentStatus": ps.payment_status,
        "statusMessage": ps.status_message,
        "isInTopUpWindow": ps.is_in_top_up_window,
        "totalAmountUSD": ps.total_amount_usd,
        "totalReceived": ps.total_received,
        "totalConfirmedReceived": ps.total_confirmed_received,
        "expectedAmount": ps.expected_amount,
        "underpaidAmount": ps.underpaid_amount,
        "overpaidAmount": ps.overpaid_amount,
        "confirmationsRequired": ps.confirmations_required,
        "addresses": ps.addresses,
        "transactions": ps.transactions,
        "timeRemaining": {
            "hours": remaining["hours"],
            "minutes": remaining["minutes"],
            "expired": remaining["expired"],
            "isTopUpWindow": remaining["is_top_up_window"],
        },
        "minecraftUsername": ps.minecraft_username,
        "orderStatus": ps.order_status,
        "priceInfo": ps.price_info,
        "availableActions": {
            "canTopUp": actions.can_top_up,
            "canRequestRefund": actions.can_request_refund,
            "needsUserAction": actions.needs_user_action,
        },
        "meta": {"lastChecked": ps.last_checked},
    }
