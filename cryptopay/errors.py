class CryptoPaymentError(Exception):
    status_code = 500
    public_message = "An unexpected error occurred"

    def __init__(self, message: str = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class InvalidRequest(CryptoPaymentError):
    status_code = 400
    public_message = "Invalid request"


class UnsupportedCoin(InvalidRequest):
    status_code = 400
    public_message = "Unsupported cryptocurrency"


class PriceUnavailable(CryptoPaymentError):
    status_code = 503
    public_message = "Price not available"


class DerivationError(CryptoPaymentError):
    public_message = "Failed to derive payment address"


class AddressAllocationFailed(CryptoPaymentError):
    public_message = "Failed to generate address index"


class CheckoutFailed(CryptoPaymentError):
    public_message = "Checkout failed, please try again"


class NotFoundOrForbidden(CryptoPaymentError):
    status_code = 404
    public_message = "Order not found or access denied"


class ProviderError(CryptoPaymentError):
    """Raised by a single upstream provider; consumed by failover loops."""
    status_code = 502
    public_message = "Upstream provider failed"
