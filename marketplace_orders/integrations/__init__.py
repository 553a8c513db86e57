"""Payment gateway adapters."""
from .stripe_gateway import GatewayError, StripePaymentGateway

__all__ = ["GatewayError", "StripePaymentGateway"]
