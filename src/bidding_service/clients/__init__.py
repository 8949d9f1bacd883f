"""HTTP clients for the Identity service and the payment processor."""

from bidding_service.clients.identity_client import IdentityClient
from bidding_service.clients.payment_client import PaymentClient

__all__ = ["IdentityClient", "PaymentClient"]
