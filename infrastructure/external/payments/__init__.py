"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import payment_settings
from application.ports.payment_gateway import PaymentGateway
from domain.common.exceptions import PaymentGatewayException
from shared.codes.payment_codes import PaymentCode


_gateways: dict[str, PaymentGateway] = {}


def get_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    name = (provider or payment_settings.default_provider).lower()
    if name in _gateways:
        return _gateways[name]
    if name == "stripe":
        from .stripe_client import StripeClient
        gateway = StripeClient()
    elif name == "razorpay":
        from .razorpay_client import RazorpayClient
        gateway = RazorpayClient()
    else:
        raise PaymentGatewayException(
            f"Unsupported payment provider: {name}",
            provider=name,
            code=PaymentCode.UNSUPPORTED_PROVIDER,
        )
    _gateways[name] = gateway
    return gateway
