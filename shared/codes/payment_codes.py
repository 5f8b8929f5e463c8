"""
Payment gateway codes and Stripe refund reasons.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    UNSUPPORTED_PROVIDER = 60005


# Internal refund reason -> Stripe refund reason
STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}
DEFAULT_STRIPE_REFUND_REASON = "requested_by_customer"
