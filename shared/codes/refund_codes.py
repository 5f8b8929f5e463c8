"""
Refund ledger codes (21xxx) and the gateway refund status table.
"""
from __future__ import annotations

from enum import IntEnum


class RefundCode(IntEnum):
    ORDER_NOT_FOUND = 21000
    PAYMENT_NOT_FOUND = 21001
    REFUND_NOT_FOUND = 21002
    NOT_ELIGIBLE = 21010
    AMOUNT_EXCEEDED = 21011
    CONFLICT = 21020
    REQUEST_IN_PROGRESS = 21021


# Gateway refund status -> internal RefundStatus value.
# Anything not listed is treated as still in flight.
GATEWAY_REFUND_STATUS_TO_INTERNAL = {
    "pending": "processing",
    "requires_action": "processing",
    "succeeded": "succeeded",
    "processed": "succeeded",
    "failed": "failed",
    "canceled": "cancelled",
}
DEFAULT_GATEWAY_REFUND_STATUS = "processing"
