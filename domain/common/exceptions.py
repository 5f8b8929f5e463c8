"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode
from shared.codes.refund_codes import RefundCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=RefundCode.ORDER_NOT_FOUND,
            message=f"Order {order_id} not found",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class PaymentNotFoundException(BusinessException):
    def __init__(self, identifier: str):
        super().__init__(
            code=RefundCode.PAYMENT_NOT_FOUND,
            message=f"Payment not found: {identifier}",
            error_type="PaymentNotFound",
            details={"payment": identifier},
        )


class RefundNotFoundException(BusinessException):
    def __init__(self, refund_id: int | str):
        super().__init__(
            code=RefundCode.REFUND_NOT_FOUND,
            message=f"Refund {refund_id} not found",
            error_type="RefundNotFound",
            details={"refund_id": refund_id},
        )


class RefundNotEligibleException(BusinessException):
    """订单或支付状态不允许退款"""

    def __init__(self, reason: str, *, order_id: Optional[str] = None):
        super().__init__(
            code=RefundCode.NOT_ELIGIBLE,
            message=reason,
            error_type="RefundNotEligible",
            details={"order_id": order_id} if order_id else None,
        )


class RefundAmountExceededException(BusinessException):
    """退款金额超过剩余可退金额"""

    def __init__(self, requested: Decimal, remaining: Decimal, currency: str):
        super().__init__(
            code=RefundCode.AMOUNT_EXCEEDED,
            message=(
                f"Refund amount {requested} exceeds maximum refundable amount of "
                f"{remaining} {currency}"
            ),
            error_type="RefundAmountExceeded",
            details={
                "requested": str(requested),
                "remaining": str(remaining),
                "currency": currency,
            },
            field="amount",
        )


class RefundConflictException(BusinessException):
    """非法状态转换或并发冲突"""

    def __init__(
        self,
        message: str,
        *,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
        code: int = RefundCode.CONFLICT,
    ):
        details = {}
        if current_status is not None:
            details["current_status"] = current_status
        if target_status is not None:
            details["target_status"] = target_status
        super().__init__(
            code=code,
            message=message,
            error_type="RefundConflict",
            details=details or None,
        )


class PaymentGatewayException(BusinessException):
    """支付网关调用失败（携带网关错误码）"""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        gateway_code: Optional[str] = None,
        details: Optional[dict] = None,
        code: int = PaymentCode.PROVIDER_ERROR,
    ):
        full_details = {"provider": provider, "gateway_code": gateway_code}
        if details:
            full_details.update(details)
        self.provider = provider
        self.gateway_code = gateway_code
        super().__init__(
            code=code,
            message=message,
            error_type="PaymentGatewayError",
            details=full_details,
        )


class PaymentGatewayTimeoutException(PaymentGatewayException):
    """网关结果未知（超时等）：不能证明网关未执行，退款保持 PENDING 交给对账"""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        details: Optional[dict] = None,
        gateway_code: str = "timeout",
        code: int = PaymentCode.TIMEOUT,
    ):
        super().__init__(
            message,
            provider=provider,
            gateway_code=gateway_code,
            details=details,
            code=code,
        )
        self.error_type = "PaymentGatewayTimeout"


class PaymentGatewayUnavailableException(PaymentGatewayTimeoutException):
    """网关 5xx 或幂等键冲突：请求可能已被执行，同样按结果未知处理"""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        gateway_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(
            message,
            provider=provider,
            details=details,
            gateway_code=gateway_code or "unavailable",
            code=PaymentCode.PROVIDER_RECOVERABLE,
        )
        self.error_type = "PaymentGatewayUnavailable"


class WebhookVerificationException(BusinessException):
    """Webhook 签名校验失败"""

    def __init__(self, message: str, *, provider: str):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="WebhookVerificationError",
            details={"provider": provider},
        )
