"""
Webhook router: verify, deduplicate and dispatch gateway events.

Handlers mutate the ledger inside their own unit of work and publish domain
events after commit. An event id is marked processed only after its handler
succeeded, so a failing delivery is retried by the gateway.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from application.dtos.payments import WebhookEvent
from application.ports.event_bus import EventBus
from application.ports.idempotency import IdempotencyGuard, webhook_key
from application.ports.payment_gateway import PaymentGateway
from application.services.refund_service import RefundApplicationService
from core.config import settings
from core.logging_config import get_logger
from domain.common.events import DomainEvent
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment
from domain.payment.events import (
    ChargeRefunded,
    DisputeCreated,
    DisputeUpdated,
    OrderCancelled,
    PaymentFailed,
    PaymentSucceeded,
)
from domain.refund.entity import Refund


logger = get_logger(__name__)

WebhookHandler = Callable[[WebhookEvent], Awaitable[None]]


def _object(event: WebhookEvent) -> dict[str, Any]:
    return (event.data or {}).get("object") or {}


def _payment_event_fields(payment: Payment) -> dict[str, Any]:
    return {
        "order_id": payment.order_id,
        "payment_id": payment.id,
        "provider": payment.provider,
        "gateway_payment_reference": payment.gateway_payment_reference,
    }


class WebhookService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_resolver: Callable[[str], PaymentGateway],
        idempotency_guard: IdempotencyGuard,
        event_bus: EventBus,
        refund_service: RefundApplicationService,
        *,
        idempotency_ttl_seconds: Optional[int] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway_resolver = gateway_resolver
        self._guard = idempotency_guard
        self._event_bus = event_bus
        self._refunds = refund_service
        self._ttl = idempotency_ttl_seconds or settings.webhook.idempotency_ttl_seconds
        self._handlers: dict[str, WebhookHandler] = {
            "payment_intent.succeeded": self._on_payment_succeeded,
            "payment_intent.payment_failed": self._on_payment_failed,
            "payment_intent.canceled": self._on_payment_canceled,
            "payment_intent.processing": self._on_payment_processing,
            "payment_intent.requires_action": self._on_payment_processing,
            "refund.created": self._on_refund_updated,
            "refund.updated": self._on_refund_updated,
            "refund.failed": self._on_refund_updated,
            "charge.refunded": self._on_charge_refunded,
            "charge.dispute.created": self._on_dispute_created,
            "charge.dispute.updated": self._on_dispute_updated,
            # Razorpay (refund.created and refund.failed share the entries above)
            "payment.authorized": self._on_payment_processing,
            "payment.captured": self._on_payment_succeeded,
            "payment.failed": self._on_payment_failed,
            "refund.processed": self._on_refund_updated,
            "order.paid": self._on_payment_succeeded,
        }

    def register(self, event_type: str, handler: WebhookHandler) -> None:
        self._handlers[event_type] = handler

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def handle_inbound(self, provider: str, headers: dict[str, Any], body: bytes) -> dict[str, Any]:
        gateway = self._gateway_resolver(provider)
        # Signature is verified on the raw body before anything is parsed
        event = gateway.parse_webhook(headers, body)
        key = webhook_key(gateway.provider, event.id)

        if await self._guard.is_processed(key):
            logger.info("webhook_duplicate_ignored", provider=gateway.provider, event_id=event.id, event_type=event.type)
            return {"received": True, "duplicate": True}

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("webhook_event_unhandled", provider=gateway.provider, event_id=event.id, event_type=event.type)
        else:
            logger.info("webhook_event_dispatch", provider=gateway.provider, event_id=event.id, event_type=event.type)
            await handler(event)

        await self._guard.mark_processed(key, self._ttl)
        return {"received": True}

    async def _publish(self, events: list[DomainEvent]) -> None:
        for domain_event in events:
            await self._event_bus.publish(
                domain_event.event_type,
                domain_event.to_payload(),
                causation_id=domain_event.event_id,
            )

    async def _lock_payment(self, uow: AbstractUnitOfWork, provider: str, obj: dict[str, Any]) -> Optional[Payment]:
        """Find the payment by intent id, falling back to ``metadata.payment_id``."""
        reference = obj.get("payment_intent") or obj.get("id")
        payment = None
        if reference:
            payment = await uow.payment_repository.get_by_gateway_reference(provider, str(reference))
        if payment is None:
            payment_id = (obj.get("metadata") or {}).get("payment_id")
            if payment_id and str(payment_id).isdigit():
                payment = await uow.payment_repository.get_by_id(int(payment_id))
        if payment is None:
            return None
        return await uow.payment_repository.get_for_update(payment.id)  # type: ignore[arg-type]

    # ---- payment intents ----

    async def _on_payment_succeeded(self, event: WebhookEvent) -> None:
        obj = _object(event)
        async with self._uow_factory() as uow:
            payment = await self._lock_payment(uow, event.provider, obj)
            if payment is None:
                logger.warning("webhook_payment_unknown", event_id=event.id, reference=obj.get("id"))
                return
            try:
                changed = payment.mark_succeeded(obj.get("id"))
            except DomainValidationException as exc:
                logger.info("webhook_payment_transition_ignored", payment_id=payment.id, error=exc.message)
                return
            if not changed:
                logger.info("webhook_payment_unchanged", payment_id=payment.id, status=payment.status.value)
                return
            payment = await uow.payment_repository.update(payment)
            order = await uow.order_repository.get_for_update(payment.order_id)
            if order is not None and order.mark_paid():
                await uow.order_repository.update(order)

        logger.info("payment_succeeded", payment_id=payment.id, order_id=payment.order_id)
        await self._publish([PaymentSucceeded(
            **_payment_event_fields(payment),
            amount=str(payment.amount),
            currency=payment.currency,
        )])

    async def _on_payment_failed(self, event: WebhookEvent) -> None:
        obj = _object(event)
        reason = (obj.get("last_payment_error") or {}).get("message")
        async with self._uow_factory() as uow:
            payment = await self._lock_payment(uow, event.provider, obj)
            if payment is None:
                logger.warning("webhook_payment_unknown", event_id=event.id, reference=obj.get("id"))
                return
            try:
                changed = payment.mark_failed(reason)
            except DomainValidationException as exc:
                logger.info("webhook_payment_transition_ignored", payment_id=payment.id, error=exc.message)
                return
            if not changed:
                return
            payment = await uow.payment_repository.update(payment)

        logger.info("payment_failed", payment_id=payment.id, order_id=payment.order_id, reason=reason)
        await self._publish([PaymentFailed(**_payment_event_fields(payment), reason=reason)])

    async def _on_payment_canceled(self, event: WebhookEvent) -> None:
        obj = _object(event)
        reason = obj.get("cancellation_reason")
        async with self._uow_factory() as uow:
            payment = await self._lock_payment(uow, event.provider, obj)
            if payment is None:
                logger.warning("webhook_payment_unknown", event_id=event.id, reference=obj.get("id"))
                return
            try:
                voided = payment.mark_voided()
            except DomainValidationException as exc:
                logger.info("webhook_payment_transition_ignored", payment_id=payment.id, error=exc.message)
                return
            if voided:
                payment = await uow.payment_repository.update(payment)
            order = await uow.order_repository.get_for_update(payment.order_id)
            cancelled = order is not None and order.mark_cancelled()
            if cancelled:
                await uow.order_repository.update(order)  # type: ignore[arg-type]

        if cancelled:
            logger.info("order_cancelled", order_id=payment.order_id, payment_id=payment.id, reason=reason)
            await self._publish([OrderCancelled(**_payment_event_fields(payment), reason=reason)])

    async def _on_payment_processing(self, event: WebhookEvent) -> None:
        obj = _object(event)
        async with self._uow_factory() as uow:
            payment = await self._lock_payment(uow, event.provider, obj)
            if payment is None:
                logger.warning("webhook_payment_unknown", event_id=event.id, reference=obj.get("id"))
                return
            if payment.mark_processing():
                await uow.payment_repository.update(payment)
                logger.info("payment_processing", payment_id=payment.id)

    # ---- refunds ----

    async def _find_refund(self, obj: dict[str, Any]) -> Optional[Refund]:
        reference = obj.get("id")
        async with self._uow_factory(readonly=True) as uow:
            refund = None
            if reference:
                refund = await uow.refund_repository.get_by_gateway_reference(str(reference))
            if refund is None:
                refund_id = (obj.get("metadata") or {}).get("refund_id")
                if refund_id and str(refund_id).isdigit():
                    refund = await uow.refund_repository.get_by_id(int(refund_id))
            return refund

    async def _apply_refund_object(self, obj: dict[str, Any], event_id: str) -> bool:
        refund = await self._find_refund(obj)
        if refund is None:
            logger.warning("webhook_refund_unknown", event_id=event_id, reference=obj.get("id"))
            return False
        attempt = (obj.get("metadata") or {}).get("attempt")
        if refund.is_superseded_attempt(obj.get("id"), attempt):
            logger.info(
                "webhook_refund_attempt_superseded",
                refund_id=refund.id,
                reference=obj.get("id"),
                attempt=attempt,
                retry_count=refund.retry_count,
            )
            return False
        _, changed = await self._refunds.handle_gateway_refund_status(
            refund.id,  # type: ignore[arg-type]
            obj.get("status"),
            reference=obj.get("id"),
            failure_reason=obj.get("failure_reason"),
        )
        return changed

    async def _on_refund_updated(self, event: WebhookEvent) -> None:
        await self._apply_refund_object(_object(event), event.id)

    async def _on_charge_refunded(self, event: WebhookEvent) -> None:
        obj = _object(event)
        embedded = (obj.get("refunds") or {}).get("data") or []
        for refund_obj in embedded:
            await self._apply_refund_object(refund_obj, event.id)

        charge_id = str(obj.get("id") or "")
        amount_refunded = int(obj.get("amount_refunded") or 0)
        async with self._uow_factory() as uow:
            payment = await self._lock_payment(uow, event.provider, {"payment_intent": obj.get("payment_intent"),
                                                                    "metadata": obj.get("metadata")})
            if payment is None:
                logger.warning("webhook_payment_unknown", event_id=event.id, reference=obj.get("payment_intent"))
                return
            if not payment.record_charge_refund(charge_id, amount_refunded, event.id):
                logger.info("webhook_charge_refund_unchanged", payment_id=payment.id, charge_id=charge_id)
                return
            payment = await uow.payment_repository.update(payment)

        await self._publish([ChargeRefunded(
            **_payment_event_fields(payment),
            charge_id=charge_id,
            amount_refunded_minor=amount_refunded,
            currency=str(obj.get("currency") or payment.currency).upper(),
        )])

    # ---- disputes ----

    async def _record_dispute(self, event: WebhookEvent, event_cls: type[DisputeCreated]) -> None:
        obj = _object(event)
        dispute = {
            "id": obj.get("id"),
            "status": obj.get("status"),
            "reason": obj.get("reason"),
            "amount": obj.get("amount"),
            "currency": obj.get("currency"),
            "charge": obj.get("charge"),
            "event_id": event.id,
        }
        async with self._uow_factory() as uow:
            payment = await self._lock_payment(uow, event.provider, {"payment_intent": obj.get("payment_intent"),
                                                                    "metadata": obj.get("metadata")})
            if payment is None:
                logger.warning("webhook_payment_unknown", event_id=event.id, dispute_id=obj.get("id"))
                return
            if not payment.record_dispute(dispute):
                logger.info("webhook_dispute_unchanged", payment_id=payment.id, dispute_id=obj.get("id"))
                return
            payment = await uow.payment_repository.update(payment)

        logger.info("payment_dispute_recorded", payment_id=payment.id, dispute_id=obj.get("id"), status=obj.get("status"))
        await self._publish([event_cls(
            **_payment_event_fields(payment),
            dispute_id=str(obj.get("id") or ""),
            status=str(obj.get("status") or ""),
            reason=obj.get("reason"),
            amount_minor=int(obj.get("amount") or 0),
            details={"charge": obj.get("charge"), "currency": obj.get("currency")},
        )])

    async def _on_dispute_created(self, event: WebhookEvent) -> None:
        await self._record_dispute(event, DisputeCreated)

    async def _on_dispute_updated(self, event: WebhookEvent) -> None:
        await self._record_dispute(event, DisputeUpdated)
