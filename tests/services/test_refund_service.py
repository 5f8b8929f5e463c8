import asyncio
from decimal import Decimal

import pytest

from application.dtos.refunds import CreateRefundCommand
from domain.common.exceptions import (
    DomainValidationException,
    OrderNotFoundException,
    PaymentGatewayException,
    PaymentGatewayTimeoutException,
    PaymentGatewayUnavailableException,
    RefundAmountExceededException,
    RefundConflictException,
    RefundNotEligibleException,
)
from domain.order.entity import OrderStatus
from domain.payment.entity import PaymentStatus
from domain.refund.entity import RefundReason, RefundStatus
from application.ports.event_bus import EventDeliveryError
from infrastructure.bootstrap import build_container
from infrastructure.cache import InMemoryIdempotencyGuard
from infrastructure.events import InMemoryDeadLetterStore, InProcessEventBus


def command(order_id: str = "ord_1", amount: str | None = None, **kwargs) -> CreateRefundCommand:
    return CreateRefundCommand(
        order_id=order_id,
        amount=Decimal(amount) if amount is not None else None,
        reason=RefundReason.REQUESTED_BY_CUSTOMER,
        requested_by=kwargs.pop("requested_by", "agent-1"),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_partial_refund_then_overdraw_is_rejected(refund_service, seed_order, gateway, events):
    await seed_order("ord_1", "1000.00")

    view = await refund_service.create_refund(command(amount="400.00"))

    assert view.status == RefundStatus.PROCESSING
    assert view.amount == Decimal("400.00")
    assert view.gateway_refund_reference == "re_1"
    assert view.order is not None and view.payment is not None
    request = gateway.requests[0]
    assert request.amount_minor == 40000
    assert request.idempotency_key == f"refund-{view.id}-attempt-0"
    assert request.metadata == {"refund_id": str(view.id), "order_id": "ord_1", "attempt": "0"}
    assert "refund.initiated" in events.types

    with pytest.raises(RefundAmountExceededException) as exc:
        await refund_service.create_refund(command(amount="700.00"))
    assert exc.value.details["remaining"] == "600.00"
    assert exc.value.field == "amount"

    eligibility = await refund_service.check_refund_eligibility("ord_1")
    assert eligibility.eligible
    assert eligibility.max_refundable_amount == Decimal("600.00")


@pytest.mark.asyncio
async def test_amount_defaults_to_remaining(refund_service, seed_order):
    await seed_order("ord_1", "250.00")
    view = await refund_service.create_refund(command())
    assert view.amount == Decimal("250.00")

    eligibility = await refund_service.check_refund_eligibility("ord_1")
    assert not eligibility.eligible
    assert eligibility.max_refundable_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_concurrent_refunds_cannot_overdraw(refund_service, seed_order):
    await seed_order("ord_1", "1000.00")

    results = await asyncio.gather(
        refund_service.create_refund(command(amount="600.00")),
        refund_service.create_refund(command(amount="600.00")),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(created) == 1
    assert len(rejected) == 1
    assert isinstance(rejected[0], RefundAmountExceededException)

    summary = await refund_service.get_refund_summary("ord_1")
    assert summary.pending_refunds == Decimal("600.00")
    assert summary.remaining_refundable == Decimal("400.00")


@pytest.mark.asyncio
async def test_unknown_order_and_ineligible_orders(refund_service, seed_order):
    with pytest.raises(OrderNotFoundException):
        await refund_service.create_refund(command("missing"))

    await seed_order("ord_pending", order_status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING)
    with pytest.raises(RefundNotEligibleException):
        await refund_service.create_refund(command("ord_pending"))

    await seed_order("ord_old", age_days=400)
    with pytest.raises(RefundNotEligibleException) as exc:
        await refund_service.create_refund(command("ord_old"))
    assert "expired" in exc.value.message

    eligibility = await refund_service.check_refund_eligibility("missing")
    assert not eligibility.eligible


@pytest.mark.asyncio
async def test_settlement_projects_payment_and_order(refund_service, seed_order, uow_factory, events):
    await seed_order("ord_1", "1000.00")
    first = await refund_service.create_refund(command(amount="400.00"))

    refund, changed = await refund_service.handle_gateway_refund_status(first.id, "succeeded", reference="re_1")
    assert changed
    assert refund.status == RefundStatus.SUCCEEDED

    async with uow_factory(readonly=True) as uow:
        order = await uow.order_repository.get_by_id("ord_1")
        payment = await uow.payment_repository.get_latest_captured("ord_1")
    assert order.status == OrderStatus.PARTIALLY_REFUNDED
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED

    second = await refund_service.create_refund(command())
    assert second.amount == Decimal("600.00")
    await refund_service.handle_gateway_refund_status(second.id, "succeeded", reference=second.gateway_refund_reference)

    summary = await refund_service.get_refund_summary("ord_1")
    assert summary.total_refunded == Decimal("1000.00")
    assert summary.remaining_refundable == Decimal("0.00")
    assert summary.refund_count == 2

    async with uow_factory(readonly=True) as uow:
        order = await uow.order_repository.get_by_id("ord_1")
    assert order.status == OrderStatus.REFUNDED

    updates = events.of("refund.status-updated")
    assert [e.payload["newStatus"] for e in updates][-1] == "succeeded"


@pytest.mark.asyncio
async def test_duplicate_gateway_status_is_a_noop(refund_service, seed_order, events):
    await seed_order()
    view = await refund_service.create_refund(command(amount="100.00"))
    await refund_service.handle_gateway_refund_status(view.id, "succeeded", reference="re_1")
    published = len(events.of("refund.status-updated"))

    _, changed = await refund_service.handle_gateway_refund_status(view.id, "succeeded", reference="re_1")
    assert not changed

    refund, changed = await refund_service.handle_gateway_refund_status(view.id, "failed", reference="re_1")
    assert not changed
    assert refund.status == RefundStatus.SUCCEEDED
    assert len(events.of("refund.status-updated")) == published


@pytest.mark.asyncio
async def test_gateway_rejection_marks_failed_and_raises(refund_service, seed_order, gateway, events):
    await seed_order()
    gateway.create_error = PaymentGatewayException("card expired", provider="stub", gateway_code="expired_card")

    with pytest.raises(PaymentGatewayException):
        await refund_service.create_refund(command(amount="100.00"))

    [view] = await refund_service.get_refunds_by_order("ord_1")
    assert view.status == RefundStatus.FAILED
    assert view.failure_reason == "card expired"
    assert view.can_retry
    assert "refund.failed" in events.types
    assert "refund.initiated" not in events.types


@pytest.mark.asyncio
async def test_gateway_server_error_keeps_refund_reserved(refund_service, seed_order, gateway, events):
    await seed_order()
    # the gateway records the refund but answers 500
    gateway.create_error = PaymentGatewayUnavailableException("API error 500", provider="stub")
    gateway.fail_after_create = True

    view = await refund_service.create_refund(command(amount="1000.00"))

    assert view.status == RefundStatus.PENDING
    assert "refund.failed" not in events.types
    gateway.create_error = None
    with pytest.raises(RefundAmountExceededException):
        await refund_service.create_refund(command(amount="1000.00"))
    assert sum(r.amount_minor for r in gateway.refunds.values()) == 100000

    # the stored attempt is still open, so the gateway's later success applies
    gateway.set_status("re_1", "succeeded")
    await refund_service.handle_gateway_refund_status(view.id, "succeeded", reference="re_1")
    refund = await refund_service.get_refund(view.id, use_cache=False)
    assert refund.status == RefundStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_timeout_leaves_refund_pending(refund_service, seed_order, gateway):
    await seed_order()
    gateway.create_error = PaymentGatewayTimeoutException("timed out", provider="stub")

    view = await refund_service.create_refund(command(amount="100.00"))

    assert view.status == RefundStatus.PENDING
    assert view.gateway_refund_reference is None
    # the reserved amount still counts against the payment
    eligibility = await refund_service.check_refund_eligibility("ord_1")
    assert eligibility.max_refundable_amount == Decimal("900.00")


@pytest.mark.asyncio
async def test_late_gateway_reference_refreshes_cached_view(refund_service, seed_order, gateway, cache):
    await seed_order()
    gateway.create_error = PaymentGatewayTimeoutException("timed out", provider="stub")
    view = await refund_service.create_refund(command(amount="100.00"))
    await refund_service.handle_gateway_refund_status(view.id, "pending")

    cached = await refund_service.get_refund(view.id)
    assert cached.status == RefundStatus.PROCESSING
    assert cached.gateway_refund_reference is None

    _, changed = await refund_service.handle_gateway_refund_status(view.id, "pending", reference="re_9")

    assert changed is False
    assert await cache.get(f"refund:{view.id}") is None
    refreshed = await refund_service.get_refund(view.id)
    assert refreshed.gateway_refund_reference == "re_9"


@pytest.mark.asyncio
async def test_retry_uses_new_attempt_key_and_is_bounded(refund_service, seed_order, gateway):
    await seed_order()
    gateway.create_error = PaymentGatewayException("declined", provider="stub", gateway_code="declined")
    with pytest.raises(PaymentGatewayException):
        await refund_service.create_refund(command(amount="100.00"))
    [view] = await refund_service.get_refunds_by_order("ord_1")

    for _ in range(3):
        with pytest.raises(PaymentGatewayException):
            await refund_service.retry_failed_refund(view.id, "agent-2")

    keys = [r.idempotency_key for r in gateway.requests]
    assert keys == [f"refund-{view.id}-attempt-{n}" for n in range(4)]

    with pytest.raises(RefundConflictException):
        await refund_service.retry_failed_refund(view.id, "agent-2")

    final = await refund_service.get_refund(view.id, use_cache=False)
    assert final.status == RefundStatus.FAILED
    assert final.retry_count == 3
    assert not final.can_retry
    assert final.last_retried_by == "agent-2"


@pytest.mark.asyncio
async def test_retry_after_rejection_submits_again(refund_service, seed_order, gateway, events):
    await seed_order()
    gateway.create_error = PaymentGatewayException("declined", provider="stub")
    with pytest.raises(PaymentGatewayException):
        await refund_service.create_refund(command(amount="100.00"))
    [view] = await refund_service.get_refunds_by_order("ord_1")

    gateway.create_error = None
    retried = await refund_service.retry_failed_refund(view.id, "agent-2")

    assert retried.id == view.id
    assert retried.status == RefundStatus.PROCESSING
    assert retried.retry_count == 1
    assert gateway.requests[-1].metadata["attempt"] == "1"
    statuses = [e.payload["newStatus"] for e in events.of("refund.status-updated")]
    assert statuses == ["pending", "processing"]


@pytest.mark.asyncio
async def test_retry_blocked_while_previous_attempt_is_live(refund_service, seed_order, gateway):
    await seed_order()
    view = await refund_service.create_refund(command(amount="100.00"))
    # ledger says failed but the gateway still has the attempt in flight
    await refund_service.handle_gateway_refund_status(view.id, "failed", reference="re_1", failure_reason="lost")
    gateway.set_status("re_1", "pending")

    with pytest.raises(RefundConflictException):
        await refund_service.retry_failed_refund(view.id, "agent-2")
    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_cancel_rules(refund_service, seed_order, gateway, events):
    await seed_order()
    processing = await refund_service.create_refund(command(amount="100.00"))
    with pytest.raises(RefundConflictException):
        await refund_service.cancel_refund(processing.id, "agent-2")

    gateway.create_error = PaymentGatewayTimeoutException("timed out", provider="stub")
    pending = await refund_service.create_refund(command(amount="100.00"))
    cancelled = await refund_service.cancel_refund(pending.id, "agent-2")

    assert cancelled.status == RefundStatus.CANCELLED
    assert cancelled.cancelled_by == "agent-2"
    assert events.of("refund.cancelled")[0].payload["cancelledBy"] == "agent-2"

    eligibility = await refund_service.check_refund_eligibility("ord_1")
    assert eligibility.max_refundable_amount == Decimal("900.00")


@pytest.mark.asyncio
async def test_cancel_blocked_when_gateway_received_the_attempt(refund_service, seed_order, gateway):
    await seed_order()
    gateway.create_error = PaymentGatewayTimeoutException("timed out", provider="stub")
    gateway.fail_after_create = True
    pending = await refund_service.create_refund(command(amount="100.00"))
    assert pending.status == RefundStatus.PENDING

    with pytest.raises(RefundConflictException):
        await refund_service.cancel_refund(pending.id, "agent-2")


@pytest.mark.asyncio
async def test_idempotency_key_creates_once(refund_service, seed_order, gateway):
    await seed_order()
    first = await refund_service.create_refund(command(amount="100.00", idempotency_key="client-key-1"))
    again = await refund_service.create_refund(command(amount="100.00", idempotency_key="client-key-1"))

    assert again.id == first.id
    assert len(gateway.requests) == 1
    assert len(await refund_service.get_refunds_by_order("ord_1")) == 1


@pytest.mark.asyncio
async def test_failed_request_releases_idempotency_key(refund_service, seed_order):
    with pytest.raises(OrderNotFoundException):
        await refund_service.create_refund(command("ord_1", idempotency_key="client-key-2"))

    await seed_order()
    view = await refund_service.create_refund(command("ord_1", amount="10.00", idempotency_key="client-key-2"))
    assert view.amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_idempotency_key_stays_bound_when_publish_fails_after_submission(
    uow_factory, gateway, cache, dispatcher, seed_order
):
    strict_bus = InProcessEventBus(InMemoryDeadLetterStore(), raise_on_handler_error=True)
    service = build_container(
        uow_factory=uow_factory,
        gateway=gateway,
        event_bus=strict_bus,
        idempotency_guard=InMemoryIdempotencyGuard(),
        cache=cache,
        dispatcher=dispatcher,
    ).refund_service

    async def broken(envelope):
        raise RuntimeError("subscriber down")

    strict_bus.subscribe("refund.initiated", broken, name="broken")
    await seed_order()

    with pytest.raises(EventDeliveryError):
        await service.create_refund(command(amount="300.00", idempotency_key="K1"))
    replay = await service.create_refund(command(amount="300.00", idempotency_key="K1"))

    assert len(gateway.requests) == 1
    refunds = await service.get_refunds_by_order("ord_1")
    assert [r.id for r in refunds] == [replay.id]
    assert replay.status == RefundStatus.PROCESSING


@pytest.mark.asyncio
async def test_reads_are_cached_and_invalidated_by_events(refund_service, seed_order, cache):
    await seed_order()
    view = await refund_service.create_refund(command(amount="100.00"))

    await refund_service.get_refund(view.id)
    assert await cache.get(f"refund:{view.id}") is not None
    await refund_service.get_refunds_by_order("ord_1")
    assert await cache.get("refunds:order:ord_1") is not None

    await refund_service.handle_gateway_refund_status(view.id, "succeeded", reference="re_1")

    assert await cache.get(f"refund:{view.id}") is None
    assert await cache.get("refunds:order:ord_1") is None
    fresh = await refund_service.get_refund(view.id)
    assert fresh.status == RefundStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_bulk_refunds_collect_failures(refund_service, seed_order):
    await seed_order("ord_a", "10.00")
    await seed_order("ord_b", "20.00")

    result = await refund_service.process_bulk_refunds(
        ["ord_a", "missing", "ord_b"], RefundReason.DUPLICATE.value, "agent-1"
    )

    assert result.total == 3
    assert [s.order_id for s in result.successful] == ["ord_a", "ord_b"]
    assert [f.order_id for f in result.failed] == ["missing"]


@pytest.mark.asyncio
async def test_bulk_refunds_are_capped(refund_service):
    with pytest.raises(DomainValidationException):
        await refund_service.process_bulk_refunds([f"o{i}" for i in range(51)], "duplicate", "agent-1")


@pytest.mark.asyncio
async def test_list_refunds_filters_and_pages(refund_service, seed_order):
    from application.dtos.refunds import RefundListQuery

    await seed_order("ord_a", "100.00")
    await seed_order("ord_b", "100.00")
    for amount in ("10.00", "20.00", "30.00"):
        await refund_service.create_refund(command("ord_a", amount=amount))
    await refund_service.create_refund(command("ord_b", amount="5.00", requested_by="agent-9"))

    views, total = await refund_service.list_refunds(RefundListQuery(order_id="ord_a", limit=2, sort_by="amount", sort_order="asc"))
    assert total == 3
    assert [v.amount for v in views] == [Decimal("10.00"), Decimal("20.00")]

    views, total = await refund_service.list_refunds(RefundListQuery(requested_by="agent-9"))
    assert total == 1 and views[0].order_id == "ord_b"

    views, total = await refund_service.list_refunds(RefundListQuery(min_amount=Decimal("15"), max_amount=Decimal("25")))
    assert total == 1 and views[0].amount == Decimal("20.00")
