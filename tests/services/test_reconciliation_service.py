from datetime import timedelta
from decimal import Decimal

import pytest

from application.dtos.refunds import CreateRefundCommand
from domain.common.exceptions import PaymentGatewayTimeoutException
from domain.common.timeutils import utc_now
from domain.refund.entity import RefundStatus


def later():
    return utc_now() + timedelta(hours=1)


async def create(refund_service, amount: str = "100.00"):
    return await refund_service.create_refund(
        CreateRefundCommand(order_id="ord_1", amount=Decimal(amount), requested_by="agent-1")
    )


@pytest.mark.asyncio
async def test_fresh_refunds_are_not_scanned(container, seed_order, refund_service):
    await seed_order()
    await create(refund_service)

    report = await container.reconciliation_service.run_once()

    assert report.scanned == 0


@pytest.mark.asyncio
async def test_processing_refund_picks_up_gateway_outcome(container, seed_order, refund_service, gateway):
    await seed_order()
    view = await create(refund_service)
    gateway.set_status("re_1", "succeeded")

    report = await container.reconciliation_service.run_once(now=later())

    assert (report.scanned, report.updated, report.errors) == (1, 1, 0)
    refund = await refund_service.get_refund(view.id, use_cache=False)
    assert refund.status == RefundStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_unchanged_refund_is_counted(container, seed_order, refund_service):
    await seed_order()
    await create(refund_service)

    report = await container.reconciliation_service.run_once(now=later())

    assert (report.scanned, report.unchanged) == (1, 1)


@pytest.mark.asyncio
async def test_lost_response_is_recovered_by_metadata(container, seed_order, refund_service, gateway):
    await seed_order()
    gateway.create_error = PaymentGatewayTimeoutException("timed out", provider="stub")
    gateway.fail_after_create = True
    view = await create(refund_service)
    assert view.status == RefundStatus.PENDING

    report = await container.reconciliation_service.run_once(now=later())

    assert report.updated == 1
    refund = await refund_service.get_refund(view.id, use_cache=False)
    assert refund.status == RefundStatus.PROCESSING
    assert refund.gateway_refund_reference == "re_1"


@pytest.mark.asyncio
async def test_unsent_refund_is_resubmitted_with_same_key(container, seed_order, refund_service, gateway):
    await seed_order()
    gateway.create_error = PaymentGatewayTimeoutException("timed out", provider="stub")
    view = await create(refund_service)
    gateway.create_error = None

    report = await container.reconciliation_service.run_once(now=later())

    assert report.resubmitted == 1
    keys = [r.idempotency_key for r in gateway.requests]
    assert keys == [f"refund-{view.id}-attempt-0"] * 2
    refund = await refund_service.get_refund(view.id, use_cache=False)
    assert refund.status == RefundStatus.PROCESSING


@pytest.mark.asyncio
async def test_gateway_errors_are_counted_not_raised(container, seed_order, refund_service, gateway):
    await seed_order()
    await create(refund_service)
    gateway.refunds.clear()

    report = await container.reconciliation_service.run_once(now=later())

    assert (report.scanned, report.errors) == (1, 1)
