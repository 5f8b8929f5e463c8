from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException, RefundConflictException
from domain.refund.entity import Refund, RefundReason, RefundStatus


def make_refund(status: RefundStatus = RefundStatus.PENDING, **kwargs) -> Refund:
    values = dict(
        id=7,
        payment_id=1,
        order_id="ord_1",
        amount=Decimal("400"),
        currency="gbp",
        status=status,
        reason=RefundReason.REQUESTED_BY_CUSTOMER.value,
        requested_by="agent-1",
    )
    values.update(kwargs)
    return Refund(**values)


def test_amount_is_quantized_and_currency_upper():
    refund = make_refund(amount=Decimal("12.345"))
    assert refund.amount == Decimal("12.35")
    assert refund.currency == "GBP"


def test_non_positive_amount_rejected():
    with pytest.raises(DomainValidationException):
        make_refund(amount=Decimal("0"))


def test_happy_path_pending_processing_succeeded():
    refund = make_refund()
    refund.mark_processing("re_1")
    assert refund.status == RefundStatus.PROCESSING
    assert refund.gateway_refund_reference == "re_1"
    assert refund.processed_at is not None

    refund.mark_succeeded()
    assert refund.status == RefundStatus.SUCCEEDED
    assert refund.settled_at is not None
    assert refund.is_terminal


def test_illegal_transition_leaves_refund_untouched():
    refund = make_refund(RefundStatus.SUCCEEDED, gateway_refund_reference="re_1")
    before = (refund.status, refund.failure_reason, refund.updated_at)

    with pytest.raises(RefundConflictException) as exc:
        refund.mark_failed("late failure")

    assert exc.value.details == {"current_status": "succeeded", "target_status": "failed"}
    assert (refund.status, refund.failure_reason, refund.updated_at) == before


def test_pending_cannot_jump_to_succeeded():
    refund = make_refund()
    with pytest.raises(RefundConflictException):
        refund.mark_succeeded()
    assert refund.status == RefundStatus.PENDING


def test_only_pending_can_be_cancelled():
    refund = make_refund(RefundStatus.PROCESSING)
    with pytest.raises(RefundConflictException):
        refund.cancel("agent-2")

    pending = make_refund()
    pending.cancel("agent-2")
    assert pending.status == RefundStatus.CANCELLED
    assert pending.cancelled_by == "agent-2"
    assert pending.is_terminal


def test_retry_reuses_record_and_bumps_attempt_key():
    refund = make_refund(RefundStatus.FAILED, gateway_refund_reference="re_1", failure_reason="card expired")
    assert refund.attempt_key == "refund-7-attempt-0"

    refund.reopen_for_retry("agent-3")

    assert refund.status == RefundStatus.PENDING
    assert refund.retry_count == 1
    assert refund.attempt_key == "refund-7-attempt-1"
    assert refund.gateway_refund_reference is None
    assert refund.failure_reason is None
    assert refund.last_retried_by == "agent-3"
    assert refund.metadata["previous_gateway_references"] == ["re_1"]


def test_retry_limit_is_enforced():
    refund = make_refund(RefundStatus.FAILED, retry_count=3, max_retries=3)
    assert not refund.can_retry
    assert refund.is_terminal
    with pytest.raises(RefundConflictException):
        refund.reopen_for_retry("agent-3")
    assert refund.retry_count == 3


def test_only_failed_refunds_can_retry():
    with pytest.raises(RefundConflictException):
        make_refund(RefundStatus.PROCESSING).ensure_can_retry()


def test_superseded_attempt_detection():
    refund = make_refund(
        RefundStatus.PROCESSING,
        retry_count=1,
        gateway_refund_reference="re_2",
        metadata={"previous_gateway_references": ["re_1"]},
    )
    assert refund.is_superseded_attempt("re_1")
    assert refund.is_superseded_attempt("re_9")
    assert refund.is_superseded_attempt(None, "0")
    assert not refund.is_superseded_attempt("re_2", "1")
    assert not refund.is_superseded_attempt(None)
