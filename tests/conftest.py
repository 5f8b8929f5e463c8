"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="refund-core-tests-")

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", f"sqlite+aiosqlite:///{_DB_DIR}/app.db")
os.environ.setdefault("PAYMENT__STRIPE__SECRET_KEY", "sk_test_123")
os.environ.setdefault("PAYMENT__STRIPE__WEBHOOK_SECRET", "whsec_test")

import json  # noqa: E402
from datetime import timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from application.dtos.payments import (  # noqa: E402
    GatewayRefundRequest,
    GatewayRefundResult,
    WebhookEvent,
)
from domain.common.exceptions import PaymentGatewayException  # noqa: E402
from domain.common.timeutils import utc_now  # noqa: E402
from domain.order.entity import Order, OrderStatus  # noqa: E402
from domain.payment.entity import Payment, PaymentStatus  # noqa: E402
from infrastructure.bootstrap import build_container  # noqa: E402
from infrastructure.cache import InMemoryCache, InMemoryIdempotencyGuard  # noqa: E402
from infrastructure.database import build_engine, build_session_factory, create_tables  # noqa: E402
from infrastructure.events import InMemoryDeadLetterStore, InProcessEventBus  # noqa: E402
from infrastructure.unit_of_work import session_uow_factory  # noqa: E402


class StubGateway:
    """In-memory gateway: refunds are keyed by reference and deduplicated by idempotency key."""

    provider = "stub"

    def __init__(self) -> None:
        self.refunds: dict[str, GatewayRefundResult] = {}
        self.requests: list[GatewayRefundRequest] = []
        self.create_status = "pending"
        self.create_error: Optional[Exception] = None
        # Record the refund before raising create_error (a lost response)
        self.fail_after_create = False

    async def create_refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        self.requests.append(req)
        if self.create_error is not None and not self.fail_after_create:
            raise self.create_error
        result = next(
            (r for r in self.refunds.values() if r.metadata.get("idempotency_key") == req.idempotency_key),
            None,
        )
        if result is None:
            reference = f"re_{len(self.refunds) + 1}"
            result = GatewayRefundResult(
                reference=reference,
                status=self.create_status,
                provider=self.provider,
                amount_minor=req.amount_minor,
                currency=req.currency,
                metadata={**req.metadata, "idempotency_key": req.idempotency_key},
            )
            self.refunds[reference] = result
        if self.create_error is not None:
            raise self.create_error
        return result

    async def retrieve_refund(self, reference: str) -> GatewayRefundResult:
        result = self.refunds.get(reference)
        if result is None:
            raise PaymentGatewayException(
                f"No such refund: {reference}",
                provider=self.provider,
                gateway_code="resource_missing",
            )
        return result

    async def find_refund(self, payment_reference: str, refund_id: int) -> Optional[GatewayRefundResult]:
        matches = [r for r in self.refunds.values() if r.metadata.get("refund_id") == str(refund_id)]
        return matches[-1] if matches else None

    def set_status(self, reference: str, status: str, failure_reason: Optional[str] = None) -> None:
        self.refunds[reference] = self.refunds[reference].model_copy(
            update={"status": status, "failure_reason": failure_reason}
        )

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        event = json.loads(body)
        return WebhookEvent(id=event["id"], type=event["type"], provider=self.provider, data=event.get("data", {}))


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []

    def dispatch_event_notification(self, event_type: str, envelope: dict) -> str:
        self.sent.append((event_type, envelope))
        return f"task-{len(self.sent)}"


class EventRecorder:
    def __init__(self) -> None:
        self.envelopes = []

    async def __call__(self, envelope) -> None:
        self.envelopes.append(envelope)

    @property
    def types(self) -> list[str]:
        return [e.event_type for e in self.envelopes]

    def of(self, event_type: str) -> list:
        return [e for e in self.envelopes if e.event_type == event_type]


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow_factory(engine):
    return session_uow_factory(build_session_factory(engine))


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def event_bus():
    return InProcessEventBus(InMemoryDeadLetterStore(), raise_on_handler_error=False)


@pytest.fixture
def events(event_bus):
    recorder = EventRecorder()
    event_bus.subscribe("*", recorder, name="recorder")
    return recorder


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def cache():
    return InMemoryCache(default_ttl=60)


@pytest.fixture
def container(uow_factory, gateway, event_bus, events, dispatcher, cache):
    return build_container(
        uow_factory=uow_factory,
        gateway=gateway,
        event_bus=event_bus,
        idempotency_guard=InMemoryIdempotencyGuard(),
        cache=cache,
        dispatcher=dispatcher,
    )


@pytest.fixture
def refund_service(container):
    return container.refund_service


@pytest.fixture
def seed_order(uow_factory):
    """Insert an order with one payment; defaults to a captured 1000.00 GBP payment."""

    async def _seed(
        order_id: str = "ord_1",
        amount: str = "1000.00",
        currency: str = "GBP",
        *,
        order_status: OrderStatus = OrderStatus.PAID,
        payment_status: PaymentStatus = PaymentStatus.SUCCEEDED,
        age_days: int = 0,
    ) -> tuple[Order, Payment]:
        created = utc_now() - timedelta(days=age_days)
        async with uow_factory() as uow:
            order = await uow.order_repository.create(Order(
                id=order_id,
                customer_id="cus_1",
                status=order_status,
                total_amount=Decimal(amount),
                currency=currency,
                created_at=created,
                updated_at=created,
            ))
            payment = await uow.payment_repository.create(Payment(
                id=None,
                order_id=order_id,
                provider=StubGateway.provider,
                gateway_payment_reference=f"pi_{order_id}",
                amount=Decimal(amount),
                currency=currency,
                status=payment_status,
                captured_at=created if payment_status == PaymentStatus.SUCCEEDED else None,
                created_at=created,
                updated_at=created,
            ))
        return order, payment

    return _seed


@pytest_asyncio.fixture
async def client(container):
    from main import app

    app.state.container = container
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.container = None
