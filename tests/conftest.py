import os

# Настройки читаются при импорте paycore.config, поэтому окружение задаём до импортов
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_paycore.db")
os.environ.setdefault("ENVIRONMENT", "test")

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from paycore.config import Settings
from paycore.database import Base
from paycore.models import Order, OrderStatus, Product, ProductStatus, User
from paycore.providers import (
    CancelOutcome,
    CancelResult,
    InitializeResult,
    PaymentProvider,
    ProviderRegistry,
    RefundOutcome,
    RefundResult,
    VerifyOutcome,
    VerifyResult,
)
from paycore.services.payment_service import PaymentService
from paycore.services.signature import IntegrityVerifier

IYZICO_SECRET = "iyzico-test-secret"
PAYTR_KEY = "paytr-key"
PAYTR_SALT = "paytr-salt"


class FakeProvider(PaymentProvider):
    """Провайдер без сети: результаты задаются атрибутами, вызовы пишутся в calls."""

    def __init__(self, name: str):
        super().__init__()
        self.name = name
        self.configured = True
        self.initialize_error: Exception | None = None
        self.verify_error: Exception | None = None
        self.verify_result = VerifyResult(
            outcome=VerifyOutcome.SUCCESS,
            provider_transaction_id="tx1",
            raw_amount=Decimal("1000.00"),
        )
        self.refund_result = RefundResult(outcome=RefundOutcome.SUCCESS, provider_refund_id="rf1")
        self.calls: list[tuple] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def initialize(self, order, payment, buyer):
        self.calls.append(("initialize", payment.id))
        if self.initialize_error:
            raise self.initialize_error
        return InitializeResult(
            redirect_url=f"https://pay.example/{payment.id}",
            provider_token=f"tok-{payment.id.hex}",
            conversation_id=payment.id.hex,
        )

    async def verify(self, token):
        self.calls.append(("verify", token))
        if self.verify_error:
            raise self.verify_error
        return self.verify_result

    async def refund(self, transaction_ref, amount, currency="TRY"):
        self.calls.append(("refund", transaction_ref, amount, currency))
        return self.refund_result

    async def cancel(self, payment_ref):
        return CancelResult(outcome=CancelOutcome.NOT_SUPPORTED)

    def transaction_reference(self, payment):
        return payment.provider_transaction_id

    def verification_reference(self, payment):
        return payment.provider_token

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


class FakeEvents:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.emitted: list[tuple[str, dict]] = []

    async def emit(self, event_name, payload):
        if self.fail:
            raise RuntimeError("redis down")
        self.emitted.append((event_name, payload))
        return True

    def names(self) -> list[str]:
        return [name for name, _ in self.emitted]


@pytest.fixture
def config():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///./unused.db",
        environment="test",
        iyzico_api_key="api-key",
        iyzico_secret_key=IYZICO_SECRET,
        paytr_merchant_id="100500",
        paytr_merchant_key=PAYTR_KEY,
        paytr_merchant_salt=PAYTR_SALT,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")

    # SAVEPOINT в pysqlite работает только с явным BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def users(session_factory):
    buyer = User(email="buyer@example.com", display_name="Ayşe Yılmaz", phone="+905551112233")
    seller = User(email="seller@example.com", display_name="Mehmet Kaya")
    stranger = User(email="stranger@example.com", display_name="Can Demir")
    admin = User(email="admin@example.com", display_name="Admin", role="admin")
    async with session_factory() as session:
        session.add_all([buyer, seller, stranger, admin])
        await session.commit()
    return {"buyer": buyer, "seller": seller, "stranger": stranger, "admin": admin}


@pytest.fixture
async def order(session_factory, users):
    """Заказ на 1000 TRY с комиссией 80, ожидает оплаты."""
    product = Product(
        seller_id=users["seller"].id,
        title="Vintage Kamera",
        price=Decimal("1000.00"),
        status=ProductStatus.RESERVED.value,
    )
    async with session_factory() as session:
        session.add(product)
        await session.flush()
        order = Order(
            order_number=f"ORD-{uuid.uuid4().hex[:8].upper()}",
            buyer_id=users["buyer"].id,
            seller_id=users["seller"].id,
            product_id=product.id,
            total_amount=Decimal("1000.00"),
            commission_amount=Decimal("80.00"),
            currency="TRY",
            status=OrderStatus.PENDING_PAYMENT.value,
            shipping_address={"fullName": "Ayşe Yılmaz", "city": "İzmir", "address": "Alsancak 1"},
            version=0,
        )
        session.add(order)
        await session.commit()
    return order


@pytest.fixture
def iyzico():
    return FakeProvider("iyzico")


@pytest.fixture
def paytr():
    return FakeProvider("paytr")


@pytest.fixture
def providers(iyzico, paytr):
    return ProviderRegistry({"iyzico": iyzico, "paytr": paytr})


@pytest.fixture
def events():
    return FakeEvents()


@pytest.fixture
def make_service(providers, events, config):
    def _make(session, **overrides):
        return PaymentService(
            session,
            providers=overrides.get("providers", providers),
            events=overrides.get("events", events),
            verifier=IntegrityVerifier.from_settings(overrides.get("config", config)),
            config=overrides.get("config", config),
        )

    return _make


@pytest.fixture
def service(db, make_service):
    return make_service(db)


@pytest.fixture
async def pending_payment(service, order, users):
    """Платёж iyzico в статусе pending с созданной у провайдера сессией."""
    session = await service.initiate(order.id, users["buyer"].id, "iyzico")
    return session.payment


@pytest.fixture
def fetch(session_factory):
    """Перечитать объект из БД в отдельной сессии."""

    async def _fetch(model, ident):
        async with session_factory() as session:
            return await session.get(model, ident)

    return _fetch


@pytest.fixture
def fetch_all(session_factory):
    async def _fetch_all(stmt):
        async with session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    return _fetch_all


@pytest.fixture
def failing_events():
    return FakeEvents(fail=True)
