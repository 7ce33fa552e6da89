import os
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.models.billing import (
    CustomerBillingProfile,
    Invoice,
    InvoiceLine,
    InvoiceLineType,
    InvoiceStatus,
    InvoiceType,
)
from app.services.billing import BillingService
from app.services.billing.invoices import Invoices
from app.services.billing.numbering import generate_invoice_number
from app.services.billing.transitions import calculate_due_date
from tests.mocks import (
    FakeGateway,
    FakeNotifications,
    FakeScheduler,
    FakeShipmentCharges,
    FakeTax,
    FakeTiers,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    # Service commits and rollbacks stay inside a savepoint of the outer transaction.
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def clock():
    return lambda: NOW


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def tax():
    return FakeTax()


@pytest.fixture()
def notifications():
    return FakeNotifications()


@pytest.fixture()
def tiers():
    return FakeTiers()


@pytest.fixture()
def shipment_charges():
    return FakeShipmentCharges()


@pytest.fixture()
def scheduler():
    return FakeScheduler()


@pytest.fixture()
def billing(gateway, tax, notifications, tiers, shipment_charges, scheduler, clock):
    return BillingService(
        payment_gateway=gateway,
        tax_calculator=tax,
        notifications=notifications,
        pricing_tiers=tiers,
        shipment_charges=shipment_charges,
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture()
def make_invoice(db_session):
    """Store an invoice with a single charge line and no tax or discount."""

    def _make(
        total: str = "100.00",
        status: InvoiceStatus = InvoiceStatus.sent,
        customer_id: str = "cust-1",
        customer_email: str | None = "billing@acme.test",
        currency: str = "USD",
        due_date: datetime | None = None,
    ) -> Invoice:
        amount = Decimal(total)
        invoice = Invoice(
            invoice_number=generate_invoice_number(db_session, NOW),
            customer_id=customer_id,
            customer_name="Acme Ltd",
            customer_email=customer_email,
            invoice_type=InvoiceType.shipment,
            service_type="STANDARD",
            currency=currency,
            subtotal=amount,
            discount_amount=Decimal("0.00"),
            tax_amount=Decimal("0.00"),
            total_amount=amount,
            due_date=due_date or calculate_due_date(NOW, "NET_30"),
            created_at=NOW,
        )
        line = InvoiceLine(
            line_type=InvoiceLineType.charge,
            description="Shipping",
            unit_price=amount,
            amount=amount,
        )
        Invoices.add_draft(db_session, invoice, [line])
        invoice.status = status
        if status != InvoiceStatus.draft:
            invoice.sent_at = NOW
        db_session.commit()
        return invoice

    return _make


@pytest.fixture()
def make_profile(db_session):
    def _make(customer_id: str = "cust-1", **fields) -> CustomerBillingProfile:
        profile = CustomerBillingProfile(customer_id=customer_id, **fields)
        db_session.add(profile)
        db_session.commit()
        return profile

    return _make
