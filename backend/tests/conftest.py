"""Pytest configuration and fixtures."""

import pytest
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from docflow.db.base import Base
from docflow.db.session import configure_sqlite, get_db
from docflow.main import app
# Import all models to ensure they're registered with Base.metadata
from docflow.models import *
from docflow.services.number_generator import DocumentNumberGenerator

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine with foreign keys enforced."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Don't raise server exceptions so we can test error status codes
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def number_generator() -> DocumentNumberGenerator:
    """Fresh generator so in-process reservations don't leak between tests."""
    return DocumentNumberGenerator()


@pytest.fixture
def test_user(db_session: Session) -> User:
    """Create a test user."""
    user = User(email="clerk@example.com", name="Billing Clerk", is_active=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def test_customer(db_session: Session) -> Customer:
    """Create a test customer."""
    customer = Customer(name="Gulf Trading WLL", email="ap@gulftrading.example")
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture
def test_supplier(db_session: Session) -> Supplier:
    """Create a test supplier."""
    supplier = Supplier(
        name="Test Supplier",
        contact_phone="+1234567890",
        contact_email="supplier@example.com",
    )
    db_session.add(supplier)
    db_session.commit()
    db_session.refresh(supplier)
    return supplier


@pytest.fixture
def other_supplier(db_session: Session) -> Supplier:
    """Create a second supplier."""
    supplier = Supplier(name="Other Supplier", contact_email="other@example.com")
    db_session.add(supplier)
    db_session.commit()
    db_session.refresh(supplier)
    return supplier


@pytest.fixture
def test_item(db_session: Session, test_supplier: Supplier) -> Item:
    """Create a test item."""
    item = Item(
        description="Steel Valve DN50",
        barcode="6291000000017",
        supplier_code="SV-DN50",
        supplier_id=test_supplier.id,
        category="Valves",
        unit_of_measure="EA",
        cost_price=Decimal("62.500"),
        is_active=True,
    )
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture
def test_quotation(db_session: Session, test_customer: Customer, test_item: Item) -> Quotation:
    """Quotation with header defaults and one priced line."""
    quotation = Quotation(
        quote_number="QT-0001",
        customer_id=test_customer.id,
        status="Accepted",
        currency="BHD",
        discount_percentage=Decimal("2"),
        vat_percentage=Decimal("10"),
    )
    quotation.items.append(QuotationItem(
        item_id=test_item.id,
        line_number=1,
        description="Steel Valve DN50",
        quantity=Decimal("10"),
        unit_price=Decimal("100"),
        discount_percentage=Decimal("10"),
        vat_percentage=Decimal("5"),
    ))
    db_session.add(quotation)
    db_session.commit()
    db_session.refresh(quotation)
    return quotation


@pytest.fixture
def test_sales_order(
    db_session: Session, test_customer: Customer, test_quotation: Quotation, test_item: Item
) -> SalesOrder:
    """Sales order raised from the quotation: 10 x 100.00."""
    order = SalesOrder(
        order_number="SO-0001",
        customer_id=test_customer.id,
        quotation_id=test_quotation.id,
        currency="BHD",
        exchange_rate=Decimal("1.0000"),
    )
    order.items.append(SalesOrderItem(
        item_id=test_item.id,
        line_number=1,
        description="Steel Valve DN50",
        quantity=Decimal("10"),
        unit_price=Decimal("100"),
    ))
    db_session.add(order)
    db_session.commit()
    db_session.refresh(order)
    return order


@pytest.fixture
def make_delivery(db_session: Session):
    """Factory: a delivery of ``qty`` units against the order's first line."""
    counter = {"n": 0}

    def _make(order: SalesOrder, qty, **item_fields) -> Delivery:
        counter["n"] += 1
        order_item = order.items[0]
        delivery = Delivery(
            delivery_number=f"DN-{counter['n']:04d}",
            sales_order_id=order.id,
        )
        delivery.items.append(DeliveryItem(
            sales_order_item_id=order_item.id,
            item_id=order_item.item_id,
            ordered_quantity=order_item.quantity,
            picked_quantity=Decimal(str(qty)),
            delivered_quantity=Decimal(str(qty)),
            **item_fields,
        ))
        db_session.add(delivery)
        db_session.commit()
        db_session.refresh(delivery)
        return delivery

    return _make
