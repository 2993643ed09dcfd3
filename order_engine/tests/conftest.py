from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from order_engine.core.config import Settings
from order_engine.core.database import init_db, make_engine, make_session_factory
from order_engine.models.database import Customer, InventoryItem, Location, Product, ProductVariant
from order_engine.models.schemas import OrderCreate, OrderItemCreate
from order_engine.services.coordinator import TransactionCoordinator
from order_engine.services.inventory_service import InventoryService
from order_engine.tests.fakes import RecordingAuditSink, RecordingBroadcaster


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        uow_max_retries=5,
        uow_retry_backoff=0.001,
        payment_gateway_timeout=0.2,
    )


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'order_engine.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def events():
    return RecordingBroadcaster()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def coordinator(session_factory, events, audit, settings):
    return TransactionCoordinator(session_factory, broadcaster=events, audit_sink=audit, settings=settings)


@pytest.fixture
def inventory_service(session_factory, events, audit, settings):
    return InventoryService(session_factory, broadcaster=events, audit_sink=audit, settings=settings)


@pytest.fixture
def catalog(session_factory):
    """Seed two locations, a few products and their stock"""
    db = session_factory()
    warehouse = Location(name="Main Warehouse", type="WAREHOUSE")
    store = Location(name="Downtown Store", type="STORE")
    mixer = Product(name="Professional DJ Mixer", sku="DJ-MIX-001", price=Decimal("299.99"))
    headphones = Product(name="DJ Headphones", sku="DJ-HP-001", price=Decimal("149.99"))
    gift_card = Product(name="Gift Card", sku="GIFT-050", price=Decimal("50.00"), track_quantity=False)
    retired = Product(name="Vintage Turntable", sku="TT-OLD", price=Decimal("99.00"), is_active=False)
    customer = Customer(email="alex@example.com", first_name="Alex", last_name="Rivera")
    db.add_all([warehouse, store, mixer, headphones, gift_card, retired, customer])
    db.flush()

    black = ProductVariant(product_id=headphones.id, name="Black", sku="DJ-HP-001-BLK", price=Decimal("159.99"))
    db.add(black)
    db.flush()

    mixer_stock = InventoryItem(product_id=mixer.id, location_id=warehouse.id, quantity=5, low_stock_threshold=1)
    headphones_stock = InventoryItem(product_id=headphones.id, location_id=warehouse.id, quantity=10)
    black_stock = InventoryItem(product_id=headphones.id, variant_id=black.id, location_id=warehouse.id, quantity=3)
    db.add_all([mixer_stock, headphones_stock, black_stock])
    db.commit()

    seeded = SimpleNamespace(
        warehouse=warehouse.id,
        store=store.id,
        mixer=mixer.id,
        headphones=headphones.id,
        headphones_black=black.id,
        gift_card=gift_card.id,
        retired=retired.id,
        customer=customer.id,
        mixer_stock=mixer_stock.id,
        headphones_stock=headphones_stock.id,
        black_stock=black_stock.id,
    )
    db.close()
    return seeded


@pytest.fixture
def load(session_factory):
    """Read a fresh copy of a row in its own session"""

    def _load(model, entity_id):
        db = session_factory()
        try:
            return db.get(model, entity_id)
        finally:
            db.close()

    return _load


@pytest.fixture
def order_request(catalog):
    def _order_request(quantity=1, product_id=None, **overrides):
        data = {
            "guest_email": "guest@example.com",
            "items": [OrderItemCreate(product_id=product_id or catalog.mixer, quantity=quantity)],
        }
        data.update(overrides)
        return OrderCreate(**data)

    return _order_request


@pytest.fixture
def rows(session_factory):
    """Rows of a model matching column filters, ordered by id"""

    def _rows(model, **filters):
        db = session_factory()
        try:
            return db.execute(select(model).filter_by(**filters).order_by(model.id)).scalars().all()
        finally:
            db.close()

    return _rows
