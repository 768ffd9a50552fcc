"""
Shared fixtures.

Each test gets a fresh SQLite database file; services run against it through
the same session settings as the application (expire_on_commit=False,
autoflush=False). SMS and email go to in-memory recorders.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple
import uuid

import httpx
import pytest
from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.permissions import ActorContext, Role
from fulfillment.core.security import create_access_token
from fulfillment.database import Base, build_engine, build_session_factory, get_db
from fulfillment.main import app
from fulfillment.models import (
    Delivery,
    DeliveryMethod,
    FleetVehicle,
    Order,
    OrderAvailabilitySlot,
    OrderItem,
    OrderPaymentState,
    OrderStatus,
    Product,
    ProductVariation,
    Transaction,
    TransactionPaymentStatus,
    User,
    VehicleStatus,
)
from fulfillment.services.notification_service import NotificationDispatcher


class RecordingSMSService:
    def __init__(self):
        self.sent: List[Tuple[Optional[str], str]] = []

    async def send_sms(self, phone: Optional[str], message: str) -> bool:
        self.sent.append((phone, message))
        return True


class RecordingEmailService:
    def __init__(self):
        self.sent: List[dict] = []

    def send_status_email(
        self,
        to_email,
        customer_name,
        subject,
        headline,
        body,
        link_url=None,
        link_label=None,
    ) -> bool:
        self.sent.append({
            "to_email": to_email,
            "subject": subject,
            "body": body,
            "link_url": link_url,
        })
        return True


# ==================== DATABASE ====================

@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def sms():
    return RecordingSMSService()


@pytest.fixture
def mailer():
    return RecordingEmailService()


@pytest.fixture
def dispatcher(db, sms, mailer):
    return NotificationDispatcher(db, email_service=mailer, sms_service=sms)


# ==================== HTTP ====================

@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    actor = actor_for(user)
    token = create_access_token(actor.user_id, actor.role)
    return {"Authorization": f"Bearer {token}"}


# ==================== FACTORIES ====================

# Actors are captured at creation so tests can still act after a failed call
# has rolled back (and expired) the session.
_actors = {}


def actor_for(user: User) -> ActorContext:
    return _actors[id_of(user)]


@pytest.fixture
def make_user(db):
    async def _make(role: str = Role.CUSTOMER.value, first_name: str = "Juan", **kwargs) -> User:
        user = User(
            first_name=first_name,
            last_name=kwargs.pop("last_name", "Dela Cruz"),
            email=kwargs.pop("email", f"{uuid.uuid4().hex[:8]}@example.com"),
            phone=kwargs.pop("phone", "09171234567"),
            role=role,
            **kwargs,
        )
        db.add(user)
        await db.commit()
        _actors[user.id] = ActorContext(user_id=user.id, role=user.role)
        return user
    return _make


@pytest.fixture
async def admin(make_user):
    return await make_user(Role.ADMIN.value, first_name="Ana")


@pytest.fixture
async def employee(make_user):
    return await make_user(Role.STORE_EMPLOYEE.value, first_name="Ben")


@pytest.fixture
async def customer(make_user):
    return await make_user(Role.CUSTOMER.value, first_name="Carla")


@pytest.fixture
async def driver(make_user):
    return await make_user(Role.DELIVERY_DRIVER.value, first_name="Dario")


@pytest.fixture
def make_product(db):
    async def _make(
        name: str = "Portland Cement 40kg",
        stock_level: int = 100,
        minimum_stock: Optional[int] = None,
        variation_stock: Optional[List[Optional[int]]] = None,
    ) -> Product:
        product = Product(
            name=name,
            price=Decimal("250.00"),
            stock_level=stock_level,
            minimum_stock=minimum_stock,
        )
        product.variations = [
            ProductVariation(name=f"Variant {i + 1}", stock_level=level)
            for i, level in enumerate(variation_stock or [])
        ]
        db.add(product)
        await db.commit()
        return product
    return _make


@pytest.fixture
def make_order(db):
    async def _make(
        customer: User,
        lines: List[tuple],
        status: str = OrderStatus.WAITING_PAYMENT.value,
        delivery_method: str = DeliveryMethod.STANDARD_DELIVERY.value,
        availability_date: Optional[date] = None,
        slot_dates: Optional[List[date]] = None,
        payment_method: Optional[str] = None,
        paid: bool = False,
        stock_deducted: bool = False,
        proof_of_payment: Optional[str] = None,
        delivery_status: Optional[str] = None,
    ) -> Order:
        """``lines`` is a list of (product, quantity) or (product, quantity, variation)."""
        items = []
        amount = Decimal("0")
        for line in lines:
            product, quantity = line[0], line[1]
            variation = line[2] if len(line) > 2 else None
            items.append(OrderItem(
                product_id=product.id,
                variation_id=variation.id if variation else None,
                quantity=quantity,
                unit_price=product.price,
            ))
            amount += product.price * quantity

        order = Order(
            customer=customer,
            amount=amount,
            status=status,
            delivery_method=delivery_method,
            payment_method=payment_method,
            payment=OrderPaymentState.PAID.value if paid else OrderPaymentState.TO_PAY.value,
            stock_deducted=stock_deducted,
            availability_date=availability_date,
            items=items,
            availability_slots=[
                OrderAvailabilitySlot(slot_number=i + 1, availability_date=d)
                for i, d in enumerate(slot_dates or [])
            ],
        )
        if payment_method or paid:
            order.transaction = Transaction(
                amount=amount,
                payment_method=payment_method,
                payment_status=(
                    TransactionPaymentStatus.PAID.value if paid else TransactionPaymentStatus.PENDING.value
                ),
                proof_of_payment=proof_of_payment,
            )
        if delivery_status:
            order.delivery = Delivery(
                delivery_status=delivery_status,
                delivery_details={},
                drivers=[],
                vehicles=[],
            )
        db.add(order)
        await db.commit()
        return await reload(db, order)
    return _make


@pytest.fixture
def make_vehicle(db):
    async def _make(model: str = "Isuzu Elf", status: str = VehicleStatus.AVAILABLE.value) -> FleetVehicle:
        vehicle = FleetVehicle(model=model, status=status, capacity=Decimal("3000"))
        db.add(vehicle)
        await db.commit()
        return vehicle
    return _make


# ==================== READ HELPERS ====================

def id_of(entity):
    """Primary key from the identity map; safe on instances expired by a rollback."""
    return inspect(entity).identity[0]


async def reload(db: AsyncSession, entity):
    """Fresh copy of a row with its eager relationships."""
    model = type(entity)
    return await db.scalar(
        select(model)
        .where(model.id == id_of(entity))
        .execution_options(populate_existing=True)
    )


async def stock_of(db: AsyncSession, product: Product) -> int:
    return await db.scalar(select(Product.stock_level).where(Product.id == id_of(product)))


async def variation_stock_of(db: AsyncSession, variation: ProductVariation) -> Optional[int]:
    return await db.scalar(select(ProductVariation.stock_level).where(ProductVariation.id == id_of(variation)))


async def vehicle_status_of(db: AsyncSession, vehicle: FleetVehicle) -> str:
    return await db.scalar(select(FleetVehicle.status).where(FleetVehicle.id == id_of(vehicle)))
