"""HTTP surface: routing, role gates and the error body."""

from datetime import timedelta
import uuid

import pytest
from jose import jwt

from fulfillment.config import settings
from fulfillment.core.clock import business_today
from fulfillment.core.security import actor_from_token, create_access_token
from fulfillment.models import DeliveryStatus, OrderStatus, VehicleStatus

from tests.conftest import auth_headers, reload, stock_of, vehicle_status_of


API = "/api/v1"


@pytest.fixture
async def order(customer, make_product, make_order):
    product = await make_product(stock_level=20)
    return await make_order(customer, [(product, 4)], status=OrderStatus.PENDING_APPROVAL.value)


class TestOrdersApi:

    async def test_approve_then_approve_again(self, client, admin, order):
        url = f"{API}/orders/{order.id}/approve"

        response = await client.post(url, headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["status"] == OrderStatus.WAITING_PAYMENT.value

        response = await client.post(url, headers=auth_headers(admin))
        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "InvalidTransition"

    async def test_customer_cannot_approve(self, client, customer, order):
        response = await client.post(f"{API}/orders/{order.id}/approve", headers=auth_headers(customer))
        assert response.status_code == 403

    async def test_unknown_order(self, client, admin):
        response = await client.post(f"{API}/orders/{uuid.uuid4()}/approve", headers=auth_headers(admin))
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "NotFound"

    async def test_invalid_status_value(self, client, admin, order):
        response = await client.post(
            f"{API}/orders/{order.id}/status",
            json={"status": "Shipped"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 422

    async def test_ready_before_scheduled_date(self, client, admin, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(
            customer, [(product, 1)],
            status=OrderStatus.PROCESSING.value,
            availability_date=business_today() + timedelta(days=2),
        )

        response = await client.post(
            f"{API}/orders/{order.id}/status",
            json={"status": "Ready"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 422
        body = response.json()["detail"]
        assert body["kind"] == "NotYetDue"
        assert body["details"]["scheduled_date"] == str(business_today() + timedelta(days=2))

    async def test_reject_with_reason(self, client, db, admin, order):
        response = await client.post(
            f"{API}/orders/{order.id}/reject",
            json={"reason": "Out of delivery area"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        assert response.json()["rejection_reason"] == "Out of delivery area"
        history = await client.get(f"{API}/orders/{order.id}/history", headers=auth_headers(admin))
        assert [h["to_status"] for h in history.json()] == [OrderStatus.REJECTED.value]

    async def test_customer_lists_own_orders(self, client, customer, make_user, order, make_order, make_product):
        someone_else = await make_user(first_name="Olga")
        product = await make_product()
        await make_order(someone_else, [(product, 1)])

        response = await client.get(f"{API}/orders", headers=auth_headers(customer))

        assert response.status_code == 200
        assert [o["id"] for o in response.json()] == [str(order.id)]

    async def test_customer_cannot_read_other_order(self, client, make_user, order):
        someone_else = await make_user(first_name="Olga")

        response = await client.get(f"{API}/orders/{order.id}", headers=auth_headers(someone_else))

        assert response.status_code == 403
        assert response.json()["detail"]["kind"] == "Forbidden"

    async def test_create_delivery(self, client, admin, order):
        response = await client.post(f"{API}/orders/{order.id}/delivery", headers=auth_headers(admin))

        assert response.status_code == 201
        assert response.json()["delivery_status"] == DeliveryStatus.PENDING.value


class TestPaymentsApi:

    async def test_first_gcash_upload(self, client, db, customer, make_product, make_order):
        product = await make_product(stock_level=10)
        order = await make_order(customer, [(product, 3)])

        response = await client.post(
            f"{API}/orders/{order.id}/payment",
            json={"payment_method": "GCash", "proof_of_payment": "proofs/gcash-001.png"},
            headers=auth_headers(customer),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["payment"] == "Paid"
        assert body["transaction"]["payment_status"] == "Paid"
        assert await stock_of(db, product) == 7

    async def test_unknown_payment_method(self, client, customer, order):
        response = await client.post(
            f"{API}/orders/{order.id}/payment",
            json={"payment_method": "Bitcoin"},
            headers=auth_headers(customer),
        )
        assert response.status_code == 422

    async def test_staff_cannot_pick_payment(self, client, admin, order):
        response = await client.post(
            f"{API}/orders/{order.id}/payment",
            json={"payment_method": "On-Site"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 403


class TestDeliveriesApi:

    @pytest.fixture
    async def delivery(self, customer, make_product, make_order):
        product = await make_product()
        order = await make_order(
            customer, [(product, 1)],
            status=OrderStatus.PROCESSING.value,
            delivery_status=DeliveryStatus.PENDING.value,
        )
        return order.delivery

    async def test_unassigned_driver(self, client, driver, delivery):
        response = await client.post(
            f"{API}/deliveries/status",
            json={"delivery_id": str(delivery.id), "status": "Preparing"},
            headers=auth_headers(driver),
        )

        assert response.status_code == 403
        assert response.json()["detail"]["kind"] == "Forbidden"

    async def test_assign_then_driver_advances(self, client, admin, driver, delivery):
        response = await client.post(
            f"{API}/deliveries/{delivery.id}/drivers",
            json={"driver_ids": [str(driver.id)]},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200
        assert [d["id"] for d in response.json()["drivers"]] == [str(driver.id)]

        response = await client.post(
            f"{API}/deliveries/status",
            json={"order_id": str(delivery.order_id), "status": "preparing"},
            headers=auth_headers(driver),
        )
        assert response.status_code == 200
        assert response.json()["delivery_status"] == DeliveryStatus.PREPARING.value

        mine = await client.get(f"{API}/deliveries/mine", headers=auth_headers(driver))
        assert [d["id"] for d in mine.json()] == [str(delivery.id)]

    async def test_status_needs_a_target(self, client, admin):
        response = await client.post(
            f"{API}/deliveries/status",
            json={"status": "Preparing"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 422

    async def test_cancel(self, client, db, admin, delivery):
        response = await client.post(
            f"{API}/deliveries/cancel",
            json={"delivery_id": str(delivery.id), "reason": "Road closed"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["was_in_progress"] is False
        assert body["delivery"]["delivery_status"] == DeliveryStatus.CANCELLED.value
        assert body["delivery"]["cancellation_reason"] == "Road closed"
        order = await reload(db, delivery.order)
        assert order.status == OrderStatus.CANCELLED.value

    async def test_cancel_twice(self, client, admin, delivery):
        payload = {"delivery_id": str(delivery.id), "reason": "Road closed"}
        await client.post(f"{API}/deliveries/cancel", json=payload, headers=auth_headers(admin))

        response = await client.post(f"{API}/deliveries/cancel", json=payload, headers=auth_headers(admin))

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "AlreadyFinal"

    async def test_driver_cannot_list_all(self, client, driver):
        response = await client.get(f"{API}/deliveries", headers=auth_headers(driver))
        assert response.status_code == 403


class TestFleetApi:

    async def test_add_and_update(self, client, db, employee):
        response = await client.post(
            f"{API}/fleet",
            json={"model": "Isuzu Elf", "capacity": "3000", "capacity_unit": "kg"},
            headers=auth_headers(employee),
        )
        assert response.status_code == 201
        vehicle_id = response.json()["id"]
        assert response.json()["status"] == VehicleStatus.AVAILABLE.value

        response = await client.patch(
            f"{API}/fleet/{vehicle_id}",
            json={"status": "Unavailable"},
            headers=auth_headers(employee),
        )
        assert response.status_code == 200
        assert response.json()["status"] == VehicleStatus.UNAVAILABLE.value

    async def test_in_use_is_not_manual(self, client, db, admin, make_vehicle):
        van = await make_vehicle()

        response = await client.patch(
            f"{API}/fleet/{van.id}",
            json={"status": "In Use"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "PreconditionFailed"
        assert await vehicle_status_of(db, van) == VehicleStatus.AVAILABLE.value

    async def test_customer_cannot_see_fleet(self, client, customer):
        response = await client.get(f"{API}/fleet", headers=auth_headers(customer))
        assert response.status_code == 403


class TestNotificationsApi:

    async def test_approval_reaches_customer_inbox(self, client, admin, customer, order):
        await client.post(f"{API}/orders/{order.id}/approve", headers=auth_headers(admin))

        response = await client.get(f"{API}/notifications", headers=auth_headers(customer))
        assert response.status_code == 200
        notifications = response.json()
        assert [n["activity_type"] for n in notifications] == ["order_approved"]

        notification_id = notifications[0]["id"]
        response = await client.post(
            f"{API}/notifications/{notification_id}/read", headers=auth_headers(customer)
        )
        assert response.json()["is_read"] is True

        response = await client.post(f"{API}/notifications/read-all", headers=auth_headers(admin))
        assert response.json() == {"updated": 1}


class TestAuth:

    async def test_bad_token(self, client, order):
        response = await client.get(
            f"{API}/orders/{order.id}", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401

    async def test_missing_token(self, client, order):
        response = await client.get(f"{API}/orders/{order.id}")
        assert response.status_code in (401, 403)

    async def test_deactivated_user(self, client, db, make_user, order):
        user = await make_user(first_name="Ex", is_active=False)

        response = await client.get(f"{API}/orders", headers=auth_headers(user))

        assert response.status_code == 403


class TestTokens:

    def test_round_trip(self):
        user_id = uuid.uuid4()
        actor = actor_from_token(create_access_token(user_id, "Delivery Driver"))
        assert actor.user_id == user_id
        assert actor.is_driver

    def test_expired(self):
        token = create_access_token(uuid.uuid4(), "Admin", expires_delta=timedelta(minutes=-1))
        assert actor_from_token(token) is None

    def test_unknown_role(self):
        assert actor_from_token(create_access_token(uuid.uuid4(), "Supplier")) is None

    def test_wrong_token_type(self):
        token = jwt.encode(
            {"sub": str(uuid.uuid4()), "role": "Admin", "type": "refresh"},
            settings.SECRET_KEY,
            algorithm=settings.ALGORITHM,
        )
        assert actor_from_token(token) is None


class TestHealth:

    async def test_reports_database_and_transports(self, client, session_factory, monkeypatch):
        from fulfillment import main
        monkeypatch.setattr(main, "async_session_factory", session_factory)

        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"] == {"database": "connected", "sms": "disabled", "email": "disabled"}
