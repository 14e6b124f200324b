import pytest

from core.exceptions import InvalidTransition, ValidationError
from database import db
from models.order import CustomerCreate, OrderCreate, OrderItemCreate, ProductCreate
from services import order_service as svc


async def _customer(profile):
    return await svc.ensure_customer_for_profile(profile)


async def _simple_order(profile, kg=100, price=25):
    customer = await _customer(profile)
    return await svc.create_order(
        customer["customer_id"], OrderCreate(quantity_kg=kg, price_per_kg=price),
    )


async def test_total_is_computed_once_at_creation(farmer):
    order = await _simple_order(farmer, kg=100, price=25)
    assert order["status"] == "pending"
    assert order["total_amount"] == 2500
    assert order["payment_status"] == "unpaid"


async def test_items_take_catalogue_prices(farmer, other_farmer):
    compost = await svc.create_product(ProductCreate(name="Compost", price_per_kg=20))
    pellets = await svc.create_product(ProductCreate(name="Pellets", price_per_kg=40))
    customer = await _customer(farmer)

    order = await svc.create_order(customer["customer_id"], OrderCreate(items=[
        OrderItemCreate(product_id=compost["product_id"], quantity_kg=50, farmer_id=other_farmer["user_id"]),
        OrderItemCreate(product_id=pellets["product_id"], quantity_kg=10),
    ]))

    items = await svc.get_order_items(order["order_id"])
    assert order["total_amount"] == sum(i["quantity_kg"] * i["price_per_kg"] for i in items) == 1400
    assert order["quantity_kg"] == 60


async def test_inactive_product_is_refused(farmer):
    product = await svc.create_product(ProductCreate(name="Old", price_per_kg=10))
    await svc.set_product_active(product["product_id"], False)
    customer = await _customer(farmer)
    with pytest.raises(ValidationError):
        await svc.create_order(customer["customer_id"], OrderCreate(items=[
            OrderItemCreate(product_id=product["product_id"], quantity_kg=5),
        ]))


def test_order_needs_items_or_quantity():
    with pytest.raises(ValueError):
        OrderCreate(quantity_kg=10)


async def test_full_delivery_flow(farmer, dispatcher, rider):
    order = await _simple_order(farmer)
    confirmed = await svc.assign_rider(order["order_id"], rider["rider_id"], dispatcher["user_id"], "dispatch")
    assert confirmed["status"] == "confirmed"
    assert confirmed["assigned_rider"] == rider["rider_id"]

    assigned = await db.notifications.find_one({"recipient_id": farmer["user_id"], "type": "rider_assigned"})
    assert "Agent Mike" in assigned["message"]
    busy = await db.riders.find_one({"rider_id": rider["rider_id"]})
    assert busy["current_orders"] == 1
    assert busy["status"] == "busy"

    on_the_way = await svc.start_delivery(order["order_id"], dispatcher["user_id"], "dispatch")
    assert on_the_way["status"] == "out_for_delivery"

    delivered = await svc.mark_delivered(order["order_id"], dispatcher["user_id"], "dispatch")
    assert delivered["status"] == "delivered"
    assert delivered["delivered_at"] is not None

    done = await db.riders.find_one({"rider_id": rider["rider_id"]})
    assert done["current_orders"] == 0
    assert done["total_deliveries"] == 1
    assert done["status"] == "available"


async def test_status_never_moves_backwards(farmer, dispatcher, rider):
    order = await _simple_order(farmer)
    with pytest.raises(InvalidTransition):
        await svc.mark_delivered(order["order_id"], dispatcher["user_id"], "dispatch")

    await svc.assign_rider(order["order_id"], rider["rider_id"], dispatcher["user_id"], "dispatch")
    await svc.start_delivery(order["order_id"], dispatcher["user_id"], "dispatch")
    with pytest.raises(InvalidTransition):
        await svc.cancel_order(order["order_id"], dispatcher["user_id"], "dispatch")
    with pytest.raises(InvalidTransition):
        await svc.assign_rider(order["order_id"], rider["rider_id"], dispatcher["user_id"], "dispatch")


async def test_delivery_success_only_reaches_linked_farmers(farmer, other_farmer, dispatcher, rider):
    product = await svc.create_product(ProductCreate(name="Compost", price_per_kg=20))
    customer = await svc.create_customer(CustomerCreate(name="Walk-in", phone_number="0733000111"))
    order = await svc.create_order(customer["customer_id"], OrderCreate(items=[
        OrderItemCreate(product_id=product["product_id"], quantity_kg=30, farmer_id=other_farmer["user_id"]),
        OrderItemCreate(product_id=product["product_id"], quantity_kg=20, farmer_id=other_farmer["user_id"]),
    ]))
    await svc.assign_rider(order["order_id"], rider["rider_id"], dispatcher["user_id"], "dispatch")
    await svc.start_delivery(order["order_id"], dispatcher["user_id"], "dispatch")
    await svc.mark_delivered(order["order_id"], dispatcher["user_id"], "dispatch")

    success = await db.notifications.find({"type": "delivery_success"}).to_list(length=10)
    assert [n["recipient_id"] for n in success] == [other_farmer["user_id"]]
    assert await db.notifications.count_documents({"recipient_id": farmer["user_id"]}) == 0


async def test_cancel_releases_rider(farmer, dispatcher, rider):
    order = await _simple_order(farmer)
    await svc.assign_rider(order["order_id"], rider["rider_id"], dispatcher["user_id"], "dispatch")
    cancelled = await svc.cancel_order(order["order_id"], farmer["user_id"], "farmer", reason="Changed my mind")

    assert cancelled["status"] == "cancelled"
    freed = await db.riders.find_one({"rider_id": rider["rider_id"]})
    assert freed["current_orders"] == 0
    assert freed["total_deliveries"] == 0
    note = await db.notifications.find_one({"recipient_id": farmer["user_id"], "title": "Order Cancelled"})
    assert "Changed my mind" in note["message"]
