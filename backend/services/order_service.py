"""
Service commandes : ventes de compost aux clients (fermiers ou non).

pending → confirmed → out_for_delivery → delivered ; annulation depuis
pending ou confirmed. total_amount est calculé une fois, à la création.
"""
import logging
from typing import Optional

from core.exceptions import InvalidTransition, ValidationError, not_found_exception
from core.realtime import hub
from core.utils import new_id, normalize_phone, utcnow
from database import db
from models.common import NotificationType, OrderStatus
from models.order import CustomerCreate, OrderCreate, ProductCreate
from services import rider_service
from services.event_service import record_event
from services.notification_service import notify, notify_many

logger = logging.getLogger(__name__)

# ── Machine d'états ───────────────────────────────────────────────────────────
ALLOWED_TRANSITIONS: dict[OrderStatus, list[OrderStatus]] = {
    OrderStatus.PENDING: [
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.CONFIRMED: [
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.OUT_FOR_DELIVERY: [
        OrderStatus.DELIVERED,
    ],
    # États terminaux
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
}

STATUS_MESSAGES = {
    OrderStatus.OUT_FOR_DELIVERY: "Your compost order is on its way.",
    OrderStatus.DELIVERED:        "Your compost order has been delivered. Thank you for choosing Captain Compost!",
    OrderStatus.CANCELLED:        "Your compost order has been cancelled.",
}


# ── Clients ───────────────────────────────────────────────────────────────────
async def ensure_customer_for_profile(profile: dict) -> dict:
    """Un fermier qui commande devient client ; customer_id = son user_id."""
    customer = await db.customers.find_one({"customer_id": profile["user_id"]}, {"_id": 0})
    if customer:
        return customer
    now = utcnow()
    customer = {
        "customer_id":  profile["user_id"],
        "name":         profile["full_name"],
        "phone_number": profile.get("phone_number"),
        "location":     profile.get("location"),
        "is_farmer":    profile.get("role") == "farmer",
        "profile_id":   profile["user_id"],
        "created_at":   now,
        "updated_at":   now,
    }
    await db.customers.insert_one(customer)
    return {k: v for k, v in customer.items() if k != "_id"}


async def create_customer(data: CustomerCreate) -> dict:
    """Client sans compte (vente terrain saisie par le dispatch)."""
    now = utcnow()
    customer = {
        "customer_id":  new_id("cus"),
        "name":         data.name,
        "phone_number": normalize_phone(data.phone_number) if data.phone_number else None,
        "location":     data.location,
        "is_farmer":    False,
        "profile_id":   None,
        "created_at":   now,
        "updated_at":   now,
    }
    await db.customers.insert_one(customer)
    return {k: v for k, v in customer.items() if k != "_id"}


async def list_customers(skip: int = 0, limit: int = 50) -> dict:
    cursor = db.customers.find({}, {"_id": 0}).sort("name", 1).skip(skip).limit(limit)
    return {
        "customers": await cursor.to_list(length=limit),
        "total":     await db.customers.count_documents({}),
    }


# ── Produits ──────────────────────────────────────────────────────────────────
async def create_product(data: ProductCreate) -> dict:
    now = utcnow()
    product = {
        "product_id":   new_id("prd"),
        "name":         data.name,
        "price_per_kg": data.price_per_kg,
        "is_active":    True,
        "created_at":   now,
        "updated_at":   now,
    }
    await db.products.insert_one(product)
    return {k: v for k, v in product.items() if k != "_id"}


async def list_products(active_only: bool = True) -> list:
    query = {"is_active": True} if active_only else {}
    return await db.products.find(query, {"_id": 0}).sort("name", 1).to_list(length=200)


async def set_product_active(product_id: str, is_active: bool) -> dict:
    result = await db.products.update_one(
        {"product_id": product_id},
        {"$set": {"is_active": is_active, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise not_found_exception("Product")
    return await db.products.find_one({"product_id": product_id}, {"_id": 0})


# ── Commandes ─────────────────────────────────────────────────────────────────
async def get_order(order_id: str) -> dict:
    order = await db.orders.find_one({"order_id": order_id}, {"_id": 0})
    if not order:
        raise not_found_exception("Order")
    return order


async def get_order_items(order_id: str) -> list:
    return await db.order_items.find({"order_id": order_id}, {"_id": 0}).to_list(length=100)


async def create_order(customer_id: str, data: OrderCreate, actor_id: Optional[str] = None) -> dict:
    customer = await db.customers.find_one({"customer_id": customer_id}, {"_id": 0})
    if not customer:
        raise ValidationError(f"Customer {customer_id} not found")

    order_id = new_id("ord")
    items = []
    if data.items:
        for line in data.items:
            product = await db.products.find_one(
                {"product_id": line.product_id, "is_active": True}, {"_id": 0}
            )
            if not product:
                raise ValidationError(f"Product {line.product_id} is not available")
            items.append({
                "item_id":         new_id("itm"),
                "order_id":        order_id,
                "product_id":      product["product_id"],
                "quantity_kg":     line.quantity_kg,
                "price_per_kg":    product["price_per_kg"],
                "farmer_id":       line.farmer_id,
                "waste_report_id": line.waste_report_id,
            })
        quantity_kg = sum(i["quantity_kg"] for i in items)
        total_amount = round(sum(i["quantity_kg"] * i["price_per_kg"] for i in items), 2)
        price_per_kg = round(total_amount / quantity_kg, 2)
    else:
        quantity_kg = data.quantity_kg
        price_per_kg = data.price_per_kg
        total_amount = round(quantity_kg * price_per_kg, 2)

    if total_amount <= 0:
        raise ValidationError("Order total must be greater than zero")

    now = utcnow()
    order = {
        "order_id":         order_id,
        "customer_id":      customer_id,
        "quantity_kg":      quantity_kg,
        "price_per_kg":     price_per_kg,
        "total_amount":     total_amount,
        "status":           OrderStatus.PENDING.value,
        "assigned_rider":   None,
        "delivery_address": data.delivery_address or customer.get("location"),
        "payment_status":   "unpaid",
        "delivered_at":     None,
        "created_at":       now,
        "updated_at":       now,
    }
    await db.orders.insert_one(order)
    if items:
        await db.order_items.insert_many(items)
    order = {k: v for k, v in order.items() if k != "_id"}

    await record_event(
        entity_type="order",
        entity_id=order_id,
        event_type="ORDER_CREATED",
        to_status=OrderStatus.PENDING.value,
        actor_id=actor_id or customer_id,
        metadata={"total_amount": total_amount, "items": len(items)},
    )
    await hub.publish("orders", "insert", new=order)
    logger.info(f"Commande {order_id} : {quantity_kg:g} kg, KES {total_amount:g}")
    return order


async def list_orders(
    customer_id: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    skip: int = 0,
    limit: int = 50,
) -> dict:
    query: dict = {}
    if customer_id:
        query["customer_id"] = customer_id
    if status:
        query["status"] = status.value
    cursor = db.orders.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit)
    return {
        "orders": await cursor.to_list(length=limit),
        "total":  await db.orders.count_documents(query),
    }


async def _transition(
    order: dict,
    new_status: OrderStatus,
    actor_id: Optional[str],
    actor_role: Optional[str],
    updates: Optional[dict] = None,
    notes: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> dict:
    current = OrderStatus(order["status"])
    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise InvalidTransition("order", current.value, new_status.value)

    result = await db.orders.update_one(
        {"order_id": order["order_id"], "status": current.value},
        {"$set": {"status": new_status.value, "updated_at": utcnow(), **(updates or {})}},
    )
    if result.modified_count == 0:
        fresh = await get_order(order["order_id"])
        raise InvalidTransition("order", fresh["status"], new_status.value)

    updated = await get_order(order["order_id"])
    await record_event(
        entity_type="order",
        entity_id=order["order_id"],
        event_type="STATUS_CHANGED",
        from_status=current.value,
        to_status=new_status.value,
        actor_id=actor_id,
        actor_role=actor_role,
        notes=notes,
        metadata=metadata or {},
    )
    await hub.publish("orders", "update", old=order, new=updated)
    logger.info(f"Commande {order['order_id']} : {current.value} → {new_status.value}")
    return updated


async def _notify_customer(order: dict, type: NotificationType, title: str, message: str) -> None:
    customer = await db.customers.find_one({"customer_id": order["customer_id"]}, {"_id": 0}) or {}
    # Client sans compte : la ligne reste l'historique, le SMS le prévient
    sms_phone = customer.get("phone_number") if not customer.get("profile_id") else None
    await notify(
        order["customer_id"],
        type.value,
        title,
        message,
        related_entity_id=order["order_id"],
        sms_phone=sms_phone,
    )


async def assign_rider(order_id: str, rider_id: str, actor_id: str, actor_role: str) -> dict:
    order = await get_order(order_id)
    rider = await rider_service.require_rider(rider_id)
    updated = await _transition(
        order,
        OrderStatus.CONFIRMED,
        actor_id,
        actor_role,
        updates={"assigned_rider": rider_id},
        metadata={"rider_id": rider_id},
    )
    await rider_service.take_job(rider_id)
    await _notify_customer(
        order,
        NotificationType.RIDER_ASSIGNED,
        "Rider Assigned",
        f"{rider['name']} ({rider['phone_number']}) will deliver your "
        f"{order['quantity_kg']:g} kg compost order.",
    )
    return updated


async def start_delivery(order_id: str, actor_id: str, actor_role: str) -> dict:
    order = await get_order(order_id)
    updated = await _transition(order, OrderStatus.OUT_FOR_DELIVERY, actor_id, actor_role)
    await _notify_customer(
        order, NotificationType.ORDER_STATUS, "Order Update",
        STATUS_MESSAGES[OrderStatus.OUT_FOR_DELIVERY],
    )
    return updated


async def mark_delivered(order_id: str, actor_id: str, actor_role: str) -> dict:
    """
    Livraison confirmée. Le client est prévenu ; delivery_success ne part qu'aux
    fermiers dont un lot figure dans la commande, jamais à tous les fermiers.
    """
    order = await get_order(order_id)
    updated = await _transition(
        order, OrderStatus.DELIVERED, actor_id, actor_role,
        updates={"delivered_at": utcnow()},
    )
    if order.get("assigned_rider"):
        await rider_service.release_job(order["assigned_rider"], delivered=True)

    await _notify_customer(
        order, NotificationType.ORDER_STATUS, "Order Delivered",
        STATUS_MESSAGES[OrderStatus.DELIVERED],
    )
    items = await get_order_items(order_id)
    farmer_ids = [i["farmer_id"] for i in items if i.get("farmer_id")]
    await notify_many(
        farmer_ids,
        NotificationType.DELIVERY_SUCCESS.value,
        "Your Compost Was Delivered",
        "Compost made from your waste has just been delivered to a customer.",
        related_entity_id=order_id,
    )
    return updated


async def cancel_order(
    order_id: str,
    actor_id: str,
    actor_role: str,
    reason: Optional[str] = None,
) -> dict:
    order = await get_order(order_id)
    updated = await _transition(
        order, OrderStatus.CANCELLED, actor_id, actor_role, notes=reason,
    )
    if order.get("assigned_rider"):
        await rider_service.release_job(order["assigned_rider"])
    await _notify_customer(
        order, NotificationType.ORDER_STATUS, "Order Cancelled",
        STATUS_MESSAGES[OrderStatus.CANCELLED] + (f" Reason: {reason}" if reason else ""),
    )
    return updated
