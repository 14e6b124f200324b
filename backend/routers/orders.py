"""
Router orders : commandes de compost et leur livraison.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from core.dependencies import get_current_user, is_staff, require_staff
from core.exceptions import bad_request_exception, forbidden_exception
from models.common import OrderStatus
from models.order import Order, OrderAssignRider, OrderCreate
from services import order_service

router = APIRouter()


@router.post("", response_model=Order, status_code=201, summary="Passer une commande")
async def create_order(body: OrderCreate, current_user: dict = Depends(get_current_user)):
    if is_staff(current_user):
        # Vente saisie par le staff pour un client existant
        if not body.customer_id:
            raise bad_request_exception("customer_id is required")
        customer_id = body.customer_id
    else:
        customer = await order_service.ensure_customer_for_profile(current_user)
        customer_id = customer["customer_id"]
    order = await order_service.create_order(customer_id, body, actor_id=current_user["user_id"])
    return Order(**order)


@router.get("", summary="Commandes (client : les siennes ; staff : toutes)")
async def list_orders(
    status: Optional[OrderStatus] = None,
    customer_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
    current_user: dict = Depends(get_current_user),
):
    if not is_staff(current_user):
        customer_id = current_user["user_id"]
    return await order_service.list_orders(customer_id, status, skip, limit)


@router.get("/{order_id}", summary="Détail commande")
async def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    order = await order_service.get_order(order_id)
    if not is_staff(current_user) and order["customer_id"] != current_user["user_id"]:
        raise forbidden_exception()
    return {"order": order, "items": await order_service.get_order_items(order_id)}


@router.put("/{order_id}/assign-rider", response_model=Order, summary="Affecter un rider (confirme)")
async def assign_rider(order_id: str, body: OrderAssignRider, staff: dict = Depends(require_staff)):
    order = await order_service.assign_rider(order_id, body.rider_id, staff["user_id"], staff["role"])
    return Order(**order)


@router.put("/{order_id}/start-delivery", response_model=Order, summary="Départ en livraison")
async def start_delivery(order_id: str, staff: dict = Depends(require_staff)):
    order = await order_service.start_delivery(order_id, staff["user_id"], staff["role"])
    return Order(**order)


@router.put("/{order_id}/deliver", response_model=Order, summary="Livraison confirmée")
async def mark_delivered(order_id: str, staff: dict = Depends(require_staff)):
    order = await order_service.mark_delivered(order_id, staff["user_id"], staff["role"])
    return Order(**order)


@router.put("/{order_id}/cancel", response_model=Order, summary="Annuler")
async def cancel_order(
    order_id: str,
    reason: Optional[str] = None,
    current_user: dict = Depends(get_current_user),
):
    order = await order_service.get_order(order_id)
    if not is_staff(current_user) and order["customer_id"] != current_user["user_id"]:
        raise forbidden_exception()
    order = await order_service.cancel_order(order_id, current_user["user_id"], current_user["role"], reason)
    return Order(**order)
