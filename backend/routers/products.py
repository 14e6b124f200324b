"""
Router products : catalogue compost et clients hors compte.
"""
from fastapi import APIRouter, Depends

from core.dependencies import get_current_user, require_admin, require_staff
from models.order import Customer, CustomerCreate, Product, ProductCreate
from services import order_service

router = APIRouter()
customers_router = APIRouter()


@router.get("", summary="Catalogue")
async def list_products(_user=Depends(get_current_user)):
    return {"products": await order_service.list_products()}


@router.post("", response_model=Product, status_code=201, summary="Ajouter un produit (admin)")
async def create_product(body: ProductCreate, _admin=Depends(require_admin)):
    return Product(**await order_service.create_product(body))


@router.put("/{product_id}/active", response_model=Product, summary="Activer / retirer du catalogue")
async def set_active(product_id: str, is_active: bool, _admin=Depends(require_admin)):
    return Product(**await order_service.set_product_active(product_id, is_active))


@customers_router.get("", summary="Clients")
async def list_customers(skip: int = 0, limit: int = 50, _staff=Depends(require_staff)):
    return await order_service.list_customers(skip, limit)


@customers_router.post("", response_model=Customer, status_code=201, summary="Client sans compte")
async def create_customer(body: CustomerCreate, _staff=Depends(require_staff)):
    return Customer(**await order_service.create_customer(body))
