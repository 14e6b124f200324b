from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, model_validator
from models.common import OrderStatus


class OrderItem(BaseModel):
    item_id:         str
    order_id:        str
    product_id:      str
    quantity_kg:     float
    price_per_kg:    float
    # Lot d'origine : le(s) fermier(s) notifié(s) à la livraison
    farmer_id:       Optional[str] = None
    waste_report_id: Optional[str] = None


class Order(BaseModel):
    order_id:         str
    customer_id:      str
    quantity_kg:      float
    price_per_kg:     float
    total_amount:     float      # calculé à la création, jamais recalculé
    status:           OrderStatus = OrderStatus.PENDING
    assigned_rider:   Optional[str] = None
    delivery_address: Optional[str] = None
    payment_status:   str = "unpaid"   # "unpaid" | "paid"
    delivered_at:     Optional[datetime] = None
    created_at:       datetime
    updated_at:       datetime


class OrderItemCreate(BaseModel):
    product_id:      str
    quantity_kg:     float = Field(gt=0)
    farmer_id:       Optional[str] = None
    waste_report_id: Optional[str] = None


class OrderCreate(BaseModel):
    """
    Soit une liste d'articles (prix pris dans `products`),
    soit une commande simple quantity_kg × price_per_kg.
    """
    customer_id:      Optional[str] = None   # admin/dispatch : client existant
    items:            list[OrderItemCreate] = []
    quantity_kg:      Optional[float] = Field(default=None, gt=0)
    price_per_kg:     Optional[float] = Field(default=None, gt=0)
    delivery_address: Optional[str] = None

    @model_validator(mode="after")
    def items_or_quantity(self):
        if not self.items and (self.quantity_kg is None or self.price_per_kg is None):
            raise ValueError("Provide items, or quantity_kg and price_per_kg")
        return self


class OrderAssignRider(BaseModel):
    rider_id: str


class Customer(BaseModel):
    customer_id:  str
    name:         str
    phone_number: Optional[str] = None
    location:     Optional[str] = None
    is_farmer:    bool = False
    profile_id:   Optional[str] = None
    created_at:   datetime
    updated_at:   datetime


class CustomerCreate(BaseModel):
    name:         str
    phone_number: Optional[str] = None
    location:     Optional[str] = None


class Product(BaseModel):
    product_id:   str
    name:         str
    price_per_kg: float
    is_active:    bool = True
    created_at:   datetime
    updated_at:   datetime


class ProductCreate(BaseModel):
    name:         str
    price_per_kg: float = Field(gt=0)
