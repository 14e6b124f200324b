from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from models.common import WasteStatus, WasteType


class WasteReport(BaseModel):
    report_id:      str
    farmer_id:      str
    waste_type:     WasteType
    quantity_kg:    float
    location:       Optional[str] = None
    notes:          Optional[str] = None
    # Machine d'états
    status:         WasteStatus = WasteStatus.REPORTED
    admin_verified: bool = False
    rider_id:       Optional[str] = None
    # Le Payment lié est la seule source de vérité du paiement
    payment_id:     Optional[str] = None
    # Timestamps
    scheduled_pickup_date: Optional[datetime] = None
    collected_date:        Optional[datetime] = None
    processed_date:        Optional[datetime] = None
    created_at:     datetime
    updated_at:     datetime


class WasteReportCreate(BaseModel):
    waste_type:  WasteType
    quantity_kg: float = Field(gt=0)
    location:    Optional[str] = None
    notes:       Optional[str] = None


class VerifyReportRequest(BaseModel):
    scheduled_pickup_date: Optional[datetime] = None


class AssignRiderRequest(BaseModel):
    rider_id: str


class ProcessPaymentRequest(BaseModel):
    # Par défaut : le téléphone du profil fermier
    phone_number: Optional[str] = None
