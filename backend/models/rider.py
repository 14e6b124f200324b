from datetime import datetime
from typing import Optional
from pydantic import BaseModel
from models.common import RiderStatus


class Rider(BaseModel):
    rider_id:         str
    name:             str
    phone_number:     str
    vehicle_type:     str = "motorbike"
    status:           RiderStatus = RiderStatus.AVAILABLE
    current_orders:   int   = 0
    total_deliveries: int   = 0
    failed_deliveries: int  = 0
    success_rate:     float = 100.0
    created_at:       datetime
    updated_at:       datetime


class RiderCreate(BaseModel):
    name:         str
    phone_number: str
    vehicle_type: str = "motorbike"


class RiderUpdate(BaseModel):
    name:         Optional[str] = None
    phone_number: Optional[str] = None
    vehicle_type: Optional[str] = None
    status:       Optional[RiderStatus] = None
