from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class Notification(BaseModel):
    notification_id:   str
    recipient_id:      str
    type:              str      # voir NotificationType ; étiquette libre
    title:             str
    message:           str
    is_read:           bool = False
    # Lien contextuel : report_id, order_id ou payment_id
    related_entity_id: Optional[str] = None
    # Timestamps
    created_at:        datetime
    read_at:           Optional[datetime] = None
