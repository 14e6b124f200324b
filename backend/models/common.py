from enum import Enum


class UserRole(str, Enum):
    FARMER   = "farmer"
    ADMIN    = "admin"
    DISPATCH = "dispatch"


class WasteType(str, Enum):
    ANIMAL_MANURE = "animal_manure"
    COFFEE_HUSKS  = "coffee_husks"
    RICE_HULLS    = "rice_hulls"
    MAIZE_STALKS  = "maize_stalks"
    OTHER         = "other"


class WasteStatus(str, Enum):
    REPORTED  = "reported"
    SCHEDULED = "scheduled"
    COLLECTED = "collected"
    PROCESSED = "processed"   # payout déclenché ; le Payment lié fait foi


class OrderStatus(str, Enum):
    PENDING          = "pending"
    CONFIRMED        = "confirmed"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED        = "delivered"
    CANCELLED        = "cancelled"


class PaymentStatus(str, Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    FAILED    = "failed"
    EXPIRED   = "expired"     # callback jamais reçu


TERMINAL_PAYMENT_STATUSES = {
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.EXPIRED,
}


class PaymentType(str, Enum):
    WASTE_PURCHASE = "waste_purchase"
    MANURE_SALE    = "manure_sale"
    BONUS          = "bonus"
    REFUND         = "refund"
    OTHER          = "other"


class PaymentChannel(str, Enum):
    STK = "stk"   # client → entreprise (push sur le téléphone)
    B2C = "b2c"   # entreprise → fermier
    C2B = "c2b"   # paybill manuel


class RiderStatus(str, Enum):
    AVAILABLE = "available"
    BUSY      = "busy"
    OFFLINE   = "offline"


class NotificationType(str, Enum):
    APPROVAL             = "approval"
    RIDER_ASSIGNED       = "rider_assigned"
    COLLECTION_COMPLETED = "collection_completed"
    PAYMENT_RECEIVED     = "payment_received"
    PAYMENT_FAILED       = "payment_failed"
    ORDER_STATUS         = "order_status"
    DELIVERY_SUCCESS     = "delivery_success"
    PAYMENT_REVIEW       = "payment_review"    # admin : fonds reçus à rapprocher
    TICKET_UPDATE        = "ticket_update"


class TicketType(str, Enum):
    GENERAL        = "general"
    DELIVERY_ISSUE = "delivery_issue"
    PAYMENT_ISSUE  = "payment_issue"
    DELAY          = "delay"
    TECHNICAL      = "technical"
    FEEDBACK       = "feedback"


class TicketStatus(str, Enum):
    OPEN        = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED    = "resolved"
    CLOSED      = "closed"
