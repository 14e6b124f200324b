"""
Service déchets : machine d'états des signalements fermiers.

reported → scheduled → collected → processed, sans retour arrière.
Chaque transition est un update conditionnel sur le statut courant :
deux clics simultanés ne peuvent pas faire avancer le signalement deux fois.
"""
import logging
from typing import Optional

from config import settings
from core.exceptions import InvalidTransition, ValidationError, not_found_exception
from core.realtime import hub
from core.utils import new_id, utcnow
from database import db
from models.common import NotificationType, PaymentStatus, PaymentType, WasteStatus
from models.waste_report import WasteReportCreate
from services import payment_service, rider_service
from services.event_service import get_timeline, record_event
from services.notification_service import notify

logger = logging.getLogger(__name__)

# ── Machine d'états ───────────────────────────────────────────────────────────
ALLOWED_TRANSITIONS: dict[WasteStatus, list[WasteStatus]] = {
    WasteStatus.REPORTED:  [WasteStatus.SCHEDULED],
    WasteStatus.SCHEDULED: [WasteStatus.COLLECTED],
    WasteStatus.COLLECTED: [WasteStatus.PROCESSED],
    # État terminal ; le Payment lié porte la suite
    WasteStatus.PROCESSED: [],
}

INVENTORY_ID = "main"


async def get_report(report_id: str) -> dict:
    report = await db.waste_reports.find_one({"report_id": report_id}, {"_id": 0})
    if not report:
        raise not_found_exception("Waste report")
    return report


async def _transition(
    report: dict,
    new_status: WasteStatus,
    actor_id: Optional[str],
    actor_role: Optional[str],
    updates: Optional[dict] = None,
    notes: Optional[str] = None,
) -> dict:
    current = WasteStatus(report["status"])
    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise InvalidTransition("waste_report", current.value, new_status.value)

    now = utcnow()
    result = await db.waste_reports.update_one(
        {"report_id": report["report_id"], "status": current.value},
        {"$set": {"status": new_status.value, "updated_at": now, **(updates or {})}},
    )
    if result.modified_count == 0:
        # Un autre acteur a fait avancer le signalement entre-temps
        fresh = await get_report(report["report_id"])
        raise InvalidTransition("waste_report", fresh["status"], new_status.value)

    updated = await get_report(report["report_id"])
    await record_event(
        entity_type="waste_report",
        entity_id=report["report_id"],
        event_type="STATUS_CHANGED",
        from_status=current.value,
        to_status=new_status.value,
        actor_id=actor_id,
        actor_role=actor_role,
        notes=notes,
    )
    await hub.publish("waste_reports", "update", old=report, new=updated)
    logger.info(f"Signalement {report['report_id']} : {current.value} → {new_status.value}")
    return updated


# ── Création ──────────────────────────────────────────────────────────────────
async def create_report(farmer_id: str, data: WasteReportCreate) -> dict:
    if data.quantity_kg <= 0:
        raise ValidationError("Quantity must be greater than zero")

    now = utcnow()
    report = {
        "report_id":             new_id("rpt"),
        "farmer_id":             farmer_id,
        "waste_type":            data.waste_type.value,
        "quantity_kg":           data.quantity_kg,
        "location":              data.location,
        "notes":                 data.notes,
        "status":                WasteStatus.REPORTED.value,
        "admin_verified":        False,
        "rider_id":              None,
        "payment_id":            None,
        "scheduled_pickup_date": None,
        "collected_date":        None,
        "processed_date":        None,
        "created_at":            now,
        "updated_at":            now,
    }
    await db.waste_reports.insert_one(report)
    report = {k: v for k, v in report.items() if k != "_id"}

    await record_event(
        entity_type="waste_report",
        entity_id=report["report_id"],
        event_type="REPORT_CREATED",
        to_status=WasteStatus.REPORTED.value,
        actor_id=farmer_id,
        actor_role="farmer",
    )
    await hub.publish("waste_reports", "insert", new=report)
    logger.info(f"Signalement {report['report_id']} : {data.quantity_kg} kg de {data.waste_type.value}")
    return report


# ── Transitions ───────────────────────────────────────────────────────────────
async def verify_report(
    report_id: str,
    actor_id: str,
    actor_role: str,
    scheduled_pickup_date=None,
) -> dict:
    report = await get_report(report_id)
    updated = await _transition(
        report,
        WasteStatus.SCHEDULED,
        actor_id,
        actor_role,
        updates={"admin_verified": True, "scheduled_pickup_date": scheduled_pickup_date},
    )
    when = f" Pickup is planned for {scheduled_pickup_date:%d %b %Y}." if scheduled_pickup_date else ""
    await notify(
        report["farmer_id"],
        NotificationType.APPROVAL.value,
        "Waste Report Approved",
        f"Your {report['quantity_kg']:g} kg waste report has been verified and scheduled for pickup.{when}",
        related_entity_id=report_id,
    )
    return updated


async def assign_rider(report_id: str, rider_id: str, actor_id: str, actor_role: str) -> dict:
    """Rider affecté à un signalement vérifié ; le statut reste `scheduled`."""
    report = await get_report(report_id)
    if report["status"] != WasteStatus.SCHEDULED.value:
        raise InvalidTransition("waste_report", report["status"], "rider_assigned")
    if report.get("rider_id"):
        raise ValidationError("A rider is already assigned to this report")

    rider = await rider_service.require_rider(rider_id)
    result = await db.waste_reports.update_one(
        {"report_id": report_id, "status": WasteStatus.SCHEDULED.value, "rider_id": None},
        {"$set": {"rider_id": rider_id, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        raise ValidationError("A rider is already assigned to this report")

    updated = await get_report(report_id)
    await record_event(
        entity_type="waste_report",
        entity_id=report_id,
        event_type="RIDER_ASSIGNED",
        from_status=report["status"],
        to_status=report["status"],
        actor_id=actor_id,
        actor_role=actor_role,
        metadata={"rider_id": rider_id},
    )
    await hub.publish("waste_reports", "update", old=report, new=updated)
    await rider_service.take_job(rider_id)

    await notify(
        report["farmer_id"],
        NotificationType.RIDER_ASSIGNED.value,
        "Rider Assigned",
        f"{rider['name']} ({rider['phone_number']}) will collect your waste. "
        f"Please have it ready for pickup.",
        related_entity_id=report_id,
    )
    return updated


async def mark_collected(report_id: str, actor_id: str, actor_role: str) -> dict:
    report = await get_report(report_id)
    if report["status"] == WasteStatus.SCHEDULED.value and not report.get("rider_id"):
        raise ValidationError("Assign a rider before marking the waste as collected")

    now = utcnow()
    updated = await _transition(
        report,
        WasteStatus.COLLECTED,
        actor_id,
        actor_role,
        updates={"collected_date": now},
    )
    await db.inventory.update_one(
        {"inventory_id": INVENTORY_ID},
        {
            "$inc": {"raw_waste_kg": report["quantity_kg"]},
            "$set": {"last_updated": now},
            "$setOnInsert": {"processed_manure_kg": 0.0, "pellets_ready_kg": 0.0},
        },
        upsert=True,
    )
    await rider_service.release_job(report["rider_id"])

    await notify(
        report["farmer_id"],
        NotificationType.COLLECTION_COMPLETED.value,
        "Waste Collected",
        f"Your {report['quantity_kg']:g} kg of waste has been collected. Payment will follow shortly.",
        related_entity_id=report_id,
    )
    return updated


async def process_payment(
    report_id: str,
    actor_id: str,
    actor_role: str,
    phone: Optional[str] = None,
) -> dict:
    """
    collected → processed puis payout B2C de quantity_kg × WASTE_RATE_KES_PER_KG.
    Les contrôles (téléphone, config passerelle) passent AVANT la transition :
    une erreur de configuration ne laisse ni transition ni Payment.
    """
    report = await get_report(report_id)
    if report["status"] != WasteStatus.COLLECTED.value:
        raise InvalidTransition("waste_report", report["status"], WasteStatus.PROCESSED.value)

    if phone is None:
        profile = await db.profiles.find_one({"user_id": report["farmer_id"]}, {"_id": 0})
        phone = (profile or {}).get("phone_number")
    amount = round(report["quantity_kg"] * settings.WASTE_RATE_KES_PER_KG, 2)
    normalized = payment_service.prepare_payout(phone, amount)

    updated = await _transition(
        report,
        WasteStatus.PROCESSED,
        actor_id,
        actor_role,
        updates={"processed_date": utcnow()},
        notes=f"Payout KES {amount:g}",
    )
    payment = await payment_service.initiate_payout(
        farmer_id=report["farmer_id"],
        amount=amount,
        payment_type=PaymentType.WASTE_PURCHASE,
        phone=normalized,
        waste_report_id=report_id,
        actor_id=actor_id,
    )
    updated["payment_id"] = payment["payment_id"]
    return {"report": updated, "payment": payment}


async def retry_payout(report_id: str, actor_id: str, actor_role: str, phone: Optional[str] = None) -> dict:
    """
    Nouveau payout pour un signalement traité dont le dernier paiement a échoué,
    ou a expiré sans jamais atteindre la passerelle.
    """
    report = await get_report(report_id)
    if report["status"] != WasteStatus.PROCESSED.value:
        raise InvalidTransition("waste_report", report["status"], WasteStatus.PROCESSED.value)

    last = None
    if report.get("payment_id"):
        last = await payment_service.get_payment(report["payment_id"])
    if last and last["status"] not in (PaymentStatus.FAILED.value, PaymentStatus.EXPIRED.value):
        raise ValidationError(f"The last payout for this report is {last['status']}")
    if last and payment_service.payout_outcome_unknown(last):
        # Soumis sans réponse : le fermier a peut-être été payé
        raise ValidationError(
            "The last payout reached M-Pesa without an answer; "
            "confirm its outcome with an admin override before retrying"
        )

    if phone is None:
        phone = (last or {}).get("phone_number")
    amount = round(report["quantity_kg"] * settings.WASTE_RATE_KES_PER_KG, 2)
    await record_event(
        "waste_report", report_id, "PAYOUT_RETRY",
        actor_id=actor_id, actor_role=actor_role,
        metadata={"previous_payment_id": report.get("payment_id")},
    )
    payment = await payment_service.initiate_payout(
        farmer_id=report["farmer_id"],
        amount=amount,
        payment_type=PaymentType.WASTE_PURCHASE,
        phone=phone,
        waste_report_id=report_id,
        actor_id=actor_id,
    )
    return {"report": await get_report(report_id), "payment": payment}


# ── Lecture ───────────────────────────────────────────────────────────────────
async def list_reports(
    farmer_id: Optional[str] = None,
    status: Optional[WasteStatus] = None,
    skip: int = 0,
    limit: int = 50,
) -> dict:
    query: dict = {}
    if farmer_id:
        query["farmer_id"] = farmer_id
    if status:
        query["status"] = status.value
    cursor = db.waste_reports.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit)
    reports = await cursor.to_list(length=limit)
    return {"reports": reports, "total": await db.waste_reports.count_documents(query)}


async def report_timeline(report_id: str) -> list:
    await get_report(report_id)
    return await get_timeline(report_id)


async def report_stats() -> dict:
    """Agrégats du dashboard admin, dérivés à la volée."""
    by_status = {s.value: 0 for s in WasteStatus}
    total_kg = 0.0
    collected_kg = 0.0
    farmers = set()
    async for report in db.waste_reports.find({}, {"_id": 0, "status": 1, "quantity_kg": 1, "farmer_id": 1}):
        by_status[report["status"]] = by_status.get(report["status"], 0) + 1
        total_kg += report["quantity_kg"]
        if report["status"] in (WasteStatus.COLLECTED.value, WasteStatus.PROCESSED.value):
            collected_kg += report["quantity_kg"]
        farmers.add(report["farmer_id"])

    paid_total = 0.0
    async for payment in db.payments.find(
        {"status": PaymentStatus.COMPLETED.value, "payment_type": PaymentType.WASTE_PURCHASE.value},
        {"_id": 0, "amount": 1},
    ):
        paid_total += payment["amount"]

    return {
        "total_reports":   sum(by_status.values()),
        "by_status":       by_status,
        "pending_reports": by_status[WasteStatus.REPORTED.value] + by_status[WasteStatus.SCHEDULED.value],
        "total_kg":        round(total_kg, 2),
        "collected_kg":    round(collected_kg, 2),
        "revenue_kes":     round(collected_kg * settings.WASTE_RATE_KES_PER_KG, 2),
        "farmer_count":    len(farmers),
        "paid_out_kes":    round(paid_total, 2),
    }
