"""
Service paiement : réconciliation des Payments locaux avec M-Pesa.

Invariants :
  - le Payment est créé en `pending` AVANT tout appel passerelle ;
  - il n'est soumis qu'une fois (claim conditionnel sur gateway_submitted) ;
  - seul un Payment `pending` peut devenir completed / failed / expired ici
    (un résultat passerelle tardif peut encore trancher un Payment `expired`) ;
  - un seul Payment actif (pending / completed) par commande et par signalement :
    lock_key + index unique sparse.
    Les corrections manuelles passent par override_status.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional

import httpx
from pymongo.errors import DuplicateKeyError

from config import settings
from core.exceptions import (
    DuplicateSubmissionError,
    GatewayInitiationError,
    ValidationError,
)
from core.realtime import hub
from core.utils import new_id, normalize_phone, utcnow
from database import db
from models.common import (
    NotificationType,
    OrderStatus,
    PaymentChannel,
    PaymentStatus,
    PaymentType,
    UserRole,
)
from services import mpesa_service
from services.event_service import record_event
from services.notification_service import notify, notify_many

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "CC-"
# Statuts qui libèrent le verrou "un seul Payment actif"
RELEASED_STATUSES = {PaymentStatus.FAILED, PaymentStatus.EXPIRED}


def _kes(amount: float) -> str:
    return f"KES {amount:,.0f}"


def _validate_amount(amount: float) -> float:
    if amount is None or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return float(amount)


def prepare_payout(phone: Optional[str], amount: float) -> str:
    """
    Contrôles préalables d'un payout B2C, sans rien écrire.
    Retourne le téléphone normalisé ; lève ValidationError / GatewayConfigurationError.
    """
    _validate_amount(amount)
    normalized = normalize_phone(phone)
    if not settings.MPESA_TEST_MODE:
        mpesa_service.ensure_b2c_configured()
    return normalized


def _paid_amount(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _lock_key(channel: PaymentChannel, order_id: Optional[str], waste_report_id: Optional[str]) -> Optional[str]:
    if waste_report_id:
        return f"payout:{waste_report_id}"
    if order_id and channel == PaymentChannel.STK:
        return f"charge:{order_id}"
    return None


def payout_outcome_unknown(payment: dict) -> bool:
    """Expiré après soumission, sans réponse de M-Pesa : les fonds ont pu partir."""
    return payment["status"] == PaymentStatus.EXPIRED.value and bool(payment.get("gateway_submitted"))


async def _admin_ids() -> list[str]:
    cursor = db.profiles.find({"role": UserRole.ADMIN.value}, {"_id": 0, "user_id": 1})
    return [p["user_id"] async for p in cursor]


async def _insert_payment(
    amount: float,
    payment_type: PaymentType,
    channel: PaymentChannel,
    phone: Optional[str],
    farmer_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    order_id: Optional[str] = None,
    waste_report_id: Optional[str] = None,
) -> dict:
    now = utcnow()
    payment_id = new_id("pay")
    payment = {
        "payment_id":           payment_id,
        "farmer_id":            farmer_id,
        "customer_id":          customer_id,
        "order_id":             order_id,
        "waste_report_id":      waste_report_id,
        "amount":               amount,
        "payment_type":         payment_type.value,
        "channel":              channel.value,
        "phone_number":         phone,
        "account_reference":    f"{REFERENCE_PREFIX}{payment_id}",
        "status":               PaymentStatus.PENDING.value,
        "gateway_submitted":    False,
        "checkout_request_id":  None,
        "conversation_id":      None,
        "mpesa_transaction_id": None,
        "sandbox_mode":         False,
        "failure_reason":       None,
        "completed_at":         None,
        "created_at":           now,
        "updated_at":           now,
    }
    # Absent (et non None) hors verrou : l'index sparse ignore la ligne
    lock_key = _lock_key(channel, order_id, waste_report_id)
    if lock_key:
        payment["lock_key"] = lock_key
    try:
        await db.payments.insert_one(payment)
    except DuplicateKeyError:
        active = await db.payments.find_one({"lock_key": lock_key}, {"_id": 0, "payment_id": 1}) or {}
        logger.warning(f"Payment concurrent refusé pour {lock_key}")
        raise DuplicateSubmissionError(active.get("payment_id", lock_key))
    payment = {k: v for k, v in payment.items() if k != "_id"}

    if waste_report_id:
        await db.waste_reports.update_one(
            {"report_id": waste_report_id},
            {"$set": {"payment_id": payment_id, "updated_at": now}},
        )

    await record_event(
        entity_type="payment",
        entity_id=payment_id,
        event_type="PAYMENT_CREATED",
        to_status=PaymentStatus.PENDING.value,
        metadata={"amount": amount, "channel": channel.value},
    )
    await hub.publish("payments", "insert", new=payment)
    return payment


async def _claim_submission(payment_id: str) -> None:
    """Marque le Payment comme soumis ; un second appel échoue."""
    result = await db.payments.update_one(
        {
            "payment_id":        payment_id,
            "status":            PaymentStatus.PENDING.value,
            "gateway_submitted": False,
        },
        {"$set": {"gateway_submitted": True, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        raise DuplicateSubmissionError(payment_id)


async def _finalize(
    payment: dict,
    new_status: PaymentStatus,
    updates: Optional[dict] = None,
    event_type: str = "PAYMENT_STATUS_CHANGED",
    notes: Optional[str] = None,
    metadata: Optional[dict] = None,
    from_status: PaymentStatus = PaymentStatus.PENDING,
) -> Optional[dict]:
    """
    from_status (pending par défaut) → état terminal, par update conditionnel.
    Retourne None si le Payment n'était plus dans from_status (callback en double, sweep...).
    """
    now = utcnow()
    fields = {"status": new_status.value, "updated_at": now, **(updates or {})}
    if new_status == PaymentStatus.COMPLETED:
        fields["completed_at"] = now
    change = {"$set": fields}
    if new_status in RELEASED_STATUSES:
        change["$unset"] = {"lock_key": ""}

    result = await db.payments.update_one(
        {"payment_id": payment["payment_id"], "status": from_status.value},
        change,
    )
    if result.modified_count == 0:
        logger.warning(
            f"Payment {payment['payment_id']} n'est plus {from_status.value}, "
            f"passage {new_status.value} ignoré"
        )
        return None

    updated = await db.payments.find_one({"payment_id": payment["payment_id"]}, {"_id": 0})
    await record_event(
        entity_type="payment",
        entity_id=payment["payment_id"],
        event_type=event_type,
        from_status=from_status.value,
        to_status=new_status.value,
        actor_role="system",
        notes=notes,
        metadata=metadata or {},
    )
    await hub.publish("payments", "update", old=payment, new=updated)
    logger.info(f"Payment {payment['payment_id']} → {new_status.value}")

    if new_status == PaymentStatus.COMPLETED:
        await _on_completed(updated)
    return updated


async def _on_completed(payment: dict) -> None:
    if payment.get("order_id") and payment.get("channel") != PaymentChannel.B2C.value:
        await db.orders.update_one(
            {"order_id": payment["order_id"]},
            {"$set": {"payment_status": "paid", "updated_at": utcnow()}},
        )

    recipient_id = payment.get("farmer_id") or payment.get("customer_id")
    if not recipient_id:
        return
    if payment["channel"] == PaymentChannel.B2C.value:
        reason = "your waste collection" if payment.get("waste_report_id") else payment["payment_type"].replace("_", " ")
        message = f"You have received {_kes(payment['amount'])} via M-Pesa for {reason}."
    else:
        message = f"Your payment of {_kes(payment['amount'])} has been received. Thank you!"
    await notify(
        recipient_id,
        NotificationType.PAYMENT_RECEIVED.value,
        "Payment Received",
        message,
        related_entity_id=payment.get("waste_report_id") or payment.get("order_id") or payment["payment_id"],
    )


async def _mark_failed(payment: dict, reason: str, response: Optional[dict] = None) -> None:
    await _finalize(
        payment,
        PaymentStatus.FAILED,
        updates={"failure_reason": reason},
        event_type="GATEWAY_REJECTED",
        notes=reason,
        metadata={"response": response or {}},
    )


# ── A. STK push (client → entreprise) ────────────────────────────────────────
async def initiate_charge(order_id: str, phone: str, payer_id: str) -> dict:
    """
    Demande au client de payer sa commande depuis son téléphone.
    Le Payment reste `pending` jusqu'au callback Daraja.
    """
    normalized = normalize_phone(phone)

    order = await db.orders.find_one({"order_id": order_id}, {"_id": 0})
    if not order:
        raise ValidationError("Order not found")
    if order["status"] == OrderStatus.CANCELLED.value:
        raise ValidationError("Cannot pay for a cancelled order")
    if order.get("payment_status") == "paid":
        raise ValidationError("Order is already paid")
    amount = _validate_amount(order["total_amount"])

    mpesa_service.ensure_stk_configured()

    existing = await db.payments.find_one(
        {
            "order_id": order_id,
            "channel":  PaymentChannel.STK.value,
            "status":   PaymentStatus.PENDING.value,
        },
        {"_id": 0},
    )
    if existing:
        raise DuplicateSubmissionError(existing["payment_id"])

    customer = await db.customers.find_one({"customer_id": order["customer_id"]}, {"_id": 0}) or {}
    payment = await _insert_payment(
        amount=amount,
        payment_type=PaymentType.MANURE_SALE,
        channel=PaymentChannel.STK,
        phone=normalized,
        farmer_id=customer.get("profile_id") if customer.get("is_farmer") else None,
        customer_id=order["customer_id"],
        order_id=order_id,
    )
    await _claim_submission(payment["payment_id"])

    try:
        response = await mpesa_service.stk_push(
            normalized,
            amount,
            account_reference=payment["account_reference"],
            description="Manure Purchase",
        )
    except httpx.TimeoutException:
        logger.warning(f"Timeout STK pour {payment['payment_id']}, en attente du callback ou de l'expiration")
        await record_event("payment", payment["payment_id"], "GATEWAY_TIMEOUT", actor_id=payer_id)
        return {
            "success":    True,
            "payment_id": payment["payment_id"],
            "status":     PaymentStatus.PENDING.value,
            "message":    "M-Pesa is slow to respond. Check your phone; the payment will update automatically.",
        }

    if not mpesa_service.is_success(response):
        reason = mpesa_service.error_message(response)
        await _mark_failed(payment, reason, response)
        raise GatewayInitiationError(reason, payment["payment_id"])

    checkout_id = response.get("CheckoutRequestID")
    await db.payments.update_one(
        {"payment_id": payment["payment_id"]},
        {"$set": {
            "checkout_request_id": checkout_id,
            "updated_at":          utcnow(),
        }},
    )
    await record_event(
        "payment", payment["payment_id"], "STK_PUSH_SENT",
        actor_id=payer_id, metadata={"checkout_request_id": checkout_id},
    )
    return {
        "success":             True,
        "payment_id":          payment["payment_id"],
        "checkout_request_id": checkout_id,
        "status":              PaymentStatus.PENDING.value,
        "message":             "Payment initiated. Please complete it on your phone.",
    }


# ── B. Payout B2C (entreprise → fermier) ─────────────────────────────────────
async def initiate_payout(
    farmer_id: str,
    amount: float,
    payment_type: PaymentType,
    phone: Optional[str] = None,
    waste_report_id: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> dict:
    """
    Paie un fermier. Réponse synchrone : ResponseCode "0" → completed.
    En MPESA_TEST_MODE, aucun appel réseau : identifiant synthétique + sandbox_mode.
    """
    if phone is None:
        profile = await db.profiles.find_one({"user_id": farmer_id}, {"_id": 0, "phone_number": 1})
        phone = (profile or {}).get("phone_number")
    normalized = prepare_payout(phone, amount)

    if waste_report_id:
        existing = await db.payments.find_one(
            {
                "waste_report_id": waste_report_id,
                "status": {"$in": [PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value]},
            },
            {"_id": 0},
        )
        if existing:
            raise DuplicateSubmissionError(existing["payment_id"])

    payment = await _insert_payment(
        amount=float(amount),
        payment_type=payment_type,
        channel=PaymentChannel.B2C,
        phone=normalized,
        farmer_id=farmer_id,
        waste_report_id=waste_report_id,
    )
    await _claim_submission(payment["payment_id"])

    if settings.MPESA_TEST_MODE:
        fake_id = f"SIM{uuid.uuid4().hex[:10].upper()}"
        logger.warning(f"MPESA_TEST_MODE : payout {payment['payment_id']} simulé ({fake_id})")
        return await _finalize(
            payment,
            PaymentStatus.COMPLETED,
            updates={"mpesa_transaction_id": fake_id, "sandbox_mode": True},
            event_type="B2C_SIMULATED",
            metadata={"actor_id": actor_id},
        )

    try:
        response = await mpesa_service.b2c_payout(
            normalized,
            amount,
            reference=payment["account_reference"],
        )
    except httpx.TimeoutException:
        # Le résultat tardif reste corrélable par OriginatorConversationID = account_reference
        logger.warning(f"Timeout B2C pour {payment['payment_id']}, en attente du résultat ou de l'expiration")
        await record_event("payment", payment["payment_id"], "GATEWAY_TIMEOUT", actor_id=actor_id)
        return await db.payments.find_one({"payment_id": payment["payment_id"]}, {"_id": 0})

    if not mpesa_service.is_success(response):
        reason = mpesa_service.error_message(response, "Payout initiation failed")
        await _mark_failed(payment, reason, response)
        raise GatewayInitiationError(reason, payment["payment_id"])

    conversation_id = response.get("ConversationID")
    return await _finalize(
        payment,
        PaymentStatus.COMPLETED,
        updates={
            "conversation_id":      conversation_id,
            "mpesa_transaction_id": conversation_id,
        },
        event_type="B2C_ACCEPTED",
        metadata={"actor_id": actor_id, "response": response},
    )


# ── Callbacks asynchrones ─────────────────────────────────────────────────────
def _callback_items(callback: dict) -> dict:
    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    return {item.get("Name"): item.get("Value") for item in items}


async def handle_stk_callback(body: dict) -> Optional[dict]:
    """
    Callback Daraja STK : ResultCode 0 → completed (+ reçu), sinon failed.
    Corrélation par CheckoutRequestID.
    """
    callback = (body.get("Body") or {}).get("stkCallback")
    if not callback:
        logger.warning(f"Callback STK sans stkCallback : {body}")
        return None

    checkout_id = callback.get("CheckoutRequestID")
    payment = await db.payments.find_one({"checkout_request_id": checkout_id}, {"_id": 0})
    if not payment:
        logger.warning(f"Aucun Payment pour CheckoutRequestID={checkout_id}")
        return None

    result_code = str(callback.get("ResultCode"))
    if result_code == mpesa_service.SUCCESS_CODE:
        meta = _callback_items(callback)
        return await _finalize(
            payment,
            PaymentStatus.COMPLETED,
            updates={"mpesa_transaction_id": meta.get("MpesaReceiptNumber")},
            event_type="STK_CALLBACK_SUCCESS",
            metadata=meta,
        )

    reason = callback.get("ResultDesc") or f"M-Pesa result code {result_code}"
    updated = await _finalize(
        payment,
        PaymentStatus.FAILED,
        updates={"failure_reason": reason},
        event_type="STK_CALLBACK_FAILED",
        notes=reason,
    )
    if updated:
        recipient_id = payment.get("farmer_id") or payment.get("customer_id")
        if recipient_id:
            await notify(
                recipient_id,
                NotificationType.PAYMENT_FAILED.value,
                "Payment Failed",
                f"Your M-Pesa payment of {_kes(payment['amount'])} did not go through: {reason}",
                related_entity_id=payment.get("order_id") or payment["payment_id"],
            )
    return updated


async def _find_b2c_payment(result: dict) -> Optional[dict]:
    """ConversationID si l'ack synchrone a été reçu, sinon notre OriginatorConversationID."""
    conversation_id = result.get("ConversationID")
    payment = None
    if conversation_id:
        payment = await db.payments.find_one({"conversation_id": conversation_id}, {"_id": 0})
    if not payment and result.get("OriginatorConversationID"):
        payment = await db.payments.find_one(
            {
                "account_reference": result["OriginatorConversationID"],
                "channel":           PaymentChannel.B2C.value,
            },
            {"_id": 0},
        )
    return payment


async def handle_b2c_result(body: dict) -> Optional[dict]:
    """
    Résultat B2C asynchrone.
    - Payment pending (timeout à l'initiation) ou expired (sweep passé avant le
      résultat) : le résultat tranche.
    - Payment déjà completed (ack synchrone) : on enregistre le vrai reçu, ou on
      signale l'écart pour l'admin.
    """
    result = body.get("Result") or {}
    conversation_id = result.get("ConversationID")
    payment = await _find_b2c_payment(result)
    if not payment:
        logger.warning(
            f"Aucun Payment pour ConversationID={conversation_id} "
            f"OriginatorConversationID={result.get('OriginatorConversationID')}"
        )
        return None

    result_code = str(result.get("ResultCode"))
    if payment["status"] in (PaymentStatus.PENDING.value, PaymentStatus.EXPIRED.value):
        from_status = PaymentStatus(payment["status"])
        if from_status == PaymentStatus.EXPIRED:
            logger.warning(f"Résultat B2C tardif pour {payment['payment_id']} (expiré)")
        updates = {"conversation_id": payment.get("conversation_id") or conversation_id}
        if result_code == mpesa_service.SUCCESS_CODE:
            updates["mpesa_transaction_id"] = result.get("TransactionID")
            return await _finalize(
                payment, PaymentStatus.COMPLETED,
                updates=updates,
                event_type="B2C_RESULT_SUCCESS",
                from_status=from_status,
            )
        updates["failure_reason"] = result.get("ResultDesc")
        return await _finalize(
            payment, PaymentStatus.FAILED,
            updates=updates,
            event_type="B2C_RESULT_FAILED",
            notes=result.get("ResultDesc"),
            from_status=from_status,
        )

    if result_code == mpesa_service.SUCCESS_CODE:
        await db.payments.update_one(
            {"payment_id": payment["payment_id"]},
            {"$set": {"mpesa_transaction_id": result.get("TransactionID"), "updated_at": utcnow()}},
        )
        await record_event(
            "payment", payment["payment_id"], "B2C_RESULT_SUCCESS",
            actor_role="system", metadata={"transaction_id": result.get("TransactionID")},
        )
    else:
        logger.error(
            f"Résultat B2C en échec pour un Payment {payment['status']} "
            f"({payment['payment_id']}) : {result.get('ResultDesc')}"
        )
        await record_event(
            "payment", payment["payment_id"], "B2C_RESULT_MISMATCH",
            actor_role="system", notes=result.get("ResultDesc"),
            metadata={"result_code": result_code},
        )
    return await db.payments.find_one({"payment_id": payment["payment_id"]}, {"_id": 0})


async def handle_b2c_timeout(body: dict) -> None:
    result = body.get("Result") or {}
    payment = await _find_b2c_payment(result)
    if payment:
        await record_event(
            "payment", payment["payment_id"], "B2C_QUEUE_TIMEOUT",
            actor_role="system", notes=result.get("ResultDesc"),
        )
    logger.warning(f"Timeout file B2C : {result.get('ConversationID')}")


# ── C2B (paybill) ─────────────────────────────────────────────────────────────
async def _flag_c2b(payment: Optional[dict], event_type: str, body: dict, reason: str) -> None:
    """Fonds reçus sans Payment à solder : audit + alerte admin, jamais de solde automatique."""
    reference = (body.get("BillRefNumber") or "").strip()
    entity_id = payment["payment_id"] if payment else (body.get("TransID") or reference)
    logger.error(f"C2B {body.get('TransID')} ref={reference!r} non soldé : {reason}")
    await record_event(
        "payment", entity_id, event_type,
        actor_role="system",
        notes=reason,
        metadata={
            "trans_id":    body.get("TransID"),
            "amount":      body.get("TransAmount"),
            "msisdn":      body.get("MSISDN"),
            "reference":   reference,
        },
    )
    await notify_many(
        await _admin_ids(),
        NotificationType.PAYMENT_REVIEW.value,
        "Paybill Payment Needs Review",
        f"M-Pesa transaction {body.get('TransID')} ({reference or 'no reference'}): {reason}",
        related_entity_id=entity_id,
    )


async def handle_c2b_confirmation(body: dict) -> Optional[dict]:
    """
    Paiement paybill manuel : BillRefNumber = account_reference du Payment.
    Solde uniquement un Payment pending, pour un montant au moins égal au dû.
    """
    reference = (body.get("BillRefNumber") or "").strip()
    payment = await db.payments.find_one({"account_reference": reference}, {"_id": 0})
    if not payment:
        await _flag_c2b(None, "C2B_UNMATCHED", body, "No payment matches this account reference")
        return None
    if payment["status"] != PaymentStatus.PENDING.value:
        await _flag_c2b(payment, "C2B_UNMATCHED", body, f"Payment is already {payment['status']}")
        return None

    paid = _paid_amount(body.get("TransAmount"))
    if paid < payment["amount"]:
        await _flag_c2b(
            payment, "C2B_AMOUNT_MISMATCH", body,
            f"Received {_kes(paid)} for {_kes(payment['amount'])} due",
        )
        return None

    return await _finalize(
        payment,
        PaymentStatus.COMPLETED,
        updates={"mpesa_transaction_id": body.get("TransID")},
        event_type="C2B_CONFIRMED",
        metadata={"msisdn": body.get("MSISDN"), "amount": body.get("TransAmount")},
    )


async def handle_c2b_validation(body: dict) -> dict:
    """
    Daraja demande l'acceptation d'un paiement paybill avant de le passer.
    Accepté seulement pour un Payment pending et un montant suffisant.
    """
    reference = (body.get("BillRefNumber") or "").strip()
    payment = None
    if reference.startswith(REFERENCE_PREFIX):
        payment = await db.payments.find_one(
            {"account_reference": reference, "status": PaymentStatus.PENDING.value},
            {"_id": 0},
        )
    if not payment:
        logger.warning(f"Validation C2B refusée, référence inconnue ou close : ref={reference!r}")
        return {"ResultCode": "C2B00012", "ResultDesc": "Rejected"}
    if _paid_amount(body.get("TransAmount")) < payment["amount"]:
        logger.warning(f"Validation C2B refusée, montant insuffisant : ref={reference!r}")
        return {"ResultCode": "C2B00013", "ResultDesc": "Rejected"}
    return {"ResultCode": "0", "ResultDesc": "Accepted"}


# ── Correction admin ──────────────────────────────────────────────────────────
async def override_status(
    payment_id: str,
    new_status: PaymentStatus,
    actor_id: str,
    actor_role: str,
    reason: str,
) -> dict:
    """
    Forçage manuel du statut (ex. fonds reçus mais callback perdu).
    Chemin distinct de la réconciliation : autorisé depuis un état terminal,
    toujours audité avec l'auteur et le motif.
    """
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to override a payment status")

    payment = await db.payments.find_one({"payment_id": payment_id}, {"_id": 0})
    if not payment:
        raise ValidationError("Payment not found")
    if payment["status"] == new_status.value:
        return payment

    now = utcnow()
    fields = {"status": new_status.value, "updated_at": now}
    if new_status == PaymentStatus.COMPLETED:
        fields["completed_at"] = now
    change = {"$set": fields}
    if new_status in RELEASED_STATUSES:
        change["$unset"] = {"lock_key": ""}
    result = await db.payments.update_one(
        {"payment_id": payment_id, "status": payment["status"]},
        change,
    )
    if result.modified_count == 0:
        raise DuplicateSubmissionError(payment_id)

    updated = await db.payments.find_one({"payment_id": payment_id}, {"_id": 0})
    await record_event(
        entity_type="payment",
        entity_id=payment_id,
        event_type="ADMIN_OVERRIDE",
        from_status=payment["status"],
        to_status=new_status.value,
        actor_id=actor_id,
        actor_role=actor_role,
        notes=reason.strip(),
    )
    await hub.publish("payments", "update", old=payment, new=updated)
    logger.warning(
        f"Forçage admin payment {payment_id} : {payment['status']} → {new_status.value} "
        f"par {actor_id} ({reason.strip()})"
    )
    if new_status == PaymentStatus.COMPLETED:
        await _on_completed(updated)
    return updated


# ── Expiration ────────────────────────────────────────────────────────────────
async def expire_stale_payments(now=None) -> int:
    """Les Payments pending sans réponse depuis PAYMENT_EXPIRY_MINUTES passent à `expired`."""
    cutoff = (now or utcnow()) - timedelta(minutes=settings.PAYMENT_EXPIRY_MINUTES)
    cursor = db.payments.find(
        {"status": PaymentStatus.PENDING.value, "created_at": {"$lt": cutoff}},
        {"_id": 0},
    )
    expired = 0
    async for payment in cursor:
        updated = await _finalize(
            payment,
            PaymentStatus.EXPIRED,
            updates={"failure_reason": "No confirmation received from M-Pesa"},
            event_type="PAYMENT_EXPIRED",
        )
        if updated:
            expired += 1
    if expired:
        logger.info(f"{expired} paiement(s) expiré(s)")
    return expired


# ── Lecture ───────────────────────────────────────────────────────────────────
async def get_payment(payment_id: str) -> Optional[dict]:
    return await db.payments.find_one({"payment_id": payment_id}, {"_id": 0})


async def list_payments(query: dict, skip: int = 0, limit: int = 50) -> dict:
    cursor = db.payments.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit)
    items = await cursor.to_list(length=limit)
    total = await db.payments.count_documents(query)
    return {"payments": items, "total": total}
