"""
Service notification : une ligne `notifications` par destinataire et par événement,
puis push FCM / SMS Twilio en best-effort.
"""
import logging
import os
from typing import Iterable, Optional

import firebase_admin
from firebase_admin import credentials, messaging

from config import settings
from core.realtime import hub
from core.utils import new_id, utcnow
from database import db

logger = logging.getLogger(__name__)

_firebase_ready = False


def _init_firebase() -> bool:
    """Initialise Firebase Admin une seule fois, uniquement si un compte de service est fourni."""
    global _firebase_ready
    if _firebase_ready:
        return True
    cred_path = settings.FIREBASE_CREDENTIALS
    if not cred_path or not os.path.exists(cred_path):
        return False
    try:
        if not firebase_admin._apps:
            firebase_admin.initialize_app(credentials.Certificate(cred_path))
        _firebase_ready = True
    except Exception as e:
        logger.error(f"Erreur initialisation Firebase Admin: {e}")
    return _firebase_ready


async def notify(
    recipient_id: str,
    type: str,
    title: str,
    message: str,
    related_entity_id: Optional[str] = None,
    sms_phone: Optional[str] = None,
) -> dict:
    """Insère UNE notification (système de référence "qui a été prévenu de quoi")."""
    now = utcnow()
    notif = {
        "notification_id":   new_id("ntf"),
        "recipient_id":      recipient_id,
        "type":              type,
        "title":             title,
        "message":           message,
        "is_read":           False,
        "related_entity_id": related_entity_id,
        "created_at":        now,
        "read_at":           None,
    }
    await db.notifications.insert_one(notif)
    notif = {k: v for k, v in notif.items() if k != "_id"}
    logger.info(f"Notification {type} → {recipient_id} ({related_entity_id})")

    await hub.publish("notifications", "insert", new=notif)
    await _send_push(recipient_id, title, message, type, related_entity_id)
    if sms_phone:
        await _send_sms(sms_phone, message)
    return notif


async def notify_many(
    recipient_ids: Iterable[str],
    type: str,
    title: str,
    message: str,
    related_entity_id: Optional[str] = None,
) -> list[dict]:
    """Fan-out : une ligne par destinataire distinct, jamais une ligne partagée."""
    sent = []
    seen = set()
    for recipient_id in recipient_ids:
        if not recipient_id or recipient_id in seen:
            continue
        seen.add(recipient_id)
        sent.append(await notify(recipient_id, type, title, message, related_entity_id))
    return sent


async def list_notifications(
    recipient_id: str,
    unread_only: bool = False,
    skip: int = 0,
    limit: int = 50,
) -> dict:
    query: dict = {"recipient_id": recipient_id}
    if unread_only:
        query["is_read"] = False
    cursor = db.notifications.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit)
    items = await cursor.to_list(length=limit)
    unread = await db.notifications.count_documents({"recipient_id": recipient_id, "is_read": False})
    return {"notifications": items, "unread_count": unread}


async def mark_read(notification_id: str, recipient_id: str) -> bool:
    """Seul le destinataire peut marquer sa notification comme lue."""
    old = await db.notifications.find_one(
        {"notification_id": notification_id, "recipient_id": recipient_id}, {"_id": 0}
    )
    if not old:
        return False
    if old["is_read"]:
        return True
    now = utcnow()
    await db.notifications.update_one(
        {"notification_id": notification_id, "recipient_id": recipient_id},
        {"$set": {"is_read": True, "read_at": now}},
    )
    await hub.publish("notifications", "update", old=old, new={**old, "is_read": True, "read_at": now})
    return True


async def mark_all_read(recipient_id: str) -> int:
    """
    Update filtré recipient_id = X AND is_read = false.
    Idempotent : un second appel ne touche aucune ligne.
    """
    result = await db.notifications.update_many(
        {"recipient_id": recipient_id, "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow()}},
    )
    if result.modified_count:
        logger.info(f"{result.modified_count} notification(s) lue(s) pour {recipient_id}")
    return result.modified_count


async def delete_notification(notification_id: str, recipient_id: str) -> bool:
    old = await db.notifications.find_one(
        {"notification_id": notification_id, "recipient_id": recipient_id}, {"_id": 0}
    )
    if not old:
        return False
    await db.notifications.delete_one({"notification_id": notification_id})
    await hub.publish("notifications", "delete", old=old)
    return True


async def _send_push(
    recipient_id: str,
    title: str,
    body: str,
    type: str,
    related_entity_id: Optional[str],
) -> None:
    """Push FCM si le profil a enregistré un token (best-effort)."""
    profile = await db.profiles.find_one({"user_id": recipient_id}, {"fcm_token": 1})
    fcm_token = profile.get("fcm_token") if profile else None
    if not fcm_token or not _init_firebase():
        return
    try:
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={"type": type, "related_entity_id": related_entity_id or ""},
            token=fcm_token,
        )
        messaging.send(message)
        logger.info(f"Push FCM envoyé à {recipient_id}")
    except Exception as e:
        logger.warning(f"Échec envoi Push FCM à {recipient_id}: {e}")


async def _send_sms(phone: str, body: str) -> None:
    """Envoi SMS via Twilio (best-effort, ne lève pas d'exception)."""
    try:
        if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_SMS_NUMBER:
            return
        from twilio.rest import Client
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        client.messages.create(body=body, from_=settings.TWILIO_SMS_NUMBER, to=f"+{phone.lstrip('+')}")
    except Exception as e:
        logger.warning(f"SMS non envoyé à {phone} : {e}")
