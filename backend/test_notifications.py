from core.realtime import hub
from database import db
from services import notification_service


async def test_notify_inserts_unread_row_and_publishes():
    events = []

    async def on_event(event):
        events.append(event)

    hub.subscribe("notifications", on_event, {"recipient_id": "usr_a"})
    notif = await notification_service.notify(
        "usr_a", "approval", "Waste Report Approved", "Scheduled", related_entity_id="rpt_1",
    )

    assert notif["is_read"] is False
    assert notif["related_entity_id"] == "rpt_1"
    assert await db.notifications.count_documents({"recipient_id": "usr_a"}) == 1
    assert events[0]["new"]["notification_id"] == notif["notification_id"]


async def test_notify_many_fans_out_one_row_per_distinct_recipient():
    sent = await notification_service.notify_many(
        ["usr_a", "usr_b", "usr_a", None], "delivery_success", "Delivered", "Done",
    )
    assert len(sent) == 2
    assert await db.notifications.count_documents({}) == 2


async def test_mark_all_read_is_idempotent():
    for i in range(3):
        await notification_service.notify("usr_a", "order_status", f"t{i}", "m")
    await notification_service.notify("usr_b", "order_status", "other", "m")

    assert await notification_service.mark_all_read("usr_a") == 3
    assert await notification_service.mark_all_read("usr_a") == 0

    # Les notifications d'un autre destinataire ne bougent pas
    assert await db.notifications.count_documents({"recipient_id": "usr_b", "is_read": False}) == 1


async def test_mark_read_only_for_recipient():
    notif = await notification_service.notify("usr_a", "approval", "t", "m")

    assert await notification_service.mark_read(notif["notification_id"], "usr_b") is False
    assert await notification_service.mark_read(notif["notification_id"], "usr_a") is True

    listing = await notification_service.list_notifications("usr_a")
    assert listing["unread_count"] == 0
    assert listing["notifications"][0]["is_read"] is True


async def test_list_unread_only_and_delete():
    first = await notification_service.notify("usr_a", "approval", "first", "m")
    await notification_service.notify("usr_a", "approval", "second", "m")
    await notification_service.mark_read(first["notification_id"], "usr_a")

    unread = await notification_service.list_notifications("usr_a", unread_only=True)
    assert [n["title"] for n in unread["notifications"]] == ["second"]

    assert await notification_service.delete_notification(first["notification_id"], "usr_a") is True
    assert await notification_service.delete_notification(first["notification_id"], "usr_a") is False
