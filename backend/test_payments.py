import json
from datetime import timedelta

import pytest

import database
from config import settings
from core.exceptions import (
    DuplicateSubmissionError,
    GatewayConfigurationError,
    GatewayInitiationError,
    ValidationError,
)
from core.utils import utcnow
from database import db
from models.common import PaymentChannel, PaymentStatus, PaymentType
from models.order import OrderCreate
from services import order_service, payment_service
from services.event_service import get_timeline


async def _order(profile, kg=40, price=25):
    customer = await order_service.ensure_customer_for_profile(profile)
    return await order_service.create_order(
        customer["customer_id"], OrderCreate(quantity_kg=kg, price_per_kg=price),
    )


def _stk_callback(checkout_id, code=0, receipt="NLJ7RT61SV"):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": code,
        "ResultDesc": "The service request is processed successfully." if code == 0 else "Request cancelled by user",
    }
    if code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": 1000},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": callback}}


# ── STK push ──────────────────────────────────────────────────────────────────
async def test_charge_stays_pending_until_callback(farmer, mpesa_gateway):
    order = await _order(farmer)
    result = await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])

    payment = await payment_service.get_payment(result["payment_id"])
    assert payment["status"] == "pending"
    assert payment["gateway_submitted"] is True
    assert payment["checkout_request_id"] == "ws_CO_191220191020363925"
    assert payment["account_reference"] == f"CC-{payment['payment_id']}"
    assert payment["amount"] == 1000

    stk = [r for r in mpesa_gateway.requests if r.url.path.endswith("processrequest")][0]
    body = json.loads(stk.content)
    assert body["PhoneNumber"] == "254712345678"
    assert body["Amount"] == 1000
    assert body["AccountReference"] == payment["account_reference"]
    assert stk.headers["Authorization"] == "Bearer token"


async def test_successful_callback_completes_and_marks_order_paid(farmer, mpesa_gateway):
    order = await _order(farmer)
    result = await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])

    done = await payment_service.handle_stk_callback(_stk_callback("ws_CO_191220191020363925"))
    assert done["status"] == "completed"
    assert done["mpesa_transaction_id"] == "NLJ7RT61SV"
    assert done["completed_at"] is not None

    paid = await order_service.get_order(order["order_id"])
    assert paid["payment_status"] == "paid"
    received = await db.notifications.find_one({"recipient_id": farmer["user_id"], "type": "payment_received"})
    assert "1,000" in received["message"]

    # Callback rejoué : aucun nouvel effet
    assert await payment_service.handle_stk_callback(_stk_callback("ws_CO_191220191020363925")) is None
    assert await db.notifications.count_documents({"type": "payment_received"}) == 1
    timeline = await get_timeline(result["payment_id"])
    assert [e["event_type"] for e in timeline].count("STK_CALLBACK_SUCCESS") == 1


async def test_cancelled_callback_fails_payment(farmer, mpesa_gateway):
    order = await _order(farmer)
    await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])

    failed = await payment_service.handle_stk_callback(_stk_callback("ws_CO_191220191020363925", code=1032))
    assert failed["status"] == "failed"
    assert failed["mpesa_transaction_id"] is None
    assert failed["failure_reason"] == "Request cancelled by user"
    assert (await order_service.get_order(order["order_id"]))["payment_status"] == "unpaid"
    assert await db.notifications.count_documents({"type": "payment_failed"}) == 1


async def test_rejected_stk_marks_failed_without_transaction_id(farmer, mpesa_gateway):
    mpesa_gateway.responses["/mpesa/stkpush/v1/processrequest"] = {
        "requestId": "6457-1530785-1",
        "errorCode": "400.002.02",
        "errorMessage": "Bad Request - Invalid PhoneNumber",
    }
    order = await _order(farmer)

    with pytest.raises(GatewayInitiationError) as exc:
        await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])

    payment = await payment_service.get_payment(exc.value.payment_id)
    assert payment["status"] == "failed"
    assert payment["mpesa_transaction_id"] is None
    assert "Invalid PhoneNumber" in payment["failure_reason"]


async def test_second_charge_for_same_order_is_refused(farmer, mpesa_gateway):
    order = await _order(farmer)
    await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])

    with pytest.raises(DuplicateSubmissionError):
        await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])
    assert await db.payments.count_documents({}) == 1


async def test_timeout_leaves_payment_pending(farmer, mpesa_gateway):
    mpesa_gateway.raise_timeout = True
    order = await _order(farmer)

    result = await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])
    assert result["status"] == "pending"
    payment = await payment_service.get_payment(result["payment_id"])
    assert payment["status"] == "pending"
    assert payment["checkout_request_id"] is None


async def test_invalid_phone_is_rejected_before_any_row(farmer, mpesa_gateway):
    order = await _order(farmer)
    with pytest.raises(ValidationError):
        await payment_service.initiate_charge(order["order_id"], "12345", farmer["user_id"])
    assert await db.payments.count_documents({}) == 0
    assert mpesa_gateway.requests == []


async def test_missing_stk_config_raises_before_any_row(farmer, monkeypatch):
    monkeypatch.setattr(settings, "MPESA_PASSKEY", None)
    order = await _order(farmer)
    with pytest.raises(GatewayConfigurationError) as exc:
        await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])
    assert "MPESA_PASSKEY" in exc.value.missing
    assert await db.payments.count_documents({}) == 0


# ── B2C ───────────────────────────────────────────────────────────────────────
async def test_test_mode_payout_is_simulated(farmer, monkeypatch):
    monkeypatch.setattr(settings, "MPESA_TEST_MODE", True)
    payment = await payment_service.initiate_payout(farmer["user_id"], 300, PaymentType.BONUS)

    assert payment["status"] == "completed"
    assert payment["sandbox_mode"] is True
    assert payment["mpesa_transaction_id"].startswith("SIM")
    assert payment["phone_number"] == "254712345678"


async def test_payout_without_phone_is_rejected(mpesa_configured):
    with pytest.raises(ValidationError):
        await payment_service.initiate_payout("usr_unknown", 100, PaymentType.BONUS)
    assert await db.payments.count_documents({}) == 0


async def test_payout_amount_must_be_positive(farmer, mpesa_gateway):
    with pytest.raises(ValidationError):
        await payment_service.initiate_payout(farmer["user_id"], 0, PaymentType.BONUS)


async def test_submission_is_claimed_only_once(farmer, mpesa_gateway):
    payment = await payment_service._insert_payment(
        amount=100, payment_type=PaymentType.BONUS, channel=PaymentChannel.B2C,
        phone="254712345678", farmer_id=farmer["user_id"],
    )
    await payment_service._claim_submission(payment["payment_id"])
    with pytest.raises(DuplicateSubmissionError):
        await payment_service._claim_submission(payment["payment_id"])


async def test_b2c_result_records_receipt(farmer, mpesa_gateway):
    payment = await payment_service.initiate_payout(farmer["user_id"], 450, PaymentType.WASTE_PURCHASE)
    updated = await payment_service.handle_b2c_result({"Result": {
        "ResultType": 0,
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "OriginatorConversationID": "16740-34861180-1",
        "ConversationID": payment["conversation_id"],
        "TransactionID": "NLJ41HAY6Q",
    }})
    assert updated["status"] == "completed"
    assert updated["mpesa_transaction_id"] == "NLJ41HAY6Q"


async def test_b2c_failure_after_ack_is_audited(farmer, mpesa_gateway):
    payment = await payment_service.initiate_payout(farmer["user_id"], 450, PaymentType.WASTE_PURCHASE)
    await payment_service.handle_b2c_result({"Result": {
        "ResultCode": 2001,
        "ResultDesc": "The initiator information is invalid.",
        "ConversationID": payment["conversation_id"],
    }})
    events = await get_timeline(payment["payment_id"])
    assert events[-1]["event_type"] == "B2C_RESULT_MISMATCH"



async def test_timed_out_payout_is_settled_by_late_result(farmer, mpesa_gateway):
    mpesa_gateway.raise_timeout = True
    payment = await payment_service.initiate_payout(farmer["user_id"], 450, PaymentType.BONUS)
    assert payment["status"] == "pending"
    assert payment["conversation_id"] is None

    b2c = [r for r in mpesa_gateway.requests if r.url.path.endswith("paymentrequest")][0]
    assert json.loads(b2c.content)["OriginatorConversationID"] == payment["account_reference"]

    later = utcnow() + timedelta(minutes=settings.PAYMENT_EXPIRY_MINUTES + 1)
    assert await payment_service.expire_stale_payments(now=later) == 1

    late = await payment_service.handle_b2c_result({"Result": {
        "ResultType": 0,
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "OriginatorConversationID": payment["account_reference"],
        "ConversationID": "AG_20191219_0000late",
        "TransactionID": "NLJ41HAY7R",
    }})
    assert late["status"] == "completed"
    assert late["conversation_id"] == "AG_20191219_0000late"
    assert late["mpesa_transaction_id"] == "NLJ41HAY7R"
    assert await db.notifications.count_documents({"type": "payment_received"}) == 1

    settled = (await get_timeline(payment["payment_id"]))[-1]
    assert settled["event_type"] == "B2C_RESULT_SUCCESS"
    assert settled["from_status"] == "expired"


# ── C2B, expiration, forçage ──────────────────────────────────────────────────
async def test_c2b_confirmation_matches_account_reference(farmer, mpesa_gateway):
    mpesa_gateway.raise_timeout = True
    order = await _order(farmer)
    result = await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])
    payment = await payment_service.get_payment(result["payment_id"])

    accepted = await payment_service.handle_c2b_validation(
        {"BillRefNumber": payment["account_reference"], "TransAmount": "1000.00"},
    )
    assert accepted["ResultCode"] == "0"
    unknown = await payment_service.handle_c2b_validation({"BillRefNumber": "random", "TransAmount": "1000.00"})
    assert unknown["ResultCode"] == "C2B00012"
    short = await payment_service.handle_c2b_validation(
        {"BillRefNumber": payment["account_reference"], "TransAmount": "999.00"},
    )
    assert short["ResultCode"] == "C2B00013"

    done = await payment_service.handle_c2b_confirmation({
        "TransID": "RKTQDM7W6S",
        "TransAmount": "1000.00",
        "BillRefNumber": payment["account_reference"],
        "MSISDN": "254712345678",
    })
    assert done["status"] == "completed"
    assert done["mpesa_transaction_id"] == "RKTQDM7W6S"


async def _timed_out_charge(farmer, mpesa_gateway):
    mpesa_gateway.raise_timeout = True
    order = await _order(farmer)
    result = await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])
    return order, await payment_service.get_payment(result["payment_id"])


async def test_c2b_underpayment_does_not_settle_order(farmer, admin, mpesa_gateway):
    order, payment = await _timed_out_charge(farmer, mpesa_gateway)

    done = await payment_service.handle_c2b_confirmation({
        "TransID": "RKTQDM7W6T",
        "TransAmount": "1.00",
        "BillRefNumber": payment["account_reference"],
        "MSISDN": "254712345678",
    })
    assert done is None
    assert (await payment_service.get_payment(payment["payment_id"]))["status"] == "pending"
    assert (await order_service.get_order(order["order_id"]))["payment_status"] == "unpaid"

    mismatch = (await get_timeline(payment["payment_id"]))[-1]
    assert mismatch["event_type"] == "C2B_AMOUNT_MISMATCH"
    assert mismatch["metadata"]["trans_id"] == "RKTQDM7W6T"
    review = await db.notifications.find_one({"type": "payment_review"})
    assert review["recipient_id"] == admin["user_id"]
    assert await db.notifications.count_documents({"type": "payment_received"}) == 0


async def test_c2b_for_expired_charge_is_rejected_then_audited(farmer, admin, mpesa_gateway):
    order, payment = await _timed_out_charge(farmer, mpesa_gateway)
    later = utcnow() + timedelta(minutes=settings.PAYMENT_EXPIRY_MINUTES + 1)
    await payment_service.expire_stale_payments(now=later)

    validation = await payment_service.handle_c2b_validation(
        {"BillRefNumber": payment["account_reference"], "TransAmount": "1000.00"},
    )
    assert validation["ResultCode"] == "C2B00012"

    # Confirmation reçue malgré tout (validation externe désactivée sur le shortcode)
    done = await payment_service.handle_c2b_confirmation({
        "TransID": "RKTQDM7W6U",
        "TransAmount": "1000.00",
        "BillRefNumber": payment["account_reference"],
        "MSISDN": "254712345678",
    })
    assert done is None
    assert (await order_service.get_order(order["order_id"]))["payment_status"] == "unpaid"
    assert (await get_timeline(payment["payment_id"]))[-1]["event_type"] == "C2B_UNMATCHED"
    assert await db.notifications.count_documents(
        {"recipient_id": admin["user_id"], "type": "payment_review"}
    ) == 1


async def test_c2b_with_unknown_reference_is_audited(admin):
    assert await payment_service.handle_c2b_confirmation({
        "TransID": "RKTQDM7W6V", "TransAmount": "50.00", "BillRefNumber": "CC-pay_nothing",
    }) is None
    events = await get_timeline("RKTQDM7W6V")
    assert events[0]["event_type"] == "C2B_UNMATCHED"
    assert await db.notifications.count_documents({"type": "payment_review"}) == 1


async def test_only_one_active_payment_per_report(farmer):
    await database.create_indexes()
    fields = dict(
        amount=450, payment_type=PaymentType.WASTE_PURCHASE, channel=PaymentChannel.B2C,
        phone="254712345678", farmer_id=farmer["user_id"], waste_report_id="rpt_same",
    )
    first = await payment_service._insert_payment(**fields)
    with pytest.raises(DuplicateSubmissionError) as exc:
        await payment_service._insert_payment(**fields)
    assert exc.value.payment_id == first["payment_id"]
    assert await db.payments.count_documents({"waste_report_id": "rpt_same"}) == 1

    # Un échec libère la place
    await payment_service._mark_failed(first, "Rejected")
    second = await payment_service._insert_payment(**fields)
    assert second["payment_id"] != first["payment_id"]


async def test_only_one_active_charge_per_order(farmer):
    await database.create_indexes()
    order = await _order(farmer)
    fields = dict(
        amount=1000, payment_type=PaymentType.MANURE_SALE, channel=PaymentChannel.STK,
        phone="254712345678", customer_id=farmer["user_id"], order_id=order["order_id"],
    )
    await payment_service._insert_payment(**fields)
    with pytest.raises(DuplicateSubmissionError):
        await payment_service._insert_payment(**fields)


async def test_stale_pending_payments_expire(farmer, mpesa_gateway):
    mpesa_gateway.raise_timeout = True
    order = await _order(farmer)
    result = await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])

    assert await payment_service.expire_stale_payments() == 0

    later = utcnow() + timedelta(minutes=settings.PAYMENT_EXPIRY_MINUTES + 1)
    assert await payment_service.expire_stale_payments(now=later) == 1
    payment = await payment_service.get_payment(result["payment_id"])
    assert payment["status"] == "expired"
    assert await payment_service.expire_stale_payments(now=later) == 0


async def test_admin_override_is_audited(farmer, admin, mpesa_gateway):
    mpesa_gateway.responses["/mpesa/stkpush/v1/processrequest"] = {"errorMessage": "System busy"}
    order = await _order(farmer)
    with pytest.raises(GatewayInitiationError) as exc:
        await payment_service.initiate_charge(order["order_id"], "0712345678", farmer["user_id"])

    with pytest.raises(ValidationError):
        await payment_service.override_status(
            exc.value.payment_id, PaymentStatus.COMPLETED, admin["user_id"], "admin", "  ",
        )

    updated = await payment_service.override_status(
        exc.value.payment_id, PaymentStatus.COMPLETED, admin["user_id"], "admin", "Paid cash at the depot",
    )
    assert updated["status"] == "completed"
    assert (await order_service.get_order(order["order_id"]))["payment_status"] == "paid"

    override = (await get_timeline(exc.value.payment_id))[-1]
    assert override["event_type"] == "ADMIN_OVERRIDE"
    assert override["from_status"] == "failed"
    assert override["actor_id"] == admin["user_id"]
    assert override["notes"] == "Paid cash at the depot"
