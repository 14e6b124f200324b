"""
Router webhooks : callbacks Safaricom Daraja (STK, B2C, C2B).
Docs : https://developer.safaricom.co.ke/APIs

Daraja attend un accusé {"ResultCode": 0, "ResultDesc": "Accepted"} ; un callback
qui ne correspond à aucun Payment est tout de même acquitté (et journalisé).
"""
import logging

from fastapi import APIRouter, Request, HTTPException

from services import payment_service

logger = logging.getLogger(__name__)
router = APIRouter()

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


async def _json(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    return payload


@router.post("/mpesa/stk-callback", summary="Résultat STK push")
async def stk_callback(request: Request):
    payload = await _json(request)
    logger.info(f"Callback STK reçu : {payload}")
    await payment_service.handle_stk_callback(payload)
    return ACCEPTED


@router.post("/mpesa/b2c-result", summary="Résultat payout B2C")
async def b2c_result(request: Request):
    payload = await _json(request)
    logger.info(f"Résultat B2C reçu : {payload}")
    await payment_service.handle_b2c_result(payload)
    return ACCEPTED


@router.post("/mpesa/b2c-timeout", summary="Timeout file B2C")
async def b2c_timeout(request: Request):
    payload = await _json(request)
    await payment_service.handle_b2c_timeout(payload)
    return ACCEPTED


@router.post("/mpesa/c2b-validation", summary="Validation paybill")
async def c2b_validation(request: Request):
    payload = await _json(request)
    return await payment_service.handle_c2b_validation(payload)


@router.post("/mpesa/c2b-confirmation", summary="Confirmation paybill")
async def c2b_confirmation(request: Request):
    payload = await _json(request)
    logger.info(f"Confirmation C2B reçue : {payload}")
    await payment_service.handle_c2b_confirmation(payload)
    return ACCEPTED
