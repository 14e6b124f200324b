"""
Client passerelle M-Pesa (Safaricom Daraja) : OAuth, STK push, paiement B2C.
Docs : https://developer.safaricom.co.ke/APIs

Ce module ne touche pas à la base : il parle HTTP et renvoie la réponse Daraja
brute. La réconciliation avec les Payments est dans payment_service.
"""
import base64
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

import httpx

from config import settings
from core.exceptions import GatewayConfigurationError

logger = logging.getLogger(__name__)

NAIROBI = ZoneInfo("Africa/Nairobi")
SUCCESS_CODE = "0"


# ── Configuration ─────────────────────────────────────────────────────────────
def stk_missing_config() -> list[str]:
    required = {
        "MPESA_CONSUMER_KEY":        settings.MPESA_CONSUMER_KEY,
        "MPESA_CONSUMER_SECRET":     settings.MPESA_CONSUMER_SECRET,
        "MPESA_BUSINESS_SHORT_CODE": settings.MPESA_BUSINESS_SHORT_CODE,
        "MPESA_PASSKEY":             settings.MPESA_PASSKEY,
    }
    return [name for name, value in required.items() if not value]


def b2c_missing_config() -> list[str]:
    required = {
        "MPESA_CONSUMER_KEY":        settings.MPESA_CONSUMER_KEY,
        "MPESA_CONSUMER_SECRET":     settings.MPESA_CONSUMER_SECRET,
        "MPESA_B2C_SHORT_CODE":      settings.MPESA_B2C_SHORT_CODE,
        "MPESA_INITIATOR_NAME":      settings.MPESA_INITIATOR_NAME,
        "MPESA_SECURITY_CREDENTIAL": settings.MPESA_SECURITY_CREDENTIAL,
    }
    return [name for name, value in required.items() if not value]


def ensure_stk_configured() -> None:
    missing = stk_missing_config()
    if missing:
        raise GatewayConfigurationError(missing)


def ensure_b2c_configured() -> None:
    missing = b2c_missing_config()
    if missing:
        raise GatewayConfigurationError(missing)


def _callback_url(path: str, override: str = None) -> str:
    return override or f"{settings.BASE_URL}/api/webhooks/mpesa/{path}"


def _timestamp() -> str:
    """Horodatage Daraja : YYYYMMDDHHMMSS, heure de Nairobi."""
    return datetime.now(NAIROBI).strftime("%Y%m%d%H%M%S")


def _stk_password(timestamp: str) -> str:
    raw = f"{settings.MPESA_BUSINESS_SHORT_CODE}{settings.MPESA_PASSKEY}{timestamp}"
    return base64.b64encode(raw.encode()).decode()


def _error(message: str) -> dict:
    return {"ResponseCode": "error", "errorMessage": message}


def _json_or_error(resp: httpx.Response) -> dict:
    # Daraja renvoie parfois une page HTML (maintenance, 5xx)
    try:
        return resp.json()
    except ValueError:
        logger.error(f"Réponse Daraja non JSON [{resp.status_code}] : {resp.text[:200]}")
        return _error(f"M-Pesa returned HTTP {resp.status_code}")


# ── OAuth ─────────────────────────────────────────────────────────────────────
async def get_access_token(client: httpx.AsyncClient) -> str:
    """Client-credentials OAuth. Lève httpx.HTTPError si Daraja refuse."""
    resp = await client.get(
        f"{settings.MPESA_BASE_URL}/oauth/v1/generate",
        params={"grant_type": "client_credentials"},
        auth=(settings.MPESA_CONSUMER_KEY, settings.MPESA_CONSUMER_SECRET),
    )
    resp.raise_for_status()
    token = resp.json().get("access_token")
    if not token:
        raise httpx.HTTPError("M-Pesa OAuth response without access_token")
    return token


# ── STK push ──────────────────────────────────────────────────────────────────
async def stk_push(
    phone: str,
    amount: float,
    account_reference: str,
    description: str,
) -> dict:
    """
    Initie une demande de paiement sur le téléphone du client.
    Une réponse ResponseCode == "0" signifie seulement "demande envoyée" ;
    la confirmation arrive plus tard sur le callback.
    Lève httpx.TimeoutException : l'appelant décide du sort du Payment.
    """
    ensure_stk_configured()
    timestamp = _timestamp()
    payload = {
        "BusinessShortCode": settings.MPESA_BUSINESS_SHORT_CODE,
        "Password":          _stk_password(timestamp),
        "Timestamp":         timestamp,
        "TransactionType":   "CustomerPayBillOnline",
        "Amount":            int(round(amount)),
        "PartyA":            phone,
        "PartyB":            settings.MPESA_BUSINESS_SHORT_CODE,
        "PhoneNumber":       phone,
        "CallBackURL":       _callback_url("stk-callback", settings.MPESA_CALLBACK_URL),
        "AccountReference":  account_reference,
        "TransactionDesc":   description,
    }

    try:
        async with httpx.AsyncClient(timeout=settings.MPESA_TIMEOUT_SECONDS) as client:
            token = await get_access_token(client)
            resp = await client.post(
                f"{settings.MPESA_BASE_URL}/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            data = _json_or_error(resp)
    except httpx.TimeoutException:
        raise
    except httpx.HTTPError as e:
        logger.error(f"Erreur réseau M-Pesa STK : {e}")
        return _error(str(e))

    logger.info(f"M-Pesa STK {account_reference} → {data.get('ResponseCode')} {data.get('ResponseDescription', '')}")
    return data


# ── B2C ───────────────────────────────────────────────────────────────────────
async def b2c_payout(
    phone: str,
    amount: float,
    reference: str,
    remarks: str = "Waste payout",
) -> dict:
    """
    Envoie des fonds de l'entreprise vers le téléphone d'un fermier.
    `reference` (account_reference du Payment) part en OriginatorConversationID :
    Daraja la renvoie dans le résultat, même si l'ack synchrone s'est perdu.
    """
    ensure_b2c_configured()
    payload = {
        "OriginatorConversationID": reference,
        "InitiatorName":            settings.MPESA_INITIATOR_NAME,
        "SecurityCredential":       settings.MPESA_SECURITY_CREDENTIAL,
        "CommandID":                "BusinessPayment",
        "Amount":                   int(round(amount)),
        "PartyA":                   settings.MPESA_B2C_SHORT_CODE,
        "PartyB":                   phone,
        "Remarks":                  remarks,
        "QueueTimeOutURL":          _callback_url("b2c-timeout", settings.MPESA_B2C_TIMEOUT_URL),
        "ResultURL":                _callback_url("b2c-result", settings.MPESA_B2C_RESULT_URL),
        "Occasion":                 reference,
    }

    try:
        async with httpx.AsyncClient(timeout=settings.MPESA_TIMEOUT_SECONDS) as client:
            token = await get_access_token(client)
            resp = await client.post(
                f"{settings.MPESA_BASE_URL}/mpesa/b2c/v3/paymentrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            data = _json_or_error(resp)
    except httpx.TimeoutException:
        raise
    except httpx.HTTPError as e:
        logger.error(f"Erreur réseau M-Pesa B2C : {e}")
        return _error(str(e))

    logger.info(f"M-Pesa B2C {reference} → {data.get('ResponseCode')} {data.get('ResponseDescription', '')}")
    return data


def is_success(response: dict) -> bool:
    return str(response.get("ResponseCode")) == SUCCESS_CODE


def error_message(response: dict, default: str = "Payment initiation failed") -> str:
    return response.get("errorMessage") or response.get("ResponseDescription") or default
