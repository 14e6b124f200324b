import re
import uuid
from datetime import datetime, timezone

from core.exceptions import ValidationError

KENYA_PREFIX = "254"


def new_id(prefix: str) -> str:
    """Identifiant métier lisible : rpt_1a2b3c4d5e6f"""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_phone(phone: str) -> str:
    """
    Normalise un numéro Safaricom au format 2547XXXXXXXX exigé par Daraja.

    0712345678 -> 254712345678, 712345678 -> 254712345678,
    +254 712 345 678 -> 254712345678. Tout le reste est refusé.
    """
    digits = re.sub(r"\D", "", phone or "")

    # Préfixe national (0) sur un numéro local à 10 chiffres
    if len(digits) == 10 and digits.startswith("0"):
        digits = digits[1:]

    if len(digits) == 9:
        return KENYA_PREFIX + digits
    if len(digits) == 12 and digits.startswith(KENYA_PREFIX):
        return digits

    raise ValidationError(
        "Invalid phone number. Use a Kenyan number such as 0712345678 or 254712345678"
    )


def mask_phone(phone: str) -> str:
    """
    Masque un numéro en ne laissant que l'indicatif et les 2 derniers chiffres.
    254712345678 -> 254 ••• •• 78
    """
    if not phone:
        return ""

    clean_phone = phone.replace(" ", "").lstrip("+")
    if len(clean_phone) <= 4:
        return "••••"

    prefix = KENYA_PREFIX if clean_phone.startswith(KENYA_PREFIX) else ""
    suffix = clean_phone[-2:]
    return f"{prefix} ••• •• {suffix}" if prefix else f"••• •• {suffix}"
