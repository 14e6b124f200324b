"""
Helpers profils : création, authentification, projection publique.
"""
import logging
from typing import Optional

from pymongo.errors import DuplicateKeyError

from core.exceptions import ValidationError
from core.security import hash_password, verify_password
from core.utils import new_id, normalize_phone, utcnow
from database import db
from models.common import UserRole

logger = logging.getLogger(__name__)

# Jamais renvoyé par l'API
PRIVATE_FIELDS = {"_id": 0, "password_hash": 0}


async def create_profile(
    email: str,
    password: str,
    full_name: str,
    phone_number: Optional[str] = None,
    location: Optional[str] = None,
    role: UserRole = UserRole.FARMER,
) -> dict:
    email = email.strip().lower()
    if await db.profiles.find_one({"email": email}, {"_id": 1}):
        raise ValidationError("An account with this email already exists")

    now = utcnow()
    profile = {
        "user_id":       new_id("usr"),
        "email":         email,
        "password_hash": hash_password(password),
        "full_name":     full_name.strip(),
        "phone_number":  normalize_phone(phone_number) if phone_number else None,
        "location":      location,
        "role":          role.value,
        "is_active":     True,
        "fcm_token":     None,
        "created_at":    now,
        "updated_at":    now,
    }
    try:
        await db.profiles.insert_one(profile)
    except DuplicateKeyError:
        raise ValidationError("An account with this email already exists")
    logger.info(f"Profil créé : {profile['user_id']} ({role.value})")
    return public_profile(profile)


async def authenticate(email: str, password: str) -> Optional[dict]:
    profile = await db.profiles.find_one({"email": email.strip().lower()}, {"_id": 0})
    if not profile or not profile.get("password_hash"):
        return None
    if not verify_password(password, profile["password_hash"]):
        return None
    return public_profile(profile)


async def get_profile(user_id: str) -> Optional[dict]:
    return await db.profiles.find_one({"user_id": user_id}, PRIVATE_FIELDS)


def public_profile(profile: dict) -> dict:
    return {k: v for k, v in profile.items() if k not in ("_id", "password_hash")}
