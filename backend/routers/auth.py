"""
Router auth : inscription / connexion email + mot de passe, session JWT.
"""
from datetime import timedelta

from fastapi import APIRouter, Depends, Request

from config import settings
from core.exceptions import bad_request_exception, credentials_exception, not_found_exception
from core.rate_limit import limiter
from core.security import (
    create_access_token,
    create_refresh_token,
    verify_refresh_token,
)
from core.dependencies import get_current_user
from core.utils import normalize_phone, utcnow
from database import db
from models.user import SignUpRequest, SignInRequest, TokenResponse, RefreshRequest, ProfileUpdate, User
from services import user_service

router = APIRouter()


async def _issue_tokens(profile: dict) -> TokenResponse:
    token_data    = {"sub": profile["user_id"], "role": profile["role"]}
    access_token  = create_access_token(token_data)
    refresh_token = create_refresh_token(token_data)

    # Stocker le refresh token
    now = utcnow()
    await db.user_sessions.insert_one({
        "user_id":       profile["user_id"],
        "refresh_token": refresh_token,
        "created_at":    now,
        "expires_at":    now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    })
    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        user=User(**profile),
    )


@router.post("/signup", response_model=TokenResponse, status_code=201, summary="Créer un compte fermier")
@limiter.limit("5/minute")
async def signup(request: Request, body: SignUpRequest):
    # L'inscription publique crée toujours un fermier ; les rôles se changent via /api/users
    profile = await user_service.create_profile(
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        phone_number=body.phone_number,
        location=body.location,
    )
    return await _issue_tokens(profile)


@router.post("/signin", response_model=TokenResponse, summary="Connexion → JWT")
@limiter.limit("10/minute")
async def signin(request: Request, body: SignInRequest):
    profile = await user_service.authenticate(body.email, body.password)
    if not profile:
        raise credentials_exception()
    if not profile.get("is_active", True):
        raise bad_request_exception("Account disabled")
    return await _issue_tokens(profile)


@router.post("/refresh", response_model=TokenResponse, summary="Rafraîchir access token")
async def refresh_token(body: RefreshRequest):
    payload = verify_refresh_token(body.refresh_token)
    if not payload:
        raise bad_request_exception("Invalid or expired refresh token")

    # Vérifier que le token existe en base
    session = await db.user_sessions.find_one({"refresh_token": body.refresh_token})
    if not session:
        raise bad_request_exception("Invalid session")

    profile = await user_service.get_profile(payload["sub"])
    if not profile:
        raise not_found_exception("User")

    token_data    = {"sub": profile["user_id"], "role": profile["role"]}
    access_token  = create_access_token(token_data)
    new_refresh   = create_refresh_token(token_data)

    # Remplacer le refresh token (rotation)
    now = utcnow()
    await db.user_sessions.replace_one(
        {"refresh_token": body.refresh_token},
        {
            "user_id":       profile["user_id"],
            "refresh_token": new_refresh,
            "created_at":    now,
            "expires_at":    now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        },
    )

    return TokenResponse(
        access_token=access_token,
        refresh_token=new_refresh,
        user=User(**profile),
    )


@router.post("/signout", summary="Fermer toutes les sessions")
async def signout(current_user: dict = Depends(get_current_user)):
    result = await db.user_sessions.delete_many({"user_id": current_user["user_id"]})
    return {"message": "Signed out", "sessions_closed": result.deleted_count}


@router.get("/session", response_model=User, summary="Profil courant")
async def session(current_user: dict = Depends(get_current_user)):
    return User(**current_user)


@router.put("/profile", response_model=User, summary="Mettre à jour profil")
async def update_profile(
    body: ProfileUpdate,
    current_user: dict = Depends(get_current_user),
):
    updates = body.model_dump(exclude_none=True)
    if not updates:
        return User(**current_user)
    if "phone_number" in updates:
        updates["phone_number"] = normalize_phone(updates["phone_number"])
    updates["updated_at"] = utcnow()
    await db.profiles.update_one({"user_id": current_user["user_id"]}, {"$set": updates})
    updated = await user_service.get_profile(current_user["user_id"])
    return User(**updated)
