from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True
    BASE_URL: str = "https://captain-compost.onrender.com"

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    DB_NAME: str = "captain_compost"

    # JWT
    JWT_SECRET: str = "changeme_minimum_32_chars_here_please"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # M-Pesa Daraja : STK push (Lipa na M-Pesa Online)
    MPESA_BASE_URL:            str = "https://sandbox.safaricom.co.ke"
    MPESA_CONSUMER_KEY:        Optional[str] = None
    MPESA_CONSUMER_SECRET:     Optional[str] = None
    MPESA_BUSINESS_SHORT_CODE: Optional[str] = None
    MPESA_PASSKEY:             Optional[str] = None
    MPESA_CALLBACK_URL:        Optional[str] = None   # défaut : {BASE_URL}/api/webhooks/mpesa/stk-callback

    # M-Pesa Daraja : B2C payouts
    MPESA_B2C_SHORT_CODE:      Optional[str] = None
    MPESA_INITIATOR_NAME:      Optional[str] = None
    MPESA_SECURITY_CREDENTIAL: Optional[str] = None
    MPESA_B2C_RESULT_URL:      Optional[str] = None
    MPESA_B2C_TIMEOUT_URL:     Optional[str] = None

    # Simulation explicite : aucun appel réseau pour les payouts B2C
    MPESA_TEST_MODE:       bool  = False
    MPESA_TIMEOUT_SECONDS: float = 15.0

    # Paiements
    WASTE_RATE_KES_PER_KG:          float = 10.0
    PAYMENT_EXPIRY_MINUTES:         int   = 10
    PAYMENT_SWEEP_INTERVAL_SECONDS: int   = 120
    PAYMENT_RATE_LIMIT:             str   = "10/minute"

    # Push (Firebase) et SMS (Twilio), optionnels, best-effort
    FIREBASE_CREDENTIALS: Optional[str] = None
    TWILIO_ACCOUNT_SID:   Optional[str] = None
    TWILIO_AUTH_TOKEN:    Optional[str] = None
    TWILIO_SMS_NUMBER:    Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"],  # cherche dans backend/ puis dans la racine
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
