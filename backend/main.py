import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config import settings
from core.exceptions import CompostError, PersistenceError
from core.rate_limit import limiter
from database import connect_db, close_db

# Routers
from routers import (
    admin, auth, notifications, orders, payments, products, realtime, riders, tickets, users,
    waste_reports, webhooks,
)

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def _expire_stale_payments() -> None:
    """
    Toutes les PAYMENT_SWEEP_INTERVAL_SECONDS : les paiements restés `pending`
    (callback M-Pesa jamais reçu, timeout passerelle) passent à `expired`.
    """
    from services.payment_service import expire_stale_payments
    while True:
        await asyncio.sleep(settings.PAYMENT_SWEEP_INTERVAL_SECONDS)
        try:
            await expire_stale_payments()
        except Exception as exc:
            logger.error(f"Erreur expiration paiements : {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await connect_db()
    task = asyncio.create_task(_expire_stale_payments())
    if settings.MPESA_TEST_MODE:
        logger.warning("MPESA_TEST_MODE actif : les payouts B2C sont simulés")
    logger.info("Captain Compost API started")
    yield
    # Shutdown
    task.cancel()
    await close_db()
    logger.info("Captain Compost API stopped")


app = FastAPI(
    title="Captain Compost API",
    description="Collecte de déchets agricoles et vente de compost au Kenya",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(CompostError)
async def compost_error_handler(request: Request, exc: CompostError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PyMongoError)
async def persistence_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Erreur MongoDB sur {request.method} {request.url.path} : {exc}")
    error = PersistenceError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else [settings.BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers publics (sans auth)
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])
app.include_router(realtime.router, tags=["Realtime"])   # token en query string

# Routers avec auth
app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(waste_reports.router, prefix="/api/waste-reports", tags=["Waste Reports"])
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(payments.admin_router, prefix="/api/admin/payments", tags=["Admin"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])
app.include_router(riders.router, prefix="/api/riders", tags=["Riders"])
app.include_router(products.router, prefix="/api/products", tags=["Products"])
app.include_router(products.customers_router, prefix="/api/customers", tags=["Customers"])
app.include_router(tickets.router, prefix="/api/tickets", tags=["Tickets"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "app": "captain-compost", "version": "1.0.0"}
