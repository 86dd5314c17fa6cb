import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core import config
from app.core.database import create_indexes, db
from app.payments.admin_router import router as admin_payments_router
from app.payments.router import router as payments_router
from app.system.health_router import router as health_router
from app.system.maintenance import expiry_sweeper

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Atelier Payments & Enrollment")


@app.on_event("startup")
async def startup_event():
    await create_indexes()
    app.state.expiry_sweeper = asyncio.create_task(expiry_sweeper(db))
    logger.info("Payment service started")


@app.on_event("shutdown")
async def shutdown_event():
    task = getattr(app.state, "expiry_sweeper", None)
    if task:
        task.cancel()


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== ROUTER REGISTRATION ====================
app.include_router(payments_router)
app.include_router(admin_payments_router)
app.include_router(health_router)
