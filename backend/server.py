"""
Billing engine API server.

    uvicorn server:app --reload

Environment (.env beside this file): MONGO_URL, DB_NAME, JWT_SECRET_KEY,
PAYMENT_LINK_BASE_URL, SMTP_*, TOKEN_SWEEP_INTERVAL_SECONDS, CORS_ORIGINS.
"""

from fastapi import FastAPI
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
from pathlib import Path
from datetime import datetime
import asyncio
import os
import logging

load_dotenv(Path(__file__).parent / '.env')

from billing_engine.billing_service import BillingDocumentService
from billing_engine.background_job_engine import BackgroundJobEngine
from billing_engine.mail_service import EmailService
from billing_engine.migrations import run_migrations
from billing_routes import billing_router

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"
PAYMENT_LINK_BASE_URL = os.getenv("PAYMENT_LINK_BASE_URL", "http://localhost:3000/pay")
TOKEN_SWEEP_INTERVAL_SECONDS = int(os.getenv("TOKEN_SWEEP_INTERVAL_SECONDS", "3600"))
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

mongo = AsyncIOMotorClient(os.environ['MONGO_URL'])
db = mongo[os.environ['DB_NAME']]

mailer = EmailService(
    smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
    smtp_port=int(os.getenv("SMTP_PORT", "587")),
    smtp_user=os.getenv("SMTP_USER", ""),
    smtp_password=os.getenv("SMTP_PASSWORD", ""),
    from_email=os.getenv("SMTP_FROM_EMAIL", ""),
    from_name=os.getenv("SMTP_FROM_NAME", "Billing")
)
billing_service = BillingDocumentService(db, mailer=mailer, payment_link_base_url=PAYMENT_LINK_BASE_URL)
job_engine = BackgroundJobEngine(db, billing_service)

app = FastAPI(
    title="Billing Document Engine",
    version=VERSION,
    description="Quotations, invoices, AMC contracts and purchase orders with atomic numbering and payment reconciliation"
)
app.state.billing_service = billing_service
app.state.job_engine = job_engine
app.include_router(billing_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=CORS_ORIGINS != ["*"],
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    try:
        await db.command("ping")
        database = "ok"
    except PyMongoError as e:
        logger.error(f"[HEALTH] MongoDB ping failed: {e}")
        database = "unreachable"
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "timestamp": datetime.utcnow(),
        "version": VERSION,
    }


@app.on_event("startup")
async def start_billing_engine():
    migrations = await run_migrations(db)
    app.state.sweep_task = asyncio.create_task(job_engine.periodic_sweep(TOKEN_SWEEP_INTERVAL_SECONDS))
    logger.info(f"Billing engine {VERSION} started, {len(migrations)} migrations checked")


@app.on_event("shutdown")
async def stop_billing_engine():
    sweep = getattr(app.state, "sweep_task", None)
    if sweep:
        sweep.cancel()
    mongo.close()
