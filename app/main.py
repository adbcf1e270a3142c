"""
Chat Mirror Backend API

Imports a WhatsApp export, builds a persona of one participant, and lets the
uploader chat with it. Free users get a daily message quota; Pro comes from
Razorpay payments, promo codes, or an admin.
"""
from dotenv import load_dotenv
load_dotenv()

import logging
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

from app.db.session import database_url

# Render captures stdout/stderr; send logs to both
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.StreamHandler(sys.stderr)
    ],
    force=True  # Override any existing configuration
)

logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Run Alembic migrations to head. Fails startup if they fail."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    if not os.getenv("DATABASE_URL"):
        logger.error("DATABASE_URL is not set. Alembic migrations will not run.")
        return
    db_url = database_url()

    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(alembic_cfg, "head")
    logger.info("Alembic migrations completed successfully")


from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.routes import admin, billing, chat, payments, users, webhooks
from app.db.session import engine
from app.db.base import Base
# Import all models to ensure they're registered with Base
from app import models  # noqa: F401

app = FastAPI(title="Chat Mirror")


@app.on_event("startup")
async def startup_event():
    """Create tables, then run Alembic migrations on every server restart."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created")
    except Exception:
        logger.exception("Error creating tables")
        raise

    try:
        run_migrations()
    except Exception:
        logger.exception("Alembic migration failed (server will not start)")
        raise


FRONTEND_URL = os.getenv("FRONTEND_URL", "").rstrip("/")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
    ] + ([FRONTEND_URL] if FRONTEND_URL else []),
    allow_origin_regex=r"https://.*\.(onrender\.com|lovable\.app)",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(chat.router, prefix="/api/chat", tags=["Chat"])
app.include_router(billing.router, prefix="/api/billing", tags=["Billing"])
app.include_router(payments.router, prefix="/api/payments", tags=["Razorpay Payments"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/health")
def health():
    return {"status": "ok"}
