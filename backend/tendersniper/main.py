"""Tender Sniper - FastAPI Application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tendersniper.agents.scheduler import start_scheduler, stop_scheduler
from tendersniper.agents.sourcing import SourcingAgent
from tendersniper.api.routes import router
from tendersniper.core.config import get_settings
from tendersniper.core.database import close_db, get_session_factory, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: database first, the scheduler needs it
    db_ready = await init_db()
    if db_ready and settings.scheduler_enabled:
        start_scheduler(SourcingAgent)
    elif not db_ready:
        logger.warning("Scheduler not started: no database")
    yield
    # Shutdown
    stop_scheduler()
    await close_db()


app = FastAPI(
    title="Tender Sniper API",
    description=(
        "French public procurement watch: BOAMP notices matched to client profiles, "
        "screened by AI, decided by the client, delivered with their DCE.\n\n"
        "**Endpoints**:\n"
        "- `/api/v1/cron/daily-sourcing`: Run one sourcing batch (Bearer CRON_SECRET)\n"
        "- `/api/v1/decision/{token}/{accept|reject}`: One-time client decision links\n"
        "- `/api/v1/webhooks/inbound`: Chat replies\n"
        "- `/api/v1/admin`: Pending package requests and manual DCE upload\n"
        "- `/api/v1/opportunities`: Detail, capture, package request, re-analysis\n"
    ),
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Sourcing", "description": "Batch runs and scheduler status"},
        {"name": "Decisions", "description": "Client go/no-go via e-mail link or chat reply"},
        {"name": "Admin", "description": "Manual fulfillment of document packages"},
        {"name": "Opportunities", "description": "Opportunity lifecycle and DCE capture"},
    ],
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "db_connected": get_session_factory() is not None,
        "ai_configured": bool(settings.anthropic_api_key),
        "email_configured": bool(settings.sendgrid_api_key),
        "telegram_configured": bool(settings.telegram_bot_token and settings.telegram_admin_chat_id),
    }
