#!/usr/bin/env python3

"""
API server for account aggregation: account views, connection management and trading.
"""

import contextlib
import logging
import os

from decouple import config
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from utils.db.db_client import init_db
from utils.request_context import request_id_middleware

# Configure logging (ensure this is done early)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger("aggregation-api-server")

# Only load .env in development; elsewhere the environment is injected
if os.getenv("ENVIRONMENT", "development").lower() == "development":
    load_dotenv(override=True)
    logger.info("Loaded environment variables from .env file for local development.")


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("LIFESPAN: Starting API server...")
    init_db()

    scheduler_enabled = config("ENABLE_RECONCILIATION_SCHEDULER", default=True, cast=bool)
    if scheduler_enabled:
        from services.reconciliation_scheduler import start_reconciliation_scheduler
        start_reconciliation_scheduler()
    else:
        logger.info("Reconciliation scheduler disabled by configuration")

    yield  # This is where the application runs

    logger.info("Shutting down API server...")
    if scheduler_enabled:
        from services.reconciliation_scheduler import stop_reconciliation_scheduler
        stop_reconciliation_scheduler()


app = FastAPI(
    title="Account Aggregation API",
    description="Aggregated banking, brokerage and wallet accounts with cached views and trade execution.",
    version="1.0.0",
    lifespan=lifespan
)

# Register modular route modules (keep api_server.py clean)
from routes.account_routes import router as account_router
from routes.connection_routes import router as connection_router, admin_router
from routes.trading_routes import router as trading_router
from routes.webhook_routes import router as webhook_router
app.include_router(account_router)
app.include_router(connection_router)
app.include_router(admin_router)
app.include_router(trading_router)
app.include_router(webhook_router)

app.middleware("http")(request_id_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in config("FRONTEND_URL", default="http://localhost:3000").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After"],
)


@app.get("/api/health")
async def health_check():
    """Health check endpoint, including the reconciliation job state."""
    from services.reconciliation_scheduler import get_reconciliation_scheduler
    reconciliation = get_reconciliation_scheduler().get_status()
    return {
        "status": "healthy",
        "reconciliation_scheduler": {
            "is_running": reconciliation["is_running"],
            "last_result": reconciliation["last_result"],
        },
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting API server for local development...")
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=int(os.getenv("BIND_PORT", 8000)),
        reload=True,
        log_level="info"
    )
