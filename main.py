"""
Exposure Chain - Main FastAPI Application

Anonymous exposure-chain notification API: users record who they met,
report test results, and receive chain notifications when someone up to
ten hops away tests positive.
"""

from __future__ import annotations
from contextlib import asynccontextmanager

import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Database imports
from database import init_database, close_database, check_database_connection
from database.routes import router as api_router, shutdown_services
from engine.config import get_propagation_settings

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup, close connections and push client on shutdown."""
    # Startup
    try:
        await init_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        # Health endpoint still answers and reports the database as down

    settings = get_propagation_settings()
    logger.info(
        f"Propagation: max depth {settings.max_chain_depth}, "
        f"retention {settings.retention_days}d, push {'on' if settings.push_enabled else 'off'}"
    )
    yield
    # Shutdown
    await shutdown_services()
    await close_database()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Exposure Chain API",
    description="Anonymous multi-hop exposure notification",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS Configuration
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# API Routes
# =============================================================================

app.include_router(api_router, prefix="/api/v1", tags=["exposure"])


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint with database status."""
    db_healthy = await check_database_connection()

    return {
        "ok": True,
        "timestamp": datetime.now().isoformat(),
        "database": "connected" if db_healthy else "disconnected",
    }


# =============================================================================
# Run with uvicorn
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
