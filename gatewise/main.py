"""
Main FastAPI application for the Gatewise service
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from gatewise.config import settings
from gatewise.api import system, sessions, checkins, gates, merges
from gatewise.db.database import Base, engine
from gatewise.db import models  # noqa: F401  (registers tables on Base.metadata)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting Gatewise service...")
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database schema ready")
    except Exception as e:
        logger.error(f"Error preparing database schema: {e}")

    yield

    # Shutdown
    logger.info("Shutting down Gatewise service...")
    engine.dispose()


app = FastAPI(
    title="Gatewise",
    description="Gate discovery and category-binding enforcement from scan telemetry",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(system.router, tags=["System"])
app.include_router(sessions.router)
app.include_router(checkins.router)
app.include_router(gates.router)
app.include_router(merges.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Gatewise",
        "version": "1.0.0",
        "status": "running"
    }
