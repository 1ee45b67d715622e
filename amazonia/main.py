"""
Main FastAPI application for the AmazôniaExperience backend
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from amazonia.config import settings
from amazonia.db.database import init_db
from amazonia.exceptions import AmazoniaError
from amazonia.api import (
    system,
    checkin,
    rewards,
    wallet,
    quizzes
)

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
    logger.info("Starting AmazôniaExperience backend...")
    init_db()
    logger.info("Database initialized")

    yield

    # Shutdown
    logger.info("Shutting down AmazôniaExperience backend...")


app = FastAPI(
    title="AmazôniaExperience API",
    description="Check-ins, AmaCoins ledger, quizzes and reward redemptions",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AmazoniaError)
async def domain_exception_handler(request: Request, exc: AmazoniaError):
    """Map domain errors to 4xx responses"""
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "detail": str(exc) if settings.APP_DEBUG else "An unexpected error occurred"
        }
    )


# Include routers
app.include_router(system.router, tags=["System"])
app.include_router(checkin.router)
app.include_router(rewards.router)
app.include_router(wallet.router)
app.include_router(quizzes.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "AmazôniaExperience",
        "version": "1.0.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "amazonia.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.APP_DEBUG
    )
