"""
Run-monitoring HTTP API
Exposes health, queue statistics and coordinator state, and lets an operator stop the run
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel

from coordinator import RunCoordinator
from database import StoreClosedError, StoreError
from models import RunStats


class StatusResponse(BaseModel):
    """Response model for coordinator state"""
    phase: str
    round: int
    shutdown_requested: bool
    shutdown_reason: Optional[str] = None
    credentials_valid: int
    credentials_total: int
    accounts_used: int
    accounts_total: int
    accounts_remaining: int
    provisioning_exhausted: bool


class ShutdownResponse(BaseModel):
    """Response model for a shutdown request"""
    status: str
    message: str


def create_app(coordinator: RunCoordinator) -> FastAPI:
    """Build the monitoring app bound to one run coordinator"""
    service_name = coordinator.settings.service_name

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan manager"""
        logger.info("Starting run monitoring API")
        yield
        logger.info("Shutting down run monitoring API")

    app = FastAPI(
        title="Email Profile Crawler Monitor",
        description="Health, statistics and shutdown control for a crawler run",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/ping")
    async def ping():
        """Simple ping endpoint to check service availability"""
        return {
            "ping": "pong",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": service_name
        }

    @app.get("/health")
    async def health_check():
        """Healthy while running, stopping once shutdown was requested"""
        status = "stopping" if coordinator.shutdown_requested else "healthy"
        return {"status": status, "service": service_name, "phase": coordinator.phase}

    @app.get("/stats", response_model=RunStats)
    async def get_stats():
        """Current work queue statistics"""
        try:
            return await coordinator.store.stats()
        except StoreClosedError:
            if coordinator.final_stats is not None:
                return coordinator.final_stats
            raise HTTPException(status_code=503, detail="Work queue store is closed")
        except StoreError as e:
            logger.error(f"Failed to get stats: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to get stats: {str(e)}")

    @app.get("/status", response_model=StatusResponse)
    async def get_status():
        """Coordinator phase, round and credential/account counters"""
        return StatusResponse(**coordinator.status())

    @app.post("/shutdown", response_model=ShutdownResponse, status_code=202)
    async def request_shutdown():
        """Request graceful shutdown; repeated calls are harmless"""
        already = coordinator.shutdown_requested
        coordinator.request_shutdown("api")
        message = "Shutdown already in progress" if already else "Graceful shutdown requested"
        return ShutdownResponse(status="stopping", message=message)

    return app
