from fastapi import APIRouter

from kincare.config import settings
from kincare.services.family_access.scheduler import get_expiry_sweep_scheduler

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    return {"status": "healthy", "service": "kincare-access"}


@router.get("/")
async def root():
    return {"message": f"Welcome to {settings.app_name}", "docs": "/docs", "health": "/health"}


@router.get("/health/sweep")
async def sweep_health():
    """Whether the background expiry sweep is running in this process."""
    return {
        "enabled": settings.expiry_sweep_enabled,
        "running": get_expiry_sweep_scheduler().running,
        "interval_seconds": settings.expiry_sweep_interval_seconds,
    }
