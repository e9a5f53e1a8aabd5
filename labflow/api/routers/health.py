"""Health check endpoints for Labflow.

Provides Kubernetes-compatible health probes:
- /health: Basic health check
- /health/live: Liveness probe (is the app running?)
- /health/ready: Readiness probe (is the app ready to serve traffic?)
"""

import logging
from typing import Dict, Any
from datetime import datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
import redis

from labflow import __version__
from labflow.api.deps import get_db
from labflow.core.config import get_settings

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


def check_database(db: Session) -> Dict[str, Any]:
    """Check database connectivity."""
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"status": "healthy"}
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        return {"status": "unhealthy", "error": str(e)}


def check_redis() -> Dict[str, Any]:
    """Check Redis connectivity when it backs the rate limiter."""
    settings = get_settings()
    if settings.rate_limit_backend != "redis":
        return {"status": "skipped"}
    try:
        client = redis.from_url(settings.redis_url, socket_connect_timeout=2, socket_timeout=2)
        client.ping()
        return {"status": "healthy"}
    except Exception as e:
        logger.warning("Redis health check failed: %s", e)
        return {"status": "unhealthy", "error": str(e)}


@router.get("/health")
async def health_check():
    return {"status": "healthy", "version": __version__}


@router.get("/health/live")
async def liveness():
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}


@router.get("/health/ready")
async def readiness(db: Session = Depends(get_db)):
    checks = {
        "database": check_database(db),
        "redis": check_redis(),
    }
    ready = all(c["status"] in ("healthy", "skipped") for c in checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )
