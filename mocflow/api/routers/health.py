"""Health check endpoints.

- /health: Basic health check
- /health/live: Liveness probe (is the app running?)
- /health/ready: Readiness probe (database, and Redis when notifications go through Celery)
"""

from typing import Any, Dict

import redis
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from mocflow import __version__
from mocflow.api.deps import get_db
from mocflow.core.clock import utcnow
from mocflow.core.config import get_settings

router = APIRouter(tags=["health"])


def check_database(db: Session) -> Dict[str, Any]:
    """Check database connectivity."""
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"status": "healthy", "dialect": db.get_bind().dialect.name}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def check_redis(url: str) -> Dict[str, Any]:
    """Check Redis connectivity."""
    try:
        r = redis.from_url(url, socket_connect_timeout=2, socket_timeout=2)
        r.ping()
        info = r.info("server")
        r.close()
        return {"status": "healthy", "version": info.get("redis_version", "unknown")}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


@router.get("/health")
async def health_check():
    return {"status": "healthy", "version": __version__, "timestamp": utcnow().isoformat()}


@router.get("/health/live")
async def liveness_probe():
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"status": "alive", "timestamp": utcnow().isoformat()},
    )


@router.get("/health/ready")
def readiness_probe(db: Session = Depends(get_db)):
    """
    Readiness probe.

    Redis is only checked when notifications are dispatched through Celery;
    inline dispatch needs nothing but the database.
    """
    settings = get_settings()
    checks = {"database": check_database(db)}
    if settings.notification_dispatch == "celery":
        checks["redis"] = check_redis(settings.celery_broker)

    unhealthy = [name for name, check in checks.items() if check["status"] == "unhealthy"]
    if unhealthy:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "checks": checks, "failed": unhealthy},
        )
    return {"status": "ready", "checks": checks}
