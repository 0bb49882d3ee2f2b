"""
Health Check Endpoints

- /health/live - Liveness check (is process running)
- /health/ready - Readiness check (database reachable, services wired)
- /health/detailed - Component view for staff
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime, timezone
import time

from ..database import get_db
from ..config import settings
from ..utils.dependencies import require_admin_key

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency_ms, 2),
            "type": db.bind.dialect.name if db.bind is not None else "unknown"
        }
    except Exception as e:
        return {
            "status": "down",
            "error": str(e)[:100]
        }


def get_services_health(request: Request) -> dict:
    """Which adapters were wired at startup"""
    container = getattr(request.app.state, "container", None)
    if container is None:
        return {"status": "not_ready"}
    return {
        "status": "up",
        "gateways": sorted(container.gateways),
        "scheduling": "configured" if container.scheduling else "disabled",
        "calendar": "enabled" if settings.calendar_enabled else "disabled",
        "email": "enabled" if settings.email_enabled else "disabled",
        "crm": "enabled" if settings.crm_enabled else "disabled",
    }


@router.get("/live")
async def liveness_check():
    """
    Liveness probe - is the process running?
    Used by load balancers and orchestrators.
    """
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/ready")
async def readiness_check(request: Request, db: Session = Depends(get_db)):
    """Readiness probe - database reachable and services wired"""
    db_health = get_db_health(db)
    wired = getattr(request.app.state, "container", None) is not None

    if db_health["status"] == "up" and wired:
        return {
            "status": "ready",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "status": "not_ready",
            "reason": "database_unavailable" if db_health["status"] != "up" else "services_not_wired",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


@router.get("/detailed")
async def detailed_health(
    request: Request,
    db: Session = Depends(get_db),
    _: bool = Depends(require_admin_key)
):
    db_health = get_db_health(db)
    services = get_services_health(request)
    overall = "healthy" if db_health["status"] == "up" and services["status"] == "up" else "degraded"
    return {
        "status": overall,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "database": db_health,
            "services": services,
        }
    }
