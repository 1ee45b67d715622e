"""
System Router - Health checks and monitoring
"""
import logging
from datetime import datetime
from fastapi import APIRouter, Depends
import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from amazonia.config import settings
from amazonia.dependencies import get_db

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint returning status of backing services.
    """
    # Check database
    database_status = "unhealthy"
    try:
        db.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "unhealthy"
    worker_queue_depth = 0
    try:
        r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        r.ping()
        redis_status = "healthy"
        worker_queue_depth = r.llen("notifications") or 0
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")

    return {
        "database": database_status,
        "redis": redis_status,
        "worker_queue_depth": worker_queue_depth,
        "status": "ok" if database_status == "healthy" else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }
