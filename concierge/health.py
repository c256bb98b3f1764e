"""
Health check and monitoring endpoints for production.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from concierge import __version__
from concierge.config import config
from concierge.database import get_db
from concierge.dependencies import ServiceContainer, get_container
from concierge.logging_config import logger

router = APIRouter(tags=["Health & Monitoring"])


# GET /health
# Gets: nothing
# Returns: {status, service, version}
# Example:
#   curl http://localhost:8000/health
@router.get("/health")
async def health_check():
    """
    Basic health check - returns 200 if service is running.
    Use this for basic liveness probes.
    """
    return {
        "status": "healthy",
        "service": "concierge",
        "version": __version__,
    }


# GET /health/ready
# Gets: nothing
# Returns: dependency readiness checks; 503 when the database is unreachable
# Example:
#   curl http://localhost:8000/health/ready
@router.get("/health/ready")
async def readiness_check(
    container: ServiceContainer = Depends(get_container),
    db: Session = Depends(get_db),
):
    """
    Readiness check - verifies dependencies.
    Use this for Kubernetes readiness probes.

    Only the database gates readiness. Call backends are reported so a
    deploy with neither VAPI nor Kestra configured is easy to spot.
    """
    checks = {
        "database": False,
        "vapi": "configured" if container.vapi is not None else "not_configured",
        "kestra": "not_configured",
        "openai": "configured" if config.has_openai_key() else "not_configured",
        "ready": False,
    }

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except SQLAlchemyError as e:
        logger.warning("readiness_check_database", status="error", error=str(e))

    if container.policy.orchestrator_usable:
        checks["kestra"] = await container.router.probe()

    checks["ready"] = checks["database"] is True
    return JSONResponse(checks, status_code=200 if checks["ready"] else 503)


# GET /health/info
# Gets: nothing
# Returns: service configuration summary and backend routing status
# Example:
#   curl http://localhost:8000/health/info
@router.get("/health/info")
async def system_info(container: ServiceContainer = Depends(get_container)):
    """
    System information and configuration status.
    """
    return {
        "service": "concierge",
        "version": __version__,
        "configuration": {
            "vapi_configured": config.has_vapi_config(),
            "vapi_webhook_url": config.VAPI_WEBHOOK_URL or None,
            "kestra_enabled": config.KESTRA_ENABLED,
            "kestra_strict_mode": config.KESTRA_STRICT_MODE,
            "places_configured": config.has_places_key(),
            "openai_configured": config.has_openai_key(),
            "openai_model": config.OPENAI_MODEL if config.has_openai_key() else None,
            "twilio_configured": config.has_twilio_config(),
            "debug_mode": config.DEBUG,
        },
        "features": {
            "direct_calling": container.vapi is not None,
            "orchestrated_calling": container.kestra is not None,
            "provider_enrichment": container.enrichment.available,
            "ai_scoring": container.recommendations.oracle is not None,
            "sms_notifications": container.notifier.enabled,
        },
        "result_cache": {
            "size": container.cache.stats()["size"],
            "ttl_seconds": container.cache.default_ttl,
        },
    }


# GET /metrics
# Gets: nothing
# Returns: Prometheus text exposition
# Example:
#   curl http://localhost:8000/metrics
@router.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
