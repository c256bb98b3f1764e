from fastapi import APIRouter

from concierge import __version__

router = APIRouter(tags=["Core"])


# GET /
# Gets: nothing
# Returns: basic API metadata and a map of key endpoints
# Example:
#   curl http://localhost:8000/
@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Concierge API - Provider Outreach Orchestration",
        "version": __version__,
        "description": "Finds local service providers, calls them concurrently with a voice agent and ranks the results",
        "endpoints": {
            "research": "/providers/research",
            "call": "/providers/call",
            "batch_call": "/providers/batch-call",
            "batch_call_async": "/providers/batch-call-async",
            "batch_status": "/providers/batch-status/{job_id}",
            "call_status": "/providers/call/status",
            "recommend": "/providers/recommend",
            "vapi_webhook": "/vapi/webhook",
            "vapi_call_result": "/vapi/calls/{call_id}",
            "vapi_cache_stats": "/vapi/cache/stats",
            "health": "/health",
            "metrics": "/metrics",
        },
        "features": [
            "Kestra orchestration with direct VAPI fallback",
            "Windowed concurrent calling",
            "Google Places enrichment",
            "AI provider ranking",
            "SMS recommendations",
        ],
    }
