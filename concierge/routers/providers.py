from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from concierge.dependencies import ServiceContainer, get_container
from concierge.errors import NotificationError
from concierge.logging_config import logger
from concierge.models import (
    BatchCallRequest,
    RecommendRequest,
    ResearchRequest,
    SingleCallRequest,
)

router = APIRouter(prefix="/providers", tags=["Providers"])


# POST /providers/research
# Gets: JSON ResearchRequest {service, location, coordinates?, minRating?, maxResults?, ...}
# Returns: {"success": true, "data": ResearchResult}
# Example:
#   curl -X POST http://localhost:8000/providers/research \
#     -H 'Content-Type: application/json' \
#     -d '{"service": "plumber", "location": "Greenville, SC", "minRating": 4.0}'
@router.post("/research")
async def research_providers(body: ResearchRequest, container: ServiceContainer = Depends(get_container)):
    """Find providers through Kestra or Google Places."""
    result = await container.research.search(body)
    return {"success": True, "data": result.model_dump(by_alias=True, mode="json")}


# POST /providers/call
# Gets: JSON SingleCallRequest {providerName, providerPhone, serviceNeeded, ...}
# Returns: {"success": <call placed>, "data": CallResult}
# Example:
#   curl -X POST http://localhost:8000/providers/call \
#     -H 'Content-Type: application/json' \
#     -d '{"providerName": "ABC Plumbing", "providerPhone": "(864) 555-0100", "serviceNeeded": "plumbing"}'
@router.post("/call")
async def call_provider(body: SingleCallRequest, container: ServiceContainer = Depends(get_container)):
    """Call a single provider and wait for the outcome."""
    request = body.to_call_request()
    result = await container.calling.call_provider(request)
    return {"success": result.placed, "data": result.model_dump(by_alias=True, mode="json")}


# POST /providers/batch-call
# Gets: JSON BatchCallRequest {providers: [{name, phone, id?}], serviceNeeded, userCriteria, maxConcurrent?, notifyPhone?}
# Returns: {"success": ..., "data": BatchCallResult, "recommendations": RecommendationResponse, "notificationSid", "notificationError"}
# Example:
#   curl -X POST http://localhost:8000/providers/batch-call \
#     -H 'Content-Type: application/json' \
#     -d '{"providers": [{"name": "ABC Plumbing", "phone": "+18645550100"}], "serviceNeeded": "plumbing"}'
@router.post("/batch-call")
async def batch_call(body: BatchCallRequest, container: ServiceContainer = Depends(get_container)):
    """Call every provider concurrently, then rank the ones that qualified."""
    requests = body.to_call_requests()
    batch = await container.calling.call_providers(requests, max_concurrent=body.max_concurrent)
    recommendations = await container.recommendations.recommend(batch.results, body.user_criteria)

    notification_sid = None
    notification_error = None
    if body.notify_phone:
        try:
            notification_sid = await container.notifier.notify_recommendations(body.notify_phone, recommendations)
        except NotificationError as e:
            logger.warning("batch_call_notification_failed", error=str(e))
            notification_error = str(e)

    logger.info(
        "batch_call_finished",
        total=batch.stats.total,
        completed=batch.stats.completed,
        failed=batch.stats.failed,
        recommendations=len(recommendations.recommendations),
    )
    return {
        "success": batch.success,
        "data": batch.model_dump(by_alias=True, mode="json"),
        "recommendations": recommendations.model_dump(by_alias=True, mode="json"),
        "notificationSid": notification_sid,
        "notificationError": notification_error,
    }


# POST /providers/batch-call-async
# Gets: JSON BatchCallRequest (same body as /providers/batch-call)
# Returns: 202 {"success": true, "data": BatchJob}; poll /providers/batch-status/{jobId}
# Example:
#   curl -X POST http://localhost:8000/providers/batch-call-async \
#     -H 'Content-Type: application/json' \
#     -d '{"providers": [{"name": "ABC Plumbing", "phone": "+18645550100"}], "serviceNeeded": "plumbing"}'
@router.post("/batch-call-async")
async def batch_call_async(body: BatchCallRequest, container: ServiceContainer = Depends(get_container)):
    """Accept a batch and run it in the background."""
    job = container.jobs.submit(body)
    return JSONResponse(
        {"success": True, "data": job.model_dump(by_alias=True, mode="json")},
        status_code=202,
    )


# GET /providers/batch-status/{job_id}
# Gets: path param job_id
# Returns: {"success": true, "data": BatchJob}; 404 when unknown
# Example:
#   curl http://localhost:8000/providers/batch-status/6f1c0d9e-...
@router.get("/batch-status/{job_id}")
async def batch_status(job_id: str, container: ServiceContainer = Depends(get_container)):
    job = container.jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"success": True, "data": job.model_dump(by_alias=True, mode="json")}


# GET /providers/call/status
# Gets: nothing
# Returns: {"success": true, "data": {kestra, directVapi, fallbackAvailable, activeMethod}}
# Example:
#   curl http://localhost:8000/providers/call/status
@router.get("/call/status")
async def call_system_status(container: ServiceContainer = Depends(get_container)):
    """Which backend a call placed right now would use."""
    return {"success": True, "data": await container.calling.system_status()}


# POST /providers/recommend
# Gets: JSON RecommendRequest {callResults: [...], originalCriteria, weights?}
# Returns: {"success": true, "data": RecommendationResponse}
# Example:
#   curl -X POST http://localhost:8000/providers/recommend \
#     -H 'Content-Type: application/json' \
#     -d '{"callResults": [], "originalCriteria": "licensed, available this week"}'
@router.post("/recommend")
async def recommend_providers(body: RecommendRequest, container: ServiceContainer = Depends(get_container)):
    """Rank already-finished call results."""
    response = await container.recommendations.recommend(body.call_results, body.original_criteria, body.weights)
    return {"success": True, "data": response.model_dump(by_alias=True, mode="json")}
