from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from concierge.clients.vapi import EndOfCallEvent, VapiWebhook
from concierge.dependencies import ServiceContainer, get_container
from concierge.logging_config import logger
from concierge.metrics import webhook_events

router = APIRouter(prefix="/vapi", tags=["VAPI"])


# POST /vapi/webhook
# Gets: VAPI server message JSON ({"message": {"type": ..., "call": {...}}})
# Returns: {"success": true, ...}; end-of-call reports are cached and enriched in the background
# Example:
#   curl -X POST http://localhost:8000/vapi/webhook \
#     -H 'Content-Type: application/json' \
#     -d '{"message": {"type": "end-of-call-report", "call": {"id": "call_123", "status": "ended"}}}'
@router.post("/webhook")
async def vapi_webhook(request: Request, container: ServiceContainer = Depends(get_container)):
    """Receive VAPI server messages."""
    try:
        payload = await request.json()
        webhook = VapiWebhook.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning("vapi_webhook_invalid", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    message = webhook.message
    webhook_events.labels(type=message.type).inc()

    if not isinstance(message, EndOfCallEvent):
        logger.debug("vapi_webhook_ignored", type=message.type)
        return {"success": True, "message": f"Event {message.type} acknowledged"}

    if message.call is None or not message.call.id:
        raise HTTPException(status_code=400, detail="End-of-call report without a call id")

    result = await container.webhooks.handle_end_of_call(message.call)
    return {
        "success": True,
        "callId": message.call.id,
        "status": result.status.value,
        "dataStatus": result.data_status.value if result.data_status else None,
    }


# GET /vapi/calls/{call_id}
# Gets: path param call_id
# Returns: {"success": true, "data": CallResult}; 404 when unknown or expired
# Example:
#   curl http://localhost:8000/vapi/calls/call_123
@router.get("/calls/{call_id}")
async def get_call_result(call_id: str, container: ServiceContainer = Depends(get_container)):
    """Fetch a cached call result."""
    result = container.cache.get(call_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Call {call_id} not found")
    return {"success": True, "data": result.model_dump(by_alias=True, mode="json")}


# DELETE /vapi/calls/{call_id}
# Gets: path param call_id
# Returns: {"success": true}; 404 when unknown
# Example:
#   curl -X DELETE http://localhost:8000/vapi/calls/call_123
@router.delete("/calls/{call_id}")
async def delete_call_result(call_id: str, container: ServiceContainer = Depends(get_container)):
    if not container.cache.delete(call_id):
        raise HTTPException(status_code=404, detail=f"Call {call_id} not found")
    return {"success": True, "message": f"Call {call_id} removed"}


# GET /vapi/cache/stats
# Gets: nothing
# Returns: {"success": true, "data": {size, entries: [...]}}
# Example:
#   curl http://localhost:8000/vapi/cache/stats
@router.get("/cache/stats")
async def cache_stats(container: ServiceContainer = Depends(get_container)):
    return {"success": True, "data": container.cache.stats()}
