"""
Builds the VAPI call payload for a CallRequest.

The prompt below is generic; callers that need a tailored
conversation pass a CallScript on the request.
"""

from typing import Optional

from concierge.models import CallRequest, StructuredCallData, Urgency

_URGENCY_TEXT = {
    Urgency.IMMEDIATE: "today if at all possible",
    Urgency.WITHIN_24_HOURS: "within the next 24 hours",
    Urgency.WITHIN_2_DAYS: "within the next two days",
    Urgency.FLEXIBLE: "sometime in the coming week",
}


def _default_system_prompt(request: CallRequest) -> str:
    lines = [
        f"You are an assistant calling {request.provider_name} on behalf of a client.",
        f"The client needs: {request.service_needed}"
        + (f" in {request.location}" if request.location else "")
        + ".",
        f"They need the work done {_URGENCY_TEXT[request.urgency]}.",
    ]
    if request.problem_description:
        lines.append(f"Problem description: {request.problem_description}")
    if request.user_criteria:
        lines.append(f"Confirm each of these requirements: {request.user_criteria}")
    lines += [
        "Ask for earliest availability and an estimated rate.",
        "If you reach voicemail, end the call without leaving a message.",
        "When you have the answers, thank them and end the call.",
    ]
    return "\n".join(lines)


def build_call_metadata(request: CallRequest) -> dict:
    """Correlation data echoed back by VAPI in webhooks and `GET /call`."""
    metadata = {
        "providerName": request.provider_name,
        "serviceNeeded": request.service_needed,
        "location": request.location,
        "userCriteria": request.user_criteria,
        "urgency": request.urgency.value,
    }
    if request.provider_id:
        metadata["providerId"] = request.provider_id
    if request.service_request_id:
        metadata["serviceRequestId"] = request.service_request_id
    return metadata


def build_assistant_config(
    request: CallRequest,
    model: str = "gpt-4o-mini",
    webhook_url: Optional[str] = None,
) -> dict:
    """Full `POST /call` body minus the phone number id."""
    if request.script:
        system_prompt = request.script.system_prompt
        first_message = request.script.first_message
    else:
        system_prompt = _default_system_prompt(request)
        first_message = (
            f"Hi, is this {request.provider_name}? I'm calling to ask about "
            f"{request.service_needed.lower()} services."
        )

    assistant = {
        "name": f"Concierge-{request.provider_name}"[:40],
        "firstMessage": first_message,
        "model": {
            "provider": "openai",
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}],
            "tools": [{"type": "endCall"}],
            "temperature": 0.2,
        },
        "voicemailDetection": {"provider": "twilio", "enabled": True},
        "maxDurationSeconds": 300,
        "analysisPlan": {
            "summaryPlan": {"enabled": True},
            "structuredDataPlan": {
                "enabled": True,
                "schema": StructuredCallData.model_json_schema(),
            },
        },
    }
    if webhook_url:
        assistant["serverUrl"] = webhook_url
        assistant["serverMessages"] = ["end-of-call-report", "status-update"]

    customer = {"number": request.provider_phone}
    if request.provider_name:
        customer["name"] = request.provider_name[:40]

    return {
        "assistant": assistant,
        "customer": customer,
        "metadata": build_call_metadata(request),
    }
