"""
VAPI call-automation adapter.

Vendor payloads are parsed into the models below and normalized into a
CallResult by `normalize_call`; nothing vendor-shaped leaves this module.
"""

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from concierge.errors import CallPlacementError
from concierge.logging_config import get_logger
from concierge.models import (
    Backend,
    CallAnalysis,
    CallMessage,
    CallRequest,
    CallResult,
    CallStatus,
    ProviderEcho,
    RequestEcho,
)

logger = get_logger(__name__)

# Call states that mean "still going"
ACTIVE_CALL_STATES = {"queued", "ringing", "in-progress", "forwarding"}

# Transcripts shorter than this are treated as not yet processed
MIN_TRANSCRIPT_LENGTH = 50


class _VendorModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class VapiMessage(_VendorModel):
    role: str = "unknown"
    message: Optional[str] = None
    content: Optional[str] = None
    time: Optional[float] = None
    seconds_from_start: Optional[float] = Field(default=None, alias="secondsFromStart")


class VapiArtifact(_VendorModel):
    transcript: Optional[str] = None
    messages: list[VapiMessage] = Field(default_factory=list)

    @field_validator("transcript", mode="before")
    @classmethod
    def _stringify(cls, value):
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)


class VapiAnalysis(_VendorModel):
    summary: Optional[str] = None
    structured_data: Optional[dict[str, Any]] = Field(default=None, alias="structuredData")
    success_evaluation: Optional[Any] = Field(default=None, alias="successEvaluation")


class VapiCostBreakdown(_VendorModel):
    total: Optional[float] = None


class VapiNumber(_VendorModel):
    number: Optional[str] = None
    name: Optional[str] = None


class VapiCall(_VendorModel):
    id: str
    status: Optional[str] = None
    ended_reason: Optional[str] = Field(default=None, alias="endedReason")
    duration_minutes: Optional[float] = Field(default=None, alias="durationMinutes")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")
    transcript: Optional[str] = None
    summary: Optional[str] = None
    messages: list[VapiMessage] = Field(default_factory=list)
    artifact: Optional[VapiArtifact] = None
    analysis: Optional[VapiAnalysis] = None
    cost: Optional[float] = None
    cost_breakdown: Optional[VapiCostBreakdown] = Field(default=None, alias="costBreakdown")
    metadata: dict[str, Any] = Field(default_factory=dict)
    customer: Optional[VapiNumber] = None
    phone_number: Optional[VapiNumber] = Field(default=None, alias="phoneNumber")

    @field_validator("transcript", mode="before")
    @classmethod
    def _stringify(cls, value):
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, value):
        return value or {}

    @property
    def is_active(self) -> bool:
        return self.status is None or self.status in ACTIVE_CALL_STATES

    @property
    def full_transcript(self) -> str:
        if self.transcript:
            return self.transcript
        if self.artifact and self.artifact.transcript:
            return self.artifact.transcript
        return ""


# ---------------------------------------------------------------------------
# Webhook payloads, tagged on message.type
# ---------------------------------------------------------------------------


class EndOfCallEvent(_VendorModel):
    type: Literal["end-of-call-report", "call-end"]
    call: Optional[VapiCall] = None
    timestamp: Optional[str] = None


class OtherEvent(_VendorModel):
    type: Literal[
        "status-update",
        "transcript",
        "hang",
        "function-call",
        "speech-update",
        "metadata",
        "conversation-update",
    ]
    call: Optional[VapiCall] = None
    timestamp: Optional[str] = None


class VapiWebhook(_VendorModel):
    message: Annotated[Union[EndOfCallEvent, OtherEvent], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def status_from_ended_reason(ended_reason: Optional[str]) -> CallStatus:
    """Map a vendor ended reason onto a call-content outcome."""
    reason = (ended_reason or "").lower()
    if "voicemail" in reason:
        return CallStatus.VOICEMAIL
    if any(marker in reason for marker in ("no-answer", "no_answer", "did-not-answer", "busy")):
        return CallStatus.NO_ANSWER
    return CallStatus.COMPLETED


def _duration_minutes(call: VapiCall) -> float:
    if call.duration_minutes is not None:
        return call.duration_minutes
    if call.started_at and call.ended_at:
        return max(0.0, (call.ended_at - call.started_at).total_seconds() / 60)
    return 0.0


def _messages(call: VapiCall) -> list[CallMessage]:
    raw = call.messages or (call.artifact.messages if call.artifact else [])
    return [
        CallMessage(
            role=msg.role,
            message=msg.message or msg.content or "",
            time=msg.time if msg.time is not None else msg.seconds_from_start,
        )
        for msg in raw
    ]


def normalize_call(call: VapiCall, request: Optional[CallRequest] = None) -> CallResult:
    """
    Convert a vendor call record into the canonical CallResult.

    When the originating request is known it supplies the provider/request
    echo; otherwise the correlation metadata attached at call creation does.
    """
    analysis = call.analysis or VapiAnalysis()
    success_evaluation = analysis.success_evaluation
    cost = call.cost
    if cost is None and call.cost_breakdown:
        cost = call.cost_breakdown.total

    if request is not None:
        provider = ProviderEcho.from_request(request)
        request_echo = RequestEcho.from_request(request)
        provider_id = request.provider_id
        service_request_id = request.service_request_id
    else:
        meta = call.metadata
        phone = ""
        if call.customer and call.customer.number:
            phone = call.customer.number
        provider = ProviderEcho(
            name=meta.get("providerName") or "Unknown Provider",
            phone=phone,
            service=meta.get("serviceNeeded") or "",
            location=meta.get("location") or "",
        )
        request_echo = RequestEcho(
            criteria=meta.get("userCriteria") or "",
            urgency=meta.get("urgency") or "flexible",
        )
        provider_id = meta.get("providerId")
        service_request_id = meta.get("serviceRequestId")

    return CallResult(
        status=status_from_ended_reason(call.ended_reason),
        backend=Backend.DIRECT,
        call_id=call.id,
        duration=_duration_minutes(call),
        ended_reason=call.ended_reason or "unknown",
        transcript=call.full_transcript,
        analysis=CallAnalysis(
            summary=analysis.summary or call.summary or "",
            structured_data=analysis.structured_data or {},
            success_evaluation="" if success_evaluation is None else str(success_evaluation),
        ),
        provider=provider,
        request=request_echo,
        provider_id=provider_id,
        service_request_id=service_request_id,
        cost=cost,
        messages=_messages(call),
    )


def is_data_complete(call: VapiCall) -> bool:
    """True once the call has ended and VAPI has finished transcript + analysis."""
    has_analysis = bool(call.analysis and (call.analysis.summary or call.analysis.structured_data))
    has_transcript = len(call.full_transcript) > MIN_TRANSCRIPT_LENGTH
    return call.status == "ended" and has_analysis and has_transcript


# ---------------------------------------------------------------------------
# REST client
# ---------------------------------------------------------------------------


class VapiClient:
    """Thin async wrapper over the VAPI REST API (`POST /call`, `GET /call/{id}`)."""

    def __init__(
        self,
        api_key: str,
        phone_number_id: str,
        base_url: str = "https://api.vapi.ai",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self._transport,
        )

    async def create_call(self, payload: dict) -> VapiCall:
        """
        Place an outbound call.

        Raises:
            CallPlacementError: VAPI rejected the request or could not be reached
        """
        body = {"phoneNumberId": self.phone_number_id, **payload}
        try:
            async with self._client() as client:
                resp = await client.post("/call", json=body)
        except httpx.HTTPError as e:
            raise CallPlacementError(f"VAPI unreachable: {e}") from e

        if resp.status_code >= 400:
            raise CallPlacementError(
                f"VAPI rejected call ({resp.status_code}): {resp.text[:300]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            # Batch-style responses wrap the call in `data` or a list
            if isinstance(data, list) and data:
                data = data[0]
            elif isinstance(data, dict) and isinstance(data.get("data"), dict):
                data = data["data"]
            return VapiCall.model_validate(data)
        except ValueError as e:
            raise CallPlacementError(f"Unexpected response from VAPI: {e}") from e

    async def get_call(self, call_id: str) -> VapiCall:
        """
        Fetch a call record.

        Raises:
            httpx.HTTPError: transport failure, error status, or a body that
                isn't a call record (httpx.DecodingError)
        """
        async with self._client() as client:
            resp = await client.get(f"/call/{call_id}")
            resp.raise_for_status()
        try:
            return VapiCall.model_validate(resp.json())
        except ValueError as e:
            # pydantic's ValidationError is a ValueError too
            raise httpx.DecodingError(f"Unreadable call record for {call_id}: {e}", request=resp.request) from e
