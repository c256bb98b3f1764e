"""Data models for provider outreach.

API-facing models serialize with camelCase aliases and accept either
camelCase or snake_case input. StructuredCallData keeps the snake_case keys
the voice assistant produces.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from concierge.errors import CallRequestValidationError
from concierge.phone import E164_RE, normalize_phone_to_e164


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Urgency(str, enum.Enum):
    IMMEDIATE = "immediate"
    WITHIN_24_HOURS = "within_24_hours"
    WITHIN_2_DAYS = "within_2_days"
    FLEXIBLE = "flexible"


class Backend(str, enum.Enum):
    """Call-placing execution path."""
    ORCHESTRATOR = "kestra"
    DIRECT = "direct_vapi"


class CallStatus(str, enum.Enum):
    COMPLETED = "completed"
    NO_ANSWER = "no_answer"
    VOICEMAIL = "voicemail"
    TIMEOUT = "timeout"
    ERROR = "error"


class Availability(str, enum.Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    CALLBACK_REQUESTED = "callback_requested"
    UNCLEAR = "unclear"


class CallOutcome(str, enum.Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    NO_ANSWER = "no_answer"
    VOICEMAIL = "voicemail"


class DataStatus(str, enum.Enum):
    """How complete a webhook-delivered result is."""
    PARTIAL = "partial"
    FETCHING = "fetching"
    COMPLETE = "complete"
    FETCH_FAILED = "fetch_failed"


_TRUE_STRINGS = {"true", "yes", "1", "y"}


def _as_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


# ---------------------------------------------------------------------------
# Providers & research
# ---------------------------------------------------------------------------


class Coordinates(CamelModel):
    latitude: float
    longitude: float


class Provider(CamelModel):
    """A candidate service provider discovered by research."""
    id: str
    name: str
    phone: Optional[str] = None
    international_phone: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    distance: Optional[float] = None  # miles
    distance_text: Optional[str] = None
    is_open_now: Optional[bool] = None
    hours_of_operation: list[str] = Field(default_factory=list)
    place_id: Optional[str] = None
    website: Optional[str] = None
    source: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("hours_of_operation", mode="before")
    @classmethod
    def _split_hours(cls, value):
        # Some search paths return hours as one comma-joined string.
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class ResearchStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class ResearchMethod(str, enum.Enum):
    ORCHESTRATOR = "kestra"
    PLACES = "google_places"


class ResearchRequest(CamelModel):
    """Request model for /providers/research."""
    service: str = Field(min_length=1)
    location: str = Field(min_length=1)
    coordinates: Optional[Coordinates] = None
    days_needed: int = 7
    min_rating: float = 0.0
    min_review_count: int = 0
    max_distance: Optional[float] = None  # miles
    require_phone: bool = True
    max_results: int = Field(default=10, ge=1, le=20)
    min_enriched_results: int = Field(default=3, ge=0)
    service_request_id: Optional[str] = None


class ResearchResult(CamelModel):
    model_config = ConfigDict(frozen=True)

    status: ResearchStatus
    method: ResearchMethod
    providers: list[Provider] = Field(default_factory=list)
    reasoning: Optional[str] = None
    error: Optional[str] = None
    total_found: Optional[int] = None
    filtered_count: Optional[int] = None


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


class EnrichmentOptions(CamelModel):
    coordinates: Optional[Coordinates] = None
    min_enriched_results: int = 3
    max_to_enrich: int = 10
    require_phone: bool = True
    batch_size: int = Field(default=5, ge=1)
    batch_delay_seconds: float = 0.2


class EnrichmentStats(CamelModel):
    total_input: int = 0
    enriched_count: int = 0
    failed_count: int = 0
    with_phone_count: int = 0
    skipped_no_place_id: int = 0
    phone_filter_applied: bool = False
    duration_ms: int = 0


class EnrichmentResult(CamelModel):
    providers: list[Provider]
    stats: EnrichmentStats


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


class CallScript(CamelModel):
    """Pre-built script that replaces the default assistant prompt."""
    system_prompt: str
    first_message: str
    closing_script: str = ""


class CallRequest(CamelModel):
    """One outbound call. Immutable; the phone is E.164 or the model won't build."""
    model_config = ConfigDict(frozen=True)

    provider_name: str = Field(min_length=1)
    provider_phone: str
    service_needed: str = Field(min_length=1)
    user_criteria: str = ""
    problem_description: Optional[str] = None
    client_name: Optional[str] = None
    location: str = ""
    client_address: Optional[str] = None
    urgency: Urgency = Urgency.FLEXIBLE
    service_request_id: Optional[str] = None
    provider_id: Optional[str] = None
    script: Optional[CallScript] = None

    @field_validator("provider_phone")
    @classmethod
    def _require_e164(cls, value: str) -> str:
        value = (value or "").strip()
        if not E164_RE.match(value):
            raise ValueError("Phone must be E.164 format (+<country code><number>)")
        return value

    @classmethod
    def for_provider(
        cls,
        name: str,
        phone: Optional[str],
        service_needed: str,
        provider_id: Optional[str] = None,
        **fields: Any,
    ) -> "CallRequest":
        """Build a request from a raw provider phone, normalizing it first.

        Raises:
            CallRequestValidationError: phone can't be normalized or a field is invalid
        """
        normalized = normalize_phone_to_e164(phone)
        if not normalized:
            raise CallRequestValidationError(f"Provider {name!r} has no dialable phone number: {phone!r}")
        try:
            return cls(
                provider_name=name,
                provider_phone=normalized,
                service_needed=service_needed,
                provider_id=provider_id,
                **fields,
            )
        except ValidationError as e:
            raise CallRequestValidationError(str(e)) from e


class StructuredCallData(BaseModel):
    """What the voice assistant extracted from the conversation."""
    model_config = ConfigDict(extra="ignore")

    availability: Availability = Availability.UNCLEAR
    earliest_availability: str = ""
    estimated_rate: str = ""
    single_person_found: bool = False
    technician_name: Optional[str] = None
    all_criteria_met: bool = False
    criteria_details: dict[str, bool] = Field(default_factory=dict)
    call_outcome: Optional[CallOutcome] = None
    recommended: bool = False
    disqualified: bool = False
    disqualification_reason: str = ""
    notes: str = ""

    @field_validator("availability", mode="before")
    @classmethod
    def _coerce_availability(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            if value in Availability._value2member_map_:
                return value
        if isinstance(value, Availability):
            return value
        return Availability.UNCLEAR

    @field_validator("call_outcome", mode="before")
    @classmethod
    def _coerce_outcome(cls, value):
        if isinstance(value, str):
            value = value.strip().lower().replace("-", "_")
            if value in CallOutcome._value2member_map_:
                return value
            return None
        if isinstance(value, CallOutcome):
            return value
        return None

    @field_validator(
        "single_person_found", "all_criteria_met", "recommended", "disqualified",
        mode="before",
    )
    @classmethod
    def _coerce_bool(cls, value):
        return _as_bool(value)

    @field_validator("earliest_availability", "estimated_rate", "disqualification_reason", "notes", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else str(value)

    @field_validator("criteria_details", mode="before")
    @classmethod
    def _coerce_criteria(cls, value):
        if not isinstance(value, dict):
            return {}
        return {str(k): _as_bool(v) for k, v in value.items()}


class CallAnalysis(CamelModel):
    summary: str = ""
    structured_data: StructuredCallData = Field(default_factory=StructuredCallData)
    success_evaluation: str = ""

    @field_validator("summary", "success_evaluation", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else str(value)

    @field_validator("structured_data", mode="before")
    @classmethod
    def _none_to_default(cls, value):
        return {} if value is None else value


class ProviderEcho(CamelModel):
    name: str = "Unknown"
    phone: str = ""
    service: str = ""
    location: str = ""

    @classmethod
    def from_request(cls, request: CallRequest) -> "ProviderEcho":
        return cls(
            name=request.provider_name,
            phone=request.provider_phone,
            service=request.service_needed,
            location=request.location,
        )


class RequestEcho(CamelModel):
    criteria: str = ""
    urgency: str = Urgency.FLEXIBLE.value

    @classmethod
    def from_request(cls, request: CallRequest) -> "RequestEcho":
        return cls(criteria=request.user_criteria, urgency=request.urgency.value)


class CallMessage(CamelModel):
    role: str = "unknown"
    message: str = ""
    time: Optional[float] = None


class CallResult(CamelModel):
    """Uniform outcome of one CallRequest, whichever backend placed it."""
    status: CallStatus
    backend: Backend
    call_id: str = ""  # empty if the call never reached the automation service
    execution_id: Optional[str] = None
    duration: float = 0.0  # minutes
    ended_reason: str = ""
    transcript: str = ""
    analysis: CallAnalysis = Field(default_factory=CallAnalysis)
    provider: ProviderEcho = Field(default_factory=ProviderEcho)
    request: RequestEcho = Field(default_factory=RequestEcho)
    provider_id: Optional[str] = None
    service_request_id: Optional[str] = None
    cost: Optional[float] = None
    error: Optional[str] = None
    messages: list[CallMessage] = Field(default_factory=list)

    # Webhook path bookkeeping
    data_status: Optional[DataStatus] = None
    webhook_received_at: Optional[datetime] = None
    fetched_at: Optional[datetime] = None
    fetch_attempts: int = 0
    fetch_error: Optional[str] = None

    @property
    def placed(self) -> bool:
        """False when the call was never successfully placed."""
        return self.status != CallStatus.ERROR

    @property
    def structured(self) -> StructuredCallData:
        return self.analysis.structured_data

    @classmethod
    def for_error(
        cls,
        request: CallRequest,
        backend: Backend,
        message: str,
        ended_reason: str = "api_error",
        execution_id: Optional[str] = None,
    ) -> "CallResult":
        return cls(
            status=CallStatus.ERROR,
            backend=backend,
            execution_id=execution_id,
            ended_reason=ended_reason,
            analysis=CallAnalysis(
                structured_data=StructuredCallData(
                    availability=Availability.UNCLEAR,
                    disqualified=True,
                    disqualification_reason=message,
                    call_outcome=CallOutcome.NEGATIVE,
                    notes=message,
                )
            ),
            provider=ProviderEcho.from_request(request),
            request=RequestEcho.from_request(request),
            provider_id=request.provider_id,
            service_request_id=request.service_request_id,
            error=message,
        )

    @classmethod
    def for_timeout(
        cls,
        request: CallRequest,
        backend: Backend,
        message: str,
        call_id: str = "",
        execution_id: Optional[str] = None,
    ) -> "CallResult":
        return cls(
            status=CallStatus.TIMEOUT,
            backend=backend,
            call_id=call_id,
            execution_id=execution_id,
            ended_reason="timeout",
            provider=ProviderEcho.from_request(request),
            request=RequestEcho.from_request(request),
            provider_id=request.provider_id,
            service_request_id=request.service_request_id,
            error=message,
        )

    def with_request(self, request: CallRequest) -> "CallResult":
        """Copy with the provider/request echo and correlation ids taken from `request`."""
        return self.model_copy(update={
            "provider": ProviderEcho.from_request(request),
            "request": RequestEcho.from_request(request),
            "provider_id": request.provider_id or self.provider_id,
            "service_request_id": request.service_request_id or self.service_request_id,
        })


class DispatchError(CamelModel):
    """A request whose call was never placed."""
    index: int
    provider: str
    phone: str
    error: str


class BatchStats(CamelModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    timeout: int = 0
    no_answer: int = 0
    voicemail: int = 0
    windows: list[int] = Field(default_factory=list)
    duration_ms: int = 0
    average_call_duration: float = 0.0  # minutes


class BatchCallResult(CamelModel):
    success: bool
    backend: Backend
    results: list[CallResult]
    stats: BatchStats
    errors: list[DispatchError] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------


class ScoringWeights(CamelModel):
    """Relative weight of each scoring factor. Must sum to 1.0."""
    availability_urgency: float = Field(default=0.30, ge=0)
    rate_competitiveness: float = Field(default=0.20, ge=0)
    all_criteria_met: float = Field(default=0.25, ge=0)
    call_quality: float = Field(default=0.15, ge=0)
    professionalism: float = Field(default=0.10, ge=0)

    @model_validator(mode="after")
    def _check_total(self):
        total = (
            self.availability_urgency
            + self.rate_competitiveness
            + self.all_criteria_met
            + self.call_quality
            + self.professionalism
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0 (got {total:.4f})")
        return self


DEFAULT_SCORING_WEIGHTS = ScoringWeights()


def _clamp_score(value: Any) -> float:
    return max(0.0, min(100.0, float(value)))


class ProviderRecommendation(CamelModel):
    provider_id: Optional[str] = None
    provider_name: str
    phone: str = ""
    score: float
    reasoning: str = ""
    criteria_matched: list[str] = Field(default_factory=list)
    earliest_availability: Optional[str] = None
    estimated_rate: Optional[str] = None
    call_quality_score: float = 0.0
    professionalism_score: float = 0.0

    @field_validator("score", "call_quality_score", "professionalism_score", mode="before")
    @classmethod
    def _clamp(cls, value):
        return _clamp_score(value)


class RecommendationStats(CamelModel):
    total_calls: int = 0
    qualified_providers: int = 0
    disqualified_providers: int = 0
    failed_calls: int = 0


class RecommendationResponse(CamelModel):
    recommendations: list[ProviderRecommendation] = Field(default_factory=list)
    overall_recommendation: str = ""
    analysis_notes: str = ""
    stats: RecommendationStats = Field(default_factory=RecommendationStats)
    used_fallback: bool = False


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------


class BatchProvider(CamelModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    id: Optional[str] = None


class BatchCallRequest(CamelModel):
    """Request model for /providers/batch-call and /providers/batch-call-async."""
    providers: list[BatchProvider] = Field(min_length=1)
    service_needed: str = Field(min_length=1)
    user_criteria: str = ""
    problem_description: Optional[str] = None
    client_name: Optional[str] = None
    location: str = ""
    client_address: Optional[str] = None
    urgency: Urgency = Urgency.FLEXIBLE
    service_request_id: Optional[str] = None
    max_concurrent: int = Field(default=5, ge=1, le=20)
    script: Optional[CallScript] = None
    notify_phone: Optional[str] = None  # SMS the recommendations here when ready

    def to_call_requests(self) -> list[CallRequest]:
        """Build one CallRequest per provider (raises CallRequestValidationError)."""
        return [
            CallRequest.for_provider(
                name=provider.name,
                phone=provider.phone,
                service_needed=self.service_needed,
                provider_id=provider.id,
                user_criteria=self.user_criteria,
                problem_description=self.problem_description,
                client_name=self.client_name,
                location=self.location,
                client_address=self.client_address,
                urgency=self.urgency,
                service_request_id=self.service_request_id,
                script=self.script,
            )
            for provider in self.providers
        ]


class SingleCallRequest(CamelModel):
    """Request model for /providers/call. The phone may be in any dialable format."""
    provider_name: str = Field(min_length=1)
    provider_phone: str = Field(min_length=1)
    service_needed: str = Field(min_length=1)
    provider_id: Optional[str] = None
    user_criteria: str = ""
    problem_description: Optional[str] = None
    client_name: Optional[str] = None
    location: str = ""
    client_address: Optional[str] = None
    urgency: Urgency = Urgency.FLEXIBLE
    service_request_id: Optional[str] = None
    script: Optional[CallScript] = None

    def to_call_request(self) -> CallRequest:
        fields = self.model_dump(exclude={"provider_name", "provider_phone", "service_needed", "provider_id"})
        return CallRequest.for_provider(
            name=self.provider_name,
            phone=self.provider_phone,
            service_needed=self.service_needed,
            provider_id=self.provider_id,
            **fields,
        )


class RecommendRequest(CamelModel):
    """Request model for /providers/recommend."""
    call_results: list[CallResult]
    original_criteria: str = ""
    service_request_id: Optional[str] = None
    weights: Optional[ScoringWeights] = None
