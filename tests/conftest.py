import os

# In-memory database for the whole test session; must be set before
# concierge.database creates its engine.
os.environ["DATABASE_URL"] = "sqlite://"

import pytest

from concierge.models import (
    Availability,
    Backend,
    CallAnalysis,
    CallOutcome,
    CallRequest,
    CallResult,
    CallStatus,
    ProviderEcho,
    RequestEcho,
    StructuredCallData,
)


@pytest.fixture(autouse=True)
def _safe_test_config(monkeypatch):
    """Force deterministic, offline-safe config for tests.

    The repo loads .env on import; these overrides keep every client
    (VAPI, Kestra, Places, OpenAI, Twilio) unconfigured unless a test
    explicitly opts in.
    """
    from concierge.config import Config, config

    overrides = {
        "VAPI_API_KEY": "",
        "VAPI_PHONE_NUMBER_ID": "",
        "VAPI_WEBHOOK_URL": "",
        "KESTRA_ENABLED": False,
        "KESTRA_URL": "",
        "KESTRA_STRICT_MODE": False,
        "GOOGLE_PLACES_API_KEY": "",
        "OPENAI_API_KEY": "",
        "TWILIO_ACCOUNT_SID": "",
        "TWILIO_AUTH_TOKEN": "",
        "TWILIO_PHONE_NUMBER": "",
    }
    for name, value in overrides.items():
        # Patch the class only: the global instance has no attributes of its own
        # and reads through to Config, so tests can re-patch Config afterwards.
        monkeypatch.setattr(Config, name, value, raising=False)

    return config


async def _no_sleep(_seconds):
    return None


@pytest.fixture
def no_sleep():
    """Drop-in for asyncio.sleep that returns immediately."""
    return _no_sleep


@pytest.fixture
def make_request():
    def _make(index: int = 0, **fields) -> CallRequest:
        defaults = {
            "provider_name": f"Provider {index}",
            "provider_phone": f"+1864555{index:04d}",
            "service_needed": "plumbing",
            "user_criteria": "licensed, available this week",
            "location": "Greenville, SC",
            "provider_id": f"prov-{index}",
            "service_request_id": "req-1",
        }
        defaults.update(fields)
        return CallRequest(**defaults)

    return _make


@pytest.fixture
def make_result():
    """Build a CallResult for a request with the given status and structured data."""

    def _make(request: CallRequest, status: CallStatus = CallStatus.COMPLETED, backend: Backend = Backend.DIRECT, **data) -> CallResult:
        if status == CallStatus.ERROR:
            return CallResult.for_error(request, backend, data.get("notes") or "boom")
        structured = {
            "availability": Availability.AVAILABLE,
            "earliest_availability": "Tomorrow 9am",
            "estimated_rate": "$120/hour",
            "all_criteria_met": True,
            "call_outcome": CallOutcome.POSITIVE,
        }
        structured.update(data)
        return CallResult(
            status=status,
            backend=backend,
            call_id=f"call-{request.provider_id}",
            duration=2.5,
            ended_reason="assistant-ended-call",
            transcript="AI: Hi, is this the plumber? User: Yes, we can come by tomorrow morning.",
            analysis=CallAnalysis(summary="Available tomorrow", structured_data=StructuredCallData(**structured)),
            provider=ProviderEcho.from_request(request),
            request=RequestEcho.from_request(request),
            provider_id=request.provider_id,
            service_request_id=request.service_request_id,
        )

    return _make


class ScriptedBackend:
    """Call backend that answers every request with the same status."""

    def __init__(self, backend: Backend, build_result, status: CallStatus = CallStatus.COMPLETED):
        self.backend = backend
        self.build_result = build_result
        self.status = status
        self.placed = []

    async def place_call(self, request: CallRequest) -> CallResult:
        self.placed.append(request)
        return self.build_result(request, status=self.status, backend=self.backend)


class DownOrchestrator:
    async def health_check(self) -> bool:
        return False


@pytest.fixture
def make_container(make_result, no_sleep):
    """Wire a ServiceContainer around scripted backends; nothing touches the network."""
    from concierge.batch_jobs import BatchJobManager
    from concierge.calling import ProviderCallingService
    from concierge.dependencies import ServiceContainer
    from concierge.dispatcher import CallDispatcher
    from concierge.enrichment import ProviderEnrichmentService
    from concierge.notifications import SmsNotifier
    from concierge.recommendations import RecommendationEngine
    from concierge.research import ResearchService
    from concierge.result_cache import ResultCache
    from concierge.routing import BackendRouter, RoutingPolicy
    from concierge.webhooks import WebhookProcessor

    def _make(policy=None, orchestrator=None, places=None, status=CallStatus.COMPLETED, notifier=None):
        policy = policy or RoutingPolicy()
        cache = ResultCache()
        direct = ScriptedBackend(Backend.DIRECT, make_result, status=status)
        router = BackendRouter(orchestrator, direct_configured=True)
        dispatcher = CallDispatcher({Backend.DIRECT: direct}, sleep=no_sleep)
        calling = ProviderCallingService(router, dispatcher, policy=policy)
        enrichment = ProviderEnrichmentService(places, sleep=no_sleep)
        recommendations = RecommendationEngine(None)
        notifier = notifier or SmsNotifier()
        return ServiceContainer(
            cache=cache,
            policy=policy,
            router=router,
            dispatcher=dispatcher,
            calling=calling,
            enrichment=enrichment,
            research=ResearchService(router, enrichment, places=places, policy=policy),
            recommendations=recommendations,
            webhooks=WebhookProcessor(cache, vapi=None, sleep=no_sleep),
            jobs=BatchJobManager(calling, recommendations, notifier=notifier),
            notifier=notifier,
        )

    return _make


@pytest.fixture
def down_orchestrator():
    return DownOrchestrator()


@pytest.fixture
def client(make_container):
    """TestClient over an app with the default offline container."""
    from fastapi.testclient import TestClient

    from concierge.main import create_app

    with TestClient(create_app(make_container())) as test_client:
        yield test_client
