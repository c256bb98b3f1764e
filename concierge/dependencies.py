"""
Service wiring.

`build_container` assembles every service from config without doing any
I/O; the app stores the container on `app.state` and routes pull it out
with `get_container`.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from openai import AsyncOpenAI

from concierge.backends import DirectCallBackend, OrchestratorBackend
from concierge.batch_jobs import BatchJobManager
from concierge.calling import ProviderCallingService
from concierge.clients.kestra import KestraClient
from concierge.clients.places import PlacesClient
from concierge.clients.vapi import VapiClient
from concierge.config import config
from concierge.database import SessionLocal
from concierge.dispatcher import CallDispatcher
from concierge.enrichment import ProviderEnrichmentService
from concierge.models import Backend
from concierge.notifications import SmsNotifier
from concierge.recommendations import OpenAIScoringOracle, RecommendationEngine
from concierge.research import ResearchService
from concierge.result_cache import ResultCache
from concierge.routing import BackendRouter, RoutingPolicy
from concierge.services import SqlResultStore
from concierge.webhooks import WebhookProcessor


@dataclass
class ServiceContainer:
    cache: ResultCache
    policy: RoutingPolicy
    router: BackendRouter
    dispatcher: CallDispatcher
    calling: ProviderCallingService
    enrichment: ProviderEnrichmentService
    research: ResearchService
    recommendations: RecommendationEngine
    webhooks: WebhookProcessor
    jobs: BatchJobManager
    notifier: SmsNotifier
    store: Optional[SqlResultStore] = None
    vapi: Optional[VapiClient] = None
    kestra: Optional[KestraClient] = None

    async def shutdown(self) -> None:
        await self.jobs.shutdown()
        await self.webhooks.shutdown()
        await self.cache.shutdown()


def build_container(store: Optional[SqlResultStore] = None) -> ServiceContainer:
    cache = ResultCache(
        default_ttl=config.RESULT_CACHE_TTL_SECONDS,
        sweep_interval=config.RESULT_CACHE_SWEEP_SECONDS,
    )
    policy = RoutingPolicy.from_config()
    if store is None:
        store = SqlResultStore(SessionLocal)

    vapi = None
    if config.has_vapi_config():
        vapi = VapiClient(config.VAPI_API_KEY, config.VAPI_PHONE_NUMBER_ID, base_url=config.VAPI_BASE_URL)

    kestra = None
    if config.has_kestra_config():
        kestra = KestraClient(
            config.KESTRA_URL,
            namespace=config.KESTRA_NAMESPACE,
            health_timeout=config.KESTRA_HEALTH_CHECK_TIMEOUT,
            poll_interval=config.CALL_POLL_INTERVAL_SECONDS,
            max_poll_attempts=config.CALL_POLL_MAX_ATTEMPTS,
        )

    backends = {}
    if vapi is not None:
        backends[Backend.DIRECT] = DirectCallBackend(
            vapi,
            cache=cache,
            webhook_url=config.VAPI_WEBHOOK_URL or None,
            model=config.OPENAI_MODEL,
            poll_interval=config.CALL_POLL_INTERVAL_SECONDS,
            max_poll_attempts=config.CALL_POLL_MAX_ATTEMPTS,
        )
    if kestra is not None:
        backends[Backend.ORCHESTRATOR] = OrchestratorBackend(kestra)

    router = BackendRouter(
        orchestrator=kestra,
        health_timeout=config.KESTRA_HEALTH_CHECK_TIMEOUT,
        direct_configured=vapi is not None,
    )
    dispatcher = CallDispatcher(backends)
    calling = ProviderCallingService(
        router, dispatcher, policy=policy, store=store, default_max_concurrent=config.MAX_CONCURRENT_CALLS
    )

    places = PlacesClient(config.GOOGLE_PLACES_API_KEY) if config.has_places_key() else None
    enrichment = ProviderEnrichmentService(places)
    research = ResearchService(router, enrichment, places=places, kestra=kestra, policy=policy, store=store)

    oracle = None
    if config.has_openai_key():
        oracle = OpenAIScoringOracle(AsyncOpenAI(api_key=config.OPENAI_API_KEY), model=config.OPENAI_MODEL)
    recommendations = RecommendationEngine(oracle)

    notifier = SmsNotifier.from_config()
    webhooks = WebhookProcessor(cache, vapi=vapi, store=store)
    jobs = BatchJobManager(
        calling,
        recommendations,
        notifier=notifier,
        retention_seconds=config.BATCH_JOB_RETENTION_SECONDS,
    )

    return ServiceContainer(
        cache=cache,
        policy=policy,
        router=router,
        dispatcher=dispatcher,
        calling=calling,
        enrichment=enrichment,
        research=research,
        recommendations=recommendations,
        webhooks=webhooks,
        jobs=jobs,
        notifier=notifier,
        store=store,
        vapi=vapi,
        kestra=kestra,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
