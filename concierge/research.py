"""
Provider research: find candidate providers for a service request.

Uses the Kestra `research_providers` flow when the router picks the
orchestrator, otherwise Google Places text search followed by enrichment.
"""

from typing import Optional

import httpx
from pydantic import ValidationError

from concierge.clients.kestra import RESEARCH_FLOW, KestraClient
from concierge.clients.places import PlacesClient, PlaceSummary, calculate_distance
from concierge.enrichment import ProviderEnrichmentService
from concierge.logging_config import get_logger
from concierge.models import (
    Backend,
    EnrichmentOptions,
    Provider,
    ResearchMethod,
    ResearchRequest,
    ResearchResult,
    ResearchStatus,
)
from concierge.phone import normalize_phone_to_e164
from concierge.routing import BackendRouter, RoutingPolicy
from concierge.services import SqlResultStore

logger = get_logger(__name__)

SEARCH_RADIUS_METERS = 50000


def filter_providers(providers: list[Provider], request: ResearchRequest) -> list[Provider]:
    """Apply rating, review-count and distance limits. Phone is left to enrichment."""
    kept = []
    for p in providers:
        if request.min_rating > 0 and (p.rating is None or p.rating < request.min_rating):
            continue
        if request.min_review_count > 0 and (p.review_count is None or p.review_count < request.min_review_count):
            continue
        if request.max_distance is not None and p.distance is not None and p.distance > request.max_distance:
            continue
        kept.append(p)
    return kept


def normalize_phones(providers: list[Provider]) -> list[Provider]:
    """E.164 phones where possible; unparseable numbers are left as they were."""
    return [
        p.model_copy(update={"phone": normalize_phone_to_e164(p.phone) or p.phone}) if p.phone else p
        for p in providers
    ]


class ResearchService:
    def __init__(
        self,
        router: BackendRouter,
        enrichment: ProviderEnrichmentService,
        places: Optional[PlacesClient] = None,
        kestra: Optional[KestraClient] = None,
        policy: Optional[RoutingPolicy] = None,
        store: Optional[SqlResultStore] = None,
    ):
        self.router = router
        self.enrichment = enrichment
        self.places = places
        self.kestra = kestra
        self.policy = policy or RoutingPolicy.from_config()
        self.store = store

    async def search(self, request: ResearchRequest) -> ResearchResult:
        """
        Find providers for `request`.

        Raises:
            BackendUnavailable: orchestrator unhealthy under strict mode
        """
        logger.info("research_started", service=request.service, location=request.location, service_request_id=request.service_request_id)

        backend = await self.router.choose_backend(self.policy)
        if backend == Backend.ORCHESTRATOR and self.kestra is not None:
            result = await self._research_with_kestra(request)
            if result.status == ResearchStatus.ERROR and not self.policy.strict_mode:
                logger.warning("kestra_research_failed_fallback", error=result.error)
                result = await self._research_with_places(request)
        else:
            result = await self._research_with_places(request)

        if result.status != ResearchStatus.ERROR:
            result = result.model_copy(update={"providers": normalize_phones(result.providers)})
            if self.store is not None and result.providers:
                await self.store.save_providers(result.providers, request.service_request_id)

        logger.info("research_finished", method=result.method.value, status=result.status.value, providers=len(result.providers))
        return result

    async def _research_with_kestra(self, request: ResearchRequest) -> ResearchResult:
        inputs = {
            "service": request.service,
            "location": request.location,
            "days_needed": request.days_needed,
            "min_rating": request.min_rating,
        }

        def failed(message: str) -> ResearchResult:
            return ResearchResult(status=ResearchStatus.ERROR, method=ResearchMethod.ORCHESTRATOR, error=message)

        try:
            execution_id = await self.kestra.trigger_execution(RESEARCH_FLOW, inputs)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("kestra_research_trigger_failed", error=str(e))
            return failed(f"Kestra trigger failed: {e}")

        status = await self.kestra.poll_execution(execution_id)
        if status is None:
            return failed(f"Kestra execution {execution_id} timed out")
        if not status.succeeded:
            return failed(f"Kestra execution {status.state.lower()}")

        output = status.output("json")
        if not isinstance(output, dict):
            return failed("No output from Kestra execution")

        providers = []
        for index, raw in enumerate(output.get("providers") or []):
            if not isinstance(raw, dict):
                logger.warning("kestra_provider_invalid", index=index, error=f"expected an object, got {type(raw).__name__}")
                continue
            try:
                providers.append(Provider.model_validate({
                    **raw,
                    "id": raw.get("id") or f"kestra-{execution_id}-{index}",
                    "source": "kestra",
                }))
            except ValidationError as e:
                logger.warning("kestra_provider_invalid", index=index, error=str(e))

        return ResearchResult(
            status=ResearchStatus.SUCCESS if providers else ResearchStatus.ERROR,
            method=ResearchMethod.ORCHESTRATOR,
            providers=providers[: request.max_results],
            reasoning=f"Found {len(providers)} providers via Kestra research flow",
            error=None if providers else "Kestra research returned no providers",
            total_found=len(providers),
            filtered_count=min(len(providers), request.max_results),
        )

    def _to_provider(self, place: PlaceSummary, request: ResearchRequest) -> Provider:
        distance = None
        if request.coordinates and place.location:
            distance = calculate_distance(request.coordinates, place.location)
        distance_text = f"{distance} mi" if distance is not None else None
        return Provider(
            id=place.place_id,
            name=place.name,
            address=place.address,
            rating=place.rating,
            review_count=place.review_count,
            distance=distance,
            distance_text=distance_text,
            place_id=place.place_id,
            source=ResearchMethod.PLACES.value,
            reason=f"Highly rated {request.service} in {request.location}"
            + (f" ({distance_text})" if distance_text else ""),
        )

    async def _research_with_places(self, request: ResearchRequest) -> ResearchResult:
        if self.places is None:
            return ResearchResult(
                status=ResearchStatus.ERROR,
                method=ResearchMethod.PLACES,
                error="Google Places API key not configured",
            )

        try:
            places = await self.places.text_search(
                f"{request.service} near {request.location}",
                coordinates=request.coordinates,
                radius_meters=SEARCH_RADIUS_METERS,
            )
        except (httpx.HTTPError, ValueError) as e:
            # ValueError: a body that is not JSON
            logger.error("places_search_failed", error=str(e))
            return ResearchResult(status=ResearchStatus.ERROR, method=ResearchMethod.PLACES, error=f"Places search failed: {e}")

        found = [self._to_provider(place, request) for place in places]
        filtered = filter_providers(found, request)
        filtered.sort(key=lambda p: (p.distance is None, p.distance or 0.0))
        top = filtered[: request.max_results]

        if not top:
            return ResearchResult(
                status=ResearchStatus.ERROR,
                method=ResearchMethod.PLACES,
                error="No providers matched the search criteria",
                total_found=len(found),
                filtered_count=0,
            )

        enriched = await self.enrichment.enrich(top, EnrichmentOptions(
            coordinates=request.coordinates,
            require_phone=request.require_phone,
            min_enriched_results=request.min_enriched_results,
            max_to_enrich=request.max_results,
        ))
        stats = enriched.stats
        status = ResearchStatus.SUCCESS
        if request.require_phone and any(not p.phone for p in enriched.providers):
            # Below the phone floor some returned providers aren't callable
            status = ResearchStatus.PARTIAL

        return ResearchResult(
            status=status,
            method=ResearchMethod.PLACES,
            providers=enriched.providers,
            reasoning=(
                f"Found {len(top)} providers via Google Places API ({len(found)} total, {len(filtered)} after filtering)"
                f" | Enriched: {stats.enriched_count}, with phone: {stats.with_phone_count}"
            ),
            total_found=len(found),
            filtered_count=len(enriched.providers),
        )
