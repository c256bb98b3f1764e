"""
Provider enrichment: fills in phone, hours, website and distance from
Google Places details.

Enrichment never drops a provider and never fails the caller. A provider
whose lookup fails is returned as it came in.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional, Sequence

from concierge.clients.places import PlacesClient, calculate_distance
from concierge.errors import EnrichmentDegradation
from concierge.logging_config import get_logger
from concierge.models import (
    EnrichmentOptions,
    EnrichmentResult,
    EnrichmentStats,
    Provider,
)

logger = get_logger(__name__)


def apply_phone_floor(providers: list[Provider], min_results: int) -> tuple[list[Provider], int, bool]:
    """
    Keep only providers with a phone, unless fewer than `min_results` have one.

    Returns (providers, with_phone_count, filter_applied). Below the floor the
    full list comes back untouched: unverified candidates beat no candidates.
    """
    with_phone = [p for p in providers if p.phone]
    if len(with_phone) < min_results:
        logger.warning("phone_filter_skipped", with_phone=len(with_phone), minimum=min_results)
        return providers, len(with_phone), False
    return with_phone, len(with_phone), True


class ProviderEnrichmentService:
    def __init__(
        self,
        places: Optional[PlacesClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.places = places
        self._sleep = sleep

    @property
    def available(self) -> bool:
        return self.places is not None

    async def _enrich_one(self, provider: Provider, options: EnrichmentOptions) -> Provider:
        details = await self.places.get_details(provider.place_id)
        if details is None:
            raise EnrichmentDegradation(f"No details for place {provider.place_id}")

        update = {
            "phone": details.phone or provider.phone,
            "international_phone": details.international_phone or provider.international_phone,
            "is_open_now": details.open_now if details.open_now is not None else provider.is_open_now,
            "hours_of_operation": details.weekday_text or provider.hours_of_operation,
            "website": details.website or provider.website,
        }
        if options.coordinates and details.location:
            distance = calculate_distance(options.coordinates, details.location)
            update["distance"] = distance
            update["distance_text"] = f"{distance} mi"
        return provider.model_copy(update=update)

    async def _enrich_batch(
        self, batch: Sequence[Provider], options: EnrichmentOptions
    ) -> list[Optional[Provider]]:
        outcomes = await asyncio.gather(
            *(self._enrich_one(p, options) for p in batch),
            return_exceptions=True,
        )
        enriched = []
        for provider, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("provider_enrichment_failed", provider=provider.name, place_id=provider.place_id, error=str(outcome))
                enriched.append(None)
            else:
                enriched.append(outcome)
        return enriched

    async def enrich(
        self,
        providers: Sequence[Provider],
        options: Optional[EnrichmentOptions] = None,
    ) -> EnrichmentResult:
        options = options or EnrichmentOptions()
        started = time.monotonic()
        providers = list(providers)
        stats = EnrichmentStats(total_input=len(providers))

        def finish(result: list[Provider]) -> EnrichmentResult:
            stats.duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                "enrichment_finished",
                total_input=stats.total_input,
                enriched=stats.enriched_count,
                failed=stats.failed_count,
                with_phone=stats.with_phone_count,
                returned=len(result),
            )
            return EnrichmentResult(providers=result, stats=stats)

        if not self.available:
            logger.warning("enrichment_skipped", reason="places_not_configured")
            stats.with_phone_count = sum(1 for p in providers if p.phone)
            return finish(providers)

        lookup_indices = [i for i, p in enumerate(providers) if p.place_id]
        stats.skipped_no_place_id = len(providers) - len(lookup_indices)
        lookup_indices = lookup_indices[: options.max_to_enrich]

        result = list(providers)
        size = options.batch_size
        for start in range(0, len(lookup_indices), size):
            if start:
                await self._sleep(options.batch_delay_seconds)
            batch_indices = lookup_indices[start:start + size]
            enriched = await self._enrich_batch([providers[i] for i in batch_indices], options)
            for i, provider in zip(batch_indices, enriched):
                if provider is None:
                    stats.failed_count += 1
                else:
                    result[i] = provider
                    stats.enriched_count += 1

        if options.require_phone:
            result, stats.with_phone_count, stats.phone_filter_applied = apply_phone_floor(
                result, options.min_enriched_results
            )
        else:
            stats.with_phone_count = sum(1 for p in result if p.phone)

        return finish(result)
