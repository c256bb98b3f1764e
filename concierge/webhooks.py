"""
VAPI webhook processing.

End-of-call events are cached right away as `partial`, then completed from
the VAPI REST API in a tracked background task:

    partial -> fetching -> complete | fetch_failed

Whatever happens to the task, the cache entry ends in a terminal state.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

import httpx

from concierge.clients.vapi import VapiCall, VapiClient, is_data_complete, normalize_call
from concierge.logging_config import get_logger
from concierge.models import CallResult, DataStatus
from concierge.result_cache import ResultCache
from concierge.services import SqlResultStore

logger = get_logger(__name__)

FETCH_DELAYS = (3.0, 5.0, 8.0)


class WebhookProcessor:
    def __init__(
        self,
        cache: ResultCache,
        vapi: Optional[VapiClient] = None,
        store: Optional[SqlResultStore] = None,
        fetch_delays: Sequence[float] = FETCH_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cache = cache
        self.vapi = vapi
        self.store = store
        self.fetch_delays = tuple(fetch_delays)
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def handle_end_of_call(self, call: VapiCall) -> CallResult:
        """Cache the webhook's view of the call and start background completion."""
        result = normalize_call(call).model_copy(update={
            "data_status": DataStatus.PARTIAL,
            "webhook_received_at": datetime.now(timezone.utc),
        })
        self.cache.set(call.id, result)
        logger.info(
            "webhook_result_cached",
            call_id=call.id,
            status=result.status.value,
            duration=result.duration,
            cost=result.cost,
        )

        if self.vapi is None:
            logger.warning("webhook_enrichment_skipped", call_id=call.id, reason="vapi_not_configured")
            self.cache.update_fetch_status(call.id, DataStatus.COMPLETE)
            await self._persist(result)
            return result

        task = asyncio.create_task(self._run_enrichment(call.id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return result

    async def _run_enrichment(self, call_id: str) -> None:
        try:
            await self.enrich_from_api(call_id)
        except asyncio.CancelledError:
            self.cache.update_fetch_status(call_id, DataStatus.FETCH_FAILED, "Enrichment cancelled")
            raise
        except Exception as e:
            logger.exception("webhook_enrichment_crashed", call_id=call_id)
            self.cache.update_fetch_status(call_id, DataStatus.FETCH_FAILED, str(e))

    async def enrich_from_api(self, call_id: str) -> Optional[CallResult]:
        """
        Re-fetch the call from VAPI until transcript and analysis are in.

        Returns the completed result, or None after the last attempt, in
        which case the entry keeps its partial data and is marked fetch_failed.
        """
        for attempt, delay in enumerate(self.fetch_delays, start=1):
            self.cache.update_fetch_status(call_id, DataStatus.FETCHING)
            await self._sleep(delay)

            try:
                call = await self.vapi.get_call(call_id)
            except httpx.HTTPError as e:
                logger.warning("webhook_enrichment_fetch_failed", call_id=call_id, attempt=attempt, error=str(e))
                continue

            if not is_data_complete(call):
                logger.info("webhook_enrichment_incomplete", call_id=call_id, attempt=attempt)
                continue

            fetched = normalize_call(call)
            merged = self.cache.merge_enriched(call_id, fetched)
            if merged is None:
                # Entry expired or was deleted meanwhile; store the fresh copy
                merged = fetched.model_copy(update={
                    "data_status": DataStatus.COMPLETE,
                    "fetched_at": datetime.now(timezone.utc),
                    "fetch_attempts": attempt,
                })
                self.cache.set(call_id, merged)

            logger.info("webhook_result_enriched", call_id=call_id, attempt=attempt, transcript_length=len(merged.transcript))
            await self._persist(merged)
            return merged

        logger.error("webhook_enrichment_exhausted", call_id=call_id, attempts=len(self.fetch_delays))
        self.cache.update_fetch_status(call_id, DataStatus.FETCH_FAILED, "Max attempts reached")
        return None

    async def _persist(self, result: CallResult) -> None:
        if self.store is None:
            return
        if not (result.provider_id or result.service_request_id):
            logger.debug("call_result_not_linked", call_id=result.call_id)
            return
        await self.store.save_results([result])

    async def drain(self) -> None:
        """Wait until in-flight enrichment tasks finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
