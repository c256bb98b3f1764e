"""
Call backends: the two interchangeable ways of placing one call.

Every backend turns one CallRequest into exactly one CallResult. Placement
failures come back as `error` results; nothing raises out of `place_call`
for a vendor-side problem.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from concierge.assistant_config import build_assistant_config
from concierge.clients.kestra import CONTACT_FLOW, KestraClient
from concierge.clients.vapi import VapiCall, VapiClient, is_data_complete, normalize_call
from concierge.errors import CallPlacementError
from concierge.logging_config import get_logger
from concierge.models import Backend, CallRequest, CallResult, DataStatus
from concierge.result_cache import ResultCache

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Wait between re-fetches while VAPI finishes transcript/analysis
ANALYSIS_RETRY_DELAYS = (3.0, 5.0, 8.0)

# States after which a cached webhook result won't get any better
_SETTLED_DATA = {None, DataStatus.COMPLETE, DataStatus.FETCH_FAILED}


class CallBackend(Protocol):
    backend: Backend

    async def place_call(self, request: CallRequest) -> CallResult:
        ...


class DirectCallBackend:
    """
    Places calls straight through the VAPI REST API.

    With a webhook URL and a result cache, the call result is first awaited
    on the cache (filled by the webhook route). If nothing ever shows up the
    backend falls back to polling `GET /call/{id}`.
    """

    backend = Backend.DIRECT

    def __init__(
        self,
        vapi: VapiClient,
        cache: Optional[ResultCache] = None,
        webhook_url: Optional[str] = None,
        model: str = "gpt-4o-mini",
        poll_interval: float = 5.0,
        max_poll_attempts: int = 36,
        webhook_poll_interval: float = 2.0,
        webhook_timeout: float = 300.0,
        webhook_give_up_after: float = 60.0,
        analysis_retry_delays: Sequence[float] = ANALYSIS_RETRY_DELAYS,
        sleep: Sleep = asyncio.sleep,
    ):
        self.vapi = vapi
        self.cache = cache
        self.webhook_url = webhook_url
        self.model = model
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.webhook_poll_interval = webhook_poll_interval
        self.webhook_timeout = webhook_timeout
        self.webhook_give_up_after = webhook_give_up_after
        self.analysis_retry_delays = tuple(analysis_retry_delays)
        self._sleep = sleep

    @property
    def uses_webhook(self) -> bool:
        return bool(self.webhook_url) and self.cache is not None

    async def place_call(self, request: CallRequest) -> CallResult:
        payload = build_assistant_config(
            request,
            model=self.model,
            webhook_url=self.webhook_url if self.uses_webhook else None,
        )
        try:
            call = await self.vapi.create_call(payload)
        except CallPlacementError as e:
            logger.error(
                "call_placement_failed",
                provider=request.provider_name,
                status_code=e.status_code,
                error=str(e),
            )
            return CallResult.for_error(request, self.backend, str(e), ended_reason="call_placement_failed")

        logger.info("call_placed", call_id=call.id, provider=request.provider_name, webhook=self.uses_webhook)

        if self.uses_webhook:
            cached = await self.wait_for_webhook_result(call.id)
            if cached is not None:
                return cached.with_request(request)

        return await self.poll_for_result(call.id, request)

    async def wait_for_webhook_result(self, call_id: str) -> Optional[CallResult]:
        """
        Poll the result cache until the webhook result for `call_id` settles.

        Returns None (meaning: fall back to REST polling) on timeout, or early
        when no entry has appeared at all within the give-up window, which
        usually means the webhook isn't reachable.
        """
        max_checks = max(1, int(self.webhook_timeout / self.webhook_poll_interval))
        give_up_checks = max(1, int(self.webhook_give_up_after / self.webhook_poll_interval))
        seen = False
        misses = 0

        for _ in range(max_checks):
            result = self.cache.get(call_id)
            if result is None:
                misses += 1
                if not seen and misses >= give_up_checks:
                    logger.warning("webhook_result_missing", call_id=call_id, checks=misses)
                    return None
            else:
                seen = True
                misses = 0
                if result.data_status in _SETTLED_DATA:
                    logger.info("webhook_result_ready", call_id=call_id, data_status=result.data_status)
                    return result
            await self._sleep(self.webhook_poll_interval)

        logger.warning("webhook_result_timeout", call_id=call_id, timeout_seconds=self.webhook_timeout)
        return None

    async def poll_for_result(self, call_id: str, request: CallRequest) -> CallResult:
        """Poll VAPI until the call ends; past the attempt bound the result is `timeout`."""
        for attempt in range(1, self.max_poll_attempts + 1):
            try:
                call = await self.vapi.get_call(call_id)
            except httpx.HTTPError as e:
                logger.warning("call_poll_failed", call_id=call_id, attempt=attempt, error=str(e))
                call = None

            if call is not None:
                logger.debug("call_polled", call_id=call_id, status=call.status, attempt=attempt)
                if not call.is_active:
                    call = await self._await_analysis(call)
                    result = normalize_call(call, request)
                    logger.info("call_finished", call_id=call_id, status=result.status.value, duration=result.duration)
                    return result

            if attempt < self.max_poll_attempts:
                await self._sleep(self.poll_interval)

        waited = self.max_poll_attempts * self.poll_interval
        logger.warning("call_poll_timeout", call_id=call_id, waited_seconds=waited)
        return CallResult.for_timeout(
            request,
            self.backend,
            f"Call {call_id} did not finish within {waited:.0f} seconds",
            call_id=call_id,
        )

    async def _await_analysis(self, call: VapiCall) -> VapiCall:
        # VAPI finishes transcript and analysis a few seconds after hang-up
        for delay in self.analysis_retry_delays:
            if is_data_complete(call):
                return call
            await self._sleep(delay)
            try:
                call = await self.vapi.get_call(call.id)
            except httpx.HTTPError as e:
                logger.warning("call_analysis_refetch_failed", call_id=call.id, error=str(e))
        if not is_data_complete(call):
            logger.warning("call_analysis_incomplete", call_id=call.id)
        return call


class OrchestratorBackend:
    """Places calls by running the Kestra `contact_providers` flow."""

    backend = Backend.ORCHESTRATOR

    def __init__(self, kestra: KestraClient, flow_id: str = CONTACT_FLOW):
        self.kestra = kestra
        self.flow_id = flow_id

    @staticmethod
    def flow_inputs(request: CallRequest) -> dict:
        inputs = {
            "provider_name": request.provider_name,
            "provider_phone": request.provider_phone,
            "service_needed": request.service_needed,
            "user_criteria": request.user_criteria,
            "location": request.location,
            "urgency": request.urgency.value,
        }
        optional = {
            "problem_description": request.problem_description,
            "client_name": request.client_name,
            "client_address": request.client_address,
            "service_request_id": request.service_request_id,
            "provider_id": request.provider_id,
        }
        inputs.update({k: v for k, v in optional.items() if v})
        return inputs

    async def place_call(self, request: CallRequest) -> CallResult:
        try:
            execution_id = await self.kestra.trigger_execution(self.flow_id, self.flow_inputs(request))
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("kestra_trigger_failed", provider=request.provider_name, error=str(e))
            return CallResult.for_error(request, self.backend, f"Kestra trigger failed: {e}", ended_reason="kestra_error")

        status = await self.kestra.poll_execution(execution_id)
        if status is None:
            return CallResult.for_timeout(
                request,
                self.backend,
                f"Kestra execution {execution_id} did not finish in time",
                execution_id=execution_id,
            )

        if not status.succeeded:
            state = status.state.lower()
            logger.error("kestra_execution_failed", execution_id=execution_id, state=state)
            return CallResult.for_error(
                request, self.backend, f"Kestra execution {state}", ended_reason=state, execution_id=execution_id
            )

        raw = status.output("call_result")
        if not isinstance(raw, dict):
            logger.error("kestra_execution_no_output", execution_id=execution_id)
            return CallResult.for_error(
                request, self.backend, "No output from Kestra execution", ended_reason="no_output", execution_id=execution_id
            )

        try:
            result = CallResult.model_validate({**raw, "backend": self.backend.value})
        except ValidationError as e:
            logger.error("kestra_output_invalid", execution_id=execution_id, error=str(e))
            return CallResult.for_error(
                request, self.backend, "Unparseable Kestra call result", ended_reason="no_output", execution_id=execution_id
            )

        return result.with_request(request).model_copy(update={"execution_id": execution_id})
