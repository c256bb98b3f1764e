"""
Concurrent call dispatcher.

Runs a batch of CallRequests against one backend in windows of at most
`max_concurrent` calls. A window starts only after every call of the
previous one has settled.
"""

import asyncio
import time
from typing import Awaitable, Callable, Mapping, Sequence

from concierge.backends import CallBackend
from concierge.errors import BackendUnavailable, CallRequestValidationError
from concierge.logging_config import get_logger
from concierge.metrics import calls_dispatched, dispatch_batches
from concierge.models import (
    Backend,
    BatchCallResult,
    BatchStats,
    CallRequest,
    CallResult,
    CallStatus,
    DispatchError,
)
from concierge.phone import is_e164

logger = get_logger(__name__)

DEFAULT_WINDOW_DELAY = 0.5


def window_sizes(total: int, max_concurrent: int) -> list[int]:
    """Sizes of the ceil(total / max_concurrent) windows a batch is split into."""
    return [min(max_concurrent, total - start) for start in range(0, total, max_concurrent)]


def validate_batch(requests: Sequence[CallRequest], max_concurrent: int) -> None:
    """Reject a malformed batch before anything is dialed."""
    if not requests:
        raise CallRequestValidationError("Batch must contain at least one call request")
    if max_concurrent < 1:
        raise CallRequestValidationError(f"max_concurrent must be at least 1 (got {max_concurrent})")
    for index, request in enumerate(requests):
        if not isinstance(request, CallRequest):
            raise CallRequestValidationError(f"Item {index} is not a CallRequest")
        if not is_e164(request.provider_phone):
            raise CallRequestValidationError(
                f"Item {index} ({request.provider_name}) has a non-normalized phone: {request.provider_phone!r}"
            )


def summarize(results: Sequence[CallResult], windows: list[int], duration_ms: int) -> BatchStats:
    by_status = {status: 0 for status in CallStatus}
    for result in results:
        by_status[result.status] += 1
    finished = [r.duration for r in results if r.status == CallStatus.COMPLETED]
    return BatchStats(
        total=len(results),
        completed=by_status[CallStatus.COMPLETED],
        failed=by_status[CallStatus.ERROR],
        timeout=by_status[CallStatus.TIMEOUT],
        no_answer=by_status[CallStatus.NO_ANSWER],
        voicemail=by_status[CallStatus.VOICEMAIL],
        windows=windows,
        duration_ms=duration_ms,
        average_call_duration=round(sum(finished) / len(finished), 2) if finished else 0.0,
    )


class CallDispatcher:
    """Dispatches batches against whichever backend the router picked."""

    def __init__(
        self,
        backends: Mapping[Backend, CallBackend],
        window_delay: float = DEFAULT_WINDOW_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backends = dict(backends)
        self.window_delay = window_delay
        self._sleep = sleep

    def backend_for(self, backend: Backend) -> CallBackend:
        try:
            return self.backends[backend]
        except KeyError:
            raise BackendUnavailable(f"Backend {backend.value!r} is not configured") from None

    async def _place(self, adapter: CallBackend, request: CallRequest) -> CallResult:
        try:
            return await adapter.place_call(request)
        except Exception as e:
            # Adapters report vendor problems as data; anything reaching here
            # is unexpected, but it still has to come back as a result.
            logger.exception("call_backend_crashed", provider=request.provider_name, backend=adapter.backend.value)
            return CallResult.for_error(request, adapter.backend, f"Unexpected backend failure: {e}", ended_reason="backend_exception")

    async def dispatch_batch(
        self,
        requests: Sequence[CallRequest],
        backend: Backend,
        max_concurrent: int = 5,
    ) -> BatchCallResult:
        """
        Place every call and return one result per request, in request order.

        Raises:
            CallRequestValidationError: empty batch, bad concurrency, or a
                request that hasn't been phone-normalized
            BackendUnavailable: `backend` has no configured adapter
        """
        validate_batch(requests, max_concurrent)
        adapter = self.backend_for(backend)

        total = len(requests)
        windows = window_sizes(total, max_concurrent)
        results: list = [None] * total
        started = time.monotonic()

        dispatch_batches.labels(backend=backend.value).inc()
        logger.info("batch_dispatch_started", backend=backend.value, total=total, windows=len(windows), max_concurrent=max_concurrent)

        for window_number, start in enumerate(range(0, total, max_concurrent), start=1):
            indices = list(range(start, min(start + max_concurrent, total)))
            logger.info("batch_window_started", window=window_number, size=len(indices))

            settled = await asyncio.gather(*(self._place(adapter, requests[i]) for i in indices))
            for i, result in zip(indices, settled):
                results[i] = result
                calls_dispatched.labels(backend=backend.value, status=result.status.value).inc()

            if window_number < len(windows):
                await self._sleep(self.window_delay)

        errors = [
            DispatchError(
                index=i,
                provider=requests[i].provider_name,
                phone=requests[i].provider_phone,
                error=result.error or result.ended_reason or "Call was not placed",
            )
            for i, result in enumerate(results)
            if not result.placed
        ]

        stats = summarize(results, windows, int((time.monotonic() - started) * 1000))
        success = len(errors) < total

        log = logger.info if success else logger.error
        log(
            "batch_dispatch_finished",
            backend=backend.value,
            total=total,
            completed=stats.completed,
            failed=stats.failed,
            no_answer=stats.no_answer,
            voicemail=stats.voicemail,
            timeout=stats.timeout,
            success=success,
        )

        return BatchCallResult(success=success, backend=backend, results=results, stats=stats, errors=errors)
