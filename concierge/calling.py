"""
Provider calling: one routing decision per batch, then dispatch.
"""

from typing import Optional, Sequence

from concierge.dispatcher import CallDispatcher, validate_batch
from concierge.logging_config import get_logger
from concierge.models import BatchCallResult, CallRequest, CallResult
from concierge.routing import BackendRouter, RoutingPolicy
from concierge.services import SqlResultStore

logger = get_logger(__name__)


class ProviderCallingService:
    def __init__(
        self,
        router: BackendRouter,
        dispatcher: CallDispatcher,
        policy: Optional[RoutingPolicy] = None,
        store: Optional[SqlResultStore] = None,
        default_max_concurrent: int = 5,
    ):
        self.router = router
        self.dispatcher = dispatcher
        self.policy = policy or RoutingPolicy.from_config()
        self.store = store
        self.default_max_concurrent = default_max_concurrent

    async def call_providers(
        self,
        requests: Sequence[CallRequest],
        max_concurrent: Optional[int] = None,
    ) -> BatchCallResult:
        """
        Route once, then dispatch the whole batch on that backend.

        Raises:
            CallRequestValidationError: the batch is malformed
            BackendUnavailable: strict mode and the orchestrator is down
        """
        max_concurrent = max_concurrent or self.default_max_concurrent
        # A malformed batch never reaches the health probe
        validate_batch(requests, max_concurrent)
        backend = await self.router.choose_backend(self.policy)
        batch = await self.dispatcher.dispatch_batch(requests, backend, max_concurrent=max_concurrent)
        if self.store is not None:
            await self.store.save_results(batch.results)
        return batch

    async def call_provider(self, request: CallRequest) -> CallResult:
        batch = await self.call_providers([request], max_concurrent=1)
        return batch.results[0]

    async def system_status(self) -> dict:
        return await self.router.system_status(self.policy)
