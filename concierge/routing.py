"""
Backend routing: orchestrator (Kestra) or direct VAPI.

The decision is taken once per batch so one batch never mixes backends.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from concierge.clients.kestra import KestraClient
from concierge.config import config
from concierge.errors import BackendUnavailable
from concierge.logging_config import get_logger
from concierge.models import Backend

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoutingPolicy:
    orchestrator_enabled: bool = False
    orchestrator_url: Optional[str] = None
    strict_mode: bool = False

    @classmethod
    def from_config(cls) -> "RoutingPolicy":
        return cls(
            orchestrator_enabled=config.KESTRA_ENABLED,
            orchestrator_url=config.KESTRA_URL or None,
            strict_mode=config.KESTRA_STRICT_MODE,
        )

    @property
    def orchestrator_usable(self) -> bool:
        return self.orchestrator_enabled and bool(self.orchestrator_url)


class BackendRouter:
    """Chooses the backend for a batch from policy plus one health probe."""

    def __init__(
        self,
        orchestrator: Optional[KestraClient] = None,
        health_timeout: float = 3.0,
        direct_configured: bool = True,
    ):
        self.orchestrator = orchestrator
        self.health_timeout = health_timeout
        self.direct_configured = direct_configured

    async def probe(self) -> bool:
        """One bounded health check; no retries."""
        if self.orchestrator is None:
            return False
        try:
            return await asyncio.wait_for(self.orchestrator.health_check(), timeout=self.health_timeout)
        except asyncio.TimeoutError:
            logger.warning("orchestrator_health_probe_timeout", timeout_seconds=self.health_timeout)
            return False

    async def choose_backend(self, policy: RoutingPolicy) -> Backend:
        """
        Pick the backend for one batch.

        Raises:
            BackendUnavailable: orchestrator enabled but unhealthy in strict mode
        """
        if not policy.orchestrator_usable:
            logger.debug("backend_chosen", backend=Backend.DIRECT.value, reason="orchestrator_disabled")
            return Backend.DIRECT

        if await self.probe():
            logger.info("backend_chosen", backend=Backend.ORCHESTRATOR.value)
            return Backend.ORCHESTRATOR

        if policy.strict_mode:
            logger.error("orchestrator_unavailable_strict", url=policy.orchestrator_url)
            raise BackendUnavailable(
                f"Kestra at {policy.orchestrator_url} failed its health check and strict mode is on"
            )

        logger.warning("orchestrator_unavailable_fallback", url=policy.orchestrator_url, backend=Backend.DIRECT.value)
        return Backend.DIRECT

    async def system_status(self, policy: RoutingPolicy) -> dict:
        healthy = await self.probe() if policy.orchestrator_usable else False
        if policy.orchestrator_usable and healthy:
            active = Backend.ORCHESTRATOR.value
        elif policy.orchestrator_usable and policy.strict_mode:
            active = "unavailable"
        else:
            active = Backend.DIRECT.value
        return {
            "kestra": {
                "enabled": policy.orchestrator_enabled,
                "url": policy.orchestrator_url,
                "healthy": healthy,
                "strictMode": policy.strict_mode,
            },
            "directVapi": {"configured": self.direct_configured},
            "fallbackAvailable": self.direct_configured and not policy.strict_mode,
            "activeMethod": active,
        }
