"""
Kestra workflow orchestrator adapter.

Only the slice of the Kestra REST API the service needs: health, trigger an
execution of a flow, read an execution's state.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from concierge.logging_config import get_logger

logger = get_logger(__name__)

CONTACT_FLOW = "contact_providers"
RESEARCH_FLOW = "research_providers"

TERMINAL_STATES = {"SUCCESS", "FAILED", "KILLED"}


class ExecutionStatus(BaseModel):
    """Execution record as returned by `GET /api/v1/executions/{id}`."""
    model_config = ConfigDict(extra="ignore")

    id: str
    state: str = "CREATED"
    outputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("state", mode="before")
    @classmethod
    def _flatten_state(cls, value):
        # Newer Kestra versions return {"current": "RUNNING", "histories": [...]}
        if isinstance(value, dict):
            value = value.get("current", "CREATED")
        return str(value or "CREATED").upper()

    @field_validator("outputs", mode="before")
    @classmethod
    def _none_outputs(cls, value):
        return value or {}

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state == "SUCCESS"

    def output(self, key: str) -> Optional[Any]:
        """Return an output value, decoding it if the flow emitted a JSON string.

        Returns None when the key is missing or the string isn't valid JSON.
        """
        raw = self.outputs.get(key)
        if raw is None or raw == "":
            return None
        if isinstance(raw, str):
            try:
                return json.loads(raw)
            except ValueError:
                logger.warning("kestra_output_unparseable", execution_id=self.id, key=key)
                return None
        return raw


class KestraClient:
    """Async client for one Kestra namespace."""

    def __init__(
        self,
        base_url: str,
        namespace: str = "ai_concierge",
        health_timeout: float = 3.0,
        timeout: float = 30.0,
        poll_interval: float = 5.0,
        max_poll_attempts: int = 36,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.namespace = namespace
        self.health_timeout = health_timeout
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._transport = transport
        self._sleep = sleep

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    async def health_check(self) -> bool:
        """Single bounded probe of `/api/v1/health`. Never raises."""
        try:
            async with self._client(timeout=self.health_timeout) as client:
                resp = await client.get("/api/v1/health")
            return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("kestra_health_check_failed", url=self.base_url, error=str(e))
            return False

    async def trigger_execution(self, flow_id: str, inputs: dict) -> str:
        """Start a flow execution and return its id. Raises httpx.HTTPError."""
        async with self._client() as client:
            resp = await client.post(
                f"/api/v1/executions/{self.namespace}/{flow_id}",
                json=inputs,
            )
            resp.raise_for_status()
            execution_id = resp.json()["id"]

        logger.info("kestra_execution_triggered", execution_id=execution_id, namespace=self.namespace, flow_id=flow_id)
        return execution_id

    async def get_execution_status(self, execution_id: str) -> ExecutionStatus:
        async with self._client() as client:
            resp = await client.get(f"/api/v1/executions/{execution_id}")
            resp.raise_for_status()
            return ExecutionStatus.model_validate(resp.json())

    async def poll_execution(self, execution_id: str) -> Optional[ExecutionStatus]:
        """
        Poll until the execution reaches a terminal state.

        Returns:
            The terminal ExecutionStatus, or None if the attempt bound ran out.
        """
        for attempt in range(1, self.max_poll_attempts + 1):
            try:
                status = await self.get_execution_status(execution_id)
            except httpx.HTTPError as e:
                # A failed poll uses up the attempt
                logger.warning("kestra_execution_poll_failed", execution_id=execution_id, attempt=attempt, error=str(e))
                if attempt < self.max_poll_attempts:
                    await self._sleep(self.poll_interval)
                continue
            logger.debug(
                "kestra_execution_polled",
                execution_id=execution_id,
                state=status.state,
                attempt=attempt,
                max_attempts=self.max_poll_attempts,
            )
            if status.is_terminal:
                return status
            if attempt < self.max_poll_attempts:
                await self._sleep(self.poll_interval)

        logger.warning("kestra_execution_poll_timeout", execution_id=execution_id, attempts=self.max_poll_attempts)
        return None
