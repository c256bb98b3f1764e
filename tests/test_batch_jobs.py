"""Tests for provider calling and background batch jobs."""

import asyncio
from types import SimpleNamespace

import pytest
import requests

from concierge.batch_jobs import BatchJobManager, JobStatus
from concierge.calling import ProviderCallingService
from concierge.dispatcher import CallDispatcher
from concierge.errors import BackendUnavailable, CallRequestValidationError
from concierge.models import Backend, BatchCallRequest, CallStatus
from concierge.notifications import SmsNotifier
from concierge.recommendations import RecommendationEngine
from concierge.routing import BackendRouter, RoutingPolicy


class ScriptedBackend:
    def __init__(self, backend, make_result, status=CallStatus.COMPLETED, gate=None):
        self.backend = backend
        self.make_result = make_result
        self.status = status
        self.gate = gate
        self.placed = []

    async def place_call(self, request):
        if self.gate is not None:
            await self.gate.wait()
        self.placed.append(request)
        return self.make_result(request, status=self.status, backend=self.backend)


class DownOrchestrator:
    def __init__(self):
        self.checks = 0

    async def health_check(self):
        self.checks += 1
        return False


class FakeStore:
    def __init__(self):
        self.saved = []

    async def save_results(self, results):
        self.saved.extend(results)
        return len(results)


class FakeNotifier:
    enabled = True

    def __init__(self):
        self.sent = []

    async def notify_recommendations(self, to, response):
        self.sent.append((to, response))
        return "SM123"


async def _no_sleep(_seconds):
    return None


def _calling(backends, policy=None, orchestrator=None, store=None):
    return ProviderCallingService(
        BackendRouter(orchestrator),
        CallDispatcher(backends, sleep=_no_sleep),
        policy=policy or RoutingPolicy(),
        store=store,
    )


def _batch(**overrides):
    body = {
        "providers": [
            {"name": "ABC Plumbing", "phone": "(864) 555-0100", "id": "p1"},
            {"name": "XYZ Plumbing", "phone": "+18645550101", "id": "p2"},
        ],
        "serviceNeeded": "plumbing",
        "userCriteria": "licensed",
        "serviceRequestId": "req-1",
    }
    body.update(overrides)
    return BatchCallRequest.model_validate(body)


@pytest.mark.asyncio
async def test_call_providers_routes_once_and_persists(make_request, make_result):
    store = FakeStore()
    direct = ScriptedBackend(Backend.DIRECT, make_result)
    calling = _calling({Backend.DIRECT: direct}, store=store)

    batch = await calling.call_providers([make_request(i) for i in range(3)])

    assert batch.backend == Backend.DIRECT
    assert len(direct.placed) == 3
    assert len(store.saved) == 3


@pytest.mark.asyncio
async def test_call_providers_strict_mode_raises(make_request, make_result):
    policy = RoutingPolicy(orchestrator_enabled=True, orchestrator_url="http://kestra:8080", strict_mode=True)
    direct = ScriptedBackend(Backend.DIRECT, make_result)
    calling = _calling({Backend.DIRECT: direct}, policy=policy, orchestrator=DownOrchestrator())

    with pytest.raises(BackendUnavailable):
        await calling.call_providers([make_request()])
    assert direct.placed == []


@pytest.mark.asyncio
async def test_malformed_batch_rejected_before_health_check(make_request, make_result):
    policy = RoutingPolicy(orchestrator_enabled=True, orchestrator_url="http://kestra:8080", strict_mode=True)
    orchestrator = DownOrchestrator()
    calling = _calling({Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result)}, policy=policy, orchestrator=orchestrator)

    with pytest.raises(CallRequestValidationError):
        await calling.call_providers([])
    with pytest.raises(CallRequestValidationError):
        await calling.call_providers([make_request()], max_concurrent=-1)
    assert orchestrator.checks == 0


@pytest.mark.asyncio
async def test_call_providers_falls_back_to_direct(make_request, make_result):
    policy = RoutingPolicy(orchestrator_enabled=True, orchestrator_url="http://kestra:8080")
    direct = ScriptedBackend(Backend.DIRECT, make_result)
    kestra = ScriptedBackend(Backend.ORCHESTRATOR, make_result)
    calling = _calling({Backend.DIRECT: direct, Backend.ORCHESTRATOR: kestra}, policy=policy, orchestrator=DownOrchestrator())

    result = await calling.call_provider(make_request())

    assert result.backend == Backend.DIRECT
    assert kestra.placed == []


@pytest.mark.asyncio
async def test_job_runs_to_completion(make_result):
    notifier = FakeNotifier()
    calling = _calling({Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result)})
    manager = BatchJobManager(calling, RecommendationEngine(None), notifier=notifier)

    job = manager.submit(_batch(notifyPhone="+18645559999"))
    assert job.status == JobStatus.QUEUED
    assert job.total == 2

    await manager.drain()
    job = manager.get(job.job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.backend == Backend.DIRECT
    assert job.result.stats.completed == 2
    assert [r.provider_name for r in job.recommendations.recommendations] == ["ABC Plumbing", "XYZ Plumbing"]
    assert job.notification_sid == "SM123"
    assert notifier.sent[0][0] == "+18645559999"
    assert job.started_at is not None and job.finished_at is not None


@pytest.mark.asyncio
async def test_job_reports_running(make_result):
    gate = asyncio.Event()
    calling = _calling({Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result, gate=gate)})
    manager = BatchJobManager(calling, RecommendationEngine(None))

    job = manager.submit(_batch())
    await asyncio.sleep(0)
    assert manager.get(job.job_id).status == JobStatus.RUNNING

    gate.set()
    await manager.drain()
    assert manager.get(job.job_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_job_failure_is_recorded(make_result):
    policy = RoutingPolicy(orchestrator_enabled=True, orchestrator_url="http://kestra:8080", strict_mode=True)
    calling = _calling(
        {Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result)},
        policy=policy,
        orchestrator=DownOrchestrator(),
    )
    manager = BatchJobManager(calling, RecommendationEngine(None))

    job = manager.submit(_batch())
    await manager.drain()
    job = manager.get(job.job_id)

    assert job.status == JobStatus.FAILED
    assert "strict mode" in job.error
    assert job.result is None


@pytest.mark.asyncio
async def test_cancelled_job_ends_failed(make_result):
    gate = asyncio.Event()
    calling = _calling({Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result, gate=gate)})
    manager = BatchJobManager(calling, RecommendationEngine(None))

    job = manager.submit(_batch())
    await asyncio.sleep(0)
    await manager.shutdown()
    await asyncio.sleep(0)

    job = manager.get(job.job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "Job cancelled"


@pytest.mark.asyncio
async def test_submit_rejects_bad_phone(make_result):
    calling = _calling({Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result)})
    manager = BatchJobManager(calling, RecommendationEngine(None))

    with pytest.raises(CallRequestValidationError):
        manager.submit(_batch(providers=[{"name": "Nope", "phone": "555"}]))


@pytest.mark.asyncio
async def test_illegal_transition_rejected(make_result):
    calling = _calling({Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result)})
    manager = BatchJobManager(calling, RecommendationEngine(None))
    job = manager.submit(_batch())
    await manager.drain()

    with pytest.raises(ValueError):
        manager._transition(job.job_id, JobStatus.RUNNING)


class UnreachableTwilioMessages:
    def create(self, **kwargs):
        raise requests.exceptions.ConnectionError("twilio unreachable")


@pytest.mark.asyncio
async def test_sms_failure_keeps_job_completed(make_result):
    notifier = SmsNotifier(client=SimpleNamespace(messages=UnreachableTwilioMessages()), from_number="+18645550000")
    calling = _calling({Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result)})
    manager = BatchJobManager(calling, RecommendationEngine(None), notifier=notifier)

    job = manager.submit(_batch(notifyPhone="+18645559999"))
    await manager.drain()
    job = manager.get(job.job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.result.stats.completed == 2
    assert len(job.recommendations.recommendations) == 2
    assert job.notification_sid is None
    assert "twilio unreachable" in job.notification_error
    assert job.error is None


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_finished_jobs_evicted_after_retention(make_result):
    clock = FakeClock()
    gate = asyncio.Event()
    calling = _calling({Backend.DIRECT: ScriptedBackend(Backend.DIRECT, make_result, gate=gate)})
    manager = BatchJobManager(calling, RecommendationEngine(None), retention_seconds=60, clock=clock)

    gate.set()
    done = manager.submit(_batch())
    await manager.drain()
    gate.clear()
    running = manager.submit(_batch())
    await asyncio.sleep(0)

    clock.now += 59
    assert manager.get(done.job_id).status == JobStatus.COMPLETED

    clock.now += 1
    assert manager.get(done.job_id) is None
    assert manager.get(running.job_id).status == JobStatus.RUNNING
    assert manager.sweep() == 0

    gate.set()
    await manager.drain()
    clock.now += 60
    assert manager.sweep() == 1
    assert manager.get(running.job_id) is None
