"""Tests for the in-memory call result cache."""

import asyncio

import pytest

from concierge.models import (
    Backend,
    CallAnalysis,
    CallResult,
    CallStatus,
    DataStatus,
    StructuredCallData,
)
from concierge.result_cache import ResultCache


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _result(call_id="call-1", **fields) -> CallResult:
    return CallResult(status=CallStatus.COMPLETED, backend=Backend.DIRECT, call_id=call_id, **fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ResultCache(default_ttl=60, clock=clock)


def test_get_returns_stored_value(cache):
    cache.set("call-1", _result())
    assert cache.get("call-1").call_id == "call-1"
    assert cache.has("call-1")


def test_entry_expires_exactly_at_ttl(cache, clock):
    cache.set("call-1", _result())

    clock.advance(59.999)
    assert cache.get("call-1") is not None

    clock.advance(0.001)
    assert cache.get("call-1") is None
    assert not cache.has("call-1")


def test_custom_ttl_overrides_default(cache, clock):
    cache.set("call-1", _result(), ttl=5)
    clock.advance(5)
    assert cache.get("call-1") is None


def test_set_replaces_entry_and_restarts_ttl(cache, clock):
    cache.set("call-1", _result(transcript="first"))
    clock.advance(50)
    cache.set("call-1", _result(transcript="second"))
    clock.advance(50)

    assert cache.get("call-1").transcript == "second"
    assert cache.stats()["size"] == 1


def test_delete_and_clear(cache):
    cache.set("a", _result("a"))
    cache.set("b", _result("b"))

    assert cache.delete("a") is True
    assert cache.delete("a") is False
    assert cache.clear() == 1
    assert cache.get("b") is None


def test_sweep_removes_only_expired(cache, clock):
    cache.set("old", _result("old"), ttl=10)
    cache.set("new", _result("new"), ttl=100)
    clock.advance(10)

    assert cache.sweep() == 1
    assert cache.call_ids() == ["new"]


def test_stats_lists_live_entries(cache, clock):
    cache.set("a", _result("a", data_status=DataStatus.PARTIAL))
    cache.set("b", _result("b"), ttl=1)
    clock.advance(1)

    stats = cache.stats()
    assert stats["size"] == 1
    entry = stats["entries"][0]
    assert entry["callId"] == "a"
    assert entry["dataStatus"] == "partial"
    assert entry["expiresAt"] > entry["insertedAt"]


def test_update_fetch_status_counts_attempts(cache):
    cache.set("call-1", _result(data_status=DataStatus.PARTIAL))

    assert cache.update_fetch_status("call-1", DataStatus.FETCHING)
    assert cache.update_fetch_status("call-1", DataStatus.FETCHING)
    assert cache.update_fetch_status("call-1", DataStatus.FETCH_FAILED, "Max attempts reached")

    result = cache.get("call-1")
    assert result.fetch_attempts == 2
    assert result.data_status == DataStatus.FETCH_FAILED
    assert result.fetch_error == "Max attempts reached"


def test_update_fetch_status_missing_key(cache):
    assert cache.update_fetch_status("nope", DataStatus.FETCHING) is False


def test_update_fetch_status_keeps_expiry(cache, clock):
    cache.set("call-1", _result(data_status=DataStatus.PARTIAL))
    clock.advance(30)
    cache.update_fetch_status("call-1", DataStatus.FETCHING)
    clock.advance(30)
    assert cache.get("call-1") is None


def test_merge_enriched_prefers_longer_transcript_and_marks_complete(cache):
    partial = _result(
        transcript="short",
        data_status=DataStatus.PARTIAL,
        analysis=CallAnalysis(structured_data=StructuredCallData(notes="from webhook", estimated_rate="$100")),
    )
    cache.set("call-1", partial)

    enriched = _result(
        transcript="a much longer transcript from the REST API",
        analysis=CallAnalysis.model_validate({"summary": "Done", "structured_data": {"estimated_rate": "$150"}}),
    )
    merged = cache.merge_enriched("call-1", enriched)

    assert merged.transcript == "a much longer transcript from the REST API"
    assert merged.data_status == DataStatus.COMPLETE
    assert merged.analysis.summary == "Done"
    assert merged.structured.estimated_rate == "$150"
    assert merged.structured.notes == "from webhook"
    assert merged.fetched_at is not None
    assert cache.get("call-1") == merged


def test_merge_enriched_keeps_longer_cached_transcript(cache):
    cache.set("call-1", _result(transcript="the cached transcript is longer"))
    merged = cache.merge_enriched("call-1", _result(transcript="short"))
    assert merged.transcript == "the cached transcript is longer"


def test_merge_enriched_missing_key(cache):
    assert cache.merge_enriched("nope", _result("nope")) is None


@pytest.mark.asyncio
async def test_sweeper_runs_and_stops(clock):
    sweeps = []

    async def fake_sleep(_seconds):
        sweeps.append(clock.now)
        clock.advance(100)
        await asyncio.sleep(0)

    cache = ResultCache(default_ttl=60, sweep_interval=100, clock=clock, sleep=fake_sleep)
    cache.set("call-1", _result())
    cache.start()

    for _ in range(5):
        await asyncio.sleep(0)

    assert sweeps
    assert cache.stats()["size"] == 0

    await cache.shutdown()
    assert cache._sweeper is None
