"""Tests for provider ranking."""

import json
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError

from concierge.errors import ScoringOracleFailure
from concierge.models import Availability, CallOutcome, CallStatus, ScoringWeights
from concierge.recommendations import (
    OpenAIScoringOracle,
    RecommendationEngine,
    build_overall_recommendation,
    build_reasoning,
    is_qualified,
)


class FakeOracle:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def score(self, qualified, original_criteria, weights):
        self.calls.append((list(qualified), original_criteria, weights))
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def results(make_request, make_result):
    """Three qualified providers plus one no-answer and one disqualified."""
    return [
        make_result(make_request(0)),
        make_result(make_request(1), status=CallStatus.NO_ANSWER, call_outcome=CallOutcome.NO_ANSWER),
        make_result(make_request(2), earliest_availability="Friday", estimated_rate="$90"),
        make_result(make_request(3), disqualified=True, disqualification_reason="Not licensed"),
        make_result(make_request(4), all_criteria_met=False, call_outcome=CallOutcome.NEUTRAL),
    ]


def test_is_qualified(make_request, make_result):
    request = make_request()
    assert is_qualified(make_result(request))
    assert not is_qualified(make_result(request, status=CallStatus.VOICEMAIL))
    assert not is_qualified(make_result(request, status=CallStatus.ERROR))
    assert not is_qualified(make_result(request, disqualified=True))
    assert not is_qualified(make_result(request, availability=Availability.UNAVAILABLE))
    assert not is_qualified(make_result(request, call_outcome=CallOutcome.VOICEMAIL))


def test_build_reasoning(make_request, make_result):
    result = make_result(make_request(), earliest_availability="Tomorrow 9am", estimated_rate="$120/hour")
    assert build_reasoning(result) == "Meets all your requirements; Available: Tomorrow 9am; Quoted: $120/hour"

    bare = make_result(
        make_request(),
        all_criteria_met=False,
        call_outcome=CallOutcome.NEUTRAL,
        availability=Availability.UNCLEAR,
        earliest_availability="unknown",
        estimated_rate="",
    )
    assert build_reasoning(bare) == "Provider contacted successfully"


@pytest.mark.asyncio
async def test_oracle_scores_are_sorted_descending(results):
    oracle = FakeOracle({
        "recommendations": [
            {"index": 2, "score": 60, "reasoning": "Cheapest"},
            {"index": 0, "score": 90, "reasoning": "Fastest", "criteriaMatched": ["licensed"]},
            {"index": 1, "score": 75, "reasoning": "Solid", "callQualityScore": 140},
        ],
        "overallRecommendation": "Go with Provider 0.",
        "analysisNotes": "Three good options.",
    })
    engine = RecommendationEngine(oracle)

    response = await engine.recommend(results, "licensed")

    assert [r.score for r in response.recommendations] == [90, 75, 60]
    assert [r.provider_name for r in response.recommendations] == ["Provider 0", "Provider 2", "Provider 4"]
    assert response.recommendations[0].criteria_matched == ["licensed"]
    assert response.recommendations[1].call_quality_score == 100
    assert response.overall_recommendation == "Go with Provider 0."
    assert response.used_fallback is False
    assert response.stats.total_calls == 5
    assert response.stats.qualified_providers == 3
    assert response.stats.disqualified_providers == 1

    qualified, criteria, weights = oracle.calls[0]
    assert len(qualified) == 3
    assert criteria == "licensed"
    assert weights == ScoringWeights()


@pytest.mark.asyncio
async def test_oracle_bad_indices_are_ignored(results):
    oracle = FakeOracle({
        "recommendations": [
            {"index": 7, "score": 99},
            {"index": 0, "score": 80},
            {"index": 0, "score": 70},
            {"index": "1", "score": 60},
        ],
    })
    response = await RecommendationEngine(oracle).recommend(results)

    assert [r.provider_name for r in response.recommendations] == ["Provider 0"]
    assert response.overall_recommendation.startswith("Based on our research and phone calls, we recommend Provider 0")


@pytest.mark.asyncio
async def test_no_qualified_providers(make_request, make_result):
    results = [
        make_result(make_request(0), status=CallStatus.NO_ANSWER),
        make_result(make_request(1), status=CallStatus.VOICEMAIL),
        make_result(make_request(2), status=CallStatus.ERROR),
    ]
    oracle = FakeOracle({})
    response = await RecommendationEngine(oracle).recommend(results)

    assert response.recommendations == []
    assert "2 providers didn't answer our calls" in response.overall_recommendation
    assert response.stats.failed_calls == 1
    assert oracle.calls == []


@pytest.mark.asyncio
async def test_empty_input():
    response = await RecommendationEngine().recommend([])
    assert response.recommendations == []
    assert response.overall_recommendation.startswith("Unfortunately")


@pytest.mark.asyncio
async def test_broken_oracle_falls_back(results):
    engine = RecommendationEngine(FakeOracle(error=ScoringOracleFailure("bad json")))
    response = await engine.recommend(results)

    assert response.used_fallback is True
    assert [r.score for r in response.recommendations] == [70, 65, 60]
    assert [r.provider_name for r in response.recommendations] == ["Provider 0", "Provider 2", "Provider 4"]
    assert response.recommendations[1].reasoning == "Meets all your requirements; Available: Friday; Quoted: $90"


@pytest.mark.asyncio
async def test_unexpected_oracle_crash_falls_back(results):
    engine = RecommendationEngine(FakeOracle(error=KeyError("recommendations")))
    response = await engine.recommend(results)
    assert response.used_fallback is True


@pytest.mark.asyncio
async def test_no_oracle_uses_fallback(make_request, make_result):
    results = [make_result(make_request(i)) for i in range(5)]
    response = await RecommendationEngine(None).recommend(results)

    assert len(response.recommendations) == 3
    assert response.used_fallback is True


def test_overall_recommendation_wording(make_request, make_result):
    engine = RecommendationEngine()
    a, b = engine.fallback([make_result(make_request(0)), make_result(make_request(1))])

    assert "only provider" in build_overall_recommendation([a])
    assert "as your top choice" in build_overall_recommendation([a, b])
    assert "strongly recommend" in build_overall_recommendation([a.model_copy(update={"score": 95}), b])


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        return _completion(self.content)


def _openai_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


@pytest.mark.asyncio
async def test_openai_oracle_requests_json(results):
    completions = FakeCompletions(json.dumps({"recommendations": [{"index": 0, "score": 88}]}))
    oracle = OpenAIScoringOracle(_openai_client(completions), model="gpt-4o-mini")

    data = await oracle.score(results[:1], "licensed", ScoringWeights())

    assert data["recommendations"][0]["score"] == 88
    assert completions.kwargs["model"] == "gpt-4o-mini"
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    payload = json.loads(completions.kwargs["messages"][1]["content"])
    assert payload["providers"][0]["name"] == "Provider 0"


@pytest.mark.asyncio
async def test_openai_oracle_bad_json_raises(results):
    oracle = OpenAIScoringOracle(_openai_client(FakeCompletions("not json")))
    with pytest.raises(ScoringOracleFailure):
        await oracle.score(results[:1], "", ScoringWeights())


@pytest.mark.asyncio
async def test_openai_oracle_api_error_raises(results):
    error = APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    oracle = OpenAIScoringOracle(_openai_client(FakeCompletions(error=error)))
    with pytest.raises(ScoringOracleFailure):
        await oracle.score(results[:1], "", ScoringWeights())


def test_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        ScoringWeights(availability_urgency=0.5)
