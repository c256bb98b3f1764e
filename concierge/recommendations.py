"""
Recommendation engine.

Filters call results down to qualified providers, has the scoring oracle
(OpenAI) rank them, and falls back to a deterministic ranking whenever the
oracle is missing or gives us something we can't use.
"""

import json
from typing import Optional, Protocol, Sequence

from openai import AsyncOpenAI, OpenAIError

from concierge.errors import ScoringOracleFailure
from concierge.logging_config import get_logger
from concierge.metrics import recommendation_fallbacks
from concierge.models import (
    DEFAULT_SCORING_WEIGHTS,
    Availability,
    CallOutcome,
    CallResult,
    CallStatus,
    ProviderRecommendation,
    RecommendationResponse,
    RecommendationStats,
    ScoringWeights,
    StructuredCallData,
)

logger = get_logger(__name__)

MAX_RECOMMENDATIONS = 3
FALLBACK_SCORES = (70, 65, 60)
TRANSCRIPT_EXCERPT_CHARS = 1500

_UNANSWERED_STATUSES = {CallStatus.NO_ANSWER, CallStatus.VOICEMAIL}
_UNANSWERED_OUTCOMES = {CallOutcome.NO_ANSWER, CallOutcome.VOICEMAIL}
_UNKNOWN_TEXT = {"", "unknown", "quote upon request"}

SCORING_PROMPT = """You rank service providers for a client from phone-call results.

Score each provider from 0 to 100 using these weights:
{weights}

Client requirements: {criteria}

Return a JSON object:
{{
  "recommendations": [
    {{"index": <provider index>, "score": <0-100>, "reasoning": "<one or two sentences>",
      "criteriaMatched": ["..."], "callQualityScore": <0-100>, "professionalismScore": <0-100>}}
  ],
  "overallRecommendation": "<short paragraph>",
  "analysisNotes": "<short paragraph>"
}}
Include at most {limit} providers, best first."""


class ScoringOracle(Protocol):
    async def score(
        self, qualified: Sequence[CallResult], original_criteria: str, weights: ScoringWeights
    ) -> dict:
        ...


def _known(text: Optional[str]) -> bool:
    return bool(text) and text.strip().lower() not in _UNKNOWN_TEXT


def is_qualified(result: CallResult) -> bool:
    """A provider survives if the call completed and nothing rules them out."""
    data = result.structured
    if result.status != CallStatus.COMPLETED:
        return False
    if data.call_outcome in _UNANSWERED_OUTCOMES:
        return False
    if data.disqualified:
        return False
    if data.availability == Availability.UNAVAILABLE:
        return False
    return True


def criteria_matched(data: StructuredCallData) -> list[str]:
    if data.all_criteria_met:
        return ["All criteria met"]
    matched = [name for name, ok in data.criteria_details.items() if ok]
    if matched:
        return matched
    if data.call_outcome == CallOutcome.POSITIVE:
        return ["Positive response"]
    return []


def build_reasoning(result: CallResult) -> str:
    """One-line explanation assembled from the call's structured analysis."""
    data = result.structured
    parts = []
    if data.all_criteria_met:
        parts.append("Meets all your requirements")
    elif data.call_outcome == CallOutcome.POSITIVE:
        parts.append("Positive conversation")

    if _known(data.earliest_availability):
        parts.append(f"Available: {data.earliest_availability}")
    elif data.availability == Availability.AVAILABLE:
        parts.append("Available now")
    elif data.availability == Availability.CALLBACK_REQUESTED:
        parts.append("Asked for a callback")

    if _known(data.estimated_rate):
        parts.append(f"Quoted: {data.estimated_rate}")

    return "; ".join(parts) if parts else "Provider contacted successfully"


def build_overall_recommendation(recommendations: Sequence[ProviderRecommendation]) -> str:
    if not recommendations:
        return "Unfortunately, we couldn't find a qualified provider. Please review the call logs for details."

    top = recommendations[0]
    score = round(top.score)
    if len(recommendations) == 1:
        return (
            f"Based on our research and phone calls, we recommend {top.provider_name} (Score: {score}/100). "
            "They were the only provider who answered and could meet your needs."
        )
    if top.score - recommendations[1].score >= 15:
        return (
            f"Based on our research and phone calls, we strongly recommend {top.provider_name} "
            f"(Score: {score}/100). They clearly outperformed the other options."
        )
    alternatives = len(recommendations) - 1
    return (
        f"Based on our research and phone calls, we recommend {top.provider_name} (Score: {score}/100) "
        f"as your top choice. We've included {alternatives} alternative{'s' if alternatives > 1 else ''} for comparison."
    )


def _recommendation(result: CallResult, score: float, reasoning: str, **extra) -> ProviderRecommendation:
    data = result.structured
    return ProviderRecommendation(
        provider_id=result.provider_id,
        provider_name=result.provider.name,
        phone=result.provider.phone,
        score=score,
        reasoning=reasoning,
        criteria_matched=extra.pop("criteria_matched", None) or criteria_matched(data),
        earliest_availability=data.earliest_availability or None,
        estimated_rate=data.estimated_rate or None,
        **extra,
    )


class OpenAIScoringOracle:
    """Scores qualified providers with one JSON-mode chat completion."""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o-mini"):
        self.client = client
        self.model = model

    @staticmethod
    def describe(qualified: Sequence[CallResult]) -> list[dict]:
        return [
            {
                "index": index,
                "name": result.provider.name,
                "summary": result.analysis.summary,
                "structuredData": result.structured.model_dump(mode="json"),
                "transcriptExcerpt": result.transcript[:TRANSCRIPT_EXCERPT_CHARS],
            }
            for index, result in enumerate(qualified)
        ]

    async def score(
        self, qualified: Sequence[CallResult], original_criteria: str, weights: ScoringWeights
    ) -> dict:
        prompt = SCORING_PROMPT.format(
            weights=json.dumps(weights.model_dump(by_alias=True)),
            criteria=original_criteria or "(none given)",
            limit=MAX_RECOMMENDATIONS,
        )
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": json.dumps({"providers": self.describe(qualified)})},
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
            )
            content = response.choices[0].message.content
            data = json.loads(content or "")
        except OpenAIError as e:
            raise ScoringOracleFailure(f"OpenAI request failed: {e}") from e
        except (ValueError, IndexError, AttributeError) as e:
            raise ScoringOracleFailure(f"Unparseable oracle response: {e}") from e

        if not isinstance(data, dict):
            raise ScoringOracleFailure("Oracle response is not a JSON object")
        return data


class RecommendationEngine:
    def __init__(self, oracle: Optional[ScoringOracle] = None, max_recommendations: int = MAX_RECOMMENDATIONS):
        self.oracle = oracle
        self.max_recommendations = max_recommendations

    @staticmethod
    def stats_for(call_results: Sequence[CallResult], qualified: Sequence[CallResult]) -> RecommendationStats:
        return RecommendationStats(
            total_calls=len(call_results),
            qualified_providers=len(qualified),
            disqualified_providers=sum(1 for r in call_results if r.structured.disqualified),
            failed_calls=sum(1 for r in call_results if r.status in (CallStatus.ERROR, CallStatus.TIMEOUT)),
        )

    @staticmethod
    def empty_response(call_results: Sequence[CallResult], stats: RecommendationStats) -> RecommendationResponse:
        unanswered = sum(
            1 for r in call_results
            if r.status in _UNANSWERED_STATUSES or r.structured.call_outcome in _UNANSWERED_OUTCOMES
        )
        message = "Unfortunately, we couldn't find a qualified provider. "
        if unanswered:
            message += f"{unanswered} provider{'s' if unanswered > 1 else ''} didn't answer our calls. "
        message += "Please review the call logs for details, or try expanding your search criteria."
        return RecommendationResponse(
            recommendations=[],
            overall_recommendation=message,
            analysis_notes="Consider expanding your search criteria or trying additional providers.",
            stats=stats,
        )

    def fallback(self, qualified: Sequence[CallResult]) -> list[ProviderRecommendation]:
        """Deterministic ranking: input order, fixed descending scores."""
        return [
            _recommendation(result, score, build_reasoning(result))
            for result, score in zip(qualified, FALLBACK_SCORES[: self.max_recommendations])
        ]

    def _from_oracle(self, data: dict, qualified: Sequence[CallResult]) -> list[ProviderRecommendation]:
        entries = data.get("recommendations")
        if not isinstance(entries, list):
            raise ScoringOracleFailure("Oracle response has no recommendations list")

        picked = []
        seen = set()
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            index = entry.get("index")
            if not isinstance(index, int) or not 0 <= index < len(qualified) or index in seen:
                continue
            try:
                rec = _recommendation(
                    qualified[index],
                    score=float(entry.get("score", 0)),
                    reasoning=str(entry.get("reasoning") or build_reasoning(qualified[index])),
                    criteria_matched=[str(c) for c in entry.get("criteriaMatched") or []],
                    call_quality_score=float(entry.get("callQualityScore", 0)),
                    professionalism_score=float(entry.get("professionalismScore", 0)),
                )
            except (TypeError, ValueError):
                continue
            seen.add(index)
            picked.append(rec)

        if not picked:
            raise ScoringOracleFailure("Oracle response had no usable entries")
        picked.sort(key=lambda r: r.score, reverse=True)
        return picked[: self.max_recommendations]

    async def recommend(
        self,
        call_results: Sequence[CallResult],
        original_criteria: str = "",
        weights: Optional[ScoringWeights] = None,
    ) -> RecommendationResponse:
        """Rank the qualified providers. Never raises on oracle trouble."""
        weights = weights or DEFAULT_SCORING_WEIGHTS
        qualified = [r for r in call_results if is_qualified(r)]
        stats = self.stats_for(call_results, qualified)

        if not qualified:
            logger.info("no_qualified_providers", total_calls=stats.total_calls)
            return self.empty_response(call_results, stats)

        data = {}
        used_fallback = False
        try:
            if self.oracle is None:
                raise ScoringOracleFailure("No scoring oracle configured")
            data = await self.oracle.score(qualified, original_criteria, weights)
            recommendations = self._from_oracle(data, qualified)
        except Exception as e:
            # Any oracle failure degrades to the heuristic ranking
            logger.warning("recommendation_fallback", error=str(e), qualified=len(qualified))
            recommendation_fallbacks.inc()
            data = {}
            used_fallback = True
            recommendations = self.fallback(qualified)

        overall = data.get("overallRecommendation")
        notes = data.get("analysisNotes")
        if used_fallback:
            notes = "Ranked by call outcome in call order; AI scoring was unavailable."

        logger.info(
            "recommendations_generated",
            count=len(recommendations),
            top_score=recommendations[0].score if recommendations else None,
            used_fallback=used_fallback,
        )
        return RecommendationResponse(
            recommendations=recommendations,
            overall_recommendation=overall if isinstance(overall, str) and overall else build_overall_recommendation(recommendations),
            analysis_notes=notes if isinstance(notes, str) else "",
            stats=stats,
            used_fallback=used_fallback,
        )
