# QuoteBridge/engines/candidate_scorer.py

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from engines.category_map import CategoryMap
from engines.similarity_engine import similarity
from models.domain import Candidate, MatchResult, SourcingRequest

logger = logging.getLogger(__name__)

LIVE_WEIGHT = 0.7
RESPONSE_RATE_WEIGHT = 0.3
TRUST_BASE = 0.8
CERTIFICATION_BONUS = 0.2
QUALITY_BONUS = 0.1


@dataclass
class RankingOutcome:
    """Top-N match results plus how the candidate pool was chosen."""

    results: List[MatchResult]
    category_fallback: bool
    pool_size: int
    skipped: List[str] = field(default_factory=list)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _normalise_rate(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    rate = float(value)
    # Rates above 1 are percentages.
    if rate > 1.0:
        rate = rate / 100.0
    return _clamp(rate)


def _normalise_quality(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    rating = float(value)
    # Ratings above 1 are on a five-point scale.
    if rating > 1.0:
        rating = rating / 5.0
    return _clamp(rating)


class CandidateScorer:
    """Composite scoring and ranking of supplier candidates for a request."""

    def __init__(
        self,
        settings,
        *,
        category_map: Optional[CategoryMap] = None,
        liveness_check: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.semantic_weight = float(settings.semantic_weight)
        self.responsiveness_weight = float(settings.responsiveness_weight)
        self.trust_weight = float(settings.trust_weight)
        self.top_n = int(settings.match_top_n)
        self.category_min_candidates = int(settings.category_min_candidates)
        self.stale_penalty = float(getattr(settings, "stale_embedding_trust_penalty", 0.0))
        self.category_map = category_map or CategoryMap.from_settings(settings)
        self.liveness_check = liveness_check

    # ------------------------------------------------------------------
    # Sub-scores
    # ------------------------------------------------------------------
    def _is_live(self, candidate: Candidate) -> bool:
        if candidate.is_live:
            return True
        if self.liveness_check is None:
            return False
        try:
            return bool(self.liveness_check(candidate.candidate_id))
        except Exception:
            logger.exception(
                "Liveness check failed for candidate %s", candidate.candidate_id
            )
            return False

    def responsiveness(self, candidate: Candidate) -> float:
        live = 1.0 if self._is_live(candidate) else 0.0
        return _clamp(
            LIVE_WEIGHT * live
            + RESPONSE_RATE_WEIGHT * _normalise_rate(candidate.response_rate)
        )

    def trust(self, candidate: Candidate) -> float:
        if candidate.trust_override is not None:
            return _clamp(float(candidate.trust_override))
        certification = _clamp(float(candidate.certification_verified or 0.0))
        score = min(
            1.0,
            TRUST_BASE
            + CERTIFICATION_BONUS * certification
            + QUALITY_BONUS * _normalise_quality(candidate.quality_rating),
        )
        if candidate.embedding_is_stale:
            score -= self.stale_penalty
        return _clamp(score)

    def composite(self, semantic: float, responsiveness: float, trust: float) -> float:
        value = 100.0 * (
            semantic * self.semantic_weight
            + responsiveness * self.responsiveness_weight
            + trust * self.trust_weight
        )
        return round(_clamp(value, 0.0, 100.0), 4)

    def score(self, request: SourcingRequest, candidate: Candidate) -> MatchResult:
        semantic = _clamp(similarity(request.embedding, candidate.embedding))
        responsiveness = self.responsiveness(candidate)
        trust = self.trust(candidate)
        return MatchResult(
            request_id=request.request_id,
            candidate_id=candidate.candidate_id,
            semantic_score=round(semantic, 6),
            responsiveness_score=round(responsiveness, 6),
            trust_score=round(trust, 6),
            composite_score=self.composite(semantic, responsiveness, trust),
        )

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------
    def _eligible(self, candidates: Iterable[Candidate], skipped: List[str]) -> List[Candidate]:
        eligible: List[Candidate] = []
        for candidate in candidates:
            if not candidate.is_active:
                continue
            if not candidate.embedding:
                logger.warning(
                    "Skipping candidate %s: embedding is missing", candidate.candidate_id
                )
                skipped.append(candidate.candidate_id)
                continue
            eligible.append(candidate)
        return eligible

    def rank(self, request: SourcingRequest, candidates: Iterable[Candidate]) -> RankingOutcome:
        skipped: List[str] = []
        pool = self._eligible(candidates, skipped)
        fallback = False
        if request.category:
            same_category = [
                candidate
                for candidate in pool
                if self.category_map.same_category(request.category, candidate.category)
            ]
            if len(same_category) >= self.category_min_candidates:
                pool = same_category
            else:
                fallback = True
                logger.info(
                    "Request %s: %d same-category candidates (< %d); scoring full pool of %d",
                    request.request_id,
                    len(same_category),
                    self.category_min_candidates,
                    len(pool),
                )

        scored = [self.score(request, candidate) for candidate in pool]
        scored.sort(key=lambda result: (-result.composite_score, result.candidate_id))
        selected = scored[: self.top_n]
        for index, result in enumerate(selected, start=1):
            result.rank = index
            result.category_fallback = fallback
        return RankingOutcome(
            results=selected,
            category_fallback=fallback,
            pool_size=len(pool),
            skipped=skipped,
        )
