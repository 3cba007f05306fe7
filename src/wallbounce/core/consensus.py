"""Consensus engine: scores disagreeing provider responses and integrates them.

Scoring:
    agreement       mean pairwise similarity of the successful responses
    similarity_i    mean similarity of response i to every other response
    confidence_i    prior_weight * prior_i + (1 - prior_weight) * similarity_i
    confidence      trust-weighted mean of confidence_i

where prior_i is the provider's trust weight scaled by its cost class.

A response whose similarity to every other response is below the outlier
floor is reported but excluded from integration. The base answer is the
highest-confidence non-outlier; candidates within ``tie_epsilon`` of the best
are ranked by trust weight, then non-truncated, then longer text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from statistics import fmean, pvariance
from typing import List, Mapping, Optional, Sequence, Tuple

from wallbounce.config import ConsensusConfig
from wallbounce.core.errors import InsufficientProvidersError
from wallbounce.core.models import (
    ConsensusResult,
    ProviderContribution,
    ProviderInvocationResult,
    QualityLevel,
    successful,
)
from wallbounce.core.providers.base import CostClass, ProviderDescriptor
from wallbounce.core.similarity import get_similarity, pairs, pairwise_matrix

logger = logging.getLogger(__name__)

DEFAULT_PRIOR = CostClass.STANDARD.prior


@dataclass(frozen=True)
class ScoredResponse:
    """Intermediate per-response scoring."""

    result: ProviderInvocationResult
    trust_weight: float
    prior: float
    similarity: float
    confidence: float
    outlier: bool

    @property
    def provider_id(self) -> str:
        return self.result.provider_id


class ConsensusEngine:
    """Stateless scorer; safe to share across concurrent requests."""

    def __init__(self, config: Optional[ConsensusConfig] = None):
        self.config = config or ConsensusConfig()
        self._similarity = get_similarity(self.config.similarity)

    # -------------------------------------------------------------------------
    # Scoring primitives
    # -------------------------------------------------------------------------

    def agreement(self, texts: Sequence[str]) -> float:
        """Mean pairwise similarity. Fewer than two texts have no agreement."""
        if len(texts) < 2:
            return 0.0
        matrix = pairwise_matrix(texts, self._similarity)
        return fmean(score for _, _, score in pairs(matrix))

    def score(
        self,
        results: Sequence[ProviderInvocationResult],
        descriptors: Optional[Mapping[str, ProviderDescriptor]] = None,
    ) -> Tuple[List[ScoredResponse], float]:
        """Score each successful response; returns (scored, agreement)."""
        descriptors = descriptors or {}
        texts = [result.text for result in results]
        matrix = pairwise_matrix(texts, self._similarity)
        size = len(results)
        agreement = fmean(score for _, _, score in pairs(matrix)) if size > 1 else 0.0
        prior_weight = self.config.prior_weight

        scored = []
        for i, result in enumerate(results):
            descriptor = descriptors.get(result.provider_id)
            trust_weight = descriptor.trust_weight if descriptor else 1.0
            prior = descriptor.prior if descriptor else DEFAULT_PRIOR
            others = [matrix[i][j] for j in range(size) if j != i]
            similarity = fmean(others) if others else 0.0
            outlier = bool(others) and max(others) < self.config.outlier_floor
            scored.append(
                ScoredResponse(
                    result=result,
                    trust_weight=trust_weight,
                    prior=prior,
                    similarity=similarity,
                    confidence=prior_weight * prior + (1.0 - prior_weight) * similarity,
                    outlier=outlier,
                )
            )
        return scored, agreement

    def select(self, scored: Sequence[ScoredResponse]) -> ScoredResponse:
        """Pick the base answer among non-outliers (all responses if every one is an outlier)."""
        candidates = [item for item in scored if not item.outlier] or list(scored)
        best = max(item.confidence for item in candidates)
        tied = [item for item in candidates if best - item.confidence <= self.config.tie_epsilon]
        # max() keeps the first of equal keys, so priority order breaks the final tie.
        return max(
            tied,
            key=lambda item: (
                item.trust_weight,
                not item.result.truncated,
                len(item.result.text),
            ),
        )

    # -------------------------------------------------------------------------
    # Integration
    # -------------------------------------------------------------------------

    def integrate(
        self,
        results: Sequence[ProviderInvocationResult],
        *,
        descriptors: Optional[Mapping[str, ProviderDescriptor]] = None,
        aggregator: Optional[ProviderInvocationResult] = None,
        surface: Optional[ProviderInvocationResult] = None,
    ) -> ConsensusResult:
        """Integrate successful responses into one ConsensusResult.

        Args:
            results: Invocation results; failed entries are ignored
            descriptors: Provider descriptors used for trust weights and priors
            aggregator: Successful aggregator response to use as the answer
            surface: Response whose text becomes the answer (final step of a
                sequential chain); scoring still covers every response

        Raises:
            InsufficientProvidersError: No successful response to integrate
        """
        usable = list(successful(results))
        if not usable:
            raise InsufficientProvidersError(
                "No successful provider responses to integrate",
                required=1,
                succeeded=0,
                results=results,
            )

        scored, agreement = self.score(usable, descriptors)
        selected = self.select(scored)
        if surface is not None and surface.succeeded:
            selected = next((item for item in scored if item.result is surface), selected)

        total_trust = sum(item.trust_weight for item in scored)
        confidence = sum(item.trust_weight * item.confidence for item in scored) / total_trust

        integration_mass = sum(item.trust_weight * item.confidence for item in scored if not item.outlier)
        contributions = tuple(
            ProviderContribution(
                provider_id=item.provider_id,
                weight=(
                    0.0
                    if item.outlier or integration_mass <= 0
                    else item.trust_weight * item.confidence / integration_mass
                ),
                confidence=item.confidence,
                similarity=item.similarity,
                outlier=item.outlier,
                selected=item is selected,
            )
            for item in scored
        )

        thresholds_met = (
            confidence >= self.config.confidence_threshold
            and agreement >= self.config.agreement_threshold
        )
        quality, unanimous = self.evaluate_quality(scored)
        answer = selected.result.text
        aggregator_id = None
        if aggregator is not None and aggregator.succeeded:
            answer = aggregator.text
            aggregator_id = aggregator.provider_id

        reasoning = self._build_reasoning(scored, selected, agreement, confidence, aggregator_id)
        logger.debug(
            "Consensus integrated: providers=%d agreement=%.3f confidence=%.3f selected=%s",
            len(scored),
            agreement,
            confidence,
            selected.provider_id,
        )
        return ConsensusResult(
            answer=answer,
            confidence=confidence,
            agreement=agreement,
            contributions=contributions,
            escalated=not thresholds_met,
            thresholds_met=thresholds_met,
            quality=quality,
            unanimous=unanimous,
            reasoning=reasoning,
            selected_provider=selected.provider_id,
            aggregator_id=aggregator_id,
        )

    def evaluate_quality(self, scored: Sequence[ScoredResponse]) -> Tuple[QualityLevel, bool]:
        """Classify quality from mean confidence and the spread of similarities."""
        if not scored:
            return QualityLevel.LOW, False
        confidences = [item.confidence for item in scored]
        similarities = [item.similarity for item in scored]
        mean_confidence = fmean(confidences)
        similarity_variance = pvariance(similarities) if len(similarities) > 1 else 1.0

        if mean_confidence > 0.8 and similarity_variance < 0.2:
            quality = QualityLevel.HIGH
        elif mean_confidence > 0.6 and similarity_variance < 0.4:
            quality = QualityLevel.MEDIUM
        else:
            quality = QualityLevel.LOW

        unanimous = (
            len(scored) > 1
            and not any(item.outlier for item in scored)
            and pvariance(confidences) < 0.1
        )
        return quality, unanimous

    @staticmethod
    def _build_reasoning(
        scored: Sequence[ScoredResponse],
        selected: ScoredResponse,
        agreement: float,
        confidence: float,
        aggregator_id: Optional[str],
    ) -> str:
        names = ", ".join(item.provider_id for item in scored)
        low = min(item.confidence for item in scored)
        high = max(item.confidence for item in scored)
        outliers = [item.provider_id for item in scored if item.outlier]
        parts = [
            f"Integrated {len(scored)} provider responses ({names}).",
            f"Selected {selected.provider_id} with confidence {selected.confidence:.3f}.",
            f"Agreement {agreement:.3f}, overall confidence {confidence:.3f}.",
            f"Confidence range {low:.3f} - {high:.3f}.",
        ]
        if outliers:
            parts.append(f"Excluded outliers: {', '.join(outliers)}.")
        if aggregator_id:
            parts.append(f"Answer synthesized by {aggregator_id}.")
        return " ".join(parts)

