"""
Deterministic weighted scoring between a toll record and a candidate entity.

Every component that fires adds its weight and a human-readable reason, so a
score can always be explained from its reasons alone.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from tollsync.core.config import settings
from tollsync.domain.imports.hashing import normalize_field
from tollsync.domain.models import CandidateEntity, PotentialMatch, TollRecord


@dataclass(frozen=True)
class MatchWeights:
    card: float
    vehicle: float
    time: float
    amount: float
    window: timedelta

    @classmethod
    def from_settings(cls) -> "MatchWeights":
        return cls(
            card=settings.match_card_weight,
            vehicle=settings.match_vehicle_weight,
            time=settings.match_time_weight,
            amount=settings.match_amount_weight,
            window=timedelta(minutes=settings.match_time_window_minutes),
        )


def _same_identifier(left: Optional[str], right: Optional[str]) -> bool:
    left, right = normalize_field(left), normalize_field(right)
    return bool(left) and left == right


def score_candidate(
    record: TollRecord,
    candidate: CandidateEntity,
    weights: Optional[MatchWeights] = None,
) -> Optional[PotentialMatch]:
    """
    Score one candidate, or return None when it lies outside the time window.
    """
    weights = weights or MatchWeights.from_settings()
    delta = abs(record.occurred_at - candidate.occurred_at)
    if delta > weights.window:
        return None

    score = 0.0
    reasons = []
    if _same_identifier(record.card_id, candidate.card_id):
        score += weights.card
        reasons.append("exact card-number match")
    if _same_identifier(record.vehicle_id, candidate.vehicle_id):
        score += weights.vehicle
        reasons.append("exact vehicle-number match")

    window_seconds = weights.window.total_seconds()
    if window_seconds > 0:
        proximity = weights.time * (1.0 - delta.total_seconds() / window_seconds)
        if proximity > 0:
            score += proximity
            reasons.append(f"time difference under threshold ({int(delta.total_seconds())}s)")

    if candidate.amount is not None and candidate.amount == record.amount:
        score += weights.amount
        reasons.append("exact amount match")

    return PotentialMatch(
        entity_id=candidate.entity_id,
        entity_type=candidate.entity_type,
        confidence=round(min(1.0, max(0.0, score)), 4),
        reasons=reasons,
    )
