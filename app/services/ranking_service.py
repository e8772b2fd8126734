"""Rank computation over user scores."""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List

from ..points import UserScore

# Public metric name -> UserScore attribute.
METRICS: Dict[str, str] = {
    'points': 'total_points',
    'notes': 'notes_uploaded',
    'questions': 'questions_answered',
    'flashcards': 'flashcards_created',
    'posts': 'collaborative_posts',
    'upvotes': 'answers_upvoted',
}

DEFAULT_METRIC = 'points'


@dataclass(frozen=True)
class RankedScore:
    rank: int
    score: UserScore

    def to_dict(self) -> Dict:
        data = self.score.to_dict()
        data['rank'] = self.rank
        return data


def metric_attribute(metric: str) -> str:
    """Resolve *metric* to a :class:`UserScore` attribute name.

    Accepts the public names in :data:`METRICS` or the attribute names
    themselves.

    Raises:
        ValueError: for an unknown metric.
    """
    key = (metric or DEFAULT_METRIC).strip().lower()
    if key in METRICS:
        return METRICS[key]
    if key in METRICS.values():
        return key
    raise ValueError(f"Unknown ranking metric: {metric!r}")


def sort_key(attribute: str):
    """Total order used for ranking.

    Highest metric first; ties go to the higher point total, then to whoever
    reached the score first (earlier ``last_updated``), then to the lower
    user id.  Every pair of distinct users is therefore ordered, so ranks
    are always a permutation of ``1..N``.
    """
    def key(score: UserScore):
        updated = score.last_updated or datetime.min
        return (-getattr(score, attribute), -score.total_points, updated,
                score.user_id)
    return key


class RankingService:
    """Orders user scores by a chosen metric and assigns 1-based ranks."""

    def compute_ranks(self, scores: Iterable[UserScore],
                      metric: str = DEFAULT_METRIC) -> List[RankedScore]:
        """Return *scores* ranked by *metric*, best first.

        Raises:
            ValueError: for an unknown metric.
        """
        ordered = sorted(scores, key=sort_key(metric_attribute(metric)))
        return [RankedScore(rank=position, score=score)
                for position, score in enumerate(ordered, start=1)]

    def rank_of(self, scores: Iterable[UserScore], user_id: str,
                metric: str = DEFAULT_METRIC):
        """Return the :class:`RankedScore` of *user_id*, or ``None``."""
        for ranked in self.compute_ranks(scores, metric):
            if ranked.score.user_id == str(user_id):
                return ranked
        return None
