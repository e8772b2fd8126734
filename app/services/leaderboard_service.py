"""Business logic for leaderboard views and per-user rankings."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from ..errors import UnknownUser
from ..points import LedgerEntry, UserScore, utcnow
from .ledger_service import LedgerService
from .ranking_service import DEFAULT_METRIC, RankedScore, RankingService
from .score_service import ScoreService, aggregate_entries

TIME_RANGES = {
    'all': None,
    'month': timedelta(days=30),
    'week': timedelta(days=7),
}


@dataclass(frozen=True)
class ViewFilter:
    search: str = ''
    time_range: str = 'all'


def window_start(time_range: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Return the earliest ``occurred_at`` counted by *time_range*.

    ``None`` means all time.

    Raises:
        ValueError: for an unknown range.
    """
    key = (time_range or 'all').strip().lower()
    if key not in TIME_RANGES:
        raise ValueError(f"Unknown time range: {time_range!r}")
    span = TIME_RANGES[key]
    if span is None:
        return None
    return (now or utcnow()) - span


class LeaderboardService:
    """Builds filtered, ranked leaderboard pages.

    Time windows decide which ledger events count: for ``'week'`` and
    ``'month'`` every user's totals are re-aggregated from the entries that
    happened inside the window, users without such entries drop out, and a
    row's level describes its windowed total.  ``'all'`` uses the stored
    all-time totals.

    All methods that read storage accept a *db* SQLAlchemy session as the
    first argument so that callers control the session lifecycle.
    """

    DEFAULT_PAGE_SIZE = 100

    def __init__(self, scores: ScoreService, ledger: LedgerService,
                 ranking: RankingService,
                 page_size: int = DEFAULT_PAGE_SIZE) -> None:
        """
        Args:
            scores:    Source of stored user scores.
            ledger:    Source of ledger entries for windowed views.
            ranking:   Rank computer.
            page_size: Maximum rows returned by one view.
        """
        self._scores = scores
        self._ledger = ledger
        self._ranking = ranking
        self.page_size = max(1, int(page_size))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_view(self, scores: Iterable[UserScore],
                   view_filter: Optional[ViewFilter] = None,
                   sort: str = DEFAULT_METRIC,
                   ledger: Optional[Iterable[LedgerEntry]] = None,
                   now: Optional[datetime] = None,
                   limit: Optional[int] = None) -> List[RankedScore]:
        """Filter, rank and cap *scores*.

        Args:
            scores:      Every user's all-time score.
            view_filter: Name search and time range (default: everything).
            sort:        Ranking metric, see ``ranking_service.METRICS``.
            ledger:      Ledger entries; required for windowed ranges.
            now:         Reference time for the window.
            limit:       Row cap, never above ``page_size``.

        Returns:
            Ranked rows in ascending rank order.

        Raises:
            ValueError: unknown time range or metric, or a windowed range
                without *ledger*.
        """
        view_filter = view_filter or ViewFilter()
        population = list(scores)
        start = window_start(view_filter.time_range, now)
        if start is not None:
            if ledger is None:
                raise ValueError("Windowed leaderboards need ledger entries")
            names = {s.user_id: s.display_name for s in population}
            windowed = aggregate_entries(
                (e for e in ledger if e.occurred_at >= start and e.user_id in names),
                display_names=names,
            )
            population = list(windowed.values())

        needle = (view_filter.search or '').strip().lower()
        if needle:
            population = [s for s in population if needle in s.display_name.lower()]

        ranked = self._ranking.compute_ranks(population, sort)
        return ranked[:self._cap(limit)]

    def get_rankings(self, db, search: str = '', time_range: str = 'all',
                     sort: str = DEFAULT_METRIC,
                     limit: Optional[int] = None) -> List[RankedScore]:
        """Load scores from storage and return :meth:`build_view` output."""
        now = utcnow()
        start = window_start(time_range, now)
        ledger = self._ledger.all_entries(db, since=start) if start else None
        return self.build_view(
            self._scores.all_scores(db),
            ViewFilter(search=search or '', time_range=time_range or 'all'),
            sort=sort,
            ledger=ledger,
            now=now,
            limit=limit,
        )

    def get_user_rank(self, db, user_id: str) -> Tuple[int, UserScore]:
        """Return ``(rank, score)`` for *user_id* by all-time points.

        The rank is computed over the whole population, not a capped page.

        Raises:
            UnknownUser: the user has no score row.
        """
        ranked = self._ranking.rank_of(self._scores.all_scores(db), user_id)
        if ranked is None:
            raise UnknownUser(f"Unknown user: {user_id}")
        return ranked.rank, ranked.score

    def _cap(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.page_size
        return max(0, min(int(limit), self.page_size))
