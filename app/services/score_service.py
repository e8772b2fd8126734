"""Business logic for per-user point totals and category counters."""
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import (AggregationFailed, ConcurrentUpdateConflict,
                      InvalidActionKind, OutOfRangeAward, UnknownUser)
from ..levels import classify_level
from ..points import (ANONYMOUS_NAME, COUNTER_FIELDS, MANUAL_AWARD_MAX,
                      MANUAL_AWARD_MIN, LedgerEntry, PointAction, UserScore,
                      clamp_award, utcnow)
from .ledger_service import LedgerService

AWARD_POLICIES = ('clamp', 'reject')


@dataclass(frozen=True)
class ScoreChange:
    """A committed score mutation: the row before and after."""
    before: UserScore
    after: UserScore


def aggregate_entries(entries: Iterable[LedgerEntry],
                      display_names: Optional[Dict[str, str]] = None
                      ) -> Dict[str, UserScore]:
    """Fold ledger entries into one :class:`UserScore` per user.

    This is the reference definition of a user's totals: the stored
    ``user_points`` row must always equal the fold of that user's entries.
    """
    names = display_names or {}
    scores: Dict[str, UserScore] = {}
    for entry in entries:
        current = scores.get(entry.user_id)
        if current is None:
            current = UserScore(user_id=entry.user_id,
                                display_name=names.get(entry.user_id) or ANONYMOUS_NAME)
        scores[entry.user_id] = current.with_entry(entry)
    return scores


class ScoreService:
    """Applies ledger entries to ``user_points`` rows.

    Rules
    -----
    * A ledger entry and the score change it causes commit together, and an
      entry is applied at most once.
    * Score rows are version-guarded.  A concurrent writer makes the flush
      fail; the whole unit is rolled back and retried with exponential
      backoff, then :class:`~app.errors.AggregationFailed` is raised.
    * Manual awards are bounded to 0-100: clamped, or rejected with
      :class:`~app.errors.OutOfRangeAward` under the ``'reject'`` policy.
    * Table actions must carry their table amount.  Entries passed to
      :meth:`apply_ledger_entry` get the same checks.
    * Score change events are handed to the notifier after commit, while
      a per-user lock is held, so one process publishes a user's events in
      commit order.
    """

    DEFAULT_MAX_ATTEMPTS = 5
    DEFAULT_BASE_DELAY = 0.05

    def __init__(self, db_module, ledger: LedgerService, notifier=None,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 base_delay: float = DEFAULT_BASE_DELAY,
                 award_policy: str = 'clamp',
                 sleep: Callable[[float], None] = time.sleep) -> None:
        """
        Args:
            db_module:    The imported ``database`` module.
            ledger:       Ledger service used to append entries.
            notifier:     Optional object with ``publish_change(before, after)``.
            max_attempts: Tries per unit before giving up (minimum 1).
            base_delay:   First backoff delay in seconds; doubles per retry.
            award_policy: ``'clamp'`` or ``'reject'`` for out-of-range awards.
            sleep:        Delay function, swappable in tests.
        """
        if award_policy not in AWARD_POLICIES:
            raise ValueError(f"award_policy must be one of {AWARD_POLICIES}")
        self._db = db_module
        self._ledger = ledger
        self._notifier = notifier
        self._max_attempts = max(1, int(max_attempts))
        self._base_delay = float(base_delay)
        self._award_policy = award_policy
        self._sleep = sleep
        self._log = logging.getLogger('classsync.scores')
        self._user_locks: Dict[str, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply_ledger_entry(self, db, entry: LedgerEntry) -> UserScore:
        """Fold *entry* into its user's score and commit.

        The entry row is (re)appended in the same transaction, so this works
        whether or not the caller already added it.  Applying an entry that
        was applied before changes nothing.

        Raises:
            InvalidActionKind: a table action with a non-table amount.
            OutOfRangeAward: a manual award outside 0-100 under ``'reject'``.
            UnknownUser: the entry's user does not exist.
            ValueError: the entry id is stored for a different event.
            AggregationFailed: conflicts persisted through every retry.
        """
        entry = self.checked_entry(entry)
        self._ledger.ensure_user(db, entry.user_id)
        with self._user_lock(entry.user_id):
            change = self._run_atomic(db, lambda: self._apply_entry(db, entry))
            self._publish(change)
        return self.get_score(db, entry.user_id)

    def award_manual_points(self, db, user_id: str, amount: int,
                            awarded_by: str, submission_id: str = None,
                            guard: Callable[[], None] = None) -> UserScore:
        """Grant a contributor-chosen amount of points to *user_id*.

        Args:
            db:            SQLAlchemy session.
            user_id:       Recipient.
            amount:        Requested points; bounded to 0-100.
            awarded_by:    Reviewer id stored on the ledger entry.
            submission_id: Submission the award belongs to, if any.
            guard:         Callable run first inside the transaction; an
                           exception from it aborts the whole award.

        Raises:
            UnknownUser, OutOfRangeAward, AggregationFailed.
        """
        points = self.bound_award(amount)
        self._ledger.ensure_user(db, user_id)
        entry = self._ledger.build_entry(user_id, PointAction.MANUAL_AWARD, points,
                                         awarded_by=awarded_by,
                                         submission_id=submission_id)

        def unit():
            if guard is not None:
                guard()
            return self._apply_entry(db, entry)

        with self._user_lock(user_id):
            change = self._run_atomic(db, unit)
            self._publish(change)
        self._log.info("Awarded %d manual points to %s (by %s)", points,
                       user_id, awarded_by)
        return self.get_score(db, user_id)

    def get_score(self, db, user_id: str) -> UserScore:
        """Return the stored score of *user_id*.

        Raises:
            UnknownUser: no such user.
        """
        user = self._db.get_user(db, user_id)
        if user is None:
            raise UnknownUser(f"Unknown user: {user_id}")
        row = self._db.get_user_points(db, user_id)
        if row is None:
            return UserScore(user_id=str(user_id),
                             display_name=user.full_name or ANONYMOUS_NAME)
        return UserScore.from_row(row, user.full_name)

    def all_scores(self, db) -> List[UserScore]:
        """Return the stored score of every user."""
        return [UserScore.from_row(row, name)
                for row, name in self._db.get_all_user_points(db)]

    def reconcile(self, db, repair: bool = False) -> List[Dict]:
        """Compare stored scores with the ledger fold.

        Args:
            db:     SQLAlchemy session.
            repair: Rewrite drifted rows from the ledger and commit.

        Returns:
            One ``{'user_id', 'stored', 'expected'}`` dict per user whose
            stored totals, counters or level differ from the ledger.
        """
        expected = aggregate_entries(self._ledger.all_entries(db))
        mismatches = []
        for row, _name in self._db.get_all_user_points(db):
            target = expected.get(row.user_id, UserScore(user_id=row.user_id))
            stored = self._snapshot(row)
            wanted = self._snapshot_of(target)
            if stored == wanted:
                continue
            mismatches.append({'user_id': row.user_id, 'stored': stored,
                               'expected': wanted})
            self._log.warning("Score drift for %s: stored=%s expected=%s",
                              row.user_id, stored, wanted)
            if repair:
                self._write(row, target, row.last_updated or utcnow())
        if repair and mismatches:
            now = utcnow()
            for entry_row in self._db.get_ledger_entries(db):
                if entry_row.applied_at is None:
                    entry_row.applied_at = now
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
            self._log.info("Repaired %d score rows", len(mismatches))
        return mismatches

    def bound_award(self, amount) -> int:
        """Apply the award policy to *amount* and return the points granted.

        Raises:
            OutOfRangeAward: outside 0-100 under the ``'reject'`` policy.
        """
        value = int(amount)
        if MANUAL_AWARD_MIN <= value <= MANUAL_AWARD_MAX:
            return value
        if self._award_policy == 'reject':
            raise OutOfRangeAward(
                f"Award {value} outside {MANUAL_AWARD_MIN}-{MANUAL_AWARD_MAX}")
        clamped = clamp_award(value)
        self._log.warning("Manual award %d clamped to %d", value, clamped)
        return clamped

    def checked_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """Return *entry* with an amount the point rules allow.

        Manual awards go through :meth:`bound_award`; every other kind must
        carry exactly its table value.

        Raises:
            InvalidActionKind: a table action with another amount.
            OutOfRangeAward: see :meth:`bound_award`.
        """
        if entry.action_kind is PointAction.MANUAL_AWARD:
            points = self.bound_award(entry.points_awarded)
            if points != entry.points_awarded:
                entry = replace(entry, points_awarded=points)
            return entry
        if entry.points_awarded != entry.action_kind.points:
            raise InvalidActionKind(
                f"{entry.action_kind.value} is worth {entry.action_kind.points} "
                f"points, not {entry.points_awarded}")
        return entry

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_entry(self, db, entry: LedgerEntry) -> Optional[ScoreChange]:
        ledger_row = self._ledger.append(db, entry)
        if ledger_row.applied_at is not None:
            return None
        row = self._db.get_user_points(db, entry.user_id)
        if row is None:
            row = self._db.add_user_points(db, entry.user_id)
        before = UserScore.from_row(row)
        now = utcnow()
        after = before.with_entry(entry, updated_at=now)
        self._write(row, after, now)
        ledger_row.applied_at = now
        try:
            db.flush()
        except (StaleDataError, IntegrityError) as exc:
            raise ConcurrentUpdateConflict(
                f"Score row for {entry.user_id} changed concurrently") from exc
        return ScoreChange(before=before, after=UserScore.from_row(row))

    def _run_atomic(self, db, unit):
        attempt = 0
        while True:
            attempt += 1
            try:
                result = unit()
                try:
                    db.commit()
                except (StaleDataError, IntegrityError) as exc:
                    raise ConcurrentUpdateConflict(str(exc)) from exc
                return result
            except ConcurrentUpdateConflict as exc:
                db.rollback()
                if attempt >= self._max_attempts:
                    self._log.error("Score update failed after %d attempts: %s",
                                    attempt, exc)
                    raise AggregationFailed(
                        f"Score update failed after {attempt} attempts") from exc
                delay = self._base_delay * (2 ** (attempt - 1))
                self._log.warning("Score update conflict (attempt %d/%d), "
                                  "retrying in %.3fs", attempt,
                                  self._max_attempts, delay)
                self._sleep(delay)
            except Exception:
                db.rollback()
                raise

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            return self._user_locks.setdefault(str(user_id), threading.Lock())

    def _publish(self, change: Optional[ScoreChange]) -> None:
        if change is not None and self._notifier is not None:
            self._notifier.publish_change(change.before, change.after)

    @staticmethod
    def _write(row, score: UserScore, updated_at) -> None:
        row.points = score.total_points
        for name in COUNTER_FIELDS:
            setattr(row, name, getattr(score, name))
        row.level = classify_level(score.total_points).value
        row.last_updated = updated_at

    @staticmethod
    def _snapshot(row) -> Dict:
        data = {'points': int(row.points or 0), 'level': row.level}
        for name in COUNTER_FIELDS:
            data[name] = int(getattr(row, name) or 0)
        return data

    @staticmethod
    def _snapshot_of(score: UserScore) -> Dict:
        data = {'points': score.total_points, 'level': score.level.value}
        for name in COUNTER_FIELDS:
            data[name] = getattr(score, name)
        return data
