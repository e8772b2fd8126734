"""Business logic for the append-only point ledger."""
import logging
from datetime import datetime
from typing import List, Optional

from ..errors import UnknownUser
from ..points import LedgerEntry, PointAction, parse_action, utcnow


class LedgerService:
    """Validates point-earning actions and appends them to the ledger,
    delegating persistence to the ``database`` module's helper functions.

    Rules
    -----
    * Only the five table actions may be recorded; ``MANUAL_AWARD`` entries
      are produced by :class:`~app.services.score_service.ScoreService`.
    * The user must exist.
    * Entries are never edited or deleted.  Recording the same real-world
      event twice yields two entries; dedup is the caller's job.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers control the transaction.
    """

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``get_user``, ``add_ledger_entry`` and
                ``get_ledger_entries``).
        """
        self._db = db_module
        self._log = logging.getLogger('classsync.ledger')

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record(self, db, user_id: str, action_kind,
               occurred_at: Optional[datetime] = None) -> LedgerEntry:
        """Append one entry for *user_id* and return it.

        The row is added and flushed inside the caller's transaction;
        :meth:`ScoreService.apply_ledger_entry` commits it together with
        the score update.

        Raises:
            InvalidActionKind: *action_kind* is not in the point table.
            UnknownUser: *user_id* does not resolve.
        """
        action = parse_action(action_kind)
        self.ensure_user(db, user_id)
        entry = self.build_entry(user_id, action, action.points,
                                 occurred_at=occurred_at)
        self.append(db, entry)
        db.flush()
        self._log.debug("Recorded %s (+%d) for %s", action.value,
                        entry.points_awarded, user_id)
        return entry

    def build_entry(self, user_id: str, action: PointAction, points: int,
                    occurred_at: Optional[datetime] = None,
                    awarded_by: str = None,
                    submission_id: str = None) -> LedgerEntry:
        """Create an unsaved entry with a fresh id."""
        return LedgerEntry(
            id=self._db.new_id(),
            user_id=str(user_id),
            action_kind=action,
            points_awarded=int(points),
            occurred_at=occurred_at or utcnow(),
            awarded_by=awarded_by,
            submission_id=submission_id,
        )

    def append(self, db, entry: LedgerEntry):
        """Add *entry* to the session unless it is already stored.

        Raises:
            ValueError: a stored row with the same id records a different
                user, action or amount.
        """
        row = self._db.get_ledger_entry(db, entry.id)
        if row is not None:
            if (str(row.user_id) != entry.user_id
                    or row.action_kind != entry.action_kind.value
                    or int(row.points_awarded or 0) != entry.points_awarded):
                raise ValueError(f"Ledger entry {entry.id} already records a "
                                 f"different event")
            return row
        return self._db.add_ledger_entry(
            db, entry.id, entry.user_id, entry.action_kind.value,
            entry.points_awarded, entry.occurred_at,
            awarded_by=entry.awarded_by,
            submission_id=entry.submission_id,
        )

    def ensure_user(self, db, user_id: str) -> None:
        if self._db.get_user(db, user_id) is None:
            raise UnknownUser(f"Unknown user: {user_id}")

    def entries_for(self, db, user_id: str,
                    since: Optional[datetime] = None) -> List[LedgerEntry]:
        """Return the ledger history of *user_id*, newest first."""
        rows = self._db.get_ledger_entries(db, user_id=user_id, since=since,
                                           newest_first=True)
        return [LedgerEntry.from_row(r) for r in rows]

    def all_entries(self, db, since: Optional[datetime] = None) -> List[LedgerEntry]:
        """Return every ledger entry (optionally after *since*), oldest first."""
        return [LedgerEntry.from_row(r)
                for r in self._db.get_ledger_entries(db, since=since)]
