"""Business logic for learner submissions and contributor reviews."""
import logging
from typing import Dict, List, Optional

from ..errors import (AlreadyReviewed, ContentFlagged, UnknownSubmission,
                      UnknownUser)
from ..points import (STATUS_REVIEWED, SUBMISSION_TYPES, SubmissionRecord,
                      UserScore)
from .score_service import ScoreService
from .user_service import Capability, UserService


class SubmissionService:
    """Creates submissions and applies contributor point awards.

    Rules
    -----
    * ``type`` is one of ``note``, ``question``, ``flashcard``, ``post``.
    * Only ``contributor`` or ``admin`` capabilities may review.
    * A submission goes pending → reviewed exactly once.  The status flip,
      the ledger entry and the score update share one transaction, so an
      award is never lost after the flip and a second review changes
      nothing and raises :class:`~app.errors.AlreadyReviewed`.
    """

    def __init__(self, db_module, scores: ScoreService, users: UserService,
                 moderation=None) -> None:
        """
        Args:
            db_module:  The imported ``database`` module.
            scores:     Score service that grants the award.
            users:      User service for capability checks.
            moderation: Optional ``ModerationService`` run on new content.
        """
        self._db = db_module
        self._scores = scores
        self._users = users
        self._moderation = moderation
        self._log = logging.getLogger('classsync.submissions')

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(self, db, user_id: str, type: str, title: str,
               content: str = '') -> SubmissionRecord:
        """Store a pending submission for *user_id*.

        Raises:
            ValueError: bad type or empty title.
            UnknownUser: no such user.
            ContentFlagged: moderation blocked the content.
        """
        kind = (type or '').strip().lower()
        if kind not in SUBMISSION_TYPES:
            raise ValueError(f"type must be one of {SUBMISSION_TYPES}")
        if not (title or '').strip():
            raise ValueError("title must not be empty")
        user = self._db.get_user(db, user_id)
        if user is None:
            raise UnknownUser(f"Unknown user: {user_id}")

        submission_id = self._db.new_id()
        if self._moderation is not None:
            verdict = self._moderation.moderate_content(
                db, f"{title}\n\n{content or ''}", kind, submission_id)
            if not verdict.is_allowed:
                raise ContentFlagged(
                    f"Content flagged for {verdict.category}: {verdict.explanation}",
                    category=verdict.category)

        row = self._db.create_submission(db, user_id, kind, title.strip(),
                                         content or '', submission_id=submission_id)
        self._log.info("Submission %s (%s) created by %s", row.id, kind, user_id)
        return SubmissionRecord.from_row(row, user.full_name)

    def get(self, db, submission_id: str) -> SubmissionRecord:
        row = self._db.get_submission(db, submission_id)
        if row is None:
            raise UnknownSubmission(f"Unknown submission: {submission_id}")
        return SubmissionRecord.from_row(row)

    def list_pending(self, db, search: str = '') -> List[SubmissionRecord]:
        """Return pending submissions, newest first.

        *search* matches the title or the author's name, ignoring case.
        """
        needle = (search or '').strip().lower()
        records = [SubmissionRecord.from_row(row, name)
                   for row, name in self._db.get_pending_submissions(db)]
        if not needle:
            return records
        return [r for r in records
                if needle in r.title.lower() or needle in r.author_name.lower()]

    def review(self, db, submission_id: str, points_awarded: int,
               capability: Optional[Capability]) -> UserScore:
        """Mark a submission reviewed and grant *points_awarded* to its author.

        Raises:
            PermissionDenied: capability lacks contributor/admin.
            UnknownSubmission: no such submission.
            AlreadyReviewed: the submission was reviewed before.
            OutOfRangeAward, AggregationFailed: see ``ScoreService``.
        """
        capability = self._users.require(capability, 'contributor', 'admin')
        row = self._db.get_submission(db, submission_id)
        if row is None:
            raise UnknownSubmission(f"Unknown submission: {submission_id}")
        if row.status == STATUS_REVIEWED:
            raise AlreadyReviewed(f"Submission {submission_id} was already reviewed")

        points = self._scores.bound_award(points_awarded)
        author = row.user_id

        def flip_status():
            changed = self._db.mark_submission_reviewed(
                db, submission_id, points, capability.user_id)
            if changed != 1:
                raise AlreadyReviewed(
                    f"Submission {submission_id} was already reviewed")

        score = self._scores.award_manual_points(
            db, author, points, capability.user_id,
            submission_id=str(submission_id), guard=flip_status)
        self._log.info("Submission %s reviewed by %s (+%d)", submission_id,
                       capability.user_id, points)
        return score

    def reviewer_stats(self, db, reviewer_id: str) -> Dict[str, int]:
        """Summarise the reviews done by *reviewer_id*."""
        reviewed = self._db.get_reviewed_submissions(db, reviewer_id)
        stats = {
            'total_reviews': len(reviewed),
            'total_points_awarded': sum(int(s.points_awarded or 0) for s in reviewed),
        }
        for kind in SUBMISSION_TYPES:
            stats[f'{kind}s_reviewed'] = sum(1 for s in reviewed if s.type == kind)
        return stats
