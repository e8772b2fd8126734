"""Business logic for automatic moderation and user content reports."""
import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True)
class ModerationResult:
    is_allowed: bool
    category: Optional[str] = None
    confidence: Optional[float] = None
    explanation: Optional[str] = None


ALLOWED = ModerationResult(is_allowed=True)


class ModerationService:
    """Runs content through the classifier and records flagged items.

    Availability wins over strictness: if the classifier raises, the content
    is allowed.  A flagged item is stored in ``flagged_content`` for the
    moderators; failing to store it is logged but the content stays blocked.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers control the session lifecycle.
    """

    def __init__(self, db_module, classifier=None) -> None:
        """
        Args:
            db_module:  The imported ``database`` module (or any object that
                exposes ``create_flagged_content``).
            classifier: Object with ``analyze(content)`` returning a verdict
                (``content_classifier.ContentClassifier``); ``None``
                disables automatic moderation.
        """
        self._db = db_module
        self._classifier = classifier
        self._log = logging.getLogger('classsync.moderation')

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def moderate_content(self, db, content: str, content_type: str,
                         content_id: str) -> ModerationResult:
        """Classify *content* and flag it when the classifier objects."""
        if self._classifier is None:
            return ALLOWED
        try:
            verdict = self._classifier.analyze(content)
        except Exception as exc:
            self._log.error("Content moderation error, allowing %s %s: %s",
                            content_type, content_id, exc)
            return ALLOWED
        if not verdict.is_flagged:
            return ALLOWED

        result = ModerationResult(
            is_allowed=False,
            category=verdict.category,
            confidence=verdict.confidence,
            explanation=verdict.explanation,
        )
        try:
            self._db.create_flagged_content(
                db, content_id, content_type, content,
                reason=f"Automatically flagged for {verdict.category}",
                ai_analysis=json.dumps({
                    'category': verdict.category,
                    'confidence': verdict.confidence,
                    'explanation': verdict.explanation,
                }),
            )
        except SQLAlchemyError as exc:
            self._log.error("Error saving flagged content %s: %s", content_id, exc)
        self._log.info("Flagged %s %s for %s", content_type, content_id,
                       verdict.category)
        return result

    def report_content(self, db, content_id: str, content_type: str,
                       content: str, reason: str,
                       reported_by: Optional[str] = None):
        """Store a user report for moderator review.

        Raises:
            ValueError: if *reason* is blank.
        """
        if not (reason or '').strip():
            raise ValueError("A report needs a reason")
        row = self._db.create_flagged_content(
            db, content_id, content_type, content, reason=reason.strip(),
            reported_by=reported_by,
        )
        self._log.info("Content %s reported by %s", content_id, reported_by)
        return row
