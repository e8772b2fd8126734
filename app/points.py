"""Point table and the typed records passed between services.

Rows coming out of ``database`` are converted into these frozen dataclasses
at the service boundary so the ranking and notification code never touches
live ORM objects.
"""
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidActionKind
from .levels import Level, classify_level


class PointAction(str, Enum):
    NOTE_UPLOAD = 'NOTE_UPLOAD'
    QUESTION_ANSWER = 'QUESTION_ANSWER'
    COLLABORATIVE_POST = 'COLLABORATIVE_POST'
    UPVOTE_RECEIVED = 'UPVOTE_RECEIVED'
    FLASHCARD_CREATED = 'FLASHCARD_CREATED'
    # Contributor grant; amount is chosen by the reviewer.
    MANUAL_AWARD = 'MANUAL_AWARD'

    @property
    def points(self) -> int:
        return POINT_VALUES.get(self, 0)


POINT_VALUES = {
    PointAction.NOTE_UPLOAD: 50,
    PointAction.QUESTION_ANSWER: 30,
    PointAction.COLLABORATIVE_POST: 20,
    PointAction.UPVOTE_RECEIVED: 5,
    PointAction.FLASHCARD_CREATED: 10,
}

# UserScore counter moved by each action kind.
CATEGORY_FIELDS = {
    PointAction.NOTE_UPLOAD: 'notes_uploaded',
    PointAction.QUESTION_ANSWER: 'questions_answered',
    PointAction.FLASHCARD_CREATED: 'flashcards_created',
    PointAction.COLLABORATIVE_POST: 'collaborative_posts',
    PointAction.UPVOTE_RECEIVED: 'answers_upvoted',
}

COUNTER_FIELDS = (
    'notes_uploaded',
    'questions_answered',
    'flashcards_created',
    'collaborative_posts',
    'answers_upvoted',
)

MANUAL_AWARD_MIN = 0
MANUAL_AWARD_MAX = 100

SUBMISSION_TYPES = ('note', 'question', 'flashcard', 'post')
STATUS_PENDING = 'pending'
STATUS_REVIEWED = 'reviewed'

ANONYMOUS_NAME = 'Anonymous User'


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_action(value: Any, allow_manual: bool = False) -> PointAction:
    """Coerce *value* into a :class:`PointAction`.

    Accepts enum members or their names in any letter case
    (``'note_upload'`` is ``NOTE_UPLOAD``).

    Raises:
        InvalidActionKind: when *value* names no known action, or names
            ``MANUAL_AWARD`` and *allow_manual* is false.
    """
    if isinstance(value, PointAction):
        action = value
    else:
        try:
            action = PointAction(str(value).strip().upper())
        except ValueError:
            raise InvalidActionKind(f"Unknown action kind: {value!r}") from None
    if action is PointAction.MANUAL_AWARD and not allow_manual:
        raise InvalidActionKind("MANUAL_AWARD cannot be recorded directly")
    return action


def clamp_award(amount: Any) -> int:
    """Bound a manual award to 0-100, the range of the review slider."""
    return max(MANUAL_AWARD_MIN, min(MANUAL_AWARD_MAX, int(amount)))


# ---------------------------------------------------------------------------
# Typed records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LedgerEntry:
    id: str
    user_id: str
    action_kind: PointAction
    points_awarded: int
    occurred_at: datetime
    awarded_by: Optional[str] = None
    submission_id: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> 'LedgerEntry':
        return cls(
            id=str(row.id),
            user_id=str(row.user_id),
            action_kind=parse_action(row.action_kind, allow_manual=True),
            points_awarded=int(row.points_awarded or 0),
            occurred_at=row.occurred_at,
            awarded_by=row.awarded_by,
            submission_id=row.submission_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['action_kind'] = self.action_kind.value
        data['occurred_at'] = self.occurred_at.isoformat() if self.occurred_at else None
        return data


@dataclass(frozen=True)
class UserScore:
    user_id: str
    total_points: int = 0
    notes_uploaded: int = 0
    questions_answered: int = 0
    flashcards_created: int = 0
    collaborative_posts: int = 0
    answers_upvoted: int = 0
    level: Level = Level.BEGINNER
    last_updated: Optional[datetime] = None
    display_name: str = ANONYMOUS_NAME
    version: int = field(default=0, compare=False)

    @classmethod
    def from_row(cls, row, display_name: Optional[str] = None) -> 'UserScore':
        """Build a record from a ``database.UserPoints`` row.

        The level is always re-derived from the total, so a stale cached
        level in the row can never leak out.
        """
        total = int(row.points or 0)
        return cls(
            user_id=str(row.user_id),
            total_points=total,
            notes_uploaded=int(row.notes_uploaded or 0),
            questions_answered=int(row.questions_answered or 0),
            flashcards_created=int(row.flashcards_created or 0),
            collaborative_posts=int(row.collaborative_posts or 0),
            answers_upvoted=int(row.answers_upvoted or 0),
            level=classify_level(total),
            last_updated=row.last_updated,
            display_name=display_name or ANONYMOUS_NAME,
            version=int(row.version or 0),
        )

    def with_entry(self, entry: LedgerEntry,
                   updated_at: Optional[datetime] = None) -> 'UserScore':
        """Return a copy with *entry* folded in.

        ``last_updated`` becomes *updated_at* when given, otherwise the
        latest of the current value and the entry's ``occurred_at``.
        """
        total = self.total_points + entry.points_awarded
        if updated_at is None:
            updated_at = max(filter(None, (self.last_updated, entry.occurred_at)),
                             default=None)
        changes: Dict[str, Any] = {
            'total_points': total,
            'level': classify_level(total),
            'last_updated': updated_at,
        }
        counter = CATEGORY_FIELDS.get(entry.action_kind)
        if counter:
            changes[counter] = getattr(self, counter) + 1
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'display_name': self.display_name,
            'points': self.total_points,
            'notes_uploaded': self.notes_uploaded,
            'questions_answered': self.questions_answered,
            'flashcards_created': self.flashcards_created,
            'collaborative_posts': self.collaborative_posts,
            'answers_upvoted': self.answers_upvoted,
            'level': self.level.value,
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass(frozen=True)
class SubmissionRecord:
    id: str
    user_id: str
    type: str
    title: str
    content: str
    status: str
    created_at: datetime
    points_awarded: int = 0
    reviewed_by: Optional[str] = None
    author_name: str = ANONYMOUS_NAME

    @classmethod
    def from_row(cls, row, author_name: Optional[str] = None) -> 'SubmissionRecord':
        return cls(
            id=str(row.id),
            user_id=str(row.user_id),
            type=row.type,
            title=row.title or '',
            content=row.content or '',
            status=row.status,
            created_at=row.created_at,
            points_awarded=int(row.points_awarded or 0),
            reviewed_by=row.reviewed_by,
            author_name=author_name or ANONYMOUS_NAME,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat() if self.created_at else None
        return data
