"""Exceptions raised by the points and ranking services.

Every error carries a ``retryable`` flag so the HTTP layer can tell a
generic "please try again" notice apart from a request that will never
succeed as sent.
"""


class PointsError(Exception):
    """Base class for all points-engine errors."""

    retryable = True


class InvalidActionKind(PointsError):
    """Raised when an action is not in the fixed point table."""

    retryable = False


class UnknownUser(PointsError):
    """Raised when a user id does not resolve to a registered user."""


class UnknownSubmission(PointsError):
    """Raised when a submission id does not resolve."""


class OutOfRangeAward(PointsError):
    """Raised for a manual award outside 0-100 when the reject policy is on."""


class ConcurrentUpdateConflict(PointsError):
    """Raised when another writer changed a score row under us."""


class AggregationFailed(PointsError):
    """Raised when a score update still conflicts after every retry."""


class AlreadyReviewed(PointsError):
    """Raised on a second review of the same submission."""

    retryable = False


class PermissionDenied(PointsError):
    """Raised when a capability lacks the role an operation needs."""

    retryable = False


class ContentFlagged(PointsError):
    """Raised when moderation blocks a piece of learner content."""

    retryable = False

    def __init__(self, message: str, category: str = None) -> None:
        super().__init__(message)
        self.category = category
