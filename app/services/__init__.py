"""Services package - expose all concrete services from one import."""
from .ledger_service import LedgerService
from .score_service import ScoreService, ScoreChange, aggregate_entries
from .ranking_service import RankingService, RankedScore
from .leaderboard_service import LeaderboardService, ViewFilter
from .notification_service import NotificationService, PointsEvent, Subscription
from .user_service import UserService, Capability
from .submission_service import SubmissionService
from .moderation_service import ModerationService, ModerationResult

__all__ = [
    'LedgerService',
    'ScoreService',
    'ScoreChange',
    'aggregate_entries',
    'RankingService',
    'RankedScore',
    'LeaderboardService',
    'ViewFilter',
    'NotificationService',
    'PointsEvent',
    'Subscription',
    'UserService',
    'Capability',
    'SubmissionService',
    'ModerationService',
    'ModerationResult',
]
