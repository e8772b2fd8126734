#!/usr/bin/env python3
"""
ClassSync points engine.

Wires the ledger, score, ranking, leaderboard, notification, submission and
moderation services into one :class:`PointsEngine`, loads configuration and
sets up logging.  Run as a script for operator tasks (table setup, ledger
reconciliation, printing the leaderboard).
"""

import argparse
import contextlib
import json
import logging
import os
import sys
import time
from typing import Dict, List, Optional, Tuple

from colorama import Fore, Style, init
from dotenv import load_dotenv

import database
from app.points import UserScore
from app.services import (LedgerService, LeaderboardService, ModerationService,
                          NotificationService, RankedScore, RankingService,
                          ScoreService, SubmissionService, UserService)
from content_classifier import ContentClassifier

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)
load_dotenv()

DEFAULT_CONFIG: Dict = {
    'database_url': 'sqlite:///classsync.db',
    'log_level': 'WARNING',
    'leaderboard_page_size': 100,
    'max_update_attempts': 5,
    'retry_base_delay_seconds': 0.05,
    'manual_award_policy': 'clamp',
    'classifier_url': 'https://api.openai.com/v1/chat/completions',
    'classifier_model': 'gpt-4-turbo-preview',
    'classifier_api_key': '',
    'classifier_timeout_seconds': 8,
}

# Environment variable -> config key; the environment wins.
ENV_OVERRIDES = {
    'DATABASE_URL': 'database_url',
    'CLASSSYNC_LOG_LEVEL': 'log_level',
    'CLASSIFIER_API_KEY': 'classifier_api_key',
}


def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root ClassSync logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, str(level).upper(), logging.WARNING)
    logger = logging.getLogger('classsync')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


logger = setup_logging()


def load_config(config_path: str = 'config.json') -> Dict:
    """Load configuration from JSON file with environment variable support.

    A missing file yields the defaults; an unreadable one is logged and
    ignored.  Environment variables take precedence over file values:
    - DATABASE_URL overrides database_url
    - CLASSSYNC_LOG_LEVEL overrides log_level
    - CLASSIFIER_API_KEY overrides classifier_api_key
    """
    config = dict(DEFAULT_CONFIG)
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                config.update(loaded)
            else:
                logger.warning("Ignoring %s: top level is not an object", config_path)
        except (IOError, json.JSONDecodeError) as e:
            logger.warning("Could not load %s: %s", config_path, e)
    for env_name, key in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            config[key] = value
    return config


class PointsEngine:
    """Request-scoped facade over the points services.

    The engine holds no per-user state: every call takes the SQLAlchemy
    session and the acting user explicitly.  The individual services are
    exposed as attributes (``engine.leaderboard_service`` ...) for callers
    that need more than the facade.
    """

    def __init__(self, config: Optional[Dict] = None, db_module=database,
                 classifier=None, notifier: Optional[NotificationService] = None,
                 sleep=time.sleep):
        self._log = logging.getLogger('classsync.engine')
        self.config = dict(DEFAULT_CONFIG)
        self.config.update(config or {})
        self._db = db_module

        self.notification_service = notifier or NotificationService()
        self.ledger_service = LedgerService(db_module)
        self.score_service = ScoreService(
            db_module, self.ledger_service,
            notifier=self.notification_service,
            max_attempts=self.config['max_update_attempts'],
            base_delay=self.config['retry_base_delay_seconds'],
            award_policy=self.config['manual_award_policy'],
            sleep=sleep,
        )
        self.ranking_service = RankingService()
        self.leaderboard_service = LeaderboardService(
            self.score_service, self.ledger_service, self.ranking_service,
            page_size=self.config['leaderboard_page_size'],
        )
        self.user_service = UserService(db_module)
        if classifier is None:
            classifier = ContentClassifier.from_config(self.config)
        self.moderation_service = ModerationService(db_module, classifier)
        self.submission_service = SubmissionService(
            db_module, self.score_service, self.user_service,
            moderation=self.moderation_service,
        )

    @classmethod
    def from_config(cls, config_path: str = 'config.json', **kwargs) -> 'PointsEngine':
        """Load config, bind the database and create tables."""
        config = load_config(config_path)
        setup_logging(config.get('log_level', 'WARNING'))
        database.configure(config['database_url'])
        database.init_db()
        return cls(config, **kwargs)

    @contextlib.contextmanager
    def session(self):
        """Yield a session from the bound database and close it afterwards."""
        if self._db.SessionLocal is None:
            self._db.configure(self.config['database_url'])
        db = self._db.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    # ------------------------------------------------------------------
    # UI-facing operations
    # ------------------------------------------------------------------

    def record_action(self, db, user_id: str, kind, occurred_at=None) -> UserScore:
        """Record a point-earning action and return the updated score."""
        entry = self.ledger_service.record(db, user_id, kind, occurred_at=occurred_at)
        return self.score_service.apply_ledger_entry(db, entry)

    def get_leaderboard(self, db, search: str = '', time_range: str = 'all',
                        sort: str = 'points', limit: int = None) -> List[RankedScore]:
        return self.leaderboard_service.get_rankings(
            db, search=search, time_range=time_range, sort=sort, limit=limit)

    def get_user_rank(self, db, user_id: str) -> Tuple[int, UserScore]:
        return self.leaderboard_service.get_user_rank(db, user_id)

    def review_submission(self, db, submission_id: str, points_awarded: int,
                          reviewer_id: str) -> UserScore:
        """Review a submission as *reviewer_id*, whose stored role must be
        contributor or admin."""
        capability = self.user_service.issue_capability(db, reviewer_id)
        return self.submission_service.review(db, submission_id, points_awarded,
                                              capability)

    def award_manual_points(self, db, user_id: str, amount: int,
                            awarded_by: str) -> UserScore:
        capability = self.user_service.issue_capability(db, awarded_by)
        self.user_service.require(capability, 'contributor', 'admin')
        return self.score_service.award_manual_points(db, user_id, amount,
                                                      awarded_by)

    def reconcile(self, db, repair: bool = False) -> List[Dict]:
        return self.score_service.reconcile(db, repair=repair)

    def close(self) -> None:
        self.notification_service.close()


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def _print_leaderboard(rows: List[RankedScore], sort: str) -> None:
    if not rows:
        print(f"{Fore.YELLOW}No users on the leaderboard yet.")
        return
    print(f"{Style.BRIGHT}{'#':>4}  {'Name':<30} {'Points':>8}  {'Level':<12} ({sort})")
    for row in rows:
        score = row.score
        colour = Fore.YELLOW if row.rank == 1 else Fore.WHITE
        print(f"{colour}{row.rank:>4}  {score.display_name[:30]:<30} "
              f"{score.total_points:>8}  {score.level.value:<12}")


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='ClassSync points engine - operator tasks',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 classsync.py --init-db                 # Create tables
  python3 classsync.py --reconcile               # Report score drift
  python3 classsync.py --reconcile --repair      # Rewrite drifted scores
  python3 classsync.py --leaderboard --sort notes --time-range week
        """
    )
    parser.add_argument('--config', '-c', default='config.json',
                        help='Path to config file (default: config.json)')
    parser.add_argument('--init-db', action='store_true',
                        help='Create database tables and exit')
    parser.add_argument('--reconcile', action='store_true',
                        help='Compare stored scores with the ledger')
    parser.add_argument('--repair', action='store_true',
                        help='With --reconcile, rewrite drifted scores')
    parser.add_argument('--leaderboard', '-l', action='store_true',
                        help='Print the leaderboard')
    parser.add_argument('--sort', default='points',
                        help='Ranking metric: points, notes, questions, '
                             'flashcards, posts, upvotes (default: points)')
    parser.add_argument('--time-range', default='all',
                        choices=['all', 'month', 'week'],
                        help='Which ledger events count (default: all)')
    parser.add_argument('--search', default='', help='Filter by display name')
    parser.add_argument('--limit', type=int, default=20,
                        help='Rows to print (default: 20)')
    args = parser.parse_args(argv)

    engine = PointsEngine.from_config(args.config)
    if args.init_db:
        print(f"{Fore.GREEN}Database ready at {database.DATABASE_URL}")
        return 0

    exit_code = 0
    try:
        with engine.session() as db:
            if args.reconcile:
                mismatches = engine.reconcile(db, repair=args.repair)
                if not mismatches:
                    print(f"{Fore.GREEN}All scores match the ledger.")
                for item in mismatches:
                    print(f"{Fore.RED}{item['user_id']}: stored={item['stored']} "
                          f"expected={item['expected']}")
                if mismatches and args.repair:
                    print(f"{Fore.GREEN}Repaired {len(mismatches)} score rows.")
                elif mismatches:
                    exit_code = 1
            if args.leaderboard:
                try:
                    rows = engine.get_leaderboard(db, search=args.search,
                                                  time_range=args.time_range,
                                                  sort=args.sort, limit=args.limit)
                except ValueError as e:
                    print(f"{Fore.RED}Error: {e}")
                    return 2
                _print_leaderboard(rows, args.sort)
            if not (args.reconcile or args.leaderboard):
                parser.print_help()
    finally:
        engine.close()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
