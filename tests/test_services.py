#!/usr/bin/env python3
"""
Unit tests for the app/services layer.

Run with:
    python -m pytest tests/test_services.py
"""
import os
import shutil
import sys
import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from app.errors import InvalidActionKind, OutOfRangeAward, UnknownUser
from app.levels import Level
from app.points import LedgerEntry, PointAction, UserScore
from app.services import (LeaderboardService, RankingService, ScoreService,
                          ViewFilter, aggregate_entries)
from app.services.leaderboard_service import window_start
from app.services.notification_service import LEVEL_UP, POINTS_EARNED
from classsync import PointsEngine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

NOW = datetime(2024, 3, 31, 12, 0)


def _score(user_id, points=0, name=None, updated=None, **counters):
    return UserScore(user_id=user_id, total_points=points,
                     display_name=name or user_id,
                     last_updated=updated or NOW, **counters)


def _entry(entry_id, user_id, kind, days_ago):
    action = PointAction(kind)
    return LedgerEntry(id=entry_id, user_id=user_id, action_kind=action,
                       points_awarded=action.points,
                       occurred_at=NOW - timedelta(days=days_ago))


class EngineMixin(unittest.TestCase):
    """Builds a PointsEngine on a fresh SQLite file for each test."""

    config = {}

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        url = 'sqlite:///' + os.path.join(self.tmp, 'classsync.db')
        database.configure(url)
        database.init_db()
        cfg = {'database_url': url}
        cfg.update(self.config)
        self.sleeps = []
        self.engine = PointsEngine(cfg, sleep=self.sleeps.append)
        self.db = database.SessionLocal()

    def tearDown(self):
        self.db.close()
        self.engine.close()
        database.engine.dispose()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _user(self, name='Ada Lovelace', role='student', user_id=None) -> str:
        user = self.engine.user_service.register(self.db, user_id=user_id,
                                                 full_name=name, role=role)
        return user.id


# ===========================================================================
# Ranking
# ===========================================================================

class TestRankingService(unittest.TestCase):

    def setUp(self):
        self.ranking = RankingService()

    def test_orders_by_points(self):
        ranked = self.ranking.compute_ranks([
            _score('a', 10), _score('b', 300), _score('c', 75)])
        self.assertEqual([r.score.user_id for r in ranked], ['b', 'c', 'a'])
        self.assertEqual([r.rank for r in ranked], [1, 2, 3])

    def test_tie_goes_to_earlier_update(self):
        ranked = self.ranking.compute_ranks([
            _score('late', 100, updated=NOW),
            _score('early', 100, updated=NOW - timedelta(hours=1)),
        ])
        self.assertEqual(ranked[0].score.user_id, 'early')

    def test_missing_update_time_sorts_first(self):
        ranked = self.ranking.compute_ranks([
            _score('dated', 100),
            replace(_score('undated', 100), last_updated=None),
        ])
        self.assertEqual(ranked[0].score.user_id, 'undated')

    def test_tie_order_follows_wall_clock_across_dst_change(self):
        # 01:10 and 01:50 on 3 Nov 2024 fall in the repeated US hour
        ranked = self.ranking.compute_ranks([
            _score('later', 100, updated=datetime(2024, 11, 3, 1, 50)),
            _score('earlier', 100, updated=datetime(2024, 11, 3, 1, 10)),
            _score('next_day', 100, updated=datetime(2024, 11, 4, 0, 5)),
        ])
        self.assertEqual([r.score.user_id for r in ranked],
                         ['earlier', 'later', 'next_day'])

    def test_full_tie_goes_to_lower_user_id(self):
        ranked = self.ranking.compute_ranks([_score('zed', 100), _score('amy', 100)])
        self.assertEqual([r.score.user_id for r in ranked], ['amy', 'zed'])
        self.assertEqual([r.rank for r in ranked], [1, 2])

    def test_category_metric_breaks_ties_on_points(self):
        ranked = self.ranking.compute_ranks([
            _score('a', 100, notes_uploaded=2),
            _score('b', 500, notes_uploaded=2),
            _score('c', 50, notes_uploaded=1),
        ], 'notes')
        self.assertEqual([r.score.user_id for r in ranked], ['b', 'a', 'c'])

    def test_ranks_are_a_permutation(self):
        scores = [_score(f'u{i}', (i % 3) * 10) for i in range(10)]
        ranked = self.ranking.compute_ranks(scores)
        self.assertEqual(sorted(r.rank for r in ranked), list(range(1, 11)))

    def test_unknown_metric(self):
        with self.assertRaises(ValueError):
            self.ranking.compute_ranks([_score('a')], 'karma')

    def test_rank_of(self):
        scores = [_score('a', 10), _score('b', 30)]
        self.assertEqual(self.ranking.rank_of(scores, 'a').rank, 2)
        self.assertIsNone(self.ranking.rank_of(scores, 'nobody'))


# ===========================================================================
# Leaderboard views
# ===========================================================================

class TestLeaderboardView(unittest.TestCase):

    def setUp(self):
        self.service = LeaderboardService(None, None, RankingService(), page_size=2)
        self.scores = [
            _score('u1', 55, name='Ada Lovelace', notes_uploaded=1, answers_upvoted=1),
            _score('u2', 30, name='Bob Stone', questions_answered=1),
            _score('u3', 0, name='Cy Twombly'),
        ]
        self.ledger = [
            _entry('e1', 'u1', 'NOTE_UPLOAD', 40),
            _entry('e2', 'u1', 'UPVOTE_RECEIVED', 2),
            _entry('e3', 'u2', 'QUESTION_ANSWER', 10),
        ]

    def test_all_time_uses_stored_scores_and_caps(self):
        rows = self.service.build_view(self.scores, limit=10)
        self.assertEqual([r.score.user_id for r in rows], ['u1', 'u2'])

    def test_limit_below_cap(self):
        rows = self.service.build_view(self.scores, limit=1)
        self.assertEqual(len(rows), 1)
        self.assertEqual(self.service.build_view(self.scores, limit=0), [])

    def test_search_ignores_case_and_reranks(self):
        rows = self.service.build_view(self.scores, ViewFilter(search='BOB'))
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].score.user_id, 'u2')
        self.assertEqual(rows[0].rank, 1)

    def test_week_window_counts_recent_events_only(self):
        rows = self.service.build_view(self.scores, ViewFilter(time_range='week'),
                                       ledger=self.ledger, now=NOW)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].score.user_id, 'u1')
        self.assertEqual(rows[0].score.total_points, 5)
        self.assertEqual(rows[0].score.display_name, 'Ada Lovelace')

    def test_month_window_reorders(self):
        rows = self.service.build_view(self.scores, ViewFilter(time_range='month'),
                                       ledger=self.ledger, now=NOW)
        self.assertEqual([(r.rank, r.score.user_id, r.score.total_points) for r in rows],
                         [(1, 'u2', 30), (2, 'u1', 5)])

    def test_window_requires_ledger(self):
        with self.assertRaises(ValueError):
            self.service.build_view(self.scores, ViewFilter(time_range='week'))

    def test_unknown_time_range(self):
        with self.assertRaises(ValueError):
            window_start('fortnight', NOW)
        self.assertIsNone(window_start('all', NOW))
        self.assertEqual(window_start('week', NOW), NOW - timedelta(days=7))


def test_aggregate_entries_matches_fold():
    scores = aggregate_entries([
        _entry('e1', 'u1', 'NOTE_UPLOAD', 3),
        _entry('e2', 'u1', 'FLASHCARD_CREATED', 2),
        _entry('e3', 'u2', 'COLLABORATIVE_POST', 1),
    ], display_names={'u1': 'Ada'})
    assert scores['u1'].total_points == 60
    assert scores['u1'].flashcards_created == 1
    assert scores['u1'].display_name == 'Ada'
    assert scores['u2'].collaborative_posts == 1
    assert scores['u2'].display_name == 'Anonymous User'


# ===========================================================================
# Ledger and scores against the database
# ===========================================================================

class TestLedgerAndScores(EngineMixin):

    def test_record_action_updates_totals(self):
        uid = self._user()
        self.engine.record_action(self.db, uid, 'NOTE_UPLOAD')
        self.engine.record_action(self.db, uid, 'UPVOTE_RECEIVED')
        score = self.engine.record_action(self.db, uid, 'UPVOTE_RECEIVED')
        self.assertEqual(score.total_points, 60)
        self.assertEqual(score.notes_uploaded, 1)
        self.assertEqual(score.answers_upvoted, 2)
        self.assertEqual(score.level, Level.BEGINNER)
        self.assertEqual(score.display_name, 'Ada Lovelace')

    def test_history_is_newest_first(self):
        uid = self._user()
        self.engine.record_action(self.db, uid, 'NOTE_UPLOAD',
                                  occurred_at=NOW - timedelta(days=1))
        self.engine.record_action(self.db, uid, 'QUESTION_ANSWER', occurred_at=NOW)
        history = self.engine.ledger_service.entries_for(self.db, uid)
        self.assertEqual([e.action_kind for e in history],
                         [PointAction.QUESTION_ANSWER, PointAction.NOTE_UPLOAD])

    def test_invalid_action_leaves_no_trace(self):
        uid = self._user()
        with self.assertRaises(InvalidActionKind):
            self.engine.record_action(self.db, uid, 'BOGUS')
        self.assertEqual(self.engine.ledger_service.entries_for(self.db, uid), [])
        self.assertEqual(self.engine.score_service.get_score(self.db, uid).total_points, 0)

    def test_unknown_user(self):
        with self.assertRaises(UnknownUser):
            self.engine.record_action(self.db, 'ghost', 'NOTE_UPLOAD')
        with self.assertRaises(UnknownUser):
            self.engine.get_user_rank(self.db, 'ghost')

    def test_applying_an_entry_twice_counts_once(self):
        uid = self._user()
        entry = self.engine.ledger_service.record(self.db, uid, 'FLASHCARD_CREATED')
        self.engine.score_service.apply_ledger_entry(self.db, entry)
        score = self.engine.score_service.apply_ledger_entry(self.db, entry)
        self.assertEqual(score.total_points, 10)
        self.assertEqual(score.flashcards_created, 1)

    def _manual_entry(self, uid, points):
        return LedgerEntry(id=database.new_id(), user_id=uid,
                           action_kind=PointAction.MANUAL_AWARD,
                           points_awarded=points, occurred_at=NOW)

    def test_table_action_with_other_amount_is_refused(self):
        uid = self._user()
        entry = LedgerEntry(id=database.new_id(), user_id=uid,
                            action_kind=PointAction.NOTE_UPLOAD,
                            points_awarded=100000, occurred_at=NOW)
        with self.assertRaises(InvalidActionKind):
            self.engine.score_service.apply_ledger_entry(self.db, entry)
        self.assertEqual(self.engine.ledger_service.entries_for(self.db, uid), [])
        score = self.engine.score_service.get_score(self.db, uid)
        self.assertEqual(score.total_points, 0)
        self.assertEqual(score.level, Level.BEGINNER)

    def test_manual_entry_is_clamped(self):
        uid = self._user()
        score = self.engine.score_service.apply_ledger_entry(
            self.db, self._manual_entry(uid, 5000))
        self.assertEqual(score.total_points, 100)
        self.assertEqual(score.level, Level.BEGINNER)
        history = self.engine.ledger_service.entries_for(self.db, uid)
        self.assertEqual([e.points_awarded for e in history], [100])
        self.assertEqual(self.engine.reconcile(self.db), [])

    def test_reused_entry_id_for_another_user_is_refused(self):
        ada = self._user()
        bob = self._user('Bob Stone')
        entry = self.engine.ledger_service.record(self.db, ada, 'NOTE_UPLOAD')
        self.engine.score_service.apply_ledger_entry(self.db, entry)
        with self.assertRaises(ValueError):
            self.engine.score_service.apply_ledger_entry(
                self.db, replace(entry, user_id=bob))
        self.assertEqual(self.engine.score_service.get_score(self.db, bob).total_points, 0)
        self.assertEqual(self.engine.score_service.get_score(self.db, ada).total_points, 50)

    def test_events_are_published_under_the_user_lock(self):
        uid = self._user()
        seen = []

        class Recorder:
            def publish_change(self, before, after):
                seen.append((after.total_points,
                             service._user_lock(after.user_id).locked()))

        service = ScoreService(database, self.engine.ledger_service,
                               notifier=Recorder())
        for kind in ('NOTE_UPLOAD', 'FLASHCARD_CREATED'):
            entry = self.engine.ledger_service.build_entry(uid, PointAction(kind),
                                                           PointAction(kind).points)
            service.apply_ledger_entry(self.db, entry)
        service.award_manual_points(self.db, uid, 15, awarded_by='reviewer')
        self.assertEqual(seen, [(50, True), (60, True), (75, True)])
        self.assertFalse(service._user_lock(uid).locked())

    def test_stored_scores_match_ledger(self):
        uid = self._user()
        other = self._user('Bob Stone')
        for kind in ('NOTE_UPLOAD', 'QUESTION_ANSWER', 'FLASHCARD_CREATED'):
            self.engine.record_action(self.db, uid, kind)
        self.engine.record_action(self.db, other, 'COLLABORATIVE_POST')
        self.assertEqual(self.engine.reconcile(self.db), [])

    def test_reconcile_detects_and_repairs_drift(self):
        uid = self._user()
        self.engine.record_action(self.db, uid, 'NOTE_UPLOAD')
        row = database.get_user_points(self.db, uid)
        row.points = 999
        self.db.commit()

        mismatches = self.engine.reconcile(self.db)
        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0]['stored']['points'], 999)
        self.assertEqual(mismatches[0]['expected']['points'], 50)

        self.engine.reconcile(self.db, repair=True)
        self.assertEqual(self.engine.reconcile(self.db), [])
        self.assertEqual(self.engine.score_service.get_score(self.db, uid).total_points, 50)

    def test_user_rank_and_leaderboard(self):
        ada = self._user('Ada Lovelace')
        bob = self._user('Bob Stone')
        self.engine.record_action(self.db, ada, 'COLLABORATIVE_POST')
        self.engine.record_action(self.db, bob, 'NOTE_UPLOAD')
        rank, score = self.engine.get_user_rank(self.db, ada)
        self.assertEqual(rank, 2)
        self.assertEqual(score.total_points, 20)
        rows = self.engine.get_leaderboard(self.db, time_range='week')
        self.assertEqual([r.score.user_id for r in rows], [bob, ada])
        rows = self.engine.get_leaderboard(self.db, search='ada')
        self.assertEqual([(r.rank, r.score.user_id) for r in rows], [(1, ada)])


class TestRejectedManualEntries(EngineMixin):

    config = {'manual_award_policy': 'reject'}

    def test_out_of_range_manual_entry_is_refused(self):
        uid = self._user()
        entry = LedgerEntry(id=database.new_id(), user_id=uid,
                            action_kind=PointAction.MANUAL_AWARD,
                            points_awarded=5000, occurred_at=NOW)
        with self.assertRaises(OutOfRangeAward):
            self.engine.score_service.apply_ledger_entry(self.db, entry)
        self.assertEqual(self.engine.ledger_service.entries_for(self.db, uid), [])


# ===========================================================================
# End-to-end scenarios with notifications
# ===========================================================================

class TestPointsScenarios(EngineMixin):

    def _collect(self, user_id):
        self.assertTrue(self.engine.notification_service.flush(timeout=5))
        events = []
        self.engine.notification_service.subscribe(user_id, events.append)
        return events

    def test_note_and_two_upvotes(self):
        uid = self._user()
        events = self._collect(uid)
        self.engine.record_action(self.db, uid, 'NOTE_UPLOAD')
        self.engine.record_action(self.db, uid, 'UPVOTE_RECEIVED')
        self.engine.record_action(self.db, uid, 'UPVOTE_RECEIVED')
        self.assertTrue(self.engine.notification_service.flush(timeout=5))
        self.assertEqual([e.kind for e in events], [POINTS_EARNED] * 3)
        self.assertEqual([e.delta for e in events], [50, 5, 5])

    def test_crossing_a_threshold_levels_up_once(self):
        uid = self._user()
        reviewer = self._user('Grace Hopper', role='contributor')
        for amount in [100] * 9 + [95]:
            self.engine.award_manual_points(self.db, uid, amount, reviewer)
        self.assertEqual(self.engine.score_service.get_score(self.db, uid).total_points, 995)

        events = self._collect(uid)
        score = self.engine.record_action(self.db, uid, 'COLLABORATIVE_POST')
        self.assertTrue(self.engine.notification_service.flush(timeout=5))

        self.assertEqual(score.total_points, 1015)
        self.assertEqual(score.level, Level.INTERMEDIATE)
        self.assertEqual([e.kind for e in events], [POINTS_EARNED, LEVEL_UP])
        self.assertEqual(events[0].message, "You've earned 20 points!")
        self.assertEqual(events[1].message,
                         "Congratulations! You've reached Intermediate level!")
        self.assertEqual(self.engine.reconcile(self.db), [])


if __name__ == '__main__':
    unittest.main()
