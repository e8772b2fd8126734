#!/usr/bin/env python3
"""
Flask route tests for classsync_web.

Run with:
    python -m pytest tests/test_web.py
"""
import os
import re
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import classsync_web
import database
from classsync import PointsEngine
from openapi_spec import build_spec


class WebTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        url = 'sqlite:///' + os.path.join(self.tmp, 'classsync.db')
        database.configure(url)
        database.init_db()
        self.engine = PointsEngine({'database_url': url}, sleep=lambda _s: None)
        classsync_web.set_engine(self.engine)
        classsync_web.app.config['TESTING'] = True
        self.client = classsync_web.app.test_client()

        db = database.SessionLocal()
        try:
            self.ada = database.create_user(db, full_name='Ada Lovelace').id
            self.bob = database.create_user(db, full_name='Bob Stone').id
            self.grace = database.create_user(db, full_name='Grace Hopper',
                                              role='contributor').id
        finally:
            db.close()

    def tearDown(self):
        classsync_web.set_engine(None)
        self.engine.close()
        database.engine.dispose()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _as(self, user_id):
        return {'X-User-Id': user_id}

    def _act(self, user_id, action):
        return self.client.post('/api/actions', json={'action': action},
                                headers=self._as(user_id))


class TestActionRoutes(WebTestCase):

    def test_requires_identity(self):
        resp = self.client.post('/api/actions', json={'action': 'NOTE_UPLOAD'})
        self.assertEqual(resp.status_code, 401)

    def test_record_action(self):
        resp = self._act(self.ada, 'note_upload')
        self.assertEqual(resp.status_code, 201)
        body = resp.get_json()
        self.assertEqual(body['points'], 50)
        self.assertEqual(body['notes_uploaded'], 1)
        self.assertEqual(body['level'], 'Beginner')

    def test_invalid_action(self):
        resp = self._act(self.ada, 'LIKE_GIVEN')
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.get_json()['retryable'])
        resp = self._act(self.ada, 'MANUAL_AWARD')
        self.assertEqual(resp.status_code, 400)

    def test_missing_action(self):
        resp = self.client.post('/api/actions', json={}, headers=self._as(self.ada))
        self.assertEqual(resp.status_code, 400)

    def test_unknown_user(self):
        resp = self._act('ghost', 'NOTE_UPLOAD')
        self.assertEqual(resp.status_code, 404)

    def test_history(self):
        self._act(self.ada, 'NOTE_UPLOAD')
        self._act(self.ada, 'FLASHCARD_CREATED')
        resp = self.client.get('/api/me/history', headers=self._as(self.ada))
        entries = resp.get_json()['entries']
        self.assertEqual(len(entries), 2)
        self.assertEqual({e['action_kind'] for e in entries},
                         {'NOTE_UPLOAD', 'FLASHCARD_CREATED'})


class TestLeaderboardRoutes(WebTestCase):

    def test_leaderboard_order_and_search(self):
        self._act(self.ada, 'COLLABORATIVE_POST')
        self._act(self.bob, 'NOTE_UPLOAD')
        resp = self.client.get('/api/leaderboard?limit=2')
        entries = resp.get_json()['entries']
        self.assertEqual([(e['rank'], e['user_id']) for e in entries],
                         [(1, self.bob), (2, self.ada)])

        resp = self.client.get('/api/leaderboard?search=ADA&time_range=week')
        entries = resp.get_json()['entries']
        self.assertEqual([(e['rank'], e['display_name']) for e in entries],
                         [(1, 'Ada Lovelace')])

    def test_bad_sort_or_range(self):
        self.assertEqual(self.client.get('/api/leaderboard?sort=karma').status_code, 400)
        self.assertEqual(
            self.client.get('/api/leaderboard?time_range=decade').status_code, 400)

    def test_my_rank(self):
        self._act(self.ada, 'QUESTION_ANSWER')
        resp = self.client.get('/api/me/rank', headers=self._as(self.ada))
        body = resp.get_json()
        self.assertEqual(body['rank'], 1)
        self.assertEqual(body['points'], 30)
        self.assertEqual(body['progress']['points_to_next'], 970)

    def test_rank_of_unknown_user(self):
        self.assertEqual(self.client.get('/api/users/ghost/rank').status_code, 404)


class TestSubmissionRoutes(WebTestCase):

    def _create(self):
        resp = self.client.post('/api/submissions',
                                json={'type': 'note', 'title': 'Cell biology'},
                                headers=self._as(self.ada))
        self.assertEqual(resp.status_code, 201)
        return resp.get_json()['id']

    def test_review_flow(self):
        submission_id = self._create()
        resp = self.client.get('/api/submissions', headers=self._as(self.grace))
        self.assertEqual([s['id'] for s in resp.get_json()['submissions']],
                         [submission_id])

        resp = self.client.post(f'/api/submissions/{submission_id}/review',
                                json={'points': 45}, headers=self._as(self.grace))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['points'], 45)

        resp = self.client.post(f'/api/submissions/{submission_id}/review',
                                json={'points': 45}, headers=self._as(self.grace))
        self.assertEqual(resp.status_code, 409)
        self.assertFalse(resp.get_json()['retryable'])

        stats = self.client.get('/api/reviewers/me/stats',
                                headers=self._as(self.grace)).get_json()
        self.assertEqual(stats['total_reviews'], 1)
        self.assertEqual(stats['total_points_awarded'], 45)

    def test_students_cannot_review_or_list(self):
        submission_id = self._create()
        resp = self.client.post(f'/api/submissions/{submission_id}/review',
                                json={'points': 45}, headers=self._as(self.bob))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.get('/api/submissions', headers=self._as(self.bob))
        self.assertEqual(resp.status_code, 403)

    def test_invalid_submission(self):
        resp = self.client.post('/api/submissions', json={'type': 'essay', 'title': 'x'},
                                headers=self._as(self.ada))
        self.assertEqual(resp.status_code, 400)

    def test_review_points_must_be_an_integer(self):
        submission_id = self._create()
        for points in ([1], {'n': 1}, 'lots'):
            resp = self.client.post(f'/api/submissions/{submission_id}/review',
                                    json={'points': points},
                                    headers=self._as(self.grace))
            self.assertEqual(resp.status_code, 400, points)
            self.assertFalse(resp.get_json()['retryable'])
        resp = self.client.get('/api/submissions', headers=self._as(self.grace))
        self.assertEqual([s['id'] for s in resp.get_json()['submissions']],
                         [submission_id])

    def test_review_unknown_submission(self):
        resp = self.client.post('/api/submissions/missing/review',
                                json={'points': 10}, headers=self._as(self.grace))
        self.assertEqual(resp.status_code, 404)

    def test_report(self):
        resp = self.client.post('/api/reports',
                                json={'content_id': 'n1', 'type': 'note',
                                      'content': 'text', 'reason': 'Plagiarised'},
                                headers=self._as(self.bob))
        self.assertEqual(resp.status_code, 201)
        resp = self.client.post('/api/reports',
                                json={'content_id': 'n1', 'reason': ''},
                                headers=self._as(self.bob))
        self.assertEqual(resp.status_code, 400)


class TestOpenApi(WebTestCase):

    def test_every_api_route_documented(self):
        paths = build_spec()['paths']
        for rule in classsync_web.app.url_map.iter_rules():
            if not rule.rule.startswith('/api/'):
                continue
            path = re.sub(r'<(?:[^:<>]+:)?([^<>]+)>', r'{\1}', rule.rule)
            self.assertIn(path, paths)
            for method in rule.methods - {'HEAD', 'OPTIONS'}:
                self.assertIn(method.lower(), paths[path], f'{method} {path}')

    def test_served_spec(self):
        resp = self.client.get('/api/openapi.json')
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body['info']['title'], 'ClassSync Points API')
        self.assertEqual(body['components']['schemas']['ActionKind']['enum'],
                         ['NOTE_UPLOAD', 'QUESTION_ANSWER', 'COLLABORATIVE_POST',
                          'UPVOTE_RECEIVED', 'FLASHCARD_CREATED'])


if __name__ == '__main__':
    unittest.main()
