#!/usr/bin/env python3
"""
ClassSync HTTP API.

Flask routes over :class:`classsync.PointsEngine`.  The acting user id is
taken from the ``X-User-Id`` header, which the identity proxy in front of
this service sets after authenticating the browser session.  Errors are
returned as ``{"error": ..., "retryable": ...}``.
"""

import json
import logging
import os
import queue
import threading
from functools import wraps
from typing import Optional

from flask import Flask, Response, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from app.errors import (AggregationFailed, AlreadyReviewed,
                        ConcurrentUpdateConflict, ContentFlagged,
                        InvalidActionKind, OutOfRangeAward, PermissionDenied,
                        PointsError, UnknownSubmission, UnknownUser)
from app.levels import level_progress
from app.services.notification_service import coalesce
from classsync import PointsEngine, setup_logging
from openapi_spec import build_spec

app = Flask(__name__)

web_logger = logging.getLogger('classsync.web')

_engine: Optional[PointsEngine] = None
_engine_lock = threading.Lock()

USER_HEADER = 'X-User-Id'
SSE_QUEUE_SIZE = 100
SSE_KEEPALIVE_SECONDS = 15

STATUS_CODES = {
    InvalidActionKind: 400,
    OutOfRangeAward: 400,
    PermissionDenied: 403,
    UnknownUser: 404,
    UnknownSubmission: 404,
    AlreadyReviewed: 409,
    ContentFlagged: 422,
    ConcurrentUpdateConflict: 503,
    AggregationFailed: 503,
}


def get_engine() -> PointsEngine:
    """Return the shared engine, building it from config on first use."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = PointsEngine.from_config(
                os.getenv('CLASSSYNC_CONFIG', 'config.json'))
        return _engine


def set_engine(engine: Optional[PointsEngine]) -> None:
    """Install *engine* for the routes (tests, embedding)."""
    global _engine
    with _engine_lock:
        _engine = engine


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

@app.errorhandler(PointsError)
def handle_points_error(exc: PointsError):
    status = STATUS_CODES.get(type(exc), 400)
    if status >= 500:
        web_logger.warning("Request failed: %s", exc)
    return jsonify({'error': str(exc), 'retryable': exc.retryable}), status


@app.errorhandler(ValueError)
def handle_value_error(exc: ValueError):
    return jsonify({'error': str(exc), 'retryable': False}), 400


@app.errorhandler(SQLAlchemyError)
def handle_db_error(exc: SQLAlchemyError):
    web_logger.exception("Database error: %s", exc)
    return jsonify({'error': 'Something went wrong. Please try again.',
                    'retryable': True}), 503


def require_login(f):
    """Decorator to require the identity header"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = (request.headers.get(USER_HEADER) or '').strip()
        if not user_id:
            return jsonify({'error': 'Not logged in', 'retryable': False}), 401
        g.user_id = user_id
        return f(*args, **kwargs)
    return decorated_function


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int_arg(name: str, default=None):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def _score_view(rank, score) -> dict:
    data = score.to_dict()
    data['rank'] = rank
    data['progress'] = level_progress(score.total_points)
    return data


# ---------------------------------------------------------------------------
# Points & leaderboard
# ---------------------------------------------------------------------------

@app.route('/api/actions', methods=['POST'])
@require_login
def api_record_action():
    """Record a point-earning action for the current user.

    Body: ``{"action": "NOTE_UPLOAD"}``
    """
    action = _json_body().get('action')
    if not action:
        return jsonify({'error': 'action is required', 'retryable': False}), 400
    engine = get_engine()
    with engine.session() as db:
        score = engine.record_action(db, g.user_id, action)
    return jsonify(score.to_dict()), 201


@app.route('/api/leaderboard')
def api_leaderboard():
    """Return a ranked leaderboard.

    Query params:
      - ``search``:     substring of the display name (case-insensitive)
      - ``time_range``: 'all' (default), 'month' or 'week'
      - ``sort``:       'points' (default), 'notes', 'questions', ...
      - ``limit``:      max entries (capped by ``leaderboard_page_size``)
    """
    search = request.args.get('search', '')
    time_range = request.args.get('time_range', 'all')
    sort = request.args.get('sort', 'points')
    limit = _int_arg('limit')
    engine = get_engine()
    with engine.session() as db:
        rows = engine.get_leaderboard(db, search=search, time_range=time_range,
                                      sort=sort, limit=limit)
    return jsonify({
        'time_range': time_range,
        'sort': sort,
        'entries': [row.to_dict() for row in rows],
    })


@app.route('/api/users/<user_id>/rank')
def api_user_rank(user_id):
    engine = get_engine()
    with engine.session() as db:
        rank, score = engine.get_user_rank(db, user_id)
    return jsonify(_score_view(rank, score))


@app.route('/api/me/rank')
@require_login
def api_my_rank():
    return api_user_rank(g.user_id)


@app.route('/api/me/history')
@require_login
def api_my_history():
    """Return the current user's ledger entries, newest first."""
    engine = get_engine()
    with engine.session() as db:
        engine.ledger_service.ensure_user(db, g.user_id)
        entries = engine.ledger_service.entries_for(db, g.user_id)
    return jsonify({'entries': [e.to_dict() for e in entries]})


# ---------------------------------------------------------------------------
# Submissions & reviews
# ---------------------------------------------------------------------------

@app.route('/api/submissions', methods=['POST'])
@require_login
def api_create_submission():
    """Create a pending submission.

    Body: ``{"type": "note", "title": "...", "content": "..."}``
    """
    data = _json_body()
    engine = get_engine()
    with engine.session() as db:
        record = engine.submission_service.create(
            db, g.user_id, data.get('type', ''), data.get('title', ''),
            data.get('content', ''))
    return jsonify(record.to_dict()), 201


@app.route('/api/submissions')
@require_login
def api_pending_submissions():
    """List pending submissions (contributor or admin)."""
    engine = get_engine()
    with engine.session() as db:
        capability = engine.user_service.issue_capability(db, g.user_id)
        engine.user_service.require(capability, 'contributor', 'admin')
        records = engine.submission_service.list_pending(
            db, search=request.args.get('search', ''))
    return jsonify({'submissions': [r.to_dict() for r in records]})


@app.route('/api/submissions/<submission_id>/review', methods=['POST'])
@require_login
def api_review_submission(submission_id):
    """Award points for a submission.

    Body: ``{"points": 50}``
    """
    points = _json_body().get('points')
    if points is None:
        return jsonify({'error': 'points is required', 'retryable': False}), 400
    try:
        points = int(points)
    except (TypeError, ValueError):
        return jsonify({'error': 'points must be an integer', 'retryable': False}), 400
    engine = get_engine()
    with engine.session() as db:
        score = engine.review_submission(db, submission_id, points, g.user_id)
    return jsonify(score.to_dict())


@app.route('/api/reviewers/me/stats')
@require_login
def api_reviewer_stats():
    engine = get_engine()
    with engine.session() as db:
        capability = engine.user_service.issue_capability(db, g.user_id)
        engine.user_service.require(capability, 'contributor', 'admin')
        stats = engine.submission_service.reviewer_stats(db, g.user_id)
    return jsonify(stats)


@app.route('/api/reports', methods=['POST'])
@require_login
def api_report_content():
    """Report content for moderator review.

    Body: ``{"content_id", "type", "content", "reason"}``
    """
    data = _json_body()
    if not data.get('content_id'):
        return jsonify({'error': 'content_id is required', 'retryable': False}), 400
    engine = get_engine()
    with engine.session() as db:
        engine.moderation_service.report_content(
            db, data['content_id'], data.get('type', ''), data.get('content', ''),
            data.get('reason', ''), reported_by=g.user_id)
    return jsonify({'success': True}), 201


# ---------------------------------------------------------------------------
# Live notifications (Server-Sent Events)
# ---------------------------------------------------------------------------

@app.route('/api/notifications/stream')
@require_login
def api_notifications_stream():
    """Stream the current user's points events as Server-Sent Events."""
    user_id = g.user_id
    events: 'queue.Queue' = queue.Queue(maxsize=SSE_QUEUE_SIZE)

    def enqueue(event):
        try:
            events.put_nowait(event)
        except queue.Full:
            web_logger.debug("SSE queue full for %s, dropping event", user_id)

    subscription = get_engine().notification_service.subscribe(user_id, enqueue)

    def stream():
        with subscription:
            while True:
                try:
                    first = events.get(timeout=SSE_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ': keep-alive\n\n'
                    continue
                burst = [first]
                while True:
                    try:
                        burst.append(events.get_nowait())
                    except queue.Empty:
                        break
                for event in coalesce(burst):
                    yield f"event: {event.kind}\ndata: {json.dumps(event.to_dict())}\n\n"

    return Response(stream(), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache'})


# ---------------------------------------------------------------------------
# API docs
# ---------------------------------------------------------------------------

@app.route('/api/openapi.json')
def api_openapi():
    return jsonify(build_spec(server_url=request.host_url.rstrip('/')))


def main():
    """Run the development server."""
    log_level = os.getenv('CLASSSYNC_LOG_LEVEL', 'INFO')
    setup_logging(log_level)
    try:
        os.makedirs('logs', exist_ok=True)
        fh = logging.FileHandler('logs/classsync_web.log')
        fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
        fh.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        logging.getLogger('classsync').addHandler(fh)
    except OSError:
        web_logger.warning('Could not create log file handler')
    get_engine()
    app.run(host=os.getenv('HOST', '127.0.0.1'), port=int(os.getenv('PORT', '5000')))


if __name__ == '__main__':
    main()
