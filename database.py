#!/usr/bin/env python3
"""
Database models and configuration for ClassSync.
Stores profiles, the point ledger, per-user point totals, review submissions
and flagged content.  Any SQLAlchemy URL works; SQLite is the default and
PostgreSQL is used in deployment.
"""

import os
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (Column, DateTime, ForeignKey, Integer, String, Text,
                        create_engine)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
import logging

from app.points import STATUS_PENDING, STATUS_REVIEWED, utcnow

logger = logging.getLogger('classsync.database')

DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///classsync.db')

Base = declarative_base()
engine = None
SessionLocal = None


class User(Base):
    """Profile row for a learner, contributor or admin."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    full_name = Column(String(255), nullable=True)
    avatar_url = Column(String(1000), nullable=True)
    role = Column(String(20), default='student')  # 'student', 'contributor' or 'admin'
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    points = relationship("UserPoints", back_populates="user", uselist=False,
                          cascade="all, delete-orphan")


class UserPoints(Base):
    """Running totals for one user, kept equal to the sum of their ledger."""
    __tablename__ = "user_points"

    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    points = Column(Integer, nullable=False, default=0)
    notes_uploaded = Column(Integer, nullable=False, default=0)
    questions_answered = Column(Integer, nullable=False, default=0)
    flashcards_created = Column(Integer, nullable=False, default=0)
    collaborative_posts = Column(Integer, nullable=False, default=0)
    answers_upvoted = Column(Integer, nullable=False, default=0)
    level = Column(String(20), nullable=False, default='Beginner')
    last_updated = Column(DateTime, default=utcnow)
    version = Column(Integer, nullable=False)

    # Every UPDATE is guarded by the version it read.
    __mapper_args__ = {"version_id_col": version}

    user = relationship("User", back_populates="points")


class PointLedger(Base):
    """Append-only record of point-earning events."""
    __tablename__ = "point_ledger"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    action_kind = Column(String(32), nullable=False)
    points_awarded = Column(Integer, nullable=False)
    occurred_at = Column(DateTime, index=True, nullable=False)
    awarded_by = Column(String(36), nullable=True)  # reviewer for manual awards
    submission_id = Column(String(36), nullable=True)
    applied_at = Column(DateTime, nullable=True)  # set once folded into user_points


class Submission(Base):
    """Learner content awaiting a contributor's point award."""
    __tablename__ = "submissions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    type = Column(String(20), nullable=False)  # 'note', 'question', 'flashcard', 'post'
    title = Column(String(500), nullable=False)
    content = Column(Text, nullable=True)
    points_awarded = Column(Integer, nullable=False, default=0)
    status = Column(String(20), index=True, default=STATUS_PENDING)
    reviewed_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class FlaggedContent(Base):
    """Content flagged by automatic moderation or reported by a user."""
    __tablename__ = "flagged_content"

    id = Column(Integer, primary_key=True)
    content_id = Column(String(255), index=True)
    type = Column(String(50))
    content = Column(Text)
    reason = Column(String(1000))
    status = Column(String(20), default=STATUS_PENDING)
    ai_analysis = Column(Text, nullable=True)  # JSON from the classifier
    reported_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)


def configure(url: str = None):
    """(Re)bind the module engine and session factory to *url*.

    Returns:
        The new ``sessionmaker``.
    """
    global engine, SessionLocal, DATABASE_URL
    DATABASE_URL = url or DATABASE_URL
    connect_args = {}
    if DATABASE_URL.startswith('sqlite'):
        connect_args = {"check_same_thread": False}
    engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def get_db():
    """Get database session."""
    if SessionLocal is None:
        configure()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> bool:
    """Initialize database tables."""
    target = bind or engine
    if target is None:
        configure()
        target = engine
    Base.metadata.create_all(bind=target)
    logger.info("Database tables initialized on %s", target.url)
    return True


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def get_user(db, user_id: str) -> Optional[User]:
    """Get user from database."""
    if not db or not user_id:
        return None
    return db.get(User, str(user_id))


def create_user(db, user_id: str = None, full_name: str = None,
                role: str = 'student', avatar_url: str = None) -> User:
    """Create a profile together with its zeroed ``user_points`` row.

    Args:
        db:         Database session
        user_id:    Identity id (generated when omitted)
        full_name:  Display name
        role:       'student', 'contributor' or 'admin'
        avatar_url: Optional avatar image URL
    """
    user = User(
        id=str(user_id) if user_id else new_id(),
        full_name=full_name,
        avatar_url=avatar_url,
        role=role,
    )
    user.points = UserPoints(user_id=user.id, points=0, level='Beginner',
                             last_updated=utcnow())
    db.add(user)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Registered user %s (%s)", user.id, role)
    return user


def update_user_role(db, user_id: str, role: str) -> bool:
    """Update user's role."""
    user = get_user(db, user_id)
    if not user:
        return False
    user.role = role
    db.commit()
    return True


def get_display_names(db, user_ids: Iterable[str]) -> Dict[str, Optional[str]]:
    """Map each id in *user_ids* to its profile name."""
    ids = list({str(u) for u in user_ids})
    if not db or not ids:
        return {}
    rows = db.query(User.id, User.full_name).filter(User.id.in_(ids)).all()
    return {row.id: row.full_name for row in rows}


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------

def get_user_points(db, user_id: str) -> Optional[UserPoints]:
    """Return the ``user_points`` row for *user_id*, or ``None``."""
    if not db:
        return None
    return db.get(UserPoints, str(user_id))


def add_user_points(db, user_id: str) -> UserPoints:
    """Add a zeroed ``user_points`` row to the session (the caller commits)."""
    row = UserPoints(user_id=str(user_id), points=0, level='Beginner',
                     last_updated=utcnow())
    db.add(row)
    return row


def get_all_user_points(db) -> List[Tuple[UserPoints, Optional[str]]]:
    """Return every ``(UserPoints, full_name)`` pair."""
    if not db:
        return []
    return (db.query(UserPoints, User.full_name)
            .join(User, User.id == UserPoints.user_id)
            .all())


def add_ledger_entry(db, entry_id: str, user_id: str, action_kind: str,
                     points_awarded: int, occurred_at,
                     awarded_by: str = None, submission_id: str = None) -> PointLedger:
    """Append a ledger row to the session (the caller commits)."""
    row = PointLedger(
        id=entry_id,
        user_id=str(user_id),
        action_kind=action_kind,
        points_awarded=int(points_awarded),
        occurred_at=occurred_at,
        awarded_by=awarded_by,
        submission_id=submission_id,
    )
    db.add(row)
    return row


def get_ledger_entry(db, entry_id: str) -> Optional[PointLedger]:
    if not db:
        return None
    return db.get(PointLedger, entry_id)


def get_ledger_entries(db, user_id: str = None, since=None,
                       newest_first: bool = False) -> List[PointLedger]:
    """Return ledger rows, optionally for one user and/or after *since*."""
    if not db:
        return []
    query = db.query(PointLedger)
    if user_id is not None:
        query = query.filter(PointLedger.user_id == str(user_id))
    if since is not None:
        query = query.filter(PointLedger.occurred_at >= since)
    if newest_first:
        query = query.order_by(PointLedger.occurred_at.desc(), PointLedger.id)
    else:
        query = query.order_by(PointLedger.occurred_at, PointLedger.id)
    return query.all()


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------

def create_submission(db, user_id: str, type: str, title: str,
                      content: str = '', submission_id: str = None) -> Submission:
    """Insert a pending submission and commit."""
    row = Submission(
        id=submission_id or new_id(),
        user_id=str(user_id),
        type=type,
        title=title,
        content=content,
        status=STATUS_PENDING,
        points_awarded=0,
    )
    db.add(row)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return row


def get_submission(db, submission_id: str) -> Optional[Submission]:
    if not db:
        return None
    return db.get(Submission, str(submission_id))


def mark_submission_reviewed(db, submission_id: str, points_awarded: int,
                             reviewer_id: str) -> int:
    """Flip a pending submission to reviewed inside the caller's transaction.

    Returns:
        Number of rows changed; ``0`` means the submission was not pending.
    """
    return (db.query(Submission)
            .filter(Submission.id == str(submission_id),
                    Submission.status == STATUS_PENDING)
            .update({
                Submission.status: STATUS_REVIEWED,
                Submission.points_awarded: int(points_awarded),
                Submission.reviewed_by: reviewer_id,
                Submission.updated_at: utcnow(),
            }, synchronize_session=False))


def get_pending_submissions(db) -> List[Tuple[Submission, Optional[str]]]:
    """Return pending ``(Submission, author_name)`` pairs, newest first."""
    if not db:
        return []
    return (db.query(Submission, User.full_name)
            .join(User, User.id == Submission.user_id)
            .filter(Submission.status == STATUS_PENDING)
            .order_by(Submission.created_at.desc())
            .all())


def get_reviewed_submissions(db, reviewer_id: str) -> List[Submission]:
    """Return submissions reviewed by *reviewer_id*."""
    if not db:
        return []
    return (db.query(Submission)
            .filter(Submission.status == STATUS_REVIEWED,
                    Submission.reviewed_by == str(reviewer_id))
            .all())


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

def create_flagged_content(db, content_id: str, type: str, content: str,
                           reason: str, ai_analysis: str = None,
                           reported_by: str = None) -> FlaggedContent:
    """Insert a pending flagged-content row and commit."""
    row = FlaggedContent(
        content_id=str(content_id),
        type=type,
        content=content,
        reason=reason,
        status=STATUS_PENDING,
        ai_analysis=ai_analysis,
        reported_by=reported_by,
    )
    db.add(row)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return row


def get_flagged_content(db, status: str = STATUS_PENDING) -> List[FlaggedContent]:
    if not db:
        return []
    return (db.query(FlaggedContent)
            .filter(FlaggedContent.status == status)
            .order_by(FlaggedContent.created_at.desc())
            .all())
