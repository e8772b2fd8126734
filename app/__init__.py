"""
ClassSync points & ranking package.

Layout:

  app/points.py, app/levels.py  - point table, level tiers, typed records.
  app/errors.py                 - exception taxonomy.
  app/services/                 - business logic: ledger, score aggregation,
                                  ranking, leaderboards, live notifications,
                                  submission review, moderation.

Persistence lives in the top-level ``database`` module; services receive it
as ``db_module`` and take a SQLAlchemy session as the first argument of each
call.  ``PointsEngine`` (in ``classsync.py``) wires the services together
and is what the Flask routes in ``classsync_web.py`` talk to.
"""
