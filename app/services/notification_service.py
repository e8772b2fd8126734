"""Live points notifications: per-user publish/subscribe.

Score mutations are turned into ``points_earned`` / ``level_up`` events and
handed to a single background dispatcher thread.  Delivery is best-effort:
a failing handler is logged and skipped, and stored scores stay the source
of truth.  Because one thread drains one FIFO queue, each user's events
arrive in mutation order.
"""
import logging
import queue
import threading
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional

from ..points import UserScore

POINTS_EARNED = 'points_earned'
LEVEL_UP = 'level_up'

ALL_USERS = '*'

Handler = Callable[['PointsEvent'], None]

_STOP = object()


@dataclass(frozen=True)
class PointsEvent:
    kind: str
    user_id: str
    old_points: int
    new_points: int
    old_level: str
    new_level: str
    sequence: int = 0

    @property
    def delta(self) -> int:
        return self.new_points - self.old_points

    @property
    def title(self) -> str:
        return 'Points Earned!' if self.kind == POINTS_EARNED else 'Level Up!'

    @property
    def message(self) -> str:
        if self.kind == POINTS_EARNED:
            return f"You've earned {self.delta} points!"
        return f"Congratulations! You've reached {self.new_level} level!"

    def to_dict(self) -> Dict:
        data = asdict(self)
        data.update(delta=self.delta, title=self.title, message=self.message)
        return data


def events_for_change(before: UserScore, after: UserScore) -> List[PointsEvent]:
    """Return the events one score mutation produces (zero, one or two)."""
    common = dict(
        user_id=after.user_id,
        old_points=before.total_points,
        new_points=after.total_points,
        old_level=before.level.value,
        new_level=after.level.value,
        sequence=after.version,
    )
    events = []
    if after.total_points > before.total_points:
        events.append(PointsEvent(kind=POINTS_EARNED, **common))
    if after.level != before.level:
        events.append(PointsEvent(kind=LEVEL_UP, **common))
    return events


def coalesce(events: Iterable[PointsEvent]) -> List[PointsEvent]:
    """Collapse a burst of events for display.

    Repeats of the same ``(user, sequence, kind)`` are dropped, then an event
    that directly follows another of the same kind for the same user is
    merged into it: the first old values and the last new values survive,
    so a merged ``points_earned`` carries the summed delta.
    """
    seen = set()
    merged: List[PointsEvent] = []
    for event in events:
        key = (event.user_id, event.sequence, event.kind)
        if key in seen:
            continue
        seen.add(key)
        last = merged[-1] if merged else None
        if last and last.user_id == event.user_id and last.kind == event.kind:
            merged[-1] = replace(last, new_points=event.new_points,
                                 new_level=event.new_level,
                                 sequence=event.sequence)
        else:
            merged.append(event)
    return merged


class Subscription:
    """Handle returned by :meth:`NotificationService.subscribe`.

    Use as a context manager, or call :meth:`close`, to unregister.
    """

    def __init__(self, service: 'NotificationService', user_id: str,
                 handler: Handler) -> None:
        self._service = service
        self.user_id = user_id
        self.handler = handler
        self.active = True

    def close(self) -> None:
        if self.active:
            self._service.unsubscribe(self)
            self.active = False

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class NotificationService:
    """Routes points events to handlers registered per user id."""

    def __init__(self) -> None:
        self._log = logging.getLogger('classsync.notifications')
        self._subs: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()
        self._queue: 'queue.Queue' = queue.Queue()
        self._idle = threading.Condition()
        self._pending = 0
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, user_id: str, handler: Handler) -> Subscription:
        """Register *handler* for events about *user_id*."""
        sub = Subscription(self, str(user_id), handler)
        with self._lock:
            self._subs.setdefault(sub.user_id, []).append(sub)
        return sub

    def subscribe_all(self, handler: Handler) -> Subscription:
        """Register *handler* for every user's events (leaderboard refresh)."""
        return self.subscribe(ALL_USERS, handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(subscription.user_id, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subs.pop(subscription.user_id, None)

    def subscriber_count(self, user_id: str = None) -> int:
        with self._lock:
            if user_id is None:
                return sum(len(s) for s in self._subs.values())
            return len(self._subs.get(str(user_id), []))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_change(self, before: UserScore, after: UserScore) -> List[PointsEvent]:
        """Queue the events for one committed score mutation."""
        events = events_for_change(before, after)
        for event in events:
            self.publish(event)
        return events

    def publish(self, event: PointsEvent) -> None:
        """Queue *event* for asynchronous delivery; never blocks on handlers."""
        with self._idle:
            self._pending += 1
        self._ensure_worker()
        self._queue.put(event)

    def flush(self, timeout: float = None) -> bool:
        """Wait until every queued event was delivered.

        Returns:
            ``False`` if *timeout* expired first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def close(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the dispatcher thread."""
        thread = self._thread
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)
        self._thread = None

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run, name='classsync-notifier', daemon=True)
                self._thread.start()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                break
            try:
                self._deliver(event)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def _deliver(self, event: PointsEvent) -> None:
        with self._lock:
            targets = (list(self._subs.get(event.user_id, []))
                       + list(self._subs.get(ALL_USERS, [])))
        for sub in targets:
            try:
                sub.handler(event)
            except Exception:
                self._log.exception("Notification handler failed for %s",
                                    event.user_id)
