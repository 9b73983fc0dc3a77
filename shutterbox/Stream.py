import json                   # Event payloads
import logging                # Module logger
import sqlite3                # Database errors
import time                   # Timer clock
from contextlib import closing # Close connections on every exit path
from datetime import datetime, timezone # Envelope timestamps

from shutterbox import Storage
from shutterbox.Helpers import now_iso

logger = logging.getLogger(__name__)

# =============================================================================
# SERVER-SENT NOTIFICATION STREAM
# =============================================================================
# One StreamSubscription per open connection, with a notification timer and an
# unread-count timer. close() cancels both on every teardown path.

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable Nginx buffering
}


def format_sse(envelope):
    """
    Frame one envelope as a server-sent event.
    """
    return "data: %s\n\n" % json.dumps(envelope)


def _iso_timestamp():
    return datetime.now(timezone.utc).isoformat()


class StreamSubscription:
    """
    Delivery state of a single notification stream connection.

    `clock` and `sleep` drive the two timers; `timestamp` produces the storage
    checkpoint that new notifications are compared against.
    """

    def __init__(self, user_id, open_db, poll_interval=3, unread_interval=10,
                 heartbeat_interval=30, max_lifetime=300,
                 clock=time.monotonic, sleep=time.sleep, timestamp=now_iso,
                 on_close=None):
        self.user_id = user_id
        self.open_db = open_db
        self.poll_interval = poll_interval
        self.unread_interval = unread_interval
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock
        self._sleep = sleep
        self._timestamp = timestamp
        self._on_close = on_close

        self.opened_at = clock()
        self.deadline = self.opened_at + max_lifetime
        self.last_checked_at = timestamp()
        # Ids sent by the previous poll; its rows can match once more
        self._last_sent_ids = frozenset()
        self.last_heartbeat_at = self.opened_at

        # Timer handles: the next due time of each loop, None once cancelled
        self.next_poll_at = self.opened_at + poll_interval
        self.next_unread_at = self.opened_at + unread_interval

        self.closed = False
        self.close_reason = None

    @property
    def timers_active(self):
        return self.next_poll_at is not None or self.next_unread_at is not None

    def close(self, reason="closed"):
        """
        Cancel both timers. Safe to call more than once.
        """
        self.next_poll_at = None
        self.next_unread_at = None
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        logger.info("Notification stream closed for user %s (%s)", self.user_id, reason)
        if self._on_close is not None:
            self._on_close(self)

    # -------------------------------------------------------------------------
    # Envelope production
    # -------------------------------------------------------------------------

    def envelopes(self):
        """
        Yield envelopes until the lifetime cap, close(), or the consumer
        closes the generator (client went away).
        """
        logger.info("Notification stream established for user %s", self.user_id)
        try:
            yield {
                "type": "connected",
                "message": "SSE connection established",
                "timestamp": _iso_timestamp(),
            }

            while not self.closed:
                due = self._next_due()
                if due is None:
                    break
                if due >= self.deadline:
                    # Nothing left to do before the cap: hold the line until it hits
                    self._wait_until(self.deadline)
                    self.close("lifetime limit reached")
                    break

                self._wait_until(due)
                if self.closed:
                    break
                now = self._clock()

                if self.next_poll_at is not None and now >= self.next_poll_at:
                    self.next_poll_at = self._advance(self.next_poll_at, self.poll_interval, now)
                    for envelope in self._poll_notifications(now):
                        yield envelope

                if self.next_unread_at is not None and now >= self.next_unread_at:
                    self.next_unread_at = self._advance(self.next_unread_at, self.unread_interval, now)
                    yield self._unread_count()
        finally:
            # GeneratorExit from a client disconnect lands here too
            self.close("client disconnected" if not self.closed else self.close_reason)

    def frames(self):
        envelopes = self.envelopes()
        try:
            for envelope in envelopes:
                yield format_sse(envelope)
        finally:
            envelopes.close()

    def _next_due(self):
        pending = [t for t in (self.next_poll_at, self.next_unread_at) if t is not None]
        return min(pending) if pending else None

    def _wait_until(self, when):
        remaining = when - self._clock()
        if remaining > 0:
            self._sleep(remaining)

    @staticmethod
    def _advance(due, interval, now):
        # Fixed rate; ticks missed while sleeping are skipped, not replayed
        due += interval
        while due <= now:
            due += interval
        return due

    def _poll_notifications(self, now):
        checked_at = self._timestamp()
        try:
            with closing(self.open_db()) as db:
                rows = Storage.notifications_since(db, self.user_id, self.last_checked_at)
        except sqlite3.Error:
            logger.exception("Notification poll failed for user %s", self.user_id)
            yield {"type": "error", "message": "Error checking for notifications"}
        else:
            # A row committed between taking checked_at and running the query
            # matched here and will match the next poll too; send it once
            fresh = [n for n in rows if n["id"] not in self._last_sent_ids]
            self._last_sent_ids = frozenset(n["id"] for n in rows)
            self.last_checked_at = checked_at
            # Oldest first, so a client that prepends ends up newest first
            for notification in reversed(fresh):
                yield {"type": "new-notification", "notification": notification}

        if now - self.last_heartbeat_at >= self.heartbeat_interval:
            self.last_heartbeat_at = now
            yield {"type": "heartbeat", "timestamp": _iso_timestamp()}

    def _unread_count(self):
        try:
            with closing(self.open_db()) as db:
                count = Storage.count_unread_notifications(db, self.user_id)
        except sqlite3.Error:
            logger.exception("Unread count failed for user %s", self.user_id)
            return {"type": "error", "message": "Error getting unread count"}
        return {"type": "unread-count", "count": count}


class StreamRegistry:
    """
    Open subscriptions of one application, so shutdown can close them all.
    """

    def __init__(self):
        self._subscriptions = set()

    def __len__(self):
        return len(self._subscriptions)

    def add(self, subscription):
        self._subscriptions.add(subscription)

    def discard(self, subscription):
        self._subscriptions.discard(subscription)

    def close_all(self, reason="server shutdown"):
        for subscription in list(self._subscriptions):
            subscription.close(reason)
        self._subscriptions.clear()
