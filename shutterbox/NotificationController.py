import asyncio                # Reconnect loop and stream task
import enum                   # Connection states
import json                   # Stream frame decoding
import logging                # Module logger
import time                   # Reconnect clock

# HTTP client for the stream connection
import httpx

from shutterbox.ApiClient import ApiError, cancel_task, request_json

logger = logging.getLogger(__name__)

# =============================================================================
# NOTIFICATION CONTROLLER - FETCH, STREAM AND MERGE
# =============================================================================
# Merges the first page, pushed deltas and "load more" pages into one
# newest-first list plus an unread counter.

STREAM_PATH = "/notifications/stream"
LIST_PATH = "/notifications"

# Connect/write timeouts apply; reads wait as long as the server keeps the stream open
STREAM_TIMEOUT = httpx.Timeout(10.0, read=None)


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def parse_sse_block(block):
    """
    Return the data payload of one server-sent event block, or None.
    """
    data_lines = []
    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data_lines.append(value)
    return "\n".join(data_lines) if data_lines else None


class NotificationController:
    """
    Notification list, unread counter and live connection of one user.

    Args:
        client: httpx.AsyncClient pointed at the web app, sending the user's identity
        page_size: notifications per page
        reconnect_delay: wait after the stream errors or ends
        setup_retry_delay: wait after setting the stream up raised unexpectedly
        min_fetch_interval: minimum seconds between two list fetches
        on_notification: optional callback for every newly pushed notification
    """

    def __init__(self, client, page_size=20, reconnect_delay=3.0, setup_retry_delay=5.0,
                 min_fetch_interval=1.0, clock=time.monotonic, sleep=asyncio.sleep,
                 on_notification=None):
        self.client = client
        self.page_size = page_size
        self.reconnect_delay = reconnect_delay
        self.setup_retry_delay = setup_retry_delay
        self.min_fetch_interval = min_fetch_interval
        self.on_notification = on_notification
        self._clock = clock
        self._sleep = sleep

        self.notifications = []
        self.unread_count = 0
        self.loading = False
        self.has_more = True
        self.page = 1
        self.error = None
        self.state = ConnectionState.DISCONNECTED

        self._last_fetch_at = None
        self._stream_task = None
        self._stopped = True

    @property
    def is_connected(self):
        return self.state is ConnectionState.CONNECTED

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        """
        Open the stream (in the background) and load the first page.
        """
        if not self._stopped:
            return
        self._stopped = False
        self._stream_task = asyncio.create_task(self._run_stream())
        await self.fetch_notifications(1, reset=True)

    async def stop(self):
        self._stopped = True
        await cancel_task(self._stream_task)
        self._stream_task = None
        self.state = ConnectionState.DISCONNECTED

    async def _run_stream(self):
        while not self._stopped:
            delay = self.reconnect_delay
            try:
                await self._consume_stream()
                logger.info("Notification stream ended, reconnecting in %ss", delay)
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code == 401:
                    # Not signed in: retrying cannot help
                    logger.error("Notification stream refused: unauthorized")
                    self.error = "Unauthorized"
                    self.state = ConnectionState.DISCONNECTED
                    return
                logger.warning("Notification stream error (%s), reconnecting in %ss", exc, delay)
            except httpx.HTTPError as exc:
                logger.warning("Notification stream error (%s), reconnecting in %ss", exc, delay)
            except asyncio.CancelledError:
                raise
            except Exception:
                delay = self.setup_retry_delay
                logger.exception("Error setting up notification stream, retrying in %ss", delay)

            self.state = ConnectionState.DISCONNECTED
            if self._stopped:
                break
            await self._sleep(delay)

    async def _consume_stream(self):
        self.state = ConnectionState.CONNECTING
        async with self.client.stream("GET", STREAM_PATH, timeout=STREAM_TIMEOUT) as response:
            response.raise_for_status()
            self.state = ConnectionState.CONNECTED
            logger.info("Notification stream opened")

            buffer = ""
            async for chunk in response.aiter_text():
                buffer += chunk.replace("\r\n", "\n")
                while "\n\n" in buffer:
                    block, buffer = buffer.split("\n\n", 1)
                    self._dispatch(parse_sse_block(block))
            if buffer.strip():
                self._dispatch(parse_sse_block(buffer))

    def _dispatch(self, raw):
        if raw is None:
            return
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.error("Unparseable stream message: %r", raw)
            return
        self.handle_envelope(envelope)

    # -------------------------------------------------------------------------
    # Merging pushed state
    # -------------------------------------------------------------------------

    def handle_envelope(self, envelope):
        kind = envelope.get("type")
        if kind == "new-notification":
            if envelope.get("notification"):
                self.receive_notification(envelope["notification"])
        elif kind == "unread-count":
            self.unread_count = envelope.get("count", self.unread_count)
        elif kind == "error":
            logger.error("Notification stream reported: %s", envelope.get("message"))
        elif kind == "connected":
            logger.debug("Notification stream confirmed")
        # heartbeat: nothing to do

    def handle_socket_event(self, event, payload=None):
        """
        Apply an event from the socket broadcast server through the same merge.
        """
        if event == "new-notification" and payload:
            self.receive_notification(payload.get("notification", payload))
        elif event == "notification-read":
            self.apply_read(payload)
        elif event == "all-notifications-read":
            self.apply_all_read()

    def receive_notification(self, notification):
        """
        Prepend a pushed notification unless its id is already listed.
        Returns True when it was new.
        """
        if not isinstance(notification, dict) or notification.get("id") is None:
            logger.warning("Ignoring pushed notification without an id: %r", notification)
            return False
        if any(n["id"] == notification["id"] for n in self.notifications):
            return False
        self.notifications.insert(0, notification)
        if not notification.get("isRead"):
            self.unread_count += 1
        if self.on_notification is not None:
            self.on_notification(notification)
        return True

    def apply_read(self, notification_id):
        """
        Mark one listed notification read locally. Returns True if it was unread.
        """
        for index, notification in enumerate(self.notifications):
            if notification["id"] == notification_id:
                if notification.get("isRead"):
                    return False
                self.notifications[index] = dict(notification, isRead=True)
                self.unread_count = max(0, self.unread_count - 1)
                return True
        return False

    def apply_all_read(self):
        self.notifications = [dict(n, isRead=True) for n in self.notifications]
        self.unread_count = 0

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    def _throttled(self):
        if self._last_fetch_at is None:
            return False
        return self._clock() - self._last_fetch_at < self.min_fetch_interval

    async def fetch_notifications(self, page=1, reset=False):
        """
        Load one page. Page 1 (or reset) replaces the list, later pages append.
        Returns True when the list was updated.
        """
        if self._throttled():
            logger.debug("Rate limiting: skipping fetch")
            return False
        if self.loading:
            return False

        self.loading = True
        self._last_fetch_at = self._clock()
        try:
            data = await request_json(self.client, "GET", LIST_PATH,
                                      params={"page": page, "limit": self.page_size})
        except ApiError as exc:
            logger.warning("Error fetching notifications: %s", exc.message)
            self.error = exc.message
            return False
        finally:
            self.loading = False

        if reset or page == 1:
            self.notifications = list(data["notifications"])
        else:
            known = {n["id"] for n in self.notifications}
            self.notifications.extend(n for n in data["notifications"] if n["id"] not in known)
        self.unread_count = data["unreadCount"]
        self.has_more = data["pagination"]["hasMore"]
        self.page = page
        self.error = None
        return True

    async def load_more(self):
        if not self.has_more:
            return False
        return await self.fetch_notifications(self.page + 1)

    async def refetch(self):
        return await self.fetch_notifications(1, reset=True)

    # -------------------------------------------------------------------------
    # Mark read
    # -------------------------------------------------------------------------

    async def mark_as_read(self, notification_id):
        """
        Flip the notification locally first, then tell the server.
        The local change is undone if the server refuses.
        """
        was_unread = self.apply_read(notification_id)
        try:
            await request_json(self.client, "POST", "%s/%s/read" % (LIST_PATH, notification_id))
        except ApiError as exc:
            logger.warning("Error marking notification %s as read: %s", notification_id, exc.message)
            self.error = exc.message
            if was_unread:
                self._revert_read(notification_id)
            return False
        return True

    async def mark_all_as_read(self):
        previous_list, previous_unread = list(self.notifications), self.unread_count
        self.apply_all_read()
        try:
            await request_json(self.client, "POST", LIST_PATH + "/read-all")
        except ApiError as exc:
            logger.warning("Error marking all notifications as read: %s", exc.message)
            self.error = exc.message
            self.notifications, self.unread_count = previous_list, previous_unread
            return False
        return True

    def _revert_read(self, notification_id):
        for index, notification in enumerate(self.notifications):
            if notification["id"] == notification_id:
                self.notifications[index] = dict(notification, isRead=False)
                self.unread_count += 1
                return
