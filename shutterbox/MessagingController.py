import asyncio                # Fetch serialisation and polling tasks
import logging                # Module logger
import time                   # Poll gap clock

from shutterbox.ApiClient import ApiError, cancel_task, messages_read, poll_every, request_json

logger = logging.getLogger(__name__)

# =============================================================================
# MESSAGING CONTROLLERS - CONVERSATION, UNREAD BADGE AND CONVERSATION LIST
# =============================================================================
# All of them poll; every mutation is followed by a forced refetch instead of
# splicing local state.


class MessagingController:
    """
    Messages of one conversation.

    Polls every `poll_interval` seconds; unforced fetches are skipped when the
    previous fetch was less than `min_poll_gap` seconds ago, and an unforced
    fetch made while another is in flight is a no-op. A forced fetch waits for
    the running one and then fetches again.
    """

    def __init__(self, client, conversation_id, poll_interval=5.0, min_poll_gap=2.0,
                 clock=time.monotonic, sleep=asyncio.sleep, signal=messages_read):
        self.client = client
        self.conversation_id = conversation_id
        self.poll_interval = poll_interval
        self.min_poll_gap = min_poll_gap
        self.signal = signal
        self._clock = clock
        self._sleep = sleep

        self.messages = []
        self.loading = False
        self.error = None

        self._last_fetch_at = None
        # Set when the running fetch finishes; None while idle
        self._in_flight = None
        self._poll_task = None

    @property
    def messages_path(self):
        return "/conversations/%s/messages" % self.conversation_id

    async def start(self):
        """
        Fetch immediately, then keep polling until stop().
        """
        await self.fetch_messages(force=True)
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(poll_every(self.poll_interval, self.fetch_messages, self._sleep))

    async def stop(self):
        await cancel_task(self._poll_task)
        self._poll_task = None

    async def fetch_messages(self, force=False):
        """
        Load the conversation's messages. A forced fetch that finds another
        fetch running waits for it and then reads again, so its result is
        never older than the call.
        """
        now = self._clock()
        if not force and self._last_fetch_at is not None and now - self._last_fetch_at < self.min_poll_gap:
            return False
        if self._in_flight is not None:
            if not force:
                return False
            while self._in_flight is not None:
                await self._in_flight.wait()

        done = asyncio.Event()
        self._in_flight = done
        self._last_fetch_at = self._clock()
        self.loading = True
        try:
            data = await request_json(self.client, "GET", self.messages_path)
        except ApiError as exc:
            # Keep showing the last good list
            self.error = exc.message
            return False
        finally:
            self._in_flight = None
            self.loading = False
            done.set()

        self.messages = data["messages"]
        self.error = None
        return True

    async def _mutate(self, method, url, failure, **kwargs):
        try:
            await request_json(self.client, method, url, **kwargs)
        except ApiError as exc:
            logger.warning("%s: %s", failure, exc.message)
            self.error = exc.message or failure
            return False
        await self.fetch_messages(force=True)
        return True

    async def send_message(self, content):
        """
        Send a message. Blank content is refused without a network call.
        """
        if not content or not content.strip():
            return False
        return await self._mutate("POST", self.messages_path, "Failed to send message",
                                  json={"content": content.strip()})

    async def edit_message(self, message_id, content):
        if not content or not content.strip():
            return False
        return await self._mutate("PATCH", "/messages/%s" % message_id, "Failed to edit message",
                                  json={"content": content.strip()})

    async def delete_message(self, message_id):
        return await self._mutate("DELETE", "/messages/%s" % message_id, "Failed to delete message")

    async def mark_as_read(self):
        """
        Mark the conversation read, refresh the receipts and let sibling
        controllers (unread badge, conversation list) know.
        """
        try:
            await request_json(self.client, "POST", "/conversations/%s/read" % self.conversation_id)
        except ApiError as exc:
            logger.error("Failed to mark messages as read: %s", exc.message)
            return False

        await self.fetch_messages(force=True)
        self.signal.send(self, conversation_id=self.conversation_id)
        return True


class UnreadMessagesController:
    """
    Unread message badge: polls slowly and refreshes right away whenever a
    conversation is marked read.
    """

    def __init__(self, client, poll_interval=30.0, sleep=asyncio.sleep, signal=messages_read):
        self.client = client
        self.poll_interval = poll_interval
        self.signal = signal
        self._sleep = sleep

        self.count = 0
        self._poll_task = None
        self._pending = set()

    async def start(self):
        self.signal.connect(self._on_messages_read)
        await self.refresh()
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(poll_every(self.poll_interval, self.refresh, self._sleep))

    async def stop(self):
        self.signal.disconnect(self._on_messages_read)
        await cancel_task(self._poll_task)
        self._poll_task = None
        for task in list(self._pending):
            await cancel_task(task)

    async def refresh(self):
        try:
            data = await request_json(self.client, "GET", "/messages/unread")
        except ApiError as exc:
            logger.error("Error fetching unread messages: %s", exc.message)
            return False
        self.count = data["count"]
        return True

    def _on_messages_read(self, sender, **kwargs):
        task = asyncio.get_running_loop().create_task(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


class ConversationsController:
    """
    The user's conversation list, refreshed every `poll_interval` seconds.
    """

    def __init__(self, client, poll_interval=30.0, sleep=asyncio.sleep):
        self.client = client
        self.poll_interval = poll_interval
        self._sleep = sleep

        self.conversations = []
        self.loading = False
        self.error = None
        self._poll_task = None

    async def start(self):
        await self.refresh()
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(poll_every(self.poll_interval, self.refresh, self._sleep))

    async def stop(self):
        await cancel_task(self._poll_task)
        self._poll_task = None

    async def refresh(self):
        if self.loading:
            return False
        self.loading = True
        try:
            data = await request_json(self.client, "GET", "/conversations")
        except ApiError as exc:
            self.error = exc.message
            return False
        finally:
            self.loading = False
        self.conversations = data["conversations"]
        self.error = None
        return True

    async def start_conversation(self, participant_id):
        """
        Open (or reuse) the direct conversation with participant_id.
        Returns its id, or None on failure.
        """
        try:
            data = await request_json(self.client, "POST", "/conversations/start",
                                      json={"participantId": participant_id})
        except ApiError as exc:
            self.error = exc.message or "Failed to start conversation"
            return None
        return data["conversationId"]
