"""Tests for the client-side notification controller."""

import asyncio
import json

import httpx
import pytest

from shutterbox import Storage
from shutterbox.NotificationController import ConnectionState, NotificationController, parse_sse_block

from conftest import FakeClock, StallingSleep, iso_at


def notification(nid, is_read=False):
    return {"id": nid, "type": "like", "title": "t", "message": "m", "isRead": is_read,
            "createdAt": iso_at(nid), "data": {}}


def page_body(notifications, unread=0, has_more=False):
    return {
        "success": True,
        "notifications": notifications,
        "pagination": {"page": 1, "limit": 20, "total": len(notifications), "pages": 1, "hasMore": has_more},
        "unreadCount": unread,
    }


def sse(*envelopes):
    return "".join("data: %s\n\n" % json.dumps(e) for e in envelopes).encode("utf-8")


class FakeServer:
    """
    Canned answers for the notification endpoints, recording every request.
    `stream` is either bytes for the stream body, a status code, or an exception to raise.
    """

    def __init__(self, stream=b"", pages=None, read_status=200):
        self.stream = stream
        self.pages = pages or {1: page_body([])}
        self.read_status = read_status
        self.requests = []

    def __call__(self, request):
        self.requests.append((request.method, request.url.path, dict(request.url.params)))
        path = request.url.path
        if path == "/notifications/stream":
            if isinstance(self.stream, Exception):
                raise self.stream
            if isinstance(self.stream, int):
                return httpx.Response(self.stream, text="Unauthorized")
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=self.stream)
        if path == "/notifications":
            return httpx.Response(200, json=self.pages[int(request.url.params.get("page", 1))])
        if path.endswith("/read") or path.endswith("/read-all"):
            if self.read_status >= 400:
                return httpx.Response(self.read_status, json={"success": False, "error": "Server said no"})
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"error": "Not found"})

    def count(self, path):
        return sum(1 for _, p, _ in self.requests if p == path)


def make_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")


def test_parse_sse_block():
    assert parse_sse_block('data: {"a": 1}') == '{"a": 1}'
    assert parse_sse_block(": comment\ndata: x") == "x"
    assert parse_sse_block("event: ping") is None
    assert parse_sse_block("data: a\ndata: b") == "a\nb"


class TestStreamConnection:
    """Reconnect behaviour of the notification stream."""

    @pytest.mark.asyncio
    async def test_stream_envelopes_are_merged(self):
        server = FakeServer(stream=sse(
            {"type": "connected", "message": "SSE connection established", "timestamp": "t"},
            {"type": "new-notification", "notification": notification(1)},
            {"type": "heartbeat", "timestamp": "t"},
            {"type": "unread-count", "count": 7},
        ))
        controller = NotificationController(make_client(server))

        await controller._consume_stream()

        assert [n["id"] for n in controller.notifications] == [1]
        assert controller.unread_count == 7
        assert controller.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_reconnects_three_seconds_after_stream_ends(self):
        sleep = StallingSleep()
        server = FakeServer(stream=sse({"type": "connected"}))
        controller = NotificationController(make_client(server), sleep=sleep)

        await controller.start()
        await asyncio.wait_for(sleep.called.wait(), 1)

        assert sleep.delays == [3.0]
        assert controller.state is ConnectionState.DISCONNECTED
        await controller.stop()

    @pytest.mark.asyncio
    async def test_reconnects_after_server_error(self):
        sleep = StallingSleep()
        controller = NotificationController(make_client(FakeServer(stream=500)), sleep=sleep)

        await controller.start()
        await asyncio.wait_for(sleep.called.wait(), 1)

        assert sleep.delays == [3.0]
        await controller.stop()

    @pytest.mark.asyncio
    async def test_reconnects_after_transport_error(self):
        sleep = StallingSleep()
        server = FakeServer(stream=httpx.ConnectError("connection refused"))
        controller = NotificationController(make_client(server), sleep=sleep)

        await controller.start()
        await asyncio.wait_for(sleep.called.wait(), 1)

        assert sleep.delays == [3.0]
        await controller.stop()

    @pytest.mark.asyncio
    async def test_setup_failure_retries_after_five_seconds(self):
        sleep = StallingSleep()
        controller = NotificationController(make_client(FakeServer(stream=RuntimeError("boom"))), sleep=sleep)

        await controller.start()
        await asyncio.wait_for(sleep.called.wait(), 1)

        assert sleep.delays == [5.0]
        await controller.stop()

    @pytest.mark.asyncio
    async def test_unauthorized_stops_retrying(self):
        sleep = StallingSleep()
        controller = NotificationController(make_client(FakeServer(stream=401)), sleep=sleep)

        await controller.start()
        await asyncio.wait_for(controller._stream_task, 1)

        assert sleep.delays == []
        assert controller.error == "Unauthorized"
        assert controller.state is ConnectionState.DISCONNECTED
        await controller.stop()


class TestMerging:
    """Dedup and unread accounting of pushed notifications."""

    def setup_method(self):
        self.seen = []
        self.controller = NotificationController(client=None, on_notification=self.seen.append)

    def test_duplicate_push_is_ignored(self):
        assert self.controller.receive_notification(notification(1))
        assert not self.controller.receive_notification(notification(1))

        assert len(self.controller.notifications) == 1
        assert self.controller.unread_count == 1
        assert len(self.seen) == 1

    def test_newest_first(self):
        for nid in (1, 2, 3):
            self.controller.receive_notification(notification(nid))
        assert [n["id"] for n in self.controller.notifications] == [3, 2, 1]

    def test_read_push_does_not_bump_unread(self):
        self.controller.receive_notification(notification(1, is_read=True))
        assert self.controller.unread_count == 0

    def test_push_without_id_is_ignored(self):
        self.controller.handle_socket_event("new-notification", {"userId": "alice", "notificationId": 5})
        self.controller.handle_socket_event("new-notification", {"userId": "alice", "notification": notification(6)})

        assert [n["id"] for n in self.controller.notifications] == [6]
        assert self.controller.unread_count == 1
        assert len(self.seen) == 1

    def test_socket_events(self):
        self.controller.handle_socket_event("new-notification", {"userId": "alice", "notification": notification(4)})
        self.controller.handle_socket_event("new-notification", notification(5))
        assert self.controller.unread_count == 2

        self.controller.handle_socket_event("notification-read", 4)
        assert self.controller.unread_count == 1
        assert self.controller.notifications[1]["isRead"] is True

        self.controller.handle_socket_event("all-notifications-read")
        assert self.controller.unread_count == 0
        assert all(n["isRead"] for n in self.controller.notifications)

    def test_error_envelope_keeps_state(self):
        self.controller.receive_notification(notification(1))
        self.controller.handle_envelope({"type": "error", "message": "Error checking for notifications"})
        assert self.controller.unread_count == 1


class TestFetching:

    @pytest.mark.asyncio
    async def test_fetches_within_a_second_are_skipped(self):
        clock = FakeClock()
        server = FakeServer()
        controller = NotificationController(make_client(server), clock=clock)

        assert await controller.fetch_notifications(1)
        assert not await controller.fetch_notifications(1)
        clock.advance(1.0)
        assert await controller.fetch_notifications(1)

        assert server.count("/notifications") == 2

    @pytest.mark.asyncio
    async def test_fetch_while_in_flight_is_a_no_op(self):
        gate = asyncio.Event()
        entered = asyncio.Event()
        calls = []

        async def handler(request):
            calls.append(request)
            entered.set()
            await gate.wait()
            return httpx.Response(200, json=page_body([notification(1)], unread=1))

        controller = NotificationController(make_client(handler), min_fetch_interval=0)
        first = asyncio.create_task(controller.fetch_notifications(1))
        await entered.wait()

        assert controller.loading
        assert not await controller.fetch_notifications(1)

        gate.set()
        assert await first
        assert len(calls) == 1
        assert controller.unread_count == 1

    @pytest.mark.asyncio
    async def test_load_more_appends_without_duplicates(self):
        server = FakeServer(pages={
            1: page_body([notification(3), notification(2)], unread=3, has_more=True),
            2: page_body([notification(2), notification(1)], unread=3, has_more=False),
        })
        controller = NotificationController(make_client(server), page_size=2, min_fetch_interval=0)

        await controller.fetch_notifications(1, reset=True)
        assert await controller.load_more()

        assert [n["id"] for n in controller.notifications] == [3, 2, 1]
        assert controller.page == 2
        assert controller.has_more is False
        assert not await controller.load_more()
        assert server.requests[1][2] == {"page": "2", "limit": "2"}

    @pytest.mark.asyncio
    async def test_refetch_replaces_pushed_items(self):
        server = FakeServer(pages={1: page_body([notification(9)], unread=1)})
        controller = NotificationController(make_client(server), min_fetch_interval=0)
        controller.receive_notification(notification(1))

        await controller.refetch()

        assert [n["id"] for n in controller.notifications] == [9]

    @pytest.mark.asyncio
    async def test_rate_limited_fetch_keeps_list(self):
        def handler(request):
            return httpx.Response(429, json={"success": False, "error": "Rate limit exceeded"})

        controller = NotificationController(make_client(handler))
        controller.receive_notification(notification(1))

        assert not await controller.fetch_notifications(1)
        assert controller.error == "Rate limit exceeded"
        assert len(controller.notifications) == 1

    @pytest.mark.asyncio
    async def test_non_object_error_body_is_kept_as_error(self):
        def handler(request):
            return httpx.Response(502, json="Bad Gateway")

        controller = NotificationController(make_client(handler))

        assert not await controller.fetch_notifications(1)
        assert controller.error == "HTTP 502"


class TestMarkRead:

    @pytest.mark.asyncio
    async def test_mark_as_read_is_optimistic(self):
        gate = asyncio.Event()
        entered = asyncio.Event()

        async def handler(request):
            entered.set()
            await gate.wait()
            return httpx.Response(200, json={"success": True})

        controller = NotificationController(make_client(handler))
        controller.receive_notification(notification(1))
        task = asyncio.create_task(controller.mark_as_read(1))
        await entered.wait()

        assert controller.notifications[0]["isRead"] is True
        assert controller.unread_count == 0

        gate.set()
        assert await task

    @pytest.mark.asyncio
    async def test_mark_as_read_reverted_on_failure(self):
        controller = NotificationController(make_client(FakeServer(read_status=500)))
        controller.receive_notification(notification(1))

        assert not await controller.mark_as_read(1)

        assert controller.notifications[0]["isRead"] is False
        assert controller.unread_count == 1
        assert controller.error == "Server said no"

    @pytest.mark.asyncio
    async def test_mark_all_restored_on_failure(self):
        controller = NotificationController(make_client(FakeServer(read_status=500)))
        controller.receive_notification(notification(1))
        controller.receive_notification(notification(2, is_read=True))

        assert not await controller.mark_all_as_read()

        assert [n["isRead"] for n in controller.notifications] == [True, False]
        assert controller.unread_count == 1


class TestAgainstApp:
    """The controller driving the real routes."""

    @pytest.mark.asyncio
    async def test_fetch_and_mark_read(self, db, http_client_for):
        first = Storage.create_notification(db, "alice", "like", action_user_id="bob", created_at=iso_at(1))
        Storage.create_notification(db, "alice", "follow", action_user_id="carol", created_at=iso_at(2))
        controller = NotificationController(http_client_for("alice"), min_fetch_interval=0)

        await controller.fetch_notifications(1, reset=True)
        assert len(controller.notifications) == 2
        assert controller.unread_count == 2

        assert await controller.mark_as_read(first)
        assert controller.unread_count == 1
        assert Storage.count_unread_notifications(db, "alice") == 1

        assert await controller.mark_all_as_read()
        assert Storage.count_unread_notifications(db, "alice") == 0

    @pytest.mark.asyncio
    async def test_cannot_mark_someone_elses_notification(self, db, http_client_for):
        nid = Storage.create_notification(db, "alice", "like", created_at=iso_at(1))
        controller = NotificationController(http_client_for("bob"))
        controller.receive_notification({"id": nid, "isRead": False})

        assert not await controller.mark_as_read(nid)
        assert controller.unread_count == 1
        assert controller.error == "Not found or not allowed"
