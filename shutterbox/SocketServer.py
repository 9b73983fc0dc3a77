import logging                # Module logger

# Flask and the socket layer on top of it
from flask import Flask, request
from flask_socketio import SocketIO, emit, join_room, leave_room

from shutterbox.Config import SOCKET_CORS_ORIGINS

logger = logging.getLogger(__name__)

# =============================================================================
# SOCKET BROADCAST SERVER - PER-USER ROOMS
# =============================================================================
# Sockets join the room user-<id>. Delivery is at-most-once: users who are not
# connected miss the push and catch up through the stream or a fetch.


def room_name(user_id):
    return "user-%s" % user_id


def payload_user_id(payload):
    """
    Events carry either a bare user id or an object with a userId field.
    """
    if isinstance(payload, dict):
        payload = payload.get("userId")
    if payload is None or payload == "":
        return None
    return str(payload)


class RoomRegistry:
    """
    Which socket sits in which user room, and which users count as connected.
    A socket belongs to at most one user room; a user is connected while at
    least one socket is in their room.
    """

    def __init__(self):
        self.connected_users = set()
        self._socket_user = {}
        self._room_members = {}

    def join(self, sid, user_id):
        """
        Move sid into user_id's room. Returns the user whose room it left, if any.
        """
        previous = self._socket_user.get(sid)
        if previous is not None and previous != user_id:
            self._remove(sid, previous)
        self._socket_user[sid] = user_id
        self._room_members.setdefault(user_id, set()).add(sid)
        self.connected_users.add(user_id)
        return previous if previous != user_id else None

    def leave(self, sid, user_id):
        if self._socket_user.get(sid) == user_id:
            self._remove(sid, user_id)

    def disconnect(self, sid):
        """
        Forget a socket that went away. Returns the user it belonged to.
        """
        user_id = self._socket_user.get(sid)
        if user_id is not None:
            self._remove(sid, user_id)
        return user_id

    def is_connected(self, user_id):
        return user_id in self.connected_users

    def members(self, user_id):
        return set(self._room_members.get(user_id, ()))

    def user_of(self, sid):
        return self._socket_user.get(sid)

    def _remove(self, sid, user_id):
        self._socket_user.pop(sid, None)
        members = self._room_members.get(user_id)
        if members is not None:
            members.discard(sid)
            if not members:
                del self._room_members[user_id]
                self.connected_users.discard(user_id)


class BroadcastServer:
    """
    Socket event handlers bound to one SocketIO instance and one RoomRegistry.
    """

    def __init__(self, socketio, registry=None):
        self.socketio = socketio
        self.registry = registry if registry is not None else RoomRegistry()

        socketio.on_event("connect", self.on_connect)
        socketio.on_event("disconnect", self.on_disconnect)
        socketio.on_event("join-user-room", self.on_join_user_room)
        socketio.on_event("leave-user-room", self.on_leave_user_room)
        socketio.on_event("send-notification", self.on_send_notification)
        socketio.on_event("mark-notification-read", self.on_mark_notification_read)
        socketio.on_event("mark-all-notifications-read", self.on_mark_all_notifications_read)

    def on_connect(self, auth=None):
        logger.info("Socket connected: %s", request.sid)

    def on_disconnect(self, reason=None):
        user_id = self.registry.disconnect(request.sid)
        logger.info("Socket disconnected: %s (user %s)", request.sid, user_id)

    def on_join_user_room(self, payload):
        user_id = payload_user_id(payload)
        if user_id is None:
            logger.warning("join-user-room without a user id from %s", request.sid)
            return

        previous = self.registry.join(request.sid, user_id)
        if previous is not None:
            leave_room(room_name(previous))
        join_room(room_name(user_id))
        logger.info("User %s joined their notification room", user_id)

    def on_leave_user_room(self, payload):
        user_id = payload_user_id(payload)
        if user_id is None:
            return
        leave_room(room_name(user_id))
        self.registry.leave(request.sid, user_id)
        logger.info("User %s left their notification room", user_id)

    def on_send_notification(self, data):
        user_id = payload_user_id(data)
        # Only deliver while the user has a live socket; otherwise drop it
        if user_id is None or not self.registry.is_connected(user_id):
            logger.debug("Dropping notification for offline user %s", user_id)
            return
        emit("new-notification", data, to=room_name(user_id))

    def on_mark_notification_read(self, data):
        user_id = payload_user_id(data)
        if user_id is None or not isinstance(data, dict):
            return
        # Relay to the user's other devices, not back to the sender
        emit("notification-read", data.get("notificationId"), to=room_name(user_id), include_self=False)

    def on_mark_all_notifications_read(self, data):
        user_id = payload_user_id(data)
        if user_id is None:
            return
        emit("all-notifications-read", to=room_name(user_id), include_self=False)


def create_socket_app(overrides=None, cors_allowed_origins=None):
    """
    Build the standalone socket server: a bare Flask app carrying SocketIO.
    Returns (app, socketio, broadcast_server).
    """
    app = Flask(__name__)
    app.config["SECRET_KEY"] = "socket-dev-only"
    app.config.from_prefixed_env("SHUTTERBOX")
    if overrides:
        app.config.update(overrides)

    origins = cors_allowed_origins or SOCKET_CORS_ORIGINS.split(",")
    socketio = SocketIO(app, cors_allowed_origins=origins)
    server = BroadcastServer(socketio)
    app.extensions["shutterbox_rooms"] = server.registry
    return app, socketio, server
