import logging                # Module logger
from contextlib import closing # Close connections on every exit path
import math                   # Page count rounding
import sqlite3                # Database errors
import time                   # Retry-After computation

# Flask framework imports
from flask import Blueprint, Response, current_app, jsonify, request

from shutterbox import Storage
from shutterbox.Application import get_services
from shutterbox.Cache import MISS
from shutterbox.Helpers import current_user_id, get_db, parse_positive_int
from shutterbox.Stream import SSE_HEADERS, StreamSubscription

logger = logging.getLogger(__name__)

# =============================================================================
# FLASK ROUTES - NOTIFICATION AND MESSAGING API
# =============================================================================

main_bp = Blueprint("main", __name__, url_prefix="")

# Cache key prefixes dropped after any write that touches messages
MESSAGE_CACHE_PREFIXES = ("conversations:", "messages:", "unread:")


def invalidate_message_caches():
    """
    Coarse invalidation after a message write: drop every conversation list,
    message list and unread count instead of working out which ones changed.
    """
    cache = get_services().cache
    for prefix in MESSAGE_CACHE_PREFIXES:
        cache.delete_by_prefix(prefix)


def unauthorized():
    return jsonify(success=False, error="Unauthorized"), 401


def forbidden():
    return jsonify(success=False, error="Forbidden"), 403


def parse_notification_id(raw):
    """
    Notification id from a JSON body: an integer or a string of digits.
    Returns None for anything else (lists, objects, booleans, text).
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    return None


@main_bp.app_errorhandler(sqlite3.Error)
def database_error(error):
    """
    Storage failures become a JSON 500; nothing was half written because
    every write commits as a whole.
    """
    logger.exception("Database error while handling %s %s", request.method, request.path)
    return jsonify(success=False, error="Internal server error"), 500

# =============================================================================
# NOTIFICATIONS
# =============================================================================

@main_bp.route("/notifications", methods=["GET"])
def get_notifications():
    """
    Get one page of notifications for the current user.
    Query string: page (1-based) and limit (capped by NOTIFICATIONS_MAX_PAGE_SIZE).
    Rate limited per user and path; a rejection is a 429 with retry hints.
    """
    # Check authentication
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    config = current_app.config
    limit_result = get_services().limiter.check(
        user_id, request.path,
        config["NOTIFICATIONS_RATE_LIMIT"], config["NOTIFICATIONS_RATE_WINDOW_MS"]
    )
    if not limit_result.allowed:
        response = jsonify(success=False, error="Rate limit exceeded", resetTime=limit_result.reset_time)
        response.status_code = 429
        response.headers["X-RateLimit-Remaining"] = str(limit_result.remaining)
        response.headers["X-RateLimit-Reset"] = str(limit_result.reset_time)
        response.headers["Retry-After"] = str(max(1, math.ceil((limit_result.reset_time - time.time() * 1000) / 1000)))
        return response

    # Pagination setup
    page = parse_positive_int(request.args.get("page"), 1)
    limit = min(parse_positive_int(request.args.get("limit"), config["NOTIFICATIONS_PAGE_SIZE"]),
                config["NOTIFICATIONS_MAX_PAGE_SIZE"])
    offset = (page - 1) * limit

    with closing(get_db()) as db:
        notifications = Storage.list_notifications(db, user_id, limit, offset)
        total = Storage.count_notifications(db, user_id)
        unread = Storage.count_unread_notifications(db, user_id)

    response = jsonify(
        success=True,
        notifications=notifications,
        pagination={
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
            "hasMore": page * limit < total,
        },
        unreadCount=unread,
    )
    response.headers["X-RateLimit-Remaining"] = str(limit_result.remaining)
    response.headers["X-RateLimit-Reset"] = str(limit_result.reset_time)
    return response


@main_bp.route("/notifications", methods=["PATCH"])
def update_notifications():
    """
    Mark notifications read or unread.
    Body: {"markAllAsRead": true} or {"notificationId": id, "markAsRead": bool}.
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    data = request.get_json(silent=True) or {}

    if data.get("markAllAsRead"):
        with closing(get_db()) as db:
            changed = Storage.mark_all_notifications_read(db, user_id)
        return jsonify(success=True, message="All notifications marked as read", updated=changed)

    notification_id = parse_notification_id(data.get("notificationId"))
    if notification_id is None:
        return jsonify(success=False, error="Invalid request parameters"), 400

    mark_read = bool(data.get("markAsRead", True))
    with closing(get_db()) as db:
        found = Storage.set_notification_read(db, user_id, notification_id, mark_read)
    if not found:
        return jsonify(success=False, error="Notification not found"), 404

    return jsonify(success=True, message="Notification marked as %s" % ("read" if mark_read else "unread"))


@main_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    """
    Mark a single notification as read (only the recipient may).
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with closing(get_db()) as db:
        found = Storage.set_notification_read(db, user_id, notification_id, True)

    if not found:
        return jsonify(success=False, error="Not found or not allowed"), 404
    return jsonify(success=True)


@main_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_notifications_read():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with closing(get_db()) as db:
        changed = Storage.mark_all_notifications_read(db, user_id)
    return jsonify(success=True, updated=changed)


@main_bp.route("/notifications/unread-count", methods=["GET"])
def notification_unread_count():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with closing(get_db()) as db:
        count = Storage.count_unread_notifications(db, user_id)
    return jsonify(count=count)


@main_bp.route("/notifications/stream", methods=["GET"])
def notification_stream():
    """
    Long-lived server-sent events stream of the current user's notifications.
    The response body is produced by a StreamSubscription; it ends after
    STREAM_MAX_LIFETIME seconds and the client is expected to reconnect.
    """
    user_id = current_user_id()
    if not user_id:
        return Response("Unauthorized", status=401)

    config = current_app.config
    db_path = config["DATABASE"]
    streams = get_services().streams

    subscription = StreamSubscription(
        user_id,
        open_db=lambda: get_db(db_path),
        poll_interval=config["STREAM_POLL_INTERVAL"],
        unread_interval=config["STREAM_UNREAD_INTERVAL"],
        heartbeat_interval=config["STREAM_HEARTBEAT_INTERVAL"],
        max_lifetime=config["STREAM_MAX_LIFETIME"],
        on_close=streams.discard,
    )
    streams.add(subscription)

    response = Response(subscription.frames(), mimetype="text/event-stream", headers=SSE_HEADERS)
    # The WSGI server closes the body when the client goes away
    response.call_on_close(lambda: subscription.close("client disconnected"))
    return response

# =============================================================================
# CONVERSATIONS
# =============================================================================

@main_bp.route("/conversations", methods=["GET"])
def get_conversations():
    """
    List the current user's conversations, most recently active first.
    Cached per user for CONVERSATIONS_CACHE_TTL seconds.
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    cache = get_services().cache
    cache_key = "conversations:%s" % user_id
    cached = cache.get(cache_key)
    if cached is not MISS:
        return jsonify(conversations=cached)

    with closing(get_db()) as db:
        conversations = Storage.list_conversations(db, user_id, current_app.config["CONVERSATIONS_LIMIT"])

    cache.set(cache_key, conversations, current_app.config["CONVERSATIONS_CACHE_TTL"])
    return jsonify(conversations=conversations)


@main_bp.route("/conversations/start", methods=["POST"])
def start_conversation():
    """
    Return the direct conversation with participantId, creating it if needed.
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    data = request.get_json(silent=True) or {}
    participant_id = data.get("participantId")
    if not participant_id or not isinstance(participant_id, str):
        return jsonify(success=False, error="participantId is required"), 400
    if participant_id == user_id:
        return jsonify(success=False, error="Cannot start a conversation with yourself"), 400

    with closing(get_db()) as db:
        conversation_id = Storage.find_direct_conversation(db, user_id, participant_id)
        created = conversation_id is None
        if created:
            conversation_id = Storage.create_conversation(db, [user_id, participant_id])

    if created:
        # New conversation shows up in both users' lists
        get_services().cache.delete_by_prefix("conversations:")
    return jsonify(conversationId=conversation_id), (201 if created else 200)


@main_bp.route("/conversations/<int:conversation_id>", methods=["GET"])
def get_conversation(conversation_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with closing(get_db()) as db:
        conversation = Storage.get_conversation(db, conversation_id)
        if not conversation:
            return jsonify(success=False, error="Conversation not found"), 404
        participants = Storage.conversation_participants(db, conversation_id)

    # Check if user is a participant
    if not any(p["id"] == user_id for p in participants):
        return forbidden()

    return jsonify(conversation={"id": conversation_id, "participants": participants})

# =============================================================================
# MESSAGES
# =============================================================================

@main_bp.route("/conversations/<int:conversation_id>/messages", methods=["GET"])
def get_messages(conversation_id):
    """
    Latest messages of a conversation with read receipts.
    Cached for MESSAGES_CACHE_TTL seconds so tight polling stays cheap.
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with closing(get_db()) as db:
        if not Storage.is_participant(db, conversation_id, user_id):
            return forbidden()

        cache = get_services().cache
        cache_key = "messages:%s:%s" % (conversation_id, user_id)
        cached = cache.get(cache_key)
        if cached is not MISS:
            return jsonify(cached)

        result = {"messages": Storage.list_messages(db, conversation_id, current_app.config["MESSAGES_LIMIT"])}

    cache.set(cache_key, result, current_app.config["MESSAGES_CACHE_TTL"])
    return jsonify(result)


@main_bp.route("/conversations/<int:conversation_id>/messages", methods=["POST"])
def send_message(conversation_id):
    """
    Send a message to a conversation the current user takes part in.
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    # Validate content before touching the database
    data = request.get_json(silent=True) or {}
    content = data.get("content")
    if not isinstance(content, str) or not content.strip():
        return jsonify(success=False, error="Message content is required"), 400

    with closing(get_db()) as db:
        if not Storage.is_participant(db, conversation_id, user_id):
            return forbidden()

        message_id = Storage.create_message(db, conversation_id, user_id, content.strip())
        message = Storage.get_message(db, message_id)

    invalidate_message_caches()
    return jsonify(message=message), 201


@main_bp.route("/conversations/<int:conversation_id>/read", methods=["POST"])
def mark_conversation_read(conversation_id):
    """
    Record read receipts for everything other people sent in this conversation.
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with closing(get_db()) as db:
        if not Storage.is_participant(db, conversation_id, user_id):
            return forbidden()

        marked = Storage.mark_conversation_read(db, conversation_id, user_id)

    invalidate_message_caches()
    return jsonify(success=True, markedCount=marked)


def _load_own_message(db, message_id, user_id):
    """
    Fetch a message for editing/deleting.
    Returns (message, error_response); only the sender may change a message.
    """
    message = Storage.get_message(db, message_id)
    if not message:
        return None, (jsonify(success=False, error="Message not found"), 404)
    if message["sender"]["id"] != user_id:
        return None, forbidden()
    return message, None


@main_bp.route("/messages/<int:message_id>", methods=["PATCH"])
def edit_message(message_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    data = request.get_json(silent=True) or {}
    content = data.get("content")
    if not isinstance(content, str) or not content.strip():
        return jsonify(success=False, error="Message content is required"), 400

    with closing(get_db()) as db:
        message, error = _load_own_message(db, message_id, user_id)
        if error:
            return error
        if message["isDeleted"]:
            return jsonify(success=False, error="Deleted messages cannot be edited"), 400

        Storage.edit_message(db, message_id, content.strip())
        updated = Storage.get_message(db, message_id)

    invalidate_message_caches()
    return jsonify(message=updated)


@main_bp.route("/messages/<int:message_id>", methods=["DELETE"])
def delete_message(message_id):
    """
    Soft delete: the row stays, with a tombstone text and its read receipts.
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with closing(get_db()) as db:
        message, error = _load_own_message(db, message_id, user_id)
        if error:
            return error
        Storage.soft_delete_message(db, message_id)

    invalidate_message_caches()
    return jsonify(success=True)


@main_bp.route("/messages/unread", methods=["GET"])
def unread_messages():
    """
    Number of unread messages across all conversations (navbar badge).
    """
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    cache = get_services().cache
    cache_key = "unread:%s" % user_id
    cached = cache.get(cache_key)
    if cached is not MISS:
        return jsonify(count=cached)

    with closing(get_db()) as db:
        count = Storage.count_unread_messages(db, user_id)

    cache.set(cache_key, count, current_app.config["UNREAD_CACHE_TTL"])
    return jsonify(count=count)
