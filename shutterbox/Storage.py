from shutterbox.Helpers import now_iso

# =============================================================================
# STORAGE QUERIES
# =============================================================================
# Every function takes an open connection from get_db() and leaves committing
# to the function itself when it writes. Rows go out as the JSON shapes the
# REST surface and the notification stream share.

NOTIFICATION_TYPES = ("like", "comment", "reply", "follow", "mention")

# Text that replaces the content of a soft-deleted message
DELETED_MESSAGE_TEXT = "This message was deleted"

NOTIFICATION_SELECT = """
    SELECT n.id, n.type, n.title, n.message, n.is_read, n.created_at,
           n.action_user_id, n.photo_id, n.comment_id,
           u.name AS action_user_name,
           u.username AS action_user_username,
           u.avatar AS action_user_avatar,
           p.url AS photo_url,
           p.title AS photo_title,
           c.content AS comment_content
    FROM notifications n
    LEFT JOIN users u ON n.action_user_id = u.id    -- Who triggered it
    LEFT JOIN photos p ON n.photo_id = p.id         -- Referenced photo
    LEFT JOIN comments c ON n.comment_id = c.id     -- Referenced comment
"""

# =============================================================================
# USERS
# =============================================================================

def upsert_user(db, user_id, name=None, username=None, avatar=None):
    """
    Insert or refresh the local copy of an identity-provider user.
    """
    db.execute("""
        INSERT INTO users (id, name, username, avatar) VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = COALESCE(excluded.name, users.name),
            username = COALESCE(excluded.username, users.username),
            avatar = COALESCE(excluded.avatar, users.avatar)
    """, (user_id, name, username, avatar))
    db.commit()

def user_summary(user_id, name=None, username=None, avatar=None):
    return {"id": user_id, "name": name, "username": username, "avatar": avatar}

# =============================================================================
# NOTIFICATIONS
# =============================================================================

def serialize_notification(row):
    """
    Turn a NOTIFICATION_SELECT row into the client-facing dict.
    """
    return {
        "id": row["id"],
        "type": row["type"],
        "title": row["title"],
        "message": row["message"],
        "isRead": bool(row["is_read"]),
        "createdAt": row["created_at"],
        "data": {
            "actionUserId": row["action_user_id"],
            "actionUserName": row["action_user_name"] or row["action_user_username"],
            "actionUserAvatar": row["action_user_avatar"],
            "photoId": row["photo_id"],
            "photoUrl": row["photo_url"],
            "photoTitle": row["photo_title"],
            "commentId": row["comment_id"],
            "commentContent": row["comment_content"],
        },
    }

def create_notification(db, user_id, type, action_user_id=None, title=None, message=None,
                        photo_id=None, comment_id=None, created_at=None):
    """
    Store a notification for user_id. This is the write-path hook the like,
    comment and follow handlers call; the stream picks the row up on its next poll.
    """
    if type not in NOTIFICATION_TYPES:
        raise ValueError("Unknown notification type: %r" % (type,))
    cur = db.execute("""
        INSERT INTO notifications
            (user_id, action_user_id, type, title, message, photo_id, comment_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (user_id, action_user_id, type, title, message, photo_id, comment_id, created_at or now_iso()))
    db.commit()
    return cur.lastrowid

def get_notification(db, notification_id):
    row = db.execute(NOTIFICATION_SELECT + " WHERE n.id = ?", (notification_id,)).fetchone()
    return serialize_notification(row) if row else None

def list_notifications(db, user_id, limit, offset=0):
    """
    One page of a user's notifications, newest first.
    """
    rows = db.execute(NOTIFICATION_SELECT + """
        WHERE n.user_id = ?
        ORDER BY n.created_at DESC, n.id DESC
        LIMIT ? OFFSET ?
    """, (user_id, limit, offset)).fetchall()
    return [serialize_notification(r) for r in rows]

def notifications_since(db, user_id, since):
    """
    Notifications for user_id created strictly after the `since` timestamp.
    """
    rows = db.execute(NOTIFICATION_SELECT + """
        WHERE n.user_id = ? AND n.created_at > ?
        ORDER BY n.created_at DESC, n.id DESC
    """, (user_id, since)).fetchall()
    return [serialize_notification(r) for r in rows]

def count_notifications(db, user_id):
    return db.execute("SELECT COUNT(*) FROM notifications WHERE user_id = ?", (user_id,)).fetchone()[0]

def count_unread_notifications(db, user_id):
    return db.execute(
        "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
    ).fetchone()[0]

def set_notification_read(db, user_id, notification_id, is_read=True):
    """
    Flip the read flag of one of user_id's notifications.
    Returns False when the notification does not exist or belongs to someone else.
    """
    cur = db.execute(
        "UPDATE notifications SET is_read = ? WHERE id = ? AND user_id = ?",
        (1 if is_read else 0, notification_id, user_id)
    )
    db.commit()
    return cur.rowcount > 0

def mark_all_notifications_read(db, user_id):
    cur = db.execute("UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,))
    db.commit()
    return cur.rowcount

# =============================================================================
# CONVERSATIONS
# =============================================================================

def is_participant(db, conversation_id, user_id):
    row = db.execute(
        "SELECT 1 FROM conversation_participants WHERE conversation_id = ? AND user_id = ?",
        (conversation_id, user_id)
    ).fetchone()
    return row is not None

def get_conversation(db, conversation_id):
    return db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()

def conversation_participants(db, conversation_id):
    rows = db.execute("""
        SELECT cp.user_id, u.name, u.username, u.avatar
        FROM conversation_participants cp
        LEFT JOIN users u ON u.id = cp.user_id
        WHERE cp.conversation_id = ?
        ORDER BY cp.user_id
    """, (conversation_id,)).fetchall()
    return [user_summary(r["user_id"], r["name"], r["username"], r["avatar"]) for r in rows]

def find_direct_conversation(db, user_id, other_user_id):
    """
    The conversation whose participants are exactly these two users, if any.
    """
    row = db.execute("""
        SELECT cp.conversation_id
        FROM conversation_participants cp
        GROUP BY cp.conversation_id
        HAVING COUNT(*) = 2
           AND SUM(cp.user_id = ?) = 1
           AND SUM(cp.user_id = ?) = 1
    """, (user_id, other_user_id)).fetchone()
    return row["conversation_id"] if row else None

def create_conversation(db, user_ids):
    now = now_iso()
    cur = db.execute("INSERT INTO conversations (created_at, updated_at) VALUES (?, ?)", (now, now))
    conversation_id = cur.lastrowid
    db.executemany(
        "INSERT OR IGNORE INTO conversation_participants (conversation_id, user_id) VALUES (?, ?)",
        [(conversation_id, uid) for uid in user_ids]
    )
    db.commit()
    return conversation_id

def list_conversations(db, user_id, limit):
    """
    Conversations user_id takes part in, most recently active first, each with
    its other participants, last message and unread count.
    """
    rows = db.execute("""
        SELECT c.id, c.updated_at
        FROM conversations c
        JOIN conversation_participants cp ON cp.conversation_id = c.id
        WHERE cp.user_id = ?
        ORDER BY c.updated_at DESC, c.id DESC
        LIMIT ?
    """, (user_id, limit)).fetchall()

    conversations = []
    for conv in rows:
        participants = [p for p in conversation_participants(db, conv["id"]) if p["id"] != user_id]

        last = db.execute("""
            SELECT m.content, m.created_at, m.sender_id, u.name, u.username, u.avatar,
                   EXISTS(SELECT 1 FROM message_reads r
                          WHERE r.message_id = m.id AND r.user_id = ?) AS read_by_me
            FROM messages m
            LEFT JOIN users u ON u.id = m.sender_id
            WHERE m.conversation_id = ?
            ORDER BY m.created_at DESC, m.id DESC
            LIMIT 1
        """, (user_id, conv["id"])).fetchone()

        unread = db.execute("""
            SELECT COUNT(*) FROM messages m
            WHERE m.conversation_id = ? AND m.sender_id != ?
              AND NOT EXISTS (SELECT 1 FROM message_reads r
                              WHERE r.message_id = m.id AND r.user_id = ?)
        """, (conv["id"], user_id, user_id)).fetchone()[0]

        last_message = None
        if last:
            last_message = {
                "content": last["content"],
                "createdAt": last["created_at"],
                "sender": user_summary(last["sender_id"], last["name"], last["username"], last["avatar"]),
                # Own messages count as read
                "isRead": bool(last["read_by_me"]) or last["sender_id"] == user_id,
            }

        conversations.append({
            "id": conv["id"],
            "participants": participants,
            "lastMessage": last_message,
            "unreadCount": unread,
            "updatedAt": conv["updated_at"],
        })
    return conversations

# =============================================================================
# MESSAGES
# =============================================================================

MESSAGE_SELECT = """
    SELECT m.*, u.name AS sender_name, u.username AS sender_username, u.avatar AS sender_avatar
    FROM messages m
    LEFT JOIN users u ON u.id = m.sender_id
"""

def serialize_message(row, reads):
    return {
        "id": row["id"],
        "conversationId": row["conversation_id"],
        "content": row["content"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
        "isEdited": bool(row["is_edited"]),
        "isDeleted": bool(row["is_deleted"]),
        "sender": user_summary(row["sender_id"], row["sender_name"], row["sender_username"], row["sender_avatar"]),
        "reads": reads,
    }

def _reads_for(db, message_ids):
    """
    Read receipts for a batch of messages, keyed by message id.
    """
    reads = {mid: [] for mid in message_ids}
    if not message_ids:
        return reads
    marks = ",".join("?" for _ in message_ids)
    rows = db.execute(
        "SELECT message_id, user_id, read_at FROM message_reads WHERE message_id IN (%s) ORDER BY read_at" % marks,
        list(message_ids)
    ).fetchall()
    for r in rows:
        reads[r["message_id"]].append({"userId": r["user_id"], "readAt": r["read_at"]})
    return reads

def list_messages(db, conversation_id, limit):
    """
    The latest `limit` messages of a conversation, oldest first.
    Soft-deleted messages stay in the list with their tombstone text.
    """
    rows = db.execute(MESSAGE_SELECT + """
        WHERE m.conversation_id = ?
        ORDER BY m.created_at DESC, m.id DESC
        LIMIT ?
    """, (conversation_id, limit)).fetchall()
    rows = list(reversed(rows))
    reads = _reads_for(db, [r["id"] for r in rows])
    return [serialize_message(r, reads[r["id"]]) for r in rows]

def get_message(db, message_id):
    row = db.execute(MESSAGE_SELECT + " WHERE m.id = ?", (message_id,)).fetchone()
    if not row:
        return None
    return serialize_message(row, _reads_for(db, [row["id"]])[row["id"]])

def create_message(db, conversation_id, sender_id, content):
    """
    Store a new message and bump the conversation so it sorts first.
    """
    now = now_iso()
    cur = db.execute("""
        INSERT INTO messages (conversation_id, sender_id, content, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
    """, (conversation_id, sender_id, content, now, now))
    db.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
    db.commit()
    return cur.lastrowid

def edit_message(db, message_id, content):
    db.execute(
        "UPDATE messages SET content = ?, is_edited = 1, updated_at = ? WHERE id = ?",
        (content, now_iso(), message_id)
    )
    db.commit()

def soft_delete_message(db, message_id):
    db.execute(
        "UPDATE messages SET content = ?, is_deleted = 1, updated_at = ? WHERE id = ?",
        (DELETED_MESSAGE_TEXT, now_iso(), message_id)
    )
    db.commit()

def mark_conversation_read(db, conversation_id, user_id):
    """
    Add a read receipt for every message in the conversation that someone
    else sent and user_id has not read yet. Returns how many were marked.
    """
    unread = db.execute("""
        SELECT m.id FROM messages m
        WHERE m.conversation_id = ? AND m.sender_id != ?
          AND NOT EXISTS (SELECT 1 FROM message_reads r
                          WHERE r.message_id = m.id AND r.user_id = ?)
    """, (conversation_id, user_id, user_id)).fetchall()

    if unread:
        read_at = now_iso()
        db.executemany(
            "INSERT OR IGNORE INTO message_reads (message_id, user_id, read_at) VALUES (?, ?, ?)",
            [(r["id"], user_id, read_at) for r in unread]
        )
        db.commit()
    return len(unread)

def count_unread_messages(db, user_id):
    """
    Messages from other people, across all of user_id's conversations, that
    user_id has not read.
    """
    return db.execute("""
        SELECT COUNT(*) FROM messages m
        JOIN conversation_participants cp
          ON cp.conversation_id = m.conversation_id AND cp.user_id = ?
        WHERE m.sender_id != ?
          AND NOT EXISTS (SELECT 1 FROM message_reads r
                          WHERE r.message_id = m.id AND r.user_id = ?)
    """, (user_id, user_id, user_id)).fetchone()[0]
