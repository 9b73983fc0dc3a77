import logging                # Module logger
import sqlite3                # Database operations
import threading              # Timers for periodic background work
from datetime import datetime, timezone # Date/time handling

# Flask framework imports
from flask import current_app, request, session

logger = logging.getLogger(__name__)

# Format used for every timestamp we write; sorts lexicographically
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# =============================================================================
# DATABASE HELPER FUNCTIONS
# =============================================================================

def get_db(path=None):
    """
    Create and return a database connection.
    - Uses the DATABASE of the running app unless a path is given
    - Enables foreign key constraints for data integrity
    - Sets row factory to return Row objects (like dictionaries)
    """
    conn = sqlite3.connect(path or current_app.config["DATABASE"])
    conn.row_factory = sqlite3.Row  # Return rows as dictionary-like objects
    # Enforce foreign key constraints for data integrity
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

def init_db(path):
    """
    Initialize the database with all tables the delivery layer reads or writes.
    Users, photos and comments are owned by other parts of the site; they are
    created here so notifications and messages can join against them.
    """
    conn = get_db(path)
    cur = conn.cursor()

    cur.executescript("""
    -- Users table: mirror of the identity provider's users
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,                     -- Opaque id from the identity provider
        name TEXT,
        username TEXT UNIQUE,
        avatar TEXT
    );

    -- Photos table: only the fields notifications display
    CREATE TABLE IF NOT EXISTS photos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        url TEXT,
        title TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY(user_id) REFERENCES users(id)
    );

    -- Comments table: only the fields notifications display
    CREATE TABLE IF NOT EXISTS comments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        photo_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY(photo_id) REFERENCES photos(id),
        FOREIGN KEY(user_id) REFERENCES users(id)
    );

    -- Notifications table: one row per event shown to a recipient
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,                   -- Recipient
        action_user_id TEXT,                     -- User who triggered it
        type TEXT NOT NULL CHECK (type IN ('like', 'comment', 'reply', 'follow', 'mention')),
        title TEXT,
        message TEXT,
        photo_id INTEGER,
        comment_id INTEGER,
        is_read INTEGER NOT NULL DEFAULT 0,      -- 0=unread, 1=read
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_notifications_user_created
        ON notifications (user_id, created_at);

    -- Conversations and their participants
    CREATE TABLE IF NOT EXISTS conversations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL                 -- Bumped on every new message
    );

    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        UNIQUE(conversation_id, user_id),
        FOREIGN KEY(conversation_id) REFERENCES conversations(id)
    );

    -- Messages are soft deleted, never removed
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id INTEGER NOT NULL,
        sender_id TEXT NOT NULL,
        content TEXT NOT NULL,
        is_edited INTEGER NOT NULL DEFAULT 0,
        is_deleted INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY(conversation_id) REFERENCES conversations(id)
    );

    -- Read receipts: one row per (message, reader)
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        read_at TEXT NOT NULL,
        UNIQUE(message_id, user_id),
        FOREIGN KEY(message_id) REFERENCES messages(id)
    );
    """)
    conn.commit()
    conn.close()

# =============================================================================
# UTILITY HELPER FUNCTIONS
# =============================================================================

def now_iso():
    """
    Current UTC time in the storage timestamp format.
    """
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)

def current_user_id():
    """
    Get the authenticated subject for this request.
    The identity proxy puts it in a header; a session login works too.
    Returns None when nobody is authenticated.
    """
    header_value = request.headers.get(current_app.config["IDENTITY_HEADER"], "").strip()
    if header_value:
        return header_value
    return session.get("user_id")

def parse_positive_int(raw, default):
    """
    Parse a query string number, falling back to default on junk or values < 1.
    """
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 1 else default

class PeriodicTask:
    """
    Run a function every `interval` seconds on a daemon timer thread.
    The timer handle is kept on the task so cancel() stops it for good.
    """

    def __init__(self, interval, func, name=None):
        self.interval = interval
        self.func = func
        self.name = name or getattr(func, "__name__", "periodic-task")
        self._timer = None
        self._stopped = True
        self._lock = threading.Lock()

    @property
    def running(self):
        return not self._stopped

    def start(self):
        with self._lock:
            if not self._stopped:
                return
            self._stopped = False
            self._schedule()
        logger.debug("Started periodic task %s every %ss", self.name, self.interval)

    def cancel(self):
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule(self):
        self._timer = threading.Timer(self.interval, self._run)
        self._timer.daemon = True
        self._timer.name = self.name
        self._timer.start()

    def _run(self):
        try:
            self.func()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)
        with self._lock:
            if not self._stopped:
                self._schedule()
