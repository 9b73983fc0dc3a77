import os                     # File system operations
import argparse               # Argument passing through terminal
import logging                # Application wide log setup


# =============================================================================
# APPLICATION CONFIGURATION
# =============================================================================
# Get the directory where the project lives (one level above this package)
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Database file path
DB_PATH = os.path.join(BASE_DIR, "database.db")

# Defaults loaded into app.config by create_app().
# Every key can be overridden with a SHUTTERBOX_<KEY> environment variable.
DEFAULTS = {
    "DATABASE": DB_PATH,
    "SECRET_KEY": "dev-only-change-me",
    # Header set by the identity proxy in front of the app
    "IDENTITY_HEADER": "X-User-Id",

    # Response cache
    "CACHE_SWEEP_INTERVAL": 120,           # seconds
    "CONVERSATIONS_CACHE_TTL": 30,         # seconds
    "MESSAGES_CACHE_TTL": 3,               # seconds
    "UNREAD_CACHE_TTL": 20,                # seconds

    # Rate limiting of the notification list
    "NOTIFICATIONS_RATE_LIMIT": 30,        # requests per window
    "NOTIFICATIONS_RATE_WINDOW_MS": 60000,

    # Notification stream
    "STREAM_POLL_INTERVAL": 3,             # seconds
    "STREAM_UNREAD_INTERVAL": 10,          # seconds
    "STREAM_HEARTBEAT_INTERVAL": 30,       # seconds
    "STREAM_MAX_LIFETIME": 300,            # seconds

    # Pagination / list limits
    "NOTIFICATIONS_PAGE_SIZE": 20,
    "NOTIFICATIONS_MAX_PAGE_SIZE": 50,
    "MESSAGES_LIMIT": 100,
    "CONVERSATIONS_LIMIT": 50,

    # Start periodic sweepers with the app (tests switch this off)
    "START_SWEEPERS": True,
}

# Origins allowed to open a socket to the broadcast server
SOCKET_CORS_ORIGINS = os.environ.get("SHUTTERBOX_SOCKET_CORS_ORIGINS", "http://localhost:8080")

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s"


def build_parser(description):
    """
    Build the command line parser shared by both entry points.
    """
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--port", type=int, default=8080, help="Port number to run on.")
    parser.add_argument("--notlan", action="store_false", default=True, help="Set it to True if you want to test it on other devices that are also connected to the local network.")
    parser.add_argument("--database", default=None, help="Path of the SQLite database file.")
    parser.add_argument("--log-level", default=os.environ.get("SHUTTERBOX_LOG_LEVEL", "INFO"), help="Logging level (DEBUG, INFO, WARNING, ERROR).")
    return parser


def setup_logging(level="INFO"):
    """
    Configure the root logger once for the whole process.
    Module loggers are created with logging.getLogger(__name__) and inherit this.
    """
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
    logging.getLogger(__name__).info("Logging initialized with level: %s", level)
