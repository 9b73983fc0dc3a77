import atexit                 # Stop background work with the process
import logging                # Module logger

# Flask framework imports
from flask import Flask, current_app

from shutterbox.Config import DEFAULTS
from shutterbox.Helpers import init_db
from shutterbox.Cache import ResponseCache
from shutterbox.RateLimiter import RateLimiter
from shutterbox.Stream import StreamRegistry

logger = logging.getLogger(__name__)

# =============================================================================
# APPLICATION FACTORY
# =============================================================================

class Services:
    """
    Process-local state owned by one application instance.
    Routes reach it through get_services(); nothing lives at module level.
    """

    def __init__(self, cache, limiter, streams):
        self.cache = cache
        self.limiter = limiter
        self.streams = streams

    def start(self):
        self.cache.start_sweeper()

    def stop(self):
        self.cache.stop_sweeper()
        self.limiter.reset()
        self.streams.close_all()


def create_app(overrides=None):
    """
    Build the web application.
    Config comes from Config.DEFAULTS, then SHUTTERBOX_* environment
    variables, then the overrides mapping (tests use this).
    """
    app = Flask(__name__)
    app.config.from_mapping(DEFAULTS)
    app.config.from_prefixed_env("SHUTTERBOX")
    if overrides:
        app.config.update(overrides)

    # Make sure every table exists before the first request
    init_db(app.config["DATABASE"])

    services = Services(
        cache=ResponseCache(sweep_interval=app.config["CACHE_SWEEP_INTERVAL"]),
        limiter=RateLimiter(),
        streams=StreamRegistry(),
    )
    app.extensions["shutterbox"] = services

    # Imported here so the blueprint module can import get_services freely
    from shutterbox.Routing import main_bp
    app.register_blueprint(main_bp)

    if app.config["START_SWEEPERS"]:
        services.start()
        atexit.register(services.stop)

    logger.info("Application created with database %s", app.config["DATABASE"])
    return app


def get_services():
    """
    The Services of the application handling the current request.
    """
    return current_app.extensions["shutterbox"]
