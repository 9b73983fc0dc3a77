# =============================================================================
# Shutterbox - PHOTO SHARING APPLICATION - NOTIFICATION & MESSAGING API       =
# =============================================================================
# Flask web app serving the real-time side of the site: notification lists,
# the server-sent notification stream, conversations and direct messages.
# The socket broadcast server runs as its own process (socket_server.py).
# =============================================================================
from shutterbox.Application import create_app
from shutterbox.Config import build_parser, setup_logging

# =============================================================================
# APPLICATION STARTUP                                                         =
# =============================================================================
if __name__ == "__main__":
    """
    Start the Flask development server.
    - --notlan (default) allows external connections (for testing on network)
    - --port is the server port unless changed on the Terminal
    - threaded=True so open notification streams do not block other requests
    """
    arg = build_parser("Shutterbox - notification and messaging API").parse_args()
    setup_logging(arg.log_level)

    overrides = {"DATABASE": arg.database} if arg.database else None
    app = create_app(overrides)
    if arg.notlan:
        # For network access (development/testing):
        app.run(host="0.0.0.0", port=arg.port, debug=True, threaded=True)
    else:
        # For local development only:
        app.run(port=arg.port, debug=True, threaded=True)
