# =============================================================================
# Shutterbox - SOCKET BROADCAST SERVER                                        =
# =============================================================================
# Always-on process keeping per-user socket rooms. Pushes notifications to
# every socket of a connected user and relays read markers between devices.
# =============================================================================
from shutterbox.Config import build_parser, setup_logging
from shutterbox.SocketServer import create_socket_app

if __name__ == "__main__":
    parser = build_parser("Shutterbox - socket broadcast server")
    parser.set_defaults(port=3001)
    arg = parser.parse_args()
    setup_logging(arg.log_level)

    app, socketio, _ = create_socket_app()
    host = "0.0.0.0" if arg.notlan else "127.0.0.1"
    socketio.run(app, host=host, port=arg.port, allow_unsafe_werkzeug=True)
