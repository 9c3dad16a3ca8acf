"""Entry point for the media ingestion server.

``python main.py`` loads ``config.json``/``.env``, builds the Flask app with
its upload services and serves it through Socket.IO so progress events reach
watching clients.
"""
import os

from app import create_app, socketio

if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", "5000"))
    debug = os.environ.get("FLASK_DEBUG", "").strip().lower() in ("1", "true", "yes", "on")
    socketio.run(app, host="0.0.0.0", port=port, debug=debug, allow_unsafe_werkzeug=True)
