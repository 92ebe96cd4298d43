"""
Web UI package for BlueK9.

start_web_ui() runs the FastAPI app from web_ui.app with uvicorn on a
background thread, next to the scanners and the GPS source.
"""

import logging
import threading

import uvicorn

from settings import WEB_UI_HOST, WEB_UI_PORT

logger = logging.getLogger("bluek9.web")


def start_web_ui(engine, host: str = WEB_UI_HOST, port: int = WEB_UI_PORT) -> threading.Thread:
    """Start the web UI server in a background thread and return the thread."""
    from web_ui.app import create_app

    app = create_app(engine)

    def run_server():
        try:
            uvicorn.run(app, host=host, port=port, log_level="warning")
        except Exception:
            logger.exception("Web UI server stopped unexpectedly")

    thread = threading.Thread(target=run_server, daemon=True, name="web-ui-server")
    thread.start()
    logger.info("Web UI listening on http://%s:%d", host, port)
    return thread
