"""Daybook REST API — FastAPI-based HTTP and WebSocket server.

Usage:
    from daybook.api.server import create_app, run_http_server

    app = create_app()
    run_http_server(port=8000)
"""

from daybook.api.server import create_app, run_http_server

__all__ = ["create_app", "run_http_server"]
