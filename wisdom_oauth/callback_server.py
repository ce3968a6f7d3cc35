"""Loopback HTTP server that forwards OAuth2 redirects to a URI handler.

Used when there is no host application to receive the redirect URI
(for example the command line). Every request to ``/callback`` is
handed to ``UriEventHandler.handle_uri`` as a full URI; the provider
decides whether it carries a code.
"""

# pylint: disable=logging-too-many-args

# pylint: disable=C0103

from __future__ import annotations

import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlparse


if TYPE_CHECKING:
    from .events import UriEventHandler


logger = logging.getLogger("wisdom_oauth.auth")

CALLBACK_PATH = "/callback"

_PAGE_HTML = """<!DOCTYPE html>
<html>
<head><title>{title}</title>
<style>
  body {{ font-family: sans-serif; display: flex; align-items: center;
         justify-content: center; height: 100vh; margin: 0; }}
  h1 {{ font-size: 1.4rem; }}
</style></head>
<body><div>
  <h1>{title}</h1>
  <p>{detail}</p>
</div></body></html>"""


def _render(title: str, detail: str) -> str:
    return _PAGE_HTML.format(
        title=html.escape(title, quote=True),
        detail=html.escape(detail, quote=True),
    )


class RedirectCallbackServer:
    """Localhost server delivering redirect URIs into a ``UriEventHandler``.

    Parameters
    ----------
    uri_handler : UriEventHandler
        Event source that receives each redirect URI.
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    """

    def __init__(self, uri_handler: UriEventHandler, host: str = "127.0.0.1", port: int = 0) -> None:
        """Initialize the callback server."""
        self._uri_handler = uri_handler
        self._host = host
        self._port = port
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._actual_port = 0

    @property
    def redirect_uri(self) -> str:
        """The redirect URI to register with the authorize request."""
        return f"http://{self._host}:{self._actual_port}{CALLBACK_PATH}"

    @property
    def is_running(self) -> bool:
        """Whether the server thread is serving requests."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> str:
        """Start serving on a daemon thread.

        Returns
        -------
        str
            The redirect URI (e.g. ``http://127.0.0.1:54321/callback``).
        """
        server_ref = self

        class _RedirectHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path != CALLBACK_PATH:
                    self.send_error(404)
                    return

                params = parse_qs(parsed.query)
                error = params.get("error_description", params.get("error", [None]))[0]
                if error:
                    self._send_html(_render("Authentication Failed", str(error)))
                elif params.get("code", [None])[0]:
                    self._send_html(_render("Authentication Complete", "You can close this window."))
                else:
                    self._send_html(_render("Authentication Failed", "No code was received."))

                server_ref._uri_handler.handle_uri(f"http://{self.headers.get('Host', server_ref._host)}{self.path}")

            def _send_html(self, content: str) -> None:
                encoded = content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header("Content-Security-Policy", "default-src 'none'; style-src 'unsafe-inline'")
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                if args:
                    logger.debug("Redirect server: %s", args[0] % args[1:])

        self._server = HTTPServer((self._host, self._port), _RedirectHandler)
        self._actual_port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

        logger.debug("Redirect server started on %s", self.redirect_uri)
        return self.redirect_uri

    def stop(self) -> None:
        """Shut the server down and join its thread."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None

    def __enter__(self) -> RedirectCallbackServer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
