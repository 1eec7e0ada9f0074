"""HTTP server that routes page requests through the cache controller.

The page (or any HTTP client) sends its requests here, either as plain
origin-relative requests or in proxy form with an absolute URL. Each one is
answered by CacheController.handle_request(). Control events that a browser
would deliver to a service worker are exposed under /_sw/:

- GET  /_sw/health             controller state, version and namespaces
- POST /_sw/message            {"type": "SKIP_WAITING"} or {"type": "CACHE_WEATHER", "location": ...}
- POST /_sw/sync               {"tag": "weather-sync"}
- POST /_sw/push               raw push payload
- POST /_sw/notificationclick  {"action": "explore"}
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from .config import ServerConfig
from .controller import CacheController
from .models import Request, Response
from .network import HOP_BY_HOP_HEADERS, mask_url
from .sync import WEATHER_SYNC_TAG

logger = logging.getLogger(__name__)

CONTROL_PREFIX = "/_sw/"

# Largest request body accepted from the page (1MB).
MAX_BODY_SIZE = 1024 * 1024


class ServerError(Exception):
    """Raised when the server cannot be started."""
    pass


class RequestBodyError(Exception):
    """Raised when a request body cannot be read."""
    pass


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


class CacheRequestHandler(BaseHTTPRequestHandler):
    """Turns HTTP requests into controller events."""

    # Class-level reference set by factory
    controller: Optional[CacheController] = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("HTTP %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _send_cached_response(self, response: Response, include_body: bool = True) -> None:
        """Write a controller Response back to the client."""
        self.send_response(response.status, response.status_text or None)
        for name, value in response.headers.items():
            # send_response() already wrote Date and Server.
            if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in ("date", "server"):
                self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if include_body:
            self.wfile.write(response.body)

    def _read_body(self) -> Optional[bytes]:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            raise RequestBodyError("Invalid Content-Length header")
        if length <= 0:
            return None
        if length > MAX_BODY_SIZE:
            raise RequestBodyError(f"Request body too large ({length} bytes)")
        return self.rfile.read(length)

    def _read_json(self) -> Any:
        body = self._read_body()
        if not body:
            return {}
        return json.loads(body)

    def _target_url(self) -> Optional[str]:
        """Absolute URL of the proxied request, or None if its origin is not allowed."""
        assert self.controller is not None
        config = self.controller.config

        if self.path.startswith(("http://", "https://")):
            url = self.path
        else:
            url = config.app.resolve(self.path if self.path.startswith("/") else "/" + self.path)

        allowed = {config.app.normalized_origin, config.upstream.origin}
        if _origin_of(url) not in allowed:
            return None
        return url

    def _dispatch(self, include_body: bool = True) -> None:
        if self.controller is None:
            self._send_error_json(503, "Cache controller not available")
            return

        try:
            if self.path.startswith(CONTROL_PREFIX):
                self._handle_control()
            else:
                self._handle_proxy(include_body)
        except RequestBodyError as e:
            self._send_error_json(400, str(e))
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch()

    def do_HEAD(self) -> None:
        """Handle HEAD requests."""
        self._dispatch(include_body=False)

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch()

    def do_PUT(self) -> None:
        """Handle PUT requests."""
        self._dispatch()

    def do_PATCH(self) -> None:
        """Handle PATCH requests."""
        self._dispatch()

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._dispatch()

    def do_OPTIONS(self) -> None:
        """Handle OPTIONS requests."""
        self._dispatch()

    def _handle_proxy(self, include_body: bool) -> None:
        """Answer an app or upstream request through the controller."""
        assert self.controller is not None

        url = self._target_url()
        if url is None:
            logger.warning("Refusing request for foreign origin: %s", mask_url(self.path))
            self._send_error_json(403, "Origin not allowed")
            return

        request = Request(
            url=url,
            method=self.command,
            destination=self.headers.get("Sec-Fetch-Dest", ""),
            headers=dict(self.headers.items()),
            body=self._read_body(),
        )
        response = self.controller.handle_request(request)
        self._send_cached_response(response, include_body)

    def _handle_control(self) -> None:
        """Handle /_sw/ control endpoints."""
        assert self.controller is not None
        route = self.path[len(CONTROL_PREFIX):].split("?", 1)[0]

        if route == "health":
            if self.command != "GET":
                self._send_error_json(405, "Method not allowed")
                return
            self._send_json(200, {"status": "ok", **self.controller.status()})
            return

        handlers = {
            "message": self._handle_message,
            "sync": self._handle_sync,
            "push": self._handle_push,
            "notificationclick": self._handle_notification_click,
        }
        handler = handlers.get(route)
        if handler is None:
            self._send_error_json(404, "Not found")
            return
        if self.command != "POST":
            self._send_error_json(405, "Method not allowed")
            return
        handler()

    def _handle_message(self) -> None:
        """Handle POST /_sw/message."""
        assert self.controller is not None
        try:
            message = self._read_json()
        except json.JSONDecodeError:
            self._send_error_json(400, "Invalid JSON body")
            return
        if not isinstance(message, dict) or "type" not in message:
            self._send_error_json(400, "Message must be an object with a 'type' field")
            return

        self.controller.on_message(message)
        self._send_json(200, {"success": True, "state": self.controller.lifecycle.state.value})

    def _handle_sync(self) -> None:
        """Handle POST /_sw/sync."""
        assert self.controller is not None
        try:
            data = self._read_json()
        except json.JSONDecodeError:
            self._send_error_json(400, "Invalid JSON body")
            return
        tag = data.get("tag", WEATHER_SYNC_TAG) if isinstance(data, dict) else WEATHER_SYNC_TAG

        report = self.controller.on_sync(str(tag))
        if report is None:
            self._send_json(200, {"success": True, "ignored": True})
            return

        self._send_json(
            200,
            {
                "success": not report.failed,
                "refreshed": [mask_url(url) for url in report.refreshed],
                "failed": {mask_url(url): reason for url, reason in report.failed.items()},
            },
        )

    def _handle_push(self) -> None:
        """Handle POST /_sw/push."""
        assert self.controller is not None
        notification = self.controller.on_push(self._read_body())
        self._send_json(200, {"success": True, "notification": notification.to_dict()})

    def _handle_notification_click(self) -> None:
        """Handle POST /_sw/notificationclick."""
        assert self.controller is not None
        try:
            data = self._read_json()
        except json.JSONDecodeError:
            self._send_error_json(400, "Invalid JSON body")
            return
        action = data.get("action") if isinstance(data, dict) else None

        opened = self.controller.on_notification_click(action)
        self._send_json(200, {"success": True, "opened": opened})


def _create_handler_class(controller: CacheController) -> type:
    """Create a handler class with the controller bound."""

    class BoundCacheRequestHandler(CacheRequestHandler):
        pass

    BoundCacheRequestHandler.controller = controller
    return BoundCacheRequestHandler


class CacheServer:
    """Threaded HTTP server in front of a CacheController."""

    def __init__(self, config: ServerConfig, controller: CacheController) -> None:
        """Initialize the server.

        Args:
            config: Server configuration.
            controller: Controller answering every request.
        """
        self.config = config
        self.controller = controller
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    @property
    def port(self) -> int:
        """Bound port (differs from the configured one when port 0 was requested)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.port

    def start(self) -> None:
        """Start the server in a background thread.

        Raises:
            ServerError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Cache server is already running")
            return

        try:
            handler_class = _create_handler_class(self.controller)
            self._server = ThreadingHTTPServer((self.config.host, self.config.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="cache-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Cache server listening on port %d", self.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ServerError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or meteoracache is already running."
                )
            elif e.errno == 13:  # EACCES
                raise ServerError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ServerError(f"Failed to start cache server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping cache server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("Cache server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
