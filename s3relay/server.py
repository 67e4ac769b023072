# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""HTTP front end of the relay.

Provides a WSGI application that verifies every inbound request against
the configured credential and relays accepted ones to the upstream
endpoint.  Each request is handled independently; the only shared state
is the immutable config and the upstream HTTP client.

Run with::

    s3relay --config ~/.config/s3relay/s3relay.yaml
"""

import argparse
import dataclasses
import logging
import signal
import sys
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlsplit


if TYPE_CHECKING:
    from werkzeug.wrappers.response import StartResponse

import httpx
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from s3relay.config import ConfigError, ProxyConfig
from s3relay.forwarder import forward, make_client
from s3relay.logging import configure_logging, request_context
from s3relay.responses import denied_response, relay_response
from s3relay.types import IncomingRequest
from s3relay.verifier import verify


logger = logging.getLogger(__name__)


def _raw_target(request: Request) -> tuple[str, str]:
    """Return the request path and query as they appeared on the wire.

    The signature covers the encoded path, so the WSGI-decoded
    ``PATH_INFO`` is only a fallback for servers that do not expose the
    raw request target.
    """
    raw = request.environ.get("RAW_URI") or request.environ.get("REQUEST_URI")
    if raw:
        if not raw.startswith("/"):
            # Absolute-form target
            parts = urlsplit(raw)
            return parts.path or "/", parts.query
        path, _, query = raw.partition("?")
        return path, query
    path = quote(request.path, safe="/!$&'()*+,;=:@")
    return path, request.query_string.decode("latin-1")


def incoming_request(request: Request) -> IncomingRequest:
    """Snapshot a WSGI request, reading the body once.

    Raises:
        RequestEntityTooLarge: If the body exceeds the request's
            ``max_content_length``.
    """
    path, query = _raw_target(request)
    return IncomingRequest(
        method=request.method,
        path=path,
        query=query,
        headers=tuple(request.headers.items()),
        body=request.get_data(cache=True),
    )


class ProxyServer:
    """WSGI relay server.

    Runs in a background thread; ``start`` returns once the socket is
    bound.
    """

    def __init__(
        self,
        config: ProxyConfig,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize relay server.

        Args:
            config: Relay configuration.
            client: Upstream HTTP client.  Created from config if omitted.
        """
        self.config = config
        self.host = config.host
        self.port = config.port
        self.client = client or make_client(config)
        self._server: Any = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the relay server in a background thread."""
        self._server = make_server(
            self.host,
            self.port,
            self._wsgi_app,
            threaded=True,
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="ProxyServer",
        )
        self._thread.start()
        logger.info(
            "Relay listening at http://%s:%d/ -> %s",
            self.host,
            self.port,
            self.config.upstream_base_url,
        )

    def stop(self) -> None:
        """Stop the relay server and close the upstream client."""
        if self._server:
            self._server.shutdown()
            self._server = None
            logger.info("Relay server stopped")
        self.client.close()

    def _wsgi_app(
        self,
        environ: dict[str, Any],
        start_response: "StartResponse",
    ) -> Iterable[bytes]:
        """WSGI application entry point.

        Args:
            environ: WSGI environ dict.
            start_response: WSGI start_response callable.

        Returns:
            Response body iterable.
        """
        request = Request(environ)
        request.max_content_length = self.config.max_body_size
        with request_context():
            response = self._dispatch(request)
        return response(environ, start_response)

    def _dispatch(self, request: Request) -> Response:
        """Verify a request and relay it upstream.

        Args:
            request: Incoming request.

        Returns:
            Response to send.
        """
        try:
            incoming = incoming_request(request)
            verification = verify(incoming, self.config.identity)
            if not verification.ok:
                logger.warning(
                    "Rejected %s %s: %s",
                    incoming.method,
                    incoming.path,
                    verification.reason,
                )
                return denied_response(verification.status)

            upstream = forward(incoming, self.config, self.client)
            logger.info(
                "%s %s -> %d",
                incoming.method,
                incoming.path,
                upstream.status_code,
            )
            return relay_response(upstream)
        except RequestEntityTooLarge:
            logger.warning(
                "Rejected %s %s: body larger than %d bytes",
                request.method,
                request.path,
                self.config.max_body_size,
            )
            return Response(
                "Request Entity Too Large", status=413, mimetype="text/plain"
            )
        except httpx.TransportError as e:
            logger.error("Upstream request failed for %s: %s", request.path, e)
            return Response(
                "Bad Gateway", status=502, mimetype="text/plain"
            )
        except Exception:
            logger.exception("Error handling request %s", request.path)
            return Response(
                "Internal Server Error", status=500, mimetype="text/plain"
            )


def main() -> int:
    """Main entry point.

    Returns:
        Exit code (0=success, 1=config error, 2=startup error).
    """
    parser = argparse.ArgumentParser(
        description="S3 SigV4 verifying relay",
        epilog=(
            "Accepts requests signed with the configured credential and "
            "re-signs them for the upstream endpoint."
        ),
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML config file (default: XDG config directory)",
    )
    parser.add_argument("--host", default=None, help="Address to listen on")
    parser.add_argument(
        "--port", type=int, default=None, help="Port to listen on"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging (includes canonical requests)",
    )
    args = parser.parse_args()

    configure_logging(level=logging.DEBUG if args.debug else logging.INFO)

    logger.info("S3 relay starting...")

    try:
        config = ProxyConfig.load(args.config)
        overrides: dict[str, Any] = {}
        if args.host is not None:
            overrides["host"] = args.host
        if args.port is not None:
            overrides["port"] = args.port
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return 1

    server = ProxyServer(config)
    try:
        server.start()
    except OSError as e:
        logger.critical("Failed to start relay: %s", e)
        server.client.close()
        return 2

    stop_event = threading.Event()

    def shutdown_handler(signum: int, frame: object) -> None:
        """Handle shutdown signals."""
        logger.info("Received signal %d, initiating shutdown...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    try:
        stop_event.wait()
        return 0
    finally:
        server.stop()


if __name__ == "__main__":
    sys.exit(main())
