# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Log output of the relay.

Each request handled by the server runs inside ``request_context``, and
every line logged while it is handled carries the same short request id::

    2026-01-01 12:00:00,123 WARNING [3f9c2a71] s3relay.server: Rejected ...

so the verdict, the upstream status and any traceback of one request can
be grepped together.  Lines logged outside a request show ``-``.

The secret access key is removed from the formatted line, which covers
exception messages and tracebacks as well as log arguments.
"""

import contextvars
import logging
import re
import uuid
from collections.abc import Iterator
from contextlib import contextmanager


DEFAULT_FORMAT = (
    "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
)

REDACTED = "[REDACTED]"

#: Libraries that log every request or connection at INFO/DEBUG.
_QUIET_LOGGERS = ("httpx", "httpcore", "werkzeug")

_request_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "s3relay_request_id", default="-"
)

_secrets: set[str] = set()
_secret_re: re.Pattern[str] | None = None


def register_secret(secret: str) -> None:
    """Redact secret from every line formatted from now on."""
    global _secret_re
    if not secret:
        return
    _secrets.add(secret)
    # Longest first so a secret containing another is removed whole
    _secret_re = re.compile(
        "|".join(
            re.escape(s) for s in sorted(_secrets, key=len, reverse=True)
        )
    )


def clear_secrets() -> None:
    global _secret_re
    _secrets.clear()
    _secret_re = None


def redact(text: str) -> str:
    """Replace registered secrets in text."""
    if _secret_re is None:
        return text
    return _secret_re.sub(REDACTED, text)


def current_request_id() -> str:
    return _request_id.get()


@contextmanager
def request_context(request_id: str | None = None) -> Iterator[str]:
    """Tag log lines emitted in this block with a request id.

    Args:
        request_id: Id to use.  A random 8-character hex id by default.

    Yields:
        The request id in effect.
    """
    if request_id is None:
        request_id = uuid.uuid4().hex[:8]
    token = _request_id.set(request_id)
    try:
        yield request_id
    finally:
        _request_id.reset(token)


class RequestIdFilter(logging.Filter):
    """Stamp records with the id of the request being handled."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        return True


class RedactingFormatter(logging.Formatter):
    """Formatter whose output never contains a registered secret."""

    def format(self, record: logging.LogRecord) -> str:
        return redact(super().format(record))


def configure_logging(
    level: int = logging.INFO,
    format_string: str = DEFAULT_FORMAT,
) -> logging.Handler:
    """Send relay logs to stderr.

    Replaces any handlers on the root logger with a single stream handler
    that stamps request ids and redacts secrets.  HTTP library loggers
    stay at WARNING unless level is DEBUG, since the server already logs
    one line per request.

    Args:
        level: Root logger level.
        format_string: Format for each line.  May use ``%(request_id)s``.

    Returns:
        The installed handler.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingFormatter(format_string))
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    return handler
