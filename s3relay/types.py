# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Type definitions for the relay.

Provides the core types passed between the transport and the signing
stages: IncomingRequest, OutboundRequest, VerifyStatus and Verification.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from s3relay.headers import Header, get_header


@dataclass(frozen=True)
class IncomingRequest:
    """A request as received from the client.

    Owned by the transport layer.  The signing stages only read it; any
    rewrite happens on a derived OutboundRequest.

    Attributes:
        method: HTTP method.
        path: Request path exactly as on the request line (percent-encoded).
        query: Raw query string without the leading ``?``.
        headers: Ordered (name, value) pairs.
        body: Request body, read once at the transport boundary.
    """

    method: str
    path: str
    query: str = ""
    headers: tuple[Header, ...] = ()
    body: bytes = b""

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        return get_header(self.headers, name)


@dataclass(frozen=True)
class OutboundRequest:
    """A signed request ready to be sent upstream.

    Attributes:
        method: HTTP method (unchanged from the inbound request).
        url: Absolute upstream URL with the original path and query.
        headers: Ordered (name, value) pairs including Authorization.
        body: Body to send (re-signed when aws-chunked).
        signed_headers: Semicolon-separated names covered by the signature.
        canonical_request: Canonical request the signature was computed over.
    """

    method: str
    url: str
    headers: tuple[Header, ...]
    body: bytes
    signed_headers: str
    canonical_request: str

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        return get_header(self.headers, name)


class VerifyStatus(Enum):
    """Classifies the outcome of signature verification.

    The server matches on VerifyStatus to pick the response.
    """

    OK = "ok"
    SIGNATURE_MISSING = "signature_missing"
    SIGNATURE_INVALID = "signature_invalid"


@dataclass(frozen=True)
class Verification:
    """Result of verifying an inbound request.

    Always returned; verification never raises for bad input.

    Attributes:
        status: Classification of the result.
        reason: Short explanation for logs.  Never sent to the client.
    """

    status: VerifyStatus
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status is VerifyStatus.OK
