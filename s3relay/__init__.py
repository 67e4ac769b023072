# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""S3 relay with SigV4 verification and re-signing.

Accepts S3 requests signed with one shared credential, checks the
signature, and forwards accepted requests to an S3-compatible endpoint
with a fresh signature for that endpoint:
- Inbound verification (verify, Verification)
- Header filtering (filter_headers)
- Re-signing and forwarding (build_outbound_request, forward)
- Configuration loading (ProxyConfig)
- WSGI front end (ProxyServer)
"""

from s3relay.config import (
    ConfigError,
    ProxyConfig,
    SigningIdentity,
)
from s3relay.forwarder import (
    build_outbound_request,
    forward,
    make_client,
)
from s3relay.headers import filter_headers
from s3relay.server import ProxyServer
from s3relay.types import (
    IncomingRequest,
    OutboundRequest,
    Verification,
    VerifyStatus,
)
from s3relay.verifier import verify


__all__ = [
    # config
    "ConfigError",
    "ProxyConfig",
    "SigningIdentity",
    # forwarder
    "build_outbound_request",
    "forward",
    "make_client",
    # headers
    "filter_headers",
    # server
    "ProxyServer",
    # types
    "IncomingRequest",
    "OutboundRequest",
    "Verification",
    "VerifyStatus",
    # verifier
    "verify",
]
