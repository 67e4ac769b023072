# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Re-signing and forwarding of authenticated requests.

``build_outbound_request`` turns a verified inbound request into a request
for the upstream endpoint with a fresh SigV4 signature over every outbound
header.  ``forward`` sends it with ``httpx`` and hands back the streamed
upstream response untouched.

Nothing the client signed is reused: the timestamp is the current time and
the signed header set is whatever is actually sent, so the upstream sees a
self-consistent request even though the client signed a different host.
"""

import hashlib
import logging
from datetime import UTC, datetime

import httpx

from s3relay.aws_signing import (
    STREAMING_VALUES,
    format_amz_date,
    resign_chunked_body,
    sign_request,
)
from s3relay.config import ProxyConfig
from s3relay.headers import Header, filter_headers, get_header, remove_headers
from s3relay.types import IncomingRequest, OutboundRequest


logger = logging.getLogger(__name__)

#: Inbound headers that belong to the client's own signature and are
#: replaced on the outbound request.
_REPLACED_HEADERS = (
    "authorization",
    "host",
    "x-amz-date",
    "x-amz-security-token",
)


def build_outbound_request(
    request: IncomingRequest,
    config: ProxyConfig,
    *,
    now: datetime | None = None,
) -> OutboundRequest:
    """Rewrite a verified request for the upstream and sign it.

    Args:
        request: The verified inbound request.
        config: Relay configuration (upstream host and identity).
        now: Signing time.  Defaults to the current UTC time; pass a fixed
            value for a reproducible signature.

    Returns:
        OutboundRequest with Authorization, x-amz-date,
        x-amz-content-sha256 and Host set for the upstream.
    """
    identity = config.identity
    if now is None:
        now = datetime.now(UTC)
    timestamp = format_amz_date(now)

    content_sha256 = get_header(request.headers, "x-amz-content-sha256")
    if content_sha256:
        content_sha256 = content_sha256.strip()
    else:
        content_sha256 = hashlib.sha256(request.body).hexdigest()

    headers: list[Header] = [("Host", config.endpoint)]
    headers.extend(
        remove_headers(
            filter_headers(
                request.headers,
                deny=config.deny_headers,
                prefixes=config.deny_prefixes,
            ),
            (*_REPLACED_HEADERS, "x-amz-content-sha256"),
        )
    )
    if request.body and get_header(headers, "content-length") is None:
        headers.append(("Content-Length", str(len(request.body))))
    headers.append(("x-amz-date", timestamp))
    headers.append(("x-amz-content-sha256", content_sha256))

    signed_headers = ";".join(sorted({name.lower() for name, _ in headers}))

    result = sign_request(
        method=request.method,
        path=request.path,
        query=request.query,
        headers=headers,
        signed_headers=signed_headers,
        content_sha256=content_sha256,
        timestamp=timestamp,
        secret_key=identity.secret_access_key,
        region=identity.region,
        service=identity.service,
    )
    headers.append(
        ("Authorization", result.auth_header(identity.access_key_id))
    )

    body = request.body
    if content_sha256 in STREAMING_VALUES:
        body = resign_chunked_body(
            body,
            signing_key=result.signing_key,
            seed_signature=result.signature,
            timestamp=timestamp,
            scope=result.scope,
            content_sha256=content_sha256,
        )

    url = config.upstream_base_url + (request.path or "/")
    if request.query:
        url += "?" + request.query

    logger.debug("Outbound canonical request:\n%s", result.canonical_request)

    return OutboundRequest(
        method=request.method,
        url=url,
        headers=tuple(headers),
        body=body,
        signed_headers=signed_headers,
        canonical_request=result.canonical_request,
    )


def make_client(
    config: ProxyConfig, transport: httpx.BaseTransport | None = None
) -> httpx.Client:
    """Create the shared upstream client.

    Redirects are not followed and the client adds none of its default
    headers (Accept, Accept-Encoding, Connection, User-Agent), so the
    upstream receives exactly the headers ``build_outbound_request``
    signed and the caller sees exactly what the upstream returned.
    """
    client = httpx.Client(
        timeout=config.timeout,
        follow_redirects=False,
        transport=transport,
    )
    client.headers.clear()
    return client


def forward(
    request: IncomingRequest,
    config: ProxyConfig,
    client: httpx.Client,
    *,
    now: datetime | None = None,
) -> httpx.Response:
    """Re-sign a verified request and send it upstream.

    Failures are not retried or translated: a non-2xx status is returned
    like any other response, and transport errors propagate.

    Args:
        request: The verified inbound request.
        config: Relay configuration.
        client: Upstream HTTP client.
        now: Signing time override.

    Returns:
        The upstream response, opened in streaming mode.  The caller must
        close it.

    Raises:
        httpx.TransportError: If the upstream cannot be reached.
    """
    outbound = build_outbound_request(request, config, now=now)
    upstream_request = client.build_request(
        outbound.method,
        outbound.url,
        headers=list(outbound.headers),
        content=outbound.body,
    )
    return client.send(upstream_request, stream=True)
