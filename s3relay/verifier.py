# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Inbound SigV4 signature verification.

Recomputes the signature a client holding the configured credential would
have produced for the request, and compares it with the one the client
sent.  The client-supplied signature is used for nothing but that final
comparison.

Verification is read-only: the request body is an immutable buffer that
the forward stage reuses.
"""

import hmac
import logging
from datetime import datetime

from s3relay.aws_signing import (
    STREAMING_VALUES,
    check_clock_skew,
    is_amz_date,
    parse_auth_header,
    payload_hash,
    sign_request,
    verify_chunked_body,
)
from s3relay.config import SigningIdentity
from s3relay.types import IncomingRequest, Verification, VerifyStatus


logger = logging.getLogger(__name__)


def _invalid(reason: str) -> Verification:
    return Verification(VerifyStatus.SIGNATURE_INVALID, reason)


def verify(
    request: IncomingRequest,
    identity: SigningIdentity,
    *,
    now: datetime | None = None,
) -> Verification:
    """Authenticate a request against the configured identity.

    The signing key is derived from the request's ``x-amz-date`` and the
    identity's region and service.  Only the headers the client listed in
    ``SignedHeaders`` enter the canonical request.  For aws-chunked
    payloads every chunk signature in the body is checked against the
    chain seeded by the Authorization signature.  Freshness of
    ``x-amz-date`` is not enforced; a large skew is only logged.

    Args:
        request: The inbound request.
        identity: The single credential clients must sign with.
        now: Reference time for the skew warning (defaults to now).

    Returns:
        Verification with status OK, SIGNATURE_MISSING or
        SIGNATURE_INVALID.
    """
    auth_value = request.header("Authorization")
    if not auth_value:
        return Verification(
            VerifyStatus.SIGNATURE_MISSING, "no Authorization header"
        )

    parsed = parse_auth_header(auth_value)
    if parsed is None:
        return _invalid("malformed Authorization header")

    if parsed.key_id != identity.access_key_id:
        return _invalid(f"unknown access key id {parsed.key_id}")

    timestamp = (request.header("x-amz-date") or "").strip()
    if not is_amz_date(timestamp):
        return _invalid("missing or malformed x-amz-date")

    is_skewed, drift_minutes = check_clock_skew(timestamp, now)
    if is_skewed:
        logger.warning(
            "Request clock skew: x-amz-date=%s (drift=%dm), accepting",
            timestamp,
            drift_minutes,
        )

    content_sha256 = payload_hash(
        request.header("x-amz-content-sha256"), request.body
    )
    try:
        expected = sign_request(
            method=request.method,
            path=request.path,
            query=request.query,
            headers=request.headers,
            signed_headers=parsed.signed_headers,
            content_sha256=content_sha256,
            timestamp=timestamp,
            secret_key=identity.secret_access_key,
            region=identity.region,
            service=identity.service,
        )
    except (ValueError, UnicodeError) as e:
        return _invalid(f"cannot canonicalize request: {e}")

    logger.debug("Expected canonical request:\n%s", expected.canonical_request)

    if not hmac.compare_digest(expected.signature, parsed.signature):
        return _invalid("signature mismatch")

    if content_sha256 in STREAMING_VALUES:
        chunk_error = verify_chunked_body(
            request.body,
            signing_key=expected.signing_key,
            seed_signature=expected.signature,
            timestamp=timestamp,
            scope=expected.scope,
            content_sha256=content_sha256,
        )
        if chunk_error:
            return _invalid(chunk_error)

    return Verification(VerifyStatus.OK)
