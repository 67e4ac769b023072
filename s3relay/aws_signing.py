# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""AWS SigV4 primitives shared by the verifier and the re-signer.

Provides:

- Authorization header parsing
- Canonical request construction (S3 and generic services)
- Signing key derivation and HMAC-SHA256 signatures
- aws-chunked body re-signing (streaming payloads)
- Clock skew detection

No boto3/botocore dependency, only the standard library.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import urllib.parse
from collections.abc import Sequence
from datetime import UTC, datetime


ALGORITHM = "AWS4-HMAC-SHA256"

#: Timestamp format of ``x-amz-date`` (ISO8601 basic format, UTC).
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"

SHA256_EMPTY = hashlib.sha256(b"").hexdigest()

_AWS_UNRESERVED = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~"
)

# Authorization header regex
_AUTH_HEADER_RE = re.compile(
    r"(?P<algorithm>AWS4-HMAC-SHA256)\s+"
    r"Credential=(?P<key_id>[^/,\s]+)/(?P<scope>[^,\s]+),\s*"
    r"SignedHeaders=(?P<signed_headers>[^,\s]+),\s*"
    r"Signature=(?P<signature>[0-9a-f]+)"
)

_AMZ_DATE_RE = re.compile(r"\d{8}T\d{6}Z")

# Chunked body line regex: {hex};chunk-signature={sig}\r\n
_CHUNK_HEADER_RE = re.compile(
    rb"(?P<hex_size>[0-9a-fA-F]+);chunk-signature=(?P<sig>[0-9a-f]+)\r\n"
)

# Trailer signature regex
_TRAILER_SIG_RE = re.compile(rb"x-amz-trailer-signature:(?P<sig>[0-9a-f]+)")

# Streaming content-sha256 values that indicate chunked signing
STREAMING_PAYLOAD_SIGV4 = "STREAMING-AWS4-HMAC-SHA256-PAYLOAD"
STREAMING_PAYLOAD_SIGV4_TRAILER = "STREAMING-AWS4-HMAC-SHA256-PAYLOAD-TRAILER"

STREAMING_VALUES = frozenset(
    {
        STREAMING_PAYLOAD_SIGV4,
        STREAMING_PAYLOAD_SIGV4_TRAILER,
    }
)


# ---------------------------------------------------------------------------
# Parsed authorization header
# ---------------------------------------------------------------------------


class ParsedAuth:
    """Parsed AWS Authorization header."""

    __slots__ = (
        "algorithm",
        "key_id",
        "scope",
        "signed_headers",
        "signature",
    )

    def __init__(
        self,
        algorithm: str,
        key_id: str,
        scope: str,
        signed_headers: str,
        signature: str,
    ) -> None:
        self.algorithm = algorithm
        self.key_id = key_id
        self.scope = scope
        self.signed_headers = signed_headers
        self.signature = signature

    @property
    def scope_parts(self) -> list[str]:
        """Split scope into date/region/service/aws4_request."""
        return self.scope.split("/")

    @property
    def date(self) -> str:
        """Date from credential scope (YYYYMMDD)."""
        return self.scope_parts[0]

    @property
    def region(self) -> str:
        return self.scope_parts[1]

    @property
    def service(self) -> str:
        return self.scope_parts[2]

    @property
    def signed_header_names(self) -> list[str]:
        """Signed header names in the order the client declared them."""
        return self.signed_headers.split(";")


def parse_auth_header(auth_value: str) -> ParsedAuth | None:
    """Parse a SigV4 Authorization header.

    The credential scope must have exactly four components ending in
    ``aws4_request``.

    Args:
        auth_value: Full Authorization header value.

    Returns:
        ParsedAuth if the value matches the SigV4 grammar, None otherwise.
    """
    m = _AUTH_HEADER_RE.fullmatch(auth_value.strip())
    if not m:
        return None
    scope_parts = m.group("scope").split("/")
    if len(scope_parts) != 4 or scope_parts[3] != "aws4_request":
        return None
    if not all(scope_parts):
        return None
    return ParsedAuth(
        algorithm=m.group("algorithm"),
        key_id=m.group("key_id"),
        scope=m.group("scope"),
        signed_headers=m.group("signed_headers"),
        signature=m.group("signature"),
    )


def format_auth_header(
    key_id: str, scope: str, signed_headers: str, signature: str
) -> str:
    """Assemble an Authorization header value."""
    return (
        f"{ALGORITHM} "
        f"Credential={key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, "
        f"Signature={signature}"
    )


def is_amz_date(value: str) -> bool:
    """True if value looks like an ``x-amz-date`` timestamp."""
    return _AMZ_DATE_RE.fullmatch(value) is not None


def format_amz_date(moment: datetime) -> str:
    """Format a datetime as an ``x-amz-date`` timestamp (UTC)."""
    return moment.astimezone(UTC).strftime(AMZ_DATE_FORMAT)


def credential_scope(date: str, region: str, service: str) -> str:
    """Build the credential scope string."""
    return f"{date}/{region}/{service}/aws4_request"


# ---------------------------------------------------------------------------
# URI encoding (AWS-specific RFC 3986 subset)
# ---------------------------------------------------------------------------


def _uri_encode(value: str, *, encode_slash: bool = True) -> str:
    """URI-encode a value using AWS's specific rules.

    - Unreserved characters are not encoded: A-Z, a-z, 0-9, -, _, ., ~
    - All other characters are percent-encoded as %XX (uppercase hex) over
      their UTF-8 bytes
    - Forward slashes (/) are optionally preserved

    Args:
        value: String to encode.
        encode_slash: If True, encode '/'; if False, preserve '/'.

    Returns:
        URI-encoded string.
    """
    result: list[str] = []
    for ch in value:
        if ch in _AWS_UNRESERVED:
            result.append(ch)
        elif ch == "/" and not encode_slash:
            result.append("/")
        else:
            result.extend(f"%{b:02X}" for b in ch.encode("utf-8"))
    return "".join(result)


# ---------------------------------------------------------------------------
# Canonical request construction
# ---------------------------------------------------------------------------


def canonical_uri(path: str, *, is_s3: bool = False) -> str:
    """Build canonical URI from request path.

    The path arrives percent-encoded, exactly as it appeared on the
    request line.

    SigV4 has a per-service ``doubleURIEncode`` setting:

    * **S3** (``is_s3=True``): single-encode only.  Decode any existing
      percent-encoding first, then URI-encode once.  ``%3A`` → ``%3A``.
    * **All other services** (``is_s3=False``, default): normalize the
      path, then double-encode.  ``%3A`` → ``%253A``.

    Args:
        path: Request path, possibly already percent-encoded.
        is_s3: If True, use S3 canonicalization (single-encode, skip
            path normalization).

    Returns:
        URI-encoded canonical path.
    """
    if not path:
        return "/"

    # Strip query string if present
    path = path.split("?")[0]

    if is_s3:
        # S3 also preserves double slashes and . / .. segments.
        path = urllib.parse.unquote(path)
        return _uri_encode(path, encode_slash=False)

    decoded = urllib.parse.unquote(path)
    parts = decoded.split("/")
    normalized: list[str] = []
    for part in parts:
        if part == "..":
            if normalized:
                normalized.pop()
        elif part != "." and part != "":
            normalized.append(part)
    normalized_path = "/" + "/".join(normalized)
    if decoded.endswith("/") and normalized:
        normalized_path += "/"

    single = _uri_encode(normalized_path, encode_slash=False)
    return _uri_encode(single, encode_slash=False)


def canonical_query_string(query: str) -> str:
    """Build canonical query string.

    Args:
        query: Raw query string (without leading ?).

    Returns:
        Canonical query string (sorted, encoded).
    """
    if not query:
        return ""

    params = urllib.parse.parse_qsl(query, keep_blank_values=True)

    # URI-encode names and values, sort by encoded name then value
    encoded = [(_uri_encode(k), _uri_encode(v)) for k, v in params]
    encoded.sort()

    return "&".join(f"{k}={v}" for k, v in encoded)


def canonical_headers_string(
    headers: Sequence[tuple[str, str]], signed_headers_list: list[str]
) -> str:
    """Build canonical headers string.

    Repeated headers are joined with a comma in their original order.
    A signed name with no matching header yields an empty value.

    Args:
        headers: Request headers as ordered (name, value) pairs.
        signed_headers_list: List of signed header names (lowercase).

    Returns:
        Canonical headers string (each line: "name:value" + newline).
    """
    lower_headers: dict[str, list[str]] = {}
    for name, value in headers:
        lower_headers.setdefault(name.lower(), []).append(value)

    lines: list[str] = []
    for name in sorted(signed_headers_list):
        values = lower_headers.get(name, [])
        # Trim leading/trailing whitespace, collapse sequential spaces
        trimmed = ",".join(" ".join(value.split()) for value in values)
        lines.append(f"{name}:{trimmed}\n")

    return "".join(lines)


def build_canonical_request(
    method: str,
    path: str,
    query: str,
    headers: Sequence[tuple[str, str]],
    signed_headers: str,
    payload_hash: str,
    *,
    is_s3: bool = False,
) -> str:
    """Build the canonical request string.

    Args:
        method: HTTP method.
        path: Request path.
        query: Query string (without leading ?).
        headers: Request headers as ordered (name, value) pairs.
        signed_headers: Semicolon-separated signed header names.
        payload_hash: Payload hash (from x-amz-content-sha256 or computed).
        is_s3: If True, skip S3-specific path normalization.

    Returns:
        Canonical request string.
    """
    signed_list = [name.lower() for name in signed_headers.split(";")]

    return "\n".join(
        [
            method.upper(),
            canonical_uri(path, is_s3=is_s3),
            canonical_query_string(query),
            canonical_headers_string(headers, signed_list),
            signed_headers,
            payload_hash,
        ]
    )


def payload_hash(content_sha256: str | None, body: bytes) -> str:
    """Choose the payload hash for a canonical request.

    Args:
        content_sha256: Value of the x-amz-content-sha256 header, if any.
        body: Buffered request body.

    Returns:
        The header value when present (hex digest, UNSIGNED-PAYLOAD or a
        streaming marker), otherwise the SHA-256 of the body.
    """
    if content_sha256:
        return content_sha256.strip()
    return hashlib.sha256(body).hexdigest()


# ---------------------------------------------------------------------------
# SigV4 signing
# ---------------------------------------------------------------------------


def _hmac_sha256(key: bytes, msg: str | bytes) -> bytes:
    """HMAC-SHA256 helper."""
    if isinstance(msg, str):
        msg = msg.encode("utf-8")
    return hmac.new(key, msg, hashlib.sha256).digest()


def derive_sigv4_signing_key(
    secret_key: str, date: str, region: str, service: str
) -> bytes:
    """Derive the SigV4 signing key.

    Args:
        secret_key: AWS secret access key.
        date: Date string (YYYYMMDD).
        region: AWS region.
        service: AWS service name.

    Returns:
        Derived signing key bytes.
    """
    k_date = _hmac_sha256(("AWS4" + secret_key).encode("utf-8"), date)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    k_signing = _hmac_sha256(k_service, "aws4_request")
    return k_signing


def sigv4_sign(signing_key: bytes, string_to_sign: str) -> str:
    """Compute SigV4 signature.

    Args:
        signing_key: Derived signing key.
        string_to_sign: The string to sign.

    Returns:
        Hex-encoded signature.
    """
    return hmac.new(
        signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def build_sigv4_string_to_sign(
    timestamp: str, scope: str, canonical_request: str
) -> str:
    """Build the SigV4 string to sign.

    Args:
        timestamp: ISO8601 timestamp (from x-amz-date).
        scope: Credential scope (date/region/service/aws4_request).
        canonical_request: The canonical request string.

    Returns:
        String to sign.
    """
    return "\n".join(
        [
            ALGORITHM,
            timestamp,
            scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )


class SigningResult:
    """Result of signing a canonical request."""

    __slots__ = (
        "signature",
        "scope",
        "signed_headers",
        "canonical_request",
        "string_to_sign",
        "signing_key",
    )

    def __init__(
        self,
        signature: str,
        scope: str,
        signed_headers: str,
        canonical_request: str,
        string_to_sign: str,
        signing_key: bytes,
    ) -> None:
        self.signature = signature
        self.scope = scope
        self.signed_headers = signed_headers
        self.canonical_request = canonical_request
        self.string_to_sign = string_to_sign
        self.signing_key = signing_key

    def auth_header(self, key_id: str) -> str:
        """Authorization header value for this signature."""
        return format_auth_header(
            key_id, self.scope, self.signed_headers, self.signature
        )


def sign_request(
    *,
    method: str,
    path: str,
    query: str,
    headers: Sequence[tuple[str, str]],
    signed_headers: str,
    content_sha256: str,
    timestamp: str,
    secret_key: str,
    region: str,
    service: str,
) -> SigningResult:
    """Compute the SigV4 signature of a request.

    Used both to recompute the signature a client should have sent and to
    sign the outgoing request.

    Args:
        method: HTTP method.
        path: Request path (percent-encoded, without query string).
        query: Query string (without leading ?).
        headers: Request headers as ordered (name, value) pairs.
        signed_headers: Semicolon-separated signed header names.
        content_sha256: Payload hash or streaming marker.
        timestamp: ``x-amz-date`` value; its first eight characters are the
            scope date.
        secret_key: AWS secret access key.
        region: Region of the credential scope.
        service: Service of the credential scope.

    Returns:
        SigningResult with the signature and the intermediate strings.
    """
    creq = build_canonical_request(
        method=method,
        path=path,
        query=query,
        headers=headers,
        signed_headers=signed_headers,
        payload_hash=content_sha256,
        is_s3=service == "s3",
    )
    date = timestamp[:8]
    scope = credential_scope(date, region, service)
    string_to_sign = build_sigv4_string_to_sign(timestamp, scope, creq)
    signing_key = derive_sigv4_signing_key(secret_key, date, region, service)
    return SigningResult(
        signature=sigv4_sign(signing_key, string_to_sign),
        scope=scope,
        signed_headers=signed_headers,
        canonical_request=creq,
        string_to_sign=string_to_sign,
        signing_key=signing_key,
    )


# ---------------------------------------------------------------------------
# Chunk re-signing
# ---------------------------------------------------------------------------


def sigv4_chunk_string_to_sign(
    timestamp: str,
    scope: str,
    previous_signature: str,
    chunk_data: bytes,
) -> str:
    """Build the string to sign for a SigV4 chunked payload.

    Args:
        timestamp: ISO8601 timestamp.
        scope: Credential scope.
        previous_signature: Previous chunk's (or seed) signature.
        chunk_data: Raw chunk data bytes.

    Returns:
        String to sign for this chunk.
    """
    return "\n".join(
        [
            "AWS4-HMAC-SHA256-PAYLOAD",
            timestamp,
            scope,
            previous_signature,
            SHA256_EMPTY,
            hashlib.sha256(chunk_data).hexdigest(),
        ]
    )


def sigv4_trailer_string_to_sign(
    timestamp: str,
    scope: str,
    previous_signature: str,
    trailing_headers: bytes,
) -> str:
    """Build the string to sign for a SigV4 trailing header signature.

    Args:
        timestamp: ISO8601 timestamp.
        scope: Credential scope.
        previous_signature: Terminal chunk's signature.
        trailing_headers: Raw trailing header bytes.

    Returns:
        String to sign for the trailer.
    """
    return "\n".join(
        [
            "AWS4-HMAC-SHA256-TRAILER",
            timestamp,
            scope,
            previous_signature,
            hashlib.sha256(trailing_headers).hexdigest(),
        ]
    )


class ChunkedResigner:
    """State machine for re-signing aws-chunked request bodies.

    Every chunk signature chains from the seed (Authorization) signature,
    so once the request is re-signed the chunk signatures must follow.
    """

    def __init__(
        self,
        *,
        signing_key: bytes,
        seed_signature: str,
        timestamp: str,
        scope: str,
        has_trailer: bool,
    ) -> None:
        """Initialize the resigner.

        Args:
            signing_key: Derived SigV4 HMAC signing key.
            seed_signature: Newly computed seed (Authorization) signature.
            timestamp: ISO8601 timestamp from x-amz-date.
            scope: Credential scope of the new signature.
            has_trailer: Whether to expect trailing header signatures.
        """
        self._signing_key = signing_key
        self._current_sig = seed_signature
        self._timestamp = timestamp
        self._scope = scope
        self._has_trailer = has_trailer
        self._buffer = b""
        self._done = False

    def process(self, data: bytes) -> bytes:
        """Process incoming body data and return re-signed output.

        State machine transitions::

            BUFFERING ──chunk header──> RE-SIGN CHUNK ──> BUFFERING
                │                              │
                │                         (size == 0)
                │                              │
                │                              v
                │                     TERMINAL CHUNK
                │                       ┌──────┴──────┐
                │                 has_trailer     no trailer
                │                       │             │
                │                       v             v
                ├─(not a chunk)──> TRAILER/DONE     DONE
                │
                v
              DONE ──(any data)──> passthrough

        Args:
            data: Raw bytes of the request body.

        Returns:
            Re-signed bytes to forward upstream.
        """
        if self._done:
            return data

        self._buffer += data
        output = b""

        while True:
            header_end = self._buffer.find(b"\r\n")
            if header_end == -1:
                break  # Need more data

            m = _CHUNK_HEADER_RE.match(self._buffer)
            if not m:
                # Not a chunk header: trailing headers or trailer signature
                if self._has_trailer:
                    output += self._process_trailer()
                else:
                    output += self._buffer
                    self._buffer = b""
                    self._done = True
                break

            hex_size = m.group("hex_size")
            chunk_size = int(hex_size, 16)
            header_len = header_end + 2

            if chunk_size == 0:
                new_sig = self._sign_chunk(b"")
                output += (
                    hex_size + b";chunk-signature=" + new_sig.encode() + b"\r\n"
                )
                self._buffer = self._buffer[header_len:]

                if self._has_trailer and self._buffer:
                    output += self._process_trailer()
                elif not self._has_trailer:
                    # Pass through any remaining data (final \r\n)
                    output += self._buffer
                    self._buffer = b""
                    self._done = True
                break

            # Need header + chunk_data + \r\n
            total_needed = header_len + chunk_size + 2
            if len(self._buffer) < total_needed:
                break

            chunk_data = self._buffer[header_len : header_len + chunk_size]
            new_sig = self._sign_chunk(chunk_data)

            output += (
                hex_size + b";chunk-signature=" + new_sig.encode() + b"\r\n"
            )
            output += chunk_data + b"\r\n"

            self._buffer = self._buffer[total_needed:]

        return output

    def finish(self) -> bytes:
        """Flush whatever is still buffered once the body has ended."""
        if self._done:
            return b""
        if self._has_trailer and self._buffer:
            return self._process_trailer()
        output = self._buffer
        self._buffer = b""
        self._done = True
        return output

    def _sign_chunk(self, chunk_data: bytes) -> str:
        string_to_sign = sigv4_chunk_string_to_sign(
            self._timestamp, self._scope, self._current_sig, chunk_data
        )
        self._current_sig = sigv4_sign(self._signing_key, string_to_sign)
        return self._current_sig

    def _process_trailer(self) -> bytes:
        """Process trailing headers and their signature.

        Returns re-signed trailer data. Must be called when the buffer
        contains trailing header data after the terminal chunk.
        """
        output = b""
        m = _TRAILER_SIG_RE.search(self._buffer)
        if m:
            trailing_data = self._buffer[: m.start()]
            trailing_headers = trailing_data.rstrip(b"\r\n")

            string_to_sign = sigv4_trailer_string_to_sign(
                self._timestamp,
                self._scope,
                self._current_sig,
                trailing_headers,
            )
            new_sig = sigv4_sign(self._signing_key, string_to_sign)
            self._current_sig = new_sig

            output += trailing_data
            output += b"x-amz-trailer-signature:" + new_sig.encode()
            output += self._buffer[m.end() :]
        else:
            # No trailer signature in the body; pass through unchanged
            output += self._buffer

        self._buffer = b""
        self._done = True
        return output


def resign_chunked_body(
    body: bytes,
    *,
    signing_key: bytes,
    seed_signature: str,
    timestamp: str,
    scope: str,
    content_sha256: str,
) -> bytes:
    """Re-sign a fully buffered aws-chunked body.

    Args:
        body: The complete aws-chunked body.
        signing_key: Signing key of the new signature.
        seed_signature: The new Authorization signature.
        timestamp: The new x-amz-date.
        scope: The new credential scope.
        content_sha256: Streaming marker from x-amz-content-sha256.

    Returns:
        Body with every chunk (and trailer) signature replaced.
    """
    resigner = ChunkedResigner(
        signing_key=signing_key,
        seed_signature=seed_signature,
        timestamp=timestamp,
        scope=scope,
        has_trailer=content_sha256.endswith("-TRAILER"),
    )
    return resigner.process(body) + resigner.finish()


def verify_chunked_body(
    body: bytes,
    *,
    signing_key: bytes,
    seed_signature: str,
    timestamp: str,
    scope: str,
    content_sha256: str,
) -> str | None:
    """Check every chunk (and trailer) signature of an aws-chunked body.

    The chain starts from the seed signature the client sent in its
    Authorization header.  Framing is parsed strictly: the body must be a
    sequence of signed chunks ending in a zero-length chunk, followed by
    the final CRLF or, for trailer payloads, the trailing headers and
    their signature.

    Args:
        body: The complete aws-chunked body as received.
        signing_key: Signing key derived from the client's x-amz-date.
        seed_signature: The verified Authorization signature.
        timestamp: The client's x-amz-date.
        scope: The client's credential scope.
        content_sha256: Streaming marker from x-amz-content-sha256.

    Returns:
        None if every signature matches, otherwise the reason for the
        mismatch.
    """
    previous = seed_signature
    pos = 0
    while True:
        m = _CHUNK_HEADER_RE.match(body, pos)
        if not m:
            return f"malformed chunk header at offset {pos}"
        chunk_size = int(m.group("hex_size"), 16)
        data_start = m.end()
        data_end = data_start + chunk_size
        if chunk_size and body[data_end : data_end + 2] != b"\r\n":
            return f"truncated chunk at offset {pos}"

        expected = sigv4_sign(
            signing_key,
            sigv4_chunk_string_to_sign(
                timestamp, scope, previous, body[data_start:data_end]
            ),
        )
        if not hmac.compare_digest(expected, m.group("sig").decode()):
            return f"chunk signature mismatch at offset {pos}"
        previous = expected

        if chunk_size == 0:
            rest = body[data_start:]
            break
        pos = data_end + 2

    if not content_sha256.endswith("-TRAILER"):
        if rest not in (b"", b"\r\n"):
            return "data after terminal chunk"
        return None

    sig_match = _TRAILER_SIG_RE.search(rest)
    if not sig_match:
        return "missing trailer signature"
    if rest[sig_match.end() :].strip(b"\r\n"):
        return "data after trailer signature"
    expected = sigv4_sign(
        signing_key,
        sigv4_trailer_string_to_sign(
            timestamp,
            scope,
            previous,
            rest[: sig_match.start()].rstrip(b"\r\n"),
        ),
    )
    if not hmac.compare_digest(expected, sig_match.group("sig").decode()):
        return "trailer signature mismatch"
    return None


# ---------------------------------------------------------------------------
# Clock skew detection
# ---------------------------------------------------------------------------


def check_clock_skew(
    amz_date: str, now: datetime | None = None
) -> tuple[bool, int]:
    """Check if x-amz-date differs significantly from system time.

    Args:
        amz_date: ISO8601 timestamp from x-amz-date header.
        now: Reference time, defaults to the current UTC time.

    Returns:
        Tuple of (is_skewed, drift_minutes). is_skewed is True if
        drift exceeds 5 minutes.
    """
    try:
        request_time = datetime.strptime(amz_date, AMZ_DATE_FORMAT).replace(
            tzinfo=UTC
        )
        if now is None:
            now = datetime.now(UTC)
        drift = abs((now - request_time).total_seconds())
        drift_minutes = int(drift / 60)
        return drift_minutes > 5, drift_minutes
    except (ValueError, TypeError):
        return False, 0
