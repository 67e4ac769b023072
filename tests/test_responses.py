# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for s3relay/responses.py."""

import httpx
import pytest

from s3relay.responses import (
    UNSIGNED_ERROR,
    VALIDATION_ERROR,
    denied_response,
    relay_response,
)
from s3relay.types import VerifyStatus


class TestDeniedResponse:
    """Tests for denied_response."""

    def test_missing_signature_body(self) -> None:
        """Missing signatures get the AccessDenied document."""
        response = denied_response(VerifyStatus.SIGNATURE_MISSING)
        assert response.status_code == 403
        assert response.get_data() == (
            b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
            b"<Error>\n"
            b"    <Code>AccessDenied</Code>\n"
            b"    <Message>Unauthenticated requests are not allowed for "
            b"this api</Message>\n"
            b"</Error>"
        )

    def test_invalid_signature_body(self) -> None:
        """Invalid signatures get the SignatureDoesNotMatch document."""
        response = denied_response(VerifyStatus.SIGNATURE_INVALID)
        assert response.status_code == 403
        assert response.get_data() == VALIDATION_ERROR.encode()
        assert b"<Code>SignatureDoesNotMatch</Code>" in response.get_data()
        assert (
            b"<RequestId>0300D815-9252-41E5-B587-F189759A21BF</RequestId>"
            in response.get_data()
        )

    @pytest.mark.parametrize(
        "status",
        [VerifyStatus.SIGNATURE_MISSING, VerifyStatus.SIGNATURE_INVALID],
    )
    def test_headers(self, status: VerifyStatus) -> None:
        """Both errors are uncacheable XML."""
        response = denied_response(status)
        assert response.headers["Content-Type"] == "application/xml"
        assert response.headers["Cache-Control"] == (
            "max-age=0, no-cache, no-store"
        )

    def test_ok_has_no_error(self) -> None:
        """OK is not an error status."""
        with pytest.raises(ValueError):
            denied_response(VerifyStatus.OK)

    def test_bodies_distinct(self) -> None:
        """The two documents differ."""
        assert UNSIGNED_ERROR != VALIDATION_ERROR


class TestRelayResponse:
    """Tests for relay_response."""

    def _upstream(
        self,
        status_code: int,
        content: bytes,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        return httpx.Response(
            status_code,
            headers=headers,
            stream=httpx.ByteStream(content),
            request=httpx.Request("GET", "http://s3.us-east-1.wasabisys.com/"),
        )

    def test_status_headers_body(self) -> None:
        """Status, headers and body pass through."""
        upstream = self._upstream(
            status_code=206,
            content=b"0123456789",
            headers={
                "Content-Type": "binary/octet-stream",
                "Content-Range": "bytes 0-9/100",
                "ETag": '"abc"',
            },
        )
        response = relay_response(upstream)
        assert response.status_code == 206
        assert response.get_data() == b"0123456789"
        assert response.headers["Content-Range"] == "bytes 0-9/100"
        assert response.headers["ETag"] == '"abc"'
        assert response.headers["Content-Type"] == "binary/octet-stream"

    def test_hop_by_hop_dropped(self) -> None:
        """Connection-level headers are not relayed."""
        upstream = self._upstream(
            status_code=200,
            content=b"ok",
            headers={"Connection": "keep-alive", "Keep-Alive": "timeout=5"},
        )
        response = relay_response(upstream)
        assert "Connection" not in response.headers
        assert "Keep-Alive" not in response.headers

    def test_content_encoding_untouched(self) -> None:
        """Compressed bodies are relayed as raw bytes."""
        raw = b"\x1f\x8b\x08\x00not-really-gzip"
        upstream = self._upstream(
            status_code=200,
            content=raw,
            headers={"Content-Encoding": "gzip"},
        )
        response = relay_response(upstream)
        assert response.get_data() == raw
        assert response.headers["Content-Encoding"] == "gzip"

    def test_upstream_closed(self) -> None:
        """Closing the response closes the upstream stream."""
        upstream = self._upstream(status_code=200, content=b"ok")
        response = relay_response(upstream)
        response.close()
        assert upstream.is_closed
