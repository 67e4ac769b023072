# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across the test modules."""

from collections.abc import Iterator

import httpx
import pytest

from s3relay.config import ProxyConfig, SigningIdentity
from s3relay.logging import clear_secrets
from tests.vectors import make_config, make_identity


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    """Keep registered secrets from leaking between tests."""
    clear_secrets()
    yield
    clear_secrets()


@pytest.fixture
def identity() -> SigningIdentity:
    return make_identity()


@pytest.fixture
def config() -> ProxyConfig:
    return make_config()


class RecordingUpstream:
    """Upstream double that records requests and replays a response.

    Use ``transport`` as the ``httpx.MockTransport`` for the relay's
    client.  Set ``error`` to make every request fail at the transport
    level instead.
    """

    def __init__(
        self,
        status: int = 200,
        content: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status = status
        self.content = content
        self.headers = headers or {}
        self.error: Exception | None = None
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        # Response(content=...) is read eagerly; iter_raw needs a stream
        return httpx.Response(
            self.status,
            headers=self.headers,
            stream=httpx.ByteStream(self.content),
        )


@pytest.fixture
def upstream() -> RecordingUpstream:
    return RecordingUpstream(
        content=b"hello", headers={"Content-Type": "text/plain"}
    )


@pytest.fixture
def failing_transport() -> httpx.MockTransport:
    """Transport that fails the test if the relay contacts the upstream."""

    def handler(request: httpx.Request) -> httpx.Response:
        pytest.fail(f"Unexpected upstream request: {request.url}")

    return httpx.MockTransport(handler)
