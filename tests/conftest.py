"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from callback_tunnel.config import HandlerConfig

_PUBLIC_URL = "https://abc123.example.dev"


class FakeTunnel:
    """Stand-in for an open ngrok tunnel."""

    def __init__(self, url: str = _PUBLIC_URL, *, close_error: Exception | None = None) -> None:
        self._url = url
        self._close_error = close_error
        self.closed = False

    def url(self) -> str:
        return self._url

    async def close(self) -> None:
        if self._close_error is not None:
            raise self._close_error
        self.closed = True


class FakeTunnelProvider:
    """Records every ``forward`` call and returns a `FakeTunnel` (or raises)."""

    def __init__(
        self,
        tunnel: FakeTunnel | None = None,
        *,
        error: Exception | None = None,
        on_forward: Callable[[int], Awaitable[None]] | None = None,
    ) -> None:
        self.tunnel = tunnel or FakeTunnel()
        self.error = error
        self.on_forward = on_forward
        self.calls: list[tuple[int, str, str | None]] = []
        self.on_status: Callable[[str], None] | None = None

    async def forward(
        self,
        port: int,
        *,
        authtoken: str,
        domain: str | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> FakeTunnel:
        self.calls.append((port, authtoken, domain))
        self.on_status = on_status
        if self.on_forward is not None:
            await self.on_forward(port)
        if self.error is not None:
            raise self.error
        return self.tunnel


@pytest.fixture
def public_url() -> str:
    """Base URL every `FakeTunnel` reports unless told otherwise."""
    return _PUBLIC_URL


@pytest.fixture
def make_tunnel() -> Callable[..., Any]:
    return FakeTunnel


@pytest.fixture
def make_provider() -> Callable[..., Any]:
    return FakeTunnelProvider


@pytest.fixture
def provider() -> FakeTunnelProvider:
    return FakeTunnelProvider()


@pytest.fixture
def config() -> HandlerConfig:
    return HandlerConfig(tunnel_auth_token="test-token", port=5000)
