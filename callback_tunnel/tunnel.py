"""Tunnel providers: forward a local port to a public URL."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

import ngrok

logger = logging.getLogger(__name__)

# Receives a human-readable status line, e.g. "disconnected from <addr>: <error>".
StatusCallback = Callable[[str], None]


class Tunnel(Protocol):
    """An open tunnel. Matches the surface of ``ngrok.Listener``."""

    def url(self) -> str: ...

    async def close(self) -> None: ...


class TunnelProvider(Protocol):
    """Opens tunnels for a local port."""

    async def forward(
        self,
        port: int,
        *,
        authtoken: str,
        domain: str | None = None,
        on_status: StatusCallback | None = None,
    ) -> Tunnel: ...


class NgrokTunnel:
    """One ngrok session with a single HTTP listener; closing drops both."""

    def __init__(self, session: Any, listener: Any) -> None:
        self._session = session
        self._listener = listener

    def url(self) -> str:
        return str(self._listener.url())

    async def close(self) -> None:
        try:
            await self._listener.close()
        finally:
            await self._session.close()


class NgrokTunnelProvider:
    """`TunnelProvider` backed by the ngrok agent SDK.

    Session disconnections are reported through *on_status*. The SDK invokes
    its handler off the event loop, so the report is marshalled back onto the
    loop that opened the tunnel.
    """

    def __init__(self, host: str = "127.0.0.1") -> None:
        self._host = host

    async def forward(
        self,
        port: int,
        *,
        authtoken: str,
        domain: str | None = None,
        on_status: StatusCallback | None = None,
    ) -> Tunnel:
        loop = asyncio.get_running_loop()

        def on_disconnection(addr: str, error: str) -> None:
            status = f"disconnected from {addr}: {error}"
            logger.warning("ngrok session %s", status)
            if on_status is not None:
                loop.call_soon_threadsafe(on_status, status)

        session = await (
            ngrok.SessionBuilder()
            .authtoken(authtoken)
            .handle_disconnection(on_disconnection)
            .connect()
        )

        endpoint = session.http_endpoint()
        if domain:
            endpoint = endpoint.domain(domain)
        target = f"{self._host}:{port}"
        logger.debug("Requesting ngrok tunnel for %s", target)
        try:
            listener = await endpoint.listen_and_forward(target)
        except BaseException:
            await session.close()
            raise

        tunnel = NgrokTunnel(session, listener)
        logger.debug("ngrok tunnel established url=%s", tunnel.url())
        return tunnel
