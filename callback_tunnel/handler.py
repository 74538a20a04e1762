"""Callback handler: binds a free local port and tunnels it to a public URL.

Lifecycle::

    handler = CallbackHandler(HandlerConfig(tunnel_auth_token="..."))
    handler.events.callback.subscribe(on_callback)
    url = await handler.start()      # "https://<tunnel-host>/callback"
    ...
    await handler.stop()

Policies:

- Port probing is a bounded loop: ``config.max_port_attempts`` sequential
  attempts starting at the requested port, then `PortsExhaustedError`.
- A missing auth token is rejected before any port is bound.
- A tunnel failure, or cancellation while the tunnel is being opened,
  closes the bound server, so a failed `start` holds no resources.
- Provider status reports mentioning an error or a disconnection become
  error events on the ``log`` channel.
"""

from __future__ import annotations

import dataclasses
import errno
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from callback_tunnel.errors import (
    BindError,
    HandlerStateError,
    MissingCredentialError,
    PortsExhaustedError,
    TunnelError,
)
from callback_tunnel.events import HandlerEvents, LogEvent, LogLevel, TunnelStatusEvent
from callback_tunnel.log_context import set_log_context
from callback_tunnel.server import CALLBACK_PATH, CallbackServer
from callback_tunnel.tunnel import NgrokTunnelProvider

if TYPE_CHECKING:
    from callback_tunnel.config import HandlerConfig
    from callback_tunnel.tunnel import Tunnel, TunnelProvider

logger = logging.getLogger(__name__)

_PY_LEVELS: dict[str, int] = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class ListenerState:
    """Resources owned by a `CallbackHandler`. All None until `start`."""

    bound_port: int | None = None
    public_url: str | None = None
    server: CallbackServer | None = None
    tunnel: Tunnel | None = None


class CallbackHandler:
    """Expose a local callback endpoint through a public tunnel.

    Publishes on three channels of ``self.events``: ``log`` (diagnostics),
    ``callback`` (one event per inbound POST), and ``tunnel_status`` (the
    callback URL, or the failure cause).
    """

    def __init__(
        self,
        config: HandlerConfig,
        *,
        tunnel_provider: TunnelProvider | None = None,
    ) -> None:
        self._config = config
        self._provider: TunnelProvider = tunnel_provider or NgrokTunnelProvider(config.host)
        self.events = HandlerEvents()
        self._server = CallbackServer(self.events, max_body_bytes=config.max_body_bytes)
        self._state = ListenerState()

    @property
    def config(self) -> HandlerConfig:
        return self._config

    @property
    def state(self) -> ListenerState:
        """Snapshot of the current state; mutating it has no effect."""
        return dataclasses.replace(self._state)

    @property
    def bound_port(self) -> int | None:
        return self._state.bound_port

    @property
    def callback_url(self) -> str | None:
        """Full public callback URL, or None when no tunnel is up."""
        if self._state.public_url is None:
            return None
        return f"{self._state.public_url}{CALLBACK_PATH}"

    def get_public_url(self) -> str | None:
        """Return the tunnel base URL (without the callback path), or None."""
        return self._state.public_url

    # -- Lifecycle --

    async def start(self, port: int | None = None) -> str:
        """Bind a local port, open the tunnel, and return the callback URL.

        Raises `MissingCredentialError`, `BindError`, `PortsExhaustedError`
        or `TunnelError`. On any failure no server or tunnel is left running.
        `HandlerStateError` if already started, `ValueError` for a port
        outside 0..65535 (0 binds an ephemeral port).
        """
        if self._state.server is not None:
            msg = f"Callback handler already started on port {self._state.bound_port}"
            raise HandlerStateError(msg)

        if not self._config.tunnel_auth_token:
            error = MissingCredentialError("Tunnel auth token not provided")
            self._log("error", error)
            self.events.tunnel_status.emit(TunnelStatusEvent("error", error))
            raise error

        first_port = self._config.port if port is None else port
        if not 0 <= first_port <= 65535:
            msg = f"Port out of range: {first_port}"
            raise ValueError(msg)

        bound_port = await self._bind(first_port)
        try:
            return await self._open_tunnel(bound_port)
        except BaseException:
            # TunnelError or cancellation while the provider call is pending.
            await self._release_server()
            raise

    async def stop(self) -> None:
        """Close the tunnel, then the server. Never raises; safe to repeat."""
        set_log_context(operation="tunnel")
        tunnel = self._state.tunnel
        if tunnel is not None:
            self._state.tunnel = None
            self._state.public_url = None
            try:
                await tunnel.close()
            except Exception as exc:
                logger.debug("Tunnel close failed", exc_info=True)
                self._log("error", f"Error during tunnel cleanup: {exc}")
            else:
                self._log("info", "Tunnel closed")

        server = self._state.server
        if server is not None:
            self._state.server = None
            self._state.bound_port = None
            try:
                await server.close()
            except Exception as exc:
                logger.debug("Server close failed", exc_info=True)
                self._log("error", f"Error stopping callback server: {exc}")
            else:
                self._log("info", "Callback server stopped")

    # -- Internals --

    async def _bind(self, first_port: int) -> int:
        set_log_context(operation="bind")
        attempts = self._config.max_port_attempts
        for offset in range(attempts):
            candidate = first_port + offset
            if candidate > 65535:
                attempts = offset
                break
            try:
                bound = await self._server.listen(self._config.host, candidate)
            except OSError as exc:
                if exc.errno == errno.EADDRINUSE:
                    self._log("warn", f"Port {candidate} in use, trying port {candidate + 1}")
                    continue
                self._log("error", f"Start server error: {exc}")
                msg = f"Cannot bind {self._config.host}:{candidate}: {exc}"
                raise BindError(msg, port=candidate) from exc

            self._state.server = self._server
            self._state.bound_port = bound
            self._log("info", f"Callback server listening on port {bound}")
            return bound

        msg = f"No free port in {first_port}..{first_port + attempts - 1} ({attempts} attempts)"
        error = PortsExhaustedError(msg, first_port=first_port, attempts=attempts)
        self._log("error", error)
        raise error

    async def _open_tunnel(self, port: int) -> str:
        set_log_context(operation="tunnel")
        domain = self._config.reserved_hostname or None
        tunnel: Tunnel | None = None
        try:
            tunnel = await self._provider.forward(
                port,
                authtoken=self._config.tunnel_auth_token,
                domain=domain,
                on_status=self._on_tunnel_status,
            )
            public_url = tunnel.url().rstrip("/")
            if not public_url:
                msg = "Tunnel provider returned an empty URL"
                raise TunnelError(msg)
        except Exception as exc:
            if tunnel is not None:
                await self._discard_tunnel(tunnel)
            self._log("error", f"Failed to establish tunnel: {exc}")
            self.events.tunnel_status.emit(TunnelStatusEvent("error", exc))
            msg = f"Failed to establish tunnel for port {port}: {exc}"
            raise TunnelError(msg) from exc

        self._state.tunnel = tunnel
        self._state.public_url = public_url
        if domain:
            self._log("info", f"Using custom domain: {domain}")
        callback_url = f"{public_url}{CALLBACK_PATH}"
        self.events.tunnel_status.emit(TunnelStatusEvent("info", callback_url))
        return callback_url

    async def _discard_tunnel(self, tunnel: Tunnel) -> None:
        try:
            await tunnel.close()
        except Exception:
            logger.debug("Closing half-open tunnel failed", exc_info=True)

    async def _release_server(self) -> None:
        self._state.server = None
        self._state.bound_port = None
        try:
            await self._server.close()
        except Exception as exc:
            logger.debug("Server close after failed start failed", exc_info=True)
            self._log("error", f"Error stopping callback server: {exc}")
        else:
            self._log("info", "Callback server stopped after failed start")

    def _on_tunnel_status(self, status: str) -> None:
        """Surface provider-reported tunnel trouble on the ``log`` channel."""
        lowered = status.lower()
        if "error" in lowered or "disconnected" in lowered:
            self._log("error", f"Tunnel status changed: {status}")
        else:
            logger.debug("Tunnel status changed: %s", status)

    def _log(self, level: LogLevel, message: str | BaseException) -> None:
        """Publish *message* on the ``log`` channel and mirror it to stdlib logging."""
        logger.log(_PY_LEVELS[level], "%s", message)
        self.events.log.emit(LogEvent(level, message))
