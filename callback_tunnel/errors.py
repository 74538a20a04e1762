"""Project-level exception hierarchy."""

from __future__ import annotations


class CallbackTunnelError(Exception):
    """Base for all callback-tunnel exceptions."""


class ConfigError(CallbackTunnelError):
    """Configuration could not be loaded or validated."""


class HandlerStateError(CallbackTunnelError):
    """Operation not allowed in the handler's current lifecycle state."""


class BindError(CallbackTunnelError):
    """Local HTTP server could not bind its port."""

    def __init__(self, message: str, *, port: int) -> None:
        super().__init__(message)
        self.port = port


class PortsExhaustedError(BindError):
    """Every candidate port in the retry window was already in use."""

    def __init__(self, message: str, *, first_port: int, attempts: int) -> None:
        super().__init__(message, port=first_port + attempts - 1)
        self.first_port = first_port
        self.attempts = attempts


class TunnelError(CallbackTunnelError):
    """Public tunnel could not be established."""


class MissingCredentialError(TunnelError):
    """Tunnel auth token is absent."""
