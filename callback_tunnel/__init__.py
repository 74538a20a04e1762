"""Receive webhook/status callbacks on a local machine through a public tunnel."""

import logging

from callback_tunnel.config import HandlerConfig, load_config
from callback_tunnel.errors import (
    BindError,
    CallbackTunnelError,
    ConfigError,
    HandlerStateError,
    MissingCredentialError,
    PortsExhaustedError,
    TunnelError,
)
from callback_tunnel.events import CallbackEvent, EventChannel, LogEvent, TunnelStatusEvent
from callback_tunnel.handler import CallbackHandler, ListenerState

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.4.0"

__all__ = [
    "BindError",
    "CallbackEvent",
    "CallbackHandler",
    "CallbackTunnelError",
    "ConfigError",
    "EventChannel",
    "HandlerConfig",
    "HandlerStateError",
    "ListenerState",
    "LogEvent",
    "MissingCredentialError",
    "PortsExhaustedError",
    "TunnelError",
    "TunnelStatusEvent",
    "load_config",
]
