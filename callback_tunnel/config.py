"""Handler configuration and loading from JSON file + environment."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from callback_tunnel.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4000

# First name wins when several are set.
_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "tunnel_auth_token": ("NGROK_AUTHTOKEN", "NGROK_AUTH_TOKEN"),
    "reserved_hostname": ("NGROK_DOMAIN", "NGROK_CUSTOM_DOMAIN"),
    "port": ("CALLBACK_PORT",),
}


class HandlerConfig(BaseModel):
    """Settings for one callback handler instance. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    tunnel_auth_token: str = ""
    reserved_hostname: str | None = None
    host: str = "127.0.0.1"
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    max_port_attempts: int = Field(default=100, ge=1)
    max_body_bytes: int = Field(default=1024 * 1024, ge=1)

    def __repr__(self) -> str:
        token = "***" if self.tunnel_auth_token else "''"
        return (
            f"HandlerConfig(tunnel_auth_token={token}, "
            f"reserved_hostname={self.reserved_hostname!r}, host={self.host!r}, "
            f"port={self.port}, max_port_attempts={self.max_port_attempts})"
        )

    __str__ = __repr__


def _env_overrides(environ: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for field_name, names in _ENV_KEYS.items():
        value = next((environ[n].strip() for n in names if environ.get(n, "").strip()), None)
        if value is not None:
            overrides[field_name] = value
    return overrides


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> HandlerConfig:
    """Build a `HandlerConfig` from an optional JSON file and the environment.

    Environment variables take precedence over file values, which take
    precedence over model defaults. Raises `ConfigError` when the file is
    unreadable, is not a JSON object, or fails validation.
    """
    data: dict[str, object] = {}
    if config_path is not None:
        try:
            loaded = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            msg = f"Cannot read config file {config_path}: {exc}"
            raise ConfigError(msg) from exc
        if not isinstance(loaded, dict):
            msg = f"Config file {config_path} must contain a JSON object"
            raise ConfigError(msg)
        data.update(loaded)
        logger.debug("Loaded config file %s (%d keys)", config_path, len(loaded))

    overrides = _env_overrides(os.environ if environ is None else environ)
    if overrides:
        logger.debug("Config overridden from environment: %s", ", ".join(sorted(overrides)))
    data.update(overrides)

    try:
        return HandlerConfig.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid configuration: {exc}"
        raise ConfigError(msg) from exc
