"""Callback HTTP server: aiohttp-based ingress for status callbacks."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

from aiohttp import web

from callback_tunnel.events import CallbackEvent, LogEvent
from callback_tunnel.log_context import set_log_context
from callback_tunnel.payload import FORM_CONTENT_TYPE, NormalizedBody, PayloadKind, normalize_body

if TYPE_CHECKING:
    from callback_tunnel.events import HandlerEvents

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
ROOT_TEXT = f"POST status callbacks to {CALLBACK_PATH}"
CALLBACK_RESPONSE_TEXT = "Callback received"


class CallbackServer:
    """HTTP server that republishes inbound callbacks as events.

    Routes:
    - ``GET  /``          -- Static instructions, doubles as a health check.
    - ``POST /callback``  -- Normalize the payload and emit a `CallbackEvent`.

    Routing is fixed at construction; `listen` and `close` may be called
    repeatedly to bind different ports.
    """

    def __init__(self, events: HandlerEvents, *, max_body_bytes: int = 1024 * 1024) -> None:
        self._events = events
        self._app = web.Application(client_max_size=max_body_bytes)
        self._app.router.add_get("/", self._handle_root)
        self._app.router.add_post(CALLBACK_PATH, self._handle_callback)
        self._runner: web.AppRunner | None = None
        self._port: int | None = None

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int | None:
        """Port actually bound, or None when not listening."""
        return self._port

    @property
    def is_listening(self) -> bool:
        return self._runner is not None

    async def listen(self, host: str, port: int) -> int:
        """Bind *host*:*port* and start serving. Returns the bound port.

        Raises `OSError` unchanged (``EADDRINUSE`` included) after releasing
        the partially set-up runner.
        """
        if self._runner is not None:
            msg = f"Callback server already listening on port {self._port}"
            raise RuntimeError(msg)
        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        addresses = runner.addresses
        self._port = addresses[0][1] if addresses else port
        logger.info("Callback server listening on %s:%d", host, self._port)
        return self._port

    async def close(self) -> None:
        """Stop serving. No-op when not listening."""
        if self._runner is None:
            return
        runner, self._runner = self._runner, None
        port, self._port = self._port, None
        await runner.cleanup()
        logger.info("Callback server on port %s stopped", port)

    # -- Handlers --

    async def _handle_root(self, _request: web.Request) -> web.Response:
        return web.Response(text=ROOT_TEXT)

    async def _handle_callback(self, request: web.Request) -> web.Response:
        set_log_context(operation="cb", request_id=secrets.token_hex(4))
        content_type = request.content_type
        logger.info("Callback received content_type=%s", content_type)

        # Last value wins for a repeated key.
        query_parameters = dict(request.query.items())

        try:
            normalized = await normalize_body(request)
        except Exception as exc:
            logger.exception("Callback body could not be read")
            self._events.log.emit(LogEvent("error", f"Failed to read callback body: {exc}"))
            normalized = NormalizedBody(PayloadKind.OTHER, None, malformed=True)

        if normalized.converted:
            self._events.log.emit(
                LogEvent("info", f"{FORM_CONTENT_TYPE} received, so converting to JSON"),
            )
        elif normalized.malformed and normalized.kind is PayloadKind.JSON:
            self._events.log.emit(LogEvent("warn", "Malformed JSON callback body, emitting None"))

        delivered = self._events.callback.emit(
            CallbackEvent(
                query_parameters=query_parameters,
                body=normalized.body,
                content_type=content_type,
            ),
        )
        logger.debug("Callback event delivered to %d listener(s)", delivered)

        return web.Response(text=CALLBACK_RESPONSE_TEXT)
