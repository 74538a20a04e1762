"""Entry point: python -m callback_tunnel."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from callback_tunnel.config import HandlerConfig, load_config
from callback_tunnel.errors import CallbackTunnelError, ConfigError
from callback_tunnel.events import CallbackEvent, LogEvent, TunnelStatusEvent
from callback_tunnel.handler import CallbackHandler
from callback_tunnel.logging_config import setup_logging

logger = logging.getLogger(__name__)

_console = Console()

_LEVEL_STYLE = {"info": "green", "warn": "yellow", "error": "bold red"}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="callback-tunnel",
        description="Expose a local /callback endpoint through an ngrok tunnel.",
    )
    parser.add_argument("--config", type=Path, help="JSON config file")
    parser.add_argument("--port", type=int, help="first local port to try (default 4000)")
    parser.add_argument("--log-dir", type=Path, help="also write rotating log files here")
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose logging output")
    return parser


# ---------------------------------------------------------------------------
# Console printers
# ---------------------------------------------------------------------------


def _print_log(event: LogEvent) -> None:
    style = _LEVEL_STYLE.get(event.level, "white")
    _console.print(f"[{style}]{event.level.upper():<5}[/{style}] {escape(str(event.message))}")


def _print_callback(event: CallbackEvent) -> None:
    body = json.dumps(event.body, indent=2, ensure_ascii=False, default=str)
    query = json.dumps(event.query_parameters, ensure_ascii=False)
    _console.print(
        Panel(
            f"[dim]query[/dim] {escape(query)}\n[dim]body[/dim]\n{escape(body)}",
            title="[bold]Callback[/bold]",
            subtitle=f"[dim]{event.content_type or 'no content-type'}[/dim]",
            border_style="cyan",
        ),
    )


def _print_tunnel_status(event: TunnelStatusEvent) -> None:
    if event.level == "error":
        cause = escape(str(event.message))
        _console.print(f"[bold red]Failed to establish tunnel:[/bold red] {cause}")
        return
    _console.print(
        Panel(
            f"[bold green]{event.message}[/bold green]",
            title="[bold]Status Callback URL[/bold]",
            border_style="green",
            padding=(0, 2),
        ),
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def run(config: HandlerConfig, port: int | None = None) -> int:
    """Start the handler, serve until cancelled, then stop. Returns an exit code."""
    handler = CallbackHandler(config)
    handler.events.log.subscribe(_print_log)
    handler.events.callback.subscribe(_print_callback)
    handler.events.tunnel_status.subscribe(_print_tunnel_status)

    try:
        try:
            await handler.start(port)
        except (CallbackTunnelError, ValueError) as exc:
            logger.debug("Start failed", exc_info=True)
            _console.print(f"[bold red]Could not start:[/bold red] {escape(str(exc))}")
            return 1
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Shutdown requested")
    finally:
        await handler.stop()
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = _build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose, log_dir=args.log_dir)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        _console.print(f"[bold red]{escape(str(exc))}[/bold red]")
        sys.exit(1)

    if not config.tunnel_auth_token:
        _console.print(
            "[bold yellow]No tunnel auth token. Set [bold]NGROK_AUTHTOKEN[/bold] "
            "or add tunnel_auth_token to the config file.[/bold yellow]"
        )
        sys.exit(1)

    loop = asyncio.new_event_loop()
    task = loop.create_task(run(config, args.port))

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)

    exit_code = 0
    try:
        exit_code = loop.run_until_complete(task)
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.info("Interrupted")
    finally:
        loop.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
