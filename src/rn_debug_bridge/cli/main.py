"""CLI entry point using Typer."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path

import typer
from pydantic import ValidationError

from rn_debug_bridge.config import BridgeSettings
from rn_debug_bridge.debugger.connection import ConnectionManager
from rn_debug_bridge.errors import BridgeError, packager_not_running_error
from rn_debug_bridge.log import configure_logging
from rn_debug_bridge.models import AttachRequest, WorkerOutput
from rn_debug_bridge.packager import PackagerStatus, host_for

app = typer.Typer(
    name="rn-debug-bridge",
    help="Debug bridge between a debug front-end and the React Native packager",
    no_args_is_help=True,
)


def _render_error(error: BridgeError) -> None:
    typer.echo(f"{error.code}: {error.message}", err=True)
    if error.remediation:
        typer.echo(f"Hint: {error.remediation}", err=True)
    raise typer.Exit(code=1)


def _print_output(output: WorkerOutput) -> None:
    typer.echo(output.text, err=output.category == "stderr")


@app.command()
def version() -> None:
    """Show version information."""
    from rn_debug_bridge import __version__

    typer.echo(f"rn-debug-bridge v{__version__}")


@app.command()
def status(
    address: str | None = typer.Option(None, "--address", help="Packager address"),
    port: int | None = typer.Option(None, "--port", help="Packager port"),
) -> None:
    """Check whether the packager answers on the configured port."""
    settings = BridgeSettings.from_env()
    address = address or settings.packager_address
    port = port or settings.packager_port

    host = host_for(address, port)
    if not asyncio.run(PackagerStatus().is_running(host)):
        _render_error(packager_not_running_error(port))
    typer.echo(f"Packager running at {host}")


async def _serve(request: AttachRequest) -> None:
    manager = ConnectionManager(request, output_listener=_print_output)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await manager.start()
        typer.echo(f"Attached to {manager.debugger_proxy_url}", err=True)
        await stop_event.wait()
    finally:
        await manager.stop()


@app.command()
def attach(
    address: str | None = typer.Option(None, "--address", help="Packager address"),
    port: int | None = typer.Option(None, "--port", help="Packager port"),
    storage: Path | None = typer.Option(
        None,
        "--storage",
        help="Directory for downloaded bundles and sourcemaps",
    ),
    bundle_suffix: str = typer.Option(
        "",
        "--bundle-suffix",
        help="Bundle name suffix; local file names always follow the bundle URL",
    ),
    node: str | None = typer.Option(None, "--node", help="node executable for the debuggee"),
    inspect_port: int | None = typer.Option(
        None,
        "--inspect-port",
        help="Inspector port for the debuggee (0 picks a free one)",
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="debug, info, warning, error"),
) -> None:
    """Attach to the packager's debugger proxy and run debuggees until interrupted."""
    settings = BridgeSettings.from_env()
    configure_logging(log_level or settings.log_level)

    try:
        request = AttachRequest(
            address=address or settings.packager_address,
            port=port or settings.packager_port,
            storage_path=storage or settings.storage_path,
            bundle_suffix=bundle_suffix,
            node_path=node or settings.node_path,
            inspect_port=settings.inspect_port if inspect_port is None else inspect_port,
        )
    except ValidationError as exc:
        typer.echo(f"Invalid attach arguments: {exc}", err=True)
        raise typer.Exit(code=2) from None

    try:
        asyncio.run(_serve(request))
    except BridgeError as exc:
        _render_error(exc)


if __name__ == "__main__":
    app()
