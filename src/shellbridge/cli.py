"""CLI entry point for shellbridge."""

from __future__ import annotations

import asyncio
import logging
import os
import sys

import typer

from shellbridge.config import ShellBridgeConfig

app = typer.Typer(
    name="shellbridge",
    help="A terminal shared between a human and an agent.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address."),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on."),
    mode: str | None = typer.Option(
        None,
        "--mode",
        "-m",
        help="'local' exposes this machine's shell; 'gateway' allows SSH sessions only.",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run the multi-client WebSocket server."""
    setup_logging(verbose)

    config = ShellBridgeConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if mode:
        if mode not in ("local", "gateway"):
            typer.echo(f"Error: unknown mode: {mode}", err=True)
            raise typer.Exit(2)
        config.server.mode = mode  # type: ignore[assignment]

    from shellbridge.transport.server import serve as run_server

    typer.echo(
        f"shellbridge listening on ws://{config.server.host}:{config.server.port}/ws "
        f"(mode={config.server.mode})"
    )
    run_server(config)


async def _run_once(command: str, cwd: str | None, config: ShellBridgeConfig) -> dict:
    from shellbridge.session.service import SessionService
    from shellbridge.transport.bridge import DesktopBridge

    bridge = DesktopBridge(SessionService(config=config))
    try:
        session_id = await bridge.invoke("session.create", {"cwd": cwd})
        return await bridge.execute(session_id, command)
    finally:
        await bridge.close()


@app.command()
def run(
    command: str = typer.Argument(help="Command to run in a fresh shell session."),
    cwd: str | None = typer.Option(None, "--cwd", help="Working directory."),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run one command in an interactive shell and print its captured output."""
    setup_logging(verbose)
    if sys.platform == "win32":
        typer.echo("Error: local terminals need a POSIX pseudo-terminal", err=True)
        raise typer.Exit(1)

    config = ShellBridgeConfig.load(config_file)
    result = asyncio.run(_run_once(command, os.path.abspath(cwd) if cwd else None, config))

    if result.get("stdout"):
        typer.echo(result["stdout"])
    if result.get("error"):
        typer.echo(f"Error: {result['error']}", err=True)
    raise typer.Exit(result.get("exitCode", 1))


@app.command()
def shell() -> None:
    """Show which shell new local sessions would start."""
    from shellbridge.pty.shell import detect_shell

    spec = detect_shell()
    typer.echo(f"Shell: {spec.path}")
    typer.echo(f"Args: {' '.join(spec.args) or '(none)'}")
    typer.echo(f"Dialect: {spec.dialect.name}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
