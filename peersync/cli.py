#!/usr/bin/env python3
"""
PeerSync CLI

Command-line interface for the two-peer folder sync engine.

Usage:
    peersync serve --peer 10.0.0.5          # Keep a session open with a peer
    peersync push FILE... --peer 10.0.0.5   # Push files to a peer
    peersync delete NAME --peer 10.0.0.5    # Delete a file on a peer
"""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import load_config
from .errors import SyncError
from .sync import SyncCoordinator, send_with_retry
from .transfer import StatusKind, StatusPublisher, TransferClient, TransferStatus

console = Console()


def setup_logging(level: str = 'INFO', verbose: bool = False):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(), help='JSON config file')
@click.option('--data-dir', default=None, help='Data directory')
@click.option('--port', type=int, default=None, help='Transfer TCP port')
@click.option('--peer-port', type=int, default=None, help="Peer's transfer TCP port")
@click.pass_context
def cli(ctx, verbose, config_path, data_dir, port, peer_port):
    """PeerSync - keep a folder in sync with a directly-linked peer."""
    config = load_config(Path(config_path) if config_path else None)
    if data_dir:
        config.data_dir = Path(data_dir)
    if port is not None:
        config.transfer_port = port
    if peer_port is not None:
        config.peer_port = peer_port

    setup_logging(config.log_level, verbose)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--peer', required=True, help='Peer address')
@click.option('--api-port', type=int, default=None, help='REST API port')
@click.option('--no-api', is_flag=True, help='Disable REST API')
@click.pass_context
def serve(ctx, peer, api_port, no_api):
    """Open a sync session with PEER and keep it until interrupted."""
    config = ctx.obj['config']
    api_port = api_port or config.api_port

    def show_status(status: TransferStatus):
        if status.kind is StatusKind.SUCCESS:
            console.print(f"[green]✓ {status.name}[/green]")
        elif status.kind is StatusKind.ERROR:
            console.print(f"[red]✗ {status.message}[/red]")

    async def run():
        coordinator = SyncCoordinator(config)
        coordinator.status.on_status(show_status)
        coordinator.on_files_changed(
            lambda files: console.print(f"[dim]{len(files)} file(s) in sync folder[/dim]")
        )

        try:
            await coordinator.on_connection_established(peer)

            console.print(Panel.fit(
                f"[bold green]Sync Session Started[/bold green]\n\n"
                f"Peer: [cyan]{peer}[/cyan]\n"
                f"Transfer Port: [yellow]{config.transfer_port}[/yellow]\n"
                f"Folder: [blue]{coordinator.folder}[/blue]",
                title="Session Info"
            ))

            if not no_api:
                console.print(f"\n[dim]REST API available at http://localhost:{api_port}[/dim]")
                console.print(f"[dim]API docs at http://localhost:{api_port}/docs[/dim]\n")

                from .api import run_api_server
                await run_api_server(coordinator, port=api_port)
            else:
                console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
                while True:
                    await asyncio.sleep(1)

        finally:
            await coordinator.on_connection_terminated()
            console.print("[green]Session closed[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
    except SyncError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--peer', required=True, help='Peer address')
@click.pass_context
def push(ctx, files, peer):
    """Send FILES to PEER, retrying each on failure."""
    config = ctx.obj['config']

    async def run() -> int:
        publisher = StatusPublisher()
        client = TransferClient(
            publisher,
            port=config.peer_port or config.transfer_port,
            chunk_size=config.chunk_size,
            connect_timeout=config.connect_timeout,
        )
        failed = 0

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Connecting...", total=100)

            def update_progress(status: TransferStatus):
                if status.kind is StatusKind.SENDING:
                    progress.update(task, completed=status.progress,
                                    description=f"Sending {status.name}")

            publisher.on_status(update_progress)

            for file_path in files:
                file_path = Path(file_path)
                progress.update(task, completed=0, description=f"Sending {file_path.name}")
                try:
                    await send_with_retry(
                        lambda file_path=file_path: client.send_file(file_path, peer),
                        f"push of {file_path.name}",
                        max_attempts=config.max_attempts,
                        backoff=config.retry_backoff,
                    )
                    console.print(f"[green]✓ {file_path.name} "
                                  f"({format_size(file_path.stat().st_size)})[/green]")
                except SyncError as e:
                    failed += 1
                    console.print(f"[red]✗ {file_path.name}: {e}[/red]")

        if failed:
            console.print(f"\n[yellow]Sync completed with errors ({failed} failed)[/yellow]")
        else:
            console.print("\n[green]Sync completed successfully[/green]")
        return failed

    if asyncio.run(run()):
        sys.exit(1)


@cli.command()
@click.argument('name')
@click.option('--peer', required=True, help='Peer address')
@click.pass_context
def delete(ctx, name, peer):
    """Tell PEER to delete NAME from its sync folder."""
    config = ctx.obj['config']

    async def run():
        client = TransferClient(
            StatusPublisher(),
            port=config.peer_port or config.transfer_port,
            connect_timeout=config.connect_timeout,
        )
        await send_with_retry(
            lambda: client.send_delete(name, peer),
            f"delete of {name}",
            max_attempts=config.max_attempts,
            backoff=config.retry_backoff,
        )

    try:
        asyncio.run(run())
    except SyncError as e:
        console.print(f"[red]✗ Delete failed: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ Delete of {name} sent to {peer}[/green]")


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
