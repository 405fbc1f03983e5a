#!/usr/bin/env python3
"""
Swarm Discovery CLI

Command-line interface for announcing and finding peers on a topic.

Usage:
    swarm-discovery announce TOPIC --port 10000   # Announce a service
    swarm-discovery lookup TOPIC                  # Print peers as found
    swarm-discovery ping                          # Ping bootstrap nodes
    swarm-discovery holepunchable                 # Check NAT behaviour

TOPIC is either 64 hex characters (a raw 32-byte key) or any other string,
which is hashed with SHA-256.
"""

import asyncio
import hashlib
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.logging import RichHandler

from .config import load_config
from .errors import DiscoveryError
from .peer import Endpoint, PeerRecord
from .registry import create_discovery

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def topic_key(topic: str) -> bytes:
    """Raw key for 64 hex characters, SHA-256 of anything else."""
    if len(topic) == 64:
        try:
            return bytes.fromhex(topic)
        except ValueError:
            pass
    return hashlib.sha256(topic.encode()).digest()


def print_peer(peer: PeerRecord):
    source = 'lan' if peer.local else f"dht via {peer.referrer.host}:{peer.referrer.port}"
    console.print(f"[green]peer[/green] [cyan]{peer.host}:{peer.port}[/cyan] [dim]({source})[/dim]")


async def run_until_interrupted(discovery):
    console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
    try:
        while True:
            await asyncio.sleep(1)
    finally:
        await discovery.destroy()
        console.print("[green]Discovery stopped[/green]")


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(), default=None,
              help='JSON config file')
@click.option('--bootstrap', multiple=True, help='Bootstrap node (host:port)')
@click.option('--port', default=None, type=int, help='DHT UDP port')
@click.option('--domain', default=None, help='mDNS domain suffix')
@click.pass_context
def cli(ctx, verbose, config_path, bootstrap, port, domain):
    """Swarm Discovery - find peers on a topic over the DHT and the LAN."""
    config = load_config(Path(config_path) if config_path else None)
    setup_logging(verbose, config.log_level)

    if bootstrap:
        config.bootstrap = []
        for node in bootstrap:
            try:
                config.bootstrap.append(Endpoint.parse(node))
            except ValueError:
                raise click.BadParameter(f"{node} (use host:port)", param_hint='--bootstrap')
    if port is not None:
        config.port = port
    if domain:
        config.domain = domain

    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.argument('topic')
@click.option('--port', '-p', required=True, type=int, help='Port the service listens on')
@click.option('--local-port', type=int, default=None, help='Port announced on the LAN')
@click.option('--local-address', default=None, help='LAN address (host:port) for same-network peers')
@click.option('--lookup', is_flag=True, help='Also look up peers')
@click.pass_context
def announce(ctx, topic, port, local_port, local_address, lookup):
    """Announce a service on TOPIC."""
    config = ctx.obj['config']
    key = topic_key(topic)

    async def run():
        discovery = await create_discovery(config)
        session = discovery.announce(
            key, port=port, local_port=local_port, lookup=lookup,
            local_address=local_address,
        )
        session.on('peer', print_peer)
        session.on('update', lambda err: err and console.print(f"[red]DHT round failed: {err}[/red]"))

        console.print(Panel.fit(
            f"[bold green]Announcing[/bold green]\n\n"
            f"Topic: [cyan]{key.hex()[:32]}...[/cyan]\n"
            f"Domain: [blue]{session.domain}[/blue]\n"
            f"Port: [yellow]{port}[/yellow]\n"
            f"DHT Port: [yellow]{discovery.dht.port}[/yellow]\n"
            f"Lookup: [yellow]{'Yes' if lookup else 'No'}[/yellow]",
            title="Session"
        ))

        await run_until_interrupted(discovery)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.argument('topic')
@click.option('--one', is_flag=True, help='Stop after the first peer')
@click.pass_context
def lookup(ctx, topic, one):
    """Print peers announcing TOPIC as they are found."""
    config = ctx.obj['config']
    key = topic_key(topic)

    async def run():
        discovery = await create_discovery(config)

        if one:
            try:
                print_peer(await discovery.lookup_one(key))
            except DiscoveryError as e:
                console.print(f"[red]✗ {e}[/red]")
            finally:
                await discovery.destroy()
            return

        session = discovery.lookup(key)
        session.on('peer', print_peer)
        console.print(f"[dim]Looking up {session.domain}...[/dim]")
        await run_until_interrupted(discovery)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.pass_context
def ping(ctx):
    """Ping every bootstrap node."""
    config = ctx.obj['config']

    async def run():
        discovery = await create_discovery(config)
        try:
            results = await discovery.ping()
        except DiscoveryError as e:
            console.print(f"[red]✗ {e}[/red]")
            return
        finally:
            await discovery.destroy()

        table = Table(title="Bootstrap Nodes")
        table.add_column("Node", style="cyan")
        table.add_column("RTT", justify="right", style="yellow")
        table.add_column("Seen As", style="green")

        for result in results:
            table.add_row(str(result.bootstrap), f"{result.rtt:.1f} ms", str(result.pong))

        console.print(table)

    asyncio.run(run())


@cli.command()
@click.pass_context
def holepunchable(ctx):
    """Check whether our NAT allows holepunching."""
    config = ctx.obj['config']

    async def run():
        discovery = await create_discovery(config)
        try:
            punchable = await discovery.holepunchable()
        except DiscoveryError as e:
            console.print(f"[red]✗ {e}[/red]")
            return
        finally:
            await discovery.destroy()

        if punchable:
            console.print("[green]✓ Holepunchable (consistent external address)[/green]")
        else:
            console.print("[yellow]✗ Not holepunchable (address changes per peer)[/yellow]")

    asyncio.run(run())


if __name__ == '__main__':
    cli()
