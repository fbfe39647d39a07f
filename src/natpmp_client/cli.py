"""
Command-line interface for the NAT-PMP client.
"""
import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from natpmp_client.client import Client
from natpmp_client.config import ClientConfig
from natpmp_client.exceptions import NATPMPError
from natpmp_client.mappings import Mapping


console = Console()


def _configure_logging(log_level: str):
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise click.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


def _load_config(
    config: Optional[str],
    gateway: Optional[str],
    client_port: Optional[int],
    log_level: Optional[str],
) -> ClientConfig:
    """Build the configuration from a file and CLI overrides."""
    if config and Path(config).exists():
        client_config = ClientConfig.from_file(config)
    else:
        client_config = ClientConfig()

    # Override with CLI arguments if provided
    if gateway:
        client_config.gateway = gateway
    if client_port is not None:
        client_config.client_port = client_port
    if log_level:
        client_config.log_level = log_level

    if not client_config.gateway:
        raise click.UsageError("A gateway address is required (--gateway or config file)")

    try:
        client_config.validate()
    except ValueError as e:
        raise click.UsageError(str(e))

    _configure_logging(client_config.log_level)
    return client_config


def _client_options(func):
    """Options shared by every command that talks to a gateway."""
    func = click.option("--log-level", "-l", default=None, help="Log level")(func)
    func = click.option("--client-port", type=int, default=None,
                        help="Local UDP port (default 5350, 0 for any)")(func)
    func = click.option("--gateway", "-g", default=None, help="Gateway IPv4 address")(func)
    func = click.option("--config", "-c", type=click.Path(), help="Path to configuration file")(func)
    return func


def _run(coro):
    try:
        return asyncio.run(coro)
    except NATPMPError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise SystemExit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")


def _mapping_table(mapping: Mapping) -> Table:
    table = Table(title="Port Mapping")
    table.add_column("Protocol", style="cyan")
    table.add_column("Private Port", style="blue")
    table.add_column("Public Port", style="green")
    table.add_column("Lifetime", style="yellow")
    table.add_row(
        mapping.protocol.label,
        str(mapping.private_port),
        str(mapping.public_port),
        f"{mapping.lifetime}s",
    )
    return table


@click.group()
def main():
    """NAT-PMP Client - query external addresses and map ports on a NAT gateway."""
    pass


@main.command("external-ip")
@_client_options
def external_ip(config, gateway, client_port, log_level):
    """Print the gateway's external IPv4 address."""
    client_config = _load_config(config, gateway, client_port, log_level)
    _run(_external_ip(client_config))


async def _external_ip(client_config: ClientConfig):
    async with Client(config=client_config) as client:
        address = await client.get_external_ip()
    console.print(f"[green]{address}[/green]")


@main.command("map")
@_client_options
@click.argument("protocol", type=click.Choice(["tcp", "udp"], case_sensitive=False))
@click.argument("private_port", type=int)
@click.option("--public-port", "-P", type=int, default=0, help="Suggested public port (0 lets the gateway choose)")
@click.option("--lifetime", "-t", type=int, default=None, help="Requested lifetime in seconds")
@click.option("--hold", is_flag=True, help="Keep renewing the mapping until interrupted")
def map_port(config, gateway, client_port, log_level, protocol, private_port, public_port, lifetime, hold):
    """Create a port mapping."""
    client_config = _load_config(config, gateway, client_port, log_level)
    _run(_map_port(client_config, protocol, private_port, public_port, lifetime, hold))


async def _map_port(
    client_config: ClientConfig,
    protocol: str,
    private_port: int,
    public_port: int,
    lifetime: Optional[int],
    hold: bool,
):
    async with Client(config=client_config) as client:
        mapping = await client.map_port(protocol, private_port, public_port, lifetime)
        console.print(_mapping_table(mapping))

        if not hold:
            return

        console.print(Panel.fit(
            "[bold green]Holding mapping[/bold green]\n"
            "Press Ctrl+C to release it",
            border_style="green"
        ))
        try:
            while True:
                await asyncio.sleep(10)
        finally:
            await client.unmap_port(protocol, private_port)
            console.print("[green]Mapping released[/green]")


@main.command("unmap")
@_client_options
@click.argument("protocol", type=click.Choice(["tcp", "udp"], case_sensitive=False))
@click.argument("private_port", type=int)
def unmap_port(config, gateway, client_port, log_level, protocol, private_port):
    """Delete a port mapping (private port 0 deletes all of PROTOCOL)."""
    client_config = _load_config(config, gateway, client_port, log_level)
    _run(_unmap_port(client_config, protocol, private_port))


async def _unmap_port(client_config: ClientConfig, protocol: str, private_port: int):
    async with Client(config=client_config) as client:
        await client.unmap_port(protocol, private_port)
    console.print(f"[green]Deleted {protocol} mapping for port {private_port}[/green]")


@main.command("generate-config")
@click.argument("output", type=click.Path())
@click.option("--gateway", "-g", default=None, help="Gateway IPv4 address")
@click.option("--client-port", type=int, default=5350, help="Local UDP port")
@click.option("--lifetime", "-t", type=int, default=7200, help="Default mapping lifetime")
def generate_config(output, gateway, client_port, lifetime):
    """Generate a configuration file."""

    config = ClientConfig(
        gateway=gateway,
        client_port=client_port,
        default_lifetime=lifetime,
    )
    try:
        config.validate()
    except ValueError as e:
        raise click.UsageError(str(e))

    config.to_file(output)
    console.print(f"[green]Configuration saved to {output}[/green]")


@main.command()
def version():
    """Display version information."""
    from . import __version__
    console.print(f"[cyan]NAT-PMP Client v{__version__}[/cyan]")


if __name__ == "__main__":
    main()
