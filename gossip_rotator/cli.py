# Copyright 2025 Gossip Rotator Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
gossip-rotator command-line interface.

Runs the rotation sidecar and offers read-only helpers for inspecting the
cluster keyring and key files. Key material is never printed; only
fingerprints are.
"""

import json
from pathlib import Path

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from . import __version__
from .change_detector import KeyMaterial, short_fingerprint
from .config import RotatorConfig
from .error_mapping import ClusterAPIError, ConfigurationError, MalformedKeyError
from .infrastructure.consul.client import ConsulClusterAPI
from .keyring import KeyringClient
from .logging_config import configure_logging

app = typer.Typer(
    name="gossip-rotator",
    help="Gossip encryption keyring rotation sidecar",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def load_config(config_file: str | None = None, **overrides) -> RotatorConfig:
    """Environment, then the optional YAML file, then CLI overrides."""
    config = RotatorConfig.from_environment()
    if config_file:
        config = RotatorConfig.from_yaml(config_file, base=config)
    return config.with_overrides(**overrides)


@app.command()
def run(
    key_file: str | None = typer.Option(None, "--key-file", "-k", help="Path to the mounted gossip key"),
    config_file: str | None = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    consul_addr: str | None = typer.Option(None, "--consul-addr", help="Consul HTTP API address"),
    pod_ip: str | None = typer.Option(None, "--pod-ip", help="This pod's IP, compared with the leader address"),
    log_level: str | None = typer.Option(None, "--log-level", "-l", help="trace, debug, info, warn or error"),
    log_json: bool | None = typer.Option(None, "--log-json/--log-text", help="Log format"),
    reconcile_interval: float | None = typer.Option(
        None, "--reconcile-interval", help="Seconds between safety reconcile ticks"
    ),
    metrics_port: int | None = typer.Option(None, "--metrics-port", help="Prometheus port (0 disables)"),
):
    """Watch the key file and rotate the cluster keyring when it changes"""
    from .sidecar import RotatorSidecar

    try:
        config = load_config(
            config_file,
            gossip_key_file=key_file,
            consul_http_addr=consul_addr,
            pod_ip=pod_ip,
            log_level=log_level,
            log_json=log_json,
            reconcile_interval_seconds=reconcile_interval,
            metrics_port=metrics_port,
        )
        configure_logging(config.log_level, json_output=config.log_json)
        sidecar = RotatorSidecar(config)
        sidecar.shutdown.install_signal_handlers()
        sidecar.run()
    except (ConfigurationError, MalformedKeyError) as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


@app.command("keyring")
def show_keyring(
    config_file: str | None = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    consul_addr: str | None = typer.Option(None, "--consul-addr", help="Consul HTTP API address"),
    output_format: str = typer.Option("table", "--output", "-o", help="Output format (table, json)"),
):
    """Show installed gossip keys by fingerprint"""
    try:
        config = load_config(config_file, consul_http_addr=consul_addr)
        cluster = ConsulClusterAPI.from_config(config)
    except ConfigurationError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    try:
        listing = KeyringClient(cluster, timeout=config.rpc_timeout_seconds).list()
    except ClusterAPIError as e:
        err_console.print(f"[red]Error listing keyring:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        cluster.close()

    rows = [
        {"fingerprint": entry.short, "primary": entry.primary, "members": entry.members}
        for entry in listing.entries
    ]
    if output_format == "json":
        payload = {"keys": rows, "total_members": listing.total_members, "pools": list(listing.pool_names)}
        rprint(json.dumps(payload, indent=2))
        return

    table = Table(title="Gossip Keyring")
    table.add_column("Fingerprint", style="cyan")
    table.add_column("Primary", style="green")
    table.add_column("Members", justify="right")
    for row in rows:
        propagated = row["members"] >= listing.total_members > 0
        style = "green" if propagated else "yellow"
        table.add_row(
            row["fingerprint"],
            "yes" if row["primary"] else "",
            f"[{style}]{row['members']}/{listing.total_members}[/{style}]",
        )
    console.print(table)


@app.command()
def fingerprint(path: Path = typer.Argument(..., help="Key file to fingerprint")):
    """Print the fingerprint of a key file"""
    try:
        material = KeyMaterial.from_bytes(path.read_bytes())
    except OSError as e:
        err_console.print(f"[red]Error:[/red] cannot read {path}: {e}")
        raise typer.Exit(1) from e
    except MalformedKeyError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    rprint(f"{short_fingerprint(material.fingerprint)}  {material.fingerprint}")


@app.command()
def version():
    """Show version information"""
    rprint(f"gossip-rotator {__version__}")


if __name__ == "__main__":
    app()
