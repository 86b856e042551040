"""CLI for the botharbor deployment supervisor."""

import sys
import time
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import SupervisorConfig, load_config
from .errors import BotharborError
from .logging_setup import setup_logging
from .logstore import LogLine, LogStream
from .network import find_free_port
from .registry import Stage
from .resolver import StartCommandResolver


console = Console()

_STREAM_STYLE = {
    LogStream.SYSTEM: "cyan",
    LogStream.STDOUT: "white",
    LogStream.STDERR: "red",
    LogStream.INPUT: "green",
}


def _print_line(kind: str, line: LogLine) -> None:
    if kind == "qr":
        console.print("[yellow]QR code received (see deployment state)[/yellow]")
        return
    style = _STREAM_STYLE.get(line.stream, "white")
    console.print(f"[dim]{line.id:>5}[/dim] [{style}]{line.stream.value:<6}[/{style}] {line.message}", markup=True, highlight=False)


@click.group()
@click.version_option(version=__version__, prog_name="botharbor")
def cli():
    """botharbor – multi-tenant bot deployment supervisor."""
    pass


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML config file")
@click.option("--host", default=None, help="Bind address (default: BOTHARBOR_RUNNER_HOST or 0.0.0.0)")
@click.option("--port", "-p", default=None, type=int, help="Listen port (default: BOTHARBOR_RUNNER_PORT or 8801)")
def serve(config_path: Optional[str], host: Optional[str], port: Optional[int]):
    """Run the HTTP API."""
    import uvicorn

    from .runner_api import RunnerApiSettings, create_runner_api
    from .service import BotDeployService

    settings = RunnerApiSettings()
    try:
        config = load_config(config_path or settings.config_path)
    except (BotharborError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    log_file = setup_logging()
    console.print(f"[dim]Logging to {log_file}[/dim]")
    app = create_runner_api(service=BotDeployService(config), settings=settings)
    uvicorn.run(app, host=host or settings.host, port=port or settings.port)


@cli.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False))
@click.option("--server-id", "-s", required=True, help="Tenant key")
@click.option("--server-name", "-n", default="", help="Display name")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML config file")
@click.option("--follow", "-f", is_flag=True, help="Print deployment logs as they arrive")
def deploy(archive: str, server_id: str, server_name: str, config_path: Optional[str], follow: bool):
    """Deploy ARCHIVE in-process and keep the bot running until Ctrl+C."""
    from .service import BotDeployService

    setup_logging()
    try:
        config = load_config(config_path)
        service = BotDeployService(config)
    except (BotharborError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    try:
        data = Path(archive).read_bytes()
        deployment_id = service.deploy(data, Path(archive).name, server_name, server_id)
        console.print(f"[bold]Deployment {deployment_id}[/bold]")
        unsubscribe = service.subscribe_logs(server_id, deployment_id, _print_line) if follow else None

        while True:
            snap = service.get_state(server_id, deployment_id)
            if snap is None or snap.stage in (Stage.RUNNING, Stage.STOPPED, Stage.ERROR):
                break
            time.sleep(0.5)

        if snap is None or snap.stage is not Stage.RUNNING:
            if snap is not None:
                console.print(f"[red]Deployment ended in {snap.stage.value}: {snap.error or snap.status}[/red]")
            if unsubscribe:
                unsubscribe()
            service.shutdown()
            sys.exit(1)

        console.print(f"[green]Running on port {snap.port} (pid {snap.pid})[/green]")
        console.print("\n[dim]Press Ctrl+C to stop the bot[/dim]\n")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Shutting down...[/yellow]")
        if unsubscribe:
            unsubscribe()
        service.shutdown()
    except BotharborError as e:
        console.print(f"[red]Error: {e}[/red]")
        service.shutdown()
        sys.exit(1)


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
def candidates(directory: str):
    """Show the start commands that would be tried for DIRECTORY."""
    found = StartCommandResolver().resolve(directory)
    table = Table(title=f"Start candidates: {directory}")
    table.add_column("#", style="dim")
    table.add_column("Command", style="cyan")
    table.add_column("Description")
    for i, cand in enumerate(found, 1):
        table.add_row(str(i), cand.display, cand.description)
    console.print(table)


@cli.command("free-port")
@click.option("--start", default=10000, type=int, help="First port to probe")
@click.option("--end", default=65535, type=int, help="Last port to probe")
def free_port(start: int, end: int):
    """Print a currently bindable port."""
    try:
        console.print(str(find_free_port(start, end)))
    except BotharborError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument("server_id")
@click.argument("deployment_id")
@click.option("--url", "-u", default="http://localhost:8801", help="API base URL")
@click.option("--token", envvar="BOTHARBOR_RUNNER_TOKEN", default=None, help="X-Runner-Token value")
def status(server_id: str, deployment_id: str, url: str, token: Optional[str]):
    """Show the state of a deployment on a running API."""
    import httpx

    from .client import RunnerClient

    try:
        with RunnerClient(url, token=token) as client:
            state = client.get_state(server_id, deployment_id)
    except httpx.HTTPError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if state is None:
        console.print(f"[red]Deployment not found: {server_id}/{deployment_id}[/red]")
        sys.exit(1)

    table = Table(title=f"Deployment {deployment_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key in ("server_name", "stage", "status", "error", "port", "pid", "restart_attempts"):
        table.add_row(key, "" if state.get(key) is None else str(state.get(key)))
    console.print(table)
    for line in state.get("logs", [])[-20:]:
        _print_line("log", LogLine.from_dict(line))


@cli.command()
@click.argument("server_id")
@click.argument("deployment_id")
@click.option("--url", "-u", default="http://localhost:8801", help="API base URL")
@click.option("--token", envvar="BOTHARBOR_RUNNER_TOKEN", default=None, help="X-Runner-Token value")
@click.option("--remove", is_flag=True, help="Also delete the deployment files")
def stop(server_id: str, deployment_id: str, url: str, token: Optional[str], remove: bool):
    """Stop a deployment on a running API."""
    import httpx

    from .client import RunnerClient

    try:
        with RunnerClient(url, token=token) as client:
            if remove:
                client.complete_stop(server_id, deployment_id)
            else:
                client.stop(server_id, deployment_id)
    except httpx.HTTPError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    console.print("[green]Deployment removed[/green]" if remove else "[green]Bot stopped[/green]")


@cli.command("init-config")
@click.option("--output", "-o", default="botharbor.yaml", help="Output file")
def init_config(output: str):
    """Write the default configuration as YAML."""
    path = Path(output)
    if path.exists():
        console.print(f"[red]Error: {path} already exists[/red]")
        sys.exit(1)
    SupervisorConfig().to_yaml(path)
    console.print(f"[green]✓ Created: {path}[/green]")


def main():
    cli()


if __name__ == "__main__":
    main()
