"""Command-line host for the NavReach engine."""

import asyncio
import json
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from navreach.config import Config, set_config
from navreach.events import (
    NewTurnMarker,
    NodeStatusNotice,
    OutputChannel,
    StreamEvent,
    TextChunk,
    ToolCallNotice,
    ToolResultNotice,
)
from navreach.logging import configure_logging, get_logger
from navreach.playbook import InMemoryPlaybookStore, RemotePlaybookStore
from navreach.protocol import ChatRequest
from navreach.remote import RemoteDataClient
from navreach.session import SessionController
from navreach.usage import RemoteUsageBackend
from navreach.workflows import list_workflows

log = get_logger(__name__)
console = Console()

cli = typer.Typer(help="NavReach - LLM agent execution engine")


def _load_config(config: str, model: str = "", provider: str = "", verbose: bool = False) -> Config:
    if verbose:
        os.environ["NAVREACH_LOGGING__LEVEL"] = "DEBUG"
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def _short(value: object, limit: int = 160) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def render_event(event: StreamEvent) -> None:
    """Print one stream event to the terminal."""
    if isinstance(event, TextChunk):
        if event.is_narration:
            console.print(f"[dim italic]{escape(event.content)}[/]")
        else:
            console.print(escape(event.content))
    elif isinstance(event, ToolCallNotice):
        console.print(f"[cyan]> {event.name}[/] {escape(_short(event.args))}")
    elif isinstance(event, ToolResultNotice):
        style = {"success": "green", "error": "red"}.get(event.status, "yellow")
        console.print(f"[{style}]< {event.status}[/] ({event.duration_ms} ms) {escape(_short(event.result))}")
    elif isinstance(event, NodeStatusNotice):
        console.print(f"[magenta]node {event.node_id}: {event.status}[/] {escape(event.message or '')}")
    elif isinstance(event, NewTurnMarker):
        console.rule("next pass")


async def _run_request(cfg: Config, request: ChatRequest) -> bool:
    remote = RemoteDataClient.from_config(cfg.remote)
    controller = SessionController(
        config=cfg,
        remote=remote,
        usage_backend=RemoteUsageBackend(remote, cfg.usage) if remote else None,
        playbook_store=RemotePlaybookStore(remote) if remote else InMemoryPlaybookStore(),
    )
    handle = controller.open_session()
    channel = OutputChannel()

    async def _drain() -> None:
        async for event in channel:
            render_event(event)

    drain_task = asyncio.create_task(_drain())
    try:
        result = await controller.chat(handle, request, channel)
    except asyncio.CancelledError:
        controller.stop(handle)
        raise
    finally:
        await drain_task
        controller.close(handle)
        if remote is not None:
            await remote.close()

    if not result.success:
        console.print(f"[red]Request failed:[/] {result.error}")
    return result.success


@cli.command()
def run(
    prompt: str = typer.Argument(..., help="Task for the agent, or /workflow args"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    max_iterations: int = typer.Option(10, "-n", "--max-iterations", help="Iteration limit"),
    infinite: bool = typer.Option(False, "--infinite", help="Keep working on the goal until stopped"),
    speed: str = typer.Option("normal", "-s", "--speed", help="slow, normal or fast"),
    no_tools: bool = typer.Option(False, "--no-tools", help="Plain chat without tools"),
    token: str = typer.Option("", "--token", help="Remote data access token"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one request and stream its progress."""
    cfg = _load_config(config, model, provider, verbose)
    request = ChatRequest.model_validate({
        "conversation": [{"role": "user", "content": prompt}],
        "maxIterations": max_iterations,
        "infiniteMode": infinite,
        "speed": speed,
        "toolsEnabled": not no_tools,
        "credentials": {"accessToken": token} if token else None,
    })
    try:
        ok = asyncio.run(_run_request(cfg, request))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/]")
        raise typer.Exit(code=130)
    if not ok:
        raise typer.Exit(code=1)


@cli.command()
def workflows(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List slash-command workflow aliases."""
    cfg = _load_config(config)
    found = list_workflows(cfg.resolved_workflows_path())
    if not found:
        console.print(f"No workflows in {cfg.resolved_workflows_path()}")
        return
    table = Table(title="Workflows")
    table.add_column("Command", style="cyan")
    table.add_column("File")
    for workflow in found:
        table.add_row(f"/{workflow.name}", str(workflow.path))
    console.print(table)


@cli.command()
def version() -> None:
    """Show version information."""
    from navreach import __version__
    console.print(f"NavReach v{__version__}")


if __name__ == "__main__":
    cli()
