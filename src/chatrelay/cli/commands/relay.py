"""
Relay commands.

Usage:
    chatrelay validate [--config PATH]
    chatrelay start [--config PATH] [--log-level LEVEL]
    chatrelay status [--url URL]
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import httpx
import typer
import uvicorn

from chatrelay.cli.output import (
    console,
    print_error,
    print_info,
    print_success,
    print_table,
    print_warning,
    setup_logging,
)
from chatrelay.config import Config, ConfigurationError, load_config, validate_config
from chatrelay.relay.exceptions import TransportError
from chatrelay.relay.orchestrator import RelayOrchestrator
from chatrelay.server import create_app

logger = logging.getLogger(__name__)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Config file (default: ~/.chatrelay/config.yaml).",
    ),
]


def _load(config_path: Optional[Path]) -> Config:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        print_error(str(e))
        raise typer.Exit(1)


def validate(config_path: ConfigOption = None) -> None:
    """Check the configuration without connecting to anything."""
    config = _load(config_path)
    problems = validate_config(config)

    if problems:
        print_table(["#", "Problem"], [[i, p] for i, p in enumerate(problems, 1)], title="Problems")
        print_error(f"{len(problems)} problem(s) found")
        raise typer.Exit(1)

    print_success(
        f"Configuration OK: {len(config.slack.workspaces)} Slack workspace(s), "
        f"{len(config.channel_mappings)} channel mapping(s)"
    )


async def _serve(orchestrator: RelayOrchestrator, config: Config) -> None:
    try:
        await orchestrator.start()
        if config.webhook.enable:
            server = uvicorn.Server(
                uvicorn.Config(
                    create_app(orchestrator),
                    host=config.webhook.host,
                    port=config.webhook.port,
                    log_config=None,
                )
            )
            print_info(f"Webhook listening on http://{config.webhook.host}:{config.webhook.port}")
            await server.serve()
        else:
            await asyncio.Event().wait()
    finally:
        await orchestrator.aclose()


def start(
    config_path: ConfigOption = None,
    log_level: Annotated[
        Optional[str],
        typer.Option(
            "--log-level",
            "-l",
            help="Override options.log_level (DEBUG, INFO, WARNING, ERROR).",
        ),
    ] = None,
) -> None:
    """Run the relay until stopped with Ctrl+C."""
    config = _load(config_path)
    setup_logging(log_level or config.options.log_level)

    problems = validate_config(config)
    for problem in problems:
        print_warning(problem)

    try:
        orchestrator = RelayOrchestrator(config)
        asyncio.run(_serve(orchestrator, config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user[/yellow]")
    except (ConfigurationError, TransportError) as e:
        print_error(str(e))
        raise typer.Exit(1)


def status(
    url: Annotated[
        str,
        typer.Option("--url", "-u", help="Base URL of a running relay's webhook server."),
    ] = "http://127.0.0.1:8080",
) -> None:
    """Show the status of a running relay."""
    try:
        response = httpx.get(f"{url.rstrip('/')}/status", timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        print_error(f"Cannot reach relay at {url}: {e}")
        raise typer.Exit(1)

    data = response.json()
    counters = data.get("counters", {})

    state = "[green]running[/green]" if data.get("running") else "[yellow]stopped[/yellow]"
    console.print(f"Relay: {state}  (started {data.get('started_at') or '-'})")

    rows = [
        [name, "[green]connected[/green]" if connected else "[red]disconnected[/red]"]
        for name, connected in data.get("workspaces", {}).items()
    ]
    print_table(["Workspace", "Transport"], rows, title="Transports")
    print_table(
        ["Slack → Lark", "Lark → Slack", "Errors"],
        [[counters.get("slack_to_lark", 0), counters.get("lark_to_slack", 0), counters.get("errors", 0)]],
        title="Counters",
    )
