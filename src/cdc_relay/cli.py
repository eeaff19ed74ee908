"""Typer CLI for the CDC relay."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cdc_relay.config.loader import load_relay_config
from cdc_relay.config.models import RelayConfig
from cdc_relay.errors import RelayError
from cdc_relay.events.envelope import ClassifiedEvent, Operation
from cdc_relay.observability.health import Status, check_relay_health
from cdc_relay.observability.logging import configure_from
from cdc_relay.pipeline.bridge import Bridge
from cdc_relay.pipeline.consumer import QueueConsumer
from cdc_relay.pipeline.signals import (
    StopToken,
    install_signal_handlers,
    remove_signal_handlers,
)
from cdc_relay.sinks.rabbitmq import RabbitMQSink
from cdc_relay.sources.kafka import KafkaEventSource

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="cdc-relay", help="Kafka → RabbitMQ CDC relay")

_OPERATION_STYLES = {
    Operation.CREATE: "green",
    Operation.UPDATE: "yellow",
    Operation.DELETE: "red",
    Operation.READ: "cyan",
    Operation.UNKNOWN: "magenta",
}


def _load(config_path: str | None) -> RelayConfig:
    if config_path is not None and not Path(config_path).exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(1)
    try:
        config = load_relay_config(Path(config_path) if config_path else None)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid config:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc
    configure_from(config.logging)
    return config


def _run_until_stopped(
    component: str, main: Callable[[StopToken], Awaitable[None]]
) -> None:
    """Run *main* until SIGINT / SIGTERM; fatal relay errors exit with code 1."""

    async def _run() -> None:
        stop = StopToken()
        install_signal_handlers(stop)
        try:
            await main(stop)
        finally:
            remove_signal_handlers()

    try:
        asyncio.run(_run())
    except RelayError as exc:
        logger.error(
            f"{component}.fatal", error=str(exc), error_type=type(exc).__name__
        )
        console.print(f"[red]{component} stopped:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


@app.command()
def bridge(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Relay CDC topics from Kafka into RabbitMQ queues."""
    config = _load(config_path)

    source = KafkaEventSource(config.kafka)
    sink = RabbitMQSink(
        config.rabbitmq,
        config.retry,
        poll_timeout=config.bridge.poll_timeout_seconds,
    )
    relay = Bridge(
        source,
        sink,
        queue_prefix=config.bridge.queue_prefix,
        poll_timeout=config.bridge.poll_timeout_seconds,
    )

    console.print(
        f"[yellow]Bridging[/yellow] {source.pattern} → "
        f"{config.bridge.queue_prefix}.* on {config.rabbitmq.host}"
    )
    _run_until_stopped("bridge", relay.run)


@app.command()
def consume(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to consume"),
    echo: bool = typer.Option(False, "--echo", help="Print each event to the console"),
) -> None:
    """Consume one relay queue and classify its CDC events."""
    config = _load(config_path)
    queue_name = queue or config.consumer.queue_name

    async def print_event(event: ClassifiedEvent) -> None:
        style = _OPERATION_STYLES[event.operation]
        console.print(
            f"[{style}]{event.operation}[/{style}] {event.table or '-'} "
            f"at {event.timestamp.isoformat()}"
        )
        for label, snapshot in (("after", event.after), ("before", event.before)):
            if snapshot is not None:
                row = snapshot.model_dump(exclude_none=True)
                console.print(f"  {label}:  {escape(str(row))}")

    sink = RabbitMQSink(
        config.rabbitmq,
        config.retry,
        poll_timeout=config.consumer.poll_timeout_seconds,
    )
    consumer = QueueConsumer(
        sink,
        queue_name,
        on_event=print_event if echo else None,
        dead_letter=config.dead_letter,
        prefetch=config.consumer.prefetch_count,
    )

    console.print(f"[yellow]Consuming from:[/yellow] {queue_name}")
    _run_until_stopped("consumer", consumer.run)


@app.command()
def validate(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Validate a relay configuration file and print the resolved settings."""
    config = _load(config_path)
    source = config_path or "(defaults)"
    console.print(f"[green]Valid[/green] — {source}")
    console.print(
        f"  kafka:    {config.kafka.bootstrap_servers} "
        f"group={config.kafka.group_id} pattern={config.kafka.topic_pattern} "
        f"commit={config.kafka.commit_policy}"
    )
    console.print(
        f"  rabbitmq: {config.rabbitmq.username}@{config.rabbitmq.host}:"
        f"{config.rabbitmq.port}{config.rabbitmq.virtual_host}"
    )
    console.print(f"  bridge:   queues {config.bridge.queue_prefix}.<table>")
    console.print(
        f"  consumer: {config.consumer.queue_name} "
        f"prefetch={config.consumer.prefetch_count}"
    )
    dlq = config.dead_letter
    if dlq.enabled:
        console.print(
            f"  dead letter: <queue>.{dlq.queue_suffix} after {dlq.max_retries} retries"
        )
    else:
        console.print("  dead letter: [dim]disabled[/dim]")


@app.command()
def health(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Check connectivity to Kafka and RabbitMQ."""
    config = _load(config_path)
    result = asyncio.run(check_relay_health(config))

    table = Table(title="Relay Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")

    for c in result.components:
        style = "green" if c.status == Status.HEALTHY else "red"
        table.add_row(c.name, f"[{style}]{c.status}[/{style}]", c.detail)

    console.print(table)
    if not result.healthy:
        raise typer.Exit(1)
