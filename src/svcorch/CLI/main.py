"""
Command Line Interface for svcorch.
"""
import asyncio
import os
import signal
from pathlib import Path

import click

from ..PARSERS.compose_parser import ComposeParser
from ..MANAGERS.event_log import JsonLinesEventSink, LoggingEventSink
from ..MANAGERS.secret_resolver import ChainedSecretProvider, DotenvSecretProvider, EnvironmentSecretProvider
from ..MANAGERS.service_orchestrator import ServiceOrchestrator, inspect_persisted, stop_persisted
from ..MANAGERS.state_store import StateStore
from ..MODELS.service_state import ExitCode, RunResult
from ..RUNNERS.dependency_resolver import DependencyGraph
from ..RUNNERS.process_driver import ProcessDriver
from ..errors import ConfigError
from ..logging_config import configure_logging
from ..settings import OrchestratorSettings


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Compose file path')
@click.option('--env-file', default=None, help='.env file to read secrets from (default: .env next to the compose file)')
@click.option('--state-dir', default=None, help='Directory for run state and logs')
@click.option('--log-level', default=None, help='Logging level (DEBUG, INFO, WARNING, ERROR)')
@click.pass_context
def cli(ctx, file, env_file, state_dir, log_level):
    """
    svcorch - declarative service orchestrator.

    Starts compose-style services in dependency order, gates dependents on
    health checks and applies restart policies.
    """
    ctx.ensure_object(dict)
    settings = OrchestratorSettings()
    if state_dir:
        settings = settings.model_copy(update={'state_dir': Path(state_dir)})
    configure_logging(log_level or settings.log_level)

    base_dir = os.path.dirname(os.path.abspath(file))
    if env_file is None:
        env_file = os.path.join(base_dir, '.env')
    ctx.obj.update(file=file, base_dir=base_dir, env_file=env_file, settings=settings)


def _load_config(ctx):
    """
    Parses the compose file, exiting with the config error code on failure.
    """
    file = ctx.obj['file']
    if not os.path.exists(file):
        click.echo(f"Error: {file} not found.", err=True)
        ctx.exit(int(ExitCode.CONFIG_ERROR))
    try:
        return ComposeParser().parse(file)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(int(ExitCode.CONFIG_ERROR))


def _driver(ctx) -> ProcessDriver:
    settings = ctx.obj['settings']
    return ProcessDriver(base_dir=ctx.obj['base_dir'], log_dir=os.path.join(str(settings.state_dir), 'logs'))


def _echo_summary(result: RunResult) -> None:
    click.echo(f"{'SERVICE':15} {'STATE':16} {'RESTARTS':8} ERROR")
    click.echo("-" * 60)
    for name, summary in result.services.items():
        error = summary.error.get('message', '') if summary.error else ''
        click.echo(f"{name:15} {summary.state.value:16} {summary.restarts:<8} {error}")


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Leave services running in the background')
@click.pass_context
def up(ctx, detach):
    """Start services defined in the compose file."""
    config = _load_config(ctx)
    settings = ctx.obj['settings']
    provider = ChainedSecretProvider([
        DotenvSecretProvider(ctx.obj['env_file']),
        EnvironmentSecretProvider(),
    ])
    orchestrator = ServiceOrchestrator(
        config,
        _driver(ctx),
        secret_provider=provider,
        settings=settings,
        sinks=[LoggingEventSink(), JsonLinesEventSink(os.path.join(str(settings.state_dir), 'events.jsonl'))],
        state_store=StateStore(settings.state_dir),
    )

    async def run():
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, cancel.set)
            except (NotImplementedError, RuntimeError):
                pass

        startup = await orchestrator.up(cancel)
        if cancel.is_set():
            return startup
        _echo_summary(startup)
        if detach:
            await orchestrator.detach()
            return startup
        click.echo("Running... Press Ctrl+C to stop.")
        await orchestrator.supervise()
        click.echo("\nStopping services...")
        await orchestrator.down()
        return startup

    try:
        result = asyncio.run(run())
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(int(ExitCode.CONFIG_ERROR))
    if result.failed():
        click.echo(f"Not healthy: {', '.join(result.failed())}", err=True)
    ctx.exit(int(result.exit_code))


@cli.command()
@click.pass_context
def down(ctx):
    """Stop all running services."""
    settings = ctx.obj['settings']
    store = StateStore(settings.state_dir)
    state = store.load()
    if state is None:
        click.echo("No running services.")
        return
    result = asyncio.run(stop_persisted(state, _driver(ctx), settings=settings))
    store.clear()
    _echo_summary(result)
    click.echo("Services stopped.")
    ctx.exit(int(result.exit_code))


@cli.command()
@click.pass_context
def status(ctx):
    """Show the state of every service."""
    settings = ctx.obj['settings']
    state = StateStore(settings.state_dir).load()
    if state is None:
        click.echo("No running services.")
        return
    report = asyncio.run(inspect_persisted(state, _driver(ctx), settings=settings))
    click.echo(f"{'SERVICE':15} {'STATUS':30}")
    click.echo("-" * 45)
    for name, line in report.items():
        click.echo(f"{name:15} {line:30}")


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the compose file and print the startup stages."""
    parsed = _load_config(ctx)
    try:
        graph = DependencyGraph.build(parsed.services)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(int(ExitCode.CONFIG_ERROR))
    for number, stage in enumerate(graph.stages, start=1):
        click.echo(f"stage {number}: {', '.join(stage)}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
