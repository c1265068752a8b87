"""Command-line interface for fleet-scaler."""

import asyncio
import json
import logging
import sys
import time
from typing import Optional

import click

from . import __version__
from .core.config import ConfigManager, ScalerConfig, dump_config
from .core.controller import AutoscalingController
from .core.exceptions import ConfigurationError, FleetScalerError
from .core.logging_config import ActionLog, setup_logging
from .core.types import MetricsSnapshot


logger = logging.getLogger(__name__)


def _load_config(ctx: click.Context) -> ScalerConfig:
    options = ctx.obj
    try:
        manager = ConfigManager()
        config = manager.load_config(options['config_path'])
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    options['config_file'] = manager.config_file

    if options['dry_run']:
        config.dry_run = True
    if options['log_level']:
        config.logging.level = options['log_level'].upper()

    setup_logging(
        log_level=config.logging.level,
        log_file=config.logging.file or None,
        structured=config.logging.structured
    )
    return config


def _run(coro):
    """Run a coroutine, turning scaler errors into a failed exit."""
    try:
        return asyncio.run(coro)
    except FleetScalerError as e:
        raise click.ClickException(str(e))


def _fmt(value: Optional[float], spec: str, unit: str = "") -> str:
    return "n/a" if value is None else f"{value:{spec}}{unit}"


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', 'config_path', type=click.Path(dir_okay=False),
              help='Path to a YAML or JSON configuration file')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Override the configured log level')
@click.option('--dry-run', is_flag=True, help='Use the in-memory runtime and proxy')
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: Optional[str], dry_run: bool):
    """fleet-scaler: autoscaling controller for HTTP worker fleets behind nginx."""
    ctx.ensure_object(dict)
    ctx.obj.update(config_path=config_path, log_level=log_level, dry_run=dry_run)


@cli.command()
@click.pass_context
def start(ctx: click.Context):
    """Run the autoscaling loop until interrupted."""
    config = _load_config(ctx)

    async def run_loop():
        async with AutoscalingController.from_config(config) as controller:
            controller.install_signal_handlers()
            click.echo(f"Autoscaling {config.fleet.name_prefix} fleet "
                       f"({config.policy.min_instances}-{config.policy.max_instances} instances), "
                       f"checking every {config.check_interval:g}s")
            click.echo("Press Ctrl+C to stop")
            await controller.run()

    _run(run_loop())


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print status as JSON')
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show fleet health, routed upstream, current load, thresholds and recent events."""
    config = _load_config(ctx)

    async def run_status():
        async with AutoscalingController.from_config(config) as controller:
            return await controller.status()

    report = _run(run_status())
    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    metrics = report['metrics']
    thresholds = report['thresholds']
    click.echo(f"Instances: {report['instance_count']} "
               f"(bounds {thresholds['min_instances']}-{thresholds['max_instances']})")
    for instance in report['instances']:
        health = "healthy" if instance['healthy'] else "unhealthy"
        routing = "" if instance['routed'] else " (not routed)"
        click.echo(f"  {instance['instance_id']:<16} {instance['endpoint']:<20} "
                   f"{instance['state']:<16} {health}{routing}")

    click.echo(f"\nRouted upstream ({len(report['routed'])}):")
    for endpoint in report['routed'] or ["(none)"]:
        click.echo(f"  {endpoint}")

    click.echo("\nCurrent load:")
    click.echo(f"  CPU:          {_fmt(metrics['avg_cpu_percent'], '.1f', '%')}")
    click.echo(f"  Latency:      {_fmt(metrics['avg_latency_seconds'], '.3f', 's')}")
    click.echo(f"  Request rate: {metrics['request_rate_per_minute']:.0f}/min "
               f"({metrics['request_rate_per_instance']:.1f}/min per instance)")

    click.echo("\nThresholds:")
    click.echo(f"  CPU:          up > {thresholds['cpu_up_threshold']:.1f}%, "
               f"down < {thresholds['cpu_down_threshold']:.1f}%")
    click.echo(f"  Latency:      {thresholds['latency_threshold']:.3f}s")
    click.echo(f"  Request rate: {thresholds['rate_threshold']:.1f}/min per instance")
    click.echo(f"  Cooldowns:    up {thresholds['scale_up_cooldown']:g}s, "
               f"down {thresholds['scale_down_cooldown']:g}s")

    if report['halted']:
        click.echo(f"\nScaling halted: {report['halt_reason']}")

    click.echo("\nRecent events:")
    if report['recent_events']:
        for line in report['recent_events']:
            click.echo(f"  {line}")
    else:
        click.echo("  (none)")


@cli.command()
@click.argument('count', type=int)
@click.pass_context
def scale(ctx: click.Context, count: int):
    """Drive the fleet to COUNT instances.

    An interrupt lets the current step finish, then stops.
    """
    config = _load_config(ctx)

    async def run_scale():
        async with AutoscalingController.from_config(config) as controller:
            controller.install_signal_handlers()
            await controller.discover()
            return await controller.lifecycle.scale_to(count, stop=controller.stop_event)

    result = _run(run_scale())
    for instance_id in result.added:
        click.echo(f"Added {instance_id}")
    for instance_id in result.removed:
        click.echo(f"Removed {instance_id}")
    if not result.success:
        raise click.ClickException(
            f"Stopped at {result.final_count} of {count} instances: {result.error}"
        )
    click.echo(f"Fleet is at {result.final_count} instances")


@cli.command()
@click.pass_context
def add(ctx: click.Context):
    """Add one instance."""
    config = _load_config(ctx)

    async def run_add():
        async with AutoscalingController.from_config(config) as controller:
            controller.install_signal_handlers()
            await controller.discover()
            return await controller.lifecycle.add()

    instance = _run(run_add())
    click.echo(f"Added {instance.instance_id} ({instance.endpoint})")


@cli.command()
@click.argument('instance_id')
@click.pass_context
def remove(ctx: click.Context, instance_id: str):
    """Remove instance INSTANCE_ID (e.g. 7 or worker-7)."""
    config = _load_config(ctx)

    async def run_remove():
        async with AutoscalingController.from_config(config) as controller:
            controller.install_signal_handlers()
            await controller.discover()
            return await controller.lifecycle.remove(instance_id)

    instance = _run(run_remove())
    click.echo(f"Removed {instance.instance_id}")


@cli.command()
@click.option('--cpu', type=float, help='Average CPU percent')
@click.option('--latency', type=float, help='Average latency in seconds')
@click.option('--rate', type=float, help='Requests per minute across the fleet')
@click.option('--count', type=int, help='Instance count')
@click.pass_context
def test(ctx: click.Context, cpu: Optional[float], latency: Optional[float],
         rate: Optional[float], count: Optional[int]):
    """Evaluate the scaling policy once without acting.

    With any of the override options the evaluation is fully offline; options
    left out default to unknown CPU/latency, zero requests and the minimum
    instance count.
    """
    config = _load_config(ctx)
    offline = any(value is not None for value in (cpu, latency, rate, count))

    snapshot = None
    if offline:
        instance_count = count if count is not None else config.policy.min_instances
        total_rate = rate or 0.0
        snapshot = MetricsSnapshot(
            instance_count=instance_count,
            avg_cpu_percent=cpu,
            avg_latency_seconds=latency,
            request_rate_per_minute=total_rate,
            request_rate_per_instance=total_rate / instance_count if instance_count else 0.0,
            cpu_samples=1 if cpu is not None else 0
        )

    async def run_test():
        async with AutoscalingController.from_config(config) as controller:
            return await controller.evaluate(snapshot)

    decision = _run(run_test())
    metrics = decision.snapshot

    click.echo(f"Instances: {metrics.instance_count}")
    click.echo(f"CPU:       {_fmt(metrics.avg_cpu_percent, '.1f', '%')}")
    click.echo(f"Latency:   {_fmt(metrics.avg_latency_seconds, '.3f', 's')}")
    click.echo(f"Rate:      {metrics.request_rate_per_instance:.1f}/min per instance")
    click.echo(f"\nDecision:  {decision.action.value.replace('_', ' ').upper()}")
    for reason in decision.reasons:
        click.echo(f"  - {reason}")
    if decision.blocked_by:
        click.echo(f"  (blocked by {decision.blocked_by})")
    click.echo("\nNo action taken.")


@cli.command()
@click.option('--lines', '-n', default=20, show_default=True, help='Number of entries to show')
@click.option('--follow', '-f', is_flag=True, help='Keep printing new entries')
@click.pass_context
def logs(ctx: click.Context, lines: int, follow: bool):
    """Print the tail of the action log."""
    config = _load_config(ctx)
    if not config.action_log_path:
        raise click.ClickException("No action log configured")

    action_log = ActionLog(config.action_log_path)
    try:
        for entry in action_log.tail(lines):
            click.echo(entry.format())

        if not follow:
            return

        offset = action_log.line_count()
        while True:
            time.sleep(1.0)
            total = action_log.line_count()
            if total < offset:
                # Truncated or replaced
                offset = 0
            for entry in action_log.read_entries(offset):
                click.echo(entry.format())
            offset = total
    except KeyboardInterrupt:
        pass
    finally:
        action_log.close()


@cli.command('show-config')
@click.pass_context
def show_config(ctx: click.Context):
    """Print the effective configuration as YAML."""
    config = _load_config(ctx)
    source = ctx.obj['config_file']
    click.echo(f"# Source: {source}" if source else "# Source: defaults")
    click.echo(dump_config(config), nl=False)


def main():
    """Main entry point for the CLI."""
    try:
        rv = cli.main(standalone_mode=False)
    except click.UsageError as e:
        e.show()
        sys.exit(1)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    sys.exit(rv if isinstance(rv, int) else 0)


if __name__ == '__main__':
    main()
