from __future__ import annotations

import json
import signal
import sys
import threading
from typing import Optional, Tuple

import typer
from loguru import logger

from uprof_exporter.core.config import Settings, load_settings
from uprof_exporter.core.host_identity import resolve_host_identity
from uprof_exporter.core.registry import MetricsRegistry
from uprof_exporter.core.sampler import Sampler
from uprof_exporter.metrics import ExporterMetrics

# Typer application
app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Prometheus exporter for AMD uProf hardware counters",
)

ConfigOption = typer.Option(None, "--config", "-c", help="YAML settings file")
ProfileOption = typer.Option(None, "--profile", help="Measurement catalogue: full or compact")
NodenameOption = typer.Option(
    None, "--nodename/--no-nodename", help="Label gauges with the node name"
)
LogLevelOption = typer.Option(None, "--log-level", help="Log level")


def setup_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


def serve(registry: MetricsRegistry, host: str, port: int):
    """Indirection for the HTTP server to allow monkeypatching in tests."""
    from uprof_exporter.core.exposition import serve as _serve

    return _serve(registry, host, port)


def _settings(config: Optional[str], **overrides) -> Settings:
    try:
        settings = load_settings(config, overrides=overrides)
    except ValueError as e:
        logger.error("{}", e)
        raise typer.Exit(code=2)
    setup_logging(settings.log_level)
    return settings


def build_exporter(settings: Settings) -> Tuple[MetricsRegistry, Sampler]:
    """Wire registry, self-metrics and sampler for *settings*.

    Raises ``ValueError`` if the gauges cannot be registered.
    """
    nodename = resolve_host_identity() if settings.label_nodes else None
    registry = MetricsRegistry(settings.spec, nodename=nodename)
    metrics = ExporterMetrics(registry.collector_registry)
    sampler = Sampler(registry, settings, metrics=metrics)
    return registry, sampler


def _build(settings: Settings) -> Tuple[MetricsRegistry, Sampler]:
    try:
        return build_exporter(settings)
    except ValueError as e:
        logger.error("Cannot register metrics: {}", e)
        raise typer.Exit(code=2)


@app.command("version")
def version_cmd() -> None:
    """Print the package version."""
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as _version

    try:
        v = _version("uprof-exporter")
    except PackageNotFoundError:
        v = "0.0.0"
    typer.echo(v)


@app.command("measurements")
def measurements_cmd(
    config: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
) -> None:
    """List the measurement catalogue in column order."""
    settings = _settings(config, profile=profile)
    for position, m in enumerate(settings.spec):
        typer.echo(f"{position:>2}  {m.name}  {m.help_text}")


@app.command("one-cycle")
def one_cycle_cmd(
    config: Optional[str] = ConfigOption,
    profile: Optional[str] = ProfileOption,
    nodename: Optional[bool] = NodenameOption,
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Run exactly one sampling cycle and print JSON status with the values."""
    settings = _settings(config, profile=profile, with_nodename=nodename, log_level=log_level)
    registry, sampler = _build(settings)
    sampler.prepare_output_dir()

    ok = sampler.run_cycle()
    output = {"status": "ok" if ok else "failed", "values": registry.as_dict()}
    typer.echo(json.dumps(output))
    if not ok:
        raise typer.Exit(code=1)


@app.command("run")
def run_cmd(
    config: Optional[str] = ConfigOption,
    port: Optional[int] = typer.Option(None, "--port", help="Metrics HTTP port"),
    bind: Optional[str] = typer.Option(None, "--bind", help="Metrics HTTP bind address"),
    interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between cycles"),
    tool_timeout: Optional[float] = typer.Option(
        None, "--tool-timeout", help="Seconds before AMDuProfPcm is killed"
    ),
    profile: Optional[str] = ProfileOption,
    nodename: Optional[bool] = NodenameOption,
    log_level: Optional[str] = LogLevelOption,
    cycles: Optional[int] = typer.Option(
        None, "-n", "--cycles", help="Optional number of cycles before exit"
    ),
) -> None:
    """Start the metrics server and sample continuously."""
    settings = _settings(
        config,
        port=port,
        bind=bind,
        interval=interval,
        tool_timeout=tool_timeout,
        profile=profile,
        with_nodename=nodename,
        log_level=log_level,
    )
    registry, sampler = _build(settings)
    sampler.prepare_output_dir()

    # Listen before the first cycle so early scrapes see the zeroed gauges
    try:
        server, _thread = serve(registry, settings.bind, settings.port)
    except OSError as e:
        logger.error("Cannot listen on {}:{}: {}", settings.bind, settings.port, e)
        raise typer.Exit(code=2)
    logger.info(
        "AMD uProf exporter started: profile={} gauges={} interval={}s",
        settings.profile,
        len(settings.spec),
        settings.interval,
    )

    stop = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:  # pragma: no cover - hard to simulate
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    previous = {}
    try:
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, _handle_signal)
    except ValueError:  # pragma: no cover - not on the main thread
        logger.debug("Signal handlers not installed outside the main thread")

    try:
        sampler.run_forever(stop, max_cycles=cycles)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        if server is not None:
            server.shutdown()
        logger.info("Exporter stopped")


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
