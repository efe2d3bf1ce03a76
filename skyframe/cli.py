"""Command-line entry point for Skyframe."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from .app_context import AppContext, determine_paths, load_context
from .config import ConfigError, ConfigPaths, bootstrap
from .context import build_query
from .logging import configure_logging, get_logger
from .models import Location, WeatherSnapshot
from .services import FixedLocationService, IpLocationService, OpenMeteoWeatherService, ServiceError
from .state import CACHE_TTL_MS, JsonFileCacheStore, cache_age_ms, cache_path_for
from .supervisor import Supervisor
from .timers import SystemClock

app = typer.Typer(help="Skyframe context-aware background photo scheduler.")
cache_app = typer.Typer(help="Inspect and modify the photo cache.")
app.add_typer(cache_app, name="cache")
console = Console()

CONFIG_DIR_HELP = "Base directory for config files (defaults to ~/.skyframe)."


def _determine_default_log_level(config_dir: Optional[Path]) -> str:
    paths = determine_paths(config_dir)

    config_path = paths.global_config
    if not config_path.exists():
        return "INFO"

    try:
        import yaml

        with config_path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
        runtime = payload.get("runtime", {})
        log_level = runtime.get("log_level")
        if isinstance(log_level, str) and log_level.strip():
            return log_level.upper()
    except Exception:
        return "INFO"

    return "INFO"


def _bootstrap_logging(
    ctx: typer.Context,
    verbose: bool,
    json_logs: bool,
    log_file: Optional[Path],
    config_dir: Optional[Path],
) -> None:
    """Initialise logging once per CLI invocation."""

    if ctx.obj is None:
        ctx.obj = {}

    if ctx.obj.get("_logging_configured"):
        return

    level = "DEBUG" if verbose else _determine_default_log_level(config_dir)
    configure_logging(level=level, json_output=json_logs, log_file=log_file)
    ctx.obj["logger"] = get_logger("skyframe.cli")
    ctx.obj["log_level"] = level
    ctx.obj["json_logs"] = json_logs
    ctx.obj["log_file_path"] = log_file
    ctx.obj["force_log_level"] = verbose
    ctx.obj["_logging_configured"] = True


@app.callback(invoke_without_command=True)
def cli(  # noqa: D401 - Typer generates help text.
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON-formatted logs."),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        dir_okay=False,
        file_okay=True,
        writable=True,
        resolve_path=True,
        help="Optional file to append structured logs to.",
    ),
) -> None:
    """Skyframe command group."""

    _bootstrap_logging(ctx, verbose, json_logs, log_file, None)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def _logger(ctx: typer.Context):
    return ctx.obj.get("logger", get_logger("skyframe.cli"))


def _maybe_update_log_level(ctx: typer.Context, config_dir: Optional[Path]) -> None:
    if ctx.obj.get("force_log_level"):
        return

    desired = _determine_default_log_level(config_dir)
    current = ctx.obj.get("log_level")
    if desired != current:
        configure_logging(
            level=desired,
            json_output=ctx.obj.get("json_logs", False),
            log_file=ctx.obj.get("log_file_path"),
        )
        ctx.obj["logger"] = get_logger("skyframe.cli")
        ctx.obj["log_level"] = desired


def _load(ctx: typer.Context, config_dir: Optional[Path], command: str) -> AppContext:
    log = _logger(ctx)
    _maybe_update_log_level(ctx, config_dir)
    try:
        paths = determine_paths(config_dir)
        return load_context(paths)
    except ConfigError as exc:
        log.error(f"{command}.failed", error=str(exc))
        typer.echo(f"Error loading configuration: {exc}")
        raise typer.Exit(code=1) from exc


def _format_age(age_ms: int) -> str:
    minutes, seconds = divmod(max(age_ms, 0) // 1000, 60)
    return f"{minutes}m{seconds:02d}s"


@app.command()
def init(
    ctx: typer.Context,
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        dir_okay=True,
        file_okay=False,
        writable=True,
        resolve_path=True,
        help=CONFIG_DIR_HELP,
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite existing config.yml"),
) -> None:
    """Initial setup flow for global configuration."""

    log = _logger(ctx)

    try:
        paths = ConfigPaths.from_base_dir(config_dir) if config_dir else ConfigPaths.default()
        report = bootstrap(paths, overwrite=force)
    except (ConfigError, OSError) as exc:
        log.error("init.failed", error=str(exc))
        raise typer.Exit(code=1) from exc

    typer.echo(f"Configuration directory: {paths.base_dir}")

    if report.global_config_created:
        if report.global_config_overwritten:
            typer.echo(f"Global config overwritten at: {paths.global_config}")
        else:
            typer.echo(f"Global config created at: {paths.global_config}")
            typer.echo("Set an Unsplash access key before serving photos.")
    else:
        typer.echo(f"Global config already exists at: {paths.global_config}")
        typer.echo("Use --force to regenerate with default values.")

    log.info(
        "init.completed",
        base_dir=str(paths.base_dir),
        state_dir=str(paths.state_dir),
        global_config=str(paths.global_config),
        force=force,
        base_created=report.base_created,
        state_dir_created=report.state_dir_created,
        global_config_created=report.global_config_created,
        global_config_overwritten=report.global_config_overwritten,
    )


@app.command()
def serve(
    ctx: typer.Context,
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        dir_okay=True,
        file_okay=False,
        resolve_path=True,
        help=CONFIG_DIR_HELP,
    ),
) -> None:
    """Run the photo scheduler until interrupted."""

    load_dotenv()
    context = _load(ctx, config_dir, "serve")

    supervisor = Supervisor(
        config=context.global_config,
        paths=context.paths,
        logger=_logger(ctx),
    )
    supervisor.run()


@app.command()
def status(
    ctx: typer.Context,
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        dir_okay=True,
        file_okay=False,
        resolve_path=True,
        help=CONFIG_DIR_HELP,
    ),
) -> None:
    """Show the cached background photo."""

    log = _logger(ctx)
    context = _load(ctx, config_dir, "status")

    cache_path = cache_path_for(context.global_config)
    entry = JsonFileCacheStore(cache_path, logger=log).get()
    if entry is None:
        console.print("[yellow]No cached photo.[/yellow]")
        log.info("status.completed", cached=False)
        return

    age = cache_age_ms(entry, SystemClock().now_ms())
    table = Table(title="Cached Background Photo")
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Query", entry.query)
    table.add_row("Author", entry.photo.author)
    table.add_row("URL", entry.photo.url)
    table.add_row("Age", _format_age(age))
    table.add_row("Expired", str(age >= CACHE_TTL_MS))
    table.add_row("Cache File", str(cache_path))
    console.print(table)
    log.info("status.completed", cached=True, age_ms=age)


async def _current_conditions(context: AppContext) -> Tuple[Location, WeatherSnapshot]:
    settings = context.global_config.location
    if settings.is_fixed:
        locator = FixedLocationService(
            Location(latitude=settings.latitude, longitude=settings.longitude, city=settings.city)
        )
    else:
        locator = IpLocationService()
    location = await locator.get_location()
    weather = await OpenMeteoWeatherService().get_weather(location.latitude, location.longitude)
    return location, weather


@app.command()
def query(
    ctx: typer.Context,
    at: Optional[datetime] = typer.Option(
        None,
        "--at",
        formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M"],
        help="Local instant to build the query for (defaults to now).",
    ),
    offline: bool = typer.Option(False, "--offline", help="Skip location and weather lookups."),
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        dir_okay=True,
        file_okay=False,
        resolve_path=True,
        help=CONFIG_DIR_HELP,
    ),
) -> None:
    """Print the search context and query the scheduler would use."""

    log = _logger(ctx)
    context = _load(ctx, config_dir, "query")
    zone, _ = Supervisor._resolve_timezone(context.global_config.runtime.timezone)

    location: Optional[Location] = None
    weather: Optional[WeatherSnapshot] = None
    if not offline:
        try:
            location, weather = asyncio.run(_current_conditions(context))
        except ServiceError as exc:
            log.warning("query.weather_unavailable", error=str(exc))
            console.print(f"[yellow]Weather unavailable, using clock fallback: {exc}[/yellow]")

    now = at.replace(tzinfo=zone) if at else SystemClock().now().astimezone(zone)
    photo_query, photo_context = build_query(weather, now)

    table = Table(title="Photo Search Context")
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Instant", now.isoformat())
    table.add_row("Location", location.label if location else "-")
    table.add_row("Season", photo_context.season)
    table.add_row("Holiday", photo_context.holiday or "-")
    table.add_row("Time of day", photo_context.time_of_day.value)
    table.add_row("Overcast", str(photo_context.is_overcast))
    table.add_row("Precipitation", photo_context.precipitation_kind.value)
    table.add_row("Query", photo_query)
    console.print(table)
    log.info("query.completed", query=photo_query, offline=offline)


@cache_app.command("clear")
def cache_clear(
    ctx: typer.Context,
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        dir_okay=True,
        file_okay=False,
        resolve_path=True,
        help=CONFIG_DIR_HELP,
    ),
) -> None:
    """Remove the cached photo so the next tick fetches a new one."""

    log = _logger(ctx)
    context = _load(ctx, config_dir, "cache.clear")
    cache_path = cache_path_for(context.global_config)
    JsonFileCacheStore(cache_path, logger=log).clear()
    typer.echo(f"Cleared photo cache at {cache_path}")
    log.info("cache.clear.completed", path=str(cache_path))


def main() -> None:  # pragma: no cover - console script entry
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
