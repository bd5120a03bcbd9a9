"""Command-line interface for crawlsense."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from crawlsense.classify import Classifier
from crawlsense.config import load_config
from crawlsense.mimic import MimicDeadlineExceeded, MimicDetector
from crawlsense.ranges import fetch_published_ranges, save_range_overlay
from crawlsense.session import generate_site_id
from crawlsense.signals import extract_signals
from crawlsense.storage import StorageBackend

console = Console()

DEFAULT_OVERLAY_FILE = "./data/ip-ranges.yaml"


def _setup_logging(level: str) -> None:
    """Configure logging with the specified level.

    Args:
        level: Logging level string (debug, info, warning, error).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _storage(ctx: click.Context) -> StorageBackend:
    cfg = ctx.obj["config"]
    return StorageBackend(db_path=cfg.storage.database)


@click.group()
@click.option("--config", "-c", default=None, help="Path to crawlsense.yaml config file")
@click.pass_context
def main(ctx: click.Context, config: str | None) -> None:
    """crawlsense: tell AI crawlers, search engines and humans apart."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    cfg = load_config(config)
    ctx.obj["config"] = cfg
    _setup_logging(cfg.logging.level)


@main.command()
@click.option("--host", default=None, help="Override server host")
@click.option("--port", "-p", default=None, type=int, help="Override server port")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the tracking server."""
    import uvicorn

    from crawlsense.server import create_app

    cfg = ctx.obj["config"]
    server_host = host or cfg.server.host
    server_port = port or cfg.server.port

    console.print(f"[bold green]Starting crawlsense on {server_host}:{server_port}[/bold green]")

    app = create_app(ctx.obj["config_path"])
    uvicorn.run(app, host=server_host, port=server_port, log_level=cfg.logging.level)


@main.command()
@click.option("--user-agent", "-u", default="", help="User-Agent header")
@click.option("--ip", default="", help="Source IP address")
@click.option("--method", default="GET", help="HTTP method")
@click.option("--path", default="/", help="Tracked page path")
@click.option("--referer", default="", help="Referer header")
@click.option("--accept", default="", help="Accept header")
@click.option("--accept-language", default="", help="Accept-Language header")
@click.option("--accept-encoding", default="", help="Accept-Encoding header")
@click.option("--sec-ch-ua", default="", help="Sec-CH-UA client hint")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def classify(
    ctx: click.Context,
    user_agent: str,
    ip: str,
    method: str,
    path: str,
    referer: str,
    accept: str,
    accept_language: str,
    accept_encoding: str,
    sec_ch_ua: str,
    json_output: bool,
) -> None:
    """Classify a single request described by header options."""
    cfg = ctx.obj["config"]
    headers = {
        "user-agent": user_agent,
        "referer": referer,
        "accept": accept,
        "accept-language": accept_language,
        "accept-encoding": accept_encoding,
        "sec-ch-ua": sec_ch_ua,
    }
    signals = extract_signals(headers, method=method, path=path, peer_ip=ip)
    result = Classifier(config=cfg.scoring).classify(signals)

    if json_output:
        click.echo(result.model_dump_json(indent=2))
        return

    table = Table(title=f"Verdict: {result.crawler_name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    for key, value in result.model_dump(mode="json").items():
        table.add_row(key, str(value))
    console.print(table)


@main.command(name="detect-mimic")
@click.option("--site-id", "-s", required=True, help="Site to process")
@click.option("--dry-run", is_flag=True, help="Score without writing verdicts")
@click.option(
    "--retry-ids",
    default=None,
    help="Comma-separated visit IDs; only these rows are written",
)
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def detect_mimic(
    ctx: click.Context,
    site_id: str,
    dry_run: bool,
    retry_ids: str | None,
    json_output: bool,
) -> None:
    """Run the batch mimicry re-scorer for one site."""
    cfg = ctx.obj["config"]
    detector = MimicDetector(_storage(ctx), cfg.mimic)
    visit_ids = [i.strip() for i in retry_ids.split(",") if i.strip()] if retry_ids else None

    try:
        report = detector.run(site_id, dry_run=dry_run, visit_ids=visit_ids)
    except MimicDeadlineExceeded as exc:
        raise click.ClickException(str(exc)) from exc

    if json_output:
        click.echo(json.dumps(report.to_response(), indent=2))
        return

    mode = " (dry run)" if dry_run else ""
    console.print(
        f"[bold]Processed {report.processed}[/bold]{mode}: "
        f"[red]{report.mimic_detected} mimic[/red], {report.normal} normal, "
        f"{report.updated} updated"
    )
    if report.failed_ids:
        console.print(f"[yellow]Failed IDs: {','.join(report.failed_ids)}[/yellow]")

    if report.details:
        table = Table(title="Flagged Visits")
        table.add_column("ID", style="dim")
        table.add_column("IP", style="cyan")
        table.add_column("Score", justify="right")
        table.add_column("Reasons", style="yellow")
        table.add_column("User-Agent")
        for d in report.details:
            table.add_row(
                d.visit_id[:12],
                d.ip_address,
                str(d.score),
                ", ".join(d.reasons),
                d.user_agent[:50],
            )
        console.print(table)


@main.command()
@click.option("--site-id", "-s", required=True, help="Site to summarize")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx: click.Context, site_id: str, json_output: bool) -> None:
    """Show mimicry statistics for one site."""
    cfg = ctx.obj["config"]
    data = MimicDetector(_storage(ctx), cfg.mimic).stats(site_id)

    if json_output:
        click.echo(json.dumps(data, indent=2))
        return

    summary = data["stats"]
    console.print(
        f"[bold]{summary['total_mimic']} mimic visits[/bold] from {summary['unique_ips']} IPs, "
        f"avg score {summary['avg_score']:.1f}, last {summary['last_detected'] or '-'}"
    )

    table = Table(title="Top Mimic IPs")
    table.add_column("IP", style="cyan")
    table.add_column("Visits", justify="right")
    table.add_column("Max Score", justify="right")
    table.add_column("First Seen")
    table.add_column("Last Seen")
    for row in data["byIP"]:
        table.add_row(
            row["ip_address"],
            str(row["visit_count"]),
            str(row["max_score"]),
            row["first_visit"],
            row["last_visit"],
        )
    console.print(table)

    periodic = [p for p in data["periodic"] if p["is_periodic_weak"]]
    if periodic:
        table = Table(title="Periodic IPs")
        table.add_column("IP", style="cyan")
        table.add_column("Intervals", justify="right")
        table.add_column("Avg (s)", justify="right")
        table.add_column("CV %", justify="right")
        table.add_column("Type", style="yellow")
        for p in periodic:
            table.add_row(
                p["ip_address"],
                str(p["visit_count"]),
                str(p["avg_interval_sec"]),
                str(p["cv_percent"]),
                p["period_type"],
            )
        console.print(table)


@main.command()
@click.option("--site-id", "-s", default=None, help="Restrict to one site")
@click.option("--last", "-n", default=10, type=int, help="Number of recent visits to show")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def query(ctx: click.Context, site_id: str | None, last: int, json_output: bool) -> None:
    """Query recorded visits."""
    visits = _storage(ctx).get_recent_visits(site_id=site_id, limit=last)

    if json_output:
        click.echo(json.dumps([v.model_dump(mode="json") for v in visits], indent=2))
        return

    table = Table(title="Recent Visits")
    table.add_column("Time", style="dim")
    table.add_column("Site")
    table.add_column("IP", style="cyan")
    table.add_column("Path", style="green")
    table.add_column("Crawler", style="yellow")
    table.add_column("Method")
    table.add_column("Conf", justify="right")
    table.add_column("Mimic", justify="right")
    for v in visits:
        table.add_row(
            v.visited_at.strftime("%Y-%m-%d %H:%M:%S"),
            v.site_id,
            v.ip_address,
            v.page_path[:40],
            v.crawler_name,
            v.detection_method.value,
            str(v.confidence),
            "-" if v.mimic_score is None else str(v.mimic_score),
        )
    console.print(table)


@main.command()
@click.option("--days", "-d", default=None, type=int, help="Delete visits older than this")
@click.pass_context
def prune(ctx: click.Context, days: int | None) -> None:
    """Delete visits older than the retention window."""
    cfg = ctx.obj["config"]
    retention = days if days is not None else cfg.storage.retention_days
    deleted = _storage(ctx).prune(retention)
    console.print(f"[green]Deleted {deleted} visits older than {retention} days[/green]")


@main.command(name="fetch-ranges")
@click.option("--output", "-o", default=None, help="Overlay file path (YAML)")
@click.pass_context
def fetch_ranges(ctx: click.Context, output: str | None) -> None:
    """Download published crawler IP ranges into the overlay file."""
    cfg = ctx.obj["config"]
    ranges = asyncio.run(fetch_published_ranges(timeout=cfg.ranges.timeout_seconds))
    if not ranges:
        raise click.ClickException("No IP ranges could be fetched")

    path = save_range_overlay(ranges, output or cfg.ranges.overlay_file or DEFAULT_OVERLAY_FILE)
    total = sum(len(c) for c in ranges.values())
    console.print(f"[green]Saved {total} ranges for {len(ranges)} crawlers to {path}[/green]")


@main.command(name="site-id")
@click.argument("url")
def site_id(url: str) -> None:
    """Generate a site identifier for URL."""
    click.echo(generate_site_id(url))


if __name__ == "__main__":
    main()
