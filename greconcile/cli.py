"""
Main CLI interface for greconcile.

Provides commands: init, rewrite, validate, resolve, config, logs
"""

import json
import logging
from typing import Any, List, Optional

import click
from rich.console import Console
from rich.json import JSON
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from greconcile import __version__
from greconcile.config import Config
from greconcile.proxy.models import get_model_family, resolve_model_with_tier
from greconcile.proxy.pairing import PairingReport, ensure_tool_pairing
from greconcile.proxy.request import prepare_request
from greconcile.proxy.signatures import SignatureStore
from greconcile.proxy.thinking import ModelFamily, rewrite_conversations
from greconcile.utils import get_config_path, get_log_path

console = Console()
err_console = Console(stderr=True)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

GENERATIVE_LANGUAGE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:{action}"


def _setup_logging(level: str) -> None:
    file_handler = logging.FileHandler(get_log_path())
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False), file_handler],
        force=True,
    )


def tail_logs(lines: int = 50) -> list[str]:
    """Last N lines of the log file."""
    log_path = get_log_path()
    if not log_path.exists():
        return ["No log file found."]
    with open(log_path, "r") as f:
        return f.read().splitlines()[-lines:]


def _load_json(source) -> Any:
    try:
        return json.load(source)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{source.name} is not valid JSON: {e}")


def _report_table(reports: List[PairingReport]) -> Table:
    table = Table(title="Tool pairing")
    table.add_column("#", justify="right")
    table.add_column("Valid")
    table.add_column("Orphaned calls")
    table.add_column("Orphaned results")
    table.add_column("Fixed")
    for index, report in enumerate(reports, 1):
        table.add_row(
            str(index),
            "[green]✓[/green]" if report.valid else "[red]✗[/red]",
            ", ".join(report.orphaned_calls) or "-",
            ", ".join(report.orphaned_results) or "-",
            "yes" if report.auto_fixed else "no",
        )
    return table


@click.group()
@click.version_option(version=__version__, prog_name="greconcile")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.pass_context
def cli(ctx, log_level: Optional[str]):
    """greconcile - thinking and tool-call repair for Antigravity requests"""
    config = Config()
    ctx.obj = config
    _setup_logging(log_level or config.log_level)


@cli.command()
@click.pass_obj
def init(config: Config):
    """Initialize greconcile with guided setup."""
    import questionary

    console.print()
    console.print(
        Panel.fit(
            """[bold cyan]Welcome to greconcile[/bold cyan]

This will guide you through:
  ✓ Choosing the gateway project
  ✓ Choosing how Claude thinking history is handled
  ✓ Signature cache and logging settings
    """,
            border_style="cyan",
        )
    )
    console.print()

    project_id = questionary.text(
        "Gateway project ID (leave empty for a synthetic one):",
        default=config.project_id or "",
    ).ask()
    if project_id is None:
        console.print("[dim]Setup cancelled.[/dim]")
        return

    keep_thinking = questionary.confirm(
        "Keep thinking blocks for Claude when their signatures can be verified?",
        default=config.keep_thinking,
    ).ask()

    ttl = questionary.text(
        "Signature cache TTL in seconds:",
        default=str(config.signature_ttl_seconds),
        validate=lambda value: value.isdigit() or "Enter a whole number of seconds",
    ).ask()

    log_level = questionary.select(
        "Log level:",
        choices=LOG_LEVELS,
        default=config.log_level if config.log_level in LOG_LEVELS else "INFO",
    ).ask()

    config.project_id = project_id.strip() or None
    config.keep_thinking = bool(keep_thinking)
    if ttl:
        config.signature_ttl_seconds = int(ttl)
    if log_level:
        config.log_level = log_level
    config.save()

    console.print()
    console.print("[green]✓ Configuration saved[/green]")
    console.print("[dim]Config file:[/dim]", get_config_path())


@cli.command()
@click.argument("payload", type=click.File("r"))
@click.option("--model", "-m", default="claude-sonnet-4-5-thinking", help="Target model")
@click.option("--url", default=None, help="Full request URL (overrides --model)")
@click.option("--stream", is_flag=True, help="Rewrite as a streaming request")
@click.option("--session", "session_id", default=None, help="Signature session id")
@click.option(
    "--keep-thinking/--strip-thinking",
    default=None,
    help="Claude thinking policy (default: environment, then config)",
)
@click.pass_obj
def rewrite(config: Config, payload, model, url, stream, session_id, keep_thinking):
    """Print the request body that would be sent to the gateway."""
    body = _load_json(payload)
    if url is None:
        action = "streamGenerateContent" if stream else "generateContent"
        url = GENERATIVE_LANGUAGE_URL.format(model=model, action=action)
    if keep_thinking is None:
        keep_thinking = config.keep_thinking

    try:
        prepared = prepare_request(
            url,
            json.dumps(body),
            "local-dry-run",
            config.project_id,
            endpoint=config.endpoints[0],
            session_id=session_id,
            signatures=SignatureStore(
                ttl_seconds=config.signature_ttl_seconds,
                max_entries_per_session=config.max_signatures_per_session,
            ),
            keep_thinking=keep_thinking,
            debug_tools=config.debug_tools,
        )
    except ValueError as e:
        raise click.ClickException(str(e))

    err_console.print(f"[dim]{prepared.url}[/dim]")
    for report in prepared.pairing_reports:
        for warning in report.warnings:
            err_console.print(f"[yellow]⚠ {warning}[/yellow]")
    console.print(JSON(prepared.body or "null"))


@cli.command()
@click.argument("payload", type=click.File("r"))
@click.option("--fix", is_flag=True, help="Repair and print the fixed payload")
@click.pass_context
def validate(ctx, payload, fix: bool):
    """Check tool call/result pairing in a payload or conversation."""
    data = _load_json(payload)
    reports: List[PairingReport] = []

    def check(turns):
        fixed, report = ensure_tool_pairing(turns, auto_fix=fix)
        reports.append(report)
        return fixed

    if isinstance(data, list):
        result = check(data)
    else:
        result = rewrite_conversations(data, check)

    if not reports:
        raise click.ClickException("No conversation found (expected contents or messages)")

    err_console.print(_report_table(reports))
    for report in reports:
        for warning in report.warnings:
            err_console.print(f"[yellow]⚠ {warning}[/yellow]")

    if fix:
        console.print(JSON(json.dumps(result)))
    elif not all(report.valid for report in reports):
        ctx.exit(1)


@cli.command()
@click.argument("model")
@click.pass_obj
def resolve(config: Config, model: str):
    """Show how a model name resolves."""
    resolved = resolve_model_with_tier(model)
    configured_family = config.get_model_family(resolved.actual_model)

    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Requested", model)
    table.add_row("API model", resolved.actual_model)
    if configured_family in {family.value for family in ModelFamily}:
        table.add_row("Family", f"{configured_family} (config)")
    else:
        table.add_row("Family", get_model_family(resolved.actual_model).value)
    table.add_row("Quota", resolved.quota_preference)
    table.add_row("Thinking", "yes" if resolved.is_thinking_model else "no")
    table.add_row("Tier", resolved.tier or "-")
    if resolved.thinking_budget is not None:
        table.add_row("Thinking budget", str(resolved.thinking_budget))
    if resolved.thinking_level is not None:
        table.add_row("Thinking level", resolved.thinking_level)
    console.print(table)


@cli.command()
@click.option("--project-id", default=None, help="Set the gateway project")
@click.option("--keep-thinking/--strip-thinking", default=None, help="Set the Claude thinking policy")
@click.option("--log-level", "new_log_level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None)
@click.pass_obj
def config(config: Config, project_id, keep_thinking, new_log_level):
    """View or edit configuration."""
    changed = False
    if project_id is not None:
        config.project_id = project_id or None
        changed = True
    if keep_thinking is not None:
        config.keep_thinking = keep_thinking
        changed = True
    if new_log_level is not None:
        config.log_level = new_log_level.upper()
        changed = True
    if changed:
        config.save()
        console.print("[green]✓ Configuration saved[/green]")

    console.print()
    console.print(
        Panel(JSON(json.dumps(config.to_dict(), indent=2)), title="[bold]Configuration[/bold]")
    )
    console.print()
    console.print("[dim]Config file:[/dim]", get_config_path())


@cli.command()
@click.option("--lines", "-n", default=50, help="Number of lines to show")
def logs(lines: int):
    """Show recent log output."""
    for line in tail_logs(lines):
        console.print(line, markup=False, highlight=False)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
