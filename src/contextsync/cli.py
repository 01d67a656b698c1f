"""CLI entry point for ContextSync.

This module provides the command-line interface for ContextSync.

Commands:
    init: Create the configuration file
    connect / disconnect: Manage provider integrations for an owner
    sync / smart-sync: Pull provider activity into the store
    search / list / stats: Query the store
    test: Check provider connections for an owner
    serve: Start the MCP server (default)

Example:
    contextsync init
    contextsync connect github --owner alice --token "$GITHUB_TOKEN"
    contextsync sync --owner alice --days 14
    contextsync search "@bob is:open this week" --owner alice
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from contextsync import __version__
from contextsync.constants import (
    CONFIG_FILE_NAME,
    DEFAULT_LIST_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    MAX_LIST_LIMIT,
    MAX_SEARCH_LIMIT,
)
from contextsync.exceptions import ContextSyncError
from contextsync.models import ALL_SOURCES
from contextsync.utils import format_duration

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from contextsync.core import ContextSyncCore
    from contextsync.models import SyncResult


def _success(msg: str) -> str:
    """Format success message with green checkmark."""
    return click.style("✓", fg="green") + " " + msg


def _error(msg: str) -> str:
    """Format error message with red X."""
    return click.style("✗", fg="red") + " " + msg


def _info(msg: str) -> str:
    """Format info message with blue arrow."""
    return click.style("→", fg="blue") + " " + msg


def _run(ctx: click.Context, operation: Callable[[ContextSyncCore], Awaitable[Any]]) -> Any:
    """Load config, run one core operation, and always close the core.

    Exits with status 1 on a ContextSyncError.
    """
    from contextsync.config import load_config
    from contextsync.core import ContextSyncCore
    from contextsync.logging import setup_logging

    verbose = ctx.obj.get("verbose", False)
    setup_logging(logging.DEBUG if verbose else logging.WARNING)

    async def runner() -> Any:
        core = ContextSyncCore(load_config())
        try:
            return await operation(core)
        finally:
            await core.close()

    try:
        return asyncio.run(runner())
    except ContextSyncError as e:
        if verbose:
            import traceback

            click.echo(traceback.format_exc(), err=True)
        click.echo(_error(str(e)), err=True)
        sys.exit(1)


def _print_sync(result: SyncResult) -> None:
    for source in result.sources:
        line = f"{source.source:<14} {source.count:>5}"
        if source.skipped:
            line += f"  ({source.skipped} skipped)"
        click.echo("  " + (_error(line + "  aborted") if source.aborted else _success(line)))
    click.echo()
    click.echo(
        click.style(
            f"Synced {result.total} context(s) in {format_duration(result.duration_ms)}",
            fg="cyan",
        )
    )
    if result.errors:
        click.echo()
        click.echo(click.style(f"{len(result.errors)} error(s):", fg="yellow"))
        for message in result.errors:
            click.echo(f"  - {message}")


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="contextsync")
@click.option("--verbose", "-v", is_flag=True, help="Show detailed output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """ContextSync - developer activity sync and search.

    Pulls pull requests, issues, commits, Jira tickets and Slack messages
    into one local store and serves it to AI assistants over MCP.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@cli.command()
def init() -> None:
    """Create .contextsync.yaml with default settings."""
    config_path = Path(CONFIG_FILE_NAME)

    if config_path.exists():
        click.echo(f"Config file already exists: {config_path}")
        if not click.confirm("Overwrite?", default=False):
            click.echo("Aborted.")
            return

    click.echo()
    click.echo(click.style("ContextSync Setup", bold=True))
    click.echo()

    github = click.confirm("Enable GitHub?", default=True)
    jira = click.confirm("Enable Jira?", default=True)
    slack = click.confirm("Enable Slack?", default=True)
    days = click.prompt("Default sync window (days)", default=30, type=click.IntRange(1, 365))
    timezone = click.prompt("Time zone for 'today' and 'this week'", default="UTC")

    config_lines = [
        "# ContextSync Configuration",
        "",
        "providers:",
        "  github:",
        f"    enabled: {str(github).lower()}",
        "  jira:",
        f"    enabled: {str(jira).lower()}",
        "  slack:",
        f"    enabled: {str(slack).lower()}",
        "",
        "sync:",
        f"  default_days_back: {days}",
        "  smart_days_back: 7",
        "  cooldown_seconds: 300",
        "",
        "search:",
        f'  timezone: "{timezone}"',
        "",
        "storage:",
        '  path: ".contextsync/contexts.db"',
        "",
    ]
    if slack:
        config_lines.extend(["events:", '  signing_secret: "${SLACK_SIGNING_SECRET}"', ""])

    config_path.write_text("\n".join(config_lines))

    click.echo()
    click.echo(_success(f"Created {config_path}"))
    click.echo()
    click.echo(click.style("Next steps:", bold=True))
    if github:
        click.echo('  contextsync connect github --owner you --token "$GITHUB_TOKEN"')
    if jira:
        click.echo(
            '  contextsync connect jira --owner you --token "$JIRA_TOKEN" '
            "--cloud-id CLOUD_ID --site-url https://your-site.atlassian.net"
        )
    if slack:
        click.echo(
            '  contextsync connect slack --owner you --token "$SLACK_TOKEN" --workspace-id T0123'
        )
    click.echo("  contextsync sync --owner you")


@cli.command()
@click.argument("provider", type=click.Choice(["github", "jira", "slack"]))
@click.option("--owner", required=True, help="Account the integration belongs to")
@click.option("--token", required=True, help="Access token")
@click.option("--refresh-token", default=None, help="Refresh token")
@click.option("--cloud-id", default=None, help="Jira cloud id (gateway access)")
@click.option("--site-url", default=None, help="Jira site URL, e.g. https://x.atlassian.net")
@click.option("--base-url", default=None, help="Jira base URL for direct (non-gateway) access")
@click.option("--workspace-id", default=None, help="Slack team id")
@click.option("--team-url", default=None, help="Slack workspace URL, used for permalinks")
@click.pass_context
def connect(
    ctx: click.Context,
    provider: str,
    owner: str,
    token: str,
    refresh_token: str | None,
    cloud_id: str | None,
    site_url: str | None,
    base_url: str | None,
    workspace_id: str | None,
    team_url: str | None,
) -> None:
    """Save a provider integration for an owner."""
    metadata = {
        key: value
        for key, value in {
            "cloud_id": cloud_id,
            "site_url": site_url,
            "base_url": base_url,
            "team_url": team_url,
        }.items()
        if value
    }
    if provider == "jira" and not (cloud_id or base_url):
        click.echo(_error("Jira needs --cloud-id or --base-url"), err=True)
        sys.exit(1)

    _run(
        ctx,
        lambda core: core.connect(
            owner,
            provider,
            token,
            refresh_token=refresh_token,
            workspace_id=workspace_id,
            site_metadata=metadata,
        ),
    )
    click.echo(_success(f"Connected {provider} for {owner}"))


@cli.command()
@click.argument("provider", type=click.Choice(["github", "jira", "slack"]))
@click.option("--owner", required=True, help="Account the integration belongs to")
@click.pass_context
def disconnect(ctx: click.Context, provider: str, owner: str) -> None:
    """Disable a provider integration (stored data is kept)."""
    if _run(ctx, lambda core: core.disconnect(owner, provider)):
        click.echo(_success(f"Disconnected {provider} for {owner}"))
    else:
        click.echo(_info(f"{provider} was not connected for {owner}"))


@cli.command()
@click.option("--owner", required=True, help="Account to sync")
@click.option("--days", default=None, type=click.IntRange(min=1), help="Lookback window in days")
@click.pass_context
def sync(ctx: click.Context, owner: str, days: int | None) -> None:
    """Run a full sync of every connected provider."""
    click.echo(click.style(f"Syncing {owner}...", bold=True))
    click.echo()
    result = _run(ctx, lambda core: core.sync(owner, days))
    _print_sync(result)


@cli.command("smart-sync")
@click.option("--owner", required=True, help="Account to sync")
@click.pass_context
def smart_sync(ctx: click.Context, owner: str) -> None:
    """Sync the last week unless a sync ran in the last five minutes."""
    result = _run(ctx, lambda core: core.smart_sync(owner))
    if result.skipped:
        last = result.last_sync.isoformat() if result.last_sync else "never"
        click.echo(_info(f"Skipped, last sync at {last}"))
        return
    _print_sync(result.result)


@cli.command()
@click.argument("query")
@click.option("--owner", required=True, help="Account to search")
@click.option(
    "--limit",
    default=DEFAULT_SEARCH_LIMIT,
    type=click.IntRange(1, MAX_SEARCH_LIMIT),
    help="Maximum results",
)
@click.pass_context
def search(ctx: click.Context, query: str, owner: str, limit: int) -> None:
    """Search stored contexts."""
    response = _run(ctx, lambda core: core.search(owner, query, limit))

    filters = ", ".join(response.filters_detected) or "none"
    click.echo(_info(f"Query type: {response.query_type} (filters: {filters})"))
    click.echo()

    if not response.results:
        click.echo("No results.")
        return

    for hit in response.results:
        context = hit.context
        click.echo(
            f"[{hit.relevance:>3}] "
            + click.style(context.source, fg="cyan")
            + f"  {context.title}"
        )
        click.echo(f"      {context.external_url}")


@cli.command("list")
@click.option("--owner", required=True, help="Account to list")
@click.option("--source", default=None, type=click.Choice(ALL_SOURCES), help="Only this source")
@click.option(
    "--limit",
    default=DEFAULT_LIST_LIMIT,
    type=click.IntRange(1, MAX_LIST_LIMIT),
    help="Page size",
)
@click.option("--offset", default=0, type=click.IntRange(min=0), help="Rows to skip")
@click.pass_context
def list_contexts(
    ctx: click.Context, owner: str, source: str | None, limit: int, offset: int
) -> None:
    """List stored contexts, newest update first."""
    page = _run(ctx, lambda core: core.list_contexts(owner, source, limit, offset))

    if not page.contexts:
        click.echo("No contexts.")
        return

    for context in page.contexts:
        updated = context.updated_at.strftime("%Y-%m-%d %H:%M")
        click.echo(f"{updated}  " + click.style(context.source, fg="cyan") + f"  {context.title}")
    click.echo()
    last = page.offset + len(page.contexts)
    click.echo(_info(f"Showing {page.offset + 1}-{last} of {page.total}"))
    if page.has_more:
        click.echo(_info(f"Next page: --offset {last}"))


@cli.command()
@click.option("--owner", required=True, help="Account to inspect")
@click.pass_context
def stats(ctx: click.Context, owner: str) -> None:
    """Show stored totals per source."""
    result = _run(ctx, lambda core: core.stats(owner))

    click.echo(click.style(f"Contexts for {owner}", bold=True))
    for source, count in sorted(result.counts_by_source.items()):
        click.echo(f"  {source:<14} {count:>5}")
    click.echo(f"  {'total':<14} {result.total:>5}")
    click.echo()
    last = result.last_sync.isoformat() if result.last_sync else "never"
    click.echo(_info(f"Last sync: {last}"))


@cli.command()
@click.option("--owner", required=True, help="Account to check")
@click.pass_context
def test(ctx: click.Context, owner: str) -> None:
    """Test provider connections for an owner."""
    click.echo()
    click.echo(click.style("Connection Status", bold=True))
    click.echo()

    results = _run(ctx, lambda core: core.health_check(owner))

    for provider, healthy in results.items():
        if healthy is None:
            click.echo("  " + _info(f"{provider} (not connected)"))
        elif healthy:
            click.echo("  " + _success(provider))
        else:
            click.echo("  " + _error(f"{provider} (check credentials)"))

    click.echo()
    if not any(results.values()):
        click.echo(_error("No healthy providers. Use 'contextsync connect' first."))
        sys.exit(1)


@cli.command()
def serve() -> None:
    """Start the MCP server (stdio transport).

    \b
    Connect to an MCP client:
        claude mcp add contextsync -- contextsync serve
    """
    # stdout carries the MCP protocol
    click.echo(click.style("ContextSync", bold=True) + " MCP server running", err=True)
    click.echo("Tools: sync, smart_sync, search, stats, get_detail", err=True)
    click.echo(err=True)

    from contextsync.logging import setup_logging
    from contextsync.server import main as server_main

    setup_logging(logging.INFO)
    server_main()


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
