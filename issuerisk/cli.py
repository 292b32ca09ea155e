"""CLI entry point for issuerisk."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path

import anthropic
import typer
from rich import print as rprint
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from issuerisk.config import Config
from issuerisk.engine.comment import render_risk_comment
from issuerisk.engine.models import RiskSummary
from issuerisk.engine.scheduler import HydrationTimeoutError, RiskIntelligenceService
from issuerisk.extraction.backfill import KeywordBackfill
from issuerisk.extraction.keywords import KeywordExtractor
from issuerisk.github.client import GitHubClient
from issuerisk.github.fetcher import IssueSummary, RiskFetcher
from issuerisk.query.similarity import SimilarityMatcher
from issuerisk.storage.repository import RiskStore
from issuerisk.telemetry import EventLog, read_event_log

app = typer.Typer(help="Score GitHub issues by the historical risk of the changes behind them.")

LEVEL_COLORS = {"high": "red", "medium": "yellow", "low": "green"}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr"),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")


def _write_env(project_dir: Path, repo: str, token: str, anthropic_key: str) -> None:
    """Write or update .env file with issuerisk credentials."""
    env_path = project_dir / ".env"
    lines: list[str] = []
    lines.append(f"ISSUERISK_GITHUB_TOKEN={token}")
    lines.append(f"ISSUERISK_REPO={repo}")
    if anthropic_key:
        lines.append(f"ANTHROPIC_API_KEY={anthropic_key}")

    our_keys = {"ISSUERISK_GITHUB_TOKEN", "ISSUERISK_REPO", "ANTHROPIC_API_KEY"}
    if env_path.exists():
        for line in env_path.read_text().splitlines():
            key = line.split("=")[0].strip()
            if key and key not in our_keys:
                lines.append(line)

    env_path.write_text("\n".join(lines) + "\n")
    rprint(f"Credentials saved to {env_path}")


def _write_mcp_config(project_dir: Path) -> None:
    """Create .mcp.json so agents can read risk profiles over MCP."""
    mcp_config_path = project_dir / ".mcp.json"

    issuerisk_bin = shutil.which("issuerisk")
    if issuerisk_bin:
        command, args = issuerisk_bin, ["serve"]
    else:
        source_dir = Path(__file__).resolve().parent.parent
        command, args = "uv", ["run", "--directory", str(source_dir), "issuerisk", "serve"]

    config = {
        "mcpServers": {
            "issuerisk": {
                "type": "stdio",
                "command": command,
                "args": args,
                "env": {
                    "ISSUERISK_DB_PATH": str(project_dir / "issuerisk.db"),
                },
            }
        }
    }

    mcp_config_path.write_text(json.dumps(config, indent=2) + "\n")
    rprint(f"MCP config written to {mcp_config_path}")


def _update_gitignore(project_dir: Path) -> None:
    """Ensure .gitignore includes issuerisk files that shouldn't be committed."""
    gitignore_path = project_dir / ".gitignore"
    entries_to_add = ["issuerisk.db", "issuerisk-events.jsonl", ".env"]

    existing_lines: set[str] = set()
    if gitignore_path.exists():
        existing_lines = set(gitignore_path.read_text().splitlines())

    new_entries = [e for e in entries_to_add if e not in existing_lines]
    if new_entries:
        with open(gitignore_path, "a") as f:
            if existing_lines and not gitignore_path.read_text().endswith("\n"):
                f.write("\n")
            f.write("\n# issuerisk\n")
            for entry in new_entries:
                f.write(f"{entry}\n")
        rprint(f"Added {', '.join(new_entries)} to .gitignore")


def _load_config(db_path: str | None = None, require_github: bool = True) -> Config:
    config = Config.load()
    if db_path:
        config.db_path = Path(db_path)
    if require_github:
        problems = config.validate()
        if problems:
            for problem in problems:
                rprint(f"[red]Config error: {problem}[/red]")
            raise typer.Exit(1)
    return config


def _open_store(config: Config, must_exist: bool = True) -> RiskStore:
    if must_exist and not config.db_path.exists():
        rprint(f"[red]Database not found at {config.db_path}. Run 'issuerisk analyze' first.[/red]")
        raise typer.Exit(1)
    store = RiskStore(config.db_path)
    store.initialize()
    return store


def _keyword_extractor(config: Config) -> KeywordExtractor | None:
    if not config.anthropic_api_key:
        return None
    return KeywordExtractor(anthropic.Anthropic(api_key=config.anthropic_api_key))


def _format_level(level: str | None) -> str:
    if not level:
        return "-"
    color = LEVEL_COLORS.get(level, "white")
    return f"[{color}]{level}[/{color}]"


def _print_summaries(repo: str, issues: list[IssueSummary], service: RiskIntelligenceService) -> None:
    table = Table(title=f"Risk intelligence for {repo}")
    table.add_column("Issue", justify="right")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Level")
    table.add_column("Score", justify="right")
    table.add_column("Notes")
    for issue in issues:
        summary = service.get_summary(repo, issue.number) or RiskSummary.pending()
        notes = "; ".join(summary.top_drivers) if summary.status == "ready" else (summary.message or "")
        if summary.stale:
            notes = f"(stale) {notes}"
        table.add_row(
            f"#{issue.number}",
            issue.title[:60],
            summary.status,
            _format_level(summary.risk_level),
            f"{summary.risk_score:g}" if summary.risk_score is not None else "-",
            notes,
        )
    rprint(table)


async def _run_hydration(
    service: RiskIntelligenceService, repo: str, issues: list[IssueSummary], timeout: float, force: bool | None
) -> None:
    """Prime (force=None) or explicitly queue issues, then wait for the queue to drain."""
    if force is None:
        await service.prime_issues(repo, issues)
    else:
        service.queue_hydration(repo, issues, force=force)
    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}")) as progress:
        progress.add_task(f"Hydrating risk profiles for {len(issues)} issue(s)...", total=None)
        await service.wait_for_idle(timeout)


@app.command()
def init(
    repo: str = typer.Argument(help="GitHub repository (owner/repo)"),
    token: str = typer.Option(
        ..., prompt=True, hide_input=True, help="GitHub personal access token"
    ),
    anthropic_key: str = typer.Option(
        None, "--anthropic-key",
        prompt="Anthropic API key (optional, for keyword extraction)",
        hide_input=True,
        help="Anthropic API key",
    ),
) -> None:
    """Initialize issuerisk in a project directory.

    Sets up credentials, creates .mcp.json for Claude Code/Cursor,
    and adds issuerisk files to .gitignore. Run in your project root.
    """
    project_dir = Path.cwd()

    _write_env(project_dir, repo, token, anthropic_key or "")
    _write_mcp_config(project_dir)
    _update_gitignore(project_dir)

    rprint(f"\n[green bold]issuerisk initialized for {repo}[/green bold]")
    rprint("\nNext steps:")
    rprint("  1. Run [bold]issuerisk analyze[/bold] to score recent issues")
    rprint("  2. Run [bold]issuerisk rehydrate[/bold] on a new machine to restore profiles from GitHub")


@app.command()
def serve() -> None:
    """Start the MCP server (called by Claude Code / Cursor automatically)."""
    from issuerisk.mcp_server import main as mcp_main
    asyncio.run(mcp_main())


@app.command()
def analyze(
    limit: int = typer.Option(50, help="Max number of issues to analyze"),
    state: str = typer.Option("all", help="Issue state: open, closed or all"),
    timeout: float = typer.Option(600.0, help="Seconds to wait for hydration to finish"),
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """Compute risk profiles for the most recently updated issues."""
    config = _load_config(db_path)
    store = _open_store(config, must_exist=False)
    client = GitHubClient(token=config.github_token)
    fetcher = RiskFetcher(client)
    service = RiskIntelligenceService(store, fetcher, config, EventLog(), _keyword_extractor(config))

    try:
        issues = fetcher.list_issues(config.repo, state=state, limit=limit)
        rprint(f"Found [bold]{len(issues)}[/bold] issues in {config.repo}")
        if not issues:
            return
        try:
            asyncio.run(_run_hydration(service, config.repo, issues, timeout, force=None))
        except HydrationTimeoutError as e:
            rprint(f"[yellow]{e} Showing partial results.[/yellow]")
        _print_summaries(config.repo, issues, service)
    finally:
        service.dispose()
        client.close()


@app.command()
def refresh(
    issue: int = typer.Argument(help="Issue number"),
    force: bool = typer.Option(False, "--force", help="Post a new risk comment instead of editing"),
    timeout: float = typer.Option(120.0, help="Seconds to wait for hydration to finish"),
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """Recompute one issue's risk profile regardless of staleness."""
    config = _load_config(db_path)
    store = _open_store(config, must_exist=False)
    client = GitHubClient(token=config.github_token)
    fetcher = RiskFetcher(client)
    service = RiskIntelligenceService(store, fetcher, config, EventLog(), _keyword_extractor(config))

    try:
        summary_row = fetcher.get_issue_summary(config.repo, issue)
        asyncio.run(_run_hydration(service, config.repo, [summary_row], timeout, force=force))
        _print_summaries(config.repo, [summary_row], service)
    finally:
        service.dispose()
        client.close()


@app.command()
def rehydrate(
    limit: int = typer.Option(200, help="Max number of issues to inspect"),
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """Restore missing local profiles from the risk comments already on GitHub."""
    config = _load_config(db_path)
    store = _open_store(config, must_exist=False)
    client = GitHubClient(token=config.github_token)
    fetcher = RiskFetcher(client)
    service = RiskIntelligenceService(store, fetcher, config, EventLog())

    try:
        issues = fetcher.list_issues(config.repo, state="all", limit=limit)
        missing = service.find_issues_missing_profiles(config.repo, issues)
        rprint(f"[bold]{len(missing)}[/bold] of {len(issues)} issues have no local profile")
        if not missing:
            return
        restored = asyncio.run(service.hydrate_profiles_from_github(config.repo, missing))
        rprint(f"Restored [green bold]{restored}[/green bold] profile(s) from GitHub comments")
        rprint(f"  Profiles stored for {config.repo}: {service.get_profile_count(config.repo)}")
    finally:
        service.dispose()
        client.close()


@app.command()
def show(
    issue: int = typer.Argument(help="Issue number"),
    comment: bool = typer.Option(False, "--comment", help="Print the rendered GitHub comment"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """Show the stored risk profile of an issue."""
    config = _load_config(db_path, require_github=False)
    store = _open_store(config)

    try:
        profile = store.get_profile(config.repo, issue)
        if profile is None:
            rprint(f"[yellow]No risk profile stored for #{issue}. Run 'issuerisk refresh {issue}'.[/yellow]")
            raise typer.Exit(1)

        if format == "json":
            typer.echo(json.dumps(profile.to_dict(), indent=2, default=str))
            return
        if comment:
            typer.echo(render_risk_comment(profile))
            return

        m = profile.metrics
        rprint(f"[bold]#{profile.issue_number} {profile.issue_title}[/bold]")
        rprint(f"  Risk: {_format_level(profile.risk_level)} (score {profile.risk_score:g})")
        rprint(f"  Calculated: {profile.calculated_at} over {profile.lookback_days} days")
        rprint(
            f"  Metrics: {m.pr_count} PRs, {m.direct_commit_count} direct commits, "
            f"{m.files_touched} files, {m.change_volume} lines, {m.review_comment_count} friction signals"
        )
        if profile.drivers:
            rprint("\n[bold]Drivers:[/bold]")
            for driver in profile.drivers:
                rprint(f"  - {driver}")
        if profile.evidence:
            rprint("\n[bold]Evidence:[/bold]")
            for item in profile.evidence:
                rprint(f"  - {item.label}: {item.detail or ''} {item.url or ''}")
        if profile.file_changes:
            rprint("\n[bold]Hot files:[/bold]")
            for change in profile.file_changes[:10]:
                rprint(f"  {change.path} (+{change.additions}/-{change.deletions})")
        if profile.keywords:
            rprint(f"\n[bold]Keywords:[/bold] {', '.join(profile.keywords)}")
    finally:
        store.dispose()


@app.command()
def similar(
    issue: int = typer.Argument(help="Issue number"),
    limit: int = typer.Option(5, help="Max number of similar issues"),
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """List past issues whose keywords overlap with this issue's."""
    config = _load_config(db_path, require_github=False)
    store = _open_store(config)

    try:
        profile = store.get_profile(config.repo, issue)
        if profile is None or not profile.keywords:
            rprint(f"[yellow]No keywords stored for #{issue}.[/yellow]")
            raise typer.Exit(1)

        matches = SimilarityMatcher(store).find_similar(
            config.repo, profile.keywords, exclude_issue_number=issue, limit=limit
        )
        if not matches:
            rprint("No similar issues found.")
            return
        rprint(f"[bold]Issues similar to #{issue}[/bold] ({', '.join(profile.keywords)})")
        for match in matches:
            rprint(
                f"  #{match.issue_number} {match.issue_title} "
                f"{_format_level(match.risk_level)} {match.risk_score:g} "
                f"overlap {match.overlap_score:.2f} (shared: {', '.join(match.shared_keywords)})"
            )
    finally:
        store.dispose()


@app.command()
def search(
    keywords: list[str] = typer.Argument(help="Keywords to look for"),
    limit: int = typer.Option(10, help="Max number of results"),
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """Find stored profiles tagged with any of the given keywords."""
    config = _load_config(db_path, require_github=False)
    store = _open_store(config)

    try:
        profiles = store.search_by_keywords(config.repo, keywords, limit=limit)
        if not profiles:
            rprint("No matching profiles.")
            return
        for profile in profiles:
            rprint(
                f"  #{profile.issue_number} {profile.issue_title} "
                f"{_format_level(profile.risk_level)} {profile.risk_score:g} "
                f"({', '.join(profile.keywords or [])})"
            )
    finally:
        store.dispose()


@app.command()
def coverage(
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """Show how many stored profiles carry keywords."""
    config = _load_config(db_path, require_github=False)
    store = _open_store(config)

    try:
        stats = store.get_keyword_coverage(config.repo)
        rprint(f"[bold]Keyword coverage for {config.repo}:[/bold]")
        rprint(f"  Profiles:      {stats.total}")
        rprint(f"  With keywords: {stats.with_keywords}")
        rprint(f"  Coverage:      {stats.coverage_pct}%")
    finally:
        store.dispose()


@app.command("backfill-keywords")
def backfill_keywords(
    mode: str = typer.Option("missing", help="missing: closed issues without keywords; all: every profile"),
    batch_size: int = typer.Option(None, help="Max number of profiles to process"),
    max_tokens: int = typer.Option(200_000, help="Stop once this many tokens were spent"),
    delay: float = typer.Option(0.5, help="Seconds between extraction calls"),
    db_path: str = typer.Option(None, help="Database file path"),
) -> None:
    """Extract keywords with Claude for stored profiles."""
    config = _load_config(db_path)
    extractor = _keyword_extractor(config)
    if extractor is None:
        rprint("[red]ANTHROPIC_API_KEY not set[/red]")
        raise typer.Exit(1)

    store = _open_store(config)
    client = GitHubClient(token=config.github_token)
    backfill = KeywordBackfill(store, RiskFetcher(client), extractor, EventLog())

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
        ) as progress:
            task = progress.add_task("Backfilling keywords...", total=None)

            def on_progress(update) -> None:
                progress.update(task, total=update.total_issues, completed=update.processed_issues)

            result = backfill.backfill_keywords(
                config.repo,
                batch_size=batch_size,
                delay=delay,
                max_tokens_per_run=max_tokens,
                mode=mode,
                on_progress=on_progress,
            )

        rprint(f"\n[bold]Backfill {result.status}:[/bold]")
        rprint(f"  Updated: {result.success_count}")
        rprint(f"  Skipped: {result.skipped_count} (still open)")
        rprint(f"  Failed:  {result.failure_count}")
        rprint(f"  Tokens:  {result.tokens_used}")
        for error in result.errors:
            rprint(f"  [red]#{error.issue_number}: {error.message}[/red]")
    finally:
        store.dispose()
        client.close()


@app.command()
def events(
    limit: int = typer.Option(20, help="Number of events to show"),
    name: str = typer.Option(None, help="Only show events with this name"),
) -> None:
    """Show recent engine events, most recent first."""
    entries = read_event_log(limit=limit, name=name)
    if not entries:
        rprint("No events recorded yet.")
        return
    for entry in entries:
        properties = " ".join(f"{k}={v}" for k, v in entry.get("properties", {}).items())
        rprint(f"  {entry.get('timestamp', '')} [bold]{entry.get('name', '')}[/bold] {properties}")


if __name__ == "__main__":
    app()
