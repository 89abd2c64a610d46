"""review command: run the LLM review on a pull request."""

from __future__ import annotations

import click
from rich.console import Console

from prsentry_core.errors import ReviewError
from prsentry_core.gh.comments import GitHubCommentPoster
from prsentry_core.models import ReviewRun, RunStatus
from prsentry_core.reviewer import run_review
from prsentry_core.source import GitHubDiffSource, LocalDiffSource

console = Console()

_STATUS_STYLE = {
    RunStatus.SUCCESS: "green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.TIMEOUT_PARTIAL: "yellow",
    RunStatus.FAILED: "red",
}


def print_run_report(run: ReviewRun) -> None:
    style = _STATUS_STYLE.get(run.status, "white")
    console.print(f"\n[bold {style}]Review {run.status.value}[/bold {style}] (stage: {run.stage.value})")
    console.print(
        f"  chunks processed: {run.chunks_processed}/{len(run.chunks)}"
        f"  ·  chunks errored: {run.chunks_errored}"
        f"  ·  findings posted: {run.findings_posted}"
        f"  ·  already reported: {run.findings_deduplicated}"
    )
    for error in run.errors:
        where = f" chunk {error.chunk_index}" if error.chunk_index is not None else ""
        color = "red" if error.fatal else "yellow"
        console.print(f"  [{color}]{error.stage.value}{where}: {error.kind}: {error.message}[/{color}]")


def _require_token(config) -> str:
    from prsentry_cli.auth import resolve_github_token

    token = config.github_token or resolve_github_token()
    if not token:
        raise click.UsageError(
            "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
            "Use --shadow with --diff to review without GitHub access."
        )
    return token


@click.command("review")
@click.option("--repo", default=None, help="GitHub repository in owner/name format.")
@click.option("--pr", "pr_number", type=int, default=None, help="Pull request number.")
@click.option(
    "--diff",
    "diff_file",
    type=click.File("r"),
    default=None,
    help="Review a unified diff from a file ('-' for stdin) instead of fetching it from GitHub.",
)
@click.option(
    "--shadow",
    "-s",
    is_flag=True,
    help="Dry-run mode: print findings without posting to GitHub.",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    help="Path to the configuration file. Overrides the top-level --config.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def review_cmd(
    ctx,
    repo: str | None,
    pr_number: int | None,
    diff_file,
    shadow: bool,
    config_path: str | None,
    verbose: bool,
):
    """Review a pull request and post findings as PR comments.

    Without --repo/--pr or --diff, the pull request is read from the CI event
    payload at GITHUB_EVENT_PATH.

    \b
    Environment variables:
      API_KEY              key for the completion endpoint (required)
      API_BASE             OpenAI-compatible base URL (default: OpenAI)
      MODEL_ID             model name (default: gpt-4o)
      GITHUB_TOKEN         GitHub token (or use gh CLI)
      GITHUB_EVENT_PATH    event payload, set by GitHub Actions
    """
    from prsentry_core.config import load_config

    if verbose:
        from prsentry_cli.cli import configure_logging

        configure_logging(verbose=True)

    obj = ctx.find_object(dict) or {}
    config_path = config_path or obj.get("config_path") or ".prsentry.yml"

    if (repo is None) != (pr_number is None) and diff_file is None:
        raise click.UsageError("--repo and --pr must be given together.")

    try:
        config = load_config(config_path)
        # Missing API_KEY is fatal before any GitHub request or token lookup.
        config.validate()
        poster = None
        if diff_file is not None:
            source = LocalDiffSource(diff_file.read(), repo=repo or "", pr_number=pr_number)
            if repo and pr_number is not None and not shadow:
                github_source = GitHubDiffSource.from_coordinates(repo, pr_number, _require_token(config))
                poster = GitHubCommentPoster(github_source.repo, pr_number)
        elif repo is not None:
            source = GitHubDiffSource.from_coordinates(repo, pr_number, _require_token(config))
        elif config.event_path:
            source = GitHubDiffSource.from_event(config.event_path, _require_token(config))
        else:
            raise click.UsageError(
                "No pull request to review: GITHUB_EVENT_PATH is not set. Use --repo/--pr or --diff."
            )

        if isinstance(source, GitHubDiffSource) and not shadow:
            poster = GitHubCommentPoster(source.repo, source.pr_number)
    except ReviewError as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(1)

    run = run_review(config, source, poster=poster)
    print_run_report(run)
    ctx.exit(run.exit_code)
