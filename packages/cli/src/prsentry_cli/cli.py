"""CLI entry point for prsentry.

Running ``prsentry`` with no command reviews the pull request described by
the CI event payload (GITHUB_EVENT_PATH), which is what a workflow step does.

Commands:
  review   run the LLM review on a pull request or a local diff
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.logging import RichHandler

from prsentry_cli.commands.review import review_cmd


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(show_path=False, rich_tracebacks=True)],
        force=True,
    )
    # HTTP client chatter drowns out the pipeline's own progress lines.
    for name in ("httpx", "httpcore", "openai", "urllib3", "github"):
        logging.getLogger(name).setLevel(logging.WARNING)


@click.group(invoke_without_command=True)
@click.version_option(
    version=importlib.metadata.version("prsentry"),
    prog_name="prsentry",
)
@click.option(
    "--config",
    "config_path",
    default=".prsentry.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRSENTRY_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """LLM-driven security and quality review for GitHub pull requests."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    if ctx.invoked_subcommand is None:
        ctx.invoke(review_cmd)


main.add_command(review_cmd)
