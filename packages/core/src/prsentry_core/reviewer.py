"""Core PR review orchestration."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Callable

from rich.console import Console

from prsentry_core.chunker import chunk_hunks
from prsentry_core.config import ReviewConfig, load_guidelines
from prsentry_core.dedup import deduplicate
from prsentry_core.errors import AuthError, ModelError, ParseError, ReviewError
from prsentry_core.gh.comments import (
    SUMMARY_MARKER,
    ExistingComments,
    errors_marker,
    fingerprint_marker,
    split_findings,
)
from prsentry_core.models import (
    Chunk,
    Finding,
    PullRequestContext,
    ReviewRun,
    RunError,
    RunStatus,
    Severity,
    Stage,
)
from prsentry_core.parser import FindingParser
from prsentry_core.prompt import PromptBuilder
from prsentry_core.providers.openai import OpenAICompatibleClient
from prsentry_core.reports import load_sarif_findings
from prsentry_core.source import DiffSource
from prsentry_core.utils.code import is_reviewable

console = Console()
logger = logging.getLogger(__name__)

_SEVERITIES = (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.INFO)
_RISK_WEIGHTS = {Severity.CRITICAL: 10, Severity.HIGH: 5, Severity.MEDIUM: 2, Severity.LOW: 1, Severity.INFO: 0}


@dataclass
class ChunkOutcome:
    """What one worker hands back to the collector. Workers never touch the ReviewRun."""

    chunk: Chunk
    findings: list[Finding] = field(default_factory=list)
    error: ReviewError | None = None
    parse_mode: str | None = None


def review_chunk(
    chunk: Chunk,
    context: PullRequestContext,
    client,
    builder: PromptBuilder,
    parser: FindingParser,
    cancel: threading.Event | None = None,
    deadline: float | None = None,
) -> ChunkOutcome:
    """Prompt the model for one chunk and parse its answer.

    Model errors that survive the client's retries become a non-fatal
    outcome, as does anything unexpected raised by the client or the parser.
    AuthError propagates: it is fatal for the whole run. ``deadline`` is a
    ``time.monotonic()`` value that bounds each completion call.
    """
    prompt = builder.build(chunk, context)
    try:
        raw = client.complete(prompt.system, prompt.user, cancel=cancel, deadline=deadline)
    except AuthError:
        raise
    except ModelError as e:
        return ChunkOutcome(chunk, error=e)
    except Exception as e:
        logger.exception("Chunk %d/%d: completion call failed unexpectedly", chunk.index, chunk.total)
        return ChunkOutcome(chunk, error=ModelError(f"unexpected {type(e).__name__}: {e}"))

    try:
        result = parser.parse(raw, chunk)
    except Exception as e:
        logger.exception("Chunk %d/%d: parser failed unexpectedly", chunk.index, chunk.total)
        return ChunkOutcome(chunk, error=ParseError(f"parser failed: {type(e).__name__}: {e}"), parse_mode="unparsed")
    if result.unparsed:
        error = ParseError(f"model output could not be parsed ({result.diagnostic or 'no findings recognized'})")
        return ChunkOutcome(chunk, error=error, parse_mode=result.mode)
    return ChunkOutcome(chunk, findings=result.findings, parse_mode=result.mode)


def _collect(run: ReviewRun, outcome: ChunkOutcome) -> None:
    chunk = outcome.chunk
    if outcome.error is not None:
        run.errors.append(RunError.from_exception(outcome.error, Stage.REVIEWING, chunk_index=chunk.index))
        console.print(f"  [red]Chunk {chunk.index}/{chunk.total} failed: {outcome.error}[/red]")
        return
    run.chunks_processed += 1
    run.findings.extend(outcome.findings)
    console.print(f"  Chunk {chunk.index}/{chunk.total}: {len(outcome.findings)} finding(s).")


def review_chunks(
    run: ReviewRun,
    context: PullRequestContext,
    client,
    builder: PromptBuilder,
    parser: FindingParser,
    max_workers: int,
    timeout: float,
) -> None:
    """Fan chunks out to a bounded pool; this thread is the only collector.

    When ``timeout`` expires, queued chunks are cancelled, in-flight calls are
    abandoned (the cancel event stops their retries), and whatever was
    already collected is kept. Pool threads are not daemons, so the
    interpreter still joins an abandoned call at exit; each call's HTTP
    timeout is therefore capped at the same deadline.
    """
    if not run.chunks:
        return
    cancel = threading.Event()
    deadline = time.monotonic() + max(timeout, 0)
    executor = ThreadPoolExecutor(max_workers=min(max_workers, len(run.chunks)), thread_name_prefix="prsentry")
    futures = {
        executor.submit(review_chunk, chunk, context, client, builder, parser, cancel, deadline): chunk
        for chunk in run.chunks
    }
    collected = set()
    try:
        for future in as_completed(futures, timeout=max(timeout, 0)):
            collected.add(future)
            _collect(run, future.result())
    except FuturesTimeoutError:
        run.timed_out = True
        cancel.set()
        for future, chunk in futures.items():
            if future in collected:
                continue
            if future.done() and not future.cancelled():
                # Finished between the deadline and now; AuthError still propagates.
                _collect(run, future.result())
                continue
            run.errors.append(
                RunError(
                    kind="RunTimeout",
                    message="abandoned: run timeout reached before this chunk finished",
                    stage=Stage.REVIEWING,
                    chunk_index=chunk.index,
                )
            )
        logger.error("Run timeout reached; %d chunk(s) abandoned", len(futures) - len(collected))
    finally:
        cancel.set()
        executor.shutdown(wait=False, cancel_futures=True)


def _load_reports(config: ReviewConfig, run: ReviewRun) -> list[Finding]:
    findings: list[Finding] = []
    for path in config.reports:
        try:
            findings.extend(load_sarif_findings(path))
        except ReviewError as e:
            # A missing scanner report must not cost the model review.
            logger.warning("%s", e)
            run.errors.append(RunError(kind=type(e).__name__, message=str(e), stage=Stage.FETCHING))
    return findings


def _format_elapsed(elapsed_seconds: float) -> str:
    elapsed_min = elapsed_seconds / 60
    if elapsed_min < 1:
        return f"{int(elapsed_seconds)}s"
    return f"{elapsed_min:.1f} min"


def risk_score(findings: list[Finding]) -> tuple[int, str]:
    """Overall risk on a 0-10 scale, with a one-line rationale.

    Severity weights add up and saturate at 10; a single critical finding
    is enough to reach it.
    """
    if not findings:
        return 0, "no findings"
    score = min(10, sum(_RISK_WEIGHTS[f.severity] for f in findings))
    worst = max(findings, key=lambda f: f.severity.rank).severity
    serious = sum(1 for f in findings if f.severity.rank >= Severity.HIGH.rank)
    rationale = f"highest severity {worst.value}"
    if serious:
        rationale += f", {serious} high or critical finding(s)"
    return score, rationale


def error_digest(errors: list[RunError]) -> str:
    """Stable digest of a run's error set, so an unchanged failure is not re-announced."""
    entries = sorted(f"{e.stage.value}|{e.chunk_index}|{e.kind}|{e.message}" for e in errors)
    return hashlib.sha256("\n".join(entries).encode("utf-8")).hexdigest()[:16]


def build_summary(
    run: ReviewRun,
    new_findings: list[Finding],
    folded: list[Finding],
    elapsed_seconds: float,
) -> str:
    """Build the summary comment body.

    Carries the verdict, run counters, a per-file severity table, every
    summary-level finding (with its fingerprint marker) and the chunks that
    could not be analyzed.
    """
    chunk_errors = [e for e in run.errors if e.chunk_index is not None]
    other_errors = [e for e in run.errors if e.chunk_index is None]
    errored_chunks = sorted({e.chunk_index for e in chunk_errors})

    file_counts: dict[str, dict[Severity, int]] = {}
    for f in new_findings:
        counts = file_counts.setdefault(f.path or "(general)", {s: 0 for s in _SEVERITIES})
        counts[f.severity] += 1
    totals = {s: sum(c[s] for c in file_counts.values()) for s in _SEVERITIES}

    lines = [SUMMARY_MARKER]
    if run.errors:
        lines.append(errors_marker(error_digest(run.errors)))
    lines.append("## prsentry review\n")

    if not new_findings:
        verdict = "Review completed with no new issues."
    else:
        issue_str = ", ".join(f"{totals[s]} {s.value}" for s in _SEVERITIES if totals[s])
        flagged = sorted(file_counts, key=lambda p: sum(file_counts[p].values()), reverse=True)
        verdict = f"{issue_str} finding(s). Most flagged: `{flagged[0]}`."
    if errored_chunks:
        verdict += f" {len(errored_chunks)} chunk(s) could not be analyzed."
    if run.timed_out:
        verdict += " The run hit its time limit; this review is partial."
    lines.append(f"> {verdict}\n")

    score, rationale = risk_score(run.findings)
    lines.append(f"**Risk score: {score}/10** ({rationale})\n")

    lines.append(
        f"**{run.chunks_processed}** of {len(run.chunks)} chunk(s) reviewed"
        + (f", **{len(errored_chunks)}** could not be analyzed" if errored_chunks else "")
        + f" · **{len(new_findings)}** new finding(s)"
        + (f" · {run.findings_deduplicated} already reported" if run.findings_deduplicated else "")
        + f" · reviewed in {_format_elapsed(elapsed_seconds)}\n"
    )

    if file_counts:
        lines.append("| File | Critical | High | Medium | Low | Info | Total |")
        lines.append("|------|:--------:|:----:|:------:|:---:|:----:|:-----:|")
        for path in sorted(file_counts):
            fc = file_counts[path]
            cells = " | ".join(str(fc[s] or "—") for s in _SEVERITIES)
            lines.append(f"| `{path}` | {cells} | {sum(fc.values())} |")

    if folded:
        lines.append("\n### Findings without an inline location\n")
        for f in folded:
            where = f"`{f.path}:{f.line}`" if f.path and f.line else (f"`{f.path}`" if f.path else "general")
            fix = f" _Fix: {f.suggestion}_" if f.suggestion else ""
            lines.append(
                f"- **[{f.severity.value.upper()}]** {f.category.value} · {where} — {f.message}{fix} "
                f"{fingerprint_marker(f.fingerprint)}"
            )

    if chunk_errors:
        lines.append("\n### Could not be analyzed\n")
        for error in chunk_errors:
            chunk = run.chunks[error.chunk_index - 1]
            files = ", ".join(f"`{p}`" for p in chunk.paths)
            lines.append(f"- Chunk {chunk.index}/{chunk.total} ({files}): {error.kind}: {error.message}")

    if other_errors:
        lines.append("\n### Other problems\n")
        for error in other_errors:
            lines.append(f"- {error.kind}: {error.message}")

    if run.skipped_files:
        lines.append(f"\n_Skipped: {len(run.skipped_files)} file(s) excluded or not code._")

    return "\n".join(lines)


def print_shadow_findings(findings: list[Finding]) -> None:
    """Print findings to the terminal without posting to GitHub."""
    _severity_color = {"critical": "red", "high": "red", "medium": "yellow", "low": "blue", "info": "dim"}
    if not findings:
        console.print("[yellow]Shadow mode: no findings generated.[/yellow]")
        return
    console.print(f"\n[bold]Shadow review: {len(findings)} finding(s) (not posted)[/bold]\n")
    for f in findings:
        color = _severity_color.get(f.severity.value, "white")
        where = f"{f.path or '(general)'}" + (f"  line [bold]{f.line}[/bold]" if f.line else "")
        label = f"[{color}]{f.severity.value.upper()}[/{color}]"
        console.print(f"[bold cyan]{where}[/bold cyan]  {label}  {f.category.value}")
        console.print(f"  {f.message}")
        if f.suggestion:
            console.print(f"  [dim]Fix: {f.suggestion}[/dim]")
        console.print()


def _publish(
    run: ReviewRun,
    context: PullRequestContext,
    new_findings: list[Finding],
    existing: ExistingComments,
    poster,
    elapsed: float,
) -> None:
    inline, folded = split_findings(new_findings, context)

    if poster is None:
        run.shadow = True
        print_shadow_findings(inline + folded)
        return

    report = poster.post_inline(context, inline)
    run.posted.extend(report.posted)
    for finding, error in report.failed:
        run.errors.append(RunError.from_exception(error, Stage.POSTING, fingerprint=finding.fingerprint))
        # Still reported, just not inline.
        folded.append(finding)
    folded.sort(key=lambda f: f.sort_key)

    # A re-run with nothing new to say stays silent once a summary exists;
    # errors identical to an earlier summary's are not news either.
    repeated_errors = not run.errors or error_digest(run.errors) in existing.error_digests
    if existing.summary_ids and not new_findings and repeated_errors:
        logger.info("Nothing new to report; existing summary left as is.")
        return

    body = build_summary(run, new_findings, folded, elapsed)
    summary = poster.post_summary(body, folded)
    run.posted.extend(summary.posted)
    if summary.summary_error is not None:
        run.errors.append(RunError.from_exception(summary.summary_error, Stage.POSTING))
    else:
        run.summary_posted = True


def run_review(
    config: ReviewConfig,
    source: DiffSource,
    client=None,
    poster=None,
    guidelines: str | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ReviewRun:
    """Run the full pipeline once and return the ReviewRun.

    Fatal errors (configuration, fetch, chunk budget, endpoint auth) end the
    run in FAILED; nothing is posted. Everything else is recorded on the run
    and the pipeline carries on with what it has. ``poster=None`` runs in
    shadow mode: findings are printed instead of posted.
    """
    run = ReviewRun()
    started = clock()
    deadline = started + config.run_timeout

    try:
        config.validate()
        if guidelines is None:
            guidelines = load_guidelines(config)

        run.stage = Stage.FETCHING
        context = source.fetch()
        run.context = context
        existing = poster.existing_comments() if poster is not None else ExistingComments()
        external = _load_reports(config, run)

        run.stage = Stage.CHUNKING
        hunks = []
        for hunk in context.hunks:
            if is_reviewable(hunk.path, config.exclude):
                hunks.append(hunk)
            elif hunk.path not in run.skipped_files:
                run.skipped_files.append(hunk.path)
                console.print(f"  Skipping: {hunk.path}")
        run.chunks = chunk_hunks(hunks, config.chunk_budget)
        console.print(f"Reviewing {context.label}: {len(hunks)} hunk(s) in {len(run.chunks)} chunk(s)")

        run.stage = Stage.REVIEWING
        if client is None and run.chunks:
            client = OpenAICompatibleClient.from_config(config)
        review_chunks(
            run,
            context,
            client,
            PromptBuilder(guidelines),
            FindingParser(),
            config.max_workers,
            deadline - clock(),
        )
        run.findings.extend(external)

        run.stage = Stage.DEDUPLICATING
        result = deduplicate(sorted(run.findings, key=lambda f: f.sort_key), existing.records)
        run.deduplicated = result.already_posted
        logger.info("%d new finding(s), %d already reported", len(result.new), len(result.already_posted))

        run.stage = Stage.POSTING
        _publish(run, context, result.new, existing, poster, clock() - started)
    except ReviewError as e:
        logger.error("Review failed during %s: %s", run.stage.value, e)
        run.errors.append(RunError.from_exception(e, run.stage))
        run.stage = Stage.FAILED
        run.status = RunStatus.FAILED
        return run

    run.stage = Stage.DONE
    if run.timed_out:
        run.status = RunStatus.TIMEOUT_PARTIAL
    elif run.errors:
        run.status = RunStatus.PARTIAL
    else:
        run.status = RunStatus.SUCCESS
    return run
