"""Publishing findings on the pull request, and re-reading what was published before.

Every comment body carries a hidden ``<!-- prsentry-fp: ... -->`` marker per
finding it contains. Re-reading those markers on each run is the only
persistence: posted state survives across runs without a side database.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from github import GithubException

from prsentry_core.errors import FetchError, PostError
from prsentry_core.gh.pull_request import get_pull
from prsentry_core.models import Finding, PostedCommentRecord, PullRequestContext

logger = logging.getLogger(__name__)

SUMMARY_MARKER = "<!-- prsentry-summary -->"
_FP_MARKER_RE = re.compile(r"<!-- prsentry-fp: ([0-9a-f]{16}) -->")
_ERRORS_MARKER_RE = re.compile(r"<!-- prsentry-errors: ([0-9a-f]{16}) -->")


def fingerprint_marker(fp: str) -> str:
    return f"<!-- prsentry-fp: {fp} -->"


def errors_marker(digest: str) -> str:
    return f"<!-- prsentry-errors: {digest} -->"


def extract_fingerprints(body: str | None) -> list[str]:
    return _FP_MARKER_RE.findall(body or "")


def format_inline_body(finding: Finding) -> str:
    body = f"**[{finding.severity.value.upper()}]** · {finding.category.value}\n\n{finding.message}\n\n"
    if finding.suggestion:
        body += f"**Suggested fix:** {finding.suggestion}\n\n"
    return body + fingerprint_marker(finding.fingerprint)


def split_findings(findings: list[Finding], context: PullRequestContext) -> tuple[list[Finding], list[Finding]]:
    """Split into (inline, summary-level), both sorted by (path, line).

    Inline comments need a line on the new side of the PR diff; anything
    else is folded into the summary comment.
    """
    commentable: dict[str, set[int]] = {}
    for hunk in context.hunks:
        commentable.setdefault(hunk.path, set()).update(hunk.new_lines)

    inline, folded = [], []
    for finding in sorted(findings, key=lambda f: f.sort_key):
        if finding.is_inline and finding.line in commentable.get(finding.path, ()):
            inline.append(finding)
        else:
            folded.append(finding)
    return inline, folded


@dataclass
class ExistingComments:
    records: list[PostedCommentRecord] = field(default_factory=list)
    summary_ids: list[int] = field(default_factory=list)
    # Error-set digests of earlier summaries.
    error_digests: set[str] = field(default_factory=set)

    @property
    def fingerprints(self) -> set[str]:
        return {r.fingerprint for r in self.records}


@dataclass
class PostReport:
    posted: list[Finding] = field(default_factory=list)
    failed: list[tuple[Finding, PostError]] = field(default_factory=list)
    records: list[PostedCommentRecord] = field(default_factory=list)
    summary_error: PostError | None = None


class GitHubCommentPoster:
    def __init__(self, repo, pr_number: int, pull=None):
        self.repo = repo
        self.pr_number = pr_number
        self._pull = pull

    @property
    def pull(self):
        if self._pull is None:
            self._pull = get_pull(self.repo, self.pr_number)
        return self._pull

    def existing_comments(self) -> ExistingComments:
        """Re-read fingerprints from every review comment and issue comment on the PR."""
        existing = ExistingComments()
        try:
            for comment in self.pull.get_review_comments():
                for fp in extract_fingerprints(comment.body):
                    existing.records.append(PostedCommentRecord(fp, comment.id, "inline"))
            for comment in self.pull.get_issue_comments():
                body = comment.body or ""
                if SUMMARY_MARKER in body:
                    existing.summary_ids.append(comment.id)
                    existing.error_digests.update(_ERRORS_MARKER_RE.findall(body))
                for fp in extract_fingerprints(body):
                    existing.records.append(PostedCommentRecord(fp, comment.id, "summary"))
        except (GithubException, OSError) as e:
            raise FetchError(f"Could not list existing comments on PR #{self.pr_number}: {e}") from e
        logger.debug(
            "Found %d previously posted finding(s), %d summary comment(s)",
            len(existing.records),
            len(existing.summary_ids),
        )
        return existing

    def post_inline(self, context: PullRequestContext, findings: list[Finding]) -> PostReport:
        """Post one review comment per finding. A failure only affects that finding."""
        report = PostReport()
        if not findings:
            return report
        try:
            commit = self.repo.get_commit(context.head_sha)
        except (GithubException, OSError) as e:
            error = PostError(f"Could not resolve head commit {context.head_sha[:7]}: {e}")
            report.failed.extend((f, error) for f in findings)
            return report

        for finding in sorted(findings, key=lambda f: f.sort_key):
            try:
                comment = self.pull.create_review_comment(
                    body=format_inline_body(finding),
                    commit=commit,
                    path=finding.path,
                    line=finding.line,
                    side="RIGHT",
                )
            except (GithubException, OSError) as e:
                logger.warning("Could not post comment on %s:%s: %s", finding.path, finding.line, e)
                report.failed.append((finding, PostError(f"{finding.path}:{finding.line}: {e}")))
                continue
            report.posted.append(finding)
            report.records.append(PostedCommentRecord(finding.fingerprint, comment.id, "inline"))
        return report

    def post_summary(self, body: str, folded: list[Finding]) -> PostReport:
        """Post the summary issue comment that carries every summary-level finding."""
        report = PostReport()
        try:
            comment = self.pull.create_issue_comment(body)
        except (GithubException, OSError) as e:
            logger.warning("Could not post summary comment: %s", e)
            report.summary_error = PostError(f"summary comment: {e}")
            report.failed.extend((f, report.summary_error) for f in folded)
            return report
        report.posted.extend(folded)
        report.records.extend(PostedCommentRecord(f.fingerprint, comment.id, "summary") for f in folded)
        return report
