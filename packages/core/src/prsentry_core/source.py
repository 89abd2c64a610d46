"""Where the pull request diff comes from: GitHub, or a local diff for ad hoc runs."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from github import GithubException

from prsentry_core.errors import FetchError
from prsentry_core.gh.pull_request import (
    event_coordinates,
    get_diff,
    get_pull,
    get_repo,
    read_event,
    to_changed_files,
)
from prsentry_core.models import PullRequestContext
from prsentry_core.utils.diff import build_unified_diff, changed_files

logger = logging.getLogger(__name__)


class DiffSource(ABC):
    @abstractmethod
    def fetch(self) -> PullRequestContext:
        """Return the pull request context. Raises FetchError when it cannot be retrieved."""


class GitHubDiffSource(DiffSource):
    """Fetch a pull request's metadata and per-file patches through the GitHub API."""

    def __init__(self, repo, pr_number: int):
        self.repo = repo
        self.pr_number = pr_number
        self.pull = None

    @classmethod
    def from_coordinates(cls, repo_name: str, pr_number: int, token: str) -> GitHubDiffSource:
        try:
            repo = get_repo(repo_name, token=token)
        except (GithubException, OSError) as e:
            raise FetchError(f"Could not open repository {repo_name}: {e}") from e
        return cls(repo, pr_number)

    @classmethod
    def from_event(cls, event_path: str, token: str) -> GitHubDiffSource:
        repo_name, pr_number = event_coordinates(read_event(event_path))
        return cls.from_coordinates(repo_name, pr_number, token)

    def fetch(self) -> PullRequestContext:
        try:
            self.pull = get_pull(self.repo, self.pr_number)
            files = to_changed_files(get_diff(self.pull))
            context = PullRequestContext(
                repo=self.repo.full_name,
                number=self.pr_number,
                title=self.pull.title or "",
                author=self.pull.user.login if self.pull.user else "",
                base_sha=self.pull.base.sha,
                head_sha=self.pull.head.sha,
                files=tuple(files),
                diff=build_unified_diff(files),
            )
        except (GithubException, OSError) as e:
            # requests' exceptions derive from OSError, so network failures land here too.
            raise FetchError(f"Could not fetch PR #{self.pr_number} from {self.repo.full_name}: {e}") from e
        logger.info("Fetched %s: %d file(s) changed", context.label, len(files))
        return context


class LocalDiffSource(DiffSource):
    """Review a diff supplied directly (file or stdin), optionally labelled with PR coordinates."""

    def __init__(self, diff: str, repo: str = "", pr_number: int | None = None, title: str = ""):
        self.diff = diff
        self.repo_name = repo
        self.pr_number = pr_number
        self.title = title

    def fetch(self) -> PullRequestContext:
        if not self.diff.strip():
            raise FetchError("The supplied diff is empty.")
        return PullRequestContext(
            repo=self.repo_name,
            number=self.pr_number,
            title=self.title,
            files=tuple(changed_files(self.diff)),
            diff=self.diff,
        )
