from __future__ import annotations

import json
from pathlib import Path

from github import Auth, Github

from prsentry_core.errors import FetchError
from prsentry_core.models import ChangedFile


def get_repo(repo_name: str, token: str):
    return Github(auth=Auth.Token(token)).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def get_diff(pr):
    return pr.get_files()


def to_changed_files(files) -> list[ChangedFile]:
    """Convert PyGithub File objects, sorted by path. ``patch`` is None for binary or huge files."""
    changed = [ChangedFile(path=f.filename, status=f.status, patch=f.patch or "") for f in files]
    return sorted(changed, key=lambda f: f.path)


def read_event(event_path: str) -> dict:
    """Load the CI event payload (GITHUB_EVENT_PATH)."""
    try:
        return json.loads(Path(event_path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise FetchError(f"Could not read event payload {event_path}: {e}") from e


def event_coordinates(event: dict) -> tuple[str, int]:
    """Return (owner/name, pull request number) from a pull_request event payload."""
    pr = event.get("pull_request") or {}
    repo = (event.get("repository") or {}).get("full_name")
    number = pr.get("number") or event.get("number")
    if not repo or not isinstance(number, int):
        raise FetchError("Event payload does not describe a pull request (missing repository or number).")
    return repo, number
