"""Unified diff parsing.

Handles both full ``git diff`` output (with ``diff --git`` / ``---`` / ``+++``
file headers) and the header-less per-file patches GitHub returns for each
changed file.
"""

from __future__ import annotations

import re
from typing import Iterable

from prsentry_core.models import ChangedFile, DiffHunk

HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
FILE_HEADER = re.compile(r"^diff --git a/(.+?) b/(.+)$")

_DEV_NULL = "/dev/null"


def _strip_path(raw: str) -> str:
    # `diff -u` appends a tab and a timestamp after the file name.
    path = raw.split("\t", 1)[0].strip()
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def parse_unified_diff(text: str, default_path: str = "", start_index: int = 0) -> list[DiffHunk]:
    """Split diff text into hunks, in the order they appear.

    Hunk bodies are delimited by the line counts in their ``@@`` headers, so a
    removed line that happens to read ``--- foo`` is never mistaken for a file
    header.
    """
    hunks: list[DiffHunk] = []
    path = default_path
    header: str | None = None
    counts: tuple[int, int, int, int] = (0, 0, 0, 0)
    body: list[str] = []
    old_left = new_left = 0

    def close():
        nonlocal header, body
        if header is not None:
            old_start, old_count, new_start, new_count = counts
            hunks.append(
                DiffHunk(
                    path=path,
                    header=header,
                    old_start=old_start,
                    old_count=old_count,
                    new_start=new_start,
                    new_count=new_count,
                    lines=tuple(body),
                    index=start_index + len(hunks),
                )
            )
        header = None
        body = []

    for raw in text.splitlines():
        if header is not None and (old_left > 0 or new_left > 0):
            tag = raw[:1]
            if tag == "-":
                old_left -= 1
            elif tag == "+":
                new_left -= 1
            elif tag != "\\":
                # Context line; some tools strip the leading space of blank ones.
                old_left -= 1
                new_left -= 1
            body.append(raw)
            continue
        if header is not None and raw.startswith("\\"):
            body.append(raw)
            continue

        match = HUNK_HEADER.match(raw)
        if match:
            close()
            old_start, old_count, new_start, new_count = match.groups()
            counts = (
                int(old_start),
                1 if old_count is None else int(old_count),
                int(new_start),
                1 if new_count is None else int(new_count),
            )
            header = raw
            old_left, new_left = counts[1], counts[3]
            continue

        close()
        file_match = FILE_HEADER.match(raw)
        if file_match:
            path = file_match.group(2)
        elif raw.startswith("--- ") or raw.startswith("+++ "):
            candidate = raw[4:]
            if candidate.strip() != _DEV_NULL:
                path = _strip_path(candidate)

    close()
    return hunks


def parse_patch(path: str, patch: str, start_index: int = 0) -> list[DiffHunk]:
    """Parse a header-less per-file patch as returned by the GitHub files API."""
    return parse_unified_diff(patch or "", default_path=path, start_index=start_index)


def changed_files(text: str) -> list[ChangedFile]:
    """List the files touched by a full diff, with their change status."""
    files: list[ChangedFile] = []
    path: str | None = None
    status = "modified"

    def flush():
        if path is not None:
            files.append(ChangedFile(path=path, status=status))

    for raw in text.splitlines():
        file_match = FILE_HEADER.match(raw)
        if file_match:
            flush()
            path, status = file_match.group(2), "modified"
        elif raw.startswith("new file mode"):
            status = "added"
        elif raw.startswith("deleted file mode"):
            status = "removed"
        elif raw.startswith("rename to "):
            status = "renamed"
    flush()

    if not files:
        # Plain `diff -u` output carries no `diff --git` lines.
        seen: list[str] = []
        for hunk in parse_unified_diff(text):
            if hunk.path not in seen:
                seen.append(hunk.path)
        files = [ChangedFile(path=p) for p in seen]
    return files


def build_unified_diff(files: Iterable[ChangedFile]) -> str:
    """Assemble per-file patches into a single ``git diff``-style document."""
    parts = []
    for f in files:
        if not f.patch:
            continue
        old = _DEV_NULL if f.status == "added" else f"a/{f.path}"
        new = _DEV_NULL if f.status == "removed" else f"b/{f.path}"
        patch = f.patch if f.patch.endswith("\n") else f.patch + "\n"
        parts.append(f"diff --git a/{f.path} b/{f.path}\n--- {old}\n+++ {new}\n{patch}")
    return "".join(parts)
