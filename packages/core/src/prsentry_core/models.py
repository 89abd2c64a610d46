"""Data model shared by every pipeline stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import cached_property
from typing import Iterator

from prsentry_core.dedup import fingerprint


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.INFO, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class Category(str, Enum):
    SECURITY = "security"
    QUALITY = "quality"
    # Findings folded in from external scanner reports (SARIF).
    TOOLING = "tooling"


class Stage(str, Enum):
    FETCHING = "fetching"
    CHUNKING = "chunking"
    REVIEWING = "reviewing"
    DEDUPLICATING = "deduplicating"
    POSTING = "posting"
    DONE = "done"
    FAILED = "failed"


class RunStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    TIMEOUT_PARTIAL = "timeout_partial"
    FAILED = "failed"


@dataclass(frozen=True)
class ChangedFile:
    path: str
    status: str = "modified"
    patch: str = ""


@dataclass(frozen=True)
class DiffHunk:
    """One hunk of a unified diff, or one continuation fragment of an oversized hunk.

    ``first_old_line``/``first_new_line`` are the line counters at the first
    body line of this fragment. For a whole hunk they equal ``old_start`` and
    ``new_start``; for part k > 1 they continue where part k-1 stopped, which
    is what lets relative line numbers map back to the original file.
    """

    path: str
    header: str
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: tuple[str, ...]
    index: int = 0
    part: int = 1
    parts: int = 1
    first_old_line: int | None = None
    first_new_line: int | None = None

    def __post_init__(self):
        if self.first_old_line is None:
            object.__setattr__(self, "first_old_line", self.old_start)
        if self.first_new_line is None:
            object.__setattr__(self, "first_new_line", self.new_start)

    @property
    def is_continuation(self) -> bool:
        return self.parts > 1

    @property
    def text(self) -> str:
        return "\n".join((self.header, *self.lines))

    @property
    def size(self) -> int:
        """Serialized size: the header plus every body line, each newline-terminated."""
        return len(self.header) + 1 + sum(len(line) + 1 for line in self.lines)

    def line_numbers(self) -> Iterator[tuple[int | None, int | None]]:
        """Yield (old_line, new_line) for each body line; None where the side has no line."""
        old = self.first_old_line
        new = self.first_new_line
        for line in self.lines:
            if line.startswith("+"):
                yield None, new
                new += 1
            elif line.startswith("-"):
                yield old, None
                old += 1
            elif line.startswith("\\"):
                # "\ No newline at end of file"
                yield None, None
            else:
                yield old, new
                old += 1
                new += 1

    @property
    def added_lines(self) -> list[int]:
        return [new for line, (_, new) in zip(self.lines, self.line_numbers()) if line.startswith("+")]

    @property
    def removed_lines(self) -> list[int]:
        return [old for line, (old, _) in zip(self.lines, self.line_numbers()) if line.startswith("-")]

    @property
    def new_lines(self) -> set[int]:
        """New-file line numbers visible in this hunk (added and context lines)."""
        return {new for _, new in self.line_numbers() if new is not None}

    def new_line_for(self, relative: int) -> int | None:
        """Map a 1-based body line of this fragment to its new-file line number.

        Removed lines have no new-file line, so they anchor on the next
        new-side line in the fragment, or the previous one when the deletion
        ends the fragment.
        """
        numbers = [new for _, new in self.line_numbers()]
        if not 1 <= relative <= len(numbers):
            return None
        idx = relative - 1
        if numbers[idx] is not None:
            return numbers[idx]
        for new in numbers[idx + 1 :]:
            if new is not None:
                return new
        for new in reversed(numbers[:idx]):
            if new is not None:
                return new
        return None

    def new_range(self) -> tuple[int, int] | None:
        lines = sorted(self.new_lines)
        if not lines:
            return None
        return lines[0], lines[-1]


@dataclass(frozen=True)
class PullRequestContext:
    """Everything fetched about the pull request for one run. Never mutated after fetch."""

    repo: str
    number: int | None
    title: str = ""
    author: str = ""
    base_sha: str = ""
    head_sha: str = ""
    files: tuple[ChangedFile, ...] = ()
    diff: str = ""

    @cached_property
    def hunks(self) -> tuple[DiffHunk, ...]:
        from prsentry_core.utils.diff import parse_unified_diff

        return tuple(parse_unified_diff(self.diff))

    @property
    def label(self) -> str:
        if self.number is None:
            return self.repo or "local diff"
        return f"{self.repo}#{self.number}"


@dataclass(frozen=True)
class Chunk:
    """A context-bounded slice of the diff, reviewed in one completion call."""

    index: int
    total: int
    hunks: tuple[DiffHunk, ...]

    @property
    def size(self) -> int:
        return sum(h.size for h in self.hunks)

    @property
    def paths(self) -> list[str]:
        seen: list[str] = []
        for h in self.hunks:
            if h.path not in seen:
                seen.append(h.path)
        return seen


@dataclass(frozen=True)
class Finding:
    severity: Severity
    category: Category
    message: str
    path: str | None = None
    line: int | None = None
    source: str = "model"
    # Excluded from the fingerprint.
    suggestion: str | None = field(default=None, compare=False)
    fingerprint: str = field(init=False, default="")

    def __post_init__(self):
        object.__setattr__(
            self, "fingerprint", fingerprint(self.path, self.line, self.category.value, self.message)
        )

    @property
    def is_inline(self) -> bool:
        return self.path is not None and self.line is not None

    @property
    def sort_key(self) -> tuple:
        return (self.path or "", self.line or 0, -self.severity.rank, self.fingerprint)


@dataclass(frozen=True)
class PostedCommentRecord:
    fingerprint: str
    comment_id: int | None = None
    kind: str = "inline"  # "inline" | "summary"


@dataclass
class RunError:
    kind: str
    message: str
    stage: Stage
    chunk_index: int | None = None
    fingerprint: str | None = None
    fatal: bool = False

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        stage: Stage,
        chunk_index: int | None = None,
        fingerprint: str | None = None,
    ) -> RunError:
        return cls(
            kind=type(exc).__name__,
            message=str(exc),
            stage=stage,
            chunk_index=chunk_index,
            fingerprint=fingerprint,
            fatal=getattr(exc, "fatal", False),
        )


@dataclass
class ReviewRun:
    """State of one orchestration pass."""

    context: PullRequestContext | None = None
    stage: Stage = Stage.FETCHING
    status: RunStatus = RunStatus.PENDING
    chunks: list[Chunk] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    posted: list[Finding] = field(default_factory=list)
    deduplicated: list[Finding] = field(default_factory=list)
    errors: list[RunError] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    chunks_processed: int = 0
    summary_posted: bool = False
    timed_out: bool = False
    shadow: bool = False
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def findings_posted(self) -> int:
        return len(self.posted)

    @property
    def findings_deduplicated(self) -> int:
        return len(self.deduplicated)

    @property
    def chunks_errored(self) -> int:
        return len({e.chunk_index for e in self.errors if e.chunk_index is not None})

    @property
    def exit_code(self) -> int:
        return 1 if self.status == RunStatus.FAILED else 0
