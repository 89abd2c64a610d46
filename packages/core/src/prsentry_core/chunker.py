"""Split a pull request diff into chunks that fit the model's context budget.

Sizes are measured in characters of serialized hunk text (header plus body
lines), the same text the prompt renders for each hunk.
"""

from __future__ import annotations

import logging
from itertools import groupby
from typing import Iterable, Sequence

from prsentry_core.errors import ChunkError
from prsentry_core.models import Chunk, DiffHunk, PullRequestContext

logger = logging.getLogger(__name__)


def chunk_context(context: PullRequestContext, budget: int) -> list[Chunk]:
    return chunk_hunks(context.hunks, budget)


def chunk_hunks(hunks: Sequence[DiffHunk], budget: int) -> list[Chunk]:
    """Pack hunks, in order, into chunks whose serialized size is at most ``budget``.

    Hunks of one file stay together when the file fits in a single chunk: a
    file that would straddle a chunk boundary but fits in a fresh chunk
    starts one. Hunks larger than the budget are split into continuation
    fragments at line boundaries.
    """
    if not isinstance(budget, int) or isinstance(budget, bool) or budget <= 0:
        raise ChunkError(f"Chunk budget must be a positive integer, got {budget!r}.")

    groups: list[list[DiffHunk]] = []
    current: list[DiffHunk] = []
    used = 0

    def flush():
        nonlocal current, used
        if current:
            groups.append(current)
        current = []
        used = 0

    for _, file_hunks in groupby(hunks, key=lambda h: h.path):
        file_hunks = list(file_hunks)
        file_size = sum(h.size for h in file_hunks)
        if current and used + file_size > budget and file_size <= budget:
            flush()

        for hunk in file_hunks:
            pieces = [hunk] if hunk.size <= budget else split_hunk(hunk, budget)
            for piece in pieces:
                if current and used + piece.size > budget:
                    flush()
                current.append(piece)
                used += piece.size
    flush()

    total = len(groups)
    chunks = [Chunk(index=i, total=total, hunks=tuple(group)) for i, group in enumerate(groups, 1)]
    logger.debug("Packed %d hunk(s) into %d chunk(s) (budget %d chars)", len(hunks), total, budget)
    return chunks


def split_hunk(hunk: DiffHunk, budget: int) -> list[DiffHunk]:
    """Split an oversized hunk into fragments that each fit ``budget``.

    Every fragment repeats the original header, so the smallest viable
    fragment is the header plus one body line. A budget below that cannot
    make progress and is rejected.
    """
    overhead = len(hunk.header) + 1
    longest = max((len(line) + 1 for line in hunk.lines), default=0)
    if overhead + longest > budget:
        raise ChunkError(
            f"Chunk budget {budget} is too small for {hunk.path}: a single line of "
            f"{hunk.header!r} needs {overhead + longest} chars."
        )

    slices: list[list[str]] = []
    current: list[str] = []
    used = overhead
    for line in hunk.lines:
        cost = len(line) + 1
        if current and used + cost > budget:
            slices.append(current)
            current = []
            used = overhead
        current.append(line)
        used += cost
    if current:
        slices.append(current)

    fragments = []
    old, new = hunk.first_old_line, hunk.first_new_line
    for part, lines in enumerate(slices, 1):
        fragment = DiffHunk(
            path=hunk.path,
            header=hunk.header,
            old_start=hunk.old_start,
            old_count=hunk.old_count,
            new_start=hunk.new_start,
            new_count=hunk.new_count,
            lines=tuple(lines),
            index=hunk.index,
            part=part,
            parts=len(slices),
            first_old_line=old,
            first_new_line=new,
        )
        fragments.append(fragment)
        for line in lines:
            if line.startswith("+"):
                new += 1
            elif line.startswith("-"):
                old += 1
            elif not line.startswith("\\"):
                old += 1
                new += 1
    return fragments


def reassemble(chunks: Iterable[Chunk]) -> list[DiffHunk]:
    """Join continuation fragments back into whole hunks, preserving order."""
    hunks: list[DiffHunk] = []
    pending: list[DiffHunk] = []
    for chunk in chunks:
        for hunk in chunk.hunks:
            if not hunk.is_continuation:
                hunks.append(hunk)
                continue
            pending.append(hunk)
            if hunk.part == hunk.parts:
                first = pending[0]
                hunks.append(
                    DiffHunk(
                        path=first.path,
                        header=first.header,
                        old_start=first.old_start,
                        old_count=first.old_count,
                        new_start=first.new_start,
                        new_count=first.new_count,
                        lines=tuple(line for piece in pending for line in piece.lines),
                        index=first.index,
                    )
                )
                pending = []
    return hunks
