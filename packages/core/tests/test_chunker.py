"""Tests for packing hunks into budget-bounded chunks."""

import pytest

from prsentry_core.chunker import chunk_context, chunk_hunks, reassemble, split_hunk
from prsentry_core.errors import ChunkError
from prsentry_core.models import DiffHunk, PullRequestContext
from prsentry_core.utils.diff import parse_patch


def make_hunk(path, n_lines, start=1, index=0):
    lines = tuple(f"+l{i:03d}" for i in range(n_lines))
    return DiffHunk(
        path=path,
        header=f"@@ -{start},0 +{start},{n_lines} @@",
        old_start=start,
        old_count=0,
        new_start=start,
        new_count=n_lines,
        lines=lines,
        index=index,
    )


def big_hunk():
    """30 added lines of 9 chars each; 4 fragments at a 100-char budget (8, 8, 8, 6 lines)."""
    body = "".join(f"+x{i:02d} = {i:02d}\n" for i in range(1, 31))
    return parse_patch("src/big.py", "@@ -0,0 +1,30 @@\n" + body)[0]


class TestChunkHunks:
    def test_two_small_files_share_one_chunk(self):
        hunks = [make_hunk("a.py", 3), make_hunk("b.py", 3, index=1)]
        chunks = chunk_hunks(hunks, 1000)
        assert len(chunks) == 1
        assert chunks[0].paths == ["a.py", "b.py"]
        assert (chunks[0].index, chunks[0].total) == (1, 1)

    def test_every_chunk_within_budget(self):
        hunks = [make_hunk(f"f{i}.py", 5 + i, index=i) for i in range(12)]
        chunks = chunk_hunks(hunks, 120)
        assert all(c.size <= 120 for c in chunks)
        assert [c.index for c in chunks] == list(range(1, len(chunks) + 1))
        assert all(c.total == len(chunks) for c in chunks)

    def test_file_that_fits_fresh_chunk_is_not_straddled(self):
        a = make_hunk("a.py", 7)  # 58 chars
        b1 = make_hunk("b.py", 3, start=1, index=1)  # 34 chars
        b2 = make_hunk("b.py", 3, start=20, index=2)  # 36 chars
        chunks = chunk_hunks([a, b1, b2], 100)
        assert [c.hunks for c in chunks] == [(a,), (b1, b2)]

    def test_empty_input_gives_no_chunks(self):
        assert chunk_hunks([], 100) == []

    def test_chunk_context_uses_parsed_hunks(self):
        diff = "diff --git a/a.py b/a.py\n--- a/a.py\n+++ b/a.py\n@@ -1 +1 @@\n-a\n+b\n"
        chunks = chunk_context(PullRequestContext(repo="o/r", number=1, diff=diff), 500)
        assert len(chunks) == 1
        assert chunks[0].hunks[0].path == "a.py"


class TestReconstruction:
    def test_reassemble_restores_original_sequence(self):
        hunks = [make_hunk("a.py", 4), big_hunk(), make_hunk("z.py", 2, index=2)]
        chunks = chunk_hunks(hunks, 100)
        assert reassemble(chunks) == hunks

    def test_each_hunk_appears_once(self):
        hunks = [make_hunk(f"f{i}.py", 3, index=i) for i in range(6)]
        chunks = chunk_hunks(hunks, 60)
        seen = [h for c in chunks for h in c.hunks]
        assert seen == hunks


class TestSplitHunk:
    def test_oversized_hunk_becomes_continuation_parts(self):
        chunks = chunk_hunks([big_hunk()], 100)
        parts = [h for c in chunks for h in c.hunks]
        assert [(p.part, p.parts) for p in parts] == [(1, 4), (2, 4), (3, 4), (4, 4)]
        assert [len(p.lines) for p in parts] == [8, 8, 8, 6]
        assert all(p.header == "@@ -0,0 +1,30 @@" for p in parts)
        assert all(c.size <= 100 for c in chunks)

    def test_second_part_relative_line_maps_to_absolute(self):
        parts = split_hunk(big_hunk(), 100)
        second = parts[1]
        assert second.first_new_line == 9
        assert second.new_line_for(5) == 13
        assert second.lines[4] == "+x13 = 13"

    def test_split_never_breaks_lines(self):
        original = big_hunk()
        parts = split_hunk(original, 100)
        assert tuple(line for p in parts for line in p.lines) == original.lines

    def test_counters_track_context_and_removed_lines(self):
        patch = "@@ -1,6 +1,6 @@\n a\n-b\n+B\n c\n-d\n+D\n e\n f\n"
        hunk = parse_patch("m.py", patch)[0]
        parts = split_hunk(hunk, len(hunk.header) + 1 + 3 * 3)
        assert [p.lines for p in parts][:2] == [(" a", "-b", "+B"), (" c", "-d", "+D")]
        second = parts[1]
        assert (second.first_old_line, second.first_new_line) == (3, 3)
        assert second.new_line_for(3) == 4


class TestChunkErrors:
    @pytest.mark.parametrize("budget", [0, -5, "100", 10.5, True])
    def test_invalid_budget(self, budget):
        with pytest.raises(ChunkError):
            chunk_hunks([make_hunk("a.py", 1)], budget)

    def test_budget_too_small_for_header_and_longest_line(self):
        with pytest.raises(ChunkError):
            chunk_hunks([big_hunk()], 20)
