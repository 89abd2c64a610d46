"""Tests for prompt rendering."""

from prsentry_core.chunker import split_hunk
from prsentry_core.models import Chunk, PullRequestContext
from prsentry_core.prompt import OUTPUT_CONTRACT, PromptBuilder, hunk_label, render_hunk
from prsentry_core.utils.diff import parse_patch

PATCH = "@@ -10,2 +10,3 @@\n x = 1\n+y = eval(user_input)\n z = 3\n"


def make_chunk(*hunks, index=1, total=1):
    return Chunk(index=index, total=total, hunks=tuple(hunks))


CONTEXT = PullRequestContext(repo="acme/api", number=42, title="Add parser")


class TestPromptBuilder:
    def test_system_prompt_contains_guidelines(self):
        prompt = PromptBuilder("## My Guidelines").build(make_chunk(*parse_patch("a.py", PATCH)), CONTEXT)
        assert "## My Guidelines" in prompt.system
        assert "DevSecOps" in prompt.system

    def test_user_prompt_has_pr_metadata_and_chunk_position(self):
        chunk = make_chunk(*parse_patch("a.py", PATCH), index=2, total=3)
        user = PromptBuilder().build(chunk, CONTEXT).user
        assert "Repository: acme/api" in user
        assert "PR #42: Add parser" in user
        assert "Chunk 2 of 3" in user
        assert "Author:" not in user

    def test_author_in_header_when_known(self):
        context = PullRequestContext(repo="acme/api", number=42, title="Add parser", author="octocat")
        user = PromptBuilder().build(make_chunk(*parse_patch("a.py", PATCH)), context).user
        assert "Author: @octocat" in user

    def test_output_contract_asks_for_fix_and_test(self):
        assert '"fix"' in OUTPUT_CONTRACT
        assert "test" in OUTPUT_CONTRACT

    def test_user_prompt_ends_with_output_contract(self):
        user = PromptBuilder().build(make_chunk(*parse_patch("a.py", PATCH))).user
        assert user.endswith(OUTPUT_CONTRACT)
        assert '{"findings": []}' in user

    def test_hunks_are_labelled_in_order(self):
        first = parse_patch("a.py", PATCH)[0]
        second = parse_patch("b.py", PATCH, start_index=1)[0]
        user = PromptBuilder().build(make_chunk(first, second)).user
        assert user.index("### H1 · `a.py`") < user.index("### H2 · `b.py`")

    def test_deterministic(self):
        chunk = make_chunk(*parse_patch("a.py", PATCH))
        builder = PromptBuilder("g")
        assert builder.build(chunk, CONTEXT) == builder.build(chunk, CONTEXT)

    def test_local_context_without_number(self):
        local = PullRequestContext(repo="", number=None)
        user = PromptBuilder().build(make_chunk(*parse_patch("a.py", PATCH)), local).user
        assert "Repository: (local)" in user
        assert "PR #" not in user


class TestRenderHunk:
    def test_gutter_numbers_are_relative(self):
        text = render_hunk("H1", parse_patch("a.py", PATCH)[0])
        assert "1  x = 1" in text
        assert "2 +y = eval(user_input)" in text
        assert "new lines 10-12" in text

    def test_continuation_parts_are_marked(self):
        body = "".join(f"+line {i}\n" for i in range(10))
        hunk = parse_patch("a.py", "@@ -0,0 +1,10 @@\n" + body)[0]
        parts = split_hunk(hunk, 60)
        text = render_hunk("H1", parts[1])
        assert f"Part 2 of {len(parts)}" in text
        assert hunk.header in text
        assert "1 +line" in text

    def test_deletion_only_hunk(self):
        text = render_hunk("H1", parse_patch("a.py", "@@ -1,2 +0,0 @@\n-a\n-b\n")[0])
        assert "deletions only" in text


def test_hunk_label():
    assert hunk_label(3) == "H3"
