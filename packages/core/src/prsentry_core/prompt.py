"""Prompt rendering for one chunk.

The output contract rendered here is the one FindingParser validates against:
a single JSON object whose findings point at a hunk label (``H1``...) and a
line number from that hunk's gutter. Gutter numbers are relative to the hunk
or, for a continuation fragment, to that part alone, so the parser can map
them back to file lines without trusting the model to do arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass

from prsentry_core.models import Chunk, DiffHunk, PullRequestContext


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str


def hunk_label(position: int) -> str:
    """Label of the hunk at 1-based ``position`` inside a chunk."""
    return f"H{position}"


OUTPUT_CONTRACT = """### Output Format:
Respond with **only** a valid JSON object:

{
  "findings": [
    {
      "hunk": "<hunk label, e.g. H1>",
      "line": <gutter number of the line inside that hunk (integer), or null for a hunk-level remark>,
      "severity": "<critical|high|medium|low|info>",
      "category": "<security|quality>",
      "message": "<concise, actionable finding, GitHub-flavored markdown; cite the CWE id for security issues>",
      "fix": "<optional: the concrete change to make, and the test that should cover it>"
    }
  ]
}

Severity guide:
- critical: exploitable vulnerability, secret exposure, data loss, crash
- high: likely bug or security weakness with real impact
- medium: missing error handling, risky pattern, notable performance problem
- low: code smell, unclear naming, missing test
- info: minor remark

Rules for "line":
- Use the number printed in the left gutter of the hunk, not a file line number.
- Gutter numbers restart at 1 in every hunk and in every part of a split hunk.

If there are no issues, return: {"findings": []}
Do not return any text outside the JSON object."""


class PromptBuilder:
    """Render deterministic prompts. Same chunk and metadata, same text."""

    def __init__(self, guidelines: str = ""):
        self.guidelines = guidelines

    def build(self, chunk: Chunk, context: PullRequestContext | None = None) -> Prompt:
        return Prompt(system=self.system_prompt(), user=self.user_prompt(chunk, context))

    def system_prompt(self) -> str:
        return f"""You are a strict and precise senior DevSecOps reviewer.
Review the diff below for security vulnerabilities and code quality problems.

{self.guidelines}

Rules:
- Focus on added lines (starting with '+') for direct violations.
- Also consider implications of removed lines (starting with '-') — e.g. deleted validation,
  removed error handling, dropped permission guards.
- Do not comment on code that already follows best practices.
- Avoid assumptions when context is unclear. Be concise and actionable."""

    def user_prompt(self, chunk: Chunk, context: PullRequestContext | None = None) -> str:
        header = []
        if context is not None:
            header.append(f"Repository: {context.repo or '(local)'}")
            if context.number is not None:
                header.append(f"PR #{context.number}: {context.title}")
            if context.author:
                header.append(f"Author: @{context.author}")
        header.append(f"Chunk {chunk.index} of {chunk.total} — files: {', '.join(chunk.paths)}")

        sections = [render_hunk(hunk_label(i), hunk) for i, hunk in enumerate(chunk.hunks, 1)]
        return "\n".join(header) + "\n\n## Diff\n\n" + "\n\n".join(sections) + "\n\n" + OUTPUT_CONTRACT


def render_hunk(label: str, hunk: DiffHunk) -> str:
    span = hunk.new_range()
    where = f"new lines {span[0]}-{span[1]}" if span else "deletions only"
    lines = [f"### {label} · `{hunk.path}` · {where}"]
    if hunk.is_continuation:
        lines.append(
            f"_Part {hunk.part} of {hunk.parts} of the same hunk; "
            f"the `@@` header is repeated for reference and gutter numbers restart at 1._"
        )
    lines.append("```diff")
    lines.append(hunk.header)
    width = len(str(len(hunk.lines)))
    for n, line in enumerate(hunk.lines, 1):
        lines.append(f"{n:>{width}} {line}")
    lines.append("```")
    return "\n".join(lines)
