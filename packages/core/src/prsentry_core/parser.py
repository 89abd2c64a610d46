"""Turn raw model output into findings.

Strict first: the JSON contract rendered by PromptBuilder, validated with
pydantic. On decode or validation failure, a heuristic pass looks for
severity keywords and ``H<n>:<line>`` / ``path:line`` markers in free text.
parse() never raises; the worst case is an empty result in ``unparsed`` mode.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from prsentry_core.models import Category, Chunk, Finding, Severity
from prsentry_core.prompt import hunk_label

logger = logging.getLogger(__name__)

SEVERITY_SYNONYMS = {
    "blocker": "critical",
    "major": "high",
    "error": "high",
    "warning": "medium",
    "moderate": "medium",
    "minor": "low",
    "nitpick": "info",
    "note": "info",
    "suggestion": "info",
}

CATEGORY_SYNONYMS = {
    "vulnerability": "security",
    "secure": "security",
    "bug": "quality",
    "performance": "quality",
    "style": "quality",
    "maintainability": "quality",
    "readability": "quality",
    "test": "quality",
    "tests": "quality",
}

_FENCE_START_RE = re.compile(r"^```(?:json)?\s*")
_FENCE_END_RE = re.compile(r"\s*```$")
_EMBEDDED_JSON_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

_SEVERITY_WORD_RE = re.compile(
    r"\b(critical|high|medium|low|info|blocker|major|minor|warning|nitpick)\b",
    re.IGNORECASE,
)
_HUNK_LOCATION_RE = re.compile(r"\b[Hh](\d+)\s*(?::|,?\s+line\s+|\s+L)(\d+)\b")
_PATH_LOCATION_RE = re.compile(r"`?(?P<path>[\w.\-/]+\.[\w]+)`?\s*(?::|,?\s+line\s+)(?P<line>\d+)\b")
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")
_HEADING_RE = re.compile(r"^\s*(?:#{1,6}\s+|\*\*[^*]+\*\*\s*:?\s*$)")
_SECURITY_RE = re.compile(
    r"CWE-\d+|\bsecurity\b|inject|\bXSS\b|\bCSRF\b|\bSSRF\b|secret|credential|password|"
    r"\btoken\b|\bauth|vulnerab|deserializ|traversal|\bcrypto|\bTLS\b",
    re.IGNORECASE,
)
_NO_ISSUES_RE = re.compile(r"\bno (?:issues|problems|findings)\b|\blgtm\b|\blooks good\b", re.IGNORECASE)


class RawFinding(BaseModel):
    """One finding exactly as the output contract describes it."""

    model_config = ConfigDict(extra="ignore")

    hunk: str | None = None
    path: str | None = Field(default=None, validation_alias=AliasChoices("path", "file"))
    line: int | None = None
    severity: Severity
    category: Literal["security", "quality"]
    message: str = Field(min_length=1, validation_alias=AliasChoices("message", "comment", "description"))
    fix: str | None = Field(default=None, validation_alias=AliasChoices("fix", "suggestion", "recommendation"))

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return SEVERITY_SYNONYMS.get(value, value)
        return value

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            value = CATEGORY_SYNONYMS.get(value, value)
            # Any other label the model invents ("correctness", "logic") is a quality remark.
            return value if value in ("security", "quality") else "quality"
        return value

    @field_validator("hunk", mode="before")
    @classmethod
    def _normalize_hunk(cls, value):
        if isinstance(value, int):
            return hunk_label(value)
        if isinstance(value, str):
            value = value.strip().upper()
            return hunk_label(int(value)) if value.isdigit() else value
        return value

    @field_validator("line", mode="before")
    @classmethod
    def _normalize_line(cls, value):
        if isinstance(value, str) and value.strip().lower().lstrip("l").isdigit():
            value = int(value.strip().lower().lstrip("l"))
        if isinstance(value, int) and not isinstance(value, bool) and value < 1:
            return None
        return value


class ModelOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Validated item by item in _parse_structured; an invalid item drops only itself.
    findings: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("findings", "issues", "comments")
    )


@dataclass
class ParseResult:
    findings: list[Finding] = field(default_factory=list)
    mode: str = "structured"  # "structured" | "heuristic" | "empty" | "unparsed"
    diagnostic: str | None = None

    @property
    def unparsed(self) -> bool:
        return self.mode == "unparsed"


class FindingParser:
    def parse(self, raw: str | None, chunk: Chunk) -> ParseResult:
        text = (raw or "").strip()
        if not text:
            logger.warning("Chunk %d/%d: empty model response", chunk.index, chunk.total)
            return ParseResult([], "unparsed", "empty model response")

        try:
            items, rejected = self._parse_structured(text)
            findings = [self._to_finding(item, chunk) for item in items]
        except Exception as e:
            # JSONDecodeError and ValidationError are the usual cases; RecursionError
            # comes from pathologically nested JSON.
            diagnostic = f"structured parse failed: {type(e).__name__}: {_first_line(e)}"
            logger.warning(
                "Chunk %d/%d: %s; falling back to heuristic extraction. Response starts: %s",
                chunk.index,
                chunk.total,
                diagnostic,
                text[:200],
            )
        else:
            diagnostic = None
            if rejected:
                diagnostic = f"dropped {len(rejected)} invalid finding(s): " + "; ".join(rejected)
                logger.warning("Chunk %d/%d: %s", chunk.index, chunk.total, diagnostic)
            return ParseResult(findings, "structured", diagnostic)

        try:
            findings = self._parse_heuristic(text, chunk)
        except Exception as e:
            logger.exception("Chunk %d/%d: heuristic extraction failed", chunk.index, chunk.total)
            return ParseResult([], "unparsed", f"{diagnostic}; heuristic failed: {type(e).__name__}: {_first_line(e)}")
        if findings:
            return ParseResult(findings, "heuristic", diagnostic)
        if _NO_ISSUES_RE.search(text):
            return ParseResult([], "empty", diagnostic)
        logger.warning("Chunk %d/%d: no findings could be extracted from the response", chunk.index, chunk.total)
        return ParseResult([], "unparsed", diagnostic)

    # ------------------------------------------------------------------ #
    # Strict                                                               #
    # ------------------------------------------------------------------ #

    def _parse_structured(self, text: str) -> tuple[list[RawFinding], list[str]]:
        """Return (valid items, one note per rejected item).

        Raises when the response is not the JSON contract at all, or when it
        lists findings and none of them is valid.
        """
        # Strip only the outer ```json ... ``` fence, not backticks inside
        # message string values.
        cleaned = _FENCE_START_RE.sub("", text)
        cleaned = _FENCE_END_RE.sub("", cleaned.strip())
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            # Prose around a fenced JSON block.
            match = _EMBEDDED_JSON_RE.search(text)
            if not match:
                raise
            data = json.loads(match.group(1))
        if isinstance(data, list):
            data = {"findings": data}
        output = ModelOutput.model_validate(data)

        items, rejected = [], []
        for position, entry in enumerate(output.findings, 1):
            try:
                items.append(RawFinding.model_validate(entry))
            except ValidationError as e:
                error = e.errors()[0]
                where = ".".join(str(part) for part in error["loc"]) or "item"
                rejected.append(f"item {position}: {where}: {error['msg']}")
        if output.findings and not items:
            raise ValueError(f"none of {len(output.findings)} finding(s) matched the contract ({rejected[0]})")
        return items, rejected

    def _to_finding(self, item: RawFinding, chunk: Chunk) -> Finding:
        path, line = self._locate(chunk, item.hunk, item.path, item.line)
        return Finding(
            severity=item.severity,
            category=Category(item.category),
            message=item.message.strip(),
            path=path,
            line=line,
            suggestion=(item.fix or "").strip() or None,
        )

    def _locate(
        self,
        chunk: Chunk,
        label: str | None,
        path: str | None,
        line: int | None,
    ) -> tuple[str | None, int | None]:
        """Resolve a finding's location to (file path, absolute new-file line).

        A hunk label makes ``line`` relative to that hunk (or continuation
        part). Without one, ``line`` is taken as an absolute file line and
        kept only when it falls inside the chunk's hunks for that path.
        """
        labelled = {hunk_label(i): h for i, h in enumerate(chunk.hunks, 1)}
        hunk = labelled.get(label) if label else None
        if hunk is not None:
            return hunk.path, (hunk.new_line_for(line) if line is not None else None)

        resolved = self._match_path(chunk, path) if path else None
        if resolved is None:
            return path, None
        if line is not None and any(line in h.new_lines for h in chunk.hunks if h.path == resolved):
            return resolved, line
        return resolved, None

    def _match_path(self, chunk: Chunk, path: str) -> str | None:
        path = path.strip().strip("`")
        for candidate in chunk.paths:
            if candidate == path or candidate.endswith("/" + path) or path.endswith("/" + candidate):
                return candidate
        return None

    # ------------------------------------------------------------------ #
    # Heuristic fallback                                                   #
    # ------------------------------------------------------------------ #

    def _parse_heuristic(self, text: str, chunk: Chunk) -> list[Finding]:
        findings = []
        section_severity: str | None = None
        for raw_line in text.splitlines():
            stripped = raw_line.strip()
            if not stripped:
                continue
            severity_match = _SEVERITY_WORD_RE.search(stripped)

            if _HEADING_RE.match(raw_line):
                # "### High" style headings set the severity for the items below them.
                section_severity = severity_match.group(1).lower() if severity_match else None
                continue

            is_item = bool(_LIST_ITEM_RE.match(raw_line))
            hunk_match = _HUNK_LOCATION_RE.search(stripped)
            path_match = None if hunk_match else _PATH_LOCATION_RE.search(stripped)
            has_location = bool(hunk_match or path_match)

            if severity_match:
                severity = severity_match.group(1).lower()
            elif section_severity and (is_item or has_location):
                severity = section_severity
            else:
                continue
            if not (is_item or has_location):
                continue

            if hunk_match:
                path, line = self._locate(chunk, hunk_label(int(hunk_match.group(1))), None, int(hunk_match.group(2)))
            elif path_match:
                path, line = self._locate(chunk, None, path_match.group("path"), int(path_match.group("line")))
            else:
                path, line = None, None

            message = _LIST_ITEM_RE.sub("", raw_line).strip()
            findings.append(
                Finding(
                    severity=Severity(SEVERITY_SYNONYMS.get(severity, severity)),
                    category=Category.SECURITY if _SECURITY_RE.search(message) else Category.QUALITY,
                    message=message,
                    path=path,
                    line=line,
                )
            )
        return findings


def _first_line(error: BaseException) -> str:
    lines = str(error).splitlines()
    return lines[0] if lines else ""
