"""Finding fingerprints and deduplication against previously posted comments."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from prsentry_core.models import Finding, PostedCommentRecord

FINGERPRINT_LENGTH = 16

_EMPHASIS_RE = re.compile(r"[`*_~]")
_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_PUNCT_RE = re.compile(r"[\s.!?;:,]+$")


def normalize_message(message: str) -> str:
    """Reduce a message to the form used for fingerprinting.

    Casing, markdown emphasis, whitespace runs and trailing punctuation do not
    change what a finding says, so they must not change its identity either.
    """
    text = _EMPHASIS_RE.sub("", message or "").casefold()
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return _TRAILING_PUNCT_RE.sub("", text)


def fingerprint(path: str | None, line: int | None, category: str, message: str) -> str:
    parts = [path or "", "" if line is None else str(line), category, normalize_message(message)]
    digest = hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


@dataclass
class DedupResult:
    new: list[Finding] = field(default_factory=list)
    already_posted: list[Finding] = field(default_factory=list)


def deduplicate(
    findings: Iterable[Finding],
    posted: Iterable[PostedCommentRecord] | Iterable[str],
) -> DedupResult:
    """Partition findings into new and already-posted.

    A fingerprint match is treated as the same finding even when the message
    text differs; the existing comment is left as it is. Repeats within
    ``findings`` are also folded into already-posted, first occurrence wins.
    """
    known = {p if isinstance(p, str) else p.fingerprint for p in posted}
    result = DedupResult()
    for finding in findings:
        if finding.fingerprint in known:
            result.already_posted.append(finding)
            continue
        known.add(finding.fingerprint)
        result.new.append(finding)
    return result
