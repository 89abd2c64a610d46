"""Fold findings from upstream scanners into the review.

Secret scanners, static analyzers and dependency auditors (gitleaks, semgrep,
bandit, trivy...) all emit SARIF 2.1.0. Only their reported results are
consumed here; no detection happens in this module.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from prsentry_core.errors import FetchError
from prsentry_core.models import Category, Finding, Severity

logger = logging.getLogger(__name__)

_SARIF_LEVELS = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "note": Severity.LOW,
    "none": Severity.INFO,
}


def _location(result: dict) -> tuple[str | None, int | None]:
    for location in result.get("locations") or []:
        physical = location.get("physicalLocation") or {}
        uri = (physical.get("artifactLocation") or {}).get("uri")
        line = (physical.get("region") or {}).get("startLine")
        if uri:
            if uri.startswith("file://"):
                uri = uri[len("file://") :]
            if uri.startswith("./"):
                uri = uri[2:]
            return uri, line if isinstance(line, int) else None
    return None, None


def parse_sarif(document: dict, tool: str | None = None) -> list[Finding]:
    findings = []
    for run in document.get("runs") or []:
        driver = ((run.get("tool") or {}).get("driver")) or {}
        tool_name = tool or driver.get("name") or "scanner"
        for result in run.get("results") or []:
            text = ((result.get("message") or {}).get("text") or "").strip()
            if not text:
                continue
            rule = result.get("ruleId")
            path, line = _location(result)
            findings.append(
                Finding(
                    severity=_SARIF_LEVELS.get(result.get("level", "warning"), Severity.MEDIUM),
                    category=Category.TOOLING,
                    message=f"**{tool_name}**{f' `{rule}`' if rule else ''}: {text}",
                    path=path,
                    line=line,
                    source=tool_name,
                )
            )
    return findings


def load_sarif_findings(path: str, tool: str | None = None) -> list[Finding]:
    """Read a SARIF file and return its results as findings.

    Raises FetchError when the report cannot be read; the orchestrator
    records that as a non-fatal error for the run.
    """
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise FetchError(f"Could not read scanner report {path}: {e}") from e
    if not isinstance(document, dict):
        raise FetchError(f"Scanner report {path} is not a SARIF document.")
    findings = parse_sarif(document, tool)
    logger.debug("Loaded %d finding(s) from %s", len(findings), path)
    return findings
