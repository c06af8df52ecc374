"""Markdown rendering and file output for analysis results.

Findings are grouped by severity, most severe first, with a bounded number
shown per group.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import structlog

from analysis_broker.models import AnalysisResult, Finding, Severity

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_FINDINGS_PER_SEVERITY = 10
_RECOMMENDATIONS_SHOWN = 5

SEVERITY_ICONS: dict[Severity, str] = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH: "🟠",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "🟢",
    Severity.INFO: "ℹ️",
}


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def sort_findings(findings: Iterable[Finding]) -> list[Finding]:
    """Order findings critical > high > medium > low > info (stable)."""
    return sorted(findings, key=lambda f: f.severity.rank)


def group_by_severity(findings: Iterable[Finding]) -> dict[Severity, list[Finding]]:
    groups: dict[Severity, list[Finding]] = {severity: [] for severity in Severity}
    for finding in findings:
        groups[finding.severity].append(finding)
    return groups


# ---------------------------------------------------------------------------
# Markdown rendering
# ---------------------------------------------------------------------------


def render_markdown(result: AnalysisResult, title: str = "Analysis") -> str:
    """Render ``result`` as a Markdown report.

    Args:
        result: The analysis result to render.
        title: Heading text; `` Results`` is appended.

    Returns:
        The Markdown document.
    """
    sections: list[str] = [f"# {title} Results\n"]

    if not result.success:
        sections.append("## Errors\n")
        sections.extend(f"- {error}" for error in result.errors or ())
        sections.append("")
        return "\n".join(sections)

    sections.append(f"## Summary\n\n{result.summary}\n")

    sections.append("## Metrics\n")
    sections.append(f"- **Files Analyzed**: {result.metrics.files_analyzed}")
    sections.append(f"- **Lines of Code**: {result.metrics.lines_of_code}")
    sections.append(f"- **Duration**: {result.duration_ms}ms")
    if result.cached:
        sections.append("- **Cached**: yes")
    sections.append("")

    if result.findings:
        sections.append(f"## Findings ({len(result.findings)})\n")
        for severity, findings in group_by_severity(result.findings).items():
            if not findings:
                continue
            sections.append(f"### {severity.value.capitalize()} ({len(findings)})\n")
            for finding in findings[:_FINDINGS_PER_SEVERITY]:
                sections.append(f"{SEVERITY_ICONS[severity]} **{finding.message}**")
                if finding.location != "unknown":
                    location = finding.location
                    if finding.line is not None:
                        location = f"{location}:{finding.line}"
                    sections.append(f"   - Location: `{location}`")
                if finding.suggestion:
                    sections.append(f"   - Suggestion: {finding.suggestion}")
                sections.append("")
            hidden = len(findings) - _FINDINGS_PER_SEVERITY
            if hidden > 0:
                sections.append(f"*... and {hidden} more {severity.value} findings*\n")

    if result.recommendations:
        sections.append("## Recommendations\n")
        for recommendation in result.recommendations[:_RECOMMENDATIONS_SHOWN]:
            sections.append(f"- {recommendation}")
        hidden = len(result.recommendations) - _RECOMMENDATIONS_SHOWN
        if hidden > 0:
            sections.append(f"\n*... and {hidden} more recommendations*")
        sections.append("")

    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Report writing
# ---------------------------------------------------------------------------


def write_report(
    result: AnalysisResult,
    output_dir: Path | str,
    title: str = "Analysis",
) -> Path:
    """Write the Markdown report plus a ``.meta.json`` sidecar.

    The file is named after the request ID.

    Returns:
        The path to the written report file.
    """
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    report_path = out_dir / f"{result.request_id}.md"
    report_path.write_text(render_markdown(result, title), encoding="utf-8")

    meta = {
        "request_id": result.request_id,
        "generated_at": datetime.now(tz=UTC).isoformat(),
        "success": result.success,
        "cached": result.cached,
        "targets": list(result.targets),
        "findings": len(result.findings),
        "duration_ms": result.duration_ms,
    }
    meta_path = report_path.with_suffix(".meta.json")
    meta_path.write_text(json.dumps(meta, indent=2), encoding="utf-8")

    logger.info("report_written", path=str(report_path), meta_path=str(meta_path))
    return report_path
