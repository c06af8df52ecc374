"""Turn the external tool's raw output into a structured AnalysisResult.

Precedence is fixed: a fenced block tagged as JSON wins, then the whole
output parsed as JSON, then heuristic extraction from prose/Markdown.
Everything here is pure; no I/O is performed.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog
from pydantic import ValidationError

from analysis_broker.models import (
    AnalysisMetrics,
    AnalysisResult,
    Finding,
    Severity,
    TokenUsage,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

MAX_SUMMARY_CHARS = 2000
MAX_FINDINGS = 50
MAX_RECOMMENDATIONS = 20
_MIN_FINDING_CHARS = 10
_MAX_HEADING_CHARS = 100

_JSON_FENCE_RE = re.compile(r"```[ \t]*json[ \t]*\r?\n(.*?)```", re.DOTALL | re.IGNORECASE)
_HEADING_RE = re.compile(r"^#{1,6}\s+")
_BULLET_RE = re.compile(r"^(?:[-*•]|\d+[.)])\s+")

_FILE_EXTENSIONS = (
    "js|jsx|ts|tsx|mjs|cjs|py|go|rs|java|kt|swift|rb|php|cs|cpp|cc|c|h|hpp"
    "|json|yaml|yml|toml|sh|sql|md"
)
_BACKTICK_FILE_RE = re.compile(rf"`([^`\s]+\.(?:{_FILE_EXTENSIONS}))(?::(\d+))?`")
_PATH_FILE_RE = re.compile(
    rf"(?:\bin|\bat|\bfrom|\bfile)\s+[`\"']?([\w./-]+\.(?:{_FILE_EXTENSIONS}))(?::(\d+))?\b",
    re.IGNORECASE,
)

_SEVERITY_KEYWORDS: list[tuple[Severity, re.Pattern[str]]] = [
    (Severity.CRITICAL, re.compile(r"\b(?:critical|severe|urgent)\b", re.IGNORECASE)),
    (Severity.HIGH, re.compile(r"\b(?:high|important|significant)\b", re.IGNORECASE)),
    (Severity.MEDIUM, re.compile(r"\b(?:medium|moderate)\b", re.IGNORECASE)),
]

_RECOMMENDATION_RE = re.compile(
    r"(?:^|(?<=[.!?]))[ \t]*(?:(?:[-*•]|\d+[.)])[ \t]+)?"
    r"(?:recommend(?:s|ed|ation)?|suggest(?:s|ion)?|consider|should)\b[ \t]*:?[ \t]*"
    r"([^.\n]+)",
    re.IGNORECASE | re.MULTILINE,
)

_PERCENT_RE = re.compile(r"(\d{1,3})\s*%")


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def extract_json_payload(text: str) -> Any | None:
    """Return the JSON value carried by ``text``, or None.

    A fenced block tagged ``json`` is tried first; otherwise the whole
    text is parsed.
    """
    fence_match = _JSON_FENCE_RE.search(text)
    if fence_match:
        try:
            return json.loads(fence_match.group(1).strip())
        except (json.JSONDecodeError, RecursionError):
            logger.debug("json_fence_unparseable")

    try:
        return json.loads(text.strip())
    except (json.JSONDecodeError, RecursionError):
        return None


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------


def normalize_severity(value: Any) -> Severity:
    """Coerce an explicit severity label; anything unrecognized is ``info``."""
    try:
        return Severity(str(value or "").strip().lower())
    except ValueError:
        return Severity.INFO


def infer_severity(text: str) -> Severity:
    """Infer severity from keywords in free text, defaulting to ``low``."""
    for severity, pattern in _SEVERITY_KEYWORDS:
        if pattern.search(text):
            return severity
    return Severity.LOW


# ---------------------------------------------------------------------------
# Prose extraction
# ---------------------------------------------------------------------------


def extract_summary(text: str, limit: int = MAX_SUMMARY_CHARS) -> str:
    """Join the leading non-empty lines, truncated to ``limit`` characters."""
    lines: list[str] = []
    length = 0
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        lines.append(line)
        length += len(line) + 1
        if length >= limit:
            break
    return "\n".join(lines)[:limit]


def _locate(content: str) -> tuple[str | None, int | None]:
    for pattern in (_BACKTICK_FILE_RE, _PATH_FILE_RE):
        match = pattern.search(content)
        if match:
            line = int(match.group(2)) if match.group(2) else None
            return match.group(1), line
    return None, None


def extract_findings(
    text: str,
    finding_type: str = "general",
    limit: int = MAX_FINDINGS,
) -> list[Finding]:
    """Extract bulleted or numbered lines as findings.

    The most recent heading (a Markdown heading, or a short line ending in
    ``:``) becomes the category and the fallback location.
    """
    findings: list[Finding] = []
    category: str | None = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if _HEADING_RE.match(line) or (
            line.endswith(":") and len(line) < _MAX_HEADING_CHARS
        ):
            category = _HEADING_RE.sub("", line).rstrip(":").strip() or None
            continue

        if not _BULLET_RE.match(line):
            continue
        content = _BULLET_RE.sub("", line, count=1).strip()
        if len(content) <= _MIN_FINDING_CHARS:
            continue

        location, line_no = _locate(content)
        findings.append(
            Finding(
                type=finding_type,
                severity=infer_severity(content),
                location=location or category or "unknown",
                message=content,
                category=category,
                line=line_no,
            )
        )
        if len(findings) >= limit:
            break

    return findings


def extract_recommendations(text: str, limit: int = MAX_RECOMMENDATIONS) -> list[str]:
    """Collect sentences that start with recommend/suggest/consider/should.

    Captures the rest of the sentence up to the next period, de-duplicated
    in order of appearance.
    """
    seen: dict[str, None] = {}
    for match in _RECOMMENDATION_RE.finditer(text):
        recommendation = match.group(1).strip()
        if recommendation and recommendation not in seen:
            seen[recommendation] = None
            if len(seen) >= limit:
                break
    return list(seen)


# ---------------------------------------------------------------------------
# JSON payload normalization
# ---------------------------------------------------------------------------


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError, OverflowError):
        return None


def normalize_finding(raw: Any) -> Finding:
    """Map a loosely shaped finding object onto ``Finding``."""
    if not isinstance(raw, dict):
        return Finding(message=str(raw), severity=Severity.INFO)
    suggestion = raw.get("suggestion") or raw.get("recommendation")
    code = raw.get("code")
    category = raw.get("category")
    return Finding(
        type=str(raw.get("type") or "general"),
        severity=normalize_severity(raw.get("severity")),
        location=str(raw.get("location") or raw.get("file") or raw.get("path") or "unknown"),
        message=str(raw.get("message") or raw.get("description") or raw.get("title") or ""),
        suggestion=str(suggestion) if suggestion else None,
        code=str(code) if code else None,
        category=str(category) if category else None,
        line=_as_int(raw.get("line")),
        column=_as_int(raw.get("column")),
    )


def _normalize_recommendation(raw: Any) -> str:
    if isinstance(raw, dict):
        for field in ("description", "text", "message", "recommendation"):
            if raw.get(field):
                return str(raw[field])
        return json.dumps(raw, sort_keys=True)
    return str(raw)


def _normalize_token_usage(payload: dict[str, Any]) -> TokenUsage:
    usage = payload.get("tokenUsage") or payload.get("token_usage") or payload.get("usage")
    if isinstance(usage, dict):
        prompt = _as_int(usage.get("prompt") or usage.get("promptTokens")) or 0
        completion = (
            _as_int(
                usage.get("completion")
                or usage.get("completionTokens")
                or usage.get("candidates")
            )
            or 0
        )
        total = _as_int(usage.get("total") or usage.get("totalTokens")) or prompt + completion
        return TokenUsage(prompt=prompt, completion=completion, total=total)

    # Envelope form: {"stats": {"models": {"<name>": {"tokens": {...}}}}}
    stats = payload.get("stats")
    models = stats.get("models") if isinstance(stats, dict) else None
    if isinstance(models, dict):
        prompt = completion = total = 0
        for model_stats in models.values():
            tokens = model_stats.get("tokens", {}) if isinstance(model_stats, dict) else {}
            prompt += _as_int(tokens.get("prompt")) or 0
            completion += _as_int(tokens.get("candidates")) or 0
            total += _as_int(tokens.get("total")) or 0
        return TokenUsage(prompt=prompt, completion=completion, total=total or prompt + completion)

    return TokenUsage()


def _is_envelope(payload: dict[str, Any]) -> bool:
    return (
        isinstance(payload.get("response"), str)
        and "summary" not in payload
        and "findings" not in payload
    )


def _result_from_payload(
    payload: dict[str, Any],
    raw_output: str,
    base: dict[str, Any],
) -> AnalysisResult:
    findings = payload.get("findings") or []
    recommendations = payload.get("recommendations") or []
    metrics = payload.get("metrics") or {}
    if not isinstance(findings, list):
        findings = [findings]
    if not isinstance(recommendations, list):
        recommendations = [recommendations]
    summary = payload.get("summary") or "Analysis complete"

    return AnalysisResult(
        **base,
        token_usage=_normalize_token_usage(payload),
        summary=str(summary)[:MAX_SUMMARY_CHARS],
        findings=tuple(normalize_finding(f) for f in findings),
        metrics=AnalysisMetrics.model_validate(metrics if isinstance(metrics, dict) else {}),
        recommendations=tuple(_normalize_recommendation(r) for r in recommendations),
        raw_output=raw_output,
    )


def _result_from_text(
    text: str,
    raw_output: str,
    base: dict[str, Any],
    finding_type: str,
    token_usage: TokenUsage | None = None,
) -> AnalysisResult:
    return AnalysisResult(
        **base,
        token_usage=token_usage or TokenUsage(),
        summary=extract_summary(text),
        findings=tuple(extract_findings(text, finding_type=finding_type)),
        recommendations=tuple(extract_recommendations(text)),
        raw_output=raw_output,
    )


def interpret_output(
    raw_output: str,
    *,
    request_id: str,
    duration_ms: int = 0,
    finding_type: str = "general",
    targets: tuple[str, ...] = (),
) -> AnalysisResult:
    """Build a successful AnalysisResult from the tool's standard output.

    Never raises for malformed output: a JSON payload of the wrong shape
    degrades to prose extraction.

    Args:
        raw_output: Accumulated standard output of the tool.
        request_id: Identifier of the request being served.
        duration_ms: Elapsed time of the request so far.
        finding_type: ``type`` given to findings extracted from prose.
        targets: Paths the analysis covered, recorded on the result.

    Returns:
        The structured result, with ``raw_output`` retained.
    """
    base: dict[str, Any] = {
        "request_id": request_id,
        "success": True,
        "duration_ms": duration_ms,
        "targets": targets,
    }
    text = raw_output
    envelope_usage: TokenUsage | None = None

    payload = extract_json_payload(text)
    if isinstance(payload, dict) and _is_envelope(payload):
        envelope_usage = _normalize_token_usage(payload)
        text = payload["response"]
        payload = extract_json_payload(text)

    if isinstance(payload, dict):
        try:
            result = _result_from_payload(payload, raw_output, base)
        except (ValidationError, TypeError, ValueError, OverflowError, RecursionError) as exc:
            logger.warning("json_payload_unusable", request_id=request_id, error=str(exc))
        else:
            if envelope_usage is not None and result.token_usage == TokenUsage():
                result = result.model_copy(update={"token_usage": envelope_usage})
            return result

    return _result_from_text(text, raw_output, base, finding_type, envelope_usage)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def parse_verification(raw_output: str | None) -> dict[str, Any] | None:
    """Return the ``{implemented, confidence, details}`` object, or None."""
    if not raw_output:
        return None
    payload = extract_json_payload(raw_output)
    if isinstance(payload, dict) and _is_envelope(payload):
        payload = extract_json_payload(payload["response"])
    if isinstance(payload, dict) and "implemented" in payload:
        return payload
    return None


def estimate_verification(text: str) -> tuple[bool, int]:
    """Heuristically read an implemented flag and confidence from prose.

    ``implemented`` requires the word "implemented" without a negation or
    a NOT_FOUND marker. Confidence is the first ``NN%`` in the text, else
    75 when implemented and 25 otherwise.
    """
    lower = text.lower()
    implemented = (
        "implemented" in lower
        and "not implemented" not in lower
        and "not_found" not in lower
    )
    match = _PERCENT_RE.search(text)
    if match:
        confidence = min(int(match.group(1)), 100)
    else:
        confidence = 75 if implemented else 25
    return implemented, confidence
