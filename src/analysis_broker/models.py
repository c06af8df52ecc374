"""Domain models for analysis requests, results and quota/cache reporting.

Requests and results are frozen pydantic models: a request is never
mutated once handed to the pipeline, and a cached result is copied (never
mutated in place) when it is annotated as ``cached``. Result models accept
camelCase keys on input because the external tool's JSON payloads use
them.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AnalysisKind(StrEnum):
    """What the external tool is asked to analyze."""

    CODEBASE = "codebase"
    ARCHITECTURE = "architecture"
    SECURITY = "security"
    DEPENDENCIES = "dependencies"
    COVERAGE = "coverage"
    CUSTOM = "custom"


class AnalysisDepth(StrEnum):
    """How exhaustive the analysis should be."""

    SURFACE = "surface"
    MODERATE = "moderate"
    DEEP = "deep"
    COMPREHENSIVE = "comprehensive"


class OutputFormat(StrEnum):
    """Output format requested from the external tool."""

    JSON = "json"
    MARKDOWN = "markdown"
    TEXT = "text"


class Severity(StrEnum):
    """Finding severity, most severe first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        """Display rank: 0 for critical up to 4 for info."""
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER: list[Severity] = list(Severity)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class AnalysisRequest(BaseModel):
    """An immutable analysis request.

    ``targets`` accepts a single path string for convenience. Emptiness is
    checked by the pipeline, which rejects it with ``InvalidRequestError``
    before anything is launched.
    """

    model_config = ConfigDict(frozen=True)

    kind: AnalysisKind = AnalysisKind.CODEBASE
    targets: tuple[str, ...]
    depth: AnalysisDepth = AnalysisDepth.MODERATE
    query: str | None = None
    focus: tuple[str, ...] = ()
    output_format: OutputFormat = OutputFormat.MARKDOWN

    @field_validator("targets", "focus", mode="before")
    @classmethod
    def _coerce_sequence(cls, value: Any) -> Any:
        if isinstance(value, str):
            return (value,)
        return value

    def normalized_targets(self) -> list[str]:
        """Return targets with redundant separators and ``..`` collapsed."""
        return [os.path.normpath(target.strip()) for target in self.targets]

    def cache_fields(self) -> dict[str, Any]:
        """Return the fields that identify this request for caching.

        Target order is preserved; it is meaningful to the tool.
        """
        return {
            "kind": self.kind.value,
            "targets": self.normalized_targets(),
            "depth": self.depth.value,
            "query": self.query,
            "focus": list(self.focus),
            "output_format": self.output_format.value,
        }


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


class _ResultModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class TokenUsage(_ResultModel):
    """Best-effort token accounting reported by the tool."""

    prompt: int = 0
    completion: int = 0
    total: int = 0


class Finding(_ResultModel):
    """A single issue or observation reported by the analysis."""

    type: str = "general"
    severity: Severity = Severity.INFO
    location: str = "unknown"
    message: str = ""
    suggestion: str | None = None
    code: str | None = None
    category: str | None = None
    line: int | None = None
    column: int | None = None


class AnalysisMetrics(_ResultModel):
    """Numeric metrics; unknown extra metrics are kept as-is."""

    model_config = ConfigDict(extra="allow")

    files_analyzed: int = 0
    lines_of_code: int = 0
    complexity: float | None = None
    dependencies: int | None = None
    quality_score: float | None = None


class AnalysisResult(_ResultModel):
    """The outcome of one analysis request.

    ``errors`` is populated only when ``success`` is False. ``cached`` is
    set on the copy handed back for a cache hit, never on the stored entry.
    """

    request_id: str
    success: bool = True
    targets: tuple[str, ...] = ()
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    duration_ms: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    summary: str = ""
    findings: tuple[Finding, ...] = ()
    metrics: AnalysisMetrics = Field(default_factory=AnalysisMetrics)
    recommendations: tuple[str, ...] = ()
    raw_output: str | None = None
    errors: tuple[str, ...] | None = None
    cached: bool = False

    @classmethod
    def failure(
        cls,
        request_id: str,
        error: str,
        duration_ms: int = 0,
        targets: tuple[str, ...] = (),
    ) -> AnalysisResult:
        """Build a ``success=False`` result carrying a single error."""
        return cls(
            request_id=request_id,
            success=False,
            targets=targets,
            duration_ms=duration_ms,
            summary=f"Analysis failed: {error}",
            errors=(error,),
        )


class VerificationResult(BaseModel):
    """Outcome of ``verify``; ``parsed`` is False when the fallback applied."""

    implemented: bool = False
    confidence: float = Field(default=0, ge=0, le=100)
    details: str = ""
    parsed: bool = False
    analysis: AnalysisResult | None = None


# ---------------------------------------------------------------------------
# Quota / cache reporting
# ---------------------------------------------------------------------------


class QuotaWindowStatus(BaseModel):
    """Usage of one quota window."""

    used: int = Field(ge=0)
    limit: int
    reset_at: datetime


class QuotaStatus(BaseModel):
    """Usage of both quota windows."""

    requests_per_minute: QuotaWindowStatus
    requests_per_day: QuotaWindowStatus


class CacheStats(BaseModel):
    """Result Store statistics."""

    entries: int
    total_size_bytes: int
    hit_rate: float = Field(ge=0.0, le=1.0)
    hits: int = 0
    misses: int = 0
