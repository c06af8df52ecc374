"""Analysis pipeline: cache lookup, quota admission, tool run, interpretation.

Per request the pipeline moves through
``cache check -> (hit: done) | (miss: quota wait -> invoke -> parse -> store)``.
Expected failures (tool missing, non-zero exit, timeout) come back as
``success=False`` results; only request validation errors are raised.
Cancelling the calling task while it waits for quota or for the tool
propagates as ``asyncio.CancelledError`` and kills any child process.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import ValidationError

from analysis_broker.cache import ResultStore, has_finding_type, matches_target
from analysis_broker.config import AnalysisSettings, Settings, ToolSettings
from analysis_broker.events import (
    CacheHitEvent,
    CompletedEvent,
    EventBus,
    FailedEvent,
    ProgressEvent,
)
from analysis_broker.exceptions import InvalidRequestError, ToolError
from analysis_broker.executor import (
    StreamName,
    ToolOutput,
    collect_output,
    find_binary,
    infer_phase,
    spawn_tool,
)
from analysis_broker.interpreter import interpret_output, parse_verification
from analysis_broker.logging import generate_request_id, request_logging_context
from analysis_broker.models import (
    AnalysisDepth,
    AnalysisKind,
    AnalysisRequest,
    AnalysisResult,
    CacheStats,
    OutputFormat,
    QuotaStatus,
    VerificationResult,
)
from analysis_broker.prompts import build_invocation_args
from analysis_broker.rate_limiter import QuotaLimiter

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

Targets = str | Sequence[str]

# kind -> (default depth, default focus tags)
SPECIALIZED_DEFAULTS: dict[AnalysisKind, tuple[AnalysisDepth, tuple[str, ...]]] = {
    AnalysisKind.SECURITY: (
        AnalysisDepth.DEEP,
        ("vulnerabilities", "secrets", "misconfig"),
    ),
    AnalysisKind.ARCHITECTURE: (
        AnalysisDepth.COMPREHENSIVE,
        ("components", "dependencies", "layers"),
    ),
    AnalysisKind.DEPENDENCIES: (
        AnalysisDepth.DEEP,
        ("outdated", "vulnerabilities", "licenses"),
    ),
    AnalysisKind.COVERAGE: (
        AnalysisDepth.MODERATE,
        ("untested", "quality", "edge-cases"),
    ),
}

VERIFY_QUERY_TEMPLATE = (
    'Verify if this feature is implemented: "{feature}". '
    "Return JSON with fields: implemented (boolean), confidence (0-100), details (string)"
)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _coerce_implemented(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "implemented"}
    return bool(value)


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(str(value).strip().rstrip("%"))
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(confidence):
        return 0.0
    return min(max(confidence, 0.0), 100.0)


class AnalysisPipeline:
    """Serves analysis requests through the cache, the quota and the tool.

    Build one per configuration and share it between callers; it owns its
    limiter, store and event bus (no process-wide singleton).

    Attributes:
        limiter: Quota admission control.
        store: Result cache.
        tool: External tool invocation settings.
        defaults: Request defaults used by ``build_request``.
        events: Bus receiving progress, completion and failure events.
    """

    def __init__(
        self,
        limiter: QuotaLimiter,
        store: ResultStore,
        tool: ToolSettings | None = None,
        *,
        defaults: AnalysisSettings | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.limiter = limiter
        self.store = store
        self.tool = tool or ToolSettings()
        self.defaults = defaults or AnalysisSettings()
        self.events = events or EventBus()
        self._admission_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> AnalysisPipeline:
        """Construct a pipeline and its collaborators from ``settings``."""
        limiter = QuotaLimiter(
            settings.quota.requests_per_minute,
            settings.quota.requests_per_day,
            enabled=settings.quota.enabled,
            poll_interval=settings.quota.poll_interval_seconds,
        )
        store = ResultStore(
            ttl_seconds=settings.cache.ttl_seconds,
            max_entries=settings.cache.max_entries,
            directory=settings.cache.directory if settings.cache.persist else None,
            enabled=settings.cache.enabled,
        )
        return cls(limiter, store, settings.tool, defaults=settings.analysis)

    async def start(self) -> None:
        """Load persisted cache entries; safe to call repeatedly."""
        await self.store.load()

    # -- requests ------------------------------------------------------------

    def build_request(
        self,
        kind: AnalysisKind | str,
        targets: Targets,
        **options: Any,
    ) -> AnalysisRequest:
        """Build a request, filling depth and output format from defaults.

        Raises:
            InvalidRequestError: If any field fails validation.
        """
        fields: dict[str, Any] = {
            "kind": kind,
            "targets": targets,
            "depth": self.defaults.default_depth,
            "output_format": self.defaults.default_output_format,
        }
        fields.update({k: v for k, v in options.items() if v is not None})
        try:
            return AnalysisRequest(**fields)
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid analysis request: {exc}") from exc

    @staticmethod
    def validate(request: AnalysisRequest) -> None:
        """Reject requests that must not reach the tool.

        Raises:
            InvalidRequestError: If there are no targets or a blank one.
        """
        if not request.targets:
            raise InvalidRequestError("Analysis request has no targets")
        if any(not target.strip() for target in request.targets):
            raise InvalidRequestError("Analysis request contains a blank target")

    # -- core ----------------------------------------------------------------

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        """Serve ``request`` from cache or by running the external tool.

        A cache hit returns the stored result marked ``cached``. It keeps the
        ``request_id`` of the run that produced it; the ``CacheHitEvent``
        links that ID to the one generated for this request.

        Raises:
            InvalidRequestError: If the request fails validation.
        """
        self.validate(request)
        await self.start()

        request_id = generate_request_id()
        started = time.monotonic()
        cache_key = self.store.generate_key(request.cache_fields())
        targets = tuple(request.normalized_targets())

        with request_logging_context(request_id, kind=request.kind.value) as log:
            cached = await self.store.get(cache_key)
            if cached is not None:
                log.info("analysis_cache_hit", cache_key=cache_key[:12])
                self.events.publish(
                    CacheHitEvent(
                        request_id=request_id,
                        cache_key=cache_key,
                        cached_request_id=cached.request_id,
                    )
                )
                return cached.model_copy(update={"cached": True})

            try:
                output = await self._invoke(request, request_id)
            except ToolError as exc:
                error = str(exc)
                log.warning("analysis_failed", error=error, error_type=type(exc).__name__)
                self.events.publish(FailedEvent(request_id=request_id, error=error))
                return AnalysisResult.failure(
                    request_id, error, duration_ms=_elapsed_ms(started), targets=targets
                )

            result = interpret_output(
                output.stdout,
                request_id=request_id,
                duration_ms=_elapsed_ms(started),
                finding_type=request.kind.value,
                targets=targets,
            )
            await self.store.set(cache_key, result)
            log.info(
                "analysis_complete",
                duration_ms=result.duration_ms,
                findings=len(result.findings),
                recommendations=len(result.recommendations),
            )
            self.events.publish(CompletedEvent(request_id=request_id, result=result))
            return result

    async def _invoke(self, request: AnalysisRequest, request_id: str) -> ToolOutput:
        args = build_invocation_args(request, self.tool)
        phase = "preparing"

        def on_chunk(stream: StreamName, chunk: str) -> None:
            nonlocal phase
            phase = infer_phase(chunk, phase)
            self.events.publish(
                ProgressEvent(
                    request_id=request_id, phase=phase, raw_chunk=chunk, stream=stream
                )
            )

        # One request at a time between quota check and token consumption.
        async with self._admission_lock:
            await self.limiter.wait_for_quota()
            binary_path = find_binary(self.tool.binary)
            process = await spawn_tool(binary_path, args)
            self.limiter.consume_token()

        return await collect_output(process, self.tool.timeout_seconds, on_chunk)

    # -- specialized entry points ---------------------------------------------

    async def _specialized(
        self, kind: AnalysisKind, targets: Targets, options: dict[str, Any]
    ) -> AnalysisResult:
        depth, focus = SPECIALIZED_DEFAULTS[kind]
        merged: dict[str, Any] = {"depth": depth, "focus": focus}
        merged.update({k: v for k, v in options.items() if v is not None})
        return await self.analyze(self.build_request(kind, targets, **merged))

    async def security_scan(self, targets: Targets, **options: Any) -> AnalysisResult:
        return await self._specialized(AnalysisKind.SECURITY, targets, options)

    async def architecture_map(self, targets: Targets, **options: Any) -> AnalysisResult:
        return await self._specialized(AnalysisKind.ARCHITECTURE, targets, options)

    async def dependency_analysis(self, targets: Targets, **options: Any) -> AnalysisResult:
        return await self._specialized(AnalysisKind.DEPENDENCIES, targets, options)

    async def coverage_assess(self, targets: Targets, **options: Any) -> AnalysisResult:
        return await self._specialized(AnalysisKind.COVERAGE, targets, options)

    async def verify(self, feature: str, targets: Targets) -> VerificationResult:
        """Ask whether ``feature`` is implemented in ``targets``.

        Returns:
            The verdict, carrying the underlying result as ``analysis``.
            When no ``{implemented, confidence, details}`` object can be
            read from the raw output the verdict falls back to
            ``implemented=False, confidence=0`` with the summary as details.
        """
        request = self.build_request(
            AnalysisKind.CODEBASE,
            targets,
            query=VERIFY_QUERY_TEMPLATE.format(feature=feature),
            output_format=OutputFormat.JSON,
        )
        result = await self.analyze(request)

        payload = parse_verification(result.raw_output)
        if payload is None:
            return VerificationResult(details=result.summary, analysis=result)

        return VerificationResult(
            implemented=_coerce_implemented(payload.get("implemented", False)),
            confidence=_coerce_confidence(payload.get("confidence", 0)),
            details=str(payload.get("details") or result.summary),
            parsed=True,
            analysis=result,
        )

    # -- status / maintenance --------------------------------------------------

    def quota_status(self) -> QuotaStatus:
        return self.limiter.get_quota_status()

    def cache_stats(self) -> CacheStats:
        return self.store.get_stats()

    async def invalidate_cache(
        self, target: str | None = None, finding_type: str | None = None
    ) -> int:
        """Drop cached results by target path and/or finding type.

        With neither filter every entry is removed.
        """
        if target is None and finding_type is None:
            return await self.store.invalidate()

        by_target = matches_target(target) if target is not None else None
        by_type = has_finding_type(finding_type) if finding_type is not None else None

        def predicate(result: AnalysisResult) -> bool:
            return bool(
                (by_target is not None and by_target(result))
                or (by_type is not None and by_type(result))
            )

        return await self.store.invalidate(predicate)

    async def clear_cache(self) -> int:
        return await self.store.clear()
