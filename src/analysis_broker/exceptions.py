"""Centralized exception hierarchy for the analysis-broker package.

All domain-specific exceptions inherit from ``AnalysisBrokerError`` so
callers can catch the entire family with a single ``except`` clause.

Only ``ConfigurationError`` and its subclasses escape
``AnalysisPipeline.analyze``; ``ToolError`` subclasses are raised inside the
invocation layer and turned into failed ``AnalysisResult`` values.
"""

from __future__ import annotations


class AnalysisBrokerError(Exception):
    """Base exception for all analysis-broker errors."""


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigurationError(AnalysisBrokerError):
    """Raised for bad or missing configuration and request fields."""


class InvalidRequestError(ConfigurationError):
    """Raised when an analysis request cannot be executed as given."""


# ---------------------------------------------------------------------------
# External tool errors
# ---------------------------------------------------------------------------


class ToolError(AnalysisBrokerError):
    """Base exception for failures invoking the external analysis tool."""


class ToolNotInstalledError(ToolError):
    """Raised when the analysis binary cannot be found."""

    def __init__(self, binary: str) -> None:
        super().__init__(f"Analysis tool {binary!r} is not installed or not on PATH")
        self.binary = binary


class ToolExecutionError(ToolError):
    """Raised when the analysis tool exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        command: str = "analyze",
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class ToolTimeoutError(ToolError):
    """Raised when the analysis tool exceeds its wall-clock bound."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Analysis tool timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds
