"""Shared pytest fixtures for the analysis-broker test suite."""

from __future__ import annotations

import asyncio
import stat
from collections.abc import Callable
from pathlib import Path

import pytest

from analysis_broker.cache import ResultStore
from analysis_broker.config import ToolSettings
from analysis_broker.models import AnalysisResult, Finding, Severity
from analysis_broker.pipeline import AnalysisPipeline
from analysis_broker.rate_limiter import QuotaLimiter

# ---------------------------------------------------------------------------
# Time control
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable wall clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Fake external tool
# ---------------------------------------------------------------------------


class FakeTool:
    """An executable ``/bin/sh`` script standing in for the analysis CLI.

    Every invocation appends a line to ``invocations`` and writes its
    argument vector, NUL-separated, to ``last_args``.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.path = directory / "fake-analyzer"
        self.invocations_file = directory / "invocations"
        self.args_file = directory / "last_args"

    def write(
        self,
        stdout: str = "",
        *,
        stderr: str = "",
        exit_code: int = 0,
        hang_seconds: float | None = None,
    ) -> FakeTool:
        lines = [
            "#!/bin/sh",
            f'echo invoked >> "{self.invocations_file}"',
            f"printf '%s\\0' \"$@\" > \"{self.args_file}\"",
            "cat <<'__FAKE_STDOUT__'",
            stdout,
            "__FAKE_STDOUT__",
        ]
        if stderr:
            lines += ["cat >&2 <<'__FAKE_STDERR__'", stderr, "__FAKE_STDERR__"]
        if hang_seconds is not None:
            lines.append(f"exec sleep {hang_seconds}")
        lines.append(f"exit {exit_code}")
        self.path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        self.path.chmod(self.path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return self

    @property
    def invocation_count(self) -> int:
        if not self.invocations_file.exists():
            return 0
        return len(self.invocations_file.read_text(encoding="utf-8").splitlines())

    @property
    def last_args(self) -> list[str]:
        return self.args_file.read_text(encoding="utf-8").split("\0")[:-1]

    def settings(self, **overrides: object) -> ToolSettings:
        return ToolSettings(binary=str(self.path), **overrides)


@pytest.fixture()
def fake_tool(tmp_path: Path) -> FakeTool:
    tool_dir = tmp_path / "bin"
    tool_dir.mkdir()
    return FakeTool(tool_dir)


# ---------------------------------------------------------------------------
# Pipeline factory
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_pipeline(
    fake_tool: FakeTool, clock: FakeClock
) -> Callable[..., AnalysisPipeline]:
    """Build a pipeline around the fake tool with injected time."""

    def factory(
        *,
        requests_per_minute: int = 60,
        requests_per_day: int = 1000,
        cache_enabled: bool = True,
        cache_dir: Path | None = None,
        **tool_overrides: object,
    ) -> AnalysisPipeline:
        limiter = QuotaLimiter(
            requests_per_minute,
            requests_per_day,
            clock=clock,
            sleep=clock.sleep,
        )
        store = ResultStore(directory=cache_dir, enabled=cache_enabled, clock=clock)
        return AnalysisPipeline(limiter, store, fake_tool.settings(**tool_overrides))

    return factory


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


SAMPLE_JSON_OUTPUT = """\
```json
{
  "summary": "Small service with one risky handler.",
  "findings": [
    {"type": "security", "severity": "high", "location": "src/api.py",
     "message": "Unvalidated input reaches the shell", "line": 42},
    {"type": "style", "severity": "low", "location": "src/util.py",
     "message": "Long function"}
  ],
  "metrics": {"filesAnalyzed": 12, "linesOfCode": 840},
  "recommendations": ["Validate request bodies"]
}
```"""


@pytest.fixture()
def sample_json_output() -> str:
    return SAMPLE_JSON_OUTPUT


@pytest.fixture()
def sample_result() -> AnalysisResult:
    """A successful result with findings across several severities."""
    return AnalysisResult(
        request_id="analysis-1700000000000-abc123",
        targets=("src",),
        duration_ms=1234,
        summary="Two issues found.",
        findings=(
            Finding(
                type="security",
                severity=Severity.LOW,
                location="src/util.py",
                message="Weak hash used for cache keys",
            ),
            Finding(
                type="security",
                severity=Severity.CRITICAL,
                location="src/api.py",
                line=42,
                message="SQL built from user input",
                suggestion="Use bound parameters",
            ),
        ),
        recommendations=("Add input validation",),
    )


@pytest.fixture()
def make_result() -> Callable[..., AnalysisResult]:
    def factory(request_id: str = "analysis-1-000000", **fields: object) -> AnalysisResult:
        return AnalysisResult(request_id=request_id, **fields)

    return factory
