"""Prompt assembly and argument building for the external analysis tool.

The prompt is composed in a fixed order: the per-kind template, the
optional query, the optional focus tags, the depth instruction, and a
closing request for structured output.
"""

from __future__ import annotations

import os
import re

from analysis_broker.config import ToolSettings
from analysis_broker.models import (
    AnalysisDepth,
    AnalysisKind,
    AnalysisRequest,
    OutputFormat,
)

KIND_TEMPLATES: dict[AnalysisKind, str] = {
    AnalysisKind.CODEBASE: (
        "Analyze this codebase comprehensively. "
        "Identify patterns, structure, and key components."
    ),
    AnalysisKind.ARCHITECTURE: (
        "Map the architecture of this codebase. "
        "Identify components, layers, dependencies, and data flows."
    ),
    AnalysisKind.SECURITY: (
        "Perform a security audit. Find vulnerabilities, insecure patterns, "
        "hardcoded secrets, and misconfigurations. "
        "Rate each finding by severity: critical, high, medium, low."
    ),
    AnalysisKind.DEPENDENCIES: (
        "Analyze dependencies. Find outdated packages, vulnerabilities, "
        "license issues, and unused dependencies."
    ),
    AnalysisKind.COVERAGE: (
        "Assess test coverage. Identify untested code paths, missing edge cases, "
        "and testing recommendations."
    ),
    AnalysisKind.CUSTOM: "Analyze the referenced files and answer the request below.",
}

DEPTH_INSTRUCTIONS: dict[AnalysisDepth, str] = {
    AnalysisDepth.SURFACE: "Provide a quick overview without deep analysis.",
    AnalysisDepth.MODERATE: "Provide moderate detail with key findings.",
    AnalysisDepth.DEEP: "Provide detailed analysis with comprehensive findings.",
    AnalysisDepth.COMPREHENSIVE: "Provide exhaustive analysis covering all aspects.",
}

STRUCTURED_OUTPUT_INSTRUCTION = (
    "Return structured output with: summary, findings "
    "(type, severity, location, message, suggestion), metrics, and recommendations."
)

_SHELL_SPECIAL_RE = re.compile(r'([\\"$`])')


def build_prompt(request: AnalysisRequest) -> str:
    """Assemble the instruction text for ``request``."""
    parts = [KIND_TEMPLATES[request.kind]]
    if request.query:
        parts.append(f"Additional focus: {request.query}")
    if request.focus:
        parts.append(f"Focus on: {', '.join(request.focus)}")
    parts.append(DEPTH_INSTRUCTIONS[request.depth])
    parts.append(STRUCTURED_OUTPUT_INSTRUCTION)
    return "\n\n".join(parts)


def escape_prompt(prompt: str) -> str:
    """Backslash-escape quotes, backslashes, ``$`` and backticks."""
    return _SHELL_SPECIAL_RE.sub(r"\\\1", prompt)


def build_invocation_args(request: AnalysisRequest, tool: ToolSettings) -> list[str]:
    """Build the argument vector (without the binary) for ``request``.

    One prefixed path reference per target comes first, then the optional
    model flag, the escaped prompt and, for JSON output, the JSON flag.
    """
    args = [f"{tool.path_prefix}{os.path.normpath(t.strip())}" for t in request.targets]
    if tool.model:
        args.extend(["-m", tool.model])
    args.extend([tool.prompt_flag, escape_prompt(build_prompt(request))])
    if tool.force_json_output or request.output_format == OutputFormat.JSON:
        args.append(tool.json_flag)
    return args
