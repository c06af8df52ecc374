"""Unit tests for analysis_broker.interpreter."""

from __future__ import annotations

import json

import pytest

from analysis_broker.interpreter import (
    MAX_FINDINGS,
    MAX_RECOMMENDATIONS,
    MAX_SUMMARY_CHARS,
    estimate_verification,
    extract_findings,
    extract_json_payload,
    extract_recommendations,
    extract_summary,
    infer_severity,
    interpret_output,
    normalize_finding,
    normalize_severity,
    parse_verification,
)
from analysis_broker.models import Severity, TokenUsage


def _interpret(raw: str, **kwargs: object):
    return interpret_output(raw, request_id="analysis-1-abcdef", **kwargs)


# ---------------------------------------------------------------------------
# JSON extraction and precedence
# ---------------------------------------------------------------------------


class TestExtractJsonPayload:
    def test_fenced_block(self) -> None:
        text = 'Here you go:\n```json\n{"summary": "ok"}\n```\nThanks.'
        assert extract_json_payload(text) == {"summary": "ok"}

    def test_whole_text(self) -> None:
        assert extract_json_payload('  {"a": 1}\n') == {"a": 1}

    def test_prose_returns_none(self) -> None:
        assert extract_json_payload("Nothing structured here.") is None

    def test_untagged_fence_is_not_json(self) -> None:
        assert extract_json_payload('```\n{"a": 1}\n```') is None

    def test_broken_fence_falls_through(self) -> None:
        assert extract_json_payload("```json\n{broken\n```") is None

    def test_deep_nesting_is_not_json(self) -> None:
        deep = "[" * 200_000 + "]" * 200_000
        assert extract_json_payload(deep) is None
        assert extract_json_payload(f"```json\n{deep}\n```") is None


class TestPrecedence:
    def test_fenced_json_wins_over_prose(self, sample_json_output) -> None:
        raw = (
            "## Issues\n"
            "- Critical prose finding that must be ignored entirely\n\n"
            + sample_json_output
        )
        result = _interpret(raw)
        assert result.summary == "Small service with one risky handler."
        assert [f.location for f in result.findings] == ["src/api.py", "src/util.py"]
        assert result.recommendations == ("Validate request bodies",)

    def test_whole_output_json(self) -> None:
        raw = json.dumps({"summary": "All good", "findings": []})
        result = _interpret(raw)
        assert result.success is True
        assert result.summary == "All good"
        assert result.findings == ()

    def test_prose_fallback(self) -> None:
        raw = "The project is tidy.\n- Missing docstrings in `src/app.py`"
        result = _interpret(raw)
        assert result.summary.startswith("The project is tidy.")
        assert result.findings[0].location == "src/app.py"

    def test_raw_output_is_retained(self) -> None:
        raw = "plain output"
        assert _interpret(raw).raw_output == raw

    def test_non_object_json_degrades_to_text(self) -> None:
        result = _interpret("[1, 2, 3]")
        assert result.success is True
        assert result.summary == "[1, 2, 3]"

    def test_request_metadata_is_carried(self) -> None:
        result = _interpret("text", duration_ms=42, targets=("src",))
        assert result.request_id == "analysis-1-abcdef"
        assert result.duration_ms == 42
        assert result.targets == ("src",)
        assert result.cached is False


# ---------------------------------------------------------------------------
# JSON payload normalization
# ---------------------------------------------------------------------------


class TestPayloadNormalization:
    def test_metrics_accept_camel_case(self, sample_json_output) -> None:
        result = _interpret(sample_json_output)
        assert result.metrics.files_analyzed == 12
        assert result.metrics.lines_of_code == 840

    def test_finding_line_is_kept(self, sample_json_output) -> None:
        result = _interpret(sample_json_output)
        assert result.findings[0].line == 42
        assert result.findings[0].severity is Severity.HIGH

    def test_missing_summary_gets_default(self) -> None:
        assert _interpret('{"findings": []}').summary == "Analysis complete"

    def test_summary_is_capped(self) -> None:
        raw = json.dumps({"summary": "x" * (MAX_SUMMARY_CHARS + 500)})
        assert len(_interpret(raw).summary) == MAX_SUMMARY_CHARS

    def test_single_finding_object_is_wrapped(self) -> None:
        raw = json.dumps({"summary": "s", "findings": {"message": "only one"}})
        result = _interpret(raw)
        assert len(result.findings) == 1
        assert result.findings[0].message == "only one"

    def test_recommendation_objects_are_flattened(self) -> None:
        raw = json.dumps(
            {"summary": "s", "recommendations": [{"description": "Pin versions"}, "Add CI"]}
        )
        assert _interpret(raw).recommendations == ("Pin versions", "Add CI")

    def test_token_usage_from_payload(self) -> None:
        raw = json.dumps({"summary": "s", "tokenUsage": {"prompt": 5, "completion": 3}})
        assert _interpret(raw).token_usage == TokenUsage(prompt=5, completion=3, total=8)

    def test_extra_metrics_are_kept(self) -> None:
        raw = json.dumps({"summary": "s", "metrics": {"filesAnalyzed": 2, "todoCount": 7}})
        metrics = _interpret(raw).metrics
        assert metrics.files_analyzed == 2
        assert metrics.model_extra == {"todoCount": 7}

    def test_normalize_finding_aliases(self) -> None:
        finding = normalize_finding(
            {"file": "a.py", "description": "desc", "recommendation": "fix", "severity": "MEDIUM"}
        )
        assert finding.location == "a.py"
        assert finding.message == "desc"
        assert finding.suggestion == "fix"
        assert finding.severity is Severity.MEDIUM

    def test_infinite_line_number_is_dropped(self) -> None:
        raw = '{"summary": "s", "findings": [{"message": "m", "line": 1e999, "column": -1e999}]}'
        result = _interpret(raw)
        assert result.success is True
        assert result.findings[0].message == "m"
        assert result.findings[0].line is None
        assert result.findings[0].column is None

    def test_unusable_payload_falls_back_to_text(self) -> None:
        raw = '{"summary": "s", "metrics": {"filesAnalyzed": 1e999}}'
        result = _interpret(raw)
        assert result.success is True
        assert result.raw_output == raw

    def test_normalize_finding_from_string(self) -> None:
        finding = normalize_finding("just text")
        assert finding.message == "just text"
        assert finding.severity is Severity.INFO
        assert finding.location == "unknown"


class TestEnvelope:
    def test_response_text_is_interpreted(self) -> None:
        inner = '```json\n{"summary": "inside", "findings": []}\n```'
        raw = json.dumps(
            {
                "response": inner,
                "stats": {
                    "models": {"gemini-pro": {"tokens": {"prompt": 10, "candidates": 4, "total": 14}}}
                },
            }
        )
        result = _interpret(raw)
        assert result.summary == "inside"
        assert result.token_usage == TokenUsage(prompt=10, completion=4, total=14)
        assert result.raw_output == raw

    def test_prose_response_uses_text_extraction(self) -> None:
        raw = json.dumps({"response": "Overview.\n- Hardcoded token found in config/app.yaml"})
        result = _interpret(raw, finding_type="security")
        assert result.summary.startswith("Overview.")
        assert result.findings[0].location == "config/app.yaml"
        assert result.findings[0].type == "security"


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------


class TestSeverity:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("CRITICAL vulnerability in the login flow", Severity.CRITICAL),
            ("Severe memory growth under load", Severity.CRITICAL),
            ("High risk of data loss", Severity.HIGH),
            ("Moderate duplication between handlers", Severity.MEDIUM),
            ("Variable names could be clearer", Severity.LOW),
        ],
    )
    def test_infer_severity(self, text: str, expected: Severity) -> None:
        assert infer_severity(text) is expected

    def test_keywords_match_whole_words(self) -> None:
        assert infer_severity("Highlight the nav bar") is Severity.LOW

    @pytest.mark.parametrize(
        ("label", "expected"),
        [
            ("critical", Severity.CRITICAL),
            ("HIGH", Severity.HIGH),
            (" medium ", Severity.MEDIUM),
            ("catastrophic", Severity.INFO),
            (None, Severity.INFO),
        ],
    )
    def test_normalize_severity(self, label: object, expected: Severity) -> None:
        assert normalize_severity(label) is expected


# ---------------------------------------------------------------------------
# Prose extraction
# ---------------------------------------------------------------------------


class TestExtractFindings:
    def test_bullets_and_numbers(self) -> None:
        text = "- First issue is long enough\n2. Second issue is long enough\n* Third one too, yes"
        assert len(extract_findings(text)) == 3

    def test_short_bullets_are_skipped(self) -> None:
        assert extract_findings("- tiny\n- also tiny") == []

    def test_heading_becomes_category_and_fallback_location(self) -> None:
        text = "## Authentication\n- Tokens never expire after logout"
        finding = extract_findings(text)[0]
        assert finding.category == "Authentication"
        assert finding.location == "Authentication"

    def test_colon_heading(self) -> None:
        text = "Performance issues:\n- N+1 queries when listing orders"
        assert extract_findings(text)[0].category == "Performance issues"

    def test_backtick_location_with_line(self) -> None:
        finding = extract_findings("- SQL built by concatenation `src/db.py:12`")[0]
        assert finding.location == "src/db.py"
        assert finding.line == 12

    def test_prose_location(self) -> None:
        finding = extract_findings("- Hardcoded secret found in config/settings.py")[0]
        assert finding.location == "config/settings.py"
        assert finding.line is None

    def test_unknown_location(self) -> None:
        assert extract_findings("- Something vague but long")[0].location == "unknown"

    def test_plain_lines_are_not_findings(self) -> None:
        assert extract_findings("This sentence is long but has no bullet.") == []

    def test_capped(self) -> None:
        text = "\n".join(f"- Finding number {i} with detail" for i in range(MAX_FINDINGS + 10))
        assert len(extract_findings(text)) == MAX_FINDINGS

    def test_finding_type_is_applied(self) -> None:
        finding = extract_findings("- Outdated package detected", finding_type="dependencies")[0]
        assert finding.type == "dependencies"


class TestExtractRecommendations:
    def test_two_recommendations_in_order(self) -> None:
        text = "Recommend: add input validation.\nSuggest: rotate secrets."
        assert extract_recommendations(text) == ["add input validation", "rotate secrets"]

    def test_duplicates_removed(self) -> None:
        text = "Recommend: add tests.\nRecommend: add tests.\nConsider caching"
        assert extract_recommendations(text) == ["add tests", "caching"]

    def test_sentence_start_only(self) -> None:
        text = "The code works. Consider adding tests. It should not matter mid-sentence."
        assert extract_recommendations(text) == ["adding tests"]

    def test_bulleted(self) -> None:
        assert extract_recommendations("- Should pin the base image") == ["pin the base image"]

    def test_capped(self) -> None:
        text = "\n".join(f"Recommend: item {i}" for i in range(MAX_RECOMMENDATIONS + 5))
        assert len(extract_recommendations(text)) == MAX_RECOMMENDATIONS


class TestExtractSummary:
    def test_skips_blank_lines(self) -> None:
        assert extract_summary("\n\nFirst.\n\nSecond.") == "First.\nSecond."

    def test_truncated(self) -> None:
        assert len(extract_summary("y" * 5000)) == MAX_SUMMARY_CHARS


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerification:
    def test_parse_json(self) -> None:
        raw = '{"implemented": true, "confidence": 80, "details": "found in auth.py"}'
        assert parse_verification(raw) == {
            "implemented": True,
            "confidence": 80,
            "details": "found in auth.py",
        }

    def test_parse_fenced_inside_envelope(self) -> None:
        inner = '```json\n{"implemented": false, "confidence": 10, "details": "no"}\n```'
        payload = parse_verification(json.dumps({"response": inner}))
        assert payload is not None
        assert payload["implemented"] is False

    @pytest.mark.parametrize("raw", [None, "", "no json", '{"summary": "x"}'])
    def test_parse_rejects(self, raw: str | None) -> None:
        assert parse_verification(raw) is None

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("IMPLEMENTED: login is handled in auth.py", (True, 75)),
            ("Feature is implemented, confidence 90%", (True, 90)),
            ("NOT_FOUND: nothing matches", (False, 25)),
            ("This is not implemented anywhere", (False, 25)),
            ("NOT_FOUND 40%", (False, 40)),
        ],
    )
    def test_estimate(self, text: str, expected: tuple[bool, int]) -> None:
        assert estimate_verification(text) == expected
