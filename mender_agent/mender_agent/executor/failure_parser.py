"""Turn test runner output into framework-agnostic failing-test details.

Structured reports (Jest/Vitest JSON, pytest-json-report, Mocha JSON) are
preferred. Without one the console output is scanned for the Vitest (`❯`),
Jest (`●`) and pytest (`____ name ____`) failure conventions. Each
convention is an independent matcher in FAILURE_MATCHERS; the first one that
finds anything wins.
"""

import re
from collections.abc import Callable
from pathlib import PurePosixPath
from typing import Any

from mender_agent.models.schemas import (
    FailingTestDetail,
    TestExecutionResult,
    UnitTestErrorContext,
)
from mender_agent.parser.source_locator import extract_test_code

MAX_FAILING_TESTS = 10
MAX_MESSAGE_LENGTH = 2000
MAX_STACK_FRAMES = 5
MAX_OUTPUT_LENGTH = 1000

PATTERNS = {
    "ANSI_CODES": re.compile(r"\x1b\[[0-9;]*[a-zA-Z]"),

    # Rendered markup left in the output by DOM testing libraries
    "ACCESSIBLE_TREE": re.compile(
        r"Here is the accessible tree of your document.*?<body[^>]*>.*?</body>", re.I | re.S
    ),
    "SCREEN_DEBUG": re.compile(r"console\.log\s*<body[^>]*>.*?</body>", re.I | re.S),
    "HTML_BODY": re.compile(r"<body[^>]*>.*?</body>", re.I | re.S),
    "GENERIC_HTML": re.compile(r"<([a-z][a-z0-9]*)\b[^>]*>.{20,1000}?</\1>", re.I | re.S),

    # Failure headers
    "VITEST_FAIL_HEADER": re.compile(
        r"^[ \t]*FAIL[ \t]+(\S+[ \t]+>[ \t]+.+?)[ \t]*\n(.*?)(?=^[ \t]*FAIL[ \t]|⎯{3}|Test Files|\Z)", re.M | re.S
    ),
    "VITEST_FAIL": re.compile(r"❯\s+(.+?)\s*\n(.*?)(?=❯|Test Files|\Z)", re.S),
    # `❯ file:line:col` frames and `❯ file (N tests | M failed)` summaries
    "VITEST_NOT_A_TEST": re.compile(r":\d+:\d+$|\(\d+ tests?\b"),
    "JEST_FAIL": re.compile(r"●\s+(.+?)\s*\n(.*?)(?=●|Test Suites|\Z)", re.S),
    "PYTEST_FAIL": re.compile(r"^_{3,} (.+?) _{3,}[ \t]*\n(.*?)(?=^_{3,} |^={3,}|\Z)", re.M | re.S),

    # Failure output analysis
    "FAILED_TEST_MATCH": re.compile(r"(?:✗|FAIL).*?$", re.M),
    "ERROR_DETAILS": re.compile(r"(?:Error:|Expected.*but received|AssertionError:).*$", re.M),
    "SYNTAX_ERROR": re.compile(r"SyntaxError:.*$", re.M),
    "STACK_TRACE": re.compile(r"^\s*at\s+.+$", re.M),
    "PYTHON_FRAME": re.compile(r"^\S[^\n]*\.py:\d+:.*$", re.M),
    "PYTEST_ERROR_LINE": re.compile(r"^E\s+(.*)$", re.M),
    "ERROR_LINE": re.compile(r"Error:\s*(.+?)(?:\n|$)"),
    "ASSERTION_LINE": re.compile(r"AssertionError:\s*(.+?)(?:\n|$)"),
    "EXPECTED_BLOCK": re.compile(r"(?:Expected|Received).*?(?=\n\n|\n❯|\Z)", re.S),
}

NAME_SEPARATOR = re.compile(r"\s+›\s+|\s+>\s+")

Matcher = Callable[[TestExecutionResult, str, str | None], list[FailingTestDetail] | None]


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI colour codes and control sequences."""
    return PATTERNS["ANSI_CODES"].sub("", text)


def extract_html_content(text: str) -> str:
    """Return the first rendered markup fragment found in `text`."""
    for key in ("ACCESSIBLE_TREE", "SCREEN_DEBUG", "HTML_BODY", "GENERIC_HTML"):
        match = PATTERNS[key].search(text)
        if match:
            return match.group(0)
    return ""


def _truncate(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _combined_output(result: TestExecutionResult) -> str:
    return strip_ansi_codes("\n".join(part for part in (result.stdout, result.stderr) if part))


def _primary_output(result: TestExecutionResult) -> str:
    return strip_ansi_codes(result.stderr or result.stdout)


def _matches_test_file(reported: str, test_file_path: str) -> bool:
    reported = reported.split("::", 1)[0].replace("\\", "/")
    expected = test_file_path.replace("\\", "/").removeprefix("./")
    return (
        reported == expected
        or reported.endswith("/" + expected)
        or expected.endswith("/" + reported)
    )


def extract_test_errors(result: TestExecutionResult) -> str:
    """
    Build a concise error summary from a failed run.

    Returns:
        Failed test lines, error details and syntax errors, or the head of
        the raw output when none of those are recognised
    """
    if result.success:
        return ""

    errors: list[str] = []
    if result.error:
        errors.append(result.error)

    output = _primary_output(result)

    failed_tests = list(dict.fromkeys(PATTERNS["FAILED_TEST_MATCH"].findall(output)))
    if failed_tests:
        errors.append("Failed tests:")
        errors.extend(failed_tests[:10])
        if len(failed_tests) > 10:
            errors.append(f"... and {len(failed_tests) - 10} more failing tests")

    error_details = list(dict.fromkeys(PATTERNS["ERROR_DETAILS"].findall(output)))
    if error_details:
        errors.append("Error details:")
        errors.extend(error_details[:3])

    syntax_errors = PATTERNS["SYNTAX_ERROR"].findall(output)
    if syntax_errors:
        errors.append("Syntax errors:")
        errors.extend(syntax_errors)

    return "\n".join(errors) if errors else output[:MAX_OUTPUT_LENGTH]


def extract_rendered_html(result: TestExecutionResult) -> str:
    if result.success:
        return ""
    return extract_html_content(_combined_output(result))


# ---------------------------------------------------------------------------
# Structured report matchers
# ---------------------------------------------------------------------------


def match_jest_json_report(
    result: TestExecutionResult,
    test_file_content: str,
    test_file_path: str | None,
) -> list[FailingTestDetail] | None:
    """Jest / Vitest `--json` report: testResults[].assertionResults[]."""
    report = result.structured_report
    if not report or "testResults" not in report:
        return None

    failures: list[FailingTestDetail] = []
    for test_file in report.get("testResults", []):
        if test_file.get("status") != "failed":
            continue
        if test_file_path and not _matches_test_file(test_file.get("name", ""), test_file_path):
            continue

        failed_assertions = [
            a for a in test_file.get("assertionResults", []) if a.get("status") == "failed"
        ]
        for assertion in failed_assertions:
            failures.append(_jest_assertion_detail(assertion, test_file_content))

        # suite-level error such as a syntax error or failed import
        if not failed_assertions:
            name = PurePosixPath(test_file.get("name", "")).name
            duration = None
            if "endTime" in test_file and "startTime" in test_file:
                duration = test_file["endTime"] - test_file["startTime"]
            failures.append(FailingTestDetail(
                test_name="Test File Error",
                full_name=f"{name} (File Error)",
                ancestor_titles=[name],
                error_message=strip_ansi_codes(test_file.get("message") or "Unknown test file error"),
                duration_ms=duration,
            ))

    return failures or None


def _jest_assertion_detail(assertion: dict[str, Any], test_file_content: str) -> FailingTestDetail:
    rendered_html = ""
    messages = []
    for message in assertion.get("failureMessages", []):
        clean = strip_ansi_codes(message)
        if not rendered_html:
            rendered_html = extract_html_content(clean)
        messages.append(_truncate(clean))

    title = assertion.get("title", "")
    return FailingTestDetail(
        test_name=title,
        full_name=assertion.get("fullName", title),
        ancestor_titles=assertion.get("ancestorTitles", []),
        error_message="\n\n---\n\n".join(messages) or "Test failed",
        rendered_html=rendered_html,
        duration_ms=assertion.get("duration"),
        test_code=extract_test_code(test_file_content, title),
    )


def match_pytest_json_report(
    result: TestExecutionResult,
    test_file_content: str,
    test_file_path: str | None,
) -> list[FailingTestDetail] | None:
    """pytest-json-report: tests[] with nodeid/outcome, collectors[] for import errors."""
    report = result.structured_report
    if not report or "tests" not in report:
        return None

    failures: list[FailingTestDetail] = []

    for collector in report.get("collectors", []):
        nodeid = collector.get("nodeid", "")
        if collector.get("outcome") != "failed" or not nodeid:
            continue
        if test_file_path and not _matches_test_file(nodeid, test_file_path):
            continue
        name = PurePosixPath(nodeid.split("::", 1)[0]).name
        failures.append(FailingTestDetail(
            test_name="Test File Error",
            full_name=f"{name} (File Error)",
            ancestor_titles=[name],
            error_message=_truncate(strip_ansi_codes(str(collector.get("longrepr", "")))),
        ))

    for test in report.get("tests", []):
        if test.get("outcome") not in ("failed", "error"):
            continue
        nodeid = test.get("nodeid", "")
        if test_file_path and not _matches_test_file(nodeid, test_file_path):
            continue

        parts = nodeid.split("::")
        test_name = parts[-1]
        duration = 0.0
        message_parts: list[str] = []
        for phase in ("setup", "call", "teardown"):
            stage = test.get(phase) or {}
            duration += stage.get("duration", 0.0)
            if stage.get("outcome") != "failed":
                continue
            crash = (stage.get("crash") or {}).get("message")
            if crash:
                message_parts.append(crash)
            if stage.get("longrepr"):
                message_parts.append(str(stage["longrepr"]))

        error_message = strip_ansi_codes("\n\n".join(message_parts)) or "Test failed"
        failures.append(FailingTestDetail(
            test_name=test_name,
            full_name=nodeid,
            ancestor_titles=parts[1:-1],
            error_message=_truncate(error_message),
            rendered_html=extract_html_content(error_message),
            duration_ms=duration * 1000,
            stack_trace=_extract_stack_trace(error_message),
            test_code=extract_test_code(test_file_content, test_name),
        ))

    return failures or None


def match_mocha_json_report(
    result: TestExecutionResult,
    test_file_content: str,
    test_file_path: str | None,
) -> list[FailingTestDetail] | None:
    """Mocha `--reporter json`: failures[] with title/fullTitle/err."""
    report = result.structured_report
    if not report or "failures" not in report or "stats" not in report:
        return None

    failures: list[FailingTestDetail] = []
    for failure in report.get("failures", []):
        file = failure.get("file")
        if test_file_path and file and not _matches_test_file(file, test_file_path):
            continue
        title = failure.get("title", "")
        full_title = failure.get("fullTitle", title)
        err = failure.get("err") or {}
        message = strip_ansi_codes(err.get("message") or "Test failed")
        suite = full_title[: -len(title)].strip() if title and full_title.endswith(title) else ""
        failures.append(FailingTestDetail(
            test_name=title,
            full_name=full_title,
            ancestor_titles=[suite] if suite else [],
            error_message=_truncate(message),
            duration_ms=failure.get("duration"),
            stack_trace=_extract_stack_trace(strip_ansi_codes(err.get("stack") or "")),
            test_code=extract_test_code(test_file_content, title),
        ))

    return failures or None


# ---------------------------------------------------------------------------
# Console output matchers
# ---------------------------------------------------------------------------


def _extract_error_message(block: str) -> str:
    pytest_lines = PATTERNS["PYTEST_ERROR_LINE"].findall(block)
    if pytest_lines:
        return "\n".join(line.rstrip() for line in pytest_lines[:20])

    for key in ("ERROR_LINE", "ASSERTION_LINE"):
        match = PATTERNS[key].search(block)
        if match:
            return match.group(1).strip()

    match = PATTERNS["EXPECTED_BLOCK"].search(block)
    if match:
        return match.group(0).strip()

    return "Test failed"


def _extract_stack_trace(block: str) -> str | None:
    frames = PATTERNS["STACK_TRACE"].findall(block) or PATTERNS["PYTHON_FRAME"].findall(block)
    if not frames:
        return None
    return "\n".join(frame.rstrip() for frame in frames[:MAX_STACK_FRAMES])


def _parse_output_blocks(
    output: str,
    pattern: re.Pattern[str],
    test_file_content: str,
    skip_name: re.Pattern[str] | None = None,
) -> list[FailingTestDetail]:
    failures = []
    for match in pattern.finditer(output):
        name = match.group(1).strip()
        if skip_name and skip_name.search(name):
            continue
        block = match.group(2)
        parts = [p.strip() for p in NAME_SEPARATOR.split(name) if p.strip()]
        failures.append(FailingTestDetail(
            test_name=parts[-1] if parts else name,
            full_name=name,
            ancestor_titles=parts[:-1],
            error_message=_truncate(_extract_error_message(block)),
            rendered_html=extract_html_content(block),
            stack_trace=_extract_stack_trace(block),
            test_code=extract_test_code(test_file_content, name),
        ))
    return failures


def _output_matcher(key: str) -> Matcher:
    def matcher(
        result: TestExecutionResult,
        test_file_content: str,
        test_file_path: str | None,
    ) -> list[FailingTestDetail] | None:
        return _parse_output_blocks(_combined_output(result), PATTERNS[key], test_file_content) or None

    matcher.__name__ = f"match_{key.lower()}"
    return matcher


def match_vitest_output(
    result: TestExecutionResult,
    test_file_content: str,
    test_file_path: str | None,
) -> list[FailingTestDetail] | None:
    """Vitest console output: `FAIL  file > suite > test` headers, else `❯ suite > test` blocks."""
    output = _combined_output(result)
    failures = _parse_output_blocks(output, PATTERNS["VITEST_FAIL_HEADER"], test_file_content)
    if not failures:
        failures = _parse_output_blocks(
            output, PATTERNS["VITEST_FAIL"], test_file_content, skip_name=PATTERNS["VITEST_NOT_A_TEST"]
        )
    return failures or None


match_jest_output = _output_matcher("JEST_FAIL")
match_pytest_output = _output_matcher("PYTEST_FAIL")

FAILURE_MATCHERS: tuple[Matcher, ...] = (
    match_jest_json_report,
    match_pytest_json_report,
    match_mocha_json_report,
    match_vitest_output,
    match_jest_output,
    match_pytest_output,
)


def parse_failing_tests(
    result: TestExecutionResult,
    test_file_content: str = "",
    test_file_path: str | None = None,
) -> list[FailingTestDetail]:
    """
    Parse a test run into a list of failing tests.

    Args:
        result: The test execution result
        test_file_content: Source of the test file, used to attach test bodies
        test_file_path: Only report failures belonging to this file when the
            structured report covers several files

    Returns:
        Up to MAX_FAILING_TESTS details; a single "Test Suite Failure" entry
        when the run failed but nothing specific was recognised; an empty
        list when the run passed
    """
    if result.success:
        return []

    for matcher in FAILURE_MATCHERS:
        failures = matcher(result, test_file_content, test_file_path)
        if failures:
            return failures[:MAX_FAILING_TESTS]

    error_message = extract_test_errors(result).strip() or result.error or f"Test run failed with exit code {result.exit_code}"
    return [FailingTestDetail(
        test_name="Test Suite Failure",
        full_name="Test Suite Failure",
        error_message=_truncate(error_message),
        rendered_html=extract_rendered_html(result),
    )]


def file_passed_in_report(report: dict[str, Any], test_file_path: str) -> bool | None:
    """
    Decide from a structured report whether one test file passed.

    Returns:
        True/False when the report has entries for the file, None when it
        does not mention the file at all
    """
    if "testResults" in report:
        for test_file in report.get("testResults", []):
            if _matches_test_file(test_file.get("name", ""), test_file_path):
                return test_file.get("status") == "passed"
        return None

    if "failures" in report and "stats" in report:
        if any(_matches_test_file(f.get("file") or "", test_file_path) for f in report.get("failures", [])):
            return False
        if any(_matches_test_file(t.get("file") or "", test_file_path) for t in report.get("tests", []) + report.get("passes", [])):
            return True
        return None

    if "tests" in report:
        outcomes = [
            t.get("outcome")
            for t in report.get("tests", [])
            if _matches_test_file(t.get("nodeid", ""), test_file_path)
        ]
        collection_failed = any(
            c.get("outcome") == "failed" and _matches_test_file(c.get("nodeid", ""), test_file_path)
            for c in report.get("collectors", [])
            if c.get("nodeid")
        )
        if collection_failed:
            return False
        if not outcomes:
            return None
        return not any(outcome in ("failed", "error") for outcome in outcomes)

    return None


def format_failing_tests_for_prompt(failed_tests: list[FailingTestDetail]) -> str:
    """Render failing tests as markdown for the fix prompt."""
    if not failed_tests:
        return ""

    sections = [f"## Failed Tests ({len(failed_tests)})\n"]
    for index, test in enumerate(failed_tests, start=1):
        sections.append(_format_single_failed_test(test, index))
    return "\n".join(sections)


def _format_single_failed_test(test: FailingTestDetail, index: int) -> str:
    lines = [f"### Test {index}: {test.test_name}"]

    if test.ancestor_titles:
        lines.append(f"**Suite:** {' > '.join(test.ancestor_titles)}")
    if test.duration_ms is not None:
        lines.append(f"**Duration:** {test.duration_ms:.2f}ms")

    lines.append(f"\n**Error:**\n```\n{test.error_message}\n```")

    if test.stack_trace:
        lines.append(f"\n**Stack:**\n```\n{test.stack_trace}\n```")
    if test.test_code:
        lines.append(f"\n**Test code:**\n```\n{test.test_code}\n```")
    if test.rendered_html:
        lines.append(f"\n**Rendered HTML:**\n```html\n{test.rendered_html}\n```")

    lines.append("")
    return "\n".join(lines)


def get_failing_tests_detail(context: UnitTestErrorContext | None) -> str:
    """Failure section of a fix prompt: parsed failures, else raw output."""
    if context is None:
        return "No failure details available"
    if context.failing_tests:
        return format_failing_tests_for_prompt(context.failing_tests)
    if context.full_test_output:
        output = strip_ansi_codes(context.full_test_output)
        return f"## Test Output\n```\n{_truncate(output)}\n```"
    return "No failure details available"
