"""Locate the source of an individual test inside a test file."""

import ast
import re

# Separators used by runners when printing a test's qualified name
NAME_SEPARATORS = re.compile(r"\s+›\s+|\s+>\s+|::")
PARAMETRIZE_SUFFIX = re.compile(r"\[.*\]$")
DOTTED_NAME = re.compile(r"\w+(?:\.\w+)+")


def leaf_test_title(test_name: str) -> str:
    """Last segment of a qualified test name, without a parametrize id."""
    parts = [p.strip() for p in NAME_SEPARATORS.split(test_name) if p.strip()]
    title = PARAMETRIZE_SUFFIX.sub("", parts[-1] if parts else test_name.strip())
    # pytest prints class-based tests as `TestAdd.test_adds`
    is_pytest_path = "::" in test_name or title.startswith("Test")
    if is_pytest_path and DOTTED_NAME.fullmatch(title):
        title = title.rsplit(".", 1)[-1]
    return title


def extract_test_code(file_content: str, test_name: str) -> str | None:
    """
    Find the body of a failing test in its test file.

    Python files are searched with the AST; anything that does not parse as
    Python is searched for `it(...)` / `test(...)` blocks.

    Args:
        file_content: Full text of the test file
        test_name: Test name as reported by the runner

    Returns:
        Source snippet of the test, or None if it could not be found
    """
    if not file_content or not test_name:
        return None

    title = leaf_test_title(test_name)

    try:
        tree = ast.parse(file_content)
    except SyntaxError:
        return _extract_js_test(file_content, title)

    return _extract_python_test(tree.body, file_content, title)


def _extract_python_test(nodes: list[ast.stmt], source: str, title: str) -> str | None:
    """Recursively search module and class bodies for a test function."""
    for node in nodes:
        if isinstance(node, ast.ClassDef):
            found = _extract_python_test(node.body, source, title)
            if found:
                return found
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == title:
            source_lines = source.splitlines()
            start_line = min(
                [node.lineno] + [d.lineno for d in node.decorator_list]
            ) - 1
            end_line = node.end_lineno if node.end_lineno else start_line + 1
            return "\n".join(source_lines[start_line:end_line])
    return None


def _extract_js_test(source: str, title: str) -> str | None:
    escaped = re.escape(title)

    arrow = re.compile(
        rf"(it|test)\s*\(\s*['`\"]{escaped}['`\"]\s*,\s*(?:async\s+)?\([^)]*\)\s*=>\s*\{{.*?\n\s*\}}\s*\)",
        re.DOTALL,
    )
    match = arrow.search(source)
    if match:
        return match.group(0)

    classic = re.compile(
        rf"(it|test)\s*\(\s*['`\"]{escaped}['`\"]\s*,\s*(?:async\s+)?function\s*\([^)]*\)\s*\{{.*?\n\s*\}}\s*\)",
        re.DOTALL,
    )
    match = classic.search(source)
    if match:
        return match.group(0)

    return None
