"""Prompts for the test generation agent."""

import json
import re
from typing import Any

from pydantic import BaseModel

from mender_agent.models.schemas import FrameworkInfo, TargetFile

SKIP_SENTINEL = "SKIP_TEST"

PLACEHOLDER = re.compile(r"\{\{([A-Za-z0-9_]+)\}\}")


class PromptTemplateBuilder:
    """
    Builds AI prompts by replacing `{{PLACEHOLDER}}` markers with project
    configuration, the target file and, for fixes, the failing test details.
    """

    def build(
        self,
        template: str,
        *,
        target_file: TargetFile,
        test_framework: FrameworkInfo | None = None,
        language_config: FrameworkInfo | None = None,
        linter_config: FrameworkInfo | None = None,
        formatter_config: FrameworkInfo | None = None,
        **custom_vars: Any,
    ) -> str:
        """
        Render a prompt template.

        Args:
            template: Template text with `{{NAME}}` placeholders
            target_file: File under test
            test_framework: Test framework descriptor, if known
            language_config: Language/compiler configuration
            linter_config: Linter configuration
            formatter_config: Formatter configuration
            **custom_vars: Extra values, substituted as `{{KEY}}` with the key
                uppercased

        Returns:
            Rendered prompt. Unknown placeholders are left as they are.
        """
        values: dict[str, str] = {}
        for key, value in custom_vars.items():
            if value is None:
                continue
            values[key.upper()] = value if isinstance(value, str) else self.format_value(value)

        values.update({
            "TEST_FRAMEWORK": test_framework.name if test_framework else "unknown framework",
            "TEST_FRAMEWORK_CONFIG": self.format_config(test_framework, "No specific configuration"),
            "LANGUAGE_CONFIGURATIONS": self.format_config(
                language_config, "No specific language configuration"
            ),
            "FORMATTING_RULES": self.format_config(formatter_config, "Follow project conventions"),
            "LINTING_RULES": self.format_config(linter_config, "Follow project linting rules"),
            "FILE_PATH": target_file.source_path,
            "TEST_FILE_PATH": target_file.test_path,
            "CODE_SNIPPET": target_file.source_content,
        })

        # single pass, so substituted text is never re-scanned
        return PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)

    def format_value(self, value: Any) -> str:
        if isinstance(value, FrameworkInfo):
            return self.format_config(value)
        if isinstance(value, BaseModel):
            return f"```json\n{value.model_dump_json(indent=2, exclude_none=True)}\n```"
        try:
            return f"```json\n{json.dumps(value, indent=2, default=str)}\n```"
        except (TypeError, ValueError):
            return f"```\n{value}\n```"

    def format_config(self, config: FrameworkInfo | None, fallback: str | None = None) -> str:
        """Format a config descriptor as a fenced block with its file path as a header."""
        if config is None:
            return f"```\n{fallback}\n```" if fallback else ""

        content = config.config_content or fallback or "No configuration available"
        header = f"// {config.config_file_path}\n" if config.config_file_path else ""
        return f"```{config.file_lang or ''}\n{header}{content}\n```"


_COMMON_CONTEXT = """## Project Configuration

Test framework: {{TEST_FRAMEWORK}}

{{TEST_FRAMEWORK_CONFIG}}

Language configuration:
{{LANGUAGE_CONFIGURATIONS}}

Formatting rules:
{{FORMATTING_RULES}}

Linting rules:
{{LINTING_RULES}}

## Target File: {{FILE_PATH}}

{{CODE_SNIPPET}}

The test file will be written to `{{TEST_FILE_PATH}}`. Import the code under
test with paths relative to that location.
"""

_SKIP_RULE = f"""If the file contains nothing that can meaningfully be unit tested (only
type declarations, constants or re-exports), reply with exactly {SKIP_SENTINEL}
and nothing else."""

_AGENTIC_PROTOCOL = """## Response Format

Reply with a single JSON object and nothing else.

To read more project files before answering (imports, types, helpers):
{"action": "request_files", "files": ["path/relative/to/project/root"]}

When you are ready, return the complete test file:
{"action": "generate_test", "code": "<full test file content>"}

Request only files you need. You will be given the contents and asked again."""

UNIT_TEST_PROMPT = f"""You are an expert test engineer. Write comprehensive unit tests for the
file below using {{{{TEST_FRAMEWORK}}}}.

{_COMMON_CONTEXT}
## Instructions

1. Cover the happy path, edge cases (empty input, None/undefined, boundaries)
   and error cases.
2. Use descriptive test names.
3. Mock network, file system, database and time dependencies.
4. Follow the formatting and linting rules above.
5. Return ONLY the test file code, no explanations.

{_SKIP_RULE}
"""

UNIT_TEST_AGENTIC_PROMPT = f"""You are an expert test engineer. Write comprehensive unit tests for the
file below using {{{{TEST_FRAMEWORK}}}}.

{_COMMON_CONTEXT}
## Instructions

1. Cover the happy path, edge cases (empty input, None/undefined, boundaries)
   and error cases.
2. Use descriptive test names.
3. Mock network, file system, database and time dependencies.
4. Follow the formatting and linting rules above.

{_AGENTIC_PROTOCOL}

{_SKIP_RULE}
"""

UNIT_TEST_FIX_PROMPT = f"""You are an expert test engineer. The test below was generated for the
target file but fails when run with {{{{TEST_FRAMEWORK}}}}. Fix it.

{_COMMON_CONTEXT}
## Failing Test Code: {{{{TEST_FILE_PATH}}}}

```
{{{{FAILED_TEST_CODE}}}}
```

## Failures

{{{{FAILING_TESTS_DETAIL}}}}

## Instructions

1. Fix the test code, not the source file. Assume the source is correct.
2. Keep passing tests unchanged.
3. If an assertion cannot be satisfied by the current implementation,
   adjust the expectation to match the observed behaviour.
4. Return ONLY the complete fixed test file, no explanations.
"""

UNIT_TEST_FIX_AGENTIC_PROMPT = f"""You are an expert test engineer. The test below was generated for the
target file but fails when run with {{{{TEST_FRAMEWORK}}}}. Fix it.

{_COMMON_CONTEXT}
## Failing Test Code: {{{{TEST_FILE_PATH}}}}

```
{{{{FAILED_TEST_CODE}}}}
```

## Failures

{{{{FAILING_TESTS_DETAIL}}}}

## Instructions

1. Fix the test code, not the source file. Assume the source is correct.
2. Keep passing tests unchanged.
3. If an assertion cannot be satisfied by the current implementation,
   adjust the expectation to match the observed behaviour.

{_AGENTIC_PROTOCOL}
Use "fix_test" as the action when returning the fixed file.
"""
