"""Tests for the generate/write/verify/fix healing graph."""

import json

import pytest

from conftest import (
    MemoryFileWalker,
    ScriptedCompletionClient,
    ScriptedTestRunner,
    failed_run,
    passed_run,
)
from mender_agent.agent.errors import FatalProviderError, FileAccessError, TestGenerationError
from mender_agent.agent.graph import UnitTestWriter
from mender_agent.config import AIConfig, MenderConfig, UnitTestingConfig
from mender_agent.models.schemas import HealingPolicy

ADD_SOURCE = "export const add = (a: number, b: number) => a + b;\n"

WRONG_TEST = """import { add } from './add';

it('adds numbers', () => {
  expect(add(1, 1)).toBe(3);
});
"""

FIXED_TEST = """import { add } from './add';

it('adds numbers', () => {
  expect(add(1, 1)).toBe(2);
});
"""

VITEST_FAILURE = """ FAIL  src/add.test.ts > adds numbers
❯ src/add.test.ts > adds numbers
AssertionError: expected 2 to be 3
    at src/add.test.ts:4:21

Test Files  1 failed (1)
"""


def make_writer(replies, results, files=None, provider="copilot-cli", **healing):
    client = ScriptedCompletionClient(replies)
    runner = ScriptedTestRunner(results)
    walker = MemoryFileWalker(files if files is not None else {"src/add.ts": ADD_SOURCE})
    config = MenderConfig(ai=AIConfig(provider=provider), healing=HealingPolicy(**healing))
    writer = UnitTestWriter(client, config, test_runner=runner, file_walker_factory=lambda root: walker)
    return writer, client, runner, walker


class TestWriteTestFile:
    """Single-file healing runs."""

    @pytest.mark.asyncio
    async def test_first_attempt_success_writes_and_verifies_once(self, project_context):
        writer, client, runner, walker = make_writer([FIXED_TEST], [passed_run()])

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "success"
        assert result.attempts == 1
        assert result.test_path == "src/add.test.ts"
        assert result.final_test_code == FIXED_TEST.strip()
        assert walker.writes == [("src/add.test.ts", FIXED_TEST.strip())]
        assert len(runner.calls) == 1
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_failing_test_is_fixed_on_second_attempt(self, project_context):
        writer, client, runner, walker = make_writer(
            [f"```ts\n{WRONG_TEST}```", FIXED_TEST],
            [failed_run(stdout=VITEST_FAILURE), passed_run()],
        )

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "success"
        assert result.attempts == 2
        assert [path for path, _ in walker.writes] == ["src/add.test.ts", "src/add.test.ts"]
        assert walker.files["src/add.test.ts"] == FIXED_TEST.strip()

        fix_prompt = client.prompt(1)
        assert "toBe(3)" in fix_prompt
        assert "expected 2 to be 3" in fix_prompt
        assert "adds numbers" in fix_prompt

    @pytest.mark.asyncio
    async def test_first_prompt_contains_wrapped_source(self, project_context):
        writer, client, _, _ = make_writer([FIXED_TEST], [passed_run()])

        await writer.write_test_file(project_context, "src/add.ts")

        prompt = client.prompt(0)
        assert "// src/add.ts" in prompt
        assert ADD_SOURCE.strip() in prompt
        assert "vitest" in prompt
        assert "src/add.test.ts" in prompt

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_with_last_error(self, project_context):
        writer, client, runner, walker = make_writer(
            [WRONG_TEST, WRONG_TEST, WRONG_TEST],
            [failed_run(stdout=VITEST_FAILURE)] * 3,
            max_retries=3,
        )

        with pytest.raises(TestGenerationError) as exc_info:
            await writer.write_test_file(project_context, "src/add.ts")

        message = str(exc_info.value)
        assert "src/add.ts" in message
        assert "after 3 attempts" in message
        assert len(client.calls) == 3
        assert len(runner.calls) == 3

    @pytest.mark.asyncio
    async def test_skip_sentinel_writes_nothing(self, project_context):
        writer, client, runner, walker = make_writer(["  SKIP_TEST\n"], [])

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "skipped"
        assert result.final_test_code is None
        assert walker.writes == []
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_fatal_provider_error_aborts_immediately(self, project_context):
        writer, client, runner, walker = make_writer(
            [RuntimeError("429 You exceeded your current quota")], []
        )

        with pytest.raises(FatalProviderError):
            await writer.write_test_file(project_context, "src/add.ts")

        assert len(client.calls) == 1
        assert walker.writes == []
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_fatal_error_from_test_run_aborts_remaining_attempts(self, project_context):
        writer, client, runner, walker = make_writer(
            [WRONG_TEST, FIXED_TEST, FIXED_TEST],
            [RuntimeError("429 quota exceeded")],
            max_retries=3,
        )

        with pytest.raises(FatalProviderError):
            await writer.write_test_file(project_context, "src/add.ts")

        assert len(client.calls) == 1
        assert len(walker.writes) == 1
        assert len(runner.calls) == 1

    @pytest.mark.asyncio
    async def test_transient_error_moves_to_next_attempt(self, project_context):
        writer, client, runner, _ = make_writer(
            [RuntimeError("connection reset"), FIXED_TEST], [passed_run()]
        )

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "success"
        assert result.attempts == 2
        # no test result yet, so the second attempt is a fresh generation
        assert "Failing Test Code" not in client.prompt(1)

    @pytest.mark.asyncio
    async def test_empty_choices_count_as_failed_attempt(self, project_context):
        writer, client, _, _ = make_writer([None, FIXED_TEST], [passed_run()])

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_inactive_healing_never_runs_tests(self, project_context):
        writer, client, runner, walker = make_writer([WRONG_TEST], [], mode="off")

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "success"
        assert len(client.calls) == 1
        assert len(walker.writes) == 1
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_inactive_healing_reraises_original_error(self, project_context):
        writer, _, _, _ = make_writer([RuntimeError("boom")], [], enabled=False)

        with pytest.raises(RuntimeError, match="boom"):
            await writer.write_test_file(project_context, "src/add.ts")

    @pytest.mark.asyncio
    async def test_missing_test_command_skips_verification(self, project_context):
        context = project_context.model_copy(update={"test_command": None})
        writer, _, runner, _ = make_writer([FIXED_TEST], [])

        result = await writer.write_test_file(context, "src/add.ts")

        assert result.status == "success"
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_verification_runs_scoped_to_test_file(self, project_context):
        context = project_context.model_copy(update={"reporter_framework": "vitest"})
        writer, _, runner, _ = make_writer([FIXED_TEST], [passed_run()])

        await writer.write_test_file(context, "src/add.ts")

        command, options = runner.calls[0]
        assert command == "npm test"
        assert options.cwd == "/project"
        assert options.test_file_path == "src/add.test.ts"
        assert options.framework == "vitest"
        assert options.timeout_ms == 30000

    @pytest.mark.asyncio
    async def test_missing_source_file_raises(self, project_context):
        writer, client, _, _ = make_writer([], [], files={})

        with pytest.raises(FileAccessError):
            await writer.write_test_file(project_context, "src/missing.ts")
        assert client.calls == []


class TestExistingTests:
    """Behaviour when the test file is already on disk."""

    @pytest.mark.asyncio
    async def test_passing_existing_test_needs_no_completion(self, project_context):
        files = {"src/add.ts": ADD_SOURCE, "src/add.test.ts": FIXED_TEST}
        writer, client, runner, walker = make_writer([], [passed_run()], files=files)

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "success"
        assert result.attempts == 0
        assert result.final_test_code == FIXED_TEST
        assert client.calls == []
        assert walker.writes == []

    @pytest.mark.asyncio
    async def test_failing_existing_test_is_fixed_first(self, project_context):
        files = {"src/add.ts": ADD_SOURCE, "src/add.test.ts": WRONG_TEST}
        writer, client, runner, walker = make_writer(
            [FIXED_TEST], [failed_run(stdout=VITEST_FAILURE), passed_run()], files=files
        )

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "success"
        assert result.attempts == 1
        fix_prompt = client.prompt(0)
        assert "Failing Test Code" in fix_prompt
        assert "toBe(3)" in fix_prompt


class TestStructuredReports:
    """Pass/fail decided from the runner's JSON report."""

    @pytest.mark.asyncio
    async def test_report_entry_overrides_exit_code(self, project_context):
        other_file_failed = {
            "testResults": [
                {"name": "/project/src/add.test.ts", "status": "passed", "assertionResults": []},
                {"name": "/project/src/sub.test.ts", "status": "failed", "assertionResults": []},
            ]
        }
        writer, client, _, _ = make_writer(
            [FIXED_TEST], [failed_run(structured_report=other_file_failed)]
        )

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.attempts == 1
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_file_missing_from_report_counts_as_passed(self, project_context):
        report = {"testResults": [{"name": "/project/src/other.test.ts", "status": "failed"}]}
        writer, _, _, _ = make_writer([FIXED_TEST], [failed_run(structured_report=report)])

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "success"


class TestAgenticGeneration:
    """Healing runs that go through the request_files loop."""

    @pytest.mark.asyncio
    async def test_requested_files_reach_the_model(self, project_context):
        files = {"src/add.ts": ADD_SOURCE, "src/math.ts": "export const PI = 3.14;\n"}
        replies = [
            json.dumps({"action": "request_files", "files": ["src/math"]}),
            json.dumps({"action": "generate_test", "code": FIXED_TEST}),
        ]
        writer, client, _, walker = make_writer(
            replies, [passed_run()], files=files, provider="gemini"
        )

        result = await writer.write_test_file(project_context, "src/add.ts")

        assert result.status == "success"
        follow_up = client.calls[1][-1].content
        assert "--- FILE: src/math (Resolved to src/math.ts) ---" in follow_up
        assert "PI = 3.14" in follow_up


class TestWriteTestByPattern:
    """Batch runs over glob patterns."""

    @pytest.mark.asyncio
    async def test_excludes_tests_and_declarations(self, project_context):
        files = {
            "src/add.ts": ADD_SOURCE,
            "src/add.test.ts": FIXED_TEST,
            "src/types.d.ts": "export type N = number;\n",
            "src/sub.ts": "export const sub = (a, b) => a - b;\n",
        }
        writer, client, _, _ = make_writer(
            [FIXED_TEST], [passed_run(), passed_run()], files=files
        )

        result = await writer.write_test_by_pattern(project_context, "src/*.ts")

        # add.ts already has a passing test; only sub.ts needs a completion
        assert result.files == ["Unit test: src/add.ts", "Unit test: src/sub.ts"]
        assert result.failures == []
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_failures_are_recorded_and_batch_continues(self, project_context):
        files = {"src/a.ts": ADD_SOURCE, "src/b.ts": ADD_SOURCE}
        writer, _, _, _ = make_writer(
            [RuntimeError("bad reply"), FIXED_TEST],
            [passed_run()],
            files=files,
            max_retries=1,
        )

        result = await writer.write_test_by_pattern(project_context, ["src/*.ts"])

        assert result.files == ["Unit test: src/b.ts"]
        assert len(result.failures) == 1
        assert result.failures[0].file == "src/a.ts"
        assert "Failed to process src/a.ts" in result.failures[0].error

    @pytest.mark.asyncio
    async def test_fatal_error_stops_the_batch(self, project_context):
        files = {"src/a.ts": ADD_SOURCE, "src/b.ts": ADD_SOURCE}
        writer, client, _, _ = make_writer(
            [RuntimeError("RESOURCE_EXHAUSTED: quota")], [], files=files
        )

        with pytest.raises(FatalProviderError):
            await writer.write_test_by_pattern(project_context, ["src/*.ts"])
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_progress_callback_sees_every_file(self, project_context):
        files = {"src/a.ts": ADD_SOURCE, "src/b.ts": ADD_SOURCE}
        writer, _, _, _ = make_writer(["SKIP_TEST", "SKIP_TEST"], [], files=files)
        progress = []

        result = await writer.write_test_by_pattern(
            project_context, ["src/*.ts"],
            on_progress=lambda i, total, path, elapsed: progress.append((i, total, path)),
        )

        assert progress == [(1, 2, "src/a.ts"), (2, 2, "src/b.ts")]
        assert result.files == ["Skipped: src/a.ts", "Skipped: src/b.ts"]

    def test_configured_test_match_extends_exclusions(self):
        config = MenderConfig(unit_testing=UnitTestingConfig(test_match=["*.e2e.ts"]))
        writer = UnitTestWriter(ScriptedCompletionClient([]), config)

        exclusions = writer.get_exclusion_patterns()

        assert exclusions[0] == "*.e2e.ts"
        assert "*.d.ts" in exclusions
        assert len(exclusions) == len(set(exclusions))
