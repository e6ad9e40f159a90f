"""LangGraph agent that generates, runs and repairs unit test files."""

import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from langchain_core.messages import SystemMessage
from langgraph.graph import StateGraph, START, END
from langgraph.graph.state import CompiledStateGraph

from mender_agent.agent.agentic_runner import AgenticRunner
from mender_agent.agent.errors import (
    GenerationError,
    TestGenerationError,
    TestVerificationError,
    check_and_raise_fatal_error,
)
from mender_agent.agent.llm import CompletionClient
from mender_agent.agent.prompts import (
    SKIP_SENTINEL,
    UNIT_TEST_AGENTIC_PROMPT,
    UNIT_TEST_FIX_AGENTIC_PROMPT,
    UNIT_TEST_FIX_PROMPT,
    UNIT_TEST_PROMPT,
    PromptTemplateBuilder,
)
from mender_agent.agent.responses import extract_code_from_response
from mender_agent.agent.state import HealingState
from mender_agent.config import MenderConfig
from mender_agent.executor.failure_parser import (
    extract_test_errors,
    file_passed_in_report,
    get_failing_tests_detail,
    parse_failing_tests,
)
from mender_agent.executor.test_runner import TestRunOptions, run_test
from mender_agent.models.schemas import (
    Attempt,
    FileFailure,
    FrameworkInfo,
    HealingResult,
    PatternResult,
    ProjectContext,
    TargetFile,
    TestExecutionResult,
    UnitTestErrorContext,
)
from mender_agent.parser.file_walker import ProjectFileWalker, matches_pattern
from mender_agent.parser.project_paths import generate_test_file_path

logger = logging.getLogger(__name__)

TestRunner = Callable[[str, TestRunOptions], Awaitable[TestExecutionResult]]
ProgressCallback = Callable[[int, int, str, int], None]

DEFAULT_UNIT_TEST_PATTERNS = [
    "*.test.*",
    "*.spec.*",
    "test_*.py",
    "*_test.py",
    "conftest.py",
]

DEFAULT_FILE_EXCLUDE_PATTERNS = [
    "*.d.ts",
    "*.config.*",
    "*.stories.*",
    "__init__.py",
    "setup.py",
]

# node status -> next step
STATUS_ROUTES = {
    "success": "done",
    "skipped": "done",
    "retry": "generate",
    "generated": "write",
    "written": "verify",
}


class UnitTestWriter:
    """
    Writes a unit test for a source file and heals it until it passes.

    The graph runs generate -> write -> verify, looping back to generate
    with the failure details while the retry budget allows. An existing
    test file is verified first and left untouched when it already passes.
    """

    def __init__(
        self,
        completion_client: CompletionClient,
        config: MenderConfig,
        test_runner: TestRunner = run_test,
        file_walker_factory: Callable[[str], ProjectFileWalker] = ProjectFileWalker,
    ):
        self.completion_client = completion_client
        self.config = config
        self.test_runner = test_runner
        self.file_walker_factory = file_walker_factory
        self.prompt_builder = PromptTemplateBuilder()
        self.graph = self._create_healing_graph()

    @property
    def healing(self):
        return self.config.healing

    def _create_healing_graph(self) -> CompiledStateGraph:
        builder = StateGraph(HealingState)

        builder.add_node("verify_existing", self.verify_existing_node)
        builder.add_node("generate", self.generate_node)
        builder.add_node("write", self.write_node)
        builder.add_node("verify", self.verify_node)

        builder.add_conditional_edges(
            START,
            self.route_start,
            {"verify_existing": "verify_existing", "generate": "generate"},
        )
        builder.add_conditional_edges(
            "verify_existing", self.route_status, {"done": END, "generate": "generate"}
        )
        builder.add_conditional_edges(
            "generate", self.route_status, {"done": END, "generate": "generate", "write": "write"}
        )
        builder.add_conditional_edges(
            "write", self.route_status, {"done": END, "generate": "generate", "verify": "verify"}
        )
        builder.add_conditional_edges(
            "verify", self.route_status, {"done": END, "generate": "generate"}
        )

        return builder.compile()

    def route_start(self, state: HealingState) -> str:
        if state["target_file"].existing_test_content and self.healing.is_active:
            return "verify_existing"
        return "generate"

    def route_status(self, state: HealingState) -> str:
        return STATUS_ROUTES[state["status"]]

    async def write_test_file(
        self,
        project_context: ProjectContext,
        source_path: str,
        test_framework: FrameworkInfo | None = None,
    ) -> HealingResult:
        """
        Generate a passing test file for one source file.

        Args:
            project_context: Detected project context
            source_path: Source file relative to the project root
            test_framework: Overrides the detected unit test framework

        Returns:
            HealingResult with status "success" or "skipped"

        Raises:
            FatalProviderError: the AI provider is rate limited or rejected the key
            TestGenerationError: the last attempt failed, including a test that
                still fails (wrapping TestVerificationError)
        """
        file_walker = self.file_walker_factory(project_context.project_root)
        source_content = await file_walker.read_file_from_project(source_path, wrap_content=True)

        test_path = generate_test_file_path(
            source_path,
            strategy=self.config.unit_testing.test_output_strategy or project_context.output_strategy,
            test_output_dir=self.config.unit_testing.test_output_dir,
        )

        existing_test_content = None
        if file_walker.file_exists(test_path):
            existing_test_content = await file_walker.read_file_from_project(test_path)

        initial_state: HealingState = {
            "project_context": project_context,
            "target_file": TargetFile(
                source_path=source_path,
                source_content=source_content,
                test_path=test_path,
                existing_test_content=existing_test_content,
            ),
            "test_framework": test_framework or project_context.unit_framework,
            "file_walker": file_walker,
            "attempt_number": 0,
            "attempt": None,
            "pending_code": None,
            "status": "pending",
        }

        # each attempt visits at most generate, write and verify
        recursion_limit = self.healing.max_retries * 3 + 5
        final_state = await self.graph.ainvoke(initial_state, config={"recursion_limit": recursion_limit})

        attempt = final_state["attempt"]
        return HealingResult(
            status=final_state["status"],
            attempts=final_state["attempt_number"],
            test_path=test_path,
            final_test_code=attempt.code if attempt and final_state["status"] == "success" else None,
        )

    async def write_test_by_pattern(
        self,
        project_context: ProjectContext,
        patterns: str | Iterable[str],
        test_framework: FrameworkInfo | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> PatternResult:
        """
        Write tests for every source file matching the glob patterns.

        Test files and declaration files are excluded. A failure on one file
        is recorded and the batch continues, except for fatal provider
        errors which abort it.
        """
        patterns = [patterns] if isinstance(patterns, str) else list(patterns)
        file_walker = self.file_walker_factory(project_context.project_root)

        exclusions = self.get_exclusion_patterns()
        files = [f for f in file_walker.find_files(patterns) if not matches_pattern(f, exclusions)]
        logger.info("Found %d files matching %s", len(files), ", ".join(patterns))

        result = PatternResult()
        start = time.monotonic()
        for index, source_path in enumerate(files, start=1):
            if on_progress:
                on_progress(index, len(files), source_path, int((time.monotonic() - start) * 1000))

            try:
                healing_result = await self.write_test_file(project_context, source_path, test_framework)
            except Exception as e:
                check_and_raise_fatal_error(e)
                logger.error("Failed to write test for %s: %s", source_path, e)
                result.failures.append(FileFailure(file=source_path, error=str(e)))
                continue

            if healing_result.status == "skipped":
                result.files.append(f"Skipped: {source_path}")
            else:
                result.files.append(f"Unit test: {source_path}")

        return result

    def get_exclusion_patterns(self) -> list[str]:
        return list(dict.fromkeys([
            *self.config.unit_testing.test_match,
            *DEFAULT_UNIT_TEST_PATTERNS,
            *DEFAULT_FILE_EXCLUDE_PATTERNS,
        ]))

    async def verify_existing_node(self, state: HealingState) -> dict[str, Any]:
        """Run the test file that is already on disk before generating anything."""
        target_file = state["target_file"]
        logger.info("Test file already exists: %s, verifying...", target_file.test_path)

        try:
            passed, result = await self._verify(state, attempt_number=0)
        except Exception as e:
            check_and_raise_fatal_error(e)
            logger.info("Could not verify existing test %s: %s", target_file.test_path, e)
            return {"status": "retry"}

        attempt = Attempt(
            attempt_number=0,
            code=target_file.existing_test_content,
            execution_result=result,
        )
        if passed:
            logger.info("Existing test passes, skipping generation: %s", target_file.test_path)
            return {"status": "success", "attempt": attempt}

        logger.info("Existing test fails, will fix it")
        return {"status": "retry", "attempt": attempt}

    async def generate_node(self, state: HealingState) -> dict[str, Any]:
        """Ask the model for a new test, or for a fix when the last attempt failed."""
        attempt_number = state["attempt_number"] + 1

        try:
            code = await self._generate_or_fix(state)
            if not code.strip():
                raise GenerationError("AI returned empty test code")
        except Exception as e:
            return self._attempt_failed(state, attempt_number, e)

        if code.strip() == SKIP_SENTINEL:
            logger.info("Nothing to test in %s, skipping", state["target_file"].source_path)
            return {"attempt_number": attempt_number, "status": "skipped"}

        return {"attempt_number": attempt_number, "pending_code": code, "status": "generated"}

    async def write_node(self, state: HealingState) -> dict[str, Any]:
        attempt_number = state["attempt_number"]
        code = state["pending_code"]
        test_path = state["target_file"].test_path

        suffix = f" (fix attempt {attempt_number}/{self.healing.max_retries})" if attempt_number > 1 else ""
        logger.info("Writing test file: %s%s", test_path, suffix)

        try:
            await state["file_walker"].write_file_to_project(test_path, code)
        except Exception as e:
            return self._attempt_failed(state, attempt_number, e)

        if not self.healing.is_active:
            return {"status": "success", "attempt": Attempt(attempt_number=attempt_number, code=code)}
        return {"status": "written"}

    async def verify_node(self, state: HealingState) -> dict[str, Any]:
        attempt_number = state["attempt_number"]
        code = state["pending_code"]
        max_retries = self.healing.max_retries

        try:
            passed, result = await self._verify(state, attempt_number)
            attempt = Attempt(attempt_number=attempt_number, code=code, execution_result=result)
            if passed:
                return {"status": "success", "attempt": attempt}

            error_info = extract_test_errors(result) or "Test file reported as failed"
            logger.debug("Test output:\n%s", error_info)

            if attempt_number >= max_retries:
                raise TestVerificationError(
                    f"Test failed after {max_retries} attempts. Last error:\n{error_info[:500]}"
                )

            logger.info("Will attempt to fix the test...")
            return {"status": "retry", "attempt": attempt}
        except Exception as e:
            return self._attempt_failed(state, attempt_number, e)

    def _attempt_failed(self, state: HealingState, attempt_number: int, error: Exception) -> dict[str, Any]:
        """Classify an attempt error: abort, give up, or schedule another attempt."""
        check_and_raise_fatal_error(error)

        source_path = state["target_file"].source_path
        if attempt_number >= self.healing.max_retries:
            raise TestGenerationError(f"Failed to process {source_path}: {error}") from error

        if not self.healing.is_active:
            raise error

        logger.info("Error on attempt %d for %s, retrying...", attempt_number, source_path)
        logger.debug("Error: %s", error)
        return {"attempt_number": attempt_number, "status": "retry"}

    async def _verify(self, state: HealingState, attempt_number: int) -> tuple[bool, TestExecutionResult]:
        project_context = state["project_context"]
        test_path = state["target_file"].test_path

        if not project_context.test_command:
            logger.warning("No test command detected, skipping test verification")
            return True, TestExecutionResult(success=True, exit_code=0)

        logger.info("Running test to verify: %s", test_path)
        result = await self.test_runner(
            project_context.test_command,
            TestRunOptions(
                cwd=project_context.project_root,
                test_file_path=test_path,
                timeout_ms=self.config.unit_testing.timeout_ms,
                framework=project_context.reporter_framework,
            ),
        )

        if result.structured_report:
            passed = file_passed_in_report(result.structured_report, test_path)
            if passed is None:
                logger.warning("%s not found in the test report, treating it as passed", test_path)
                passed = True
        else:
            passed = result.success

        if passed:
            logger.info("✓ Test passed%s", f" after {attempt_number} attempts" if attempt_number > 1 else "")
        else:
            logger.info("✗ Test failed (attempt %d/%d)", attempt_number, self.healing.max_retries)
        return passed, result

    async def _generate_or_fix(self, state: HealingState) -> str:
        attempt = state["attempt"]
        if attempt is None or attempt.execution_result is None:
            return await self.generate_test(state)

        result = attempt.execution_result
        error_context = UnitTestErrorContext(
            failing_tests=parse_failing_tests(result, attempt.code, state["target_file"].test_path),
            full_test_output=result.stderr or result.stdout,
        )
        return await self.fix_test(state, attempt.code, error_context)

    async def generate_test(self, state: HealingState) -> str:
        template = UNIT_TEST_AGENTIC_PROMPT if self.config.ai.is_agentic else UNIT_TEST_PROMPT
        prompt = self._build_prompt(state, template)
        return await self._complete(state, prompt)

    async def fix_test(self, state: HealingState, failed_test_code: str, error_context: UnitTestErrorContext) -> str:
        template = UNIT_TEST_FIX_AGENTIC_PROMPT if self.config.ai.is_agentic else UNIT_TEST_FIX_PROMPT
        prompt = self._build_prompt(
            state,
            template,
            failed_test_code=failed_test_code,
            failing_tests_detail=get_failing_tests_detail(error_context),
        )
        return await self._complete(state, prompt)

    def _build_prompt(self, state: HealingState, template: str, **custom_vars: Any) -> str:
        project_context = state["project_context"]
        return self.prompt_builder.build(
            template,
            target_file=state["target_file"],
            test_framework=state["test_framework"],
            language_config=project_context.language_config,
            linter_config=project_context.linter_config,
            formatter_config=project_context.formatter_config,
            **custom_vars,
        )

    async def _complete(self, state: HealingState, prompt: str) -> str:
        if self.config.ai.is_agentic:
            runner = AgenticRunner(self.completion_client, self.config.ai, state["file_walker"])
            return await runner.run(prompt)

        response = await self.completion_client.create_chat_completion(
            model=self.config.ai.model,
            temperature=self.config.ai.temperature,
            messages=[SystemMessage(content=prompt)],
        )
        if not response.choices:
            raise GenerationError("AI did not return any choices for unit test generation")

        content = response.choices[0].message.content or ""
        if content.strip() == SKIP_SENTINEL:
            return SKIP_SENTINEL
        return extract_code_from_response(content)
