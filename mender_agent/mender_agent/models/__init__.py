"""Pydantic models shared by the healing engine and the IPC server."""

from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field


class FrameworkInfo(BaseModel):
    """A detected tool (test framework, language, linter, formatter)."""
    name: str
    version: str | None = None
    file_lang: str | None = None  # fenced-block language tag
    config_file_path: str | None = None
    config_content: str | None = None


class TargetFile(BaseModel):
    """The source file under test and where its test belongs."""
    model_config = ConfigDict(frozen=True)

    source_path: str
    source_content: str
    test_path: str
    existing_test_content: str | None = None


class RequestFiles(BaseModel):
    """Agent asks to see more project files before answering."""
    action: Literal["request_files"]
    files: list[str]


class GenerateTest(BaseModel):
    """Agent returns the final test code."""
    action: Literal["generate_test", "fix_test", "success"]
    code: str


AgenticAction = Annotated[RequestFiles | GenerateTest, Field(discriminator="action")]


class TestExecutionResult(BaseModel):
    """Outcome of one test command run."""
    __test__: ClassVar[bool] = False

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    structured_report: dict[str, Any] | None = None
    error: str | None = None


class FailingTestDetail(BaseModel):
    """Framework-agnostic description of one failing test."""
    test_name: str
    full_name: str = ""
    ancestor_titles: list[str] = []
    error_message: str
    rendered_html: str = ""
    duration_ms: float | None = None
    stack_trace: str | None = None
    test_code: str | None = None


class UnitTestErrorContext(BaseModel):
    """Failure evidence fed into a fix prompt."""
    failing_tests: list[FailingTestDetail] = []
    full_test_output: str = ""


class HealingPolicy(BaseModel):
    """Controls whether generated tests are executed and repaired."""
    enabled: bool = True
    mode: Literal["auto", "manual", "off"] = "auto"
    max_retries: int = Field(default=3, ge=1)

    @property
    def is_active(self) -> bool:
        return self.enabled and self.mode == "auto"


class Attempt(BaseModel):
    """The most recent attempt that produced test code."""
    attempt_number: int
    code: str
    execution_result: TestExecutionResult | None = None


class HealingResult(BaseModel):
    """Result of healing a single file."""
    status: Literal["success", "skipped"]
    attempts: int
    test_path: str
    final_test_code: str | None = None


class FileFailure(BaseModel):
    file: str
    error: str


class PatternResult(BaseModel):
    """Aggregated result of a batch run."""
    files: list[str] = []
    failures: list[FileFailure] = []


class ProjectContext(BaseModel):
    """What the engine knows about the project it is writing tests for."""
    project_root: str
    test_command: str | None = None
    unit_framework: FrameworkInfo | None = None
    language_config: FrameworkInfo | None = None
    linter_config: FrameworkInfo | None = None
    formatter_config: FrameworkInfo | None = None
    output_strategy: Literal["colocated", "root"] = "colocated"
    # framework whose JSON reporter the test command supports
    reporter_framework: str | None = None
