"""Pydantic models for IPC communication."""

from mender_agent.models import (
    AgenticAction,
    Attempt,
    FailingTestDetail,
    FileFailure,
    FrameworkInfo,
    GenerateTest,
    HealingPolicy,
    HealingResult,
    PatternResult,
    ProjectContext,
    RequestFiles,
    TargetFile,
    TestExecutionResult,
    UnitTestErrorContext,
)

__all__ = [
    "AgenticAction",
    "Attempt",
    "FailingTestDetail",
    "FileFailure",
    "FrameworkInfo",
    "GenerateTest",
    "HealingPolicy",
    "HealingResult",
    "PatternResult",
    "ProjectContext",
    "RequestFiles",
    "TargetFile",
    "TestExecutionResult",
    "UnitTestErrorContext",
]
