"""State schema for the test healing graph."""

from typing import Literal, TypedDict

from mender_agent.models.schemas import Attempt, FrameworkInfo, ProjectContext, TargetFile
from mender_agent.parser.file_walker import ProjectFileWalker

HealingStatus = Literal["pending", "generated", "written", "retry", "success", "skipped"]


class HealingState(TypedDict):
    """State for the generate/write/verify/fix LangGraph agent."""

    # Input parameters
    project_context: ProjectContext
    target_file: TargetFile
    test_framework: FrameworkInfo | None
    file_walker: ProjectFileWalker

    # Progress
    attempt_number: int
    attempt: Attempt | None  # last attempt that produced code
    pending_code: str | None  # code generated this attempt, not yet verified
    status: HealingStatus
