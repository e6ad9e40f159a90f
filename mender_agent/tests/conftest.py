"""Shared fakes for the agent tests."""

import fnmatch

import pytest

from mender_agent.agent.errors import FileAccessError
from mender_agent.agent.llm import ChatCompletion
from mender_agent.models.schemas import FrameworkInfo, ProjectContext, TestExecutionResult
from mender_agent.parser.file_walker import wrap_file_content


class ScriptedCompletionClient:
    """Returns canned replies in order and records every request.

    A reply of None produces a completion with no choices; an exception
    instance is raised.
    """

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []
        self.response_formats = []

    async def create_chat_completion(self, *, model, temperature, messages, response_format=None):
        self.calls.append(list(messages))
        self.response_formats.append(response_format)
        if not self.replies:
            raise AssertionError("unexpected completion request")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if reply is None:
            return ChatCompletion(model=model, choices=[])
        return ChatCompletion.from_content(reply, model=model)

    def prompt(self, call_index: int) -> str:
        return self.calls[call_index][0].content


class MemoryFileWalker:
    """In-memory stand-in for ProjectFileWalker."""

    def __init__(self, files=None):
        self.files = dict(files or {})
        self.writes = []

    async def read_file_from_project(self, file_path, wrap_content=False):
        if file_path not in self.files:
            raise FileAccessError(f"Failed to read file {file_path}: No such file")
        content = self.files[file_path]
        return wrap_file_content(file_path, content) if wrap_content else content

    async def write_file_to_project(self, file_path, content):
        self.writes.append((file_path, content))
        self.files[file_path] = content

    def file_exists(self, file_path):
        return file_path in self.files

    def find_files(self, patterns):
        return sorted(
            path for path in self.files
            if any(fnmatch.fnmatch(path, pattern) for pattern in patterns)
        )


class ScriptedTestRunner:
    """Returns canned TestExecutionResults and records the run options.

    An exception instance in `results` is raised instead.
    """

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, test_command, options):
        self.calls.append((test_command, options))
        if not self.results:
            raise AssertionError("unexpected test run")
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


def passed_run(**kwargs) -> TestExecutionResult:
    return TestExecutionResult(success=True, exit_code=0, **kwargs)


def failed_run(stdout: str = "", stderr: str = "", **kwargs) -> TestExecutionResult:
    return TestExecutionResult(success=False, exit_code=1, stdout=stdout, stderr=stderr, **kwargs)


@pytest.fixture
def vitest_framework():
    return FrameworkInfo(name="vitest", version="1.6.0")


@pytest.fixture
def project_context(vitest_framework):
    return ProjectContext(
        project_root="/project",
        test_command="npm test",
        unit_framework=vitest_framework,
        language_config=FrameworkInfo(name="typescript", file_lang="json"),
    )
