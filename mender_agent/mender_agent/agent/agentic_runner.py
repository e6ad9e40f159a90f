"""Multi-turn loop that lets the model pull in project files before answering."""

import json
import logging
from pathlib import PurePosixPath

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import TypeAdapter, ValidationError

from mender_agent.agent.errors import AgenticResponseError, FileAccessError, GenerationError
from mender_agent.agent.llm import CompletionClient
from mender_agent.agent.prompts import SKIP_SENTINEL
from mender_agent.agent.responses import strip_markdown_code_blocks
from mender_agent.config import AIConfig
from mender_agent.models.schemas import AgenticAction, RequestFiles
from mender_agent.parser.file_walker import ProjectFileWalker, related_extensions

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 5

_action_adapter = TypeAdapter(AgenticAction)


def parse_agentic_action(content: str) -> AgenticAction:
    """
    Parse a model reply into a request_files or generate_test action.

    Raises:
        AgenticResponseError: if the reply is not JSON or not a known action
    """
    try:
        payload = json.loads(strip_markdown_code_blocks(content))
    except json.JSONDecodeError as e:
        raise AgenticResponseError(f"AI response was not valid JSON: {e}") from e

    try:
        return _action_adapter.validate_python(payload)
    except ValidationError as e:
        raise AgenticResponseError(f"AI response was not a valid agent action: {e}") from e


class AgenticRunner:
    """
    Drives a bounded conversation in which the model may request files.

    Each turn the model either asks for files (answered with their content
    in the next user message) or returns the final code.
    """

    def __init__(
        self,
        completion_client: CompletionClient,
        ai_config: AIConfig,
        file_walker: ProjectFileWalker,
        max_iterations: int | None = None,
    ):
        self.completion_client = completion_client
        self.ai_config = ai_config
        self.file_walker = file_walker
        self.max_iterations = max_iterations or ai_config.max_iterations or DEFAULT_MAX_ITERATIONS

    async def run(self, initial_prompt: str) -> str:
        messages: list[BaseMessage] = [SystemMessage(content=initial_prompt)]

        for iteration in range(1, self.max_iterations + 1):
            content = await self._request_completion(messages)

            # JSON mode may quote the sentinel
            if content.strip().strip('"') == SKIP_SENTINEL:
                return SKIP_SENTINEL

            action = parse_agentic_action(content)
            if not isinstance(action, RequestFiles):
                return strip_markdown_code_blocks(action.code)

            logger.info("Agent requested files: %s", ", ".join(action.files))
            messages.append(AIMessage(content=content))
            file_context = await self._build_file_context(action.files)
            messages.append(HumanMessage(content=(
                f"Here are the requested files:\n{file_context}\n\n"
                "Please proceed with generating the solution, "
                "or request more files if absolutely necessary."
            )))
            logger.debug("Agent iteration %d/%d complete", iteration, self.max_iterations)

        raise GenerationError(
            f"Agent failed to generate result after {self.max_iterations} iterations"
        )

    async def _request_completion(self, messages: list[BaseMessage]) -> str:
        response = await self.completion_client.create_chat_completion(
            model=self.ai_config.model,
            temperature=self.ai_config.temperature,
            messages=messages,
            response_format={"type": "json_object"},
        )

        if not response.choices:
            raise GenerationError("AI did not return any choices")

        content = response.choices[0].message.content
        if not content:
            raise GenerationError(f"{self.ai_config.provider} AI returned empty content")
        return content

    async def _build_file_context(self, files: list[str]) -> str:
        sections = []
        for file_path in files:
            content, resolved_path, error = await self._resolve_file(file_path)
            if content is None:
                sections.append(f"\n--- FILE: {file_path} ---\n[Error reading file: {error}]\n")
            elif resolved_path != file_path:
                sections.append(
                    f"\n--- FILE: {file_path} (Resolved to {resolved_path}) ---\n{content}\n"
                )
            else:
                sections.append(f"\n--- FILE: {file_path} ---\n{content}\n")
        return "".join(sections)

    async def _resolve_file(self, file_path: str) -> tuple[str | None, str, str]:
        """Read a requested file, trying related extensions if it is missing."""
        try:
            return await self.file_walker.read_file_from_project(file_path), file_path, ""
        except FileAccessError as e:
            error = str(e)

        path = PurePosixPath(file_path)
        base = file_path[: -len(path.suffix)] if path.suffix else file_path
        for extension in related_extensions(path.suffix):
            candidate = base + extension
            if candidate == file_path:
                continue
            try:
                return await self.file_walker.read_file_from_project(candidate), candidate, ""
            except FileAccessError:
                continue

        return None, file_path, error
