"""JSON-RPC server for communication with the editor extension."""

import asyncio
import json
import logging
import os
import sys
from typing import Any

from mender_agent.agent.graph import UnitTestWriter
from mender_agent.agent.llm import create_completion_client
from mender_agent.config import load_config
from mender_agent.executor.failure_parser import parse_failing_tests
from mender_agent.executor.test_runner import TestRunOptions, run_test
from mender_agent.models.schemas import FrameworkInfo, TestExecutionResult
from mender_agent.parser.context_gatherer import gather_project_context

logger = logging.getLogger(__name__)


def send_response(id: int | str | None, result: Any = None, error: Any = None) -> None:
    """Send a JSON-RPC response to stdout."""
    response: dict[str, Any] = {"jsonrpc": "2.0", "id": id}
    if error is not None:
        response["error"] = error
    else:
        response["result"] = result

    message = json.dumps(response).encode("utf-8")
    # JSON-RPC over stdio uses Content-Length header, counted in bytes
    sys.stdout.buffer.write(f"Content-Length: {len(message)}\r\n\r\n".encode("ascii") + message)
    sys.stdout.flush()


def _create_writer(project_root: str) -> UnitTestWriter:
    config = load_config(project_root)
    return UnitTestWriter(create_completion_client(config.ai), config)


def _framework_param(params: dict[str, Any]) -> FrameworkInfo | None:
    framework = params.get("framework")
    return FrameworkInfo.model_validate(framework) if framework else None


async def generate_tests(params: dict[str, Any]) -> dict[str, Any]:
    project_root = params["project_root"]
    writer = _create_writer(project_root)
    project_context = gather_project_context(project_root, params.get("output_strategy"))

    result = await writer.write_test_file(
        project_context, params["source_path"], _framework_param(params)
    )
    return result.model_dump()


async def generate_tests_by_pattern(params: dict[str, Any]) -> dict[str, Any]:
    project_root = params["project_root"]
    writer = _create_writer(project_root)
    project_context = gather_project_context(project_root, params.get("output_strategy"))

    def report_progress(current: int, total: int, file_path: str, elapsed_ms: int) -> None:
        logger.info("[%d/%d] %s (%.1fs elapsed)", current, total, file_path, elapsed_ms / 1000)

    result = await writer.write_test_by_pattern(
        project_context, params["patterns"], _framework_param(params), on_progress=report_progress
    )
    return result.model_dump()


async def run_tests(params: dict[str, Any]) -> dict[str, Any]:
    project_root = params["project_root"]
    config = load_config(project_root)
    project_context = gather_project_context(project_root)

    test_command = params.get("test_command") or project_context.test_command
    if not test_command:
        raise ValueError(f"No test command detected in {project_root}")

    result = await run_test(
        test_command,
        TestRunOptions(
            cwd=project_root,
            test_file_path=params["test_path"],
            timeout_ms=config.unit_testing.timeout_ms,
            framework=project_context.reporter_framework,
        ),
    )
    response = result.model_dump()
    response["failing_tests"] = [
        f.model_dump() for f in parse_failing_tests(result, test_file_path=params["test_path"])
    ]
    return response


def handle_parse_failing_tests(params: dict[str, Any]) -> list[dict[str, Any]]:
    result = TestExecutionResult.model_validate(params["result"])
    failures = parse_failing_tests(
        result,
        params.get("test_file_content", ""),
        params.get("test_file_path"),
    )
    return [f.model_dump() for f in failures]


def handle_request(method: str, params: dict[str, Any], id: int | str | None) -> None:
    """Handle incoming JSON-RPC requests."""
    try:
        if method == "generate_tests":
            result = asyncio.run(generate_tests(params))
            send_response(id, result)

        elif method == "generate_tests_by_pattern":
            result = asyncio.run(generate_tests_by_pattern(params))
            send_response(id, result)

        elif method == "run_tests":
            result = asyncio.run(run_tests(params))
            send_response(id, result)

        elif method == "parse_failing_tests":
            result = handle_parse_failing_tests(params)
            send_response(id, result)

        else:
            send_response(id, error={"code": -32601,
                          "message": f"Method not found: {method}"})

    except Exception as e:
        logger.exception("Request %s failed", method)
        send_response(id, error={"code": -32603, "message": str(e),
                                 "data": {"type": type(e).__name__}})


def read_message() -> dict[str, Any] | None:
    """Read a JSON-RPC message from stdin."""
    stdin = sys.stdin.buffer

    # Read headers
    headers: dict[str, str] = {}
    while True:
        line = stdin.readline()
        if not line:
            return None  # EOF
        line = line.decode("ascii", errors="replace").strip()
        if not line:
            break  # End of headers
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()

    content_length = int(headers.get("content-length", 0))
    if content_length == 0:
        return None

    content = stdin.read(content_length)
    return json.loads(content.decode("utf-8"))


def configure_logging() -> None:
    # stdout carries the protocol
    logging.basicConfig(
        stream=sys.stderr,
        level=os.environ.get("MENDER_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """Main entry point for the JSON-RPC server."""
    configure_logging()
    logger.info("Mender agent server starting...")

    while True:
        try:
            message = read_message()
            if message is None:
                break

            method = message.get("method", "")
            params = message.get("params", {})
            msg_id = message.get("id")

            handle_request(method, params, msg_id)

        except json.JSONDecodeError as e:
            logger.error("JSON decode error: %s", e)
        except Exception as e:
            logger.exception("Server error: %s", e)


if __name__ == "__main__":
    main()
