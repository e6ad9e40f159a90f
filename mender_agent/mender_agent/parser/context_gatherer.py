"""Context gatherer for project analysis."""

import json
import logging
import tomllib
from pathlib import Path
from typing import Any

from mender_agent.models.schemas import FrameworkInfo, ProjectContext

logger = logging.getLogger(__name__)

JS_TEST_FRAMEWORKS = ("vitest", "jest", "mocha")

JS_FRAMEWORK_CONFIG_FILES = {
    "vitest": ["vitest.config.ts", "vitest.config.js", "vitest.config.mts", "vite.config.ts", "vite.config.js"],
    "jest": ["jest.config.ts", "jest.config.js", "jest.config.cjs", "jest.config.json"],
    "mocha": [".mocharc.json", ".mocharc.js", ".mocharc.yml", ".mocharc.yaml"],
}

ESLINT_CONFIG_FILES = ["eslint.config.js", "eslint.config.mjs", ".eslintrc.json", ".eslintrc.js", ".eslintrc.cjs"]
PRETTIER_CONFIG_FILES = [".prettierrc", ".prettierrc.json", "prettier.config.js", ".prettierrc.js"]
RUFF_CONFIG_FILES = ["ruff.toml", ".ruff.toml"]

MAX_CONFIG_CHARS = 4000


def gather_project_context(project_root: str, output_strategy: str | None = None) -> ProjectContext:
    """
    Detect test command, test framework and tooling configuration.

    Args:
        project_root: Root directory of the project
        output_strategy: Test placement override ('colocated' or 'root')

    Returns:
        ProjectContext describing the project
    """
    root = Path(project_root)

    if (root / "package.json").exists():
        context = _gather_node_context(root)
    elif any((root / name).exists() for name in ("pyproject.toml", "requirements.txt", "setup.py", "pytest.ini")):
        context = _gather_python_context(root)
    else:
        logger.warning("Could not detect project type in %s", root)
        context = ProjectContext(project_root=str(root))

    if output_strategy:
        context = context.model_copy(update={"output_strategy": output_strategy})
    return context


def _read_config(root: Path, candidates: list[str], name: str, file_lang: str) -> FrameworkInfo | None:
    """First existing config file among `candidates` as a FrameworkInfo."""
    for candidate in candidates:
        path = root / candidate
        if path.exists():
            try:
                content = path.read_text(encoding="utf-8")[:MAX_CONFIG_CHARS]
            except OSError as e:
                logger.debug("Could not read %s: %s", path, e)
                content = None
            return FrameworkInfo(
                name=name,
                file_lang=file_lang,
                config_file_path=candidate,
                config_content=content,
            )
    return None


def _language_for(path: str) -> str:
    suffix = Path(path).suffix.lstrip(".")
    return {"ts": "typescript", "mts": "typescript", "js": "javascript", "mjs": "javascript",
            "cjs": "javascript", "json": "json", "yml": "yaml", "yaml": "yaml"}.get(suffix, "json")


def detect_package_manager(root: Path) -> str:
    if (root / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (root / "yarn.lock").exists():
        return "yarn"
    if (root / "bun.lockb").exists():
        return "bun"
    return "npm"


def _gather_node_context(root: Path) -> ProjectContext:
    try:
        package_json: dict[str, Any] = json.loads((root / "package.json").read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Could not parse package.json: %s", e)
        package_json = {}

    dependencies = {
        **package_json.get("dependencies", {}),
        **package_json.get("devDependencies", {}),
    }

    test_command = None
    if package_json.get("scripts", {}).get("test"):
        test_command = f"{detect_package_manager(root)} test"

    unit_framework = None
    for framework in JS_TEST_FRAMEWORKS:
        if framework in dependencies:
            config = _read_config(root, JS_FRAMEWORK_CONFIG_FILES[framework], framework, "")
            unit_framework = FrameworkInfo(
                name=framework,
                version=str(dependencies[framework]).lstrip("^~"),
                file_lang=_language_for(config.config_file_path) if config else None,
                config_file_path=config.config_file_path if config else None,
                config_content=config.config_content if config else None,
            )
            break

    language_config = _read_config(root, ["tsconfig.json"], "typescript", "json")
    if language_config is None:
        language_config = FrameworkInfo(name="javascript", file_lang="javascript")

    linter_config = _read_config(root, ESLINT_CONFIG_FILES, "eslint", "javascript")
    formatter_config = _read_config(root, PRETTIER_CONFIG_FILES, "prettier", "json")

    return ProjectContext(
        project_root=str(root),
        test_command=test_command,
        unit_framework=unit_framework,
        language_config=language_config,
        linter_config=linter_config,
        formatter_config=formatter_config,
        reporter_framework=unit_framework.name if unit_framework else None,
    )


def _gather_python_context(root: Path) -> ProjectContext:
    pyproject: dict[str, Any] = {}
    pyproject_file = root / "pyproject.toml"
    if pyproject_file.exists():
        try:
            pyproject = tomllib.loads(pyproject_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Could not parse pyproject.toml: %s", e)

    deps, dev_deps = parse_pyproject(pyproject)
    requirements_file = root / "requirements.txt"
    if requirements_file.exists():
        deps.extend(parse_requirements(requirements_file))

    all_deps = [d.lower() for d in deps + dev_deps]
    tool = pyproject.get("tool", {})
    has_pytest = (
        "pytest" in all_deps
        or "pytest" in tool
        or (root / "pytest.ini").exists()
        or (root / "conftest.py").exists()
    )

    unit_framework = None
    test_command = None
    if has_pytest:
        pytest_config = _read_config(root, ["pytest.ini"], "pytest", "ini")
        if pytest_config is None and "pytest" in tool:
            pytest_config = FrameworkInfo(
                name="pytest",
                file_lang="toml",
                config_file_path="pyproject.toml",
                config_content=_dump_tool_section(tool["pytest"]),
            )
        unit_framework = FrameworkInfo(
            name="pytest",
            file_lang=pytest_config.file_lang if pytest_config else None,
            config_file_path=pytest_config.config_file_path if pytest_config else None,
            config_content=pytest_config.config_content if pytest_config else None,
        )
        test_command = "python -m pytest"

    requires_python = pyproject.get("project", {}).get("requires-python")
    language_config = FrameworkInfo(
        name="python",
        version=requires_python,
        file_lang="toml",
        config_file_path="pyproject.toml" if requires_python else None,
        config_content=f'requires-python = "{requires_python}"' if requires_python else None,
    )

    linter_config = _read_config(root, RUFF_CONFIG_FILES, "ruff", "toml")
    if linter_config is None and "ruff" in tool:
        linter_config = FrameworkInfo(
            name="ruff", file_lang="toml", config_file_path="pyproject.toml",
            config_content=_dump_tool_section(tool["ruff"]),
        )

    formatter_config = None
    if "black" in tool:
        formatter_config = FrameworkInfo(
            name="black", file_lang="toml", config_file_path="pyproject.toml",
            config_content=_dump_tool_section(tool["black"]),
        )

    return ProjectContext(
        project_root=str(root),
        test_command=test_command,
        unit_framework=unit_framework,
        language_config=language_config,
        linter_config=linter_config,
        formatter_config=formatter_config,
        reporter_framework="pytest" if has_pytest and "pytest-json-report" in all_deps else None,
    )


def _dump_tool_section(section: Any) -> str:
    return json.dumps(section, indent=2, default=str)[:MAX_CONFIG_CHARS]


def _package_name(requirement: str) -> str:
    for separator in ("==", ">=", "<=", "~=", "!=", ">", "<", "[", ";", " "):
        requirement = requirement.split(separator)[0]
    return requirement.strip()


def parse_requirements(path: Path) -> list[str]:
    """Parse requirements.txt file."""
    deps = []
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.debug("Could not read %s: %s", path, e)
        return deps

    for line in content.splitlines():
        line = line.strip()
        if line and not line.startswith("#") and not line.startswith("-"):
            deps.append(_package_name(line))
    return deps


def parse_pyproject(pyproject: dict[str, Any]) -> tuple[list[str], list[str]]:
    """Dependencies and dev/test dependencies from a parsed pyproject."""
    project = pyproject.get("project", {})
    deps = [_package_name(d) for d in project.get("dependencies", [])]

    dev_deps: list[str] = []
    for extra in project.get("optional-dependencies", {}).values():
        dev_deps.extend(_package_name(d) for d in extra)
    for group in pyproject.get("dependency-groups", {}).values():
        dev_deps.extend(_package_name(d) for d in group if isinstance(d, str))

    return deps, dev_deps
