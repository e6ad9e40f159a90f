"""Project-scoped file access for the agent."""

import fnmatch
import logging
import re
from pathlib import Path, PurePosixPath

import aiofiles

from mender_agent.agent.errors import FileAccessError

logger = logging.getLogger(__name__)

LANGUAGE_BY_EXTENSION = {
    "ts": "typescript",
    "tsx": "tsx",
    "js": "javascript",
    "jsx": "jsx",
    "mjs": "javascript",
    "cjs": "javascript",
    "vue": "vue",
    "py": "python",
    "pyi": "python",
    "json": "json",
    "toml": "toml",
}

HASH_COMMENT_LANGUAGES = {"python", "toml"}

RELATED_EXTENSIONS = {
    "": [".ts", ".tsx", ".js", ".jsx", ".py"],
    ".ts": [".ts", ".tsx", ".js", ".jsx"],
    ".tsx": [".tsx", ".ts", ".jsx", ".js"],
    ".js": [".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"],
    ".jsx": [".jsx", ".js", ".tsx", ".ts"],
    ".mjs": [".mjs", ".js", ".cjs"],
    ".cjs": [".cjs", ".js", ".mjs"],
    ".py": [".py", ".pyi"],
    ".pyi": [".pyi", ".py"],
}

SECRET_PATTERNS = [
    ("AWS_KEY", re.compile(r"AKIA[0-9A-Z]{16}")),
    ("GITHUB_TOKEN", re.compile(r"gh[pos]_[a-zA-Z0-9]{36}")),
    ("API_KEY", re.compile(r"sk-[a-zA-Z0-9]{20,}")),
    ("SENDGRID_KEY", re.compile(r"SG\.[a-zA-Z0-9_-]{22,}")),
    ("GOOGLE_API_KEY", re.compile(r"AIza[0-9A-Za-z_-]{35}")),
    ("PRIVATE_KEY", re.compile(
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.DOTALL
    )),
    ("PASSWORD", re.compile(
        r"((?:password|passwd|secret)[\"']?\s*[:=]\s*[\"'])[^\"'\s]{8,}(?=[\"'])", re.IGNORECASE
    )),
]

SKIP_DIRECTORIES = {"node_modules", ".git", "__pycache__", ".venv", "venv", "dist", "build"}


def related_extensions(extension: str) -> list[str]:
    return RELATED_EXTENSIONS.get(extension.lower(), [])


def sanitize_secrets(content: str, file_path: str = "") -> str:
    """Replace credentials found in file content before it is sent to the model."""
    redacted = 0
    for secret_type, pattern in SECRET_PATTERNS:
        replacement = f"[REDACTED_{secret_type}]"
        if pattern.groups:
            replacement = r"\g<1>" + replacement
        content, count = pattern.subn(replacement, content)
        redacted += count
    if redacted:
        logger.warning("Redacted %d secret(s) from %s", redacted, file_path or "file content")
    return content


def wrap_file_content(file_path: str, content: str) -> str:
    """Wrap file content in a fenced block headed by its path."""
    language = LANGUAGE_BY_EXTENSION.get(PurePosixPath(file_path).suffix.lstrip(".").lower(), "")
    comment = "#" if language in HASH_COMMENT_LANGUAGES else "//"
    return f"```{language}\n{comment} {file_path}\n{content}\n```"


def matches_pattern(file_path: str, patterns: list[str]) -> bool:
    """Glob-match against the file name or the project-relative path."""
    name = PurePosixPath(file_path).name
    for pattern in patterns:
        if fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(file_path, pattern):
            return True
    return False


class ProjectFileWalker:
    """Reads and writes files, refusing paths outside the project root."""

    def __init__(self, project_root: str):
        self.project_root = Path(project_root).resolve()

    def resolve_and_validate_path(self, file_path: str) -> Path:
        full_path = (self.project_root / file_path).resolve()
        if not full_path.is_relative_to(self.project_root):
            raise FileAccessError(
                f"Security Error: Access denied for path outside project root: {file_path}"
            )
        return full_path

    async def read_file_from_project(self, file_path: str, wrap_content: bool = False) -> str:
        try:
            full_path = self.resolve_and_validate_path(file_path)
            async with aiofiles.open(full_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileAccessError:
            raise
        except (OSError, UnicodeDecodeError) as e:
            raise FileAccessError(f"Failed to read file {file_path}: {e}") from e

        content = sanitize_secrets(content, file_path)
        if wrap_content:
            return wrap_file_content(file_path, content)
        return content

    async def write_file_to_project(self, file_path: str, content: str) -> None:
        try:
            full_path = self.resolve_and_validate_path(file_path)
            full_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(full_path, "w", encoding="utf-8") as f:
                await f.write(content)
        except FileAccessError:
            raise
        except OSError as e:
            raise FileAccessError(f"Failed to write file {file_path}: {e}") from e

    def file_exists(self, file_path: str) -> bool:
        try:
            return self.resolve_and_validate_path(file_path).is_file()
        except FileAccessError:
            return False

    def find_files(self, patterns: list[str]) -> list[str]:
        """Return project-relative POSIX paths matching any glob pattern."""
        found: set[str] = set()
        for pattern in patterns:
            pattern = pattern.removeprefix("./")
            for path in self.project_root.glob(pattern):
                if not path.is_file():
                    continue
                relative = path.relative_to(self.project_root)
                if SKIP_DIRECTORIES.intersection(relative.parts[:-1]):
                    continue
                found.add(relative.as_posix())
        return sorted(found)
