"""Helpers for turning raw model replies into code or JSON."""

import re
from typing import Any

FENCED_BLOCK = re.compile(r"^```[\w+-]*\n?(.*?)\n?```$", re.DOTALL)
OPENING_FENCE = re.compile(r"^```[\w+-]*[ \t]*\n", re.MULTILINE)
CLOSING_FENCE = re.compile(r"^```[ \t]*$", re.MULTILINE)


def strip_markdown_code_blocks(content: str) -> str:
    """Remove a markdown fence that wraps the whole reply."""
    cleaned = content.strip()
    match = FENCED_BLOCK.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def content_to_text(content: str | list[Any] | Any) -> str:
    """Flatten LangChain message content (string or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content)


def extract_code_from_response(content: str | Any) -> str:
    """
    Extract code from an LLM response.

    Leading chatter ("Searching for files...") before a fenced block is
    dropped. Replies without a fence are returned stripped.
    """
    content = content_to_text(content)
    if FENCED_BLOCK.match(content.strip()):
        return strip_markdown_code_blocks(content)

    # fences only count at the start of a line
    opening = OPENING_FENCE.search(content)
    if not opening:
        return content.strip()
    closing = CLOSING_FENCE.search(content, opening.end())
    if not closing:
        return content.strip()
    return content[opening.end():closing.start()].strip()
