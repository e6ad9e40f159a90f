"""Project configuration loading."""

import logging
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from mender_agent.models.schemas import HealingPolicy

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "mender.config.json"

# providers that cannot hold a multi-turn request_files conversation
SINGLE_SHOT_PROVIDERS = frozenset({"copilot-cli"})


class AIConfig(BaseModel):
    provider: str = "gemini"
    model: str = "gemini-2.0-flash-lite"
    temperature: float = 0.0
    api_key_env: str = "GEMINI_API_KEY"
    max_iterations: int = Field(default=5, ge=1)

    @property
    def is_agentic(self) -> bool:
        return self.provider not in SINGLE_SHOT_PROVIDERS


class UnitTestingConfig(BaseModel):
    test_output_dir: str | None = None
    test_output_strategy: Literal["colocated", "root"] | None = None
    test_match: list[str] = []
    timeout_ms: int = Field(default=30000, ge=1)


class MenderConfig(BaseModel):
    ai: AIConfig = AIConfig()
    healing: HealingPolicy = HealingPolicy()
    unit_testing: UnitTestingConfig = UnitTestingConfig()


def load_config(project_root: str) -> MenderConfig:
    """
    Load configuration for a project.

    Reads `.env` from the project root into the environment and parses
    `mender.config.json` when present. A missing file yields defaults.

    Raises:
        ValueError: if the config file exists but is invalid
    """
    root = Path(project_root)
    load_dotenv(root / ".env")

    config_path = root / CONFIG_FILE_NAME
    if not config_path.exists():
        logger.debug("No %s in %s, using defaults", CONFIG_FILE_NAME, root)
        return MenderConfig()

    try:
        return MenderConfig.model_validate_json(config_path.read_text(encoding="utf-8"))
    except ValidationError as e:
        raise ValueError(f"Invalid {CONFIG_FILE_NAME}: {e}") from e
