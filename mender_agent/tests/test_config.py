"""Tests for configuration loading."""

import json
import os

import pytest

from mender_agent.config import CONFIG_FILE_NAME, AIConfig, MenderConfig, load_config
from mender_agent.models.schemas import HealingPolicy


class TestLoadConfig:

    def test_defaults_without_file(self, tmp_path):
        config = load_config(str(tmp_path))

        assert config == MenderConfig()
        assert config.ai.model == "gemini-2.0-flash-lite"
        assert config.healing.max_retries == 3
        assert config.unit_testing.timeout_ms == 30000

    def test_reads_config_file(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text(json.dumps({
            "ai": {"provider": "copilot-cli", "max_iterations": 2},
            "healing": {"mode": "manual", "max_retries": 5},
            "unit_testing": {"test_output_strategy": "root", "test_match": ["*.e2e.ts"]},
        }))

        config = load_config(str(tmp_path))

        assert config.ai.is_agentic is False
        assert config.ai.max_iterations == 2
        assert config.healing.is_active is False
        assert config.healing.max_retries == 5
        assert config.unit_testing.test_output_strategy == "root"

    def test_invalid_config(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text(json.dumps({"healing": {"max_retries": 0}}))

        with pytest.raises(ValueError, match=CONFIG_FILE_NAME):
            load_config(str(tmp_path))

    def test_dotenv_is_loaded(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MENDER_TEST_KEY", raising=False)
        (tmp_path / ".env").write_text("MENDER_TEST_KEY=from-dotenv\n")

        load_config(str(tmp_path))

        assert os.environ["MENDER_TEST_KEY"] == "from-dotenv"
        monkeypatch.delenv("MENDER_TEST_KEY")


class TestPolicies:

    @pytest.mark.parametrize("policy,active", [
        (HealingPolicy(), True),
        (HealingPolicy(enabled=False), False),
        (HealingPolicy(mode="manual"), False),
        (HealingPolicy(mode="off"), False),
    ])
    def test_healing_is_active(self, policy, active):
        assert policy.is_active is active

    def test_gemini_is_agentic(self):
        assert AIConfig().is_agentic is True
