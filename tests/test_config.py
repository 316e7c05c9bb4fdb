import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from tollgate.config import Config, get_config, load_user_settings, save_user_settings
from tollgate.llm.models import Provider

CREDENTIAL_VARS = ("ANTHROPIC_API_KEY", "ANTHROPIC_OAUTH_TOKEN", "OPENAI_API_KEY", "GEMINI_API_KEY")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    for var in CREDENTIAL_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


class TestValidation:
    @pytest.mark.parametrize("value", [0, 501])
    def test_max_iterations_bounds(self, value: int):
        with pytest.raises(ValidationError):
            Config(max_iterations=value)

    def test_approval_timeout_positive(self):
        with pytest.raises(ValidationError):
            Config(approval_timeout=0)

    def test_model_is_stripped(self):
        assert Config(model="  gpt-5.2 ").model == "gpt-5.2"

    @pytest.mark.parametrize("value", ["", "   ", "gpt 5"])
    def test_model_rejects_blank_or_spaced(self, value: str):
        with pytest.raises(ValidationError):
            Config(model=value)

    def test_log_level_normalized(self):
        assert Config(log_level="debug").log_level == "DEBUG"

    def test_assignment_is_validated(self):
        config = Config()
        with pytest.raises(ValidationError):
            config.retry_attempts = 11


class TestEnvironment:
    def test_credentials_from_standard_vars(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("ANTHROPIC_OAUTH_TOKEN", "sk-ant-oat01-x")

        config = Config()

        assert config.openai_api_key == "sk-env"
        assert config.anthropic_oauth_token == "sk-ant-oat01-x"

    def test_prefixed_and_nested(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TOLLGATE_MAX_ITERATIONS", "7")
        monkeypatch.setenv("TOLLGATE_ANTHROPIC__DEFAULT_MODEL", "claude-opus-4-6")

        config = Config()

        assert config.max_iterations == 7
        assert config.anthropic.default_model == "claude-opus-4-6"


class TestProviderConfigs:
    def test_priority_order_and_credentials(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
        configs = Config().provider_configs()

        assert [c.provider for c in configs] == [Provider.ANTHROPIC, Provider.OPENAI, Provider.GOOGLE, Provider.CUSTOM]
        assert configs[0].api_key == "sk-ant"
        assert configs[1].api_key is None

    def test_custom_needs_base_url(self):
        custom = Config(custom={"enabled": True}).provider_configs()[-1]
        assert custom.enabled is False

        custom = Config(custom={"enabled": True, "base_url": "http://localhost:8000/v1"}).provider_configs()[-1]
        assert custom.enabled is True


class TestUserSettings:
    def test_settings_file_overrides(self, tmp_path: Path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"max_iterations": 9, "auto_approve": ["bash"], "log_level": "ignored"}))

        config = get_config(path)

        assert config.max_iterations == 9
        assert config.auto_approve == {"bash"}
        assert config.log_level == "INFO"

    def test_broken_file_falls_back_to_defaults(self, tmp_path: Path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")

        assert load_user_settings(path) == {}
        assert get_config(path).max_iterations == Config().max_iterations

    def test_save_and_load(self, tmp_path: Path):
        path = tmp_path / "nested" / "settings.json"
        save_user_settings({"model": "gpt-5.2"}, path)
        assert load_user_settings(path) == {"model": "gpt-5.2"}
