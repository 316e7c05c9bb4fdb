import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tollgate.constants import AGENT_MAX_ITERATIONS, APPROVAL_TIMEOUT, RETRY_MAX_ATTEMPTS
from tollgate.llm.models import Provider, ProviderConfig
from tollgate.logging import get_logger

TOLLGATE_DIR = Path.home() / ".tollgate"
SETTINGS_PATH = TOLLGATE_DIR / "settings.json"

_logger = get_logger(__name__)


def load_user_settings(path: Path = SETTINGS_PATH) -> dict:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}


def save_user_settings(settings: dict, path: Path = SETTINGS_PATH) -> None:
    path.parent.mkdir(exist_ok=True)
    path.write_text(json.dumps(settings, indent=2))


class ProviderSettings(BaseModel):
    enabled: bool = True
    base_url: str | None = None
    default_model: str | None = None
    # Lowest-priority credential, only ever set from settings.json
    api_key: str | None = None


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TOLLGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # Credentials, read from standard env vars via aliases
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    anthropic_oauth_token: str | None = Field(default=None, alias="ANTHROPIC_OAUTH_TOKEN")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    custom_api_key: str | None = None

    anthropic: ProviderSettings = ProviderSettings(default_model="claude-sonnet-4-6")
    openai: ProviderSettings = ProviderSettings(default_model="gpt-5.2")
    gemini: ProviderSettings = ProviderSettings(default_model="gemini-3-flash-preview")
    custom: ProviderSettings = ProviderSettings(enabled=False)

    model: str | None = None  # overrides the default model of the provider that serves it
    max_tokens: int | None = None
    max_iterations: int = AGENT_MAX_ITERATIONS
    approval_timeout: float = APPROVAL_TIMEOUT
    retry_attempts: int = RETRY_MAX_ATTEMPTS
    auto_approve: set[str] = Field(default_factory=set)
    skip_approvals: bool = False

    working_dir: Path | None = None
    data_dir: Path = TOLLGATE_DIR
    log_level: str = "INFO"

    @field_validator("model")
    @classmethod
    def _validate_model(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v or any(c.isspace() for c in v):
            raise ValueError(f"model must be a non-empty model id, got {v!r}")
        return v

    @field_validator("max_iterations")
    @classmethod
    def _validate_max_iterations(cls, v: int) -> int:
        if not 1 <= v <= 500:
            raise ValueError(f"max_iterations must be 1-500, got {v}")
        return v

    @field_validator("approval_timeout")
    @classmethod
    def _validate_approval_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"approval_timeout must be positive, got {v}")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def _validate_retry_attempts(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError(f"retry_attempts must be 1-10, got {v}")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @property
    def db_path(self) -> Path:
        return self.data_dir / "sessions.db"

    def provider_configs(self) -> list[ProviderConfig]:
        return [
            ProviderConfig(
                provider=Provider.ANTHROPIC,
                enabled=self.anthropic.enabled,
                base_url=self.anthropic.base_url,
                default_model=self.anthropic.default_model,
                oauth_token=self.anthropic_oauth_token,
                api_key=self.anthropic_api_key,
                config_api_key=self.anthropic.api_key,
            ),
            ProviderConfig(
                provider=Provider.OPENAI,
                enabled=self.openai.enabled,
                base_url=self.openai.base_url,
                default_model=self.openai.default_model,
                api_key=self.openai_api_key,
                config_api_key=self.openai.api_key,
            ),
            ProviderConfig(
                provider=Provider.GOOGLE,
                enabled=self.gemini.enabled,
                base_url=self.gemini.base_url,
                default_model=self.gemini.default_model,
                api_key=self.gemini_api_key,
                config_api_key=self.gemini.api_key,
            ),
            ProviderConfig(
                provider=Provider.CUSTOM,
                enabled=self.custom.enabled and bool(self.custom.base_url),
                base_url=self.custom.base_url,
                default_model=self.custom.default_model,
                api_key=self.custom_api_key,
                config_api_key=self.custom.api_key,
            ),
        ]


PERSIST_KEYS = frozenset(
    {
        "anthropic",
        "openai",
        "gemini",
        "custom",
        "max_iterations",
        "approval_timeout",
        "auto_approve",
        "skip_approvals",
        "model",
        "working_dir",
    }
)


def get_config(settings_path: Path = SETTINGS_PATH) -> Config:
    settings = load_user_settings(settings_path)

    # Build config: init args (settings.json) > env vars > defaults
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    return Config(**overrides)  # type: ignore - pydantic handles validation
