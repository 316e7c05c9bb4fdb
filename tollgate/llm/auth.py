from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from tollgate.llm.models import Provider, ProviderConfig
from tollgate.logging import get_logger

_logger = get_logger(__name__)

ANTHROPIC_OAUTH_PREFIX = "sk-ant-oat"
ANTHROPIC_OAUTH_BETA = "oauth-2025-04-20"


class CredentialSource(StrEnum):
    SECURE_STORE = "secure_store"
    OAUTH = "oauth"
    API_KEY = "api_key"
    CONFIG_FILE = "config_file"


# Highest priority first
CREDENTIAL_PRIORITY: tuple[CredentialSource, ...] = (
    CredentialSource.SECURE_STORE,
    CredentialSource.OAUTH,
    CredentialSource.API_KEY,
    CredentialSource.CONFIG_FILE,
)


class AuthScheme(StrEnum):
    API_KEY = "api_key"
    BEARER = "bearer"


class SecretStore(Protocol):
    def get(self, provider: str) -> str | None: ...


class StaticSecretStore:
    """In-memory SecretStore, for tests and for embedding apps that resolve secrets themselves."""

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def get(self, provider: str) -> str | None:
        return self._secrets.get(provider)


@dataclass(frozen=True)
class Credential:
    source: CredentialSource
    scheme: AuthScheme
    value: str

    @property
    def extra_headers(self) -> dict[str, str]:
        if self.scheme == AuthScheme.BEARER and self.value.startswith(ANTHROPIC_OAUTH_PREFIX):
            return {"anthropic-beta": ANTHROPIC_OAUTH_BETA}
        return {}

    def __repr__(self) -> str:
        return f"Credential(source={self.source.value!r}, scheme={self.scheme.value!r}, value='***')"


def credential_candidates(config: ProviderConfig, secret_store: SecretStore | None = None) -> dict[CredentialSource, str]:
    stored = secret_store.get(config.provider.value) if secret_store else None
    raw = {
        CredentialSource.SECURE_STORE: stored,
        CredentialSource.OAUTH: config.oauth_token,
        CredentialSource.API_KEY: config.api_key,
        CredentialSource.CONFIG_FILE: config.config_api_key,
    }
    return {source: value.strip() for source, value in raw.items() if value and value.strip()}


def detect_scheme(provider: Provider, source: CredentialSource, value: str) -> AuthScheme:
    if source == CredentialSource.OAUTH:
        return AuthScheme.BEARER
    if provider == Provider.ANTHROPIC and value.startswith(ANTHROPIC_OAUTH_PREFIX):
        return AuthScheme.BEARER
    return AuthScheme.API_KEY


def select_credential(config: ProviderConfig, secret_store: SecretStore | None = None) -> Credential | None:
    candidates = credential_candidates(config, secret_store)
    for source in CREDENTIAL_PRIORITY:
        if value := candidates.get(source):
            scheme = detect_scheme(config.provider, source, value)
            _logger.info("Using %s credential for %s (%s)", source.value, config.provider.value, scheme.value)
            return Credential(source=source, scheme=scheme, value=value)
    return None
