from collections.abc import AsyncGenerator, AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass

from tollgate.conversation import Conversation, Message
from tollgate.errors import ProviderError, ProviderErrorKind
from tollgate.llm.auth import Credential, SecretStore, select_credential
from tollgate.llm.base import StreamingClient, StreamRequest
from tollgate.llm.models import Provider, ProviderConfig, pricing_for, provider_for
from tollgate.llm.retry import RetryPolicy
from tollgate.llm.types import StreamError, StreamEvent, TurnConfig, UsageReport
from tollgate.logging import get_logger
from tollgate.usage import CostAccumulator

_logger = get_logger(__name__)

# Tried in this order at call start; first one that accepts the request wins the turn
PROVIDER_PRIORITY: tuple[Provider, ...] = (
    Provider.ANTHROPIC,
    Provider.OPENAI,
    Provider.GOOGLE,
    Provider.CUSTOM,
)

type ClientFactory = Callable[[ProviderConfig, Credential], StreamingClient]


def default_client_factory(config: ProviderConfig, credential: Credential) -> StreamingClient:
    # Imported lazily so a missing optional SDK only matters for the provider that needs it
    match config.provider:
        case Provider.ANTHROPIC:
            from tollgate.llm.anthropic import AnthropicClient

            return AnthropicClient(credential, base_url=config.base_url)
        case Provider.OPENAI | Provider.CUSTOM:
            from tollgate.llm.openai import OpenAIClient

            return OpenAIClient(credential, base_url=config.base_url, provider=config.provider)
        case Provider.GOOGLE:
            from tollgate.llm.gemini import GeminiClient

            return GeminiClient(credential, base_url=config.base_url)
        case _:
            raise ValueError(f"Unknown provider: {config.provider}")


def ordered_providers(configs: Sequence[ProviderConfig]) -> list[ProviderConfig]:
    by_provider = {c.provider: c for c in configs}
    return [by_provider[p] for p in PROVIDER_PRIORITY if p in by_provider and by_provider[p].enabled]


def model_for(config: ProviderConfig, override: str | None = None) -> str | None:
    """The model a provider serves: the override when that provider owns it, else its default.

    Overrides missing from the catalogue (custom endpoints, new releases) apply to every provider.
    """
    if override is None:
        return config.default_model
    owner = provider_for(override)
    if owner is None or owner == config.provider:
        return override
    return config.default_model


@dataclass(frozen=True)
class Candidate:
    config: ProviderConfig
    credential: Credential
    model: str


class ProviderGateway:
    def __init__(
        self,
        providers: Sequence[ProviderConfig],
        secret_store: SecretStore | None = None,
        retry_policy: RetryPolicy | None = None,
        client_factory: ClientFactory = default_client_factory,
    ):
        self.providers = ordered_providers(providers)
        self.secret_store = secret_store
        self.retry_policy = retry_policy or RetryPolicy()
        self._client_factory = client_factory
        self._clients: dict[tuple[Provider, Credential], StreamingClient] = {}

    def candidates(self, model_override: str | None = None) -> list[Candidate]:
        result = []
        for config in self.providers:
            model = model_for(config, model_override)
            if not model:
                _logger.warning("Provider %s has no default model, skipping", config.provider.value)
                continue
            credential = select_credential(config, self.secret_store)
            if credential is None:
                _logger.debug("Provider %s has no credential, skipping", config.provider.value)
                continue
            result.append(Candidate(config=config, credential=credential, model=model))
        return result

    def _client(self, candidate: Candidate) -> StreamingClient:
        key = (candidate.config.provider, candidate.credential)
        if key not in self._clients:
            self._clients[key] = self._client_factory(candidate.config, candidate.credential)
        return self._clients[key]

    async def _open(
        self,
        messages: list[Message],
        tools: list[dict],
        config: TurnConfig,
    ) -> tuple[AsyncIterator[StreamEvent], Candidate]:
        candidates = self.candidates(config.model)
        if not candidates:
            raise ProviderError("No LLM provider is configured", ProviderErrorKind.CONFIGURATION)

        last_error: ProviderError | None = None
        for candidate in candidates:
            request = StreamRequest(
                messages=messages,
                model=candidate.model,
                tools=tools,
                system_prompt=config.system_prompt,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                extra=config.extra,
            )
            try:
                stream = await self._client(candidate).open_stream(request, self.retry_policy)
            except ProviderError as e:
                if not e.retryable:
                    raise
                _logger.warning("Provider %s unavailable after retries: %s", candidate.config.provider.value, e)
                last_error = e
                continue
            _logger.debug("Streaming from %s (model=%s)", candidate.config.provider.value, candidate.model)
            return stream, candidate

        assert last_error is not None
        raise last_error

    async def send(
        self,
        conversation: Conversation | Sequence[Message],
        tools: list[dict] | None = None,
        config: TurnConfig | None = None,
        cost: CostAccumulator | None = None,
    ) -> AsyncGenerator[StreamEvent]:
        """Stream one model response.

        Failures never raise out of the generator: they arrive as a fatal
        `StreamError` event followed by the end of the stream.
        """
        config = config or TurnConfig()
        messages = list(conversation)

        try:
            stream, candidate = await self._open(messages, tools or [], config)
        except ProviderError as e:
            _logger.error("LLM call failed: %s", e)
            yield StreamError(kind=e.kind, message=str(e), status=e.status, provider=e.provider)
            return

        pricing = pricing_for(candidate.model)
        async with aclosing(stream) as events:
            async for event in events:
                if isinstance(event, UsageReport):
                    priced = event.usage.priced(pricing)
                    if cost is not None:
                        cost.add(priced)
                    yield UsageReport(usage=priced, model=candidate.model)
                    continue
                yield event

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
