import pytest

from tollgate.errors import ProviderError, ProviderErrorKind
from tollgate.llm.auth import (
    ANTHROPIC_OAUTH_BETA,
    AuthScheme,
    CredentialSource,
    StaticSecretStore,
    select_credential,
)
from tollgate.llm.gateway import ProviderGateway, model_for, ordered_providers
from tollgate.llm.models import Model, Provider, ProviderConfig, register_model
from tollgate.llm.retry import kind_for_status, with_retry
from tollgate.llm.types import Done, StreamError, TextDelta, TurnConfig, UsageReport
from tollgate.usage import CostAccumulator, Pricing
from tests.conftest import FAST_RETRY, ScriptedClient, make_gateway, text_round


def server_error(status: int = 503) -> ProviderError:
    return ProviderError(f"HTTP {status}", kind_for_status(status), status)


async def collect(gateway: ProviderGateway, **kwargs) -> list:
    return [event async for event in gateway.send([], **kwargs)]


class TestCredentialSelection:
    def test_secure_store_wins(self):
        config = ProviderConfig(
            provider=Provider.OPENAI,
            oauth_token="oauth",
            api_key="env-key",
            config_api_key="file-key",
        )
        credential = select_credential(config, StaticSecretStore({"openai": "stored"}))
        assert credential.source == CredentialSource.SECURE_STORE
        assert credential.value == "stored"

    def test_priority_order(self):
        config = ProviderConfig(provider=Provider.OPENAI, api_key="env-key", config_api_key="file-key")
        assert select_credential(config).source == CredentialSource.API_KEY

        config = ProviderConfig(provider=Provider.OPENAI, config_api_key="file-key")
        assert select_credential(config).source == CredentialSource.CONFIG_FILE

    def test_blank_values_ignored(self):
        config = ProviderConfig(provider=Provider.OPENAI, oauth_token="  ", api_key="env-key")
        assert select_credential(config).source == CredentialSource.API_KEY

    def test_no_credential(self):
        assert select_credential(ProviderConfig(provider=Provider.GOOGLE)) is None

    def test_anthropic_oauth_prefix_detected_from_any_source(self):
        config = ProviderConfig(provider=Provider.ANTHROPIC, api_key="sk-ant-oat01-abc")
        credential = select_credential(config)
        assert credential.source == CredentialSource.API_KEY
        assert credential.scheme == AuthScheme.BEARER
        assert credential.extra_headers == {"anthropic-beta": ANTHROPIC_OAUTH_BETA}

    def test_plain_anthropic_key(self):
        config = ProviderConfig(provider=Provider.ANTHROPIC, api_key="sk-ant-api03-abc")
        credential = select_credential(config)
        assert credential.scheme == AuthScheme.API_KEY
        assert credential.extra_headers == {}

    def test_value_never_in_repr(self):
        config = ProviderConfig(provider=Provider.OPENAI, api_key="super-secret")
        assert "super-secret" not in repr(select_credential(config))
        assert "super-secret" not in repr(config)


class TestRetry:
    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (429, ProviderErrorKind.RATE_LIMIT),
            (408, ProviderErrorKind.SERVER),
            (503, ProviderErrorKind.SERVER),
            (401, ProviderErrorKind.AUTH),
            (400, ProviderErrorKind.INVALID_REQUEST),
        ],
    )
    def test_kind_for_status(self, status, kind):
        assert kind_for_status(status) == kind

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts < 4:
                raise server_error(503)
            return "ok"

        assert await with_retry(flaky, policy=FAST_RETRY) == "ok"
        assert attempts == 4

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self):
        attempts = 0

        async def unauthorized():
            nonlocal attempts
            attempts += 1
            raise server_error(401)

        with pytest.raises(ProviderError) as exc_info:
            await with_retry(unauthorized, policy=FAST_RETRY)
        assert exc_info.value.kind == ProviderErrorKind.AUTH
        assert attempts == 1


class TestGateway:
    def test_priority_order(self):
        configs = [
            ProviderConfig(provider=Provider.CUSTOM),
            ProviderConfig(provider=Provider.GOOGLE),
            ProviderConfig(provider=Provider.OPENAI, enabled=False),
            ProviderConfig(provider=Provider.ANTHROPIC),
        ]
        assert [c.provider for c in ordered_providers(configs)] == [
            Provider.ANTHROPIC,
            Provider.GOOGLE,
            Provider.CUSTOM,
        ]

    @pytest.mark.asyncio
    async def test_streams_and_prices_usage(self):
        client = ScriptedClient([text_round("hello", prompt_tokens=100, completion_tokens=50)])
        cost = CostAccumulator()

        events = await collect(make_gateway(client), cost=cost)

        assert events[0] == TextDelta("hello")
        usage = next(e for e in events if isinstance(e, UsageReport))
        assert usage.model == "anthropic-test-model"
        assert isinstance(events[-1], Done)
        assert cost.total.prompt_tokens == 100
        assert cost.total.completion_tokens == 50

    @pytest.mark.asyncio
    async def test_registered_model_is_priced(self):
        register_model(Model("priced-test-model", Provider.ANTHROPIC, 1000, pricing=Pricing(input=2, output=10)))
        client = ScriptedClient([text_round("hi", prompt_tokens=1_000_000, completion_tokens=100_000)])
        cost = CostAccumulator()

        await collect(make_gateway(client), config=TurnConfig(model="priced-test-model"), cost=cost)

        assert cost.cost == pytest.approx(3.0)
        assert cost.context_tokens == 1_000_000

    @pytest.mark.asyncio
    async def test_three_server_errors_then_success(self):
        client = ScriptedClient([text_round("recovered")], open_errors=[server_error()] * 3)

        events = await collect(make_gateway(client))

        assert client.open_attempts == 4
        assert events[0] == TextDelta("recovered")

    @pytest.mark.asyncio
    async def test_auth_failure_is_fatal_without_fallback(self):
        primary = ScriptedClient(open_errors=[server_error(401)])
        secondary = ScriptedClient([text_round("fallback")], provider=Provider.OPENAI)

        events = await collect(make_gateway(primary, secondary))

        assert primary.open_attempts == 1
        assert secondary.open_attempts == 0
        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert events[0].kind == ProviderErrorKind.AUTH
        assert events[0].fatal

    @pytest.mark.asyncio
    async def test_falls_back_when_retries_exhausted(self):
        primary = ScriptedClient(open_errors=[server_error()] * 4)
        secondary = ScriptedClient([text_round("from openai")], provider=Provider.OPENAI)

        events = await collect(make_gateway(primary, secondary))

        assert primary.open_attempts == 4
        assert events[0] == TextDelta("from openai")
        assert next(e for e in events if isinstance(e, UsageReport)).model == "openai-test-model"

    @pytest.mark.asyncio
    async def test_no_provider_configured(self):
        gateway = ProviderGateway([ProviderConfig(provider=Provider.OPENAI)], retry_policy=FAST_RETRY)

        events = await collect(gateway)

        assert len(events) == 1
        assert events[0].kind == ProviderErrorKind.CONFIGURATION

    @pytest.mark.asyncio
    async def test_model_override(self):
        client = ScriptedClient([text_round("hi")])
        gateway = make_gateway(client)

        await collect(gateway, config=TurnConfig(model="custom-model", system_prompt="sys"))

        assert client.requests[0].model == "custom-model"
        assert client.requests[0].system_prompt == "sys"

    @pytest.mark.asyncio
    async def test_catalogued_override_stays_with_its_provider_on_fallback(self):
        primary = ScriptedClient(open_errors=[server_error()] * 4)
        secondary = ScriptedClient([text_round("from openai")], provider=Provider.OPENAI)

        await collect(make_gateway(primary, secondary), config=TurnConfig(model="claude-sonnet-4-6"))

        assert secondary.requests[0].model == "openai-test-model"

    def test_model_for(self):
        anthropic = ProviderConfig(provider=Provider.ANTHROPIC, default_model="claude-haiku-4-5")
        openai = ProviderConfig(provider=Provider.OPENAI, default_model="gpt-5-mini")

        assert model_for(anthropic, "claude-opus-4-6") == "claude-opus-4-6"
        assert model_for(openai, "claude-opus-4-6") == "gpt-5-mini"
        assert model_for(openai, "unlisted-model") == "unlisted-model"
        assert model_for(openai) == "gpt-5-mini"

    @pytest.mark.asyncio
    async def test_close_closes_clients(self):
        client = ScriptedClient([text_round("hi")])
        gateway = make_gateway(client)
        await collect(gateway)

        await gateway.close()

        assert client.closed
