from pathlib import Path

from tollgate.approval import ApprovalGate, ApprovalPolicy
from tollgate.channel import Channel
from tollgate.config import Config
from tollgate.core.orchestrator import Orchestrator
from tollgate.core.prompts import build_system_prompt
from tollgate.llm.auth import SecretStore
from tollgate.llm.gateway import ClientFactory, ProviderGateway, default_client_factory
from tollgate.llm.retry import RetryPolicy
from tollgate.llm.types import TurnConfig
from tollgate.plan.engine import PlanEngine
from tollgate.session.models import SessionData
from tollgate.session.store import SessionStore
from tollgate.tools.core.registry import ToolRegistry


def create_gateway(
    config: Config,
    secret_store: SecretStore | None = None,
    client_factory: ClientFactory = default_client_factory,
) -> ProviderGateway:
    return ProviderGateway(
        config.provider_configs(),
        secret_store=secret_store,
        retry_policy=RetryPolicy(attempts=config.retry_attempts),
        client_factory=client_factory,
    )


def create_orchestrator(
    *,
    config: Config,
    session: SessionData,
    gateway: ProviderGateway,
    registry: ToolRegistry,
    store: SessionStore | None = None,
    channel: Channel | None = None,
) -> Orchestrator:
    session_id = session.state.session_id
    working_dir = (config.working_dir or Path.cwd()).resolve()
    gate = ApprovalGate(
        timeout=config.approval_timeout,
        policy=ApprovalPolicy(auto_approve=set(config.auto_approve), skip_approvals=config.skip_approvals),
    )
    return Orchestrator(
        session_id,
        gateway,
        registry,
        conversation=session.conversation,
        store=store,
        plans=PlanEngine(session_id, session.plans),
        gate=gate,
        cost=session.cost,
        channel=channel,
        turn_config=TurnConfig(
            system_prompt=build_system_prompt(working_dir),
            model=config.model,
            max_tokens=config.max_tokens,
        ),
        max_iterations=config.max_iterations,
        working_dir=working_dir,
    )
