import asyncio

import click
from pydantic import ValidationError as SettingsError
from rich.console import Console

from tollgate.config import get_config
from tollgate.errors import TollgateError
from tollgate.events import (
    ApprovalRequestedEvent,
    ApprovalResolvedEvent,
    DoneEvent,
    ErrorEvent,
    PlanStatusEvent,
    TaskStatusEvent,
    TextEvent,
    ToolCallEvent,
    ToolInvokedEvent,
)
from tollgate.llm.auth import select_credential
from tollgate.llm.gateway import model_for
from tollgate.logging import UVICORN_LOG_CONFIG, configure_logging
from tollgate.utils import truncate

console = Console()


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx):
    """tollgate - tool-call orchestration and approval engine"""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = get_config()
    except SettingsError as e:
        # Only fail if we're running a command that needs config
        ctx.obj["config_error"] = str(e)

    if ctx.invoked_subcommand is None:
        console.print("[bold]tollgate[/bold] - tool-call orchestration and approval engine\n")
        console.print("Run [cyan]tollgate serve[/cyan] to start the server.")
        console.print("\nUse [cyan]tollgate --help[/cyan] for all commands.")


def _require_config(ctx):
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


@main.command()
@click.pass_context
def status(ctx):
    """Show configured providers and limits."""
    config = _require_config(ctx)

    console.print("[bold]tollgate status[/bold]")
    console.print()
    console.print(f"Data dir: [cyan]{config.data_dir}[/cyan]")
    console.print(f"Max iterations: {config.max_iterations}")
    console.print(f"Approval timeout: {config.approval_timeout:g}s")
    if config.skip_approvals:
        console.print("[yellow]Approvals are skipped for every tool[/yellow]")
    elif config.auto_approve:
        console.print(f"Auto-approved tools: {', '.join(sorted(config.auto_approve))}")
    console.print()

    console.print("[bold]Providers[/bold] (in priority order)")
    for provider in config.provider_configs():
        name = provider.provider.value
        if not provider.enabled:
            console.print(f"  [dim]{name}: disabled[/dim]")
            continue
        credential = select_credential(provider)
        model = model_for(provider, config.model)
        if credential is None:
            console.print(f"  [red]{name}[/red]: no credential")
        else:
            console.print(f"  [green]{name}[/green]: {model} via {credential.source.value} ({credential.scheme.value})")


@main.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.pass_context
def serve(ctx, host: str, port: int, reload: bool):
    """Start the tollgate API server."""
    _require_config(ctx)

    import uvicorn

    console.print(f"[bold]tollgate server[/bold] starting on http://{host}:{port}")
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    uvicorn.run(
        "tollgate.server.app:app",
        host=host,
        port=port,
        reload=reload,
        log_config=UVICORN_LOG_CONFIG,
    )


@main.command()
@click.option("-p", "--prompt", required=True, help="The prompt to execute")
@click.option("--yes", is_flag=True, help="Approve every dangerous tool call without asking")
@click.pass_context
def run(ctx, prompt: str, yes: bool):
    """Run one turn in a fresh session, asking for approvals on the terminal."""
    config = _require_config(ctx)
    if yes:
        config.skip_approvals = True
    configure_logging(config.log_level)
    asyncio.run(_run_headless(config, prompt))


async def _run_headless(config, prompt: str):
    from tollgate.server.runtime import Runtime

    runtime = Runtime(config)
    await runtime.connect()
    try:
        state = await runtime.sessions.create(name=truncate(prompt, 60))
        orchestrator = await runtime.orchestrator(state.session_id)
        console.print(f"[dim]Session {state.session_id}[/dim]\n")

        try:
            async for event in orchestrator.run_turn(prompt):
                match event:
                    case TextEvent(content=content):
                        console.print(content, end="", markup=False, highlight=False)
                    case ToolCallEvent(description=description):
                        console.print(f"\n[cyan]> {description}[/cyan]")
                    case ApprovalRequestedEvent(request_id=request_id, summary=summary):
                        approved = await asyncio.to_thread(click.confirm, f"Allow {summary}?", default=False)
                        orchestrator.resolve_approval(request_id, "approved" if approved else "denied")
                    case ApprovalResolvedEvent(name=name, decision=decision) if decision != "approved":
                        console.print(f"[yellow]{name}: {decision}[/yellow]")
                    case ToolInvokedEvent(preview=preview, is_error=is_error):
                        console.print(f"  [{'red' if is_error else 'dim'}]{preview}[/]")
                    case PlanStatusEvent(title=title, status=plan_status):
                        console.print(f"[magenta]plan '{title}' -> {plan_status}[/magenta]")
                    case TaskStatusEvent(task_id=task_id, status=task_status):
                        console.print(f"[magenta]  task {task_id} -> {task_status}[/magenta]")
                    case ErrorEvent(message=message, recoverable=False):
                        console.print(f"\n[red]Error:[/red] {message}")
                    case DoneEvent(usage=usage):
                        console.print(f"\n\n[dim]cost ${usage.get('cost', 0):.4f}[/dim]")
        except TollgateError:
            raise SystemExit(1)
    finally:
        await runtime.close()


if __name__ == "__main__":
    main()
