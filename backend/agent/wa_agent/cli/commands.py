"""CLI commands for wa-agent."""

import asyncio
import json
import sys
from typing import Any

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from wa_agent import __brand__, __logo__, __version__

app = typer.Typer(
    name="wa-agent",
    help=f"{__logo__} {__brand__} - WhatsApp calendar and email assistant",
    no_args_is_help=True,
)

console = Console()


def _cli_fail(cause: str, fix: str | None = None, *, exit_code: int = 1) -> None:
    """Print a consistent CLI error block and exit."""
    console.print(f"[red]{cause}[/red]")
    if fix:
        console.print(f"[dim]Fix: {fix}[/dim]")
    raise typer.Exit(exit_code)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _build_agent(config: Any):
    """Build the embeddable agent or exit with a fix hint."""
    from wa_agent.agent.api import Agent
    from wa_agent.config.loader import get_config_path

    try:
        return Agent(config)
    except ValueError as e:
        _cli_fail(
            str(e),
            f"Set providers.<name>.apiKey in {get_config_path()} or export WA_AGENT_PROVIDERS__OPENAI__API_KEY.",
        )


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} {__brand__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", callback=version_callback, is_eager=True),
):
    """wa-agent - WhatsApp calendar and email assistant."""
    pass


@app.command("version")
def version_command():
    """Show wa-agent version."""
    console.print(f"{__logo__} {__brand__} v{__version__}")


@app.command()
def gateway(
    port: int = typer.Option(None, "--port", "-p", help="Webhook port (default from config)"),
    host: str = typer.Option(None, "--host", help="Bind host (default from config)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Start the WhatsApp webhook server."""
    from wa_agent.channels.webhook import WebhookServer
    from wa_agent.channels.whatsapp import WhatsAppChannel
    from wa_agent.config.loader import get_config_path, load_config
    from wa_agent.providers.transcription import GroqTranscriptionProvider

    _configure_logging(verbose)
    config = load_config()
    wa = config.whatsapp
    if not wa.enabled:
        _cli_fail("WhatsApp channel is disabled.", f"Set whatsapp.enabled=true in {get_config_path()}")
    if not (wa.token and wa.phone_number_id and wa.verify_token):
        _cli_fail(
            "WhatsApp Cloud API is not configured.",
            f"Set whatsapp.token, whatsapp.phoneNumberId and whatsapp.verifyToken in {get_config_path()}",
        )

    agent = _build_agent(config)
    transcriber = GroqTranscriptionProvider(
        api_key=config.transcription.groq_api_key or config.providers.groq.api_key or None,
        model=config.transcription.model,
    )
    channel = WhatsAppChannel(wa, transcriber=transcriber)
    server = WebhookServer(
        channel=channel,
        handler=agent,
        host=host or config.gateway.host,
        port=port if port is not None else config.gateway.port,
        path=config.gateway.path,
    )

    console.print(f"{__logo__} Starting {__brand__} gateway on port {server.port}...")
    if not transcriber.is_configured():
        console.print("[yellow]Voice notes disabled: no Groq API key configured[/yellow]")
    if wa.allow_from:
        console.print(f"[green]✓[/green] Allowlist: {len(wa.allow_from)} number(s)")

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


@app.command()
def agent(
    message: str = typer.Option(None, "--message", "-m", help="Message to send to the agent"),
    user_id: str = typer.Option("cli", "--user", "-u", help="User id (phone number) to act as"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Interact with the agent directly."""
    from wa_agent.config.loader import load_config
    from wa_agent.utils.helpers import ensure_dir, get_data_path

    _configure_logging(verbose)
    config = load_config()
    embedded = _build_agent(config)

    if message:
        # Single message mode
        async def run_once():
            response = await embedded.ask(message, user_id=user_id)
            console.print(f"\n{__logo__} {response}")

        asyncio.run(run_once())
        return

    # Interactive mode
    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory
    from prompt_toolkit.styles import Style

    history_file = ensure_dir(get_data_path() / "state") / "cli_history"
    session = PromptSession(history=FileHistory(str(history_file)))
    style = Style.from_dict({"prompt": "bold blue"})

    console.print(f"{__logo__} Interactive mode as {user_id} (Ctrl+C to exit)\n")

    async def run_interactive():
        while True:
            try:
                user_input = await session.prompt_async("You: ", style=style)
                if not user_input.strip():
                    continue

                response = await embedded.ask(user_input, user_id=user_id)
                console.print(f"\n{__logo__} {response}\n")
            except (KeyboardInterrupt, EOFError):
                console.print("\nGoodbye!")
                break

    asyncio.run(run_interactive())


# ============================================================================
# History / Profile Commands
# ============================================================================


history_app = typer.Typer(help="Inspect stored conversation history")
app.add_typer(history_app, name="history")


@history_app.callback(invoke_without_command=True)
def history_main(ctx: typer.Context):
    """Inspect stored conversation history."""
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


@history_app.command("show")
def history_show(
    user_id: str = typer.Argument(..., help="User id (phone number)"),
    limit: int = typer.Option(None, "--limit", "-n", help="Turns to show (default: history limit)"),
):
    """Show the stored turns for a user."""
    from wa_agent.agent.api import build_stores
    from wa_agent.config.loader import load_config

    conversations, _ = build_stores(load_config())
    turns = asyncio.run(conversations.load_recent(user_id, limit))
    if not turns:
        console.print(f"No stored history for {user_id}.")
        return

    table = Table(title=f"History: {user_id}")
    table.add_column("When", style="cyan")
    table.add_column("Role", style="green")
    table.add_column("Content")
    for turn in turns:
        table.add_row(turn.timestamp.strftime("%Y-%m-%d %H:%M:%S"), turn.role, turn.content)
    console.print(table)


@history_app.command("clear")
def history_clear(
    user_id: str = typer.Argument(..., help="User id (phone number)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete the stored turns for a user."""
    from wa_agent.agent.api import build_stores
    from wa_agent.config.loader import load_config

    if not yes and not typer.confirm(f"Clear all history for {user_id}?"):
        raise typer.Exit(1)
    conversations, _ = build_stores(load_config())
    asyncio.run(conversations.clear(user_id))
    console.print(f"[green]✓[/green] History cleared for {user_id}")


profile_app = typer.Typer(help="Inspect stored user profiles")
app.add_typer(profile_app, name="profile")


@profile_app.callback(invoke_without_command=True)
def profile_main(ctx: typer.Context):
    """Inspect stored user profiles."""
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


@profile_app.command("show")
def profile_show(
    user_id: str = typer.Argument(..., help="User id (phone number)"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
):
    """Show the stored profile facts for a user."""
    from wa_agent.agent.api import build_stores
    from wa_agent.config.loader import load_config

    _, profiles = build_stores(load_config())
    profile = asyncio.run(profiles.get(user_id))
    facts = profile.facts() if profile else {}
    if as_json:
        console.print(json.dumps({"user_id": user_id, **facts}, indent=2, ensure_ascii=False))
        return
    if not profile:
        console.print(f"No stored profile for {user_id}.")
        return

    table = Table(title=f"Profile: {user_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in facts.items():
        table.add_row(key, value or "[dim]unknown[/dim]")
    console.print(table)


@app.command("metrics")
def metrics_cmd(
    hours: int = typer.Option(24, "--hours", "-w", help="Metrics window in hours"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON snapshot"),
):
    """Show runtime metrics snapshot."""
    from wa_agent.config.loader import load_config
    from wa_agent.observability.metrics import MetricsStore

    config = load_config()
    store = MetricsStore(config.metrics_path)
    snapshot = store.snapshot(hours=hours)

    if as_json:
        console.print(json.dumps(snapshot, indent=2, ensure_ascii=False))
        return

    llm = snapshot["llm"]
    tools = snapshot["tools"]
    messages = snapshot["messages"]

    console.print(f"{__logo__} Metrics ({snapshot['window_hours']}h)\n")
    console.print(f"Events file: {store.events_path}")
    console.print(
        f"LLM calls: {llm['calls']} | success: {llm['success_rate']}% | p95: {llm['latency_p95_ms']}ms"
    )
    console.print(
        f"Tool calls: {tools['calls']} | success: {tools['success_rate']}% | p95: {tools['latency_p95_ms']}ms"
    )
    outcomes = ", ".join(f"{k}: {v}" for k, v in sorted(messages["outcomes"].items())) or "-"
    console.print(f"Messages: {messages['count']} | outcomes: {outcomes}")

    if tools["by_tool"]:
        table = Table(title="Tools")
        table.add_column("Tool", style="cyan")
        table.add_column("Calls", justify="right")
        table.add_column("Errors", justify="right", style="red")
        for name, bucket in sorted(tools["by_tool"].items()):
            table.add_row(name, str(bucket["calls"]), str(bucket["errors"]))
        console.print(table)


@app.command()
def status():
    """Show wa-agent configuration status."""
    from wa_agent.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} {__brand__} Status\n")
    console.print(
        f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}"
    )
    console.print(f"Model: {config.agent.model}")
    provider = config.resolve_provider_name()
    console.print(
        f"Provider: {provider} {'[green]✓[/green]' if config.get_api_key() else '[dim]no api key[/dim]'}"
    )
    console.print(f"Storage: {config.storage.backend} ({config.database_path})")
    wa = config.whatsapp
    console.print(
        f"WhatsApp: {'[green]✓[/green]' if wa.token and wa.phone_number_id else '[dim]not configured[/dim]'}"
    )
    google = config.google
    google_ok = bool(google.access_token or (google.client_id and google.client_secret and google.refresh_token))
    console.print(f"Google Workspace: {'[green]✓[/green]' if google_ok else '[dim]not configured[/dim]'}")
    console.print(
        f"Transcription: {'[green]✓[/green]' if config.transcription.groq_api_key else '[dim]not configured[/dim]'}"
    )


if __name__ == "__main__":
    app()
