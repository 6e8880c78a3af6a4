"""Main CLI entry point - clean subcommand architecture."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, NoReturn, Optional, TypeVar

import typer
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from codebridge.core.configs import get_client_config, load_raw_config
from codebridge.orchestrator import ModelStore, Session, SessionOrchestrator
from codebridge.sidecar.backend import BackendClient
from codebridge.sidecar.client import SidecarClient

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="codebridge - drive OpenCode chat sessions through a stdio sidecar.",
)

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


# ============================================================================
# Shared Setup
# ============================================================================

def _fail(message: str) -> NoReturn:
    err_console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def _build_orchestrator(workspace: Path, assume_yes: bool = False) -> SessionOrchestrator:
    """
    Load config and wire client + orchestrator. Exits on error.

    The sidecar itself is spawned lazily on the first call.
    """
    try:
        client_config = get_client_config(load_raw_config())
    except ValueError as e:
        _fail(f"Error loading configuration: {e}")

    client = SidecarClient(client_config)
    confirm = (lambda _question: True) if assume_yes else None
    return SessionOrchestrator(
        client,
        str(workspace.resolve()),
        store=ModelStore(client_config.storage_path),
        confirm=confirm,
    )


def _run(
    workspace: Path,
    action: Callable[[SessionOrchestrator], Awaitable[T]],
    assume_yes: bool = False,
) -> T:
    """Initialize an orchestrator, run ``action`` against it, then close the sidecar."""

    async def runner() -> T:
        orchestrator = _build_orchestrator(workspace, assume_yes)
        try:
            await orchestrator.initialize()
            if orchestrator.error:
                _fail(orchestrator.error)
            return await action(orchestrator)
        finally:
            await orchestrator.rpc.close()

    return asyncio.run(runner())


def _find_session(orchestrator: SessionOrchestrator, session_path: str) -> Session:
    for session in orchestrator.sessions:
        if session.path == session_path:
            return session
    _fail(f"No session '{session_path}' in {orchestrator.workspace}")


WorkspaceOption = typer.Option(
    Path("."), "--workspace", "-w", help="Repository the sessions belong to"
)


# ============================================================================
# Commands
# ============================================================================

@app.command()
def sidecar(
    directory: Optional[str] = typer.Option(None, "--directory", help="Backend working directory"),
    no_embed: bool = typer.Option(False, "--no-embed", help="Attach to an existing server"),
) -> None:
    """
    Run the sidecar: JSON commands on stdin, JSON responses on stdout.

    Logs go to stderr. Stops on EOF, SIGTERM or SIGINT.
    """
    from codebridge.core.configs import get_sidecar_config
    from codebridge.sidecar.server import run_sidecar

    try:
        config = get_sidecar_config(load_raw_config())
    except ValueError as e:
        _fail(f"Error loading configuration: {e}")
    if directory:
        config.directory = directory
    if no_embed:
        config.embed_server = False
    run_sidecar(config)


@app.command()
def sessions(workspace: Path = WorkspaceOption) -> None:
    """List the workspace's sessions, newest first."""

    async def show(orchestrator: SessionOrchestrator) -> None:
        table = Table(title=f"Sessions for {orchestrator.workspace}")
        table.add_column("", width=1)
        table.add_column("Path")
        table.add_column("Name")
        table.add_column("Model")
        table.add_column("Created")

        current = orchestrator.current_session.path if orchestrator.current_session else None
        for session in orchestrator.sorted_sessions:
            table.add_row(
                "*" if session.path == current else "",
                session.path,
                session.name,
                session.model or "-",
                orchestrator.format_session_time(session.created),
            )
        console.print(table)

    _run(workspace, show)


@app.command()
def ask(
    message: str = typer.Argument(..., help="Prompt to send"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Session path to use"),
    new: bool = typer.Option(False, "--new", help="Start a new session first"),
    stream: bool = typer.Option(
        False, "--stream", help="Queue the prompt and follow the server's event stream"
    ),
    workspace: Path = WorkspaceOption,
) -> None:
    """
    Send a prompt to a session and print the reply.

    Example: codebridge ask "summarize the last commit"
    """

    async def send(orchestrator: SessionOrchestrator) -> None:
        if new:
            await orchestrator.create_session()
        elif session:
            if not await orchestrator.select_session(_find_session(orchestrator, session)):
                _fail(orchestrator.error)
        if orchestrator.error:
            _fail(orchestrator.error)

        with console.status(f"Waiting for {orchestrator.selected_model}..."):
            if stream:
                reply = await _send_streaming(orchestrator, message)
            else:
                reply = await orchestrator.send_prompt(message)
        if reply is None:
            _fail(orchestrator.error or "Nothing was sent")
        console.print(reply)

    _run(workspace, send)


async def _send_streaming(orchestrator: SessionOrchestrator, message: str) -> Optional[str]:
    """Queue ``message`` and apply stream events until the session goes idle."""
    backend = BackendClient(orchestrator.server_url, orchestrator.workspace)
    following = asyncio.create_task(orchestrator.follow_events(backend.events()))
    try:
        if not await orchestrator.send_prompt_async(message):
            return None
        await orchestrator.wait_for_reply()
    finally:
        following.cancel()
        await asyncio.gather(following, return_exceptions=True)
        await backend.aclose()

    if orchestrator.error:
        return None
    return orchestrator.last_reply


@app.command()
def delete(
    session_path: str = typer.Argument(..., help="Path of the session to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    workspace: Path = WorkspaceOption,
) -> None:
    """Delete a session."""

    async def remove(orchestrator: SessionOrchestrator) -> None:
        target = _find_session(orchestrator, session_path)
        await orchestrator.delete_session(target)
        if orchestrator.error:
            _fail(orchestrator.error)
        if any(s.path == session_path for s in orchestrator.sessions):
            err_console.print("Cancelled by user.")
            raise typer.Exit(1)
        console.print(f"[green]Deleted[/green] {target.name}")

    _run(workspace, remove, assume_yes=yes)


@app.command()
def models(
    set_model: Optional[str] = typer.Option(None, "--set", help="Model to select (provider/model)"),
    workspace: Path = WorkspaceOption,
) -> None:
    """List available models and show or change the selected one."""

    async def show(orchestrator: SessionOrchestrator) -> None:
        if set_model:
            if set_model not in orchestrator.available_models:
                _fail(f"Unknown model '{set_model}'")
            orchestrator.set_selected_model(set_model)

        table = Table(title="Models")
        table.add_column("Provider")
        table.add_column("Model")
        for provider in orchestrator.providers:
            for model in provider.models:
                marker = " [bold green](selected)[/bold green]" if model == orchestrator.selected_model else ""
                table.add_row(provider.name, f"{model}{marker}")
        console.print(table)
        console.print(f"Selected: [bold]{orchestrator.selected_model}[/bold]")

    _run(workspace, show)


@app.command()
def auth(provider: str = typer.Argument(..., help="Provider id, e.g. openai")) -> None:
    """Register an API key for a provider with the backend."""
    api_key = Prompt.ask(f"API key for {provider}", password=True)
    if not api_key.strip():
        _fail("An API key is required")

    async def register() -> bool:
        client = SidecarClient(get_client_config(load_raw_config()))
        try:
            return await client.set_auth(provider, api_key.strip())
        finally:
            await client.close()

    try:
        ok = asyncio.run(register())
    except Exception as e:
        _fail(f"Failed to set API key: {e}")
    if not ok:
        _fail("Backend rejected the API key")
    console.print(f"[green]Saved API key for {provider}[/green]")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
