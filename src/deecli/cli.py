"""Command-line entry point for deecli."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
from pathlib import Path
from typing import Iterator

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.markdown import Markdown

from deecli.config import ClientConfig, debug_enabled, load_config
from deecli.core.context import ContextGovernor
from deecli.core.conversation import ConversationService
from deecli.events.bus import EventBus
from deecli.llm.client import AsyncChatClient
from deecli.llm.errors import APIError, display_message
from deecli.llm.lifecycle import ActivityTracker, ConnectionLifecycle
from deecli.types import ChatEvent, EventType, SourceFile, StreamEventKind

console = Console()

_HISTORY_PATH = Path.home() / ".config" / "deecli" / "history"

_HELP = """\
[bold]Commands[/bold]
  /analyze FILE...   review code quality, bugs and security
  /explain FILE...   explain what the code does
  /improve FILE...   suggest improvements
  /suggest FILE...   suggest which files to edit, given the conversation
  /clear             reset the conversation
  /help              show this help
  /quit, /exit       leave"""

_CODE_COMMANDS = {
    "/analyze": ("analyze_code", "Analysis of"),
    "/explain": ("explain_code", "Explanation of"),
    "/improve": ("improve_code", "Improvement suggestions for"),
}


@contextlib.contextmanager
def _cancel_on_interrupt(service: ConversationService) -> Iterator[None]:
    """Route Ctrl-C to the turn's cancel token while a turn runs."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, service.cancel)
    except (NotImplementedError, RuntimeError):
        # No signal handlers on this platform/loop; Ctrl-C aborts the process
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _show_error(error: BaseException) -> None:
    text = display_message(error)
    if text:
        console.print(f"[red]{text}[/red]")


# ---------------------------------------------------------------------------
# Event subscribers
# ---------------------------------------------------------------------------

def _on_tool_calls(event: ChatEvent) -> None:
    console.print()
    for call in event.data.get("tool_calls", []):
        func = call.get("function", {})
        console.print(f"[yellow]tool call[/yellow] {func.get('name')}({func.get('arguments')})")


def _on_cancelled(event: ChatEvent) -> None:
    if event.data.get("user_initiated"):
        console.print("\n[dim]Cancelled.[/dim]")


def _subscribe(bus: EventBus) -> None:
    bus.subscribe(EventType.TOOL_CALLS_READY, _on_tool_calls)
    bus.subscribe(EventType.TURN_CANCELLED, _on_cancelled)


# ---------------------------------------------------------------------------
# Turns and commands
# ---------------------------------------------------------------------------

async def _run_turn(service: ConversationService, prompt: str, stream: bool) -> None:
    start = time.monotonic()
    with _cancel_on_interrupt(service):
        if not stream:
            try:
                result = await service.send(prompt)
            except APIError as exc:
                _show_error(exc)
                return
            if not result.has_tool_calls:
                console.print(Markdown(result.content))
        else:
            async for event in service.stream(prompt):
                if event.kind is StreamEventKind.TEXT:
                    console.print(event.text, end="", markup=False, highlight=False)
                elif event.kind is StreamEventKind.ERROR:
                    console.print()
                    _show_error(event.error)
                elif event.kind is StreamEventKind.DONE:
                    console.print()
    console.print(f"[dim]({time.monotonic() - start:.1f}s)[/dim]")


def _load_files(paths: list[str]) -> list[SourceFile]:
    files = []
    for path in paths:
        try:
            files.append(SourceFile.read(path))
        except OSError as exc:
            console.print(f"[red]Cannot read {path}: {exc.strerror or exc}[/red]")
    return files


async def _run_code_command(
    service: ConversationService, command: str, paths: list[str],
) -> None:
    if not paths:
        console.print(f"[yellow]Usage: {command} FILE...[/yellow]")
        return
    files = _load_files(paths)
    if not files:
        return

    with _cancel_on_interrupt(service):
        try:
            if command == "/suggest":
                console.print(Markdown(await service.suggest_edits(files)))
                return
            method, title = _CODE_COMMANDS[command]
            for f in files:
                reply = await getattr(service, method)(f.content, f.path)
                console.print(Markdown(f"## {title} {f.path}\n\n{reply}"))
        except APIError as exc:
            _show_error(exc)


async def _repl(service: ConversationService, stream: bool) -> None:
    _HISTORY_PATH.parent.mkdir(parents=True, exist_ok=True)
    session: PromptSession[str] = PromptSession(history=FileHistory(str(_HISTORY_PATH)))
    console.print("[dim]Type /help for commands, /quit to exit[/dim]\n")

    while True:
        try:
            user_input = (await session.prompt_async("> ")).strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye![/dim]")
            break

        if not user_input:
            continue
        command, *args = user_input.split()
        if command in ("/quit", "/exit"):
            console.print("[dim]Goodbye![/dim]")
            break
        if command == "/clear":
            service.clear_history()
            console.print("[dim]Conversation cleared.[/dim]")
            continue
        if command == "/help":
            console.print(_HELP)
            continue
        if command in _CODE_COMMANDS or command == "/suggest":
            await _run_code_command(service, command, args)
            continue

        await _run_turn(service, user_input, stream)


async def _main(
    config: ClientConfig, prompt: str | None, warmup: bool,
) -> None:
    profile = config.active_profile
    if not profile.api_key:
        console.print(
            "[yellow]No API key configured. Set DEEPSEEK_API_KEY or add "
            "api_key to your config file.[/yellow]"
        )

    activity = ActivityTracker()
    client = AsyncChatClient(
        profile,
        max_retries=config.max_retries,
        base_delay=config.base_delay,
        max_delay=config.max_delay,
        activity=activity,
    )
    lifecycle = ConnectionLifecycle(
        client,
        interval=config.idle_check_interval,
        idle_threshold=config.idle_threshold,
    )
    bus = EventBus()
    _subscribe(bus)
    service = ConversationService(
        client,
        ContextGovernor(config.max_context_size, config.history_window),
        event_bus=bus,
    )

    async with lifecycle:
        if warmup and profile.api_key:
            error = await lifecycle.warm_up()
            if error is not None:
                console.print(f"[dim]Warm-up failed: {error.user_message}[/dim]")

        if prompt:
            await _run_turn(service, prompt, config.stream)
        else:
            console.print(
                f"[bold cyan]deecli[/bold cyan] [dim]model: {profile.model}[/dim]"
            )
            await _repl(service, config.stream)


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to config YAML (default: ./deecli.yaml or ~/.config/deecli/config.yaml)")
@click.option("--profile", "-p", "profile_name", default=None, help="Profile to use")
@click.option("--model", "-m", default=None, help="Override the profile's model")
@click.option("--no-stream", is_flag=True, help="Wait for the full response instead of streaming")
@click.option("--no-warmup", is_flag=True, help="Skip the connection warm-up request")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.argument("prompt", required=False)
def main(config_path: str | None, profile_name: str | None, model: str | None,
         no_stream: bool, no_warmup: bool, verbose: bool, prompt: str | None):
    """deecli - chat with DeepSeek models from the terminal.

    With PROMPT, run one turn and exit; otherwise start an interactive session.
    """
    if verbose or debug_enabled():
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    config = load_config(config_path)
    if profile_name:
        if profile_name not in config.profiles:
            raise click.BadParameter(
                f"unknown profile {profile_name!r} "
                f"(available: {', '.join(config.profiles)})",
                param_hint="--profile",
            )
        config.profile = profile_name
    if model:
        config.active_profile.model = model
    if no_stream:
        config.stream = False

    asyncio.run(_main(config, prompt, warmup=not no_warmup))


if __name__ == "__main__":
    main()
