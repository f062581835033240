"""
gemini-chat CLI: interactive chat, one-shot prompts, history and settings.

Registered as the ``gemini-chat`` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import shlex
import signal
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import click

from .client import GeminiClient
from .exceptions import GeminiError
from .history import ChatHistoryStore, HistoryStoreError, export_jsonl, export_markdown
from .models import ChatRole, ChatThread, ChatThreadSummary, ConnectionState, SafetyPreset
from .session import ChatSession
from .settings import (
    API_KEY_ACCOUNT,
    API_KEY_ENV_VAR,
    MODEL_PREFERENCE_KEY,
    SAFETY_PRESET_PREFERENCE_KEY,
    SYSTEM_PROMPT_PREFERENCE_KEY,
    LocalStore,
    SettingsError,
    app_data_dir,
    configure_logging,
    effective_model,
    history_path,
    settings_path,
)

T = TypeVar("T")

EXPORT_FORMATS = ("md", "jsonl")

SLASH_HELP = """\
Commands:
  /help                      Show this help
  /new                       Start a new chat
  /history [query]           List chats (optionally filtered)
  /open <n>                  Open chat number n from /history
  /delete <n>                Delete chat number n from /history
  /model [name]              Show or switch the model
  /models                    Check the API key and list models
  /export [md|jsonl] [path]  Export the current chat
  /quit                      Leave (Ctrl-D works too)

Ctrl-C while a reply is streaming stops it."""


@dataclass
class CliState:
    data_dir: Path


# ── Helpers ───────────────────────────────────────────────────────────────────


def _local_store(state: CliState) -> LocalStore:
    return LocalStore(settings_path(state.data_dir))


def _build_session(state: CliState, client: GeminiClient, api_key: str | None) -> ChatSession:
    session = ChatSession(client, _local_store(state), ChatHistoryStore(history_path(state.data_dir)))
    if api_key:
        session.api_key = api_key
    return session


@contextlib.asynccontextmanager
async def _session_scope(state: CliState, api_key: str | None = None) -> AsyncIterator[ChatSession]:
    async with GeminiClient() as client:
        session = _build_session(state, client, api_key)
        try:
            yield session
        finally:
            await session.aclose()


def _run_with_session(
    state: CliState,
    handler: Callable[[ChatSession], Awaitable[T]],
    api_key: str | None = None,
) -> T:
    async def runner() -> T:
        async with _session_scope(state, api_key) as session:
            return await handler(session)

    return asyncio.run(runner())


class ReplyPrinter:
    """Session listener that writes assistant text to stdout as it grows."""

    def __init__(self) -> None:
        self._message_id = None
        self._printed = ""
        self._line_open = False
        self.printed_any = False

    def __call__(self, session: ChatSession) -> None:
        if not session.is_sending or not session.messages:
            return
        last = session.messages[-1]
        if last.role is not ChatRole.ASSISTANT:
            return
        if last.id != self._message_id:
            self._message_id = last.id
            self._printed = ""

        text = last.text
        if not text.startswith(self._printed):
            # Rewritten reply (full-reply fallback): print it again on its own line.
            self._printed = ""
        if len(text) <= len(self._printed):
            return
        if not self._printed:
            if self._line_open:
                click.echo()
            click.secho(f"{last.model_name or 'gemini'}> ", fg="cyan", nl=False)
        click.echo(text[len(self._printed) :], nl=False)
        self._printed = text
        self._line_open = True
        self.printed_any = True

    def finish(self) -> None:
        if self._line_open:
            click.echo()
        self._message_id = None
        self._printed = ""
        self._line_open = False


@contextlib.contextmanager
def _interrupt_cancels_reply(session: ChatSession) -> Iterator[None]:
    """Route Ctrl-C to ``cancel_response`` while a reply is in flight."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel_response)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        installed = False
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _send_and_render(session: ChatSession, printer: ReplyPrinter) -> bool:
    """Send the current draft, streaming the reply; returns True if any reply text arrived."""
    task = session.start_send()
    if task is None:
        return False

    printer.printed_any = False
    with _interrupt_cancels_reply(session):
        await task
    printer.finish()

    if session.error_message:
        click.secho(session.error_message, fg="yellow", err=True)
    return printer.printed_any


def _summary_at(session: ChatSession, number: int) -> ChatThreadSummary:
    if number < 1 or number > len(session.chat_history):
        raise click.BadParameter(
            f"no chat number {number} (there are {len(session.chat_history)})",
            param_hint="'N'",
        )
    return session.chat_history[number - 1]


def _print_history(session: ChatSession, summaries: list[ChatThreadSummary]) -> None:
    if not summaries:
        click.echo("No chats found.")
        return
    for summary in summaries:
        number = session.chat_history.index(summary) + 1
        marker = "*" if summary.id == session.current_chat_id else " "
        stamp = summary.updated_at.astimezone().strftime("%Y-%m-%d %H:%M")
        click.echo(f"{marker}{number:>3}. {summary.title}  ({stamp})")
        click.secho(f"       {summary.preview}", dim=True)


def _print_thread(thread: ChatThread | None) -> None:
    if thread is None or thread.is_empty:
        click.echo("(empty chat)")
        return
    click.secho(f"# {thread.title}", bold=True)
    for message in thread.messages:
        if message.role is ChatRole.USER:
            click.secho("you> ", fg="green", nl=False)
        else:
            click.secho(f"{message.model_name or 'gemini'}> ", fg="cyan", nl=False)
        click.echo(message.text)


def _print_models(session: ChatSession) -> None:
    status = session.connection_status
    color = "green" if status.state is ConnectionState.CONNECTED else "red"
    click.secho(status.label, fg=color)
    if status.state is ConnectionState.FAILED:
        click.secho(status.message, fg="red", err=True)
    for name in session.available_models:
        marker = "*" if name == session.model else " "
        click.echo(f" {marker} {name}")


def _default_export_path(thread: ChatThread, fmt: str) -> Path:
    slug = re.sub(r"[^A-Za-z0-9]+", "-", thread.title).strip("-").lower() or "chat"
    return Path.cwd() / f"{slug}.{fmt}"


def _export_thread(thread: ChatThread, fmt: str, output: Path | None) -> Path:
    target = output or _default_export_path(thread, fmt)
    if fmt == "jsonl":
        export_jsonl(thread, target)
    else:
        export_markdown(thread, target)
    return target


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="gemini-chat")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for chat history and settings (default: per-user app data).",
)
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    help="Log level name or number; logs go to stderr.",
)
@click.pass_context
def cli(ctx: click.Context, data_dir: Path | None, log_level: str) -> None:
    """Gemini Chat: streaming Gemini conversations from the terminal."""
    configure_logging(log_level)
    ctx.obj = CliState(data_dir=data_dir or app_data_dir())


# ── Chat ──────────────────────────────────────────────────────────────────────


async def _run_slash_command(session: ChatSession, line: str) -> bool:
    """Handle one /command; returns False when the loop should end."""
    try:
        parts = shlex.split(line)
    except ValueError as exc:
        click.secho(f"Could not parse command: {exc}", fg="red", err=True)
        return True

    command, args = parts[0].lower(), parts[1:]
    if command in ("/quit", "/exit"):
        return False

    if command == "/help":
        click.echo(SLASH_HELP)
    elif command == "/new":
        session.start_new_chat()
        click.echo("Started a new chat.")
    elif command == "/history":
        _print_history(session, session.search_history(" ".join(args)))
    elif command in ("/open", "/delete"):
        if len(args) != 1 or not args[0].isdigit():
            click.secho(f"Usage: {command} <n>", fg="yellow")
            return True
        try:
            summary = _summary_at(session, int(args[0]))
        except click.BadParameter as exc:
            click.secho(exc.format_message(), fg="yellow")
            return True
        if command == "/open":
            session.open_chat(summary.id)
            _print_thread(session.current_thread())
        else:
            session.delete_chat(summary.id)
            click.echo(f"Deleted: {summary.title}")
    elif command == "/model":
        if args:
            session.model = args[0]
        click.echo(f"Model: {session.model}")
    elif command == "/models":
        await session.load_available_models()
        _print_models(session)
    elif command == "/export":
        fmt = args[0].lower() if args else "md"
        if fmt not in EXPORT_FORMATS:
            click.secho("Usage: /export [md|jsonl] [path]", fg="yellow")
            return True
        output = Path(args[1]).expanduser() if len(args) > 1 else None
        thread = session.current_thread()
        if thread is None or thread.is_empty:
            click.echo("Nothing to export yet.")
            return True
        target = _export_thread(thread, fmt, output)
        click.echo(f"Exported to {target}")
    else:
        click.secho(f"Unknown command: {command}. Type /help for commands.", fg="yellow")

    if session.error_message:
        click.secho(session.error_message, fg="yellow", err=True)
    return True


@cli.command()
@click.option("--api-key", envvar=API_KEY_ENV_VAR, default=None, help="Gemini API key.")
@click.option("--new", "new_chat", is_flag=True, help="Start in a new chat instead of the latest one.")
@click.pass_obj
def chat(state: CliState, api_key: str | None, new_chat: bool) -> None:
    """Interactive chat. Type /help for commands.

    \b
    Examples:
        gemini-chat chat
        gemini-chat chat --new
        GEMINI_API_KEY=... gemini-chat chat
    """
    printer = ReplyPrinter()

    with asyncio.Runner() as runner:
        client = GeminiClient()
        session = _build_session(state, client, api_key)
        unsubscribe = session.subscribe(printer)
        try:
            if new_chat:
                session.start_new_chat()
            if session.error_message:
                click.secho(session.error_message, fg="yellow", err=True)
            click.secho(f"Gemini Chat · {session.model} · /help for commands", bold=True)
            if session.messages:
                _print_thread(session.current_thread())

            while True:
                try:
                    line = click.prompt("you", prompt_suffix="> ", default="", show_default=False)
                except click.Abort:
                    click.echo()
                    break

                text = line.strip()
                if not text:
                    continue
                if text.startswith("/"):
                    if not runner.run(_run_slash_command(session, text)):
                        break
                    continue

                if not session.api_key.strip():
                    click.secho(
                        f"No API key. Run 'gemini-chat config set-key' or set {API_KEY_ENV_VAR}.",
                        fg="red",
                        err=True,
                    )
                    continue
                session.draft = text
                runner.run(_send_and_render(session, printer))
        finally:
            unsubscribe()
            runner.run(session.aclose())
            runner.run(client.aclose())


@cli.command()
@click.argument("prompt", nargs=-1, required=True)
@click.option("--api-key", envvar=API_KEY_ENV_VAR, default=None, help="Gemini API key.")
@click.option("--new", "new_chat", is_flag=True, help="Ask in a new chat instead of the latest one.")
@click.pass_obj
def ask(state: CliState, prompt: tuple[str, ...], api_key: str | None, new_chat: bool) -> None:
    """Send one PROMPT and stream the reply to stdout."""
    text = " ".join(prompt)

    async def handler(session: ChatSession) -> bool:
        if new_chat:
            session.start_new_chat()
        session.draft = text
        if not session.api_key.strip():
            await session.send()
            click.secho(session.error_message or "No API key.", fg="red", err=True)
            return False
        printer = ReplyPrinter()
        unsubscribe = session.subscribe(printer)
        try:
            return await _send_and_render(session, printer)
        finally:
            unsubscribe()

    if not _run_with_session(state, handler, api_key):
        raise SystemExit(1)


@cli.command()
@click.option("--api-key", envvar=API_KEY_ENV_VAR, default=None, help="Gemini API key.")
@click.option("--select", is_flag=True, help="Switch to the first listed model if the current one is missing.")
@click.pass_obj
def models(state: CliState, api_key: str | None, select: bool) -> None:
    """Check the API key and list models that support generateContent."""

    async def handler(session: ChatSession) -> bool:
        await session.load_available_models(auto_select=select)
        if session.connection_status.state is ConnectionState.NOT_CONFIGURED:
            click.secho(session.error_message or "Not configured", fg="red", err=True)
            return False
        _print_models(session)
        return session.connection_status.state is ConnectionState.CONNECTED

    if not _run_with_session(state, handler, api_key):
        raise SystemExit(1)


# ── History ───────────────────────────────────────────────────────────────────


@cli.group()
def history() -> None:
    """Browse, delete and export saved chats."""


@history.command("list")
@click.option("--search", "query", default="", help="Filter by title or last message.")
@click.pass_obj
def history_list(state: CliState, query: str) -> None:
    """List saved chats, most recent first."""

    async def handler(session: ChatSession) -> None:
        _print_history(session, session.search_history(query))

    _run_with_session(state, handler)


@history.command("show")
@click.argument("number", type=int)
@click.pass_obj
def history_show(state: CliState, number: int) -> None:
    """Print chat NUMBER from 'history list'."""

    async def handler(session: ChatSession) -> None:
        summary = _summary_at(session, number)
        _print_thread(next(thread for thread in session.threads if thread.id == summary.id))

    _run_with_session(state, handler)


@history.command("delete")
@click.argument("number", type=int)
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
def history_delete(state: CliState, number: int, yes: bool) -> None:
    """Delete chat NUMBER from 'history list'."""

    async def handler(session: ChatSession) -> None:
        summary = _summary_at(session, number)
        if not yes:
            click.confirm(f"Delete '{summary.title}'?", abort=True)
        session.delete_chat(summary.id)
        click.echo(f"Deleted: {summary.title}")

    _run_with_session(state, handler)


@history.command("export")
@click.argument("number", type=int)
@click.option(
    "--format", "fmt", type=click.Choice(EXPORT_FORMATS), default="md", show_default=True
)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_obj
def history_export(state: CliState, number: int, fmt: str, output: Path | None) -> None:
    """Export chat NUMBER as Markdown or JSONL."""

    async def handler(session: ChatSession) -> Path:
        summary = _summary_at(session, number)
        thread = next(thread for thread in session.threads if thread.id == summary.id)
        return _export_thread(thread, fmt, output)

    target = _run_with_session(state, handler)
    click.echo(f"Exported to {target}")


# ── Config ────────────────────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Show and change stored settings."""


@config.command("show")
@click.pass_obj
def config_show(state: CliState) -> None:
    """Print the current settings."""
    store = _local_store(state)
    try:
        key = store.read_string(API_KEY_ACCOUNT) or ""
        model = effective_model(store.read_string(MODEL_PREFERENCE_KEY))
        preset = SafetyPreset.from_value(store.read_string(SAFETY_PRESET_PREFERENCE_KEY))
        prompt = store.read_string(SYSTEM_PROMPT_PREFERENCE_KEY) or ""
    except SettingsError as exc:
        raise click.ClickException(str(exc)) from exc

    masked = f"…{key[-4:]}" if len(key) > 4 else ("set" if key else "not set")
    click.echo(f"Data directory: {state.data_dir}")
    click.echo(f"API key:        {masked}")
    click.echo(f"Model:          {model}")
    click.echo(f"Safety:         {preset.display_name} ({preset.description})")
    click.echo(f"System prompt:  {prompt.strip() or '(none)'}")


@config.command("set-key")
@click.argument("api_key", required=False)
@click.pass_obj
def config_set_key(state: CliState, api_key: str | None) -> None:
    """Store the Gemini API key (prompted when omitted)."""
    value = api_key if api_key is not None else click.prompt("Gemini API key", hide_input=True)
    trimmed = value.strip()
    if not trimmed:
        raise click.BadParameter("API key cannot be blank.", param_hint="'API_KEY'")
    try:
        _local_store(state).save_string(trimmed, API_KEY_ACCOUNT)
    except SettingsError as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho("API key saved.", fg="green")


@config.command("clear-key")
@click.pass_obj
def config_clear_key(state: CliState) -> None:
    """Remove the stored API key."""
    try:
        _local_store(state).delete_string(API_KEY_ACCOUNT)
    except SettingsError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("API key removed.")


@config.command("set-model")
@click.argument("model")
@click.pass_obj
def config_set_model(state: CliState, model: str) -> None:
    """Set the default MODEL."""
    try:
        _local_store(state).save_string(model.strip(), MODEL_PREFERENCE_KEY)
    except SettingsError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Model: {effective_model(model)}")


@config.command("set-system-prompt")
@click.argument("prompt")
@click.pass_obj
def config_set_system_prompt(state: CliState, prompt: str) -> None:
    """Set the system PROMPT sent with every request ("" clears it)."""
    try:
        _local_store(state).save_string(prompt, SYSTEM_PROMPT_PREFERENCE_KEY)
    except SettingsError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("System prompt cleared." if not prompt.strip() else "System prompt saved.")


@config.command("set-safety")
@click.argument("preset", type=click.Choice([preset.value for preset in SafetyPreset]))
@click.pass_obj
def config_set_safety(state: CliState, preset: str) -> None:
    """Set the safety PRESET applied to every request."""
    chosen = SafetyPreset(preset)
    try:
        _local_store(state).save_string(chosen.value, SAFETY_PRESET_PREFERENCE_KEY)
    except SettingsError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Safety: {chosen.display_name} ({chosen.description})")


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except (GeminiError, SettingsError, HistoryStoreError) as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
