"""
Command Line Interface for CivicEase.

Upload an official letter or form, get a plain-language summary, an urgency
rating, a step-by-step checklist and a draft reply, then ask follow-up
questions. Every analysis is kept in a local library.
"""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from civicease import __version__
from civicease.ai.client import get_gateway
from civicease.config import (
    APIKeyInvalidError,
    APIKeyManager,
    AppConfig,
    ConfigError,
    KeySource,
    load_config,
)
from civicease.core.images import PreviewFactory
from civicease.core.library import FileLibraryStorage, LibraryStore
from civicease.core.models import ChatMessage, ChatRole, StoredDocument, UrgencyLevel
from civicease.core.session import (
    DocumentNotFoundError,
    DocumentSessionController,
    UnsupportedFileError,
)
from civicease.utils.logging import setup_logging

logger = logging.getLogger(__name__)

console = Console()

URGENCY_STYLES = {
    UrgencyLevel.HIGH: "bold red",
    UrgencyLevel.MEDIUM: "bold yellow",
    UrgencyLevel.LOW: "bold green",
    UrgencyLevel.UNKNOWN: "dim",
}

EXIT_WORDS = {"exit", "quit"}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def print_header(text: str) -> None:
    """Print a styled header."""
    console.print()
    console.print(Panel(text, style="bold blue", expand=False))
    console.print()


def print_success(text: str) -> None:
    console.print(f"[bold green]✓[/bold green] {text}")


def print_warning(text: str) -> None:
    console.print(f"[bold yellow]⚠[/bold yellow] {text}")


def print_error(text: str) -> None:
    console.print(f"[bold red]✗[/bold red] {text}")


def print_info_panel(title: str, content: str, border_style: str = "blue") -> None:
    console.print(Panel(content, title=title, border_style=border_style))


def format_urgency(urgency: UrgencyLevel) -> str:
    style = URGENCY_STYLES[urgency]
    return f"[{style}]{urgency.value}[/{style}]"


def print_analysis(doc: StoredDocument) -> None:
    """Print a document's analysis: summary, urgency, checklist and reply."""
    analysis = doc.analysis
    console.print(f"[bold]{doc.file_name}[/bold]  ({doc.created_at:%Y-%m-%d %H:%M})")
    console.print(f"Urgency: {format_urgency(analysis.urgency)}")
    console.print()
    print_info_panel("Summary", analysis.summary)

    if analysis.action_steps:
        checklist = "\n".join(
            f"{number}. {step}" for number, step in enumerate(analysis.action_steps, start=1)
        )
    else:
        checklist = "No action needed."
    print_info_panel("What to do", checklist, border_style="green")
    print_info_panel("Draft reply", analysis.draft_reply, border_style="cyan")


def print_chat_message(message: ChatMessage) -> None:
    if message.role is ChatRole.USER:
        console.print(f"[bold cyan]You:[/bold cyan] {message.text}")
    else:
        console.print(f"[bold magenta]CivicEase:[/bold magenta] {message.text}")


def print_library_table(documents: list[StoredDocument]) -> None:
    table = Table(title="Library")
    table.add_column("Date", style="cyan", no_wrap=True)
    table.add_column("Urgency")
    table.add_column("File")
    table.add_column("Summary", overflow="ellipsis", max_width=50)
    table.add_column("ID", style="dim", no_wrap=True)

    for doc in documents:
        table.add_row(
            f"{doc.created_at:%Y-%m-%d}",
            format_urgency(doc.analysis.urgency),
            doc.file_name,
            doc.analysis.summary,
            doc.id,
        )
    console.print(table)


def build_store(config: AppConfig) -> LibraryStore:
    storage = FileLibraryStorage(config.library_path, quota_bytes=config.storage.quota_bytes)
    return LibraryStore(storage)


def build_controller(config: AppConfig) -> DocumentSessionController:
    """Wire a controller to the on-disk library and the Gemini gateway."""
    return DocumentSessionController(
        build_store(config),
        get_gateway(config),
        preview_factory=PreviewFactory(max_dim=config.storage.preview_max_dim),
        max_upload_bytes=config.storage.max_upload_bytes,
    )


# =============================================================================
# MAIN CLI GROUP
# =============================================================================


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug mode")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Custom config file")
@click.version_option(__version__, prog_name="civicease")
@click.pass_context
def civicease(ctx, verbose, debug, config_path):
    """
    CivicEase - understand official letters and forms.

    Analyze a photo or scan of a document to get a summary, an urgency
    rating, a checklist of what to do and a draft reply.
    """
    config = load_config(config_path)
    debug = debug or config.debug
    verbose = verbose or config.verbose

    if debug:
        setup_logging(level="DEBUG", log_file=config.log_dir / "civicease.log")
    elif verbose:
        setup_logging(level="INFO")
    else:
        setup_logging(level="WARNING")

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["debug"] = debug


# =============================================================================
# ANALYZE COMMAND
# =============================================================================


@civicease.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--preview", is_flag=True, help="Show where the preview thumbnail was written")
@click.pass_context
def analyze(ctx, file, preview):
    """
    Analyze a document image and save it to the library.

    Example:
        civicease analyze ./tax_notice.jpg
    """
    config = ctx.obj["config"]
    controller = build_controller(config)

    try:
        controller.select_file(file)
    except UnsupportedFileError as e:
        print_error(str(e))
        sys.exit(1)

    if preview and controller.pending is not None:
        console.print(f"Preview: {controller.pending.preview.path}")

    with console.status(f"Analyzing {file.name}..."):
        doc = asyncio.run(controller.analyze())

    if doc is None:
        print_error(controller.error or "Analysis failed")
        controller.clear()
        sys.exit(1)

    print_analysis(doc)
    print_success(f"Saved to library as {doc.id}")
    console.print(f"Ask a question with: civicease chat {doc.id}")
    controller.clear()


# =============================================================================
# LIBRARY GROUP
# =============================================================================


@civicease.group()
def library():
    """Browse and manage analyzed documents."""
    pass


@library.command("list")
@click.pass_context
def list_documents(ctx):
    """List saved documents, newest first."""
    documents = build_store(ctx.obj["config"]).list()
    if not documents:
        console.print("Your library is empty. Analyze a document to get started.")
        return
    print_library_table(documents)


@library.command()
@click.argument("doc_id")
@click.pass_context
def show(ctx, doc_id):
    """Show a saved document's analysis and conversation."""
    doc = build_store(ctx.obj["config"]).get(doc_id)
    if doc is None:
        print_error(f"No document with id {doc_id}")
        sys.exit(1)

    print_analysis(doc)
    if doc.chat_history:
        console.print("\n[bold]Conversation[/bold]")
        for message in doc.chat_history:
            print_chat_message(message)


@library.command()
@click.argument("doc_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def delete(ctx, doc_id, yes):
    """Delete a saved document."""
    store = build_store(ctx.obj["config"])
    doc = store.get(doc_id)
    if doc is None:
        print_error(f"No document with id {doc_id}")
        sys.exit(1)

    if not yes and not Confirm.ask(f"Delete {doc.file_name}?", default=False, console=console):
        return

    if not store.delete(doc_id):
        print_error("Could not update the library")
        sys.exit(1)
    print_success(f"Deleted {doc.file_name}")


# =============================================================================
# CHAT COMMAND
# =============================================================================


@civicease.command()
@click.argument("doc_id")
@click.argument("message", required=False)
@click.pass_context
def chat(ctx, doc_id, message):
    """
    Ask follow-up questions about a saved document.

    With MESSAGE, asks one question and exits. Without it, starts a
    conversation; an empty line or 'exit' ends it.

    Example:
        civicease chat 3f2c... "What happens if I miss the deadline?"
    """
    controller = build_controller(ctx.obj["config"])
    try:
        doc = controller.select_from_library(doc_id)
    except DocumentNotFoundError:
        print_error(f"No document with id {doc_id}")
        sys.exit(1)

    try:
        if message is not None:
            if not _ask(controller, message):
                sys.exit(1)
            return

        print_header(f"Chatting about {doc.file_name}")
        for previous in controller.chat_history:
            print_chat_message(previous)

        while True:
            text = click.prompt("You", default="", show_default=False)
            if not text.strip() or text.strip().lower() in EXIT_WORDS:
                break
            _ask(controller, text)
    finally:
        controller.clear()


def _ask(controller: DocumentSessionController, text: str) -> bool:
    try:
        with console.status("Thinking..."):
            reply = asyncio.run(controller.send_message(text))
    except ValueError as e:
        print_error(str(e))
        return False

    if reply is None:
        print_warning("No reply received")
        return False
    print_chat_message(reply)
    return True


# =============================================================================
# CONFIG GROUP
# =============================================================================


@civicease.group()
def config():
    """Manage configuration and the API key."""
    pass


@config.command("show")
@click.pass_context
def show_config(ctx):
    """Display current configuration."""
    cfg = ctx.obj["config"]
    manager = APIKeyManager()
    key_found = manager.get_key() is not None

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Model", cfg.ai.model_name)
    table.add_row("Temperature", str(cfg.ai.temperature))
    table.add_row("Timeout", f"{cfg.ai.timeout_seconds}s")
    table.add_row("Library", str(cfg.library_path))
    quota = cfg.storage.quota_bytes
    table.add_row("Library quota", "unlimited" if quota is None else f"{quota / (1024 * 1024):.1f} MB")
    table.add_row("Max upload", f"{cfg.storage.max_upload_bytes / (1024 * 1024):.1f} MB")
    table.add_row(
        "API Key",
        f"[CONFIGURED] ({manager.get_key_source().value})" if key_found else "[NOT SET]",
    )
    console.print(table)


@config.command("check-key")
def check_key():
    """Check whether a Gemini API key is configured."""
    manager = APIKeyManager()
    if manager.get_key() is None:
        print_error("No API key found")
        console.print(
            f"Set {APIKeyManager.ENV_VAR_NAME} or run: civicease config set-key"
        )
        sys.exit(1)

    source = manager.get_key_source()
    where = "environment variable" if source is KeySource.ENVIRONMENT else "system keyring"
    print_success(f"API key found in {where}")


@config.command("set-key")
def set_key():
    """Store the Gemini API key in the system keyring."""
    api_key = click.prompt("Enter your Gemini API key", hide_input=True)
    try:
        APIKeyManager().store_key(api_key)
    except APIKeyInvalidError as e:
        print_error(str(e))
        sys.exit(1)
    except ConfigError as e:
        print_error(str(e))
        sys.exit(1)

    print_success("API key stored in system keyring")


@config.command("delete-key")
def delete_key():
    """Remove the API key from the system keyring."""
    try:
        deleted = APIKeyManager().delete_key()
    except ConfigError as e:
        print_error(str(e))
        sys.exit(1)

    if deleted:
        print_success("API key removed")
    else:
        print_warning("No API key was stored in the keyring")


def main():
    """Entry point for the console script."""
    civicease()


if __name__ == "__main__":
    main()
