"""CLI entry point.

Provides the main CLI application with commands for:
- chat: Stream answers from the assistant
- conversations / history: Browse conversations
- rename / delete: Manage conversations
"""

# Configure logging early before other imports
import echostream.logging_config  # noqa: F401

import typer

from echostream import __version__
from echostream.cli.commands.chat import chat
from echostream.cli.commands.conversations import conversations, delete, history, rename
from echostream.cli.utils import console

app = typer.Typer(
    name="echostream",
    help="Concurrent streaming chat client for the EchoCampus assistant",
    add_completion=False,
    no_args_is_help=True,
)

app.command()(chat)
app.command()(conversations)
app.command()(history)
app.command()(rename)
app.command()(delete)


@app.command()
def version() -> None:
    """Show the installed version."""
    console.print(f"echostream {__version__}")


if __name__ == "__main__":
    app()
