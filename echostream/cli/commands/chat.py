"""Chat commands."""

import asyncio
import contextlib
import signal
from typing import Annotated

import typer
from rich.panel import Panel
from rich.prompt import Prompt

from echostream.cli.utils import console, truncate
from echostream.exceptions import PersistenceError
from echostream.multiplexer import SessionMultiplexer
from echostream.streaming import StreamHandlers


def chat(
    message: Annotated[
        str | None,
        typer.Argument(help="Message to send (or leave empty for interactive mode)"),
    ] = None,
    conversation_id: Annotated[
        int | None,
        typer.Option("--conversation", "-c", help="Continue an existing conversation"),
    ] = None,
    no_stream: Annotated[
        bool,
        typer.Option("--no-stream", help="Wait for the complete answer instead of streaming it"),
    ] = False,
) -> None:
    """Chat with the assistant, streaming the answer as it is generated.

    Press Ctrl-C while an answer is streaming to cancel it.

    Examples:
        echostream chat "When does the library open?"
        echostream chat --conversation 12
        echostream chat --no-stream "Where is the canteen?"
        echostream chat  # Interactive mode
    """
    asyncio.run(_chat(message, conversation_id, stream=not no_stream))


def _stream_handlers() -> StreamHandlers:
    """Handlers that render a streamed answer on the console."""
    return StreamHandlers(
        on_status=lambda e: console.print(f"[dim]{e.stage}[/dim]"),
        on_new_message=lambda _: console.print("\n[dim]───[/dim]"),
        on_content=lambda e: console.print(e.text, end="", markup=False, highlight=False),
        on_done=lambda _: console.print(),
        on_error=lambda f: console.print(
            f"\n[{'yellow' if f.is_capacity else 'red'}]{f.message}[/]"
        ),
        on_cancelled=lambda: console.print("\n[yellow]Cancelled.[/yellow]"),
    )


async def _send(mux: SessionMultiplexer, text: str, *, stream: bool = True) -> None:
    """Send one message; while streaming, SIGINT cancels the stream instead of exiting."""
    if not stream:
        await _send_whole(mux, text)
        return

    session = mux.start_stream(text, mux.current_conversation_id, _stream_handlers())

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    try:
        await session.wait()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    _print_sources(mux)


async def _send_whole(mux: SessionMultiplexer, text: str) -> None:
    with console.status("[dim]Waiting for the answer...[/dim]"):
        try:
            answer = await mux.send_message(text, mux.current_conversation_id)
        except PersistenceError as e:
            console.print(f"[red]Send failed: {e}[/red]")
            return
    if answer is not None:
        console.print(answer.content, markup=False, highlight=False)
    _print_sources(mux)


def _print_sources(mux: SessionMultiplexer) -> None:
    sources = []
    if mux.current_messages and mux.current_messages[-1].is_bot:
        sources = mux.current_messages[-1].sources
    for source in sources:
        console.print(f"[dim]  ↳ {source.title or source.doc_id}[/dim]")


async def _chat(message: str | None, conversation_id: int | None, *, stream: bool = True) -> None:
    """Run a single exchange or an interactive chat loop."""
    mux = SessionMultiplexer()
    try:
        if conversation_id is not None:
            try:
                await mux.load_conversations()
                conversation = await mux.select_conversation(conversation_id)
            except PersistenceError as e:
                console.print(f"[red]Could not load conversation {conversation_id}: {e}[/red]")
                return
            title = conversation.title if conversation else f"#{conversation_id}"
            console.print(f"[dim]Continuing: {title}[/dim]")
            for past in mux.current_messages[-6:]:
                who = "[bold cyan]You[/bold cyan]" if past.is_user else "[bold green]Bot[/bold green]"
                console.print(f"{who}: {truncate(past.content, 100)}")
            console.print()

        if message:
            await _send(mux, message, stream=stream)
            return

        console.print(
            Panel(
                "Type a message and press Enter.\n"
                "Type [cyan]'exit'[/cyan] or [cyan]'quit'[/cyan] to end.",
                title="💬 echostream",
                border_style="blue",
            )
        )
        while True:
            text = Prompt.ask("[bold cyan]You[/bold cyan]")
            if text.strip().lower() in ("exit", "quit"):
                break
            if not text.strip():
                continue
            await _send(mux, text, stream=stream)
    finally:
        await mux.aclose()
