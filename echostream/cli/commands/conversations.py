"""Conversation commands: list, history, rename, delete."""

import asyncio
from typing import Annotated

import typer
from rich.table import Table

from echostream.cli.utils import console, truncate
from echostream.exceptions import PersistenceError
from echostream.multiplexer import SessionMultiplexer


def conversations(
    page: Annotated[int, typer.Option("--page", "-p", help="Page number")] = 1,
    size: Annotated[
        int | None,
        typer.Option("--size", "-s", help="Conversations per page"),
    ] = None,
) -> None:
    """List your conversations."""
    asyncio.run(_list_conversations(page, size))


async def _list_conversations(page: int, size: int | None) -> None:
    mux = SessionMultiplexer()
    try:
        items = await mux.load_conversations(page=page, size=size)
    except PersistenceError as e:
        console.print(f"[red]❌ Could not list conversations: {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        await mux.aclose()

    if not items:
        console.print("[yellow]No conversations yet. Start one with 'echostream chat'.[/yellow]")
        return

    table = Table(title=f"Conversations (page {page})", show_header=True)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Updated", style="dim")

    for conversation in items:
        updated = conversation.updated_at.strftime("%Y-%m-%d %H:%M") if conversation.updated_at else ""
        table.add_row(
            str(conversation.id),
            truncate(conversation.title or "(untitled)", 40),
            str(conversation.message_count),
            conversation.status,
            updated,
        )
    console.print(table)


def history(
    conversation_id: Annotated[int, typer.Argument(help="Conversation ID")],
) -> None:
    """Show the messages of a conversation, grouped by round."""
    asyncio.run(_history(conversation_id))


async def _history(conversation_id: int) -> None:
    mux = SessionMultiplexer()
    try:
        messages = await mux.fetch_messages(conversation_id)
    except PersistenceError as e:
        console.print(f"[red]❌ Could not load messages: {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        await mux.aclose()

    if not messages:
        console.print("[yellow]No messages in this conversation.[/yellow]")
        return

    for message in messages:
        if message.is_user:
            console.print(f"\n[bold cyan]#{message.round_id} You:[/bold cyan] {message.content}")
        elif message.is_bot:
            marker = "" if message.is_last_in_round else " [dim](continued)[/dim]"
            console.print(f"[bold green]Bot:[/bold green]{marker}")
            console.print(message.content, markup=False, highlight=False)
        else:
            console.print(f"[dim]{message.content}[/dim]")


def rename(
    conversation_id: Annotated[int, typer.Argument(help="Conversation ID")],
    title: Annotated[str, typer.Argument(help="New title")],
) -> None:
    """Rename a conversation."""
    asyncio.run(_rename(conversation_id, title))


async def _rename(conversation_id: int, title: str) -> None:
    mux = SessionMultiplexer()
    try:
        await mux.rename_conversation(conversation_id, title)
    except PersistenceError as e:
        console.print(f"[red]❌ Rename failed: {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        await mux.aclose()
    console.print(f"[green]✅ Renamed conversation {conversation_id}[/green]")


def delete(
    conversation_id: Annotated[int, typer.Argument(help="Conversation ID")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Delete a conversation."""
    if not yes:
        typer.confirm(f"Delete conversation {conversation_id}?", abort=True)
    asyncio.run(_delete(conversation_id))


async def _delete(conversation_id: int) -> None:
    mux = SessionMultiplexer()
    try:
        await mux.delete_conversation(conversation_id)
    except PersistenceError as e:
        console.print(f"[red]❌ Delete failed: {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        await mux.aclose()
    console.print(f"[green]✅ Deleted conversation {conversation_id}[/green]")
