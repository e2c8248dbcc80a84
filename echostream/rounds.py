"""Round reconciliation for fetched message histories.

A round is one USER message plus every BOT message answering it, up to the
next USER message. Streamed messages get their round fields as they are
materialised; histories loaded from the backend are stamped here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from echostream.models import SenderType

if TYPE_CHECKING:
    from collections.abc import Sequence

    from echostream.models import Message


def assign_rounds(messages: Sequence[Message]) -> Sequence[Message]:
    """Stamp ``round_id`` and ``is_last_in_round`` in arrival order.

    Each USER message opens a round (``round_id = id``); each BOT message
    inherits the most recent USER id and is last in its round iff the next
    message is absent or a USER message. SYSTEM messages are transparent:
    they neither open nor close a round.

    Args:
        messages: Messages in arrival order (mutated in place).

    Returns:
        The same sequence, for chaining.
    """
    current_round: int | None = None
    for message in messages:
        if message.sender_type == SenderType.USER:
            current_round = message.id
            message.round_id = message.id
            message.is_last_in_round = False
        elif message.sender_type == SenderType.BOT:
            message.round_id = current_round

    # Walk backwards: the first BOT seen after a USER boundary closes its round
    closes_round = True
    for message in reversed(messages):
        if message.sender_type == SenderType.USER:
            closes_round = True
        elif message.sender_type == SenderType.BOT:
            message.is_last_in_round = closes_round
            closes_round = False

    return messages


def mark_last_in_round(messages: Sequence[Message], round_id: int | None) -> None:
    """Make the final BOT message of ``round_id`` the only one flagged last."""
    last = None
    for message in messages:
        if message.sender_type == SenderType.BOT and message.round_id == round_id:
            message.is_last_in_round = False
            last = message
    if last is not None:
        last.is_last_in_round = True
