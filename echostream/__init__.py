"""echostream: concurrent streaming chat sessions for the EchoCampus assistant."""

from echostream.multiplexer import SessionMultiplexer
from echostream.registry import ConversationRegistry

__version__ = "0.1.0"

__all__ = ["ConversationRegistry", "SessionMultiplexer", "__version__"]
