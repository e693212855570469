"""
Message transport interface.

The engine only needs three calls from the message log: fetch a topic's
messages, send a message to a topic, and resolve a large-content
reference. Implementations raise ``TransportError`` / ``ResolutionError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Protocol


@dataclass(frozen=True)
class TopicMessage:
    """One message read from a topic."""
    sequence_number: int
    payload: Any            # str, or already-decoded JSON
    timestamp: float        # consensus time, epoch seconds
    payer_account_id: Optional[str] = None


class MessageTransport(Protocol):
    """Protocol that message-log clients must implement."""

    async def fetch_messages(self, topic_id: str, since_sequence: Optional[int] = None) -> List[TopicMessage]:
        """Messages with sequence > since_sequence, ascending."""
        ...

    async def send_message(self, topic_id: str, payload: str, memo: Optional[str] = None) -> int:
        """Submit *payload* and return its sequence number."""
        ...

    async def resolve_reference(self, uri: str) -> str:
        """Fetch the content behind a large-content reference."""
        ...
