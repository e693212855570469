"""
Message Cursor

Highest processed sequence number per topic. Ingestion only processes
messages above the cursor and advances it after every message, including
ones that were ignored.
"""

from typing import Dict, Iterable, List, TypeVar

T = TypeVar("T")


class MessageCursor:
    """Per-topic high-water mark of processed sequence numbers."""

    def __init__(self):
        self._seen: Dict[str, int] = {}

    def highest_seen(self, topic_id: str) -> int:
        return self._seen.get(topic_id, 0)

    def advance(self, topic_id: str, sequence: int) -> int:
        """Move the cursor to max(current, sequence). Never goes backwards."""
        current = self._seen.get(topic_id, 0)
        if sequence > current:
            self._seen[topic_id] = sequence
            return sequence
        return current

    def unseen(self, topic_id: str, messages: Iterable[T]) -> List[T]:
        """
        Messages above the cursor in ascending sequence order.

        Items must expose a ``sequence_number`` attribute.
        """
        floor = self.highest_seen(topic_id)
        by_sequence: Dict[int, T] = {}
        for m in messages:
            if m.sequence_number > floor:
                by_sequence.setdefault(m.sequence_number, m)
        return [by_sequence[seq] for seq in sorted(by_sequence)]

    def __repr__(self) -> str:
        return f"<MessageCursor {self._seen}>"
