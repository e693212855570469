"""
In-memory message transport for dry runs and tests.
"""

import time
from typing import Dict, List, Optional, Tuple

from ..constants import LARGE_CONTENT_PREFIX
from ..exceptions import ResolutionError
from ..logger import get_logger
from .base import TopicMessage

logger = get_logger(__name__)


class MemoryTransport:
    """
    Topics held in process memory.

    Sequence numbers start at 1 per topic. Large-content references are
    resolved from ``store_content``.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._topics: Dict[str, List[TopicMessage]] = {}
        self._memos: Dict[Tuple[str, int], Optional[str]] = {}
        self._content: Dict[str, str] = {}

    # ── MessageTransport ──────────────────────────────────────────────

    async def fetch_messages(self, topic_id: str, since_sequence: Optional[int] = None) -> List[TopicMessage]:
        floor = since_sequence or 0
        return [m for m in self._topics.get(topic_id, []) if m.sequence_number > floor]

    async def send_message(self, topic_id: str, payload: str, memo: Optional[str] = None) -> int:
        return self.publish(topic_id, payload, memo=memo).sequence_number

    async def resolve_reference(self, uri: str) -> str:
        key = uri[len(LARGE_CONTENT_PREFIX):] if uri.startswith(LARGE_CONTENT_PREFIX) else uri
        if key not in self._content:
            raise ResolutionError(f"No content stored for {uri}")
        return self._content[key]

    # ── Helpers ───────────────────────────────────────────────────────

    def publish(self, topic_id: str, payload, memo: Optional[str] = None, payer: Optional[str] = None) -> TopicMessage:
        """Append a message to *topic_id* synchronously."""
        messages = self._topics.setdefault(topic_id, [])
        message = TopicMessage(
            sequence_number=len(messages) + 1,
            payload=payload,
            timestamp=self._clock(),
            payer_account_id=payer,
        )
        messages.append(message)
        self._memos[(topic_id, message.sequence_number)] = memo
        logger.debug(f"[memory] {topic_id} seq={message.sequence_number} memo={memo!r}")
        return message

    def store_content(self, key: str, content: str) -> str:
        """Store large content and return its reference URI."""
        self._content[key] = content
        return f"{LARGE_CONTENT_PREFIX}{key}"

    def messages(self, topic_id: str) -> List[TopicMessage]:
        return list(self._topics.get(topic_id, []))

    def memo(self, topic_id: str, sequence: int) -> Optional[str]:
        return self._memos.get((topic_id, sequence))
