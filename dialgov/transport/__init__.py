"""
Message transport clients.

Provides:
  - MessageTransport    : structural interface used by the engine
  - MirrorNodeTransport : mirror-node REST reader with relay submission
  - MemoryTransport     : in-process topics for dry runs and tests
"""

from .base import MessageTransport, TopicMessage
from .memory import MemoryTransport
from .mirror import MirrorNodeTransport

__all__ = [
    "MessageTransport",
    "TopicMessage",
    "MemoryTransport",
    "MirrorNodeTransport",
]
