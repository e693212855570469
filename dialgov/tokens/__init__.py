"""
Governed Tokens

Provides:
  - TokenInfo      : display metadata for a governed token
  - TokenRegistry  : case-insensitive symbol lookup used to validate votes
"""

from .registry import DEFAULT_TOKENS, TokenInfo, TokenRegistry

__all__ = [
    "DEFAULT_TOKENS",
    "TokenInfo",
    "TokenRegistry",
]
