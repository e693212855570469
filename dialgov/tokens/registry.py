"""
Token Registry

Symbols the governance engine accepts in ``treasury.weights.<TOKEN>``
votes, with display metadata. Consulted to validate and log only; it
never takes part in quorum computation.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from ..exceptions import ValidationError
from ..logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenInfo:
    """Display metadata for a governed token."""
    symbol: str
    name: str
    token_id: str
    decimals: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenInfo":
        try:
            return cls(
                symbol=str(data["symbol"]).upper(),
                name=str(data.get("name", data["symbol"])),
                token_id=str(data["token_id"]),
                decimals=int(data.get("decimals", 8)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid token entry {data!r}: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "tokenId": self.token_id,
            "decimals": self.decimals,
        }


DEFAULT_TOKENS = (
    TokenInfo("HBAR", "HBAR (Testnet)", "HBAR", 8),
    TokenInfo("SAUCE", "SaucerSwap Token (Testnet)", "0.0.1183558", 6),
    TokenInfo("SAUCERSWAP", "SaucerSwap Token (Testnet)", "0.0.1183558", 6),
    TokenInfo("WBTC", "Wrapped Bitcoin (Test)", "0.0.6212930", 8),
    TokenInfo("USDC", "USD Coin (Test)", "0.0.6212931", 6),
    TokenInfo("JAM", "Jam Token (Test)", "0.0.6212932", 8),
    TokenInfo("HEADSTART", "HeadStarter (Test)", "0.0.6212933", 8),
    TokenInfo("LYNX", "Lynx Index Token", "0.0.6200902", 8),
)


class TokenRegistry:
    """
    Case-insensitive symbol → TokenInfo lookup.

    Starts with the default index tokens unless ``defaults=False``.
    """

    def __init__(self, tokens: Optional[Iterable[TokenInfo]] = None, defaults: bool = True):
        self._tokens: Dict[str, TokenInfo] = {}
        if defaults:
            for token in DEFAULT_TOKENS:
                self._tokens[token.symbol] = token
        for token in tokens or ():
            self.register(token)

    # ── Register ──────────────────────────────────────────────────────

    def register(self, token: TokenInfo) -> TokenInfo:
        """Add or replace a token entry."""
        symbol = token.symbol.upper()
        if symbol in self._tokens:
            logger.info(f"Token {symbol} metadata replaced ({token.token_id})")
        else:
            logger.debug(f"Token registered: {symbol} ({token.name})")
        self._tokens[symbol] = token
        return token

    # ── Lookup ────────────────────────────────────────────────────────

    def exists(self, symbol: str) -> bool:
        return isinstance(symbol, str) and symbol.upper() in self._tokens

    def metadata(self, symbol: str) -> Optional[TokenInfo]:
        if not isinstance(symbol, str):
            return None
        return self._tokens.get(symbol.upper())

    def describe(self, symbol: str) -> str:
        """Short label for log lines, e.g. ``WBTC (0.0.6212930)``."""
        info = self.metadata(symbol)
        if info is None:
            return f"{symbol} (unregistered)"
        return f"{info.symbol} ({info.token_id})"

    # ── Enumeration ───────────────────────────────────────────────────

    def symbols(self) -> List[str]:
        return list(self._tokens.keys())

    @property
    def count(self) -> int:
        return len(self._tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {s: t.to_dict() for s, t in self._tokens.items()}

    def __repr__(self) -> str:
        return f"<TokenRegistry tokens={len(self._tokens)}>"
