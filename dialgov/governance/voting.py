"""
Power-Weighted Parameter Voting

Implements:
  - One live vote per (parameter path, voter); a re-vote replaces the
    earlier one instead of adding to it
  - Voting sessions keyed by parameter path with a deadline
  - Quorum: Σ voting power ≥ total supply × quorum% / 100 (non-strict)
  - Per-parameter quorum (leaf ``min_quorum``) overriding the default

Voting power is supplied with each vote and trusted as given.
"""

import math
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..constants import GOVERNANCE_TOTAL_SUPPLY, TOKEN_ALIASES, TOKEN_WEIGHT_PREFIX, VOTE_TYPE_PARAMETER
from ..exceptions import ParameterPathError, ValidationError
from ..logger import get_logger
from .parameters import LookupStatus, ParameterStore, ParamValue, iso_timestamp, json_number, value_kind

logger = get_logger(__name__)


def to_voting_power(raw: Any) -> Decimal:
    """Coerce a wire value into a Decimal voting power."""
    if raw is None or isinstance(raw, bool):
        raise ValidationError(f"Invalid voting power: {raw!r}")
    if isinstance(raw, float) and not math.isfinite(raw):
        raise ValidationError(f"Invalid voting power: {raw!r}")
    try:
        power = raw if isinstance(raw, Decimal) else Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid voting power: {raw!r}")
    if not power.is_finite():
        raise ValidationError(f"Invalid voting power: {raw!r}")
    return power


def token_symbol(path: str) -> Optional[str]:
    """Canonical token symbol of a ``treasury.weights.<SYM>`` path, else None."""
    weight_prefix = TOKEN_WEIGHT_PREFIX + "."
    if not path.startswith(weight_prefix):
        return None
    symbol = path[len(weight_prefix):].upper()
    return TOKEN_ALIASES.get(symbol, symbol)


def normalize_parameter_path(path: str) -> str:
    """Upper-case and de-alias the token segment of weight paths."""
    symbol = token_symbol(path)
    if symbol is None:
        return path
    return f"{TOKEN_WEIGHT_PREFIX}.{symbol}"


def is_finite_value(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, Decimal):
        return value.is_finite()
    return True


# ══════════════════════════════════════════════════════════════════════
#  VOTE DATA
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ParameterVote:
    """A single voter's proposal for a new parameter value."""
    parameter_path: str
    new_value: ParamValue
    voter_account_id: str
    voting_power: Decimal
    timestamp: float = field(default_factory=time.time)
    tx_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], timestamp: Optional[float] = None) -> "ParameterVote":
        """
        Build a vote from a PARAMETER_VOTE payload (camelCase keys).

        Raises ValidationError when a required field is missing.
        """
        missing = [
            key for key in ("parameterPath", "newValue", "voterAccountId", "votingPower")
            if data.get(key) is None
        ]
        if missing:
            raise ValidationError(f"Vote is missing required fields: {', '.join(missing)}")

        path = data["parameterPath"]
        voter = data["voterAccountId"]
        if not isinstance(path, str) or not path:
            raise ValidationError(f"Invalid parameter path: {path!r}")
        if not isinstance(voter, str) or not voter:
            raise ValidationError(f"Invalid voter account: {voter!r}")

        return cls(
            parameter_path=normalize_parameter_path(path),
            new_value=data["newValue"],
            voter_account_id=voter,
            voting_power=to_voting_power(data["votingPower"]),
            timestamp=timestamp if timestamp is not None else time.time(),
            tx_id=data.get("txId"),
            reason=data.get("reason"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "type": VOTE_TYPE_PARAMETER,
            "parameterPath": self.parameter_path,
            "newValue": self.new_value,
            "voterAccountId": self.voter_account_id,
            "votingPower": json_number(self.voting_power),
            "timestamp": iso_timestamp(self.timestamp),
        }
        if self.tx_id:
            out["txId"] = self.tx_id
        if self.reason:
            out["reason"] = self.reason
        return out


def validate_vote(vote: ParameterVote, store: ParameterStore, registry, validate_options: bool = True):
    """
    Reject votes that cannot be applied to the parameter tree.

    A registered token with no weight leaf yet is accepted for any finite
    number; its leaf is created when the vote commits.

    Raises:
        ValidationError:    non-positive power, unknown token, bad value
        ParameterPathError: path is not a leaf of the tree
    """
    if vote.voting_power <= 0:
        raise ValidationError(
            f"Vote from {vote.voter_account_id} has no voting power ({vote.voting_power})"
        )

    kind = value_kind(vote.new_value)
    if kind is None:
        raise ValidationError(f"Unsupported value type for {vote.parameter_path}: {vote.new_value!r}")
    if not is_finite_value(vote.new_value):
        raise ValidationError(f"Non-finite value for {vote.parameter_path}: {vote.new_value!r}")

    symbol = token_symbol(vote.parameter_path)
    if symbol is not None and not registry.exists(symbol):
        raise ValidationError(f"Unknown token {symbol} in {vote.parameter_path}")

    lookup = store.get(vote.parameter_path)
    if lookup.status == LookupStatus.NOT_FOUND:
        if symbol is None:
            raise ParameterPathError(f"Unknown parameter path {vote.parameter_path}")
        if kind != "number":
            raise ValidationError(f"Value {vote.new_value!r} has the wrong type for {vote.parameter_path} (expected number)")
        return
    if lookup.status == LookupStatus.NOT_A_LEAF:
        raise ParameterPathError(f"{vote.parameter_path} is a parameter group, not a parameter")

    errors = store.validate_change(vote.parameter_path, vote.new_value, enforce_options=validate_options)
    if errors:
        raise ValidationError("; ".join(errors))


# ══════════════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════════════

@dataclass
class VotingSession:
    """
    Live votes for one parameter path.

    ``votes`` preserves insertion order; a re-vote keeps the voter's
    original position.
    """
    parameter_path: str
    voting_ends: float
    votes: Dict[str, ParameterVote] = field(default_factory=dict)
    opened_at: float = field(default_factory=time.time)

    def upsert(self, vote: ParameterVote) -> Optional[ParameterVote]:
        """Insert or replace the voter's vote. Returns the replaced vote."""
        previous = self.votes.get(vote.voter_account_id)
        self.votes[vote.voter_account_id] = vote
        return previous

    @property
    def total_voting_power(self) -> Decimal:
        return sum((v.voting_power for v in self.votes.values()), Decimal("0"))

    @property
    def proposed_value(self) -> Optional[ParamValue]:
        """Value of the first recorded vote (single-candidate commit)."""
        for vote in self.votes.values():
            return vote.new_value
        return None

    def is_expired(self, now: float) -> bool:
        return self.voting_ends <= now

    def __len__(self) -> int:
        return len(self.votes)


class VoteLedger:
    """Active voting sessions keyed by parameter path."""

    def __init__(self):
        self._sessions: Dict[str, VotingSession] = {}

    def get(self, path: str) -> Optional[VotingSession]:
        return self._sessions.get(path)

    def record(self, vote: ParameterVote, voting_ends: float) -> Tuple[VotingSession, bool, Optional[ParameterVote]]:
        """
        Upsert *vote* into its path's session, opening one if needed.

        Returns (session, opened, replaced_vote).
        """
        session = self._sessions.get(vote.parameter_path)
        opened = session is None
        if opened:
            session = VotingSession(
                parameter_path=vote.parameter_path,
                voting_ends=voting_ends,
                opened_at=vote.timestamp,
            )
            self._sessions[vote.parameter_path] = session
        replaced = session.upsert(vote)
        return session, opened, replaced

    def detach(self, path: str) -> Optional[VotingSession]:
        """Remove and return the session so it can be finalized exactly once."""
        return self._sessions.pop(path, None)

    def expired(self, now: float) -> List[str]:
        return [path for path, s in self._sessions.items() if s.is_expired(now)]

    def sessions(self) -> Iterator[VotingSession]:
        return iter(list(self._sessions.values()))

    def clear(self):
        self._sessions.clear()

    def __contains__(self, path: str) -> bool:
        return path in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


# ══════════════════════════════════════════════════════════════════════
#  QUORUM
# ══════════════════════════════════════════════════════════════════════

@dataclass
class QuorumTally:
    """Quorum computation for one session."""
    parameter_path: str
    votes_in_favor: int
    total_voting_power: Decimal
    quorum_percentage: int
    required_voting_power: Decimal

    @property
    def reached(self) -> bool:
        # An empty session never reaches quorum, even at 0%
        return self.votes_in_favor > 0 and self.total_voting_power >= self.required_voting_power

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameterPath": self.parameter_path,
            "votesInFavor": self.votes_in_favor,
            "totalVotingPower": json_number(self.total_voting_power),
            "quorumPercentage": self.quorum_percentage,
            "requiredVotingPower": json_number(self.required_voting_power),
            "quorumReached": self.reached,
        }


class QuorumEvaluator:
    """
    Decides pass / fail for a session against the parameter's quorum.

    required = total_supply × quorum% / 100, pass iff total ≥ required.
    """

    def __init__(self, store: ParameterStore, total_supply: Decimal = GOVERNANCE_TOTAL_SUPPLY):
        self.store = store
        self.total_supply = Decimal(total_supply)

    def quorum_percentage(self, path: str) -> int:
        return self.store.required_quorum(path)

    def required_voting_power(self, path: str) -> Decimal:
        return self.total_supply * Decimal(str(self.quorum_percentage(path))) / Decimal("100")

    def evaluate(self, session: VotingSession) -> QuorumTally:
        path = session.parameter_path
        return QuorumTally(
            parameter_path=path,
            votes_in_favor=len(session),
            total_voting_power=session.total_voting_power,
            quorum_percentage=self.quorum_percentage(path),
            required_voting_power=self.required_voting_power(path),
        )
