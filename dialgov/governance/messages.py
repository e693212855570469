"""
Governance wire messages.

Inbound: classification of raw topic payloads into ``ParameterVote``s
(large-content resolution, transport-wrapper unwrapping, multi-ratio
decomposition).

Outbound: the envelope shape shared by vote results, state snapshots and
parameter-change notifications, plus the result and change-record types.
"""

import json
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Deque, Dict, Iterator, List, Optional

from ..constants import (
    GOVERNANCE_CHANGE_HISTORY_LIMIT,
    LARGE_CONTENT_PREFIX,
    LOG_PAYLOAD_PREVIEW,
    OP_MESSAGE,
    OP_STATE_SNAPSHOT,
    PROTOCOL_TAG,
    TOKEN_WEIGHT_PREFIX,
    VOTE_TYPE_MULTI_RATIO,
    VOTE_TYPE_PARAMETER,
)
from ..exceptions import ValidationError
from ..logger import get_logger
from .parameters import ParamValue, iso_timestamp, json_number
from .results import ErrorKind, capture
from .voting import ParameterVote, normalize_parameter_path, to_voting_power

logger = get_logger(__name__)


def preview(payload: Any) -> str:
    text = payload if isinstance(payload, str) else repr(payload)
    return text if len(text) <= LOG_PAYLOAD_PREVIEW else text[:LOG_PAYLOAD_PREVIEW] + "..."


def looks_like_json(text: str) -> bool:
    s = text.strip()
    return (s.startswith("{") and s.endswith("}")) or (s.startswith("[") and s.endswith("]"))


# ══════════════════════════════════════════════════════════════════════
#  INBOUND
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Classification:
    """
    Outcome of classifying one inbound message.

    ``votes`` are well-formed votes ready for recording; ``rejected``
    holds the reasons for entries that were malformed. ``ignored`` is set
    when the message as a whole was not a governance vote.
    """
    sequence_number: int
    votes: List[ParameterVote] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    ignored: Optional[str] = None

    @classmethod
    def ignore(cls, sequence_number: int, reason: str) -> "Classification":
        return cls(sequence_number=sequence_number, ignored=reason)


class MessageClassifier:
    """
    Turns a raw topic message into zero or more ``ParameterVote``s.

    Never raises: every failure is reported through the returned
    ``Classification``.
    """

    def __init__(self, transport, protocol_tag: str = PROTOCOL_TAG):
        self.transport = transport
        self.protocol_tag = protocol_tag

    async def classify(self, message) -> Classification:
        seq = message.sequence_number
        try:
            return await self._classify(message)
        except Exception as e:
            logger.error(f"Unexpected error classifying message seq={seq}: {type(e).__name__}: {e}")
            return Classification.ignore(seq, f"unexpected error: {e}")

    async def _classify(self, message) -> Classification:
        seq = message.sequence_number
        payload = message.payload

        if payload is None or payload == "" or payload == {} or payload == []:
            return Classification.ignore(seq, "empty payload")

        if isinstance(payload, str) and payload.startswith(LARGE_CONTENT_PREFIX):
            resolved = await capture(self.transport.resolve_reference(payload), ErrorKind.RESOLUTION)
            if not resolved.ok:
                logger.warning(f"Dropping seq={seq}: {resolved.kind.value} error resolving {payload}: {resolved.error}")
                return Classification.ignore(seq, f"unresolvable reference {payload}")
            payload = resolved.value
            if not payload:
                return Classification.ignore(seq, "empty resolved payload")

        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")

        if isinstance(payload, str):
            if not looks_like_json(payload):
                return Classification.ignore(seq, "not JSON")
            try:
                payload = json.loads(payload)
            except ValueError:
                return Classification.ignore(seq, "invalid JSON")

        payload = self._unwrap(payload)
        if payload is None:
            return Classification.ignore(seq, "invalid wrapped data")
        if not isinstance(payload, dict):
            return Classification.ignore(seq, "payload is not an object")

        vote_type = payload.get("type")
        if vote_type == VOTE_TYPE_PARAMETER:
            return self._single_vote(seq, payload, message.timestamp)
        if vote_type == VOTE_TYPE_MULTI_RATIO:
            return self._multi_ratio_vote(seq, payload, message.timestamp)
        return Classification.ignore(seq, f"unhandled type {vote_type!r}")

    def _unwrap(self, payload: Any) -> Any:
        """Strip the transport wrapper ``{p, op: 'message', data: '<json>'}``."""
        if not (
            isinstance(payload, dict)
            and payload.get("p") == self.protocol_tag
            and payload.get("op") == OP_MESSAGE
            and "data" in payload
        ):
            return payload
        inner = payload["data"]
        if isinstance(inner, dict):
            return inner
        if not isinstance(inner, str):
            return None
        try:
            return json.loads(inner)
        except ValueError:
            logger.warning(f"Wrapped message data is not valid JSON: '{preview(inner)}'")
            return None

    @staticmethod
    def _single_vote(seq: int, payload: Dict[str, Any], timestamp: float) -> Classification:
        result = Classification(sequence_number=seq)
        try:
            result.votes.append(ParameterVote.from_dict(payload, timestamp=timestamp))
        except ValidationError as e:
            result.rejected.append(str(e))
        return result

    @staticmethod
    def _multi_ratio_vote(seq: int, payload: Dict[str, Any], timestamp: float) -> Classification:
        """One synthetic PARAMETER_VOTE per ``ratioChanges`` entry."""
        result = Classification(sequence_number=seq)
        changes = payload.get("ratioChanges")
        voter = payload.get("voterAccountId")

        if not isinstance(changes, list) or not changes:
            result.rejected.append("Multi-ratio vote has no ratioChanges")
            return result
        if not isinstance(voter, str) or not voter:
            result.rejected.append("Multi-ratio vote is missing voterAccountId")
            return result
        try:
            power = to_voting_power(payload.get("votingPower"))
        except ValidationError as e:
            result.rejected.append(str(e))
            return result

        for change in changes:
            if not isinstance(change, dict):
                result.rejected.append(f"Invalid ratio change entry: {change!r}")
                continue
            token = change.get("token")
            new_ratio = change.get("newRatio")
            if not isinstance(token, str) or not token or new_ratio is None:
                result.rejected.append(f"Invalid ratio change entry: {change!r}")
                continue
            result.votes.append(ParameterVote(
                parameter_path=normalize_parameter_path(f"{TOKEN_WEIGHT_PREFIX}.{token}"),
                new_value=new_ratio,
                voter_account_id=voter,
                voting_power=power,
                timestamp=timestamp,
                tx_id=payload.get("txId"),
                reason=f"Multi-ratio vote: {token} = {new_ratio}",
            ))
        return result


# ══════════════════════════════════════════════════════════════════════
#  OUTBOUND
# ══════════════════════════════════════════════════════════════════════

def build_envelope(
    op: str,
    data: Dict[str, Any],
    operator_id: str,
    memo: Optional[str] = None,
    protocol_tag: str = PROTOCOL_TAG,
) -> Dict[str, Any]:
    """``{p, op, operator_id, data: '<json>', m?}``"""
    envelope = {
        "p": protocol_tag,
        "op": op,
        "operator_id": operator_id,
        "data": json.dumps(data, default=_json_default),
    }
    if memo:
        envelope["m"] = memo
    return envelope


def encode_envelope(envelope: Dict[str, Any]) -> str:
    return json.dumps(envelope, default=_json_default)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return json_number(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def is_snapshot_message(payload: Any) -> bool:
    """True for ``state_snapshot`` envelopes whose data carries ``parameters``."""
    if isinstance(payload, str):
        if not looks_like_json(payload):
            return False
        try:
            payload = json.loads(payload)
        except ValueError:
            return False
    if not isinstance(payload, dict) or payload.get("op") != OP_STATE_SNAPSHOT:
        return False

    data = payload.get("data")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return False
    return isinstance(data, dict) and "parameters" in data


@dataclass
class VoteResultMessage:
    """Outcome of a finalized voting session."""
    type: str                       # PARAMETER_UPDATE / VOTE_FAILED
    parameter_path: str
    old_value: Optional[ParamValue]
    new_value: Optional[ParamValue]
    votes_in_favor: int
    total_voting_power: Decimal
    quorum_percentage: int
    quorum_reached: bool
    effective_timestamp: float
    execution_status: str           # executed / failed
    tx_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "type": self.type,
            "parameterPath": self.parameter_path,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "votesInFavor": self.votes_in_favor,
            "totalVotingPower": json_number(self.total_voting_power),
            "quorumPercentage": self.quorum_percentage,
            "quorumReached": self.quorum_reached,
            "effectiveTimestamp": iso_timestamp(self.effective_timestamp),
            "executionStatus": self.execution_status,
        }
        if self.tx_id:
            out["txId"] = self.tx_id
        return out


@dataclass(frozen=True)
class ParameterChangeRecord:
    """One committed parameter change."""
    parameter_path: str
    old_value: Optional[ParamValue]
    new_value: ParamValue
    timestamp: float
    tx_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "parameterPath": self.parameter_path,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "timestamp": iso_timestamp(self.timestamp),
        }
        if self.tx_id:
            out["txId"] = self.tx_id
        return out


class ChangeHistory:
    """Bounded, append-only history of committed changes (oldest evicted)."""

    def __init__(self, limit: int = GOVERNANCE_CHANGE_HISTORY_LIMIT):
        self._records: Deque[ParameterChangeRecord] = deque(maxlen=limit)

    def append(self, record: ParameterChangeRecord):
        self._records.append(record)

    def recent(self, count: int) -> List[ParameterChangeRecord]:
        if count <= 0:
            return []
        return list(self._records)[-count:]

    @property
    def limit(self) -> int:
        return self._records.maxlen

    def __iter__(self) -> Iterator[ParameterChangeRecord]:
        return iter(list(self._records))

    def __len__(self) -> int:
        return len(self._records)
