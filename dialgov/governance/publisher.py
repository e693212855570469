"""
Result/Snapshot Publisher

Sends vote results, state snapshots and parameter-change notifications to
their topics. Every send is best-effort: failures are logged and returned
as a failed ``CallResult``, never raised.
"""

import time
from typing import Any, Callable, Dict, Iterable, Optional

from ..constants import (
    OP_STATE_SNAPSHOT,
    OP_VOTE_RESULT,
    PROTOCOL_TAG,
    SNAPSHOT_INITIAL_STATE,
)
from ..logger import get_logger
from .messages import (
    ParameterChangeRecord,
    VoteResultMessage,
    build_envelope,
    encode_envelope,
    is_snapshot_message,
)
from .parameters import ParameterStore, iso_timestamp, json_number
from .results import CallResult, ErrorKind, capture
from .voting import QuorumTally, VotingSession

logger = get_logger(__name__)


def build_state_snapshot(
    event_type: str,
    timestamp: float,
    store: ParameterStore,
    sessions: Iterable[VotingSession],
    tally: Callable[[VotingSession], QuorumTally],
    recent_changes: Iterable[ParameterChangeRecord],
) -> Dict[str, Any]:
    """Full self-describing state: parameters, open sessions, recent changes."""
    active_votes = []
    for session in sessions:
        quorum = tally(session)
        active_votes.append({
            "parameterPath": session.parameter_path,
            "proposedValue": session.proposed_value,
            "votingEnds": iso_timestamp(session.voting_ends),
            "currentVotes": json_number(quorum.total_voting_power),
            "requiredVotes": json_number(quorum.required_voting_power),
            "voterCount": quorum.votes_in_favor,
        })

    return {
        "eventType": event_type,
        "timestamp": iso_timestamp(timestamp),
        "parameters": store.to_dict(),
        "activeVotes": active_votes,
        "recentChanges": [record.to_dict() for record in recent_changes],
        "stateHash": store.state_hash(),
    }


class ResultPublisher:
    """
    Outbound channel of the governance engine.

    Tracks when the last snapshot was sent and whether the initial
    snapshot has been confirmed on the outbound topic.
    """

    def __init__(
        self,
        transport,
        outbound_topic: str,
        operator_id: str,
        protocol_tag: str = PROTOCOL_TAG,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.outbound_topic = outbound_topic
        self.operator_id = operator_id
        self.protocol_tag = protocol_tag
        self._clock = clock

        self.initial_snapshot_done = False
        self.last_snapshot_time: Optional[float] = None
        self.snapshots_sent = 0

    async def publish(self, topic_id: str, op: str, data: Dict[str, Any], memo: Optional[str] = None) -> CallResult:
        """Wrap *data* in an envelope and send it to *topic_id*."""
        envelope = build_envelope(op, data, self.operator_id, memo=memo, protocol_tag=self.protocol_tag)
        return await capture(
            self.transport.send_message(topic_id, encode_envelope(envelope), memo),
            ErrorKind.TRANSPORT,
        )

    async def publish_result(self, result: VoteResultMessage) -> CallResult:
        sent = await self.publish(
            self.outbound_topic,
            OP_VOTE_RESULT,
            result.to_dict(),
            memo=f"Vote result for {result.parameter_path}",
        )
        if sent.ok:
            logger.info(f"Published {result.type} for {result.parameter_path} (seq={sent.value})")
        else:
            logger.error(f"Failed to publish {result.type} for {result.parameter_path}: {sent.error}")
        return sent

    async def publish_snapshot(self, snapshot: Dict[str, Any], memo: Optional[str] = None) -> CallResult:
        event_type = snapshot.get("eventType")
        sent = await self.publish(
            self.outbound_topic,
            OP_STATE_SNAPSHOT,
            snapshot,
            memo=memo or f"State snapshot: {event_type}",
        )
        if not sent.ok:
            logger.error(f"Failed to publish {event_type} snapshot: {sent.error}")
            return CallResult.failure(ErrorKind.SNAPSHOT_PUBLISH, sent.error)

        self.last_snapshot_time = self._clock()
        self.snapshots_sent += 1
        logger.info(f"Published {event_type} snapshot (seq={sent.value})")
        return sent

    async def ensure_initial_snapshot(self, snapshot_factory: Callable[[str], Dict[str, Any]]) -> CallResult:
        """
        Publish the INITIAL_STATE snapshot unless one already exists.

        Scans the outbound topic first; a snapshot-shaped message there
        marks the initial snapshot as done without sending. If the scan
        itself fails the flag stays unset so the check runs again later.

        Returns success(True) when a snapshot was sent, success(False)
        when none was needed.
        """
        if self.initial_snapshot_done:
            return CallResult.success(False)

        history = await capture(
            self.transport.fetch_messages(self.outbound_topic),
            ErrorKind.TRANSPORT,
        )
        if not history.ok:
            logger.warning(f"Could not check {self.outbound_topic} for an existing snapshot: {history.error}")
            return history

        existing = [m for m in history.value if is_snapshot_message(m.payload)]
        if existing:
            self.initial_snapshot_done = True
            latest = max(m.timestamp for m in existing)
            if self.last_snapshot_time is None or latest > self.last_snapshot_time:
                self.last_snapshot_time = latest
            logger.info(f"Existing state snapshot found on {self.outbound_topic}; skipping initial snapshot")
            return CallResult.success(False)

        sent = await self.publish_snapshot(
            snapshot_factory(SNAPSHOT_INITIAL_STATE),
            memo="Initial governance state",
        )
        if not sent.ok:
            return sent
        self.initial_snapshot_done = True
        return CallResult.success(True)

    def heartbeat_due(self, now: float, interval: float, history_empty: bool) -> bool:
        """Interval elapsed since the last snapshot AND no changes recorded."""
        if not history_empty:
            return False
        if self.last_snapshot_time is None:
            return True
        return now - self.last_snapshot_time >= interval
