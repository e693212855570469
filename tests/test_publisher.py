"""
Result/Snapshot Publisher Test Suite

Coverage:
  - Envelope shape of published results and snapshots
  - Snapshot body (parameters, active votes, recent changes, hash)
  - Initial-snapshot idempotency and fetch-failure retry
  - Heartbeat policy
"""

import json
import os
import sys
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from dialgov.exceptions import TransportError
from dialgov.governance.messages import ParameterChangeRecord, VoteResultMessage, build_envelope
from dialgov.governance.parameters import ParameterStore
from dialgov.governance.publisher import ResultPublisher, build_state_snapshot
from dialgov.governance.results import ErrorKind
from dialgov.governance.voting import ParameterVote, QuorumEvaluator, VotingSession
from dialgov.transport import MemoryTransport


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

T0 = 1_700_000_000.0
OUTBOUND = "0.0.5002"
OPERATOR = "0.0.5001@0.0.4340026"
DAY = 24 * 3600


def make_publisher(transport=None):
    transport = transport or MemoryTransport(clock=lambda: T0)
    return ResultPublisher(transport, OUTBOUND, OPERATOR, clock=lambda: T0), transport


def envelopes(transport, topic=OUTBOUND):
    return [json.loads(m.payload) for m in transport.messages(topic)]


def snapshot_factory(store):
    evaluator = QuorumEvaluator(store)

    def factory(event_type):
        return build_state_snapshot(event_type, T0, store, [], evaluator.evaluate, [])

    return factory


def failed_update() -> VoteResultMessage:
    return VoteResultMessage(
        type="VOTE_FAILED",
        parameter_path="rebalancing.frequencyHours",
        old_value=12,
        new_value=24,
        votes_in_favor=1,
        total_voting_power=Decimal("100"),
        quorum_percentage=15,
        quorum_reached=False,
        effective_timestamp=T0,
        execution_status="failed",
    )


# ══════════════════════════════════════════════════════════════════════
#  SNAPSHOT BODY
# ══════════════════════════════════════════════════════════════════════

class TestStateSnapshot:

    def test_body(self):
        store = ParameterStore(clock=lambda: T0)
        session = VotingSession(parameter_path="fees.mintingFee", voting_ends=T0 + 72 * 3600)
        session.upsert(ParameterVote("fees.mintingFee", 0.3, "0.0.1", Decimal("2500.5"), T0))
        change = ParameterChangeRecord("rebalancing.frequencyHours", 12, 24, T0, tx_id="tx-9")

        snapshot = build_state_snapshot(
            "MANUAL", T0, store, [session], QuorumEvaluator(store).evaluate, [change],
        )

        assert snapshot["eventType"] == "MANUAL"
        assert snapshot["timestamp"] == "2023-11-14T22:13:20.000Z"
        assert snapshot["parameters"]["fees"]["mintingFee"]["value"] == 0.2
        assert snapshot["stateHash"] == store.state_hash()

        [active] = snapshot["activeVotes"]
        assert active == {
            "parameterPath": "fees.mintingFee",
            "proposedValue": 0.3,
            "votingEnds": "2023-11-17T22:13:20.000Z",
            "currentVotes": 2500.5,
            "requiredVotes": 25000,
            "voterCount": 1,
        }
        assert snapshot["recentChanges"] == [change.to_dict()]
        assert snapshot["recentChanges"][0]["txId"] == "tx-9"

    def test_state_hash_tracks_values(self):
        store = ParameterStore(clock=lambda: T0)
        before = store.state_hash()
        store.set("rebalancing.frequencyHours", 24, timestamp=T0)
        assert store.state_hash() != before


# ══════════════════════════════════════════════════════════════════════
#  PUBLISHING
# ══════════════════════════════════════════════════════════════════════

class TestPublish:

    @pytest.mark.asyncio
    async def test_result_envelope(self):
        publisher, transport = make_publisher()
        sent = await publisher.publish_result(failed_update())
        assert sent.ok and sent.value == 1

        [envelope] = envelopes(transport)
        assert envelope["p"] == "hcs-10"
        assert envelope["op"] == "vote_result"
        assert envelope["operator_id"] == OPERATOR
        assert envelope["m"] == "Vote result for rebalancing.frequencyHours"
        data = json.loads(envelope["data"])
        assert data["type"] == "VOTE_FAILED"
        assert data["totalVotingPower"] == 100

    @pytest.mark.asyncio
    async def test_send_failure_is_returned(self):
        transport = MagicMock()
        transport.send_message = AsyncMock(side_effect=TransportError("relay down"))
        publisher, _ = make_publisher(transport)

        sent = await publisher.publish_result(failed_update())
        assert not sent.ok
        assert sent.kind is ErrorKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_snapshot_failure_kind(self):
        transport = MagicMock()
        transport.send_message = AsyncMock(side_effect=TransportError("relay down"))
        publisher, _ = make_publisher(transport)

        sent = await publisher.publish_snapshot({"eventType": "MANUAL", "parameters": {}})
        assert sent.kind is ErrorKind.SNAPSHOT_PUBLISH
        assert publisher.last_snapshot_time is None
        assert publisher.snapshots_sent == 0

    @pytest.mark.asyncio
    async def test_snapshot_tracks_time(self):
        publisher, transport = make_publisher()
        await publisher.publish_snapshot({"eventType": "MANUAL", "parameters": {}})
        assert publisher.last_snapshot_time == T0
        assert publisher.snapshots_sent == 1
        assert transport.memo(OUTBOUND, 1) == "State snapshot: MANUAL"


# ══════════════════════════════════════════════════════════════════════
#  INITIAL SNAPSHOT / HEARTBEAT
# ══════════════════════════════════════════════════════════════════════

class TestInitialSnapshot:

    @pytest.mark.asyncio
    async def test_sent_when_channel_empty(self):
        publisher, transport = make_publisher()
        factory = snapshot_factory(ParameterStore(clock=lambda: T0))

        first = await publisher.ensure_initial_snapshot(factory)
        second = await publisher.ensure_initial_snapshot(factory)

        assert first.ok and first.value is True
        assert second.ok and second.value is False
        [envelope] = envelopes(transport)
        assert json.loads(envelope["data"])["eventType"] == "INITIAL_STATE"
        assert envelope["m"] == "Initial governance state"

    @pytest.mark.asyncio
    async def test_skipped_when_snapshot_exists(self):
        publisher, transport = make_publisher()
        transport.publish(OUTBOUND, json.dumps(build_envelope("vote_result", {"x": 1}, OPERATOR)))
        transport.publish(OUTBOUND, json.dumps(build_envelope("state_snapshot", {"parameters": {}}, OPERATOR)))

        checked = await publisher.ensure_initial_snapshot(snapshot_factory(ParameterStore()))

        assert checked.ok and checked.value is False
        assert publisher.initial_snapshot_done
        assert publisher.last_snapshot_time == T0
        assert len(transport.messages(OUTBOUND)) == 2

    @pytest.mark.asyncio
    async def test_results_alone_do_not_count(self):
        publisher, transport = make_publisher()
        transport.publish(OUTBOUND, json.dumps(build_envelope("vote_result", {"parameters": {}}, OPERATOR)))
        checked = await publisher.ensure_initial_snapshot(snapshot_factory(ParameterStore()))
        assert checked.value is True

    @pytest.mark.asyncio
    async def test_fetch_failure_leaves_flag_unset(self):
        transport = MagicMock()
        transport.fetch_messages = AsyncMock(side_effect=TransportError("mirror down"))
        transport.send_message = AsyncMock(return_value=1)
        publisher, _ = make_publisher(transport)

        checked = await publisher.ensure_initial_snapshot(snapshot_factory(ParameterStore()))

        assert not checked.ok
        assert not publisher.initial_snapshot_done
        transport.send_message.assert_not_awaited()


class TestHeartbeat:

    def test_due_without_prior_snapshot(self):
        publisher, _ = make_publisher()
        assert publisher.heartbeat_due(T0, 30 * DAY, history_empty=True)

    def test_interval_boundary(self):
        publisher, _ = make_publisher()
        publisher.last_snapshot_time = T0
        assert not publisher.heartbeat_due(T0 + 30 * DAY - 1, 30 * DAY, history_empty=True)
        assert publisher.heartbeat_due(T0 + 30 * DAY, 30 * DAY, history_empty=True)

    def test_suppressed_by_history(self):
        publisher, _ = make_publisher()
        assert not publisher.heartbeat_due(T0 + 365 * DAY, 30 * DAY, history_empty=False)
