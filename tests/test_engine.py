"""
Governance Engine Test Suite

Coverage:
  - Vote recording, upsert-by-voter, immediate quorum finalize
  - Execution dispatch and failure isolation
  - Deadline sweep force-close (exactly once)
  - Ingestion: cursor, poison messages, multi-ratio votes, non-finite values,
    transport errors
  - Weight leaves for newly governed tokens, SAUCERSWAP alias
  - Initial snapshot idempotency, heartbeat policy, manual snapshots
  - Observers and rebalancer notification
  - Start / stop lifecycle
"""

import asyncio
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

from dialgov.constants import HEARTBEAT_INTERVAL_SECONDS
from dialgov.exceptions import TransportError
from dialgov.governance import (
    ExecutionDispatcher,
    GovernanceEngine,
    ParameterVote,
    build_envelope,
)
from dialgov.tokens import TokenInfo, TokenRegistry
from dialgov.transport import MemoryTransport


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

T0 = 1_700_000_000.0
INBOUND = "0.0.5001"
OUTBOUND = "0.0.5002"
ACCOUNT = "0.0.4340026"
OPERATOR = f"{INBOUND}@{ACCOUNT}"
PATH = "rebalancing.frequencyHours"
VOTING_PERIOD = 72 * 3600


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_vote(voter="0.0.1001", power=1000, value=24, path=PATH) -> ParameterVote:
    return ParameterVote(
        parameter_path=path,
        new_value=value,
        voter_account_id=voter,
        voting_power=Decimal(str(power)),
        timestamp=T0,
    )


def make_endpoint(tx_id="0.0.4340026@1700000000.000000001", error=None):
    endpoint = MagicMock()
    endpoint.update_ratios = AsyncMock(return_value=tx_id, side_effect=error)
    return endpoint


def make_engine(clock=None, transport=None, endpoint=None, **kwargs):
    clock = clock or FakeClock()
    transport = transport or MemoryTransport(clock=clock)
    engine = GovernanceEngine(
        transport,
        INBOUND,
        OUTBOUND,
        OPERATOR,
        dispatcher=ExecutionDispatcher(endpoint),
        clock=clock,
        **kwargs,
    )
    return engine, transport, clock


def sent(transport: MemoryTransport, op: str, topic: str = OUTBOUND):
    """Decoded ``data`` of every envelope with *op* sent to *topic*."""
    out = []
    for message in transport.messages(topic):
        envelope = json.loads(message.payload)
        if envelope["op"] == op:
            assert envelope["operator_id"] == OPERATOR
            out.append(json.loads(envelope["data"]))
    return out


def results(transport):
    return sent(transport, "vote_result")


def snapshots(transport, event_type=None):
    data = sent(transport, "state_snapshot")
    if event_type is None:
        return data
    return [s for s in data if s["eventType"] == event_type]


def vote_json(**overrides) -> str:
    payload = {
        "type": "PARAMETER_VOTE",
        "parameterPath": PATH,
        "newValue": 24,
        "voterAccountId": "0.0.1001",
        "votingPower": 1000,
    }
    payload.update(overrides)
    return json.dumps(payload)


# ══════════════════════════════════════════════════════════════════════
#  VOTE RECORDING / QUORUM
# ══════════════════════════════════════════════════════════════════════

class TestRecordVote:

    @pytest.mark.asyncio
    async def test_opens_session_with_deadline(self):
        engine, transport, _ = make_engine()
        assert await engine.record_vote(make_vote(power=100)) is False
        session = engine.ledger.get(PATH)
        assert session.voting_ends == T0 + VOTING_PERIOD
        assert transport.messages(OUTBOUND) == []

    @pytest.mark.asyncio
    async def test_voting_period_override(self):
        engine, _, _ = make_engine(voting_period_hours=1)
        await engine.record_vote(make_vote(power=100))
        assert engine.ledger.get(PATH).voting_ends == T0 + 3600

    @pytest.mark.asyncio
    async def test_quorum_at_exact_threshold_commits(self):
        engine, transport, _ = make_engine()
        assert await engine.record_vote(make_vote(power=15000)) is True

        assert engine.store.get_value(PATH) == 24
        assert PATH not in engine.ledger
        assert len(engine.history) == 1

        [result] = results(transport)
        assert result["type"] == "PARAMETER_UPDATE"
        assert result["oldValue"] == 12
        assert result["newValue"] == 24
        assert result["quorumReached"] is True
        assert result["quorumPercentage"] == 15
        assert result["totalVotingPower"] == 15000
        assert result["executionStatus"] == "executed"
        assert len(snapshots(transport, "PARAMETER_CHANGE")) == 1

    @pytest.mark.asyncio
    async def test_one_below_threshold_stays_open(self):
        engine, transport, _ = make_engine()
        assert await engine.record_vote(make_vote(power=14999)) is False
        assert engine.store.get_value(PATH) == 12
        assert PATH in engine.ledger
        assert results(transport) == []

    @pytest.mark.asyncio
    async def test_revote_does_not_accumulate_power(self):
        engine, _, _ = make_engine()
        assert await engine.record_vote(make_vote(power=10000)) is False
        assert await engine.record_vote(make_vote(power=10000)) is False
        assert engine.ledger.get(PATH).total_voting_power == Decimal("10000")

    @pytest.mark.asyncio
    async def test_latest_vote_replaces_earlier(self):
        engine, _, _ = make_engine()
        await engine.record_vote(make_vote(power=12000))
        await engine.record_vote(make_vote(power=2000))
        assert engine.ledger.get(PATH).total_voting_power == Decimal("2000")

    @pytest.mark.asyncio
    async def test_quorum_across_voters(self):
        engine, _, _ = make_engine()
        assert await engine.record_vote(make_vote(voter="A", power=10000)) is False
        assert await engine.record_vote(make_vote(voter="B", power=5000)) is True
        assert engine.history.recent(1)[0].new_value == 24

    @pytest.mark.asyncio
    async def test_first_recorded_value_is_committed(self):
        # Voters proposing different values are not tallied separately;
        # the first recorded vote's value wins once quorum is reached.
        engine, transport, _ = make_engine()
        await engine.record_vote(make_vote(voter="A", power=10000, value=24))
        await engine.record_vote(make_vote(voter="B", power=5000, value=48))
        assert engine.store.get_value(PATH) == 24
        assert results(transport)[0]["votesInFavor"] == 2

    @pytest.mark.asyncio
    async def test_unknown_token_creates_no_session(self):
        engine, transport, _ = make_engine()
        vote = make_vote(path="treasury.weights.DOGE", value=10, power=50000)
        assert await engine.record_vote(vote) is False
        assert len(engine.ledger) == 0
        assert engine.metrics.votes_rejected.value == 1
        assert transport.messages(OUTBOUND) == []

    @pytest.mark.asyncio
    async def test_invalid_option_rejected(self):
        engine, _, _ = make_engine()
        assert await engine.record_vote(make_vote(value=5, power=50000)) is False
        assert len(engine.ledger) == 0

    @pytest.mark.asyncio
    async def test_check_quorum_without_session(self):
        engine, _, _ = make_engine()
        assert await engine.check_quorum(PATH) is False

    @pytest.mark.asyncio
    async def test_finalize_without_session(self):
        engine, _, _ = make_engine()
        assert await engine.finalize(PATH) is None

    @pytest.mark.asyncio
    async def test_finalize_below_quorum_rejects(self):
        engine, transport, _ = make_engine()
        await engine.record_vote(make_vote(power=100))
        result = await engine.finalize(PATH)
        assert result.type == "VOTE_FAILED"
        assert result.execution_status == "failed"
        assert engine.store.get_value(PATH) == 12
        assert len(snapshots(transport, "VOTE_CONCLUDED")) == 1
        assert await engine.finalize(PATH) is None


# ══════════════════════════════════════════════════════════════════════
#  EXECUTION
# ══════════════════════════════════════════════════════════════════════

class TestExecutionDispatch:

    @pytest.mark.asyncio
    async def test_weight_change_dispatches_full_composition(self):
        endpoint = make_endpoint()
        engine, transport, _ = make_engine(endpoint=endpoint)
        vote = make_vote(path="treasury.weights.HBAR", value=45, power=20000)
        assert await engine.record_vote(vote) is True

        endpoint.update_ratios.assert_awaited_once_with([45, 4, 30, 30, 30, 20])
        [result] = results(transport)
        assert result["executionStatus"] == "executed"
        assert result["txId"] == "0.0.4340026@1700000000.000000001"
        assert engine.history.recent(1)[0].tx_id == "0.0.4340026@1700000000.000000001"

    @pytest.mark.asyncio
    async def test_dispatch_failure_still_commits(self):
        endpoint = make_endpoint(error=RuntimeError("CONTRACT_REVERT_EXECUTED"))
        engine, transport, _ = make_engine(endpoint=endpoint)
        vote = make_vote(path="treasury.weights.HBAR", value=45, power=20000)
        assert await engine.record_vote(vote) is True

        assert engine.store.get_value("treasury.weights.HBAR") == 45
        [result] = results(transport)
        assert result["type"] == "PARAMETER_UPDATE"
        assert result["executionStatus"] != "executed"
        assert "txId" not in result
        assert engine.history.recent(1)[0].tx_id is None
        assert engine.metrics.dispatch_failures.value == 1
        assert len(snapshots(transport, "PARAMETER_CHANGE")) == 1

    @pytest.mark.asyncio
    async def test_missing_endpoint_records_failed_execution(self):
        engine, transport, _ = make_engine()
        vote = make_vote(path="treasury.weights.WBTC", value=6, power=20000)
        assert await engine.record_vote(vote) is True
        assert engine.store.get_value("treasury.weights.WBTC") == 6
        assert results(transport)[0]["executionStatus"] == "failed"

    @pytest.mark.asyncio
    async def test_non_executable_path_skips_endpoint(self):
        endpoint = make_endpoint()
        engine, _, _ = make_engine(endpoint=endpoint)
        await engine.record_vote(make_vote(power=15000))
        endpoint.update_ratios.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_registered_token_gets_weight_leaf(self):
        endpoint = make_endpoint()
        registry = TokenRegistry([TokenInfo("DOGE", "Dogecoin (Test)", "0.0.9999", 8)])
        engine, transport, _ = make_engine(endpoint=endpoint, registry=registry)
        vote = make_vote(path="treasury.weights.DOGE", value=10, power=15000)
        assert await engine.record_vote(vote) is True

        leaf = engine.store.get("treasury.weights.DOGE").leaf
        assert leaf.value == 10
        assert leaf.advisory
        endpoint.update_ratios.assert_awaited_once_with([50, 4, 30, 30, 30, 20])
        [result] = results(transport)
        assert result["type"] == "PARAMETER_UPDATE"
        assert result["oldValue"] is None
        assert result["executionStatus"] == "executed"
        [snapshot] = snapshots(transport, "PARAMETER_CHANGE")
        assert snapshot["parameters"]["treasury"]["weights"]["DOGE"]["value"] == 10

    @pytest.mark.asyncio
    async def test_new_weight_leaf_can_be_voted_again(self):
        engine, _, _ = make_engine()
        await engine.record_vote(make_vote(path="treasury.weights.LYNX", value=10, power=15000))
        await engine.record_vote(make_vote(path="treasury.weights.LYNX", value=12, power=15000))
        assert engine.store.get_value("treasury.weights.LYNX") == 12
        assert len(engine.history) == 2

    @pytest.mark.asyncio
    async def test_saucerswap_vote_lands_on_sauce(self):
        endpoint = make_endpoint()
        engine, transport, _ = make_engine(endpoint=endpoint)
        transport.publish(INBOUND, vote_json(parameterPath="treasury.weights.saucerswap", newValue=40, votingPower=15000))
        await engine.ingest_once()

        assert engine.store.get_value("treasury.weights.SAUCE") == 40
        assert not engine.store.get("treasury.weights.SAUCERSWAP").found
        endpoint.update_ratios.assert_awaited_once_with([50, 4, 40, 30, 30, 20])
        assert results(transport)[0]["parameterPath"] == "treasury.weights.SAUCE"

    def test_token_votes_are_labelled_from_registry(self):
        registry = TokenRegistry([TokenInfo("DOGE", "Dogecoin (Test)", "0.0.9999", 8)])
        engine, _, _ = make_engine(registry=registry)
        assert engine._describe_target("treasury.weights.DOGE") == "treasury.weights.DOGE [DOGE (0.0.9999)]"
        assert engine._describe_target("treasury.weights.PEPE") == "treasury.weights.PEPE [PEPE (unregistered)]"
        assert engine._describe_target(PATH) == PATH


# ══════════════════════════════════════════════════════════════════════
#  DEADLINE SWEEP / HEARTBEAT
# ══════════════════════════════════════════════════════════════════════

class TestSweep:

    @pytest.mark.asyncio
    async def test_deadline_force_close_exactly_once(self):
        engine, transport, clock = make_engine()
        await engine.record_vote(make_vote(power=100))

        clock.advance(VOTING_PERIOD)
        assert await engine.sweep_once() == 1
        assert await engine.sweep_once() == 0

        [result] = results(transport)
        assert result["type"] == "VOTE_FAILED"
        assert result["quorumReached"] is False
        assert PATH not in engine.ledger
        assert len(snapshots(transport, "VOTE_CONCLUDED")) == 1

    @pytest.mark.asyncio
    async def test_open_session_before_deadline(self):
        engine, transport, clock = make_engine()
        await engine.record_vote(make_vote(power=100))
        clock.advance(VOTING_PERIOD - 1)
        assert await engine.sweep_once() == 0
        assert PATH in engine.ledger
        assert results(transport) == []

    @pytest.mark.asyncio
    async def test_heartbeat_after_interval(self):
        engine, transport, clock = make_engine()
        await engine.sweep_once()
        assert len(snapshots(transport, "INITIAL_STATE")) == 1

        clock.advance(HEARTBEAT_INTERVAL_SECONDS - 1)
        await engine.sweep_once()
        assert snapshots(transport, "SCHEDULED_HEARTBEAT") == []

        clock.advance(1)
        await engine.sweep_once()
        await engine.sweep_once()
        assert len(snapshots(transport, "SCHEDULED_HEARTBEAT")) == 1

    @pytest.mark.asyncio
    async def test_heartbeat_suppressed_by_change_history(self):
        engine, transport, clock = make_engine()
        await engine.sweep_once()
        await engine.record_vote(make_vote(power=15000))

        clock.advance(HEARTBEAT_INTERVAL_SECONDS * 2)
        await engine.sweep_once()
        assert snapshots(transport, "SCHEDULED_HEARTBEAT") == []

    @pytest.mark.asyncio
    async def test_sweep_retries_failed_initial_check(self):
        transport = MagicMock()
        transport.fetch_messages = AsyncMock(side_effect=[TransportError("mirror down"), []])
        transport.send_message = AsyncMock(return_value=1)
        engine, _, _ = make_engine(transport=transport)

        await engine.sweep_once()
        assert not engine.publisher.initial_snapshot_done
        transport.send_message.assert_not_awaited()

        await engine.sweep_once()
        assert engine.publisher.initial_snapshot_done
        transport.send_message.assert_awaited_once()


# ══════════════════════════════════════════════════════════════════════
#  INGESTION
# ══════════════════════════════════════════════════════════════════════

class TestIngest:

    @pytest.mark.asyncio
    async def test_ingest_records_votes(self):
        engine, transport, _ = make_engine()
        transport.publish(INBOUND, vote_json(votingPower=500))
        assert await engine.ingest_once() == 1
        assert engine.ledger.get(PATH).total_voting_power == Decimal("500")
        assert engine.cursor.highest_seen(INBOUND) == 1

    @pytest.mark.asyncio
    async def test_messages_processed_once(self):
        engine, transport, _ = make_engine()
        transport.publish(INBOUND, vote_json(voterAccountId="A", votingPower=500))
        await engine.ingest_once()
        assert await engine.ingest_once() == 0

        transport.publish(INBOUND, vote_json(voterAccountId="B", votingPower=700))
        assert await engine.ingest_once() == 1
        assert engine.ledger.get(PATH).total_voting_power == Decimal("1200")

    @pytest.mark.asyncio
    async def test_poison_messages_advance_cursor(self):
        engine, transport, _ = make_engine()
        transport.publish(INBOUND, "not json at all")
        transport.publish(INBOUND, "{broken")
        transport.publish(INBOUND, "hcs://1/0.0.missing")
        transport.publish(INBOUND, vote_json())
        assert await engine.ingest_once() == 4
        assert engine.cursor.highest_seen(INBOUND) == 4
        assert PATH in engine.ledger
        assert engine.metrics.messages_ignored.value == 3

    @pytest.mark.asyncio
    async def test_same_voter_applied_in_sequence_order(self):
        engine, transport, _ = make_engine()
        transport.publish(INBOUND, vote_json(votingPower=9000))
        transport.publish(INBOUND, vote_json(votingPower=300))
        await engine.ingest_once()
        assert engine.ledger.get(PATH).total_voting_power == Decimal("300")

    @pytest.mark.asyncio
    async def test_multi_ratio_vote(self):
        engine, transport, _ = make_engine()
        inner = json.dumps({
            "type": "MULTI_RATIO_VOTE",
            "ratioChanges": [{"token": "HBAR", "newRatio": 45}, {"token": "WBTC", "newRatio": 5}],
            "voterAccountId": "0.0.7777",
            "votingPower": 100,
        })
        transport.publish(INBOUND, json.dumps({"p": "hcs-10", "op": "message", "data": inner}))
        await engine.ingest_once()

        for path in ("treasury.weights.HBAR", "treasury.weights.WBTC"):
            session = engine.ledger.get(path)
            assert list(session.votes) == ["0.0.7777"]
            assert session.total_voting_power == Decimal("100")

    @pytest.mark.asyncio
    async def test_multi_ratio_unknown_token_does_not_block_others(self):
        engine, transport, _ = make_engine()
        transport.publish(INBOUND, json.dumps({
            "type": "MULTI_RATIO_VOTE",
            "ratioChanges": [{"token": "DOGE", "newRatio": 10}, {"token": "JAM", "newRatio": 40}],
            "voterAccountId": "0.0.7777",
            "votingPower": 100,
        }))
        await engine.ingest_once()
        assert "treasury.weights.DOGE" not in engine.ledger
        assert "treasury.weights.JAM" in engine.ledger

    @pytest.mark.asyncio
    async def test_non_finite_values_rejected(self):
        endpoint = make_endpoint()
        engine, transport, _ = make_engine(endpoint=endpoint)
        for raw in ("1e999", "NaN", "-Infinity"):
            transport.publish(INBOUND, (
                '{"type": "PARAMETER_VOTE", "parameterPath": "treasury.weights.HBAR", '
                f'"newValue": {raw}, "voterAccountId": "0.0.1001", "votingPower": 50000}}'
            ))
        assert await engine.ingest_once() == 3
        assert len(engine.ledger) == 0
        assert engine.store.get_value("treasury.weights.HBAR") == 50
        assert engine.metrics.votes_rejected.value == 3

        transport.publish(INBOUND, vote_json(parameterPath="treasury.weights.WBTC", newValue=6, votingPower=20000))
        await engine.ingest_once()
        endpoint.update_ratios.assert_awaited_once_with([50, 6, 30, 30, 30, 20])
        [result] = results(transport)
        assert result["executionStatus"] == "executed"

    @pytest.mark.asyncio
    async def test_fetch_failure_is_retried_next_tick(self):
        transport = MagicMock()
        transport.fetch_messages = AsyncMock(side_effect=TransportError("mirror down"))
        engine, _, _ = make_engine(transport=transport)
        assert await engine.ingest_once() == 0
        assert engine.cursor.highest_seen(INBOUND) == 0
        assert engine.metrics.transport_errors.value == 1

    @pytest.mark.asyncio
    async def test_processing_error_is_contained(self):
        engine, transport, _ = make_engine()
        transport.publish(INBOUND, vote_json())
        transport.publish(INBOUND, vote_json(voterAccountId="B"))
        engine.classifier.classify = AsyncMock(side_effect=RuntimeError("boom"))
        assert await engine.ingest_once() == 2
        assert engine.cursor.highest_seen(INBOUND) == 2

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_escape(self):
        clock = FakeClock()
        memory = MemoryTransport(clock=clock)
        memory.publish(INBOUND, vote_json(votingPower=15000))
        transport = MagicMock()
        transport.fetch_messages = AsyncMock(side_effect=memory.fetch_messages)
        transport.send_message = AsyncMock(side_effect=TransportError("submit failed"))
        engine, _, _ = make_engine(clock=clock, transport=transport)

        assert await engine.ingest_once() == 1
        assert engine.store.get_value(PATH) == 24


# ══════════════════════════════════════════════════════════════════════
#  SNAPSHOTS
# ══════════════════════════════════════════════════════════════════════

class TestSnapshots:

    @pytest.mark.asyncio
    async def test_existing_snapshot_is_not_republished(self):
        engine, transport, _ = make_engine(poll_interval=3600, sweep_interval=3600)
        existing = build_envelope("state_snapshot", {"parameters": {}}, OPERATOR)
        transport.publish(OUTBOUND, json.dumps(existing))

        await engine.start()
        await engine.stop()
        await engine.start()
        await engine.stop()

        assert len(snapshots(transport)) == 1

    @pytest.mark.asyncio
    async def test_initial_snapshot_sent_once(self):
        engine, transport, _ = make_engine(poll_interval=3600, sweep_interval=3600)
        await engine.start()
        await engine.stop()
        await engine.start()
        await engine.stop()

        [snapshot] = snapshots(transport)
        assert snapshot["eventType"] == "INITIAL_STATE"
        assert transport.memo(OUTBOUND, 1) == "Initial governance state"

    @pytest.mark.asyncio
    async def test_manual_snapshot_contents(self):
        engine, transport, _ = make_engine()
        await engine.record_vote(make_vote(power=100))

        sent_result = await engine.publish_current_state()
        assert sent_result.ok

        snapshot = snapshots(transport, "MANUAL")[0]
        assert snapshot["parameters"]["rebalancing"]["frequencyHours"]["value"] == 12
        assert snapshot["parameters"]["metadata"]["totalSupply"] == 100000
        assert snapshot["stateHash"] == engine.store.state_hash()
        [active] = snapshot["activeVotes"]
        assert active["parameterPath"] == PATH
        assert active["proposedValue"] == 24
        assert active["currentVotes"] == 100
        assert active["requiredVotes"] == 15000
        assert snapshot["recentChanges"] == []

    @pytest.mark.asyncio
    async def test_recent_changes_in_snapshot(self):
        engine, transport, _ = make_engine(recent_changes=2)
        for value, voter in ((24, "A"), (48, "B"), (6, "C")):
            await engine.record_vote(make_vote(voter=voter, value=value, power=15000))

        last = snapshots(transport, "PARAMETER_CHANGE")[-1]
        assert [c["newValue"] for c in last["recentChanges"]] == [48, 6]

    @pytest.mark.asyncio
    async def test_snapshot_failure_returns_result(self):
        transport = MagicMock()
        transport.send_message = AsyncMock(side_effect=TransportError("submit failed"))
        engine, _, _ = make_engine(transport=transport)
        result = await engine.publish_current_state()
        assert not result.ok
        assert result.kind.value == "snapshot_publish"


# ══════════════════════════════════════════════════════════════════════
#  OBSERVERS
# ══════════════════════════════════════════════════════════════════════

class TestObservers:

    @pytest.mark.asyncio
    async def test_rebalancer_notified_for_rebalancing_changes(self):
        engine, transport, _ = make_engine(rebalancer_topic_id="0.0.9999")
        await engine.record_vote(make_vote(power=15000))

        [note] = sent(transport, "parameter_change", topic="0.0.9999")
        assert note["parameterPath"] == PATH
        assert note["oldValue"] == 12
        assert note["newValue"] == 24

    @pytest.mark.asyncio
    async def test_rebalancer_not_notified_for_other_paths(self):
        engine, transport, _ = make_engine(rebalancer_topic_id="0.0.9999")
        await engine.record_vote(make_vote(path="fees.mintingFee", value=0.3, power=25000))
        assert transport.messages("0.0.9999") == []

    @pytest.mark.asyncio
    async def test_sync_and_async_observers(self):
        engine, _, _ = make_engine()
        seen = []
        engine.add_observer("rebalancing", lambda record: seen.append(("sync", record.parameter_path)))

        async def on_change(record):
            seen.append(("async", record.new_value))

        engine.add_observer("rebalancing.frequencyHours", on_change)
        await engine.record_vote(make_vote(power=15000))
        assert seen == [("sync", PATH), ("async", 24)]

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_block_snapshot(self):
        engine, transport, _ = make_engine()

        def explode(record):
            raise RuntimeError("observer crashed")

        engine.add_observer("rebalancing", explode)
        await engine.record_vote(make_vote(power=15000))
        assert len(snapshots(transport, "PARAMETER_CHANGE")) == 1

    @pytest.mark.asyncio
    async def test_prefix_match_is_segment_aware(self):
        engine, _, _ = make_engine()
        seen = []
        engine.add_observer("rebalancing.frequency", seen.append)
        await engine.record_vote(make_vote(power=15000))
        assert seen == []


# ══════════════════════════════════════════════════════════════════════
#  LIFECYCLE
# ══════════════════════════════════════════════════════════════════════

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_runs_loops_until_stopped(self):
        engine, transport, _ = make_engine(poll_interval=0.01, sweep_interval=0.01)
        transport.publish(INBOUND, vote_json(votingPower=500))

        await engine.start()
        assert engine.running
        await asyncio.sleep(0.1)
        await engine.stop()

        assert not engine.running
        assert engine.cursor.highest_seen(INBOUND) == 1
        assert PATH in engine.ledger

    @pytest.mark.asyncio
    async def test_double_start_is_ignored(self):
        engine, _, _ = make_engine(poll_interval=3600, sweep_interval=3600)
        await engine.start()
        task = engine._ingest_task
        await engine.start()
        assert engine._ingest_task is task
        await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self):
        engine, _, _ = make_engine()
        await engine.stop()
        assert not engine.running

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_tick(self):
        engine, transport, _ = make_engine(poll_interval=3600, sweep_interval=3600)
        transport.publish(INBOUND, vote_json(votingPower=15000))

        gate = asyncio.Event()
        fetch = transport.fetch_messages

        async def slow_fetch(topic_id, since_sequence=None):
            if topic_id == INBOUND:
                await gate.wait()
            return await fetch(topic_id, since_sequence)

        transport.fetch_messages = slow_fetch
        await engine.start()
        await asyncio.sleep(0.01)

        stopping = asyncio.create_task(engine.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        gate.set()
        await stopping
        assert engine.store.get_value(PATH) == 24
