"""
Governance Engine

Orchestrates the dial-voting lifecycle:

    ingest tick:  fetch inbound messages above the cursor → classify →
                  record votes → quorum check → finalize → publish
    sweep tick:   initial-snapshot check → force-close expired sessions →
                  scheduled heartbeat snapshot

Per parameter path: NoSession → Open → {Committed | Rejected} → NoSession.
Engine: Stopped → Running → Stopped.

All state (cursor, sessions, history, parameters) is owned by one engine
instance. One engine-wide ``asyncio.Lock`` serialises ticks and public
calls, so the vote ledger and parameter store only ever see one writer.
"""

import asyncio
import inspect
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple, Union

from ..constants import (
    EXECUTION_EXECUTED,
    EXECUTION_FAILED,
    GOVERNANCE_CHANGE_HISTORY_LIMIT,
    GOVERNANCE_SNAPSHOT_RECENT_CHANGES,
    GOVERNANCE_TOTAL_SUPPLY,
    HEARTBEAT_INTERVAL_SECONDS,
    INGEST_POLL_INTERVAL_SECONDS,
    OP_PARAMETER_CHANGE,
    PROTOCOL_TAG,
    REBALANCING_PREFIX,
    RESULT_PARAMETER_UPDATE,
    RESULT_VOTE_FAILED,
    SESSION_SWEEP_INTERVAL_SECONDS,
    SNAPSHOT_MANUAL,
    SNAPSHOT_PARAMETER_CHANGE,
    SNAPSHOT_SCHEDULED_HEARTBEAT,
    SNAPSHOT_VOTE_CONCLUDED,
)
from ..exceptions import ValidationError
from ..logger import get_logger
from ..metrics import GovernanceMetrics
from ..tokens import TokenRegistry
from .cursor import MessageCursor
from .execution import ExecutionDispatcher, JsonRpcRatioEndpoint, RatioEndpoint
from .messages import ChangeHistory, MessageClassifier, ParameterChangeRecord, VoteResultMessage
from .parameters import LookupStatus, ParameterStore
from .publisher import ResultPublisher, build_state_snapshot
from .results import CallResult, ErrorKind, capture
from .voting import ParameterVote, QuorumEvaluator, VoteLedger, token_symbol, validate_vote

logger = get_logger(__name__)

ChangeObserver = Callable[[ParameterChangeRecord], Union[None, Awaitable[None]]]


class GovernanceEngine:
    """
    Off-chain dial governance: votes in, committed parameters out.

    Args:
        transport:           MessageTransport (fetch / send / resolve)
        inbound_topic_id:    Topic votes are read from
        outbound_topic_id:   Topic results and snapshots are sent to
        operator_id:         ``<inboundTopic>@<accountId>`` stamped on envelopes
        dispatcher:          ExecutionDispatcher for ``treasury.weights.*``
        voting_period_hours: Overrides ``governance.votingPeriodHours``
        clock:               Epoch-seconds clock (injectable for tests)
    """

    def __init__(
        self,
        transport,
        inbound_topic_id: str,
        outbound_topic_id: str,
        operator_id: str,
        store: Optional[ParameterStore] = None,
        registry: Optional[TokenRegistry] = None,
        dispatcher: Optional[ExecutionDispatcher] = None,
        metrics: Optional[GovernanceMetrics] = None,
        total_supply: Decimal = GOVERNANCE_TOTAL_SUPPLY,
        history_limit: int = GOVERNANCE_CHANGE_HISTORY_LIMIT,
        recent_changes: int = GOVERNANCE_SNAPSHOT_RECENT_CHANGES,
        validate_options: bool = True,
        voting_period_hours: Optional[float] = None,
        poll_interval: float = INGEST_POLL_INTERVAL_SECONDS,
        sweep_interval: float = SESSION_SWEEP_INTERVAL_SECONDS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        protocol_tag: str = PROTOCOL_TAG,
        rebalancer_topic_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.inbound_topic_id = inbound_topic_id
        self.outbound_topic_id = outbound_topic_id
        self._clock = clock

        self.store = store or ParameterStore(total_supply=total_supply, clock=clock)
        self.registry = registry or TokenRegistry()
        self.dispatcher = dispatcher or ExecutionDispatcher()
        self.metrics = metrics or GovernanceMetrics()

        self.cursor = MessageCursor()
        self.ledger = VoteLedger()
        self.evaluator = QuorumEvaluator(self.store, total_supply)
        self.history = ChangeHistory(history_limit)
        self.classifier = MessageClassifier(transport, protocol_tag=protocol_tag)
        self.publisher = ResultPublisher(
            transport, outbound_topic_id, operator_id,
            protocol_tag=protocol_tag, clock=clock,
        )

        self.recent_changes = recent_changes
        self.validate_options = validate_options
        self.voting_period_hours = voting_period_hours
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self.heartbeat_interval = heartbeat_interval

        self._lock = asyncio.Lock()
        self._observers: List[Tuple[str, ChangeObserver]] = []
        self._running = False
        self._ingest_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Future] = set()

        self.rebalancer_topic_id = rebalancer_topic_id
        if rebalancer_topic_id:
            self.add_observer(REBALANCING_PREFIX, self._notify_rebalancer)

    @classmethod
    def from_config(cls, config, transport, endpoint: Optional[RatioEndpoint] = None,
                    clock: Callable[[], float] = time.time) -> "GovernanceEngine":
        """
        Build an engine from an ``EngineConfig``.

        Raises ConfigurationError before anything starts when the config
        is invalid (e.g. execution enabled without credentials).
        """
        config.validate()

        execution = config.execution
        if execution.enabled and endpoint is None:
            endpoint = JsonRpcRatioEndpoint(
                url=execution.endpoint_url,
                contract_id=execution.contract_id,
                api_key=execution.api_key,
                function_name=execution.function_name,
                gas=execution.gas,
                timeout=config.transport.timeout,
            )
        dispatcher = ExecutionDispatcher(
            endpoint=endpoint if execution.enabled else None,
            token_order=execution.token_order,
            ratio_min=execution.ratio_min,
            ratio_max=execution.ratio_max,
        )

        gov = config.governance
        return cls(
            transport=transport,
            inbound_topic_id=config.engine.inbound_topic_id,
            outbound_topic_id=config.engine.outbound_topic_id,
            operator_id=config.engine.operator_id,
            store=ParameterStore(
                total_supply=gov.total_supply,
                contract_address=gov.contract_address or execution.contract_id or None,
                clock=clock,
            ),
            registry=TokenRegistry(config.tokens),
            dispatcher=dispatcher,
            total_supply=gov.total_supply,
            history_limit=gov.history_limit,
            recent_changes=gov.recent_changes,
            validate_options=gov.validate_options,
            voting_period_hours=gov.voting_period_hours,
            poll_interval=config.engine.poll_interval,
            sweep_interval=config.engine.sweep_interval,
            heartbeat_interval=config.engine.heartbeat_interval,
            protocol_tag=config.engine.protocol_tag,
            rebalancer_topic_id=config.rebalancer.topic_id or None,
            clock=clock,
        )

    @property
    def running(self) -> bool:
        return self._running

    # ── Observers ─────────────────────────────────────────────────────

    def add_observer(self, prefix: str, callback: ChangeObserver):
        """Call *callback* with every committed change at or under *prefix*."""
        self._observers.append((prefix, callback))

    async def _notify_observers(self, record: ParameterChangeRecord):
        path = record.parameter_path
        for prefix, callback in self._observers:
            if path != prefix and not path.startswith(prefix + "."):
                continue
            try:
                result = callback(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Observer for {prefix} failed on {path}: {type(e).__name__}: {e}")

    async def _notify_rebalancer(self, record: ParameterChangeRecord):
        data = record.to_dict()
        data["eventType"] = SNAPSHOT_PARAMETER_CHANGE
        sent = await self.publisher.publish(
            self.rebalancer_topic_id,
            OP_PARAMETER_CHANGE,
            data,
            memo=f"Parameter change: {record.parameter_path}",
        )
        if sent.ok:
            logger.info(f"Rebalancer notified of {record.parameter_path} on {self.rebalancer_topic_id}")
        else:
            logger.warning(f"Rebalancer notification for {record.parameter_path} failed: {sent.error}")

    # ── Votes ─────────────────────────────────────────────────────────

    async def record_vote(self, vote: ParameterVote) -> bool:
        """Record *vote*; returns True if it brought its session to quorum."""
        async with self._lock:
            return await self._record_vote(vote)

    def _describe_target(self, path: str) -> str:
        symbol = token_symbol(path)
        return path if symbol is None else f"{path} [{self.registry.describe(symbol)}]"

    async def _record_vote(self, vote: ParameterVote) -> bool:
        target = self._describe_target(vote.parameter_path)
        try:
            validate_vote(vote, self.store, self.registry, validate_options=self.validate_options)
        except ValidationError as e:
            self.metrics.votes_rejected.inc()
            logger.warning(f"REJECTED vote from {vote.voter_account_id} on {target}: {e}")
            return False

        now = self._clock()
        period_hours = self.voting_period_hours or self.store.voting_period_hours()
        session, opened, replaced = self.ledger.record(vote, voting_ends=now + period_hours * 3600)
        self.metrics.votes_recorded.inc()
        self.metrics.active_sessions.set(len(self.ledger))

        if opened:
            logger.info(f"Voting session opened for {vote.parameter_path} (period {period_hours}h)")
        if replaced is not None:
            logger.info(
                f"Vote from {vote.voter_account_id} on {vote.parameter_path} replaced "
                f"({replaced.new_value} → {vote.new_value})"
            )
        else:
            logger.info(
                f"Vote recorded: {vote.voter_account_id} → {target} = {vote.new_value} "
                f"(power={vote.voting_power})"
            )
        return await self._check_quorum(vote.parameter_path)

    async def check_quorum(self, path: str) -> bool:
        async with self._lock:
            return await self._check_quorum(path)

    async def _check_quorum(self, path: str) -> bool:
        session = self.ledger.get(path)
        if session is None:
            return False
        tally = self.evaluator.evaluate(session)
        logger.debug(
            f"{path}: {tally.total_voting_power}/{tally.required_voting_power} "
            f"({tally.quorum_percentage}% quorum)"
        )
        if not tally.reached:
            return False
        logger.info(f"QUORUM REACHED for {path} ({tally.total_voting_power} ≥ {tally.required_voting_power})")
        await self._finalize(path)
        return True

    # ── Finalize ──────────────────────────────────────────────────────

    async def finalize(self, path: str) -> Optional[VoteResultMessage]:
        async with self._lock:
            return await self._finalize(path)

    async def _finalize(self, path: str) -> Optional[VoteResultMessage]:
        """
        Decide and apply the outcome of *path*'s session.

        The session is detached first, so a path is finalized at most once
        per session. Returns None when there is no session.
        """
        session = self.ledger.detach(path)
        self.metrics.active_sessions.set(len(self.ledger))
        if session is None:
            return None

        tally = self.evaluator.evaluate(session)
        old_value = self.store.get_value(path)
        new_value = session.proposed_value
        now = self._clock()

        if tally.reached:
            result = await self._commit(session, tally, old_value, new_value, now)
        else:
            result = None

        if result is None:
            result = VoteResultMessage(
                type=RESULT_VOTE_FAILED,
                parameter_path=path,
                old_value=old_value,
                new_value=new_value,
                votes_in_favor=tally.votes_in_favor,
                total_voting_power=tally.total_voting_power,
                quorum_percentage=tally.quorum_percentage,
                quorum_reached=tally.reached,
                effective_timestamp=now,
                execution_status=EXECUTION_FAILED,
            )
            self.metrics.sessions_rejected.inc()
            logger.info(
                f"VOTE_FAILED for {path}: {tally.total_voting_power}/{tally.required_voting_power} "
                f"from {tally.votes_in_favor} voter(s)"
            )
            await self.publisher.publish_result(result)
            await self._publish_snapshot(SNAPSHOT_VOTE_CONCLUDED)
        return result

    async def _commit(self, session, tally, old_value, new_value, now: float) -> Optional[VoteResultMessage]:
        path = session.parameter_path
        status, tx_id = EXECUTION_EXECUTED, None

        if self.dispatcher.is_executable(path):
            composition = self.store.composition(self.dispatcher.prefix)
            composition[path] = new_value
            started = time.monotonic()
            dispatched = await capture(self.dispatcher.dispatch(composition), ErrorKind.EXECUTION)
            self.metrics.dispatch_latency.observe(time.monotonic() - started)
            if dispatched.ok:
                tx_id = dispatched.value.tx_id
            else:
                status = EXECUTION_FAILED
                self.metrics.dispatch_failures.inc()
                logger.error(f"DISPATCH FAILED for {path} ({dispatched.kind.value}): {dispatched.error}")

        written = self.store.set(path, new_value, timestamp=now)
        symbol = token_symbol(path)
        if written.status == LookupStatus.NOT_FOUND and symbol is not None:
            written = self.store.add_token_weight(symbol, new_value, timestamp=now)
        if not written.found:
            logger.error(f"Cannot commit {path} = {new_value!r}: {written.status.value} {written.detail}")
            return None

        record = ParameterChangeRecord(
            parameter_path=path,
            old_value=old_value,
            new_value=new_value,
            timestamp=now,
            tx_id=tx_id,
        )
        self.history.append(record)
        self.metrics.sessions_committed.inc()
        logger.info(f"COMMITTED {path}: {old_value} → {new_value}" + (f" (txId={tx_id})" if tx_id else ""))

        result = VoteResultMessage(
            type=RESULT_PARAMETER_UPDATE,
            parameter_path=path,
            old_value=old_value,
            new_value=new_value,
            votes_in_favor=tally.votes_in_favor,
            total_voting_power=tally.total_voting_power,
            quorum_percentage=tally.quorum_percentage,
            quorum_reached=True,
            effective_timestamp=now,
            execution_status=status,
            tx_id=tx_id,
        )
        await self.publisher.publish_result(result)
        await self._notify_observers(record)
        await self._publish_snapshot(SNAPSHOT_PARAMETER_CHANGE)
        return result

    # ── Snapshots ─────────────────────────────────────────────────────

    def build_snapshot(self, event_type: str):
        return build_state_snapshot(
            event_type,
            self._clock(),
            self.store,
            self.ledger.sessions(),
            self.evaluator.evaluate,
            self.history.recent(self.recent_changes),
        )

    async def _publish_snapshot(self, event_type: str) -> CallResult:
        sent = await self.publisher.publish_snapshot(self.build_snapshot(event_type))
        if sent.ok:
            self.metrics.snapshots_published.inc()
        return sent

    async def publish_current_state(self) -> CallResult:
        """Publish a MANUAL snapshot of the current state."""
        async with self._lock:
            return await self._publish_snapshot(SNAPSHOT_MANUAL)

    async def _ensure_initial_snapshot(self) -> CallResult:
        checked = await self.publisher.ensure_initial_snapshot(self.build_snapshot)
        if checked.ok and checked.value:
            self.metrics.snapshots_published.inc()
        elif not checked.ok:
            self.metrics.transport_errors.inc()
        return checked

    # ── Ticks ─────────────────────────────────────────────────────────

    async def ingest_once(self) -> int:
        """Process every new inbound message once. Returns the count consumed."""
        async with self._lock:
            since = self.cursor.highest_seen(self.inbound_topic_id)
            fetched = await capture(
                self.transport.fetch_messages(self.inbound_topic_id, since),
                ErrorKind.TRANSPORT,
            )
            if not fetched.ok:
                self.metrics.transport_errors.inc()
                logger.warning(f"Fetch from {self.inbound_topic_id} failed, retrying next tick: {fetched.error}")
                return 0

            fresh = self.cursor.unseen(self.inbound_topic_id, fetched.value)
            if fresh:
                logger.info(f"Processing {len(fresh)} new message(s) from {self.inbound_topic_id} after seq={since}")

            for message in fresh:
                try:
                    await self._process_message(message)
                except Exception as e:
                    logger.error(f"Error processing message seq={message.sequence_number}: {type(e).__name__}: {e}")
                finally:
                    self.cursor.advance(self.inbound_topic_id, message.sequence_number)
                    self.metrics.messages_processed.inc()
                    self.metrics.cursor_sequence.set(self.cursor.highest_seen(self.inbound_topic_id))
            return len(fresh)

    async def _process_message(self, message):
        classification = await self.classifier.classify(message)
        if classification.ignored:
            self.metrics.messages_ignored.inc()
            logger.debug(f"Ignoring seq={message.sequence_number}: {classification.ignored}")
            return
        for reason in classification.rejected:
            self.metrics.votes_rejected.inc()
            logger.warning(f"REJECTED entry in seq={message.sequence_number}: {reason}")
        for vote in classification.votes:
            await self._record_vote(vote)

    async def sweep_once(self) -> int:
        """
        Initial-snapshot retry, deadline force-close and heartbeat.

        Returns the number of sessions finalized.
        """
        async with self._lock:
            if not self.publisher.initial_snapshot_done:
                await self._ensure_initial_snapshot()

            now = self._clock()
            closed = 0
            for path in self.ledger.expired(now):
                logger.info(f"Voting period ended for {path}")
                try:
                    await self._finalize(path)
                    closed += 1
                except Exception as e:
                    logger.error(f"Error finalizing {path}: {type(e).__name__}: {e}")

            if self.publisher.initial_snapshot_done and self.publisher.heartbeat_due(
                now, self.heartbeat_interval, history_empty=len(self.history) == 0
            ):
                logger.info("Publishing scheduled heartbeat snapshot")
                await self._publish_snapshot(SNAPSHOT_SCHEDULED_HEARTBEAT)
            return closed

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self):
        """Initial-snapshot check, then start the ingest and sweep loops."""
        if self._running:
            logger.warning("GovernanceEngine already running")
            return

        logger.info(
            f"Starting governance engine: inbound={self.inbound_topic_id} "
            f"outbound={self.outbound_topic_id}"
        )
        async with self._lock:
            await self._ensure_initial_snapshot()

        self._running = True
        self._ingest_task = asyncio.create_task(
            self._run_periodically(self.ingest_once, self.poll_interval, "ingest")
        )
        self._sweep_task = asyncio.create_task(
            self._run_periodically(self.sweep_once, self.sweep_interval, "sweep")
        )
        logger.info("Governance engine started")

    async def stop(self):
        """Cancel both loops and wait for any in-flight tick to complete."""
        if not self._running:
            return
        logger.info("Stopping governance engine...")
        self._running = False

        for task in (self._ingest_task, self._sweep_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._ingest_task = self._sweep_task = None

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Governance engine stopped")

    async def _run_periodically(self, tick: Callable[[], Awaitable[Any]], interval: float, name: str):
        while self._running:
            # Shielded so cancelling the loop never aborts a tick mid-finalize
            future = asyncio.ensure_future(tick())
            self._in_flight.add(future)
            future.add_done_callback(self._in_flight.discard)
            try:
                await asyncio.shield(future)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {name} loop: {type(e).__name__}: {e}")
            await asyncio.sleep(interval)

    def __repr__(self) -> str:
        return (
            f"<GovernanceEngine running={self._running} sessions={len(self.ledger)} "
            f"changes={len(self.history)}>"
        )
