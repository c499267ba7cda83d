# scheduler.py
"""
Orchestrator Loop: the round engine.

One asyncio task runs read -> decide -> act to completion before the next
tick, so this process never has two transitions in flight. Every iteration is
wrapped: a failure is recorded in the status snapshot and the loop carries on.
stop() lets the in-flight iteration (and any transaction it sent) finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

from broadcaster import EventBroadcaster, Subscription
from chain import ChainReader
from errors import (
    AccountNotFound,
    ConfigurationError,
    EngineError,
    StaleStateRejection,
    TransactionRejected,
    TransportError,
)
from ledger import AuthoritySigner, SolanaLedger, to_pubkey
from models import EngineStatus, JackpotTriggered, Round, RoundSettled, RoundStarted, _rfc3339
from rounds import Action, ChainView, Decision, MachinePolicy, RoundStateMachine, start_target
from status import StatusReporter
from submitter import MAX_DURATION_SEC, TransactionSubmitter, TransitionKind

logger = logging.getLogger(__name__)


class Ticker:
    """Fixed-interval wakeups, an early wake(), and one stop signal."""

    def __init__(self, interval: float):
        self.interval = interval
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def wake(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    async def wait(self) -> bool:
        """Sleep until the next tick; False once stop() was called."""
        if self._stop.is_set():
            return False
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()
        return not self._stop.is_set()


class RoundEngine:
    def __init__(
        self,
        settings,
        reader: ChainReader,
        submitter: TransactionSubmitter,
        machine: RoundStateMachine,
        broadcaster: EventBroadcaster,
        reporter: StatusReporter,
        *,
        authority: Optional[str] = None,
        ledger=None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.reader = reader
        self.submitter = submitter
        self.machine = machine
        self.broadcaster = broadcaster
        self.reporter = reporter
        self.authority = authority
        self.ledger = ledger
        self._clock = clock
        self._ticker = Ticker(float(settings.POLL_INTERVAL_SEC))
        self._task: Optional[asyncio.Task] = None
        # settles this process confirmed but has not yet seen land: round_id -> (signature, jackpot before)
        self._unannounced: Dict[int, Tuple[str, Optional[int]]] = {}
        self._decision: Optional[Decision] = None

    # =========================================================
    # Lifecycle
    # =========================================================
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("Round engine is already running")
            return
        self._ticker = Ticker(float(self.settings.POLL_INTERVAL_SEC))
        self.reporter.update(running=True, last_action="Starting")
        logger.info(
            "Starting round engine (poll=%.1fs, round=%ss, stuck threshold=%d, policy=%s)",
            self.settings.POLL_INTERVAL_SEC, self.settings.ROUND_DURATION_SEC,
            self.settings.STUCK_THRESHOLD, self.settings.STUCK_POLICY,
        )
        self._task = asyncio.create_task(self._run(), name="round-engine")

    def request_stop(self) -> None:
        """Signal the loop to stop after the in-flight iteration, without waiting."""
        self._ticker.stop()

    async def stop(self) -> None:
        if not self.running:
            return
        logger.info("Stopping round engine")
        self.request_stop()
        task, self._task = self._task, None
        await task
        logger.info("Round engine stopped")

    async def close(self) -> None:
        await self.stop()
        await self.broadcaster.close()
        if self.ledger is not None and hasattr(self.ledger, "close"):
            await self.ledger.close()

    async def _run(self) -> None:
        try:
            while not self._ticker.stopped:
                await self.run_once()
                if not await self._ticker.wait():
                    break
        finally:
            self.reporter.update(running=False, last_action="Stopped")

    # =========================================================
    # Outbound surface
    # =========================================================
    def get_status(self) -> EngineStatus:
        return self.reporter.snapshot().model_copy(update={
            "subscribers": self.broadcaster.subscriber_count,
            "dropped_events": self.broadcaster.dropped,
            "force_advance_authorized": self.machine.has_authorization,
        })

    def add_listener(self, callback: Callable[[Any], Any]) -> Subscription:
        return self.broadcaster.add_listener(callback)

    def remove_listener(self, handle: Subscription) -> None:
        self.broadcaster.remove_listener(handle)

    def subscribe(self) -> Subscription:
        return self.broadcaster.subscribe()

    def unsubscribe(self, handle: Subscription) -> None:
        self.broadcaster.unsubscribe(handle)

    def authorize_force_advance(self, round_id: Optional[int] = None) -> None:
        logger.warning("Operator authorized forced advancement past %s",
                       f"round {round_id}" if round_id is not None else "the stuck round")
        self.machine.authorize_force_advance(round_id)
        self._ticker.wake()

    # =========================================================
    # One iteration
    # =========================================================
    async def run_once(self) -> Optional[Decision]:
        now = self._clock()
        self.reporter.update(last_check_at=_rfc3339())
        self._decision = None
        try:
            decision, resolved = await self._iterate(now)
        except EngineError as e:
            self._log_failure(e)
            self._record_error(e)
            return None
        except Exception as e:
            logger.exception("Unexpected error in round cycle")
            self._record_error(e)
            return None

        stuck = None if resolved else decision.stuck
        changes = self._decision_changes(decision, stuck, last_action=decision.note)
        if stuck is not None:
            self.reporter.record_failure(stuck, **changes)
        else:
            self.reporter.record_success(**changes)
        return decision

    def _decision_changes(self, decision: Decision, stuck, **changes) -> Dict[str, Any]:
        changes.update(
            iterations=self.reporter.snapshot().iterations + 1,
            phase=decision.phase,
            stuck=stuck is not None,
            stuck_round_id=stuck.round_id if stuck is not None else None,
        )
        if decision.round_id is not None:
            changes["last_observed_round_id"] = decision.round_id
        return changes

    def _record_error(self, e: BaseException) -> None:
        decision = self._decision
        if decision is None:
            self.reporter.record_failure(e, iterations=self.reporter.snapshot().iterations + 1,
                                         last_action=f"Error: {e}")
            return
        # the action failed, so a stuck round is still stuck
        changes = self._decision_changes(decision, decision.stuck, last_action=f"Error: {e}")
        if decision.stuck is not None:
            self.reporter.record_failure(e, decision.stuck, **changes)
        else:
            self.reporter.record_failure(e, **changes)

    def _log_failure(self, e: EngineError) -> None:
        if isinstance(e, AccountNotFound):
            logger.warning("Global state not found - program not initialized (%s)", e.address)
        elif isinstance(e, TransportError):
            logger.warning("Round cycle: %s", e)
        else:
            logger.error("Round cycle failed: %s", e)

    async def _observe(self, now: float) -> ChainView:
        config = await self.reader.read_global_config()
        self.reporter.update(current_round_id=config.current_round_id)
        if self.authority and config.authority != self.authority:
            raise ConfigurationError(
                f"Configured authority {self.authority} does not match on-chain authority {config.authority}"
            )
        cur = config.current_round_id
        current = await self.reader.read_round(cur) if cur > 0 else None
        previous = None
        if cur > 1 and current is None:
            previous = await self.reader.read_round(cur - 1)

        target = start_target(config, current)
        target_exists = False
        if target != cur and (current is None or current.settled or current.is_expired(now)):
            target_exists = await self.reader.round_exists(target)
        return ChainView(config=config, current=current, now=now, previous=previous, target_exists=target_exists)

    async def _iterate(self, now: float) -> Tuple[Decision, bool]:
        view = await self._observe(now)
        for rnd in (view.current, view.previous):
            if rnd is not None and rnd.settled and rnd.round_id in self._unannounced:
                await self._announce_settled(rnd)

        decision = self._decision = self.machine.decide(view)
        if decision.newly_stuck:
            logger.error("STUCK ROUND %s: expired and unsettled for %d polls (policy=%s)",
                         decision.stuck.round_id, decision.stuck.polls, self.settings.STUCK_POLICY)
        elif decision.stuck is not None:
            logger.warning("Round %s still stuck (%d polls)", decision.stuck.round_id, decision.stuck.polls)
        else:
            logger.debug("Round cycle: %s", decision.note)

        if decision.action is None:
            return decision, False
        if self._ticker.stopped:
            logger.info("Stop requested; not submitting %s", decision.action.kind.value)
            return decision, False

        resolved = await self._act(decision.action, now)
        return decision, resolved

    # =========================================================
    # Acting
    # =========================================================
    async def _act(self, action: Action, now: float) -> bool:
        """Run one transition; True once the round it was due for is behind us."""
        if action.kind is TransitionKind.SETTLE_ROUND:
            resolved = await self._settle(action.round_id, now)
        else:
            resolved = await self._start(action)
        self.reporter.update(last_transition_at=_rfc3339())
        self._ticker.wake()
        return resolved

    def _advanced_to(self, round_id: int) -> None:
        self.machine.advanced_to(round_id)
        for rid in [r for r in self._unannounced if r < round_id]:
            logger.warning("Round %s settle was confirmed but never observed; dropping its announcement", rid)
            del self._unannounced[rid]

    async def _start(self, action: Action) -> bool:
        forced = action.kind is TransitionKind.FORCE_START_ROUND
        if forced:
            logger.warning("Forcing start of round %s past a stuck round", action.round_id)
        try:
            conf = await self.submitter.submit(action.kind, action.round_id,
                                               duration=int(self.settings.ROUND_DURATION_SEC))
        except StaleStateRejection as e:
            logger.warning("Start of round %s rejected as stale (%s); re-reading", action.round_id, e.reason)
            if await self.reader.round_exists(action.round_id):
                logger.info("Round %s was already started on-chain", action.round_id)
                if forced:
                    self.machine.consume_authorization(action.round_id - 1)
                self._advanced_to(action.round_id)
                return True
            raise

        if forced:
            # the stuck round is always the one just before the forced target
            self.machine.consume_authorization(action.round_id - 1)
        self._advanced_to(action.round_id)
        rnd = await self._read_quietly(action.round_id)
        self.reporter.increment("rounds_started")
        logger.info("Round %s started%s: %s", action.round_id, " (forced)" if forced else "", conf.signature)
        self.broadcaster.publish(RoundStarted(
            round_id=action.round_id,
            ends_at=rnd.ends_at if rnd is not None else None,
            signature=conf.signature,
            forced=forced,
        ))
        return True

    async def _settle(self, round_id: int, now: float) -> bool:
        pool_before = await self._jackpot_balance()
        try:
            conf = await self.submitter.submit(TransitionKind.SETTLE_ROUND, round_id)
        except StaleStateRejection as e:
            self.machine.record_settle_attempt(round_id, now, confirmed=False)
            logger.warning("Settle of round %s rejected as stale (%s); re-reading", round_id, e.reason)
            rnd = await self.reader.read_round(round_id)
            self.machine.observe(rnd)
            if rnd is not None and rnd.settled:
                logger.info("Round %s was already settled on-chain; advancing", round_id)
                return True
            raise
        except (TransportError, TransactionRejected):
            self.machine.record_settle_attempt(round_id, now, confirmed=False)
            raise

        self.machine.record_settle_attempt(round_id, now, confirmed=True)
        self._unannounced[round_id] = (conf.signature, pool_before)
        rnd = await self._read_quietly(round_id)
        if rnd is not None and rnd.settled:
            self.machine.observe(rnd)
            await self._announce_settled(rnd)
            return True
        logger.info("Round %s settle confirmed; waiting for the account to reflect it", round_id)
        return False

    async def _announce_settled(self, rnd: Round) -> None:
        signature, pool_before = self._unannounced.pop(rnd.round_id)
        side = rnd.winning_side.label if rnd.winning_side is not None else None
        self.reporter.increment("rounds_settled")
        logger.info("Round %s settled - %s wins, pot %s: %s", rnd.round_id, side, rnd.pot, signature)
        self.broadcaster.publish(RoundSettled(
            round_id=rnd.round_id,
            heads_total=rnd.heads_total,
            tails_total=rnd.tails_total,
            pot=rnd.pot,
            winning_side=side,
            signature=signature,
        ))
        if pool_before is None:
            return
        pool_after = await self._jackpot_balance()
        if pool_after is not None and pool_after < pool_before:
            amount = pool_before - pool_after
            self.reporter.increment("jackpots_triggered")
            logger.info("Jackpot hit in round %s: %s paid out", rnd.round_id, amount)
            self.broadcaster.publish(JackpotTriggered(
                round_id=rnd.round_id,
                amount=amount,
                pool_before=pool_before,
                pool_after=pool_after,
                signature=signature,
            ))

    async def _read_quietly(self, round_id: int) -> Optional[Round]:
        try:
            return await self.reader.read_round(round_id)
        except EngineError as e:
            logger.warning("Post-transition read of round %s failed: %s", round_id, e)
            return None

    async def _jackpot_balance(self) -> Optional[int]:
        if not self.settings.JACKPOT_TRACKING:
            return None
        try:
            pool = await self.reader.read_jackpot_pool()
        except EngineError as e:
            logger.debug("Jackpot pool read failed: %s", e)
            return None
        return pool.lamports if pool is not None else None


# =========================================================
# Composition
# =========================================================
def validate_settings(settings) -> None:
    """Raise ConfigurationError for anything that must stop the engine from starting."""
    if not settings.has_authority:
        raise ConfigurationError("AUTHORITY_PK is not set")
    url = urlparse(settings.RPC_URL or "")
    if url.scheme not in ("http", "https") or not url.netloc:
        raise ConfigurationError(f"RPC_URL must be an http(s) URL, got {settings.RPC_URL!r}")
    if not 0 < int(settings.ROUND_DURATION_SEC) <= MAX_DURATION_SEC:
        raise ConfigurationError(f"ROUND_DURATION_SEC must be in 1..{MAX_DURATION_SEC}")
    if float(settings.POLL_INTERVAL_SEC) <= 0:
        raise ConfigurationError("POLL_INTERVAL_SEC must be positive")
    if int(settings.STUCK_THRESHOLD) < 1:
        raise ConfigurationError("STUCK_THRESHOLD must be at least 1")
    if int(settings.TX_MAX_ATTEMPTS) < 1:
        raise ConfigurationError("TX_MAX_ATTEMPTS must be at least 1")
    if float(settings.TX_CONFIRM_TIMEOUT_SEC) <= 0:
        raise ConfigurationError("TX_CONFIRM_TIMEOUT_SEC must be positive")


def build_engine(settings, *, ledger=None, signer: Optional[AuthoritySigner] = None,
                 clock: Callable[[], float] = time.time) -> RoundEngine:
    """Wire a RoundEngine from settings. Raises ConfigurationError on bad config."""
    validate_settings(settings)
    try:
        program_id = to_pubkey(settings.PROGRAM_ID)
    except ValueError as e:
        raise ConfigurationError(f"PROGRAM_ID is not a valid address: {e}") from None
    signer = signer or AuthoritySigner.from_secret(settings.AUTHORITY_PK)
    ledger = ledger or SolanaLedger(settings.RPC_URL, timeout=float(settings.RPC_TIMEOUT_SEC))

    reporter = StatusReporter()
    submitter = TransactionSubmitter(
        ledger,
        signer,
        program_id,
        reporter=reporter,
        max_attempts=settings.TX_MAX_ATTEMPTS,
        backoff=settings.TX_BACKOFF_SEC,
        backoff_max=settings.TX_BACKOFF_MAX_SEC,
        confirm_timeout=settings.TX_CONFIRM_TIMEOUT_SEC,
        poll_interval=settings.TX_POLL_SEC,
    )
    logger.info("Round engine configured: program=%s authority=%s rpc=%s",
                program_id, signer.pubkey, urlparse(settings.RPC_URL).netloc)
    return RoundEngine(
        settings,
        ChainReader(ledger, program_id),
        submitter,
        RoundStateMachine(MachinePolicy.from_settings(settings)),
        EventBroadcaster(settings.SUBSCRIBER_QUEUE_SIZE, settings.MAX_SUBSCRIBERS),
        reporter,
        authority=str(signer.pubkey),
        ledger=ledger,
        clock=clock,
    )
