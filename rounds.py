# rounds.py
"""
Round State Machine.

A pure decision object: given a fresh read of the chain and the wall clock,
it says which phase the round is in and which single transition, if any, is
due. It remembers only what the chain cannot tell it: which settle attempts
this process made, how many consecutive polls a round has spent expired, and
whether an operator authorized forced advancement.

    AwaitingStart -> Open -> Expired -> Settling -> Settled -> AwaitingStart
                              |            |
                              +-- stuck ---+   (after STUCK_THRESHOLD polls)

On-chain state always wins over local belief: a round observed settled is
settled, whoever settled it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from errors import StuckRound
from models import GlobalConfig, Phase, Round
from submitter import TransitionKind

logger = logging.getLogger(__name__)

_ANY_ROUND = -1


@dataclass(frozen=True)
class ChainView:
    """One poll's worth of chain state."""
    config: GlobalConfig
    current: Optional[Round]
    now: float
    previous: Optional[Round] = None
    target_exists: bool = False


@dataclass(frozen=True)
class Action:
    kind: TransitionKind
    round_id: int


@dataclass(frozen=True)
class Decision:
    phase: Phase
    round_id: Optional[int]
    action: Optional[Action] = None
    stuck: Optional[StuckRound] = None
    newly_stuck: bool = False
    note: str = ""


@dataclass
class SettleAttempts:
    count: int = 0
    last_at: float = 0.0
    confirmed: bool = False


@dataclass
class MachinePolicy:
    stuck_threshold: int = 6
    stuck_policy: str = "retry"
    force_advance: bool = False
    auto_start: bool = True
    settle_empty_rounds: bool = False
    settle_retry_after: float = 30.0
    retry_backoff: float = 0.5
    retry_backoff_max: float = 120.0
    min_valid_ends_at: int = 1_000_000_000

    @classmethod
    def from_settings(cls, settings) -> "MachinePolicy":
        return cls(
            stuck_threshold=max(1, int(settings.STUCK_THRESHOLD)),
            stuck_policy=settings.STUCK_POLICY,
            force_advance=bool(settings.FORCE_ADVANCE),
            auto_start=bool(settings.AUTO_START),
            settle_empty_rounds=bool(settings.SETTLE_EMPTY_ROUNDS),
            settle_retry_after=float(settings.SETTLE_RETRY_AFTER_SEC),
            retry_backoff=float(settings.TX_BACKOFF_SEC),
            retry_backoff_max=float(settings.STUCK_RETRY_BACKOFF_MAX_SEC),
            min_valid_ends_at=int(settings.MIN_VALID_ENDS_AT),
        )


def start_target(config: GlobalConfig, current: Optional[Round]) -> int:
    """
    Id of the round a start transition would create.

    The counter either points at the live round (start creates the next one)
    or was already advanced by settlement and points at a round that does not
    exist yet.
    """
    cur = config.current_round_id
    if cur == 0:
        return 1
    if current is not None:
        return cur + 1
    return cur


@dataclass
class RoundStateMachine:
    policy: MachinePolicy = field(default_factory=MachinePolicy)
    _polls: Dict[int, int] = field(default_factory=dict)
    _attempts: Dict[int, SettleAttempts] = field(default_factory=dict)
    _authorized: Optional[int] = None

    # -------------------------
    # Operator authorization
    # -------------------------
    def authorize_force_advance(self, round_id: Optional[int] = None) -> None:
        """One-shot authorization to force past a stuck round (None = whichever is stuck)."""
        self._authorized = _ANY_ROUND if round_id is None else int(round_id)

    def revoke_force_advance(self) -> None:
        self._authorized = None

    def is_force_authorized(self, round_id: int) -> bool:
        return self.policy.force_advance or self._operator_authorized(round_id)

    def _operator_authorized(self, round_id: int) -> bool:
        return self._authorized is not None and self._authorized in (_ANY_ROUND, round_id)

    @property
    def has_authorization(self) -> bool:
        return self.policy.force_advance or self._authorized is not None

    def consume_authorization(self, round_id: int) -> None:
        if self._authorized in (_ANY_ROUND, round_id):
            self._authorized = None

    # -------------------------
    # Feedback from the orchestrator
    # -------------------------
    def record_settle_attempt(self, round_id: int, now: float, confirmed: bool) -> None:
        att = self._attempts.setdefault(round_id, SettleAttempts())
        att.count += 1
        att.last_at = now
        att.confirmed = confirmed

    def observe(self, rnd: Optional[Round]) -> None:
        """Fold in an out-of-band read; a settled round drops all local tracking."""
        if rnd is not None and rnd.settled:
            self._forget(rnd.round_id)

    def advanced_to(self, round_id: int) -> None:
        """A start of round_id confirmed; every round behind it is done with."""
        for rid in [r for r in set(self._polls) | set(self._attempts) if r < round_id]:
            self._forget(rid)

    def polls(self, round_id: int) -> int:
        return self._polls.get(round_id, 0)

    def _forget(self, round_id: int) -> None:
        self._polls.pop(round_id, None)
        self._attempts.pop(round_id, None)

    def _settle_due(self, round_id: int, now: float) -> bool:
        att = self._attempts.get(round_id)
        if att is None or att.count == 0:
            return True
        if att.confirmed:
            wait = self.policy.settle_retry_after
        else:
            wait = min(self.policy.retry_backoff * (2 ** (att.count - 1)), self.policy.retry_backoff_max)
        return now >= att.last_at + wait

    # -------------------------
    # Decision
    # -------------------------
    def decide(self, view: ChainView) -> Decision:
        config = view.config
        cur = config.current_round_id
        target = start_target(config, view.current)
        subject = view.current if view.current is not None else view.previous

        if subject is None:
            genesis = cur == 0 or (view.current is None and cur - 1 == 0)
            if genesis:
                return self._awaiting_start(view, target, None)
            # counter points past a round we cannot see at all
            blocked = cur - 1
            return self._blocked(view, blocked, target, f"Round {blocked} not found on-chain")

        if subject.settled:
            self._forget(subject.round_id)
            return self._awaiting_start(view, target, subject.round_id)

        if subject.ends_at < self.policy.min_valid_ends_at:
            return self._blocked(
                view, subject.round_id, target,
                f"Round {subject.round_id} has invalid timestamp ({subject.ends_at}) - skipping settlement",
            )

        if not subject.is_expired(view.now):
            self._polls.pop(subject.round_id, None)
            left = max(0, int(subject.ends_at - view.now))
            return Decision(
                Phase.OPEN, subject.round_id,
                note=f"Round {subject.round_id} active - {left}s left, pot {subject.pot}",
            )

        return self._expired(view, subject, target)

    def _awaiting_start(self, view: ChainView, target: int, settled_id: Optional[int]) -> Decision:
        phase = Phase.SETTLED if settled_id is not None else Phase.AWAITING_START
        if not self.policy.auto_start:
            return Decision(phase, settled_id, note=f"Waiting for round {target} to be started externally")
        if view.target_exists:
            return Decision(phase, settled_id, note=f"Round {target} already exists; waiting for counter")
        return Decision(
            Phase.AWAITING_START, settled_id,
            action=Action(TransitionKind.START_ROUND, target),
            note=f"Starting round {target}",
        )

    def _count_poll(self, round_id: int):
        n = self._polls.get(round_id, 0) + 1
        self._polls[round_id] = n
        threshold = self.policy.stuck_threshold
        if n < threshold:
            return n, None, False
        return n, StuckRound(round_id, n), n == threshold

    def _force(self, view: ChainView, round_id: int, target: int, stuck: StuckRound, newly: bool, phase: Phase) -> Decision:
        if self.is_force_authorized(round_id) and not view.target_exists:
            return Decision(
                phase, round_id,
                action=Action(TransitionKind.FORCE_START_ROUND, target),
                stuck=stuck, newly_stuck=newly,
                note=f"Round {round_id} stuck - forcing round {target}",
            )
        return Decision(
            phase, round_id, stuck=stuck, newly_stuck=newly,
            note=f"Round {round_id} stuck - awaiting operator authorization to force round {target}",
        )

    def _blocked(self, view: ChainView, round_id: int, target: int, note: str) -> Decision:
        """A round that cannot be settled normally; only forced advancement moves past it."""
        n, stuck, newly = self._count_poll(round_id)
        if stuck is None:
            return Decision(Phase.UNKNOWN, round_id, note=f"{note} ({n}/{self.policy.stuck_threshold})")
        return self._force(view, round_id, target, stuck, newly, Phase.UNKNOWN)

    def _expired(self, view: ChainView, rnd: Round, target: int) -> Decision:
        rid = rnd.round_id
        n, stuck, newly = self._count_poll(rid)
        phase = Phase.SETTLING if rid in self._attempts else Phase.EXPIRED

        unsettleable = rnd.pot == 0 and not self.policy.settle_empty_rounds
        if stuck is not None and (
            self.policy.stuck_policy == "force_advance" or unsettleable or self._operator_authorized(rid)
        ):
            return self._force(view, rid, target, stuck, newly, phase)

        if unsettleable:
            return Decision(
                phase, rid, stuck=stuck, newly_stuck=newly,
                note=f"Round {rid} expired with no bets - skipping settlement",
            )

        if self._settle_due(rid, view.now):
            return Decision(
                phase, rid,
                action=Action(TransitionKind.SETTLE_ROUND, rid),
                stuck=stuck, newly_stuck=newly,
                note=f"Settling round {rid} - pot {rnd.pot}",
            )
        return Decision(
            Phase.SETTLING, rid, stuck=stuck, newly_stuck=newly,
            note=f"Round {rid} settlement pending ({n} polls)",
        )
