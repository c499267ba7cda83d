from __future__ import annotations

from typing import Optional

from models import GlobalConfig, Phase, Round, Side
from rounds import ChainView, MachinePolicy, RoundStateMachine, start_target
from submitter import TransitionKind

NOW = 1_700_000_000


def cfg(current_round_id: int) -> GlobalConfig:
    return GlobalConfig(authority="auth", current_round_id=current_round_id, rake_bps=300, jackpot_bps=100)


def rnd(round_id: int, heads: int = 100, tails: int = 50, ends_at: int = NOW - 10,
        settled: bool = False, side: Optional[Side] = None) -> Round:
    return Round(round_id, heads, tails, ends_at, settled, side)


def view(current_round_id: int, current: Optional[Round], now: float = NOW, **kw) -> ChainView:
    return ChainView(config=cfg(current_round_id), current=current, now=now, **kw)


def machine(**policy) -> RoundStateMachine:
    policy.setdefault("stuck_threshold", 3)
    return RoundStateMachine(MachinePolicy(**policy))


def test_start_target_follows_the_counter():
    assert start_target(cfg(0), None) == 1
    assert start_target(cfg(5), rnd(5)) == 6
    assert start_target(cfg(6), None) == 6


def test_open_round_needs_no_action():
    d = machine().decide(view(5, rnd(5, ends_at=NOW + 30)))
    assert d.phase is Phase.OPEN
    assert d.action is None
    assert d.stuck is None


def test_expired_round_is_settled():
    d = machine().decide(view(5, rnd(5)))
    assert d.phase is Phase.EXPIRED
    assert d.action.kind is TransitionKind.SETTLE_ROUND
    assert d.action.round_id == 5


def test_round_expires_exactly_at_ends_at():
    assert machine().decide(view(5, rnd(5, ends_at=NOW))).action is not None
    assert machine().decide(view(5, rnd(5, ends_at=NOW + 1))).action is None


def test_settle_is_not_resubmitted_while_confirmation_is_fresh():
    m = machine(settle_retry_after=30.0)
    m.record_settle_attempt(5, NOW, confirmed=True)

    d = m.decide(view(5, rnd(5), now=NOW + 1))
    assert d.phase is Phase.SETTLING
    assert d.action is None

    d = m.decide(view(5, rnd(5), now=NOW + 30))
    assert d.action.kind is TransitionKind.SETTLE_ROUND


def test_settled_round_never_yields_another_settle():
    m = machine()
    m.record_settle_attempt(5, NOW, confirmed=True)
    d = m.decide(view(5, rnd(5, settled=True, side=Side.HEADS)))
    assert d.action.kind is TransitionKind.START_ROUND
    assert d.action.round_id == 6
    assert m.polls(5) == 0


def test_counter_advanced_by_settlement_starts_that_round():
    d = machine().decide(view(6, None, previous=rnd(5, settled=True, side=Side.TAILS)))
    assert d.phase is Phase.AWAITING_START
    assert d.action.kind is TransitionKind.START_ROUND
    assert d.action.round_id == 6


def test_existing_target_is_not_started_again():
    d = machine().decide(view(5, rnd(5, settled=True, side=Side.HEADS), target_exists=True))
    assert d.action is None


def test_genesis_starts_round_one():
    d = machine().decide(view(0, None))
    assert d.action.kind is TransitionKind.START_ROUND
    assert d.action.round_id == 1


def test_auto_start_off_only_waits():
    d = machine(auto_start=False).decide(view(5, rnd(5, settled=True, side=Side.HEADS)))
    assert d.action is None
    assert "externally" in d.note


def test_at_most_one_action_per_decision():
    m = machine()
    views = [
        view(0, None),
        view(5, rnd(5, ends_at=NOW + 5)),
        view(5, rnd(5)),
        view(5, rnd(5, settled=True, side=Side.HEADS)),
        view(6, None, previous=rnd(5, settled=True, side=Side.HEADS)),
        view(6, None, previous=rnd(5)),
        view(7, None),
    ]
    for v in views * 4:
        d = m.decide(v)
        assert d.action is None or d.action.kind in set(TransitionKind)


def test_stuck_flagged_exactly_at_threshold():
    m = machine(stuck_threshold=4)
    decisions = [m.decide(view(5, rnd(5, heads=0, tails=0), now=NOW + i)) for i in range(6)]

    assert [d.stuck is not None for d in decisions] == [False, False, False, True, True, True]
    assert [d.newly_stuck for d in decisions] == [False, False, False, True, False, False]
    assert decisions[3].stuck.round_id == 5
    assert decisions[3].stuck.polls == 4


def test_observed_settlement_clears_poll_count():
    m = machine()
    m.decide(view(5, rnd(5)))
    m.decide(view(5, rnd(5)))
    assert m.polls(5) == 2
    m.observe(rnd(5, settled=True, side=Side.HEADS))
    assert m.polls(5) == 0


def test_empty_pot_is_not_settled_by_default():
    d = machine().decide(view(5, rnd(5, heads=0, tails=0)))
    assert d.action is None
    assert "no bets" in d.note

    d = machine(settle_empty_rounds=True).decide(view(5, rnd(5, heads=0, tails=0)))
    assert d.action.kind is TransitionKind.SETTLE_ROUND


def test_retry_policy_backs_off_between_failed_settles():
    m = machine(retry_backoff=2.0, retry_backoff_max=5.0)
    m.record_settle_attempt(5, NOW, confirmed=False)
    assert m.decide(view(5, rnd(5), now=NOW + 1)).action is None
    assert m.decide(view(5, rnd(5), now=NOW + 2)).action is not None

    m.record_settle_attempt(5, NOW + 2, confirmed=False)
    assert m.decide(view(5, rnd(5), now=NOW + 5)).action is None
    assert m.decide(view(5, rnd(5), now=NOW + 6)).action is not None

    # capped
    m.record_settle_attempt(5, NOW + 6, confirmed=False)
    m.record_settle_attempt(5, NOW + 6, confirmed=False)
    assert m.decide(view(5, rnd(5), now=NOW + 11)).action is not None


def test_retry_policy_keeps_settling_once_stuck():
    m = machine(stuck_policy="retry")
    for _ in range(3):
        d = m.decide(view(5, rnd(5)))
    assert d.stuck is not None
    assert d.action.kind is TransitionKind.SETTLE_ROUND


def test_force_advance_requires_authorization():
    m = machine(stuck_policy="force_advance")
    for _ in range(3):
        d = m.decide(view(5, rnd(5)))
    assert d.stuck is not None
    assert d.action is None
    assert "authorization" in d.note

    m.authorize_force_advance(7)
    assert m.decide(view(5, rnd(5))).action is None

    m.authorize_force_advance(5)
    d = m.decide(view(5, rnd(5)))
    assert d.action.kind is TransitionKind.FORCE_START_ROUND
    assert d.action.round_id == 6

    m.consume_authorization(5)
    assert not m.has_authorization
    assert m.decide(view(5, rnd(5))).action is None


def test_standing_force_advance_applies_to_any_stuck_round():
    m = machine(stuck_policy="force_advance", force_advance=True)
    empty = rnd(5, heads=0, tails=0)
    assert m.decide(view(5, empty)).action is None
    assert m.decide(view(5, empty)).action is None
    d = m.decide(view(5, empty))
    assert d.action.kind is TransitionKind.FORCE_START_ROUND


def test_operator_authorization_forces_past_under_retry_policy():
    m = machine(stuck_policy="retry")
    for _ in range(3):
        d = m.decide(view(5, rnd(5)))
    assert d.action.kind is TransitionKind.SETTLE_ROUND

    m.authorize_force_advance(5)
    d = m.decide(view(5, rnd(5)))
    assert d.action.kind is TransitionKind.FORCE_START_ROUND
    assert d.action.round_id == 6


def test_empty_round_reaches_forced_advancement_under_retry_policy():
    m = machine(stuck_policy="retry", force_advance=True)
    empty = rnd(5, heads=0, tails=0)
    assert m.decide(view(5, empty)).action is None
    assert m.decide(view(5, empty)).action is None
    d = m.decide(view(5, empty))
    assert d.stuck is not None
    assert d.action.kind is TransitionKind.FORCE_START_ROUND


def test_advancing_drops_tracking_for_rounds_behind():
    m = machine()
    for _ in range(3):
        m.decide(view(5, rnd(5)))
    m.record_settle_attempt(5, NOW, confirmed=False)

    m.advanced_to(6)
    assert m.polls(5) == 0
    assert m.decide(view(5, rnd(5))).phase is Phase.EXPIRED


def test_forced_start_skips_existing_target():
    m = machine(stuck_policy="force_advance", force_advance=True)
    for _ in range(3):
        d = m.decide(view(5, rnd(5), target_exists=True))
    assert d.stuck is not None
    assert d.action is None


def test_corrupted_timestamp_is_never_settled():
    m = machine(stuck_threshold=2)
    d = m.decide(view(5, rnd(5, ends_at=12345)))
    assert d.phase is Phase.UNKNOWN
    assert d.action is None
    assert "invalid timestamp" in d.note

    d = m.decide(view(5, rnd(5, ends_at=12345)))
    assert d.stuck is not None and d.newly_stuck


def test_missing_round_behind_counter_is_blocked():
    m = machine(stuck_threshold=1)
    m.authorize_force_advance()
    d = m.decide(view(7, None))
    assert d.round_id == 6
    assert d.action.kind is TransitionKind.FORCE_START_ROUND
    assert d.action.round_id == 7
