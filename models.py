# models.py
"""
Records shared across the engine.

Chain records (GlobalConfig, Round, JackpotPool) are plain frozen dataclasses:
they are decoded from account bytes and never mutated. Lifecycle events and
the status snapshot are pydantic models because they leave the process as JSON.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _rfc3339(dt: Optional[datetime] = None) -> str:
    """RFC3339 UTC timestamp ending with 'Z' (second precision)."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    iso = dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    if iso.endswith("+00:00"):
        iso = iso[: -len("+00:00")]
    return iso + "Z"


# =========================================================
# Chain records
# =========================================================
class Side(IntEnum):
    HEADS = 0
    TAILS = 1

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class GlobalConfig:
    authority: str
    current_round_id: int
    rake_bps: int
    jackpot_bps: int
    treasury_bump: Optional[int] = None
    jackpot_bump: Optional[int] = None
    min_bet: Optional[int] = None


@dataclass(frozen=True)
class Round:
    round_id: int
    heads_total: int
    tails_total: int
    ends_at: int
    settled: bool
    winning_side: Optional[Side]
    bump: Optional[int] = None

    @property
    def pot(self) -> int:
        return self.heads_total + self.tails_total

    def is_expired(self, now: float) -> bool:
        return now >= self.ends_at


@dataclass(frozen=True)
class JackpotPool:
    address: str
    lamports: int


# =========================================================
# Lifecycle events
# =========================================================
class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    round_id: int
    signature: Optional[str] = None
    timestamp: str = Field(default_factory=_rfc3339)


class RoundStarted(_EventBase):
    type: Literal["round_started"] = "round_started"
    ends_at: Optional[int] = None
    forced: bool = False


class RoundSettled(_EventBase):
    type: Literal["round_settled"] = "round_settled"
    heads_total: int
    tails_total: int
    pot: int
    winning_side: Optional[Literal["heads", "tails"]] = None


class JackpotTriggered(_EventBase):
    type: Literal["jackpot_triggered"] = "jackpot_triggered"
    amount: int
    pool_before: int
    pool_after: int


LifecycleEvent = Annotated[
    Union[RoundStarted, RoundSettled, JackpotTriggered],
    Field(discriminator="type"),
]


# =========================================================
# Engine status
# =========================================================
class Phase(str, Enum):
    AWAITING_START = "awaiting_start"
    OPEN = "open"
    EXPIRED = "expired"
    SETTLING = "settling"
    SETTLED = "settled"
    UNKNOWN = "unknown"


class SubmissionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    round_id: int
    ok: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    at: str = Field(default_factory=_rfc3339)


class EngineStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    running: bool = False
    phase: Phase = Phase.UNKNOWN
    current_round_id: Optional[int] = None
    last_observed_round_id: Optional[int] = None
    last_transition_at: Optional[str] = None
    last_check_at: Optional[str] = None
    last_action: str = "Initializing..."
    consecutive_failure_count: int = 0
    last_error: Optional[str] = None
    recent_errors: List[str] = Field(default_factory=list)

    stuck: bool = False
    stuck_round_id: Optional[int] = None
    force_advance_authorized: bool = False

    iterations: int = 0
    rounds_started: int = 0
    rounds_settled: int = 0
    jackpots_triggered: int = 0
    submissions: int = 0
    submission_failures: int = 0
    last_submission: Optional[SubmissionRecord] = None

    subscribers: int = 0
    dropped_events: int = 0
