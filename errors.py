# errors.py
"""
Engine error taxonomy.

Everything the engine raises derives from EngineError so the orchestrator
loop can absorb a bad iteration without knowing library exception types.
The ledger adapter is the only place those get translated.
"""

from __future__ import annotations
from typing import Optional


class EngineError(Exception):
    """Base class for all round engine errors."""
    pass


class ConfigurationError(EngineError):
    """Missing credential or malformed setting; fatal at startup."""
    pass


# ============ Transport ============

class TransportError(EngineError):
    """RPC unreachable or timed out. Retryable."""
    pass


class ConfirmationTimeout(TransportError):
    """A sent transaction was not confirmed within the polling bound."""
    def __init__(self, signature: str, waited: float):
        self.signature = signature
        self.waited = waited
        super().__init__(f"Transaction {signature} not confirmed after {waited:.1f}s")


# ============ Accounts ============

class AccountNotFound(EngineError):
    """Account does not exist. A valid outcome, not a fault."""
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Account {address} not found")


class MalformedAccount(EngineError):
    """Account data has an unexpected size or content."""
    def __init__(self, label: str, reason: str):
        self.label = label
        self.reason = reason
        super().__init__(f"Malformed {label}: {reason}")


# ============ Transactions ============

class TransactionRejected(EngineError):
    """On-chain logic refused the instruction. Never resubmitted as-is."""
    def __init__(self, reason: str, code: Optional[int] = None, signature: Optional[str] = None):
        self.reason = reason
        self.code = code
        self.signature = signature
        label = f" (code {code})" if code is not None else ""
        super().__init__(f"Transaction rejected{label}: {reason}")


class StaleStateRejection(TransactionRejected):
    """Rejected because the engine's view of the round was outdated."""
    pass


# ============ Rounds ============

class StuckRound(EngineError):
    """A round expired and has not settled within the configured poll budget."""
    def __init__(self, round_id: int, polls: int):
        self.round_id = round_id
        self.polls = polls
        super().__init__(f"Round {round_id} stuck: expired and unsettled for {polls} polls")


# ============ Broadcasting ============

class SubscriberLimitReached(EngineError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Subscriber limit reached ({limit})")
