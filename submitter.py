# submitter.py
"""
Transaction Submitter.

Builds one program instruction per transition, signs it with the authority,
sends it and polls for confirmation. Transport failures are retried with
exponential backoff, resending the same signed bytes. Rejections by on-chain
logic are never retried; the caller re-reads and reconciles instead.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID

from chain import global_address, round_address, treasury_address
from errors import ConfirmationTimeout, TransactionRejected, TransportError
from ledger import TxState, classify_rejection

logger = logging.getLogger(__name__)


class TransitionKind(str, Enum):
    START_ROUND = "start_round"
    SETTLE_ROUND = "settle_round"
    FORCE_START_ROUND = "force_start_round"


def instruction_discriminator(name: str) -> bytes:
    """Anchor instruction discriminator: sha256("global:<name>")[:8]."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


START_ROUND_IX = instruction_discriminator("start_round")
CLOSE_ROUND_IX = instruction_discriminator("close_round")

MAX_DURATION_SEC = 86_400


# =========================================================
# Instruction builders
# =========================================================
def build_start_instruction(program_id: Pubkey, authority: Pubkey, round_id: int, duration_seconds: int) -> Instruction:
    if not 0 < duration_seconds <= MAX_DURATION_SEC:
        raise ValueError(f"duration_seconds must be in 1..{MAX_DURATION_SEC}, got {duration_seconds}")
    data = START_ROUND_IX + int(duration_seconds).to_bytes(8, "little", signed=True)
    accounts = [
        AccountMeta(global_address(program_id), is_signer=False, is_writable=True),
        AccountMeta(round_address(program_id, round_id), is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=True),
        AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, data, accounts)


def build_settle_instruction(program_id: Pubkey, authority: Pubkey, round_id: int) -> Instruction:
    accounts = [
        AccountMeta(global_address(program_id), is_signer=False, is_writable=False),
        AccountMeta(round_address(program_id, round_id), is_signer=False, is_writable=True),
        AccountMeta(treasury_address(program_id), is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, CLOSE_ROUND_IX, accounts)


@dataclass(frozen=True)
class Confirmation:
    kind: TransitionKind
    round_id: int
    signature: str
    attempts: int
    elapsed: float


class TransactionSubmitter:
    def __init__(
        self,
        ledger,
        signer,
        program_id: Pubkey,
        *,
        reporter=None,
        max_attempts: int = 4,
        backoff: float = 0.5,
        backoff_max: float = 8.0,
        confirm_timeout: float = 30.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.signer = signer
        self.program_id = program_id
        self.reporter = reporter
        self.max_attempts = max(1, int(max_attempts))
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** max(0, attempt - 1)), self.backoff_max)

    def build(self, kind: TransitionKind, round_id: int, duration: Optional[int] = None) -> Instruction:
        if kind is TransitionKind.SETTLE_ROUND:
            return build_settle_instruction(self.program_id, self.signer.pubkey, round_id)
        if duration is None:
            raise ValueError(f"{kind.value} requires a duration")
        return build_start_instruction(self.program_id, self.signer.pubkey, round_id, duration)

    async def submit(self, kind: TransitionKind, round_id: int, *, duration: Optional[int] = None) -> Confirmation:
        ix = self.build(kind, round_id, duration)
        started = self._clock()
        attempts = 0
        signed = None
        signature = None

        while True:
            attempts += 1
            try:
                if signed is None:
                    blockhash = await self.ledger.latest_blockhash()
                    signed = self.signer.sign([ix], blockhash)
                signature = await self.ledger.send_transaction(signed.raw)
                break
            except TransactionRejected as e:
                self._report(kind, round_id, False, e.signature or (signed and signed.signature), e)
                logger.warning("%s for round %s rejected: %s", kind.value, round_id, e)
                raise
            except TransportError as e:
                self._report(kind, round_id, False, signed and signed.signature, e)
                if attempts >= self.max_attempts:
                    logger.error("%s for round %s: giving up after %d attempts: %s",
                                 kind.value, round_id, attempts, e)
                    raise
                delay = self.backoff_delay(attempts)
                logger.warning("%s for round %s: transport error (attempt %d/%d), retrying in %.1fs: %s",
                               kind.value, round_id, attempts, self.max_attempts, delay, e)
                await self._sleep(delay)

        logger.info("%s for round %s sent: %s", kind.value, round_id, signature)
        try:
            await self._await_confirmation(signature)
        except (TransactionRejected, ConfirmationTimeout) as e:
            self._report(kind, round_id, False, signature, e)
            raise

        elapsed = self._clock() - started
        self._report(kind, round_id, True, signature, None)
        logger.info("%s for round %s confirmed in %.1fs: %s", kind.value, round_id, elapsed, signature)
        return Confirmation(kind, round_id, signature, attempts, elapsed)

    async def _await_confirmation(self, signature: str) -> None:
        deadline = self._clock() + self.confirm_timeout
        while True:
            try:
                status = await self.ledger.get_transaction_status(signature)
            except TransportError as e:
                logger.debug("status poll for %s failed: %s", signature, e)
                status = None
            if status is not None:
                if status.state is TxState.CONFIRMED:
                    return
                if status.state is TxState.FAILED:
                    raise classify_rejection(status.error or "", signature=signature)
            if self._clock() >= deadline:
                raise ConfirmationTimeout(signature, self.confirm_timeout)
            await self._sleep(self.poll_interval)

    def _report(self, kind, round_id, ok, signature, error) -> None:
        if self.reporter is None:
            return
        self.reporter.record_submission(
            kind=kind.value,
            round_id=round_id,
            ok=ok,
            signature=signature or None,
            error=str(error) if error else None,
        )
