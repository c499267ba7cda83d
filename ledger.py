# ledger.py
"""
Ledger capabilities consumed by the round engine.

SolanaLedger wraps solana-py's AsyncClient behind the four calls the engine
needs (account read, blockhash, send, signature status) and translates every
library exception into the engine's error taxonomy. AuthoritySigner holds the
authority keypair for the process lifetime and only ever signs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

import base58 as _b58
import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from errors import (
    ConfigurationError,
    StaleStateRejection,
    TransactionRejected,
    TransportError,
)

logger = logging.getLogger(__name__)

# =========================================================
# Program error codes (Anchor custom errors start at 6000)
# =========================================================
PROGRAM_ERRORS = {
    0: "AccountAlreadyInUse",  # system program, raised when a round PDA already exists
    3012: "AccountNotInitialized",
    6000: "InvalidSide",
    6001: "RoundExpired",
    6002: "RoundSettled",
    6003: "AlreadyBet",
    6004: "RoundNotExpired",
    6005: "AlreadySettled",
    6006: "NoBets",
    6007: "RoundNotSettled",
    6008: "AlreadyClaimed",
    6009: "NotWinner",
    6010: "NoWinners",
    6011: "Unauthorized",
    6012: "InvalidDuration",
    6013: "InvalidRakeBps",
    6014: "InvalidJackpotBps",
    6015: "InvalidTotalBps",
    6016: "BetTooSmall",
    6017: "AmountOverflow",
    6018: "RoundOverflow",
    6019: "TimestampOverflow",
    6020: "DivisionByZero",
    6021: "InsufficientFunds",
    6022: "InvalidUser",
    6023: "InvalidRound",
    6024: "InvalidBet",
    6025: "InvalidPayout",
    6026: "InvalidBump",
}

# local belief was outdated; re-read instead of resubmitting
STALE_CODES = frozenset({0, 6002, 6004, 6005, 6006, 6007, 6023})

_CODE_PATTERNS = (
    re.compile(r"custom program error: (0x[0-9a-fA-F]+)"),
    re.compile(r"Custom\((\d+)\)"),
    re.compile(r"Error Number: (\d+)"),
)
_REJECTION_MARKERS = (
    "simulation failed",
    "custom program error",
    "InstructionError",
    "Custom(",
    "already in use",
)


def parse_program_error(text: str) -> Optional[int]:
    """Extract a program error code from an RPC error or status text."""
    for pat in _CODE_PATTERNS:
        m = pat.search(text or "")
        if m:
            raw = m.group(1)
            return int(raw, 16) if raw.startswith("0x") else int(raw)
    if "already in use" in (text or ""):
        return 0
    return None


def classify_rejection(text: str, signature: Optional[str] = None) -> TransactionRejected:
    """Build the right rejection type for an on-chain failure text."""
    code = parse_program_error(text)
    name = PROGRAM_ERRORS.get(code, "") if code is not None else ""
    reason = name or (text or "rejected")[:300]
    if code in STALE_CODES:
        return StaleStateRejection(reason, code=code, signature=signature)
    return TransactionRejected(reason, code=code, signature=signature)


def is_rejection_text(text: str) -> bool:
    return any(marker in (text or "") for marker in _REJECTION_MARKERS)


# =========================================================
# Keys
# =========================================================
def to_pubkey(addr: Union[str, Pubkey, bytes, bytearray]) -> Pubkey:
    if isinstance(addr, Pubkey):
        return addr
    if isinstance(addr, (bytes, bytearray)):
        return Pubkey.from_bytes(bytes(addr))
    if not addr:
        raise ValueError("Empty public key provided")
    try:
        return Pubkey.from_string(addr.strip())
    except Exception:
        raw = _b58.b58decode(addr.strip())
        if len(raw) != 32:
            raise ValueError(f"Decoded key length != 32 ({len(raw)})")
        return Pubkey.from_bytes(raw)


def load_keypair(secret: str) -> Keypair:
    """
    Accepts a base58 secret (64-byte keypair or 32-byte seed) or a JSON byte
    array as written by `solana-keygen`. Never echoes the secret in errors.
    """
    secret = (secret or "").strip()
    if not secret:
        raise ConfigurationError("Authority secret key is not set")
    if secret.startswith("["):
        try:
            raw = bytes(json.loads(secret))
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Authority key JSON array is invalid: {type(e).__name__}") from None
    else:
        try:
            raw = _b58.b58decode(secret)
        except ValueError:
            raise ConfigurationError("Authority key is neither base58 nor a JSON array") from None

    try:
        if len(raw) == 64:
            return Keypair.from_bytes(raw)
        if len(raw) == 32:
            return Keypair.from_seed(raw)
    except Exception as e:
        raise ConfigurationError(f"Could not construct authority keypair: {type(e).__name__}") from None
    raise ConfigurationError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


@dataclass(frozen=True)
class SignedTransaction:
    raw: bytes
    signature: str


class AuthoritySigner:
    """Signs outgoing transitions with the configured authority."""

    def __init__(self, keypair: Keypair):
        self._kp = keypair

    @classmethod
    def from_secret(cls, secret: str) -> "AuthoritySigner":
        return cls(load_keypair(secret))

    @property
    def pubkey(self) -> Pubkey:
        return self._kp.pubkey()

    def sign(self, instructions: Sequence[Instruction], blockhash: Hash) -> SignedTransaction:
        msg = Message.new_with_blockhash(list(instructions), self._kp.pubkey(), blockhash)
        tx = Transaction([self._kp], msg, blockhash)
        return SignedTransaction(raw=bytes(tx), signature=str(tx.signatures[0]))

    def __repr__(self) -> str:
        return f"AuthoritySigner(pubkey={self.pubkey})"


# =========================================================
# RPC
# =========================================================
@dataclass(frozen=True)
class AccountSnapshot:
    data: bytes
    lamports: int
    owner: str


class TxState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class TxStatus:
    state: TxState
    error: Optional[str] = None


_TRANSPORT_ERRORS = (SolanaRpcException, httpx.HTTPError, asyncio.TimeoutError, OSError)


class SolanaLedger:
    """Thin async adapter over AsyncClient with Confirmed commitment."""

    def __init__(self, rpc_url: str, timeout: float = 10.0):
        self.rpc_url = rpc_url
        self._client = AsyncClient(rpc_url, commitment=Confirmed, timeout=timeout)

    async def __aenter__(self) -> "SolanaLedger":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.close()

    async def _call(self, what: str, coro):
        try:
            return await coro
        except RPCException as e:
            text = str(e)
            if is_rejection_text(text):
                raise classify_rejection(text) from e
            raise TransportError(f"{what}: {text}") from e
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"{what}: {type(e).__name__}: {e}") from e

    async def get_account(self, address: Pubkey) -> Optional[AccountSnapshot]:
        resp = await self._call(
            "get_account_info", self._client.get_account_info(address, commitment=Confirmed)
        )
        val = resp.value
        if val is None:
            return None
        return AccountSnapshot(data=bytes(val.data), lamports=int(val.lamports), owner=str(val.owner))

    async def latest_blockhash(self) -> Hash:
        resp = await self._call("get_latest_blockhash", self._client.get_latest_blockhash(Confirmed))
        return resp.value.blockhash

    async def send_transaction(self, raw: bytes) -> str:
        resp = await self._call(
            "send_raw_transaction",
            self._client.send_raw_transaction(
                raw, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            ),
        )
        return str(resp.value)

    async def get_transaction_status(self, signature: str) -> TxStatus:
        resp = await self._call(
            "get_signature_statuses",
            self._client.get_signature_statuses([Signature.from_string(signature)]),
        )
        st = resp.value[0] if resp.value else None
        if st is None:
            return TxStatus(TxState.PENDING)
        if st.err is not None:
            return TxStatus(TxState.FAILED, error=str(st.err))
        cs = st.confirmation_status
        if cs in (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized):
            return TxStatus(TxState.CONFIRMED)
        # older nodes report only a confirmation count; None means rooted
        if cs is None and st.confirmations is None:
            return TxStatus(TxState.CONFIRMED)
        return TxStatus(TxState.PENDING)

    async def get_slot(self) -> int:
        resp = await self._call("get_slot", self._client.get_slot())
        return int(resp.value)
