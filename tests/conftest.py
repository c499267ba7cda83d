from __future__ import annotations

import struct
from typing import Callable, Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from chain import (
    GLOBAL_DISCRIMINATOR,
    ROUND_DISCRIMINATOR,
    global_address,
    jackpot_address,
    round_address,
)
from config import Settings
from errors import TransportError
from ledger import AccountSnapshot, AuthoritySigner, TxState, TxStatus, classify_rejection
from models import Side
from submitter import START_ROUND_IX

PROGRAM_ID = Pubkey.from_string("BTU8kuz95iPH6XqBMp7a4VEsLhdco62s9H81Jt6G4GQL")
NOW = 1_700_000_000

ALREADY_SETTLED = "Program failed: custom program error: 0x1775"   # 6005
NO_BETS = "Program failed: custom program error: 0x1776"           # 6006
NOT_EXPIRED = "Program failed: custom program error: 0x1774"       # 6004
UNAUTHORIZED = "Program failed: custom program error: 0x177b"      # 6011

_ROUND_IDS = {round_address(PROGRAM_ID, i): i for i in range(0, 32)}


def encode_global(authority: Pubkey, current_round_id: int, rake_bps: int = 300, jackpot_bps: int = 100,
                  full: bool = True, disc: bytes = GLOBAL_DISCRIMINATOR) -> bytes:
    data = disc + bytes(authority) + struct.pack("<QHH", current_round_id, rake_bps, jackpot_bps)
    if full:
        data += struct.pack("<BBQ", 255, 254, 1_000_000)
    return data


def encode_round(round_id: int, heads: int = 0, tails: int = 0, ends_at: int = NOW, settled: int = 0,
                 winning_side: int = 255, bump: Optional[int] = 253, disc: bytes = ROUND_DISCRIMINATOR) -> bytes:
    data = disc + struct.pack("<QQQqBB", round_id, heads, tails, ends_at, int(settled), winning_side)
    if bump is not None:
        data += bytes([bump])
    return data


class FakeLedger:
    """
    In-memory stand-in for the program and its RPC node.

    Transitions are applied when a transaction is sent: start creates the round
    and moves the counter to it, settle marks the round settled and (by
    default) advances the counter past it.
    """

    def __init__(self, authority: Pubkey, program_id: Pubkey = PROGRAM_ID):
        self.program_id = program_id
        self.authority = authority
        self.now = NOW
        self.current_round_id = 0
        self.rounds: Dict[int, dict] = {}
        self.raw: Dict[Pubkey, bytes] = {}
        self.jackpot_lamports: Optional[int] = None
        self.jackpot_payout = 0
        self.settle_advances_counter = True

        self.sent: List[tuple] = []
        self.send_errors: List[Exception] = []
        self.rejections: List[str] = []
        self.statuses: List[TxStatus] = []
        self.on_send: Optional[Callable[[str, int], None]] = None
        self.read_errors = 0
        self.reads = 0
        self.closed = False

    # -------------------------
    # Chain state helpers
    # -------------------------
    def add_round(self, round_id: int, heads: int = 0, tails: int = 0, ends_at: Optional[int] = None,
                  settled: bool = False, winning_side: Optional[Side] = None) -> None:
        self.rounds[round_id] = dict(
            heads=heads, tails=tails,
            ends_at=self.now + 60 if ends_at is None else ends_at,
            settled=settled, side=winning_side,
        )

    def settle(self, round_id: int, side: Side = Side.HEADS) -> None:
        self.rounds[round_id].update(settled=True, side=side)
        if self.settle_advances_counter:
            self.current_round_id = max(self.current_round_id, round_id + 1)

    # -------------------------
    # Ledger capability
    # -------------------------
    async def get_account(self, address: Pubkey) -> Optional[AccountSnapshot]:
        self.reads += 1
        if self.read_errors:
            self.read_errors -= 1
            raise TransportError("get_account_info: ConnectError: connection refused")
        if address in self.raw:
            return AccountSnapshot(self.raw[address], 1_000_000, str(self.program_id))
        if address == global_address(self.program_id):
            data = encode_global(self.authority, self.current_round_id)
            return AccountSnapshot(data, 1_000_000, str(self.program_id))
        if address == jackpot_address(self.program_id):
            if self.jackpot_lamports is None:
                return None
            return AccountSnapshot(b"", self.jackpot_lamports, str(self.program_id))
        rid = _ROUND_IDS.get(address)
        if rid is None or rid not in self.rounds:
            return None
        r = self.rounds[rid]
        side = int(r["side"]) if r["side"] is not None else 255
        data = encode_round(rid, r["heads"], r["tails"], r["ends_at"], int(r["settled"]), side)
        return AccountSnapshot(data, 2_000_000, str(self.program_id))

    async def latest_blockhash(self) -> Hash:
        return Hash.default()

    async def send_transaction(self, raw: bytes) -> str:
        tx = Transaction.from_bytes(raw)
        signature = str(tx.signatures[0])
        msg = tx.message
        ix = msg.instructions[0]
        round_id = _ROUND_IDS[msg.account_keys[ix.accounts[1]]]
        data = bytes(ix.data)
        kind = "start" if data[:8] == START_ROUND_IX else "settle"
        self.sent.append((kind, round_id, signature))

        if self.send_errors:
            raise self.send_errors.pop(0)
        if self.on_send is not None:
            self.on_send(kind, round_id)
        if self.rejections:
            raise classify_rejection(self.rejections.pop(0), signature=signature)
        if kind == "start":
            self._apply_start(round_id, int.from_bytes(data[8:16], "little", signed=True))
        else:
            self._apply_settle(round_id, signature)
        return signature

    def _apply_start(self, round_id: int, duration: int) -> None:
        if round_id in self.rounds:
            raise classify_rejection("Allocate: account Address already in use")
        self.add_round(round_id, ends_at=self.now + duration)
        self.current_round_id = max(self.current_round_id, round_id)

    def _apply_settle(self, round_id: int, signature: str) -> None:
        r = self.rounds[round_id]
        if r["settled"]:
            raise classify_rejection(ALREADY_SETTLED, signature=signature)
        if self.now < r["ends_at"]:
            raise classify_rejection(NOT_EXPIRED, signature=signature)
        if r["heads"] + r["tails"] == 0:
            raise classify_rejection(NO_BETS, signature=signature)
        self.settle(round_id, Side.HEADS if r["heads"] >= r["tails"] else Side.TAILS)
        if self.jackpot_payout and self.jackpot_lamports is not None:
            self.jackpot_lamports -= self.jackpot_payout

    async def get_transaction_status(self, signature: str) -> TxStatus:
        if self.statuses:
            return self.statuses.pop(0)
        return TxStatus(TxState.CONFIRMED)

    async def get_slot(self) -> int:
        return 4242

    async def close(self) -> None:
        self.closed = True

    def sent_kinds(self) -> List[tuple]:
        return [(kind, rid) for kind, rid, _ in self.sent]


class FakeTime:
    """Deterministic sleep/clock pair for the submitter."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay

    def clock(self) -> float:
        return self.now


@pytest.fixture
def keypair() -> Keypair:
    return Keypair.from_seed(bytes(range(32)))


@pytest.fixture
def signer(keypair) -> AuthoritySigner:
    return AuthoritySigner(keypair)


@pytest.fixture
def ledger(keypair) -> FakeLedger:
    return FakeLedger(keypair.pubkey())


@pytest.fixture
def make_settings(keypair):
    def _make(**overrides) -> Settings:
        values = dict(
            AUTHORITY_PK=str(keypair),
            RPC_URL="http://127.0.0.1:8899",
            POLL_INTERVAL_SEC=0.01,
            STUCK_THRESHOLD=3,
            TX_BACKOFF_SEC=0.0,
            TX_BACKOFF_MAX_SEC=0.0,
            TX_POLL_SEC=0.0,
            TX_CONFIRM_TIMEOUT_SEC=1.0,
            SETTLE_RETRY_AFTER_SEC=30.0,
        )
        values.update(overrides)
        return Settings(**values)

    return _make
