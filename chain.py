# chain.py
"""
Chain Reader: fixed-layout account decoding for the FlipSOL program.

This is the only place account offsets are written down. Decoders are pure
functions of raw bytes; ChainReader adds the address derivation and the RPC
read, with no caching across calls.

Layouts (little-endian, Anchor 8-byte discriminator first):
  global_state: [disc 8][authority 32][current_round u64][rake_bps u16][jackpot_bps u16]
                [treasury_bump u8][jackpot_bump u8][min_bet u64]
  round:        [disc 8][round_id u64][heads_total u64][tails_total u64][ends_at i64]
                [settled u8][winning_side u8][bump u8]
"""

from __future__ import annotations

import hashlib
import logging
import struct
from typing import Optional

from solders.pubkey import Pubkey

from errors import AccountNotFound, MalformedAccount
from models import GlobalConfig, JackpotPool, Round, Side

logger = logging.getLogger(__name__)

# =========================================================
# Seeds / discriminators
# =========================================================
SEED_GLOBAL = b"global_state"
SEED_ROUND = b"round"
SEED_TREASURY = b"treasury"
SEED_JACKPOT = b"jackpot"


def account_discriminator(name: str) -> bytes:
    """Anchor account discriminator: sha256("account:<Name>")[:8]."""
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


GLOBAL_DISCRIMINATOR = account_discriminator("GlobalState")
ROUND_DISCRIMINATOR = account_discriminator("RoundState")

DISC_LEN = 8
GLOBAL_MIN_LEN = 52        # through jackpot_bps
GLOBAL_FULL_LEN = 62       # through min_bet
ROUND_MIN_LEN = 42         # through winning_side
ROUND_FULL_LEN = 43        # through bump

_GLOBAL_HEAD = struct.Struct("<32sQHH")   # authority, current_round, rake_bps, jackpot_bps
_GLOBAL_TAIL = struct.Struct("<BBQ")      # treasury_bump, jackpot_bump, min_bet
_ROUND = struct.Struct("<QQQqBB")         # id, heads, tails, ends_at, settled, winning_side


# =========================================================
# Address derivation
# =========================================================
def round_seed(round_id: int) -> bytes:
    return int(round_id).to_bytes(8, "little")


def global_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([SEED_GLOBAL], program_id)[0]


def round_address(program_id: Pubkey, round_id: int) -> Pubkey:
    return Pubkey.find_program_address([SEED_ROUND, round_seed(round_id)], program_id)[0]


def treasury_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([SEED_TREASURY], program_id)[0]


def jackpot_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([SEED_JACKPOT], program_id)[0]


# =========================================================
# Decoders
# =========================================================
def _check(data: bytes, label: str, min_len: int, disc: Optional[bytes]) -> None:
    if data is None:
        raise MalformedAccount(label, "no data")
    if len(data) < min_len:
        raise MalformedAccount(label, f"{len(data)} bytes < minimum {min_len}")
    if disc is not None and bytes(data[:DISC_LEN]) != disc:
        raise MalformedAccount(label, f"discriminator {bytes(data[:DISC_LEN]).hex()} != {disc.hex()}")


def decode_global_config(data: bytes, verify_discriminator: bool = True) -> GlobalConfig:
    _check(data, "global_state", GLOBAL_MIN_LEN, GLOBAL_DISCRIMINATOR if verify_discriminator else None)
    authority, current, rake, jackpot = _GLOBAL_HEAD.unpack_from(data, DISC_LEN)
    treasury_bump = jackpot_bump = min_bet = None
    if len(data) >= GLOBAL_FULL_LEN:
        treasury_bump, jackpot_bump, min_bet = _GLOBAL_TAIL.unpack_from(data, GLOBAL_MIN_LEN)
    return GlobalConfig(
        authority=str(Pubkey.from_bytes(authority)),
        current_round_id=current,
        rake_bps=rake,
        jackpot_bps=jackpot,
        treasury_bump=treasury_bump,
        jackpot_bump=jackpot_bump,
        min_bet=min_bet,
    )


def decode_round(data: bytes, verify_discriminator: bool = True) -> Round:
    _check(data, "round", ROUND_MIN_LEN, ROUND_DISCRIMINATOR if verify_discriminator else None)
    round_id, heads, tails, ends_at, settled, side = _ROUND.unpack_from(data, DISC_LEN)
    if settled not in (0, 1):
        raise MalformedAccount("round", f"settled flag {settled} is not a bool")
    winning = Side(side) if side in (Side.HEADS, Side.TAILS) else None
    bump = data[ROUND_MIN_LEN] if len(data) >= ROUND_FULL_LEN else None
    return Round(
        round_id=round_id,
        heads_total=heads,
        tails_total=tails,
        ends_at=ends_at,
        settled=bool(settled),
        winning_side=winning,
        bump=bump,
    )


# =========================================================
# Reader
# =========================================================
class ChainReader:
    """
    Reads program accounts through a ledger capability.

    `ledger` needs only `get_account(Pubkey) -> AccountSnapshot | None`.
    Transport errors propagate unchanged; malformed data is logged and raised.
    """

    def __init__(self, ledger, program_id: Pubkey, verify_discriminator: bool = True):
        self.ledger = ledger
        self.program_id = program_id
        self.verify_discriminator = verify_discriminator
        self.global_pda = global_address(program_id)
        self.jackpot_pda = jackpot_address(program_id)

    async def read_global_config(self) -> GlobalConfig:
        acct = await self.ledger.get_account(self.global_pda)
        if acct is None:
            raise AccountNotFound(str(self.global_pda))
        try:
            return decode_global_config(acct.data, self.verify_discriminator)
        except MalformedAccount as e:
            logger.error("Global state %s unreadable: %s", self.global_pda, e.reason)
            raise

    async def read_round(self, round_id: int) -> Optional[Round]:
        """Return the round, or None when its account does not exist."""
        addr = round_address(self.program_id, round_id)
        acct = await self.ledger.get_account(addr)
        if acct is None:
            return None
        try:
            rnd = decode_round(acct.data, self.verify_discriminator)
        except MalformedAccount as e:
            logger.error("Round %s (%s) unreadable: %s", round_id, addr, e.reason)
            raise
        if rnd.round_id != round_id:
            logger.error("Round account %s holds id %s, expected %s", addr, rnd.round_id, round_id)
            raise MalformedAccount("round", f"id {rnd.round_id} at address for round {round_id}")
        return rnd

    async def round_exists(self, round_id: int) -> bool:
        return (await self.ledger.get_account(round_address(self.program_id, round_id))) is not None

    async def read_jackpot_pool(self) -> Optional[JackpotPool]:
        acct = await self.ledger.get_account(self.jackpot_pda)
        if acct is None:
            return None
        return JackpotPool(address=str(self.jackpot_pda), lamports=acct.lamports)
