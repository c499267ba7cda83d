# config.py
"""
FlipSOL round engine: Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from typing import Optional, List, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".FLIPSOL.env",  # change to ".env" if preferred
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # RPC / Admin
    # =========================
    RPC_URL: str = "https://api.devnet.solana.com"
    RPC_TIMEOUT_SEC: float = 10.0
    ADMIN_TOKEN: Optional[str] = None

    @field_validator("RPC_URL")
    @classmethod
    def _strip_rpc_url(cls, v: str) -> str:
        return (v or "").strip()

    # =========================
    # Program / Authority
    # =========================
    PROGRAM_ID: str = "BTU8kuz95iPH6XqBMp7a4VEsLhdco62s9H81Jt6G4GQL"

    # Base58 secret key (64b or 32b seed) or a JSON byte array; MUST be set in env
    AUTHORITY_PK: Optional[str] = None

    # =========================
    # Round timing
    # =========================
    ROUND_DURATION_SEC: int = 60
    POLL_INTERVAL_SEC: float = 5.0
    AUTO_START: bool = True
    SETTLE_EMPTY_ROUNDS: bool = False
    # rounds from old program versions carry garbage timestamps
    MIN_VALID_ENDS_AT: int = 1_000_000_000

    # =========================
    # Stuck rounds
    # =========================
    STUCK_THRESHOLD: int = 6
    STUCK_POLICY: Literal["retry", "force_advance"] = "retry"
    FORCE_ADVANCE: bool = False
    SETTLE_RETRY_AFTER_SEC: float = 30.0
    STUCK_RETRY_BACKOFF_MAX_SEC: float = 120.0

    @field_validator("STUCK_POLICY", mode="before")
    @classmethod
    def _norm_policy(cls, v):
        return str(v or "retry").strip().lower().replace("-", "_")

    # =========================
    # Transactions
    # =========================
    TX_CONFIRM_TIMEOUT_SEC: float = 30.0
    TX_POLL_SEC: float = 1.0
    TX_MAX_ATTEMPTS: int = 4
    TX_BACKOFF_SEC: float = 0.5
    TX_BACKOFF_MAX_SEC: float = 8.0

    # =========================
    # Live feed
    # =========================
    SUBSCRIBER_QUEUE_SIZE: int = 100
    MAX_SUBSCRIBERS: int = 500
    SSE_HEARTBEAT_SEC: float = 30.0

    # =========================
    # Jackpot
    # =========================
    JACKPOT_TRACKING: bool = True

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def has_authority(self) -> bool:
        return bool((self.AUTHORITY_PK or "").strip())

# Instantiate global settings (values resolved from environment)
settings = Settings()
