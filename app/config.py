from decimal import Decimal
from typing import Any, ClassVar, FrozenSet

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./earthx.db"

    # Database pool (applies to client/server DBs like Postgres; SQLite uses NullPool)
    DB_POOL_PRE_PING: bool = True
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    # JWT (tokens are issued by the external auth service; we only verify them)
    # NOTE: This default is intentionally insecure and must never be used outside dev/test.
    DEFAULT_JWT_SECRET: ClassVar[str] = "dev-secret-change-me-please-32chars!!"
    JWT_SECRET: str = DEFAULT_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # Application
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # Environment
    # Used for guardrails. Suggested values: dev|staging|prod.
    ENV: str = "dev"

    # Collection limits (grams)
    COLLECTION_MIN_WEIGHT_GRAMS: int = 10
    COLLECTION_MAX_WEIGHT_GRAMS: int = 50000
    COLLECTION_COLLECTOR_FEE_RATE: Decimal = Decimal("0.05")

    # Weight verification policy (percentages)
    VERIFICATION_TOLERANCE_PERCENT: Decimal = Decimal("5")
    VERIFICATION_REJECT_THRESHOLD_PERCENT: Decimal = Decimal("20")

    # Reward policy
    REWARD_EIU_PER_GRAM: Decimal = Decimal("0.1")
    REWARD_CITIZEN_SHARE: Decimal = Decimal("0.85")
    REWARD_COLLECTOR_SHARE: Decimal = Decimal("0.10")
    REWARD_RECYCLER_SHARE: Decimal = Decimal("0.05")
    REWARD_VOLUME_BONUS_LARGE_MIN_TX: int = 50
    REWARD_VOLUME_BONUS_LARGE_RATE: Decimal = Decimal("0.05")
    REWARD_VOLUME_BONUS_MEDIUM_MIN_TX: int = 20
    REWARD_VOLUME_BONUS_MEDIUM_RATE: Decimal = Decimal("0.02")
    REWARD_BONUS_CITIZEN_SHARE: Decimal = Decimal("0.6")
    REWARD_BONUS_COLLECTOR_SHARE: Decimal = Decimal("0.3")
    REWARD_BONUS_RECYCLER_SHARE: Decimal = Decimal("0.1")

    # Chain client (EVM JSON-RPC). Empty values leave the client unconfigured.
    CHAIN_RPC_URL: str = ""
    CHAIN_PRIVATE_KEY: str = ""
    CHAIN_CONTRACT_ADDRESS: str = ""
    # 0 = accept whatever chain the RPC endpoint reports.
    CHAIN_EXPECTED_CHAIN_ID: int = 0

    # Mint pipeline
    MINT_MAX_RETRIES: int = 3
    MINT_RETRY_DELAY_MS: int = 5000
    MINT_CONFIRMATIONS: int = 2
    MINT_GAS_BUFFER_PERCENT: int = 20
    MINT_RECEIPT_TIMEOUT_SECONDS: int = 300
    MINT_CONFIRMATION_POLL_SECONDS: float = 2.0
    # Delay between the verification commit and the background mint start.
    MINT_TRIGGER_DELAY_MS: int = 1000

    # Mint retry sweep (periodic re-trigger of FAILED_ON_CHAIN batches)
    MINT_RETRY_SWEEP_ENABLED: bool = True
    MINT_RETRY_SWEEP_INTERVAL_SECONDS: int = 600
    MINT_RETRY_SWEEP_LIMIT: int = 10
    MINT_RETRY_COOLDOWN_SECONDS: int = 3600
    # PENDING_MINT/RETRYING batches with no checkpoint for this long are failed
    # so the sweep can pick them up again.
    MINT_STALE_ATTEMPT_SECONDS: int = 3600

    # Rate limiting (in-memory, best-effort)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_REQUESTS_PER_WINDOW: int = 120

    # Observability
    METRICS_ENABLED: bool = True

    # --- Guardrails ---
    # Fail-fast on obviously insecure secrets outside dev/test.
    _SAFE_ENVS: ClassVar[FrozenSet[str]] = frozenset({"dev", "development", "test", "testing"})
    _UNSAFE_PLACEHOLDERS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "change-me-in-production",
            "change-me",
            "changeme",
            "",
        }
    )

    def model_post_init(self, __context: Any) -> None:
        # Runs on every Settings() instantiation (including module-level `settings = Settings()`).
        self._guardrail_default_secrets()
        self._guardrail_chain_config()
        self._guardrail_verification_thresholds()

    def _guardrail_default_secrets(self) -> None:
        env = (self.ENV or "").strip().lower()
        if env in self._SAFE_ENVS:
            return

        v = (self.JWT_SECRET or "").strip()
        vl = v.lower()
        if v == self.DEFAULT_JWT_SECRET or vl in self._UNSAFE_PLACEHOLDERS or "change-me" in vl:
            raise RuntimeError(
                "Refusing to start with insecure default/placeholder secrets outside dev/test: "
                "JWT_SECRET. "
                f"Got ENV={self.ENV!r}. "
                "Set a secure value via the JWT_SECRET environment variable, "
                "or run with ENV=dev/test."
            )

    def _guardrail_chain_config(self) -> None:
        """A signing key without an RPC endpoint is a deployment mistake, not an opt-out."""
        env = (self.ENV or "").strip().lower()
        if env in self._SAFE_ENVS:
            return
        if (self.CHAIN_PRIVATE_KEY or "").strip() and not (self.CHAIN_RPC_URL or "").strip():
            raise RuntimeError(
                "CHAIN_PRIVATE_KEY is set but CHAIN_RPC_URL is empty. "
                f"Got ENV={self.ENV!r}. "
                "Set CHAIN_RPC_URL or remove the signing key."
            )

    def _guardrail_verification_thresholds(self) -> None:
        if self.VERIFICATION_TOLERANCE_PERCENT < 0:
            raise RuntimeError("VERIFICATION_TOLERANCE_PERCENT must be non-negative")
        if self.VERIFICATION_REJECT_THRESHOLD_PERCENT < self.VERIFICATION_TOLERANCE_PERCENT:
            raise RuntimeError(
                "VERIFICATION_REJECT_THRESHOLD_PERCENT must be >= VERIFICATION_TOLERANCE_PERCENT"
            )


settings = Settings()
