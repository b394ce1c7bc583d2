"""Configuration system using pydantic-settings with environment variable loading.

Settings are built once at startup and passed by reference into component
constructors. Every group is frozen so no component can mutate shared config.
"""

from decimal import Decimal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Ledger endpoint and account identities."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", frozen=True)

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    authority: str = "7S8Uf4JHVVxdLJMh68WCUpxWqoy3wMfPGMEqGKY31Rg5"
    vault_address: str = "ANYekpdHFWSmVzEt9iBeLFMFeQiPGjcZexFkLprtcCHj"
    token_mint: str = ""
    quote_mint: str = "So11111111111111111111111111111111111111112"  # wrapped SOL
    reserve_wallet: str = ""
    fee_program_id: str = "pAMMBay6oceH9fJKBRHGP5D4bD4sWpmSwMn52FMfXEA"
    compute_unit_limit: int = 400_000
    compute_unit_price: int = 100_000  # micro-lamports
    signer_secret: SecretStr = SecretStr("")


class PipelineSettings(BaseSettings):
    """Claim -> swap -> burn pipeline parameters."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_", frozen=True)

    dry_run: bool = True
    reward_threshold: Decimal = Decimal("0.5")  # SOL; below this a claim is dust
    swap_fraction: Decimal = Decimal("0.95")  # rest reserved for tx fees
    burn_fraction: Decimal = Decimal("0.99")  # guard against precision loss
    max_slippage_bps: int = 1000  # 10%
    pipeline_interval_seconds: int = 900
    shutdown_timeout_seconds: float = 180.0  # must cover submit retries plus confirm timeout


class RetrySettings(BaseSettings):
    """Network retry and confirmation polling."""

    model_config = SettingsConfigDict(env_prefix="RETRY_", frozen=True)

    read_max_retries: int = 5
    retry_base_delay: float = 1.0
    submit_max_attempts: int = 3
    confirm_timeout_seconds: float = 60.0
    confirm_poll_interval: float = 2.0


class RecoverySettings(BaseSettings):
    """Reconciler cadence and drift tolerances.

    The grace period keeps the reconciler away from records an in-flight
    pipeline run may still be writing.
    """

    model_config = SettingsConfigDict(env_prefix="RECOVERY_", frozen=True)

    grace_period_seconds: float = 1800.0
    reconcile_interval_seconds: int = 3600
    metrics_interval_seconds: int = 14400
    drift_abs_tolerance: Decimal = Decimal("1000")  # tokens
    drift_rel_tolerance: Decimal = Decimal("0.001")  # of total supply
    resume_after_recovery: bool = True
    initial_supply: Decimal = Decimal("1000000000")
    reserve_fraction: Decimal = Decimal("0.3")


class PriceSettings(BaseSettings):
    """Price oracle fallback and simulated rates."""

    model_config = SettingsConfigDict(env_prefix="PRICE_", frozen=True)

    fallback_sol_usd: Decimal = Decimal("150")
    simulated_sol_usd: Decimal = Decimal("150")
    simulated_tokens_per_sol: Decimal = Decimal("100000")


class StorageSettings(BaseSettings):
    """Record store location."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", frozen=True)

    db_path: str = "data/records.db"


class ApiSettings(BaseSettings):
    """Status API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_", frozen=True)

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        frozen=True,
    )

    log_level: str = "INFO"
    ledger: LedgerSettings = LedgerSettings()
    pipeline: PipelineSettings = PipelineSettings()
    retry: RetrySettings = RetrySettings()
    recovery: RecoverySettings = RecoverySettings()
    price: PriceSettings = PriceSettings()
    storage: StorageSettings = StorageSettings()
    api: ApiSettings = ApiSettings()
