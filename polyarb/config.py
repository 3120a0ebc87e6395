"""Environment-driven settings and component config factories.

Components never read the environment; they take the small dataclass
configs built here.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from polyarb.arb.pathfinder import PathfinderConfig
from polyarb.arb.simulator import SimulatorConfig
from polyarb.arb.strategy import StrategyConfig
from polyarb.core.risk import RiskConfig
from polyarb.dex.tokens import FLASH_LOAN_FEE_BPS, VENUES
from polyarb.live.executor import ExecutorConfig
from polyarb.live.gas_manager import GasConfig, GasStrategy
from polyarb.live.watcher import WatcherConfig


class ArbSettings(BaseSettings):
    """Typed configuration for the arbitrage engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Network
    polygon_rpc_url: str = Field(default="https://polygon-rpc.com", alias="POLYGON_RPC_URL")
    chain_id: int = Field(default=137, alias="CHAIN_ID")
    block_polling_interval_ms: int = Field(default=1000, alias="BLOCK_POLLING_INTERVAL_MS")
    rpc_timeout_seconds: float = Field(default=10.0, alias="RPC_TIMEOUT_SECONDS")

    # Wallet
    private_key: SecretStr | None = Field(default=None, alias="PRIVATE_KEY")
    hot_wallet_address: str | None = Field(default=None, alias="HOT_WALLET_ADDRESS")

    # Gas
    gas_price_strategy: GasStrategy = Field(default=GasStrategy.STANDARD, alias="GAS_PRICE_STRATEGY")
    max_gas_gwei: float = Field(default=500.0, alias="MAX_GAS_GWEI")
    gas_multiplier: float = Field(default=1.2, alias="GAS_MULTIPLIER")
    profit_threshold_multiplier: float = Field(default=2.0, alias="PROFIT_THRESHOLD_MULTIPLIER")
    gas_refresh_interval_seconds: float = Field(default=15.0, alias="GAS_REFRESH_INTERVAL_SECONDS")
    gas_history_size: int = Field(default=100, alias="GAS_HISTORY_SIZE")

    # Execution
    executor_mode: Literal["simulate", "live"] = Field(default="simulate", alias="EXECUTOR_MODE")
    slippage_bps: int = Field(default=50, ge=0, le=10_000, alias="SLIPPAGE_BPS")
    min_profit_threshold_usd: float = Field(default=0.1, alias="MIN_PROFIT_THRESHOLD_USD")
    max_trade_size_usd: float = Field(default=100_000.0, alias="MAX_TRADE_SIZE_USD")
    trade_cap_per_tx: float = Field(default=50_000.0, alias="TRADE_CAP_PER_TX")
    tx_deadline_seconds: int = Field(default=1200, alias="TX_DEADLINE_SECONDS")
    max_retries: int = Field(default=3, ge=0, alias="MAX_RETRIES")
    retry_delay_seconds: float = Field(default=5.0, alias="RETRY_DELAY_SECONDS")
    confirmation_timeout_seconds: float = Field(default=60.0, alias="CONFIRMATION_TIMEOUT_SECONDS")
    confirmations: int = Field(default=2, ge=1, alias="CONFIRMATIONS")
    flash_loan_receiver: str | None = Field(default=None, alias="FLASHLOAN_RECEIVER_ADDRESS")

    # Flash loans
    enable_flashloans: bool = Field(default=False, alias="ENABLE_FLASHLOANS")
    flashloan_provider: Literal["aave", "balancer", "dodo"] = Field(default="aave", alias="FLASHLOAN_PROVIDER")
    max_flashloan_usd: float = Field(default=1_000_000.0, alias="MAX_FLASHLOAN_USD")

    # DEX
    enabled_dexes: str = Field(default="quickswap,sushiswap", alias="ENABLED_DEXES")

    # Risk
    daily_loss_limit_usd: float = Field(default=500.0, alias="DAILY_LOSS_LIMIT_USD")
    max_consecutive_failures: int = Field(default=5, alias="MAX_CONSECUTIVE_FAILURES")
    circuit_breaker_cooldown_ms: int = Field(default=60_000, alias="CIRCUIT_BREAKER_COOLDOWN_MS")
    max_exposure_per_trade: float = Field(default=25_000.0, alias="MAX_EXPOSURE_PER_TRADE")
    max_daily_exposure: float = Field(default=100_000.0, alias="MAX_DAILY_EXPOSURE")
    max_daily_trades: int = Field(default=100, alias="MAX_DAILY_TRADES")
    max_price_impact: float = Field(default=5.0, alias="MAX_PRICE_IMPACT")
    max_slippage: float = Field(default=1.0, alias="MAX_SLIPPAGE")
    min_confidence: float = Field(default=0.8, ge=0.0, le=1.0, alias="MIN_CONFIDENCE")
    min_pool_liquidity_usd: float = Field(default=10_000.0, alias="MIN_POOL_LIQUIDITY_USD")

    # Performance
    path_cache_ttl_ms: int = Field(default=5000, alias="PATH_CACHE_TTL_MS")
    max_concurrent_simulations: int = Field(default=2, ge=1, alias="MAX_CONCURRENT_SIMULATIONS")
    opportunity_scan_interval: int = Field(default=30_000, alias="OPPORTUNITY_SCAN_INTERVAL")

    # Features
    enable_triangular_arb: bool = Field(default=True, alias="ENABLE_TRIANGULAR_ARB")
    enable_cross_dex_arb: bool = Field(default=True, alias="ENABLE_CROSS_DEX_ARB")
    enable_mev_protection: bool = Field(default=False, alias="ENABLE_MEV_PROTECTION")

    # Monitoring
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")
    control_api_port: int = Field(default=3000, alias="CONTROL_API_PORT")

    @field_validator("polygon_rpc_url", "hot_wallet_address", mode="before")
    @classmethod
    def strip_whitespace(cls, v: str | None) -> str | None:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v: str) -> str:
        return v.strip().upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _validate_mode(self) -> ArbSettings:
        """Live mode needs a signing key; flash loans need a known provider."""
        if self.executor_mode == "live" and self.private_key is None:
            raise ValueError("PRIVATE_KEY must be set when EXECUTOR_MODE=live")
        if self.flashloan_provider not in FLASH_LOAN_FEE_BPS:
            raise ValueError(f"Unknown FLASHLOAN_PROVIDER: {self.flashloan_provider}")
        unknown = [name for name in self.dex_list if name not in VENUES]
        if unknown:
            raise ValueError(f"Unknown venues in ENABLED_DEXES: {', '.join(unknown)}")
        return self

    @property
    def dex_list(self) -> list[str]:
        return [name.strip().lower() for name in self.enabled_dexes.split(",") if name.strip()]

    @property
    def dry_run(self) -> bool:
        return self.executor_mode != "live"

    # ------------------------------------------------------------------
    # Component configs
    # ------------------------------------------------------------------

    def risk_config(self) -> RiskConfig:
        return RiskConfig(
            daily_loss_limit_usd=self.daily_loss_limit_usd,
            max_consecutive_failures=self.max_consecutive_failures,
            circuit_breaker_cooldown_seconds=self.circuit_breaker_cooldown_ms / 1000,
            max_exposure_per_trade_usd=self.max_exposure_per_trade,
            max_daily_exposure_usd=self.max_daily_exposure,
            max_daily_trades=self.max_daily_trades,
            max_price_impact_pct=self.max_price_impact,
            max_slippage_pct=self.max_slippage,
            min_confidence=self.min_confidence,
            min_pool_liquidity_usd=self.min_pool_liquidity_usd,
        )

    def gas_config(self) -> GasConfig:
        return GasConfig(
            strategy=self.gas_price_strategy,
            max_gas_gwei=self.max_gas_gwei,
            gas_multiplier=self.gas_multiplier,
            profit_threshold_multiplier=self.profit_threshold_multiplier,
            refresh_interval_seconds=self.gas_refresh_interval_seconds,
            history_size=self.gas_history_size,
            call_timeout=self.rpc_timeout_seconds,
        )

    def pathfinder_config(self) -> PathfinderConfig:
        return PathfinderConfig(
            cache_ttl_seconds=self.path_cache_ttl_ms / 1000,
            enable_triangular=self.enable_triangular_arb,
            enable_cross_dex=self.enable_cross_dex_arb,
            call_timeout=self.rpc_timeout_seconds,
        )

    def simulator_config(self) -> SimulatorConfig:
        return SimulatorConfig(
            min_profit_usd=self.min_profit_threshold_usd,
            default_slippage_bps=self.slippage_bps,
            tx_deadline_seconds=self.tx_deadline_seconds,
            call_timeout=self.rpc_timeout_seconds,
            max_concurrent_simulations=self.max_concurrent_simulations,
        )

    def strategy_config(self) -> StrategyConfig:
        return StrategyConfig(
            min_profit_usd=self.min_profit_threshold_usd,
            max_trade_usd=min(self.trade_cap_per_tx, self.max_trade_size_usd),
            max_price_impact_pct=self.max_price_impact,
            max_gas_gwei=self.max_gas_gwei,
            slippage_bps=self.slippage_bps,
        )

    def executor_config(self) -> ExecutorConfig:
        return ExecutorConfig(
            dry_run=self.dry_run,
            max_retries=self.max_retries,
            retry_delay_seconds=self.retry_delay_seconds,
            confirmations=self.confirmations,
            confirmation_timeout_seconds=self.confirmation_timeout_seconds,
            call_timeout=self.rpc_timeout_seconds,
            chain_id=self.chain_id,
            flash_loan_provider=self.flashloan_provider,
        )

    def watcher_config(self) -> WatcherConfig:
        return WatcherConfig(
            poll_interval_seconds=self.block_polling_interval_ms / 1000,
            slippage_bps=self.slippage_bps,
            enable_flash_loans=self.enable_flashloans,
            flash_loan_provider=self.flashloan_provider,
            enable_mev_protection=self.enable_mev_protection,
            call_timeout=self.rpc_timeout_seconds,
            identity=self.hot_wallet_address or "",
        )
