from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional

class Settings(BaseSettings):
    # App Config
    APP_NAME: str = "AS_Market_Maker"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Exchange Selection
    # "paper" = in-memory simulated venue, anything else is a ccxt exchange id
    EXCHANGE: str = Field(default="paper", description="paper, binance, okx, ...")
    API_KEY: str = Field(default="", description="Exchange API Key")
    API_SECRET: str = Field(default="", description="Exchange Secret Key")
    API_PASSPHRASE: Optional[str] = Field(default=None, description="Passphrase (OKX)")
    TESTNET: bool = True
    MARKET_TYPE: str = Field(default="spot", description="spot or future")

    # Strategy
    STRATEGY_PRESET: str = "moderate"   # conservative / moderate / aggressive
    SYMBOL: str = "BTCUSDT"
    DRY_RUN: bool = True                # Compute and log quotes, send nothing
    ORDER_SIZE: Optional[float] = None
    MAX_POSITION: Optional[float] = None
    MIN_POSITION: Optional[float] = None
    TICK_SIZE: Optional[float] = None
    LOT_SIZE: Optional[float] = None
    STOP_LOSS_THRESHOLD: Optional[float] = None

    # Paper venue seed (used when EXCHANGE=paper)
    PAPER_MID_PRICE: float = 50000.0
    PAPER_SPREAD: float = 1.0
    PAPER_VOLATILITY: float = 0.0005  # Per-fetch log-return stdev of the synthetic mid

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"  # Ignore unrelated keys in .env
    )

    def strategy_overrides(self) -> dict:
        """Strategy fields set through the environment (None = not set)."""
        return {
            "symbol": self.SYMBOL,
            "dry_run": self.DRY_RUN,
            "order_size": self.ORDER_SIZE,
            "max_position": self.MAX_POSITION,
            "min_position": self.MIN_POSITION,
            "tick_size": self.TICK_SIZE,
            "lot_size": self.LOT_SIZE,
            "stop_loss_threshold": self.STOP_LOSS_THRESHOLD,
        }

# Instantiate settings
try:
    settings = Settings()
except Exception as e:
    print(f"Failed to load settings: {e}")
    raise
