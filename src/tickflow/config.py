from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TICKFLOW_", env_file=".env", extra="ignore"
    )

    env: str = Field(default="dev")
    log_level: str = Field(default="INFO")
    log_file: str | None = None
    log_max_bytes: int = Field(default=10 * 1024 * 1024)
    log_backup_count: int = Field(default=5)
    log_json: bool = False

    # Streaming endpoint
    ws_host: str = "127.0.0.1:8765"
    ws_url: str | None = None
    api_key: str | None = None
    default_exchange: str = "NSE"

    # Reconnection (seconds)
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=10.0, gt=0)
    reconnect_max_attempts: int = Field(default=5, ge=0)
    close_grace_period: float = Field(default=0.25, ge=0)

    # Tick buffer
    max_ticks_in_memory: int = Field(default=10_000, gt=0)

    # Footprint
    footprint_imbalance_ratio: float = Field(default=3.0, gt=0)
    footprint_value_area_percent: float = Field(default=70.0, gt=0, le=100)
    footprint_max_bars: int = Field(default=50, gt=0)
    bar_interval_ms: int = Field(default=60_000, gt=0)

    # Power trades
    power_trade_volume_threshold: float = Field(default=100.0, gt=0)
    power_trade_window_ms: int = Field(default=5_000, gt=0)
    power_trade_alert_multiplier: float = Field(default=3.0, gt=0)
    power_trade_max_history: int = Field(default=50, ge=0)

    # OI sense
    oi_sense_threshold: float = Field(default=0.5, ge=0)

    @property
    def websocket_url(self) -> str:
        return self.ws_url or f"ws://{self.ws_host}"


settings = Settings()
