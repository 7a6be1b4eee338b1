"""
Order Service — 設定

環境変数(および .env)から設定を読み込む。
サーキットブレーカーの閾値は依存サービスごとに上書きできる:
  PRODUCTS_BREAKER__VOLUME_THRESHOLD=10
"""

from functools import lru_cache

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class BreakerOptions(BaseModel):
    timeout: float = 5.0
    error_threshold_percentage: float = 50.0
    reset_timeout: float = 30.0
    rolling_window: float = 10.0
    volume_threshold: int = 5


class Settings(BaseSettings):
    PRODUCTS_SERVICE_URL: str = "http://localhost:3002"
    CART_SERVICE_URL: str = "http://localhost:3003"
    NOTIFICATIONS_SERVICE_URL: str = "http://localhost:3005"
    REDIS_URL: str | None = None

    LOG_LEVEL: str = "INFO"
    ORDER_ID_START: int = 1000
    HTTP_TIMEOUT: float = 10.0

    PAYMENT_SUCCESS_RATE: float = 0.9
    PAYMENT_MIN_LATENCY: float = 1.0
    PAYMENT_MAX_LATENCY: float = 3.0
    PAYMENT_TIMEOUT: float = 10.0

    PRODUCTS_BREAKER: BreakerOptions = BreakerOptions()
    CART_BREAKER: BreakerOptions = BreakerOptions()
    NOTIFICATIONS_BREAKER: BreakerOptions = BreakerOptions()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
