"""
Order Service — イベント定義

Saga の節目で Redis Pub/Sub (order_events チャネル) に発行するイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: int
    user_id: str
    timestamp: datetime = Field(default_factory=_now)


class OrderCreated(OrderEvent):
    """注文が作成された (PENDING)"""
    total_amount: float
    total_items: int


class OrderConfirmed(OrderEvent):
    """注文が確定された（在庫引き当て・決済ともに成功）"""
    total_amount: float
    transaction_id: str | None = None


class OrderCancelled(OrderEvent):
    """注文がキャンセルされた（補償トランザクション実行済み）"""
    reason: str
