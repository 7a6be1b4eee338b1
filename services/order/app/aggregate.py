"""
Order Service — 注文集約 (Order Aggregate)

注文の状態遷移はこのクラスのメソッドだけで行う。
状態が変わるたびにタイムラインへ 1 件追記する (追記のみ、削除・書き換えなし)。

状態遷移 (Saga):
    PENDING → PROCESSING → CONFIRMED   (在庫引き当て成功 → 決済成功)
    PENDING → CANCELLED                (在庫引き当て失敗 = 補償)
    PROCESSING → CANCELLED             (決済失敗 = 補償)

直接更新 (override_status) はこの遷移表を通らない運用向けの操作。
ただし Saga 実行中 (PENDING / PROCESSING) と CANCELLED / DELIVERED の注文は変更できない。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field

from .errors import InvalidStatusTransition
from .payments import PaymentResult, PaymentStatus


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


IMMUTABLE_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.DELIVERED})
# Saga 実行中の状態。直接更新できない
SAGA_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderItem(BaseModel):
    product_id: int
    name: str
    unit_price: float
    quantity: int

    @computed_field
    @property
    def subtotal(self) -> float:
        return round(self.unit_price * self.quantity, 2)


class TimelineEntry(BaseModel):
    status: OrderStatus
    message: str
    timestamp: datetime = Field(default_factory=_now)


class Order(BaseModel):
    id: int
    user_id: str
    items: list[OrderItem]
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    shipping_address: dict[str, Any] | str
    payment_method: dict[str, Any] | str
    cancellation_reason: str | None = None
    payment_details: PaymentResult | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    timeline: list[TimelineEntry] = []

    @computed_field
    @property
    def total_amount(self) -> float:
        return round(sum(item.subtotal for item in self.items), 2)

    @computed_field
    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    @classmethod
    def create(
        cls,
        order_id: int,
        user_id: str,
        items: list[OrderItem],
        shipping_address: dict[str, Any] | str,
        payment_method: dict[str, Any] | str,
    ) -> "Order":
        if not items:
            raise ValueError("an order needs at least one item")
        order = cls(
            id=order_id,
            user_id=user_id,
            items=items,
            shipping_address=shipping_address,
            payment_method=payment_method,
        )
        order.timeline.append(
            TimelineEntry(status=OrderStatus.PENDING, message="Order created and pending validation")
        )
        return order

    # ── 状態遷移 ─────────────────────────────────

    def _record(self, status: OrderStatus, message: str) -> None:
        now = _now()
        self.status = status
        self.updated_at = now
        self.timeline.append(TimelineEntry(status=status, message=message, timestamp=now))

    def _require(self, *allowed: OrderStatus, target: OrderStatus) -> None:
        if self.status not in allowed:
            raise InvalidStatusTransition(
                f"Order {self.id} cannot move from {self.status.value} to {target.value}",
                order_id=self.id,
            )

    def start_processing(self) -> None:
        self._require(OrderStatus.PENDING, target=OrderStatus.PROCESSING)
        self.payment_status = PaymentStatus.PROCESSING
        self._record(OrderStatus.PROCESSING, "Inventory reserved, processing payment")

    def confirm(self, payment: PaymentResult) -> None:
        self._require(OrderStatus.PROCESSING, target=OrderStatus.CONFIRMED)
        self.payment_status = PaymentStatus.COMPLETED
        self.payment_details = payment
        self._record(OrderStatus.CONFIRMED, "Payment successful, order confirmed")

    def cancel(self, reason: str, message: str | None = None, payment: PaymentResult | None = None) -> None:
        self._require(OrderStatus.PENDING, OrderStatus.PROCESSING, target=OrderStatus.CANCELLED)
        self.payment_status = PaymentStatus.FAILED
        self.cancellation_reason = reason
        if payment is not None:
            self.payment_details = payment
        self._record(OrderStatus.CANCELLED, message or reason)

    def override_status(self, status: OrderStatus, message: str | None = None) -> None:
        if self.status in SAGA_STATUSES:
            raise InvalidStatusTransition(
                f"Order {self.id} is still being placed and cannot be updated yet",
                order_id=self.id,
                current_status=self.status.value,
            )
        if self.status in IMMUTABLE_STATUSES:
            raise InvalidStatusTransition(
                f"Order {self.id} is {self.status.value} and can no longer change status",
                order_id=self.id,
                current_status=self.status.value,
            )
        self._record(status, message or f"Order status updated to {status.value}")
