"""
Order Service — 注文台帳 (Order Ledger)

プロセス内の注文ストア。起動時に 1 つだけ生成し、
注文の追加・変更はすべてこのクラスのメソッドを通す。

- 内部ロックで更新を直列化する
- 取得系は内部の注文のコピーを返す (呼び出し側が直接書き換えられない)
- 注文 ID は id_start + 1 から単調増加
"""

import logging
import threading
from typing import Any, Callable

from . import queries
from .aggregate import Order, OrderItem, OrderStatus
from .errors import NotFoundError

logger = logging.getLogger(__name__)


class OrderLedger:
    def __init__(self, id_start: int = 1000) -> None:
        self._lock = threading.Lock()
        self._orders: dict[int, Order] = {}
        self._last_id = id_start

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)

    def create(
        self,
        user_id: str,
        items: list[OrderItem],
        shipping_address: dict[str, Any] | str,
        payment_method: dict[str, Any] | str,
    ) -> Order:
        """PENDING の注文を採番して追加する。"""
        with self._lock:
            self._last_id += 1
            order = Order.create(self._last_id, user_id, items, shipping_address, payment_method)
            self._orders[order.id] = order
            return order.model_copy(deep=True)

    def append(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise ValueError(f"order {order.id} already exists")
            self._last_id = max(self._last_id, order.id)
            self._orders[order.id] = order.model_copy(deep=True)
            return self._orders[order.id].model_copy(deep=True)

    def get(self, order_id: int) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFoundError("Order not found", order_id=order_id)
            return order.model_copy(deep=True)

    def all(self) -> list[Order]:
        with self._lock:
            return [order.model_copy(deep=True) for order in self._orders.values()]

    def apply(self, order_id: int, mutation: Callable[[Order], None]) -> Order:
        """
        注文に mutation を適用して、更新後のコピーを返す。

        mutation が例外を送出した場合は注文を変更しない。
        """
        with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise NotFoundError("Order not found", order_id=order_id)
            updated = current.model_copy(deep=True)
            mutation(updated)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    def update_status(self, order_id: int, status: OrderStatus, message: str | None = None) -> Order:
        """
        運用向けのステータス直接更新 (出荷・配達など)。

        Saga の遷移表は通らない。Saga 実行中 (PENDING / PROCESSING) と
        変更不可の状態 (CANCELLED / DELIVERED) からは
        InvalidStatusTransition になる。
        """
        previous: list[OrderStatus] = []

        def override(order: Order) -> None:
            previous.append(order.status)
            order.override_status(status, message)

        order = self.apply(order_id, override)
        logger.info(
            "Order %s status updated from %s to %s", order_id, previous[0].value, status.value
        )
        return order

    def list_by_user(
        self,
        user_id: str,
        status: OrderStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict:
        orders = [
            order
            for order in self.all()
            if order.user_id == user_id and (status is None or order.status == status)
        ]
        orders.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return queries.paginate(orders, page, limit)
