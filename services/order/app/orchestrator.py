"""
Order Service — 注文 Saga オーケストレーター

Saga パターン（オーケストレーション型）:
  オーケストレーターが各サービスへの呼び出し順序を制御する。
  途中で失敗した場合は、それまでに成功した在庫引き当てを
  補償トランザクションで元に戻し、注文を CANCELLED で終える。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. validate_cart      Cart Service でカートを検証            │
  │     └─ 失敗 → 注文は作らずにエラー                           │
  │  2. create_order       台帳に PENDING の注文を作成            │
  │  3. reserve_inventory  商品ごとに順番に在庫を減らす           │
  │     └─ 失敗 → compensate                                     │
  │  4. charge_payment     PROCESSING にして決済                  │
  │     └─ 拒否 → compensate                                     │
  │  5. confirm            CONFIRMED、カートを空に、成功通知      │
  │                                                              │
  │  compensate: 引き当て済みの在庫を戻す → CANCELLED → 失敗通知  │
  └──────────────────────────────────────────────────────────────┘

Saga の進行状況は OrderSaga (現在のステップを持つ値) で表す。
オーケストレーターはステップごとのハンドラを終端ステップまで繰り返し呼ぶ。
現状は OrderSaga をメモリ上にしか持たないため、
Saga の途中でプロセスが落ちると引き当て済みの在庫は戻らない。
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .aggregate import Order, OrderItem
from .clients import CartClient, NotificationsClient, ProductsClient
from .errors import (
    BusinessRuleViolation,
    DependencyError,
    DependencyShortCircuited,
    OrderServiceError,
)
from .events import OrderCancelled, OrderConfirmed, OrderCreated, OrderEvent
from .ledger import OrderLedger
from .payments import PaymentProcessor, PaymentResult, declined

logger = logging.getLogger(__name__)

PAYMENT_DECLINED = "payment declined"


class SagaStep(str, Enum):
    VALIDATE_CART = "validate_cart"
    CREATE_ORDER = "create_order"
    RESERVE_INVENTORY = "reserve_inventory"
    CHARGE_PAYMENT = "charge_payment"
    CONFIRM = "confirm"
    COMPENSATE = "compensate"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STEPS = frozenset({SagaStep.COMPLETED, SagaStep.FAILED})


@dataclass
class Reservation:
    """商品 1 件分の在庫引き当て結果。補償の対象を決めるためだけに使う。"""

    product_id: int
    quantity: int
    success: bool
    compensated: bool = False


@dataclass
class OrderSaga:
    user_id: str
    shipping_address: dict[str, Any] | str
    payment_method: dict[str, Any] | str
    token: str | None = None
    step: SagaStep = SagaStep.VALIDATE_CART
    items: list[OrderItem] = field(default_factory=list)
    order_id: int | None = None
    reservations: list[Reservation] = field(default_factory=list)
    payment: PaymentResult | None = None
    failure_reason: str | None = None
    failure_message: str | None = None
    saga_log: list[dict] = field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.step in TERMINAL_STEPS

    def begin(self, action: str) -> None:
        self.saga_log.append(
            {
                "step": len(self.saga_log) + 1,
                "action": action,
                "status": "EXECUTING",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    def complete(self) -> None:
        self.saga_log[-1]["status"] = "COMPLETED"

    def fail(self, error: str) -> None:
        self.saga_log[-1]["status"] = "FAILED"
        self.saga_log[-1]["error"] = error


@dataclass
class SagaResult:
    success: bool
    order: Order
    reason: str | None
    saga_log: list[dict]


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        ledger: OrderLedger,
        products: ProductsClient,
        cart: CartClient,
        notifications: NotificationsClient,
        payments: PaymentProcessor,
        redis: aioredis.Redis | None = None,
        payment_timeout: float = 10.0,
    ):
        self.ledger = ledger
        self.products = products
        self.cart = cart
        self.notifications = notifications
        self.payments = payments
        self.redis = redis
        self.payment_timeout = payment_timeout
        self._handlers = {
            SagaStep.VALIDATE_CART: self._validate_cart,
            SagaStep.CREATE_ORDER: self._create_order,
            SagaStep.RESERVE_INVENTORY: self._reserve_inventory,
            SagaStep.CHARGE_PAYMENT: self._charge_payment,
            SagaStep.CONFIRM: self._confirm,
            SagaStep.COMPENSATE: self._compensate,
        }

    async def place_order(
        self,
        user_id: str,
        shipping_address: dict[str, Any] | str,
        payment_method: dict[str, Any] | str,
        token: str | None = None,
    ) -> SagaResult:
        """
        Saga を実行する。

        カート検証で失敗した場合は注文を作らずに例外を送出する。
        注文作成後の失敗はすべてここで処理し、注文は必ず
        CONFIRMED か CANCELLED で返る。
        """
        logger.info("Processing order for user %s", user_id)
        saga = await self.run(OrderSaga(user_id, shipping_address, payment_method, token))
        return SagaResult(
            success=saga.step is SagaStep.COMPLETED,
            order=self.ledger.get(saga.order_id),
            reason=saga.failure_reason,
            saga_log=saga.saga_log,
        )

    async def run(self, saga: OrderSaga) -> OrderSaga:
        while not saga.is_finished:
            await self._handlers[saga.step](saga)
        return saga

    # ── Step 1: カート検証 ───────────────────────

    async def _validate_cart(self, saga: OrderSaga) -> None:
        saga.begin("ValidateCart")
        try:
            validation = await self.cart.validate(saga.user_id, saga.token)
        except DependencyError as e:
            if e.is_business_rejection:
                raise self._reject(
                    saga, BusinessRuleViolation(e.message or "Cart validation failed")
                ) from e
            raise self._reject(saga, e)

        if not validation.success:
            raise self._reject(
                saga, BusinessRuleViolation(validation.message or "Cart validation failed")
            )
        if not validation.all_available:
            raise self._reject(
                saga,
                BusinessRuleViolation(
                    "Some items in cart are not available",
                    unavailable_items=validation.unavailable_items,
                ),
            )
        if not validation.items:
            raise self._reject(saga, BusinessRuleViolation("Cart is empty"))

        saga.items = [
            OrderItem(
                product_id=item.product_id,
                name=item.product_name,
                unit_price=item.price,
                quantity=item.quantity,
            )
            for item in validation.items
        ]
        saga.complete()
        saga.step = SagaStep.CREATE_ORDER

    def _reject(self, saga: OrderSaga, error: OrderServiceError) -> OrderServiceError:
        """注文を作る前に Saga を終える。呼び出し側で返り値を raise する。"""
        saga.fail(error.message)
        saga.step = SagaStep.FAILED
        logger.info("Order rejected for user %s: %s", saga.user_id, error.message)
        return error

    # ── Step 2: 注文作成 ─────────────────────────

    async def _create_order(self, saga: OrderSaga) -> None:
        saga.begin("CreateOrder")
        order = self.ledger.create(
            saga.user_id, saga.items, saga.shipping_address, saga.payment_method
        )
        saga.order_id = order.id
        saga.complete()
        logger.info("Order %s created with pending status", order.id)
        await self._publish_event(
            OrderCreated(
                order_id=order.id,
                user_id=order.user_id,
                total_amount=order.total_amount,
                total_items=order.total_items,
            )
        )
        saga.step = SagaStep.RESERVE_INVENTORY

    # ── Step 3: 在庫引き当て ─────────────────────

    async def _reserve_inventory(self, saga: OrderSaga) -> None:
        """
        商品ごとに順番に在庫を減らす (並列にはしない)。

        最初の失敗で打ち切るので、補償の対象は常に
        「ここまでに引き当てに成功した商品」と一致する。
        """
        saga.begin("ReserveInventory")
        for item in saga.items:
            label = f"product {item.product_id} ({item.name})"
            logger.info(
                "Reserving %d units of product %s for order %s",
                item.quantity,
                item.product_id,
                saga.order_id,
            )
            try:
                response = await self.products.decrease_stock(
                    item.product_id, item.quantity, saga.token
                )
            except DependencyShortCircuited:
                reason = f"Products service unavailable while reserving {label}"
            except DependencyError as e:
                reason = f"Could not reserve {label}: {e.message}"
            except Exception:
                logger.exception("Unexpected error reserving %s for order %s", label, saga.order_id)
                reason = f"Inventory reservation failed for {label}"
            else:
                if response.get("success", True):
                    saga.reservations.append(Reservation(item.product_id, item.quantity, True))
                    continue
                reason = f"Could not reserve {label}: {response.get('message', 'rejected')}"

            saga.reservations.append(Reservation(item.product_id, item.quantity, False))
            logger.info("Inventory reservation failed for order %s: %s", saga.order_id, reason)
            saga.fail(reason)
            saga.failure_reason = reason
            saga.failure_message = reason
            saga.step = SagaStep.COMPENSATE
            return

        saga.complete()
        logger.info("Inventory reserved successfully for order %s", saga.order_id)
        saga.step = SagaStep.CHARGE_PAYMENT

    # ── Step 4: 決済 ─────────────────────────────

    async def _charge_payment(self, saga: OrderSaga) -> None:
        saga.begin("ChargePayment")
        order = self.ledger.apply(saga.order_id, lambda o: o.start_processing())
        logger.info("Processing payment for order %s", order.id)

        try:
            payment = await asyncio.wait_for(
                self.payments.charge(order.total_amount, saga.payment_method),
                timeout=self.payment_timeout,
            )
        except asyncio.TimeoutError:
            payment = declined(order.total_amount, "Payment processing timed out")
        except Exception as e:
            logger.exception("Payment processor failed for order %s", order.id)
            payment = declined(order.total_amount, f"Payment processing error: {e}")
        saga.payment = payment

        if payment.success:
            saga.complete()
            logger.info("Payment successful for order %s", order.id)
            saga.step = SagaStep.CONFIRM
            return

        logger.info("Payment failed for order %s, cancelling order", order.id)
        saga.fail(payment.error or PAYMENT_DECLINED)
        saga.failure_reason = PAYMENT_DECLINED
        saga.failure_message = f"Payment failed: {payment.error}"
        saga.step = SagaStep.COMPENSATE

    # ── Step 5: 確定 ─────────────────────────────

    async def _confirm(self, saga: OrderSaga) -> None:
        saga.begin("ConfirmOrder")
        order = self.ledger.apply(saga.order_id, lambda o: o.confirm(saga.payment))
        saga.complete()
        await self._publish_event(
            OrderConfirmed(
                order_id=order.id,
                user_id=order.user_id,
                total_amount=order.total_amount,
                transaction_id=saga.payment.transaction_id,
            )
        )

        # カートのクリアと通知は失敗しても注文は確定のまま
        saga.begin("ClearCart")
        try:
            await self.cart.clear(saga.user_id, saga.token)
            saga.complete()
            logger.info("Cart cleared for user %s", saga.user_id)
        except DependencyError as e:
            saga.fail(e.message)
            logger.warning(
                "Failed to clear cart for user %s, but order %s is confirmed: %s",
                saga.user_id,
                order.id,
                e.message,
            )
        except Exception as e:
            saga.fail(str(e))
            logger.exception(
                "Unexpected error clearing cart for user %s, order %s stays confirmed",
                saga.user_id,
                order.id,
            )

        await self._notify(
            saga,
            f"Order #{order.id} has been confirmed! Your items will be shipped to "
            f"{_format_address(order.shipping_address)}. "
            f"Total amount: ${order.total_amount:.2f}",
            "order_confirmed",
        )
        logger.info(
            "Order %s completed successfully for user %s. Total: $%.2f",
            order.id,
            saga.user_id,
            order.total_amount,
        )
        saga.step = SagaStep.COMPLETED

    # ── 補償トランザクション ─────────────────────

    async def _compensate(self, saga: OrderSaga) -> None:
        """
        引き当て済みの在庫を、引き当てた順に 1 回ずつ戻してから注文をキャンセルする。

        在庫の戻しに失敗してもリトライはせず、ログに残して先へ進む。
        その場合、台帳と在庫サービスの在庫数は食い違ったままになる。
        """
        saga.begin("ReleaseInventory (COMPENSATING)")
        failed = []
        for reservation in saga.reservations:
            if not reservation.success or reservation.compensated:
                continue
            reservation.compensated = True
            try:
                response = await self.products.increase_stock(
                    reservation.product_id, reservation.quantity, saga.token
                )
            except DependencyError as e:
                failed.append(reservation.product_id)
                logger.error(
                    "Failed to rollback stock for product %s (order %s): %s",
                    reservation.product_id,
                    saga.order_id,
                    e.message,
                )
                continue
            if response.get("success", True):
                logger.info(
                    "Restored %d units of product %s",
                    reservation.quantity,
                    reservation.product_id,
                )
            else:
                failed.append(reservation.product_id)
                logger.error(
                    "Stock rollback rejected for product %s (order %s): %s",
                    reservation.product_id,
                    saga.order_id,
                    response.get("message"),
                )
        if failed:
            saga.fail(f"Stock not restored for products {failed}")
        else:
            saga.complete()

        saga.begin("CancelOrder (COMPENSATING)")
        order = self.ledger.apply(
            saga.order_id,
            lambda o: o.cancel(saga.failure_reason, saga.failure_message, saga.payment),
        )
        saga.complete()
        await self._publish_event(
            OrderCancelled(order_id=order.id, user_id=order.user_id, reason=saga.failure_reason)
        )
        await self._notify(
            saga,
            f"Order #{order.id} has been cancelled. {saga.failure_reason}",
            "order_cancelled",
        )
        saga.step = SagaStep.FAILED

    # ── ベストエフォートの副作用 ─────────────────

    async def _notify(self, saga: OrderSaga, message: str, notification_type: str) -> None:
        saga.begin(f"Notify ({notification_type})")
        try:
            await self.notifications.send(saga.user_id, message, notification_type, saga.token)
            saga.complete()
        except DependencyError as e:
            saga.fail(e.message)
            logger.warning(
                "Failed to send %s notification for order %s: %s",
                notification_type,
                saga.order_id,
                e.message,
            )
        except Exception as e:
            saga.fail(str(e))
            logger.exception(
                "Unexpected error sending %s notification for order %s",
                notification_type,
                saga.order_id,
            )

    async def _publish_event(self, event: OrderEvent) -> None:
        """注文イベントを Redis に発行する。未設定なら何もしない。"""
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                "order_events",
                json.dumps(
                    {
                        "event_type": type(event).__name__,
                        "data": event.model_dump(mode="json"),
                    }
                ),
            )
        except RedisError as e:
            logger.warning(
                "Failed to publish %s for order %s: %s", type(event).__name__, event.order_id, e
            )


def _format_address(address: dict[str, Any] | str) -> str:
    if isinstance(address, dict):
        return address.get("address") or ", ".join(str(value) for value in address.values())
    return address
