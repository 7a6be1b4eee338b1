"""
Order Service — 決済処理

決済はオーケストレーターに注入する差し替え可能な機能として扱う。
本番相当の SimulatedPaymentProcessor は遅延と成功確率を持つ模擬実装。
テストでは結果が決まっている実装を渡す。
"""

import asyncio
import random
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentResult(BaseModel):
    success: bool
    status: PaymentStatus
    amount: float
    transaction_id: str | None = None
    error: str | None = None
    processed_at: datetime


class PaymentProcessor(Protocol):
    async def charge(self, amount: float, payment_method: Any) -> PaymentResult: ...


def approved(amount: float) -> PaymentResult:
    return PaymentResult(
        success=True,
        status=PaymentStatus.COMPLETED,
        amount=amount,
        transaction_id=f"txn_{uuid.uuid4().hex[:16]}",
        processed_at=datetime.now(timezone.utc),
    )


def declined(amount: float, error: str) -> PaymentResult:
    return PaymentResult(
        success=False,
        status=PaymentStatus.FAILED,
        amount=amount,
        error=error,
        processed_at=datetime.now(timezone.utc),
    )


class SimulatedPaymentProcessor:
    """遅延 min_latency〜max_latency 秒、成功率 success_rate の模擬決済。"""

    def __init__(
        self,
        success_rate: float = 0.9,
        min_latency: float = 1.0,
        max_latency: float = 3.0,
        rng: random.Random | None = None,
    ) -> None:
        self.success_rate = success_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.rng = rng or random.Random()

    async def charge(self, amount: float, payment_method: Any) -> PaymentResult:
        await asyncio.sleep(self.rng.uniform(self.min_latency, self.max_latency))
        if self.rng.random() < self.success_rate:
            return approved(amount)
        return declined(amount, "Payment failed due to insufficient funds or invalid payment method")
