import json
import re

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from app.circuit_breaker import CircuitBreaker
from app.clients import CartClient, NotificationsClient, ProductsClient, counts_as_failure
from app.config import BreakerOptions, Settings
from app.ledger import OrderLedger
from app.main import create_app
from app.orchestrator import OrderSagaOrchestrator
from app.payments import approved, declined

AUTH = {"Authorization": "Bearer test-token"}

CATALOG = {
    1: {"name": "Laptop Pro", "price": 999.99, "stock": 50},
    2: {"name": "Wireless Mouse", "price": 29.99, "stock": 35},
    3: {"name": "Mechanical Keyboard", "price": 89.99, "stock": 20},
}


class FakeDownstream:
    """Products / Cart / Notifications をまとめて模擬する httpx ハンドラ。"""

    def __init__(self) -> None:
        self.stock = {pid: product["stock"] for pid, product in CATALOG.items()}
        self.carts: dict[str, list[dict]] = {}
        self.notifications: list[dict] = []
        self.requests: list[tuple[str, str, str]] = []
        self.stock_changes: list[tuple[int, int]] = []
        self.cart_reports_available = True
        self.products_status: int | None = None
        self.products_fail_on: set[int] = set()
        self.increase_status: int | None = None
        self.cart_status: int | None = None
        self.clear_status: int | None = None
        self.notifications_status: int | None = None

    def add_to_cart(self, user_id: str, product_id: int, quantity: int) -> None:
        product = CATALOG[product_id]
        self.carts.setdefault(user_id, []).append(
            {
                "productId": product_id,
                "productName": product["name"],
                "price": product["price"],
                "quantity": quantity,
            }
        )

    def calls(self, host: str) -> list[tuple[str, str]]:
        return [(method, path) for method, h, path in self.requests if h == host]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.host, request.url.path))
        handler = {
            "products": self._products,
            "cart": self._cart,
            "notifications": self._notifications,
        }[request.url.host]
        return handler(request)

    def _products(self, request: httpx.Request) -> httpx.Response:
        match = re.fullmatch(r"/api/products/(\d+)/stock", request.url.path)
        product_id = int(match.group(1))
        body = json.loads(request.content)
        quantity, operation = body["quantity"], body["operation"]

        if operation == "increase" and self.increase_status:
            return httpx.Response(self.increase_status, json={"success": False, "message": "boom"})
        if self.products_status:
            return httpx.Response(self.products_status, json={"success": False, "message": "Server error"})
        if product_id in self.products_fail_on:
            return httpx.Response(500, json={"success": False, "message": "Server error"})
        if product_id not in self.stock:
            return httpx.Response(404, json={"success": False, "message": "Product not found"})

        if operation == "decrease":
            if self.stock[product_id] < quantity:
                return httpx.Response(
                    400,
                    json={
                        "success": False,
                        "message": "Insufficient stock",
                        "availableStock": self.stock[product_id],
                        "requestedQuantity": quantity,
                    },
                )
            self.stock[product_id] -= quantity
            self.stock_changes.append((product_id, -quantity))
        else:
            self.stock[product_id] += quantity
            self.stock_changes.append((product_id, quantity))

        return httpx.Response(
            200,
            json={
                "success": True,
                "message": f"Stock {operation}d successfully",
                "data": {
                    "productId": product_id,
                    "newStock": self.stock[product_id],
                    "available": self.stock[product_id] > 0,
                },
            },
        )

    def _cart(self, request: httpx.Request) -> httpx.Response:
        user_id = request.url.path.rsplit("/", 1)[-1]
        if request.method == "DELETE":
            if self.clear_status:
                return httpx.Response(self.clear_status, json={"success": False})
            self.carts.pop(user_id, None)
            return httpx.Response(200, json={"success": True, "message": "Cart cleared"})

        if self.cart_status:
            return httpx.Response(self.cart_status, json={"success": False, "message": "Server error"})
        items = self.carts.get(user_id, [])
        if not items:
            return httpx.Response(400, json={"success": False, "message": "Cart is empty"})
        checked = [
            {
                "productId": item["productId"],
                "available": self.cart_reports_available,
                "availableQuantity": self.stock.get(item["productId"], 0),
            }
            for item in items
        ]
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {
                    "cart": {"userId": user_id, "items": items},
                    "validation": {"allAvailable": self.cart_reports_available, "items": checked},
                },
            },
        )

    def _notifications(self, request: httpx.Request) -> httpx.Response:
        if self.notifications_status:
            return httpx.Response(self.notifications_status, json={"success": False})
        self.notifications.append(json.loads(request.content))
        return httpx.Response(201, json={"success": True})


class FixedPaymentProcessor:
    def __init__(self, approve: bool = True) -> None:
        self.approve = approve
        self.charges: list[float] = []

    async def charge(self, amount, payment_method):
        self.charges.append(amount)
        if self.approve:
            return approved(amount)
        return declined(amount, "Card declined")


class FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise RedisConnectionError("redis is down")
        self.published.append((channel, json.loads(message)))
        return 1


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def downstream() -> FakeDownstream:
    fake = FakeDownstream()
    fake.add_to_cart("u1", 1, 2)
    return fake


@pytest.fixture
def payments() -> FixedPaymentProcessor:
    return FixedPaymentProcessor(approve=True)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def breaker_options() -> BreakerOptions:
    return BreakerOptions(timeout=1.0, volume_threshold=3, error_threshold_percentage=50)


@pytest.fixture
def breakers(breaker_options) -> dict[str, CircuitBreaker]:
    return {
        name: CircuitBreaker.from_options(name, breaker_options, is_failure=counts_as_failure)
        for name in ("products-service", "cart-service", "notifications-service")
    }


@pytest_asyncio.fixture
async def http(downstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(downstream.handle)) as client:
        yield client


@pytest.fixture
def ledger() -> OrderLedger:
    return OrderLedger()


@pytest.fixture
def orchestrator(http, breakers, ledger, payments, fake_redis) -> OrderSagaOrchestrator:
    return OrderSagaOrchestrator(
        ledger=ledger,
        products=ProductsClient(http, "http://products", breakers["products-service"]),
        cart=CartClient(http, "http://cart", breakers["cart-service"]),
        notifications=NotificationsClient(
            http, "http://notifications", breakers["notifications-service"]
        ),
        payments=payments,
        redis=fake_redis,
    )


@pytest.fixture
def settings(breaker_options) -> Settings:
    return Settings(
        _env_file=None,
        PRODUCTS_SERVICE_URL="http://products",
        CART_SERVICE_URL="http://cart",
        NOTIFICATIONS_SERVICE_URL="http://notifications",
        REDIS_URL=None,
        PRODUCTS_BREAKER=breaker_options,
        CART_BREAKER=breaker_options,
        NOTIFICATIONS_BREAKER=breaker_options,
    )


@pytest.fixture
def client(settings, downstream, payments):
    app = create_app(
        settings,
        transport=httpx.MockTransport(downstream.handle),
        payment_processor=payments,
    )
    with TestClient(app) as test_client:
        yield test_client
