"""
Order Service — FastAPI エントリーポイント

注文 Saga を HTTP API として公開する。
起動時 (lifespan) に以下を 1 つずつ生成し、終了まで使い続ける:
  - httpx.AsyncClient (依存サービス呼び出し用)
  - 依存サービスごとのサーキットブレーカー
  - 注文台帳
  - Saga オーケストレーター
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Security
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, field_validator

from . import queries
from .aggregate import OrderStatus
from .circuit_breaker import CircuitBreaker
from .clients import CartClient, NotificationsClient, ProductsClient, counts_as_failure
from .config import Settings, get_settings
from .errors import AuthRequiredError, ClientInputError, InternalError, OrderServiceError
from .ledger import OrderLedger
from .orchestrator import OrderSagaOrchestrator
from .payments import PaymentProcessor, PaymentStatus, SimulatedPaymentProcessor

logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# ── Request Models ───────────────────────────────


class PlaceOrderRequest(BaseModel):
    user_id: str = Field(min_length=1)
    shipping_address: dict[str, Any] | str
    payment_method: dict[str, Any] | str

    @field_validator("shipping_address", "payment_method")
    @classmethod
    def not_empty(cls, value: dict[str, Any] | str) -> dict[str, Any] | str:
        if not (value.strip() if isinstance(value, str) else value):
            raise ValueError("must not be empty")
        return value


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    message: str | None = None


# ── Dependencies ─────────────────────────────────


def get_orchestrator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.orchestrator


def get_ledger(request: Request) -> OrderLedger:
    return request.app.state.ledger


def require_token(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> str:
    """トークンの有無だけを確認する。検証は発行元サービスの責務。"""
    if credentials is None:
        raise AuthRequiredError("Authorization token required")
    return credentials.credentials


# ── Order Endpoints ──────────────────────────────

order_router = APIRouter(prefix="/api/orders", tags=["Orders"])


@order_router.post("/place", status_code=201)
async def place_order(
    req: PlaceOrderRequest,
    token: str = Depends(require_token),
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """注文 Saga を実行する。キャンセルで終わった場合は 400 と注文を返す。"""
    result = await orchestrator.place_order(
        req.user_id, req.shipping_address, req.payment_method, token
    )
    if not result.success:
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder(
                {
                    "success": False,
                    "message": f"Order cancelled: {result.reason}",
                    "order": result.order,
                    "reason": result.reason,
                    "saga_log": result.saga_log,
                }
            ),
        )
    return {
        "success": True,
        "message": "Order placed successfully",
        "data": result.order,
        "saga_log": result.saga_log,
    }


@order_router.get("/stats")
async def order_stats(user_id: str | None = None, ledger: OrderLedger = Depends(get_ledger)):
    return {"success": True, "data": queries.order_stats(ledger.all(), user_id)}


@order_router.get("/order/{order_id}")
async def get_order(order_id: int, ledger: OrderLedger = Depends(get_ledger)):
    return {"success": True, "data": ledger.get(order_id)}


@order_router.get("/{user_id}")
async def list_user_orders(
    user_id: str,
    status: OrderStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    ledger: OrderLedger = Depends(get_ledger),
):
    return {"success": True, "data": ledger.list_by_user(user_id, status, page, limit)}


@order_router.put("/{order_id}/status")
async def update_order_status(
    order_id: int,
    req: UpdateStatusRequest,
    ledger: OrderLedger = Depends(get_ledger),
):
    """運用向けの直接更新 (出荷・配達など)。Saga の遷移表は通らない。"""
    order = ledger.update_status(order_id, req.status, req.message)
    return {"success": True, "message": "Order status updated successfully", "data": order}


# ── Monitoring ───────────────────────────────────

monitoring_router = APIRouter(tags=["Monitoring"])


@monitoring_router.get("/")
async def root():
    return {
        "message": "Orders Service API",
        "endpoints": {
            "get_user_orders": "GET /api/orders/{user_id}",
            "get_order": "GET /api/orders/order/{order_id}",
            "place_order": "POST /api/orders/place",
            "update_order_status": "PUT /api/orders/{order_id}/status",
            "get_order_stats": "GET /api/orders/stats",
            "health": "GET /api/health",
            "circuit_breaker_health": "GET /api/health/circuit-breakers",
        },
        "order_statuses": [status.value for status in OrderStatus],
        "payment_statuses": [status.value for status in PaymentStatus],
    }


@monitoring_router.get("/api/health")
async def health(request: Request):
    breakers: dict[str, CircuitBreaker] = request.app.state.breakers
    summaries = {}
    for name, breaker in breakers.items():
        stats = breaker.stats()
        summaries[name] = {
            "state": stats["state"],
            "requests": stats["requests"],
            "failures": stats["failures"],
            "fallbacks": stats["fallbacks"],
        }
    return {
        "success": True,
        "status": "ok",
        "service": "order-service",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_orders": len(request.app.state.ledger),
        "circuit_breakers": summaries,
    }


@monitoring_router.get("/api/health/circuit-breakers")
async def circuit_breaker_health(request: Request):
    breakers: dict[str, CircuitBreaker] = request.app.state.breakers
    return {
        "success": True,
        "circuit_breakers": {name: breaker.stats() for name, breaker in breakers.items()},
    }


# ── Exception Handlers ───────────────────────────


async def handle_service_error(request: Request, exc: OrderServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]} for error in exc.errors()
    ]
    return await handle_service_error(
        request, ClientInputError("Invalid or missing request fields", errors=errors)
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return await handle_service_error(request, InternalError("Internal server error"))


# ── Application ──────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    payment_processor: PaymentProcessor | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    transport / payment_processor / redis はテスト用の差し替え口。
    省略時は設定に従って実物を使う。
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT, transport=transport)
        redis_conn = redis
        if redis_conn is None and settings.REDIS_URL:
            redis_conn = aioredis.from_url(settings.REDIS_URL, decode_responses=True)

        breakers = {
            name: CircuitBreaker.from_options(name, options, is_failure=counts_as_failure)
            for name, options in (
                ("products-service", settings.PRODUCTS_BREAKER),
                ("cart-service", settings.CART_BREAKER),
                ("notifications-service", settings.NOTIFICATIONS_BREAKER),
            )
        }
        ledger = OrderLedger(id_start=settings.ORDER_ID_START)
        payments = payment_processor or SimulatedPaymentProcessor(
            success_rate=settings.PAYMENT_SUCCESS_RATE,
            min_latency=settings.PAYMENT_MIN_LATENCY,
            max_latency=settings.PAYMENT_MAX_LATENCY,
        )

        app.state.breakers = breakers
        app.state.ledger = ledger
        app.state.orchestrator = OrderSagaOrchestrator(
            ledger=ledger,
            products=ProductsClient(http, settings.PRODUCTS_SERVICE_URL, breakers["products-service"]),
            cart=CartClient(http, settings.CART_SERVICE_URL, breakers["cart-service"]),
            notifications=NotificationsClient(
                http, settings.NOTIFICATIONS_SERVICE_URL, breakers["notifications-service"]
            ),
            payments=payments,
            redis=redis_conn,
            payment_timeout=settings.PAYMENT_TIMEOUT,
        )
        logger.info(
            "Order service started (products=%s, cart=%s, notifications=%s)",
            settings.PRODUCTS_SERVICE_URL,
            settings.CART_SERVICE_URL,
            settings.NOTIFICATIONS_SERVICE_URL,
        )
        try:
            yield
        finally:
            await http.aclose()
            if redis is None and redis_conn is not None:
                await redis_conn.aclose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.include_router(order_router)
    app.include_router(monitoring_router)
    app.add_exception_handler(OrderServiceError, handle_service_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    return app


app = create_app()
