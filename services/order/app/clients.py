"""
Order Service — 依存サービスクライアント

Products / Cart / Notifications の各サービスへの呼び出しを記述する。
すべての呼び出しはサービスごとのサーキットブレーカーを経由する。

  エラーの区別:
  - 依存サービスがエラー応答を返した / 通信に失敗した → DependencyError
    (upstream_status に HTTP ステータスを保持)
  - ブレーカーが遮断して呼び出し自体を行わなかった   → DependencyShortCircuited
"""

import logging

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .circuit_breaker import CallTimeoutError, CircuitBreaker, Fallback
from .errors import DependencyError, DependencyShortCircuited

logger = logging.getLogger(__name__)


def counts_as_failure(exc: Exception) -> bool:
    """
    ブレーカーの失敗率に数えるかどうか。

    4xx は正常に稼働しているサービスの業務的な回答なので数えない。
    5xx・通信エラー・タイムアウトは数える。
    """
    if isinstance(exc, DependencyError):
        return not exc.is_business_rejection
    return True


class ServiceClient:
    service_name = "service"

    def __init__(self, http: httpx.AsyncClient, base_url: str, breaker: CircuitBreaker) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker

    async def _call(
        self,
        method: str,
        path: str,
        token: str | None = None,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> dict:
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        if token:
            request_headers["Authorization"] = f"Bearer {token}"

        try:
            result = await self.breaker.execute(
                self._send, method, f"{self.base_url}{path}", request_headers, json
            )
        except CallTimeoutError as e:
            raise DependencyError(self.service_name, str(e)) from e

        if isinstance(result, Fallback):
            logger.warning("%s short-circuited: %s %s", self.service_name, method, path)
            raise DependencyShortCircuited(self.service_name, result.message)
        return result

    async def _send(self, method: str, url: str, headers: dict, json: dict | None) -> dict:
        try:
            response = await self.http.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise DependencyError(self.service_name, f"{self.service_name} request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.is_error:
            raise DependencyError(
                self.service_name,
                body.get("message") or f"Service responded with status: {response.status_code}",
                upstream_status=response.status_code,
                body=body,
            )
        return body


# ── Products ─────────────────────────────────────


class ProductsClient(ServiceClient):
    service_name = "products-service"

    # 在庫更新は管理者権限が必要なため、サービス ID を名乗る
    SERVICE_IDENTITY = {
        "x-user-role": "admin",
        "x-user-id": "order-service",
        "x-username": "order-service",
    }

    async def update_stock(
        self, product_id: int, quantity: int, operation: str, token: str | None = None
    ) -> dict:
        return await self._call(
            "PUT",
            f"/api/products/{product_id}/stock",
            token=token,
            json={"quantity": quantity, "operation": operation},
            headers=self.SERVICE_IDENTITY,
        )

    async def decrease_stock(self, product_id: int, quantity: int, token: str | None = None) -> dict:
        return await self.update_stock(product_id, quantity, "decrease", token)

    async def increase_stock(self, product_id: int, quantity: int, token: str | None = None) -> dict:
        return await self.update_stock(product_id, quantity, "increase", token)


# ── Cart ─────────────────────────────────────────


class CartItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_id: int = Field(alias="productId")
    product_name: str = Field("", alias="productName")
    price: float
    quantity: int


class CartValidation(BaseModel):
    """POST /api/cart/validate/{user_id} の応答。"""

    success: bool
    message: str = ""
    items: list[CartItem] = []
    all_available: bool = False
    unavailable_items: list[dict] = []


class CartClient(ServiceClient):
    service_name = "cart-service"

    async def validate(self, user_id: str, token: str | None = None) -> CartValidation:
        body = await self._call("POST", f"/api/cart/validate/{user_id}", token=token)
        if not body.get("success"):
            return CartValidation(success=False, message=body.get("message", ""))

        data = body.get("data") or {}
        validation = data.get("validation") or {}
        try:
            return CartValidation(
                success=True,
                message=body.get("message", ""),
                items=(data.get("cart") or {}).get("items", []),
                all_available=validation.get("allAvailable", False),
                unavailable_items=[
                    item for item in validation.get("items", []) if not item.get("available", True)
                ],
            )
        except ValidationError as e:
            raise DependencyError(self.service_name, f"Malformed cart returned for user {user_id}") from e

    async def clear(self, user_id: str, token: str | None = None) -> dict:
        return await self._call("DELETE", f"/api/cart/clear/{user_id}", token=token)


# ── Notifications ────────────────────────────────


class NotificationsClient(ServiceClient):
    service_name = "notifications-service"

    async def send(
        self, user_id: str, message: str, notification_type: str, token: str | None = None
    ) -> dict:
        return await self._call(
            "POST",
            "/api/notifications/send",
            token=token,
            json={"userId": user_id, "message": message, "type": notification_type},
        )
