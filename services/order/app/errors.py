"""
Order Service — エラー分類

API が返すエラーを例外階層として定義する。
各例外は HTTP ステータスコードとメッセージを持ち、
main.py の例外ハンドラが JSON レスポンスに変換する。

  OrderServiceError
  ├─ ClientInputError        400  必須項目の欠落など
  ├─ AuthRequiredError       401  認証情報なし
  ├─ NotFoundError           404  注文・商品が存在しない
  ├─ BusinessRuleViolation   400  空カート・在庫不足・決済拒否
  │   └─ InvalidStatusTransition 409
  ├─ DependencyError         502  依存サービスのエラー応答・通信失敗
  │   └─ DependencyShortCircuited 503  サーキットブレーカーが遮断中
  └─ InternalError           500  想定外の障害
"""


class OrderServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, **self.extra}


class ClientInputError(OrderServiceError):
    status_code = 400


class AuthRequiredError(OrderServiceError):
    status_code = 401


class NotFoundError(OrderServiceError):
    status_code = 404


class BusinessRuleViolation(OrderServiceError):
    status_code = 400


class InvalidStatusTransition(BusinessRuleViolation):
    status_code = 409


class DependencyError(OrderServiceError):
    """
    依存サービス呼び出しの失敗。

    upstream_status には依存サービスが返した HTTP ステータスを保持する。
    通信エラーやタイムアウトのように応答がない場合は None。
    """

    status_code = 502

    def __init__(
        self,
        service: str,
        message: str,
        upstream_status: int | None = None,
        body: dict | None = None,
    ) -> None:
        super().__init__(message, service=service)
        self.service = service
        self.upstream_status = upstream_status
        self.body = body or {}

    @property
    def is_business_rejection(self) -> bool:
        """4xx 応答 = 依存サービスは正常で、業務的に拒否した。"""
        return self.upstream_status is not None and 400 <= self.upstream_status < 500


class DependencyShortCircuited(DependencyError):
    status_code = 503

    def __init__(self, service: str, message: str | None = None) -> None:
        super().__init__(
            service,
            message or f"{service} is temporarily unavailable. Please try again later.",
        )


class InternalError(OrderServiceError):
    status_code = 500
