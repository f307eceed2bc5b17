"""
Order Service — エラー分類

エンジンが送出する例外はすべて OrderEngineError の派生クラス。
kind と status_code を持ち、HTTP 層はこれをそのままレスポンスに変換する。
message は呼び出し元に返して安全な文言のみを持つ。
"""


class OrderEngineError(Exception):
    kind = "error"
    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict:
        """レスポンスに含める追加情報（サブクラスで上書き）"""
        return {}

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, **self.details()}


class ValidationError(OrderEngineError):
    """入力が不正（ストレージに触れる前に検出される）"""

    kind = "validation_error"
    status_code = 400


class AuthenticationError(OrderEngineError):
    kind = "authentication_error"
    status_code = 401


class AuthorizationError(OrderEngineError):
    kind = "authorization_error"
    status_code = 403


class NotFoundError(OrderEngineError):
    kind = "not_found"
    status_code = 404

    def __init__(self, message: str, missing_ids: list[int] | None = None) -> None:
        super().__init__(message)
        self.missing_ids = missing_ids or []

    def details(self) -> dict:
        if not self.missing_ids:
            return {}
        return {"missingIds": self.missing_ids}


class InsufficientStockError(OrderEngineError):
    """在庫不足。事前チェックでもトランザクション内の競合負けでも同じ型。"""

    kind = "insufficient_stock"
    status_code = 409

    def __init__(
        self,
        product_id: int,
        product_name: str,
        available: int,
        requested: int,
    ) -> None:
        super().__init__(
            f'Insufficient stock for product "{product_name}": '
            f"available {available}, requested {requested}"
        )
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested

    def details(self) -> dict:
        return {
            "productId": self.product_id,
            "productName": self.product_name,
            "available": self.available,
            "requested": self.requested,
        }


class InvalidStateError(OrderEngineError):
    kind = "invalid_state"
    status_code = 400


class ConflictError(OrderEngineError):
    """
    ストアが報告したロック競合・シリアライズ失敗。

    エンジン内部ではリトライしない。呼び出し元が再試行してよいことを
    retryable で示す。
    """

    kind = "conflict"
    status_code = 409
    retryable = True

    def __init__(self, message: str = "Concurrent update conflict, please retry") -> None:
        super().__init__(message)

    def details(self) -> dict:
        return {"retryable": True}


class InternalError(OrderEngineError):
    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)
