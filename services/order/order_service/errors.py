"""
Order Service — エラー分類

各例外は API の status_code と機械可読な code を持つ。
main.py の exception_handler がこれをレスポンスに変換する。
PublishFailure に相当する例外は無い: イベント発行の失敗はログのみ。
"""


class OrderServiceError(Exception):
    code = "order_service_error"
    status_code = 500


class InvalidOrder(OrderServiceError):
    code = "invalid_order"
    status_code = 422


class ProductNotFound(OrderServiceError):
    code = "product_not_found"
    status_code = 404

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class ProductUnavailable(OrderServiceError):
    code = "product_unavailable"
    status_code = 409

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product {product_id} is out of stock")
        self.product_id = product_id


class ProductValidationFailed(OrderServiceError):
    code = "product_validation_failed"
    status_code = 502


class StageTimeout(OrderServiceError):
    code = "timeout"
    status_code = 504

    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(f"{stage} exceeded its deadline of {timeout:.3f}s")
        self.stage = stage
        self.timeout = timeout


class ValidationTimeout(StageTimeout):
    code = "validation_timeout"

    def __init__(self, timeout: float) -> None:
        super().__init__("product validation", timeout)


class ServiceOverloaded(OrderServiceError):
    code = "service_overloaded"
    status_code = 503


class PersistenceFailure(OrderServiceError):
    code = "persistence_failure"
    status_code = 500


class OrderNotFound(OrderServiceError):
    code = "order_not_found"
    status_code = 404


# ── 商品サービス呼び出しのエラー (Lookup Client) ──


class ProductLookupError(Exception):
    """商品サービスの通信エラー / 想定外のレスポンス"""


class ProductLookupTimeout(ProductLookupError):
    pass
