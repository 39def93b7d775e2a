"""
Order Service — 商品サービスクライアント

商品サービスの GET /products/{id} を呼ぶ。
タイムアウトは呼び出し側 (キャッシュ) が毎回指定する。
"""

import httpx

from .domain import ProductInfo
from .errors import ProductLookupError, ProductLookupTimeout


class ProductClient:
    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def fetch(self, product_id: int, timeout: float) -> ProductInfo | None:
        """商品を取得する。存在しなければ None。"""
        try:
            resp = await self._client.get(
                f"{self.base_url}/products/{product_id}", timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise ProductLookupTimeout(
                f"Product service timed out after {timeout:.3f}s"
            ) from e
        except httpx.HTTPError as e:
            raise ProductLookupError(f"Product service unreachable: {e}") from e

        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ProductLookupError(
                f"Product service returned status {resp.status_code}"
            )
        try:
            return ProductInfo.model_validate(resp.json())
        except ValueError as e:
            raise ProductLookupError(f"Invalid product payload: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
