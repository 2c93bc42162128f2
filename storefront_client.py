"""
Storefront data-fetch client.

Page rendering code reads the catalog and orders through these wrappers.
Reads never raise: a transport or server failure is logged and turned into a
safe default (an empty page, None, [] or False) so rendering always
completes. Writes raise `ApiError` so the caller can show a message.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

import httpx
from pydantic import BaseModel

import settings
from catalog import (
    CategoryView,
    ProductPage,
    ProductQuery,
    ProductView,
    normalize_category,
    normalize_product,
    total_pages,
)
from category_cache import CategoryCache
from schemas import ProductImage

logger = logging.getLogger(__name__)

# (filename, content, content_type)
FileUpload = Tuple[str, bytes, str]

_INVALID_IDS = {"", "undefined", "null", "None"}


class ApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# failures a read turns into its default value
READ_ERRORS = (httpx.HTTPError, ApiError, ValueError)


class _Client:
    def __init__(self, base_url: str = settings.API_URL, http: Optional[httpx.Client] = None, token: Optional[str] = None):
        self.http = http or httpx.Client(base_url=base_url, timeout=10.0)
        self.token = token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> Any:
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = self.http.request(method, path, headers=self._headers(), **kwargs)
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = None
            message = (body.get("message") or body.get("error")) if isinstance(body, dict) else None
            raise ApiError(message or f"{method} {path} failed: {response.status_code}", response.status_code)
        return response.json()

    @staticmethod
    def _data(result: Any) -> Any:
        if isinstance(result, dict) and "success" in result:
            if not result.get("success"):
                raise ApiError(result.get("message") or result.get("error") or "Request failed")
            return result.get("data")
        return result

    @staticmethod
    def _body(payload: Union[BaseModel, Dict[str, Any]], partial: bool = False) -> Dict[str, Any]:
        if isinstance(payload, BaseModel):
            return payload.model_dump(mode="json", by_alias=True, exclude_none=not partial, exclude_unset=partial)
        return {k: v for k, v in payload.items() if v is not None}


class ProductAPI(_Client):

    def get_products(self, query: Optional[ProductQuery] = None, **params) -> ProductPage:
        """
        Fetch one page of products.

        The request runs under PRODUCT_FETCH_TIMEOUT. On failure an empty page
        is returned with `error` set to "timeout" or "unavailable".
        """
        query = query or ProductQuery(**params)
        try:
            result = self._request("GET", "/products", params=query.to_params(), timeout=settings.PRODUCT_FETCH_TIMEOUT)
            data = self._data(result)
        except httpx.TimeoutException:
            logger.error("ProductAPI.get_products timed out after %ss", settings.PRODUCT_FETCH_TIMEOUT)
            return ProductPage(limit=query.limit, error="timeout")
        except READ_ERRORS as e:
            logger.error("ProductAPI.get_products error: %s", e)
            return ProductPage(limit=query.limit, error="unavailable")

        if isinstance(data, dict) and isinstance(data.get("products"), list):
            items = [normalize_product(p) for p in data["products"]]
            total = data.get("total") or len(items)
            pages = data.get("totalPages") or total_pages(total, query.limit)
        elif isinstance(data, list):
            items = [normalize_product(p) for p in data]
            total, pages = len(items), 1
        else:
            items, total, pages = [], 0, 1
        return ProductPage(items=items, total=total, total_pages=max(1, pages), page=query.page, limit=query.limit)

    def get_by_id(self, product_id: str) -> Optional[ProductView]:
        if not product_id or product_id in _INVALID_IDS:
            logger.error("Invalid product id: %r", product_id)
            return None
        try:
            data = self._data(self._request("GET", f"/products/{product_id}"))
        except READ_ERRORS as e:
            logger.error("ProductAPI.get_by_id error (%s): %s", product_id, e)
            return None
        return normalize_product(data) if data else None

    def get_by_slug(self, slug: str) -> Optional[ProductView]:
        try:
            data = self._data(self._request("GET", f"/products/slug/{quote(slug)}"))
        except READ_ERRORS as e:
            logger.error("ProductAPI.get_by_slug error (%s): %s", slug, e)
            return None
        return normalize_product(data) if data else None

    def create(self, payload: Union[BaseModel, Dict[str, Any]]) -> ProductView:
        data = self._data(self._request("POST", "/products", json=self._body(payload)))
        if not data:
            raise ApiError("Failed to create product")
        return normalize_product(data)

    def update(self, product_id: str, payload: Union[BaseModel, Dict[str, Any]]) -> ProductView:
        if not product_id or product_id in _INVALID_IDS:
            raise ApiError("Invalid product ID")
        data = self._data(self._request("PUT", f"/products/{product_id}", json=self._body(payload, partial=True)))
        if not data:
            raise ApiError("Failed to update product")
        return normalize_product(data)

    def delete(self, product_id: str) -> bool:
        self._data(self._request("DELETE", f"/products/{product_id}"))
        return True

    def upload_images(self, files: List[FileUpload]) -> List[ProductImage]:
        if not files:
            raise ApiError("No files to upload")
        data = self._data(self._request("POST", "/products/upload-images", files=[("images", f) for f in files]))
        if not isinstance(data, list):
            raise ApiError("Failed to upload images")
        return [
            ProductImage(
                url=img.get("url", ""),
                alt_text=img.get("altText") or f"Product Image {index + 1}",
                public_id=img.get("publicId"),
                is_primary=bool(img.get("isPrimary")) or index == 0,
            )
            for index, img in enumerate(data)
        ]


class CategoryAPI(_Client):
    """Category reads go through a CategoryCache; every write invalidates it."""

    def __init__(self, base_url: str = settings.API_URL, http: Optional[httpx.Client] = None, token: Optional[str] = None,
                 cache: Optional[CategoryCache] = None):
        super().__init__(base_url, http, token)
        self.cache = cache or CategoryCache()

    def _fetch_all(self) -> List[CategoryView]:
        data = self._data(self._request("GET", "/categories"))
        return [normalize_category(c) for c in data] if isinstance(data, list) else []

    def _fetch_one(self, path: str) -> Optional[CategoryView]:
        try:
            data = self._data(self._request("GET", path))
        except ApiError as e:
            if e.status_code == 404:
                return None
            raise
        return normalize_category(data) if data else None

    def get_all(self) -> List[CategoryView]:
        try:
            return self.cache.get_all(self._fetch_all)
        except READ_ERRORS as e:
            logger.error("CategoryAPI.get_all error: %s", e)
            return []

    def get_by_slug(self, slug: str) -> Optional[CategoryView]:
        try:
            return self.cache.get_one(f"slug:{slug}", lambda: self._fetch_one(f"/categories/slug/{slug}"))
        except READ_ERRORS as e:
            logger.error("CategoryAPI.get_by_slug error (%s): %s", slug, e)
            return None

    def get_by_id(self, category_id: str) -> Optional[CategoryView]:
        try:
            return self.cache.get_one(f"id:{category_id}", lambda: self._fetch_one(f"/categories/{category_id}"))
        except READ_ERRORS as e:
            logger.error("CategoryAPI.get_by_id error (%s): %s", category_id, e)
            return None

    def clear_cache(self) -> None:
        self.cache.invalidate()

    def _write(self, method: str, path: str, fields: Dict[str, Any], image: Optional[FileUpload]) -> Any:
        try:
            if image is not None:
                form = {k: ("" if v is None else str(v).lower() if isinstance(v, bool) else str(v)) for k, v in fields.items()}
                return self._data(self._request(method, path, data=form, files={"image": image}))
            return self._data(self._request(method, path, json=fields))
        finally:
            self.cache.invalidate()

    def create(self, name: str, description: str = "", parent_id: Optional[str] = None, is_active: bool = True,
               image: Optional[FileUpload] = None) -> Optional[CategoryView]:
        fields: Dict[str, Any] = {"name": name, "description": description, "isActive": is_active}
        if parent_id and parent_id.strip():
            fields["parentId"] = parent_id
        data = self._write("POST", "/categories", fields, image)
        return normalize_category(data) if data else None

    def update(self, category_id: str, image: Optional[FileUpload] = None, **changes) -> Optional[CategoryView]:
        """Partial update; pass parent_id=None to detach from the parent."""
        fields: Dict[str, Any] = {}
        for key, alias in (("name", "name"), ("description", "description"), ("parent_id", "parentId"), ("is_active", "isActive")):
            if key in changes:
                fields[alias] = changes[key]
        if "parentId" in fields and fields["parentId"] is None:
            fields["parentId"] = ""
        data = self._write("PUT", f"/categories/{category_id}", fields, image)
        return normalize_category(data) if data else None

    def delete(self, category_id: str) -> bool:
        self._write("DELETE", f"/categories/{category_id}", {}, None)
        return True


class OrdersAPI(_Client):

    def _page(self, path: str, params: Dict[str, Any], default_limit: int) -> Dict[str, Any]:
        clean = {k: v for k, v in params.items() if v not in (None, "")}
        try:
            data = self._data(self._request("GET", path, params=clean)) or {}
        except READ_ERRORS as e:
            logger.error("OrdersAPI %s error: %s", path, e)
            return {"orders": [], "total": 0, "totalPages": 1, "page": 1, "limit": default_limit}
        return {
            "orders": data.get("orders", []),
            "total": data.get("total", 0),
            "totalPages": data.get("totalPages") or 1,
            "page": clean.get("page", 1),
            "limit": clean.get("limit", default_limit),
        }

    def create_order(self, order: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
        return self._data(self._request("POST", "/orders", json=self._body(order)))["order"]

    def get_user_orders(self, **params) -> Dict[str, Any]:
        return self._page("/orders/user", params, 10)

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            return (self._data(self._request("GET", f"/orders/{order_id}")) or {}).get("order")
        except READ_ERRORS as e:
            logger.error("OrdersAPI.get_order error (%s): %s", order_id, e)
            return None

    def cancel_order(self, order_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return self._data(self._request("PUT", f"/orders/{order_id}/cancel", json={"reason": reason}))["order"]

    def get_all_orders(self, **params) -> Dict[str, Any]:
        return self._page("/admin/orders", params, 20)

    def get_stats(self) -> Optional[Dict[str, Any]]:
        try:
            return self._data(self._request("GET", "/admin/orders/stats"))
        except READ_ERRORS as e:
            logger.error("OrdersAPI.get_stats error: %s", e)
            return None

    def update_order_status(self, order_id: str, status: str, notes: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        body = {"status": status, "notes": notes, "force": force}
        return self._data(self._request("PUT", f"/admin/orders/{order_id}/status", json=body))["order"]

    def export_orders(self, format: str = "csv", **params) -> Optional[bytes]:
        clean = {k: v for k, v in params.items() if v not in (None, "")}
        clean["format"] = format
        try:
            response = self.http.get("/admin/orders/export", params=clean, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("OrdersAPI.export_orders error: %s", e)
            return None
        return response.content
