import httpx
import pytest

import settings
from catalog import ProductQuery
from category_cache import CategoryCache
from storefront_client import ApiError, CategoryAPI, OrdersAPI, ProductAPI


def http_client(handler):
    return httpx.Client(base_url="http://api.test/api", transport=httpx.MockTransport(handler))


def ok(data, status_code=200):
    return httpx.Response(status_code, json={"success": True, "data": data})


def fail(status_code, message):
    return httpx.Response(status_code, json={"success": False, "message": message})


class Recorder:
    """MockTransport handler that records requests and replies from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        reply = self.routes[(request.method, request.url.path)]
        if isinstance(reply, Exception):
            raise reply
        return reply(request) if callable(reply) else reply

    def count(self, method, path):
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)


# ---------- Products ----------

def test_get_products_parses_page_and_sends_query():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        seen["timeout"] = request.extensions["timeout"]["read"]
        return ok({"products": [{"_id": "p1", "name": "Lamp", "price": "99"}], "total": 30, "totalPages": 3})

    page = ProductAPI(http=http_client(handler)).get_products(ProductQuery(page=2, sort_by="price-desc", is_active=True))

    assert page.error is None
    assert page.total == 30
    assert page.total_pages == 3
    assert page.page == 2
    assert page.items[0].price == 99
    assert page.items[0].is_active is True
    assert seen["params"] == {"page": "2", "limit": "12", "isActive": "true", "sortBy": "price-desc"}
    assert seen["timeout"] == settings.PRODUCT_FETCH_TIMEOUT


def test_get_products_timeout_yields_empty_page():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    page = ProductAPI(http=http_client(handler)).get_products(limit=24)
    assert page.items == []
    assert page.total == 0
    assert page.total_pages == 1
    assert page.limit == 24
    assert page.error == "timeout"


@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"success": False, "message": "boom"}),
    httpx.Response(200, json={"success": False, "message": "nope"}),
    httpx.Response(200, text="<html>gateway</html>"),
])
def test_get_products_failure_yields_empty_page(response):
    page = ProductAPI(http=http_client(lambda request: response)).get_products()
    assert page.items == []
    assert page.total_pages == 1
    assert page.error == "unavailable"


def test_get_products_connection_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert ProductAPI(http=http_client(handler)).get_products().error == "unavailable"


def test_get_products_accepts_bare_list():
    page = ProductAPI(http=http_client(lambda request: ok([{"name": "A"}, {"name": "B"}]))).get_products()
    assert [p.name for p in page.items] == ["A", "B"]
    assert page.total == 2


def test_product_reads_return_none_on_failure():
    api = ProductAPI(http=http_client(lambda request: fail(404, "Product not found")))
    assert api.get_by_id("665f1c2b9d3e4a0012345678") is None
    assert api.get_by_slug("lamp") is None
    assert api.get_by_id("undefined") is None


def test_product_by_slug():
    routes = Recorder({("GET", "/api/products/slug/blue-lamp"): ok({"_id": "p1", "name": "Blue Lamp", "image": "/l.png"})})
    product = ProductAPI(http=http_client(routes)).get_by_slug("blue-lamp")
    assert product.id == "p1"
    assert product.primary_image.url == "/l.png"


def test_product_writes_raise():
    api = ProductAPI(http=http_client(lambda request: fail(400, "Duplicate field value entered")), token="t0k")
    with pytest.raises(ApiError) as exc:
        api.create({"name": "Lamp", "price": 10})
    assert exc.value.status_code == 400
    assert exc.value.message == "Duplicate field value entered"
    with pytest.raises(ApiError):
        api.delete("665f1c2b9d3e4a0012345678")
    with pytest.raises(ApiError):
        api.update("null", {"price": 1})


@pytest.mark.parametrize("response", [
    httpx.Response(500, json=["oops"]),
    httpx.Response(502, json="bad gateway"),
])
def test_non_object_error_body(response):
    api = ProductAPI(http=http_client(lambda request: response))
    assert api.get_by_id("665f1c2b9d3e4a0012345678") is None
    with pytest.raises(ApiError) as exc:
        api.create({"name": "Lamp", "price": 10})
    assert exc.value.status_code == response.status_code
    assert exc.value.message == f"POST /products failed: {response.status_code}"


def test_product_create_sends_token_and_body():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.read()
        return ok({"_id": "p9", "name": "Lamp", "price": 10}, status_code=201)

    product = ProductAPI(http=http_client(handler), token="t0k").create({"name": "Lamp", "price": 10, "sku": None})
    assert product.id == "p9"
    assert seen["auth"] == "Bearer t0k"
    assert b'"sku"' not in seen["body"]


def test_upload_images():
    def handler(request):
        assert request.headers["content-type"].startswith("multipart/form-data")
        return ok([{"url": "/uploads/a.png", "publicId": "a"}, {"url": "/uploads/b.png", "publicId": "b"}])

    images = ProductAPI(http=http_client(handler)).upload_images([("a.png", b"a", "image/png"), ("b.png", b"b", "image/png")])
    assert [img.is_primary for img in images] == [True, False]
    assert images[1].alt_text == "Product Image 2"


# ---------- Categories ----------

CATEGORIES = [{"_id": "c1", "name": "Decor", "slug": "decor"}, {"_id": "c2", "name": "Prints", "slug": "prints", "isActive": False}]


def category_api(routes, clock=None):
    cache = CategoryCache(ttl=60, clock=clock) if clock else CategoryCache(ttl=60)
    return CategoryAPI(http=http_client(routes), cache=cache)


def test_category_list_cached():
    routes = Recorder({("GET", "/api/categories"): ok(CATEGORIES)})
    api = category_api(routes)
    assert [c.slug for c in api.get_all()] == ["decor", "prints"]
    assert api.get_all()[1].is_active is False
    assert routes.count("GET", "/api/categories") == 1


def test_category_write_invalidates_cache():
    routes = Recorder({
        ("GET", "/api/categories"): ok(CATEGORIES),
        ("POST", "/api/categories"): ok({"_id": "c3", "name": "Posters", "slug": "posters"}, status_code=201),
    })
    api = category_api(routes)
    api.get_all()
    created = api.create("Posters")
    assert created.slug == "posters"
    api.get_all()
    api.get_all()
    assert routes.count("GET", "/api/categories") == 2


def test_failed_category_write_still_invalidates():
    routes = Recorder({
        ("GET", "/api/categories"): ok(CATEGORIES),
        ("DELETE", "/api/categories/c1"): fail(404, "Category not found"),
    })
    api = category_api(routes)
    api.get_all()
    with pytest.raises(ApiError):
        api.delete("c1")
    api.get_all()
    assert routes.count("GET", "/api/categories") == 2


def test_clear_cache_forces_refetch():
    routes = Recorder({("GET", "/api/categories"): ok(CATEGORIES)})
    api = category_api(routes)
    api.get_all()
    api.clear_cache()
    api.get_all()
    assert routes.count("GET", "/api/categories") == 2


def test_category_list_serves_stale_on_failure(clock):
    responses = [ok(CATEGORIES), fail(500, "down")]
    routes = Recorder({("GET", "/api/categories"): lambda request: responses.pop(0)})
    api = category_api(routes, clock)
    api.get_all()
    clock.advance(120)
    assert [c.slug for c in api.get_all()] == ["decor", "prints"]
    assert routes.count("GET", "/api/categories") == 2


def test_category_list_empty_when_nothing_cached():
    routes = Recorder({("GET", "/api/categories"): httpx.ConnectError("refused")})
    assert category_api(routes).get_all() == []


def test_category_lookup_missing_not_cached():
    routes = Recorder({("GET", "/api/categories/slug/nope"): fail(404, "Category not found")})
    api = category_api(routes)
    assert api.get_by_slug("nope") is None
    assert api.get_by_slug("nope") is None
    assert routes.count("GET", "/api/categories/slug/nope") == 2


def test_category_lookup_cached():
    routes = Recorder({("GET", "/api/categories/c1"): ok(CATEGORIES[0])})
    api = category_api(routes)
    assert api.get_by_id("c1").name == "Decor"
    assert api.get_by_id("c1").name == "Decor"
    assert routes.count("GET", "/api/categories/c1") == 1


def test_category_update_with_image_is_multipart():
    seen = {}

    def handler(request):
        seen["type"] = request.headers["content-type"]
        seen["body"] = request.read()
        return ok({"_id": "c1", "name": "Decor", "slug": "decor", "parentId": None})

    api = category_api(Recorder({("PUT", "/api/categories/c1"): handler}))
    updated = api.update("c1", image=("d.png", b"img", "image/png"), parent_id=None, is_active=True)
    assert updated.parent_id is None
    assert seen["type"].startswith("multipart/form-data")
    assert b'name="parentId"' in seen["body"]
    assert b"true" in seen["body"]


# ---------- Orders ----------

def test_order_reads_degrade():
    api = OrdersAPI(http=http_client(lambda request: fail(401, "Not authenticated")))
    assert api.get_user_orders(page=2) == {"orders": [], "total": 0, "totalPages": 1, "page": 1, "limit": 10}
    assert api.get_all_orders()["limit"] == 20
    assert api.get_order("o1") is None
    assert api.get_stats() is None
    assert api.export_orders() is None


def test_order_listing_passes_filters():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("authorization")
        return ok({"orders": [{"id": "o1"}], "total": 1, "totalPages": 1})

    result = OrdersAPI(http=http_client(handler), token="adm").get_all_orders(status="pending", search="", page=1)
    assert result["orders"] == [{"id": "o1"}]
    assert seen["params"] == {"status": "pending", "page": "1"}
    assert seen["auth"] == "Bearer adm"


def test_order_writes_raise():
    api = OrdersAPI(http=http_client(lambda request: fail(400, "Cannot change order status from pending to shipped")))
    with pytest.raises(ApiError) as exc:
        api.update_order_status("o1", "shipped")
    assert "pending to shipped" in exc.value.message
    with pytest.raises(ApiError):
        api.cancel_order("o1")


def test_export_orders_returns_bytes():
    routes = Recorder({("GET", "/api/admin/orders/export"): httpx.Response(200, content=b"orderNumber\nORD-1\n")})
    assert OrdersAPI(http=http_client(routes)).export_orders("csv") == b"orderNumber\nORD-1\n"
    assert routes.requests[0].url.params["format"] == "csv"
