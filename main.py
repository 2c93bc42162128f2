import logging
import traceback
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

import database as database_module
import settings
from auth import get_current_user, require_admin
from auth import router as auth_router
from catalog import (
    DEFAULT_LIMIT,
    ProductQuery,
    attach_categories,
    normalize_category,
    normalize_product,
    query_products,
    unique_slug,
)
from category_cache import CategoryCache
from database import create_document, ensure_indexes, get_db, is_oid, now, oid, to_str_id
from orders import admin_router as admin_orders_router
from orders import router as orders_router
from schemas import (
    CartUpdate,
    CategoryCreate,
    CategoryUpdate,
    ProductCreate,
    ProductUpdate,
    SlideCreate,
    SlideUpdate,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database_module.db is not None:
        try:
            ensure_indexes(database_module.db)
        except Exception:
            logger.exception("Could not ensure indexes; continuing without them")
    logger.info("Storefront API %s (%s), allowed CORS origins: %s",
                settings.VERSION, settings.ENVIRONMENT, settings.ALLOWED_ORIGINS)
    yield


app = FastAPI(title="Storefront API", version=settings.VERSION, lifespan=lifespan)


# ---------- CORS ----------

def is_origin_allowed(origin: Optional[str], allowed: List[str]) -> bool:
    """Requests without an Origin pass; otherwise exact or prefix match against the allow-list."""
    if not origin:
        return True
    for entry in allowed:
        entry = entry.rstrip("/")
        if entry and (origin == entry or origin.startswith(entry)):
            return True
    return False


class AllowListCORSMiddleware(CORSMiddleware):
    def is_allowed_origin(self, origin: str) -> bool:
        return is_origin_allowed(origin, settings.ALLOWED_ORIGINS)


app.add_middleware(
    AllowListCORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Accept"],
    expose_headers=["Content-Range", "X-Content-Range"],
)


@app.middleware("http")
async def reject_foreign_origins(request: Request, call_next):
    origin = request.headers.get("origin")
    logger.info("%s %s origin=%s", request.method, request.url.path, origin)
    if not is_origin_allowed(origin, settings.ALLOWED_ORIGINS):
        logger.warning("Rejected request from origin %s", origin)
        return JSONResponse(status_code=403, content={
            "success": False,
            "message": f"The CORS policy for this site does not allow access from the specified Origin: {origin}",
            "allowedOrigins": settings.ALLOWED_ORIGINS,
        })
    return await call_next(request)


# ---------- Error envelope ----------

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail
    if exc.status_code == 404 and exc.detail == "Not Found" and request.url.path.startswith("/api"):
        message = f"API route {request.url.path} not found"
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message, "error": message},
                        headers=getattr(exc, "headers", None))


def _validation_messages(errors: List[Dict[str, Any]]) -> List[str]:
    messages = []
    for err in errors:
        loc = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return messages


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={
        "success": False, "message": "Validation error", "errors": _validation_messages(exc.errors()),
    })


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={
        "success": False, "message": "Validation error", "errors": _validation_messages(exc.errors()),
    })


def duplicate_field(exc: DuplicateKeyError) -> str:
    details = exc.details or {}
    for key in ("keyPattern", "keyValue"):
        if details.get(key):
            return next(iter(details[key]))
    text = str(exc)
    for marker in ("dup key: { ", "index: "):
        if marker in text:
            return text.split(marker, 1)[1].split(":")[0].split("_")[0].strip()
    return "unknown"


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    field = duplicate_field(exc)
    return JSONResponse(status_code=400, content={
        "success": False, "message": "Duplicate field value entered", "field": field,
    })


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    content: Dict[str, Any] = {"success": False, "message": str(exc) or "Internal server error"}
    if settings.is_development():
        content["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=500, content=content)


# ---------- Helpers ----------

category_cache = CategoryCache()


def get_category_cache() -> CategoryCache:
    return category_cache


ALLOWED_IMAGE_TYPES = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp", "image/gif": ".gif"}


def save_upload(upload: StarletteUploadFile) -> Dict[str, str]:
    ext = ALLOWED_IMAGE_TYPES.get(upload.content_type or "")
    if not ext:
        raise HTTPException(status_code=400, detail=f"Unsupported image type: {upload.content_type}")
    upload_dir = Path(settings.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    public_id = uuid.uuid4().hex
    with open(upload_dir / f"{public_id}{ext}", "wb") as fh:
        fh.write(upload.file.read())
    logger.info("Stored upload %s as %s%s", upload.filename, public_id, ext)
    return {"url": f"/uploads/{public_id}{ext}", "publicId": public_id}


async def read_payload(request: Request) -> Tuple[Dict[str, Any], Optional[StarletteUploadFile]]:
    """JSON body, or multipart form fields plus an optional `image` file."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data") or content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        data = {k: v for k, v in form.items() if not isinstance(v, StarletteUploadFile)}
        image = form.get("image")
        return data, image if isinstance(image, StarletteUploadFile) and image.filename else None
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON or multipart form data")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be an object")
    return data, None


def mark_primary(images: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep exactly one primary image: the first flagged one, else the first image."""
    chosen = next((i for i, img in enumerate(images) if img.get("isPrimary")), 0)
    for i, img in enumerate(images):
        img["isPrimary"] = i == chosen
    return images


def check_category(database: Database, category_id: Optional[str]) -> None:
    if category_id and not (is_oid(category_id) and database["category"].find_one({"_id": oid(category_id)}, {"_id": 1})):
        raise HTTPException(status_code=400, detail="Category not found")


def product_view(database: Database, doc: dict) -> Dict[str, Any]:
    return normalize_product(attach_categories(database, [doc])[0]).model_dump(by_alias=True)


# ---------- Health ----------

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/api/health")
def health():
    return {
        "success": True,
        "message": "Storefront API is running",
        "timestamp": now().isoformat(),
        "environment": settings.ENVIRONMENT,
        "version": settings.VERSION,
        "database": "Connected" if database_module.ping(database_module.db) else "Disconnected",
        "allowedOrigins": settings.ALLOWED_ORIGINS,
    }


# ---------- Products ----------

@app.get("/api/products")
def list_products(
    page: int = 1,
    limit: int = DEFAULT_LIMIT,
    search: Optional[str] = None,
    category: Optional[str] = None,
    category_id: Optional[str] = Query(None, alias="categoryId"),
    sort: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    is_featured: Optional[bool] = Query(None, alias="isFeatured"),
    is_best_seller: Optional[bool] = Query(None, alias="isBestSeller"),
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    database: Database = Depends(get_db),
):
    order = (sort_order or "").lower()
    query = ProductQuery(
        page=page,
        limit=limit,
        search=search,
        category=category or category_id,
        is_active=is_active,
        is_featured=is_featured,
        is_best_seller=is_best_seller,
        min_price=min_price,
        max_price=max_price,
        sort_by=sort_by or sort,
        sort_order=order if order in ("asc", "desc") else None,
    )
    result = query_products(database, query)
    return {
        "success": True,
        "data": {
            "products": [p.model_dump(by_alias=True) for p in result.items],
            "total": result.total,
            "totalPages": result.total_pages,
            "page": result.page,
            "limit": result.limit,
        },
    }


@app.get("/api/products/slug/{slug}")
def get_product_by_slug(slug: str, database: Database = Depends(get_db)):
    doc = database["product"].find_one({"slug": slug})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": product_view(database, doc)}


@app.post("/api/products/upload-images", dependencies=[Depends(require_admin)])
def upload_product_images(images: List[UploadFile] = File(...)):
    stored = []
    for index, upload in enumerate(images):
        saved = save_upload(upload)
        stored.append({**saved, "altText": f"Product Image {index + 1}", "isPrimary": index == 0})
    return {"success": True, "message": f"Uploaded {len(stored)} image(s)", "data": stored}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, database: Database = Depends(get_db)):
    doc = database["product"].find_one({"_id": oid(product_id, "product id")})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": product_view(database, doc)}


@app.post("/api/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(body: ProductCreate, database: Database = Depends(get_db)):
    check_category(database, body.category_id)
    doc = body.model_dump(by_alias=True, exclude_none=True)
    if not doc.get("sku"):
        doc.pop("sku", None)
    doc["slug"] = unique_slug(database["product"], body.name)
    doc["images"] = mark_primary(doc["images"])
    doc["createdAt"] = doc["updatedAt"] = now()
    res = database["product"].insert_one(doc)
    doc["_id"] = res.inserted_id
    logger.info("Created product %s (%s)", res.inserted_id, doc["slug"])
    return {"success": True, "message": "Product created", "data": product_view(database, doc)}


@app.put("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, body: ProductUpdate, database: Database = Depends(get_db)):
    _id = oid(product_id, "product id")
    existing = database["product"].find_one({"_id": _id})
    if not existing:
        raise HTTPException(status_code=404, detail="Product not found")
    update = body.model_dump(by_alias=True, exclude_unset=True)
    unset: Dict[str, str] = {}
    for key in ("sku", "categoryId"):
        if key in update and not update[key]:
            update.pop(key)
            unset[key] = ""
    check_category(database, update.get("categoryId"))
    if "images" in update:
        update["images"] = mark_primary(update["images"] or [])
    if update.get("name") and update["name"] != existing.get("name"):
        update["slug"] = unique_slug(database["product"], update["name"], exclude_id=_id)
    update["updatedAt"] = now()
    ops: Dict[str, Any] = {"$set": update}
    if unset:
        ops["$unset"] = unset
    database["product"].update_one({"_id": _id}, ops)
    return {"success": True, "message": "Product updated", "data": product_view(database, database["product"].find_one({"_id": _id}))}


@app.delete("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, database: Database = Depends(get_db)):
    res = database["product"].delete_one({"_id": oid(product_id, "product id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Deleted product %s", product_id)
    return {"success": True, "message": "Product deleted"}


# ---------- Categories ----------

def _load_categories(database: Database):
    return [normalize_category(c) for c in database["category"].find().sort("name", ASCENDING)]


def _category_fields(data: Dict[str, Any], upload: Optional[StarletteUploadFile], name: str) -> Dict[str, Any]:
    fields = dict(data)
    if upload is not None:
        saved = save_upload(upload)
        fields["image"] = {**saved, "altText": name}
    elif isinstance(fields.get("image"), str):
        fields["image"] = {"url": fields["image"], "altText": name} if fields["image"] else None
    return fields


def _check_parent(database: Database, parent_id: Optional[str], self_id: Optional[str] = None) -> None:
    if not parent_id:
        return
    if self_id and parent_id == self_id:
        raise HTTPException(status_code=400, detail="A category cannot be its own parent")
    if not is_oid(parent_id) or not database["category"].find_one({"_id": oid(parent_id)}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Parent category not found")


@app.get("/api/categories")
def list_categories(active: Optional[bool] = None, database: Database = Depends(get_db),
                    cache: CategoryCache = Depends(get_category_cache)):
    categories = cache.get_all(lambda: _load_categories(database))
    if active is not None:
        categories = [c for c in categories if c.is_active == active]
    return {"success": True, "data": [c.model_dump(by_alias=True) for c in categories]}


@app.get("/api/categories/slug/{slug}")
def get_category_by_slug(slug: str, database: Database = Depends(get_db), cache: CategoryCache = Depends(get_category_cache)):
    def load():
        doc = database["category"].find_one({"slug": slug})
        return normalize_category(doc) if doc else None

    category = cache.get_one(f"slug:{slug}", load)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"success": True, "data": category.model_dump(by_alias=True)}


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, database: Database = Depends(get_db), cache: CategoryCache = Depends(get_category_cache)):
    _id = oid(category_id, "category id")

    def load():
        doc = database["category"].find_one({"_id": _id})
        return normalize_category(doc) if doc else None

    category = cache.get_one(f"id:{category_id}", load)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"success": True, "data": category.model_dump(by_alias=True)}


@app.post("/api/categories", status_code=201, dependencies=[Depends(require_admin)])
def create_category(payload: Tuple[Dict[str, Any], Optional[StarletteUploadFile]] = Depends(read_payload),
                    database: Database = Depends(get_db), cache: CategoryCache = Depends(get_category_cache)):
    data, upload = payload
    body = CategoryCreate.model_validate(_category_fields(data, upload, str(data.get("name", ""))))
    _check_parent(database, body.parent_id)
    doc = body.model_dump(by_alias=True, exclude_none=True)
    doc["parentId"] = body.parent_id or None
    doc["slug"] = unique_slug(database["category"], body.name)
    doc["createdAt"] = doc["updatedAt"] = now()
    res = database["category"].insert_one(doc)
    doc["_id"] = res.inserted_id
    cache.invalidate()
    logger.info("Created category %s (%s)", res.inserted_id, doc["slug"])
    return {"success": True, "message": "Category created", "data": normalize_category(doc).model_dump(by_alias=True)}


@app.put("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: str, payload: Tuple[Dict[str, Any], Optional[StarletteUploadFile]] = Depends(read_payload),
                    database: Database = Depends(get_db), cache: CategoryCache = Depends(get_category_cache)):
    _id = oid(category_id, "category id")
    existing = database["category"].find_one({"_id": _id})
    if not existing:
        raise HTTPException(status_code=404, detail="Category not found")
    data, upload = payload
    body = CategoryUpdate.model_validate(_category_fields(data, upload, str(data.get("name") or existing.get("name", ""))))
    update = body.model_dump(by_alias=True, exclude_unset=True)
    if "parentId" in update:
        _check_parent(database, update["parentId"], self_id=category_id)
        update["parentId"] = update["parentId"] or None
    if update.get("name") and update["name"] != existing.get("name"):
        update["slug"] = unique_slug(database["category"], update["name"], exclude_id=_id)
    update["updatedAt"] = now()
    database["category"].update_one({"_id": _id}, {"$set": update})
    cache.invalidate()
    doc = database["category"].find_one({"_id": _id})
    return {"success": True, "message": "Category updated", "data": normalize_category(doc).model_dump(by_alias=True)}


@app.delete("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: str, database: Database = Depends(get_db), cache: CategoryCache = Depends(get_category_cache)):
    res = database["category"].delete_one({"_id": oid(category_id, "category id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Category not found")
    # detach children and products
    database["category"].update_many({"parentId": category_id}, {"$set": {"parentId": None, "updatedAt": now()}})
    database["product"].update_many({"categoryId": category_id}, {"$unset": {"categoryId": ""}, "$set": {"updatedAt": now()}})
    cache.invalidate()
    logger.info("Deleted category %s", category_id)
    return {"success": True, "message": "Category deleted"}


# ---------- Slider ----------

@app.get("/api/slider")
def list_slides(database: Database = Depends(get_db)):
    slides = database["slide"].find({"isActive": {"$ne": False}}).sort([("order", ASCENDING), ("_id", ASCENDING)])
    return {"success": True, "data": [to_str_id(s) for s in slides]}


@app.post("/api/slider", status_code=201, dependencies=[Depends(require_admin)])
def create_slide(body: SlideCreate, database: Database = Depends(get_db)):
    slide_id = create_document(database, "slide", body)
    return {"success": True, "message": "Slide created", "data": to_str_id(database["slide"].find_one({"_id": oid(slide_id)}))}


@app.put("/api/slider/{slide_id}", dependencies=[Depends(require_admin)])
def update_slide(slide_id: str, body: SlideUpdate, database: Database = Depends(get_db)):
    _id = oid(slide_id, "slide id")
    update = body.model_dump(by_alias=True, exclude_unset=True)
    update["updatedAt"] = now()
    if database["slide"].update_one({"_id": _id}, {"$set": update}).matched_count == 0:
        raise HTTPException(status_code=404, detail="Slide not found")
    return {"success": True, "message": "Slide updated", "data": to_str_id(database["slide"].find_one({"_id": _id}))}


@app.delete("/api/slider/{slide_id}", dependencies=[Depends(require_admin)])
def delete_slide(slide_id: str, database: Database = Depends(get_db)):
    if database["slide"].delete_one({"_id": oid(slide_id, "slide id")}).deleted_count == 0:
        raise HTTPException(status_code=404, detail="Slide not found")
    return {"success": True, "message": "Slide deleted"}


# ---------- Cart ----------

@app.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    cart = database["cart"].find_one({"userId": str(current_user["_id"])}) or {"items": []}
    items = cart.get("items", [])
    return {"success": True, "data": {
        "items": items,
        "totalItems": sum(int(i.get("quantity", 0)) for i in items),
        "totalPrice": round(sum(float(i.get("price", 0)) * int(i.get("quantity", 0)) for i in items), 2),
    }}


@app.post("/api/cart")
def set_cart(payload: CartUpdate, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    database["cart"].update_one(
        {"userId": str(current_user["_id"])},
        {"$set": {"items": [i.model_dump(by_alias=True) for i in payload.items], "updatedAt": now()}},
        upsert=True,
    )
    return {"success": True, "message": "Cart saved"}


app.include_router(auth_router)
app.include_router(orders_router)
app.include_router(admin_orders_router)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
