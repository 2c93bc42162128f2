"""
Catalog query layer.

Stored product and category documents vary in shape (legacy string images,
missing flags, numbers saved as strings), so every read goes through
`parse_product` / `parse_category`, which return a fully defaulted view plus
the list of fields that had to be filled in.
"""
import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Tuple, Union

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database

from schemas import CamelModel, CategoryImage, ProductImage

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 12
MAX_LIMIT = 100
SORT_FIELDS = ("createdAt", "updatedAt", "price", "name", "stock")

Timestamp = Optional[Union[datetime, str]]


class ProductView(CamelModel):
    id: str = ""
    name: str = ""
    slug: str = ""
    description: str = ""
    short_description: Optional[str] = None
    price: float = 0
    compare_at_price: Optional[float] = None
    cost_price: Optional[float] = None
    sku: str = ""
    barcode: Optional[str] = None
    stock: int = 0
    weight: Optional[float] = None
    dimensions: Optional[Dict[str, Any]] = None
    category_id: Optional[str] = None
    category: Optional[Dict[str, Any]] = None
    tags: List[str] = []
    is_active: bool = True
    is_featured: bool = False
    is_best_seller: bool = False
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    images: List[ProductImage] = []
    created_at: Timestamp = None
    updated_at: Timestamp = None

    @property
    def primary_image(self) -> Optional[ProductImage]:
        return primary_image(self.images)


class CategoryView(CamelModel):
    id: str = ""
    name: str = ""
    slug: str = ""
    description: str = ""
    image: Optional[CategoryImage] = None
    parent_id: Optional[str] = None
    is_active: bool = True
    created_at: Timestamp = None
    updated_at: Timestamp = None


class Normalized(NamedTuple):
    view: Any
    defaulted: List[str]


# ---------- Normalization ----------

class _Reader:
    """Reads loosely typed fields off a document, recording every default it applies."""

    def __init__(self, doc: Optional[dict]):
        self.doc = doc if isinstance(doc, dict) else {}
        self.defaulted: List[str] = []

    def _miss(self, key: str, default):
        self.defaulted.append(key)
        return default

    def raw(self, key: str):
        return self.doc.get(key)

    def text(self, key: str) -> str:
        value = self.doc.get(key)
        if value is None:
            return self._miss(key, "")
        return value if isinstance(value, str) else str(value)

    def optional_text(self, key: str) -> Optional[str]:
        value = self.doc.get(key)
        if value is None or value == "":
            return None
        return value if isinstance(value, str) else str(value)

    def number(self, key: str, cast=float):
        value = self.doc.get(key)
        if value is None or value == "" or isinstance(value, bool):
            return self._miss(key, cast(0))
        try:
            return cast(float(value))
        except (TypeError, ValueError):
            return self._miss(key, cast(0))

    def optional_number(self, key: str) -> Optional[float]:
        value = self.doc.get(key)
        if value is None or value == "" or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return self._miss(key, None)

    def flag(self, key: str, default: bool) -> bool:
        value = self.doc.get(key)
        if value is None:
            return self._miss(key, default)
        if default:
            # only an explicit False switches a default-on flag off
            return value is not False
        return bool(value)

    def items(self, key: str) -> list:
        value = self.doc.get(key)
        if value is None:
            return self._miss(key, [])
        if isinstance(value, (list, tuple)):
            return list(value)
        return self._miss(key, [])

    def identity(self) -> str:
        value = self.doc.get("_id") or self.doc.get("id")
        if value is None:
            return self._miss("id", "")
        return str(value)


def _image_from(value: Any, fallback_alt: str) -> Optional[ProductImage]:
    if isinstance(value, str):
        return ProductImage(url=value, alt_text=fallback_alt)
    if isinstance(value, dict):
        return ProductImage(
            url=value.get("url") or value.get("src") or "",
            alt_text=value.get("altText") or value.get("alt") or fallback_alt,
            public_id=value.get("publicId"),
            is_primary=bool(value.get("isPrimary")),
        )
    return None


def primary_image(images: Optional[List[ProductImage]]) -> Optional[ProductImage]:
    """First image flagged isPrimary, else the first image."""
    if not images:
        return None
    for img in images:
        if img.is_primary:
            return img
    return images[0]


def parse_product(doc: Optional[dict]) -> Normalized:
    r = _Reader(doc)
    name = r.text("name")

    if r.raw("images") is None and isinstance(r.raw("image"), (str, dict)):
        # single legacy image field
        raw_images = [r.raw("image")]
    else:
        raw_images = r.items("images")
    images = [img for img in (_image_from(v, name) for v in raw_images) if img is not None]

    category = None
    raw_category = r.raw("category")
    if isinstance(raw_category, dict):
        category = {k: v for k, v in raw_category.items() if k != "_id"}
        category["id"] = str(raw_category.get("id") or raw_category.get("_id") or "")
    category_id = r.raw("categoryId") or (category or {}).get("id") or None

    dimensions = r.raw("dimensions")
    view = ProductView(
        id=r.identity(),
        name=name,
        slug=r.text("slug"),
        description=r.text("description"),
        short_description=r.optional_text("shortDescription"),
        price=r.number("price"),
        compare_at_price=r.optional_number("compareAtPrice"),
        cost_price=r.optional_number("costPrice"),
        sku=r.text("sku"),
        barcode=r.optional_text("barcode"),
        stock=r.number("stock", int),
        weight=r.optional_number("weight"),
        dimensions=dimensions if isinstance(dimensions, dict) else None,
        category_id=str(category_id) if category_id else None,
        category=category,
        tags=[str(t) for t in r.items("tags")],
        is_active=r.flag("isActive", True),
        is_featured=r.flag("isFeatured", False),
        is_best_seller=r.flag("isBestSeller", False),
        meta_title=r.optional_text("metaTitle"),
        meta_description=r.optional_text("metaDescription"),
        images=images,
        created_at=r.raw("createdAt"),
        updated_at=r.raw("updatedAt"),
    )
    return Normalized(view, r.defaulted)


def _category_image(value: Any, name: str) -> Optional[CategoryImage]:
    if isinstance(value, str) and value:
        return CategoryImage(url=value, alt_text=name)
    if isinstance(value, dict) and (value.get("url") or value.get("src")):
        alt = value.get("altText")
        return CategoryImage(
            url=value.get("url") or value.get("src"),
            public_id=value.get("publicId"),
            alt_text=alt if alt is not None else name,
        )
    return None


def parse_category(doc: Optional[dict]) -> Normalized:
    r = _Reader(doc)
    name = r.text("name")
    parent_id = r.raw("parentId")
    view = CategoryView(
        id=r.identity(),
        name=name,
        slug=r.text("slug"),
        description=r.text("description"),
        image=_category_image(r.raw("image"), name),
        parent_id=str(parent_id) if parent_id else None,
        is_active=r.flag("isActive", True),
        created_at=r.raw("createdAt"),
        updated_at=r.raw("updatedAt"),
    )
    return Normalized(view, r.defaulted)


def normalize_product(doc: Optional[dict]) -> ProductView:
    return parse_product(doc).view


def normalize_category(doc: Optional[dict]) -> CategoryView:
    return parse_category(doc).view


# ---------- List query ----------

class ProductQuery(CamelModel):
    page: int = 1
    limit: int = DEFAULT_LIMIT
    search: Optional[str] = None
    # category id or slug
    category: Optional[str] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_best_seller: Optional[bool] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    sort_by: Optional[str] = None
    sort_order: Optional[Literal["asc", "desc"]] = None

    def to_params(self) -> Dict[str, str]:
        params = {}
        for key, value in self.model_dump(by_alias=True, exclude_none=True).items():
            if value == "":
                continue
            params[key] = str(value).lower() if isinstance(value, bool) else str(value)
        return params


class ProductPage(CamelModel):
    items: List[ProductView] = []
    total: int = 0
    total_pages: int = 1
    page: int = 1
    limit: int = DEFAULT_LIMIT
    # set when the page is a degraded substitute ("timeout", "unavailable")
    error: Optional[str] = None


def resolve_sort(sort_by: Optional[str] = None, sort_order: Optional[str] = None) -> Tuple[str, int]:
    """
    Map a sort key and direction to a (field, pymongo direction) pair.

    "price-desc" (and any "<field>-desc") sorts that field descending; other
    keys use the explicit direction, ascending when none is given. With no
    key at all the newest products come first.
    """
    if not sort_by:
        direction = ASCENDING if (sort_order or "").lower() == "asc" else DESCENDING
        return "createdAt", direction
    key = sort_by.strip()
    direction = DESCENDING if (sort_order or "").lower() == "desc" else ASCENDING
    if key.endswith("-desc"):
        key, direction = key[: -len("-desc")], DESCENDING
    elif key.endswith("-asc"):
        key, direction = key[: -len("-asc")], ASCENDING
    if key not in SORT_FIELDS:
        key = "createdAt"
    return key, direction


def build_product_filter(query: ProductQuery, category_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if query.search and query.search.strip():
        pattern = {"$regex": re.escape(query.search.strip()), "$options": "i"}
        filt["$or"] = [
            {"name": pattern},
            {"description": pattern},
            {"sku": pattern},
            {"tags": pattern},
        ]
    if category_ids is not None:
        filt["categoryId"] = {"$in": category_ids}
    if query.is_active is True:
        # documents without the flag count as active
        filt["isActive"] = {"$ne": False}
    elif query.is_active is False:
        filt["isActive"] = False
    if query.is_featured is not None:
        filt["isFeatured"] = True if query.is_featured else {"$ne": True}
    if query.is_best_seller is not None:
        filt["isBestSeller"] = True if query.is_best_seller else {"$ne": True}
    price: Dict[str, float] = {}
    if query.min_price is not None:
        price["$gte"] = query.min_price
    if query.max_price is not None:
        price["$lte"] = query.max_price
    if price:
        filt["price"] = price
    return filt


def total_pages(total: int, limit: int) -> int:
    if limit <= 0:
        return 1
    return max(1, math.ceil(total / limit))


def clamp_page(page: int, pages: int) -> int:
    return min(max(1, page), max(1, pages))


def visible_pages(current: int, total: int) -> List[Union[int, str]]:
    """Compact page list for pagination controls, with '...' for gaps."""
    current = clamp_page(current, total)
    if total <= 7:
        return list(range(1, total + 1))
    if current <= 4:
        return [1, 2, 3, 4, 5, "...", total]
    if current >= total - 3:
        return [1, "..."] + list(range(total - 4, total + 1))
    return [1, "...", current - 1, current, current + 1, "...", total]


def resolve_category_ids(database: Database, category: Optional[str]) -> Optional[List[str]]:
    """Ids matching a category filter (id or slug) plus its direct children; None when unfiltered."""
    if not category:
        return None
    if ObjectId.is_valid(category):
        root = database["category"].find_one({"_id": ObjectId(category)}, {"_id": 1})
        root_id = str(root["_id"]) if root else category
    else:
        root = database["category"].find_one({"slug": category}, {"_id": 1})
        if not root:
            return []
        root_id = str(root["_id"])
    children = database["category"].find({"parentId": root_id}, {"_id": 1})
    return [root_id] + [str(c["_id"]) for c in children]


def attach_categories(database: Database, docs: List[dict]) -> List[dict]:
    ids = {d.get("categoryId") for d in docs if ObjectId.is_valid(d.get("categoryId") or "")}
    if not ids:
        return docs
    summaries = {}
    for c in database["category"].find({"_id": {"$in": [ObjectId(i) for i in ids]}}, {"name": 1, "slug": 1}):
        summaries[str(c["_id"])] = {"id": str(c["_id"]), "name": c.get("name", ""), "slug": c.get("slug", "")}
    for d in docs:
        summary = summaries.get(d.get("categoryId"))
        if summary:
            d["category"] = summary
    return docs


def query_products(database: Database, query: ProductQuery) -> ProductPage:
    limit = min(max(1, query.limit), MAX_LIMIT)
    page = max(1, query.page)
    category_ids = resolve_category_ids(database, query.category)
    filt = build_product_filter(query, category_ids)
    field, direction = resolve_sort(query.sort_by, query.sort_order)

    collection: Collection = database["product"]
    total = collection.count_documents(filt)
    cursor = collection.find(filt).sort([(field, direction), ("_id", direction)]).skip((page - 1) * limit).limit(limit)
    docs = attach_categories(database, list(cursor))

    items = []
    for doc in docs:
        view, defaulted = parse_product(doc)
        if defaulted:
            logger.debug("Product %s read with defaults for %s", view.id, ", ".join(defaulted))
        items.append(view)
    return ProductPage(items=items, total=total, total_pages=total_pages(total, limit), page=page, limit=limit)


# ---------- Slugs ----------

def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug or "item"


def unique_slug(collection: Collection, text: str, exclude_id: Optional[ObjectId] = None) -> str:
    base = slugify(text)
    slug, n = base, 2
    while True:
        filt: Dict[str, Any] = {"slug": slug}
        if exclude_id is not None:
            filt["_id"] = {"$ne": exclude_id}
        if not collection.find_one(filt, {"_id": 1}):
            return slug
        slug = f"{base}-{n}"
        n += 1
