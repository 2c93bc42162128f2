import re

from pymongo import ASCENDING, DESCENDING

from catalog import (
    ProductQuery,
    build_product_filter,
    clamp_page,
    parse_category,
    parse_product,
    primary_image,
    resolve_category_ids,
    resolve_sort,
    slugify,
    total_pages,
    unique_slug,
    visible_pages,
)
from conftest import seed_category
from schemas import ProductImage


def test_empty_product_document_gets_every_default():
    view, defaulted = parse_product({})
    assert view.name == ""
    assert view.price == 0
    assert view.stock == 0
    assert view.images == []
    assert view.tags == []
    assert view.is_active is True
    assert view.is_featured is False
    assert {"name", "price", "stock", "images", "isActive"} <= set(defaulted)


def test_product_numbers_stored_as_strings_are_coerced():
    view, defaulted = parse_product({"_id": "abc", "name": "Jar", "price": "12.50", "stock": "3"})
    assert view.id == "abc"
    assert view.price == 12.5
    assert view.stock == 3
    assert "price" not in defaulted


def test_unparseable_price_falls_back_to_zero_and_is_reported():
    view, defaulted = parse_product({"name": "Jar", "price": "call us"})
    assert view.price == 0
    assert "price" in defaulted


def test_only_explicit_false_deactivates_a_product():
    assert parse_product({"isActive": None}).view.is_active is True
    assert parse_product({"isActive": True}).view.is_active is True
    assert parse_product({"isActive": False}).view.is_active is False


def test_legacy_image_field_becomes_single_image():
    view = parse_product({"name": "Bowl", "image": "/uploads/bowl.png"}).view
    assert [img.url for img in view.images] == ["/uploads/bowl.png"]
    assert view.images[0].alt_text == "Bowl"
    assert view.primary_image.url == "/uploads/bowl.png"


def test_string_images_are_wrapped():
    view = parse_product({"name": "Bowl", "images": ["/a.png", {"url": "/b.png", "isPrimary": True}]}).view
    assert [img.url for img in view.images] == ["/a.png", "/b.png"]
    assert view.primary_image.url == "/b.png"


def test_category_summary_supplies_category_id():
    view = parse_product({"name": "Bowl", "category": {"_id": "c1", "name": "Kitchen", "slug": "kitchen"}}).view
    assert view.category_id == "c1"
    assert view.category == {"id": "c1", "name": "Kitchen", "slug": "kitchen"}


def test_primary_image_defaults_to_first():
    images = [ProductImage(url="/1.png"), ProductImage(url="/2.png")]
    assert primary_image(images).url == "/1.png"
    assert primary_image([]) is None


def test_category_parent_and_image_normalization():
    view, defaulted = parse_category({"_id": "x", "name": "Prints", "parentId": "", "image": "/p.png"})
    assert view.parent_id is None
    assert view.image.url == "/p.png"
    assert view.image.alt_text == "Prints"
    assert view.is_active is True
    assert "isActive" in defaulted


def test_category_image_without_url_is_dropped():
    assert parse_category({"name": "Prints", "image": {"altText": "x"}}).view.image is None


def test_resolve_sort_defaults_to_newest_first():
    assert resolve_sort() == ("createdAt", DESCENDING)
    assert resolve_sort(None, "asc") == ("createdAt", ASCENDING)


def test_resolve_sort_suffix_and_explicit_order():
    assert resolve_sort("price-desc") == ("price", DESCENDING)
    assert resolve_sort("price-asc") == ("price", ASCENDING)
    assert resolve_sort("name") == ("name", ASCENDING)
    assert resolve_sort("stock", "desc") == ("stock", DESCENDING)


def test_resolve_sort_unknown_field_uses_created_at():
    assert resolve_sort("$where-desc") == ("createdAt", DESCENDING)


def test_search_is_treated_literally():
    filt = build_product_filter(ProductQuery(search="  a+b (x) "))
    pattern = filt["$or"][0]["name"]["$regex"]
    assert re.search(pattern, "A+B (X) bowl", re.I)
    assert not re.search(pattern, "aab x", re.I)


def test_filter_flags_and_price_range():
    filt = build_product_filter(ProductQuery(is_active=True, is_featured=True, min_price=10, max_price=50), ["c1"])
    assert filt["isActive"] == {"$ne": False}
    assert filt["isFeatured"] is True
    assert filt["price"] == {"$gte": 10, "$lte": 50}
    assert filt["categoryId"] == {"$in": ["c1"]}
    assert build_product_filter(ProductQuery()) == {}


def test_query_params_use_camel_case():
    params = ProductQuery(page=2, is_active=True, sort_by="price-desc", search="").to_params()
    assert params == {"page": "2", "limit": "12", "isActive": "true", "sortBy": "price-desc"}


def test_total_pages():
    assert total_pages(25, 12) == 3
    assert total_pages(24, 12) == 2
    assert total_pages(0, 12) == 1
    assert total_pages(10, 0) == 1


def test_clamp_page():
    assert clamp_page(5, 3) == 3
    assert clamp_page(0, 3) == 1
    assert clamp_page(2, 0) == 1


def test_visible_pages():
    assert visible_pages(1, 3) == [1, 2, 3]
    assert visible_pages(1, 20) == [1, 2, 3, 4, 5, "...", 20]
    assert visible_pages(10, 20) == [1, "...", 9, 10, 11, "...", 20]
    assert visible_pages(19, 20) == [1, "...", 16, 17, 18, 19, 20]


def test_slugify():
    assert slugify("Hand-made  Vase!") == "hand-made-vase"
    assert slugify("!!!") == "item"


def test_unique_slug_appends_counter(db):
    seed_category(db, "Wall Art")
    assert unique_slug(db["category"], "Wall Art") == "wall-art-2"
    assert unique_slug(db["category"], "Prints") == "prints"


def test_category_filter_includes_direct_children(db):
    parent = seed_category(db, "Decor")
    child = seed_category(db, "Vases", parentId=parent)
    seed_category(db, "Kitchen")
    assert sorted(resolve_category_ids(db, "decor")) == sorted([parent, child])
    assert sorted(resolve_category_ids(db, parent)) == sorted([parent, child])
    assert resolve_category_ids(db, "missing") == []
    assert resolve_category_ids(db, None) is None
