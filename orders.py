"""
Orders: checkout, the order status state machine, and the user/admin order APIs.

Status flow: pending -> confirmed -> processing -> shipped -> delivered.
An order can be cancelled from pending, confirmed or processing; delivered and
cancelled are terminal.

Users may cancel only while an order is pending. Administrators follow the
same table; `force=True` lets them set any status.
"""
import csv
import io
import json
import logging
import re
import secrets
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import Response
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

import settings
from auth import get_current_user, is_admin, require_admin
from catalog import total_pages
from database import get_db, is_oid, now, oid, to_str_id
from schemas import (
    BulkStatusUpdate,
    CancelRequest,
    Order,
    OrderCreate,
    OrderItem,
    PaymentUpdate,
    StatusChange,
    StatusUpdate,
)

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"shipped", "cancelled"}),
    "shipped": frozenset({"delivered"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}
USER_CANCELLABLE = frozenset({"pending"})
# the order still holds its stock; cancelling from here returns it
HOLDS_STOCK = frozenset({"pending", "confirmed", "processing"})
ORDER_SORT_FIELDS = ("createdAt", "total", "orderNumber")


def can_transition(current: str, target: str) -> bool:
    # re-saving the current status (e.g. to store admin notes) is always allowed
    return current == target or target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition_error(current: str, target: str, force: bool = False) -> Optional[str]:
    """Why an order may not move from `current` to `target`, or None. `force` skips the table but cannot reopen a cancelled order."""
    if current == "cancelled" and target != "cancelled":
        return "Cancelled orders cannot be reopened"
    if not force and not can_transition(current, target):
        return f"Cannot change order status from {current} to {target}"
    return None


def compute_totals(lines: Iterable[Tuple[float, int]], tax_rate: float = settings.TAX_RATE,
                   free_shipping_threshold: float = settings.FREE_SHIPPING_THRESHOLD,
                   shipping_fee: float = settings.SHIPPING_FEE) -> Dict[str, float]:
    subtotal = round(sum(price * qty for price, qty in lines), 2)
    shipping = 0.0 if subtotal >= free_shipping_threshold else float(shipping_fee)
    tax = round(subtotal * tax_rate, 2)
    return {
        "subtotal": subtotal,
        "shippingFee": shipping,
        "tax": tax,
        "total": round(subtotal + shipping + tax, 2),
    }


def generate_order_number(at: Optional[datetime] = None) -> str:
    at = at or now()
    return f"ORD-{at:%Y%m%d}-{secrets.token_hex(3).upper()}"


def _as_utc(value: Any) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _parse_date(value: Optional[str], label: str, end_of_day: bool = False) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if end_of_day and len(value) <= 10:
        parsed += timedelta(days=1) - timedelta(microseconds=1)
    return parsed


def build_order_filter(status: Optional[str] = None, search: Optional[str] = None, start_date: Optional[str] = None,
                       end_date: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if user_id:
        filt["userId"] = user_id
    if status and status != "all":
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail=f"Unknown order status '{status}'")
        filt["orderStatus"] = status
    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        filt["$or"] = [
            {"orderNumber": pattern},
            {"shippingAddress.firstName": pattern},
            {"shippingAddress.lastName": pattern},
            {"shippingAddress.email": pattern},
        ]
    created: Dict[str, datetime] = {}
    start = _parse_date(start_date, "startDate")
    end = _parse_date(end_date, "endDate", end_of_day=True)
    if start:
        created["$gte"] = start
    if end:
        created["$lte"] = end
    if created:
        filt["createdAt"] = created
    return filt


def list_orders(database: Database, filt: Dict[str, Any], page: int, limit: int,
                sort_by: Optional[str] = None, sort_order: Optional[str] = None) -> Dict[str, Any]:
    page = max(1, page)
    limit = min(max(1, limit), 100)
    field = sort_by if sort_by in ORDER_SORT_FIELDS else "createdAt"
    direction = ASCENDING if (sort_order or "desc").lower() == "asc" else DESCENDING
    total = database["order"].count_documents(filt)
    cursor = database["order"].find(filt).sort([(field, direction), ("_id", direction)]).skip((page - 1) * limit).limit(limit)
    return {
        "orders": [to_str_id(o) for o in cursor],
        "total": total,
        "totalPages": total_pages(total, limit),
        "page": page,
        "limit": limit,
    }


def _restock(database: Database, items: List[dict]) -> None:
    for item in items:
        if ObjectId.is_valid(item.get("productId", "")):
            database["product"].update_one({"_id": ObjectId(item["productId"])}, {"$inc": {"stock": int(item.get("quantity", 0))}})


def _primary_image_url(product: dict) -> Optional[str]:
    images = product.get("images") or []
    if isinstance(images, list) and images:
        chosen = next((i for i in images if isinstance(i, dict) and i.get("isPrimary")), images[0])
        return chosen if isinstance(chosen, str) else chosen.get("url")
    image = product.get("image")
    return image if isinstance(image, str) else None


def reserve_items(database: Database, payload: OrderCreate) -> List[OrderItem]:
    """Snapshot name/price/image for each line and take the quantity out of stock."""
    quantities: Dict[str, int] = defaultdict(int)
    for line in payload.items:
        quantities[line.product_id] += line.quantity

    products = {}
    for product_id in quantities:
        product = database["product"].find_one({"_id": oid(product_id, "product id")})
        if not product or product.get("isActive") is False:
            raise HTTPException(status_code=400, detail=f"Product {product_id} is not available")
        products[product_id] = product

    reserved: List[dict] = []
    for product_id, qty in quantities.items():
        res = database["product"].update_one(
            {"_id": ObjectId(product_id), "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty}},
        )
        if res.modified_count == 0:
            _restock(database, reserved)
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {products[product_id].get('name', product_id)}")
        reserved.append({"productId": product_id, "quantity": qty})

    return [
        OrderItem(
            product_id=product_id,
            product_name=products[product_id].get("name", ""),
            quantity=qty,
            price=float(products[product_id].get("price") or 0),
            image=_primary_image_url(products[product_id]),
        )
        for product_id, qty in quantities.items()
    ]


def apply_status(database: Database, order: dict, status: str, actor: Optional[str] = None,
                 note: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> Optional[dict]:
    """
    Persist a status change with its timestamps and history entry.

    The write only matches while the order still has the status it was read
    with, so of two concurrent changes only one applies; the other gets None.
    Cancelling returns the items to stock unless they already left
    (shipped or delivered). Does not check the transition table.
    """
    current = order.get("orderStatus", "pending")
    update: Dict[str, Any] = {"orderStatus": status, "updatedAt": now(), **(extra or {})}
    if status != current:
        if status == "delivered":
            update["deliveredAt"] = now()
        elif status == "cancelled":
            update["cancelledAt"] = now()
    change = StatusChange(status=status, at=now(), note=note, by=actor).model_dump(by_alias=True, exclude_none=True)
    updated = database["order"].find_one_and_update(
        {"_id": order["_id"], "orderStatus": current},
        {"$set": update, "$push": {"statusHistory": change}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.warning("Order %s changed concurrently, %s -> %s not applied", order.get("orderNumber"), current, status)
        return None
    if status == "cancelled" and current in HOLDS_STOCK:
        _restock(database, updated.get("items", []))
    logger.info("Order %s: %s -> %s", order.get("orderNumber"), current, status)
    return updated


def order_stats(database: Database, days: int = 30) -> Dict[str, Any]:
    total_orders = database["order"].count_documents({})
    by_status = {row["_id"]: row["count"] for row in database["order"].aggregate([
        {"$group": {"_id": "$orderStatus", "count": {"$sum": 1}}},
    ])}
    revenue_row = list(database["order"].aggregate([
        {"$match": {"orderStatus": {"$ne": "cancelled"}}},
        {"$group": {"_id": None, "revenue": {"$sum": "$total"}, "count": {"$sum": 1}}},
    ]))
    revenue = round(revenue_row[0]["revenue"], 2) if revenue_row else 0.0
    paid_count = revenue_row[0]["count"] if revenue_row else 0

    products: Dict[str, Dict[str, Any]] = {}
    daily: Dict[str, Dict[str, Any]] = {}
    since = now() - timedelta(days=days)
    for o in database["order"].find({"orderStatus": {"$ne": "cancelled"}}, {"items": 1, "total": 1, "createdAt": 1}):
        for item in o.get("items", []):
            entry = products.setdefault(item.get("productId"), {
                "productId": item.get("productId"),
                "productName": item.get("productName", ""),
                "quantity": 0,
                "revenue": 0.0,
            })
            entry["quantity"] += int(item.get("quantity", 0))
            entry["revenue"] = round(entry["revenue"] + float(item.get("price", 0)) * int(item.get("quantity", 0)), 2)
        created = _as_utc(o.get("createdAt"))
        if created and created >= since:
            day = daily.setdefault(created.strftime("%Y-%m-%d"), {"date": created.strftime("%Y-%m-%d"), "revenue": 0.0, "orders": 0})
            day["revenue"] = round(day["revenue"] + float(o.get("total", 0)), 2)
            day["orders"] += 1

    return {
        "totalOrders": total_orders,
        "totalRevenue": revenue,
        "avgOrderValue": round(revenue / paid_count, 2) if paid_count else 0.0,
        "pendingOrders": by_status.get("pending", 0),
        "ordersByStatus": [
            {
                "status": s,
                "count": by_status.get(s, 0),
                "percentage": round(by_status.get(s, 0) * 100 / total_orders, 1) if total_orders else 0.0,
            }
            for s in ORDER_STATUSES
        ],
        "topProducts": sorted(products.values(), key=lambda p: p["revenue"], reverse=True)[:5],
        "recentOrders": [to_str_id(o) for o in database["order"].find().sort("createdAt", DESCENDING).limit(5)],
        "dailyRevenue": sorted(daily.values(), key=lambda d: d["date"]),
    }


EXPORT_COLUMNS = [
    "orderNumber", "createdAt", "customerName", "email", "phone", "city", "state", "items",
    "subtotal", "shippingFee", "tax", "total", "paymentMethod", "paymentStatus", "orderStatus", "trackingNumber",
]


def export_rows(orders: Iterable[dict]) -> Iterable[Dict[str, Any]]:
    for o in orders:
        address = o.get("shippingAddress") or {}
        created = o.get("createdAt")
        yield {
            "orderNumber": o.get("orderNumber", ""),
            "createdAt": created.isoformat() if isinstance(created, datetime) else created or "",
            "customerName": f"{address.get('firstName', '')} {address.get('lastName', '')}".strip(),
            "email": address.get("email", ""),
            "phone": address.get("phone", ""),
            "city": address.get("city", ""),
            "state": address.get("state", ""),
            "items": "; ".join(f"{i.get('productName', '')} x{i.get('quantity', 0)}" for i in o.get("items", [])),
            "subtotal": o.get("subtotal", 0),
            "shippingFee": o.get("shippingFee", 0),
            "tax": o.get("tax", 0),
            "total": o.get("total", 0),
            "paymentMethod": o.get("paymentMethod", ""),
            "paymentStatus": o.get("paymentStatus", ""),
            "orderStatus": o.get("orderStatus", ""),
            "trackingNumber": o.get("trackingNumber", ""),
        }


def orders_to_csv(orders: Iterable[dict]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS)
    writer.writeheader()
    writer.writerows(export_rows(orders))
    return buf.getvalue()


def _load_order(database: Database, order_id: str) -> dict:
    order = database["order"].find_one({"_id": oid(order_id, "order id")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _applied(updated: Optional[dict]) -> dict:
    if updated is None:
        raise HTTPException(status_code=409, detail="Order was changed by another request, reload and try again")
    return updated


# ---------- User routes ----------

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", status_code=201)
def create_order(payload: OrderCreate, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    items = reserve_items(database, payload)
    totals = compute_totals((i.price, i.quantity) for i in items)
    created = now()
    order = Order(
        order_number=generate_order_number(created),
        user_id=str(current_user["_id"]),
        items=items,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        order_notes=payload.order_notes,
        subtotal=totals["subtotal"],
        shipping_fee=totals["shippingFee"],
        tax=totals["tax"],
        total=totals["total"],
        status_history=[StatusChange(status="pending", at=created, by=str(current_user["_id"]))],
    )
    doc = order.model_dump(by_alias=True, exclude_none=True)
    doc.update({"createdAt": created, "updatedAt": created})
    res = database["order"].insert_one(doc)
    database["cart"].delete_one({"userId": str(current_user["_id"])})
    logger.info("Order %s placed by %s, total %.2f", doc["orderNumber"], current_user["_id"], doc["total"])
    doc["_id"] = res.inserted_id
    return {"success": True, "message": "Order placed successfully", "data": {"order": to_str_id(doc)}}


@router.get("/user")
def my_orders(
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    search: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    current_user: dict = Depends(get_current_user),
    database: Database = Depends(get_db),
):
    filt = build_order_filter(status, search, start_date, end_date, user_id=str(current_user["_id"]))
    return {"success": True, "data": list_orders(database, filt, page, limit, sort_by, sort_order)}


@router.get("/{order_id}")
def order_detail(order_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    order = database["order"].find_one({"_id": oid(order_id, "order id")})
    if not order or (order.get("userId") != str(current_user["_id"]) and not is_admin(current_user)):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "data": {"order": to_str_id(order)}}


@router.put("/{order_id}/cancel")
def cancel_order(order_id: str, body: Optional[CancelRequest] = None, current_user: dict = Depends(get_current_user),
                 database: Database = Depends(get_db)):
    order = database["order"].find_one({"_id": oid(order_id, "order id")})
    if not order or order.get("userId") != str(current_user["_id"]):
        raise HTTPException(status_code=404, detail="Order not found")
    if order.get("orderStatus") not in USER_CANCELLABLE:
        raise HTTPException(status_code=400, detail=f"Order cannot be cancelled once {order.get('orderStatus')}")
    reason = body.reason if body else None
    updated = _applied(apply_status(database, order, "cancelled", actor=str(current_user["_id"]), note=reason,
                                    extra={"cancelReason": reason} if reason else None))
    return {"success": True, "message": "Order cancelled", "data": {"order": to_str_id(updated)}}


# ---------- Admin routes ----------

admin_router = APIRouter(prefix="/api/admin/orders", tags=["admin"], dependencies=[Depends(require_admin)])


@admin_router.get("")
def admin_orders(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    search: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    database: Database = Depends(get_db),
):
    filt = build_order_filter(status, search, start_date, end_date)
    return {"success": True, "data": list_orders(database, filt, page, limit, sort_by, sort_order)}


@admin_router.get("/stats")
def admin_order_stats(database: Database = Depends(get_db)):
    return {"success": True, "data": order_stats(database)}


@admin_router.get("/export")
def export_orders(
    format: str = Query("csv"),
    status: Optional[str] = None,
    search: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    database: Database = Depends(get_db),
):
    if format not in ("csv", "json"):
        raise HTTPException(status_code=400, detail="format must be csv or json")
    filt = build_order_filter(status, search, start_date, end_date)
    orders = list(database["order"].find(filt).sort("createdAt", DESCENDING))
    stamp = now().strftime("%Y%m%d")
    if format == "csv":
        body, media_type = orders_to_csv(orders), "text/csv"
    else:
        body, media_type = json.dumps(jsonable_encoder([to_str_id(o) for o in orders]), indent=2), "application/json"
    logger.info("Exported %d orders as %s", len(orders), format)
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="orders-{stamp}.{format}"'},
    )


@admin_router.put("/bulk-update")
def bulk_update_orders(body: BulkStatusUpdate, admin: dict = Depends(require_admin), database: Database = Depends(get_db)):
    updated, skipped = [], []
    for order_id in body.order_ids:
        if not is_oid(order_id):
            skipped.append({"id": order_id, "reason": "invalid id"})
            continue
        order = database["order"].find_one({"_id": ObjectId(order_id)})
        if not order:
            skipped.append({"id": order_id, "reason": "not found"})
            continue
        error = transition_error(order.get("orderStatus", "pending"), body.status, body.force)
        if error:
            skipped.append({"id": order_id, "reason": error})
            continue
        if apply_status(database, order, body.status, actor=str(admin["_id"])) is None:
            skipped.append({"id": order_id, "reason": "changed by another request"})
            continue
        updated.append(order_id)
    return {
        "success": True,
        "message": f"Updated {len(updated)} order(s)",
        "data": {"updated": updated, "skipped": skipped},
    }


@admin_router.get("/{order_id}")
def admin_order_detail(order_id: str, database: Database = Depends(get_db)):
    return {"success": True, "data": {"order": to_str_id(_load_order(database, order_id))}}


@admin_router.put("/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdate, admin: dict = Depends(require_admin),
                        database: Database = Depends(get_db)):
    order = _load_order(database, order_id)
    current = order.get("orderStatus", "pending")
    error = transition_error(current, body.status, body.force)
    if error:
        raise HTTPException(status_code=400, detail=error)
    if not can_transition(current, body.status):
        logger.warning("Forced order %s status %s -> %s by %s", order.get("orderNumber"), current, body.status, admin["_id"])
    extra: Dict[str, Any] = {}
    if body.notes is not None:
        extra["adminNotes"] = body.notes
    if body.tracking_number is not None:
        extra["trackingNumber"] = body.tracking_number
    if body.shipping_provider is not None:
        extra["shippingProvider"] = body.shipping_provider
    updated = _applied(apply_status(database, order, body.status, actor=str(admin["_id"]), note=body.notes, extra=extra))
    return {"success": True, "message": "Order status updated", "data": {"order": to_str_id(updated)}}


@admin_router.put("/{order_id}/payment")
def update_payment_status(order_id: str, body: PaymentUpdate, database: Database = Depends(get_db)):
    order = _load_order(database, order_id)
    database["order"].update_one({"_id": order["_id"]}, {"$set": {"paymentStatus": body.payment_status, "updatedAt": now()}})
    logger.info("Order %s payment -> %s", order.get("orderNumber"), body.payment_status)
    return {"success": True, "message": "Payment status updated", "data": {"order": to_str_id(_load_order(database, order_id))}}


@admin_router.delete("/{order_id}")
def delete_order(order_id: str, database: Database = Depends(get_db)):
    order = _load_order(database, order_id)
    database["order"].delete_one({"_id": order["_id"]})
    logger.info("Deleted order %s", order.get("orderNumber"))
    return {"success": True, "message": "Order deleted"}
