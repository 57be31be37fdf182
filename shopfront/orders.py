"""Order placement and lifecycle.

An order is a snapshot: its total is computed once from the product prices
at placement time and is never recomputed. The cart read, the price lookups
and the order insert are separate round trips with no transaction around
them, so two placements against the same cart can both succeed.

Status changes are permissive. Any of the five statuses may
follow any other; only values outside the enumeration are rejected.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

from pymongo import ReturnDocument

from .carts import ensure_cart_access, line_item_key
from .errors import Forbidden, NotFound, ValidationError
from .utils import (
    CART_NAME_SUFFIX,
    cart_name_for,
    isoformat,
    money_to_float,
    normalize_object_id_value,
    safe_float,
    to_money,
)

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")


def validate_status(value) -> str:
    if not isinstance(value, str) or value not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid status {value!r}. Expected one of: {', '.join(ORDER_STATUSES)}."
        )
    return value


def find_line_item_product(db, entry: Dict):
    product_id = normalize_object_id_value(entry.get("product_id"))
    if product_id is not None:
        product_document = db.products.find_one({"_id": product_id})
        if product_document:
            return product_document
    product_name = entry.get("product_name") or entry.get("product_id")
    if product_name:
        return db.products.find_one({"name": str(product_name)})
    return None


def price_line_items(db, items: List[Dict]):
    """Resolve every line item and return ``(snapshot, total)``.

    All items are resolved before anything is written, so an unknown
    product leaves no partial order behind.
    """
    snapshot: List[Dict] = []
    total = Decimal("0.00")
    for entry in items:
        product_document = find_line_item_product(db, entry)
        if not product_document:
            raise ValidationError(f"Product {line_item_key(entry)} not found.")

        try:
            quantity = int(entry.get("quantity", 1))
        except (TypeError, ValueError):
            raise ValidationError(
                f"Quantity for {product_document.get('name', '')} must be a whole number."
            )
        if quantity < 1:
            raise ValidationError(
                f"Quantity for {product_document.get('name', '')} must be at least 1."
            )
        unit_price = to_money(product_document.get("price", 0))
        line_total = unit_price * quantity
        total += line_total
        snapshot.append(
            {
                "product_id": str(product_document["_id"]),
                "name": product_document.get("name", ""),
                "price": money_to_float(unit_price),
                "quantity": quantity,
                "line_total": money_to_float(line_total),
            }
        )
    return snapshot, total


def find_cart_owner(db, cart_document) -> Optional[Dict]:
    owner_id = normalize_object_id_value(cart_document.get("owner_id"))
    if owner_id is not None:
        owner = db.users.find_one({"_id": owner_id})
        if owner:
            return owner

    cart_name = str(cart_document.get("cart_name") or "")
    if cart_name.endswith(CART_NAME_SUFFIX):
        username = cart_name[: -len(CART_NAME_SUFFIX)]
        if username:
            return db.users.find_one({"username": username})
    return None


def find_order_owner(db, order_document) -> Optional[Dict]:
    user_id = normalize_object_id_value(order_document.get("user_id"))
    if user_id is not None:
        owner = db.users.find_one({"_id": user_id})
        if owner:
            return owner
    return find_cart_owner(db, {"cart_name": order_document.get("cart_name")})


def order_belongs_to(order_document, user_document) -> bool:
    if not order_document or not user_document:
        return False
    stored_user_id = order_document.get("user_id")
    if stored_user_id:
        return str(stored_user_id) == str(user_document.get("_id"))
    # Orders without a user_id predate it and are matched by cart name.
    return order_document.get("cart_name") == cart_name_for(user_document.get("username"))


def _notify(send, *args, **kwargs) -> None:
    if send is None:
        return
    try:
        send(*args, **kwargs)
    except Exception as exc:
        logger.error("Could not dispatch order notification: %s", exc)


def place_order(db, cart_name, notifier=None, requester: Optional[Dict] = None) -> Dict:
    cart_name = str(cart_name or "").strip()
    if not cart_name:
        raise ValidationError("cartName is required.")

    cart_document = db.carts.find_one({"cart_name": cart_name})
    if not cart_document:
        raise NotFound("Cart not found.")
    if requester is not None:
        ensure_cart_access(cart_document, requester)

    items = list(cart_document.get("items") or [])
    if not items:
        raise ValidationError("Cart is empty.")

    snapshot, total = price_line_items(db, items)
    owner = find_cart_owner(db, cart_document)

    order_document = {
        "order_id": str(uuid4()),
        "cart_name": cart_name,
        "user_id": str(owner["_id"]) if owner else None,
        "items": snapshot,
        "total_amount": money_to_float(total),
        "status": "pending",
        "time_placed": datetime.utcnow(),
    }
    order_document["_id"] = db.orders.insert_one(order_document).inserted_id
    logger.info(
        "Order %s placed from cart %s, total %s",
        order_document["order_id"],
        cart_name,
        order_document["total_amount"],
    )

    for entry in snapshot:
        db.products.update_one(
            {"_id": normalize_object_id_value(entry["product_id"])},
            {"$inc": {"sales": entry["quantity"]}},
        )

    if owner and notifier is not None:
        _notify(
            notifier.send_order_confirmation,
            order_document,
            owner.get("email"),
            owner.get("username", ""),
        )
    return order_document


def get_order(db, order_id) -> Dict:
    order_document = db.orders.find_one({"order_id": str(order_id or "").strip()})
    if not order_document:
        raise NotFound("Order not found.")
    return order_document


def list_orders(db, query: Optional[Dict] = None) -> List[Dict]:
    cursor = db.orders.find(query or {}).sort([("time_placed", -1), ("_id", -1)])
    return list(cursor)


def list_orders_for_user(db, user_document) -> List[Dict]:
    return list_orders(
        db,
        {
            "$or": [
                {"user_id": str(user_document["_id"])},
                {
                    "user_id": None,
                    "cart_name": cart_name_for(user_document.get("username")),
                },
            ]
        },
    )


def _apply_order_update(db, order_id, update: Dict, notifier, actor: str) -> Dict:
    if update.get("status") == "cancelled":
        update["cancelled_by"] = actor
    update["updated_at"] = datetime.utcnow()

    order_document = db.orders.find_one_and_update(
        {"order_id": str(order_id or "").strip()},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not order_document:
        raise NotFound("Order not found.")

    if update.get("status") == "cancelled" and notifier is not None:
        owner = find_order_owner(db, order_document)
        if owner:
            _notify(
                notifier.send_order_cancellation,
                order_document,
                owner.get("email"),
                owner.get("username", ""),
                cancelled_by=actor,
            )
        else:
            logger.warning(
                "Order %s cancelled but no owner email could be resolved",
                order_document.get("order_id"),
            )
    return order_document


def update_order_status(db, order_id, new_status, notifier=None, actor: str = "admin") -> Dict:
    status = validate_status(new_status)
    return _apply_order_update(db, order_id, {"status": status}, notifier, actor)


def update_order(db, order_id, changes: Dict, notifier=None, actor: str = "admin") -> Dict:
    update: Dict[str, object] = {}
    changes = changes or {}

    if "status" in changes:
        update["status"] = validate_status(changes["status"])

    cart_name = changes.get("cartName", changes.get("cart_name"))
    if cart_name is not None:
        cart_name = str(cart_name).strip()
        if not cart_name:
            raise ValidationError("cartName cannot be empty.")
        update["cart_name"] = cart_name

    total_amount = changes.get("totalAmount", changes.get("total_amount"))
    if total_amount is not None:
        amount = to_money(total_amount)
        if amount < 0:
            raise ValidationError("totalAmount cannot be negative.")
        update["total_amount"] = money_to_float(amount)

    if not update:
        raise ValidationError("No fields to update.")

    return _apply_order_update(db, order_id, update, notifier, actor)


def cancel_order(db, order_id, requester: Dict, notifier=None) -> Dict:
    order_document = get_order(db, order_id)
    if not order_belongs_to(order_document, requester):
        raise Forbidden("You can only cancel your own orders.")
    return update_order_status(db, order_id, "cancelled", notifier, actor="customer")


def delete_order(db, order_id) -> None:
    result = db.orders.delete_one({"order_id": str(order_id or "").strip()})
    if result.deleted_count == 0:
        raise NotFound("Order not found.")
    logger.info("Order %s deleted", order_id)


def serialize_order(order_document) -> Dict[str, object]:
    if not order_document:
        return {}

    items = []
    for entry in order_document.get("items") or []:
        price_value = round(safe_float(entry.get("price"), 0.0), 2)
        items.append(
            {
                "productId": str(entry.get("product_id") or ""),
                "name": entry.get("name", "") or "",
                "price": price_value,
                "quantity": int(entry.get("quantity", 1) or 1),
                "lineTotal": round(safe_float(entry.get("line_total"), 0.0), 2),
            }
        )

    return {
        "id": str(order_document.get("_id")),
        "orderId": order_document.get("order_id", ""),
        "cartName": order_document.get("cart_name", ""),
        "userId": order_document.get("user_id"),
        "items": items,
        "totalAmount": round(safe_float(order_document.get("total_amount"), 0.0), 2),
        "status": order_document.get("status", "pending"),
        "cancelledBy": order_document.get("cancelled_by"),
        "timePlaced": isoformat(order_document.get("time_placed")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }
