import logging
from datetime import datetime
from typing import Dict, List, Optional

from .errors import Forbidden, NotFound, ValidationError
from .utils import (
    CART_NAME_SUFFIX,
    STAFF_ROLES,
    cart_name_for,
    isoformat,
    normalize_object_id_value,
    normalize_role,
    parse_object_id,
)

logger = logging.getLogger(__name__)


def resolve_cart_name(cart_name: Optional[str], requester: Optional[Dict]) -> str:
    name = str(cart_name or "").strip()
    if name:
        return name
    if requester and requester.get("username"):
        return cart_name_for(requester["username"])
    raise ValidationError("cartName is required.")


def cart_belongs_to(cart_document, user_document) -> bool:
    if not cart_document or not user_document:
        return False
    owner_id = cart_document.get("owner_id")
    if owner_id:
        return str(owner_id) == str(user_document.get("_id"))
    return cart_document.get("cart_name") == cart_name_for(user_document.get("username"))


def ensure_cart_access(cart_document, requester) -> None:
    if normalize_role((requester or {}).get("role")) in STAFF_ROLES:
        return
    if not cart_belongs_to(cart_document, requester):
        raise Forbidden("This cart belongs to another customer.")


def ensure_cart_name_allowed(cart_name: str, requester) -> None:
    """Reject a new cart that would take over another user's default cart name."""
    if normalize_role((requester or {}).get("role")) in STAFF_ROLES:
        return
    if cart_name.endswith(CART_NAME_SUFFIX) and cart_name != cart_name_for(
        (requester or {}).get("username")
    ):
        raise Forbidden("You can only create your own default cart.")


def get_cart(db, cart_name: str) -> Dict:
    cart_document = db.carts.find_one({"cart_name": cart_name})
    if not cart_document:
        raise NotFound("Cart not found.")
    return cart_document


def line_item_key(entry: Dict) -> str:
    return str(entry.get("product_id") or entry.get("product_name") or "")


def add_item(db, cart_name: str, product_id, quantity, requester: Dict) -> Dict:
    try:
        quantity_value = int(quantity if quantity is not None else 1)
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a whole number.")
    if quantity_value < 1:
        raise ValidationError("Quantity must be at least 1.")

    product_object_id = parse_object_id(product_id, "product identifier")
    if not db.products.find_one({"_id": product_object_id}):
        raise NotFound("Product not found.")

    now = datetime.utcnow()
    cart_document = db.carts.find_one({"cart_name": cart_name})
    if not cart_document:
        ensure_cart_name_allowed(cart_name, requester)
        cart_document = {
            "cart_name": cart_name,
            "owner_id": requester["_id"],
            "items": [],
            "added_at": now,
        }
        cart_document["_id"] = db.carts.insert_one(cart_document).inserted_id
    else:
        ensure_cart_access(cart_document, requester)

    items: List[Dict] = list(cart_document.get("items") or [])
    for entry in items:
        if line_item_key(entry) == str(product_object_id):
            entry["quantity"] = int(entry.get("quantity", 1) or 1) + quantity_value
            break
    else:
        items.append({"product_id": str(product_object_id), "quantity": quantity_value})

    db.carts.update_one(
        {"_id": cart_document["_id"]},
        {"$set": {"items": items, "updated_at": now}},
    )
    cart_document["items"] = items
    cart_document["updated_at"] = now
    return cart_document


def remove_item(db, cart_name: str, product_id, requester: Dict) -> Dict:
    cart_document = get_cart(db, cart_name)
    ensure_cart_access(cart_document, requester)

    key = str(product_id or "").strip()
    items = list(cart_document.get("items") or [])
    remaining = [entry for entry in items if line_item_key(entry) != key]
    if len(remaining) == len(items):
        raise NotFound(f"No product {key} in your cart.")

    now = datetime.utcnow()
    db.carts.update_one(
        {"_id": cart_document["_id"]},
        {"$set": {"items": remaining, "updated_at": now}},
    )
    cart_document["items"] = remaining
    cart_document["updated_at"] = now
    return cart_document


def clear_cart(db, cart_name: str, requester: Dict) -> Dict:
    cart_document = get_cart(db, cart_name)
    ensure_cart_access(cart_document, requester)

    now = datetime.utcnow()
    db.carts.update_one(
        {"_id": cart_document["_id"]},
        {"$set": {"items": [], "updated_at": now}},
    )
    cart_document["items"] = []
    cart_document["updated_at"] = now
    return cart_document


def serialize_cart(db, cart_document) -> Dict[str, object]:
    if not cart_document:
        return {}

    items = []
    for entry in cart_document.get("items") or []:
        product_document = None
        product_id = normalize_object_id_value(entry.get("product_id"))
        if product_id:
            product_document = db.products.find_one({"_id": product_id})
        elif entry.get("product_name"):
            product_document = db.products.find_one({"name": entry["product_name"]})
        items.append(
            {
                "productId": line_item_key(entry),
                "quantity": int(entry.get("quantity", 1) or 1),
                "product": {
                    "id": str(product_document["_id"]),
                    "name": product_document.get("name", ""),
                    "price": product_document.get("price", 0),
                }
                if product_document
                else None,
            }
        )

    owner_id = cart_document.get("owner_id")
    return {
        "id": str(cart_document.get("_id")),
        "cartName": cart_document.get("cart_name", ""),
        "ownerId": str(owner_id) if owner_id else None,
        "items": items,
        "addedAt": isoformat(cart_document.get("added_at")),
        "updatedAt": isoformat(cart_document.get("updated_at")),
    }
