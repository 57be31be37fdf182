import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

from bson import ObjectId

from .errors import ConflictError, Forbidden, NotFound, ValidationError
from .utils import (
    isoformat,
    money_to_float,
    normalize_object_id_value,
    normalize_role,
    parse_object_id,
    to_money,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    {"name": "Men", "description": "Men's clothing and accessories"},
    {"name": "Women", "description": "Women's clothing and accessories"},
    {"name": "Electronics", "description": "Electronic devices and gadgets"},
    {"name": "Accessories", "description": "Fashion accessories and jewelry"},
]


def normalize_category_name(value: Optional[str]) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split()).strip()


def serialize_category(category_document) -> Dict[str, object]:
    if not category_document:
        return {}
    return {
        "id": str(category_document.get("_id")),
        "name": category_document.get("name", "") or "",
        "description": category_document.get("description", "") or "",
        "imageUrl": category_document.get("image_url", "") or "",
    }


def serialize_product(product_document, category_map=None) -> Dict[str, object]:
    if not product_document:
        return {}

    category_id = product_document.get("category_id")
    category_document = (category_map or {}).get(category_id)
    vendor_id = product_document.get("vendor_id")
    old_price = product_document.get("old_price")

    return {
        "id": str(product_document.get("_id")),
        "name": product_document.get("name", "") or "",
        "price": product_document.get("price", 0),
        "oldPrice": old_price,
        "description": product_document.get("description", "") or "",
        "images": list(product_document.get("images") or []),
        "categoryId": str(category_id) if category_id else "",
        "category": serialize_category(category_document) if category_document else None,
        "ownerId": str(product_document.get("owner_id") or ""),
        "vendorId": str(vendor_id) if vendor_id else None,
        "stock": int(product_document.get("stock", 0) or 0),
        "sales": int(product_document.get("sales", 0) or 0),
        "inStock": bool(product_document.get("in_stock", True)),
        "createdAt": isoformat(product_document.get("created_at")),
    }


def fetch_categories_by_ids(db, category_ids) -> Dict[ObjectId, Dict]:
    normalized_ids: List[ObjectId] = []
    for value in category_ids or []:
        current_id = normalize_object_id_value(value)
        if current_id is not None and current_id not in normalized_ids:
            normalized_ids.append(current_id)
    if not normalized_ids:
        return {}
    category_documents = db.categories.find({"_id": {"$in": normalized_ids}})
    return {document["_id"]: document for document in category_documents}


def serialize_products(db, product_documents) -> List[Dict[str, object]]:
    """Serialize products with their category joined in at read time."""
    category_map = fetch_categories_by_ids(
        db, [document.get("category_id") for document in product_documents]
    )
    return [serialize_product(document, category_map) for document in product_documents]


def can_manage_product(product_document, user_document) -> bool:
    if not product_document or not user_document:
        return False

    if normalize_role(user_document.get("role")) == "admin":
        return True

    owner_id = product_document.get("owner_id")
    return bool(owner_id) and str(owner_id) == str(user_document.get("_id"))


def _parse_price(value, label: str) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label} is required.")
    try:
        amount = to_money(value)
    except ValidationError:
        raise ValidationError(f"{label} must be a valid number.")
    if amount < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return money_to_float(amount)


def _parse_stock(value) -> int:
    try:
        stock = int(float(value))
    except (TypeError, ValueError):
        raise ValidationError("Stock must be a whole number.")
    if stock < 0:
        raise ValidationError("Stock cannot be negative.")
    return stock


def _parse_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _parse_images(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValidationError("Images must be a list of URLs.")
    return [str(url).strip() for url in value if str(url or "").strip()]


def resolve_category(db, value) -> Dict:
    if not value:
        raise ValidationError("A category is required.")
    category_id = normalize_object_id_value(value)
    category_document = (
        db.categories.find_one({"_id": category_id}) if category_id else None
    )
    if not category_document:
        # Vendors historically submitted the category by name.
        category_document = db.categories.find_one(
            {"name": normalize_category_name(value)}
        )
    if not category_document:
        raise ValidationError("Category not found.")
    return category_document


def list_products(db, category_id=None, search: Optional[str] = None,
                  owner_id=None) -> List[Dict]:
    query: Dict[str, object] = {}
    if category_id:
        query["category_id"] = parse_object_id(category_id, "category identifier")
    if owner_id:
        query["owner_id"] = parse_object_id(owner_id, "owner identifier")
    if search:
        pattern = re.compile(re.escape(search.strip()), re.IGNORECASE)
        query["$or"] = [{"name": pattern}, {"description": pattern}]
    return list(db.products.find(query).sort("created_at", -1))


def get_product(db, product_id) -> Dict:
    object_id = parse_object_id(product_id, "product identifier")
    product_document = db.products.find_one({"_id": object_id})
    if not product_document:
        raise NotFound("Product not found.")
    return product_document


def create_product(db, payload: Dict, requester: Dict, images: Optional[List[str]] = None) -> Dict:
    if not requester:
        raise Forbidden("You must be signed in to add products.")
    role = normalize_role(requester.get("role"))
    if role not in {"admin", "vendor"}:
        raise Forbidden("Only vendors and admins can add products.")

    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValidationError("A product name is required.")

    price = _parse_price(payload.get("price"), "Price")
    old_price_raw = payload.get("oldPrice", payload.get("old_price"))
    old_price = (
        _parse_price(old_price_raw, "Old price")
        if old_price_raw not in (None, "")
        else None
    )
    stock = _parse_stock(payload.get("stock", 0) or 0)

    category_document = resolve_category(
        db, payload.get("category") or payload.get("categoryId")
    )

    image_urls = _parse_images(payload.get("images"))
    image_urls.extend(images or [])

    in_stock_raw = payload.get("inStock", payload.get("in_stock"))
    if in_stock_raw is not None:
        in_stock = _parse_bool(in_stock_raw)
    elif "stock" in payload:
        in_stock = stock > 0
    else:
        in_stock = True

    timestamp = datetime.utcnow()
    product_document = {
        "name": name,
        "price": price,
        "old_price": old_price,
        "description": str(payload.get("description") or "").strip(),
        "images": image_urls,
        "category_id": category_document["_id"],
        "owner_id": requester["_id"],
        "vendor_id": requester["_id"] if role == "vendor" else None,
        "stock": stock,
        "sales": 0,
        "in_stock": in_stock,
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    result = db.products.insert_one(product_document)
    product_document["_id"] = result.inserted_id
    logger.info("Product %s created by %s", result.inserted_id, requester["_id"])
    return product_document


UPDATABLE_PRODUCT_FIELDS = {
    "name": "name",
    "price": "price",
    "oldPrice": "old_price",
    "old_price": "old_price",
    "description": "description",
    "images": "images",
    "category": "category_id",
    "categoryId": "category_id",
    "stock": "stock",
    "inStock": "in_stock",
    "in_stock": "in_stock",
}


def update_product(db, product_id, changes: Dict, requester: Dict) -> Dict:
    product_document = get_product(db, product_id)
    if not can_manage_product(product_document, requester):
        raise Forbidden("You do not have permission to update this product.")

    update: Dict[str, object] = {}
    for key, value in (changes or {}).items():
        field = UPDATABLE_PRODUCT_FIELDS.get(key)
        if not field:
            continue
        if field == "name":
            name = str(value or "").strip()
            if not name:
                raise ValidationError("A product name is required.")
            update[field] = name
        elif field == "price":
            update[field] = _parse_price(value, "Price")
        elif field == "old_price":
            update[field] = _parse_price(value, "Old price") if value not in (None, "") else None
        elif field == "description":
            update[field] = str(value or "").strip()
        elif field == "images":
            update[field] = _parse_images(value)
        elif field == "category_id":
            update[field] = resolve_category(db, value)["_id"]
        elif field == "stock":
            update[field] = _parse_stock(value)
        elif field == "in_stock":
            update[field] = _parse_bool(value)

    if not update:
        raise ValidationError("No fields to update.")

    update["updated_at"] = datetime.utcnow()
    db.products.update_one({"_id": product_document["_id"]}, {"$set": update})
    return db.products.find_one({"_id": product_document["_id"]})


def delete_product(db, product_id, requester: Dict) -> Dict:
    product_document = get_product(db, product_id)
    if not can_manage_product(product_document, requester):
        raise Forbidden("You do not have permission to delete this product.")

    db.products.delete_one({"_id": product_document["_id"]})
    logger.info("Product %s deleted by %s", product_document["_id"], requester.get("_id"))
    return product_document


def list_categories(db) -> List[Dict]:
    return list(db.categories.find().sort("name", 1))


def create_category(db, payload: Dict, image_url: str = "") -> Dict:
    name = normalize_category_name(payload.get("name"))
    if not name:
        raise ValidationError("Name is required.")
    if db.categories.find_one({"name": name}):
        raise ConflictError(f'Category "{name}" already exists.')

    category_document = {
        "name": name,
        "description": str(payload.get("description") or "").strip(),
        "image_url": image_url or str(payload.get("imageUrl") or "").strip(),
    }
    result = db.categories.insert_one(category_document)
    category_document["_id"] = result.inserted_id
    return category_document


def delete_category(db, category_id) -> Dict:
    object_id = parse_object_id(category_id, "category identifier")
    category_document = db.categories.find_one({"_id": object_id})
    if not category_document:
        raise NotFound("Category not found.")
    if db.products.count_documents({"category_id": object_id}):
        raise ConflictError("This category still has products.")

    db.categories.delete_one({"_id": object_id})
    return category_document


def seed_categories(db) -> int:
    created = 0
    for category in DEFAULT_CATEGORIES:
        if db.categories.find_one({"name": category["name"]}):
            continue
        db.categories.insert_one({**category, "image_url": ""})
        logger.info("Created category: %s", category["name"])
        created += 1
    return created
