"""Read-only projections for the admin and vendor dashboards."""
from datetime import datetime
from typing import Dict, List

from .catalog import serialize_products
from .orders import find_order_owner, list_orders, list_orders_for_user
from .utils import isoformat, parse_object_id, safe_float


def admin_stats(db) -> Dict[str, object]:
    revenue = db.orders.aggregate(
        [
            {"$match": {"status": {"$ne": "cancelled"}}},
            {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
        ]
    )
    revenue_total = 0.0
    for row in revenue:
        revenue_total = safe_float(row.get("total"), 0.0)

    return {
        "revenue": round(revenue_total, 2),
        "orders": db.orders.count_documents({}),
        "customers": db.users.count_documents({"role": "customer"}),
        "products": db.products.count_documents({}),
    }


def admin_orders(db) -> List[Dict[str, object]]:
    projections = []
    for order_document in list_orders(db):
        owner = find_order_owner(db, order_document) or {}
        projections.append(
            {
                "id": str(order_document.get("_id")),
                "orderNumber": order_document.get("order_id", ""),
                "customer": {
                    "name": owner.get("username") or order_document.get("cart_name", ""),
                    "email": owner.get("email", ""),
                },
                "products": [
                    {
                        "name": entry.get("name", ""),
                        "quantity": entry.get("quantity", 1),
                        "price": entry.get("price", 0),
                    }
                    for entry in order_document.get("items") or []
                ],
                "total": order_document.get("total_amount", 0),
                "status": order_document.get("status", "pending"),
                "createdAt": isoformat(order_document.get("time_placed")),
            }
        )
    return projections


def top_products(db, limit: int = 10) -> List[Dict[str, object]]:
    product_documents = list(
        db.products.find().sort([("sales", -1), ("created_at", -1)]).limit(limit)
    )
    return serialize_products(db, product_documents)


def customers_overview(db, now=None) -> Dict[str, object]:
    now = now or datetime.utcnow()
    month_start = datetime(now.year, now.month, 1)

    customers = []
    active = 0
    new_this_month = 0
    for user_document in db.users.find({"role": "customer"}).sort("created_at", -1):
        orders = list_orders_for_user(db, user_document)
        last_order_at = orders[0].get("time_placed") if orders else None
        created_at = user_document.get("created_at")

        if isinstance(last_order_at, datetime) and last_order_at >= month_start:
            active += 1
        if isinstance(created_at, datetime) and created_at >= month_start:
            new_this_month += 1

        customers.append(
            {
                "id": str(user_document["_id"]),
                "name": user_document.get("username", ""),
                "email": user_document.get("email", ""),
                "totalOrders": len(orders),
                "totalSpent": round(
                    sum(safe_float(order.get("total_amount"), 0.0) for order in orders), 2
                ),
                "lastOrderDate": isoformat(last_order_at),
                "createdAt": isoformat(created_at),
            }
        )

    return {
        "customers": customers,
        "stats": {"total": len(customers), "active": active, "newThisMonth": new_this_month},
    }


def vendor_stats(db, vendor_id, low_stock_threshold: int = 10) -> Dict[str, object]:
    owner_id = parse_object_id(vendor_id, "vendor identifier")
    products = list(db.products.find({"owner_id": owner_id}))

    total_sales = sum(int(product.get("sales", 0) or 0) for product in products)
    total_revenue = sum(
        int(product.get("sales", 0) or 0) * safe_float(product.get("price"), 0.0)
        for product in products
    )
    low_stock = sum(
        1 for product in products if int(product.get("stock", 0) or 0) < low_stock_threshold
    )

    return {
        "totalProducts": len(products),
        "totalSales": total_sales,
        "totalRevenue": round(total_revenue, 2),
        "lowStockProducts": low_stock,
    }
