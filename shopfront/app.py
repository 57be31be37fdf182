import logging
import os
from datetime import timedelta
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from . import accounts, carts, catalog, dashboards, orders
from .errors import AuthenticationError, Forbidden, ShopError, ValidationError
from .notifications import NotificationDispatcher, Notifier, ResendMailer
from .storage import ImageStorage, build_upload_url
from .utils import (
    STAFF_ROLES,
    is_valid_email,
    normalize_email,
    normalize_object_id_value,
    normalize_role,
    serialize_user,
)

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return (os.getenv(name, default) or default).strip().lower() in {"1", "true", "yes", "on"}


def create_app(test_config: Optional[Dict] = None, database=None, mailer=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Upload and reset links are built from the request host.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config.update(
        MONGO_URI=os.getenv("MONGO_URI", "mongodb://localhost:27017/shopfront"),
        JWT_SECRET_KEY=os.getenv("JWT_SECRET_KEY", "change-me-in-production"),
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=1),
        MAX_CONTENT_LENGTH=max_upload_mb * 1024 * 1024,
        UPLOAD_FOLDER=os.getenv("UPLOAD_FOLDER") or os.path.join(app.root_path, "uploads"),
        ALLOWED_IMAGE_EXTENSIONS={"png", "jpg", "jpeg", "gif", "webp"},
        RESEND_API_KEY=(os.getenv("RESEND_API_KEY") or "").strip(),
        MAIL_SENDER=os.getenv("MAIL_SENDER", "Shopfront <orders@shopfront.local>"),
        FRONTEND_URL=(os.getenv("FRONTEND_URL") or "").strip(),
        CORS_ALLOWED_ORIGINS=os.getenv("CORS_ALLOWED_ORIGINS", ""),
        PASSWORD_RESET_EXPIRATION_MINUTES=int(
            os.getenv("PASSWORD_RESET_EXPIRATION_MINUTES", "60")
        ),
        NOTIFICATION_WORKERS=int(os.getenv("NOTIFICATION_WORKERS", "2")),
        NOTIFICATIONS_SYNC=_env_flag("NOTIFICATIONS_SYNC", "false"),
        LOW_STOCK_THRESHOLD=int(os.getenv("LOW_STOCK_THRESHOLD", "10")),
        SEED_CATEGORIES=_env_flag("SEED_CATEGORIES", "true"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
    if test_config:
        app.config.update(test_config)

    logging.getLogger("shopfront").setLevel(app.config["LOG_LEVEL"])

    # --- Initialize extensions ---
    allowed_origins = [app.config["FRONTEND_URL"]]
    for origin in app.config["CORS_ALLOWED_ORIGINS"].split(","):
        trimmed = origin.strip()
        if trimmed:
            allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        db = mongo.db
    else:
        db = database

    storage = ImageStorage(
        app.config["UPLOAD_FOLDER"], app.config["ALLOWED_IMAGE_EXTENSIONS"]
    )
    dispatcher = NotificationDispatcher(
        max_workers=app.config["NOTIFICATION_WORKERS"],
        synchronous=app.config["NOTIFICATIONS_SYNC"],
    )
    notifier = Notifier(
        app,
        mailer or ResendMailer(app.config["RESEND_API_KEY"], app.config["MAIL_SENDER"]),
        dispatcher,
    )
    app.extensions["shopfront"] = {
        "db": db,
        "notifier": notifier,
        "storage": storage,
    }

    for collection_name, field in (
        ("users", "email"),
        ("users", "username"),
        ("categories", "name"),
        ("carts", "cart_name"),
        ("orders", "order_id"),
    ):
        try:
            db[collection_name].create_index(field, unique=True)
        except PyMongoError as exc:
            app.logger.warning(
                "Unable to ensure unique index on %s.%s: %s", collection_name, field, exc
            )

    if app.config["SEED_CATEGORIES"]:
        try:
            catalog.seed_categories(db)
        except PyMongoError as exc:
            app.logger.warning("Unable to seed default categories: %s", exc)

    # --- Error handling ---

    @jwt.unauthorized_loader
    def missing_token(reason: str):
        return jsonify({"message": reason}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        return jsonify({"message": reason}), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({"message": "Your session has expired. Please sign in again."}), 401

    @app.errorhandler(ShopError)
    def handle_shop_error(error: ShopError):
        if error.status_code >= 500:
            app.logger.error("%s %s failed: %s", request.method, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(DuplicateKeyError)
    def handle_duplicate_key(error: DuplicateKeyError):
        return jsonify({"message": "A record with this value already exists."}), 409

    @app.errorhandler(PyMongoError)
    def handle_database_error(error: PyMongoError):
        app.logger.error("Database error on %s %s: %s", request.method, request.path, error)
        return jsonify({"message": "Database operation failed.", "error": str(error)}), 500

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"message": error.description}), error.code

    @app.before_request
    def log_request():
        app.logger.info("%s %s", request.method, request.path)

    # --- Helpers ---

    def request_payload() -> Dict:
        return request.get_json(silent=True) or {}

    def load_current_user() -> Dict:
        user_id = normalize_object_id_value(get_jwt_identity())
        current_user = db.users.find_one({"_id": user_id}) if user_id else None
        if not current_user:
            raise AuthenticationError("Account not found.")
        return current_user

    def require_role(*roles: str) -> Dict:
        current_user = load_current_user()
        user_role = normalize_role(current_user.get("role"))
        if user_role == "admin" or not roles or user_role in roles:
            return current_user
        raise Forbidden("You need additional permissions to perform this action.")

    def require_staff() -> Dict:
        return require_role(*STAFF_ROLES)

    def is_staff(user_document) -> bool:
        return normalize_role(user_document.get("role")) in STAFF_ROLES

    def upload_url(filename: str) -> str:
        return build_upload_url(request.host_url, filename)

    def local_upload_filenames(urls: List[str]) -> List[str]:
        filenames = []
        for url in urls or []:
            path = urlparse(str(url)).path
            if "/uploads/" in path:
                filenames.append(path.rsplit("/", 1)[-1])
        return filenames

    def password_reset_url(token: str) -> str:
        base_url = app.config["FRONTEND_URL"]
        if base_url:
            return f"{base_url.rstrip('/')}/reset-password?token={token}"
        return urljoin(request.host_url, f"reset-password?token={token}")

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    @app.route("/api/upload", methods=["POST"])
    @jwt_required()
    def upload_file():
        load_current_user()
        upload = request.files.get("file")
        if not upload or not upload.filename:
            raise ValidationError("No file uploaded.")

        filename = storage.save(upload)
        return jsonify(
            {
                "message": "File uploaded successfully.",
                "file": {"filename": filename, "url": upload_url(filename)},
            }
        )

    # Accounts
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        user_document = accounts.register_user(db, request_payload())
        notifier.send_welcome(user_document["email"], user_document["username"])
        return (
            jsonify(
                {
                    "message": "User registered successfully.",
                    "user": serialize_user(user_document),
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request_payload()
        user_document = accounts.authenticate(db, payload.get("email"), payload.get("password"))
        token = create_access_token(
            identity=str(user_document["_id"]),
            additional_claims={"role": normalize_role(user_document.get("role"))},
        )
        return jsonify(
            {
                "message": "Login successful.",
                "token": token,
                "user": serialize_user(user_document),
            }
        )

    @app.route("/api/auth/profile", methods=["GET"])
    @jwt_required()
    def get_profile():
        return jsonify({"user": serialize_user(load_current_user())})

    @app.route("/api/auth/change-password", methods=["PUT"])
    @jwt_required()
    def change_password():
        current_user = load_current_user()
        payload = request_payload()
        accounts.change_password(
            db,
            current_user,
            str(payload.get("currentPassword") or ""),
            str(payload.get("newPassword") or ""),
        )
        return jsonify({"message": "Password updated successfully."})

    @app.route("/api/auth/profile/image", methods=["POST"])
    @jwt_required()
    def upload_profile_image():
        current_user = load_current_user()
        image = request.files.get("image")
        if not image or not image.filename:
            raise ValidationError("An image file is required.")

        filename = storage.save(image)
        image_url = upload_url(filename)
        db.users.update_one(
            {"_id": current_user["_id"]}, {"$set": {"profile_image_url": image_url}}
        )
        storage.remove(local_upload_filenames([current_user.get("profile_image_url")]))
        current_user["profile_image_url"] = image_url
        return jsonify(
            {"message": "Profile image updated.", "user": serialize_user(current_user)}
        )

    @app.route("/api/auth/forgot-password", methods=["POST"])
    def forgot_password():
        email = normalize_email(request_payload().get("email"))
        generic_message = {"message": "If this email exists, a reset link has been sent."}

        if not is_valid_email(email):
            return jsonify(generic_message), 200

        user_document = db.users.find_one({"email": email})
        if user_document:
            expiration_minutes = app.config["PASSWORD_RESET_EXPIRATION_MINUTES"]
            token, _ = accounts.begin_password_reset(db, user_document, expiration_minutes)
            notifier.send_password_reset(
                email,
                user_document.get("username", ""),
                password_reset_url(token),
                expiration_minutes,
            )

        return jsonify(generic_message), 200

    @app.route("/api/auth/reset-password", methods=["POST"])
    def reset_password():
        payload = request_payload()
        accounts.reset_password(db, payload.get("token"), payload.get("newPassword"))
        return jsonify({"message": "Password reset successful. You can now log in."})

    @app.route("/api/auth/users", methods=["GET"])
    @jwt_required()
    def list_users():
        require_role("admin")
        return jsonify(
            {"users": [serialize_user(user) for user in accounts.list_users(db)]}
        )

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        product_documents = catalog.list_products(
            db,
            category_id=request.args.get("category"),
            search=request.args.get("q"),
        )
        return jsonify({"products": catalog.serialize_products(db, product_documents)})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document = catalog.get_product(db, product_id)
        return jsonify({"product": catalog.serialize_products(db, [product_document])[0]})

    def create_product_from_request(current_user: Dict) -> Dict:
        payload = request.form.to_dict() if request.form else request_payload()
        image_files = request.files.getlist("images") if request.files else []
        saved_filenames = storage.save_many(image_files)
        try:
            return catalog.create_product(
                db,
                payload,
                current_user,
                images=[upload_url(filename) for filename in saved_filenames],
            )
        except Exception:
            storage.remove(saved_filenames)
            raise

    def delete_product_for(current_user: Dict, product_id: str) -> Dict:
        product_document = catalog.delete_product(db, product_id, current_user)
        storage.remove(local_upload_filenames(product_document.get("images")))
        return product_document

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user = require_role("vendor", "admin")
        product_document = create_product_from_request(current_user)
        return (
            jsonify(
                {
                    "message": "Product added successfully.",
                    "product": catalog.serialize_products(db, [product_document])[0],
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        current_user = load_current_user()
        product_document = catalog.update_product(
            db, product_id, request_payload(), current_user
        )
        return jsonify(
            {
                "message": "Product updated successfully.",
                "product": catalog.serialize_products(db, [product_document])[0],
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        delete_product_for(load_current_user(), product_id)
        return jsonify({"message": "Product deleted successfully."})

    # Categories
    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        return jsonify(
            {
                "categories": [
                    catalog.serialize_category(document)
                    for document in catalog.list_categories(db)
                ]
            }
        )

    @app.route("/api/categories", methods=["POST"])
    @jwt_required()
    def create_category():
        require_role("admin")
        payload = request.form.to_dict() if request.form else request_payload()
        image_url = ""
        if request.files.get("image"):
            image_url = upload_url(storage.save(request.files["image"]))
        category_document = catalog.create_category(db, payload, image_url=image_url)
        return (
            jsonify(
                {
                    "message": "Category created successfully.",
                    "category": catalog.serialize_category(category_document),
                }
            ),
            201,
        )

    @app.route("/api/categories/<category_id>", methods=["DELETE"])
    @jwt_required()
    def delete_category(category_id: str):
        require_role("admin")
        category_document = catalog.delete_category(db, category_id)
        return jsonify(
            {"message": f'"{category_document.get("name", "Category")}" has been removed.'}
        )

    # Cart
    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        current_user = load_current_user()
        cart_name = carts.resolve_cart_name(request.args.get("cartName"), current_user)
        cart_document = carts.get_cart(db, cart_name)
        carts.ensure_cart_access(cart_document, current_user)
        return jsonify({"cart": carts.serialize_cart(db, cart_document)})

    @app.route("/api/cart", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        current_user = load_current_user()
        payload = request_payload()
        cart_name = carts.resolve_cart_name(payload.get("cartName"), current_user)
        cart_document = carts.add_item(
            db,
            cart_name,
            payload.get("productId"),
            payload.get("quantity", 1),
            current_user,
        )
        return (
            jsonify(
                {
                    "message": "Product added to cart.",
                    "cart": carts.serialize_cart(db, cart_document),
                }
            ),
            201,
        )

    @app.route("/api/cart/items/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_from_cart(product_id: str):
        current_user = load_current_user()
        cart_name = carts.resolve_cart_name(request.args.get("cartName"), current_user)
        cart_document = carts.remove_item(db, cart_name, product_id, current_user)
        return jsonify(
            {
                "message": "Removed successfully.",
                "cart": carts.serialize_cart(db, cart_document),
            }
        )

    @app.route("/api/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        current_user = load_current_user()
        cart_name = carts.resolve_cart_name(request.args.get("cartName"), current_user)
        cart_document = carts.clear_cart(db, cart_name, current_user)
        return jsonify(
            {"message": "Cart cleared.", "cart": carts.serialize_cart(db, cart_document)}
        )

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def place_order():
        current_user = load_current_user()
        cart_name = request_payload().get("cartName")
        if not str(cart_name or "").strip():
            raise ValidationError("cartName is required.")

        order_document = orders.place_order(
            db, cart_name, notifier=notifier, requester=current_user
        )
        return (
            jsonify(
                {
                    "message": "Order placed successfully.",
                    "order": orders.serialize_order(order_document),
                }
            ),
            201,
        )

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        require_staff()
        return jsonify(
            [orders.serialize_order(document) for document in orders.list_orders(db)]
        )

    @app.route("/api/orders/me", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        current_user = load_current_user()
        return jsonify(
            {
                "orders": [
                    orders.serialize_order(document)
                    for document in orders.list_orders_for_user(db, current_user)
                ]
            }
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        current_user = load_current_user()
        order_document = orders.get_order(db, order_id)
        if not is_staff(current_user) and not orders.order_belongs_to(
            order_document, current_user
        ):
            raise Forbidden("You can only view your own orders.")
        return jsonify({"order": orders.serialize_order(order_document)})

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def update_order(order_id: str):
        require_staff()
        order_document = orders.update_order(
            db, order_id, request_payload(), notifier=notifier, actor="admin"
        )
        return jsonify(
            {
                "message": "Order updated successfully.",
                "order": orders.serialize_order(order_document),
            }
        )

    @app.route("/api/orders/<order_id>/status", methods=["PATCH"])
    @jwt_required()
    def update_order_status(order_id: str):
        require_staff()
        order_document = orders.update_order_status(
            db, order_id, request_payload().get("status"), notifier=notifier, actor="admin"
        )
        return jsonify(
            {
                "message": f"Order status updated to {order_document['status']}.",
                "order": orders.serialize_order(order_document),
            }
        )

    @app.route("/api/orders/<order_id>/cancel", methods=["PATCH"])
    @jwt_required()
    def cancel_order(order_id: str):
        current_user = load_current_user()
        order_document = orders.cancel_order(db, order_id, current_user, notifier=notifier)
        return jsonify(
            {
                "message": "Order cancelled successfully.",
                "order": orders.serialize_order(order_document),
            }
        )

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_order(order_id: str):
        require_role("admin")
        orders.delete_order(db, order_id)
        return jsonify({"message": "Order deleted successfully."})

    # --- Admin Routes ---

    @app.route("/api/admin/stats", methods=["GET"])
    @jwt_required()
    def admin_stats():
        require_staff()
        return jsonify(dashboards.admin_stats(db))

    @app.route("/api/admin/orders", methods=["GET"])
    @jwt_required()
    def admin_orders():
        require_staff()
        return jsonify({"orders": dashboards.admin_orders(db)})

    @app.route("/api/admin/products/top", methods=["GET"])
    @jwt_required()
    def admin_top_products():
        require_staff()
        return jsonify({"products": dashboards.top_products(db)})

    @app.route("/api/admin/customers", methods=["GET"])
    @jwt_required()
    def admin_customers():
        require_staff()
        return jsonify(dashboards.customers_overview(db))

    @app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def update_user_role(user_id: str):
        admin_user = require_role("admin")
        user_document = accounts.set_user_role(db, user_id, request_payload().get("role"))
        app.logger.info(
            "%s changed role of %s to %s",
            admin_user.get("email"),
            user_document.get("email"),
            user_document["role"],
        )
        return jsonify(
            {
                "message": f"Role updated to {user_document['role']}.",
                "user": serialize_user(user_document),
            }
        )

    # --- Vendor Routes ---

    @app.route("/api/vendor/stats", methods=["GET"])
    @jwt_required()
    def vendor_stats():
        current_user = require_role("vendor")
        return jsonify(
            dashboards.vendor_stats(
                db, current_user["_id"], app.config["LOW_STOCK_THRESHOLD"]
            )
        )

    @app.route("/api/vendor/products", methods=["GET"])
    @jwt_required()
    def vendor_products():
        current_user = require_role("vendor")
        product_documents = catalog.list_products(db, owner_id=current_user["_id"])
        return jsonify({"products": catalog.serialize_products(db, product_documents)})

    @app.route("/api/vendor/products", methods=["POST"])
    @jwt_required()
    def add_vendor_product():
        current_user = require_role("vendor")
        product_document = create_product_from_request(current_user)
        return (
            jsonify(
                {
                    "message": "Product added successfully.",
                    "product": catalog.serialize_products(db, [product_document])[0],
                }
            ),
            201,
        )

    @app.route("/api/vendor/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_vendor_product(product_id: str):
        current_user = require_role("vendor")
        product_document = catalog.update_product(
            db, product_id, request_payload(), current_user
        )
        return jsonify(
            {
                "message": "Product updated successfully.",
                "product": catalog.serialize_products(db, [product_document])[0],
            }
        )

    @app.route("/api/vendor/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_vendor_product(product_id: str):
        delete_product_for(require_role("vendor"), product_id)
        return jsonify({"message": "Product deleted successfully."})

    return app
