from datetime import datetime

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from shopfront import create_app
from shopfront.accounts import hash_password
from shopfront.errors import NotificationError


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html, text=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return True

    def subjects(self):
        return [message["subject"] for message in self.sent]


class FailingMailer(RecordingMailer):
    def send(self, to, subject, html, text=None):
        super().send(to, subject, html, text)
        raise NotificationError("mail provider unavailable")


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app(db, mailer, tmp_path):
    return create_app(
        test_config={
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "NOTIFICATIONS_SYNC": True,
            "FRONTEND_URL": "http://shop.test",
        },
        database=db,
        mailer=mailer,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def notifier(app):
    return app.extensions["shopfront"]["notifier"]


@pytest.fixture
def make_user(db):
    def factory(username, role="customer", password="secret123", email=None):
        document = {
            "username": username,
            "email": email or f"{username}@example.com",
            "password_hash": hash_password(password),
            "role": role,
            "profile_image_url": "",
            "created_at": datetime.utcnow(),
        }
        document["_id"] = db.users.insert_one(document).inserted_id
        return document

    return factory


@pytest.fixture
def auth_headers(app):
    def factory(user_document):
        with app.app_context():
            token = create_access_token(identity=str(user_document["_id"]))
        return {"Authorization": f"Bearer {token}"}

    return factory


@pytest.fixture
def category(app, db):
    return db.categories.find_one({"name": "Electronics"})


@pytest.fixture
def make_product(db, category):
    def factory(name, price, stock=10, owner=None, **extra):
        document = {
            "name": name,
            "price": price,
            "description": "",
            "images": [],
            "category_id": category["_id"],
            "owner_id": owner["_id"] if owner else None,
            "stock": stock,
            "sales": 0,
            "in_stock": stock > 0,
            "created_at": datetime.utcnow(),
        }
        document.update(extra)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return factory


@pytest.fixture
def make_cart(db):
    def factory(cart_name, items, owner=None):
        document = {
            "cart_name": cart_name,
            "owner_id": owner["_id"] if owner else None,
            "items": items,
            "added_at": datetime.utcnow(),
        }
        document["_id"] = db.carts.insert_one(document).inserted_id
        return document

    return factory
