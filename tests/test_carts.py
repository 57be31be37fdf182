import pytest

from shopfront import carts
from shopfront.errors import Forbidden, NotFound, ValidationError


@pytest.fixture
def alice(make_user):
    return make_user("alice")


def test_add_item_creates_and_merges(db, alice, make_product):
    widget = make_product("Widget", 19.99)

    carts.add_item(db, "alice_cart", str(widget["_id"]), 1, alice)
    cart = carts.add_item(db, "alice_cart", str(widget["_id"]), 2, alice)

    assert cart["items"] == [{"product_id": str(widget["_id"]), "quantity": 3}]
    assert cart["owner_id"] == alice["_id"]


@pytest.mark.parametrize("quantity", [0, -2, "many"])
def test_add_item_rejects_bad_quantity(db, alice, make_product, quantity):
    widget = make_product("Widget", 19.99)
    with pytest.raises(ValidationError):
        carts.add_item(db, "alice_cart", str(widget["_id"]), quantity, alice)


def test_add_unknown_product(db, alice):
    with pytest.raises(NotFound):
        carts.add_item(db, "alice_cart", "0123456789ab0123456789ab", 1, alice)


def test_cart_access_is_owner_or_staff(db, alice, make_user, make_product):
    widget = make_product("Widget", 19.99)
    cart = carts.add_item(db, "alice_cart", str(widget["_id"]), 1, alice)

    with pytest.raises(Forbidden):
        carts.ensure_cart_access(cart, make_user("bob"))
    carts.ensure_cart_access(cart, make_user("helper", role="support"))


def test_remove_and_clear(db, alice, make_product):
    widget = make_product("Widget", 19.99)
    carts.add_item(db, "alice_cart", str(widget["_id"]), 1, alice)

    with pytest.raises(NotFound):
        carts.remove_item(db, "alice_cart", "missing", alice)

    cart = carts.remove_item(db, "alice_cart", str(widget["_id"]), alice)
    assert cart["items"] == []

    carts.add_item(db, "alice_cart", str(widget["_id"]), 1, alice)
    assert carts.clear_cart(db, "alice_cart", alice)["items"] == []


def test_default_cart_name(alice):
    assert carts.resolve_cart_name(None, alice) == "alice_cart"
    assert carts.resolve_cart_name(" shared ", alice) == "shared"
    with pytest.raises(ValidationError):
        carts.resolve_cart_name("", None)


def test_cart_endpoints_then_checkout(client, auth_headers, alice, make_product):
    widget = make_product("Widget", 19.99)
    headers = auth_headers(alice)

    added = client.post(
        "/api/cart", json={"productId": str(widget["_id"]), "quantity": 3}, headers=headers
    )
    assert added.status_code == 201
    assert added.get_json()["cart"]["cartName"] == "alice_cart"

    cart = client.get("/api/cart", headers=headers).get_json()["cart"]
    assert cart["items"][0]["product"]["name"] == "Widget"

    order = client.post("/api/orders", json={"cartName": "alice_cart"}, headers=headers)
    assert order.get_json()["order"]["totalAmount"] == 59.97


def test_missing_cart_endpoint(client, auth_headers, alice):
    response = client.get("/api/cart", headers=auth_headers(alice))

    assert response.status_code == 404


def test_staff_may_create_any_cart_name(db, make_user, make_product):
    widget = make_product("Widget", 19.99)
    manager = make_user("mona", role="manager")

    cart = carts.add_item(db, "alice_cart", str(widget["_id"]), 1, manager)

    assert cart["cart_name"] == "alice_cart"


def test_customer_cannot_create_another_default_cart(db, alice, make_product):
    widget = make_product("Widget", 19.99)

    with pytest.raises(Forbidden):
        carts.add_item(db, "bob_cart", str(widget["_id"]), 1, alice)
    assert db.carts.count_documents({}) == 0
