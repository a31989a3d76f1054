import stripe
from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from config import Settings
from main import create_app
from payments import to_minor_units


ORDER = {
    "userEmail": "buyer@medeasy.com",
    "items": [
        {"medicineId": "m1", "name": "Napa", "seller": "seller@medeasy.com", "quantity": 2, "subtotal": 25},
        {"medicineId": "m2", "name": "Ace", "seller": "other@x.com", "quantity": 1, "subtotal": 5},
    ],
    "amount": 30,
}


def test_minor_units():
    assert to_minor_units(19.99) == 1999
    assert to_minor_units(0.1 + 0.2) == 30


def test_payment_intent(client, buyer, provider):
    res = client.post("/create-payment-intent", json={"price": 12.5}, headers=buyer)
    assert res.status_code == 200
    assert res.json() == {"clientSecret": "pi_test_1_secret"}
    assert provider.amounts == [1250]


def test_payment_intent_rejects_non_positive_price(client, buyer, provider):
    assert client.post("/create-payment-intent", json={"price": 0}, headers=buyer).status_code == 400
    assert provider.amounts == []


def test_provider_error_is_reported_as_upstream(settings, db, buyer):
    class BrokenProvider:
        def create_intent(self, amount):
            raise stripe.StripeError("No such API key")

    with TestClient(create_app(settings, database=db, payment_provider=BrokenProvider())) as c:
        res = c.post("/create-payment-intent", json={"price": 5}, headers=buyer)
    assert res.status_code == 500
    assert res.json() == {"message": "Payment provider request failed", "error": "No such API key"}


def test_upstream_detail_can_be_hidden(db, buyer):
    settings = Settings(token_secret="test-secret", settlement_mode="compensate", expose_upstream_errors=False)

    class BrokenProvider:
        def create_intent(self, amount):
            raise stripe.StripeError("No such API key")

    with TestClient(create_app(settings, database=db, payment_provider=BrokenProvider())) as c:
        res = c.post("/create-payment-intent", json={"price": 5}, headers=buyer)
    assert res.json() == {"message": "Payment provider request failed"}


def test_database_error_is_reported_as_upstream(settings, buyer):
    class DownCollection:
        def find_one(self, *args, **kwargs):
            raise ServerSelectionTimeoutError("connection refused")

        def __getattr__(self, name):
            return lambda *args, **kwargs: None

    class DownDB:
        def __getitem__(self, name):
            return DownCollection()

    with TestClient(create_app(settings, database=DownDB())) as c:
        res = c.post("/carts", json={"medicineId": "m1"}, headers=buyer)
    assert res.status_code == 500
    assert res.json() == {"message": "Database operation failed", "error": "connection refused"}


def test_payment_settles_cart(client, db, buyer):
    client.post("/carts", json={"medicineId": "m1"}, headers=buyer)
    client.post("/checkout", json={"items": [], "grandTotal": 30}, headers=buyer)

    res = client.post("/payments", json=ORDER, headers=buyer)
    assert res.status_code == 200
    assert res.json()["deletedCarts"] == 1
    assert db["payments"].count_documents({"userEmail": "buyer@medeasy.com", "status": "pending"}) == 1
    assert client.get("/carts", headers=buyer).json() == []
    assert client.get("/checkout", headers=buyer).json() == []


def test_payment_requires_user_email(client, db, buyer):
    body = {k: v for k, v in ORDER.items() if k != "userEmail"}
    assert client.post("/payments", json=body, headers=buyer).status_code == 400
    assert db["payments"].count_documents({}) == 0


def test_cannot_pay_for_someone_else(client, db, auth, seed_user):
    seed_user("mallory@x.com")
    res = client.post("/payments", json=ORDER, headers=auth("mallory@x.com"))
    assert res.status_code == 403
    assert db["payments"].count_documents({}) == 0


def test_payment_listings(client, buyer, seller, admin):
    client.post("/payments", json=ORDER, headers=buyer)

    assert len(client.get("/payments", headers=admin).json()) == 1
    assert len(client.get("/payments/mine", headers=buyer).json()) == 1
    assert len(client.get("/payments/seller", headers=seller).json()) == 1
    assert client.get("/payments", headers=buyer).status_code == 403
    assert client.get("/payments/seller", headers=admin).status_code == 403


def test_admin_marks_payment_paid(client, db, buyer, admin, seller):
    payment_id = client.post("/payments", json=ORDER, headers=buyer).json()["insertedId"]

    assert client.patch(f"/payments/{payment_id}", json={"status": "paid"}, headers=seller).status_code == 403
    assert db["payments"].find_one({})["status"] == "pending"

    res = client.patch(f"/payments/{payment_id}", json={"status": "paid"}, headers=admin)
    assert res.status_code == 200
    assert db["payments"].find_one({})["status"] == "paid"


def test_status_update_on_missing_payment(client, admin):
    res = client.patch(f"/payments/{ObjectId()}", json={"status": "paid"}, headers=admin)
    assert res.status_code == 404
    assert res.json() == {"message": "Payment not found"}
