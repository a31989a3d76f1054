import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import issue_token
from config import Settings
from database import USERS
from main import create_app


class FakePaymentProvider:
    def __init__(self):
        self.amounts = []

    def create_intent(self, amount: int) -> dict:
        self.amounts.append(amount)
        return {"id": f"pi_test_{len(self.amounts)}", "clientSecret": f"pi_test_{len(self.amounts)}_secret"}


@pytest.fixture
def settings():
    return Settings(token_secret="test-secret", settlement_mode="compensate", log_level="WARNING")


@pytest.fixture
def db():
    return mongomock.MongoClient()["MedEasyTest"]


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def app(settings, db, provider):
    return create_app(settings, database=db, payment_provider=provider)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth(settings):
    def headers(email: str) -> dict:
        return {"Authorization": f"Bearer {issue_token(email, settings)}"}
    return headers


@pytest.fixture
def seed_user(db):
    def seed(email: str, role: str = "buyer", name: str = "Test") -> str:
        return str(db[USERS].insert_one({"name": name, "email": email, "role": role}).inserted_id)
    return seed


@pytest.fixture
def admin(seed_user, auth):
    seed_user("admin@medeasy.com", "admin")
    return auth("admin@medeasy.com")


@pytest.fixture
def seller(seed_user, auth):
    seed_user("seller@medeasy.com", "seller")
    return auth("seller@medeasy.com")


@pytest.fixture
def buyer(seed_user, auth):
    seed_user("buyer@medeasy.com", "buyer")
    return auth("buyer@medeasy.com")
