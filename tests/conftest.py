import os

os.environ["ENV"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["BANK_DATA_ENCRYPTION_KEY"] = "test-bank-key"
os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017/marketly_test")

from datetime import datetime

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from utils.indexes import ensure_indexes
from utils.jwt import create_access_token
from utils.stock_ledger import stock_status


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["marketly_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def make_user(db):
    async def _make_user(role: str, **fields) -> dict:
        user = {
            "_id": ObjectId(),
            "name": f"{role} user",
            "phone": str(ObjectId())[-10:],
            "role": role,
            "is_active": True,
            "cart": [],
            "created_at": datetime.utcnow(),
            **fields,
        }
        await db.users.insert_one(user)
        return user

    return _make_user


@pytest.fixture
async def buyer(make_user):
    return await make_user("buyer")


@pytest.fixture
async def other_buyer(make_user):
    return await make_user("buyer")


@pytest.fixture
async def seller(make_user):
    return await make_user(
        "seller",
        seller_profile={
            "brand_name": "Acme Threads",
            "bank_details": {
                "account_holder_name": "Acme Threads",
                "account_number": "123456789012",
                "ifsc_code": "HDFC0001234",
                "bank_name": "HDFC",
            },
        },
    )


@pytest.fixture
async def admin(make_user):
    return await make_user("admin")


@pytest.fixture
def make_product(db):
    async def _make_product(seller: dict, *, quantity: int = 10, price: float = 100.0, **fields) -> dict:
        product = {
            "_id": ObjectId(),
            "name": fields.pop("name", "Cotton Tee"),
            "price": price,
            "seller_id": seller["_id"],
            "category_id": fields.pop("category_id", None),
            "images": [{"url": "https://img.example/tee.jpg"}],
            "stock": {
                "quantity": quantity,
                "low_stock_threshold": 10,
                "status": stock_status(quantity),
            },
            "sold_count": 0,
            "is_active": True,
            **fields,
        }
        await db.products.insert_one(product)
        return product

    return _make_product


@pytest.fixture
def address():
    return {
        "full_name": "Asha Rao",
        "phone": "9876543210",
        "address_line1": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "pincode": "560001",
    }


@pytest.fixture
def auth_headers():
    def _headers(user: dict) -> dict:
        token = create_access_token(user["_id"], user["role"])
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
async def client(db):
    from database import get_db
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
