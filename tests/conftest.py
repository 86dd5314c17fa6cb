import hashlib
import hmac
import json
import time
import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from mongomock_motor import AsyncMongoMockClient

from app.core import config
from app.core.database import get_db
from app.core.rate_limit import reset_rate_limits
from app.main import app

JWT_SECRET = "test-jwt-secret"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def test_config(monkeypatch):
    monkeypatch.setattr(config, "MONGO_TRANSACTIONS", False)
    monkeypatch.setattr(config, "JWT_SECRET_KEY", JWT_SECRET)
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setattr(config, "KHALTI_SECRET_KEY", "khalti_test_dummy")
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def db():
    return AsyncMongoMockClient()[f"test_{uuid.uuid4().hex[:8]}"]


@pytest.fixture
def seed_course(db):
    async def _seed(course_id="C1", price=20.0, is_free=False, is_published=True, **extra):
        course = {
            "course_id": course_id,
            "title": f"Draping Fundamentals {course_id}",
            "slug": f"draping-{course_id.lower()}",
            "price": price,
            "currency": "usd",
            "is_free": is_free,
            "is_published": is_published,
            "instructor_id": "I1",
            "students": [],
            "total_students": 0,
            "modules": [
                {
                    "module_id": "M1",
                    "chapters": [
                        {"chapter_id": "CH1", "lessons": [{"lesson_id": "L1"}, {"lesson_id": "L2"}]},
                    ],
                },
            ],
            **extra,
        }
        await db.courses.insert_one(course)
        return course
    return _seed


@pytest.fixture
def seed_user(db):
    async def _seed(user_id="U1", **extra):
        user = {
            "user_id": user_id,
            "email": f"{user_id.lower()}@example.com",
            "first_name": "Ada",
            "last_name": "Lovelace",
            **extra,
        }
        await db.users.insert_one(user)
        return user
    return _seed


@pytest.fixture
def make_token():
    def _make(user_id="U1", role="student", **claims):
        payload = {
            "sub": user_id,
            "role": role,
            "email": f"{user_id.lower()}@example.com",
            "name": "Ada Lovelace",
            "exp": int(time.time()) + 3600,
            **claims,
        }
        return jwt.encode(payload, JWT_SECRET, algorithm="HS256")
    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(user_id="U1", role="student"):
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}
    return _headers


@pytest.fixture
def make_stripe_event():
    return _stripe_event


def _stripe_event(event_type, intent_id, course_id="C1", user_id="U1", amount=2000, **intent_fields):
    intent = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount if event_type == "payment_intent.succeeded" else 0,
        "currency": "usd",
        "metadata": {"course_id": course_id, "user_id": user_id},
        **intent_fields,
    }
    return {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": intent},
    }


def sign_stripe_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def signed_stripe_request():
    def _build(event: dict, secret: str = WEBHOOK_SECRET, timestamp=None):
        payload = json.dumps(event)
        return payload, {
            "Stripe-Signature": sign_stripe_payload(payload, secret, timestamp),
            "Content-Type": "application/json",
        }
    return _build


@pytest.fixture
async def client(db):
    app.dependency_overrides[get_db] = lambda: db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
