"""Pytest fixtures: test client, in-memory SQLite, profile factory, Stripe signing."""
import hashlib
import hmac
import os
import time

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

# Test settings (must be set before the app is imported)
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_API_KEYS"] = ""
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_ID_PRO_MONTHLY"] = "price_test_pro"
os.environ["FREE_TIER_LIMIT"] = "10"
os.environ["ANALYSES_PERIOD_DAYS"] = "30"
# High enough that no test trips the /analyze limiter
os.environ["RATE_LIMIT_PER_MINUTE"] = "1000"

from app.core.database import engine, init_db
from app.main import app
from app.models import Profile

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def _fresh_tables():
    """Every test starts with empty tables."""
    init_db()
    yield
    with Session(engine) as s:
        for table in reversed(SQLModel.metadata.sorted_tables):
            s.exec(table.delete())
        s.commit()


@pytest.fixture(scope="function")
def client():
    """TestClient; the lifespan creates the tables."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_profile(db: Session):
    """Inserts a profile (registration lives outside this service)."""
    def _make(user_id: str = "user-1", **fields) -> Profile:
        fields.setdefault("email", f"{user_id}@example.com")
        profile = Profile(id=user_id, **fields)
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile
    return _make


@pytest.fixture
def fetch_profile(db: Session):
    """Reads the stored row, bypassing the session's identity map."""
    def _fetch(user_id: str = "user-1") -> Profile | None:
        db.expire_all()
        return db.get(Profile, user_id)
    return _fetch


@pytest.fixture
def stripe_signature():
    """Stripe-Signature header for payload, signed like Stripe does (HMAC-SHA256 over "t.payload")."""
    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        t = timestamp if timestamp is not None else int(time.time())
        sig = hmac.new(secret.encode(), f"{t}.{payload}".encode(), hashlib.sha256).hexdigest()
        return f"t={t},v1={sig}"
    return _sign
