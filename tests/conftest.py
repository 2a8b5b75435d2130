"""Pytest fixtures for storefront tests."""

import io
from datetime import datetime, timedelta, timezone
from pathlib import PurePath

import mongomock
import pytest
from fastapi.testclient import TestClient


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAssetHost:
    """Records uploads and deletions instead of talking to Cloudinary."""

    def __init__(self):
        self.uploaded = []
        self.destroyed = []

    def upload(self, fileobj, filename):
        public_id = f"ecommerce_products/{PurePath(filename).stem}-{len(self.uploaded)}"
        self.uploaded.append((filename, fileobj.read()))
        return f"https://res.cloudinary.com/demo/image/upload/{public_id}.jpg", public_id

    def destroy(self, public_id):
        self.destroyed.append(public_id)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    return mongomock.MongoClient().storefront_test


@pytest.fixture
def asset_host():
    return FakeAssetHost()


@pytest.fixture
def api_client(db, asset_host, clock):
    """Test client wired to an in-memory database and fake image host."""
    from assets import get_asset_host
    from database import get_db
    from lockout import RequestRateLimiter, get_clock, get_rate_limiter
    from main import app

    limiter = RequestRateLimiter()
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_asset_host] = lambda: asset_host
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def owner_headers(api_client):
    """Register the single admin account and return its auth header."""
    response = api_client.post(
        "/api/register", json={"username": "owner", "password": "correct-horse"}
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def make_product(api_client, owner_headers):
    """Upload a product through the API and return its JSON."""

    def _make(title="Ceramic Mug", price=12.5, sold_out=False, description=None):
        response = api_client.post(
            "/api/products",
            data={
                "title": title,
                "description": description or f"A fine {title.lower()}",
                "price": str(price),
                "soldOut": "true" if sold_out else "false",
            },
            files={"image": (f"{title.lower().replace(' ', '-')}.jpg", io.BytesIO(b"jpeg-bytes"), "image/jpeg")},
            headers=owner_headers,
        )
        assert response.status_code == 201, response.text
        return response.json()["product"]

    return _make
