"""
Tests for the app-level endpoints in main.py (health, categories) and the
lazily created scan pipeline.
"""
import pytest
from httpx import ASGITransport, AsyncClient

from services.categories import CANONICAL_CATEGORIES


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("IMAGE_DIR", str(tmp_path / "images"))
    from main import app as main_app
    return main_app


@pytest.mark.asyncio
async def test_health(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_categories_are_canonical(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/api/categories")
    assert resp.status_code == 200
    assert resp.json() == CANONICAL_CATEGORIES
    assert "Other" in resp.json()


@pytest.mark.asyncio
async def test_unknown_scan_status_creates_pipeline(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/api/receipts/scan/not-running")
    assert resp.status_code == 404
    assert app.state.pipeline.sessions == {}
