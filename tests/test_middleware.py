# tests/test_middleware.py
"""Tests for linkgrab/transport/middleware.py: request ID, visitor stats, error handling."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from linkgrab.infra.usage_stats import UsageStats
from linkgrab.transport.middleware import (
    RequestIDMiddleware,
    ErrorHandlingMiddleware,
    VisitorStatsMiddleware,
)


def _build_app(raise_for: set[str] | None = None):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    app.state.usage_stats = UsageStats()
    # Order matters: ErrorHandling wraps RequestID
    app.add_middleware(VisitorStatsMiddleware, exclude_paths=("/health",))
    app.add_middleware(ErrorHandlingMiddleware, webhook_path="/bot")
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.get("/health")
    def health_endpoint():
        return {"status": "healthy"}

    @app.post("/bot")
    def webhook_endpoint():
        if "/bot" in raise_for:
            raise RuntimeError("webhook boom")
        return {"ok": True}

    return app


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        app = _build_app()
        client = TestClient(app)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert "X-Request-ID" in resp.headers
        # Should be a UUID-style string
        rid = resp.headers["X-Request-ID"]
        assert len(rid) >= 32  # UUID has 36 chars with dashes

    def test_preserves_existing_request_id(self):
        app = _build_app()
        client = TestClient(app)
        custom_id = "my-custom-request-id-123"
        resp = client.get("/test", headers={"X-Request-ID": custom_id})
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == custom_id


# ============================================================================
# VisitorStatsMiddleware
# ============================================================================

class TestVisitorStatsMiddleware:
    def test_unique_visitors(self):
        app = _build_app()
        client = TestClient(app)
        client.get("/test")
        client.get("/test")
        assert app.state.usage_stats.summary()["website visitors"] == 1

    def test_excluded_paths_not_counted(self):
        app = _build_app()
        client = TestClient(app)
        client.get("/health")
        client.post("/bot")
        assert app.state.usage_stats.summary()["website visitors"] == 0


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        app = _build_app()
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_webhook_error_returns_200(self):
        app = _build_app(raise_for={"/bot"})
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.post("/bot")
        assert resp.status_code == 200
        assert resp.json() == {"ok": False}

    def test_generic_error_returns_500(self):
        app = _build_app(raise_for={"/test"})
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 500
        data = resp.json()
        assert "error" in data
        assert "request_id" in data
