"""
End-to-end tests for the presence relay API endpoints.

These tests verify the complete HTTP API functionality including heartbeats,
presence aggregation, departures, rate limiting and the origin policy.
"""

import pytest
from fastapi.testclient import TestClient

from presence_relay.config import Settings
from presence_relay.errors import StoreError
from presence_relay.kv import MemoryKeyValueStore
from presence_relay.server import create_app

SESSION_ID = "abcdefgh12"


class FailingKeyValueStore(MemoryKeyValueStore):
    """Backend whose every network operation fails."""

    async def get(self, key):
        raise StoreError("connection refused")

    async def put(self, key, value, ttl):
        raise StoreError("connection refused")

    async def delete(self, key):
        raise StoreError("connection refused")

    async def list_keys(self, prefix, cursor=None, limit=1000):
        raise StoreError("connection refused")


class BrokenKeyValueStore(MemoryKeyValueStore):
    """Backend that fails with an unexpected error type."""

    async def list_keys(self, prefix, cursor=None, limit=1000):
        raise RuntimeError("backend exploded")


@pytest.fixture
def client(kv, clock):
    app = create_app(kv, Settings(), clock=clock)
    with TestClient(app) as client:
        yield client


def _leave(client, session_id):
    return client.request("DELETE", "/api/presence", json={"sessionId": session_id})


# MARK: - Sync


class TestAPISync:
    """Integration tests covering the complete application flow."""

    def test_heartbeat_then_presence(self, client):
        response = client.post(
            "/api/heartbeat", json={"sessionId": SESSION_ID, "mood": "connection"}
        )
        assert response.status_code == 200
        assert response.json() == {"success": True}

        presence = client.get("/api/presence")
        assert presence.status_code == 200
        assert presence.json() == {"count": 1, "moods": {"connection": 1}}
        assert presence.headers["cache-control"] == "no-store"

    def test_eleventh_heartbeat_is_rate_limited(self, client):
        for _ in range(10):
            assert client.post("/api/heartbeat", json={"sessionId": SESSION_ID}).status_code == 200

        response = client.post("/api/heartbeat", json={"sessionId": SESSION_ID})
        assert response.status_code == 429
        assert response.json() == {"error": "Rate limit exceeded"}

    def test_rate_limit_is_per_session(self, client):
        for _ in range(10):
            client.post("/api/heartbeat", json={"sessionId": SESSION_ID})

        response = client.post("/api/heartbeat", json={"sessionId": "another-session"})
        assert response.status_code == 200

    def test_rate_limit_recovers_after_window(self, client, clock):
        for _ in range(10):
            client.post("/api/heartbeat", json={"sessionId": SESSION_ID})
        assert client.post("/api/heartbeat", json={"sessionId": SESSION_ID}).status_code == 429

        clock.advance(60)
        assert client.post("/api/heartbeat", json={"sessionId": SESSION_ID}).status_code == 200

    def test_short_session_id_is_rejected(self, client):
        response = client.post("/api/heartbeat", json={"sessionId": "short"})
        assert response.status_code == 400
        assert "sessionId" in response.json()["error"]

    def test_unknown_mood_is_rejected(self, client):
        response = client.post(
            "/api/heartbeat", json={"sessionId": SESSION_ID, "mood": "not-a-mood"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid mood value"}

        # An explicit null is not an omitted mood
        response = client.post("/api/heartbeat", json={"sessionId": SESSION_ID, "mood": None})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid mood value"}

        # Nothing was written
        assert client.get("/api/presence").json() == {"count": 0, "moods": {}}

    def test_invalid_requests_do_not_consume_rate_limit(self, client):
        for _ in range(15):
            client.post("/api/heartbeat", json={"sessionId": SESSION_ID, "mood": "bogus"})

        response = client.post("/api/heartbeat", json={"sessionId": SESSION_ID})
        assert response.status_code == 200

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"sessionId": 12345678},
            {"sessionId": None},
            {"sessionId": "has spaces in it"},
            ["abcdefgh12"],
        ],
    )
    def test_malformed_heartbeat_bodies(self, client, body):
        response = client.post("/api/heartbeat", json=body)
        assert response.status_code == 400
        assert "error" in response.json()

    def test_non_json_body(self, client):
        response = client.post(
            "/api/heartbeat",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert "error" in response.json()

    def test_empty_presence(self, client):
        response = client.get("/api/presence")
        assert response.status_code == 200
        assert response.json() == {"count": 0, "moods": {}}

    def test_leave_decreases_count_by_one(self, client):
        client.post("/api/heartbeat", json={"sessionId": SESSION_ID, "mood": "release"})
        client.post("/api/heartbeat", json={"sessionId": "other-session", "mood": "release"})
        before = client.get("/api/presence").json()["count"]

        response = _leave(client, SESSION_ID)
        assert response.status_code == 200
        assert response.json() == {"success": True}

        after = client.get("/api/presence").json()
        assert after["count"] == before - 1
        assert after["moods"] == {"release": 1}

    def test_leave_is_idempotent(self, client):
        assert _leave(client, SESSION_ID).status_code == 200
        assert _leave(client, SESSION_ID).status_code == 200

    def test_leave_validates_session_id(self, client):
        response = _leave(client, "bad!")
        assert response.status_code == 400

    def test_presence_expires_without_heartbeat(self, client, clock):
        client.post("/api/heartbeat", json={"sessionId": SESSION_ID, "mood": "gratitude"})
        clock.advance(61)
        assert client.get("/api/presence").json() == {"count": 0, "moods": {}}

    def test_heartbeat_without_mood_counts_but_has_no_mood(self, client):
        client.post("/api/heartbeat", json={"sessionId": SESSION_ID})
        assert client.get("/api/presence").json() == {"count": 1, "moods": {}}

    def test_mood_change_replaces_previous_mood(self, client):
        client.post("/api/heartbeat", json={"sessionId": SESSION_ID, "mood": "gratitude"})
        client.post("/api/heartbeat", json={"sessionId": SESSION_ID, "mood": "presence"})

        assert client.get("/api/presence").json() == {"count": 1, "moods": {"presence": 1}}

    def test_health(self, client):
        response = client.get("/api/")
        assert response.status_code == 200
        assert response.json() == {"name": "Breathe Together", "status": "ok"}

    def test_client_config(self, client):
        response = client.get("/api/config")
        assert response.status_code == 200
        assert response.json() == {
            "heartbeatIntervalMs": 30000,
            "presenceTtlSeconds": 60,
            "supportsWebSocket": False,
            "version": 2,
        }

    def test_unknown_route(self, client):
        response = client.get("/api/room")
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}

    def test_wrong_method(self, client):
        response = client.put("/api/presence", json={})
        assert response.status_code == 405
        assert "error" in response.json()


# MARK: - Store failures


class TestStoreFailures:
    """Backend failures map to a generic 500."""

    def setup_method(self):
        self.app = create_app(FailingKeyValueStore(), Settings())

    @pytest.mark.parametrize(
        "method, path, body",
        [
            ("POST", "/api/heartbeat", {"sessionId": SESSION_ID}),
            ("GET", "/api/presence", None),
            ("DELETE", "/api/presence", {"sessionId": SESSION_ID}),
        ],
    )
    def test_store_error_is_500(self, method, path, body):
        with TestClient(self.app) as client:
            response = client.request(method, path, json=body)

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_validation_happens_before_store(self):
        with TestClient(self.app) as client:
            response = client.post("/api/heartbeat", json={"sessionId": "short"})
        assert response.status_code == 400


# MARK: - CORS


class TestCORS:
    """Origin policy on /api/* responses."""

    def test_cors_headers_on_every_api_response(self, client):
        response = client.get("/api/presence")

        assert response.headers["access-control-allow-methods"] == "GET, POST, DELETE, OPTIONS"
        assert response.headers["access-control-allow-headers"] == "Content-Type"
        assert response.headers["access-control-max-age"] == "86400"
        # No Origin header means no Allow-Origin echo
        assert "access-control-allow-origin" not in response.headers

    @pytest.mark.parametrize(
        "origin",
        [
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "https://breathe-together.example.com",
            "https://preview.breathe-together.pages.dev",
        ],
    )
    def test_allowed_origins_are_echoed(self, client, origin):
        response = client.get("/api/presence", headers={"Origin": origin})
        assert response.headers["access-control-allow-origin"] == origin

    def test_unknown_origin_is_not_echoed(self, client):
        response = client.get("/api/presence", headers={"Origin": "https://evil.example"})

        assert response.status_code == 200
        assert "access-control-allow-origin" not in response.headers
        assert response.headers["access-control-allow-methods"] == "GET, POST, DELETE, OPTIONS"

    def test_preflight_short_circuits(self, client):
        response = client.options(
            "/api/heartbeat",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 204
        assert response.content == b""
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
        assert response.headers["access-control-max-age"] == "86400"

    def test_cors_headers_on_errors(self, client):
        response = client.post(
            "/api/heartbeat",
            json={"sessionId": "short"},
            headers={"Origin": "http://localhost:5173"},
        )
        assert response.status_code == 400
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"

    def test_configured_domain(self, kv, clock):
        settings = Settings(allowed_origin_substring="example.org")
        with TestClient(create_app(kv, settings, clock=clock)) as client:
            allowed = client.get("/api/", headers={"Origin": "https://app.example.org"})
            rejected = client.get(
                "/api/", headers={"Origin": "https://breathe-together.app"}
            )

        assert allowed.headers["access-control-allow-origin"] == "https://app.example.org"
        assert "access-control-allow-origin" not in rejected.headers

    def test_cors_headers_on_unexpected_errors(self):
        app = create_app(BrokenKeyValueStore(), Settings())
        with TestClient(app) as client:
            response = client.get(
                "/api/presence", headers={"Origin": "http://localhost:5173"}
            )

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
        assert response.headers["access-control-allow-methods"] == "GET, POST, DELETE, OPTIONS"
        assert response.headers["access-control-max-age"] == "86400"
