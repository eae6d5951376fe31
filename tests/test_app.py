"""Tests for the Flask HTTP surface."""

import json
from unittest.mock import MagicMock

import pytest

from app import create_app
from dispatcher import DispatchResult
from settings import Settings


@pytest.fixture
def dispatcher():
    d = MagicMock()
    d.submit.return_value = MagicMock()
    return d


@pytest.fixture
def make_client(registry, dispatcher):
    def _make(**overrides):
        settings = Settings(heartbeat_interval=0.05, **overrides)
        app = create_app(settings, registry=registry, dispatcher=dispatcher)
        app.config["TESTING"] = True
        return app.test_client()

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


def test_options_preflight(client):
    resp = client.open("/api/clients/register", method="OPTIONS")
    assert resp.status_code == 200
    assert "X-Gitlab-Token" in resp.headers["Access-Control-Allow-Headers"]


def test_unknown_route_is_json_404(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Not Found"}


# -- clients ------------------------------------------------------------------


def test_register_client(client, registry):
    resp = client.post(
        "/api/clients/register",
        json={"userId": "u1", "userName": "Alice", "userAgent": "UA", "gitlabBaseUrl": "https://gl.example.com/"},
    )
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "userId": "u1"}
    assert registry.get_client("u1")["gitlabBaseUrl"] == "https://gl.example.com"


def test_register_without_user_id(client):
    resp = client.post("/api/clients/register", json={"userName": "Alice"})
    assert resp.status_code == 400
    assert "userId" in resp.get_json()["error"]


def test_register_non_string_fields(client, registry):
    resp = client.post("/api/clients/register", json={"userId": "u1", "userName": 123, "gitlabBaseUrl": True})
    assert resp.status_code == 200
    client_info = registry.get_client("u1")
    assert client_info["userName"] == "123"
    assert client_info["gitlabBaseUrl"] == ""


def test_register_rejected_leaves_no_entry(client, registry):
    resp = client.post("/api/clients/register", json={"userName": 123})
    assert resp.status_code == 400
    assert registry.stats().total_registered == 0


def test_register_form_encoded(client, registry):
    resp = client.post("/api/clients/register", data={"userId": "u5", "userName": "Eve"})
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "userId": "u5"}
    assert registry.get_client("u5")["userName"] == "Eve"


def test_list_clients(client, registry):
    registry.register("u1", "Alice")
    body = client.get("/api/clients").get_json()
    assert body["clients"][0]["userId"] == "u1"
    assert body["stats"] == {"totalClients": 1, "connectedClients": 0, "totalConnections": 0}


# -- events -------------------------------------------------------------------


def test_events_requires_user_id(client):
    resp = client.get("/events")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "userId is required"}


def test_events_stream(client, registry):
    resp = client.get("/events?userId=u1&gitlabBaseUrl=https://gl.example.com", buffered=False)
    try:
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        assert resp.headers["Cache-Control"] == "no-cache"
        assert registry.connection_count("u1") == 1
        assert registry.any_connected_base_url_hint() == "https://gl.example.com"

        chunks = iter(resp.response)
        first = next(chunks).decode()
        assert json.loads(first[len("data: "):])["type"] == "connected"

        registry.send_to("u1", {"type": "webhook", "eventType": "Push Hook"})
        second = next(chunks).decode()
        assert json.loads(second[len("data: "):])["eventType"] == "Push Hook"

        assert next(chunks).decode() == ": heartbeat\n\n"
    finally:
        resp.close()

    assert registry.connection_count("u1") == 0


# -- webhook ------------------------------------------------------------------


def test_webhook_accepts_and_submits(client, dispatcher):
    payload = {"object_kind": "push", "user_id": 1, "project": {"name": "demo"}}
    resp = client.post("/webhook/gitlab", json=payload, headers={"X-Gitlab-Event": "Push Hook"})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["message"] == "Webhook received and processing"
    dispatcher.submit.assert_called_once()
    submitted_payload, submitted_headers = dispatcher.submit.call_args.args
    assert submitted_payload == payload
    assert submitted_headers.get("X-Gitlab-Event") == "Push Hook"


def test_webhook_response_does_not_wait_for_fan_out(client, dispatcher):
    dispatcher.submit.return_value = MagicMock(result=MagicMock(return_value=DispatchResult(success=False)))
    resp = client.post("/webhook/gitlab", json={}, headers={"X-Gitlab-Event": "Push Hook"})
    assert resp.status_code == 200
    dispatcher.submit.return_value.result.assert_not_called()


def test_webhook_token_mismatch(make_client, dispatcher):
    client = make_client(webhook_secret_token="s3cret")
    resp = client.post("/webhook/gitlab", json={}, headers={"X-Gitlab-Token": "wrong"})
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Unauthorized"}
    dispatcher.submit.assert_not_called()


def test_webhook_token_missing(make_client):
    client = make_client(webhook_secret_token="s3cret")
    assert client.post("/webhook/gitlab", json={}).status_code == 401


def test_webhook_token_match(make_client, dispatcher):
    client = make_client(webhook_secret_token="s3cret")
    resp = client.post("/webhook/gitlab", json={}, headers={"X-Gitlab-Token": "s3cret"})
    assert resp.status_code == 200
    dispatcher.submit.assert_called_once()


def test_webhook_malformed_body(client, dispatcher):
    resp = client.post(
        "/webhook/gitlab", data="{not json", headers={"Content-Type": "application/json", "X-Gitlab-Event": "Push Hook"}
    )
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "Internal Server Error"
    dispatcher.submit.assert_not_called()


def test_webhook_end_to_end_with_real_dispatcher(registry, make_connection):
    from dispatcher import Dispatcher

    settings = Settings(heartbeat_interval=0.05, dispatch_workers=1)
    real = Dispatcher(registry, settings=settings)
    app = create_app(settings, registry=registry, dispatcher=real)
    stream = make_connection()
    registry.connect("u2", stream)
    try:
        resp = app.test_client().post(
            "/webhook/gitlab", json={"user_id": "u2"}, headers={"X-Gitlab-Event": "Push Hook"}
        )
        assert resp.status_code == 200
    finally:
        real.shutdown(wait=True)

    assert len(stream.frames) == 2
    assert json.loads(stream.frames[1][len("data: "):])["targetUsers"] == ["u2"]
