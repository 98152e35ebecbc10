"""End-to-end tests for the HTTP API through FastAPI's TestClient."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from pitchroom.app import app


@pytest.fixture()
def client(monkeypatch, tmp_path):
    monkeypatch.setenv("PITCHROOM_DATABASE_URL", "sqlite://")
    monkeypatch.setenv("PITCHROOM_JWT_SECRET", "integration-secret")
    monkeypatch.setenv("PITCHROOM_DEMO_PATH", str(tmp_path / "demo.json"))
    monkeypatch.setenv("PITCHROOM_BCRYPT_ROUNDS", "4")
    with TestClient(app) as c:
        yield c


def _signup(client: TestClient, email: str, password: str = "hunter22") -> dict:
    resp = client.post("/api/auth/signup", json={"email": email, "password": password})
    assert resp.status_code == 201, resp.text
    body = resp.json()
    return {"Authorization": f"Bearer {body['token']}", "uid": body["uid"]}


def _auth(user: dict) -> dict:
    return {"Authorization": user["Authorization"]}


@pytest.fixture()
def founder(client):
    return _signup(client, "ada@founders.dev")


@pytest.fixture()
def investor(client, founder):
    user = _signup(client, "vc@capital.dev")
    client.cookies.clear()
    return user


@pytest.fixture()
def pitch(client, founder):
    resp = client.post("/api/pitches", headers=_auth(founder), json={
        "title": "AI Tutor", "founder": "Ada", "sector": "EdTech",
        "location": "NY", "summary": "Personal tutoring.", "equity": 8,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


class TestAuthRoutes:
    def test_signup_signin_session(self, client):
        _signup(client, "ada@founders.dev")
        client.cookies.clear()
        resp = client.post("/api/auth/signin", json={"email": "ada@founders.dev", "password": "hunter22"})
        assert resp.status_code == 200
        assert "pitchroom_session" in resp.cookies

        session = client.get("/api/auth/session").json()["session"]
        assert session["email"] == "ada@founders.dev"

        client.post("/api/auth/signout")
        client.cookies.clear()
        assert client.get("/api/auth/session").json() == {"session": None}

    def test_error_codes(self, client):
        _signup(client, "ada@founders.dev")
        resp = client.post("/api/auth/signup", json={"email": "ada@founders.dev", "password": "hunter22"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "email-in-use"
        assert not resp.json()["detail"].startswith("auth/")

        resp = client.post("/api/auth/signin", json={"email": "ada@founders.dev", "password": "nope-nope"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "invalid-credentials"

    def test_password_reset_request(self, client):
        _signup(client, "ada@founders.dev")
        assert client.post("/api/auth/reset", json={"email": "ada@founders.dev"}).json() == {"ok": True}
        resp = client.post("/api/auth/reset", json={"email": "ghost@founders.dev"})
        assert resp.status_code == 404
        resp = client.post("/api/auth/reset/confirm", json={"token": "bogus", "password": "brand-new"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid-action-code"


class TestPages:
    def test_private_page_redirects_when_signed_out(self, client):
        resp = client.get("/pages/feed", follow_redirects=False)
        assert resp.status_code == 303
        assert resp.headers["location"] == "/pages/signin"

    def test_public_page_when_signed_out(self, client):
        resp = client.get("/pages/signup")
        assert resp.json() == {"page": "signup", "identity": None, "view": None}

    def test_signin_page_redirects_when_signed_in(self, client, founder):
        resp = client.get("/pages/signin", headers=_auth(founder), follow_redirects=False)
        assert resp.status_code == 303
        assert resp.headers["location"] == "/pages/feed"

    def test_feed_page_loads_directory(self, client, founder, pitch):
        body = client.get("/pages/feed", headers=_auth(founder), params={"q": "tutor"}).json()
        assert body["identity"] == "ada@founders.dev"
        assert body["view"]["state"] == "ok"
        assert body["view"]["items"][0]["id"] == pitch["id"]

    def test_chat_page_loads_conversations(self, client, founder):
        body = client.get("/pages/chat", headers=_auth(founder)).json()
        assert body["view"]["state"] == "empty"

    def test_unknown_page(self, client):
        assert client.get("/pages/nowhere").status_code == 404


class TestPitchRoutes:
    def test_requires_session(self, client):
        assert client.get("/api/pitches").status_code == 401

    def test_publish_and_search(self, client, founder, investor, pitch):
        assert pitch["equity_label"] == "8.0% Equity"
        assert pitch["owner_email"] == "ada@founders.dev"

        found = client.get("/api/pitches", headers=_auth(investor), params={"q": "EDTECH"}).json()
        assert [i["id"] for i in found["items"]] == [pitch["id"]]
        missed = client.get("/api/pitches", headers=_auth(investor), params={"q": "fintech"}).json()
        assert missed["items"] == []

    def test_empty_title_rejected(self, client, founder):
        resp = client.post("/api/pitches", headers=_auth(founder), json={"title": "  "})
        assert resp.status_code == 400

    def test_interest_is_idempotent(self, client, founder, investor, pitch):
        url = f"/api/pitches/{pitch['id']}/interest"
        first = client.post(url, headers=_auth(investor)).json()
        second = client.post(url, headers=_auth(investor)).json()
        assert first["created"] is True
        assert second["created"] is False
        assert first["conversation_id"] == second["conversation_id"]

        listing = client.get("/api/pitches", headers=_auth(investor)).json()
        assert listing["items"][0]["interest_count"] == 2

    def test_interest_errors(self, client, founder, pitch):
        assert client.post("/api/pitches/missing/interest", headers=_auth(founder)).status_code == 404
        resp = client.post(f"/api/pitches/{pitch['id']}/interest", headers=_auth(founder))
        assert resp.status_code == 400
        assert "own pitch" in resp.json()["detail"]


class TestChatRoutes:
    def test_conversation_and_chat_flow(self, client, founder, investor, pitch):
        conv_id = client.post(f"/api/pitches/{pitch['id']}/interest", headers=_auth(investor)).json()["conversation_id"]

        founder_list = client.get("/api/conversations", headers=_auth(founder)).json()
        entry = founder_list["entries"][0]
        assert entry["id"] == conv_id
        assert entry["role"] == "founder"
        assert entry["counterpart_email"] == "vc@capital.dev"

        view = client.post("/api/chat/select", headers=_auth(investor), json={"conversation_id": conv_id}).json()
        assert view["state"] == "ok"
        assert view["messages"] == []

        resp = client.post("/api/chat/messages", headers=_auth(investor), json={"text": "Hi Ada!"})
        assert resp.status_code == 201
        mine = client.get("/api/chat", headers=_auth(investor)).json()
        assert [(m["text"], m["mine"]) for m in mine["messages"]] == [("Hi Ada!", True)]

        theirs = client.post("/api/chat/select", headers=_auth(founder), json={"conversation_id": conv_id}).json()
        assert [(m["text"], m["mine"]) for m in theirs["messages"]] == [("Hi Ada!", False)]

        summary = client.get("/api/conversations", headers=_auth(founder)).json()["entries"][0]
        assert summary["last_message"] == "Hi Ada!"

    def test_chat_preconditions(self, client, founder, investor, pitch):
        conv_id = client.post(f"/api/pitches/{pitch['id']}/interest", headers=_auth(investor)).json()["conversation_id"]
        outsider = _signup(client, "other@capital.dev")

        resp = client.post("/api/chat/select", headers=_auth(outsider), json={"conversation_id": conv_id})
        assert resp.status_code == 403
        resp = client.post("/api/chat/select", headers=_auth(outsider), json={"conversation_id": "missing"})
        assert resp.status_code == 404

        assert client.get("/api/chat", headers=_auth(outsider)).json()["state"] == "idle"
        resp = client.post("/api/chat/messages", headers=_auth(outsider), json={"text": "hello"})
        assert resp.status_code == 400

        client.post("/api/chat/select", headers=_auth(investor), json={"conversation_id": conv_id})
        resp = client.post("/api/chat/messages", headers=_auth(investor), json={"text": "   "})
        assert resp.status_code == 400


class TestDemoRoutes:
    def test_demo_feed_lifecycle(self, client):
        feed = client.get("/api/demo/pitches").json()
        assert [i["id"] for i in feed["items"]] == ["demo-1", "demo-2"]

        added = client.post("/api/demo/pitches", json={"title": "Drone Mail", "equity": "SAFE"})
        assert added.status_code == 201
        assert added.json()["equity_label"] == "SAFE"
        assert client.get("/api/demo/pitches").json()["pitch_count"] == 3

        client.delete("/api/demo/pitches")
        assert client.post("/api/demo/seed").json() == {"seeded": 2}
        assert client.get("/api/demo/pitches", params={"q": "ledger"}).json()["items"][0]["id"] == "demo-2"

    def test_role(self, client):
        assert client.get("/api/demo/role").json() == {"role": "Founder"}
        assert client.put("/api/demo/role", json={"role": "investor"}).json() == {"role": "Investor"}
        assert client.get("/api/demo/role").json() == {"role": "Investor"}
        assert client.put("/api/demo/role", json={"role": "Pirate"}).status_code == 422


def test_chat_state_is_per_client(client, founder, investor, pitch):
    conv_id = client.post(f"/api/pitches/{pitch['id']}/interest", headers=_auth(investor)).json()["conversation_id"]
    tab_a = {**_auth(investor), "X-Pitchroom-Client": "tab-a"}
    tab_b = {**_auth(investor), "X-Pitchroom-Client": "tab-b"}

    client.post("/api/chat/select", headers=tab_a, json={"conversation_id": conv_id})
    assert client.get("/api/chat", headers=tab_a).json()["conversation_id"] == conv_id
    assert client.get("/api/chat", headers=tab_b).json()["state"] == "idle"

    client.post("/api/auth/signout", headers=_auth(investor))
    assert len(app.state.chats) == 0
