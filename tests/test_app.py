import hashlib
import os

import pytest

from security.errors import ConfigurationError

RAW = hashlib.sha256(b"integration browser").hexdigest()


def set_cookies(resp, name):
    return [c for c in resp.headers.getlist("Set-Cookie") if c.startswith(f"{name}=")]


def login(client, username, password, **kwargs):
    return client.post("/auth/login", json={"username": username, "password": password}, **kwargs)


def test_health_sets_security_headers(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_guarded_session_cookie_attributes(client):
    resp = client.get("/admin/")
    cookie = set_cookies(resp, "test_session")[0]
    assert "HttpOnly" in cookie
    assert "SameSite=Strict" in cookie
    assert "Max-Age" not in cookie and "Expires" not in cookie


def test_anonymous_requests_store_nothing(app):
    storage = app.config["SESSION_STORAGE_PATH"]
    for _ in range(20):
        resp = app.test_client().get("/health")
        assert set_cookies(resp, "test_session") == []
    assert os.listdir(storage) == []


def test_session_id_is_stable_between_requests(client):
    client.get("/admin/")
    resp = client.get("/health")
    assert set_cookies(resp, "test_session") == []


def test_session_id_in_query_string_is_ignored(client, events):
    resp = client.get("/admin/?test_session=" + "a" * 43)
    assert set_cookies(resp, "test_session")
    assert "session.url_id_rejected" in events.names()


def test_replayed_cookie_after_logout_stays_dead(app, client, users, events):
    login(client, "alice", users["alice"])
    old_sid = client.get_cookie("test_session").value
    client.post("/auth/logout")

    replay = app.test_client()
    replay.set_cookie("test_session", old_sid)
    resp = replay.get("/auth/me")
    assert resp.status_code == 303
    assert "session.unknown_id_rejected" in events.names()
    stored = os.listdir(app.config["SESSION_STORAGE_PATH"])
    assert "sess_" + hashlib.sha256(old_sid.encode()).hexdigest() not in stored


def test_in_flight_request_cannot_revive_logged_out_session(app, client, users):
    login(client, "alice", users["alice"])
    sid = client.get_cookie("test_session").value
    interface = app.session_interface

    # same browser as the logged-in client
    with app.test_request_context(
        "/auth/me", headers={"Cookie": f"test_session={sid}"}, environ_base=dict(client.environ_base)
    ):
        from flask import request

        slow = interface.open_session(app, request)
        assert slow.sid == sid and "auth_user_id" in slow

        client.post("/auth/logout")

        slow["touched"] = True
        response = app.response_class()
        interface.save_session(app, slow, response)

    assert not interface.guard.is_live(sid)
    assert set_cookies(response, "test_session") == []


def test_unsigned_fpid_gets_signed(client, app):
    client.set_cookie("fpid", RAW)
    resp = client.get("/health")
    cookie = set_cookies(resp, "fpid")[0]
    signer = app.extensions["gatekeeper"].signer
    assert f"{RAW}|{signer.sign(RAW)}" in cookie
    assert "HttpOnly" not in cookie
    assert "SameSite=Lax" in cookie


def test_forged_fpid_is_cleared(client):
    client.set_cookie("fpid", f"{RAW}|{'0' * 64}")
    resp = client.get("/health")
    assert set_cookies(resp, "fpid")[0].startswith("fpid=;")


def test_bot_score_is_exposed(client):
    data = client.get("/auth/login").get_json()
    # test client: no Accept headers, no cookies, no fpid
    assert data["bot_score"] == pytest.approx(0.8)


def test_likely_bots_can_be_blocked(app, client):
    app.config["BOT_BLOCK_LIKELY"] = True
    assert client.get("/health").status_code == 403
    resp = client.get("/health", headers={"User-Agent": "Mozilla/5.0", "Accept": "*/*", "Accept-Language": "en"})
    assert resp.status_code == 200


def test_login_flow(client, users):
    client.get("/health")
    resp = login(client, "alice", users["alice"])
    assert resp.status_code == 303
    assert resp.headers["Location"].endswith("/auth/me")
    # fresh session id after authentication
    assert set_cookies(resp, "test_session")

    me = client.get("/auth/me")
    assert me.status_code == 200
    body = me.get_json()
    assert body["username"] == "alice"
    assert body["roles"] == ["admin"]
    assert body["flash"] == {"type": "success", "message": "Welcome back, alice!"}
    assert client.get("/auth/me").get_json()["flash"] is None


def test_invalid_credentials(client, users):
    resp = login(client, "nobody", "x")
    assert resp.headers["Location"].endswith("/auth/login")
    flash = client.get("/auth/login").get_json()["flash"]
    assert flash == {"type": "error", "message": "Invalid username or password."}


def test_protected_route_redirects_and_returns(client, users):
    resp = client.get("/admin/")
    assert resp.status_code == 303
    assert resp.headers["Location"].endswith("/auth/login")
    assert client.get("/auth/login").get_json()["flash"]["type"] == "warning"

    resp = login(client, "alice", users["alice"])
    assert resp.headers["Location"].endswith("/admin/")
    assert client.get("/admin/").status_code == 200


def test_forbidden_without_word(client, users):
    login(client, "bob", users["bob"])
    resp = client.get("/admin/")
    assert resp.status_code == 303
    assert resp.headers["Location"].endswith("/auth/me")


def test_lockout_over_http(app, client, users):
    from models.user import User

    for _ in range(5):
        login(client, "alice", "wrong")
    login(client, "alice", users["alice"])
    flash = client.get("/auth/login").get_json()["flash"]
    assert flash["message"] == "Account is temporarily locked due to too many failed attempts."
    assert client.get("/auth/me").status_code == 303

    with app.app_context():
        alice = User.query.filter_by(username="alice").first()
        assert alice.failed_attempts == 5
        assert alice.locked_until is not None


def test_login_rate_limit(app, client, users):
    app.config["LOGIN_RATE_MAX_REQUESTS"] = 2
    login(client, "nobody", "x")
    login(client, "nobody", "x")
    resp = login(client, "nobody", "x")
    assert resp.status_code == 429


def test_changed_browser_loses_session(client, users, events):
    login(client, "alice", users["alice"])
    assert client.get("/auth/me").status_code == 200

    resp = client.get("/auth/me", headers={"User-Agent": "Something/Else"})
    assert resp.status_code == 303
    assert set_cookies(resp, "test_session")
    assert "session.hijack_detected" in events.names()


def test_session_rotates_after_interval(client, clock, users):
    login(client, "alice", users["alice"])
    clock.advance(1801)
    resp = client.get("/health")
    assert set_cookies(resp, "test_session")


def test_logout(client, users):
    login(client, "alice", users["alice"])
    resp = client.post("/auth/logout")
    assert resp.status_code == 303
    assert resp.headers["Location"].endswith("/auth/login")
    assert client.get("/auth/me").status_code == 303


def test_audit_rows_written(app, client, users):
    from models.audit_log import AuditLog

    login(client, "alice", users["alice"])
    with app.app_context():
        actions = {row.action for row in AuditLog.query.all()}
    assert "auth.login_succeeded" in actions


def test_missing_secret_key_is_fatal(tmp_path):
    from app import create_app

    base = {"SQLALCHEMY_DATABASE_URI": "sqlite://", "SESSION_STORAGE_PATH": str(tmp_path / "s")}
    with pytest.raises(ConfigurationError):
        create_app(dict(base, SECRET_KEY=None, FPID_SECRET_KEY=None))
    with pytest.raises(ConfigurationError):
        create_app(dict(base, SECRET_KEY=None, FPID_SECRET_KEY="short"))


def test_cli_commands(app, users):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["grant-role", "bob", " Editor "])
    assert "bob granted editor" in result.output

    result = runner.invoke(args=["generate-secret-key", "--length", "48"])
    assert len(result.output.strip()) == 48

    result = runner.invoke(args=["create-user", "carol", "--password", "pw-123456"])
    assert "carol created" in result.output
