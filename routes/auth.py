from flask import Blueprint, request, jsonify, g

from security.rate_limit import check_and_increment_login_rate
from utils.audit import log_event
from utils.auth_context import as_response, get_auth_guard, login_required


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _flash_payload():
    flash = get_auth_guard().get_flash()
    if not flash:
        return None
    kind, message = flash
    return {"type": kind, "message": message}


@auth_bp.get("/login")
def login_page():
    return jsonify(flash=_flash_payload(), bot_score=g.bot_score.score), 200


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or request.form
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""

    allowed, retry_after = check_and_increment_login_rate()
    if not allowed:
        log_event("auth.login_rate_limited", metadata={"retry_after": retry_after})
        return jsonify(error="Too many login requests. Slow down.", retry_after_seconds=retry_after), 429

    return as_response(get_auth_guard().login(username, password))


@auth_bp.post("/logout")
def logout():
    return as_response(get_auth_guard().logout())


@auth_bp.get("/me")
@login_required
def me():
    guard = get_auth_guard()
    user = guard.user()
    return jsonify(
        id=user.id,
        username=user.username,
        roles=guard.auth_words(),
        flash=_flash_payload(),
    ), 200
