from flask import Blueprint, jsonify

from utils.auth_context import get_auth_guard, require_auth

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.get("/")
@require_auth("admin")
def dashboard():
    user = get_auth_guard().user()
    return jsonify(message="Welcome to the admin dashboard", user=user.username), 200
