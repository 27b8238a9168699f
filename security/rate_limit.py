from datetime import timedelta
from flask import request, current_app

from models import db
from models.ip_rate_limit import IpRateLimit
from models.user import utcnow

def _client_ip() -> str:
    # honour X-Forwarded-For only through ProxyFix (PROXY_FIX_X_FOR)
    return request.remote_addr or "unknown"

def check_and_increment(scope: str, window_seconds: int, max_requests: int) -> tuple[bool, int]:
    """
    Returns (allowed, retry_after_seconds).
    Simple fixed window per (scope, IP).
    """
    ip = _client_ip()
    now = utcnow()

    row = IpRateLimit.query.filter_by(scope=scope, ip=ip).first()
    if not row:
        row = IpRateLimit(scope=scope, ip=ip, window_start=now, count=0)
        db.session.add(row)

    window_end = row.window_start + timedelta(seconds=window_seconds)

    # Reset window if expired
    if now >= window_end:
        row.window_start = now
        row.count = 0
        window_end = row.window_start + timedelta(seconds=window_seconds)

    row.count += 1
    db.session.commit()

    if row.count > max_requests:
        retry_after = int((window_end - now).total_seconds())
        return False, max(retry_after, 1)

    return True, 0

def check_and_increment_login_rate() -> tuple[bool, int]:
    return check_and_increment(
        "login",
        current_app.config.get("LOGIN_RATE_WINDOW_SECONDS", 60),
        current_app.config.get("LOGIN_RATE_MAX_REQUESTS", 15),
    )

def bot_rate_limited(_snapshot=None) -> bool:
    """BotScorer predicate: True once the IP exceeds BOT_RATE_LIMIT_MAX_REQUESTS."""
    max_requests = current_app.config.get("BOT_RATE_LIMIT_MAX_REQUESTS")
    if not max_requests:
        return False
    allowed, _ = check_and_increment(
        "bot", current_app.config.get("BOT_RATE_WINDOW_SECONDS", 60), int(max_requests)
    )
    return not allowed
