from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import current_app, g, redirect, request, session

from security.auth_guard import AuthConfig, AuthGuard, Redirect
from security.bot_detector import BotScorer
from security.events import EventSink
from security.fingerprint import FingerprintSigner
from security.session_data import AuthSession, MappingSessionStore
from security.session_guard import SessionGuard

EXTENSION_KEY = "gatekeeper"


@dataclass
class SecurityComponents:
    signer: FingerprintSigner
    scorer: BotScorer
    session_guard: SessionGuard
    auth_config: AuthConfig
    events: EventSink
    users: object
    roles: object


def components() -> SecurityComponents:
    return current_app.extensions[EXTENSION_KEY]


def get_auth_guard() -> AuthGuard:
    guard: Optional[AuthGuard] = g.get("auth_guard")
    if guard is None:
        sec = components()
        guard = AuthGuard(
            sec.auth_config,
            users=sec.users,
            roles=sec.roles,
            session=AuthSession(MappingSessionStore(session)),
            events=sec.events,
        )
        g.auth_guard = guard
    return guard


def load_current_user():
    g.user = get_auth_guard().user()


def as_response(result: Redirect):
    return redirect(result.location, code=303)


def require_auth(*words: str):
    """
    Usage: @require_auth() or @require_auth("admin", "editor") (any of).
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            required = list(words) if words else None
            guard = get_auth_guard()
            result = guard.require_auth(required)
            if isinstance(result, Redirect):
                if result.reason == "login_required":
                    guard.set_return_url(request.full_path.rstrip("?"))
                return as_response(result)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


login_required = require_auth()
