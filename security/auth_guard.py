import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Mapping, Optional, Protocol, Union

from security.errors import ConfigurationError
from security.events import EventSink, NullEventSink
from security.password import verify_password
from security.session_data import AuthSession

INVALID_CREDENTIALS = "Invalid username or password."
ACCOUNT_LOCKED = "Account is temporarily locked due to too many failed attempts."
LOCKED_NOW = "Too many failed attempts. Account locked."
SESSION_EXPIRED = "Your session has expired due to inactivity."
LOGIN_REQUIRED = "Please log in to access this page."
FORBIDDEN = "You do not have permission to access this page."
LOGGED_OUT = "You have been logged out successfully."


@dataclass
class CredentialRecord:
    id: int
    username: str
    password_hash: str
    failed_attempts: int = 0
    last_failed: Optional[datetime] = None
    locked_until: Optional[datetime] = None


class UserStore(Protocol):
    def find_by_username(self, username: str) -> Optional[CredentialRecord]: ...

    def find_by_id(self, user_id: int) -> Optional[CredentialRecord]: ...

    def save(self, record: CredentialRecord) -> None: ...


class RoleStore(Protocol):
    def roles_for_user(self, user_id: int) -> List[str]: ...


@dataclass(frozen=True)
class Redirect:
    location: str
    reason: str = ""


@dataclass(frozen=True)
class Continue:
    pass


CONTINUE = Continue()
GuardResult = Union[Redirect, Continue]


@dataclass(frozen=True)
class AuthConfig:
    max_attempts: int = 5
    lockout_seconds: int = 900
    timeout_seconds: int = 3600
    login_url: str = "/auth/login"
    after_login_url: str = "/"
    after_logout_url: str = "/"
    forbidden_url: str = "/"
    report_remaining_attempts: bool = True

    @classmethod
    def from_mapping(cls, cfg: Mapping) -> "AuthConfig":
        return cls(
            max_attempts=int(cfg.get("MAX_LOGIN_ATTEMPTS", 5)),
            lockout_seconds=int(cfg.get("LOCKOUT_SECONDS", 900)),
            timeout_seconds=int(cfg.get("SESSION_TIMEOUT_SECONDS", 3600)),
            login_url=cfg.get("LOGIN_URL", "/auth/login"),
            after_login_url=cfg.get("AFTER_LOGIN_URL", "/"),
            after_logout_url=cfg.get("AFTER_LOGOUT_URL", "/"),
            forbidden_url=cfg.get("FORBIDDEN_URL", "/"),
            report_remaining_attempts=bool(cfg.get("REPORT_REMAINING_ATTEMPTS", True)),
        )


def normalize_word(word: str) -> str:
    return (word or "").strip().lower()


def is_local_url(url) -> bool:
    return (
        isinstance(url, str)
        and url.startswith("/")
        and not url.startswith("//")
        and "\\" not in url
        and "\n" not in url
        and "\r" not in url
    )


class AuthGuard:
    """
    Login / lockout / inactivity-timeout state machine.

    LoggedOut --login ok--> Authenticated --idle > timeout--> LoggedOut
    LoggedOut --max failures--> Locked --lockout elapsed--> LoggedOut

    Operations that end the request return a Redirect; the caller performs
    the transport side effect.
    """

    def __init__(
        self,
        config: AuthConfig,
        users: UserStore,
        roles: RoleStore,
        session: AuthSession,
        events: Optional[EventSink] = None,
        password_verifier: Callable[[str, str], bool] = verify_password,
        clock: Callable[[], float] = time.time,
    ):
        if users is None:
            raise ConfigurationError("A user store must be registered before using AuthGuard")
        if roles is None:
            raise ConfigurationError("A role store must be registered before using AuthGuard")
        self.config = config
        self.users = users
        self.roles = roles
        self.session = session
        self.events = events or NullEventSink()
        self.verify_password = password_verifier
        self.clock = clock

    def _now(self) -> datetime:
        # naive UTC, matching how the user store persists timestamps
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).replace(tzinfo=None)

    # -- login / logout ----------------------------------------------------

    def login(self, username: str, password: str) -> Redirect:
        user = self.users.find_by_username(username)
        if user is None:
            self.events.fire("auth.login_failed", {"reason": "invalid_credentials"})
            self.session.set_flash("error", INVALID_CREDENTIALS)
            return Redirect(self.config.login_url, "invalid_credentials")

        now = self._now()
        if user.locked_until is not None and user.locked_until > now:
            self.events.fire("auth.login_locked", {"user_id": user.id})
            self.session.set_flash("error", ACCOUNT_LOCKED)
            return Redirect(self.config.login_url, "locked")

        if not self.verify_password(password, user.password_hash):
            return self._failed_login(user, now)

        self._successful_login(user)
        target = self.session.pop_return_url()
        if not is_local_url(target):
            target = self.config.after_login_url
        return Redirect(target, "authenticated")

    def _failed_login(self, user: CredentialRecord, now: datetime) -> Redirect:
        user.failed_attempts = (user.failed_attempts or 0) + 1
        user.last_failed = now
        reason = "invalid_credentials"
        if user.failed_attempts >= self.config.max_attempts:
            user.locked_until = now + timedelta(seconds=self.config.lockout_seconds)
            reason = "locked_now"
            self.session.set_flash("error", LOCKED_NOW)
        elif self.config.report_remaining_attempts:
            remaining = self.config.max_attempts - user.failed_attempts
            self.session.set_flash("error", f"{INVALID_CREDENTIALS} {remaining} attempts remaining.")
        else:
            self.session.set_flash("error", INVALID_CREDENTIALS)
        self.users.save(user)
        self.events.fire(
            "auth.login_failed",
            {"user_id": user.id, "failed_attempts": user.failed_attempts, "locked_now": reason == "locked_now"},
        )
        return Redirect(self.config.login_url, reason)

    def _successful_login(self, user: CredentialRecord) -> None:
        user.failed_attempts = 0
        user.last_failed = None
        user.locked_until = None
        self.users.save(user)

        now = int(self.clock())
        # fresh id for the privileged session
        self.session.regenerate()
        self.session.establish(user.id, now)
        self.session.set_flash("success", f"Welcome back, {user.username}!")
        self.events.fire("auth.login_succeeded", {"user_id": user.id})

    def logout(self) -> Redirect:
        user_id = self.session.user_id
        self.session.clear()
        self.session.regenerate()
        self.session.set_flash("success", LOGGED_OUT)
        self.events.fire("auth.logout", {"user_id": user_id})
        return Redirect(self.config.after_logout_url, "logged_out")

    def force_login(self, message: Optional[str] = None) -> Redirect:
        self.session.set_flash("warning", message or LOGIN_REQUIRED)
        return Redirect(self.config.login_url, "login_required")

    # -- session state -----------------------------------------------------

    def is_logged_in(self) -> bool:
        if self.session.user_id is None:
            return False
        now = int(self.clock())
        last_activity = self.session.last_activity
        if not isinstance(last_activity, (int, float)) or now - last_activity > self.config.timeout_seconds:
            user_id = self.session.user_id
            self.session.clear()
            self.session.set_flash("warning", SESSION_EXPIRED)
            self.events.fire("auth.session_timeout", {"user_id": user_id})
            return False
        # sliding expiration
        self.session.touch(now)
        return True

    def user(self) -> Optional[CredentialRecord]:
        if not self.is_logged_in():
            return None
        return self.users.find_by_id(self.session.user_id)

    def set_return_url(self, url: str) -> None:
        if is_local_url(url):
            self.session.stash_return_url(url)

    def get_flash(self):
        return self.session.get_flash()

    # -- authorization -----------------------------------------------------

    def auth_words(self) -> List[str]:
        if not self.is_logged_in():
            return []
        words = (normalize_word(w) for w in self.roles.roles_for_user(self.session.user_id))
        return list(dict.fromkeys(w for w in words if w))

    def is_authorized(self, word: str) -> bool:
        return normalize_word(word) in self.auth_words()

    def is_authorized_any(self, words: Iterable[str]) -> bool:
        held = set(self.auth_words())
        return any(normalize_word(w) in held for w in words)

    def is_authorized_all(self, words: Iterable[str]) -> bool:
        words = list(words)
        if not self.is_logged_in():
            return False
        held = set(self.auth_words())
        return all(normalize_word(w) in held for w in words)

    def require_auth(self, required: Union[str, Iterable[str], None] = None) -> GuardResult:
        if not self.is_logged_in():
            return self.force_login()
        if required is None:
            return CONTINUE
        if isinstance(required, str):
            allowed = self.is_authorized(required)
        else:
            allowed = self.is_authorized_any(required)
        if not allowed:
            self.session.set_flash("error", FORBIDDEN)
            self.events.fire("auth.forbidden", {"user_id": self.session.user_id})
            return Redirect(self.config.forbidden_url, "forbidden")
        return CONTINUE
