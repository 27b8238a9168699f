import enum
import hashlib
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from security.events import EventSink, NullEventSink
from security.session_store import FileSessionStore

CREATED_KEY = "_guard_created"
FINGERPRINT_KEY = "_guard_fingerprint"
GUARD_KEYS = frozenset((CREATED_KEY, FINGERPRINT_KEY))

FINGERPRINT_HEADERS = ("User-Agent", "Accept-Language", "Accept-Encoding")


def _prefix(value: Optional[str]) -> str:
    return (value or "")[:16] + "..."


def _header(headers: Mapping, name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value or ""


def holds_data(data: Mapping) -> bool:
    """True when the session carries anything besides the guard bookkeeping."""
    return any(key not in GUARD_KEYS for key in data)


def browser_fingerprint(headers: Mapping) -> str:
    """SHA-256 over the stable browser headers, joined with '|'."""
    parts = [_header(headers, h) for h in FINGERPRINT_HEADERS]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SessionConfig:
    storage_path: str
    cookie_name: str = "__Host-AppAuth"
    regenerate_interval: int = 1800
    lifetime: int = 3600
    gc_probability: int = 1
    gc_divisor: int = 100
    public_root: Optional[str] = None

    @classmethod
    def from_mapping(cls, cfg: Mapping) -> "SessionConfig":
        return cls(
            storage_path=cfg.get("SESSION_STORAGE_PATH"),
            cookie_name=cfg.get("SESSION_COOKIE_NAME", "__Host-AppAuth"),
            regenerate_interval=int(cfg.get("SESSION_REGENERATE_INTERVAL", 1800)),
            lifetime=int(cfg.get("SESSION_LIFETIME_SECONDS", 3600)),
            gc_probability=int(cfg.get("SESSION_GC_PROBABILITY", 1)),
            gc_divisor=int(cfg.get("SESSION_GC_DIVISOR", 100)),
            public_root=cfg.get("PUBLIC_ROOT"),
        )


class SessionStatus(str, enum.Enum):
    CREATED = "created"
    RESUMED = "resumed"
    REGENERATED = "regenerated"
    RENEWED = "renewed"  # destroyed after a fingerprint mismatch and started over


@dataclass
class SessionState:
    session_id: str
    data: dict = field(default_factory=dict)
    status: SessionStatus = SessionStatus.RESUMED


class SessionGuard:
    """
    Binds a session to a hash of stable browser headers and rotates its id.

    New -> Active -> (interval elapsed) -> Active with a new id, same data.
    Active -> (fingerprint mismatch) -> destroyed -> New.

    The hijack event carries fingerprint prefixes only.
    """

    def __init__(
        self,
        config: SessionConfig,
        store: Optional[FileSessionStore] = None,
        events: Optional[EventSink] = None,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config
        self.store = store or FileSessionStore(config.storage_path, public_root=config.public_root)
        self.events = events or NullEventSink()
        self.clock = clock
        self.rng = rng

    def resume(self, session_id: Optional[str], headers: Mapping, remote_addr: str = "") -> SessionState:
        now = int(self.clock())
        fingerprint = browser_fingerprint(headers)

        data = self.store.load(session_id) if session_id else None
        if data is None:
            if session_id:
                # strict mode: ids we did not issue are never adopted
                self.events.fire("session.unknown_id_rejected", {"ip": remote_addr})
            state = self._start(fingerprint, now)
            self._maybe_gc()
            return state

        state = SessionState(session_id, data, SessionStatus.RESUMED)

        created = data.get(CREATED_KEY)
        if not isinstance(created, int) or now - created > self.config.regenerate_interval:
            data[CREATED_KEY] = now
            state.session_id = self.store.rotate(session_id, data)
            state.status = SessionStatus.REGENERATED
            self.events.fire("session.regenerated", {"interval": self.config.regenerate_interval})

        stored = data.get(FINGERPRINT_KEY)
        if stored != fingerprint:
            self.events.fire(
                "session.hijack_detected",
                {
                    "expected_fingerprint": _prefix(stored),
                    "actual_fingerprint": _prefix(fingerprint),
                },
            )
            self.store.destroy(state.session_id)
            state = self._start(fingerprint, now, status=SessionStatus.RENEWED)
            self.events.fire("session.renewed", {"reason": "hijack_protection"})

        self._maybe_gc()
        return state

    def _start(self, fingerprint: str, now: int, status: SessionStatus = SessionStatus.CREATED) -> SessionState:
        data = {CREATED_KEY: now, FINGERPRINT_KEY: fingerprint}
        session_id = self.store.new_id()
        if status is SessionStatus.CREATED:
            self.events.fire("session.created", {"fingerprint": _prefix(fingerprint)})
        return SessionState(session_id, data, status)

    def save(self, state_or_id, data: Optional[dict] = None, create: Optional[bool] = None) -> bool:
        """
        Persist session data. Only sessions started in this request may create
        a file; anything else is written over an existing file or dropped.
        """
        if isinstance(state_or_id, SessionState):
            session_id, data = state_or_id.session_id, state_or_id.data
            if create is None:
                create = state_or_id.status in (SessionStatus.CREATED, SessionStatus.RENEWED)
        else:
            session_id, data = state_or_id, data or {}
        written = self.store.save(session_id, data, create=bool(create))
        if not written:
            self.events.fire("session.stale_write_dropped", {})
        return written

    def is_live(self, session_id: Optional[str]) -> bool:
        return bool(session_id) and self.store.exists(session_id)

    def regenerate(self, session_id: Optional[str], data: dict) -> str:
        """Issue a new id for the same data, e.g. after a privilege change."""
        data[CREATED_KEY] = int(self.clock())
        new_id = self.store.rotate(session_id, data)
        self.events.fire("session.regenerated", {"reason": "explicit"})
        return new_id

    def destroy(self, session_id: str) -> None:
        self.store.destroy(session_id)
        self.events.fire("session.destroyed", {})

    def _maybe_gc(self) -> None:
        if self.config.gc_divisor <= 0 or self.config.gc_probability <= 0:
            return
        if self.rng() < self.config.gc_probability / self.config.gc_divisor:
            removed = self.store.gc(self.config.lifetime, now=self.clock())
            if removed:
                self.events.fire("session.gc", {"removed": removed})

    def cookie_params(self, secure: bool) -> dict:
        # browser-session cookie: no max_age / expires, no domain
        return {
            "key": self.config.cookie_name,
            "path": "/",
            "domain": None,
            "secure": bool(secure),
            "httponly": True,
            "samesite": "Strict",
        }
