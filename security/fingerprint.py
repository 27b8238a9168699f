import enum
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from security.errors import ConfigurationError, ValidationError
from security.events import EventSink, NullEventSink

FPID_COOKIE = "fpid"
FPID_MAX_AGE = 365 * 24 * 60 * 60
MIN_KEY_BYTES = 32

_HEX64 = re.compile(r"[0-9a-f]{64}")
_SIGNED = re.compile(r"([0-9a-f]{64})\|([0-9a-f]{64})")


class FpidState(str, enum.Enum):
    MISSING = "missing"
    MALFORMED = "malformed"
    UNSIGNED = "unsigned"
    VALID = "valid"
    FORGED = "forged"


class CookieAction(str, enum.Enum):
    NONE = "none"
    SET = "set"
    CLEAR = "clear"


@dataclass(frozen=True)
class Reconciliation:
    action: CookieAction
    value: Optional[str] = None


def is_raw_fingerprint(value) -> bool:
    return isinstance(value, str) and _HEX64.fullmatch(value) is not None


def generate_secret_key(length: int = 64) -> str:
    """Random hex key suitable for FingerprintSigner.configure()."""
    if length < MIN_KEY_BYTES:
        raise ValidationError(f"Key length must be at least {MIN_KEY_BYTES} characters")
    return secrets.token_hex(length // 2 + length % 2)[:length]


class FingerprintSigner:
    """
    HMAC-SHA256 signer for the client fingerprint (fpid) cookie.

    The cookie holds ``raw`` (64 lowercase hex chars, computed client-side)
    or ``raw|hmac(raw)`` once the server has approved it. Verification is
    fail-closed and constant-time.
    """

    def __init__(self, secret_key: Union[str, bytes, None] = None, events: Optional[EventSink] = None):
        self._key: Optional[bytes] = None
        self.events = events or NullEventSink()
        if secret_key is not None:
            self.configure(secret_key)

    def configure(self, secret_key: Union[str, bytes]) -> None:
        key = secret_key.encode("utf-8") if isinstance(secret_key, str) else secret_key
        if not key:
            raise ConfigurationError("Fingerprint secret key cannot be empty")
        if len(key) < MIN_KEY_BYTES:
            raise ConfigurationError(
                f"Fingerprint secret key must be at least {MIN_KEY_BYTES} bytes for HMAC-SHA256"
            )
        self._key = bytes(key)
        self.events.fire("fingerprint.key_configured", {"key_length": len(key)})

    @property
    def is_configured(self) -> bool:
        return self._key is not None

    def _require_key(self) -> bytes:
        if self._key is None:
            raise ConfigurationError(
                "FingerprintSigner is not configured; call configure(secret_key) first"
            )
        return self._key

    def sign(self, raw: str) -> str:
        key = self._require_key()
        if not is_raw_fingerprint(raw):
            self.events.fire("fingerprint.invalid_raw", {"raw_prefix": str(raw)[:16]})
            raise ValidationError("Raw fingerprint must be a 64-character lowercase SHA-256 hex string")
        return hmac.new(key, raw.encode("ascii"), hashlib.sha256).hexdigest()

    def verify(self, raw: str, signature: str) -> bool:
        if self._key is None:
            return False
        if not is_raw_fingerprint(raw) or not is_raw_fingerprint(signature):
            self.events.fire("fingerprint.invalid_signature_format", {"raw_prefix": str(raw)[:16]})
            return False
        expected = self.sign(raw)
        if not hmac.compare_digest(expected, signature):
            self.events.fire("fingerprint.signature_mismatch", {"raw_prefix": raw[:16]})
            return False
        return True

    def classify(self, cookie_value: Optional[str]) -> FpidState:
        if not cookie_value:
            return FpidState.MISSING
        if is_raw_fingerprint(cookie_value):
            return FpidState.UNSIGNED
        match = _SIGNED.fullmatch(cookie_value)
        if match is None:
            self.events.fire("fingerprint.malformed", {"length": len(cookie_value)})
            return FpidState.MALFORMED
        if not self.is_configured:
            # cannot tell valid from forged without a key; stay conservative
            return FpidState.MALFORMED
        raw, signature = match.groups()
        return FpidState.VALID if self.verify(raw, signature) else FpidState.FORGED

    def reconcile(self, cookie_value: Optional[str]) -> Reconciliation:
        """Decide what the response should do with the incoming fpid cookie."""
        self._require_key()
        state = self.classify(cookie_value)
        if state is FpidState.UNSIGNED:
            signed = f"{cookie_value}|{self.sign(cookie_value)}"
            self.events.fire("fingerprint.signed", {"raw_prefix": cookie_value[:16]})
            return Reconciliation(CookieAction.SET, signed)
        if state in (FpidState.MALFORMED, FpidState.FORGED):
            self.events.fire("fingerprint.cleared", {"state": state.value})
            return Reconciliation(CookieAction.CLEAR)
        return Reconciliation(CookieAction.NONE)

    def fingerprint(self, cookie_value: Optional[str]) -> Optional[str]:
        """Raw fingerprint, only when the cookie carries a valid signature."""
        if self.classify(cookie_value) is not FpidState.VALID:
            return None
        return cookie_value.split("|", 1)[0]


def apply_fpid_cookie(resp, reconciliation: Reconciliation, cookie_name: str = FPID_COOKIE):
    # Not HttpOnly: client script computes and reads the raw value.
    if reconciliation.action is CookieAction.SET:
        resp.set_cookie(
            cookie_name,
            reconciliation.value,
            max_age=FPID_MAX_AGE,
            path="/",
            samesite="Lax",
            httponly=False,
        )
    elif reconciliation.action is CookieAction.CLEAR:
        resp.set_cookie(cookie_name, "", expires=0, max_age=0, path="/", samesite="Lax", httponly=False)
    return resp
