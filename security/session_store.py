import hashlib
import json
import logging
import os
import re
import secrets
import tempfile
import time
from typing import Optional

from security.errors import ConfigurationError

logger = logging.getLogger(__name__)

_SESSION_ID = re.compile(r"[A-Za-z0-9_-]{32,128}")
_PREFIX = "sess_"


def _is_within(path: str, root: str) -> bool:
    path = os.path.realpath(path)
    root = os.path.realpath(root)
    return path == root or path.startswith(root + os.sep)


class FileSessionStore:
    """
    Server-side session storage: one JSON file per session id.

    The directory is created owner-only (0700) and must live outside the
    public web root. Any failure to set it up is fatal.
    """

    def __init__(self, path: str, public_root: Optional[str] = None):
        if not path:
            raise ConfigurationError("Session storage path is required")
        self.path = os.path.abspath(path)

        if public_root and _is_within(self.path, public_root):
            raise ConfigurationError(
                f"Session storage {self.path} must not be inside the public root {public_root}"
            )

        try:
            os.makedirs(self.path, mode=0o700, exist_ok=True)
            os.chmod(self.path, 0o700)
        except OSError as exc:
            raise ConfigurationError(f"Cannot create session storage at {self.path}: {exc}") from exc

        if not os.access(self.path, os.W_OK | os.X_OK):
            raise ConfigurationError(f"Session storage {self.path} is not writable")

    @staticmethod
    def new_id() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def is_valid_id(session_id) -> bool:
        return isinstance(session_id, str) and _SESSION_ID.fullmatch(session_id) is not None

    def _file(self, session_id: str) -> str:
        if not self.is_valid_id(session_id):
            raise ValueError("Invalid session id")
        # only the hash of the id touches the filesystem
        digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()
        return os.path.join(self.path, _PREFIX + digest)

    def exists(self, session_id: str) -> bool:
        return self.is_valid_id(session_id) and os.path.isfile(self._file(session_id))

    def load(self, session_id: str) -> Optional[dict]:
        if not self.is_valid_id(session_id):
            return None
        try:
            with open(self._file(session_id), "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.warning("Discarding unreadable session file for id prefix %s", session_id[:8])
            self.destroy(session_id)
            return None
        return data if isinstance(data, dict) else None

    def save(self, session_id: str, data: dict, create: bool = True) -> bool:
        """
        Write the session atomically. With ``create=False`` only an existing
        session is overwritten, so an id destroyed by another request stays
        dead. Returns False when nothing was written.
        """
        target = self._file(session_id)
        if not create and not os.path.isfile(target):
            return False
        fd, tmp = tempfile.mkstemp(dir=self.path, prefix=".tmp_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, separators=(",", ":"))
            os.chmod(tmp, 0o600)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return True

    def destroy(self, session_id: str) -> None:
        if not self.is_valid_id(session_id):
            return
        try:
            os.unlink(self._file(session_id))
        except FileNotFoundError:
            pass

    def rotate(self, session_id: Optional[str], data: dict) -> str:
        """Move data to a fresh id and delete the old one."""
        new_id = self.new_id()
        self.save(new_id, data)
        if session_id:
            self.destroy(session_id)
        return new_id

    def gc(self, max_age: int, now: Optional[float] = None) -> int:
        cutoff = (time.time() if now is None else now) - max_age
        removed = 0
        with os.scandir(self.path) as entries:
            for entry in entries:
                if not entry.name.startswith(_PREFIX) or not entry.is_file():
                    continue
                try:
                    if entry.stat().st_mtime < cutoff:
                        os.unlink(entry.path)
                        removed += 1
                except FileNotFoundError:
                    continue
        return removed
