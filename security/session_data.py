from typing import Any, MutableMapping, Optional, Tuple

USER_ID = "auth_user_id"
LAST_ACTIVITY = "auth_last_activity"
LOGIN_TIME = "auth_login_time"
RETURN_URL = "return_url_after_login"
FLASH = "_flash"

FLASH_TYPE = "message_type"
FLASH_CONTENT = "message_content"


class MappingSessionStore:
    """
    Key-value store contract over any mutable mapping (``flask.session``
    or a plain dict in tests), with one-shot flash values.
    """

    def __init__(self, mapping: MutableMapping):
        self.mapping = mapping

    def get(self, key: str, default=None):
        return self.mapping.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.mapping[key] = value

    def delete(self, key: str) -> None:
        self.mapping.pop(key, None)

    def has(self, key: str) -> bool:
        return key in self.mapping

    def set_flash(self, key: str, value: Any) -> None:
        flashes = dict(self.mapping.get(FLASH) or {})
        flashes[key] = value
        self.mapping[FLASH] = flashes

    def get_flash(self, key: str):
        flashes = dict(self.mapping.get(FLASH) or {})
        value = flashes.pop(key, None)
        if flashes:
            self.mapping[FLASH] = flashes
        else:
            self.mapping.pop(FLASH, None)
        return value

    def regenerate(self) -> None:
        regenerate = getattr(self.mapping, "regenerate", None)
        if callable(regenerate):
            regenerate()


class AuthSession:
    """Typed view of the authentication keys kept in the session store."""

    def __init__(self, store: MappingSessionStore):
        self.store = store

    @property
    def user_id(self) -> Optional[int]:
        return self.store.get(USER_ID)

    @property
    def last_activity(self) -> Optional[int]:
        return self.store.get(LAST_ACTIVITY)

    @property
    def login_time(self) -> Optional[int]:
        return self.store.get(LOGIN_TIME)

    def establish(self, user_id: int, now: int) -> None:
        self.store.set(USER_ID, user_id)
        self.store.set(LOGIN_TIME, now)
        self.store.set(LAST_ACTIVITY, now)

    def touch(self, now: int) -> None:
        self.store.set(LAST_ACTIVITY, now)

    def clear(self) -> None:
        for key in (USER_ID, LAST_ACTIVITY, LOGIN_TIME, RETURN_URL):
            self.store.delete(key)

    def stash_return_url(self, url: str) -> None:
        self.store.set(RETURN_URL, url)

    def pop_return_url(self) -> Optional[str]:
        url = self.store.get(RETURN_URL)
        self.store.delete(RETURN_URL)
        return url

    def set_flash(self, kind: str, message: str) -> None:
        self.store.set_flash(FLASH_TYPE, kind)
        self.store.set_flash(FLASH_CONTENT, message)

    def get_flash(self) -> Optional[Tuple[str, str]]:
        kind = self.store.get_flash(FLASH_TYPE)
        message = self.store.get_flash(FLASH_CONTENT)
        if kind and message:
            return kind, message
        return None

    def regenerate(self) -> None:
        self.store.regenerate()
