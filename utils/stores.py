from typing import List, Optional

from models import db
from models.user import User
from security.auth_guard import CredentialRecord


def _to_record(user: User) -> CredentialRecord:
    return CredentialRecord(
        id=user.id,
        username=user.username,
        password_hash=user.password_hash,
        failed_attempts=user.failed_attempts or 0,
        last_failed=user.last_failed,
        locked_until=user.locked_until,
    )


class SqlUserStore:
    """
    User store backed by the ``users`` table.

    With ``lock_rows`` the username lookup takes a row lock (SELECT ... FOR
    UPDATE) that is held until save() commits, serialising concurrent
    failed-attempt updates on backends that support it.
    """

    def __init__(self, lock_rows: bool = True):
        self.lock_rows = lock_rows

    def find_by_username(self, username: str) -> Optional[CredentialRecord]:
        query = User.query.filter_by(username=(username or "").strip())
        if self.lock_rows:
            query = query.with_for_update()
        user = query.first()
        return _to_record(user) if user else None

    def find_by_id(self, user_id: int) -> Optional[CredentialRecord]:
        user = db.session.get(User, user_id)
        return _to_record(user) if user else None

    def save(self, record: CredentialRecord) -> None:
        user = db.session.get(User, record.id)
        if user is None:
            raise LookupError(f"User {record.id} no longer exists")
        user.failed_attempts = record.failed_attempts
        user.last_failed = record.last_failed
        user.locked_until = record.locked_until
        db.session.commit()


class SqlRoleStore:
    def roles_for_user(self, user_id: int) -> List[str]:
        user = db.session.get(User, user_id)
        if not user:
            return []
        return [r.name for r in user.roles]
