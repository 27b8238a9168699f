from datetime import datetime, timezone
from models.db import db


def utcnow() -> datetime:
    # naive UTC, the form every DateTime column here stores
    return datetime.now(timezone.utc).replace(tzinfo=None)


# association table for many-to-many User <-> Role
user_roles = db.Table(
    "user_roles",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id"), primary_key=True),
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id"), primary_key=True),
)

class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    # brute-force protection state, owned by AuthGuard
    failed_attempts = db.Column(db.Integer, default=0, nullable=False)
    last_failed = db.Column(db.DateTime, nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    roles = db.relationship("Role", secondary=user_roles, back_populates="users")

class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)  # auth word, stored lower-case

    users = db.relationship("User", secondary=user_roles, back_populates="roles")
