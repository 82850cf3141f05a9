"""
User domain service.
- get_user(user_id)
- get_or_create_user(user_id, email, display_name)
- update_account(user_id, name, email)
"""
import re
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from backend.core.database import get_db_session, users as app_users
from backend.core.errors import ConflictError, NotFoundError, ValidationError
from backend.core.logging import log_event
from backend.models.user import User


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_display_name(user_id: str, display_name: Optional[str]) -> str:
    return User.normalized_display_name(user_id, display_name)


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        created_at=row.created_at,
        email=row.email,
        display_name=row.display_name or normalize_display_name(row.user_id, None),
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        return _row_to_user(row) if row else None


def _insert_user(user_id: str, email: Optional[str], display_name: str, now: datetime) -> None:
    with get_db_session() as session:
        session.execute(
            app_users.insert().values(
                user_id=user_id,
                email=email,
                display_name=display_name,
                created_at=now,
                updated_at=now,
            )
        )


def get_or_create_user(
    user_id: str,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
) -> User:
    """
    Ensure an app_users row exists for an authenticated identity.

    Missing profile fields are filled in from the identity claims; values the
    user already set are left alone.
    """
    existing = get_user(user_id)
    if existing:
        fills = {}
        if email and not existing.email:
            fills["email"] = email
        if display_name and existing.display_name == normalize_display_name(user_id, None):
            fills["display_name"] = display_name.strip()
        if not fills:
            return existing
        try:
            with get_db_session() as session:
                session.execute(
                    update(app_users)
                    .where(app_users.c.user_id == user_id)
                    .values(updated_at=datetime.now(timezone.utc), **fills)
                )
        except IntegrityError:
            # Email owned by another account; keep the row as it is
            log_event("warning", "user.profile_fill_conflict", user_id=user_id)
            return existing
        return get_user(user_id)

    now = datetime.now(timezone.utc)
    display = normalize_display_name(user_id, display_name)
    try:
        _insert_user(user_id, email, display, now)
    except IntegrityError:
        # Lost a creation race, or the email already belongs to another account
        existing = get_user(user_id)
        if existing:
            return existing
        log_event("warning", "user.email_conflict", user_id=user_id)
        email = None
        _insert_user(user_id, None, display, now)
    log_event("info", "user.created", user_id=user_id)
    return User(user_id=user_id, created_at=now, email=email, display_name=display)


def update_account(user_id: str, name: Optional[str], email: Optional[str]) -> User:
    """
    Update the signed-in user's name and email.

    Raises:
        ValidationError: If name or email is missing or email is malformed
        NotFoundError: If the user does not exist
        ConflictError: If the email belongs to another account
    """
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not name:
        raise ValidationError("Name is required")
    if not email:
        raise ValidationError("Email is required")
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email address")

    with get_db_session() as session:
        taken = session.execute(
            select(app_users.c.user_id).where(
                app_users.c.email == email, app_users.c.user_id != user_id
            )
        ).first()
        if taken:
            raise ConflictError("Email is already in use")

        result = session.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(display_name=name, email=email, updated_at=datetime.now(timezone.utc))
        )
        if result.rowcount == 0:
            raise NotFoundError(f"User {user_id} not found")

    log_event("info", "user.account_updated", user_id=user_id)
    return get_user(user_id)
