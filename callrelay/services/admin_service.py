"""Admin authorization.

Precedence: the static main-admin set from configuration is always
authoritative; the ``admin_users`` table only adds regular admins and can
never remove or demote a main admin.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from callrelay.logging_config import get_logger
from callrelay.models import AdminUser
from callrelay.services.result import DB_ERROR, MAIN_ADMIN, Result

logger = get_logger("admin_service")


def normalize_username(username: Optional[str]) -> Optional[str]:
    if not username:
        return None
    username = username.strip().lstrip("@").lower()
    return username or None


def parse_identity(raw: str) -> tuple[Optional[int], Optional[str]]:
    """Parse "12345", "@handle" or "handle" into (user_id, username)."""
    value = (raw or "").strip()
    if not value:
        return None, None
    if value.lstrip("-").isdigit():
        return int(value), None
    return None, normalize_username(value)


@dataclass(frozen=True)
class MainAdmins:
    user_ids: frozenset = field(default_factory=frozenset)
    usernames: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_config(cls, entries: Iterable[str]) -> "MainAdmins":
        user_ids = set()
        usernames = set()
        for entry in entries:
            user_id, username = parse_identity(entry)
            if user_id is not None:
                user_ids.add(user_id)
            elif username:
                usernames.add(username)
        return cls(user_ids=frozenset(user_ids), usernames=frozenset(usernames))

    def contains(self, user_id: Optional[int] = None, username: Optional[str] = None) -> bool:
        if user_id is not None and user_id in self.user_ids:
            return True
        username = normalize_username(username)
        return bool(username and username in self.usernames)


def is_main_admin(main_admins: MainAdmins, user_id: Optional[int] = None, username: Optional[str] = None) -> bool:
    return main_admins.contains(user_id, username)


def _find_admin(db: Session, user_id: Optional[int], username: Optional[str]) -> Optional[AdminUser]:
    conditions = []
    if user_id is not None:
        conditions.append(AdminUser.telegram_user_id == user_id)
    if username:
        conditions.append(AdminUser.username == username)
    if not conditions:
        return None
    return db.query(AdminUser).filter(or_(*conditions)).first()


def is_admin(
    db: Session,
    main_admins: MainAdmins,
    user_id: Optional[int] = None,
    username: Optional[str] = None,
) -> bool:
    """Main admins are always admins; everyone else needs a row in admin_users."""
    if main_admins.contains(user_id, username):
        return True
    try:
        return _find_admin(db, user_id, normalize_username(username)) is not None
    except Exception as e:
        logger.error(f"Admin lookup failed: {e}")
        return False


def add_admin(
    db: Session,
    main_admins: MainAdmins,
    user_id: Optional[int] = None,
    username: Optional[str] = None,
    display_name: Optional[str] = None,
) -> Result[AdminUser]:
    username = normalize_username(username)
    if user_id is None and not username:
        return Result.failure("Нужен числовой id или @username", "invalid_identity")
    if main_admins.contains(user_id, username):
        return Result.failure("Это главный администратор", MAIN_ADMIN)

    try:
        admin = _find_admin(db, user_id, username)
        if admin is None:
            admin = AdminUser(role="normal")
            db.add(admin)
        if user_id is not None:
            admin.telegram_user_id = user_id
        if username:
            admin.username = username
        if display_name:
            admin.display_name = display_name
        db.commit()
        db.refresh(admin)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to add admin: {e}", exc_info=True)
        return Result.failure(str(e), DB_ERROR)

    logger.info(
        "Admin added",
        extra={"context": {"admin_id": admin.id, "telegram_user_id": admin.telegram_user_id, "username": admin.username}},
    )
    return Result.success(admin)


def remove_admin(
    db: Session,
    main_admins: MainAdmins,
    user_id: Optional[int] = None,
    username: Optional[str] = None,
    admin_id: Optional[int] = None,
) -> Result[str]:
    username = normalize_username(username)
    if main_admins.contains(user_id, username):
        return Result.failure("Главного администратора нельзя удалить", MAIN_ADMIN)

    if admin_id is not None:
        admin = db.get(AdminUser, admin_id)
    else:
        admin = _find_admin(db, user_id, username)
    if admin is None:
        return Result.failure("Администратор не найден", "not_found")
    if main_admins.contains(admin.telegram_user_id, admin.username):
        return Result.failure("Главного администратора нельзя удалить", MAIN_ADMIN)

    label = admin.label
    admin_id = admin.id
    try:
        db.delete(admin)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to remove admin: {e}", exc_info=True)
        return Result.failure(str(e), DB_ERROR)

    logger.info("Admin removed", extra={"context": {"admin_id": admin_id}})
    return Result.success(label)


def list_admins(db: Session) -> list[AdminUser]:
    return db.query(AdminUser).order_by(AdminUser.created_at, AdminUser.id).all()
