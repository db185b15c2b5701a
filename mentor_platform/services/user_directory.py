from __future__ import annotations

from dataclasses import asdict, dataclass

from sqlalchemy.orm import Session

from mentor_platform.core.errors import NotFoundError
from mentor_platform.models import Role, User, UserStatus


@dataclass(frozen=True)
class UserSummary:
    id: int
    email: str
    full_name: str
    role: str
    status: str
    timezone: str

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    @property
    def is_mentor(self) -> bool:
        return self.role == Role.MENTOR.value

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def to_dict(self) -> dict:
        return asdict(self)


def _to_summary(row: User) -> UserSummary:
    return UserSummary(
        id=row.id,
        email=row.email,
        full_name=row.full_name or '',
        role=row.role,
        status=row.status,
        timezone=row.timezone or 'UTC',
    )


def find_user(db: Session, user_id: int | None) -> UserSummary | None:
    if not user_id:
        return None
    row = db.get(User, int(user_id))
    return _to_summary(row) if row else None


def get_user_by_id(db: Session, user_id: int | None) -> UserSummary:
    summary = find_user(db, user_id)
    if summary is None:
        raise NotFoundError(f'User {user_id} not found')
    return summary


def get_users_by_ids(db: Session, user_ids) -> dict[int, UserSummary]:
    ids = sorted({int(value) for value in user_ids if value})
    if not ids:
        return {}
    rows = db.query(User).filter(User.id.in_(ids)).all()
    return {row.id: _to_summary(row) for row in rows}
