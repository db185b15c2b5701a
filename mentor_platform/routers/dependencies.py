from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from mentor_platform.config import settings
from mentor_platform.core.errors import SchedulingError
from mentor_platform.db import get_db
from mentor_platform.models import Role
from mentor_platform.services.user_directory import UserSummary, find_user


def http_error(exc: SchedulingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def get_current_user(request: Request, db: Session = Depends(get_db)) -> UserSummary:
    # The upstream gateway authenticates the caller and forwards the user id.
    raw = (request.headers.get(settings.identity_header) or '').strip()
    if not raw.isdigit():
        raise HTTPException(status_code=403, detail='Unauthorized')
    user = find_user(db, int(raw))
    if user is None or not user.is_active:
        raise HTTPException(status_code=403, detail='Unauthorized')
    return user


def require_mentor(user: UserSummary = Depends(get_current_user)) -> UserSummary:
    if user.role != Role.MENTOR.value:
        raise HTTPException(status_code=403, detail='Mentor role required')
    return user


def require_learner(user: UserSummary = Depends(get_current_user)) -> UserSummary:
    if user.role != Role.LEARNER.value:
        raise HTTPException(status_code=403, detail='Learner role required')
    return user


def require_self_or_admin(user: UserSummary, user_id: int) -> None:
    if user.role != Role.ADMIN.value and user.id != user_id:
        raise HTTPException(status_code=403, detail='Unauthorized')
