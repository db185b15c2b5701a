from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mentor_platform.core.errors import SchedulingError
from mentor_platform.db import get_db
from mentor_platform.route_logging import EndpointNameRoute
from mentor_platform.routers.dependencies import get_current_user, http_error, require_mentor, require_self_or_admin
from mentor_platform.schemas import WeeklyAvailabilityRequest
from mentor_platform.services.availability_service import (
    get_lock_status,
    get_schedule_settings,
    save_weekly_availability,
)
from mentor_platform.services.user_directory import UserSummary


router = APIRouter(prefix='/api/schedule', tags=['Schedule'], route_class=EndpointNameRoute)


@router.get('/{mentor_id}')
def api_get_schedule(
    mentor_id: int,
    week_start: date | None = Query(default=None),
    week_end: date | None = Query(default=None),
    user: UserSummary = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_self_or_admin(user, mentor_id)
    try:
        payload = get_schedule_settings(db, mentor_id, week_start, week_end)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': payload}


@router.post('/{mentor_id}')
def api_save_schedule(
    mentor_id: int,
    payload: WeeklyAvailabilityRequest,
    user: UserSummary = Depends(require_mentor),
    db: Session = Depends(get_db),
):
    try:
        result = save_weekly_availability(db, mentor_id, payload, user.id)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': result}


@router.get('/{mentor_id}/lock-status')
def api_lock_status(
    mentor_id: int,
    week_start: date | None = Query(default=None),
    week_end: date | None = Query(default=None),
    user: UserSummary = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_self_or_admin(user, mentor_id)
    try:
        payload = get_lock_status(db, mentor_id, week_start, week_end)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': payload}
