from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mentor_platform.core.errors import SchedulingError
from mentor_platform.db import get_db
from mentor_platform.route_logging import EndpointNameRoute
from mentor_platform.routers.dependencies import get_current_user, http_error, require_learner, require_mentor
from mentor_platform.schemas import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingStatusUpdateRequest,
    RescheduleRequest,
)
from mentor_platform.services.availability_service import get_available_mentors_for_booking
from mentor_platform.services.booking_service import (
    accept_booking,
    cancel_booking,
    complete_booking,
    get_booking,
    reject_booking,
    request_booking,
    update_booking_status,
)
from mentor_platform.services.listing_service import (
    BookingFilter,
    SlotFilter,
    list_available_slots,
    list_bookings_by_learner,
    list_bookings_by_mentor,
    list_bookings_by_slot,
)
from mentor_platform.services.reschedule_service import reschedule_booking
from mentor_platform.services.user_directory import UserSummary


router = APIRouter(prefix='/api/booking', tags=['Booking'], route_class=EndpointNameRoute)


@router.get('/available-slots')
def api_available_slots(
    page_index: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    mentor_id: int | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    user: UserSummary = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        page = list_available_slots(
            db,
            SlotFilter(mentor_id=mentor_id, date_from=date_from, date_to=date_to),
            page_index,
            page_size,
        )
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': page.to_dict()}


@router.get('/available-mentors')
def api_available_mentors(
    page_index: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    bypass_cache: bool = Query(default=False),
    user: UserSummary = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payload = get_available_mentors_for_booking(db, page_index, page_size, bypass=bypass_cache)
    return {'data': payload}


@router.get('/slots/{slot_id}/requests')
def api_slot_requests(
    slot_id: int,
    user: UserSummary = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        rows = list_bookings_by_slot(db, slot_id, acting_user_id=user.id)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': rows}


@router.get('/mine')
def api_my_bookings(
    status: str | None = Query(default=None),
    mentor_id: int | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    page_index: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    user: UserSummary = Depends(require_learner),
    db: Session = Depends(get_db),
):
    try:
        page = list_bookings_by_learner(
            db,
            user.id,
            BookingFilter(status=status, mentor_id=mentor_id, date_from=date_from, date_to=date_to),
            page_index,
            page_size,
        )
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': page.to_dict()}


@router.get('/incoming')
def api_incoming_bookings(
    status: str | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    page_index: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    user: UserSummary = Depends(require_mentor),
    db: Session = Depends(get_db),
):
    try:
        page = list_bookings_by_mentor(
            db,
            user.id,
            BookingFilter(status=status, date_from=date_from, date_to=date_to),
            page_index,
            page_size,
        )
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': page.to_dict()}


@router.get('/{booking_id}')
def api_get_booking(
    booking_id: int,
    user: UserSummary = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        payload = get_booking(db, booking_id, user.id)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': payload}


@router.post('')
def api_request_booking(
    payload: BookingCreateRequest,
    user: UserSummary = Depends(require_learner),
    db: Session = Depends(get_db),
):
    try:
        booking = request_booking(db, payload.time_slot_id, user.id, payload.session_type)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': booking}


@router.post('/{booking_id}/accept')
def api_accept_booking(
    booking_id: int,
    user: UserSummary = Depends(require_mentor),
    db: Session = Depends(get_db),
):
    try:
        result = accept_booking(db, booking_id, user.id)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': result}


@router.post('/{booking_id}/reject')
def api_reject_booking(
    booking_id: int,
    user: UserSummary = Depends(require_mentor),
    db: Session = Depends(get_db),
):
    try:
        booking = reject_booking(db, booking_id, user.id)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': {'booking': booking}}


@router.post('/{booking_id}/cancel')
def api_cancel_booking(
    booking_id: int,
    payload: BookingCancelRequest | None = None,
    user: UserSummary = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = cancel_booking(db, booking_id, user.id, payload.reason if payload else '')
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': {'booking': booking}}


@router.post('/{booking_id}/complete')
def api_complete_booking(
    booking_id: int,
    user: UserSummary = Depends(require_mentor),
    db: Session = Depends(get_db),
):
    try:
        booking = complete_booking(db, booking_id, user.id)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': {'booking': booking}}


@router.post('/{booking_id}/status')
def api_update_booking_status(
    booking_id: int,
    payload: BookingStatusUpdateRequest,
    user: UserSummary = Depends(require_mentor),
    db: Session = Depends(get_db),
):
    try:
        result = update_booking_status(db, booking_id, user.id, payload.status)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': result}


@router.post('/{booking_id}/reschedule')
def api_reschedule_booking(
    booking_id: int,
    payload: RescheduleRequest,
    user: UserSummary = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        result = reschedule_booking(db, booking_id, payload.time_slot_id, payload.reason, user.id)
    except SchedulingError as exc:
        raise http_error(exc) from exc
    return {'data': result}
