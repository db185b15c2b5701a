from datetime import date, time
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class SlotTimeRange(BaseModel):
    start_time: time
    end_time: time

    @model_validator(mode='after')
    def _check_order(self):
        if self.start_time >= self.end_time:
            raise ValueError('start_time must be before end_time')
        return self


class WeeklyAvailabilityRequest(BaseModel):
    week_start: date
    week_end: date
    start_time: time
    end_time: time
    session_duration: int = Field(ge=1, le=24 * 60)
    buffer_time: int = Field(default=0, ge=0, le=24 * 60)
    available_time_slots: dict[date, list[SlotTimeRange]] = Field(default_factory=dict)

    @model_validator(mode='after')
    def _check_window(self):
        if self.week_start > self.week_end:
            raise ValueError('week_start must not be after week_end')
        if self.start_time >= self.end_time:
            raise ValueError('start_time must be before end_time')
        return self


class BookingCreateRequest(BaseModel):
    time_slot_id: int
    session_type: Literal['online', 'offline'] = 'online'


class BookingCancelRequest(BaseModel):
    reason: str = Field(default='', max_length=255)


class BookingStatusUpdateRequest(BaseModel):
    status: Literal['approved', 'rejected', 'cancelled', 'completed']


class RescheduleRequest(BaseModel):
    time_slot_id: int
    # Length beyond the configured maximum is rejected by the service with a 400.
    reason: str = ''
