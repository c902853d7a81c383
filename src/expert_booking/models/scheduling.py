"""Pydantic models for availability management and slot queries."""

from __future__ import annotations

from datetime import datetime, time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OverlayStatus(str, Enum):
    """Health of the external calendar busy overlay used for a query."""

    OK = "ok"
    NOT_CONNECTED = "not_connected"
    DEGRADED = "degraded"


class WindowCreateRequest(BaseModel):
    """Request model for adding a weekly availability window."""

    day_of_week: int = Field(..., ge=0, le=6, description="Weekday, 0=Sunday ... 6=Saturday")
    start_time: time = Field(..., description="Local start time of day (e.g. '09:00')")
    end_time: time = Field(..., description="Local end time of day (e.g. '17:00')")
    timezone: str = Field(..., description="IANA timezone of the expert (e.g. 'America/New_York')")


class WindowResponse(BaseModel):
    """A stored availability window."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Window ID")
    expert_id: str = Field(..., description="Owning expert")
    day_of_week: int = Field(..., description="Weekday, 0=Sunday")
    start_time: time = Field(..., description="Local start time of day")
    end_time: time = Field(..., description="Local end time of day")
    timezone: str = Field(..., description="IANA timezone")
    is_active: bool = Field(..., description="Whether the window produces slots")


class BlockCreateRequest(BaseModel):
    """Request model for blocking time off."""

    start_at: datetime = Field(..., description="Block start (timezone-aware ISO8601)")
    end_at: datetime = Field(..., description="Block end (timezone-aware ISO8601)")
    reason: Optional[str] = Field(None, max_length=255, description="Why the time is blocked")
    is_all_day: bool = Field(False, description="Block whole local days in `timezone`")
    is_recurring: bool = Field(False, description="Repeat the block per `recurrence_rule`")
    recurrence_rule: Optional[str] = Field(
        None, description="e.g. 'FREQ=WEEKLY;BYDAY=MO,WE;COUNT=10'"
    )
    timezone: str = Field("UTC", description="IANA timezone used to expand the block")


class BlockResponse(BaseModel):
    """A stored blocked time range."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Block ID")
    expert_id: str = Field(..., description="Owning expert")
    start_at: datetime = Field(..., description="Block start (UTC)")
    end_at: datetime = Field(..., description="Block end (UTC)")
    reason: Optional[str] = Field(None, description="Reason")
    is_all_day: bool = Field(..., description="All-day flag")
    is_recurring: bool = Field(..., description="Recurring flag")
    recurrence_rule: Optional[str] = Field(None, description="Recurrence rule")
    timezone: str = Field(..., description="IANA timezone used for expansion")


class Slot(BaseModel):
    """A bookable candidate slot."""

    utc_start: datetime = Field(..., description="Slot start in UTC")
    utc_end: datetime = Field(..., description="Slot end in UTC")
    local_start: datetime = Field(..., description="Slot start in the viewer timezone")
    local_display: str = Field(..., description="ISO8601 local start with offset")
    display_time: str = Field(..., description="Human readable local time, e.g. '9:00 AM'")
    timezone: str = Field(..., description="Viewer timezone (IANA)")


class SlotQueryResult(BaseModel):
    """Response model for a slot query."""

    expert_id: str = Field(..., description="Expert ID")
    timezone: str = Field(..., description="Viewer timezone used for rendering (IANA)")
    duration_minutes: int = Field(..., description="Duration used for slots")
    granularity_minutes: int = Field(..., description="Step between candidate starts")
    slots: List[Slot] = Field(default_factory=list, description="Candidate slots, earliest first")
    calendar_overlay_status: OverlayStatus = Field(
        OverlayStatus.NOT_CONNECTED, description="External calendar overlay health"
    )
    warnings: List[str] = Field(default_factory=list, description="Non-fatal warnings")


class TimezoneOption(BaseModel):
    """A timezone offered in pickers."""

    value: str = Field(..., description="IANA timezone ID")
    label: str = Field(..., description="Display label")
    offset: str = Field(..., description="Current UTC offset, e.g. 'UTC-05:00'")
