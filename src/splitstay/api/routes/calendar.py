"""Unit availability calendar.

Provides:
- GET /units/{unit_id}/calendar: month grid with booked / past / available days
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from splitstay.api.deps import get_booking_service, get_guest_session, get_settings
from splitstay.clients.booking_service import BookingServiceClient
from splitstay.domain.availability import AvailabilityIndex, month_grid
from splitstay.domain.dates import day_key, shift_month
from splitstay.infra.settings import Settings
from splitstay.infra.time import local_today
from splitstay.observability.logging import get_logger
from splitstay.observability.redaction import safe_log_context
from splitstay.session import GuestSession

router = APIRouter(prefix="/units", tags=["calendar"])

logger = get_logger(__name__)


@router.get("/{unit_id}/calendar")
def get_calendar(
    unit_id: str,
    offset: int | None = Query(default=None, ge=-24, le=24),
    session: GuestSession = Depends(get_guest_session),
    booking_service: BookingServiceClient = Depends(get_booking_service),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Month grid for a unit.

    ``offset`` is months from the current month; when omitted the guest's
    last viewed month is used.
    """
    if offset is None:
        offset = session.month_offset
    else:
        session.set_month_offset(offset)

    today = local_today(settings.timezone)
    year, month = shift_month(today.year, today.month, offset)

    reservations = booking_service.list_reservations(unit_id)
    index = AvailabilityIndex.from_reservations(reservations)
    cells = month_grid(year, month, index, today)

    logger.info(
        "calendar served",
        extra={
            "extra_fields": safe_log_context(
                unit_id=unit_id, year=year, month=month, occupied=len(index.occupied)
            )
        },
    )

    return {
        "unitId": unit_id,
        "year": year,
        "month": month,
        "offset": offset,
        "today": day_key(today),
        "occupiedNights": sorted(day_key(d) for d in index.occupied),
        "days": [cell.as_dict() if cell else None for cell in cells],
    }
