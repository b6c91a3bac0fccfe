"""Public-facing routes."""

from fastapi import APIRouter

from splitstay.api.routes import bookings, calendar

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


router.include_router(calendar.router)
router.include_router(bookings.router)
