"""FastAPI application factory."""

from fastapi import FastAPI, Request, Response

from splitstay.domain.errors import BookingError
from splitstay.domain.selection import SelectionRejected
from splitstay.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)

from .deps import SessionRegistry
from .errors import booking_error_handler, selection_rejected_handler
from .routers import public


def create_app() -> FastAPI:
    """Create the FastAPI app and its guest session registry.

    Adds correlation-id middleware and maps domain errors to JSON responses.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Splitstay",
        docs_url=None,
        redoc_url=None,
    )
    app.state.session_registry = SessionRegistry()

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        # Get or generate correlation ID
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(SelectionRejected, selection_rejected_handler)

    app.include_router(public.router)

    return app
