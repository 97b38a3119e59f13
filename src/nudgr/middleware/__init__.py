"""HTTP middleware stack for the Nudgr API."""

from fastapi import FastAPI

from nudgr.config import Settings
from nudgr.middleware.cors import setup_cors
from nudgr.middleware.error_handler import setup_error_handlers
from nudgr.middleware.logging import setup_logging
from nudgr.middleware.rate_limit import RateLimitMiddleware
from nudgr.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Install logging, error handlers and the middleware chain.

    Starlette runs middleware last-added-first, so CORS is added last to wrap
    429 and error responses produced further in.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
