"""Global exception handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from api.base import error_json, ErrorCodes
from identity.exceptions import EmailDeliveryError

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(p) for p in error["loc"][1:]) for error in exc.errors()})
        return error_json(
            400,
            ErrorCodes.VALIDATION_ERROR,
            f"Invalid or missing fields: {', '.join(fields)}" if fields else "Invalid request",
        )

    @app.exception_handler(EmailDeliveryError)
    async def email_delivery_error_handler(request: Request, exc: EmailDeliveryError):
        logger.error(f"Email delivery failed on {request.url.path}: {exc}")
        return error_json(503, ErrorCodes.EMAIL_DELIVERY_FAILED, GENERIC_ERROR_MESSAGE)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return error_json(500, ErrorCodes.INTERNAL_ERROR, GENERIC_ERROR_MESSAGE)
