"""API modules for HTTP interface."""

from api.base import (
    APIError,
    APIMeta,
    APIResponse,
    success_response,
    error_response,
    error_json,
    ErrorCodes,
)
from api.errors import register_error_handlers
