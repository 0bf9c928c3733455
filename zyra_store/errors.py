from typing import Dict, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    """Base class for errors rendered as ``{"error", "status"}`` JSON bodies."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details or {}

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {"error": self.message, "status": self.status_code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ApiError):
    status_code = 400
    default_message = "The request could not be validated."


class AuthenticationError(ApiError):
    status_code = 401
    default_message = "Authentication required."


class AuthorizationError(ApiError):
    status_code = 403
    default_message = "You need additional permissions to perform this action."


class NotFoundError(ApiError):
    status_code = 404
    default_message = "Resource not found."


class ConflictError(ApiError):
    status_code = 409
    default_message = "The resource already exists."


class PaymentProviderError(ApiError):
    status_code = 502
    default_message = "The payment provider could not process the request."


class EmailDeliveryError(ApiError):
    status_code = 502
    default_message = "We could not send the email. Please try again in a moment."


def error_response(message: str, status: int):
    return jsonify({"error": message, "status": status}), status


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(exc: ApiError):
        if exc.status_code >= 500:
            app.logger.error("%s: %s", type(exc).__name__, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc: HTTPException):
        status = exc.code or 500
        return error_response(exc.description or exc.name, status)

    @app.errorhandler(Exception)
    def handle_unexpected_exception(exc: Exception):
        app.logger.exception("Unhandled error: %s", exc)
        return error_response("Internal server error", 500)
