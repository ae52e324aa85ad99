from bson.errors import InvalidDocument
from flask import current_app, jsonify
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    """Base class for failures that end a request with a ``{message}`` body."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message=None):
        if message:
            self.message = message
        super().__init__(self.message)


class MissingCredential(ApiError):
    status_code = 401
    message = "Unauthorized Access"


class InvalidCredential(ApiError):
    status_code = 403
    message = "Forbidden Access"


class InsufficientPrivilege(ApiError):
    status_code = 403
    message = "Forbidden Access"


class OwnershipMismatch(ApiError):
    status_code = 403
    message = "Forbidden Access"


class InvalidRequest(ApiError):
    status_code = 400
    message = "The request could not be processed."


class InvalidIdentifier(InvalidRequest):
    message = "Invalid identifier."


class ResourceNotFound(ApiError):
    status_code = 404
    message = "Resource not found."


class Conflict(ApiError):
    status_code = 409
    message = "Resource already exists."


class ServerFault(ApiError):
    pass


class PaymentConfigurationError(ServerFault):
    message = "Payment configuration is incomplete. Please contact support."


class PaymentProviderError(ServerFault):
    status_code = 502
    message = "Failed to create payment session."


def error_response(error: ApiError):
    return jsonify({"message": error.message}), error.status_code


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return error_response(error)

    @app.errorhandler(InvalidDocument)
    @app.errorhandler(OverflowError)
    def handle_unstorable_document(error: Exception):
        current_app.logger.info("Rejected unstorable document: %s", error)
        return error_response(
            InvalidRequest("The request body contains values that cannot be stored.")
        )

    @app.errorhandler(PyMongoError)
    def handle_storage_error(error: PyMongoError):
        current_app.logger.exception("Storage operation failed: %s", error)
        return error_response(ServerFault())

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"message": error.description}), error.code
