from flask import Blueprint, current_app, jsonify, request
from mongoengine import DoesNotExist, ValidationError
from werkzeug.exceptions import HTTPException

from Utils.appError import AppError, NotFound, ValidationFailed
from Utils.http import request_meta

error_bp = Blueprint('errors', __name__)

# Common browser/devtools probes that are not worth a warning
SKIP_LOGGING_PATHS = (
    '/.well-known/appspecific/com.chrome.devtools.json',
    '/favicon.ico',
    '/robots.txt',
)


def _error_response(status_code, status, kind, message, details=None):
    error = {"kind": kind, "message": message}
    if details:
        error["details"] = details
    return jsonify({"success": False, "status": status, "error": error}), status_code


@error_bp.app_errorhandler(AppError)
def handle_app_error(err):
    current_app.logger.warning(f"AppError {err.status_code} ({err.kind}) at {request.path}: {err.message}")
    return _error_response(err.status_code, err.status, err.kind, err.message, err.details)


@error_bp.app_errorhandler(ValidationError)
def handle_validation_error(err):
    return handle_app_error(ValidationFailed(str(err)))


@error_bp.app_errorhandler(DoesNotExist)
def handle_does_not_exist(err):
    return handle_app_error(NotFound(str(err) or "Resource not found"))


@error_bp.app_errorhandler(404)
def not_found_error(e):
    if request.path not in SKIP_LOGGING_PATHS:
        current_app.logger.warning(
            f"404 Not Found: {request.url} | Method: {request.method} | IP: {request.remote_addr}"
        )
    return _error_response(404, "fail", "not_found", "The requested resource could not be found.")


@error_bp.app_errorhandler(405)
def method_not_allowed(e):
    return _error_response(405, "fail", "method_not_allowed", f"{request.method} is not allowed on {request.path}")


@error_bp.app_errorhandler(429)
def ratelimit_handler(e):
    return _error_response(429, "fail", "rate_limited", "Rate limit exceeded. Please slow down.")


@error_bp.app_errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return _error_response(e.code or 500, "fail" if (e.code or 500) < 500 else "error",
                               "http_error", e.description or e.name)

    # This includes traceback automatically
    current_app.logger.exception(
        f"Unexpected Application Error: {e} | URL: {request.url} | Method: {request.method} | IP: {request.remote_addr}"
    )

    audit = current_app.extensions.get("pataid", {}).get("audit")
    if audit is not None:
        audit.record(
            "system_error", None, "system",
            after_state={"error": type(e).__name__, "message": str(e)[:500]},
            request_meta=request_meta(), tags=["unhandled_exception"],
        )

    return _error_response(500, "error", "internal_error", "Something went wrong on the server.")
