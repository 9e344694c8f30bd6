from flask import current_app, jsonify, request

from Utils.appError import ValidationFailed


def services():
    """Collaborators built by create_app (registry, engine, audit, notifier)."""
    return current_app.extensions["pataid"]


def request_meta() -> dict:
    forwarded = request.headers.get("X-Forwarded-For", "")
    return {
        "ip_address": forwarded.split(",")[0].strip() or request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
        "endpoint": request.path,
        "method": request.method,
    }


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return data


def success(data=None, status_code=200, **extra):
    payload = {"success": True, "data": data}
    payload.update(extra)
    return jsonify(payload), status_code
