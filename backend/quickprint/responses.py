# Overview: Maps service Results to Flask JSON responses.

from flask import jsonify

from .results import Result


def respond(result: Result, status: int = 200, body=None):
    """
    JSON response for a Result.

    Failures use the status attached to their ErrorKind. Successes serialize
    body when given, else the value's to_dict(), else the value itself.
    """
    if not result.ok:
        return jsonify(result.to_error_dict()), result.error.status

    if body is None:
        value = result.value
        body = value.to_dict() if hasattr(value, "to_dict") else value
    return jsonify(body if body is not None else {"success": True}), status
