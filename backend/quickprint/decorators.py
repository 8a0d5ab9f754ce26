# Overview: Bearer-token and role decorators for API routes.

from functools import wraps

from flask import g, jsonify, request

from .services.container import get_services


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid access token.

    Sets g.current_user to the authenticated User. Returns 401 when the
    header is missing, the token is invalid or expired, or the user no
    longer exists.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if token is None:
            return jsonify({"error": "Authentication required"}), 401

        result = get_services().tokens.verify_access(token)
        if not result.ok:
            return jsonify(result.to_error_dict()), 401

        g.current_user = result.value
        return f(*args, **kwargs)

    return decorated_function
