# Overview: Passkey (WebAuthn) registration, sign-in and management endpoints.

from flask import Blueprint, current_app, g, jsonify, request

from .. import validation as v
from ..decorators import require_auth
from ..responses import respond
from ..services.container import get_services
from ..validation import ValidationError


passkey_bp = Blueprint("passkey", __name__, url_prefix="/api/auth/passkey")


@passkey_bp.post("/register/options")
@require_auth
def register_options_route():
    try:
        return respond(get_services().credentials.begin_registration(g.current_user.id))
    except Exception:
        current_app.logger.exception("Failed to generate passkey registration options")
        return jsonify({"error": "Internal server error"}), 500


@passkey_bp.post("/register/verify")
@require_auth
def register_verify_route():
    try:
        response = v.json_body(request)
        if not response:
            raise ValidationError("Registration response is required")
        result = get_services().credentials.finish_registration(g.current_user.id, response)
        if not result.ok:
            return respond(result)
        return jsonify({"success": True, "credentialId": result.value.id}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify passkey registration")
        return jsonify({"error": "Internal server error"}), 500


@passkey_bp.post("/login/options")
def login_options_route():
    """
    Authentication options.

    With {"phone": ...} the options are scoped to that user's passkeys and
    include userId, which the client sends back to /login/verify.
    """
    try:
        data = v.json_body(request)
        phone = v.phone(data) if data.get("phone") else None
        return respond(get_services().credentials.begin_authentication(phone))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to generate passkey authentication options")
        return jsonify({"error": "Internal server error"}), 500


@passkey_bp.post("/login/verify")
def login_verify_route():
    try:
        data = v.json_body(request)
        response = data.get("response")
        if not isinstance(response, dict):
            raise ValidationError("Authentication response is required")
        user_id = data.get("userId")
        if user_id is not None and (isinstance(user_id, bool) or not isinstance(user_id, int)):
            raise ValidationError("userId must be an integer")
        return respond(get_services().strategies.passkey.authenticate(response, user_id))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify passkey authentication")
        return jsonify({"error": "Internal server error"}), 500


@passkey_bp.get("/list")
@require_auth
def list_route():
    try:
        passkeys = get_services().credentials.list_credentials(g.current_user.id)
        return jsonify({"passkeys": [p.to_dict() for p in passkeys]}), 200
    except Exception:
        current_app.logger.exception("Failed to list passkeys")
        return jsonify({"error": "Internal server error"}), 500


@passkey_bp.delete("/<int:passkey_id>")
@require_auth
def delete_route(passkey_id: int):
    try:
        result = get_services().credentials.delete_credential(g.current_user.id, passkey_id)
        return respond(result, body={"success": True})
    except Exception:
        current_app.logger.exception("Failed to delete passkey")
        return jsonify({"error": "Internal server error"}), 500
