# Overview: Flask API routes for sign-in, partner registration, sessions and account settings.

"""
Authentication API routes

Successful sign-ins answer with
    {accessToken, refreshToken, user: {id, phone, email, name, role, college, ...}}

Input problems are 400s raised as ValidationError here; business failures
come back from the services as Results and keep their own status codes.
"""

from flask import Blueprint, current_app, g, jsonify, request

from .. import validation as v
from ..decorators import require_auth
from ..models.identity import ROLE_SHOP
from ..models.otp import CHANNEL_EMAIL, CHANNEL_SMS
from ..responses import respond
from ..results import Result
from ..services import auth_service, identity_service
from ..services.auth_service import RequestContext
from ..services.container import get_services
from ..services.registration_service import PartnerDraft
from ..validation import ValidationError


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _request_context() -> RequestContext:
    return RequestContext(
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
        resource=request.path,
    )


def _otp_sent(result: Result):
    return respond(result, body={"message": "OTP sent successfully"})


# Phone OTP

@auth_bp.post("/phone/initiate")
def phone_initiate_route():
    try:
        phone = v.phone(v.json_body(request))
        return _otp_sent(get_services().otp.issue(phone, CHANNEL_SMS))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to send phone OTP")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/phone/signup")
def phone_signup_route():
    """Like /phone/initiate, but refuses numbers that already have an account."""
    try:
        phone = v.phone(v.json_body(request))
        if identity_service.find_by_phone(phone):
            return jsonify({"error": "Phone number already registered. Please login instead."}), 409
        return _otp_sent(get_services().otp.issue(phone, CHANNEL_SMS))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to start phone signup")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/phone/verify")
def phone_verify_route():
    try:
        data = v.json_body(request)
        phone = v.phone(data)
        code = v.otp_code(data)
        college = v.optional_str(data, "college")
        return respond(get_services().strategies.phone_otp.authenticate(phone, code, college))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify phone OTP")
        return jsonify({"error": "Internal server error"}), 500


# Email OTP

@auth_bp.post("/email/initiate")
def email_initiate_route():
    try:
        email = v.email(v.json_body(request))
        return respond(
            get_services().otp.issue(email, CHANNEL_EMAIL),
            body={"message": "Verification code sent to your email"},
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to send email OTP")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/email/verify")
def email_verify_route():
    try:
        data = v.json_body(request)
        email = v.email(data)
        code = v.otp_code(data)
        partner = v.boolean(data, "isPartner", default=False)
        return respond(get_services().strategies.email_otp.authenticate(email, code, partner=partner))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify email OTP")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/email/magic-link/send")
def magic_link_send_route():
    try:
        email = v.email(v.json_body(request))
        return respond(get_services().strategies.magic_link.send(email))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to send sign-in link")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/email/magic-link/verify")
def magic_link_verify_route():
    try:
        token = v.required_str(v.json_body(request), "token", "Token is required")
        return respond(get_services().strategies.magic_link.authenticate(token))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify sign-in link")
        return jsonify({"error": "Internal server error"}), 500


# Password

@auth_bp.post("/phone/password/signup")
def phone_password_signup_route():
    try:
        data = v.json_body(request)
        result = auth_service.signup_with_password(
            get_services().tokens,
            password=v.password(data),
            name=v.required_str(data, "name", "Name is required"),
            phone=v.phone(data),
            college=v.optional_str(data, "college"),
        )
        return respond(result, status=201)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to sign up with phone and password")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/email/password/signup")
def email_password_signup_route():
    try:
        data = v.json_body(request)
        result = auth_service.signup_with_password(
            get_services().tokens,
            password=v.password(data),
            name=v.required_str(data, "name", "Name is required"),
            email=v.email(data),
            college=v.optional_str(data, "college"),
        )
        return respond(result, status=201)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to sign up with email and password")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/phone/password/login")
def phone_password_login_route():
    try:
        data = v.json_body(request)
        phone = v.phone(data)
        password = v.secret(data, "password", "Password is required")
        result = get_services().strategies.password.authenticate(
            phone, password, context=_request_context()
        )
        return respond(result)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to login with phone and password")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/email/password/login")
def email_password_login_route():
    try:
        data = v.json_body(request)
        email = v.email(data)
        password = v.secret(data, "password", "Password is required")
        result = get_services().strategies.password.authenticate(
            email, password, context=_request_context()
        )
        return respond(result)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to login with email and password")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/backup-codes/login")
def backup_code_login_route():
    """Recovery sign-in by phone or email plus one unused backup code."""
    try:
        data = v.json_body(request)
        identifier = v.email(data) if data.get("email") else v.phone(data)
        code = v.required_str(data, "code", "Backup code is required")
        result = get_services().strategies.backup_code.authenticate(
            identifier, code, context=_request_context()
        )
        return respond(result)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to login with backup code")
        return jsonify({"error": "Internal server error"}), 500


# Partner registration

def _partner_draft(data: dict) -> PartnerDraft:
    return PartnerDraft(
        email=v.email(data),
        phone=v.phone(data),
        name=v.required_str(data, "name", "Name is required"),
        password=v.password(data),
        shop_name=v.required_str(data, "shopName", "Shop name is required"),
        address=v.address(data),
        location=v.location(data),
    )


@auth_bp.post("/partner/register")
@auth_bp.post("/partner/register/initiate")
def partner_register_initiate_route():
    """
    Start partner signup.

    /partner/register is kept for older clients and runs the same first
    step; an account only exists after the phone and email are both proven.
    """
    try:
        draft = _partner_draft(v.json_body(request))
        return respond(get_services().registration.initiate(draft), status=202)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to start partner registration")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/partner/register/verify-otp")
def partner_register_verify_otp_route():
    try:
        data = v.json_body(request)
        result = get_services().registration.confirm_phone(v.phone(data), v.otp_code(data))
        return respond(result)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify partner phone")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/partner/register/verify-email")
def partner_register_verify_email_route():
    try:
        data = v.json_body(request)
        token = data.get("token") or request.args.get("token")
        if not isinstance(token, str) or not token.strip():
            raise ValidationError("Verification token is required")
        result = get_services().registration.complete_via_email_token(token.strip())
        return respond(result, status=201)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to complete partner registration")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/partner/register/resend-otp")
def partner_register_resend_otp_route():
    try:
        phone = v.phone(v.json_body(request))
        return respond(get_services().registration.resend(phone))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to resend partner OTP")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/partner/login")
def partner_login_route():
    try:
        data = v.json_body(request)
        email = v.email(data)
        password = v.secret(data, "password", "Password is required")
        result = get_services().strategies.password.authenticate(
            email, password, required_role=ROLE_SHOP, context=_request_context()
        )
        return respond(result)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to login partner")
        return jsonify({"error": "Internal server error"}), 500


# Google

@auth_bp.post("/google")
def google_route():
    try:
        id_token = v.required_str(v.json_body(request), "idToken", "ID token is required")
        return respond(get_services().strategies.google.authenticate(id_token))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to sign in with Google")
        return jsonify({"error": "Internal server error"}), 500


# Session

@auth_bp.post("/refresh")
def refresh_route():
    try:
        token = v.required_str(v.json_body(request), "refreshToken", "Refresh token is required")
        return respond(get_services().tokens.rotate(token))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to refresh token")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    """Deletes the refresh token. Unknown tokens are not an error."""
    try:
        token = v.optional_str(v.json_body(request), "refreshToken")
        if token:
            get_services().tokens.revoke(token)
        return jsonify({"message": "Logged out successfully"}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to logout")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": identity_service.profile(g.current_user)}), 200


# Account settings

@auth_bp.put("/me/otp")
@require_auth
def update_otp_settings_route():
    try:
        data = v.json_body(request)
        enabled = v.boolean(data, "enabled")
        method = v.optional_str(data, "method")
        email = v.email(data) if data.get("email") else None
        result = identity_service.update_otp_settings(g.current_user, enabled, method, email)
        if not result.ok:
            return respond(result)
        return jsonify({"user": identity_service.profile(result.value)}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update OTP settings")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/set-password")
@require_auth
def set_password_route():
    try:
        data = v.json_body(request)
        password = v.password(data)
        confirm = v.secret(data, "confirmPassword", "Please confirm your password")
        result = identity_service.set_password(
            g.current_user,
            password,
            confirm,
            token_service=get_services().tokens,
            keep_refresh_token=v.optional_str(data, "refreshToken"),
        )
        if not result.ok:
            return respond(result)
        return jsonify({"message": "Password set successfully", "user": identity_service.profile(result.value)}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set password")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/backup-codes")
@require_auth
def backup_codes_status_route():
    return jsonify(identity_service.backup_code_status(g.current_user)), 200


@auth_bp.post("/backup-codes")
@require_auth
def backup_codes_generate_route():
    """Regenerate backup codes. The plaintext codes are only ever returned here."""
    try:
        codes = identity_service.generate_backup_codes(g.current_user)
        return jsonify({"codes": codes, "remaining": len(codes)}), 201
    except Exception:
        current_app.logger.exception("Failed to generate backup codes")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/google/link")
@require_auth
def google_link_route():
    try:
        id_token = v.required_str(v.json_body(request), "idToken", "ID token is required")
        claims = get_services().google_verifier.verify(id_token)
        if not claims.ok:
            return respond(claims)
        result = identity_service.link_google(g.current_user, claims.value)
        if not result.ok:
            return respond(result)
        return jsonify({"message": "Google account linked", "user": identity_service.profile(result.value)}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to link Google account")
        return jsonify({"error": "Internal server error"}), 500
