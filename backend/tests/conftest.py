"""
Pytest fixtures for QuickPrint identity tests.

Each test gets its own app bound to an in-memory SQLite database. Delivery
channels are the console channels (they record what they send); the WebAuthn
and Google verifiers are fakes so ceremonies can run without a browser.
"""

import base64
import json
import secrets

import pytest

from quickprint import create_app
from quickprint.config import TestingConfig
from quickprint.extensions import SERVICES_KEY, db
from quickprint.models import OtpChallenge, User
from quickprint.models.identity import AUTH_PASSWORD, ROLE_STUDENT
from quickprint.results import ErrorKind, Result
from quickprint.services.credential_store import CeremonyError, RegisteredCredential
from quickprint.services.delivery import ConsoleEmailChannel, ConsoleSmsChannel
from quickprint.services.events import EventBus
from quickprint.services.google_oauth import GoogleClaims
from quickprint.services.passwords import hash_password


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def client_data(challenge: str, ceremony: str) -> str:
    return b64url(json.dumps({
        "type": ceremony,
        "challenge": challenge,
        "origin": "http://localhost:5173",
    }).encode("utf-8"))


def registration_response(credential_id: str, challenge: str, sign_count: int = 0) -> dict:
    return {
        "id": credential_id,
        "rawId": credential_id,
        "type": "public-key",
        "response": {
            "clientDataJSON": client_data(challenge, "webauthn.create"),
            "attestationObject": "fake",
            "transports": ["internal"],
        },
        "signCount": sign_count,
    }


def assertion_response(credential_id: str, challenge: str, sign_count: int) -> dict:
    return {
        "id": credential_id,
        "rawId": credential_id,
        "type": "public-key",
        "response": {
            "clientDataJSON": client_data(challenge, "webauthn.get"),
            "authenticatorData": "fake",
            "signature": "fake",
        },
        "signCount": sign_count,
    }


class FakeWebAuthnVerifier:
    """
    Stands in for py_webauthn.

    Accepts a response when the challenge inside its clientDataJSON matches
    the expected one and it is not flagged "tampered". The authenticator's
    counter is taken from the response's "signCount".
    """

    def __init__(self):
        self.issued = []

    def _challenge(self) -> str:
        challenge = b64url(secrets.token_bytes(32))
        self.issued.append(challenge)
        return challenge

    def registration_options(self, user_id, user_name, display_name, exclude):
        challenge = self._challenge()
        return challenge, {
            "challenge": challenge,
            "rp": {"id": "localhost", "name": "QuickPrint"},
            "user": {"id": b64url(str(user_id).encode()), "name": user_name, "displayName": display_name},
            "excludeCredentials": [{"id": cid, "type": "public-key"} for cid, _ in exclude],
            "authenticatorSelection": {
                "authenticatorAttachment": "platform",
                "residentKey": "preferred",
                "userVerification": "preferred",
            },
        }

    def authentication_options(self, allow):
        challenge = self._challenge()
        return challenge, {
            "challenge": challenge,
            "rpId": "localhost",
            "allowCredentials": [{"id": cid, "type": "public-key"} for cid, _ in allow],
            "userVerification": "preferred",
        }

    @staticmethod
    def _check(response, challenge):
        encoded = response["response"]["clientDataJSON"]
        signed = json.loads(base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)))["challenge"]
        if signed != challenge or response.get("tampered"):
            raise CeremonyError("signature mismatch")

    def verify_registration(self, response, challenge):
        self._check(response, challenge)
        return RegisteredCredential(
            credential_id=response["id"],
            public_key=b"cose-key-" + response["id"].encode(),
            sign_count=response.get("signCount", 0),
            device_type="multi_device",
            backed_up=True,
        )

    def verify_authentication(self, response, challenge, public_key):
        self._check(response, challenge)
        if public_key != b"cose-key-" + response["id"].encode():
            raise CeremonyError("wrong key")
        return response["signCount"]


class FakeGoogleVerifier:
    def __init__(self):
        self.tokens = {}

    def add(self, id_token, sub, email, name=None):
        self.tokens[id_token] = GoogleClaims(sub=sub, email=email, email_verified=True, name=name)

    def verify(self, id_token):
        claims = self.tokens.get(id_token)
        if claims is None:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid Google ID token")
        return Result.success(claims)


@pytest.fixture
def sms():
    return ConsoleSmsChannel()


@pytest.fixture
def mailbox():
    return ConsoleEmailChannel()


@pytest.fixture
def webauthn():
    return FakeWebAuthnVerifier()


@pytest.fixture
def google():
    return FakeGoogleVerifier()


@pytest.fixture
def published():
    return []


@pytest.fixture
def event_bus(published):
    bus = EventBus()
    bus.subscribe("shop.registered", published.append)
    return bus


@pytest.fixture
def app(sms, mailbox, webauthn, google, event_bus):
    """Create application for testing."""
    app = create_app(
        TestingConfig,
        sms_channel=sms,
        email_channel=mailbox,
        webauthn_verifier=webauthn,
        google_verifier=google,
        event_bus=event_bus,
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions[SERVICES_KEY]


def latest_code(target: str) -> str:
    db.session.expire_all()
    return db.session.query(OtpChallenge).filter_by(target=target).one().code


@pytest.fixture
def make_user(app):
    def _make(phone=None, email=None, password=None, role=ROLE_STUDENT, **fields):
        auth_method = fields.pop("auth_method", AUTH_PASSWORD if password else "PHONE_OTP")
        user = User(
            phone=phone,
            email=email,
            role=role,
            password_hash=hash_password(password) if password else None,
            auth_method=auth_method,
            **fields,
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def student(make_user):
    return make_user(phone="+919876543210", name="Asha", password="printer123")


@pytest.fixture
def auth_headers(services, student):
    pair = services.tokens.issue_pair(student.id)
    return {"Authorization": f"Bearer {pair.access_token}"}
