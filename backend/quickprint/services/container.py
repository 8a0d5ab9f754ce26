# Overview: Builds the identity components once per app and hands them to routes and CLI.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..config import IdentitySettings
from ..extensions import SERVICES_KEY
from .auth_service import SignInStrategies, build_strategies
from .credential_store import CredentialStore, WebAuthnVerifier
from .delivery import build_email_channel, build_sms_channel
from .events import SHOP_REGISTERED, EventBus, log_event
from .google_oauth import build_google_verifier
from .otp_manager import OtpManager
from .registration_service import PartnerRegistration
from .token_service import TokenService


@dataclass
class IdentityServices:
    settings: IdentitySettings
    tokens: TokenService
    otp: OtpManager
    credentials: CredentialStore
    registration: PartnerRegistration
    strategies: SignInStrategies
    events: EventBus
    google_verifier: object
    sms_channel: object
    email_channel: object


def build_services(settings: IdentitySettings, *, sms_channel=None, email_channel=None,
                   webauthn_verifier=None, google_verifier=None, event_bus=None) -> IdentityServices:
    """
    Wire the components from settings.

    Any collaborator passed in replaces the one that would be built from
    settings; tests use this to swap in fakes.
    """
    sms_channel = sms_channel or build_sms_channel(settings.delivery)
    email_channel = email_channel or build_email_channel(settings.delivery)
    google_verifier = google_verifier or build_google_verifier(settings)
    if event_bus is None:
        event_bus = EventBus()
        event_bus.subscribe(SHOP_REGISTERED, log_event)

    tokens = TokenService(settings.tokens)
    otp = OtpManager(settings.otp, sms_channel=sms_channel, email_channel=email_channel)
    credentials = CredentialStore(
        settings.relying_party,
        tokens,
        webauthn_verifier or WebAuthnVerifier(settings.relying_party),
    )
    registration = PartnerRegistration(settings.registration, otp, tokens, email_channel, event_bus)

    return IdentityServices(
        settings=settings,
        tokens=tokens,
        otp=otp,
        credentials=credentials,
        registration=registration,
        strategies=build_strategies(
            tokens, otp, credentials, google_verifier, email_channel, settings.registration
        ),
        events=event_bus,
        google_verifier=google_verifier,
        sms_channel=sms_channel,
        email_channel=email_channel,
    )


def get_services() -> IdentityServices:
    return current_app.extensions[SERVICES_KEY]
