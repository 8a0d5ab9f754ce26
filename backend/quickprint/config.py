# backend/quickprint/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/quickprint.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///quickprint.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Token signing
    JWT_SECRET = os.environ.get("JWT_SECRET", "dev-jwt-secret-change-me-32-bytes-min")
    JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
    JWT_ACCESS_EXPIRES_MINUTES = int(os.environ.get("JWT_ACCESS_EXPIRES_MINUTES", "15"))
    JWT_REFRESH_EXPIRES_DAYS = int(os.environ.get("JWT_REFRESH_EXPIRES_DAYS", "7"))

    # OTP
    OTP_TTL_SECONDS = int(os.environ.get("OTP_TTL_SECONDS", "300"))
    OTP_MAX_ATTEMPTS = int(os.environ.get("OTP_MAX_ATTEMPTS", "5"))
    USE_MOCK_OTP = _env_bool("USE_MOCK_OTP", "true")

    # Twilio SMS
    TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN", "")
    TWILIO_PHONE_NUMBER = os.environ.get("TWILIO_PHONE_NUMBER", "")

    # SendGrid email
    SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY", "")
    SENDGRID_FROM_EMAIL = os.environ.get("SENDGRID_FROM_EMAIL", "noreply@thequickprint.in")

    # Magic links point at the frontend
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")

    # WebAuthn relying party
    RP_ID = os.environ.get("RP_ID", "localhost")
    RP_NAME = os.environ.get("RP_NAME", "QuickPrint")
    RP_ORIGIN = os.environ.get("RP_ORIGIN", "http://localhost:5173")
    WEBAUTHN_CHALLENGE_TTL_SECONDS = int(os.environ.get("WEBAUTHN_CHALLENGE_TTL_SECONDS", "300"))
    # Accept 0 -> 0 sign counters from authenticators without a counter (synced passkeys)
    RP_ALLOW_ZERO_COUNTER = _env_bool("RP_ALLOW_ZERO_COUNTER", "false")

    # Google OAuth (audience check is skipped when unset)
    GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
    GOOGLE_TOKENINFO_URL = os.environ.get(
        "GOOGLE_TOKENINFO_URL", "https://oauth2.googleapis.com/tokeninfo"
    )

    # Partner registration windows
    PARTNER_REGISTRATION_TTL_MINUTES = int(os.environ.get("PARTNER_REGISTRATION_TTL_MINUTES", "30"))
    EMAIL_TOKEN_TTL_MINUTES = int(os.environ.get("EMAIL_TOKEN_TTL_MINUTES", "15"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    JWT_SECRET = "test-jwt-secret-with-at-least-32-bytes!!"
    USE_MOCK_OTP = True
    LOG_LEVEL = "WARNING"


@dataclass(frozen=True)
class TokenSettings:
    secret: str
    algorithm: str
    access_ttl: timedelta
    refresh_ttl: timedelta


@dataclass(frozen=True)
class OtpSettings:
    ttl: timedelta
    max_attempts: int
    sms_length: int = 4
    email_length: int = 6


@dataclass(frozen=True)
class RelyingPartySettings:
    rp_id: str
    rp_name: str
    origin: str
    challenge_ttl: timedelta
    allow_zero_counter: bool = False


@dataclass(frozen=True)
class RegistrationSettings:
    pending_ttl: timedelta
    email_token_ttl: timedelta
    frontend_url: str


@dataclass(frozen=True)
class DeliverySettings:
    use_mock: bool
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_from_number: str
    sendgrid_api_key: str
    sendgrid_from_email: str

    @property
    def twilio_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def sendgrid_enabled(self) -> bool:
        return bool(self.sendgrid_api_key)


@dataclass(frozen=True)
class IdentitySettings:
    """Per-component settings read once from the Flask config."""
    tokens: TokenSettings
    otp: OtpSettings
    relying_party: RelyingPartySettings
    registration: RegistrationSettings
    delivery: DeliverySettings
    google_client_id: str
    google_tokeninfo_url: str

    @classmethod
    def from_mapping(cls, cfg: Mapping) -> "IdentitySettings":
        return cls(
            tokens=TokenSettings(
                secret=cfg["JWT_SECRET"],
                algorithm=cfg["JWT_ALGORITHM"],
                access_ttl=timedelta(minutes=cfg["JWT_ACCESS_EXPIRES_MINUTES"]),
                refresh_ttl=timedelta(days=cfg["JWT_REFRESH_EXPIRES_DAYS"]),
            ),
            otp=OtpSettings(
                ttl=timedelta(seconds=cfg["OTP_TTL_SECONDS"]),
                max_attempts=cfg["OTP_MAX_ATTEMPTS"],
            ),
            relying_party=RelyingPartySettings(
                rp_id=cfg["RP_ID"],
                rp_name=cfg["RP_NAME"],
                origin=cfg["RP_ORIGIN"],
                challenge_ttl=timedelta(seconds=cfg["WEBAUTHN_CHALLENGE_TTL_SECONDS"]),
                allow_zero_counter=bool(cfg.get("RP_ALLOW_ZERO_COUNTER", False)),
            ),
            registration=RegistrationSettings(
                pending_ttl=timedelta(minutes=cfg["PARTNER_REGISTRATION_TTL_MINUTES"]),
                email_token_ttl=timedelta(minutes=cfg["EMAIL_TOKEN_TTL_MINUTES"]),
                frontend_url=cfg["FRONTEND_URL"].rstrip("/"),
            ),
            delivery=DeliverySettings(
                use_mock=bool(cfg["USE_MOCK_OTP"]),
                twilio_account_sid=cfg["TWILIO_ACCOUNT_SID"],
                twilio_auth_token=cfg["TWILIO_AUTH_TOKEN"],
                twilio_from_number=cfg["TWILIO_PHONE_NUMBER"],
                sendgrid_api_key=cfg["SENDGRID_API_KEY"],
                sendgrid_from_email=cfg["SENDGRID_FROM_EMAIL"],
            ),
            google_client_id=cfg["GOOGLE_CLIENT_ID"],
            google_tokeninfo_url=cfg["GOOGLE_TOKENINFO_URL"],
        )
