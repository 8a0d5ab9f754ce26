# Overview: Google ID token verification through the tokeninfo endpoint.

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from ..results import ErrorKind, Result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GoogleClaims:
    sub: str
    email: str
    email_verified: bool
    name: str | None = None
    picture: str | None = None


def _is_true(value) -> bool:
    # tokeninfo returns booleans as strings
    return value is True or str(value).lower() == "true"


class GoogleTokenVerifier:
    """
    Verifies ID tokens with Google's tokeninfo endpoint.

    The audience is checked only when a client id is configured.
    """

    def __init__(self, tokeninfo_url: str, client_id: str = "", timeout: float = 5.0, http_client=None):
        self.tokeninfo_url = tokeninfo_url
        self.client_id = client_id
        self._client = http_client or httpx.Client(timeout=timeout)

    def verify(self, id_token: str) -> Result[GoogleClaims]:
        try:
            response = self._client.get(self.tokeninfo_url, params={"id_token": id_token})
        except httpx.HTTPError as e:
            logger.error("Google token verification failed: %s", e)
            return Result.failure(ErrorKind.UNAUTHORIZED, "Failed to verify Google token")

        if response.status_code != 200:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid Google ID token")

        payload = response.json()
        if self.client_id and payload.get("aud") != self.client_id:
            logger.warning("Google token issued for another audience: %s", payload.get("aud"))
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid Google ID token")

        if not _is_true(payload.get("email_verified")):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Email not verified with Google")

        logger.info("Google verified user %s", payload.get("email"))
        return Result.success(GoogleClaims(
            sub=payload["sub"],
            email=payload["email"].lower(),
            email_verified=True,
            name=payload.get("name"),
            picture=payload.get("picture"),
        ))


class MockGoogleTokenVerifier:
    """Development verifier: accepts any token and returns a fixed Gmail user."""

    def __init__(self, email: str = "mockuser@gmail.com", name: str = "Mock Google User"):
        self.email = email
        self.name = name

    def verify(self, id_token: str) -> Result[GoogleClaims]:
        logger.info("[MOCK GOOGLE] Verifying token: %s...", (id_token or "")[:20])
        return Result.success(GoogleClaims(
            sub=f"google_mock_{int(time.time() * 1000)}",
            email=self.email,
            email_verified=True,
            name=self.name,
        ))


def build_google_verifier(settings):
    """Mock verifier in mock-delivery mode, tokeninfo verifier otherwise."""
    if settings.delivery.use_mock:
        return MockGoogleTokenVerifier()
    return GoogleTokenVerifier(settings.google_tokeninfo_url, settings.google_client_id)
