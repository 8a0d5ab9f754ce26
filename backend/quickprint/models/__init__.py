from .identity import User, Shop
from .otp import OtpChallenge, EmailVerificationToken
from .tokens import RefreshToken
from .passkey import PasskeyCredential, WebAuthnChallenge
from .registration import PendingPartnerRegistration
from .security import SecurityEvent

__all__ = [
    'User', 'Shop',
    'OtpChallenge', 'EmailVerificationToken',
    'RefreshToken',
    'PasskeyCredential', 'WebAuthnChallenge',
    'PendingPartnerRegistration',
    'SecurityEvent',
]
