"""Router modules exposed by the Authgate API."""
from . import auth, email_otp, oauth, system, two_factor, webauthn

__all__ = [
    "auth",
    "email_otp",
    "oauth",
    "system",
    "two_factor",
    "webauthn",
]
