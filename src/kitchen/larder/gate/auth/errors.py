"""Authentication error taxonomy.

Every failure in the authentication layer is an `AuthError` tagged with an `ErrorKind`. Callers
branch on `kind` rather than on exception subclasses. Each kind knows the code shown to clients and
the HTTP status it maps to.

`detail` is for server-side logs only (provider payloads, parser messages) and is never rendered
into a response.
"""

from enum import StrEnum
from typing import Any, Dict, Optional


class ErrorKind(StrEnum):
    token_malformed = "token_malformed"
    token_expired = "token_expired"
    audience_mismatch = "audience_mismatch"
    issuer_mismatch = "issuer_mismatch"
    nonce_mismatch = "nonce_mismatch"
    key_not_found = "key_not_found"
    key_fetch_failed = "key_fetch_failed"
    exchange_failed = "exchange_failed"
    already_linked = "already_linked"
    unauthenticated = "unauthenticated"
    invalid_request = "invalid_request"
    invalid_credentials = "invalid_credentials"
    unconfirmed = "unconfirmed"
    email_taken = "email_taken"
    confirmation_invalid = "confirmation_invalid"
    internal_failure = "internal_failure"

    @property
    def public_code(self) -> str:
        return _PUBLIC_CODES.get(self, self.value)

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self, 401)


_PUBLIC_CODES = {
    ErrorKind.token_malformed: "invalid_token",
    ErrorKind.issuer_mismatch: "invalid_token",
    ErrorKind.key_not_found: "invalid_token",
    ErrorKind.key_fetch_failed: "invalid_token",
    ErrorKind.token_expired: "expired_token",
    ErrorKind.audience_mismatch: "aud_mismatch",
    ErrorKind.exchange_failed: "token_exchange_failed",
    ErrorKind.confirmation_invalid: "invalid_confirmation_token",
}

_HTTP_STATUS = {
    ErrorKind.already_linked: 409,
    ErrorKind.invalid_request: 400,
    ErrorKind.email_taken: 422,
    ErrorKind.confirmation_invalid: 422,
    ErrorKind.internal_failure: 500,
}


class AuthError(Exception):
    """
    Authentication failure tagged with its kind.

    Use the named constructors rather than building instances directly so that messages stay
    consistent across the handlers that surface them.
    """

    def __init__(
        self, kind: ErrorKind, message: str, detail: Optional[Any] = None
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.value!r}, message={self.message!r})"

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {"error": {"code": self.kind.public_code, "message": self.message}}

    @staticmethod
    def token_malformed(message: str = "Invalid token", detail: Any = None) -> "AuthError":
        return AuthError(ErrorKind.token_malformed, message, detail)

    @staticmethod
    def token_expired(detail: Any = None) -> "AuthError":
        return AuthError(ErrorKind.token_expired, "Token has expired", detail)

    @staticmethod
    def audience_mismatch(detail: Any = None) -> "AuthError":
        return AuthError(ErrorKind.audience_mismatch, "Invalid audience", detail)

    @staticmethod
    def issuer_mismatch(detail: Any = None) -> "AuthError":
        return AuthError(ErrorKind.issuer_mismatch, "Invalid issuer", detail)

    @staticmethod
    def nonce_mismatch(detail: Any = None) -> "AuthError":
        return AuthError(ErrorKind.nonce_mismatch, "Nonce mismatch", detail)

    @staticmethod
    def key_not_found(key_id: str) -> "AuthError":
        return AuthError(
            ErrorKind.key_not_found, "Signing key not found", {"kid": key_id}
        )

    @staticmethod
    def key_fetch_failed(detail: Any = None) -> "AuthError":
        return AuthError(
            ErrorKind.key_fetch_failed, "Unable to fetch signing keys", detail
        )

    @staticmethod
    def exchange_failed(
        message: str = "Failed to exchange authorization code", detail: Any = None
    ) -> "AuthError":
        return AuthError(ErrorKind.exchange_failed, message, detail)

    @staticmethod
    def already_linked(
        message: str = "This account is already linked to another user",
    ) -> "AuthError":
        return AuthError(ErrorKind.already_linked, message)

    @staticmethod
    def unauthenticated(detail: Any = None) -> "AuthError":
        return AuthError(ErrorKind.unauthenticated, "Not Authorized", detail)

    @staticmethod
    def invalid_request(message: str = "Invalid request", detail: Any = None) -> "AuthError":
        return AuthError(ErrorKind.invalid_request, message, detail)

    @staticmethod
    def invalid_credentials() -> "AuthError":
        return AuthError(
            ErrorKind.invalid_credentials, "Email address or password is incorrect"
        )

    @staticmethod
    def unconfirmed() -> "AuthError":
        return AuthError(
            ErrorKind.unconfirmed, "Email address has not been confirmed"
        )

    @staticmethod
    def email_taken() -> "AuthError":
        return AuthError(ErrorKind.email_taken, "Email address is already registered")

    @staticmethod
    def internal_failure(detail: Any = None) -> "AuthError":
        return AuthError(ErrorKind.internal_failure, "Internal Server Error", detail)

    @staticmethod
    def confirmation_invalid(detail: Any = None) -> "AuthError":
        return AuthError(
            ErrorKind.confirmation_invalid,
            "Confirmation token is invalid or has expired",
            detail,
        )
