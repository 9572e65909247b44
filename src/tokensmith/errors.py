# Error taxonomy for the authorization server core.
# Created: 2026-10-19
#
# Two families live here. Exceptions are reserved for invariant violations,
# security events and refresh tokens that fail claim validation; everything a client can cause by sending a bad request is a
# FieldError collected into ValidationErrors and handed back as an OAuthError.

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any


class TokenAuthorityError(Exception):
    """Base class for tokensmith exceptions."""


class ConfigurationError(TokenAuthorityError):
    """Settings are missing or inconsistent."""


class ClientNotFoundError(TokenAuthorityError):
    """The client could not be resolved.

    Raised uniformly for registry misses, rejected client-id URLs, failed
    fetches and malformed metadata documents so callers cannot tell them apart.
    """

    def __init__(self, message: str = "Client not found") -> None:
        super().__init__(message)


class InvalidGrantError(TokenAuthorityError):
    """A presented token failed claim validation."""

    def __init__(self, message: str = "The provided authorization grant is invalid") -> None:
        super().__init__(message)


class ServerIntegrityError(TokenAuthorityError):
    """An internal invariant was violated. Always a bug signal."""


class DecodeError(TokenAuthorityError):
    """A token string could not be decoded or its signature did not verify."""


class InvalidRedirectUrlError(TokenAuthorityError):
    """A client's redirect URI could not be turned into a redirect URL."""


class ConstraintViolation(TokenAuthorityError):
    """A storage uniqueness or compare-and-swap precondition failed on commit."""


class GrantAlreadyRedeemedError(ConstraintViolation):
    """The grant's redeemed flag was already set when the transaction committed."""


class RevokedSessionError(TokenAuthorityError):
    """A refresh token was replayed or presented by the wrong client.

    Carries the fields security auditing needs. Raising this means the grant's
    live session has already been revoked.
    """

    def __init__(
        self,
        *,
        client_id: str | None,
        refreshed_session_id: str,
        revoked_session_id: str,
        user_id: str,
    ) -> None:
        super().__init__(
            f"Revoked session {revoked_session_id} after refresh attempt on session "
            f"{refreshed_session_id} by client {client_id} for user {user_id}"
        )
        self.client_id = client_id
        self.refreshed_session_id = refreshed_session_id
        self.revoked_session_id = revoked_session_id
        self.user_id = user_id

    def to_payload(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "refreshed_session_id": self.refreshed_session_id,
            "revoked_session_id": self.revoked_session_id,
            "user_id": self.user_id,
        }


# Client metadata document failures. These never leave the resolver.


class InvalidClientMetadataDocumentUrlError(TokenAuthorityError):
    """The client-id URL violates URL policy."""


class ClientMetadataDocumentFetchError(TokenAuthorityError):
    """DNS, connection, HTTP status, size or JSON failure while fetching."""


class InvalidClientMetadataDocumentError(TokenAuthorityError):
    """The fetched document does not satisfy document policy."""


# ---------------------------------------------------------------------------
# Field-level validation
# ---------------------------------------------------------------------------

INVALID_GRANT = "invalid_grant"
INVALID_REQUEST = "invalid_request"
INVALID_TARGET = "invalid_target"
INVALID_SCOPE = "invalid_scope"
INVALID_CLIENT = "invalid_client"
SERVER_ERROR = "server_error"

# Order matters: the first field with an error decides the OAuth error code.
_FIELD_TO_OAUTH_ERROR = {
    "grant": INVALID_GRANT,
    "token": INVALID_GRANT,
    "code_verifier": INVALID_GRANT,
    "client": INVALID_CLIENT,
    "client_id": INVALID_REQUEST,
    "response_type": INVALID_REQUEST,
    "redirect_uri": INVALID_REQUEST,
    "code_challenge": INVALID_REQUEST,
    "code_challenge_method": INVALID_REQUEST,
    "resources": INVALID_TARGET,
    "scope": INVALID_SCOPE,
}


@dataclass(frozen=True)
class FieldError:
    """One validation failure attributable to a request field."""

    field: str
    code: str

    def __str__(self) -> str:
        return f"{self.field} {self.code}"


@dataclass(frozen=True)
class OAuthError:
    """Protocol error ready for an OAuth error response."""

    error: str
    description: str = ""
    field_errors: tuple[FieldError, ...] = ()

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


@dataclass
class ValidationErrors:
    """Ordered collection of field errors."""

    errors: list[FieldError] = field(default_factory=list)

    def add(self, field_name: str, code: str) -> None:
        self.errors.append(FieldError(field_name, code))

    def extend(self, other: ValidationErrors) -> None:
        self.errors.extend(other.errors)

    def on(self, field_name: str) -> list[str]:
        return [e.code for e in self.errors if e.field == field_name]

    def __bool__(self) -> bool:
        return bool(self.errors)

    def __iter__(self) -> Iterator[FieldError]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def to_oauth_error(self) -> OAuthError:
        if not self.errors:
            raise ValueError("no validation errors to convert")
        first = self.errors[0]
        code = _FIELD_TO_OAUTH_ERROR.get(first.field, INVALID_REQUEST)
        description = ", ".join(str(e) for e in self.errors)
        return OAuthError(error=code, description=description, field_errors=tuple(self.errors))
