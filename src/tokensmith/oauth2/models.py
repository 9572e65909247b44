# OAuth2 data models.
# Created: 2026-10-19

from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

VALID_CODE_CHALLENGE_METHODS = ("S256",)
CLIENT_TYPES = ("public", "confidential")
SUPPORTED_AUTH_METHODS = (
    "none",
    "client_secret_basic",
    "client_secret_post",
    "client_secret_jwt",
    "private_key_jwt",
)

UUID_RE = re.compile(
    r"\A[0-9a-f]{8}-[0-9a-f]{4}-[0-5][0-9a-f]{3}-[089ab][0-9a-f]{3}-[0-9a-f]{12}\Z",
    re.IGNORECASE,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def is_uuid(value: str | None) -> bool:
    return bool(value) and UUID_RE.match(value) is not None


class SessionStatus(str, Enum):
    CREATED = "created"
    EXPIRED = "expired"
    REFRESHED = "refreshed"
    REVOKED = "revoked"


@dataclass
class ClientRecord:
    """Registered OAuth2 client as stored in the registry."""

    public_id: str
    name: str
    client_type: str  # "public" | "confidential"
    redirect_uris: list[str]
    token_endpoint_auth_method: str = "none"
    access_token_duration: int | None = None
    refresh_token_duration: int | None = None
    # Only set for confidential clients. The secret itself is derived, never stored.
    client_secret_id: str | None = None
    scope: str | None = None
    grant_types: list[str] = field(default_factory=lambda: ["authorization_code"])
    response_types: list[str] = field(default_factory=lambda: ["code"])
    client_uri: str | None = None
    logo_uri: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def build(
        cls,
        name: str,
        redirect_uris: list[str],
        token_endpoint_auth_method: str = "none",
        **kwargs,
    ) -> ClientRecord:
        """Create a new record, deriving type and secret id from the auth method."""
        if token_endpoint_auth_method not in SUPPORTED_AUTH_METHODS:
            raise ValueError(f"Unsupported token endpoint auth method: {token_endpoint_auth_method}")
        if not redirect_uris:
            raise ValueError("At least one redirect_uri is required")
        client_type = kwargs.pop(
            "client_type",
            "public" if token_endpoint_auth_method == "none" else "confidential",
        )
        if client_type not in CLIENT_TYPES:
            raise ValueError(f"Unknown client type: {client_type}")
        return cls(
            public_id=str(uuid.uuid4()),
            name=name,
            client_type=client_type,
            redirect_uris=list(redirect_uris),
            token_endpoint_auth_method=token_endpoint_auth_method,
            client_secret_id=str(uuid.uuid4()) if client_type == "confidential" else None,
            **kwargs,
        )


@dataclass(frozen=True)
class Challenge:
    """PKCE parameters and redirect URI captured at authorize time."""

    code_challenge: str | None = None
    code_challenge_method: str | None = None
    redirect_uri: str | None = None

    @property
    def present(self) -> bool:
        return bool(self.code_challenge or self.code_challenge_method)


@dataclass
class AuthorizationGrant:
    """One-time authorization code."""

    public_id: str
    user_id: str
    expires_at: datetime
    challenge: Challenge = field(default_factory=Challenge)
    client_id: str | None = None  # registered client public id
    client_id_url: str | None = None  # URL-based client id
    resources: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    redeemed: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if bool(self.client_id) == bool(self.client_id_url):
            raise ValueError("A grant needs exactly one of client_id or client_id_url")
        if (
            self.challenge.code_challenge_method is not None
            and self.challenge.code_challenge_method not in VALID_CODE_CHALLENGE_METHODS
        ):
            raise ValueError(
                f"Unsupported code_challenge_method: {self.challenge.code_challenge_method}"
            )

    @classmethod
    def issue(
        cls,
        *,
        user_id: str,
        ttl_seconds: int,
        now: datetime | None = None,
        **kwargs,
    ) -> AuthorizationGrant:
        now = now or utcnow()
        return cls(
            public_id=secrets.token_urlsafe(32),
            user_id=user_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
            **kwargs,
        )

    @property
    def client_reference(self) -> str:
        return self.client_id or self.client_id_url or ""

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class Session:
    """Live record of one issued access/refresh token pair."""

    id: str
    grant_id: str
    access_token_jti: str
    refresh_token_jti: str
    status: SessionStatus = SessionStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not is_uuid(self.access_token_jti) or not is_uuid(self.refresh_token_jti):
            raise ValueError("Session JTIs must be UUIDs")

    @classmethod
    def for_grant(
        cls, grant: AuthorizationGrant, access_token_jti: str, refresh_token_jti: str
    ) -> Session:
        return cls(
            id=uuid.uuid4().hex,
            grant_id=grant.public_id,
            access_token_jti=access_token_jti,
            refresh_token_jti=refresh_token_jti,
        )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.CREATED


@dataclass(frozen=True)
class TokenContainer:
    """Token response data plus the session that backs it."""

    access_token: str
    refresh_token: str
    expiration: int  # unix timestamp of access token expiry
    scope: str | None
    session: Session

    def to_response(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        body = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "Bearer",
            "expires_in": max(0, self.expiration - int(now.timestamp())),
        }
        if self.scope:
            body["scope"] = self.scope
        return body
