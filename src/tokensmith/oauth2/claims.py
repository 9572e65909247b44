# Access and refresh token claim sets.
# Created: 2026-10-19
#
# Claims are built here and handed to a ClaimsCodec for signing. JWTCodec is
# the PyJWT-backed codec used by default; anything exposing encode/decode with
# the same shape can replace it.

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import jwt

from tokensmith.config import Settings
from tokensmith.errors import DecodeError, ValidationErrors
from tokensmith.oauth2.models import utcnow
from tokensmith.oauth2.policy import resource_matches

logger = logging.getLogger(__name__)

Audience = str | list[str]


class ClaimsCodec(Protocol):
    def encode(self, claims: dict[str, Any], expiry: int) -> str: ...

    def decode(self, token: str) -> dict[str, Any]: ...


class JWTCodec:
    """HS256 JWT codec. Decoding accepts any key still listed for rotation."""

    algorithm = "HS256"

    def __init__(self, settings: Settings):
        if not settings.secret_key:
            raise ValueError("JWTCodec needs a secret_key")
        self._keys = settings.signing_keys

    def encode(self, claims: dict[str, Any], expiry: int) -> str:
        payload = {**claims, "exp": int(expiry)}
        return jwt.encode(payload, self._keys[0], algorithm=self.algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        # Expiry, audience and issuer are checked by the claim model, not here.
        options = {"verify_exp": False, "verify_aud": False, "verify_iat": False}
        last_error: Exception | None = None
        for key in self._keys:
            try:
                return jwt.decode(token, key, algorithms=[self.algorithm], options=options)
            except jwt.InvalidSignatureError as exc:
                last_error = exc
            except jwt.PyJWTError as exc:
                raise DecodeError(f"Malformed token: {exc}") from exc
        raise DecodeError(f"Token signature did not verify: {last_error}")


def derive_audience(resources: list[str], default_audience: str) -> Audience:
    """One resource -> string, several -> list, none -> configured audience."""
    if not resources:
        return default_audience
    if len(resources) == 1:
        return resources[0]
    return list(resources)


def scope_string(scopes: list[str]) -> str | None:
    return " ".join(scopes) if scopes else None


def _audience_values(aud: Audience | None) -> list[str]:
    if aud is None:
        return []
    if isinstance(aud, str):
        return [aud]
    return list(aud)


@dataclass
class _BaseClaims:
    aud: Audience | None = None
    exp: int | None = None
    iat: int | None = None
    iss: str | None = None
    jti: str | None = None
    scope: str | None = None

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []

    @property
    def audiences(self) -> list[str]:
        return _audience_values(self.aud)

    def _base_h(self) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "aud": self.aud,
            "exp": self.exp,
            "iat": self.iat,
            "iss": self.iss,
            "jti": self.jti,
        }
        if self.scope:
            claims["scope"] = self.scope
        return claims

    def to_h(self) -> dict[str, Any]:
        return self._base_h()

    def to_encoded_token(self, codec: ClaimsCodec) -> str:
        return codec.encode(self.to_h(), self.exp or 0)

    def validate(self, settings: Settings, now: datetime | None = None) -> ValidationErrors:
        """Check jti, expiry, issuer and audience. Signature is the codec's job."""
        errors = ValidationErrors()
        now = now or utcnow()

        if not self.jti:
            errors.add("jti", "blank")

        if self.exp is None:
            errors.add("exp", "blank")
        elif now.timestamp() > self.exp:
            errors.add("exp", "expired")

        if not self.iss:
            errors.add("iss", "blank")
        elif self.iss != settings.issuer_url:
            errors.add("iss", "mismatched")

        audiences = self.audiences
        if not audiences:
            errors.add("aud", "blank")
        else:
            known = [settings.audience_url, *settings.resources.keys()]
            for value in audiences:
                if not any(resource_matches(value, k) for k in known):
                    errors.add("aud", "unknown")
                    break

        return errors

    def is_valid(self, settings: Settings, now: datetime | None = None) -> bool:
        return not self.validate(settings, now)


@dataclass
class AccessTokenClaims(_BaseClaims):
    user_id: str | None = None
    client_id: str | None = None

    @classmethod
    def default(
        cls,
        *,
        settings: Settings,
        exp: int,
        user_id: str,
        resources: list[str] | None = None,
        scopes: list[str] | None = None,
        client_id: str | None = None,
        now: datetime | None = None,
    ) -> AccessTokenClaims:
        now = now or utcnow()
        return cls(
            aud=derive_audience(resources or [], settings.audience_url),
            exp=exp,
            iat=int(now.timestamp()),
            iss=settings.issuer_url,
            jti=str(uuid.uuid4()),
            scope=scope_string(scopes or []),
            user_id=str(user_id),
            client_id=client_id,
        )

    @classmethod
    def from_token(cls, token: str, codec: ClaimsCodec) -> AccessTokenClaims:
        claims = codec.decode(token)
        return cls(
            aud=claims.get("aud"),
            exp=claims.get("exp"),
            iat=claims.get("iat"),
            iss=claims.get("iss"),
            jti=claims.get("jti"),
            scope=claims.get("scope"),
            user_id=claims.get("user_id") or claims.get("sub"),
            client_id=claims.get("client_id"),
        )

    def to_h(self) -> dict[str, Any]:
        claims = self._base_h()
        claims["sub"] = self.user_id
        claims["user_id"] = self.user_id
        if self.client_id:
            claims["client_id"] = self.client_id
        return claims

    def validate(self, settings: Settings, now: datetime | None = None) -> ValidationErrors:
        errors = super().validate(settings, now)
        if not self.user_id:
            errors.add("user_id", "blank")
        return errors


@dataclass
class RefreshTokenClaims(_BaseClaims):
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def default(
        cls,
        *,
        settings: Settings,
        exp: int,
        resources: list[str] | None = None,
        scopes: list[str] | None = None,
        now: datetime | None = None,
    ) -> RefreshTokenClaims:
        now = now or utcnow()
        return cls(
            aud=derive_audience(resources or [], settings.audience_url),
            exp=exp,
            iat=int(now.timestamp()),
            iss=settings.issuer_url,
            jti=str(uuid.uuid4()),
            scope=scope_string(scopes or []),
        )

    @classmethod
    def from_token(cls, token: str, codec: ClaimsCodec) -> RefreshTokenClaims:
        claims = codec.decode(token)
        known = {"aud", "exp", "iat", "iss", "jti", "scope"}
        return cls(
            aud=claims.get("aud"),
            exp=claims.get("exp"),
            iat=claims.get("iat"),
            iss=claims.get("iss"),
            jti=claims.get("jti"),
            scope=claims.get("scope"),
            extra={k: v for k, v in claims.items() if k not in known},
        )
