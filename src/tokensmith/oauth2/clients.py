# Resolved client views.
# Created: 2026-10-19
#
# A client is either a registry row (RegisteredClient) or a metadata document
# fetched from its client-id URL (UrlBasedClient). Both expose the same
# capability surface so the engines never branch on where a client came from.

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode, urlsplit, urlunsplit

from tokensmith.config import Settings
from tokensmith.errors import InvalidRedirectUrlError
from tokensmith.oauth2.models import ClientRecord


def derive_client_secret(secret_key: str, client_secret_id: str) -> str:
    """HMAC-SHA256 of the stored secret id under the server key."""
    return hmac.new(secret_key.encode(), client_secret_id.encode(), hashlib.sha256).hexdigest()


def _url_for_redirect(base: str | None, params: dict[str, Any]) -> str:
    if not base:
        raise InvalidRedirectUrlError("Client has no redirect URI")
    try:
        parts = urlsplit(base)
    except ValueError as exc:
        raise InvalidRedirectUrlError(str(exc)) from exc
    if not parts.scheme or not parts.netloc:
        raise InvalidRedirectUrlError(f"Redirect URI is not absolute: {base}")
    query = urlencode([(str(k), v) for k, v in params.items()])
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))


@runtime_checkable
class ResolvedClient(Protocol):
    """Capabilities the grant and session engines need from a client."""

    @property
    def public_id(self) -> str: ...

    @property
    def client_type(self) -> str: ...

    @property
    def redirect_uris(self) -> list[str]: ...

    @property
    def token_endpoint_auth_method(self) -> str: ...

    @property
    def access_token_duration(self) -> int: ...

    @property
    def refresh_token_duration(self) -> int: ...

    @property
    def url_based(self) -> bool: ...

    def is_public(self) -> bool: ...

    def is_confidential(self) -> bool: ...

    def redirect_uri_registered(self, uri: str | None) -> bool: ...

    def primary_redirect_uri(self) -> str | None: ...

    def authenticate_with_secret(self, provided_secret: str | None) -> bool: ...

    def url_for_redirect(self, params: dict[str, Any]) -> str: ...


class RegisteredClient:
    """Client backed by a registry record."""

    url_based = False

    def __init__(self, record: ClientRecord, settings: Settings):
        self.record = record
        self._settings = settings

    def __repr__(self) -> str:
        return f"RegisteredClient(public_id={self.public_id!r}, type={self.client_type!r})"

    @property
    def public_id(self) -> str:
        return self.record.public_id

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def client_type(self) -> str:
        return self.record.client_type

    @property
    def redirect_uris(self) -> list[str]:
        return list(self.record.redirect_uris)

    @property
    def token_endpoint_auth_method(self) -> str:
        return self.record.token_endpoint_auth_method

    @property
    def access_token_duration(self) -> int:
        return self.record.access_token_duration or self._settings.default_access_token_duration

    @property
    def refresh_token_duration(self) -> int:
        return self.record.refresh_token_duration or self._settings.default_refresh_token_duration

    @property
    def scope(self) -> str | None:
        return self.record.scope

    def is_public(self) -> bool:
        return self.client_type == "public"

    def is_confidential(self) -> bool:
        return self.client_type == "confidential"

    def redirect_uri_registered(self, uri: str | None) -> bool:
        return uri is not None and uri in self.record.redirect_uris

    def primary_redirect_uri(self) -> str | None:
        return self.record.redirect_uris[0] if self.record.redirect_uris else None

    @property
    def client_secret(self) -> str | None:
        """Secret derived under the current server key."""
        if self.is_public() or not self.record.client_secret_id:
            return None
        return derive_client_secret(self._settings.secret_key, self.record.client_secret_id)

    def authenticate_with_secret(self, provided_secret: str | None) -> bool:
        if self.is_public() or not self.record.client_secret_id or not provided_secret:
            return False
        # Secrets derived under a rotated-out key keep working until it is dropped.
        for key in self._settings.signing_keys:
            expected = derive_client_secret(key, self.record.client_secret_id)
            if hmac.compare_digest(expected, provided_secret):
                return True
        return False

    def url_for_redirect(self, params: dict[str, Any]) -> str:
        return _url_for_redirect(self.primary_redirect_uri(), params)


class UrlBasedClient:
    """Ephemeral client built from a fetched client metadata document.

    Always public, always ``none`` auth, never persisted.
    """

    url_based = True
    client_type = "public"
    token_endpoint_auth_method = "none"

    def __init__(self, metadata: dict[str, Any], settings: Settings):
        self.metadata = dict(metadata)
        self._settings = settings

    def __repr__(self) -> str:
        return f"UrlBasedClient(public_id={self.public_id!r})"

    @property
    def public_id(self) -> str:
        return self.metadata["client_id"]

    @property
    def name(self) -> str:
        return self.metadata.get("client_name") or self.public_id

    @property
    def redirect_uris(self) -> list[str]:
        return list(self.metadata.get("redirect_uris") or [])

    @property
    def access_token_duration(self) -> int:
        return self._settings.default_access_token_duration

    @property
    def refresh_token_duration(self) -> int:
        return self._settings.default_refresh_token_duration

    @property
    def scope(self) -> str | None:
        return self.metadata.get("scope")

    @property
    def grant_types(self) -> list[str]:
        return self.metadata.get("grant_types") or ["authorization_code"]

    @property
    def response_types(self) -> list[str]:
        return self.metadata.get("response_types") or ["code"]

    @property
    def client_uri(self) -> str | None:
        return self.metadata.get("client_uri")

    @property
    def logo_uri(self) -> str | None:
        return self.metadata.get("logo_uri")

    @property
    def client_secret(self) -> None:
        return None

    def is_public(self) -> bool:
        return True

    def is_confidential(self) -> bool:
        return False

    def redirect_uri_registered(self, uri: str | None) -> bool:
        return uri is not None and uri in self.redirect_uris

    def primary_redirect_uri(self) -> str | None:
        uris = self.redirect_uris
        return uris[0] if uris else None

    def authenticate_with_secret(self, provided_secret: str | None) -> bool:
        return False

    def url_for_redirect(self, params: dict[str, Any]) -> str:
        return _url_for_redirect(self.primary_redirect_uri(), params)
