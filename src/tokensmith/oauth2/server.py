# OAuth 2.1 authorization server with PKCE, refresh rotation and URL clients.
# Created: 2026-10-19
#
# Facade over the grant and session engines. Every protocol method returns
# (result, error) where error is an OAuthError; the HTTP layer maps that
# straight onto an OAuth error response.

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx

from tokensmith.config import Settings, get_settings
from tokensmith.errors import (
    INVALID_CLIENT,
    INVALID_GRANT,
    SERVER_ERROR,
    ClientNotFoundError,
    DecodeError,
    InvalidGrantError,
    OAuthError,
    RevokedSessionError,
    ServerIntegrityError,
)
from tokensmith.oauth2.claims import AccessTokenClaims, ClaimsCodec, JWTCodec, RefreshTokenClaims
from tokensmith.oauth2.clients import RegisteredClient, ResolvedClient
from tokensmith.oauth2.grants import GrantEngine
from tokensmith.oauth2.metadata import DNSResolver, MetadataFetcher
from tokensmith.oauth2.models import Challenge, ClientRecord, SessionStatus, utcnow
from tokensmith.oauth2.policy import parse_scope, resource_policy, scope_policy
from tokensmith.oauth2.requests import AuthorizationRequest
from tokensmith.oauth2.resolver import ClientResolver
from tokensmith.oauth2.sessions import SessionEngine
from tokensmith.oauth2.storage import OAuthStorage
from tokensmith.security.audit import AuditLogger, AuditSeverity, get_audit_logger

logger = logging.getLogger(__name__)


class AuthorizationServer:
    """OAuth2 authorization server."""

    def __init__(
        self,
        settings: Settings | None = None,
        storage: OAuthStorage | None = None,
        *,
        codec: ClaimsCodec | None = None,
        dns_resolver: DNSResolver | None = None,
        transport: httpx.BaseTransport | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = (settings or get_settings()).ensure_secret_key()
        self.storage = storage or OAuthStorage(self.settings.storage_path)
        self.codec = codec or JWTCodec(self.settings)
        self.audit = audit or (
            AuditLogger(self.settings.audit_log_path)
            if self.settings.audit_log_path
            else get_audit_logger()
        )
        self._clock = clock

        self.fetcher = MetadataFetcher(
            self.settings, self.storage, resolver=dns_resolver, transport=transport, clock=clock
        )
        self.resolver = ClientResolver(self.settings, self.storage, self.fetcher)
        self.grants = GrantEngine(
            self.settings, self.storage, self.resolver, self.codec, clock=clock
        )
        self.sessions = SessionEngine(
            self.settings, self.storage, self.resolver, self.codec, audit=self.audit, clock=clock
        )

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def register_client(
        self,
        name: str,
        redirect_uris: list[str],
        token_endpoint_auth_method: str = "none",
        **kwargs: Any,
    ) -> RegisteredClient:
        record = ClientRecord.build(name, redirect_uris, token_endpoint_auth_method, **kwargs)
        self.storage.add_client(record)
        logger.info("Registered %s client %s (%s)", record.client_type, record.public_id, name)
        return RegisteredClient(record, self.settings)

    def resolve_client(self, client_id: str | None) -> ResolvedClient:
        """Resolve *client_id*, auditing failures. Raises ClientNotFoundError."""
        try:
            return self.resolver.resolve(client_id)
        except ClientNotFoundError:
            self.audit.log_security_event(
                "client_resolution_failed",
                f"client:{client_id}",
                actor=client_id or "unknown",
                status="blocked",
                severity=AuditSeverity.WARNING,
            )
            raise

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------

    def authorize(
        self,
        *,
        user_id: str,
        client_id: str,
        response_type: str = "code",
        redirect_uri: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        resources: list[str] | None = None,
        scope: str | list[str] | None = None,
        state: str | None = None,
    ) -> tuple[str | None, OAuthError | None]:
        """Validate an authorize request the user consented to and issue a code.

        Returns (code, error). If error is not None, code is None.
        """
        try:
            client = self.resolve_client(client_id)
        except ClientNotFoundError:
            return None, OAuthError(INVALID_CLIENT, "Client not found")

        request = AuthorizationRequest(
            client=client,
            client_id=client_id,
            response_type=response_type,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            redirect_uri=redirect_uri,
            state=state,
            resources=list(resources or []),
            scopes=parse_scope(scope),
        )
        errors = request.validate(resource_policy(self.settings), scope_policy(self.settings))
        if errors:
            return None, errors.to_oauth_error()

        grant = self.grants.create_grant(
            user_id=user_id,
            client=client,
            challenge=Challenge(
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
                redirect_uri=redirect_uri,
            ),
            resources=request.resources,
            scopes=request.scopes,
        )
        return grant.public_id, None

    def exchange(
        self,
        *,
        code: str,
        client_id: str | None = None,
        client_secret: str | None = None,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
        resources: list[str] | None = None,
        scope: str | list[str] | None = None,
    ) -> tuple[dict | None, OAuthError | None]:
        """Exchange an authorization code for tokens.

        Returns (token_dict, error).
        """
        auth_error = self._authenticate_for_grant(code, client_secret)
        if auth_error is not None:
            return None, auth_error

        try:
            container, error = self.grants.redeem(
                code,
                client_id=client_id,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
                resources=resources,
                scopes=parse_scope(scope),
            )
        except ServerIntegrityError:
            logger.exception("Grant redemption failed")
            return None, OAuthError(SERVER_ERROR, "Could not issue tokens")
        if error is not None:
            return None, error

        grant = self.storage.get_grant(code)
        self.audit.log_security_event(
            "session_issued",
            f"session:{container.session.id}",
            actor=client_id or (grant.client_reference if grant else "unknown"),
            grant_id=code[:8],
            user_id=grant.user_id if grant else None,
            scope=container.scope,
        )
        return container.to_response(self._clock()), None

    def _authenticate_for_grant(self, code: str, client_secret: str | None) -> OAuthError | None:
        """Confidential registered clients must present a valid secret."""
        grant = self.storage.get_grant(code) if code else None
        if grant is None or not grant.client_id:
            return None
        record = self.storage.get_client(grant.client_id)
        if record is None:
            return None
        client = RegisteredClient(record, self.settings)
        if client.is_confidential() and not client.authenticate_with_secret(client_secret):
            logger.warning("Client authentication failed for %s", client.public_id)
            return OAuthError(INVALID_CLIENT, "Client authentication failed")
        return None

    # ------------------------------------------------------------------
    # Refresh and revocation
    # ------------------------------------------------------------------

    def refresh(
        self,
        *,
        refresh_token: str,
        client_id: str | None = None,
        resources: list[str] | None = None,
        scope: str | list[str] | None = None,
    ) -> tuple[dict | None, OAuthError | None]:
        """Rotate a refresh token.

        Returns (token_dict, error). Reuse of a rotated or revoked refresh
        token revokes the grant's live session and is audited as an alert.
        """
        try:
            claims = RefreshTokenClaims.from_token(refresh_token, self.codec)
        except DecodeError:
            return None, OAuthError(INVALID_GRANT, "The provided refresh token is invalid")

        session = self.storage.find_session_by_refresh_jti(claims.jti) if claims.jti else None
        if session is None:
            return None, OAuthError(INVALID_GRANT, "The provided refresh token is invalid")

        try:
            container, error = self.sessions.refresh(
                session,
                claims,
                client_id=client_id,
                resources=resources,
                scopes=parse_scope(scope),
            )
        except InvalidGrantError as exc:
            return None, OAuthError(INVALID_GRANT, str(exc))
        except RevokedSessionError as exc:
            self.audit.log_security_event(
                "refresh_token_reuse",
                f"session:{exc.refreshed_session_id}",
                actor=exc.client_id or "unknown",
                status="revoked",
                severity=AuditSeverity.ALERT,
                **exc.to_payload(),
            )
            return None, OAuthError(INVALID_GRANT, "The provided refresh token is invalid")
        except ServerIntegrityError:
            logger.exception("Session refresh failed")
            return None, OAuthError(SERVER_ERROR, "Could not refresh tokens")
        if error is not None:
            return None, error
        return container.to_response(self._clock()), None

    def revoke(self, token: str, *, request_id: str | None = None) -> bool:
        """Revoke the session behind an access or refresh token."""
        try:
            claims = self.codec.decode(token)
        except DecodeError:
            return False
        revoked = self.sessions.revoke_for_token(
            claims.get("jti"), reason="revocation_request", request_id=request_id
        )
        return bool(revoked)

    def verify_access_token(self, access_token: str) -> AccessTokenClaims | None:
        """Return the claims of a valid access token whose session is still live."""
        try:
            claims = AccessTokenClaims.from_token(access_token, self.codec)
        except DecodeError:
            return None
        if not claims.is_valid(self.settings, self._clock()):
            return None
        session = self.storage.find_session_by_access_jti(claims.jti)
        if session is None or session.status != SessionStatus.CREATED:
            return None
        return claims

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def server_metadata(self, mount_path: str = "/oauth") -> dict[str, Any]:
        """RFC 8414 authorization server metadata."""
        issuer = self.settings.issuer_url.rstrip("/")
        base = issuer + "/" + mount_path.strip("/") if mount_path.strip("/") else issuer
        metadata: dict[str, Any] = {
            "issuer": issuer,
            "authorization_endpoint": f"{base}/authorize",
            "token_endpoint": f"{base}/token",
            "revocation_endpoint": f"{base}/revoke",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": list(
                self.settings.token_endpoint_auth_methods_supported
            ),
            "code_challenge_methods_supported": ["S256"],
        }
        if self.settings.scopes:
            metadata["scopes_supported"] = list(self.settings.scopes)
        if self.settings.client_metadata_document_enabled:
            metadata["client_id_metadata_document_supported"] = True
        if self.settings.service_documentation:
            metadata["service_documentation"] = self.settings.service_documentation
        return metadata


# Singleton
_server: AuthorizationServer | None = None


def get_server() -> AuthorizationServer:
    global _server
    if _server is None:
        _server = AuthorizationServer()
    return _server


def reset_server() -> None:
    global _server
    _server = None
