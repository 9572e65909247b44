# Session lifecycle: issuance, refresh rotation and revocation.
# Created: 2026-10-19
#
# Each session backs one access/refresh token pair. A refresh retires the
# current session (created -> refreshed) and issues a successor under the same
# grant. Presenting a refresh token whose session is no longer active, or
# presenting it from a different client, is treated as token theft: the
# grant's live session is revoked and RevokedSessionError is raised.

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from tokensmith.config import Settings
from tokensmith.errors import (
    INVALID_CLIENT,
    ClientNotFoundError,
    ConstraintViolation,
    InvalidGrantError,
    OAuthError,
    RevokedSessionError,
    ServerIntegrityError,
)
from tokensmith.oauth2.claims import AccessTokenClaims, ClaimsCodec, RefreshTokenClaims
from tokensmith.oauth2.clients import ResolvedClient
from tokensmith.oauth2.models import (
    AuthorizationGrant,
    Session,
    SessionStatus,
    TokenContainer,
    utcnow,
)
from tokensmith.oauth2.policy import resource_policy, scope_policy
from tokensmith.oauth2.requests import RefreshTokenRequest
from tokensmith.oauth2.resolver import ClientResolver
from tokensmith.oauth2.storage import OAuthStorage
from tokensmith.security.audit import AuditLogger, AuditSeverity, get_audit_logger

logger = logging.getLogger(__name__)


def issue_token_pair(
    *,
    settings: Settings,
    codec: ClaimsCodec,
    grant: AuthorizationGrant,
    client: ResolvedClient,
    resources: list[str],
    scopes: list[str],
    now: datetime | None = None,
) -> TokenContainer:
    """Sign a fresh access/refresh pair and build the (uncommitted) session for it."""
    now = now or utcnow()
    access_exp = int((now + timedelta(seconds=client.access_token_duration)).timestamp())
    refresh_exp = int((now + timedelta(seconds=client.refresh_token_duration)).timestamp())

    access_claims = AccessTokenClaims.default(
        settings=settings,
        exp=access_exp,
        user_id=grant.user_id,
        resources=resources,
        scopes=scopes,
        client_id=client.public_id,
        now=now,
    )
    refresh_claims = RefreshTokenClaims.default(
        settings=settings,
        exp=refresh_exp,
        resources=resources,
        scopes=scopes,
        now=now,
    )
    session = Session.for_grant(grant, access_claims.jti, refresh_claims.jti)
    return TokenContainer(
        access_token=access_claims.to_encoded_token(codec),
        refresh_token=refresh_claims.to_encoded_token(codec),
        expiration=access_exp,
        scope=access_claims.scope,
        session=session,
    )


class SessionEngine:
    """Refresh rotation, theft detection and revocation."""

    def __init__(
        self,
        settings: Settings,
        storage: OAuthStorage,
        resolver: ClientResolver,
        codec: ClaimsCodec,
        *,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings
        self._storage = storage
        self._resolver = resolver
        self._codec = codec
        self._audit = audit or get_audit_logger()
        self._clock = clock
        self._resources = resource_policy(settings)
        self._scopes = scope_policy(settings)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(
        self,
        session: Session,
        claims: RefreshTokenClaims,
        *,
        client_id: str | None = None,
        resources: list[str] | None = None,
        scopes: list[str] | None = None,
    ) -> tuple[TokenContainer | None, OAuthError | None]:
        """Rotate *session* using the presented refresh token *claims*.

        Returns (container, error). Raises InvalidGrantError when *claims* are
        expired or otherwise invalid, RevokedSessionError on replay or client
        mismatch, and ServerIntegrityError if *claims* do not belong to
        *session*.
        """
        # The caller looked the session up by this jti.
        if claims.jti != session.refresh_token_jti:
            raise ServerIntegrityError(
                f"Refresh token jti does not match session {session.id[:8]}"
            )

        now = self._clock()
        claim_errors = claims.validate(self._settings, now)
        if claim_errors:
            logger.debug(
                "Refresh token rejected for session %s: %s",
                session.id[:8],
                ", ".join(str(e) for e in claim_errors),
            )
            raise InvalidGrantError("The provided refresh token is invalid")

        current = self._storage.get_session(session.id)
        grant = self._storage.get_grant(session.grant_id)
        if current is None or grant is None:
            raise ServerIntegrityError(f"Session {session.id[:8]} or its grant is missing")

        try:
            client = self._resolver.resolve_for_grant(grant)
        except ClientNotFoundError:
            return None, OAuthError(INVALID_CLIENT, "Client not found")

        # A missing client_id counts as a mismatch.
        if current.status != SessionStatus.CREATED or client_id != client.public_id:
            self._revoke_for_reuse(current, grant, client_id)

        request = RefreshTokenRequest(grant, list(resources or []), list(scopes or []))
        errors = request.validate(self._resources, self._scopes)
        if errors:
            return None, errors.to_oauth_error()

        container = issue_token_pair(
            settings=self._settings,
            codec=self._codec,
            grant=grant,
            client=client,
            resources=request.effective_resources(),
            scopes=request.effective_scopes(),
            now=now,
        )

        try:
            with self._storage.transaction() as tx:
                tx.set_session_status(
                    current.id, SessionStatus.REFRESHED, expected=SessionStatus.CREATED
                )
                tx.add_session(container.session)
        except ConstraintViolation:
            # Lost a race with another refresh of the same token.
            latest = self._storage.get_session(current.id) or current
            self._revoke_for_reuse(latest, grant, client_id)
        except OSError as exc:
            raise ServerIntegrityError(f"Could not persist refreshed session: {exc}") from exc

        logger.info(
            "Session %s refreshed -> %s (grant %s****)",
            current.id[:8],
            container.session.id[:8],
            grant.public_id[:8],
        )
        self._audit.log_security_event(
            "session_refreshed",
            f"session:{container.session.id}",
            actor=client.public_id,
            previous_session_id=current.id,
            grant_id=grant.public_id[:8],
            user_id=grant.user_id,
            scope=container.scope,
        )
        return container, None

    def _revoke_for_reuse(
        self, session: Session, grant: AuthorizationGrant, client_id: str | None
    ) -> None:
        revoked = self._revoke_with_active(session)
        error = RevokedSessionError(
            client_id=client_id,
            refreshed_session_id=session.id,
            revoked_session_id=revoked[0],
            user_id=grant.user_id,
        )
        logger.warning("Refresh token reuse detected: %s", error)
        raise error

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def _revoke_with_active(self, session: Session) -> list[str]:
        """Revoke the grant's active session and *session* together.

        The active session is looked up when the transaction commits, so a
        rotation that lands in between is revoked too. Returns the revoked
        ids, active session first.
        """
        with self._storage.transaction() as tx:
            tx.revoke_active_session(session.grant_id)
            tx.set_session_status(session.id, SessionStatus.REVOKED)
        revoked = list(tx.revoked_active)
        if session.id not in revoked:
            revoked.append(session.id)
        return revoked

    def revoke_self_and_active_session(
        self,
        session: Session,
        *,
        reason: str | None = None,
        request_id: str | None = None,
    ) -> list[str]:
        """Revoke *session* and the grant's active session in one transaction."""
        revoked = self._revoke_with_active(session)
        logger.info(
            "Revoked sessions %s (%s)", ", ".join(s[:8] for s in revoked), reason or "revoke"
        )
        self._audit.log_security_event(
            "session_revoked",
            f"session:{session.id}",
            status="revoked",
            severity=AuditSeverity.WARNING,
            grant_id=session.grant_id[:8],
            reason=reason,
            request_id=request_id,
            related_session_ids=[s for s in revoked if s != session.id],
        )
        return revoked

    def revoke_for_token(self, jti: str | None, **kwargs) -> list[str]:
        """Revoke by access-token jti, falling back to refresh-token jti."""
        if not jti:
            return []
        session = self._storage.find_session_by_access_jti(jti)
        if session is None:
            session = self._storage.find_session_by_refresh_jti(jti)
        if session is None:
            return []
        return self.revoke_self_and_active_session(session, **kwargs)

    def revoke_for_access_token(self, jti: str | None, **kwargs) -> list[str]:
        session = self._storage.find_session_by_access_jti(jti) if jti else None
        if session is None:
            return []
        return self.revoke_self_and_active_session(session, **kwargs)

    def revoke_for_refresh_token(self, jti: str | None, **kwargs) -> list[str]:
        session = self._storage.find_session_by_refresh_jti(jti) if jti else None
        if session is None:
            return []
        return self.revoke_self_and_active_session(session, **kwargs)
