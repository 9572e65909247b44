# Authorization grant engine.
# Created: 2026-10-19
#
# A grant is a one-time authorization code: pending until redeemed, then
# terminal. Redemption flips the redeemed flag and creates the first session
# in one transaction, so a code can never yield two token pairs.

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from tokensmith.config import Settings
from tokensmith.errors import (
    INVALID_CLIENT,
    INVALID_GRANT,
    ClientNotFoundError,
    ConstraintViolation,
    GrantAlreadyRedeemedError,
    OAuthError,
    ServerIntegrityError,
)
from tokensmith.oauth2.claims import ClaimsCodec
from tokensmith.oauth2.clients import ResolvedClient
from tokensmith.oauth2.models import AuthorizationGrant, Challenge, TokenContainer, utcnow
from tokensmith.oauth2.policy import resource_policy, scope_policy
from tokensmith.oauth2.requests import AccessTokenRequest
from tokensmith.oauth2.resolver import ClientResolver
from tokensmith.oauth2.sessions import issue_token_pair
from tokensmith.oauth2.storage import OAuthStorage

logger = logging.getLogger(__name__)


class GrantEngine:
    """Creates and redeems authorization grants."""

    def __init__(
        self,
        settings: Settings,
        storage: OAuthStorage,
        resolver: ClientResolver,
        codec: ClaimsCodec,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings
        self._storage = storage
        self._resolver = resolver
        self._codec = codec
        self._clock = clock
        self._resources = resource_policy(settings)
        self._scopes = scope_policy(settings)

    def create_grant(
        self,
        *,
        user_id: str,
        client: ResolvedClient,
        challenge: Challenge | None = None,
        resources: list[str] | None = None,
        scopes: list[str] | None = None,
    ) -> AuthorizationGrant:
        """Persist a new pending grant for *user_id* and *client*."""
        reference = (
            {"client_id_url": client.public_id}
            if client.url_based
            else {"client_id": client.public_id}
        )
        grant = AuthorizationGrant.issue(
            user_id=str(user_id),
            ttl_seconds=self._settings.authorization_grant_ttl,
            now=self._clock(),
            challenge=challenge or Challenge(),
            resources=list(resources or []),
            scopes=list(scopes or []),
            **reference,
        )
        self._storage.add_grant(grant)
        logger.info("Issued authorization grant %s**** for client %s", grant.public_id[:8],
                    client.public_id)
        return grant

    def redeem(
        self,
        grant_id: str | None,
        *,
        client_id: str | None = None,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
        resources: list[str] | None = None,
        scopes: list[str] | None = None,
    ) -> tuple[TokenContainer | None, OAuthError | None]:
        """Exchange grant *grant_id* for its first token pair.

        Returns (container, error). Raises ServerIntegrityError if the
        session cannot be persisted; the grant then stays pending.
        """
        now = self._clock()
        grant = self._storage.get_grant(grant_id) if grant_id else None

        client = None
        if grant is not None and not grant.redeemed and not grant.is_expired(now):
            try:
                client = self._resolver.resolve_for_grant(grant)
            except ClientNotFoundError:
                return None, OAuthError(INVALID_CLIENT, "Client not found")
            if client_id and client_id != client.public_id:
                return None, OAuthError(INVALID_GRANT, "grant was issued to another client")

        request = AccessTokenRequest(
            grant=grant,
            client=client,
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
            resources=list(resources or []),
            scopes=list(scopes or []),
        )
        errors = request.validate(self._resources, self._scopes, now)
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
                tx.add_session(container.session)
                tx.mark_grant_redeemed(grant.public_id)
        except GrantAlreadyRedeemedError:
            logger.info("Grant %s**** redeemed concurrently", grant.public_id[:8])
            return None, OAuthError(INVALID_GRANT, "grant redeemed")
        except (ConstraintViolation, OSError) as exc:
            raise ServerIntegrityError(
                f"Could not create session for grant {grant.public_id[:8]}****: {exc}"
            ) from exc

        logger.info(
            "Grant %s**** redeemed, session %s issued",
            grant.public_id[:8],
            container.session.id[:8],
        )
        return container, None
