# Request validators for the authorize, code exchange and refresh steps.
# Created: 2026-10-19
#
# Validators never raise for bad input. They return ValidationErrors that the
# caller converts into an OAuth error response.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from tokensmith.errors import ValidationErrors
from tokensmith.oauth2.clients import ResolvedClient
from tokensmith.oauth2.models import VALID_CODE_CHALLENGE_METHODS, AuthorizationGrant
from tokensmith.oauth2.pkce import verify_code_verifier
from tokensmith.oauth2.policy import ResourcePolicy, ScopePolicy

logger = logging.getLogger(__name__)

VALID_RESPONSE_TYPES = ("code",)


@dataclass
class AuthorizationRequest:
    """Parameters of an authorize request, validated before consent."""

    client: ResolvedClient | None
    client_id: str | None = None
    response_type: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    redirect_uri: str | None = None
    state: str | None = None
    resources: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)

    def validate(self, resources: ResourcePolicy, scopes: ScopePolicy) -> ValidationErrors:
        errors = ValidationErrors()

        if not self.response_type:
            errors.add("response_type", "blank")
        elif self.response_type not in VALID_RESPONSE_TYPES:
            errors.add("response_type", "unsupported")

        if self.client is None:
            errors.add("client", "invalid")
            return errors

        self._validate_client_id(errors)
        self._validate_pkce(errors)
        self._validate_redirect_uri(errors)
        errors.extend(resources.validate(self.resources, at_authorize=True))
        errors.extend(scopes.validate(self.scopes, at_authorize=True))
        return errors

    def _validate_client_id(self, errors: ValidationErrors) -> None:
        if self.client.url_based:
            if not self.client_id:
                errors.add("client_id", "blank")
            elif self.client_id != self.client.public_id:
                errors.add("client_id", "mismatched")
            return

        if self.client.is_confidential() and not self.client_id:
            return
        if not self.client_id:
            errors.add("client_id", "blank")
        elif self.client_id != self.client.public_id:
            errors.add("client_id", "mismatched")

    def _validate_pkce(self, errors: ValidationErrors) -> None:
        if self.client.is_public():
            if not self.code_challenge:
                errors.add("code_challenge", "required_for_public_clients")
            if not self.code_challenge_method:
                errors.add("code_challenge_method", "required_for_public_clients")
            elif self.code_challenge_method not in VALID_CODE_CHALLENGE_METHODS:
                errors.add("code_challenge_method", "invalid")
            return

        if not (self.code_challenge or self.code_challenge_method):
            return
        if not self.code_challenge:
            errors.add("code_challenge", "required_if_other_pkce_params_present")
        if not self.code_challenge_method:
            errors.add("code_challenge_method", "required_if_other_pkce_params_present")
        elif self.code_challenge_method not in VALID_CODE_CHALLENGE_METHODS:
            errors.add("code_challenge_method", "invalid")

    def _validate_redirect_uri(self, errors: ValidationErrors) -> None:
        if not self.redirect_uri:
            if self.client.is_public():
                errors.add("redirect_uri", "blank")
            return
        if not self.client.redirect_uri_registered(self.redirect_uri):
            errors.add("redirect_uri", "invalid")


@dataclass
class AccessTokenRequest:
    """authorization_code grant: PKCE, redirect URI and downscoping checks."""

    grant: AuthorizationGrant | None
    client: ResolvedClient | None
    code_verifier: str | None = None
    redirect_uri: str | None = None
    resources: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)

    def effective_resources(self) -> list[str]:
        if self.resources:
            return list(self.resources)
        return list(self.grant.resources) if self.grant else []

    def effective_scopes(self) -> list[str]:
        if self.scopes:
            return list(self.scopes)
        return list(self.grant.scopes) if self.grant else []

    def validate(
        self,
        resources: ResourcePolicy,
        scopes: ScopePolicy,
        now: datetime | None = None,
    ) -> ValidationErrors:
        errors = ValidationErrors()

        # A missing, used or stale grant is reported alone.
        if self.grant is None:
            errors.add("grant", "invalid")
            return errors
        if self.grant.redeemed:
            errors.add("grant", "redeemed")
            return errors
        if self.grant.is_expired(now):
            errors.add("grant", "expired")
            return errors
        if self.client is None:
            errors.add("grant", "invalid")
            return errors

        if self.client.is_public():
            self._validate_public(errors)
        else:
            self._validate_confidential(errors)

        errors.extend(resources.validate(self.resources, self.grant.resources))
        errors.extend(scopes.validate(self.scopes, self.grant.scopes))

        if errors:
            logger.debug(
                "Token request for grant %s**** rejected: %s",
                self.grant.public_id[:8],
                ", ".join(str(e) for e in errors),
            )
        return errors

    def _validate_public(self, errors: ValidationErrors) -> None:
        challenge = self.grant.challenge
        if not self.code_verifier:
            errors.add("code_verifier", "blank")
        elif not verify_code_verifier(self.code_verifier, challenge.code_challenge):
            errors.add("code_verifier", "does_not_validate_code_challenge")

        if not self.redirect_uri:
            errors.add("redirect_uri", "blank")
        elif self.redirect_uri != challenge.redirect_uri:
            errors.add("redirect_uri", "mismatched")

    def _validate_confidential(self, errors: ValidationErrors) -> None:
        challenge = self.grant.challenge
        if challenge.present:
            if not self.code_verifier:
                errors.add("code_verifier", "present_in_authorize")
            elif not verify_code_verifier(self.code_verifier, challenge.code_challenge):
                errors.add("code_verifier", "does_not_validate_code_challenge")
        elif self.code_verifier:
            errors.add("code_verifier", "without_code_challenge")

        if challenge.redirect_uri:
            if not self.redirect_uri:
                errors.add("redirect_uri", "present_in_authorize")
            elif self.redirect_uri != challenge.redirect_uri:
                errors.add("redirect_uri", "mismatched")
        elif self.redirect_uri:
            errors.add("redirect_uri", "mismatched")


@dataclass
class RefreshTokenRequest:
    """refresh_token grant: downscoping against the grant's approved sets."""

    grant: AuthorizationGrant
    resources: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)

    def effective_resources(self) -> list[str]:
        return list(self.resources) if self.resources else list(self.grant.resources)

    def effective_scopes(self) -> list[str]:
        return list(self.scopes) if self.scopes else list(self.grant.scopes)

    def validate(self, resources: ResourcePolicy, scopes: ScopePolicy) -> ValidationErrors:
        errors = ValidationErrors()
        errors.extend(resources.validate(self.resources, self.grant.resources))
        errors.extend(scopes.validate(self.scopes, self.grant.scopes))
        return errors
