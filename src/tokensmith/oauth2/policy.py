# Resource indicator (RFC 8707) and scope policy.
# Created: 2026-10-19
#
# Resources and scopes follow the same rules: a requested set is checked for
# feature enablement, syntax, allow-list membership and, when a grant already
# exists, for being a subset of what the user approved. Supersets are rejected
# rather than clipped.

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from urllib.parse import urlsplit

from tokensmith.config import Settings
from tokensmith.errors import ValidationErrors

# RFC 6749 §3.3: no whitespace, double quote or backslash.
VALID_SCOPE_TOKEN = re.compile(r"\A[\x21\x23-\x5B\x5D-\x7E]+\Z")


def valid_resource_uri(uri: str | None) -> bool:
    """Absolute http(s) URI with a host and no fragment."""
    if not uri or not isinstance(uri, str):
        return False
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    if parts.scheme not in ("http", "https"):
        return False
    if not parts.hostname:
        return False
    return not parts.fragment and "#" not in uri


def resource_matches(candidate: str, configured: str) -> bool:
    """Exact match, tolerating one trailing slash on either side."""
    return candidate == configured or candidate + "/" == configured or candidate == configured + "/"


def parse_scope(value: str | Iterable[str] | None) -> list[str]:
    """Split a space-delimited scope string; lists pass through."""
    if value is None:
        return []
    if isinstance(value, str):
        return [s for s in value.split() if s]
    return [s for s in value if s]


class IndicatorPolicy:
    """Shared validation for a requested set of resources or scopes."""

    field = ""
    invalid_code = "invalid"

    def __init__(self, allowed: Mapping[str, str], required: bool = False):
        self.allowed = dict(allowed)
        self.required = required

    @property
    def enabled(self) -> bool:
        return bool(self.allowed)

    def is_valid_item(self, item: str) -> bool:
        raise NotImplementedError

    def matches(self, item: str, other: str) -> bool:
        return item == other

    def contains(self, collection: Iterable[str], item: str) -> bool:
        return any(self.matches(item, other) for other in collection)

    def is_allowed(self, item: str) -> bool:
        return self.contains(self.allowed.keys(), item)

    def effective(self, requested: list[str] | None, granted: list[str] | None) -> list[str]:
        """Requested set when non-empty, otherwise everything approved at consent."""
        if requested:
            return list(requested)
        return list(granted or [])

    def validate(
        self,
        requested: list[str] | None,
        granted: list[str] | None = None,
        *,
        at_authorize: bool = False,
    ) -> ValidationErrors:
        """Check *requested* against the allow-list and, if given, *granted*.

        *granted* is None at authorize time (nothing approved yet) and the
        grant's approved set afterwards.
        """
        errors = ValidationErrors()
        items = list(requested or [])

        if at_authorize and self.required and not items:
            errors.add(self.field, "required")
            return errors
        if not items:
            return errors

        if not self.enabled:
            errors.add(self.field, "not_allowed")
            return errors

        if not all(self.is_valid_item(i) for i in items):
            errors.add(self.field, self.invalid_code)
            return errors

        if not all(self.is_allowed(i) for i in items):
            errors.add(self.field, "not_allowed")
            return errors

        if granted is not None and not all(self.contains(granted, i) for i in items):
            errors.add(self.field, "not_subset")

        return errors


class ResourcePolicy(IndicatorPolicy):
    field = "resources"
    invalid_code = "invalid_uri"

    def is_valid_item(self, item: str) -> bool:
        return valid_resource_uri(item)

    def matches(self, item: str, other: str) -> bool:
        return resource_matches(item, other)


class ScopePolicy(IndicatorPolicy):
    field = "scope"

    def is_valid_item(self, item: str) -> bool:
        return isinstance(item, str) and VALID_SCOPE_TOKEN.match(item) is not None


def resource_policy(settings: Settings) -> ResourcePolicy:
    return ResourcePolicy(settings.resources, settings.require_resource)


def scope_policy(settings: Settings) -> ScopePolicy:
    return ScopePolicy(settings.scopes, settings.require_scope)
