# Client resolution.
# Created: 2026-10-19

from __future__ import annotations

import logging
from urllib.parse import urlsplit

from tokensmith.config import Settings
from tokensmith.errors import (
    ClientMetadataDocumentFetchError,
    ClientNotFoundError,
    InvalidClientMetadataDocumentError,
    InvalidClientMetadataDocumentUrlError,
)
from tokensmith.oauth2.clients import RegisteredClient, ResolvedClient, UrlBasedClient
from tokensmith.oauth2.metadata import MetadataFetcher
from tokensmith.oauth2.models import AuthorizationGrant
from tokensmith.oauth2.storage import OAuthStorage

logger = logging.getLogger(__name__)

_DOCUMENT_ERRORS = (
    InvalidClientMetadataDocumentUrlError,
    ClientMetadataDocumentFetchError,
    InvalidClientMetadataDocumentError,
)


def is_url_client_id(client_id: str | None) -> bool:
    if not client_id:
        return False
    try:
        return urlsplit(client_id).scheme == "https"
    except ValueError:
        return False


class ClientResolver:
    """Turns a client id into a RegisteredClient or a UrlBasedClient.

    Every failure surfaces as ClientNotFoundError. The reason is logged but
    never returned, so callers cannot probe which check rejected a URL.
    """

    def __init__(self, settings: Settings, storage: OAuthStorage, fetcher: MetadataFetcher):
        self._settings = settings
        self._storage = storage
        self._fetcher = fetcher

    def resolve(self, client_id: str | None) -> ResolvedClient:
        if self._settings.client_metadata_document_enabled and is_url_client_id(client_id):
            return self._resolve_url(client_id)

        record = self._storage.get_client(client_id) if client_id else None
        if record is None:
            logger.warning("Client lookup failed for %r", client_id)
            raise ClientNotFoundError()
        return RegisteredClient(record, self._settings)

    def resolve_for_grant(self, grant: AuthorizationGrant) -> ResolvedClient:
        """Resolve the client recorded on *grant* through the path it was issued on."""
        if grant.client_id_url:
            if not self._settings.client_metadata_document_enabled:
                logger.warning("Grant references a URL client but URL clients are disabled")
                raise ClientNotFoundError()
            return self._resolve_url(grant.client_id_url)
        record = self._storage.get_client(grant.client_id)
        if record is None:
            logger.warning("Grant references unknown client %r", grant.client_id)
            raise ClientNotFoundError()
        return RegisteredClient(record, self._settings)

    def _resolve_url(self, url: str) -> UrlBasedClient:
        try:
            document = self._fetcher.fetch(url)
        except _DOCUMENT_ERRORS as exc:
            logger.warning("Client metadata document rejected for %s: %s", url, exc)
            raise ClientNotFoundError() from exc
        return UrlBasedClient(document, self._settings)
