# Client Metadata Document fetcher.
# Created: 2026-10-19
#
# A client may identify itself with an HTTPS URL instead of a registry id.
# The URL serves a JSON document acting as the client's registration. Fetching
# it is an outbound request to an attacker-chosen host, so the flow is:
# URL policy -> cache -> resolve DNS -> reject private addresses -> connect to
# the vetted address -> size-capped read -> document policy -> cache.

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
import socket
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx

from tokensmith.config import Settings
from tokensmith.errors import (
    ClientMetadataDocumentFetchError,
    InvalidClientMetadataDocumentError,
    InvalidClientMetadataDocumentUrlError,
)
from tokensmith.oauth2.models import utcnow
from tokensmith.oauth2.storage import CachedMetadataDocument, OAuthStorage

logger = logging.getLogger(__name__)

# host, port -> resolved IP address strings
DNSResolver = Callable[[str, int], list[str]]

# getaddrinfo has no timeout of its own; lookups run here so the caller can stop waiting.
_dns_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="tokensmith-dns")

_BLOCKED_NETWORKS = [
    ipaddress.ip_network(n)
    for n in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
]


def system_resolver(host: str, port: int) -> list[str]:
    """Resolve *host* with getaddrinfo, preserving order and dropping duplicates."""
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError, ValueError) as exc:
        # UnicodeError comes from the IDNA codec, e.g. a label over 63 characters.
        raise ClientMetadataDocumentFetchError(f"DNS resolution failed for {host}: {exc}") from exc
    addresses: list[str] = []
    for info in infos:
        address = str(info[4][0])
        if address not in addresses:
            addresses.append(address)
    return addresses


def is_private_address(address: str) -> bool:
    """True for loopback, private, link-local and unspecified addresses."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip in network for network in _BLOCKED_NETWORKS)


def host_matches(host: str, pattern: str) -> bool:
    """Exact match, or ``*.example.com`` matching the domain and its subdomains."""
    host = host.lower()
    pattern = pattern.lower()
    if pattern.startswith("*."):
        suffix = pattern[2:]
        return host == suffix or host.endswith("." + suffix)
    return host == pattern


def url_hash(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


class MetadataFetcher:
    """Fetches, validates and caches client metadata documents.

    Args:
        settings: Server settings (host lists, TTL, size cap, timeouts).
        storage: Storage holding the document cache.
        resolver: DNS resolver callable. Defaults to ``system_resolver``.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
        clock: Callable returning the current time.
    """

    def __init__(
        self,
        settings: Settings,
        storage: OAuthStorage,
        *,
        resolver: DNSResolver | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings
        self._storage = storage
        self._resolver = resolver or system_resolver
        self._transport = transport
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(self, url: str) -> dict[str, Any]:
        """Return the validated metadata document for client-id *url*.

        Raises one of the ClientMetadataDocument* errors on any failure; the
        resolver collapses them into ClientNotFoundError.
        """
        self.validate_url(url)

        key = url_hash(url)
        cached = self._storage.get_cached_document(key, self._clock())
        if cached is not None:
            logger.debug("Metadata cache hit for %s", url)
            return cached.document

        logger.debug("Metadata cache miss for %s", url)
        document = self._fetch_document(url)
        self.validate_document(document, url)
        self._store(url, document)
        return document

    def valid_client_id_url(self, url: str | None) -> bool:
        """True when *url* passes URL policy. Never touches the network."""
        try:
            self.validate_url(url)
        except InvalidClientMetadataDocumentUrlError:
            return False
        return True

    def clear_cache(self, url: str) -> bool:
        return self._storage.delete_cached_document(url_hash(url))

    def cleanup_expired(self) -> int:
        removed = self._storage.cleanup_expired_documents(self._clock())
        if removed:
            logger.info("Removed %d expired client metadata documents", removed)
        return removed

    # ------------------------------------------------------------------
    # URL policy
    # ------------------------------------------------------------------

    def validate_url(self, url: str | None) -> None:
        if not url or not isinstance(url, str):
            raise InvalidClientMetadataDocumentUrlError("client_id URL is blank")
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as exc:
            raise InvalidClientMetadataDocumentUrlError(f"Unparseable URL: {exc}") from exc

        if parts.scheme != "https":
            raise InvalidClientMetadataDocumentUrlError("client_id URL must use https")
        if not parts.hostname:
            raise InvalidClientMetadataDocumentUrlError("client_id URL has no host")
        if not parts.path or parts.path == "/":
            raise InvalidClientMetadataDocumentUrlError("client_id URL must have a path")
        if parts.fragment or "#" in url:
            raise InvalidClientMetadataDocumentUrlError("client_id URL must not have a fragment")
        if parts.username is not None or parts.password is not None or "@" in parts.netloc:
            raise InvalidClientMetadataDocumentUrlError("client_id URL must not carry credentials")
        if port == 0:
            raise InvalidClientMetadataDocumentUrlError("client_id URL has an invalid port")

        host = parts.hostname
        if any(host_matches(host, p) for p in self._settings.client_metadata_document_blocked_hosts):
            raise InvalidClientMetadataDocumentUrlError(f"Host {host} is blocked")
        allowed = self._settings.client_metadata_document_allowed_hosts
        if allowed is not None and not any(host_matches(host, p) for p in allowed):
            raise InvalidClientMetadataDocumentUrlError(f"Host {host} is not allowed")

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def _pick_address(self, host: str, port: int) -> str:
        timeout = self._settings.client_metadata_document_connect_timeout
        future = _dns_pool.submit(self._resolver, host, port)
        try:
            addresses = future.result(timeout=timeout)
        except TimeoutError as exc:
            future.cancel()
            raise ClientMetadataDocumentFetchError(
                f"DNS resolution for {host} timed out after {timeout}s"
            ) from exc
        if not addresses:
            raise ClientMetadataDocumentFetchError(f"No addresses for {host}")
        # Every answer must be public, or a rebinding resolver could pick a bad one later.
        for address in addresses:
            if is_private_address(address):
                raise ClientMetadataDocumentFetchError(
                    f"{host} resolves to a private address ({address})"
                )
        ipv4 = [a for a in addresses if ipaddress.ip_address(a.split("%", 1)[0]).version == 4]
        return ipv4[0] if ipv4 else addresses[0]

    def _fetch_document(self, url: str) -> dict[str, Any]:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port or 443
        address = self._pick_address(host, port)

        # Connect to the vetted address; SNI and Host still name the original host.
        netloc_host = f"[{address}]" if ":" in address else address
        target = urlunsplit(("https", f"{netloc_host}:{port}", parts.path, parts.query, ""))
        host_header = host if port == 443 else f"{host}:{port}"

        timeout = httpx.Timeout(
            self._settings.client_metadata_document_read_timeout,
            connect=self._settings.client_metadata_document_connect_timeout,
        )
        max_size = self._settings.client_metadata_document_max_response_size

        try:
            with httpx.Client(
                transport=self._transport, timeout=timeout, follow_redirects=False
            ) as client:
                with client.stream(
                    "GET",
                    target,
                    headers={"Host": host_header, "Accept": "application/json"},
                    extensions={"sni_hostname": host},
                ) as resp:
                    if not resp.is_success:
                        raise ClientMetadataDocumentFetchError(
                            f"Metadata fetch for {url} returned HTTP {resp.status_code}"
                        )
                    declared = resp.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > max_size:
                        raise ClientMetadataDocumentFetchError(
                            f"Metadata document for {url} exceeds {max_size} bytes"
                        )
                    body = bytearray()
                    for chunk in resp.iter_bytes():
                        body.extend(chunk)
                        if len(body) > max_size:
                            raise ClientMetadataDocumentFetchError(
                                f"Metadata document for {url} exceeds {max_size} bytes"
                            )
        except httpx.HTTPError as exc:
            raise ClientMetadataDocumentFetchError(f"Metadata fetch for {url} failed: {exc}") from exc

        try:
            document = json.loads(bytes(body))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ClientMetadataDocumentFetchError(f"Metadata document for {url} is not JSON") from exc
        if not isinstance(document, dict):
            raise ClientMetadataDocumentFetchError(f"Metadata document for {url} is not an object")
        return document

    # ------------------------------------------------------------------
    # Document policy
    # ------------------------------------------------------------------

    @staticmethod
    def validate_document(document: dict[str, Any], url: str) -> None:
        if document.get("client_id") != url:
            raise InvalidClientMetadataDocumentError("client_id does not match the document URL")
        if "client_secret" in document:
            raise InvalidClientMetadataDocumentError("client_secret is not allowed")

        redirect_uris = document.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris:
            raise InvalidClientMetadataDocumentError("redirect_uris must be a non-empty array")
        for uri in redirect_uris:
            if not isinstance(uri, str):
                raise InvalidClientMetadataDocumentError("redirect_uris must be strings")
            try:
                parts = urlsplit(uri)
            except ValueError as exc:
                raise InvalidClientMetadataDocumentError(f"Invalid redirect_uri {uri!r}") from exc
            if parts.scheme not in ("http", "https") or not parts.netloc:
                raise InvalidClientMetadataDocumentError(f"Invalid redirect_uri {uri!r}")

    def _store(self, url: str, document: dict[str, Any]) -> None:
        expires_at = self._clock() + timedelta(
            seconds=self._settings.client_metadata_document_cache_ttl
        )
        self._storage.upsert_cached_document(
            CachedMetadataDocument(
                url_hash=url_hash(url), url=url, document=document, expires_at=expires_at
            )
        )
        logger.info("Cached client metadata document for %s until %s", url, expires_at.isoformat())
