# Tests for oauth2/resolver.py
# Created: 2026-10-19

import pytest
from conftest import CLIENT_URL, client_document, public_dns

from tokensmith.config import Settings
from tokensmith.errors import ClientNotFoundError
from tokensmith.oauth2.clients import RegisteredClient, UrlBasedClient
from tokensmith.oauth2.metadata import MetadataFetcher
from tokensmith.oauth2.models import AuthorizationGrant, ClientRecord
from tokensmith.oauth2.resolver import ClientResolver, is_url_client_id


def _resolver(settings, storage, document_host, clock, dns=public_dns):
    fetcher = MetadataFetcher(
        settings, storage, resolver=dns, transport=document_host.transport, clock=clock
    )
    return ClientResolver(settings, storage, fetcher)


@pytest.fixture
def resolver(settings, storage, document_host, clock):
    return _resolver(settings, storage, document_host, clock)


class TestResolve:
    def test_is_url_client_id(self):
        assert is_url_client_id(CLIENT_URL)
        assert not is_url_client_id("http://client.example.com/meta.json")
        assert not is_url_client_id("3f1c7a52-0000-4000-8000-000000000000")
        assert not is_url_client_id(None)

    def test_registry_hit(self, resolver, storage):
        record = ClientRecord.build("CLI", ["http://localhost/cb"])
        storage.add_client(record)
        client = resolver.resolve(record.public_id)
        assert isinstance(client, RegisteredClient)
        assert client.public_id == record.public_id

    def test_registry_miss(self, resolver):
        with pytest.raises(ClientNotFoundError):
            resolver.resolve("unknown")

    def test_blank(self, resolver):
        with pytest.raises(ClientNotFoundError):
            resolver.resolve(None)

    def test_url_client(self, resolver):
        client = resolver.resolve(CLIENT_URL)
        assert isinstance(client, UrlBasedClient)
        assert client.public_id == CLIENT_URL
        assert client.redirect_uris == ["http://127.0.0.1:33418/callback"]

    def test_url_clients_disabled_fall_back_to_registry(self, storage, document_host, clock):
        settings = Settings(secret_key="x" * 40, client_metadata_document_enabled=False)
        resolver = _resolver(settings, storage, document_host, clock)
        with pytest.raises(ClientNotFoundError):
            resolver.resolve(CLIENT_URL)
        assert document_host.requests == []


class TestUniformFailure:
    """Every URL-path failure looks the same to the caller."""

    def test_private_address(self, settings, storage, document_host, clock):
        resolver = _resolver(settings, storage, document_host, clock, lambda h, p: ["10.0.0.5"])
        with pytest.raises(ClientNotFoundError) as exc:
            resolver.resolve(CLIENT_URL)
        assert str(exc.value) == "Client not found"

    def test_url_policy(self, resolver):
        with pytest.raises(ClientNotFoundError) as exc:
            resolver.resolve("https://client.example.com/")
        assert str(exc.value) == "Client not found"

    def test_bad_document(self, resolver, document_host):
        document_host.serve(CLIENT_URL, client_document(client_secret="shh"))
        with pytest.raises(ClientNotFoundError) as exc:
            resolver.resolve(CLIENT_URL)
        assert str(exc.value) == "Client not found"

    def test_fetch_failure(self, resolver, document_host):
        document_host.serve(CLIENT_URL, {}, status=500)
        with pytest.raises(ClientNotFoundError):
            resolver.resolve(CLIENT_URL)

    def test_unencodable_host(self, settings, storage, document_host, clock):
        resolver = _resolver(settings, storage, document_host, clock, dns=None)
        with pytest.raises(ClientNotFoundError) as exc:
            resolver.resolve("https://" + "a" * 64 + ".example.com/client.json")
        assert str(exc.value) == "Client not found"
        assert document_host.requests == []


class TestResolveForGrant:
    def test_registered(self, resolver, storage):
        record = ClientRecord.build("CLI", ["http://localhost/cb"])
        storage.add_client(record)
        grant = AuthorizationGrant.issue(user_id="1", ttl_seconds=300, client_id=record.public_id)
        assert resolver.resolve_for_grant(grant).public_id == record.public_id

    def test_url_based(self, resolver):
        grant = AuthorizationGrant.issue(user_id="1", ttl_seconds=300, client_id_url=CLIENT_URL)
        assert isinstance(resolver.resolve_for_grant(grant), UrlBasedClient)

    def test_deleted_client(self, resolver):
        grant = AuthorizationGrant.issue(user_id="1", ttl_seconds=300, client_id="gone")
        with pytest.raises(ClientNotFoundError):
            resolver.resolve_for_grant(grant)

    def test_grant_needs_exactly_one_client_reference(self):
        with pytest.raises(ValueError):
            AuthorizationGrant.issue(user_id="1", ttl_seconds=300)
        with pytest.raises(ValueError):
            AuthorizationGrant.issue(
                user_id="1", ttl_seconds=300, client_id="a", client_id_url=CLIENT_URL
            )
