# Shared fixtures for tokensmith tests.
# Created: 2026-10-19

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from urllib.parse import urlsplit

import httpx
import pytest

from tokensmith.config import Settings
from tokensmith.oauth2.pkce import code_challenge_s256, generate_code_verifier
from tokensmith.oauth2.server import AuthorizationServer
from tokensmith.oauth2.storage import OAuthStorage
from tokensmith.security.audit import AuditLogger

SECRET = "test-secret-key-0123456789abcdef0123456789abcdef"
API1 = "https://api1.example.com"
API2 = "https://api2.example.com"
API3 = "https://api3.example.com"
CLIENT_URL = "https://client.example.com/oauth/metadata.json"
PUBLIC_IP = "93.184.216.34"


def make_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge pair."""
    verifier = generate_code_verifier()
    return verifier, code_challenge_s256(verifier)


def public_dns(host: str, port: int) -> list[str]:
    return [PUBLIC_IP]


def client_document(url: str = CLIENT_URL, **overrides) -> dict:
    doc = {
        "client_id": url,
        "client_name": "Example MCP Client",
        "redirect_uris": ["http://127.0.0.1:33418/callback"],
        "token_endpoint_auth_method": "none",
    }
    doc.update(overrides)
    return doc


class FrozenClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class DocumentHost:
    """Serves client metadata documents through httpx.MockTransport."""

    def __init__(self):
        self.documents: dict[tuple[str, str], tuple[int, bytes]] = {}
        self.requests: list[httpx.Request] = []

    def serve(self, url: str, document=None, *, status: int = 200, content: bytes | None = None):
        parts = urlsplit(url)
        if content is None:
            content = json.dumps(document).encode()
        self.documents[(parts.hostname, parts.path)] = (status, content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.headers["host"].split(":")[0]
        served = self.documents.get((host, request.url.path))
        if served is None:
            return httpx.Response(404, json={"error": "not found"})
        status, content = served
        return httpx.Response(status, content=content, headers={"content-type": "application/json"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        secret_key=SECRET,
        resources={API1: "API 1", API2: "API 2", API3: "API 3"},
        scopes={"read": "Read access", "write": "Write access"},
    )


@pytest.fixture
def storage() -> OAuthStorage:
    return OAuthStorage()


@pytest.fixture
def audit(tmp_path) -> AuditLogger:
    return AuditLogger(tmp_path / "audit.jsonl")


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def document_host() -> DocumentHost:
    host = DocumentHost()
    host.serve(CLIENT_URL, client_document())
    return host


@pytest.fixture
def server(settings, storage, audit, document_host, clock) -> AuthorizationServer:
    return AuthorizationServer(
        settings,
        storage,
        audit=audit,
        dns_resolver=public_dns,
        transport=document_host.transport,
        clock=clock,
    )


@pytest.fixture
def public_client(server):
    return server.register_client("CLI", ["http://localhost:8765/callback"])


@pytest.fixture
def confidential_client(server):
    return server.register_client(
        "Web App", ["https://app.example.com/callback"], "client_secret_basic"
    )
