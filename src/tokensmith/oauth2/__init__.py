"""OAuth2 authorization code flow, refresh rotation and client resolution.

Created: 2026-10-19
"""

from tokensmith.oauth2.clients import RegisteredClient, ResolvedClient, UrlBasedClient
from tokensmith.oauth2.grants import GrantEngine
from tokensmith.oauth2.models import (
    AuthorizationGrant,
    Challenge,
    ClientRecord,
    Session,
    SessionStatus,
    TokenContainer,
)
from tokensmith.oauth2.resolver import ClientResolver
from tokensmith.oauth2.server import AuthorizationServer, get_server, reset_server
from tokensmith.oauth2.sessions import SessionEngine
from tokensmith.oauth2.storage import OAuthStorage

__all__ = [
    "AuthorizationGrant",
    "AuthorizationServer",
    "Challenge",
    "ClientRecord",
    "ClientResolver",
    "GrantEngine",
    "OAuthStorage",
    "RegisteredClient",
    "ResolvedClient",
    "Session",
    "SessionEngine",
    "SessionStatus",
    "TokenContainer",
    "UrlBasedClient",
    "get_server",
    "reset_server",
]
