"""Tokensmith - OAuth 2.1 authorization server core.

Created: 2026-10-19

Issues and rotates access/refresh token pairs for authorization codes
obtained with PKCE, detects refresh-token replay, and resolves clients from
either a local registry or a Client Metadata Document URL.

Usage:
    from tokensmith.oauth2 import AuthorizationServer

    server = AuthorizationServer(settings)
"""

__version__ = "0.1.0"
