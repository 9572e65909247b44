# Tests for oauth2/sessions.py (refresh rotation and theft detection)
# Created: 2026-10-19

import json
import threading
from contextlib import contextmanager

import pytest
from conftest import API1, API2, make_pkce_pair

from tokensmith.errors import InvalidGrantError, RevokedSessionError, ServerIntegrityError
from tokensmith.oauth2.claims import RefreshTokenClaims
from tokensmith.oauth2.models import Challenge, SessionStatus

REDIRECT = "http://localhost:8765/callback"


@pytest.fixture
def engine(server):
    return server.sessions


@pytest.fixture
def client_id(public_client):
    return public_client.public_id


@pytest.fixture
def issued(server, public_client):
    """Redeem a fresh grant and return its token container."""
    verifier, challenge = make_pkce_pair()
    grant = server.grants.create_grant(
        user_id="42",
        client=public_client,
        challenge=Challenge(challenge, "S256", REDIRECT),
        resources=[API1, API2],
        scopes=["read", "write"],
    )
    container, error = server.grants.redeem(
        grant.public_id, code_verifier=verifier, redirect_uri=REDIRECT
    )
    assert error is None
    return container


def _claims(server, container):
    return RefreshTokenClaims.from_token(container.refresh_token, server.codec)


def _statuses(storage, grant_id):
    return [s.status for s in storage.sessions_for_grant(grant_id)]


class TestRefresh:
    def test_rotation(self, engine, server, storage, issued, client_id):
        grant_id = issued.session.grant_id
        container, error = engine.refresh(
            issued.session, _claims(server, issued), client_id=client_id
        )
        assert error is None
        assert container.session.id != issued.session.id
        assert storage.get_session(issued.session.id).status == SessionStatus.REFRESHED
        assert storage.active_session(grant_id).id == container.session.id
        assert len(storage.sessions_for_grant(grant_id)) == 2

    def test_downscope_to_single_resource(self, engine, server, issued, client_id):
        container, error = engine.refresh(
            issued.session, _claims(server, issued), client_id=client_id, resources=[API1]
        )
        assert error is None
        assert server.codec.decode(container.access_token)["aud"] == API1

    def test_empty_request_keeps_granted_sets(self, engine, server, issued, client_id):
        container, _ = engine.refresh(issued.session, _claims(server, issued), client_id=client_id)
        claims = server.codec.decode(container.access_token)
        assert claims["aud"] == [API1, API2]
        assert claims["scope"] == "read write"

    def test_scope_superset_rejected(self, engine, server, storage, issued, client_id):
        _, error = engine.refresh(
            issued.session, _claims(server, issued), client_id=client_id, scopes=["admin"]
        )
        assert error.error == "invalid_scope"
        assert storage.get_session(issued.session.id).status == SessionStatus.CREATED

    def test_expired_refresh_token_is_invalid_grant(
        self, engine, server, storage, issued, clock, settings, client_id
    ):
        clock.advance(seconds=settings.default_refresh_token_duration + 1)
        with pytest.raises(InvalidGrantError):
            engine.refresh(issued.session, _claims(server, issued), client_id=client_id)
        # Not a security event: nothing is revoked.
        assert storage.get_session(issued.session.id).status == SessionStatus.CREATED

    def test_jti_mismatch_is_integrity_error(self, engine, server, storage, issued, client_id):
        other, _ = engine.refresh(issued.session, _claims(server, issued), client_id=client_id)
        with pytest.raises(ServerIntegrityError):
            engine.refresh(
                storage.get_session(other.session.id), _claims(server, issued), client_id=client_id
            )


class TestTheftDetection:
    def test_replay_after_rotation_revokes_live_session(
        self, engine, server, storage, issued, client_id
    ):
        rotated, _ = engine.refresh(issued.session, _claims(server, issued), client_id=client_id)

        with pytest.raises(RevokedSessionError) as exc:
            engine.refresh(
                storage.get_session(issued.session.id),
                _claims(server, issued),
                client_id=client_id,
            )

        assert exc.value.refreshed_session_id == issued.session.id
        assert exc.value.revoked_session_id == rotated.session.id
        assert exc.value.user_id == "42"
        assert exc.value.client_id == client_id
        assert storage.get_session(rotated.session.id).status == SessionStatus.REVOKED
        assert storage.get_session(issued.session.id).status == SessionStatus.REVOKED
        assert storage.active_session(issued.session.grant_id) is None

    def test_mismatched_client_revokes_self(self, engine, server, storage, issued):
        with pytest.raises(RevokedSessionError) as exc:
            engine.refresh(issued.session, _claims(server, issued), client_id="intruder")
        assert exc.value.revoked_session_id == issued.session.id
        assert exc.value.client_id == "intruder"
        assert storage.get_session(issued.session.id).status == SessionStatus.REVOKED

    def test_missing_client_id_is_a_mismatch(self, engine, server, storage, issued):
        with pytest.raises(RevokedSessionError) as exc:
            engine.refresh(issued.session, _claims(server, issued), client_id=None)
        assert exc.value.client_id is None
        assert storage.get_session(issued.session.id).status == SessionStatus.REVOKED
        assert len(storage.sessions_for_grant(issued.session.grant_id)) == 1

    def test_refresh_after_revocation(self, engine, server, storage, issued, client_id):
        engine.revoke_self_and_active_session(issued.session)
        with pytest.raises(RevokedSessionError):
            engine.refresh(
                storage.get_session(issued.session.id), _claims(server, issued), client_id=client_id
            )
        assert SessionStatus.CREATED not in _statuses(storage, issued.session.grant_id)

    def test_replay_revokes_session_rotated_during_revocation(
        self, engine, server, storage, issued, client_id, monkeypatch
    ):
        second, _ = engine.refresh(issued.session, _claims(server, issued), client_id=client_id)
        third = []
        interleaved = threading.Event()
        commit = storage.transaction

        @contextmanager
        def rotate_then_commit():
            # A legitimate rotation of the live session lands just before the
            # replay's revocation commits.
            if not interleaved.is_set():
                interleaved.set()
                container, _ = engine.refresh(
                    storage.get_session(second.session.id),
                    _claims(server, second),
                    client_id=client_id,
                )
                third.append(container)
            with commit() as tx:
                yield tx

        monkeypatch.setattr(storage, "transaction", rotate_then_commit)

        with pytest.raises(RevokedSessionError) as exc:
            engine.refresh(
                storage.get_session(issued.session.id), _claims(server, issued), client_id=client_id
            )

        assert exc.value.revoked_session_id == third[0].session.id
        assert storage.get_session(third[0].session.id).status == SessionStatus.REVOKED
        assert storage.active_session(issued.session.grant_id) is None

    def test_concurrent_refresh_issues_once(self, engine, server, storage, issued, client_id):
        claims = _claims(server, issued)
        results: list = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            try:
                results.append(engine.refresh(issued.session, claims, client_id=client_id))
            except RevokedSessionError as exc:
                results.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        successes = [r for r in results if isinstance(r, tuple) and r[1] is None]
        assert len(successes) == 1
        assert _statuses(storage, issued.session.grant_id).count(SessionStatus.CREATED) <= 1
        assert len(storage.sessions_for_grant(issued.session.grant_id)) == 2


class TestRevocation:
    def test_revoke_self_and_active(self, engine, server, storage, issued, audit, client_id):
        rotated, _ = engine.refresh(issued.session, _claims(server, issued), client_id=client_id)
        revoked = engine.revoke_self_and_active_session(
            storage.get_session(issued.session.id), reason="logout", request_id="req-1"
        )
        assert revoked == [rotated.session.id, issued.session.id]

        events = [json.loads(line) for line in audit.log_path.read_text().splitlines()]
        event = [e for e in events if e["action"] == "session_revoked"][-1]
        assert event["context"]["related_session_ids"] == [rotated.session.id]
        assert event["context"]["reason"] == "logout"
        assert event["context"]["request_id"] == "req-1"

    def test_revoke_self_when_active(self, engine, issued):
        assert engine.revoke_self_and_active_session(issued.session) == [issued.session.id]

    def test_revoke_for_access_token(self, engine, storage, issued):
        assert engine.revoke_for_access_token(issued.session.access_token_jti)
        assert storage.get_session(issued.session.id).status == SessionStatus.REVOKED

    def test_revoke_for_refresh_token(self, engine, storage, issued):
        assert engine.revoke_for_refresh_token(issued.session.refresh_token_jti)
        assert storage.get_session(issued.session.id).status == SessionStatus.REVOKED

    def test_revoke_for_token_tries_both(self, engine, storage, issued):
        assert engine.revoke_for_token(issued.session.refresh_token_jti) == [issued.session.id]

    @pytest.mark.parametrize(
        "method", ["revoke_for_token", "revoke_for_access_token", "revoke_for_refresh_token"]
    )
    def test_unknown_jti_is_noop(self, engine, method):
        assert getattr(engine, method)("00000000-0000-4000-8000-000000000000") == []
        assert getattr(engine, method)(None) == []
