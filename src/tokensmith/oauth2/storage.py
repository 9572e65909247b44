# OAuth2 persistence: clients, grants, sessions and the metadata cache.
# Created: 2026-10-19
#
# State lives in memory behind one lock and is optionally mirrored to a JSON
# file so grants and sessions survive restarts. Multi-row writes go through
# transaction(): callers stage changes on a StorageTransaction and everything
# is checked and applied together when the block exits.

from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from tokensmith.errors import ConstraintViolation, GrantAlreadyRedeemedError
from tokensmith.oauth2.models import (
    AuthorizationGrant,
    Challenge,
    ClientRecord,
    Session,
    SessionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class CachedMetadataDocument:
    """Client metadata document cached under the SHA-256 of its URL."""

    url_hash: str
    url: str
    document: dict[str, Any]
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class _StatusChange:
    session_id: str
    status: SessionStatus
    expected: SessionStatus | None


@dataclass
class StorageTransaction:
    """Change set staged inside ``OAuthStorage.transaction()``.

    Nothing is visible to other callers until the enclosing block exits
    without raising.
    """

    new_sessions: list[Session] = field(default_factory=list)
    status_changes: list[_StatusChange] = field(default_factory=list)
    redeemed_grants: list[str] = field(default_factory=list)
    revoke_active_for: list[str] = field(default_factory=list)
    # Filled in on commit: ids of the active sessions revoke_active_session found.
    revoked_active: list[str] = field(default_factory=list)

    def add_session(self, session: Session) -> None:
        self.new_sessions.append(copy.deepcopy(session))

    def set_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        expected: SessionStatus | None = None,
    ) -> None:
        """Stage a status change. With *expected*, commit fails unless it still holds."""
        self.status_changes.append(_StatusChange(session_id, status, expected))

    def mark_grant_redeemed(self, grant_id: str) -> None:
        self.redeemed_grants.append(grant_id)

    def revoke_active_session(self, grant_id: str) -> None:
        """Stage revocation of whichever session of *grant_id* is active at commit time."""
        self.revoke_active_for.append(grant_id)


def _default_persist_path() -> Path:
    from tokensmith.config import get_config_dir

    return get_config_dir() / "oauth_state.json"


class OAuthStorage:
    """In-memory OAuth2 storage with optional JSON persistence.

    Pass ``persist=False`` (the default) for a purely in-memory store, as the
    tests do. Reads return copies so callers cannot mutate stored rows.
    """

    def __init__(self, persist_path: Path | None = None, persist: bool = False):
        self._lock = threading.RLock()
        self._clients: dict[str, ClientRecord] = {}
        self._grants: dict[str, AuthorizationGrant] = {}
        self._sessions: dict[str, Session] = {}
        self._access_index: dict[str, str] = {}  # access jti -> session id
        self._refresh_index: dict[str, str] = {}  # refresh jti -> session id
        self._metadata_cache: dict[str, CachedMetadataDocument] = {}
        self._persist = persist or persist_path is not None
        self._persist_path = persist_path
        if self._persist:
            self._load()

    def _get_path(self) -> Path:
        if self._persist_path is not None:
            return self._persist_path
        return _default_persist_path()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        """Load clients, grants and sessions from disk on startup."""
        path = self._get_path()
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text())
            for entry in data.get("clients", []):
                record = _client_from_dict(entry)
                self._clients[record.public_id] = record
            for entry in data.get("grants", []):
                grant = _grant_from_dict(entry)
                self._grants[grant.public_id] = grant
            for entry in data.get("sessions", []):
                session = _session_from_dict(entry)
                self._index_session(session)
            logger.debug(
                "Loaded %d clients, %d grants, %d sessions from %s",
                len(self._clients),
                len(self._grants),
                len(self._sessions),
                path,
            )
        except (json.JSONDecodeError, OSError, KeyError, ValueError) as exc:
            logger.warning("Failed to load OAuth state from %s: %s", path, exc)

    def _save(self) -> None:
        """Persist clients, grants and sessions to disk."""
        if not self._persist:
            return
        path = self._get_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "clients": [_client_to_dict(c) for c in self._clients.values()],
            "grants": [_grant_to_dict(g) for g in self._grants.values()],
            "sessions": [_session_to_dict(s) for s in self._sessions.values()],
        }
        path.write_text(json.dumps(data, indent=2))
        try:
            path.chmod(0o600)
        except OSError as exc:
            logger.debug("Could not restrict permissions on %s: %s", path, exc)

    def _index_session(self, session: Session) -> None:
        self._sessions[session.id] = session
        self._access_index[session.access_token_jti] = session.id
        self._refresh_index[session.refresh_token_jti] = session.id

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def add_client(self, record: ClientRecord) -> ClientRecord:
        with self._lock:
            if record.public_id in self._clients:
                raise ConstraintViolation(f"Client {record.public_id} already exists")
            self._clients[record.public_id] = copy.deepcopy(record)
            self._save()
        return record

    def get_client(self, public_id: str) -> ClientRecord | None:
        with self._lock:
            record = self._clients.get(public_id)
            return copy.deepcopy(record) if record else None

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def add_grant(self, grant: AuthorizationGrant) -> None:
        with self._lock:
            if grant.public_id in self._grants:
                raise ConstraintViolation("Authorization grant id collision")
            self._grants[grant.public_id] = copy.deepcopy(grant)
            self._save()

    def get_grant(self, public_id: str) -> AuthorizationGrant | None:
        with self._lock:
            grant = self._grants.get(public_id)
            return copy.deepcopy(grant) if grant else None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def find_session_by_access_jti(self, jti: str) -> Session | None:
        with self._lock:
            session_id = self._access_index.get(jti)
            return self.get_session(session_id) if session_id else None

    def find_session_by_refresh_jti(self, jti: str) -> Session | None:
        with self._lock:
            session_id = self._refresh_index.get(jti)
            return self.get_session(session_id) if session_id else None

    def sessions_for_grant(self, grant_id: str) -> list[Session]:
        with self._lock:
            return [
                copy.deepcopy(s)
                for s in sorted(self._sessions.values(), key=lambda s: s.created_at)
                if s.grant_id == grant_id
            ]

    def active_session(self, grant_id: str) -> Session | None:
        """The grant's session in ``created`` status, if any."""
        with self._lock:
            for session in self._sessions.values():
                if session.grant_id == grant_id and session.status == SessionStatus.CREATED:
                    return copy.deepcopy(session)
            return None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[StorageTransaction]:
        """Stage changes and commit them atomically when the block exits.

        Raises ConstraintViolation (or GrantAlreadyRedeemedError) on commit if
        a precondition no longer holds; nothing is applied in that case.
        """
        tx = StorageTransaction()
        yield tx
        self._commit(tx)

    def _commit(self, tx: StorageTransaction) -> None:
        with self._lock:
            active_changes = [
                _StatusChange(s.id, SessionStatus.REVOKED, None)
                for grant_id in tx.revoke_active_for
                for s in self._sessions.values()
                if s.grant_id == grant_id and s.status == SessionStatus.CREATED
            ]
            changes = active_changes + tx.status_changes
            self._check(tx, changes)

            grants_before = {gid: self._grants[gid].redeemed for gid in tx.redeemed_grants}
            statuses_before: dict[str, SessionStatus] = {}
            for change in changes:
                session_id = change.session_id
                statuses_before.setdefault(session_id, self._sessions[session_id].status)

            for grant_id in tx.redeemed_grants:
                self._grants[grant_id].redeemed = True
            for change in changes:
                self._sessions[change.session_id].status = change.status
            for session in tx.new_sessions:
                self._index_session(copy.deepcopy(session))

            try:
                self._save()
            except OSError:
                # Roll back so memory never runs ahead of what was persisted.
                for grant_id, redeemed in grants_before.items():
                    self._grants[grant_id].redeemed = redeemed
                for session_id, status in statuses_before.items():
                    self._sessions[session_id].status = status
                for session in tx.new_sessions:
                    self._sessions.pop(session.id, None)
                    self._access_index.pop(session.access_token_jti, None)
                    self._refresh_index.pop(session.refresh_token_jti, None)
                raise
            tx.revoked_active = [c.session_id for c in active_changes]

    def _check(self, tx: StorageTransaction, changes: list[_StatusChange]) -> None:
        for grant_id in tx.redeemed_grants:
            grant = self._grants.get(grant_id)
            if grant is None:
                raise ConstraintViolation(f"Unknown grant {grant_id[:8]}****")
            if grant.redeemed:
                raise GrantAlreadyRedeemedError(f"Grant {grant_id[:8]}**** already redeemed")

        final_status: dict[str, SessionStatus] = {}
        for change in changes:
            session = self._sessions.get(change.session_id)
            if session is None:
                raise ConstraintViolation(f"Unknown session {change.session_id[:8]}")
            current = final_status.get(change.session_id, session.status)
            if change.expected is not None and current != change.expected:
                raise ConstraintViolation(
                    f"Session {change.session_id[:8]} is {current.value}, "
                    f"expected {change.expected.value}"
                )
            final_status[change.session_id] = change.status

        seen_jtis: set[str] = set()
        for session in tx.new_sessions:
            if session.grant_id not in self._grants:
                raise ConstraintViolation(f"Unknown grant {session.grant_id[:8]}****")
            if session.id in self._sessions:
                raise ConstraintViolation("Session id collision")
            for jti in (session.access_token_jti, session.refresh_token_jti):
                if jti in seen_jtis or jti in self._access_index or jti in self._refresh_index:
                    raise ConstraintViolation(f"Duplicate token jti {jti[:8]}")
                seen_jtis.add(jti)

        # At most one created session per grant once everything is applied.
        touched = {s.grant_id for s in tx.new_sessions}
        touched.update(self._sessions[sid].grant_id for sid in final_status)
        for grant_id in touched:
            created = sum(
                1
                for s in self._sessions.values()
                if s.grant_id == grant_id
                and final_status.get(s.id, s.status) == SessionStatus.CREATED
            )
            created += sum(
                1
                for s in tx.new_sessions
                if s.grant_id == grant_id and s.status == SessionStatus.CREATED
            )
            if created > 1:
                raise ConstraintViolation(
                    f"Grant {grant_id[:8]}**** would have {created} active sessions"
                )

    # ------------------------------------------------------------------
    # Client metadata document cache
    # ------------------------------------------------------------------

    def get_cached_document(
        self, url_hash: str, now: datetime | None = None
    ) -> CachedMetadataDocument | None:
        """Return the cache entry for *url_hash* unless it has expired."""
        with self._lock:
            entry = self._metadata_cache.get(url_hash)
            if entry is None or entry.is_expired(now):
                return None
            return copy.deepcopy(entry)

    def upsert_cached_document(self, entry: CachedMetadataDocument) -> None:
        # Entries are replaced wholesale; last writer wins.
        with self._lock:
            self._metadata_cache[entry.url_hash] = copy.deepcopy(entry)

    def delete_cached_document(self, url_hash: str) -> bool:
        with self._lock:
            return self._metadata_cache.pop(url_hash, None) is not None

    def cleanup_expired_documents(self, now: datetime | None = None) -> int:
        """Drop expired cache entries and return how many were removed."""
        with self._lock:
            expired = [k for k, v in self._metadata_cache.items() if v.is_expired(now)]
            for key in expired:
                del self._metadata_cache[key]
            return len(expired)


# ----------------------------------------------------------------------
# JSON (de)serialisation
# ----------------------------------------------------------------------


def _client_to_dict(record: ClientRecord) -> dict[str, Any]:
    data = asdict(record)
    data["created_at"] = record.created_at.isoformat()
    return data


def _client_from_dict(entry: dict[str, Any]) -> ClientRecord:
    data = dict(entry)
    data["created_at"] = datetime.fromisoformat(data["created_at"])
    return ClientRecord(**data)


def _grant_to_dict(grant: AuthorizationGrant) -> dict[str, Any]:
    return {
        "public_id": grant.public_id,
        "user_id": grant.user_id,
        "expires_at": grant.expires_at.isoformat(),
        "challenge": asdict(grant.challenge),
        "client_id": grant.client_id,
        "client_id_url": grant.client_id_url,
        "resources": grant.resources,
        "scopes": grant.scopes,
        "redeemed": grant.redeemed,
        "created_at": grant.created_at.isoformat(),
    }


def _grant_from_dict(entry: dict[str, Any]) -> AuthorizationGrant:
    return AuthorizationGrant(
        public_id=entry["public_id"],
        user_id=entry["user_id"],
        expires_at=datetime.fromisoformat(entry["expires_at"]),
        challenge=Challenge(**(entry.get("challenge") or {})),
        client_id=entry.get("client_id"),
        client_id_url=entry.get("client_id_url"),
        resources=entry.get("resources", []),
        scopes=entry.get("scopes", []),
        redeemed=entry.get("redeemed", False),
        created_at=datetime.fromisoformat(entry["created_at"]),
    )


def _session_to_dict(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "grant_id": session.grant_id,
        "access_token_jti": session.access_token_jti,
        "refresh_token_jti": session.refresh_token_jti,
        "status": session.status.value,
        "created_at": session.created_at.isoformat(),
    }


def _session_from_dict(entry: dict[str, Any]) -> Session:
    return Session(
        id=entry["id"],
        grant_id=entry["grant_id"],
        access_token_jti=entry["access_token_jti"],
        refresh_token_jti=entry["refresh_token_jti"],
        status=SessionStatus(entry["status"]),
        created_at=datetime.fromisoformat(entry["created_at"]),
    )
