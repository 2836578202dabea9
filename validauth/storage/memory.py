from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from validauth.logging import get_logger
from validauth.storage.errors import ConstraintViolation
from validauth.storage.models import Identity, RefreshToken, Role, utcnow


class MemoryStore:
    """In-memory identity, role and refresh token tables with a JSON snapshot.

    Every public method runs under one re-entrant lock, which gives each call
    the same all-or-nothing semantics as a row transaction in Postgres.
    Records are copied on the way in and out so callers never share state
    with the tables.
    """

    def __init__(self, fs_root: str = "/tmp/validauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.roles: Dict[str, Role] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # identities
    def _find_by_email_locked(self, email: str) -> Optional[Identity]:
        needle = email.lower()
        return next(
            (i for i in self.identities.values() if i.email.lower() == needle), None
        )

    def find_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            found = self._find_by_email_locked(email)
            return replace(found) if found else None

    def find_by_username(self, username: str) -> Optional[Identity]:
        with self._data_lock:
            found = next(
                (i for i in self.identities.values() if i.username == username), None
            )
            return replace(found) if found else None

    def find_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            found = self.identities.get(identity_id)
            return replace(found) if found else None

    def save(self, identity: Identity) -> Identity:
        with self._data_lock:
            for existing in self.identities.values():
                if existing.id == identity.id:
                    continue
                if existing.username == identity.username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email.lower() == identity.email.lower():
                    raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(identity, email=identity.email.lower(), updated_at=utcnow())
            self.identities[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def increment_failed_attempts(
        self, identity_id: str, max_attempts: int, now: datetime
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.failed_attempts += 1
            if identity.failed_attempts >= max_attempts and not identity.locked:
                identity.lock(now)
            identity.updated_at = utcnow()
            self._persist_state()
            return replace(identity)

    def reset_failed_attempts(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.reset_lockout()
            identity.updated_at = utcnow()
            self._persist_state()
            return replace(identity)

    def mark_active(self, identity_id: str) -> Optional[Identity]:
        """Flip a pending identity to active; None if missing or already active."""
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity or identity.active:
                return None
            identity.active = True
            identity.updated_at = utcnow()
            self._persist_state()
            return replace(identity)

    def set_enabled(self, identity_id: str, enabled: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.enabled = enabled
            identity.updated_at = utcnow()
            self._persist_state()
            return replace(identity)

    # roles
    def find_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            found = self.roles.get(name)
            return replace(found) if found else None

    def ensure_role(self, name: str) -> Role:
        with self._data_lock:
            role = self.roles.get(name)
            if role is None:
                role = Role.new(name)
                self.roles[name] = role
                self._persist_state()
            return replace(role)

    # refresh tokens
    def replace_refresh_token(
        self,
        identity_id: str,
        token: str,
        expiry_date: datetime,
        *,
        replacing: Optional[str] = None,
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity does not exist", {"identity_id": identity_id}
                )
            if replacing is not None:
                current = self.refresh_tokens.get(replacing)
                if current is None or current.identity_id != identity_id:
                    return None
            stale = [
                key
                for key, record in self.refresh_tokens.items()
                if record.identity_id == identity_id
            ]
            for key in stale:
                self.refresh_tokens.pop(key, None)
            record = RefreshToken(
                token=token, identity_id=identity_id, expiry_date=expiry_date
            )
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            found = self.refresh_tokens.get(token)
            return replace(found) if found else None

    def delete_refresh_token(self, token: str) -> None:
        with self._data_lock:
            if self.refresh_tokens.pop(token, None) is not None:
                self._persist_state()

    def delete_refresh_tokens_for(self, identity_id: str) -> int:
        with self._data_lock:
            stale = [
                key
                for key, record in self.refresh_tokens.items()
                if record.identity_id == identity_id
            ]
            for key in stale:
                self.refresh_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_refresh_tokens(self, identity_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(record)
                for record in self.refresh_tokens.values()
                if record.identity_id == identity_id
            ]

    # snapshot
    def _serialize_identity(self, identity: Identity) -> dict[str, Any]:
        return {
            "id": identity.id,
            "username": identity.username,
            "email": identity.email,
            "password_hash": identity.password_hash,
            "role": identity.role,
            "active": identity.active,
            "enabled": identity.enabled,
            "failed_attempts": identity.failed_attempts,
            "locked": identity.locked,
            "locked_at": self._serialize_datetime(identity.locked_at),
            "created_at": self._serialize_datetime(identity.created_at),
            "updated_at": self._serialize_datetime(identity.updated_at),
        }

    def _deserialize_identity(self, data: dict[str, Any]) -> Identity:
        return Identity(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=data["role"],
            active=data.get("active", False),
            enabled=data.get("enabled", True),
            failed_attempts=data.get("failed_attempts", 0),
            locked=data.get("locked", False),
            locked_at=self._deserialize_datetime(data.get("locked_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "roles": [{"id": r.id, "name": r.name} for r in self.roles.values()],
            "refresh_tokens": [
                {
                    "token": t.token,
                    "identity_id": t.identity_id,
                    "expiry_date": self._serialize_datetime(t.expiry_date),
                    "created_at": self._serialize_datetime(t.created_at),
                }
                for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.roles = {r["name"]: Role(id=r["id"], name=r["name"]) for r in data.get("roles", [])}
        self.refresh_tokens = {
            t["token"]: RefreshToken(
                token=t["token"],
                identity_id=t["identity_id"],
                expiry_date=self._deserialize_datetime(t["expiry_date"]),
                created_at=self._deserialize_datetime(t.get("created_at")) or utcnow(),
            )
            for t in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True
