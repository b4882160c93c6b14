from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import GOOGLE_PROVIDER, LOCAL_PROVIDER, Identity, utcnow


class MemoryCredentialStore:
    """In-process identity store with the same contract as the Postgres one.

    Used for tests and single-process development. Uniqueness checks and
    writes happen under one lock so concurrent signups behave like the
    database's unique constraints. Callers receive copies, never the stored
    records.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self._data_lock = threading.Lock()

    def _check_unique(
        self, email: str, username: str, google_id: Optional[str], skip_id: Optional[str] = None
    ) -> None:
        for existing in self.identities.values():
            if existing.id == skip_id:
                continue
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if google_id and existing.google_id == google_id:
                raise ConstraintViolation("google_id already exists", {"field": "google_id"})

    def _insert(self, identity: Identity) -> Identity:
        with self._data_lock:
            self._check_unique(identity.email, identity.username, identity.google_id)
            self.identities[identity.id] = identity
            return copy.deepcopy(identity)

    def _find(self, predicate) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if predicate(identity):
                    return copy.deepcopy(identity)
        return None

    def _update(self, identity_id: str, **changes) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            for field, value in changes.items():
                setattr(identity, field, value)
            identity.updated_at = utcnow()
            return copy.deepcopy(identity)

    # creation

    def create_local_identity(
        self,
        email: str,
        username: str,
        password_hash: str,
        display_name: Optional[str] = None,
    ) -> Identity:
        return self._insert(
            Identity(
                id=str(uuid.uuid4()),
                email=email.lower(),
                username=username,
                password_hash=password_hash,
                display_name=display_name or username,
                auth_provider=LOCAL_PROVIDER,
            )
        )

    def create_federated_identity(
        self,
        email: str,
        username: str,
        google_id: str,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Identity:
        return self._insert(
            Identity(
                id=str(uuid.uuid4()),
                email=email.lower(),
                username=username,
                display_name=display_name or username,
                avatar_url=avatar_url,
                auth_provider=GOOGLE_PROVIDER,
                google_id=google_id,
                email_verified=True,
            )
        )

    # lookups

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return copy.deepcopy(identity) if identity else None

    def get_by_email(self, email: str) -> Optional[Identity]:
        normalized = email.lower()
        return self._find(lambda identity: identity.email == normalized)

    def get_by_username(self, username: str) -> Optional[Identity]:
        return self._find(lambda identity: identity.username == username)

    def get_by_identifier(self, identifier: str) -> Optional[Identity]:
        normalized = identifier.lower()
        return self._find(
            lambda identity: identity.email == normalized or identity.username == identifier
        )

    def get_by_google_id(self, google_id: str) -> Optional[Identity]:
        return self._find(lambda identity: identity.google_id == google_id)

    def is_email_available(self, email: str) -> bool:
        return self.get_by_email(email) is None

    def is_username_available(self, username: str) -> bool:
        return self.get_by_username(username) is None

    def list_identities(self, limit: int = 50, offset: int = 0) -> List[Identity]:
        with self._data_lock:
            ordered = sorted(
                self.identities.values(), key=lambda identity: identity.created_at, reverse=True
            )
            return [copy.deepcopy(identity) for identity in ordered[offset : offset + limit]]

    def count_identities(self) -> int:
        with self._data_lock:
            return len(self.identities)

    # mutation

    def link_google_account(
        self, identity_id: str, google_id: str, avatar_url: Optional[str] = None
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            self._check_unique(identity.email, identity.username, google_id, skip_id=identity_id)
            identity.google_id = google_id
            if not identity.avatar_url:
                identity.avatar_url = avatar_url
            identity.updated_at = utcnow()
            return copy.deepcopy(identity)

    def touch_last_login(self, identity_id: str) -> Optional[datetime]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            identity.last_login_at = utcnow()
            return identity.last_login_at

    def update_profile(
        self, identity_id: str, display_name: Optional[str], avatar_url: Optional[str]
    ) -> Optional[Identity]:
        return self._update(identity_id, display_name=display_name, avatar_url=avatar_url)

    def update_password(self, identity_id: str, password_hash: str) -> bool:
        return self._update(identity_id, password_hash=password_hash) is not None

    def set_admin(self, identity_id: str, is_admin: bool) -> bool:
        return self._update(identity_id, is_admin=is_admin) is not None

    def set_active(self, identity_id: str, is_active: bool) -> bool:
        return self._update(identity_id, is_active=is_active) is not None
