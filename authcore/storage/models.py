from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOCAL_PROVIDER = "local"
GOOGLE_PROVIDER = "google"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Identity:
    id: str
    email: str
    username: str
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    auth_provider: str = LOCAL_PROVIDER
    google_id: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    settings: Dict[str, Any] = field(default_factory=dict)

    def can_use_password(self) -> bool:
        return bool(self.password_hash)

    def has_auth_method(self) -> bool:
        return self.can_use_password() or bool(self.google_id)

    def to_public_dict(self) -> dict:
        """Fields safe to hand to any client."""
        return {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
            "isAdmin": self.is_admin,
        }

    def to_dict(self) -> dict:
        """Full profile for the identity's owner. Never includes the verifier."""
        return {
            **self.to_public_dict(),
            "email": self.email,
            "authProvider": self.auth_provider,
            "isActive": self.is_active,
            "emailVerified": self.email_verified,
            "createdAt": _iso(self.created_at),
            "lastLoginAt": _iso(self.last_login_at),
        }
